from __future__ import annotations

import asyncio
import base64
from datetime import date

import pytest
from conftest import FakeFetcher, FakeSender, make_message
from nacl.public import PrivateKey
from sqlalchemy import update

from mailbox_relay import mailboxes
from mailbox_relay.config import get_settings
from mailbox_relay.crypto import ServerKeyring
from mailbox_relay.db import get_session
from mailbox_relay.errors import AuthError, PaymentRequired, QuotaExceeded, TransportError, ValidationError
from mailbox_relay.mailboxes import (
    authenticate,
    create_mailbox,
    create_paid_mailbox,
    fetch_emails,
    get_agent,
    latest_codes,
    list_agents,
    mailbox_info,
    send_mail,
    send_template,
    service_stats,
    set_public_key,
    set_webhook,
)
from mailbox_relay.models import Agent
from mailbox_relay.payments import create_payment_intent, get_payment_intent

TODAY = date(2026, 3, 1)


class SlowSender(FakeSender):
    """Yields to the loop before sending so concurrent sends interleave."""

    async def send(self, from_address, to, subject, body, html=None):
        await asyncio.sleep(0.01)
        return await super().send(from_address, to, subject, body, html)


class TestCreateMailbox:
    @pytest.mark.asyncio
    async def test_creates_plus_address(self, isolated_env, fake_identity):
        agent, created = await create_mailbox("key-scout", fake_identity, get_settings().mail)

        assert created
        assert len(agent.mailbox_id) == 8
        assert agent.mailbox_id == agent.uid[:8]
        assert agent.email == f"kai+{agent.mailbox_id}@relay.test"
        assert agent.api_key.startswith("am_") and len(agent.api_key) == 67
        assert agent.owner_name == "Scout"

    @pytest.mark.asyncio
    async def test_idempotent_per_owner(self, isolated_env, fake_identity):
        first, _ = await create_mailbox("key-scout", fake_identity, get_settings().mail)
        second, created = await create_mailbox("key-scout", fake_identity, get_settings().mail)

        assert not created
        assert second.id == first.id
        assert second.api_key == first.api_key
        assert len(await list_agents()) == 1

    @pytest.mark.asyncio
    async def test_rejects_unknown_identity(self, isolated_env, fake_identity):
        with pytest.raises(AuthError):
            await create_mailbox("bogus", fake_identity, get_settings().mail)

    @pytest.mark.asyncio
    async def test_requires_credential(self, isolated_env, fake_identity):
        with pytest.raises(ValidationError):
            await create_mailbox("", fake_identity, get_settings().mail)


class TestCreatePaidMailbox:
    @pytest.mark.asyncio
    async def test_confirmed_payment_buys_one_mailbox(self, isolated_env, fake_payments):
        intent = await create_payment_intent("mailbox_basic", None, get_settings().payments)
        fake_payments.confirmed.add(intent.reference)

        agent, check = await create_paid_mailbox(intent.reference, "Buyer", fake_payments, get_settings().mail)
        assert agent.paid
        assert agent.owner_name == "Buyer"
        assert check.signature

        with pytest.raises(ValidationError, match="already used"):
            await create_paid_mailbox(intent.reference, "Buyer", fake_payments, get_settings().mail)
        assert len(await list_agents()) == 1

    @pytest.mark.asyncio
    async def test_pending_payment_is_402(self, isolated_env, fake_payments):
        intent = await create_payment_intent("mailbox_basic", None, get_settings().payments)
        with pytest.raises(PaymentRequired):
            await create_paid_mailbox(intent.reference, None, fake_payments, get_settings().mail)
        assert await list_agents() == []

    @pytest.mark.asyncio
    async def test_failed_insert_keeps_payment_redeemable(self, isolated_env, fake_identity, fake_payments, monkeypatch):
        original_mailbox_id_for = mailboxes.mailbox_id_for
        monkeypatch.setattr(mailboxes, "mailbox_id_for", lambda uid: "deadbeef")
        await create_mailbox("key-scout", fake_identity, get_settings().mail)
        intent = await create_payment_intent("mailbox_basic", None, get_settings().payments)
        fake_payments.confirmed.add(intent.reference)

        with pytest.raises(RuntimeError):
            await create_paid_mailbox(intent.reference, "Buyer", fake_payments, get_settings().mail)
        assert not (await get_payment_intent(intent.reference)).consumed

        monkeypatch.setattr(mailboxes, "mailbox_id_for", original_mailbox_id_for)
        agent, _ = await create_paid_mailbox(intent.reference, "Buyer", fake_payments, get_settings().mail)
        assert agent.paid
        assert (await get_payment_intent(intent.reference)).consumed

    @pytest.mark.asyncio
    async def test_default_name(self, isolated_env, fake_payments):
        intent = await create_payment_intent("mailbox_premium", None, get_settings().payments)
        fake_payments.confirmed.add(intent.reference)
        agent, _ = await create_paid_mailbox(intent.reference, None, fake_payments, get_settings().mail)
        assert agent.owner_name == f"agent-{agent.mailbox_id}"


class TestAgentSettings:
    @pytest.mark.asyncio
    async def test_authenticate(self, isolated_env, fake_identity):
        agent, _ = await create_mailbox("key-scout", fake_identity, get_settings().mail)
        assert (await authenticate(agent.api_key)).id == agent.id
        with pytest.raises(AuthError):
            await authenticate("am_wrong")
        with pytest.raises(AuthError):
            await authenticate(None)

    @pytest.mark.asyncio
    async def test_webhook_set_and_remove(self, isolated_env, fake_identity):
        agent, _ = await create_mailbox("key-scout", fake_identity, get_settings().mail)

        updated = await set_webhook(agent.id, "https://agent.test/hook")
        assert updated.webhook_url == "https://agent.test/hook"

        cleared = await set_webhook(agent.id, None)
        assert cleared.webhook_url is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("url", ["ftp://agent.test/hook", "not a url", "https://"])
    async def test_webhook_rejects_bad_urls(self, isolated_env, fake_identity, url):
        agent, _ = await create_mailbox("key-scout", fake_identity, get_settings().mail)
        with pytest.raises(ValidationError):
            await set_webhook(agent.id, url)

    @pytest.mark.asyncio
    async def test_public_key(self, isolated_env, fake_identity):
        agent, _ = await create_mailbox("key-scout", fake_identity, get_settings().mail)
        key = base64.b64encode(bytes(PrivateKey.generate().public_key)).decode()

        updated = await set_public_key(agent.id, key)
        assert mailbox_info(updated)["encryption"] == {"enabled": True, "public_key": key}

        with pytest.raises(ValidationError):
            await set_public_key(agent.id, base64.b64encode(b"short").decode())

        cleared = await set_public_key(agent.id, None)
        assert mailbox_info(cleared)["encryption"]["enabled"] is False

    @pytest.mark.asyncio
    async def test_mailbox_info_quota(self, isolated_env, fake_identity):
        agent, _ = await create_mailbox("key-scout", fake_identity, get_settings().mail)
        info = mailbox_info(agent, today=TODAY, limit=10)
        assert info["quota"]["sends_remaining"] == 10
        assert info["webhook_url"] is None
        assert info["email"] == agent.email


class TestFetchEmails:
    """Pull path over the shared inbox."""

    @pytest.mark.asyncio
    async def test_newest_first_and_filtered(self, isolated_env, fake_identity):
        agent, _ = await create_mailbox("key-scout", fake_identity, get_settings().mail)
        fetcher = FakeFetcher(
            [
                make_message("old", agent.email, body="code: 1111"),
                make_message("new", agent.email, minutes=5, body="code: 2222"),
                make_message("other", "kai+someone@relay.test", minutes=9),
            ]
        )

        emails = await fetch_emails(agent, fetcher, limit=10)

        assert [email["id"] for email in emails] == ["new", "old"]
        assert latest_codes(emails) == ["2222"]

    @pytest.mark.asyncio
    async def test_limit(self, isolated_env, fake_identity):
        agent, _ = await create_mailbox("key-scout", fake_identity, get_settings().mail)
        fetcher = FakeFetcher([make_message(f"m{i}", agent.email, minutes=i) for i in range(5)])
        emails = await fetch_emails(agent, fetcher, limit=2)
        assert [email["id"] for email in emails] == ["m4", "m3"]

    @pytest.mark.asyncio
    async def test_encrypted_when_key_registered(self, isolated_env, fake_identity):
        agent, _ = await create_mailbox("key-scout", fake_identity, get_settings().mail)
        key = base64.b64encode(bytes(PrivateKey.generate().public_key)).decode()
        agent = await set_public_key(agent.id, key)
        fetcher = FakeFetcher([make_message("m1", agent.email, body="secret 9999")])

        emails = await fetch_emails(agent, fetcher, keyring=ServerKeyring())

        assert emails[0]["encrypted"] is True
        assert "body" not in emails[0]
        assert latest_codes(emails) == []

    @pytest.mark.asyncio
    async def test_transport_failure_propagates(self, isolated_env, fake_identity):
        agent, _ = await create_mailbox("key-scout", fake_identity, get_settings().mail)
        with pytest.raises(TransportError):
            await fetch_emails(agent, FakeFetcher(fail=True))


class TestSendMail:
    @pytest.mark.asyncio
    async def test_send_counts_against_quota(self, isolated_env, fake_identity, fake_sender):
        agent, _ = await create_mailbox("key-scout", fake_identity, get_settings().mail)

        result = await send_mail(agent, fake_sender, to="a@b.test", subject="Hi", body="Hello", today=TODAY, limit=2)

        assert result["sends_remaining"] == 1
        assert fake_sender.sent[0]["from"] == agent.email
        assert (await get_agent(agent.id)).sends_today == 1

    @pytest.mark.asyncio
    async def test_limit_reached_blocks_transport(self, isolated_env, fake_identity, fake_sender):
        agent, _ = await create_mailbox("key-scout", fake_identity, get_settings().mail)
        await send_mail(agent, fake_sender, to="a@b.test", subject="1", body="x", today=TODAY, limit=1)

        with pytest.raises(QuotaExceeded):
            await send_mail(agent, fake_sender, to="a@b.test", subject="2", body="x", today=TODAY, limit=1)
        assert len(fake_sender.sent) == 1

    @pytest.mark.asyncio
    async def test_failed_send_still_counts(self, isolated_env, fake_identity):
        agent, _ = await create_mailbox("key-scout", fake_identity, get_settings().mail)
        with pytest.raises(TransportError):
            await send_mail(agent, FakeSender(fail=True), to="a@b.test", subject="s", body="b", today=TODAY, limit=10)
        assert (await get_agent(agent.id)).sends_today == 1

    @pytest.mark.asyncio
    async def test_last_slot_goes_to_one_worker_without_shared_lock(self, isolated_env, fake_identity, monkeypatch):
        agent, _ = await create_mailbox("key-scout", fake_identity, get_settings().mail)
        async with get_session() as session:
            await session.execute(
                update(Agent).where(Agent.id == agent.id).values(sends_today=9, last_send_date=TODAY)
            )
            await session.commit()
        # Each call gets its own lock, as two server processes would.
        monkeypatch.setattr(mailboxes, "agent_send_lock", lambda agent_id: asyncio.Lock())
        sender = SlowSender()

        results = await asyncio.gather(
            send_mail(agent, sender, to="a@b.test", subject="w1", body="x", today=TODAY, limit=10),
            send_mail(agent, sender, to="a@b.test", subject="w2", body="x", today=TODAY, limit=10),
            return_exceptions=True,
        )

        assert len([r for r in results if isinstance(r, dict) and r["success"]]) == 1
        assert len([r for r in results if isinstance(r, QuotaExceeded)]) == 1
        assert len(sender.sent) == 1
        assert (await get_agent(agent.id)).sends_today == 10

    @pytest.mark.asyncio
    async def test_missing_fields(self, isolated_env, fake_identity, fake_sender):
        agent, _ = await create_mailbox("key-scout", fake_identity, get_settings().mail)
        with pytest.raises(ValidationError):
            await send_mail(agent, fake_sender, to="a@b.test", subject="", body="b")
        assert fake_sender.sent == []

    @pytest.mark.asyncio
    async def test_template_autofills_agent_fields(self, isolated_env, fake_identity, fake_sender):
        agent, _ = await create_mailbox("key-scout", fake_identity, get_settings().mail)

        result = await send_template(
            agent,
            fake_sender,
            to="ops@b.test",
            template_id="verification_request",
            variables={"purpose": "API access"},
            today=TODAY,
            limit=10,
        )

        sent = fake_sender.sent[0]
        assert result["template_used"] == "verification_request"
        assert sent["subject"] == "Verification Request from Scout"
        assert "Purpose: API access" in sent["body"]
        assert agent.email in sent["body"]
        assert "{{timestamp}}" not in sent["body"]

    @pytest.mark.asyncio
    async def test_unknown_template(self, isolated_env, fake_identity, fake_sender):
        agent, _ = await create_mailbox("key-scout", fake_identity, get_settings().mail)
        with pytest.raises(ValidationError):
            await send_template(agent, fake_sender, to="ops@b.test", template_id="nope")
        assert fake_sender.sent == []


@pytest.mark.asyncio
async def test_service_stats(isolated_env, fake_identity):
    agent, _ = await create_mailbox("key-scout", fake_identity, get_settings().mail)
    await create_mailbox("key-ranger", fake_identity, get_settings().mail)
    await set_webhook(agent.id, "https://agent.test/hook")

    stats = await service_stats(get_settings())

    assert stats["total_agents"] == 2
    assert stats["webhooks_registered"] == 1
    assert stats["encryption_enabled"] == 0
