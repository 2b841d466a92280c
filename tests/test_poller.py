from __future__ import annotations

import asyncio
import base64
import json
from datetime import timedelta

import httpx
import pytest
from conftest import BASE_TIME, FakeFetcher, make_message
from nacl.public import PrivateKey

from mailbox_relay.config import PollerSettings, get_settings
from mailbox_relay.crypto import EncryptedPayload, ServerKeyring, decrypt
from mailbox_relay.db import ensure_schema, get_session
from mailbox_relay.dispatcher import WebhookDispatcher
from mailbox_relay.models import Agent
from mailbox_relay.poller import IngestionPoller

POLL_TIME = BASE_TIME + timedelta(minutes=2)


async def _add_agent(suffix: str, *, webhook_url=None, public_key=None, last_email_id=None, last_check_ts=None) -> Agent:
    await ensure_schema()
    agent = Agent(
        uid=suffix * 4,
        owner_ref=f"owner-{suffix}",
        owner_name=suffix,
        mailbox_id=suffix,
        email=f"kai+{suffix}@relay.test",
        api_key=f"am_{suffix}",
        webhook_url=webhook_url,
        public_key=public_key,
        last_email_id=last_email_id,
        last_check_ts=last_check_ts,
    )
    async with get_session() as session:
        session.add(agent)
        await session.commit()
        await session.refresh(agent)
    return agent


async def _reload(agent_id: int) -> Agent:
    async with get_session() as session:
        agent = await session.get(Agent, agent_id)
        assert agent is not None
        return agent


class RecordingHooks:
    """MockTransport handler recording webhook posts; some URLs time out."""

    def __init__(self, timeout_urls=()):
        self.timeout_urls = set(timeout_urls)
        self.posts: list[tuple[str, dict]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if url in self.timeout_urls:
            raise httpx.ReadTimeout("timed out", request=request)
        self.posts.append((url, json.loads(request.content)))
        return httpx.Response(200, json={"ok": True})


def _poller(fetcher, client, *, keyring=None, clock=lambda: POLL_TIME) -> IngestionPoller:
    settings = get_settings()
    return IngestionPoller(
        fetcher,
        WebhookDispatcher(client, timeout=0.5),
        poller_settings=settings.poller,
        mail_settings=settings.mail,
        keyring=keyring or ServerKeyring(),
        clock=clock,
    )


class TestPollOnce:
    """A single ingestion cycle end to end, with fake mail and webhook transports."""

    @pytest.mark.asyncio
    async def test_only_newer_message_dispatched_then_idempotent(self, isolated_env):
        agent = await _add_agent(
            "aaaaaaaa",
            webhook_url="https://hooks.test/a",
            last_email_id="m1",
            last_check_ts=BASE_TIME,
        )
        fetcher = FakeFetcher(
            [
                make_message("m2", agent.email, minutes=1, subject="Your code 123456"),
                make_message("m1", agent.email, minutes=-1),
            ]
        )
        hooks = RecordingHooks()
        async with httpx.AsyncClient(transport=httpx.MockTransport(hooks)) as client:
            poller = _poller(fetcher, client)

            report = await poller.poll_once()
            assert report.messages_dispatched == 1
            assert [payload["email"]["id"] for _, payload in hooks.posts] == ["m2"]
            assert hooks.posts[0][1]["email"]["codes"] == ["123456"]
            assert hooks.posts[0][1]["mailbox_id"] == "aaaaaaaa"
            stored = await _reload(agent.id)
            assert stored.last_email_id == "m2"
            assert stored.last_check_ts == POLL_TIME

            again = await _poller(fetcher, client, clock=lambda: POLL_TIME + timedelta(seconds=30)).poll_once()
            assert again.messages_dispatched == 0
            assert len(hooks.posts) == 1

    @pytest.mark.asyncio
    async def test_future_dated_mail_delivered_once_across_cycles(self, isolated_env):
        agent = await _add_agent("eeeeeeee", webhook_url="https://hooks.test/e")
        fetcher = FakeFetcher(
            [
                make_message("f1", agent.email, minutes=60),
                make_message("f2", agent.email, minutes=120),
            ]
        )
        hooks = RecordingHooks()
        async with httpx.AsyncClient(transport=httpx.MockTransport(hooks)) as client:
            for cycle in range(4):
                clock_time = BASE_TIME + timedelta(seconds=30 * cycle)
                await _poller(fetcher, client, clock=lambda t=clock_time: t).poll_once()

        assert sorted(payload["email"]["id"] for _, payload in hooks.posts) == ["f1", "f2"]
        stored = await _reload(agent.id)
        assert stored.last_email_id == "f2"
        assert stored.last_check_ts == BASE_TIME + timedelta(minutes=120)

    @pytest.mark.asyncio
    async def test_first_poll_delivers_everything_addressed_to_agent(self, isolated_env):
        agent = await _add_agent("aaaaaaaa", webhook_url="https://hooks.test/a")
        fetcher = FakeFetcher(
            [
                make_message("m1", agent.email),
                make_message("m2", agent.email, minutes=1),
                make_message("x1", "kai+zzzzzzzz@relay.test", minutes=2),
            ]
        )
        hooks = RecordingHooks()
        async with httpx.AsyncClient(transport=httpx.MockTransport(hooks)) as client:
            report = await _poller(fetcher, client).poll_once()

        assert report.messages_dispatched == 2
        assert sorted(payload["email"]["id"] for _, payload in hooks.posts) == ["m1", "m2"]
        assert (await _reload(agent.id)).last_email_id == "m2"

    @pytest.mark.asyncio
    async def test_timeout_for_one_agent_does_not_block_another(self, isolated_env):
        slow = await _add_agent("aaaaaaaa", webhook_url="https://hooks.test/slow")
        fast = await _add_agent("bbbbbbbb", webhook_url="https://hooks.test/fast")
        fetcher = FakeFetcher(
            [
                make_message("a1", slow.email, minutes=1),
                make_message("b1", fast.email, minutes=1),
            ]
        )
        hooks = RecordingHooks(timeout_urls={"https://hooks.test/slow"})
        async with httpx.AsyncClient(transport=httpx.MockTransport(hooks)) as client:
            report = await _poller(fetcher, client).poll_once()

        assert report.agents_polled == 2
        assert report.messages_dispatched == 1
        assert report.deliveries_failed == 1
        assert [url for url, _ in hooks.posts] == ["https://hooks.test/fast"]
        assert (await _reload(slow.id)).last_email_id == "a1"
        assert (await _reload(fast.id)).last_email_id == "b1"

    @pytest.mark.asyncio
    async def test_agents_without_webhook_are_skipped(self, isolated_env):
        quiet = await _add_agent("cccccccc")
        fetcher = FakeFetcher([make_message("c1", quiet.email, minutes=1)])
        hooks = RecordingHooks()
        async with httpx.AsyncClient(transport=httpx.MockTransport(hooks)) as client:
            report = await _poller(fetcher, client).poll_once()

        assert report.agents_polled == 0
        assert fetcher.calls == 0
        assert (await _reload(quiet.id)).last_email_id is None

    @pytest.mark.asyncio
    async def test_fetch_failure_ends_cycle_without_advancing(self, isolated_env):
        agent = await _add_agent("aaaaaaaa", webhook_url="https://hooks.test/a")
        hooks = RecordingHooks()
        async with httpx.AsyncClient(transport=httpx.MockTransport(hooks)) as client:
            report = await _poller(FakeFetcher(fail=True), client).poll_once()

        assert report.fetch_failed
        assert hooks.posts == []
        assert (await _reload(agent.id)).last_email_id is None

    @pytest.mark.asyncio
    async def test_encrypted_delivery_opens_with_agent_secret(self, isolated_env):
        secret = PrivateKey.generate()
        public_b64 = base64.b64encode(bytes(secret.public_key)).decode()
        secret_b64 = base64.b64encode(bytes(secret)).decode()
        agent = await _add_agent("dddddddd", webhook_url="https://hooks.test/d", public_key=public_b64)
        fetcher = FakeFetcher([make_message("d1", agent.email, subject="Login", body="PIN: 4455")])
        hooks = RecordingHooks()
        keyring = ServerKeyring()
        async with httpx.AsyncClient(transport=httpx.MockTransport(hooks)) as client:
            await _poller(fetcher, client, keyring=keyring).poll_once()

        email = hooks.posts[0][1]["email"]
        assert email["encrypted"] is True
        assert email["server_public_key"] == keyring.public_key_b64
        assert "body" not in email
        opened = json.loads(
            decrypt(EncryptedPayload(email["ciphertext"], email["nonce"], email["server_public_key"]), secret_b64)
        )
        assert opened["body"] == "PIN: 4455"
        assert opened["codes"] == ["4455"]


@pytest.mark.asyncio
async def test_run_forever_repeats_until_stopped(isolated_env):
    await _add_agent("aaaaaaaa", webhook_url="https://hooks.test/a")
    fetcher = FakeFetcher()
    settings = get_settings()
    fast = PollerSettings(
        enabled=True,
        interval_seconds=0.01,
        initial_delay_seconds=0,
        fetch_window=10,
        webhook_timeout_seconds=1,
    )
    stop = asyncio.Event()
    async with httpx.AsyncClient(transport=httpx.MockTransport(RecordingHooks())) as client:
        poller = IngestionPoller(
            fetcher,
            WebhookDispatcher(client),
            poller_settings=fast,
            mail_settings=settings.mail,
            keyring=ServerKeyring(),
        )
        task = asyncio.create_task(poller.run_forever(stop))
        for _ in range(200):
            if fetcher.calls >= 2:
                break
            await asyncio.sleep(0.01)
        stop.set()
        await asyncio.wait_for(task, timeout=2)

    assert fetcher.calls >= 2
