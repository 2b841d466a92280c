"""Mailbox service operations used by the HTTP surface and the CLI."""

from __future__ import annotations

import secrets
import uuid
from datetime import date, datetime, timezone
from typing import Any, Mapping, Optional

import httpx
import structlog
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from .codes import message_codes
from .config import MailSettings, Settings
from .crypto import ServerKeyring, encrypt_for, get_server_keyring, validate_public_key
from .db import ensure_schema, get_session
from .dispatcher import clear_email_fields, sealed_content
from .errors import AuthError, PaymentRequired, ValidationError
from .identity import IdentityVerifier
from .models import Agent
from .payments import PaymentCheck, PaymentVerifier, claim_payment_intent, redeemable_intent, refresh_payment_status
from .quota import agent_send_lock, check_and_consume_quota, quota_status
from .templates import render_template
from .transport import InboundMessage, MailFetcher, MailSender
from .watermark import messages_for

_logger = structlog.get_logger(__name__)

_MAX_CREATE_ATTEMPTS = 5


def generate_api_key() -> str:
    return "am_" + secrets.token_hex(32)


def mailbox_id_for(uid: str) -> str:
    """Address suffix derived from the agent's stable uid."""
    return uid[:8]


async def get_agent(agent_id: int) -> Optional[Agent]:
    await ensure_schema()
    async with get_session() as session:
        return await session.get(Agent, agent_id)


async def _agent_by_owner(owner_ref: str) -> Optional[Agent]:
    async with get_session() as session:
        result = await session.execute(select(Agent).where(Agent.owner_ref == owner_ref))
        return result.scalars().first()


async def _insert_agent(
    owner_ref: str,
    owner_name: Optional[str],
    mail: MailSettings,
    *,
    paid: bool,
    payment_reference: Optional[str] = None,
) -> tuple[Agent, bool]:
    """Insert a new agent, regenerating the uid if its mailbox suffix is already taken.

    A concurrent insert for the same owner wins; its row is returned with ``created=False``.
    With ``payment_reference`` the intent is consumed in the same transaction as
    the insert, so a failed insert leaves the payment redeemable.
    """
    for _ in range(_MAX_CREATE_ATTEMPTS):
        uid = uuid.uuid4().hex
        mailbox_id = mailbox_id_for(uid)
        agent = Agent(
            uid=uid,
            owner_ref=owner_ref,
            owner_name=owner_name or f"agent-{mailbox_id}",
            mailbox_id=mailbox_id,
            email=mail.address_for(mailbox_id),
            api_key=generate_api_key(),
            paid=paid,
        )
        async with get_session() as session:
            if payment_reference is not None:
                await claim_payment_intent(session, payment_reference)
            session.add(agent)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                existing = await _agent_by_owner(owner_ref)
                if existing is not None:
                    return existing, False
                _logger.warning("mailbox.suffix_collision", mailbox_id=mailbox_id)
                continue
            await session.refresh(agent)
        _logger.info("mailbox.created", agent_id=agent.id, mailbox_id=agent.mailbox_id, paid=paid)
        return agent, True
    raise RuntimeError("Could not allocate a unique mailbox id")


async def create_mailbox(credential: str, verifier: IdentityVerifier, mail: MailSettings) -> tuple[Agent, bool]:
    """Create (or return the existing) mailbox for a verified identity.

    Returns ``(agent, created)``.
    """
    if not credential:
        raise ValidationError("moltbook_key is required")
    owner = await verifier.verify(credential)
    if owner is None:
        raise AuthError("Invalid identity credential")
    await ensure_schema()
    existing = await _agent_by_owner(owner.owner_id)
    if existing is not None:
        return existing, False
    return await _insert_agent(owner.owner_id, owner.owner_name, mail, paid=False)


async def create_paid_mailbox(
    reference: str,
    agent_name: Optional[str],
    verifier: PaymentVerifier,
    mail: MailSettings,
) -> tuple[Agent, PaymentCheck]:
    """Redeem a confirmed payment for exactly one new mailbox."""
    if not reference:
        raise ValidationError("Payment reference required")
    check = await refresh_payment_status(reference, verifier)
    if not check.verified:
        raise PaymentRequired("Payment not confirmed", data={"status": check.status})
    await redeemable_intent(reference)
    agent, _ = await _insert_agent(
        f"payment:{reference}", agent_name, mail, paid=True, payment_reference=reference
    )
    return agent, check


async def authenticate(api_key: Optional[str]) -> Agent:
    if not api_key:
        raise AuthError("Missing or invalid authorization header")
    await ensure_schema()
    async with get_session() as session:
        result = await session.execute(select(Agent).where(Agent.api_key == api_key))
        agent = result.scalars().first()
    if agent is None:
        raise AuthError("Invalid API key")
    return agent


def encryption_status(agent: Agent, keyring: Optional[ServerKeyring] = None) -> dict[str, Any]:
    return {
        "encryption_enabled": bool(agent.public_key),
        "public_key": agent.public_key,
        "server_public_key": (keyring or get_server_keyring()).public_key_b64,
    }


def mailbox_info(agent: Agent, *, today: Optional[date] = None, limit: Optional[int] = None) -> dict[str, Any]:
    return {
        "email": agent.email,
        "mailbox_id": agent.mailbox_id,
        "owner_name": agent.owner_name,
        "created_at": agent.created_ts.isoformat(),
        "webhook_url": agent.webhook_url,
        "paid": agent.paid,
        "encryption": {"enabled": bool(agent.public_key), "public_key": agent.public_key},
        "quota": quota_status(agent, today=today, limit=limit).to_dict(),
    }


def validate_webhook_url(url: str) -> str:
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, TypeError) as exc:
        raise ValidationError("Invalid webhook URL") from exc
    if parsed.scheme not in ("http", "https") or not parsed.host:
        raise ValidationError("Invalid webhook URL")
    return str(parsed)


async def _update_agent(agent_id: int, **values: Any) -> Agent:
    await ensure_schema()
    async with get_session() as session:
        agent = await session.get(Agent, agent_id)
        if agent is None:
            raise ValidationError("Unknown agent", data={"agent_id": agent_id})
        for key, value in values.items():
            setattr(agent, key, value)
        session.add(agent)
        await session.commit()
        await session.refresh(agent)
        return agent


async def set_webhook(agent_id: int, url: Optional[str]) -> Agent:
    """Register (or with ``None``/empty, remove) the delivery target."""
    resolved = validate_webhook_url(url) if url else None
    return await _update_agent(agent_id, webhook_url=resolved)


async def set_public_key(agent_id: int, public_key: Optional[str]) -> Agent:
    """Register (or with ``None``/empty, remove) the X25519 key used for encrypt-on-arrival."""
    if public_key and not validate_public_key(public_key):
        raise ValidationError("Invalid public key. Must be a 32-byte base64-encoded X25519 public key")
    return await _update_agent(agent_id, public_key=public_key or None)


def _pull_entry(agent: Agent, message: InboundMessage, keyring: ServerKeyring) -> dict[str, Any]:
    codes = message_codes(message)
    if not agent.public_key:
        return clear_email_fields(message, codes)
    clear = message.to_dict()
    encrypted = encrypt_for(sealed_content(message, codes), agent.public_key, keyring)
    return {"id": clear["id"], "received_at": clear["received_at"], "encrypted": True, **encrypted.to_dict()}


async def fetch_emails(
    agent: Agent,
    fetcher: MailFetcher,
    *,
    limit: int = 10,
    fetch_window: int = 50,
    keyring: Optional[ServerKeyring] = None,
) -> list[dict[str, Any]]:
    """Pull path: the agent's most recent mail, newest first, encrypted when a key is registered.

    Webhook deliveries that failed are still retrievable here.
    """
    snapshot = await fetcher.fetch(agent.email, fetch_window)
    mine = sorted(messages_for(agent.email, snapshot), key=lambda m: m.received_at, reverse=True)
    resolved_keyring = keyring or get_server_keyring()
    return [_pull_entry(agent, message, resolved_keyring) for message in mine[: max(limit, 0)]]


def latest_codes(emails: list[dict[str, Any]]) -> list[str]:
    """Codes of the newest clear-text entry; encrypted entries keep theirs sealed."""
    if not emails:
        return []
    return list(emails[0].get("codes") or [])


async def send_mail(
    agent: Agent,
    sender: MailSender,
    *,
    to: Optional[str],
    subject: Optional[str],
    body: Optional[str],
    html: Optional[str] = None,
    today: Optional[date] = None,
    limit: Optional[int] = None,
) -> dict[str, Any]:
    """Reserve one quota slot, then send over SMTP.

    The slot is taken by the conditional UPDATE before any transport work, so
    workers in separate processes cannot both pass the limit. A failed send
    keeps its slot: a relay that errored may still have accepted the message.
    """
    if not to or not subject or not body:
        raise ValidationError("Missing required fields: to, subject, body")
    assert agent.id is not None
    async with agent_send_lock(agent.id):
        status = await check_and_consume_quota(agent.id, today=today, limit=limit)
        sent = await sender.send(agent.email, to, subject, body, html)
    return {
        "success": True,
        "message_id": sent.provider_message_id,
        "from": sent.from_address,
        "to": sent.to,
        "subject": sent.subject,
        "sends_remaining": status.remaining,
    }


async def send_template(
    agent: Agent,
    sender: MailSender,
    *,
    to: Optional[str],
    template_id: Optional[str],
    variables: Optional[Mapping[str, Any]] = None,
    today: Optional[date] = None,
    limit: Optional[int] = None,
) -> dict[str, Any]:
    if not to or not template_id:
        raise ValidationError("Missing required fields: to, template_id")
    merged: dict[str, Any] = {
        "agent_name": agent.owner_name or "AI Agent",
        "agent_email": agent.email,
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
    }
    merged.update(variables or {})
    subject, body = render_template(template_id, merged)
    result = await send_mail(agent, sender, to=to, subject=subject, body=body, today=today, limit=limit)
    result["template_used"] = template_id
    return result


async def list_agents() -> list[Agent]:
    await ensure_schema()
    async with get_session() as session:
        result = await session.execute(select(Agent).order_by(Agent.id))
        return list(result.scalars().all())


async def service_stats(settings: Settings) -> dict[str, Any]:
    await ensure_schema()
    async with get_session() as session:
        total = (await session.execute(select(func.count()).select_from(Agent))).scalar_one()
        webhooks = (
            await session.execute(select(func.count()).select_from(Agent).where(Agent.webhook_url.is_not(None)))  # type: ignore[union-attr]
        ).scalar_one()
        encrypted = (
            await session.execute(select(func.count()).select_from(Agent).where(Agent.public_key.is_not(None)))  # type: ignore[union-attr]
        ).scalar_one()
    return {
        "total_agents": int(total),
        "webhooks_registered": int(webhooks),
        "encryption_enabled": int(encrypted),
        "daily_send_limit": settings.quota.daily_send_limit,
        "poll_interval_seconds": settings.poller.interval_seconds,
    }
