"""Payment intents: request -> external confirmation -> consumed once.

An intent moves ``pending -> confirmed`` (or ``failed``) only on the word of
the external verifier, and can be consumed at most once; consumption is a
conditional UPDATE so two concurrent redemptions cannot both succeed.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Protocol
from urllib.parse import quote

import httpx
import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from .config import PaymentSettings
from .db import ensure_schema, get_session, retry_on_db_lock
from .errors import PaymentRequired, TransportError, ValidationError
from .models import PaymentIntent

_logger = structlog.get_logger(__name__)


class PaymentKind(str, Enum):
    MAILBOX_BASIC = "mailbox_basic"
    MAILBOX_PREMIUM = "mailbox_premium"
    SEND_EMAIL = "send_email"


PRICES: dict[str, float] = {
    PaymentKind.MAILBOX_BASIC.value: 0.50,
    PaymentKind.MAILBOX_PREMIUM.value: 2.00,
    PaymentKind.SEND_EMAIL.value: 0.01,
}

MAILBOX_KINDS = frozenset({PaymentKind.MAILBOX_BASIC.value, PaymentKind.MAILBOX_PREMIUM.value})


@dataclass(slots=True, frozen=True)
class PaymentCheck:
    verified: bool
    status: str
    signature: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {"verified": self.verified, "status": self.status, "signature": self.signature}


class PaymentVerifier(Protocol):
    async def verify(self, reference: str) -> PaymentCheck: ...


class HttpPaymentVerifier:
    """Asks a payment-verification service about ``reference``.

    The service answers ``{"verified": bool, "status": str, "signature": str?}``.
    """

    def __init__(self, client: httpx.AsyncClient, settings: PaymentSettings):
        self._client = client
        self._settings = settings

    async def verify(self, reference: str) -> PaymentCheck:
        if not self._settings.verify_url:
            raise TransportError("Payment verification is not configured")
        try:
            response = await self._client.get(
                f"{self._settings.verify_url}/{quote(reference, safe='')}",
                timeout=self._settings.timeout_seconds,
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            _logger.warning("payment.verify_failed", reference=reference, error=str(exc))
            raise TransportError("Payment verification failed") from exc
        return PaymentCheck(
            verified=bool(data.get("verified")),
            status=str(data.get("status") or "pending"),
            signature=data.get("signature"),
        )


def price_list(settings: PaymentSettings) -> dict[str, Any]:
    return {"prices": dict(PRICES), "currency": settings.currency, "recipient": settings.recipient}


def _utcnow_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


async def create_payment_intent(kind: str, requester: Optional[str], settings: PaymentSettings) -> PaymentIntent:
    if kind not in PRICES:
        raise ValidationError(f"Unknown payment type: {kind}", data={"available": sorted(PRICES)})
    await ensure_schema()
    intent = PaymentIntent(
        reference=secrets.token_urlsafe(32),
        kind=kind,
        requester=(requester or "anonymous")[:255],
        amount=PRICES[kind],
        currency=settings.currency,
    )
    async with get_session() as session:
        session.add(intent)
        await session.commit()
        await session.refresh(intent)
    return intent


async def get_payment_intent(reference: str) -> Optional[PaymentIntent]:
    await ensure_schema()
    async with get_session() as session:
        result = await session.execute(select(PaymentIntent).where(PaymentIntent.reference == reference))
        return result.scalars().first()


@retry_on_db_lock()
async def refresh_payment_status(reference: str, verifier: PaymentVerifier) -> PaymentCheck:
    """Ask the verifier and record a confirmation or failure on a pending intent."""
    check = await verifier.verify(reference)
    if check.verified:
        values: dict[str, Any] = {"status": "confirmed", "signature": check.signature, "confirmed_ts": _utcnow_naive()}
    elif check.status == "failed":
        values = {"status": "failed"}
    else:
        return check
    await ensure_schema()
    async with get_session() as session:
        await session.execute(
            update(PaymentIntent)
            .where(PaymentIntent.reference == reference)  # type: ignore[arg-type]
            .where(PaymentIntent.status == "pending")  # type: ignore[arg-type]
            .values(**values)
        )
        await session.commit()
    return check


async def redeemable_intent(reference: str) -> PaymentIntent:
    """The confirmed mailbox intent behind ``reference``; raises when it cannot buy a mailbox."""
    intent = await get_payment_intent(reference)
    if intent is None:
        raise ValidationError("Unknown payment reference")
    if intent.kind not in MAILBOX_KINDS:
        raise ValidationError("Payment does not purchase a mailbox", data={"kind": intent.kind})
    if intent.status != "confirmed":
        raise PaymentRequired("Payment not confirmed", data={"status": intent.status})
    if intent.consumed:
        raise ValidationError("Payment already used")
    return intent


async def claim_payment_intent(session: AsyncSession, reference: str) -> None:
    """Mark ``reference`` consumed inside the caller's transaction.

    Nothing is committed here, so a caller that rolls back leaves the intent redeemable.
    """
    result = await session.execute(
        update(PaymentIntent)
        .where(PaymentIntent.reference == reference)  # type: ignore[arg-type]
        .where(PaymentIntent.consumed == False)  # type: ignore[arg-type]  # noqa: E712
        .values(consumed=True)
    )
    if result.rowcount == 0:
        raise ValidationError("Payment already used")

