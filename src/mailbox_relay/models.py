"""SQLModel tables for agent mailboxes and payment intents."""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import Column, DateTime, Index, UniqueConstraint
from sqlmodel import Field, SQLModel


def _utcnow_naive() -> datetime:
    """Current UTC time as a naive datetime; every timestamp column is declared naive."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Agent(SQLModel, table=True):
    """One registered mailbox owner.

    Watermark fields (``last_email_id``, ``last_check_ts``) are written only by
    the ingestion poller; quota fields (``sends_today``, ``last_send_date``)
    only by the quota tracker.
    """

    __tablename__ = "agents"
    __table_args__ = (
        UniqueConstraint("mailbox_id", name="uq_agent_mailbox_id"),
        UniqueConstraint("api_key", name="uq_agent_api_key"),
        Index("idx_agents_webhook", "webhook_url"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    uid: str = Field(index=True, unique=True, max_length=32)
    owner_ref: str = Field(index=True, unique=True, max_length=128)
    owner_name: str = Field(default="", max_length=255)
    mailbox_id: str = Field(max_length=32)
    email: str = Field(unique=True, max_length=320)
    api_key: str = Field(max_length=128)
    webhook_url: Optional[str] = Field(default=None, max_length=2048)
    last_email_id: Optional[str] = Field(default=None, max_length=998)
    last_check_ts: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=False), nullable=True))
    sends_today: int = Field(default=0)
    last_send_date: Optional[date] = Field(default=None)
    public_key: Optional[str] = Field(default=None, max_length=64)
    paid: bool = Field(default=False)
    created_ts: datetime = Field(default_factory=_utcnow_naive, sa_column=Column(DateTime(timezone=False), nullable=False))


class PaymentIntent(SQLModel, table=True):
    """Pending/confirmed payment that can be consumed for exactly one mailbox."""

    __tablename__ = "payment_intents"

    id: Optional[int] = Field(default=None, primary_key=True)
    reference: str = Field(index=True, unique=True, max_length=128)
    kind: str = Field(max_length=32)
    requester: str = Field(default="anonymous", max_length=255)
    amount: float
    currency: str = Field(default="USDC", max_length=16)
    status: str = Field(default="pending", max_length=16)  # pending | confirmed | failed
    signature: Optional[str] = Field(default=None, max_length=128)
    consumed: bool = Field(default=False)
    created_ts: datetime = Field(default_factory=_utcnow_naive, sa_column=Column(DateTime(timezone=False), nullable=False))
    confirmed_ts: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=False), nullable=True))
