"""Per-agent delivery watermark and the pure routing/dedup functions.

A watermark is ``(last_email_id, last_check_ts)``. A message is new for an
agent when its id differs from ``last_email_id`` AND it was received after
``last_check_ts``. Both conditions are kept: a transport that recycles ids
after a mailbox compaction still cannot replay old mail.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import update

from .db import get_session, retry_on_db_lock
from .models import Agent
from .transport import InboundMessage

_EPOCH = datetime(1970, 1, 1)


@dataclass(slots=True, frozen=True)
class Watermark:
    last_email_id: Optional[str] = None
    last_check_ts: Optional[datetime] = None

    @classmethod
    def of(cls, agent: Agent) -> Watermark:
        return cls(last_email_id=agent.last_email_id, last_check_ts=agent.last_check_ts)


def address_matches(agent_address: str, message: InboundMessage) -> bool:
    """Exact, case-insensitive match of any ``To`` recipient against the agent address."""
    target = agent_address.strip().casefold()
    if not target:
        return False
    return any(addr.strip().casefold() == target for addr in message.recipients)


def messages_for(agent_address: str, messages: Iterable[InboundMessage]) -> list[InboundMessage]:
    return [message for message in messages if address_matches(agent_address, message)]


def select_new_messages(messages: Iterable[InboundMessage], watermark: Watermark) -> list[InboundMessage]:
    """Messages not yet delivered under ``watermark``; input order is kept."""
    if watermark.last_email_id is None:
        return list(messages)
    since = watermark.last_check_ts or _EPOCH
    return [
        message
        for message in messages
        if message.id != watermark.last_email_id and message.received_at > since
    ]


def latest_message(messages: Iterable[InboundMessage]) -> Optional[InboundMessage]:
    return max(messages, key=lambda message: message.received_at, default=None)


@retry_on_db_lock()
async def record_delivery(agent_id: int, message_id: str, poll_time: datetime) -> None:
    """Advance one agent's watermark. Touches no other row."""
    async with get_session() as session:
        await session.execute(
            update(Agent)
            .where(Agent.id == agent_id)  # type: ignore[arg-type]
            .values(last_email_id=message_id, last_check_ts=poll_time)
        )
        await session.commit()
