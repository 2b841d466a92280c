"""Per-agent daily send quota.

State lives on the agent row as ``(sends_today, last_send_date)``. A row whose
``last_send_date`` is not today counts as zero sends; the stale count is not
rewritten until the next successful consume stores the new date.
"""

from __future__ import annotations

import asyncio
import weakref
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Optional

import structlog
from sqlalchemy import case, or_, select, update

from .config import get_settings
from .db import get_session, retry_on_db_lock
from .errors import QuotaExceeded, ValidationError
from .models import Agent

_logger = structlog.get_logger(__name__)

_SEND_LOCKS: weakref.WeakValueDictionary[int, asyncio.Lock] = weakref.WeakValueDictionary()


@dataclass(slots=True, frozen=True)
class QuotaStatus:
    used: int
    limit: int
    reset_at: datetime

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)

    def to_dict(self) -> dict[str, object]:
        return {
            "sends_today": self.used,
            "sends_remaining": self.remaining,
            "daily_limit": self.limit,
            "resets_at": self.reset_at.strftime("%Y-%m-%dT%H:%M:%SZ"),
        }


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def reset_boundary(day: date) -> datetime:
    """Last second of ``day`` in UTC (naive)."""
    return datetime.combine(day, time(23, 59, 59))


def _resolve_limit(limit: Optional[int]) -> int:
    return get_settings().quota.daily_send_limit if limit is None else limit


def effective_count(agent: Agent, today: date) -> int:
    return agent.sends_today if agent.last_send_date == today else 0


def quota_status(agent: Agent, *, today: Optional[date] = None, limit: Optional[int] = None) -> QuotaStatus:
    """Read-only view of an agent's quota for ``today``."""
    day = today or utc_today()
    return QuotaStatus(used=effective_count(agent, day), limit=_resolve_limit(limit), reset_at=reset_boundary(day))


def _exceeded(day: date, limit: int) -> QuotaExceeded:
    return QuotaExceeded(
        f"Daily send limit reached ({limit} emails/day)",
        reset_at=reset_boundary(day),
        limit=limit,
    )


@retry_on_db_lock()
async def check_and_consume_quota(
    agent_id: int,
    *,
    today: Optional[date] = None,
    limit: Optional[int] = None,
) -> QuotaStatus:
    """Atomically check the limit and count one send.

    The check and the increment are a single conditional UPDATE on the agent
    row, so concurrent callers can never push the count past ``limit``.
    """
    day = today or utc_today()
    resolved_limit = _resolve_limit(limit)
    if resolved_limit <= 0:
        raise _exceeded(day, resolved_limit)

    async with get_session() as session:
        result = await session.execute(
            update(Agent)
            .where(Agent.id == agent_id)  # type: ignore[arg-type]
            .where(
                or_(
                    Agent.last_send_date.is_(None),  # type: ignore[union-attr]
                    Agent.last_send_date != day,  # type: ignore[arg-type]
                    Agent.sends_today < resolved_limit,  # type: ignore[arg-type]
                )
            )
            .values(
                sends_today=case((Agent.last_send_date == day, Agent.sends_today + 1), else_=1),  # type: ignore[arg-type]
                last_send_date=day,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            exists = (await session.execute(select(Agent.id).where(Agent.id == agent_id))).first()  # type: ignore[arg-type]
            if exists is None:
                raise ValidationError("Unknown agent", data={"agent_id": agent_id})
            _logger.info("quota.exceeded", agent_id=agent_id, limit=resolved_limit)
            raise _exceeded(day, resolved_limit)
        used = (await session.execute(select(Agent.sends_today).where(Agent.id == agent_id))).scalar_one()  # type: ignore[arg-type]
        await session.commit()
    return QuotaStatus(used=used, limit=resolved_limit, reset_at=reset_boundary(day))


def agent_send_lock(agent_id: int) -> asyncio.Lock:
    """In-process lock serialising the send path for one agent."""
    lock = _SEND_LOCKS.get(agent_id)
    if lock is None:
        lock = asyncio.Lock()
        _SEND_LOCKS[agent_id] = lock
    return lock
