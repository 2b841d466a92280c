"""Ingestion poller: shared-mailbox snapshot -> per-agent webhooks.

Each cycle fetches the shared mailbox once and fans out to every agent that
has a webhook. Per agent: keep the messages addressed to it, drop what the
watermark says was already delivered, enrich (codes, optional encryption),
dispatch, then advance the watermark whether or not dispatch succeeded. The
watermark time is the later of the poll time and the newest arrival seen.
Agents never share state inside a cycle, so they are processed concurrently.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

import httpx
import structlog
from sqlalchemy import select

from .codes import message_codes
from .config import MailSettings, PollerSettings, Settings
from .crypto import ServerKeyring, encrypt_for, get_server_keyring
from .db import ensure_schema, get_session
from .dispatcher import WebhookDispatcher, build_envelope, sealed_content
from .models import Agent
from .transport import ImapMailFetcher, InboundMessage, MailFetcher
from .watermark import Watermark, latest_message, messages_for, record_delivery, select_new_messages

_logger = structlog.get_logger(__name__)


def _utcnow_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass(slots=True)
class PollReport:
    started_at: datetime
    agents_polled: int = 0
    messages_dispatched: int = 0
    deliveries_failed: int = 0
    fetch_failed: bool = False
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "started_at": self.started_at.isoformat(),
            "agents_polled": self.agents_polled,
            "messages_dispatched": self.messages_dispatched,
            "deliveries_failed": self.deliveries_failed,
            "fetch_failed": self.fetch_failed,
            "errors": list(self.errors),
        }


class IngestionPoller:
    def __init__(
        self,
        fetcher: MailFetcher,
        dispatcher: WebhookDispatcher,
        *,
        poller_settings: PollerSettings,
        mail_settings: MailSettings,
        keyring: Optional[ServerKeyring] = None,
        clock: Callable[[], datetime] = _utcnow_naive,
    ) -> None:
        self._fetcher = fetcher
        self._dispatcher = dispatcher
        self._settings = poller_settings
        self._mail = mail_settings
        self._keyring = keyring or get_server_keyring()
        self._clock = clock

    async def _subscribed_agents(self) -> list[Agent]:
        async with get_session() as session:
            result = await session.execute(
                select(Agent).where(Agent.webhook_url.is_not(None)).order_by(Agent.id)  # type: ignore[union-attr]
            )
            return list(result.scalars().all())

    async def poll_once(self) -> PollReport:
        """Run exactly one ingestion cycle."""
        await ensure_schema()
        poll_time = self._clock()
        report = PollReport(started_at=poll_time)
        agents = await self._subscribed_agents()
        if not agents:
            return report

        try:
            snapshot = await self._fetcher.fetch(self._mail.base_address, self._settings.fetch_window)
        except Exception as exc:
            # No new mail for anyone this cycle; the next cycle retries the fetch.
            _logger.warning("poll.fetch_failed", error=str(exc), agents=len(agents))
            report.fetch_failed = True
            report.errors.append(f"fetch: {exc}")
            return report

        results = await asyncio.gather(
            *(self._poll_agent(agent, snapshot, poll_time, report) for agent in agents),
            return_exceptions=True,
        )
        for agent, result in zip(agents, results):
            report.agents_polled += 1
            if isinstance(result, Exception):
                _logger.error("poll.agent_failed", agent_id=agent.id, mailbox_id=agent.mailbox_id, error=str(result))
                report.errors.append(f"{agent.mailbox_id}: {result}")

        _logger.info(
            "poll.cycle",
            agents=report.agents_polled,
            dispatched=report.messages_dispatched,
            failed=report.deliveries_failed,
        )
        return report

    async def _poll_agent(
        self,
        agent: Agent,
        snapshot: list[InboundMessage],
        poll_time: datetime,
        report: PollReport,
    ) -> None:
        assert agent.id is not None
        mine = messages_for(agent.email, snapshot)
        new_messages = select_new_messages(mine, Watermark.of(agent))
        if not new_messages:
            return

        for message in new_messages:
            try:
                delivered = await self._deliver(agent, message)
            except Exception as exc:
                _logger.warning(
                    "poll.message_failed",
                    agent_id=agent.id,
                    message_id=message.id,
                    error=str(exc),
                )
                delivered = False
            if delivered:
                report.messages_dispatched += 1
            else:
                report.deliveries_failed += 1

        latest = latest_message(mine)
        assert latest is not None
        # Mail dated after the poll must not pass the time check again next cycle.
        await record_delivery(agent.id, latest.id, max(poll_time, latest.received_at))

    async def _deliver(self, agent: Agent, message: InboundMessage) -> bool:
        codes = message_codes(message)
        encrypted = None
        if agent.public_key:
            # EncryptionError propagates: never fall back to plaintext.
            encrypted = encrypt_for(sealed_content(message, codes), agent.public_key, self._keyring)
        envelope = build_envelope(agent.mailbox_id, message, codes, encrypted)
        assert agent.webhook_url is not None
        outcome = await self._dispatcher.dispatch(agent.webhook_url, envelope)
        return outcome.delivered

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        """Drive cycles every ``interval_seconds`` until ``stop_event`` is set."""
        delay = self._settings.initial_delay_seconds
        while not stop_event.is_set():
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(stop_event.wait(), timeout=delay)
            if stop_event.is_set():
                break
            try:
                await self.poll_once()
            except Exception as exc:
                _logger.error("poll.cycle_failed", error=str(exc))
            delay = self._settings.interval_seconds


def build_poller(settings: Settings, client: httpx.AsyncClient, *, fetcher: Optional[MailFetcher] = None) -> IngestionPoller:
    """Poller wired to the IMAP inbox and an httpx webhook dispatcher."""
    return IngestionPoller(
        fetcher or ImapMailFetcher(settings.mail),
        WebhookDispatcher(client, timeout=settings.poller.webhook_timeout_seconds),
        poller_settings=settings.poller,
        mail_settings=settings.mail,
    )
