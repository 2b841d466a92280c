import contextlib
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

import pytest

from mailbox_relay.config import clear_settings_cache
from mailbox_relay.db import reset_database_state
from mailbox_relay.errors import TransportError
from mailbox_relay.identity import OwnerIdentity
from mailbox_relay.payments import PaymentCheck
from mailbox_relay.transport import InboundMessage, SentMail

BASE_TIME = datetime(2026, 3, 1, 12, 0, 0)


def make_message(
    message_id: str,
    to: str,
    *,
    minutes: int = 0,
    subject: str = "Hello",
    body: str = "Hi there",
    sender: str = "someone@example.org",
) -> InboundMessage:
    """Build an inbound message ``minutes`` after ``BASE_TIME``."""
    return InboundMessage(
        id=message_id,
        sender=sender,
        to=to,
        subject=subject,
        body=body,
        received_at=BASE_TIME + timedelta(minutes=minutes),
        recipients=(to,),
    )


class FakeFetcher:
    """Returns a fixed snapshot of the shared mailbox (newest first)."""

    def __init__(self, messages: Optional[list[InboundMessage]] = None, *, fail: bool = False):
        self.messages = list(messages or [])
        self.fail = fail
        self.calls = 0

    async def fetch(self, mailbox_address: str, max_count: int) -> list[InboundMessage]:
        self.calls += 1
        if self.fail:
            raise TransportError("IMAP connection refused")
        ordered = sorted(self.messages, key=lambda m: m.received_at, reverse=True)
        return ordered[:max_count]


class FakeSender:
    def __init__(self, *, fail: bool = False):
        self.fail = fail
        self.sent: list[dict[str, Optional[str]]] = []

    async def send(self, from_address, to, subject, body, html=None) -> SentMail:
        if self.fail:
            raise TransportError("SMTP relay rejected the message")
        self.sent.append({"from": from_address, "to": to, "subject": subject, "body": body, "html": html})
        return SentMail(
            provider_message_id=f"<sent-{len(self.sent)}@relay.test>",
            from_address=from_address,
            to=to,
            subject=subject,
        )


class FakeIdentityVerifier:
    """Accepts ``key-<owner>`` credentials and rejects everything else."""

    async def verify(self, credential: str) -> Optional[OwnerIdentity]:
        if not credential.startswith("key-"):
            return None
        owner = credential.removeprefix("key-")
        return OwnerIdentity(owner_id=f"owner-{owner}", owner_name=owner.title())


class FakePaymentVerifier:
    """Reports every reference in ``confirmed`` as paid."""

    def __init__(self) -> None:
        self.confirmed: set[str] = set()
        self.failed: set[str] = set()

    async def verify(self, reference: str) -> PaymentCheck:
        if reference in self.confirmed:
            return PaymentCheck(verified=True, status="confirmed", signature=f"sig-{reference[:6]}")
        if reference in self.failed:
            return PaymentCheck(verified=False, status="failed")
        return PaymentCheck(verified=False, status="pending")


@pytest.fixture
def isolated_env(tmp_path, monkeypatch):
    """Provide isolated database and mail settings for tests and reset caches."""
    db_path: Path = tmp_path / "test.sqlite3"
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.setenv("APP_ENVIRONMENT", "test")
    monkeypatch.setenv("MAIL_USER", "kai@relay.test")
    monkeypatch.setenv("POLL_ENABLED", "false")
    monkeypatch.setenv("SEND_DAILY_LIMIT", "10")
    clear_settings_cache()
    reset_database_state()
    try:
        yield
    finally:
        clear_settings_cache()
        reset_database_state()
        if db_path.exists():
            db_path.unlink()


@pytest.fixture(autouse=True)
def _global_resource_cleanup():
    """Dispose engine state even for tests that skip ``isolated_env``."""
    yield
    with contextlib.suppress(Exception):
        reset_database_state()
    with contextlib.suppress(Exception):
        clear_settings_cache()


@pytest.fixture
def fake_identity() -> FakeIdentityVerifier:
    return FakeIdentityVerifier()


@pytest.fixture
def fake_payments() -> FakePaymentVerifier:
    return FakePaymentVerifier()


@pytest.fixture
def fake_sender() -> FakeSender:
    return FakeSender()
