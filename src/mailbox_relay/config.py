"""Application configuration loaded via python-decouple with typed helpers."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Final, Protocol, cast

from decouple import (
    Config as DecoupleConfig,
    RepositoryEmpty,
    RepositoryEnv,
)

_DOTENV_PATH: Final[Path] = Path(".env")


def _build_decouple_config() -> DecoupleConfig:
    # Missing .env (CI/tests) falls back to os.environ only.
    try:
        return DecoupleConfig(RepositoryEnv(str(_DOTENV_PATH)))
    except FileNotFoundError:
        return DecoupleConfig(RepositoryEmpty())


_decouple_config: Final[DecoupleConfig] = _build_decouple_config()


@dataclass(slots=True, frozen=True)
class HttpSettings:
    """HTTP surface settings."""

    host: str
    port: int
    request_log_enabled: bool


@dataclass(slots=True, frozen=True)
class DatabaseSettings:
    """Database connectivity settings."""

    url: str
    echo: bool
    pool_size: int | None
    max_overflow: int | None
    pool_timeout: int | None


@dataclass(slots=True, frozen=True)
class MailSettings:
    """Shared mailbox credentials and transport endpoints.

    Every agent address is a plus-subaddress of the shared account:
    ``{local_part}+{mailbox_id}@{domain}``.
    """

    user: str
    password: str
    local_part: str
    domain: str
    imap_host: str
    imap_port: int
    imap_folder: str
    smtp_host: str
    smtp_port: int
    smtp_starttls: bool
    transport_timeout_seconds: float

    @property
    def base_address(self) -> str:
        return f"{self.local_part}@{self.domain}"

    def address_for(self, mailbox_id: str) -> str:
        return f"{self.local_part}+{mailbox_id}@{self.domain}"


@dataclass(slots=True, frozen=True)
class PollerSettings:
    """Ingestion poller cadence and webhook delivery limits."""

    enabled: bool
    interval_seconds: float
    initial_delay_seconds: float
    fetch_window: int
    webhook_timeout_seconds: float


@dataclass(slots=True, frozen=True)
class QuotaSettings:
    daily_send_limit: int


@dataclass(slots=True, frozen=True)
class IdentitySettings:
    """Third-party agent identity verification endpoint."""

    base_url: str
    timeout_seconds: float


@dataclass(slots=True, frozen=True)
class PaymentSettings:
    verify_url: str
    recipient: str
    currency: str
    timeout_seconds: float


@dataclass(slots=True, frozen=True)
class Settings:
    """Top-level application settings."""

    environment: str
    http: HttpSettings
    database: DatabaseSettings
    mail: MailSettings
    poller: PollerSettings
    quota: QuotaSettings
    identity: IdentitySettings
    payments: PaymentSettings
    # Logging
    log_level: str
    log_json_enabled: bool


def _bool(value: str, *, default: bool) -> bool:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "t", "yes", "y"}:
        return True
    if normalized in {"0", "false", "f", "no", "n"}:
        return False
    return default


def _int(value: str, *, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _int_optional(value: str) -> int | None:
    text = str(value or "").strip()
    if not text:
        return None
    try:
        return int(text)
    except (TypeError, ValueError):
        return None


def _float(value: str, *, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""
    environment = _decouple_config("APP_ENVIRONMENT", default="development")

    http_settings = HttpSettings(
        host=_decouple_config("HTTP_HOST", default="127.0.0.1"),
        port=_int(_decouple_config("HTTP_PORT", default="3456"), default=3456),
        request_log_enabled=_bool(_decouple_config("HTTP_REQUEST_LOG_ENABLED", default="false"), default=False),
    )

    database_settings = DatabaseSettings(
        url=_decouple_config("DATABASE_URL", default="sqlite+aiosqlite:///./mailbox_relay.sqlite3"),
        echo=_bool(_decouple_config("DATABASE_ECHO", default="false"), default=False),
        pool_size=_int_optional(_decouple_config("DATABASE_POOL_SIZE", default="")),
        max_overflow=_int_optional(_decouple_config("DATABASE_MAX_OVERFLOW", default="")),
        pool_timeout=_int_optional(_decouple_config("DATABASE_POOL_TIMEOUT", default="")),
    )

    mail_user = _decouple_config("MAIL_USER", default="relay@example.com")
    default_local, _, default_domain = mail_user.partition("@")
    mail_settings = MailSettings(
        user=mail_user,
        password=_decouple_config("MAIL_PASSWORD", default=""),
        local_part=_decouple_config("MAIL_LOCAL_PART", default=default_local or "relay"),
        domain=_decouple_config("MAIL_DOMAIN", default=default_domain or "example.com"),
        imap_host=_decouple_config("IMAP_HOST", default="imap.example.com"),
        imap_port=_int(_decouple_config("IMAP_PORT", default="993"), default=993),
        imap_folder=_decouple_config("IMAP_FOLDER", default="INBOX"),
        smtp_host=_decouple_config("SMTP_HOST", default="smtp.example.com"),
        smtp_port=_int(_decouple_config("SMTP_PORT", default="587"), default=587),
        smtp_starttls=_bool(_decouple_config("SMTP_STARTTLS", default="true"), default=True),
        transport_timeout_seconds=_float(_decouple_config("MAIL_TIMEOUT_SECONDS", default="30"), default=30.0),
    )

    poller_settings = PollerSettings(
        enabled=_bool(_decouple_config("POLL_ENABLED", default="true"), default=True),
        interval_seconds=_float(_decouple_config("POLL_INTERVAL_SECONDS", default="30"), default=30.0),
        initial_delay_seconds=_float(_decouple_config("POLL_INITIAL_DELAY_SECONDS", default="5"), default=5.0),
        fetch_window=max(1, _int(_decouple_config("POLL_FETCH_WINDOW", default="50"), default=50)),
        webhook_timeout_seconds=_float(_decouple_config("WEBHOOK_TIMEOUT_SECONDS", default="10"), default=10.0),
    )

    quota_settings = QuotaSettings(
        daily_send_limit=_int(_decouple_config("SEND_DAILY_LIMIT", default="10"), default=10),
    )

    identity_settings = IdentitySettings(
        base_url=_decouple_config("IDENTITY_BASE_URL", default="https://www.moltbook.com/api/v1").rstrip("/"),
        timeout_seconds=_float(_decouple_config("IDENTITY_TIMEOUT_SECONDS", default="10"), default=10.0),
    )

    payment_settings = PaymentSettings(
        verify_url=_decouple_config("PAYMENT_VERIFY_URL", default="").rstrip("/"),
        recipient=_decouple_config("PAYMENT_RECIPIENT", default=""),
        currency=_decouple_config("PAYMENT_CURRENCY", default="USDC"),
        timeout_seconds=_float(_decouple_config("PAYMENT_TIMEOUT_SECONDS", default="15"), default=15.0),
    )

    return Settings(
        environment=environment,
        http=http_settings,
        database=database_settings,
        mail=mail_settings,
        poller=poller_settings,
        quota=quota_settings,
        identity=identity_settings,
        payments=payment_settings,
        log_level=_decouple_config("LOG_LEVEL", default="INFO"),
        log_json_enabled=_bool(_decouple_config("LOG_JSON_ENABLED", default="false"), default=False),
    )


class _CacheClearable(Protocol):
    def cache_clear(self) -> None: ...


def clear_settings_cache() -> None:
    """Clear the lru_cache for get_settings in a type-checker-friendly way."""
    cache_clear = getattr(cast(_CacheClearable, get_settings), "cache_clear", None)
    if callable(cache_clear):
        cache_clear()
