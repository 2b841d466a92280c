"""Error taxonomy shared by the core, the HTTP surface and the CLI."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional


class MailboxError(Exception):
    """Base class for errors that carry a structured, user-visible reason."""

    error_type = "MAILBOX_ERROR"
    status_code = 500

    def __init__(self, message: str, *, data: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.data = data or {}

    def to_payload(self) -> dict[str, Any]:
        return {
            "error": {
                "type": self.error_type,
                "message": str(self),
                "data": self.data,
            }
        }


class ValidationError(MailboxError):
    error_type = "VALIDATION_ERROR"
    status_code = 400


class AuthError(MailboxError):
    error_type = "AUTH_ERROR"
    status_code = 401


class PaymentRequired(MailboxError):
    error_type = "PAYMENT_REQUIRED"
    status_code = 402


class QuotaExceeded(MailboxError):
    """Daily send limit reached; ``reset_at`` is the end of the UTC day."""

    error_type = "QUOTA_EXCEEDED"
    status_code = 429

    def __init__(self, message: str, *, reset_at: datetime, limit: int):
        self.reset_at = reset_at
        self.limit = limit
        super().__init__(message, data={"resets_at": reset_at.strftime("%Y-%m-%dT%H:%M:%SZ"), "limit": limit})


class TransportError(MailboxError):
    """Mail fetch/send, webhook or verification call failed."""

    error_type = "TRANSPORT_ERROR"
    status_code = 502


class EncryptionError(MailboxError):
    error_type = "ENCRYPTION_ERROR"
    status_code = 400


__all__ = [
    "AuthError",
    "EncryptionError",
    "MailboxError",
    "PaymentRequired",
    "QuotaExceeded",
    "TransportError",
    "ValidationError",
]
