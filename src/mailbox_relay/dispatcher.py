"""Webhook delivery of ``email.received`` notifications.

One POST per message per subscriber. A failed delivery is logged and
reported, never raised and never retried: the pull endpoint remains the
fallback for anything a webhook missed.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Optional

import httpx
import structlog

from .crypto import EncryptedPayload
from .transport import InboundMessage

EVENT_EMAIL_RECEIVED = "email.received"

_logger = structlog.get_logger(__name__)


@dataclass(slots=True, frozen=True)
class DeliveryOutcome:
    url: str
    message_id: str
    delivered: bool
    status_code: Optional[int] = None
    error: Optional[str] = None


def clear_email_fields(message: InboundMessage, codes: list[str]) -> dict[str, Any]:
    fields = message.to_dict()
    fields["codes"] = codes
    return fields


def sealed_content(message: InboundMessage, codes: list[str]) -> str:
    """JSON document that gets encrypted for agents with a registered key."""
    fields = clear_email_fields(message, codes)
    return json.dumps({key: fields[key] for key in ("from", "to", "subject", "body", "codes")}, ensure_ascii=False)


def build_envelope(
    mailbox_id: str,
    message: InboundMessage,
    codes: list[str],
    encrypted: Optional[EncryptedPayload] = None,
) -> dict[str, Any]:
    """Notification body. Encrypted envelopes keep only id and timestamp in clear."""
    if encrypted is None:
        email_part = clear_email_fields(message, codes)
    else:
        clear = message.to_dict()
        email_part = {
            "id": clear["id"],
            "received_at": clear["received_at"],
            "encrypted": True,
            **encrypted.to_dict(),
        }
    return {"event": EVENT_EMAIL_RECEIVED, "mailbox_id": mailbox_id, "email": email_part}


class WebhookDispatcher:
    """Posts envelopes with a bounded timeout over a shared ``httpx.AsyncClient``."""

    def __init__(self, client: httpx.AsyncClient, *, timeout: float = 10.0):
        self._client = client
        self._timeout = timeout

    async def dispatch(self, url: str, envelope: dict[str, Any]) -> DeliveryOutcome:
        message_id = str(envelope.get("email", {}).get("id", ""))
        try:
            response = await self._client.post(
                url,
                json=envelope,
                timeout=self._timeout,
                headers={"Content-Type": "application/json"},
            )
        except httpx.TimeoutException:
            _logger.warning("webhook.timeout", url=url, message_id=message_id, timeout=self._timeout)
            return DeliveryOutcome(url=url, message_id=message_id, delivered=False, error="timeout")
        except httpx.HTTPError as exc:
            _logger.warning("webhook.failed", url=url, message_id=message_id, error=str(exc))
            return DeliveryOutcome(url=url, message_id=message_id, delivered=False, error=type(exc).__name__)
        if response.is_success:
            _logger.info("webhook.delivered", url=url, message_id=message_id, status=response.status_code)
            return DeliveryOutcome(url=url, message_id=message_id, delivered=True, status_code=response.status_code)
        _logger.warning("webhook.rejected", url=url, message_id=message_id, status=response.status_code)
        return DeliveryOutcome(
            url=url,
            message_id=message_id,
            delivered=False,
            status_code=response.status_code,
            error=f"HTTP {response.status_code}",
        )
