"""HTTP transport for the mailbox relay (FastAPI), plus the background ingestion poller."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
import structlog
import uvicorn
from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from . import __version__
from .config import Settings, get_settings
from .crypto import ServerKeyring, generate_keypair, get_server_keyring
from .db import ensure_schema
from .errors import MailboxError, ValidationError
from .identity import HttpIdentityVerifier, IdentityVerifier
from .mailboxes import (
    authenticate,
    create_mailbox,
    create_paid_mailbox,
    encryption_status,
    fetch_emails,
    latest_codes,
    mailbox_info,
    send_mail,
    send_template,
    service_stats,
    set_public_key,
    set_webhook,
)
from .models import Agent
from .payments import (
    HttpPaymentVerifier,
    PaymentVerifier,
    create_payment_intent,
    get_payment_intent,
    price_list,
    refresh_payment_status,
)
from .poller import build_poller
from .templates import list_templates
from .transport import ImapMailFetcher, MailFetcher, MailSender, SmtpMailSender

_LOGGING_CONFIGURED = False

FEATURES = [
    "Dedicated mailbox address per agent",
    "Webhook push on new mail",
    "Verification code extraction",
    "End-to-end encryption (X25519)",
    "Rate-limited outbound email",
    "Email templates",
    "Paid mailboxes",
]


def _configure_logging(settings: Settings) -> None:
    """Initialize structlog and stdlib logging formatting."""
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
    ]
    if settings.log_json_enabled:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.processors.KeyValueRenderer(key_order=["event", "path", "status"]))
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, settings.log_level.upper(), logging.INFO)),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))

    # aiosqlite logs every cursor operation at DEBUG
    logging.getLogger("aiosqlite").setLevel(logging.INFO)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    _LOGGING_CONFIGURED = True


def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def require_agent(request: Request) -> Agent:
    return await authenticate(_bearer_token(request))


async def _json_body(request: Request) -> dict[str, Any]:
    raw = await request.body()
    if not raw:
        return {}
    try:
        data = await request.json()
    except ValueError as exc:
        raise ValidationError("Malformed JSON body") from exc
    if not isinstance(data, dict):
        raise ValidationError("JSON body must be an object")
    return data


def build_http_app(
    settings: Settings,
    *,
    fetcher: Optional[MailFetcher] = None,
    sender: Optional[MailSender] = None,
    identity_verifier: Optional[IdentityVerifier] = None,
    payment_verifier: Optional[PaymentVerifier] = None,
    keyring: Optional[ServerKeyring] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """Assemble the FastAPI app; collaborators default to the IMAP/SMTP/httpx adapters."""
    _configure_logging(settings)
    client = http_client or httpx.AsyncClient(follow_redirects=False)
    owns_client = http_client is None

    async def _startup() -> None:
        await ensure_schema()
        tasks: list[asyncio.Task[None]] = []
        stop_event = asyncio.Event()
        if settings.poller.enabled:
            poller = build_poller(settings, client, fetcher=fastapi_app.state.fetcher)
            tasks.append(asyncio.create_task(poller.run_forever(stop_event)))
            structlog.get_logger("poller").info(
                "poller.started",
                interval_seconds=settings.poller.interval_seconds,
                initial_delay_seconds=settings.poller.initial_delay_seconds,
            )
        fastapi_app.state._stop_event = stop_event
        fastapi_app.state._background_tasks = tasks

    async def _shutdown() -> None:  # pragma: no cover - service lifecycle
        stop_event = getattr(fastapi_app.state, "_stop_event", None)
        if stop_event is not None:
            stop_event.set()
        tasks = getattr(fastapi_app.state, "_background_tasks", [])
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if owns_client:
            await client.aclose()

    @asynccontextmanager
    async def lifespan_context(app: FastAPI):
        await _startup()
        try:
            yield
        finally:
            await _shutdown()

    fastapi_app = FastAPI(title="Mailbox Relay", version=__version__, lifespan=lifespan_context)
    fastapi_app.state.settings = settings
    fastapi_app.state.fetcher = fetcher or ImapMailFetcher(settings.mail)
    fastapi_app.state.sender = sender or SmtpMailSender(settings.mail)
    fastapi_app.state.identity_verifier = identity_verifier or HttpIdentityVerifier(client, settings.identity)
    fastapi_app.state.payment_verifier = payment_verifier or HttpPaymentVerifier(client, settings.payments)
    fastapi_app.state.keyring = keyring or get_server_keyring()

    if settings.http.request_log_enabled:

        class RequestLoggingMiddleware(BaseHTTPMiddleware):
            async def dispatch(self, request: Request, call_next: RequestResponseEndpoint):
                start = time.time()
                response = await call_next(request)
                structlog.get_logger("http").info(
                    "request",
                    method=request.method,
                    path=request.url.path,
                    status=getattr(response, "status_code", 0),
                    duration_ms=int((time.time() - start) * 1000),
                    client_ip=request.client.host if request.client else "-",
                )
                return response

        fastapi_app.add_middleware(RequestLoggingMiddleware)

    @fastapi_app.exception_handler(MailboxError)
    async def _mailbox_error(request: Request, exc: MailboxError) -> JSONResponse:
        return JSONResponse(exc.to_payload(), status_code=exc.status_code)

    @fastapi_app.exception_handler(Exception)
    async def _unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        structlog.get_logger("http").exception("request.failed", path=request.url.path, error=str(exc))
        return JSONResponse(
            {"error": {"type": "INTERNAL_ERROR", "message": "Internal server error", "data": {}}},
            status_code=500,
        )

    # ----- health & discovery -----

    @fastapi_app.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok", "service": "agent-mail"}

    @fastapi_app.get("/api/health")
    async def api_health() -> dict[str, Any]:
        return {
            "status": "healthy",
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        }

    @fastapi_app.get("/api/stats")
    async def stats() -> dict[str, Any]:
        return {
            "service": "Agent Mail",
            "status": "operational",
            "stats": await service_stats(settings),
            "features": FEATURES,
        }

    @fastapi_app.get("/api/templates")
    async def templates() -> dict[str, Any]:
        return {"templates": list_templates()}

    # ----- mailbox lifecycle -----

    @fastapi_app.post("/api/mailbox/create")
    async def mailbox_create(request: Request) -> dict[str, Any]:
        body = await _json_body(request)
        agent, created = await create_mailbox(
            str(body.get("moltbook_key") or ""),
            request.app.state.identity_verifier,
            settings.mail,
        )
        return {
            "email": agent.email,
            "mailbox_id": agent.mailbox_id,
            "api_key": agent.api_key,
            "message": "Mailbox created successfully" if created else "Mailbox already exists",
        }

    @fastapi_app.post("/api/mailbox/create-paid")
    async def mailbox_create_paid(request: Request) -> dict[str, Any]:
        body = await _json_body(request)
        agent, check = await create_paid_mailbox(
            str(body.get("reference") or ""),
            body.get("agent_name"),
            request.app.state.payment_verifier,
            settings.mail,
        )
        return {
            "email": agent.email,
            "mailbox_id": agent.mailbox_id,
            "api_key": agent.api_key,
            "paid": True,
            "payment_signature": check.signature,
            "message": "Paid mailbox created successfully",
        }

    @fastapi_app.get("/api/mailbox")
    async def mailbox_get(agent: Agent = Depends(require_agent)) -> dict[str, Any]:
        return mailbox_info(agent, limit=settings.quota.daily_send_limit)

    @fastapi_app.get("/api/mailbox/emails")
    async def mailbox_emails(
        request: Request,
        limit: int = Query(10, ge=1, le=100),
        codes: bool = Query(False),
        agent: Agent = Depends(require_agent),
    ) -> dict[str, Any]:
        emails = await fetch_emails(
            agent,
            request.app.state.fetcher,
            limit=limit,
            fetch_window=max(settings.poller.fetch_window, limit),
            keyring=request.app.state.keyring,
        )
        if codes:
            return {"codes": latest_codes(emails)}
        return {"emails": emails}

    @fastapi_app.put("/api/mailbox/webhook")
    async def webhook_put(request: Request, agent: Agent = Depends(require_agent)) -> dict[str, Any]:
        body = await _json_body(request)
        url = body.get("webhook_url")
        if url is not None and not isinstance(url, str):
            raise ValidationError("webhook_url must be a string")
        assert agent.id is not None
        updated = await set_webhook(agent.id, url or None)
        return {
            "success": True,
            "webhook_url": updated.webhook_url,
            "message": "Webhook registered" if updated.webhook_url else "Webhook removed",
        }

    @fastapi_app.delete("/api/mailbox/webhook")
    async def webhook_delete(agent: Agent = Depends(require_agent)) -> dict[str, Any]:
        assert agent.id is not None
        await set_webhook(agent.id, None)
        return {"success": True, "message": "Webhook removed"}

    # ----- outbound -----

    @fastapi_app.post("/api/mailbox/send")
    async def mailbox_send(request: Request, agent: Agent = Depends(require_agent)) -> dict[str, Any]:
        body = await _json_body(request)
        return await send_mail(
            agent,
            request.app.state.sender,
            to=body.get("to"),
            subject=body.get("subject"),
            body=body.get("body"),
            html=body.get("html"),
            limit=settings.quota.daily_send_limit,
        )

    @fastapi_app.post("/api/mailbox/send-template")
    async def mailbox_send_template(request: Request, agent: Agent = Depends(require_agent)) -> dict[str, Any]:
        body = await _json_body(request)
        variables = body.get("variables") or {}
        if not isinstance(variables, dict):
            raise ValidationError("variables must be an object")
        return await send_template(
            agent,
            request.app.state.sender,
            to=body.get("to"),
            template_id=body.get("template_id"),
            variables=variables,
            limit=settings.quota.daily_send_limit,
        )

    # ----- encryption -----

    @fastapi_app.post("/api/encryption/keypair")
    async def encryption_keypair() -> dict[str, Any]:
        keypair = generate_keypair()
        return {
            **keypair,
            "warning": "Store the secret key securely. It is not kept by the server.",
        }

    @fastapi_app.put("/api/encryption/key")
    async def encryption_key_put(request: Request, agent: Agent = Depends(require_agent)) -> dict[str, Any]:
        body = await _json_body(request)
        public_key = body.get("public_key")
        if not public_key or not isinstance(public_key, str):
            raise ValidationError("public_key is required")
        assert agent.id is not None
        updated = await set_public_key(agent.id, public_key)
        return {
            "success": True,
            "message": "Encryption enabled",
            **encryption_status(updated, request.app.state.keyring),
        }

    @fastapi_app.delete("/api/encryption/key")
    async def encryption_key_delete(request: Request, agent: Agent = Depends(require_agent)) -> dict[str, Any]:
        assert agent.id is not None
        updated = await set_public_key(agent.id, None)
        return {
            "success": True,
            "message": "Encryption disabled",
            **encryption_status(updated, request.app.state.keyring),
        }

    @fastapi_app.get("/api/encryption/status")
    async def encryption_get(request: Request, agent: Agent = Depends(require_agent)) -> dict[str, Any]:
        return encryption_status(agent, request.app.state.keyring)

    # ----- payments -----

    @fastapi_app.get("/api/pay/prices")
    async def pay_prices() -> dict[str, Any]:
        return price_list(settings.payments)

    @fastapi_app.post("/api/pay/request")
    async def pay_request(request: Request) -> dict[str, Any]:
        body = await _json_body(request)
        kind = body.get("type")
        if not kind:
            raise ValidationError("Payment type required")
        intent = await create_payment_intent(str(kind), body.get("agent_id"), settings.payments)
        return {
            "reference": intent.reference,
            "type": intent.kind,
            "amount": intent.amount,
            "currency": intent.currency,
            "recipient": settings.payments.recipient,
            "status": intent.status,
        }

    @fastapi_app.get("/api/pay/status/{reference}")
    async def pay_status(reference: str, request: Request) -> dict[str, Any]:
        if await get_payment_intent(reference) is None:
            raise ValidationError("Unknown payment reference")
        check = await refresh_payment_status(reference, request.app.state.payment_verifier)
        return check.to_dict()

    return fastapi_app


def main() -> None:
    """Run the HTTP transport using settings-specified host/port."""

    parser = argparse.ArgumentParser(description="Run the mailbox relay HTTP transport")
    parser.add_argument("--host", help="Override HTTP host", default=None)
    parser.add_argument("--port", help="Override HTTP port", type=int, default=None)
    parser.add_argument("--log-level", help="Uvicorn log level", default="info")
    args, _unknown = parser.parse_known_args()

    settings = get_settings()
    host = args.host or settings.http.host
    port = args.port or settings.http.port
    uvicorn.run(build_http_app(settings), host=host, port=port, log_level=args.log_level)


if __name__ == "__main__":  # pragma: no cover - manual execution path
    main()
