"""Agent identity verification against the third-party agent directory."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

import httpx
import structlog

from .config import IdentitySettings
from .errors import TransportError

_logger = structlog.get_logger(__name__)


@dataclass(slots=True, frozen=True)
class OwnerIdentity:
    owner_id: str
    owner_name: str


class IdentityVerifier(Protocol):
    async def verify(self, credential: str) -> Optional[OwnerIdentity]:
        """Return the owner behind ``credential``, or None if it is not valid."""
        ...


class HttpIdentityVerifier:
    """Resolves a directory API key via ``GET {base_url}/agents/me``.

    Only claimed (human-verified) agents are accepted.
    """

    def __init__(self, client: httpx.AsyncClient, settings: IdentitySettings):
        self._client = client
        self._settings = settings

    async def verify(self, credential: str) -> Optional[OwnerIdentity]:
        if not credential:
            return None
        try:
            response = await self._client.get(
                f"{self._settings.base_url}/agents/me",
                headers={"Authorization": f"Bearer {credential}"},
                timeout=self._settings.timeout_seconds,
            )
        except httpx.HTTPError as exc:
            _logger.warning("identity.unreachable", error=str(exc))
            raise TransportError("Identity service unreachable") from exc
        if not response.is_success:
            return None
        try:
            data = response.json()
        except ValueError:
            return None
        agent = data.get("agent") if isinstance(data, dict) else None
        if not data.get("success") or not isinstance(agent, dict) or not agent.get("is_claimed"):
            return None
        owner_id = agent.get("id")
        if owner_id is None:
            return None
        return OwnerIdentity(owner_id=str(owner_id), owner_name=str(agent.get("name") or ""))
