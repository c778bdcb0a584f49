"""Outbound credential selection.

Calls made on behalf of an authenticated caller forward that caller's bearer
token unchanged. Calls without a caller (startup, background work, anonymous
requests) use a machine credential obtained through the OAuth2
``client_credentials`` grant and cached until shortly before it expires.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

import httpx

from .config import Settings, mask_secret, settings as default_settings
from .errors import CredentialUnavailable
from .http_client import get_http_client

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EndUserToken:
    value: str


# None means Absent: no authenticated caller for this request.
InboundIdentity = Optional[EndUserToken]


@dataclass(frozen=True)
class MachineCredential:
    value: str
    expires_at: float

    def is_fresh(self, now: float, margin: float) -> bool:
        return now < self.expires_at - margin


@dataclass(frozen=True)
class OutboundCredential:
    value: str

    def authorization_header(self) -> str:
        return f"Bearer {self.value}"


def identity_from_authorization(authorization: Optional[str]) -> InboundIdentity:
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    if not token:
        return None
    return EndUserToken(token)


class TokenProvider:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        client_factory: Callable[[], httpx.AsyncClient] = get_http_client,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings or default_settings
        self._client_factory = client_factory
        self._clock = clock
        self._cached: Optional[MachineCredential] = None
        self._lock = asyncio.Lock()
        self.exchange_count = 0

    async def get_machine_token(self) -> MachineCredential:
        margin = self._settings.token_expiry_margin
        cached = self._cached
        if cached is not None and cached.is_fresh(self._clock(), margin):
            return cached
        async with self._lock:
            # Whoever held the lock before us may have refreshed already
            cached = self._cached
            if cached is not None and cached.is_fresh(self._clock(), margin):
                return cached
            fresh = await self._exchange()
            self._cached = fresh
            return fresh

    async def _exchange(self) -> MachineCredential:
        s = self._settings
        if not s.machine_identity_configured:
            raise CredentialUnavailable("Machine credential is not configured (TOKEN_URL / CLIENT_ID)")
        data = {"grant_type": "client_credentials"}
        if s.token_scope:
            data["scope"] = s.token_scope
        self.exchange_count += 1
        issued_at = self._clock()
        client = self._client_factory()
        try:
            resp = await client.post(
                s.token_url,
                data=data,
                auth=(s.client_id, s.client_secret or ""),
                headers={"Accept": "application/json"},
                timeout=httpx.Timeout(20.0),
            )
        except httpx.HTTPError as e:
            logger.error("Identity authority unreachable at %s: %s", s.token_url, e)
            raise CredentialUnavailable(cause=e) from e
        if resp.status_code >= 400:
            logger.error("Identity authority rejected client %s: HTTP %s", s.client_id, resp.status_code)
            raise CredentialUnavailable(f"Identity authority returned HTTP {resp.status_code}")
        try:
            body = resp.json()
        except ValueError as e:
            raise CredentialUnavailable("Identity authority returned a non-JSON token response", e) from e
        token = body.get("access_token") if isinstance(body, dict) else None
        if not token:
            raise CredentialUnavailable("Identity authority response has no access_token")
        try:
            ttl = float(body.get("expires_in") or s.token_default_ttl)
        except (TypeError, ValueError):
            ttl = s.token_default_ttl
        logger.info("Obtained machine credential %s (expires in %.0fs)", mask_secret(token), ttl)
        return MachineCredential(value=token, expires_at=issued_at + ttl)


class CredentialSelector:
    def __init__(self, token_provider: TokenProvider) -> None:
        self._token_provider = token_provider

    async def select(self, identity: InboundIdentity) -> OutboundCredential:
        if identity is not None:
            return OutboundCredential(identity.value)
        machine = await self._token_provider.get_machine_token()
        return OutboundCredential(machine.value)
