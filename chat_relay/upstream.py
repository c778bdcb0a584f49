from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, Optional

import httpx

from .config import Settings, settings as default_settings
from .credentials import OutboundCredential
from .errors import InvalidArgument, UpstreamFailure
from .http_client import get_http_client

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenIncrement:
    text: str


def require_prompt(prompt: Optional[str]) -> str:
    if prompt is None or not prompt.strip():
        raise InvalidArgument()
    return prompt


def _error_message(status: int, body_text: str) -> str:
    try:
        j = json.loads(body_text) if body_text else {}
    except Exception:
        j = None
    if isinstance(j, dict):
        err = j.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str) and err:
            return err
        if j.get("message"):
            return str(j["message"])
    return f"Backend returned HTTP {status}"


class UpstreamClient:
    """Talks to an OpenAI-compatible chat completions backend."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client_factory: Callable[[], httpx.AsyncClient] = get_http_client,
    ) -> None:
        self._settings = settings or default_settings
        self._client_factory = client_factory

    @property
    def url(self) -> str:
        return f"{self._settings.backend_base_url.rstrip('/')}/v1/chat/completions"

    def _payload(self, prompt: str, stream: bool) -> Dict[str, Any]:
        return {
            "model": self._settings.backend_model,
            "messages": [{"role": "user", "content": prompt}],
            "stream": stream,
        }

    def _headers(self, credential: OutboundCredential, stream: bool) -> Dict[str, str]:
        headers = {"Authorization": credential.authorization_header()}
        if stream:
            headers["Accept"] = "text/event-stream"
        return headers

    async def call(self, prompt: str, credential: OutboundCredential) -> str:
        prompt = require_prompt(prompt)
        client = self._client_factory()
        try:
            resp = await client.post(
                self.url,
                json=self._payload(prompt, stream=False),
                headers=self._headers(credential, stream=False),
                timeout=httpx.Timeout(self._settings.backend_timeout),
            )
        except httpx.HTTPError as e:
            logger.error("Backend call failed: %s: %s", type(e).__name__, e)
            raise UpstreamFailure(cause=e) from e
        if resp.status_code >= 400:
            message = _error_message(resp.status_code, resp.text)
            logger.error("Backend call returned HTTP %s: %s", resp.status_code, message)
            raise UpstreamFailure(message)
        try:
            data = resp.json()
        except ValueError as e:
            raise UpstreamFailure("Backend returned a non-JSON response", e) from e
        try:
            content = data["choices"][0]["message"].get("content")
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            raise UpstreamFailure("Backend response has no choices", e) from e
        return content or ""

    def stream(self, prompt: str, credential: OutboundCredential) -> AsyncIterator[TokenIncrement]:
        """Return a lazy iterator over the increments of one fresh generation.

        The prompt is checked here, before the iterator exists, so a blank
        prompt never reaches the network. Backend failures are raised from the
        iterator itself as :class:`UpstreamFailure`.
        """
        prompt = require_prompt(prompt)
        return self._iter_increments(prompt, credential)

    async def _iter_increments(self, prompt: str, credential: OutboundCredential) -> AsyncIterator[TokenIncrement]:
        client = self._client_factory()
        try:
            async with client.stream(
                "POST",
                self.url,
                json=self._payload(prompt, stream=True),
                headers=self._headers(credential, stream=True),
                timeout=None,
            ) as upstream:
                if upstream.status_code >= 400:
                    body_bytes = await upstream.aread()
                    body_text = body_bytes.decode("utf-8", errors="ignore") if body_bytes else ""
                    raise UpstreamFailure(_error_message(upstream.status_code, body_text))
                async for line in upstream.aiter_lines():
                    if not line or not line.startswith("data:"):
                        continue
                    payload_str = line[5:].strip()
                    if payload_str == "[DONE]":
                        return
                    try:
                        chunk = json.loads(payload_str)
                    except ValueError:
                        logger.debug("Skipping undecodable stream line: %s", payload_str[:100])
                        continue
                    if not isinstance(chunk, dict):
                        continue
                    if chunk.get("error"):
                        err = chunk["error"]
                        message = err.get("message") if isinstance(err, dict) else str(err)
                        raise UpstreamFailure(message or "Backend reported an error")
                    text = _delta_text(chunk)
                    if text:
                        yield TokenIncrement(text)
        except httpx.HTTPError as e:
            raise UpstreamFailure(cause=e) from e


def _delta_text(chunk: Dict[str, Any]) -> Optional[str]:
    choices = chunk.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, dict):
        return None
    delta = first.get("delta")
    if isinstance(delta, dict):
        content = delta.get("content")
        if isinstance(content, str):
            return content
    return None
