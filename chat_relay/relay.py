"""Server-sent-event relay for streaming chat sessions.

One :class:`ChatSession` per streaming request. The upstream increment
iterator is drained by a producer task into a one-slot queue; the relay
generator reads from that queue and turns every signal into an SSE frame.
Whatever happens first (upstream end, upstream error, deadline, client going
away) commits the terminal state through :meth:`ChatSession.finish`, which
also cancels the producer. Anything that arrives after that is dropped.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional

from .config import settings
from .credentials import CredentialSelector, InboundIdentity
from .errors import MISSING_MESSAGE, InvalidArgument, UpstreamFailure
from .upstream import TokenIncrement, UpstreamClient

logger = logging.getLogger(__name__)

TIMEOUT_MESSAGE = "Connection timeout"
CLIENT_GONE_MESSAGE = "Client connection interrupted"


class SessionState(str, Enum):
    OPEN = "open"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CLIENT_DISCONNECTED = "client_disconnected"

    @property
    def terminal(self) -> bool:
        return self not in (SessionState.OPEN, SessionState.STREAMING)


@dataclass
class Signal:
    kind: str  # "token" | "end" | "error"
    increment: Optional[TokenIncrement] = None
    error: Optional[UpstreamFailure] = None


class Subscription:
    """Running upstream generation for one session.

    Must be created inside a running event loop: the producer task starts
    immediately, so the caller is never blocked by the backend.
    """

    def __init__(self, source: AsyncIterator[TokenIncrement]) -> None:
        self._source = source
        self._queue: "asyncio.Queue[Signal]" = asyncio.Queue(maxsize=1)
        self._cancelled = False
        self._task = asyncio.get_running_loop().create_task(self._produce())

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    async def _produce(self) -> None:
        try:
            async for increment in self._source:
                if self._cancelled:
                    return
                if increment.text:
                    await self._queue.put(Signal("token", increment=increment))
            await self._queue.put(Signal("end"))
        except UpstreamFailure as e:
            await self._queue.put(Signal("error", error=e))
        except Exception as e:
            logger.exception("Upstream stream raised unexpectedly")
            await self._queue.put(Signal("error", error=UpstreamFailure(cause=e)))
        finally:
            aclose = getattr(self._source, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception as e:
                    logger.debug("Ignoring error while closing upstream stream: %s", e)

    async def next_signal(self) -> Signal:
        return await self._queue.get()

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._task.cancel()
        while not self._queue.empty():
            self._queue.get_nowait()


@dataclass
class ChatSession:
    id: str
    created_at: float
    state: SessionState = SessionState.OPEN
    upstream: Optional[Subscription] = field(default=None, repr=False)

    @property
    def terminal(self) -> bool:
        return self.state.terminal

    def start_streaming(self, upstream: Subscription) -> None:
        if self.state is not SessionState.OPEN:
            raise RuntimeError(f"session {self.id} cannot stream from state {self.state.value}")
        self.upstream = upstream
        self.state = SessionState.STREAMING

    def finish(self, state: SessionState) -> bool:
        """Commit a terminal state. Only the first call has any effect."""
        if not state.terminal:
            raise ValueError(f"{state.value} is not a terminal state")
        if self.terminal:
            return False
        self.state = state
        if self.upstream is not None:
            self.upstream.cancel()
        return True


def format_event(event: str, data: str = "") -> bytes:
    # SSE only breaks lines on CR, LF and CRLF
    lines = re.split(r"\r\n|\r|\n", data)
    body = "".join(f"data: {line}\n" for line in lines)
    return f"event: {event}\n{body}\n".encode("utf-8")


def token_payload(increment: TokenIncrement) -> str:
    # JSON keeps leading/trailing whitespace intact through SSE line framing
    return json.dumps({"text": increment.text}, ensure_ascii=False, separators=(",", ":"))


class StreamRelay:
    def __init__(
        self,
        upstream: UpstreamClient,
        selector: CredentialSelector,
        timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._upstream = upstream
        self._selector = selector
        self._timeout = settings.stream_timeout if timeout is None else timeout
        self._clock = clock
        self.active_sessions: Dict[str, ChatSession] = {}

    def open_session(self) -> ChatSession:
        session = ChatSession(id=uuid.uuid4().hex, created_at=self._clock())
        self.active_sessions[session.id] = session
        return session

    def finish(self, session: ChatSession, state: SessionState) -> bool:
        committed = session.finish(state)
        if committed:
            self.active_sessions.pop(session.id, None)
            level = logging.WARNING if state is SessionState.TIMED_OUT else logging.INFO
            logger.log(
                level,
                "session %s %s after %.2fs",
                session.id,
                state.value,
                self._clock() - session.created_at,
            )
        return committed

    def _frame(self, session: ChatSession, event: str, data: str = "") -> bytes:
        if settings.debug_sse:
            logger.debug("[sse][%s] %s %s", session.id, event, data)
        return format_event(event, data)

    def _remaining(self, session: ChatSession) -> float:
        return session.created_at + self._timeout - self._clock()

    def _expire(self, session: ChatSession) -> None:
        # Fires even while the consumer is parked on a slow client write
        self.finish(session, SessionState.TIMED_OUT)

    async def events(
        self,
        prompt: Optional[str],
        identity: InboundIdentity = None,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> AsyncIterator[bytes]:
        """Yield the SSE frames of one streaming session.

        Exactly one ``end`` or ``error`` frame closes every session, except
        when the client is already gone and the closing frame cannot be
        delivered. The deadline is enforced by a loop timer, so the upstream
        is cancelled on time even if the caller stops pulling frames.
        """
        session = self.open_session()
        deadline = asyncio.get_running_loop().call_later(
            max(self._remaining(session), 0), self._expire, session
        )
        try:
            if prompt is None or not prompt.strip():
                self.finish(session, SessionState.FAILED)
                yield self._frame(session, "error", MISSING_MESSAGE)
                return

            try:
                credential = await asyncio.wait_for(
                    self._selector.select(identity), max(self._remaining(session), 0)
                )
            except asyncio.TimeoutError:
                self.finish(session, SessionState.TIMED_OUT)
                yield self._frame(session, "error", TIMEOUT_MESSAGE)
                return
            except (UpstreamFailure, InvalidArgument) as e:
                logger.error("session %s could not open upstream: %s", session.id, e)
                self.finish(session, SessionState.FAILED)
                yield self._frame(session, "error", str(e))
                return
            if session.terminal:
                yield self._frame(session, "error", TIMEOUT_MESSAGE)
                return
            try:
                subscription = Subscription(self._upstream.stream(prompt, credential))
            except (UpstreamFailure, InvalidArgument) as e:
                logger.error("session %s could not open upstream: %s", session.id, e)
                self.finish(session, SessionState.FAILED)
                yield self._frame(session, "error", str(e))
                return
            session.start_streaming(subscription)
            logger.debug("session %s streaming", session.id)

            while not session.terminal:
                remaining = self._remaining(session)
                try:
                    if remaining <= 0:
                        raise asyncio.TimeoutError()
                    signal = await asyncio.wait_for(subscription.next_signal(), remaining)
                except asyncio.TimeoutError:
                    self.finish(session, SessionState.TIMED_OUT)
                    break
                if session.terminal:
                    break

                if signal.kind == "token" and signal.increment is not None:
                    if is_disconnected is not None and await is_disconnected():
                        if self.finish(session, SessionState.CLIENT_DISCONNECTED):
                            yield self._frame(session, "error", CLIENT_GONE_MESSAGE)
                        return
                    yield self._frame(session, "token", token_payload(signal.increment))
                elif signal.kind == "end":
                    if self.finish(session, SessionState.COMPLETED):
                        yield self._frame(session, "end")
                    return
                else:
                    err = signal.error or UpstreamFailure()
                    logger.error("session %s upstream error: %s", session.id, err.message)
                    if self.finish(session, SessionState.FAILED):
                        yield self._frame(session, "error", err.message)
                    return

            # Only the deadline ends the loop without returning
            if session.state is SessionState.TIMED_OUT:
                yield self._frame(session, "error", TIMEOUT_MESSAGE)
        except Exception as e:
            logger.exception("session %s relay failure", session.id)
            if self.finish(session, SessionState.FAILED):
                yield self._frame(session, "error", str(e) or type(e).__name__)
        finally:
            deadline.cancel()
            # Cancelled or closed by the server: the client stopped listening
            self.finish(session, SessionState.CLIENT_DISCONNECTED)
