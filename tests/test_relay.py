import asyncio
import json
from typing import Any, List, Optional, Tuple

import pytest

from chat_relay.credentials import CredentialSelector, EndUserToken, MachineCredential
from chat_relay.errors import MISSING_MESSAGE, CredentialUnavailable, UpstreamFailure
from chat_relay.relay import (
    CLIENT_GONE_MESSAGE,
    TIMEOUT_MESSAGE,
    ChatSession,
    SessionState,
    StreamRelay,
    Subscription,
    format_event,
)
from chat_relay.upstream import TokenIncrement, require_prompt


def parse_events(raw: bytes) -> List[Tuple[str, str]]:
    events = []
    for block in raw.decode("utf-8").split("\n\n"):
        if not block.strip():
            continue
        name = None
        data = []
        for line in block.split("\n"):
            if line.startswith("event: "):
                name = line[len("event: "):]
            elif line.startswith("data:"):
                data.append(line[6:] if line.startswith("data: ") else line[5:])
        events.append((name, "\n".join(data)))
    return events


class _FakeUpstream:
    def __init__(self, texts: List[str], error: Optional[Exception] = None, stall: bool = False):
        self.texts = texts
        self.error = error
        self.stall = stall
        self.credentials: List[str] = []
        self.closed = False

    def stream(self, prompt: str, credential):
        require_prompt(prompt)
        self.credentials.append(credential.value)
        return self._gen()

    async def _gen(self):
        try:
            for text in self.texts:
                yield TokenIncrement(text)
            if self.stall:
                await asyncio.sleep(10)
                yield TokenIncrement("late")
            if self.error is not None:
                raise self.error
        finally:
            self.closed = True


class _StaticProvider:
    async def get_machine_token(self):
        return MachineCredential("machine-token", expires_at=float("inf"))


class _FailingProvider:
    async def get_machine_token(self):
        raise CredentialUnavailable("Identity authority returned HTTP 503")


def _relay(upstream: _FakeUpstream, timeout: float = 5.0, provider: Any = None) -> Tuple[StreamRelay, List[ChatSession]]:
    relay = StreamRelay(upstream, CredentialSelector(provider or _StaticProvider()), timeout=timeout)
    sessions: List[ChatSession] = []
    original_open = relay.open_session

    def tracking_open() -> ChatSession:
        session = original_open()
        sessions.append(session)
        return session

    relay.open_session = tracking_open  # type: ignore[assignment]
    return relay, sessions


async def _collect(relay: StreamRelay, prompt: Optional[str], **kwargs: Any) -> List[Tuple[str, str]]:
    frames = b"".join([frame async for frame in relay.events(prompt, **kwargs)])
    return parse_events(frames)


@pytest.mark.asyncio
async def test_increments_are_relayed_in_order_then_end():
    upstream = _FakeUpstream(["He", "llo"])
    relay, sessions = _relay(upstream)

    events = await _collect(relay, "hello")

    assert events == [("token", '{"text":"He"}'), ("token", '{"text":"llo"}'), ("end", "")]
    assert sessions[0].state is SessionState.COMPLETED
    assert relay.active_sessions == {}


@pytest.mark.asyncio
async def test_whitespace_survives_framing():
    upstream = _FakeUpstream(["  leading", "trailing  ", "\n", "two\nlines"])
    relay, _ = _relay(upstream)

    events = await _collect(relay, "hello")

    texts = [json.loads(data)["text"] for name, data in events if name == "token"]
    assert texts == ["  leading", "trailing  ", "\n", "two\nlines"]
    assert events[-1] == ("end", "")


@pytest.mark.asyncio
@pytest.mark.parametrize("prompt", [None, "", "   \t"])
async def test_blank_prompt_yields_single_error_without_upstream(prompt):
    upstream = _FakeUpstream(["never"])
    relay, sessions = _relay(upstream)

    events = await _collect(relay, prompt)

    assert events == [("error", MISSING_MESSAGE)]
    assert upstream.credentials == []
    assert sessions[0].state is SessionState.FAILED
    assert sessions[0].upstream is None


@pytest.mark.asyncio
async def test_upstream_error_after_tokens_ends_with_error_event():
    upstream = _FakeUpstream(["partial"], error=UpstreamFailure("model crashed"))
    relay, sessions = _relay(upstream)

    events = await _collect(relay, "hello")

    assert events == [("token", '{"text":"partial"}'), ("error", "model crashed")]
    assert sessions[0].state is SessionState.FAILED


@pytest.mark.asyncio
async def test_error_without_message_reports_category_name():
    upstream = _FakeUpstream([], error=RuntimeError())
    relay, _ = _relay(upstream)

    events = await _collect(relay, "hello")

    assert events == [("error", "RuntimeError")]


@pytest.mark.asyncio
async def test_timeout_sends_error_and_cancels_upstream():
    upstream = _FakeUpstream(["a"], stall=True)
    relay, sessions = _relay(upstream, timeout=0.05)

    events = await _collect(relay, "hello")
    await asyncio.sleep(0.01)

    assert events == [("token", '{"text":"a"}'), ("error", TIMEOUT_MESSAGE)]
    assert sessions[0].state is SessionState.TIMED_OUT
    assert sessions[0].upstream.cancelled
    assert upstream.closed


@pytest.mark.asyncio
async def test_disconnect_after_n_increments_stops_delivery():
    upstream = _FakeUpstream(["1", "2", "3", "4", "5"])
    relay, sessions = _relay(upstream)
    checks = {"n": 0}

    async def is_disconnected() -> bool:
        checks["n"] += 1
        return checks["n"] > 2

    events = await _collect(relay, "hello", is_disconnected=is_disconnected)
    await asyncio.sleep(0.01)

    assert events == [("token", '{"text":"1"}'), ("token", '{"text":"2"}'), ("error", CLIENT_GONE_MESSAGE)]
    assert sessions[0].state is SessionState.CLIENT_DISCONNECTED
    assert sessions[0].upstream.cancelled
    assert upstream.closed


@pytest.mark.asyncio
async def test_closing_the_stream_counts_as_client_disconnect():
    upstream = _FakeUpstream(["a"], stall=True)
    relay, sessions = _relay(upstream)

    agen = relay.events("hello")
    first = await agen.__anext__()
    await agen.aclose()
    await asyncio.sleep(0.01)

    assert parse_events(first) == [("token", '{"text":"a"}')]
    assert sessions[0].state is SessionState.CLIENT_DISCONNECTED
    assert upstream.closed
    assert relay.active_sessions == {}


@pytest.mark.asyncio
async def test_end_user_token_is_forwarded_upstream():
    upstream = _FakeUpstream(["x"])
    relay, _ = _relay(upstream)

    await _collect(relay, "hello", identity=EndUserToken("user-jwt"))
    await _collect(relay, "hello")

    assert upstream.credentials == ["user-jwt", "machine-token"]


@pytest.mark.asyncio
async def test_credential_failure_becomes_error_event():
    upstream = _FakeUpstream(["never"])
    relay, sessions = _relay(upstream, provider=_FailingProvider())

    events = await _collect(relay, "hello")

    assert events == [("error", "Identity authority returned HTTP 503")]
    assert sessions[0].state is SessionState.FAILED
    assert upstream.credentials == []


class _CountingSubscription:
    def __init__(self):
        self.cancels = 0

    def cancel(self) -> None:
        self.cancels += 1


def test_session_commits_only_first_terminal_state():
    session = ChatSession(id="s1", created_at=0.0)
    sub = _CountingSubscription()
    session.start_streaming(sub)  # type: ignore[arg-type]

    assert session.finish(SessionState.TIMED_OUT) is True
    assert session.finish(SessionState.COMPLETED) is False
    assert session.finish(SessionState.CLIENT_DISCONNECTED) is False
    assert session.state is SessionState.TIMED_OUT
    assert sub.cancels == 1


def test_terminal_session_never_reenters_streaming():
    session = ChatSession(id="s2", created_at=0.0)
    session.finish(SessionState.FAILED)
    with pytest.raises(RuntimeError):
        session.start_streaming(_CountingSubscription())  # type: ignore[arg-type]
    with pytest.raises(ValueError):
        ChatSession(id="s3", created_at=0.0).finish(SessionState.STREAMING)


@pytest.mark.asyncio
async def test_subscription_cancel_is_idempotent_and_drops_late_signals():
    upstream = _FakeUpstream(["a", "b"], stall=True)
    sub = Subscription(upstream.stream("hello", MachineCredential("t", 0.0)))
    first = await sub.next_signal()
    assert first.kind == "token" and first.increment.text == "a"

    sub.cancel()
    sub.cancel()
    await asyncio.sleep(0.01)

    assert sub.cancelled
    assert upstream.closed
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(sub.next_signal(), 0.05)


def test_format_event_splits_multiline_data():
    assert format_event("end") == b"event: end\ndata: \n\n"
    assert format_event("error", "line one\nline two") == b"event: error\ndata: line one\ndata: line two\n\n"


@pytest.mark.asyncio
async def test_unicode_line_separators_stay_inside_one_data_line():
    texts = ["a\u2028b", "x\x85y", "p\u2029q"]
    upstream = _FakeUpstream(texts)
    relay, _ = _relay(upstream)

    frames = [frame async for frame in relay.events("hello")]

    for frame in frames[:-1]:
        assert frame.decode("utf-8").count("data:") == 1
    events = parse_events(b"".join(frames))
    assert [json.loads(data)["text"] for name, data in events if name == "token"] == texts
    assert events[-1] == ("end", "")


def test_format_event_only_breaks_on_sse_line_terminators():
    assert format_event("error", "a\r\nb\rc") == b"event: error\ndata: a\ndata: b\ndata: c\n\n"
    assert format_event("token", "a\u2028b") == "event: token\ndata: a\u2028b\n\n".encode("utf-8")


@pytest.mark.asyncio
async def test_deadline_fires_while_consumer_stops_pulling():
    upstream = _FakeUpstream(["a", "b", "c"], stall=True)
    relay, sessions = _relay(upstream, timeout=0.05)

    agen = relay.events("hello")
    first = await agen.__anext__()
    # the consumer is stuck writing to a slow client
    await asyncio.sleep(0.3)

    assert parse_events(first) == [("token", '{"text":"a"}')]
    assert sessions[0].state is SessionState.TIMED_OUT
    assert sessions[0].upstream.cancelled
    assert upstream.closed
    assert relay.active_sessions == {}

    rest = [frame async for frame in agen]
    assert parse_events(b"".join(rest)) == [("error", TIMEOUT_MESSAGE)]
    assert sessions[0].state is SessionState.TIMED_OUT


@pytest.mark.asyncio
async def test_deadline_timer_does_not_touch_completed_sessions():
    upstream = _FakeUpstream(["done"])
    relay, sessions = _relay(upstream, timeout=0.05)

    events = await _collect(relay, "hello")
    await asyncio.sleep(0.1)

    assert events[-1] == ("end", "")
    assert sessions[0].state is SessionState.COMPLETED
