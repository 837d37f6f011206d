"""
Shared fakes for the relay tests: a scripted provider websocket, a connect
callable that hands those out, and a token source.
"""
import asyncio
import json

import pytest

from apps.pipeline.upstream import AuthFailure
from config import AssemblyAIConfig

_END = object()


class FakeProviderSocket:
    """Async-iterable stand-in for a provider websocket connection."""

    def __init__(self, messages=(), close_after=False):
        self.sent: list = []
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue()
        for message in messages:
            self.push(message)
        if close_after:
            self.end()

    def push(self, message) -> None:
        if isinstance(message, dict):
            message = json.dumps(message)
        self._queue.put_nowait(message)

    def end(self) -> None:
        self._queue.put_nowait(_END)

    def fail(self, exc: BaseException) -> None:
        self._queue.put_nowait(exc)

    async def send(self, data) -> None:
        self.sent.append(data)

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(_END)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._queue.get()
        if item is _END:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item

    @property
    def terminate_sent(self) -> bool:
        return json.dumps({"type": "Terminate"}) in self.sent


class FakeConnect:
    """Replays scripted outcomes: a socket, an exception, or "hang"."""

    def __init__(self, *outcomes, default=None):
        self.outcomes = list(outcomes)
        self.default = default
        self.urls: list[str] = []
        self.sockets: list[FakeProviderSocket] = []
        # Snapshot of which earlier sockets were closed at each connect call.
        self.closed_before_call: list[list[bool]] = []

    @property
    def calls(self) -> int:
        return len(self.urls)

    async def __call__(self, url, **kwargs):
        self.closed_before_call.append([s.closed for s in self.sockets])
        self.urls.append(url)
        outcome = self.outcomes.pop(0) if self.outcomes else self.default
        if outcome is None:
            outcome = FakeProviderSocket()
        if callable(outcome) and not isinstance(outcome, FakeProviderSocket):
            outcome = outcome()
        if outcome == "hang":
            await asyncio.Event().wait()
        if isinstance(outcome, BaseException):
            raise outcome
        self.sockets.append(outcome)
        return outcome


class FakeTokens:

    def __init__(self, *outcomes, default="test-token"):
        self.outcomes = list(outcomes)
        self.default = default
        self.calls = 0

    async def fetch(self) -> str:
        self.calls += 1
        outcome = self.outcomes.pop(0) if self.outcomes else self.default
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class FakeChannel:
    """Downstream client handle that records every event sent to it."""

    def __init__(self, name="client"):
        self.name = name
        self.sent: list[dict] = []

    async def send_json(self, data: dict) -> None:
        self.sent.append(data)

    def events(self, name: str) -> list[dict]:
        return [m["data"] for m in self.sent if m["event"] == name]


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


def begin_message(session_id="sess-1"):
    return {"type": "Begin", "id": session_id, "expires_at": 1700000000}


def turn_message(transcript, final=True, formatted=True, order=0):
    return {
        "type": "Turn",
        "transcript": transcript,
        "end_of_turn": final,
        "turn_is_formatted": formatted,
        "turn_order": order,
    }


@pytest.fixture
def assemblyai_config():
    return AssemblyAIConfig(
        reconnect_attempts=3,
        reconnect_delay_sec=0.0,
        connect_timeout_sec=0.05,
    )


@pytest.fixture
def auth_failure():
    return AuthFailure("HTTP 401")
