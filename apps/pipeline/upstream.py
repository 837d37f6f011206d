"""
upstream.py — one streaming speech-recognition connection per session.

State machine:

    IDLE → AUTHENTICATING → CONNECTING → OPEN → CLOSED
                ↑                 │        │
                └── RECONNECTING ←┴────────┘

* A token fetch failure before the first successful open is terminal.
* Connect timeouts, rejected handshakes, dropped connections and token
  failures after a successful open are counted; the counter resets every time
  a connection opens.  Reaching ``reconnect_attempts`` consecutive failures is
  terminal and reported exactly once.
* request_stop() closes from any state and never reconnects.
* Audio is forwarded only while OPEN; anything else is dropped.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence
from urllib.parse import urlencode

import httpx
import websockets
from websockets.exceptions import InvalidHandshake

from apps.pipeline.audio import frame_rms
from apps.pipeline.events import (
    BeginEvent,
    ConnectionStatusEvent,
    ErrorEvent,
    UpstreamEvent,
    parse_provider_message,
)
from apps.pipeline.works import SCRIPTURE_VOCABULARY
from config import AssemblyAIConfig

log = logging.getLogger("scripture_streamer.upstream")


class UpstreamError(Exception):
    pass


class AuthFailure(UpstreamError):
    pass


class ConnectTimeout(UpstreamError):
    pass


class TransportError(UpstreamError):
    pass


# ---------------------------------------------------------------------------
# Token endpoint
# ---------------------------------------------------------------------------

class TokenSource(Protocol):
    async def fetch(self) -> str: ...


class AssemblyAITokenClient:
    """Fetches short-lived streaming tokens with the account API key."""

    def __init__(self, api_key: str, http: httpx.AsyncClient, cfg: AssemblyAIConfig) -> None:
        self._api_key = api_key
        self._http = http
        self._cfg = cfg

    async def fetch(self) -> str:
        if not self._api_key:
            raise AuthFailure("AssemblyAI API key is not configured")
        params = {
            "expires_in_seconds": self._cfg.token_expires_in_sec,
            "max_session_duration_seconds": self._cfg.max_session_duration_sec,
        }
        try:
            response = await self._http.get(
                self._cfg.token_url,
                params=params,
                headers={"Authorization": self._api_key},
            )
        except httpx.HTTPError as exc:
            raise AuthFailure(f"token request failed: {exc}") from exc

        if not response.is_success:
            raise AuthFailure(f"token endpoint returned HTTP {response.status_code}")
        try:
            token = response.json().get("token")
        except ValueError as exc:
            raise AuthFailure("token endpoint returned invalid JSON") from exc
        if not token:
            raise AuthFailure("token endpoint response has no token")
        return token


def build_stream_url(cfg: AssemblyAIConfig, token: str, vocabulary: Optional[Sequence[str]] = None) -> str:
    params: dict[str, Any] = {
        "sample_rate": cfg.sample_rate,
        "encoding": cfg.encoding,
        "format_turns": "true" if cfg.format_turns else "false",
        "token": token,
    }
    if vocabulary:
        params["word_boost"] = json.dumps(list(vocabulary))
    return f"{cfg.streaming_url}?{urlencode(params)}"


# ---------------------------------------------------------------------------
# Connector
# ---------------------------------------------------------------------------

class ConnectorState(enum.Enum):
    IDLE = "idle"
    AUTHENTICATING = "authenticating"
    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


EventHandler = Callable[[UpstreamEvent], Awaitable[None]]


class UpstreamConnector:

    def __init__(
        self,
        user_id: str,
        cfg: AssemblyAIConfig,
        tokens: TokenSource,
        on_event: EventHandler,
        connect: Callable[..., Any] = websockets.connect,
        vocabulary: Optional[Sequence[str]] = None,
    ) -> None:
        self.user_id = user_id
        self._cfg = cfg
        self._tokens = tokens
        self._on_event = on_event
        self._connect = connect
        self._vocabulary = list(vocabulary if vocabulary is not None else (cfg.word_boost or SCRIPTURE_VOCABULARY))

        self.state = ConnectorState.IDLE
        self.session_id: Optional[str] = None
        self.connect_attempts = 0
        self.frames_sent = 0
        self.frames_dropped = 0
        self._stop_requested = False
        self._ever_opened = False
        self._terminal_reported = False
        self._ws: Any = None
        self._task: Optional[asyncio.Task] = None

    # -- Public API ------------------------------------------------------------

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    @property
    def is_open(self) -> bool:
        return self.state is ConnectorState.OPEN and not self._stop_requested

    def start(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"upstream-{self.user_id}")
        return self._task

    async def send_audio(self, frame: bytes) -> bool:
        """Forward one PCM frame; returns False when it was dropped."""
        ws = self._ws
        if not self.is_open or ws is None:
            self.frames_dropped += 1
            log.debug(
                "event=audio_dropped user=%s state=%s bytes=%d",
                self.user_id, self.state.value, len(frame),
            )
            return False
        try:
            await ws.send(frame)
        except websockets.ConnectionClosed:
            self.frames_dropped += 1
            log.debug("event=audio_dropped user=%s reason=connection_closed", self.user_id)
            return False
        self.frames_sent += 1
        if log.isEnabledFor(logging.DEBUG):
            log.debug(
                "event=audio_forwarded user=%s bytes=%d rms=%.0f",
                self.user_id, len(frame), frame_rms(frame),
            )
        return True

    def request_stop(self) -> None:
        """Synchronous: mark stopped, move to CLOSED, cancel the connection loop."""
        if self._stop_requested:
            return
        self._stop_requested = True
        self._set_state(ConnectorState.CLOSED)
        task = self._task
        # The loop can stop itself from inside an event handler; it exits on its own.
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def wait_closed(self) -> None:
        task = self._task
        if task is None or task is asyncio.current_task():
            return
        await asyncio.wait({task})

    async def stop(self) -> None:
        self.request_stop()
        await self.wait_closed()

    # -- Connection loop -------------------------------------------------------

    def _set_state(self, state: ConnectorState) -> None:
        if self.state is state:
            return
        log.info(
            "event=upstream_state user=%s from=%s to=%s",
            self.user_id, self.state.value, state.value,
        )
        self.state = state

    async def _run(self) -> None:
        failures = 0
        try:
            while not self._stop_requested:
                try:
                    ws = await self._open_once()
                    if ws is None:
                        break
                    failures = 0
                    await self._receive(ws)
                    if self._stop_requested:
                        break
                    error: UpstreamError = TransportError("provider closed the connection")
                except AuthFailure as exc:
                    if not self._ever_opened:
                        log.error("event=upstream_auth_failed user=%s error=%s", self.user_id, exc)
                        await self._report_terminal(f"authentication failed: {exc}")
                        return
                    error = exc
                except (ConnectTimeout, TransportError) as exc:
                    error = exc

                if self._stop_requested:
                    break
                failures += 1
                if failures >= self._cfg.reconnect_attempts:
                    log.error(
                        "event=upstream_reconnect_failed user=%s attempts=%d error=%s",
                        self.user_id, failures, error,
                    )
                    await self._report_terminal(
                        f"connection failed after {failures} attempts: {error}"
                    )
                    return

                log.warning(
                    "event=upstream_disconnected user=%s error=%s attempt=%d/%d delay=%.1fs",
                    self.user_id, error, failures, self._cfg.reconnect_attempts,
                    self._cfg.reconnect_delay_sec,
                )
                self._set_state(ConnectorState.RECONNECTING)
                await self._notify(ConnectionStatusEvent(
                    state=ConnectorState.RECONNECTING.value,
                    detail=str(error),
                ))
                await asyncio.sleep(self._cfg.reconnect_delay_sec)
        finally:
            self._ws = None
            self._set_state(ConnectorState.CLOSED)
            log.info(
                "event=upstream_loop_exit user=%s connects=%d frames_sent=%d frames_dropped=%d",
                self.user_id, self.connect_attempts, self.frames_sent, self.frames_dropped,
            )

    async def _open_once(self) -> Optional[Any]:
        self._set_state(ConnectorState.AUTHENTICATING)
        token = await self._tokens.fetch()

        self._set_state(ConnectorState.CONNECTING)
        url = build_stream_url(self._cfg, token, self._vocabulary)
        self.connect_attempts += 1

        async def _dial() -> Any:
            return await self._connect(url)

        try:
            ws = await asyncio.wait_for(_dial(), timeout=self._cfg.connect_timeout_sec)
        except asyncio.TimeoutError as exc:
            raise ConnectTimeout(
                f"no connection within {self._cfg.connect_timeout_sec:.1f}s"
            ) from exc
        except (InvalidHandshake, websockets.ConnectionClosed, OSError) as exc:
            raise TransportError(f"connect failed: {exc}") from exc

        if self._stop_requested:
            await self._close_ws(ws)
            return None
        self._ws = ws
        self._ever_opened = True
        self._set_state(ConnectorState.OPEN)
        log.info("event=upstream_open user=%s attempt=%d", self.user_id, self.connect_attempts)
        await self._notify(ConnectionStatusEvent(state=ConnectorState.OPEN.value))
        return ws

    async def _receive(self, ws: Any) -> None:
        """Demultiplex provider frames until the connection ends."""
        try:
            async for message in ws:
                event = parse_provider_message(message, self._cfg.format_turns)
                if event is None:
                    continue
                if isinstance(event, ErrorEvent):
                    log.warning("event=provider_error user=%s detail=%s", self.user_id, event.detail)
                elif isinstance(event, BeginEvent):
                    self.session_id = event.session_id
                    log.info(
                        "event=provider_begin user=%s session_id=%s expires_at=%s",
                        self.user_id, event.session_id, event.expires_at,
                    )
                await self._notify(event)
                if self._stop_requested:
                    break
        except (websockets.ConnectionClosed, OSError) as exc:
            if not self._stop_requested:
                raise TransportError(f"connection lost: {exc}") from exc
        finally:
            self._ws = None
            await self._close_ws(ws)

    async def _close_ws(self, ws: Any) -> None:
        if self._stop_requested:
            try:
                await ws.send(json.dumps({"type": "Terminate"}))
            except (websockets.ConnectionClosed, OSError) as exc:
                log.debug("event=terminate_not_sent user=%s error=%s", self.user_id, exc)
        try:
            await ws.close()
        except (websockets.ConnectionClosed, OSError) as exc:
            log.debug("event=close_failed user=%s error=%s", self.user_id, exc)

    async def _notify(self, event: UpstreamEvent) -> None:
        try:
            await self._on_event(event)
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("event=event_handler_failed user=%s kind=%s", self.user_id, event.kind)

    async def _report_terminal(self, detail: str) -> None:
        if self._terminal_reported:
            return
        self._terminal_reported = True
        self._set_state(ConnectorState.CLOSED)
        await self._notify(ConnectionStatusEvent(
            state=ConnectorState.CLOSED.value,
            detail=detail,
            terminal=True,
        ))
