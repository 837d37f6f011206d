"""
relay.py — binds downstream clients to upstream connectors.

Downstream calls (on_connect / on_message / on_audio / on_disconnect) come
from the server's websocket handler.  Upstream events for one session all
arrive through handle_upstream_event, awaited in the connector's receive
loop, so a session's events reach the client in provider order.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any, Awaitable, Callable, Optional, Protocol, Union

import websockets

from apps.pipeline.audio import InvalidAudioPayload, decode_audio_payload
from apps.pipeline.detector import ReferenceDetector, ResolvedReference, merge_unique
from apps.pipeline.events import (
    BeginEvent,
    ConnectionStatusEvent,
    ErrorEvent,
    InvalidClientMessage,
    SendAudioBuffer,
    StartStreaming,
    StopStreaming,
    TerminationEvent,
    TurnEvent,
    UpstreamEvent,
    parse_client_message,
    server_event,
)
from apps.pipeline.llm_detector import LLMReferenceDetector, split_into_chunks
from apps.pipeline.sessions import Session, SessionRegistry
from apps.pipeline.summarizer import summarize_transcript
from apps.pipeline.upstream import ConnectorState, TokenSource, UpstreamConnector
from config import StreamerConfig, SummaryConfig

log = logging.getLogger("scripture_streamer.relay")

WELCOME_MESSAGE = "Connected to scripture streamer"


class DownstreamChannel(Protocol):
    async def send_json(self, data: dict) -> None: ...


Summarizer = Callable[[str, SummaryConfig], Awaitable[str]]


class SessionRelay:

    def __init__(
        self,
        registry: SessionRegistry,
        detector: ReferenceDetector,
        config: StreamerConfig,
        tokens: TokenSource,
        llm: Optional[LLMReferenceDetector] = None,
        connect: Callable[..., Any] = websockets.connect,
        summarize: Summarizer = summarize_transcript,
    ) -> None:
        self.registry = registry
        self.detector = detector
        self.config = config
        self.llm = llm
        self._tokens = tokens
        self._connect = connect
        self._summarize = summarize

    def apply_config(self, config: StreamerConfig) -> None:
        """New connections use `config`; running connectors keep theirs."""
        self.config = config
        self.detector.lang = config.detection.lang
        if self.llm is not None:
            self.llm.model = config.detection.model
            self.llm.timeout_sec = config.detection.timeout_sec
            self.llm.max_tokens = config.detection.max_tokens

    # -- Downstream --------------------------------------------------------------

    async def on_connect(self, channel: DownstreamChannel) -> None:
        await self._send(channel, "connection", message=WELCOME_MESSAGE)

    async def on_message(self, channel: DownstreamChannel, raw: Union[str, dict]) -> None:
        try:
            message = parse_client_message(raw)
        except InvalidClientMessage as exc:
            log.warning("event=client_message_rejected error=%s", exc)
            await self._send(channel, "Error", message=str(exc))
            return

        if isinstance(message, StartStreaming):
            await self.start_streaming(channel, message.user_id)
        elif isinstance(message, StopStreaming):
            await self.stop_streaming(channel, message.user_id)
        elif isinstance(message, SendAudioBuffer):
            await self.on_audio(channel, message.audio)

    async def on_audio(self, channel: DownstreamChannel, payload: Union[str, bytes]) -> None:
        session = self.registry.get_by_downstream(channel)
        if session is None or session.upstream is None:
            log.debug("event=audio_without_session bytes=%d", len(payload))
            return
        try:
            frame = decode_audio_payload(payload)
        except InvalidAudioPayload as exc:
            log.warning("event=audio_rejected user=%s error=%s", session.user_id, exc)
            await self._send(channel, "Error", message=str(exc))
            return
        if frame:
            await session.upstream.send_audio(frame)

    async def on_disconnect(self, channel: DownstreamChannel) -> None:
        session = self.registry.remove_by_downstream_handle(channel)
        if session is not None and session.upstream is not None:
            await session.upstream.wait_closed()

    # -- Session lifecycle -------------------------------------------------------

    async def start_streaming(self, channel: DownstreamChannel, user_id: str) -> Session:
        session = self.registry.start(user_id, channel)
        predecessor = session.predecessor
        if predecessor is not None:
            await predecessor.wait_closed()
            session.predecessor = None
            log.info("event=predecessor_closed user=%s", user_id)
        if self.registry.get(user_id) is not session or session.stop_requested:
            log.info("event=start_abandoned user=%s reason=replaced_while_waiting", user_id)
            return session

        connector = UpstreamConnector(
            user_id,
            self.config.assemblyai,
            self._tokens,
            on_event=functools.partial(self.handle_upstream_event, session),
            connect=self._connect,
        )
        session.upstream = connector
        connector.start()
        log.info("event=streaming_started user=%s", user_id)
        return session

    async def stop_streaming(self, channel: DownstreamChannel, user_id: Optional[str] = None) -> None:
        session = self.registry.get(user_id) if user_id else self.registry.get_by_downstream(channel)
        if session is None:
            log.info("event=stop_without_session user=%s", user_id)
            await self._send(channel, "StreamingStopped", message="No active streaming session", finalTranscript="")
            return
        await self._finish(session)

    async def stop_user(self, user_id: str) -> bool:
        """Control-plane stop; the client is notified as if it had asked."""
        session = self.registry.get(user_id)
        if session is None:
            return False
        await self._finish(session)
        return True

    async def stop_all(self) -> None:
        sessions = self.registry.sessions()
        for session in sessions:
            self.registry.stop(session.user_id)
        await asyncio.gather(
            *(s.upstream.wait_closed() for s in sessions if s.upstream is not None)
        )
        log.info("event=relay_stopped sessions=%d", len(sessions))

    async def _finish(self, session: Session) -> None:
        self.registry.stop(session.user_id)
        if session.upstream is not None:
            await session.upstream.wait_closed()
        transcript = session.final_transcript
        await self._send(
            session.downstream,
            "StreamingStopped",
            message="Streaming stopped",
            finalTranscript=transcript,
        )
        summary = await self._summarize(transcript, self.config.summary)
        await self._send(session.downstream, "Summary", text=summary)

    # -- Upstream ------------------------------------------------------------------

    def _is_stale(self, session: Session) -> bool:
        return session.stop_requested or self.registry.get(session.user_id) is not session

    async def handle_upstream_event(self, session: Session, event: UpstreamEvent) -> None:
        """Single dispatch point for one session's upstream events."""
        if self._is_stale(session):
            log.debug("event=upstream_event_ignored user=%s kind=%s", session.user_id, event.kind)
            return

        if isinstance(event, TurnEvent):
            await self._handle_turn(session, event)
        elif isinstance(event, BeginEvent):
            session.upstream_session_id = event.session_id
        elif isinstance(event, TerminationEvent):
            log.info(
                "event=provider_termination user=%s audio_sec=%s session_sec=%s",
                session.user_id, event.audio_duration_seconds, event.session_duration_seconds,
            )
        elif isinstance(event, ErrorEvent):
            log.warning("event=provider_error_event user=%s detail=%s", session.user_id, event.detail)
        elif isinstance(event, ConnectionStatusEvent):
            await self._handle_connection_status(session, event)

    async def _handle_turn(self, session: Session, event: TurnEvent) -> None:
        if not event.is_final:
            await self._send(
                session.downstream, "Turn",
                transcript=event.transcript, isFinal=False, scriptureReferences=[],
            )
            return

        refs = await self._detect(event.transcript)
        if self._is_stale(session):
            log.info(
                "event=detection_discarded user=%s references=%d reason=session_gone",
                session.user_id, len(refs),
            )
            return

        session.final_turns.append(event.transcript)
        new_refs = session.remember(refs)
        if new_refs:
            log.info(
                "event=references_delivered user=%s new=%d total=%d",
                session.user_id, len(new_refs), len(session.references),
            )
        await self._send(
            session.downstream, "Turn",
            transcript=event.transcript,
            isFinal=True,
            scriptureReferences=[r.to_payload() for r in new_refs],
        )

    async def _handle_connection_status(self, session: Session, event: ConnectionStatusEvent) -> None:
        if event.terminal:
            log.error("event=upstream_terminal user=%s detail=%s", session.user_id, event.detail)
            await self._send(
                session.downstream, "connection",
                message="Transcription connection failed",
                connectionError=event.detail,
            )
            self.registry.stop(session.user_id)
        elif event.state == ConnectorState.RECONNECTING.value:
            await self._send(
                session.downstream, "connection",
                message="Reconnecting to transcription service",
                connectionError=event.detail,
            )
        elif event.state == ConnectorState.OPEN.value:
            await self._send(session.downstream, "connection", message="Transcription connection open")

    async def _detect(self, text: str) -> list[ResolvedReference]:
        strategy = self.config.detection.strategy
        use_llm = strategy in ("llm", "both") and self.llm is not None and self.llm.available
        if strategy == "llm" and not use_llm:
            log.debug("event=llm_unavailable fallback=regex")

        refs: list[ResolvedReference] = []
        if strategy != "llm" or not use_llm:
            refs = self.detector.detect(text)
        if use_llm:
            # Shielded: a stop cancels the connector loop, not the request in flight.
            llm_task = asyncio.ensure_future(self.llm.detect_from_chunks(split_into_chunks(text)))
            refs = merge_unique([refs, await asyncio.shield(llm_task)])
        return refs

    async def _send(self, channel: Any, name: str, **data: Any) -> None:
        try:
            await channel.send_json(server_event(name, **data))
        except Exception as exc:
            log.warning("event=downstream_send_failed event_name=%s error=%s", name, exc)
