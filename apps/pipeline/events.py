"""
events.py — typed messages crossing the relay's two boundaries.

Upstream (provider → connector): every inbound frame is demultiplexed on its
``type`` field into one of the event models below; the connector adds its
own ConnectionStatusEvent.  Downstream (client ↔ relay): client messages are
validated here before the relay acts on them.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

log = logging.getLogger("scripture_streamer.events")


# ---------------------------------------------------------------------------
# Upstream events
# ---------------------------------------------------------------------------

class BeginEvent(BaseModel):
    kind: Literal["begin"] = "begin"
    session_id: str
    expires_at: Optional[int] = None


class TurnEvent(BaseModel):
    kind: Literal["turn"] = "turn"
    transcript: str = ""
    is_final: bool = False
    turn_order: Optional[int] = None


class TerminationEvent(BaseModel):
    kind: Literal["termination"] = "termination"
    audio_duration_seconds: Optional[float] = None
    session_duration_seconds: Optional[float] = None


class ErrorEvent(BaseModel):
    kind: Literal["error"] = "error"
    detail: str


class ConnectionStatusEvent(BaseModel):
    """Emitted by the connector itself, never by the provider."""
    kind: Literal["connection"] = "connection"
    state: str
    detail: Optional[str] = None
    terminal: bool = False


UpstreamEvent = Union[BeginEvent, TurnEvent, TerminationEvent, ErrorEvent, ConnectionStatusEvent]


def parse_provider_message(raw: Union[str, bytes], format_turns: bool = True) -> Optional[UpstreamEvent]:
    """Demultiplex one provider frame.

    Returns None for message types this relay does not consume and an
    ErrorEvent for anything malformed; never raises.
    """
    if isinstance(raw, (bytes, bytearray)):
        return ErrorEvent(detail="unexpected binary frame from provider")
    try:
        msg = json.loads(raw)
    except ValueError as exc:
        return ErrorEvent(detail=f"malformed provider message: {exc}")
    if not isinstance(msg, dict):
        return ErrorEvent(detail="provider message is not an object")

    msg_type = msg.get("type")
    try:
        if msg_type == "Begin":
            return BeginEvent(session_id=str(msg["id"]), expires_at=msg.get("expires_at"))
        if msg_type == "Turn":
            end_of_turn = bool(msg.get("end_of_turn", False))
            formatted = bool(msg.get("turn_is_formatted", False))
            return TurnEvent(
                transcript=msg.get("transcript") or "",
                is_final=end_of_turn and (formatted or not format_turns),
                turn_order=msg.get("turn_order"),
            )
        if msg_type == "Termination":
            return TerminationEvent(
                audio_duration_seconds=msg.get("audio_duration_seconds"),
                session_duration_seconds=msg.get("session_duration_seconds"),
            )
        if msg_type == "Error":
            return ErrorEvent(detail=str(msg.get("error") or msg.get("message") or "provider error"))
    except (KeyError, ValidationError) as exc:
        return ErrorEvent(detail=f"invalid {msg_type} message: {exc}")

    log.debug("event=provider_message_ignored type=%s", msg_type)
    return None


# ---------------------------------------------------------------------------
# Downstream client messages
# ---------------------------------------------------------------------------

class StartStreaming(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    user_id: str = Field(alias="userId", min_length=1)


class StopStreaming(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    user_id: Optional[str] = Field(default=None, alias="userId")


class SendAudioBuffer(BaseModel):
    """``payload`` is the documented field; the iOS client sends ``audioBase64``."""
    model_config = ConfigDict(populate_by_name=True)
    user_id: Optional[str] = Field(default=None, alias="userId")
    payload: Optional[str] = None
    audio_base64: Optional[str] = Field(default=None, alias="audioBase64")

    @property
    def audio(self) -> str:
        return self.payload or self.audio_base64 or ""


ClientMessage = Union[StartStreaming, StopStreaming, SendAudioBuffer]

_CLIENT_MESSAGES: dict[str, type[BaseModel]] = {
    "StartStreaming": StartStreaming,
    "StopStreaming": StopStreaming,
    "SendAudioBuffer": SendAudioBuffer,
}


class InvalidClientMessage(ValueError):
    pass


def parse_client_message(message: Any) -> ClientMessage:
    """Validate one downstream text message.

    Accepts the ``{"event": name, "data": {...}}`` envelope and the bare
    ``{"userId", "audioBase64"}`` audio object.  Raises InvalidClientMessage.
    """
    if isinstance(message, str):
        try:
            message = json.loads(message)
        except ValueError as exc:
            raise InvalidClientMessage(f"message is not valid JSON: {exc}") from exc
    if not isinstance(message, dict):
        raise InvalidClientMessage("message must be a JSON object")

    if "event" not in message and "audioBase64" in message:
        name, data = "SendAudioBuffer", message
    else:
        name = message.get("event")
        data = message.get("data") or {}
    model = _CLIENT_MESSAGES.get(name) if isinstance(name, str) else None
    if model is None:
        raise InvalidClientMessage(f"unknown event: {name!r}")
    if not isinstance(data, dict):
        raise InvalidClientMessage(f"{name} data must be an object")
    try:
        return model.model_validate(data)  # type: ignore[return-value]
    except ValidationError as exc:
        raise InvalidClientMessage(f"invalid {name}: {exc.errors()[0]['msg']}") from exc


def server_event(name: str, **data: Any) -> dict:
    """Relay → client envelope."""
    return {"event": name, "data": data}
