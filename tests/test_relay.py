import asyncio
import base64

import pytest

from apps.pipeline.detector import ReferenceDetector
from apps.pipeline.events import TurnEvent
from apps.pipeline.relay import WELCOME_MESSAGE, SessionRelay
from apps.pipeline.sessions import SessionRegistry
from apps.pipeline.upstream import AuthFailure, ConnectorState
from conftest import FakeChannel, FakeConnect, FakeProviderSocket, FakeTokens, begin_message, turn_message, wait_until
from config import AssemblyAIConfig, DetectionConfig, StreamerConfig


def start_msg(user_id="u1"):
    return {"event": "StartStreaming", "data": {"userId": user_id}}


def stop_msg(user_id="u1"):
    return {"event": "StopStreaming", "data": {"userId": user_id}}


class FakeSummarizer:

    def __init__(self):
        self.transcripts = []

    async def __call__(self, transcript, cfg):
        self.transcripts.append(transcript)
        return f"summary({len(transcript)})"


class GatedLLM:
    """LLM detector stand-in whose answer is held until released."""

    available = True

    def __init__(self, detector, on_call=None):
        self.detector = detector
        self.on_call = on_call
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.model = self.timeout_sec = self.max_tokens = None

    async def detect_from_chunks(self, chunks):
        self.started.set()
        if self.on_call is not None:
            self.on_call()
        await self.release.wait()
        return [self.detector.resolve("Moroni", 10, 4, original_text="moroni 10:4")]


class SlowCloseSocket(FakeProviderSocket):
    """Provider socket whose close handshake takes a while."""

    async def close(self):
        await asyncio.sleep(0.2)
        await super().close()


def make_relay(connect, tokens=None, llm=None, strategy="regex"):
    cfg = StreamerConfig(
        assemblyai=AssemblyAIConfig(reconnect_attempts=2, reconnect_delay_sec=0.0, connect_timeout_sec=0.05),
        detection=DetectionConfig(strategy=strategy),
    )
    summarize = FakeSummarizer()
    relay = SessionRelay(
        SessionRegistry(),
        ReferenceDetector(),
        cfg,
        tokens or FakeTokens(),
        llm=llm,
        connect=connect,
        summarize=summarize,
    )
    return relay, summarize


async def _open(relay, channel, user_id="u1"):
    await relay.on_message(channel, start_msg(user_id))
    session = relay.registry.get(user_id)
    await wait_until(lambda: session.upstream is not None and session.upstream.state is ConnectorState.OPEN)
    return session


# =============================================================================
# TURNS
# =============================================================================

class TestTurns:

    @pytest.mark.asyncio
    async def test_partial_and_final_turns_with_cross_turn_dedup(self):
        connect = FakeConnect(lambda: FakeProviderSocket([
            begin_message("sess-7"),
            turn_message("read al", final=False),
            turn_message("Read Alma 32:21.", order=0),
            turn_message("Again Alma 32:21 and Moroni 10:4.", order=1),
        ]))
        relay, _ = make_relay(connect)
        channel = FakeChannel()
        await relay.on_connect(channel)
        await relay.on_message(channel, start_msg())

        await wait_until(lambda: len(channel.events("Turn")) == 3)

        partial, first, second = channel.events("Turn")
        assert partial == {"transcript": "read al", "isFinal": False, "scriptureReferences": []}
        assert first["isFinal"] is True
        assert [(r["book"], r["chapter"], r["verse"]) for r in first["scriptureReferences"]] == [("Alma", 32, 21)]
        assert first["scriptureReferences"][0]["url"].endswith("/bofm/alma/32/21?lang=eng")
        assert [(r["book"], r["chapter"], r["verse"]) for r in second["scriptureReferences"]] == [("Moroni", 10, 4)]

        session = relay.registry.get("u1")
        assert session.upstream_session_id == "sess-7"
        assert channel.events("connection")[0] == {"message": WELCOME_MESSAGE}
        await relay.stop_all()

    @pytest.mark.asyncio
    async def test_both_strategy_merges_llm_results(self):
        relay, _ = make_relay(FakeConnect(), strategy="both")
        relay.llm = GatedLLM(relay.detector)
        relay.llm.release.set()
        channel = FakeChannel()
        session = relay.registry.start("u1", channel)

        await relay.handle_upstream_event(session, TurnEvent(transcript="Alma 32:21", is_final=True))

        (turn,) = channel.events("Turn")
        assert [r["book"] for r in turn["scriptureReferences"]] == ["Alma", "Moroni"]

    @pytest.mark.asyncio
    async def test_llm_strategy_without_llm_falls_back_to_regex(self):
        relay, _ = make_relay(FakeConnect(), strategy="llm")
        channel = FakeChannel()
        session = relay.registry.start("u1", channel)

        await relay.handle_upstream_event(session, TurnEvent(transcript="Ether 12:27", is_final=True))

        (turn,) = channel.events("Turn")
        assert turn["scriptureReferences"][0]["book"] == "Ether"


# =============================================================================
# STALE RESULTS
# =============================================================================

class TestStaleResults:

    @pytest.mark.asyncio
    async def test_detection_finishing_after_stop_is_discarded(self):
        relay, _ = make_relay(FakeConnect(), strategy="llm")
        relay.llm = GatedLLM(relay.detector, on_call=lambda: relay.registry.stop("u1"))
        relay.llm.release.set()
        channel = FakeChannel()
        session = relay.registry.start("u1", channel)

        await relay.handle_upstream_event(session, TurnEvent(transcript="Moroni 10:4", is_final=True))

        assert channel.events("Turn") == []
        assert session.final_turns == []
        assert session.references == {}

    @pytest.mark.asyncio
    async def test_stop_while_llm_in_flight(self):
        socket = FakeProviderSocket([turn_message("Moroni 10:4")])
        connect = FakeConnect(socket)
        relay, summarize = make_relay(connect, strategy="llm")
        relay.llm = GatedLLM(relay.detector)
        channel = FakeChannel()
        await relay.on_message(channel, start_msg())
        await asyncio.wait_for(relay.llm.started.wait(), timeout=2.0)

        await relay.on_message(channel, stop_msg())
        relay.llm.release.set()
        await asyncio.sleep(0.01)

        assert channel.events("Turn") == []
        (stopped,) = channel.events("StreamingStopped")
        assert stopped["finalTranscript"] == ""
        assert summarize.transcripts == [""]
        assert socket.terminate_sent

    @pytest.mark.asyncio
    async def test_events_for_replaced_session_are_ignored(self):
        relay, _ = make_relay(FakeConnect())
        old_channel, new_channel = FakeChannel("old"), FakeChannel("new")
        old = relay.registry.start("u1", old_channel)
        relay.registry.start("u1", new_channel)

        await relay.handle_upstream_event(old, TurnEvent(transcript="Alma 5", is_final=True))

        assert old_channel.sent == []
        assert new_channel.sent == []


# =============================================================================
# LIFECYCLE
# =============================================================================

class TestLifecycle:

    @pytest.mark.asyncio
    async def test_stop_emits_stopped_then_summary(self):
        connect = FakeConnect(lambda: FakeProviderSocket([
            turn_message("Read Alma 5.", order=0),
            turn_message("Then Ether 12.", order=1),
        ]))
        relay, summarize = make_relay(connect)
        channel = FakeChannel()
        await relay.on_message(channel, start_msg())
        await wait_until(lambda: len(channel.events("Turn")) == 2)

        await relay.on_message(channel, stop_msg())

        assert [m["event"] for m in channel.sent[-2:]] == ["StreamingStopped", "Summary"]
        (stopped,) = channel.events("StreamingStopped")
        assert stopped == {"message": "Streaming stopped", "finalTranscript": "Read Alma 5. Then Ether 12."}
        assert channel.events("Summary") == [{"text": "summary(27)"}]
        assert summarize.transcripts == ["Read Alma 5. Then Ether 12."]
        assert len(relay.registry) == 0
        assert connect.sockets[0].terminate_sent

    @pytest.mark.asyncio
    async def test_stop_without_session(self):
        relay, summarize = make_relay(FakeConnect())
        channel = FakeChannel()

        await relay.on_message(channel, stop_msg())

        assert channel.events("StreamingStopped") == [
            {"message": "No active streaming session", "finalTranscript": ""}
        ]
        assert summarize.transcripts == []

    @pytest.mark.asyncio
    async def test_replacement_closes_old_connection_first(self):
        connect = FakeConnect(FakeProviderSocket, FakeProviderSocket)
        relay, _ = make_relay(connect)
        first, second = FakeChannel("first"), FakeChannel("second")
        await _open(relay, first)

        await relay.on_message(second, start_msg())
        await wait_until(lambda: connect.calls == 2)

        assert connect.closed_before_call == [[], [True]]
        assert connect.sockets[0].terminate_sent
        assert relay.registry.get("u1").downstream is second
        assert relay.registry.get_by_downstream(first) is None
        await relay.stop_all()

    @pytest.mark.asyncio
    async def test_back_to_back_restarts_wait_for_first_connection(self):
        connect = FakeConnect(SlowCloseSocket)
        relay, _ = make_relay(connect)
        a, b, c = FakeChannel("a"), FakeChannel("b"), FakeChannel("c")
        await _open(relay, a)

        await asyncio.gather(relay.on_message(b, start_msg()), relay.on_message(c, start_msg()))
        await wait_until(lambda: connect.calls == 2)

        assert connect.closed_before_call[1] == [True]
        assert relay.registry.get("u1").downstream is c
        assert relay.registry.get_by_downstream(b) is None
        await asyncio.sleep(0.05)
        assert connect.calls == 2
        await relay.stop_all()

    @pytest.mark.asyncio
    async def test_invalid_message(self):
        relay, _ = make_relay(FakeConnect())
        channel = FakeChannel()

        await relay.on_message(channel, "{broken")
        await relay.on_message(channel, {"event": "StartStreaming", "data": {}})

        assert len(channel.events("Error")) == 2
        assert len(relay.registry) == 0

    @pytest.mark.asyncio
    async def test_terminal_auth_failure(self):
        relay, _ = make_relay(FakeConnect(), tokens=FakeTokens(default=AuthFailure("HTTP 401")))
        channel = FakeChannel()

        await relay.on_message(channel, start_msg())
        await wait_until(lambda: any("connectionError" in e for e in channel.events("connection")))

        (failure,) = [e for e in channel.events("connection") if "connectionError" in e]
        assert failure["message"] == "Transcription connection failed"
        assert "authentication failed" in failure["connectionError"]
        assert len(relay.registry) == 0

    @pytest.mark.asyncio
    async def test_disconnect_tears_down_session(self):
        connect = FakeConnect(FakeProviderSocket)
        relay, summarize = make_relay(connect)
        channel = FakeChannel()
        await _open(relay, channel)

        await relay.on_disconnect(channel)

        assert len(relay.registry) == 0
        assert connect.sockets[0].closed
        assert connect.sockets[0].terminate_sent
        assert summarize.transcripts == []

    @pytest.mark.asyncio
    async def test_stop_user_and_stop_all(self):
        connect = FakeConnect()
        relay, _ = make_relay(connect)
        a, b = FakeChannel("a"), FakeChannel("b")
        await _open(relay, a, "u1")
        await _open(relay, b, "u2")

        assert await relay.stop_user("u1") is True
        assert await relay.stop_user("u1") is False
        assert a.events("StreamingStopped")

        await relay.stop_all()
        assert len(relay.registry) == 0
        assert all(s.closed for s in connect.sockets)

    def test_apply_config(self):
        relay, _ = make_relay(FakeConnect())
        relay.apply_config(StreamerConfig(detection=DetectionConfig(lang="spa")))
        assert relay.detector.lang == "spa"
        assert relay.config.detection.lang == "spa"


# =============================================================================
# AUDIO
# =============================================================================

class TestAudio:

    @pytest.mark.asyncio
    async def test_forwarding(self):
        connect = FakeConnect(FakeProviderSocket)
        relay, _ = make_relay(connect)
        channel = FakeChannel()
        await _open(relay, channel)

        await relay.on_audio(channel, b"\x01\x00\x02\x00")
        await relay.on_audio(channel, base64.b64encode(b"\x03\x00").decode())
        await relay.on_message(channel, {"event": "SendAudioBuffer", "data": {"payload": base64.b64encode(b"\x04\x00\x05").decode()}})

        assert connect.sockets[0].sent == [b"\x01\x00\x02\x00", b"\x03\x00", b"\x04\x00\x05"]
        await relay.stop_all()

    @pytest.mark.asyncio
    async def test_invalid_base64(self):
        connect = FakeConnect(FakeProviderSocket)
        relay, _ = make_relay(connect)
        channel = FakeChannel()
        await _open(relay, channel)

        await relay.on_audio(channel, "not base64!!")

        assert len(channel.events("Error")) == 1
        assert connect.sockets[0].sent == []
        await relay.stop_all()

    @pytest.mark.asyncio
    async def test_audio_without_session_is_dropped(self):
        relay, _ = make_relay(FakeConnect())
        channel = FakeChannel()
        await relay.on_audio(channel, b"\x01\x00")
        assert channel.sent == []
