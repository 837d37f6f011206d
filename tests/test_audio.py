import base64

import numpy as np
import pytest

from apps.pipeline.audio import InvalidAudioPayload, decode_audio_payload, frame_duration_ms, frame_rms


def test_base64_payload():
    pcm = np.array([0, 1000, -1000], dtype="<i2").tobytes()
    assert decode_audio_payload(base64.b64encode(pcm).decode()) == pcm


def test_binary_payload_passes_through():
    assert decode_audio_payload(b"\x01\x02\x03\x04") == b"\x01\x02\x03\x04"
    assert decode_audio_payload(bytearray(b"\x01\x02")) == b"\x01\x02"


def test_odd_length_frame_forwarded_unchanged():
    assert decode_audio_payload(b"\x01\x02\x03") == b"\x01\x02\x03"
    assert decode_audio_payload(base64.b64encode(b"\x04\x00\x05").decode()) == b"\x04\x00\x05"


def test_invalid_base64():
    with pytest.raises(InvalidAudioPayload):
        decode_audio_payload("not base64!!")


def test_frame_rms():
    assert frame_rms(b"") == 0.0
    assert frame_rms(np.zeros(160, dtype="<i2").tobytes()) == 0.0
    assert frame_rms(np.full(160, 1000, dtype="<i2").tobytes()) == pytest.approx(1000.0)


def test_frame_duration():
    assert frame_duration_ms(b"\x00" * 3200) == pytest.approx(100.0)
