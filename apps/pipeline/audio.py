import base64
import binascii
import logging
from typing import Union

import numpy as np

log = logging.getLogger("scripture_streamer.audio")


class InvalidAudioPayload(ValueError):
    pass


def decode_audio_payload(payload: Union[str, bytes, bytearray, memoryview]) -> bytes:
    """Raw PCM16 bytes from a base64 string or a binary frame, unmodified."""
    if isinstance(payload, str):
        try:
            data = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise InvalidAudioPayload(f"audio payload is not valid base64: {exc}") from exc
    else:
        data = bytes(payload)
    if len(data) % 2:
        log.debug("event=audio_odd_length bytes=%d", len(data))
    return data


def frame_rms(frame: bytes) -> float:
    if len(frame) < 2:
        return 0.0
    samples = np.frombuffer(frame[: len(frame) - len(frame) % 2], dtype="<i2")
    return float(np.sqrt(np.mean(samples.astype(np.float32) ** 2)))


def frame_duration_ms(frame: bytes, sample_rate: int = 16000) -> float:
    return (len(frame) // 2) * 1000.0 / sample_rate
