"""
stream_wav.py — push a WAV file through a running streamer like a live client.

    python -m apps.pipeline.stream_wav sermon.wav --url ws://localhost:8000/ws --user dev

Sends StartStreaming, 100 ms PCM16 frames paced in real time, then
StopStreaming, and prints every event the server sends back.
"""

import argparse
import asyncio
import json
import time

import numpy as np
import scipy.signal
import soundfile as sf
import websockets

TARGET_SR = 16000
FRAME_MS = 100


def load_pcm16(path: str, target_sr: int = TARGET_SR) -> np.ndarray:
    """Mono int16 samples at `target_sr`."""
    data, sr = sf.read(path)

    # Convert to mono if needed
    if len(data.shape) > 1:
        data = np.mean(data, axis=1)

    if sr != target_sr:
        number_of_samples = round(len(data) * float(target_sr) / sr)
        data = scipy.signal.resample(data, number_of_samples)

    data = np.clip(data, -1.0, 1.0)
    return (data * 32767).astype(np.int16)


def iter_frames(samples: np.ndarray, sample_rate: int = TARGET_SR, frame_ms: int = FRAME_MS):
    step = sample_rate * frame_ms // 1000
    for i in range(0, len(samples), step):
        yield samples[i:i + step].tobytes()


async def stream_file(path: str, url: str, user_id: str, tail_sec: float = 5.0) -> None:
    audio = load_pcm16(path)
    print(f"Loaded {path}: {len(audio) / TARGET_SR:.1f}s at {TARGET_SR} Hz")

    async with websockets.connect(url) as ws:
        stopped = asyncio.Event()

        async def receiver():
            async for message in ws:
                msg = json.loads(message)
                print("EVENT:", msg)
                if msg.get("event") == "Summary":
                    stopped.set()

        receiver_task = asyncio.create_task(receiver())

        await ws.send(json.dumps({"event": "StartStreaming", "data": {"userId": user_id}}))
        start = time.perf_counter()
        for n, frame in enumerate(iter_frames(audio), start=1):
            await ws.send(frame)
            # Pace to real time; the provider expects live audio.
            delay = start + n * FRAME_MS / 1000 - time.perf_counter()
            if delay > 0:
                await asyncio.sleep(delay)

        await ws.send(json.dumps({"event": "StopStreaming", "data": {"userId": user_id}}))
        try:
            await asyncio.wait_for(stopped.wait(), timeout=tail_sec + 15.0)
        except asyncio.TimeoutError:
            print("No summary received before timeout")
        receiver_task.cancel()


def main() -> None:
    parser = argparse.ArgumentParser(description="Stream a WAV file to the scripture streamer")
    parser.add_argument("wav", help="Path to a WAV file (any rate, mono or stereo)")
    parser.add_argument("--url", default="ws://localhost:8000/ws")
    parser.add_argument("--user", default="wav-client")
    args = parser.parse_args()
    try:
        asyncio.run(stream_file(args.wav, args.url, args.user))
    except KeyboardInterrupt:
        print("\nShutdown requested")


if __name__ == "__main__":
    main()
