import asyncio
import logging

from groq import AsyncGroq

import config
from config import SummaryConfig

log = logging.getLogger("scripture_streamer.summarizer")

PLACEHOLDER_SUMMARY = "Summary is not available for this session."

_PROMPT = "Provide a brief summary of the transcript."

_client: AsyncGroq | None = None


def _get_client() -> AsyncGroq:
    global _client
    if _client is None:
        _client = AsyncGroq(api_key=config.groq_api_key())
    return _client


async def _call_model(transcript: str, cfg: SummaryConfig, client: AsyncGroq) -> str:
    response = await client.chat.completions.create(
        model=cfg.model,
        messages=[{"role": "user", "content": f"{_PROMPT}\n\nTranscript: {transcript}"}],
        temperature=0.2,
        max_tokens=cfg.max_tokens,
        stream=False,
    )
    return (response.choices[0].message.content or "").strip()


async def summarize_transcript(
    transcript: str,
    cfg: SummaryConfig,
    client: AsyncGroq | None = None,
) -> str:
    if not cfg.enabled or not transcript.strip():
        return PLACEHOLDER_SUMMARY
    if client is None:
        if not config.groq_api_key():
            log.info("event=summary_skipped reason=no_api_key")
            return PLACEHOLDER_SUMMARY
        client = _get_client()

    try:
        summary = await asyncio.wait_for(
            _call_model(transcript, cfg, client),
            timeout=cfg.timeout_sec,
        )
    except asyncio.TimeoutError:
        log.warning(
            "event=summary_timeout transcript_len=%d timeout_sec=%.1f",
            len(transcript), cfg.timeout_sec,
        )
        return PLACEHOLDER_SUMMARY
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        log.warning("event=summary_error error=%s transcript_len=%d", exc, len(transcript))
        return PLACEHOLDER_SUMMARY

    log.info("event=summary_result summary_len=%d transcript_len=%d", len(summary), len(transcript))
    return summary or PLACEHOLDER_SUMMARY
