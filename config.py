"""
config.py — Scripture Streamer · Runtime Configuration
======================================================
Pydantic models for every tunable parameter of the relay.
Serialises to / deserialises from JSON.  Used by:
  • server.py          — GET/PUT /config endpoints, builds the relay at startup
  • apps/pipeline/*    — connector, detectors and summarizer read their section

Secrets never live in the JSON file; they come from the environment
(``.env`` is loaded by python-dotenv).
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

load_dotenv()

log = logging.getLogger("scripture_streamer.config")

DEFAULT_CONFIG_PATH = os.getenv("STREAMER_CONFIG", "streamer_config.json")


def assemblyai_api_key() -> str:
    """Both spellings have been used in deployments; the first one wins."""
    return os.getenv("ASSEMBLYAI_API_KEY") or os.getenv("ASSEMBLY_AI_API_KEY") or ""


def groq_api_key() -> str:
    return os.getenv("GROQ_API_KEY", "")


# ---------------------------------------------------------------------------
# Per-service config sections
# ---------------------------------------------------------------------------

class AssemblyAIConfig(BaseModel):
    """Streaming speech-recognition connection parameters."""
    streaming_url: str = Field(default="wss://streaming.assemblyai.com/v3/ws", description="Streaming endpoint")
    token_url: str = Field(default="https://streaming.assemblyai.com/v3/token", description="Temporary token endpoint")
    sample_rate: int = Field(default=16000, ge=8000, le=48000, description="PCM sample rate (Hz)")
    encoding: str = Field(default="pcm_s16le", description="Audio encoding sent upstream")
    format_turns: bool = Field(default=True, description="Ask the provider for formatted final turns")
    token_expires_in_sec: int = Field(default=600, ge=1, le=600, description="Temporary token lifetime")
    max_session_duration_sec: int = Field(default=10800, ge=60, le=10800, description="Provider session cap")
    connect_timeout_sec: float = Field(default=10.0, gt=0.0, le=60.0, description="Websocket connect bound")
    reconnect_attempts: int = Field(default=5, ge=1, le=20, description="Consecutive failures before giving up")
    reconnect_delay_sec: float = Field(default=1.0, ge=0.0, le=30.0, description="Fixed delay between attempts")
    word_boost: Optional[list[str]] = Field(default=None, description="Custom vocabulary override")


class DetectionConfig(BaseModel):
    """Scripture reference detection strategy."""
    strategy: Literal["regex", "llm", "both"] = Field(default="regex", description="Detection path for final turns")
    model: str = Field(default="llama-3.3-70b-versatile", description="Groq model for the LLM path")
    timeout_sec: float = Field(default=5.0, gt=0.0, le=30.0, description="LLM request timeout")
    max_tokens: int = Field(default=300, ge=16, le=4096, description="LLM response budget")
    lang: str = Field(default="eng", description="Language parameter of generated study URLs")


class SummaryConfig(BaseModel):
    """End-of-session transcript summary."""
    enabled: bool = Field(default=True, description="Generate a summary when streaming stops")
    model: str = Field(default="llama-3.3-70b-versatile", description="Groq model for summaries")
    max_tokens: int = Field(default=1000, ge=16, le=8192, description="Summary response budget")
    timeout_sec: float = Field(default=15.0, gt=0.0, le=120.0, description="Summary request timeout")


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------

class StreamerConfig(BaseModel):
    """Complete runtime configuration for the scripture streamer."""
    assemblyai: AssemblyAIConfig = Field(default_factory=AssemblyAIConfig)
    detection: DetectionConfig = Field(default_factory=DetectionConfig)
    summary: SummaryConfig = Field(default_factory=SummaryConfig)

    # -- Persistence -----------------------------------------------------------

    @classmethod
    def load(cls, path: str | Path) -> "StreamerConfig":
        """Config from `path`; defaults when the file is missing or unusable."""
        p = Path(path)
        try:
            raw = p.read_text(encoding="utf-8")
        except FileNotFoundError:
            log.info("event=config_load_defaults path=%s reason=missing", p)
            return cls()
        try:
            config = cls.model_validate_json(raw)
        except ValidationError as exc:
            log.warning(
                "event=config_load_defaults path=%s reason=invalid errors=%d",
                p, exc.error_count(),
            )
            return cls()
        log.info(
            "event=config_loaded path=%s strategy=%s summary=%s",
            p, config.detection.strategy, config.summary.enabled,
        )
        return config

    def save(self, path: str | Path) -> None:
        """Write through a sibling temp file so readers never see half a config."""
        p = Path(path)
        tmp = p.with_name(p.name + ".tmp")
        tmp.write_text(self.model_dump_json(indent=2, exclude_none=True), encoding="utf-8")
        os.replace(tmp, p)
        log.info("event=config_saved path=%s", p)

    def merge_patch(self, patch: dict) -> "StreamerConfig":
        """New config with `patch` applied section by section.

        ``{"assemblyai": {"reconnect_attempts": 2}}`` touches that one field;
        lists such as ``word_boost`` are replaced, not extended.  Raises
        pydantic's ValidationError when the result is not a valid config.
        """
        return StreamerConfig.model_validate(_merged(self.model_dump(), patch))


def _merged(base: dict, patch: dict) -> dict:
    out = dict(base)
    for key, value in patch.items():
        current = out.get(key)
        out[key] = _merged(current, value) if isinstance(current, dict) and isinstance(value, dict) else value
    return out
