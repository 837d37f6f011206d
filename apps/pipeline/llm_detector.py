import asyncio
import json
import logging
import re
from typing import Any, Iterable, Optional

from groq import AsyncGroq

import config
from apps.pipeline.detector import ReferenceDetector, ResolvedReference, merge_unique

log = logging.getLogger("scripture_streamer.llm_detector")

_PROMPT_TEMPLATE = (
    "Extract scriptures, return JSON only.\n"
    'Format: [{"book":"Alma","chapter":2,"verse":21,"endVerse":null,"originalText":"Alma 2:21"}]\n'
    "Books: 1 Nephi, 2 Nephi, Jacob, Enos, Jarom, Omni, Words of Mormon, Mosiah, Alma, "
    "Helaman, 3 Nephi, 4 Nephi, Mormon, Ether, Moroni, Bible, D&C, Pearl of Great Price\n"
    'Handle: "Alma 1:20", "Second Nephi 3:2", "2 Nephi chapter 3 verse 2", word numbers\n'
    "verse=null if missing, verse=1 endVerse=5 for ranges\n"
    "[] if none. Text: "
)

_FENCE_OPEN_RE = re.compile(r"```(?:json)?\n?", re.IGNORECASE)
_FENCE_CLOSE_RE = re.compile(r"```\s*$")
_SENTENCE_END_RE = re.compile(r"(?<=[.!?])\s+")

DEFAULT_CHUNK_CHARS = 400


def split_into_chunks(text: str, max_chars: int = DEFAULT_CHUNK_CHARS) -> list[str]:
    """Group whole sentences into chunks of at most `max_chars` (one long sentence stays whole)."""
    chunks: list[str] = []
    current = ""
    for sentence in _SENTENCE_END_RE.split(text.strip()):
        if not sentence:
            continue
        if current and len(current) + 1 + len(sentence) > max_chars:
            chunks.append(current)
            current = sentence
        else:
            current = f"{current} {sentence}" if current else sentence
    if current:
        chunks.append(current)
    return chunks


def strip_code_fences(raw: str) -> str:
    text = raw.strip()
    if text.startswith("```"):
        text = _FENCE_CLOSE_RE.sub("", _FENCE_OPEN_RE.sub("", text, count=1)).strip()
    return text


def _as_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class LLMReferenceDetector:
    """Alternative detection path: ask a chat model for structured citations.

    Every item the model returns goes back through ReferenceDetector.resolve,
    so unknown works and out-of-range chapters are rejected exactly like the
    regex path rejects them.  Any failure yields [] for that chunk.
    """

    def __init__(
        self,
        detector: ReferenceDetector,
        model: str = "llama-3.3-70b-versatile",
        timeout_sec: float = 5.0,
        max_tokens: int = 300,
        client: AsyncGroq | None = None,
        api_key: str | None = None,
    ) -> None:
        self._detector = detector
        self.model = model
        self.timeout_sec = timeout_sec
        self.max_tokens = max_tokens
        self._client = client
        self._api_key = api_key if api_key is not None else config.groq_api_key()

    @property
    def available(self) -> bool:
        return self._client is not None or bool(self._api_key)

    def _get_client(self) -> AsyncGroq:
        if self._client is None:
            self._client = AsyncGroq(api_key=self._api_key)
        return self._client

    async def _call_model(self, text: str) -> str:
        response = await self._get_client().chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": _PROMPT_TEMPLATE + text}],
            temperature=0.0,
            max_tokens=self.max_tokens,
            stream=False,
        )
        return (response.choices[0].message.content or "").strip()

    async def detect(self, text: str) -> list[ResolvedReference]:
        if not text or not text.strip():
            return []
        if not self.available:
            log.warning("event=llm_detection_skipped reason=no_api_key")
            return []

        try:
            raw = await asyncio.wait_for(self._call_model(text), timeout=self.timeout_sec)
        except asyncio.TimeoutError:
            log.warning(
                "event=llm_detection_timeout text_len=%d timeout_sec=%.1f",
                len(text), self.timeout_sec,
            )
            return []
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.warning("event=llm_detection_error error=%s text_len=%d", exc, len(text))
            return []

        if not raw:
            return []
        try:
            items = json.loads(strip_code_fences(raw))
        except ValueError as exc:
            log.warning("event=llm_detection_bad_json error=%s raw=%r", exc, raw[:200])
            return []
        if not isinstance(items, list):
            log.warning("event=llm_detection_not_a_list raw=%r", raw[:200])
            return []

        refs = [ref for ref in (self._resolve_item(item) for item in items) if ref is not None]
        log.info(
            "event=llm_detection_result items=%d resolved=%d text_len=%d",
            len(items), len(refs), len(text),
        )
        return merge_unique([refs])

    async def detect_from_chunks(self, chunks: Iterable[str]) -> list[ResolvedReference]:
        """Run chunks concurrently, merge deterministically in chunk order."""
        chunk_list = [c for c in chunks if c and c.strip()]
        if not chunk_list:
            return []
        results = await asyncio.gather(
            *(self.detect(chunk) for chunk in chunk_list),
            return_exceptions=True,
        )
        groups: list[list[ResolvedReference]] = []
        for chunk, result in zip(chunk_list, results):
            if isinstance(result, BaseException):
                log.warning("event=llm_chunk_failed error=%s chunk_len=%d", result, len(chunk))
                continue
            groups.append(result)
        return merge_unique(groups)

    def _resolve_item(self, item: Any) -> Optional[ResolvedReference]:
        if not isinstance(item, dict):
            return None
        book = item.get("book")
        chapter = _as_int(item.get("chapter"))
        if not isinstance(book, str) or chapter is None:
            return None
        return self._detector.resolve(
            book=book,
            chapter=chapter,
            verse=_as_int(item.get("verse")),
            end_verse=_as_int(item.get("endVerse")),
            end_chapter=_as_int(item.get("endChapter")),
            original_text=str(item.get("originalText") or ""),
        )
