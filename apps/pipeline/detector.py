"""
detector.py — normalize → parse → resolve → validate → build identifier.

ReferenceDetector is stateless apart from the shared, read-only alias index,
so one instance serves every session.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from apps.pipeline.identifiers import build_identifier
from apps.pipeline.reference_parser import PatternKind, ReferenceCandidate, ReferenceParser
from apps.pipeline.spoken_numbers import normalize
from apps.pipeline.works import AliasIndex, default_index

log = logging.getLogger("scripture_streamer.detector")

DedupKey = tuple[str, int, Optional[int], Optional[int]]


@dataclass(frozen=True)
class ResolvedReference:
    book: str
    chapter: int
    url: str
    verse: Optional[int] = None
    end_verse: Optional[int] = None
    end_chapter: Optional[int] = None
    original_text: str = ""

    @property
    def key(self) -> DedupKey:
        return (self.book, self.chapter, self.verse, self.end_verse)

    def to_payload(self) -> dict:
        """Wire shape delivered to clients inside ``scriptureReferences``."""
        return {
            "book": self.book,
            "chapter": self.chapter,
            "verse": self.verse,
            "endVerse": self.end_verse,
            "endChapter": self.end_chapter,
            "url": self.url,
            "originalText": self.original_text,
        }


def merge_unique(groups: Iterable[Iterable[ResolvedReference]]) -> list[ResolvedReference]:
    """Flatten `groups` in order, keeping the first reference per dedup key."""
    seen: set[DedupKey] = set()
    merged: list[ResolvedReference] = []
    for group in groups:
        for ref in group:
            if ref.key in seen:
                continue
            seen.add(ref.key)
            merged.append(ref)
    return merged


class ReferenceDetector:

    def __init__(self, index: AliasIndex | None = None, lang: str = "eng") -> None:
        self._index = index or default_index()
        self._parser = ReferenceParser(self._index)
        self.lang = lang

    @property
    def index(self) -> AliasIndex:
        return self._index

    def detect(self, text: str) -> list[ResolvedReference]:
        """All distinct citations in one transcript segment, in text order."""
        if not text or not text.strip():
            return []
        normalized = normalize(text)
        found: list[ResolvedReference] = []
        for candidate in self._parser.scan(normalized):
            ref = self._resolve_candidate(candidate)
            if ref is not None:
                found.append(ref)
        refs = merge_unique([found])
        if refs:
            log.debug(
                "event=references_detected count=%d text_len=%d normalized=%r",
                len(refs), len(text), normalized,
            )
        return refs

    def detect_from_chunks(self, chunks: Iterable[str]) -> list[ResolvedReference]:
        """Detect per chunk, then merge in chunk order with the same dedup rule."""
        return merge_unique(self.detect(chunk) for chunk in chunks)

    def resolve(
        self,
        book: str,
        chapter: int,
        verse: Optional[int] = None,
        end_verse: Optional[int] = None,
        end_chapter: Optional[int] = None,
        original_text: str = "",
    ) -> Optional[ResolvedReference]:
        """Validate an already structured citation (used by the LLM path)."""
        if end_chapter is not None:
            kind = PatternKind.CHAPTER_RANGE
            verse = end_verse = None
        elif verse is not None:
            kind = PatternKind.VERSE_RANGE
            if end_verse == verse:
                end_verse = None
        else:
            kind = PatternKind.CHAPTER_ONLY
            end_verse = None
        candidate = ReferenceCandidate(
            kind=kind,
            alias=book,
            chapter=chapter,
            verse=verse,
            end_verse=end_verse,
            end_chapter=end_chapter,
            text=original_text,
        )
        return self._resolve_candidate(candidate)

    def _resolve_candidate(self, candidate: ReferenceCandidate) -> Optional[ResolvedReference]:
        work = self._index.resolve(candidate.alias)
        if work is None:
            return None
        url = build_identifier(work, candidate, self.lang)
        if url is None:
            return None
        return ResolvedReference(
            book=work.name,
            chapter=candidate.chapter,
            url=url,
            verse=candidate.verse,
            end_verse=candidate.end_verse,
            end_chapter=candidate.end_chapter,
            original_text=candidate.text,
        )


_default_detector: ReferenceDetector | None = None


def default_detector() -> ReferenceDetector:
    global _default_detector
    if _default_detector is None:
        _default_detector = ReferenceDetector()
    return _default_detector
