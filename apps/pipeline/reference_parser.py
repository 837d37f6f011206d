"""
reference_parser.py — locate citations in normalized transcript text.

Input is the output of spoken_numbers.normalize().  A single alias scanner
finds every work name in the text; at each hit an ordered list of anchored
matchers is tried, first match wins:

  VERSE_RANGE    alma 32:21-22   alma 32:21,23   alma 32:21
  CHAPTER_RANGE  alma 32-33      (never followed by ':')
  CHAPTER_ONLY   alma 32         (never followed by ':' or '-')

Scanning is leftmost-longest and non-overlapping: after a citation is taken,
the scan resumes at its end.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from typing import Iterator, Optional

from apps.pipeline.works import AliasIndex, default_index

# Separators tolerated between the words of an alias, mirroring what the
# alias index strips on lookup.
_ALIAS_SEPARATOR = r"[\s.\-&\u2010-\u2015]*"
_ALIAS_SPLIT_RE = re.compile(r"[\s.,\-&\u2010-\u2015]+")


class PatternKind(enum.Enum):
    VERSE_RANGE = "verse_range"
    CHAPTER_RANGE = "chapter_range"
    CHAPTER_ONLY = "chapter_only"


@dataclass(frozen=True)
class ReferenceCandidate:
    kind: PatternKind
    alias: str
    chapter: int
    verse: Optional[int] = None
    end_verse: Optional[int] = None
    end_chapter: Optional[int] = None
    text: str = ""
    start: int = 0
    end: int = 0


def _alias_pattern(alias: str) -> str:
    words = [w for w in _ALIAS_SPLIT_RE.split(alias.lower()) if w]
    return _ALIAS_SEPARATOR.join(re.escape(w) for w in words)


def _verse_bounds(verse_list: str) -> tuple[int, Optional[int]]:
    """Start verse and optional end verse of ``21``, ``1-3`` or ``3,5,7``."""
    tokens = [int(t) for t in re.findall(r"\d+", verse_list)]
    start = tokens[0]
    for token in reversed(tokens[1:]):
        if token != start:
            return start, token
    return start, None


class ReferenceParser:
    """Prioritized pattern matchers over one alias alternation."""

    def __init__(self, index: AliasIndex | None = None) -> None:
        self._index = index or default_index()
        aliases = sorted(
            {_alias_pattern(a) for a in self._index.all_aliases()} - {""},
            key=lambda p: (-len(p), p),
        )
        alias_alt = "(?:" + "|".join(aliases) + ")"
        self._alias_re = re.compile(
            r"(?<![a-z0-9])(" + alias_alt + r")(?![a-z])", re.IGNORECASE
        )
        # A list or range continuation stops where another citation begins.
        not_alias = r"(?!" + alias_alt + r"(?![a-z]))"
        self._matchers: tuple[tuple[PatternKind, re.Pattern], ...] = (
            (
                PatternKind.VERSE_RANGE,
                re.compile(
                    r"\s*(\d+)\s*:\s*(\d+(?:\s*[-,]\s*" + not_alias + r"\d+)*)",
                    re.IGNORECASE,
                ),
            ),
            (
                PatternKind.CHAPTER_RANGE,
                re.compile(
                    r"\s*(\d+)\s*-\s*" + not_alias + r"(\d+)(?!\d|\s*:)",
                    re.IGNORECASE,
                ),
            ),
            (
                PatternKind.CHAPTER_ONLY,
                re.compile(r"\s*(\d+)(?!\d|\s*[:\-])"),
            ),
        )

    def parse(self, text: str) -> Optional[ReferenceCandidate]:
        """First citation in ``text``, or None when nothing matches."""
        return next(self.scan(text), None)

    def scan(self, text: str) -> Iterator[ReferenceCandidate]:
        if not text:
            return
        pos = 0
        while True:
            hit = self._alias_re.search(text, pos)
            if hit is None:
                return
            candidate = self._match_at(text, hit)
            if candidate is None:
                pos = hit.end()
                continue
            yield candidate
            pos = candidate.end

    def _match_at(self, text: str, hit: re.Match) -> Optional[ReferenceCandidate]:
        alias = hit.group(1)
        for kind, pattern in self._matchers:
            m = pattern.match(text, hit.end())
            if m is None:
                continue
            chapter = int(m.group(1))
            verse = end_verse = end_chapter = None
            if kind is PatternKind.VERSE_RANGE:
                verse, end_verse = _verse_bounds(m.group(2))
            elif kind is PatternKind.CHAPTER_RANGE:
                end_chapter = int(m.group(2))
            return ReferenceCandidate(
                kind=kind,
                alias=alias,
                chapter=chapter,
                verse=verse,
                end_verse=end_verse,
                end_chapter=end_chapter,
                text=text[hit.start():m.end()].strip(),
                start=hit.start(),
                end=m.end(),
            )
        return None
