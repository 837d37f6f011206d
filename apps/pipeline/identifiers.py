"""
identifiers.py — canonical study URL for a parsed citation.

    https://www.churchofjesuschrist.org/study/scriptures/bofm/alma/32/21-22?lang=eng
"""

from __future__ import annotations

import logging
from typing import Optional

from apps.pipeline.reference_parser import ReferenceCandidate
from apps.pipeline.works import WorkRecord

log = logging.getLogger("scripture_streamer.identifiers")

STUDY_BASE_URL = "https://www.churchofjesuschrist.org/study/scriptures"


def fragment_for(candidate: ReferenceCandidate) -> str:
    """``32``, ``32/21``, ``32/21-22`` or ``32-33``."""
    if candidate.end_chapter is not None:
        return f"{candidate.chapter}-{candidate.end_chapter}"
    if candidate.verse is None:
        return str(candidate.chapter)
    if candidate.end_verse is None:
        return f"{candidate.chapter}/{candidate.verse}"
    return f"{candidate.chapter}/{candidate.verse}-{candidate.end_verse}"


def build_identifier(work: WorkRecord, candidate: ReferenceCandidate, lang: str = "eng") -> Optional[str]:
    """Study URL for `candidate`, or None when its chapters are not in `work`.

    Rejection is not an error: unknown chapters are ordinary parse misses.
    """
    if not work.has_chapter(candidate.chapter):
        log.debug(
            "event=identifier_rejected work=%s chapter=%d reason=chapter_not_in_work",
            work.name, candidate.chapter,
        )
        return None
    if candidate.end_chapter is not None and (
        not work.has_chapter(candidate.end_chapter) or candidate.end_chapter <= candidate.chapter
    ):
        log.debug(
            "event=identifier_rejected work=%s chapter=%d end_chapter=%d reason=bad_chapter_range",
            work.name, candidate.chapter, candidate.end_chapter,
        )
        return None
    return f"{STUDY_BASE_URL}/{work.path}/{fragment_for(candidate)}?lang={lang}"
