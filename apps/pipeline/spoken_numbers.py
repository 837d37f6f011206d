"""
spoken_numbers.py — rewrite spoken citations into canonical reference syntax.

    "Alma chapter thirty two verse twenty one through twenty two"
        → "alma 32:21-22"

Number words are substituted longest phrase first: "twenty one" must be
consumed as 21 before the shorter "twenty" and "one" entries get a chance to
split it into "20 1".  Connectives ("to", "through", "and") are only rewritten
when they sit between two numbers, so book names such as "Doctrine and
Covenants" survive untouched.
"""

from __future__ import annotations

import re

_ONES = (
    "one", "two", "three", "four", "five", "six", "seven", "eight", "nine",
)
_TEENS = (
    "ten", "eleven", "twelve", "thirteen", "fourteen", "fifteen",
    "sixteen", "seventeen", "eighteen", "nineteen",
)
_TENS = (
    "twenty", "thirty", "forty", "fifty", "sixty", "seventy", "eighty", "ninety",
)

# Psalms has 150 chapters and D&C 138 sections; nothing cited aloud goes higher.
MAX_SPOKEN_NUMBER = 150


def _build_number_words() -> dict[str, int]:
    words: dict[str, int] = {}
    for value, word in enumerate(_ONES, start=1):
        words[word] = value
    for value, word in enumerate(_TEENS, start=10):
        words[word] = value
    below_hundred: dict[str, int] = dict(words)
    for index, tens in enumerate(_TENS):
        base = (index + 2) * 10
        below_hundred[tens] = base
        for unit, one in enumerate(_ONES, start=1):
            below_hundred[f"{tens} {one}"] = base + unit
    words = dict(below_hundred)
    words["hundred"] = 100
    words["one hundred"] = 100
    for phrase, value in below_hundred.items():
        if 100 + value > MAX_SPOKEN_NUMBER:
            continue
        words[f"one hundred {phrase}"] = 100 + value
        words[f"one hundred and {phrase}"] = 100 + value
    return words


NUMBER_WORDS: dict[str, int] = _build_number_words()


def _phrase_pattern(phrase: str) -> str:
    # "twenty one" also matches "twenty-one" and irregular spacing.
    return r"[\s\-]+".join(re.escape(word) for word in phrase.split())


_NUMBER_RE = re.compile(
    r"\b(?:"
    + "|".join(_phrase_pattern(p) for p in sorted(NUMBER_WORDS, key=len, reverse=True))
    + r")\b"
)
_SPLIT_RE = re.compile(r"[\s\-]+")

_DUPLICATE_KEYWORD_RE = re.compile(r"\b(chapter|verse)(?:\s+\1\b)+")
_RANGE_RE = re.compile(
    r"(\d)\s*(?:-|\bthrough\b|\bthru\b|\bto\b)\s*(?:(?:chapter|verse)s?\s+)?(?=\d)"
)
_LIST_RE = re.compile(r"(\d)\s*(?:,|\band\b)\s*(?:verses?\s+)?(?=\d)")
_CHAPTER_KEYWORD_RE = re.compile(r"\b(?:chapters?|sections?)\s+(?=\d)")
_VERSE_KEYWORD_RE = re.compile(r"(?<!\d)(?<!verse )(?<!verses )(\d+)\s*,?\s*\bverses?\s+(?=\d)")
_COLON_RE = re.compile(r"(\d)\s*:\s*(?=\d)")
_WHITESPACE_RE = re.compile(r"\s+")


def _number_for(match: re.Match) -> str:
    phrase = " ".join(_SPLIT_RE.split(match.group(0)))
    return str(NUMBER_WORDS[phrase])


def words_to_digits(text: str) -> str:
    """Replace number words with digits (word-boundary safe)."""
    return _NUMBER_RE.sub(_number_for, text.lower())


def normalize(text: str) -> str:
    """Canonicalize a transcript segment for reference parsing.

    The result is lowercase with number words as digits, ranges as ``a-b``,
    lists as ``a,b`` and ``<chapter> verse <n>`` as ``<chapter>:<n>``.
    """
    if not text:
        return ""
    converted = _WHITESPACE_RE.sub(" ", words_to_digits(text))
    converted = _DUPLICATE_KEYWORD_RE.sub(r"\1", converted)
    converted = _RANGE_RE.sub(r"\1-", converted)
    converted = _VERSE_KEYWORD_RE.sub(r"\1:", converted)
    converted = _LIST_RE.sub(r"\1,", converted)
    converted = _CHAPTER_KEYWORD_RE.sub("", converted)
    converted = _COLON_RE.sub(r"\1:", converted)
    return _WHITESPACE_RE.sub(" ", converted).strip()
