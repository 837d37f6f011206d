"""
works.py — canonical scripture table and alias index.

One immutable table, built at import time and shared by every session.
Paths follow the churchofjesuschrist.org study layout
(``/study/scriptures/<volume>/<book>/<chapter>``).
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Optional

log = logging.getLogger("scripture_streamer.works")

# Whitespace, hyphens (plus the dash variants transcripts and names use),
# periods, commas and ampersands never distinguish two aliases.
_LOOKUP_STRIP_RE = re.compile(r"[\s\-\u2010-\u2015.,&]+")


def normalize_alias(text: str) -> str:
    """Lookup key for an alias: lowercase with separators removed."""
    return _LOOKUP_STRIP_RE.sub("", text.lower().strip())


@dataclass(frozen=True)
class WorkRecord:
    name: str
    short_name: str
    path: str
    aliases: tuple[str, ...]
    chapters: tuple[int, ...]

    @property
    def key(self) -> str:
        return self.name.lower()

    def has_chapter(self, chapter: int) -> bool:
        return chapter in self.chapters


def _work(name: str, short_name: str, path: str, aliases: tuple[str, ...], chapter_count: int) -> WorkRecord:
    return WorkRecord(
        name=name,
        short_name=short_name,
        path=path,
        aliases=aliases,
        chapters=tuple(range(1, chapter_count + 1)),
    )


WORKS: tuple[WorkRecord, ...] = (
    # -- Book of Mormon --------------------------------------------------------
    _work("Book of Mormon", "bofm", "bofm", ("book of mormon", "bom"), 0),
    # Bare "nephi N" is left out: it cannot tell 1-4 Nephi apart.
    _work("1 Nephi", "1-ne", "bofm/1-ne", ("first nephi", "1 nephi", "1 ne", "1st nephi"), 22),
    _work("2 Nephi", "2-ne", "bofm/2-ne", ("second nephi", "2 nephi", "2 ne", "2nd nephi"), 33),
    _work("Jacob", "jacob", "bofm/jacob", ("jacob",), 7),
    _work("Enos", "enos", "bofm/enos", ("enos",), 1),
    _work("Jarom", "jarom", "bofm/jarom", ("jarom",), 1),
    _work("Omni", "omni", "bofm/omni", ("omni",), 1),
    _work("Words of Mormon", "w-of-m", "bofm/w-of-m", ("words of mormon", "w of m"), 1),
    _work("Mosiah", "mosiah", "bofm/mosiah", ("mosiah",), 29),
    _work("Alma", "alma", "bofm/alma", ("alma",), 63),
    _work("Helaman", "hel", "bofm/hel", ("helaman", "hel"), 16),
    _work("3 Nephi", "3-ne", "bofm/3-ne", ("third nephi", "3 nephi", "3 ne", "3rd nephi"), 30),
    _work("4 Nephi", "4-ne", "bofm/4-ne", ("fourth nephi", "4 nephi", "4 ne", "4th nephi"), 1),
    _work("Mormon", "morm", "bofm/morm", ("mormon", "morm"), 9),
    _work("Ether", "ether", "bofm/ether", ("ether",), 15),
    _work("Moroni", "moro", "bofm/moro", ("moroni", "moro"), 10),
    # -- Doctrine and Covenants ----------------------------------------------
    _work(
        "Doctrine and Covenants", "dc", "dc-testament/dc",
        ("doctrine and covenants", "d&c", "dc", "d and c"), 138,
    ),
    # -- Pearl of Great Price --------------------------------------------------
    _work("Pearl of Great Price", "pgp", "pgp", ("pearl of great price", "pgp"), 0),
    _work("Moses", "moses", "pgp/moses", ("moses", "book of moses"), 8),
    _work("Abraham", "abr", "pgp/abr", ("abraham", "book of abraham", "abr"), 5),
    _work(
        "Joseph Smith—Matthew", "js-m", "pgp/js-m",
        ("joseph smith matthew", "js matthew", "js-m"), 1,
    ),
    _work(
        "Joseph Smith—History", "js-h", "pgp/js-h",
        ("joseph smith history", "js history", "js-h"), 1,
    ),
    _work("Articles of Faith", "a-of-f", "pgp/a-of-f", ("articles of faith", "a of f"), 1),
    # -- Old Testament ---------------------------------------------------------
    _work("Old Testament", "ot", "ot", ("old testament", "ot"), 0),
    _work("Genesis", "gen", "ot/gen", ("genesis", "gen"), 50),
    _work("Exodus", "ex", "ot/ex", ("exodus", "ex"), 40),
    _work("Leviticus", "lev", "ot/lev", ("leviticus", "lev"), 27),
    _work("Numbers", "num", "ot/num", ("numbers", "num"), 36),
    _work("Deuteronomy", "deut", "ot/deut", ("deuteronomy", "deut"), 34),
    _work("Joshua", "josh", "ot/josh", ("joshua", "josh"), 24),
    _work("Judges", "judg", "ot/judg", ("judges", "judg"), 21),
    _work("Ruth", "ruth", "ot/ruth", ("ruth",), 4),
    _work("1 Samuel", "1-sam", "ot/1-sam", ("first samuel", "1 samuel", "1 sam"), 31),
    _work("2 Samuel", "2-sam", "ot/2-sam", ("second samuel", "2 samuel", "2 sam"), 24),
    _work("1 Kings", "1-kgs", "ot/1-kgs", ("first kings", "1 kings", "1 kgs"), 22),
    _work("2 Kings", "2-kgs", "ot/2-kgs", ("second kings", "2 kings", "2 kgs"), 25),
    _work("1 Chronicles", "1-chr", "ot/1-chr", ("first chronicles", "1 chronicles", "1 chr"), 29),
    _work("2 Chronicles", "2-chr", "ot/2-chr", ("second chronicles", "2 chronicles", "2 chr"), 36),
    _work("Ezra", "ezra", "ot/ezra", ("ezra",), 10),
    _work("Nehemiah", "neh", "ot/neh", ("nehemiah", "neh"), 13),
    _work("Esther", "esth", "ot/esth", ("esther", "esth"), 10),
    _work("Job", "job", "ot/job", ("job",), 42),
    _work("Psalms", "ps", "ot/ps", ("psalms", "psalm", "ps"), 150),
    _work("Proverbs", "prov", "ot/prov", ("proverbs", "prov"), 31),
    _work("Ecclesiastes", "eccl", "ot/eccl", ("ecclesiastes", "eccl"), 12),
    _work("Song of Solomon", "song", "ot/song", ("song of solomon", "song"), 8),
    _work("Isaiah", "isa", "ot/isa", ("isaiah", "isa"), 66),
    _work("Jeremiah", "jer", "ot/jer", ("jeremiah", "jer"), 52),
    _work("Lamentations", "lam", "ot/lam", ("lamentations", "lam"), 5),
    _work("Ezekiel", "ezek", "ot/ezek", ("ezekiel", "ezek"), 48),
    _work("Daniel", "dan", "ot/dan", ("daniel", "dan"), 12),
    _work("Hosea", "hosea", "ot/hosea", ("hosea",), 14),
    _work("Joel", "joel", "ot/joel", ("joel",), 3),
    _work("Amos", "amos", "ot/amos", ("amos",), 9),
    _work("Obadiah", "obad", "ot/obad", ("obadiah", "obad"), 1),
    _work("Jonah", "jonah", "ot/jonah", ("jonah",), 4),
    _work("Micah", "micah", "ot/micah", ("micah",), 7),
    _work("Nahum", "nahum", "ot/nahum", ("nahum",), 3),
    _work("Habakkuk", "hab", "ot/hab", ("habakkuk", "hab"), 3),
    _work("Zephaniah", "zeph", "ot/zeph", ("zephaniah", "zeph"), 3),
    _work("Haggai", "hag", "ot/hag", ("haggai", "hag"), 2),
    _work("Zechariah", "zech", "ot/zech", ("zechariah", "zech"), 14),
    _work("Malachi", "mal", "ot/mal", ("malachi", "mal"), 4),
    # -- New Testament ---------------------------------------------------------
    _work("New Testament", "nt", "nt", ("new testament", "nt"), 0),
    _work("Matthew", "matt", "nt/matt", ("matthew", "matt"), 28),
    _work("Mark", "mark", "nt/mark", ("mark",), 16),
    _work("Luke", "luke", "nt/luke", ("luke",), 24),
    _work("John", "john", "nt/john", ("john",), 21),
    _work("Acts", "acts", "nt/acts", ("acts",), 28),
    _work("Romans", "rom", "nt/rom", ("romans", "rom"), 16),
    _work("1 Corinthians", "1-cor", "nt/1-cor", ("first corinthians", "1 corinthians", "1 cor"), 16),
    _work("2 Corinthians", "2-cor", "nt/2-cor", ("second corinthians", "2 corinthians", "2 cor"), 13),
    _work("Galatians", "gal", "nt/gal", ("galatians", "gal"), 6),
    _work("Ephesians", "eph", "nt/eph", ("ephesians", "eph"), 6),
    _work("Philippians", "philip", "nt/philip", ("philippians", "philip"), 4),
    _work("Colossians", "col", "nt/col", ("colossians", "col"), 4),
    _work("1 Thessalonians", "1-thes", "nt/1-thes", ("first thessalonians", "1 thessalonians", "1 thes"), 5),
    _work("2 Thessalonians", "2-thes", "nt/2-thes", ("second thessalonians", "2 thessalonians", "2 thes"), 3),
    _work("1 Timothy", "1-tim", "nt/1-tim", ("first timothy", "1 timothy", "1 tim"), 6),
    _work("2 Timothy", "2-tim", "nt/2-tim", ("second timothy", "2 timothy", "2 tim"), 4),
    _work("Titus", "titus", "nt/titus", ("titus",), 3),
    _work("Philemon", "philem", "nt/philem", ("philemon", "philem"), 1),
    _work("Hebrews", "heb", "nt/heb", ("hebrews", "heb"), 13),
    _work("James", "james", "nt/james", ("james",), 5),
    _work("1 Peter", "1-pet", "nt/1-pet", ("first peter", "1 peter", "1 pet"), 5),
    _work("2 Peter", "2-pet", "nt/2-pet", ("second peter", "2 peter", "2 pet"), 3),
    _work("1 John", "1-jn", "nt/1-jn", ("first john", "1 john", "1 jn"), 5),
    _work("2 John", "2-jn", "nt/2-jn", ("second john", "2 john", "2 jn"), 1),
    _work("3 John", "3-jn", "nt/3-jn", ("third john", "3 john", "3 jn"), 1),
    _work("Jude", "jude", "nt/jude", ("jude",), 1),
    _work("Revelation", "rev", "nt/rev", ("revelation", "revelations", "rev"), 22),
)

# Custom vocabulary sent upstream to bias recognition toward work names.
SCRIPTURE_VOCABULARY: tuple[str, ...] = (
    # Book of Mormon
    "Book of Mormon", "1 Nephi", "First Nephi", "2 Nephi", "Second Nephi",
    "Jacob", "Enos", "Jarom", "Omni", "Words of Mormon",
    "Mosiah", "Alma", "Helaman",
    "3 Nephi", "Third Nephi", "4 Nephi", "Fourth Nephi",
    "Mormon", "Ether", "Moroni",
    # Doctrine and Covenants
    "Doctrine and Covenants", "D and C",
    # Pearl of Great Price
    "Pearl of Great Price", "Book of Moses", "Book of Abraham",
    "Joseph Smith Matthew", "Joseph Smith History", "Articles of Faith",
    # Bible
    "Genesis", "Exodus", "Leviticus", "Numbers", "Deuteronomy",
    "Joshua", "Judges", "Ruth", "Samuel", "Kings", "Chronicles",
    "Psalms", "Proverbs", "Isaiah", "Jeremiah", "Ezekiel", "Daniel",
    "Matthew", "Mark", "Luke", "John", "Acts", "Romans",
    "Corinthians", "Galatians", "Ephesians", "Philippians",
    "Colossians", "Thessalonians", "Timothy", "Titus",
    "Hebrews", "James", "Peter", "Jude", "Revelation",
    # Reference terms
    "Chapter", "Verse", "Section", "Testament",
    # Names and places
    "Nephi", "Lehi", "Laman", "Lemuel", "Zarahemla",
)


class AliasIndex:
    """Read-only alias → WorkRecord lookup.

    Lookup is normalization-stable: aliases that differ only in case,
    whitespace, hyphens, ampersands or periods resolve to the same record.
    Canonical keys are consulted before aliases, so a work name always wins
    over another work's abbreviation.
    """

    def __init__(self, works: tuple[WorkRecord, ...] = WORKS) -> None:
        self._works = works
        self._by_key: dict[str, WorkRecord] = {}
        self._by_alias: dict[str, WorkRecord] = {}
        for work in works:
            self._by_key.setdefault(normalize_alias(work.key), work)
        for work in works:
            for alias in work.aliases:
                self._by_alias.setdefault(normalize_alias(alias), work)

    def resolve(self, alias: str) -> Optional[WorkRecord]:
        if not alias:
            return None
        normalized = normalize_alias(alias)
        if not normalized:
            return None
        return self._by_key.get(normalized) or self._by_alias.get(normalized)

    def works(self) -> tuple[WorkRecord, ...]:
        return self._works

    def all_aliases(self) -> list[str]:
        """Every distinct alias and canonical key, in table order."""
        seen: dict[str, None] = {}
        for work in self._works:
            seen.setdefault(work.key, None)
            for alias in work.aliases:
                seen.setdefault(alias, None)
        return list(seen)

    def search(self, query: str) -> list[WorkRecord]:
        needle = query.lower().strip()
        if not needle:
            return list(self._works)
        return [
            work for work in self._works
            if needle in work.name.lower() or any(needle in alias for alias in work.aliases)
        ]


_default_index: AliasIndex | None = None


def default_index() -> AliasIndex:
    global _default_index
    if _default_index is None:
        _default_index = AliasIndex()
        log.debug("event=alias_index_built works=%d", len(WORKS))
    return _default_index
