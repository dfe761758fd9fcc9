# -*- coding: utf-8 -*-
"""
DavToArr matching helpers

Noise-tolerant comparison of release names against library titles:

- ``extract_title_words`` strips years, resolutions, codecs, edition tags,
  release groups and episode markers and returns the significant words.
- ``extract_year`` returns the first plausible 4-digit year.
- ``calculate_match_score`` is the set overlap over the smaller set.
- ``find_best_match`` / ``rank_matches`` apply the year bonus/penalty and a
  threshold on top of the overlap score.

The tuning constants are empirical; they live in ``MatchTuning`` so the
runner can override them from configuration.
"""

from __future__ import annotations

import re

from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from unidecode import unidecode


# ------------------------------ Tuning ---------------------------------------

@dataclass(frozen=True)
class MatchTuning:
    """Thresholds and year adjustments used by the matchers."""
    entity_threshold: float = 0.6
    directory_threshold: float = 0.7
    artist_threshold: float = 0.5
    album_threshold: float = 0.5
    year_bonus: float = 0.2
    year_penalty: float = 0.3

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "MatchTuning":
        data = data or {}
        defaults = cls()
        return cls(**{
            name: float(data.get(name, getattr(defaults, name)))
            for name in cls.__dataclass_fields__
        })


DEFAULT_TUNING = MatchTuning()

# ------------------------------ Regex library -------------------------------

# Common release groups removed before matching
RELEASE_GROUPS = [
    "lama", "yify", "rarbg", "ettv", "eztv", "sparks", "geckos", "fleet",
    "ntb", "ctrlhd", "epsilon", "fgt", "ion10", "memento", "playbd", "framestor",
    "triton", "unknown", "flux", "smurf", "stringerbell", "kontrast", "psa",
    "turg", "aaa", "welp", "taxes", "entitled", "gp", "privatehd",
]

YEAR_RE = re.compile(r"(?<!\d)(?:19|20)\d{2}(?!\d)")

NOISE_PATTERNS: Tuple[re.Pattern, ...] = (
    # years
    YEAR_RE,
    # resolutions
    re.compile(r"\b(?:480|720|1080|2160)[pi]?\b"),
    # video sources / codecs / containers
    re.compile(
        r"\b(?:bluray|blu-ray|webrip|web-rip|webdl|web-dl|hdtv|brrip|bdrip|dvdrip|remux|"
        r"avc|hevc|x264|x265|h264|h265|h\.264|h\.265|vc-?1|xvid|divx|10bit|8bit|"
        r"mkv|mp4|avi|mov)\b"
    ),
    # audio codecs
    re.compile(
        r"\b(?:dts-hd|dts|ddp|eac3|ac3|aac|flac|mp3|m4a|truehd|atmos|ma|"
        r"5\.1|7\.1|2\.0)\b"
    ),
    # edition / cut tags
    re.compile(
        r"\b(?:repack|proper|extended|unrated|directors[ .]?cut|theatrical|imax|3d|"
        r"hdr|hdr10|dolby[ .]?vision|dv|remastered|limited|internal)\b"
    ),
    # release groups
    re.compile(r"\b(?:" + "|".join(RELEASE_GROUPS) + r")\b"),
    # episode markers
    re.compile(r"\bs\d+e\d+(?:e\d+)*\b"),
)

SEPARATORS_RE = re.compile(r"[._-]+")
NON_ALNUM_RE = re.compile(r"[^a-z0-9\s]")
STRICT_NON_ALNUM_RE = re.compile(r"[^a-z0-9]")

# ------------------------------ Normalizer ----------------------------------


def _fold(text: str) -> str:
    """Lowercase ASCII fold (``Pokémon`` -> ``pokemon``)."""
    return unidecode(text or "").lower()


def extract_year(text: str) -> Optional[int]:
    """
    Return the first 4-digit year (1900-2099) in *text*, or None.

    Digits adjacent to the candidate disqualify it, so ``1080p`` or
    ``x2649`` never yield a year.
    """
    m = YEAR_RE.search(text or "")
    return int(m.group(0)) if m else None


def extract_title_words(text: str) -> List[str]:
    """
    Reduce a release string to its significant lowercase words.

    Parameters
    ----------
    text : str
        Release name, directory name or library title.

    Returns
    -------
    list of str
        Words longer than one character, in order of appearance.
    """
    s = _fold(text).replace("_", " ")
    for pattern in NOISE_PATTERNS:
        s = pattern.sub(" ", s)
    s = SEPARATORS_RE.sub(" ", s)
    s = NON_ALNUM_RE.sub(" ", s)
    return [w for w in s.split() if len(w) > 1]


def normalize_compact(text: str) -> str:
    """Lowercase alphanumerics only, used for exact directory comparison."""
    return STRICT_NON_ALNUM_RE.sub("", _fold(text))

# ------------------------------- Scorer --------------------------------------


def calculate_match_score(words1: Iterable[str], words2: Iterable[str]) -> float:
    """Overlap of two word bags divided by the size of the smaller set."""
    set1 = set(words1)
    set2 = set(words2)
    if not set1 or not set2:
        return 0.0
    return len(set1 & set2) / min(len(set1), len(set2))


def year_adjustment(target_year: Optional[int], item_year: Optional[int],
                    bonus: float = DEFAULT_TUNING.year_bonus,
                    penalty: Optional[float] = DEFAULT_TUNING.year_penalty) -> float:
    """Bonus when both years agree, penalty when they are more than a year apart."""
    if not target_year or not item_year:
        return 0.0
    if target_year == item_year:
        return bonus
    if penalty and abs(target_year - item_year) > 1:
        return -penalty
    return 0.0

# ---------------------------- Best-match selector ----------------------------


@dataclass
class MatchResult:
    item: Any
    score: float

    def __bool__(self) -> bool:
        return self.item is not None


NO_MATCH = MatchResult(None, 0.0)


def rank_matches(target: str,
                 target_year: Optional[int],
                 items: Sequence[Any],
                 get_title: Callable[[Any], str],
                 get_year: Optional[Callable[[Any], Optional[int]]] = None,
                 threshold: float = DEFAULT_TUNING.entity_threshold,
                 year_bonus: float = DEFAULT_TUNING.year_bonus,
                 year_penalty: Optional[float] = DEFAULT_TUNING.year_penalty) -> List[MatchResult]:
    """
    Score every candidate and return those at or above *threshold*.

    The list is ordered by descending score; candidates with equal scores
    keep their input order, so the first one seen wins ties.
    """
    target_words = extract_title_words(target)
    scored: List[MatchResult] = []
    for item in items:
        title = get_title(item) or ""
        item_year = get_year(item) if get_year else extract_year(title)
        score = calculate_match_score(target_words, extract_title_words(title))
        score += year_adjustment(target_year, item_year, year_bonus, year_penalty)
        if score >= threshold:
            scored.append(MatchResult(item, score))
    scored.sort(key=lambda r: r.score, reverse=True)
    return scored


def find_best_match(target: str,
                    target_year: Optional[int],
                    items: Sequence[Any],
                    get_title: Callable[[Any], str],
                    get_year: Optional[Callable[[Any], Optional[int]]] = None,
                    threshold: float = DEFAULT_TUNING.entity_threshold,
                    year_bonus: float = DEFAULT_TUNING.year_bonus,
                    year_penalty: Optional[float] = DEFAULT_TUNING.year_penalty) -> MatchResult:
    """
    Return the highest-scoring candidate for *target*, or ``NO_MATCH``.

    Parameters
    ----------
    target : str
        Raw release string.
    target_year : int or None
        Year hint for the release (usually ``extract_year(target)``).
    items : sequence
        Candidates, in a stable order.
    get_title : callable
        Extracts the comparable title from a candidate.
    get_year : callable or None
        Extracts the candidate year; when omitted the year is read from the title.
    threshold : float
        Minimum final score to accept.
    """
    ranked = rank_matches(target, target_year, items, get_title, get_year,
                          threshold=threshold, year_bonus=year_bonus, year_penalty=year_penalty)
    return ranked[0] if ranked else NO_MATCH
