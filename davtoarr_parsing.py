# -*- coding: utf-8 -*-
"""
Release-shape and file-number parsing.

Every cascade here is an ordered table of independent matchers. Each matcher
returns a structured result or None; the first hit wins. Tests enumerate the
tables directly, so new patterns only need a new row.
"""

from __future__ import annotations

import re

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple


# ------------------------------ Episodes -------------------------------------

@dataclass(frozen=True)
class EpisodeInfo:
    """Season and episode numbers parsed from a release or file name."""
    season: int
    episodes: Tuple[int, ...]
    explicit_season: bool = True

    @property
    def episode(self) -> int:
        return self.episodes[0]

    def label(self) -> str:
        return f"S{self.season:02d}" + "".join(f"E{e:02d}" for e in self.episodes)


_CHAINED_EP_RE = re.compile(r"(?i)e(\d{1,4})")


def _sxxexx(m: re.Match) -> EpisodeInfo:
    episodes = [int(m.group(2))]
    for extra in _CHAINED_EP_RE.findall(m.group(3) or ""):
        n = int(extra)
        if n not in episodes:
            episodes.append(n)
    return EpisodeInfo(int(m.group(1)), tuple(episodes))


def _nxnn(m: re.Match) -> EpisodeInfo:
    return EpisodeInfo(int(m.group(1)), (int(m.group(2)),))


def _season_less(m: re.Match) -> EpisodeInfo:
    return EpisodeInfo(1, (int(m.group(1)),), explicit_season=False)


EpisodeMatcher = Tuple[str, re.Pattern, Callable[[re.Match], EpisodeInfo]]

EPISODE_PATTERNS: Sequence[EpisodeMatcher] = (
    # S01E02, S01E02E03, S01E02-E03
    ("sxxexx", re.compile(r"(?i)(?<![a-z0-9])s(\d{1,3})[ ._]?e(\d{1,4})((?:[-_.]?e\d{1,4})*)(?!\d)"), _sxxexx),
    # 1x02
    ("nxnn", re.compile(r"(?i)(?<![\dx])(\d{1,2})x(\d{2,3})(?![\dp])"), _nxnn),
    # Episode 02, Episode.2
    ("episode_word", re.compile(r"(?i)\bepisode[ ._-]?(\d{1,4})\b"), _season_less),
    # E05 / Ep05 without a season
    ("bare_e", re.compile(r"(?i)(?<![a-z0-9])ep?[ ._]?(\d{1,3})(?![\da-z])"), _season_less),
)


def parse_episode_info(name: str) -> Optional[EpisodeInfo]:
    """
    Parse season/episode markers from a release or file name.

    Returns None when no episode pattern is present.
    """
    for _, pattern, build in EPISODE_PATTERNS:
        m = pattern.search(name or "")
        if m:
            return build(m)
    return None

# ------------------------------ Seasons --------------------------------------

SEASON_PATTERNS: Sequence[Tuple[str, re.Pattern]] = (
    ("sxx", re.compile(r"(?i)(?<![a-z0-9])s(\d{1,3})(?!\d)(?![ ._-]?e\d)")),
    ("season_word", re.compile(r"(?i)\bseason[ ._-]?(\d{1,3})\b")),
    ("dotted_sxx", re.compile(r"[._]S(\d{1,3})[._]")),
)


def parse_season_pack(name: str) -> Optional[int]:
    """
    Return the season number of a season-pack release, or None.

    A name that carries any episode marker is never a season pack.
    """
    if parse_episode_info(name) is not None:
        return None
    for _, pattern in SEASON_PATTERNS:
        m = pattern.search(name or "")
        if m:
            return int(m.group(1))
    return None


@dataclass(frozen=True)
class ReleaseShape:
    """``kind`` is "episode" or "season"."""
    kind: str
    season: int
    episode: Optional[EpisodeInfo] = None


def classify_release(name: str) -> Optional[ReleaseShape]:
    """Single-episode release, season pack, or None when unparseable."""
    info = parse_episode_info(name)
    if info is not None:
        return ReleaseShape("episode", info.season, info)
    season = parse_season_pack(name)
    if season is not None:
        return ReleaseShape("season", season)
    return None

# ------------------------------- Tracks --------------------------------------

@dataclass(frozen=True)
class TrackNumber:
    track: int
    disc: Optional[int] = None


def _disc_track(m: re.Match) -> TrackNumber:
    return TrackNumber(int(m.group(2)), int(m.group(1)))


def _plain_track(m: re.Match) -> TrackNumber:
    return TrackNumber(int(m.group(1)))


TrackMatcher = Tuple[str, re.Pattern, Callable[[re.Match], TrackNumber]]

TRACK_PATTERNS: Sequence[TrackMatcher] = (
    # 101 - Title  (disc 1, track 01)
    ("disc_track_prefix", re.compile(r"^(\d)(\d{2})(?=\s*[-_. ])"), _disc_track),
    # 01 - Title, 3_Title
    ("track_prefix", re.compile(r"^(\d{1,2})(?=\s*[-_ ])"), _plain_track),
    # Artist_-_07_-_Title
    ("dashed_infix", re.compile(r"_-_(\d{1,2})_-_"), _plain_track),
    # Track07, track 7
    ("track_keyword", re.compile(r"(?i)track[ ._-]?(\d{1,3})"), _plain_track),
    # 07.Title
    ("dotted_prefix", re.compile(r"^(\d{1,2})\."), _plain_track),
)


def parse_track_number(filename: str) -> Optional[TrackNumber]:
    """Parse disc/track numbers from an audio file name (extension ignored)."""
    stem = Path(filename).stem.strip()
    for _, pattern, build in TRACK_PATTERNS:
        m = pattern.search(stem)
        if m:
            result = build(m)
            if result.track > 0:
                return result
    return None

# ------------------------------- Quality -------------------------------------

@dataclass(frozen=True)
class QualityGuess:
    id: int
    name: str


DEFAULT_EPISODE_QUALITY = QualityGuess(3, "WEBDL-1080p")

# (source, resolution) -> Sonarr quality
_VIDEO_QUALITIES = {
    ("hdtv", 480): QualityGuess(1, "SDTV"),
    ("dvd", 480): QualityGuess(2, "DVD"),
    ("webdl", 480): QualityGuess(8, "WEBDL-480p"),
    ("webrip", 480): QualityGuess(12, "WEBRip-480p"),
    ("bluray", 480): QualityGuess(13, "Bluray-480p"),
    ("hdtv", 720): QualityGuess(4, "HDTV-720p"),
    ("webdl", 720): QualityGuess(5, "WEBDL-720p"),
    ("bluray", 720): QualityGuess(6, "Bluray-720p"),
    ("webrip", 720): QualityGuess(14, "WEBRip-720p"),
    ("webdl", 1080): QualityGuess(3, "WEBDL-1080p"),
    ("bluray", 1080): QualityGuess(7, "Bluray-1080p"),
    ("hdtv", 1080): QualityGuess(9, "HDTV-1080p"),
    ("webrip", 1080): QualityGuess(15, "WEBRip-1080p"),
    ("remux", 1080): QualityGuess(20, "Bluray-1080p Remux"),
    ("hdtv", 2160): QualityGuess(16, "HDTV-2160p"),
    ("webrip", 2160): QualityGuess(17, "WEBRip-2160p"),
    ("webdl", 2160): QualityGuess(18, "WEBDL-2160p"),
    ("bluray", 2160): QualityGuess(19, "Bluray-2160p"),
    ("remux", 2160): QualityGuess(21, "Bluray-2160p Remux"),
}

_SOURCE_PATTERNS: Sequence[Tuple[str, re.Pattern]] = (
    ("remux", re.compile(r"(?i)\bremux\b")),
    ("bluray", re.compile(r"(?i)\b(?:blu-?ray|bdrip|brrip)\b")),
    ("webrip", re.compile(r"(?i)\bweb-?rip\b")),
    ("webdl", re.compile(r"(?i)\b(?:web-?dl|web)\b")),
    ("hdtv", re.compile(r"(?i)\bhdtv\b")),
    ("dvd", re.compile(r"(?i)\bdvd(?:rip)?\b")),
)

_RESOLUTION_RE = re.compile(r"(?i)(?<!\d)(480|576|720|1080|2160)[pi]\b|\b(4k|uhd)\b")


def infer_video_quality(*names: str) -> QualityGuess:
    """
    Guess a Sonarr quality from release/file tags.

    The first name carrying both a source and a resolution wins; otherwise
    the default WEBDL-1080p is returned.
    """
    for name in names:
        text = (name or "").replace("_", " ")
        source = next((label for label, rx in _SOURCE_PATTERNS if rx.search(text)), None)
        m = _RESOLUTION_RE.search(text)
        if not source or not m:
            continue
        resolution = 2160 if m.group(2) else int(m.group(1))
        if resolution == 576:
            resolution = 480
        if source == "remux" and resolution < 1080:
            source = "bluray"
        guess = _VIDEO_QUALITIES.get((source, resolution))
        if guess:
            return guess
    return DEFAULT_EPISODE_QUALITY


_AUDIO_QUALITIES = {
    ".flac": QualityGuess(6, "FLAC"),
    ".wav": QualityGuess(13, "WAV"),
    ".mp3": QualityGuess(4, "MP3-320"),
    ".m4a": QualityGuess(10, "AAC-256"),
    ".aac": QualityGuess(10, "AAC-256"),
    ".ogg": QualityGuess(15, "OGG Vorbis Q9"),
}
FLAC_24BIT = QualityGuess(21, "FLAC 24bit")
LOSSLESS_EXTENSIONS = frozenset({".flac", ".wav"})
_24BIT_RE = re.compile(r"(?i)24[ -]?bit")


def infer_audio_quality(filename: str) -> QualityGuess:
    """Lossless/lossy tier from the extension, ``24bit`` marker upgrades FLAC."""
    ext = Path(filename).suffix.lower()
    if ext == ".flac" and _24BIT_RE.search(filename):
        return FLAC_24BIT
    return _AUDIO_QUALITIES.get(ext, QualityGuess(0, "Unknown"))


def pattern_names(table: Sequence[tuple]) -> List[str]:
    return [row[0] for row in table]
