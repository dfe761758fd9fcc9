# -*- coding: utf-8 -*-
"""
Filesystem locator for completed releases on the read-only content mount.

The download client writes each release to ``<mount>/<release name>``. When
the same release is grabbed again after a failed attempt it lands in
``<release name> (2)``, ``(3)`` and so on, and older attempts may be left
empty. ``find_actual_path`` resolves the directory that really holds media:

1. exact directory name (alphanumerics only, case-insensitive) with media;
2. numbered duplicates of the release, highest number first;
3. fuzzy word match against every directory name.

Directory read failures never propagate; they are logged and reported as
"no match".
"""

from __future__ import annotations

import logging
import os
import re

from pathlib import Path
from typing import Any, FrozenSet, Iterable, List, Optional, Tuple

from davtoarr_matching import (
    DEFAULT_TUNING,
    MatchTuning,
    extract_year,
    normalize_compact,
    rank_matches,
)

logger = logging.getLogger("DavToArr")

VIDEO_EXTENSIONS: FrozenSet[str] = frozenset({".mkv", ".mp4", ".avi", ".mov"})
AUDIO_EXTENSIONS: FrozenSet[str] = frozenset({".flac", ".mp3", ".m4a"})
MUSIC_EXTENSIONS: FrozenSet[str] = AUDIO_EXTENSIONS | {".aac", ".ogg", ".wav"}
MEDIA_EXTENSIONS: FrozenSet[str] = VIDEO_EXTENSIONS | AUDIO_EXTENSIONS

DUPLICATE_SUFFIX_RE = re.compile(r"^(?P<base>.+?)\s+\((?P<n>\d+)\)$")
SAMPLE_RE = re.compile(r"(?i)(?:^|[ ._-])sample(?:[ ._-]|$)")

# --------------------------- Media enumeration --------------------------------


def _onerror(err: OSError) -> None:
    logger.warning("Cannot read %s: %s", getattr(err, "filename", "?"), err)


def list_media_files(directory: str, extensions: Iterable[str] = MEDIA_EXTENSIONS) -> List[str]:
    """
    Return absolute paths of media files under *directory* (recursive), sorted.

    Parameters
    ----------
    directory : str
        Release directory to scan.
    extensions : iterable of str
        Allowed suffixes, lowercase with leading dot.
    """
    allowed = {e.lower() for e in extensions}
    found: List[str] = []
    for root, dirs, files in os.walk(directory, onerror=_onerror):
        dirs.sort(key=str.casefold)
        for name in sorted(files, key=str.casefold):
            if Path(name).suffix.lower() in allowed:
                found.append(os.path.join(root, name))
    return found


def has_media_files(directory: str, extensions: Iterable[str] = MEDIA_EXTENSIONS) -> bool:
    try:
        return bool(list_media_files(directory, extensions))
    except OSError:
        return False


def is_sample(path: str) -> bool:
    return bool(SAMPLE_RE.search(Path(path).stem))


def _list_directories(mount_path: str) -> List[str]:
    with os.scandir(mount_path) as it:
        names = [entry.name for entry in it if entry.is_dir()]
    return sorted(names, key=str.casefold)

# ------------------------------ Locator steps --------------------------------


def _exact_match(release_name: str, mount_path: str, directories: List[str],
                 extensions: Iterable[str]) -> Tuple[Optional[str], bool]:
    """Return (path with media, whether an exact-name directory existed at all)."""
    wanted = normalize_compact(release_name)
    seen = False
    for name in directories:
        if normalize_compact(name) != wanted:
            continue
        seen = True
        full = os.path.join(mount_path, name)
        if has_media_files(full, extensions):
            return full, True
    return None, seen


def numbered_duplicates(release_name: str, directories: Iterable[str]) -> List[Tuple[int, str]]:
    """
    Return ``(n, name)`` for every ``"<release> (n)"`` sibling with n >= 2,
    ordered by n descending.
    """
    wanted = normalize_compact(release_name)
    dups: List[Tuple[int, str]] = []
    for name in directories:
        m = DUPLICATE_SUFFIX_RE.match(name)
        if not m:
            continue
        n = int(m.group("n"))
        if n >= 2 and normalize_compact(m.group("base")) == wanted:
            dups.append((n, name))
    dups.sort(key=lambda pair: pair[0], reverse=True)
    return dups


def _duplicate_match(release_name: str, mount_path: str, directories: List[str], log: Any,
                     extensions: Iterable[str]) -> Optional[str]:
    for n, name in numbered_duplicates(release_name, directories):
        full = os.path.join(mount_path, name)
        if has_media_files(full, extensions):
            log.info("Using retry directory #%d for %s: %s", n, release_name, full)
            return full
    return None


def _fuzzy_match(release_name: str, mount_path: str, directories: List[str], log: Any,
                 extensions: Iterable[str], tuning: MatchTuning) -> Optional[str]:
    ranked = rank_matches(
        release_name,
        extract_year(release_name),
        directories,
        lambda d: d,
        threshold=tuning.directory_threshold,
        year_bonus=tuning.year_bonus,
        year_penalty=None,
    )
    for result in ranked:
        full = os.path.join(mount_path, result.item)
        if has_media_files(full, extensions):
            log.info("Found matching path (score: %.2f): %s", result.score, full)
            return full
    return None


def find_actual_path(release_name: str,
                     mount_path: str,
                     extensions: Iterable[str] = MEDIA_EXTENSIONS,
                     tuning: MatchTuning = DEFAULT_TUNING,
                     log: Any = None) -> Optional[str]:
    """
    Resolve the directory under *mount_path* that holds *release_name*'s media.

    Returns
    -------
    str or None
        Absolute directory path, or None when nothing with media was found
        (including unreadable or missing mounts).
    """
    log = log or logger
    try:
        if not os.path.isdir(mount_path):
            log.warning("Mount path doesn't exist: %s", mount_path)
            return None
        directories = _list_directories(mount_path)

        found, exact_seen = _exact_match(release_name, mount_path, directories, extensions)
        if found:
            log.info("Found exact match: %s", found)
            return found
        if exact_seen:
            log.info("Exact directory for %s has no media, checking retry directories", release_name)

        found = _duplicate_match(release_name, mount_path, directories, log, extensions)
        if found:
            return found

        found = _fuzzy_match(release_name, mount_path, directories, log, extensions, tuning)
        if found:
            return found
    except OSError as e:
        log.error("Error finding actual path for %s: %s", release_name, e)
        return None

    log.info("No matching directory found for: %s", release_name)
    return None
