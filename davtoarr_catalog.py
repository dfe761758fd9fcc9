# -*- coding: utf-8 -*-
"""
Direct catalog mutation for Sonarr and Lidarr.

Neither manager accepts a file that lives outside its root folders through
the API without copying it, and the content mount is read-only, so file
records are written straight into their SQLite databases. Radarr does not
need this: pointing the movie path at the release directory is enough.

One connection per database object, opened lazily on first use and reused
for the lifetime of the reconciler. Polling is single-threaded, so the
connection is never shared between writers.
"""

from __future__ import annotations

import json
import os
import sqlite3

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence

from tenacity import retry, retry_if_exception, stop_after_attempt, wait_fixed

from davtoarr_clients import service_logger
from davtoarr_parsing import QualityGuess

ENGLISH_LANGUAGE_ID = 1


@dataclass
class FileRecord:
    """
    A manager's file record.

    ``path`` is absolute; ``owner_id`` is the movie, series or artist the
    refresh command must target; ``linked_ids`` are the episodes/tracks
    pointing at the record.
    """
    id: int
    path: str
    owner_id: int
    size: int = 0
    linked_ids: List[int] = field(default_factory=list)


def _is_locked(exc: BaseException) -> bool:
    return isinstance(exc, sqlite3.OperationalError) and "locked" in str(exc).lower()


_locked_retry = retry(
    retry=retry_if_exception(_is_locked),
    stop=stop_after_attempt(5),
    wait=wait_fixed(2),
    reraise=True,
)


def quality_json(quality: QualityGuess) -> str:
    return json.dumps({
        "quality": quality.id,
        "revision": {"version": 1, "real": 0, "isRepack": False},
    })


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%SZ")


def _placeholders(values: Sequence[int]) -> str:
    return ",".join("?" for _ in values)


class CatalogDatabase:
    """Lazily opened SQLite handle shared by the Sonarr and Lidarr stores."""

    def __init__(self, name: str, db_path: str, dry_run: bool = False, timeout: float = 10) -> None:
        self.name = name
        self.db_path = db_path
        self.dry_run = dry_run
        self.timeout = timeout
        self.log = service_logger(name)
        self._conn: Optional[sqlite3.Connection] = None

    @property
    def connection(self) -> sqlite3.Connection:
        if self._conn is None:
            self.log.info("Opening database %s", self.db_path)
            self._conn = sqlite3.connect(self.db_path, timeout=self.timeout)
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def _drop_orphans(self, conn: sqlite3.Connection, file_table: str, link_table: str,
                      link_column: str, candidate_ids: Iterable[int]) -> None:
        """Delete previous file records no sub-entity points at any more."""
        for file_id in {i for i in candidate_ids if i}:
            still_linked = conn.execute(
                f"SELECT 1 FROM {link_table} WHERE {link_column} = ? LIMIT 1", (file_id,)
            ).fetchone()
            if not still_linked:
                conn.execute(f"DELETE FROM {file_table} WHERE Id = ?", (file_id,))
                self.log.info("Removed orphaned %s record %d", file_table, file_id)

# --------------------------------- Sonarr -------------------------------------


class SonarrDatabase(CatalogDatabase):
    """EpisodeFiles / Episodes tables of ``sonarr.db``."""

    def __init__(self, db_path: str, dry_run: bool = False, timeout: float = 10) -> None:
        super().__init__("Sonarr", db_path, dry_run=dry_run, timeout=timeout)

    def find_episode_file(self, series_id: int, relative_path: str) -> Optional[int]:
        row = self.connection.execute(
            "SELECT Id FROM EpisodeFiles WHERE SeriesId = ? AND RelativePath = ?",
            (series_id, relative_path),
        ).fetchone()
        return int(row["Id"]) if row else None

    @_locked_retry
    def register_episode_file(self, series_id: int, series_path: str, season_number: int,
                              file_path: str, episode_ids: Sequence[int], quality: QualityGuess,
                              scene_name: str = "", release_group: str = "") -> Optional[int]:
        """
        Insert (or reuse) an EpisodeFiles row and link *episode_ids* to it.

        Parameters
        ----------
        series_id : int
            Owning series.
        series_path : str
            Series root; the stored RelativePath is relative to it.
        season_number : int
            Season the file belongs to.
        file_path : str
            Absolute media file path on the content mount.
        episode_ids : sequence of int
            Episodes the file provides.

        Returns
        -------
        int or None
            EpisodeFiles.Id, 0 in dry-run mode.
        """
        if not episode_ids:
            return None
        relative_path = os.path.relpath(file_path, series_path) if series_path else file_path
        if self.dry_run:
            self.log.info("[DRY RUN] Would register %s for episodes %s", relative_path, list(episode_ids))
            return 0

        size = os.path.getsize(file_path)
        conn = self.connection
        with conn:
            file_id = self.find_episode_file(series_id, relative_path)
            if file_id is None:
                cur = conn.execute(
                    """
                    INSERT INTO EpisodeFiles
                    (SeriesId, SeasonNumber, RelativePath, Size, DateAdded, SceneName, ReleaseGroup,
                     Quality, Languages, MediaInfo, OriginalFilePath, IndexerFlags, ReleaseType)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, ?, 0, 0)
                    """,
                    (series_id, season_number, relative_path, size, _now(), scene_name, release_group,
                     quality_json(quality), json.dumps([ENGLISH_LANGUAGE_ID]), file_path),
                )
                file_id = int(cur.lastrowid)
                self.log.info("Inserted EpisodeFiles %d: %s", file_id, relative_path)
            else:
                self.log.info("Reusing EpisodeFiles %d: %s", file_id, relative_path)

            ids = list(episode_ids)
            previous = [
                int(r["EpisodeFileId"]) for r in conn.execute(
                    f"SELECT EpisodeFileId FROM Episodes WHERE Id IN ({_placeholders(ids)})", ids
                ).fetchall()
                if r["EpisodeFileId"] and int(r["EpisodeFileId"]) != file_id
            ]
            conn.execute(
                f"UPDATE Episodes SET EpisodeFileId = ? WHERE Id IN ({_placeholders(ids)})",
                [file_id, *ids],
            )
            self._drop_orphans(conn, "EpisodeFiles", "Episodes", "EpisodeFileId", previous)
        return file_id

    def list_file_records(self) -> List[FileRecord]:
        rows = self.connection.execute(
            """
            SELECT f.Id, f.SeriesId, f.RelativePath, f.Size, s.Path AS SeriesPath
            FROM EpisodeFiles f JOIN Series s ON s.Id = f.SeriesId
            """
        ).fetchall()
        records = []
        for r in rows:
            linked = [int(e["Id"]) for e in self.connection.execute(
                "SELECT Id FROM Episodes WHERE EpisodeFileId = ?", (r["Id"],)
            ).fetchall()]
            path = os.path.normpath(os.path.join(r["SeriesPath"] or "", r["RelativePath"] or ""))
            records.append(FileRecord(int(r["Id"]), path, int(r["SeriesId"]), int(r["Size"] or 0), linked))
        return records

    @_locked_retry
    def remove_file_record(self, file_id: int) -> bool:
        """Unlink every episode from *file_id* and delete the record."""
        if self.dry_run:
            self.log.info("[DRY RUN] Would remove EpisodeFiles %d", file_id)
            return True
        with self.connection as conn:
            conn.execute("UPDATE Episodes SET EpisodeFileId = 0 WHERE EpisodeFileId = ?", (file_id,))
            conn.execute("DELETE FROM EpisodeFiles WHERE Id = ?", (file_id,))
        return True

# --------------------------------- Lidarr -------------------------------------


class LidarrDatabase(CatalogDatabase):
    """TrackFiles / Tracks tables of ``lidarr.db``."""

    def __init__(self, db_path: str, dry_run: bool = False, timeout: float = 10) -> None:
        super().__init__("Lidarr", db_path, dry_run=dry_run, timeout=timeout)

    def find_track_file(self, album_id: int, path: str) -> Optional[int]:
        row = self.connection.execute(
            "SELECT Id FROM TrackFiles WHERE AlbumId = ? AND Path = ?", (album_id, path)
        ).fetchone()
        return int(row["Id"]) if row else None

    @_locked_retry
    def register_track_file(self, album_id: int, file_path: str, track_ids: Sequence[int],
                            quality: QualityGuess, scene_name: str = "",
                            release_group: str = "") -> Optional[int]:
        """Insert (or reuse) a TrackFiles row and link *track_ids* to it."""
        if not track_ids:
            return None
        if self.dry_run:
            self.log.info("[DRY RUN] Would register %s (%s) for tracks %s",
                          file_path, quality.name, list(track_ids))
            return 0

        stat = os.stat(file_path)
        modified = datetime.fromtimestamp(stat.st_mtime, timezone.utc).strftime("%Y-%m-%d %H:%M:%SZ")
        conn = self.connection
        with conn:
            file_id = self.find_track_file(album_id, file_path)
            if file_id is None:
                cur = conn.execute(
                    """
                    INSERT INTO TrackFiles
                    (AlbumId, Path, Size, Quality, SceneName, ReleaseGroup, DateAdded, Modified, MediaInfo)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, NULL)
                    """,
                    (album_id, file_path, stat.st_size, quality_json(quality), scene_name,
                     release_group, _now(), modified),
                )
                file_id = int(cur.lastrowid)
                self.log.info("Inserted TrackFiles %d: %s", file_id, file_path)
            else:
                self.log.info("Reusing TrackFiles %d: %s", file_id, file_path)

            ids = list(track_ids)
            previous = [
                int(r["TrackFileId"]) for r in conn.execute(
                    f"SELECT TrackFileId FROM Tracks WHERE Id IN ({_placeholders(ids)})", ids
                ).fetchall()
                if r["TrackFileId"] and int(r["TrackFileId"]) != file_id
            ]
            conn.execute(
                f"UPDATE Tracks SET TrackFileId = ? WHERE Id IN ({_placeholders(ids)})",
                [file_id, *ids],
            )
            self._drop_orphans(conn, "TrackFiles", "Tracks", "TrackFileId", previous)
        return file_id

    def list_file_records(self) -> List[FileRecord]:
        rows = self.connection.execute(
            """
            SELECT f.Id, f.Path, f.Size, ar.Id AS ArtistId
            FROM TrackFiles f
            JOIN Albums al ON al.Id = f.AlbumId
            JOIN Artists ar ON ar.ArtistMetadataId = al.ArtistMetadataId
            """
        ).fetchall()
        records = []
        for r in rows:
            linked = [int(t["Id"]) for t in self.connection.execute(
                "SELECT Id FROM Tracks WHERE TrackFileId = ?", (r["Id"],)
            ).fetchall()]
            records.append(FileRecord(int(r["Id"]), r["Path"], int(r["ArtistId"]), int(r["Size"] or 0), linked))
        return records

    @_locked_retry
    def remove_file_record(self, file_id: int) -> bool:
        """Unlink every track from *file_id* and delete the record."""
        if self.dry_run:
            self.log.info("[DRY RUN] Would remove TrackFiles %d", file_id)
            return True
        with self.connection as conn:
            conn.execute("UPDATE Tracks SET TrackFileId = 0 WHERE TrackFileId = ?", (file_id,))
            conn.execute("DELETE FROM TrackFiles WHERE Id = ?", (file_id,))
        return True
