# -*- coding: utf-8 -*-
"""
Stale-entry audit.

Compares each manager's file records with what is really on the content
mount. A record whose file has vanished (removed by a health check,
corrupted, deleted by hand) is unlinked and deleted, then the owning
movie/series/artist is refreshed once. No search is fired from here: the
entity now shows as missing and the next poll cycle handles re-acquisition.
"""

from __future__ import annotations

import os

from dataclasses import dataclass, field
from typing import Dict, List, Protocol

from davtoarr_catalog import FileRecord, LidarrDatabase, SonarrDatabase
from davtoarr_clients import ArrClient, service_logger


class FileRecordSource(Protocol):
    name: str

    def list_file_records(self) -> List[FileRecord]: ...
    def remove_file_record(self, record: FileRecord) -> bool: ...
    def refresh_owner(self, owner_id: int) -> bool: ...


@dataclass
class AuditReport:
    service: str
    checked: int = 0
    removed: int = 0
    failed: int = 0
    refreshed: List[int] = field(default_factory=list)


def is_under(path: str, root: str) -> bool:
    """True when *path* lies inside *root* (after normalisation)."""
    if not path or not root:
        return False
    path = os.path.normcase(os.path.normpath(path))
    root = os.path.normcase(os.path.normpath(root))
    return path == root or path.startswith(root.rstrip(os.sep) + os.sep)

# -------------------------------- Sources --------------------------------------


class RadarrFileSource:
    """Movie files through the REST API (``moviefile``)."""

    name = "Radarr"

    def __init__(self, client: ArrClient) -> None:
        self.client = client

    def list_file_records(self) -> List[FileRecord]:
        records = []
        for f in self.client.get_list("moviefile"):
            if f.get("id") is None or not f.get("path"):
                continue
            records.append(FileRecord(
                id=int(f["id"]),
                path=f["path"],
                owner_id=int(f.get("movieId") or 0),
                size=int(f.get("size") or 0),
                linked_ids=[int(f["movieId"])] if f.get("movieId") else [],
            ))
        return records

    def remove_file_record(self, record: FileRecord) -> bool:
        return self.client.delete(f"moviefile/{record.id}")

    def refresh_owner(self, owner_id: int) -> bool:
        return self.client.trigger_command({"name": "RefreshMovie", "movieIds": [owner_id]})


class SonarrFileSource:
    """Episode files straight from ``sonarr.db``; refresh through the API."""

    name = "Sonarr"

    def __init__(self, client: ArrClient, db: SonarrDatabase) -> None:
        self.client = client
        self.db = db

    def list_file_records(self) -> List[FileRecord]:
        return self.db.list_file_records()

    def remove_file_record(self, record: FileRecord) -> bool:
        return self.db.remove_file_record(record.id)

    def refresh_owner(self, owner_id: int) -> bool:
        return self.client.trigger_command({"name": "RefreshSeries", "seriesId": owner_id})


class LidarrFileSource:
    """Track files straight from ``lidarr.db``; refresh through the API."""

    name = "Lidarr"

    def __init__(self, client: ArrClient, db: LidarrDatabase) -> None:
        self.client = client
        self.db = db

    def list_file_records(self) -> List[FileRecord]:
        return self.db.list_file_records()

    def remove_file_record(self, record: FileRecord) -> bool:
        return self.db.remove_file_record(record.id)

    def refresh_owner(self, owner_id: int) -> bool:
        return self.client.trigger_command({"name": "RefreshArtist", "artistId": owner_id})

# -------------------------------- Auditor --------------------------------------


class StaleAuditor:
    """
    Sweep one manager's file records under a library root.

    Parameters
    ----------
    source : FileRecordSource
        Lists, removes and refreshes the manager's records.
    root : str
        Content mount of the category; records outside it are left alone.
    """

    def __init__(self, source: FileRecordSource, root: str) -> None:
        self.source = source
        self.root = root
        self.log = service_logger(source.name)

    def root_available(self) -> bool:
        """A dropped mount looks like every file vanished; never audit against one."""
        try:
            return os.path.isdir(self.root) and bool(os.listdir(self.root))
        except OSError as e:
            self.log.warning("Cannot list %s: %s", self.root, e)
            return False

    def run(self) -> AuditReport:
        report = AuditReport(self.source.name)
        if not self.root_available():
            self.log.warning("Content mount %s is missing or empty, skipping audit", self.root)
            return report
        stale_owners: Dict[int, int] = {}

        for record in self.source.list_file_records():
            if not is_under(record.path, self.root):
                continue
            report.checked += 1
            if os.path.exists(record.path):
                continue

            self.log.warning("Stale file record %d: %s no longer exists", record.id, record.path)
            try:
                removed = self.source.remove_file_record(record)
            except Exception:
                self.log.exception("Failed to remove stale record %d", record.id)
                removed = False
            if not removed:
                report.failed += 1
                continue
            report.removed += 1
            stale_owners[record.owner_id] = stale_owners.get(record.owner_id, 0) + 1

        for owner_id, count in stale_owners.items():
            if owner_id and self.source.refresh_owner(owner_id):
                report.refreshed.append(owner_id)
                self.log.info("Refresh triggered for %d after removing %d stale record(s)", owner_id, count)

        self.log.info("Audit finished: checked=%d | removed=%d | failed=%d",
                      report.checked, report.removed, report.failed)
        return report
