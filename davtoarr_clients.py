# -*- coding: utf-8 -*-
"""
HTTP collaborators: NzbDAV download history and the *arr REST APIs.

Every call is bounded by a timeout. Failures are logged and turned into an
empty result, ``None`` or ``False``; nothing is retried inside a poll cycle
because the next cycle re-scans the full history anyway. Mutating calls are
skipped (and reported as successful) when the client runs in dry-run mode.

API reference
-------------
- NzbDAV / SABnzbd: GET /api?mode=history&output=json
- Radarr v3: movie, moviefile, queue, command, system/status
- Sonarr v3: series, episode, queue, command, system/status
- Lidarr v1: artist, album, track, queue, command, system/status
"""

from __future__ import annotations

import logging

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests

from tenacity import RetryError, retry, retry_if_result, stop_after_attempt, wait_fixed

logger = logging.getLogger("DavToArr")

DEFAULT_TIMEOUT = 30


class ServiceLogger(logging.LoggerAdapter):
    """Prefixes every message with ``[service]``."""

    def process(self, msg, kwargs):
        return f"[{self.extra['service']}] {msg}", kwargs


def service_logger(name: str) -> ServiceLogger:
    return ServiceLogger(logger, {"service": name})

# ------------------------------ Download history ------------------------------


@dataclass(frozen=True)
class ReleaseRecord:
    """A completed download as reported by the history source."""
    job_name: str
    category: str
    storage: Optional[str] = None
    nzo_id: Optional[str] = None


def _first(d: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for k in keys:
        v = d.get(k)
        if v not in (None, ""):
            return v
    return default


class NzbdavClient:
    """SABnzbd-compatible history endpoint exposed by NzbDAV."""

    def __init__(self, url: str, api_key: str, history_limit: int = 50,
                 timeout: float = 10, session: Optional[requests.Session] = None) -> None:
        self.url = (url or "").rstrip("/")
        self.api_key = api_key
        self.history_limit = int(history_limit)
        self.timeout = timeout
        self.session = session or requests.Session()
        self.log = service_logger("NzbDAV")

    def fetch_completed_releases(self) -> List[ReleaseRecord]:
        """
        Return completed history slots.

        Returns
        -------
        list of ReleaseRecord
            Empty when NzbDAV is unreachable or answers with an error.
        """
        params = {
            "mode": "history",
            "apikey": self.api_key,
            "start": "0",
            "limit": str(self.history_limit),
            "output": "json",
        }
        headers = {"x-api-key": self.api_key} if self.api_key else {}
        try:
            r = self.session.get(f"{self.url}/api", params=params, headers=headers, timeout=self.timeout)
            r.raise_for_status()
            data = r.json() or {}
        except (requests.RequestException, ValueError) as e:
            self.log.error("Error fetching history: %s", e)
            return []

        history = data.get("history") or data.get("History") or {}
        slots = history.get("slots") or history.get("Slots") or []

        releases: List[ReleaseRecord] = []
        for slot in slots:
            status = str(_first(slot, "status", "Status", default="")).lower()
            if status != "completed":
                continue
            job_name = _first(slot, "job_name", "name", "Name", default="")
            if not job_name:
                continue
            releases.append(ReleaseRecord(
                job_name=str(job_name),
                category=str(_first(slot, "category", "Category", default="")),
                storage=_first(slot, "storage", "Storage"),
                nzo_id=_first(slot, "nzo_id", "NzoId"),
            ))
        return releases

# --------------------------------- *arr API -----------------------------------


class ArrClient:
    """
    Minimal REST client shared by Radarr, Sonarr and Lidarr.

    Parameters
    ----------
    name : str
        Service label used in log lines ("Radarr", "Sonarr", "Lidarr").
    url : str
        Base URL of the manager.
    api_key : str
        ``X-Api-Key`` value.
    api_version : str
        "v3" for Radarr/Sonarr, "v1" for Lidarr.
    dry_run : bool
        Log and skip every mutating call.
    """

    def __init__(self, name: str, url: str, api_key: str, api_version: str = "v3",
                 timeout: float = DEFAULT_TIMEOUT, dry_run: bool = False,
                 session: Optional[requests.Session] = None) -> None:
        self.name = name
        self.base_url = (url or "").rstrip("/")
        self.api_version = api_version
        self.timeout = timeout
        self.dry_run = dry_run
        self.session = session or requests.Session()
        self.session.headers.update({"X-Api-Key": api_key or ""})
        self.log = service_logger(name)

    def _url(self, endpoint: str) -> str:
        return f"{self.base_url}/api/{self.api_version}/{endpoint.lstrip('/')}"

    def get(self, endpoint: str, **params: Any) -> Any:
        """GET returning decoded JSON, or None on any failure."""
        try:
            r = self.session.get(self._url(endpoint), params=params or None, timeout=self.timeout)
            r.raise_for_status()
            return r.json()
        except (requests.RequestException, ValueError) as e:
            self.log.error("Error fetching %s: %s", endpoint, e)
            return None

    def get_list(self, endpoint: str, **params: Any) -> List[Dict[str, Any]]:
        data = self.get(endpoint, **params)
        if isinstance(data, dict):
            data = data.get("records")
        return list(data or [])

    # -- mutations ---------------------------------------------------------

    def put(self, endpoint: str, body: Dict[str, Any], **params: Any) -> Optional[Dict[str, Any]]:
        if self.dry_run:
            self.log.info("[DRY RUN] Would PUT %s", endpoint)
            return body
        try:
            r = self.session.put(self._url(endpoint), json=body, params=params or None, timeout=self.timeout)
            r.raise_for_status()
            return r.json() if r.content else body
        except (requests.RequestException, ValueError) as e:
            self.log.error("Error updating %s: %s", endpoint, e)
            return None

    def delete(self, endpoint: str, **params: Any) -> bool:
        if self.dry_run:
            self.log.info("[DRY RUN] Would DELETE %s", endpoint)
            return True
        try:
            r = self.session.delete(self._url(endpoint), params=params or None, timeout=self.timeout)
            r.raise_for_status()
            return True
        except requests.RequestException as e:
            self.log.error("Error deleting %s: %s", endpoint, e)
            return False

    def trigger_command(self, command: Dict[str, Any]) -> bool:
        if self.dry_run:
            self.log.info("[DRY RUN] Would run command %s", command)
            return True
        try:
            r = self.session.post(self._url("command"), json=command, timeout=self.timeout)
            r.raise_for_status()
            return True
        except requests.RequestException as e:
            self.log.error("Error triggering command %s: %s", command.get("name"), e)
            return False

    # -- helpers used by every manager ------------------------------------

    def update_item(self, endpoint: str, item_id: int, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """PUT the full resource back without letting the manager move files."""
        return self.put(f"{endpoint}/{item_id}", data, moveFiles="false")

    def get_queue(self) -> List[Dict[str, Any]]:
        return self.get_list("queue", pageSize=1000)

    def remove_from_queue(self, queue_id: int) -> bool:
        return self.delete(f"queue/{queue_id}", removeFromClient="false", blocklist="false")

    def get_system_status(self) -> Optional[Dict[str, Any]]:
        return self.get("system/status")

    def wait_until_ready(self, attempts: int = 5, wait_seconds: float = 5) -> bool:
        """
        Probe ``system/status`` until the manager answers.

        Only used at startup; an unreachable manager is logged and the
        service keeps running, since each cycle degrades to empty results.
        """

        @retry(stop=stop_after_attempt(attempts), wait=wait_fixed(wait_seconds),
               retry=retry_if_result(lambda status: status is None))
        def _probe() -> Optional[Dict[str, Any]]:
            return self.get_system_status()

        try:
            status = _probe()
        except RetryError:
            self.log.warning("Not reachable after %d attempts, continuing anyway", attempts)
            return False
        self.log.info("Connected (version %s)", (status or {}).get("version", "?"))
        return True
