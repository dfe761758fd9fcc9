# -*- coding: utf-8 -*-
"""
DavToArr runner

Keeps Radarr, Sonarr and Lidarr in step with the releases NzbDAV exposes on
its read-only content mount. Every poll cycle reads the NzbDAV download
history once and hands the same snapshot to each enabled reconciler; a
coarser stale-file audit runs after the reconcilers when its interval has
elapsed.

Key features
------------
- Noise-tolerant release/title matching with year bonus and penalty.
- Retry-directory resolution (``Release (2)``, ``Release (3)``) and fuzzy
  directory matching on the mount.
- Movies are pointed at the release directory; episodes and tracks are
  registered straight in the Sonarr/Lidarr databases, season packs and
  albums split per file.
- Incomplete downloads trigger a search, rate-limited per target.
- Stale-file audit removes records whose file vanished from the mount.

CLI
---
python davtoarr_runner.py [--config PATH] [--dry-run] [--once] [--skip-audit]

Configuration
-------------
config.yaml or config.example.yaml (``secrets.yaml`` deep-merged on top),
then environment variables. Sections:
- nzbdav.url, nzbdav.api_key, nzbdav.history_limit
- radarr/sonarr/lidarr: enabled, url, api_key, mount_path, categories,
  db_path (sonarr/lidarr)
- scheduler.poll_interval_seconds, scheduler.audit_interval_seconds,
  scheduler.search_cooldown_hours
- matching.* thresholds, http.timeout_seconds, logging.*, dry_run
"""

from __future__ import annotations

import argparse
import copy
import json
import logging
import os
import sys
import threading
import time

from collections import Counter
from dataclasses import asdict, dataclass, field
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import yaml

from davtoarr_audit import (
    AuditReport,
    LidarrFileSource,
    RadarrFileSource,
    SonarrFileSource,
    StaleAuditor,
)
from davtoarr_catalog import CatalogDatabase, LidarrDatabase, SonarrDatabase
from davtoarr_clients import ArrClient, NzbdavClient, ReleaseRecord
from davtoarr_matching import MatchTuning
from davtoarr_reconcile import (
    CooldownTracker,
    EpisodeStrategy,
    ManifestRec,
    MovieStrategy,
    MusicStrategy,
    Reconciler,
)

LOGGER_NAME = "DavToArr"
MIN_POLL_INTERVAL = 120

# ------------------------------ Configuration -------------------------------

DEFAULTS: Dict[str, Any] = {
    "nzbdav": {"url": None, "api_key": None, "history_limit": 50},
    "radarr": {
        "enabled": False, "url": None, "api_key": None,
        "mount_path": "/mnt/nzbdav/content/movies", "categories": ["movie"],
    },
    "sonarr": {
        "enabled": False, "url": None, "api_key": None,
        "mount_path": "/mnt/nzbdav/content/tv", "categories": ["tv", "sonarr"], "db_path": None,
    },
    "lidarr": {
        "enabled": False, "url": None, "api_key": None,
        "mount_path": "/mnt/nzbdav/content/music", "categories": ["music", "lidarr"], "db_path": None,
    },
    "scheduler": {
        "poll_interval_seconds": 300,
        "audit_interval_seconds": 3600,
        "search_cooldown_hours": 24,
    },
    "matching": {},
    "http": {"timeout_seconds": 30},
    "logging": {"level": "INFO", "log_file": "logs/davtoarr.log",
                "max_bytes": 5 * 1024 * 1024, "backup_count": 5},
    "dry_run": False,
}


def _deep_merge(dst: Dict[str, Any], src: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge src into dst, returning dst."""
    for k, v in (src or {}).items():
        if isinstance(v, dict) and isinstance(dst.get(k), dict):
            _deep_merge(dst[k], v)
        else:
            dst[k] = v
    return dst


def _as_bool(value: str) -> bool:
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


# (variable, dotted config path, converter)
ENV_OVERRIDES: Sequence[Tuple[str, str, Callable[[str], Any]]] = (
    ("NZBDAV_URL", "nzbdav.url", str),
    ("NZBDAV_API_KEY", "nzbdav.api_key", str),
    ("NZBDAV_HISTORY_LIMIT", "nzbdav.history_limit", int),
    ("RADARR_ENABLED", "radarr.enabled", _as_bool),
    ("RADARR_URL", "radarr.url", str),
    ("RADARR_API_KEY", "radarr.api_key", str),
    ("RADARR_MOUNT_PATH", "radarr.mount_path", str),
    ("SONARR_ENABLED", "sonarr.enabled", _as_bool),
    ("SONARR_URL", "sonarr.url", str),
    ("SONARR_API_KEY", "sonarr.api_key", str),
    ("SONARR_MOUNT_PATH", "sonarr.mount_path", str),
    ("SONARR_DB_PATH", "sonarr.db_path", str),
    ("LIDARR_ENABLED", "lidarr.enabled", _as_bool),
    ("LIDARR_URL", "lidarr.url", str),
    ("LIDARR_API_KEY", "lidarr.api_key", str),
    ("LIDARR_MOUNT_PATH", "lidarr.mount_path", str),
    ("LIDARR_DB_PATH", "lidarr.db_path", str),
    ("POLL_INTERVAL_SECONDS", "scheduler.poll_interval_seconds", int),
    ("AUDIT_INTERVAL_SECONDS", "scheduler.audit_interval_seconds", int),
    ("SEARCH_COOLDOWN_HOURS", "scheduler.search_cooldown_hours", float),
    ("DRY_RUN", "dry_run", _as_bool),
    ("LOG_LEVEL", "logging.level", str),
)


def _cfg_set(cfg: Dict[str, Any], dotted_path: str, value: Any) -> None:
    keys = dotted_path.split(".")
    cur = cfg
    for key in keys[:-1]:
        if not isinstance(cur.get(key), dict):
            cur[key] = {}
        cur = cur[key]
    cur[keys[-1]] = value


def apply_env_overrides(cfg: Dict[str, Any], environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Overlay the container environment variables on *cfg*."""
    environ = os.environ if environ is None else environ
    for var, dotted_path, convert in ENV_OVERRIDES:
        raw = environ.get(var)
        if raw is None or raw == "":
            continue
        try:
            _cfg_set(cfg, dotted_path, convert(raw))
        except ValueError:
            logging.getLogger(LOGGER_NAME).warning("Ignoring invalid %s=%r", var, raw)
    return cfg


def _read_yaml(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def load_config(path: Optional[str] = None, environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """
    Build the effective configuration.

    Parameters
    ----------
    path : str or None
        Explicit config file. When omitted, config.yaml then
        config.example.yaml are tried in the working directory.
    environ : dict or None
        Environment to read overrides from (``os.environ`` by default).

    Returns
    -------
    dict
        Defaults, deep-merged with the YAML file, ``secrets.yaml`` and the
        environment overrides, in that order.
    """
    cfg = copy.deepcopy(DEFAULTS)

    if path:
        cfg_path: Optional[Path] = Path(path)
    else:
        cfg_path = next((p for p in (Path("config.yaml"), Path("config.example.yaml")) if p.exists()), None)

    if cfg_path is not None and cfg_path.exists():
        _deep_merge(cfg, _read_yaml(cfg_path))
        secrets_file = cfg_path.parent / "secrets.yaml"
    else:
        secrets_file = Path("secrets.yaml")

    if secrets_file.exists():
        _deep_merge(cfg, _read_yaml(secrets_file))

    return apply_env_overrides(cfg, environ)


def cfg_get(cfg: Dict[str, Any], dotted_path: str, default: Any = None) -> Any:
    """
    Retrieve nested configuration values with dotted paths.

    Parameters
    ----------
    cfg : dict
        Configuration dictionary.
    dotted_path : str
        Dotted path, e.g., "sonarr.db_path".
    default : Any
        Default value if the path is not present.
    """
    cur: Any = cfg
    for key in dotted_path.split("."):
        cur = cur.get(key) if isinstance(cur, dict) else None
        if cur is None:
            return default
    return cur


SERVICES = ("radarr", "sonarr", "lidarr")
DB_SERVICES = ("sonarr", "lidarr")


def validate_config(cfg: Dict[str, Any]) -> List[str]:
    """Return the list of fatal configuration problems (empty when usable)."""
    problems: List[str] = []
    enabled = [s for s in SERVICES if cfg_get(cfg, f"{s}.enabled", False)]
    if not enabled:
        problems.append("No services enabled. Enable at least one of Radarr, Sonarr or Lidarr.")

    if not cfg_get(cfg, "nzbdav.url") or not cfg_get(cfg, "nzbdav.api_key"):
        problems.append("NzbDAV url and api_key are required.")

    for service in enabled:
        if not cfg_get(cfg, f"{service}.url") or not cfg_get(cfg, f"{service}.api_key"):
            problems.append(f"{service.capitalize()} is enabled but url or api_key is missing.")
        if service in DB_SERVICES and not cfg_get(cfg, f"{service}.db_path"):
            problems.append(f"{service.capitalize()} is enabled but db_path is missing.")
    return problems


def poll_interval(cfg: Dict[str, Any], logger: Optional[logging.Logger] = None) -> int:
    seconds = int(cfg_get(cfg, "scheduler.poll_interval_seconds", 300))
    if seconds < MIN_POLL_INTERVAL:
        if logger:
            logger.warning("Poll interval %ds below the %ds floor, using %ds",
                           seconds, MIN_POLL_INTERVAL, MIN_POLL_INTERVAL)
        seconds = MIN_POLL_INTERVAL
    return seconds

# --------------------------------- Logging -----------------------------------

def setup_logger(cfg: Dict[str, Any]) -> logging.Logger:
    """
    Set up a RotatingFileHandler logger plus console output.

    Returns
    -------
    logging.Logger
        Configured logger instance named "DavToArr".
    """
    logger = logging.getLogger(LOGGER_NAME)

    # Prevent duplicate logs on re-setup
    if logger.handlers:
        for h in list(logger.handlers):
            logger.removeHandler(h)
    logger.propagate = False

    logger.setLevel(getattr(logging, str(cfg_get(cfg, "logging.level", "INFO")).upper(), logging.INFO))
    log_file = cfg_get(cfg, "logging.log_file", "logs/davtoarr.log")
    max_bytes = int(cfg_get(cfg, "logging.max_bytes", 5 * 1024 * 1024))
    backup_count = int(cfg_get(cfg, "logging.backup_count", 5))

    fmt = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
    if log_file:
        os.makedirs(str(Path(log_file).parent), exist_ok=True)
        handler = RotatingFileHandler(log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
        handler.setFormatter(fmt)
        logger.addHandler(handler)

    console = logging.StreamHandler()
    console.setFormatter(fmt)
    logger.addHandler(console)
    return logger

# -------------------------------- Wiring --------------------------------------


@dataclass
class Services:
    history: NzbdavClient
    reconcilers: List[Reconciler] = field(default_factory=list)
    auditors: List[StaleAuditor] = field(default_factory=list)
    clients: List[ArrClient] = field(default_factory=list)
    databases: List[CatalogDatabase] = field(default_factory=list)

    def close(self) -> None:
        for db in self.databases:
            db.close()


def build_services(cfg: Dict[str, Any], dry_run: bool = False) -> Services:
    """Construct clients, databases, reconcilers and auditors for every enabled category."""
    timeout = float(cfg_get(cfg, "http.timeout_seconds", 30))
    tuning = MatchTuning.from_dict(cfg_get(cfg, "matching", {}))
    cooldown_seconds = float(cfg_get(cfg, "scheduler.search_cooldown_hours", 24)) * 3600

    services = Services(history=NzbdavClient(
        cfg_get(cfg, "nzbdav.url"),
        cfg_get(cfg, "nzbdav.api_key"),
        history_limit=int(cfg_get(cfg, "nzbdav.history_limit", 50)),
        timeout=timeout,
    ))

    def _client(service: str, label: str, api_version: str) -> ArrClient:
        client = ArrClient(label, cfg_get(cfg, f"{service}.url"), cfg_get(cfg, f"{service}.api_key"),
                           api_version=api_version, timeout=timeout, dry_run=dry_run)
        services.clients.append(client)
        return client

    def _add(label: str, client: ArrClient, strategy: Any, source: Any, service: str) -> None:
        mount_path = cfg_get(cfg, f"{service}.mount_path")
        services.reconcilers.append(Reconciler(
            label, client, strategy, mount_path,
            cooldown=CooldownTracker(cooldown_seconds),
            tuning=tuning,
            categories=cfg_get(cfg, f"{service}.categories"),
        ))
        services.auditors.append(StaleAuditor(source, mount_path))

    if cfg_get(cfg, "radarr.enabled", False):
        client = _client("radarr", "Radarr", "v3")
        _add("Radarr", client, MovieStrategy(client), RadarrFileSource(client), "radarr")

    if cfg_get(cfg, "sonarr.enabled", False):
        client = _client("sonarr", "Sonarr", "v3")
        db = SonarrDatabase(cfg_get(cfg, "sonarr.db_path"), dry_run=dry_run)
        services.databases.append(db)
        _add("Sonarr", client, EpisodeStrategy(client, db), SonarrFileSource(client, db), "sonarr")

    if cfg_get(cfg, "lidarr.enabled", False):
        client = _client("lidarr", "Lidarr", "v1")
        db = LidarrDatabase(cfg_get(cfg, "lidarr.db_path"), dry_run=dry_run)
        services.databases.append(db)
        _add("Lidarr", client, MusicStrategy(client, db, tuning.album_threshold),
             LidarrFileSource(client, db), "lidarr")

    return services

# ------------------------------- Scheduler ------------------------------------


class PollScheduler:
    """
    Idle -> Polling -> Idle loop.

    Each tick reads the history once, runs every reconciler against that
    snapshot, then runs the stale audit when it is due. Reconciler and
    auditor failures are logged and never stop siblings or the next tick.
    """

    IDLE = "idle"
    POLLING = "polling"

    def __init__(self, history: Any, reconcilers: Sequence[Any], auditors: Sequence[Any],
                 poll_interval: float, audit_interval: float,
                 logger: Optional[logging.Logger] = None,
                 clock: Callable[[], float] = time.monotonic,
                 skip_audit: bool = False) -> None:
        self.history = history
        self.reconcilers = list(reconcilers)
        self.auditors = list(auditors)
        self.poll_interval = poll_interval
        self.audit_interval = audit_interval
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self.clock = clock
        self.skip_audit = skip_audit
        self.state = self.IDLE
        self.last_audit: Optional[float] = None
        self.cycles = 0

    def audit_due(self) -> bool:
        if self.skip_audit or not self.auditors:
            return False
        return self.last_audit is None or (self.clock() - self.last_audit) >= self.audit_interval

    def run_audit(self) -> List[AuditReport]:
        reports: List[AuditReport] = []
        for auditor in self.auditors:
            try:
                reports.append(auditor.run())
            except Exception:
                self.logger.exception("Stale audit failed for %s", getattr(auditor.source, "name", auditor))
        self.last_audit = self.clock()
        return reports

    def tick(self) -> List[ManifestRec]:
        self.state = self.POLLING
        self.cycles += 1
        records: List[ManifestRec] = []
        try:
            releases: List[ReleaseRecord] = self.history.fetch_completed_releases()
            self.logger.info("Cycle %d: %d completed release(s) in history", self.cycles, len(releases))
            for reconciler in self.reconcilers:
                try:
                    records.extend(reconciler.process_history(releases))
                except Exception:
                    self.logger.exception("Reconciler %s failed", getattr(reconciler, "name", reconciler))
            if self.audit_due():
                self.run_audit()
        finally:
            self.state = self.IDLE
        log_cycle_summary(records, self.logger)
        return records

    def run_forever(self, stop: Optional[threading.Event] = None) -> None:
        stop = stop or threading.Event()
        while not stop.is_set():
            try:
                self.tick()
            except Exception:
                self.logger.exception("Poll cycle failed")
            stop.wait(self.poll_interval)

# ------------------------------- Manifest -------------------------------------


def log_cycle_summary(records: Sequence[ManifestRec], logger: logging.Logger) -> Dict[str, int]:
    summary = dict(Counter(r.decision for r in records))
    if records:
        logger.info("Summary: total=%d | %s", len(records),
                    " | ".join(f"{k}={v}" for k, v in sorted(summary.items())))
    return summary


def write_manifest_and_summary(records: Sequence[ManifestRec], out_path: Path,
                               logger: logging.Logger) -> Dict[str, Any]:
    """
    Write ``_manifest.json`` with one record per (service, release).

    Later records override earlier ones for the same release.
    """
    last_by_key: Dict[Tuple[str, str], ManifestRec] = {}
    for r in records:
        last_by_key[(r.service, r.release)] = r
    final = list(last_by_key.values())

    summary = Counter(r.decision for r in final)
    payload = {
        "total": len(final),
        "summary": dict(summary),
        "records": [asdict(r) for r in final],
    }

    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
    logger.info("Manifest written to %s (%d records)", out_path, payload["total"])
    return payload

# ------------------------------- CLI -----------------------------------------


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """
    Parse command-line arguments for operational modes.

    Returns
    -------
    argparse.Namespace
        Parsed flags and parameters.
    """
    p = argparse.ArgumentParser(description="DavToArr runner")
    p.add_argument(
        "--config",
        type=str,
        help="Path to the YAML config (default: config.yaml, then config.example.yaml).",
    )
    p.add_argument(
        "--dry-run",
        action="store_true",
        help="Don't touch any manager or database; just log actions.",
    )
    p.add_argument(
        "--once",
        action="store_true",
        help="Run a single poll cycle, write _manifest.json and exit.",
    )
    p.add_argument(
        "--skip-audit",
        action="store_true",
        help="Never run the stale-file audit.",
    )
    return p.parse_args(argv)

# ----------------------------------- main -------------------------------------

def main(argv: Optional[Sequence[str]] = None) -> None:
    """
    Entry point:
    - Parse args, load config, set up logging
    - Validate configuration (fatal problems exit with status 1)
    - Run one cycle (--once) or poll until interrupted
    """
    args = parse_args(argv)
    cfg = load_config(args.config)
    logger = setup_logger(cfg)

    problems = validate_config(cfg)
    if problems:
        for problem in problems:
            logger.error(problem)
        sys.exit(1)

    dry_run = bool(args.dry_run or cfg_get(cfg, "dry_run", False))
    if dry_run:
        logger.info("DRY RUN mode enabled - no changes will be made")

    services = build_services(cfg, dry_run=dry_run)
    for reconciler in services.reconcilers:
        logger.info("%s enabled: %s -> %s", reconciler.name, reconciler.client.base_url, reconciler.mount_path)
    for client in services.clients:
        client.wait_until_ready()

    scheduler = PollScheduler(
        services.history,
        services.reconcilers,
        services.auditors,
        poll_interval=poll_interval(cfg, logger),
        audit_interval=float(cfg_get(cfg, "scheduler.audit_interval_seconds", 3600)),
        logger=logger,
        skip_audit=args.skip_audit,
    )

    try:
        if args.once:
            records = scheduler.tick()
            write_manifest_and_summary(records, Path("_manifest.json"), logger)
            return

        logger.info("Polling every %ds", scheduler.poll_interval)
        scheduler.run_forever()
    except KeyboardInterrupt:
        logger.info("Interrupted by user, shutting down...")
    finally:
        services.close()

if __name__ == "__main__":
    main()
