# -*- coding: utf-8 -*-
"""
DavToArr reconcilers

One ``Reconciler`` drives every media kind through the same steps:

    match release -> catalog entity
    skip when the entity already has its media
    locate the release on the content mount
    no media  -> re-acquisition search (rate-limited by ``CooldownTracker``)
    media     -> kind-specific registration, queue cleanup, refresh

The kind-specific parts are injected as a strategy object
(``MovieStrategy``, ``EpisodeStrategy``, ``MusicStrategy``) rather than by
subclassing the reconciler.
"""

from __future__ import annotations

import os
import sqlite3
import time

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Hashable, List, Optional, Protocol, Sequence, Tuple

from davtoarr_catalog import LidarrDatabase, SonarrDatabase
from davtoarr_clients import ArrClient, ReleaseRecord, service_logger
from davtoarr_locator import (
    MUSIC_EXTENSIONS,
    VIDEO_EXTENSIONS,
    find_actual_path,
    is_sample,
    list_media_files,
)
from davtoarr_matching import (
    DEFAULT_TUNING,
    NO_MATCH,
    MatchResult,
    MatchTuning,
    extract_title_words,
    extract_year,
    find_best_match,
    normalize_compact,
)
from davtoarr_parsing import (
    ReleaseShape,
    TrackNumber,
    classify_release,
    infer_audio_quality,
    infer_video_quality,
    parse_episode_info,
    parse_track_number,
)

DEFAULT_COOLDOWN_SECONDS = 24 * 60 * 60

# Decisions written to the cycle manifest
REGISTERED = "registered"
PATH_UPDATED = "path_updated"
PATH_CURRENT = "path_current"
SUCCESS_DECISIONS = frozenset({REGISTERED, PATH_UPDATED, PATH_CURRENT})


@dataclass
class ManifestRec:
    service: str
    release: str
    decision: str
    title: Optional[str] = None
    entity_id: Optional[int] = None
    path: Optional[str] = None
    score: Optional[float] = None
    error: Optional[str] = None

# ------------------------------- Cooldown --------------------------------------


class CooldownTracker:
    """
    Last re-acquisition trigger per target, kept in memory only.

    Keys are tuples such as ``(movie_id,)``, ``(series_id, season, episode)``
    or ``(series_id, season)``. Losing the map on restart costs at most one
    duplicate search per target.
    """

    def __init__(self, cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
                 clock: Callable[[], float] = time.time) -> None:
        self.cooldown_seconds = float(cooldown_seconds)
        self._clock = clock
        self._last: Dict[Hashable, float] = {}

    def should_trigger(self, key: Hashable) -> bool:
        last = self._last.get(key)
        return last is None or (self._clock() - last) > self.cooldown_seconds

    def record(self, key: Hashable) -> None:
        self._last[key] = self._clock()

    def age(self, key: Hashable) -> Optional[float]:
        last = self._last.get(key)
        return None if last is None else self._clock() - last

    def __len__(self) -> int:
        return len(self._last)

# ------------------------------ Strategy API -----------------------------------


@dataclass
class Plan:
    """What a strategy decided about one matched release."""
    entity: Dict[str, Any]
    title: str
    cooldown_key: Tuple[Any, ...]
    search_command: Dict[str, Any]
    search_label: str
    satisfied: bool = False
    context: Dict[str, Any] = field(default_factory=dict)

    @property
    def entity_id(self) -> int:
        return int(self.entity["id"])


class MediaStrategy(Protocol):
    kind: str
    categories: Sequence[str]
    extensions: FrozenSet[str]

    def load_candidates(self) -> List[Dict[str, Any]]: ...
    def title_of(self, entity: Dict[str, Any]) -> str: ...
    def year_of(self, entity: Dict[str, Any]) -> Optional[int]: ...
    def release_year(self, job_name: str) -> Optional[int]: ...
    def threshold(self, tuning: MatchTuning) -> float: ...
    def parse_release(self, job_name: str) -> Any: ...
    def plan(self, release: ReleaseRecord, parsed: Any, match: MatchResult) -> Optional[Plan]: ...
    def register(self, release: ReleaseRecord, plan: Plan, directory: str) -> str: ...
    def refresh(self, plan: Plan) -> bool: ...
    def queue_matches(self, plan: Plan, record: Dict[str, Any]) -> bool: ...

# ------------------------------- Reconciler ------------------------------------


class Reconciler:
    """
    Reconcile completed releases of one category against one manager.

    Parameters
    ----------
    name : str
        Service label ("Radarr", "Sonarr", "Lidarr").
    client : ArrClient
        REST collaborator for queue, commands and searches.
    strategy : MediaStrategy
        Kind-specific matching inputs and registration step.
    mount_path : str
        Content mount root for this category.
    cooldown : CooldownTracker
        Owned by this reconciler; never shared.
    """

    def __init__(self, name: str, client: ArrClient, strategy: MediaStrategy, mount_path: str,
                 cooldown: Optional[CooldownTracker] = None,
                 tuning: MatchTuning = DEFAULT_TUNING,
                 categories: Optional[Sequence[str]] = None) -> None:
        self.name = name
        self.client = client
        self.strategy = strategy
        self.mount_path = mount_path
        self.cooldown = cooldown or CooldownTracker()
        self.tuning = tuning
        self.categories = [c.lower() for c in (categories or strategy.categories)]
        self.log = service_logger(name)

    def accepts(self, release: ReleaseRecord) -> bool:
        category = (release.category or "").lower()
        return any(c in category for c in self.categories)

    def process_history(self, releases: Sequence[ReleaseRecord]) -> List[ManifestRec]:
        """
        Reconcile every accepted release of the shared history snapshot.

        A failing release is logged and recorded; the rest still run.
        """
        relevant = [r for r in releases if self.accepts(r)]
        if not relevant:
            return []

        candidates = self.strategy.load_candidates()
        if not candidates:
            self.log.warning("No %s entries returned by the catalog, skipping %d release(s) this cycle",
                             self.strategy.kind, len(relevant))
            return []

        records: List[ManifestRec] = []
        for release in relevant:
            try:
                records.append(self.process_release(release, candidates))
            except Exception as e:
                self.log.exception("Error processing %s", release.job_name)
                records.append(ManifestRec(self.name, release.job_name, "error", error=str(e)))
        return records

    def process_release(self, release: ReleaseRecord, candidates: Sequence[Dict[str, Any]]) -> ManifestRec:
        job_name = release.job_name
        strategy = self.strategy

        parsed = strategy.parse_release(job_name)
        if parsed is None:
            self.log.info("Could not parse %s info from: %s", strategy.kind, job_name)
            return ManifestRec(self.name, job_name, "unparseable")

        match = find_best_match(
            job_name,
            strategy.release_year(job_name),
            candidates,
            strategy.title_of,
            strategy.year_of,
            threshold=strategy.threshold(self.tuning),
            year_bonus=self.tuning.year_bonus,
            year_penalty=self.tuning.year_penalty,
        )
        if not match:
            self.log.info("No matching %s found for: %s", strategy.kind, job_name)
            return ManifestRec(self.name, job_name, "no_match")

        title = strategy.title_of(match.item)
        self.log.info('Matched "%s" to "%s" (score: %.2f)', job_name, title, match.score)
        rec = ManifestRec(self.name, job_name, "skipped", title=title,
                          entity_id=match.item.get("id"), score=round(match.score, 3))

        plan = strategy.plan(release, parsed, match)
        if plan is None:
            rec.decision = "not_in_catalog"
            return rec
        if plan.satisfied:
            self.log.info("%s already has media", plan.search_label)
            rec.decision = "already_present"
            return rec

        directory = find_actual_path(job_name, self.mount_path, strategy.extensions, self.tuning, log=self.log)
        if not directory:
            rec.decision = self._handle_incomplete(job_name, plan)
            return rec

        rec.path = directory
        rec.decision = strategy.register(release, plan, directory)
        if rec.decision in SUCCESS_DECISIONS:
            self.clear_queue(job_name, plan)
            if strategy.refresh(plan):
                self.log.info("Refresh triggered for: %s", plan.title)
        return rec

    def _handle_incomplete(self, job_name: str, plan: Plan) -> str:
        self.log.info('No media files found for "%s" - download appears incomplete', plan.search_label)
        key = plan.cooldown_key
        if not self.cooldown.should_trigger(key):
            hours = (self.cooldown.age(key) or 0) / 3600
            self.log.info('Skipping search for "%s" - already searched %.1fh ago', plan.search_label, hours)
            return "search_cooldown"

        self.log.info('Triggering search for incomplete download: "%s" (was: %s)', plan.search_label, job_name)
        if self.client.trigger_command(plan.search_command):
            self.cooldown.record(key)
            self.log.info("Search triggered for: %s", plan.search_label)
            return "search_triggered"
        self.log.error("Failed to trigger search for: %s", plan.search_label)
        return "search_failed"

    def clear_queue(self, job_name: str, plan: Plan) -> int:
        """Drop queue entries the manager still holds for this release."""
        wanted = normalize_compact(job_name)
        removed = 0
        for record in self.client.get_queue():
            title_hit = normalize_compact(record.get("title") or "") == wanted
            if not (title_hit or self.strategy.queue_matches(plan, record)):
                continue
            if record.get("id") is not None and self.client.remove_from_queue(record["id"]):
                self.log.info("Removed queue entry %s (%s)", record["id"], record.get("title"))
                removed += 1
        return removed

# -------------------------------- Helpers --------------------------------------


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _same_path(a: Optional[str], b: Optional[str]) -> bool:
    if not a or not b:
        return False
    return os.path.normcase(os.path.normpath(a)) == os.path.normcase(os.path.normpath(b))

# --------------------------------- Movies --------------------------------------


class MovieStrategy:
    """Radarr: one movie per release, registration is a path update."""

    kind = "movie"
    categories = ("movie",)
    extensions = VIDEO_EXTENSIONS

    def __init__(self, client: ArrClient) -> None:
        self.client = client
        self.log = client.log

    def load_candidates(self) -> List[Dict[str, Any]]:
        return self.client.get_list("movie")

    def title_of(self, movie: Dict[str, Any]) -> str:
        return movie.get("title") or ""

    def year_of(self, movie: Dict[str, Any]) -> Optional[int]:
        return movie.get("year") or None

    def release_year(self, job_name: str) -> Optional[int]:
        return extract_year(job_name)

    def threshold(self, tuning: MatchTuning) -> float:
        return tuning.entity_threshold

    def parse_release(self, job_name: str) -> Any:
        return job_name

    def plan(self, release: ReleaseRecord, parsed: Any, match: MatchResult) -> Optional[Plan]:
        movie = match.item
        return Plan(
            entity=movie,
            title=self.title_of(movie),
            cooldown_key=(movie["id"],),
            search_command={"name": "MoviesSearch", "movieIds": [movie["id"]]},
            search_label=self.title_of(movie),
            satisfied=bool(movie.get("hasFile")),
        )

    def register(self, release: ReleaseRecord, plan: Plan, directory: str) -> str:
        movie = plan.entity
        if _same_path(movie.get("path"), directory):
            self.log.info("Path already correct: %s", plan.title)
            return PATH_CURRENT

        self.log.info("Updating path from %s to %s", movie.get("path"), directory)
        body = self.client.get(f"movie/{plan.entity_id}") or dict(movie)
        body["path"] = directory
        if self.client.update_item("movie", plan.entity_id, body) is None:
            return "register_failed"
        movie["path"] = directory
        return PATH_UPDATED

    def refresh(self, plan: Plan) -> bool:
        return self.client.trigger_command({"name": "RefreshMovie", "movieIds": [plan.entity_id]})

    def queue_matches(self, plan: Plan, record: Dict[str, Any]) -> bool:
        return record.get("movieId") == plan.entity_id

# -------------------------------- Episodes -------------------------------------


class EpisodeStrategy:
    """
    Sonarr: single-episode releases and season packs.

    Files are registered directly in Sonarr's database; a season pack is
    split per file by parsing each file name.
    """

    kind = "series"
    categories = ("tv", "sonarr")
    extensions = VIDEO_EXTENSIONS

    def __init__(self, client: ArrClient, db: SonarrDatabase) -> None:
        self.client = client
        self.db = db
        self.log = client.log

    def load_candidates(self) -> List[Dict[str, Any]]:
        return self.client.get_list("series")

    def title_of(self, series: Dict[str, Any]) -> str:
        return series.get("title") or ""

    def year_of(self, series: Dict[str, Any]) -> Optional[int]:
        return series.get("year") or None

    def release_year(self, job_name: str) -> Optional[int]:
        # Release names rarely carry a show's premiere year
        return None

    def threshold(self, tuning: MatchTuning) -> float:
        return tuning.entity_threshold

    def parse_release(self, job_name: str) -> Optional[ReleaseShape]:
        return classify_release(job_name)

    def plan(self, release: ReleaseRecord, shape: ReleaseShape, match: MatchResult) -> Optional[Plan]:
        series = match.item
        title = self.title_of(series)
        episodes = [e for e in self.client.get_list("episode", seriesId=series["id"])
                    if e.get("seasonNumber") == shape.season]

        if shape.kind == "episode":
            info = shape.episode
            targets = [e for e in episodes if e.get("episodeNumber") in info.episodes]
            label = f"{title} {info.label()}"
            if not targets:
                self.log.info("Episode %s not found for %s", info.label(), title)
                return None
            return Plan(
                entity=series,
                title=title,
                cooldown_key=(series["id"], shape.season, info.episode),
                search_command={"name": "EpisodeSearch", "episodeIds": [e["id"] for e in targets]},
                search_label=label,
                satisfied=all(e.get("hasFile") for e in targets),
                context={"shape": shape, "targets": targets},
            )

        label = f"{title} Season {shape.season}"
        if not episodes:
            self.log.info("Season %d not found for %s", shape.season, title)
            return None
        unfilled = [e for e in episodes if not e.get("hasFile")]
        return Plan(
            entity=series,
            title=title,
            cooldown_key=(series["id"], shape.season),
            search_command={"name": "SeasonSearch", "seriesId": series["id"], "seasonNumber": shape.season},
            search_label=label,
            satisfied=not unfilled,
            context={"shape": shape, "targets": unfilled},
        )

    def _videos(self, directory: str) -> List[str]:
        return [f for f in list_media_files(directory, self.extensions) if not is_sample(f)]

    def _pick_episode_file(self, videos: List[str], shape: ReleaseShape) -> Optional[str]:
        for path in videos:
            info = parse_episode_info(os.path.basename(path))
            if info and info.season == shape.season and info.episode in shape.episode.episodes:
                return path
        if not videos:
            return None
        return max(videos, key=lambda p: os.path.getsize(p))

    def _register(self, release: ReleaseRecord, plan: Plan, path: str, season: int,
                  episodes: List[Dict[str, Any]]) -> Optional[int]:
        quality = infer_video_quality(os.path.basename(path), release.job_name)
        try:
            file_id = self.db.register_episode_file(
                series_id=plan.entity_id,
                series_path=plan.entity.get("path") or "",
                season_number=season,
                file_path=path,
                episode_ids=[e["id"] for e in episodes],
                quality=quality,
                scene_name=release.job_name,
            )
        except (sqlite3.Error, OSError) as e:
            self.log.error("Failed to register %s: %s", path, e)
            return None
        if file_id is not None:
            numbers = ", ".join(f"E{e.get('episodeNumber', 0):02d}" for e in episodes)
            self.log.info("Registered %s S%02d %s: %s (%s)", plan.title, season, numbers, path, quality.name)
        return file_id

    def register(self, release: ReleaseRecord, plan: Plan, directory: str) -> str:
        shape: ReleaseShape = plan.context["shape"]
        targets: List[Dict[str, Any]] = plan.context["targets"]
        videos = self._videos(directory)

        if shape.kind == "episode":
            path = self._pick_episode_file(videos, shape)
            if not path:
                self.log.warning("No video file found in %s", directory)
                return "no_files_matched"
            if self._register(release, plan, path, shape.season, targets) is None:
                return "register_failed"
            return REGISTERED

        by_number = {e.get("episodeNumber"): e for e in targets}
        registered = failed = 0
        for path in videos:
            info = parse_episode_info(os.path.basename(path))
            if info is None:
                self.log.debug("Skipping unparseable file in season pack: %s", path)
                continue
            season = info.season if info.explicit_season else shape.season
            if season != shape.season:
                self.log.debug("Skipping %s: season %d outside pack season %d", path, season, shape.season)
                continue
            matched = [by_number[n] for n in info.episodes if n in by_number]
            if not matched:
                self.log.info("No unfilled episode for %s in %s", info.label(), plan.title)
                continue
            if self._register(release, plan, path, shape.season, matched) is None:
                failed += 1
            else:
                registered += 1
        plan.context["registered"] = registered
        if registered:
            return REGISTERED
        return "register_failed" if failed else "no_files_matched"

    def refresh(self, plan: Plan) -> bool:
        return self.client.trigger_command({"name": "RefreshSeries", "seriesId": plan.entity_id})

    def queue_matches(self, plan: Plan, record: Dict[str, Any]) -> bool:
        shape: ReleaseShape = plan.context["shape"]
        if shape.kind == "episode":
            return record.get("episodeId") in {e["id"] for e in plan.context["targets"]}
        return record.get("seriesId") == plan.entity_id and record.get("seasonNumber") == shape.season

# --------------------------------- Music ---------------------------------------


def match_album(release_name: str, albums: Sequence[Dict[str, Any]],
                threshold: float = DEFAULT_TUNING.album_threshold) -> MatchResult:
    """
    Pick the album of an artist that a release name refers to.

    Short titles (one significant word or up to four characters) must
    appear verbatim in the normalised release name and score 1.0; longer
    titles score by the fraction of their words present in the release.
    """
    release_compact = normalize_compact(release_name)
    release_words = set(extract_title_words(release_name))
    best = NO_MATCH
    for album in albums:
        title = album.get("title") or ""
        words = set(extract_title_words(title))
        compact = normalize_compact(title)
        if len(words) <= 1 or len(compact) <= 4:
            score = 1.0 if compact and compact in release_compact else 0.0
        else:
            score = len(words & release_words) / len(words)
        if score > best.score:
            best = MatchResult(album, score)
    return best if best.score >= threshold else NO_MATCH


def find_track(tracks: Sequence[Dict[str, Any]], number: TrackNumber) -> Optional[Dict[str, Any]]:
    """Resolve a parsed number against an album's tracks (disc-aware, then absolute)."""
    if number.disc is not None:
        for t in tracks:
            if _as_int(t.get("mediumNumber")) == number.disc and _as_int(t.get("trackNumber")) == number.track:
                return t
    for t in tracks:
        if _as_int(t.get("absoluteTrackNumber")) == number.track:
            return t
    for t in tracks:
        if _as_int(t.get("trackNumber")) == number.track:
            return t
    return None


class MusicStrategy:
    """Lidarr: artist, then album, then one registration per track file."""

    kind = "artist"
    categories = ("music", "lidarr")
    extensions = MUSIC_EXTENSIONS

    def __init__(self, client: ArrClient, db: LidarrDatabase,
                 album_threshold: float = DEFAULT_TUNING.album_threshold) -> None:
        self.client = client
        self.db = db
        self.album_threshold = album_threshold
        self.log = client.log

    def load_candidates(self) -> List[Dict[str, Any]]:
        return self.client.get_list("artist")

    def title_of(self, artist: Dict[str, Any]) -> str:
        return artist.get("artistName") or ""

    def year_of(self, artist: Dict[str, Any]) -> Optional[int]:
        return None

    def release_year(self, job_name: str) -> Optional[int]:
        return None

    def threshold(self, tuning: MatchTuning) -> float:
        return tuning.artist_threshold

    def parse_release(self, job_name: str) -> Any:
        return job_name

    def plan(self, release: ReleaseRecord, parsed: Any, match: MatchResult) -> Optional[Plan]:
        artist = match.item
        name = self.title_of(artist)
        albums = self.client.get_list("album", artistId=artist["id"])
        album_match = match_album(release.job_name, albums, self.album_threshold)

        if not album_match:
            self.log.info("No matching album of %s found for: %s", name, release.job_name)
            return Plan(
                entity=artist,
                title=name,
                cooldown_key=(artist["id"],),
                search_command={"name": "ArtistSearch", "artistId": artist["id"]},
                search_label=name,
                context={"album": None, "tracks": []},
            )

        album = album_match.item
        tracks = self.client.get_list("track", albumId=album["id"])
        self.log.info('Matched album "%s" (score: %.2f)', album.get("title"), album_match.score)
        # Searches stay artist-wide; the album only scopes registration and queue cleanup
        return Plan(
            entity=artist,
            title=name,
            cooldown_key=(artist["id"],),
            search_command={"name": "ArtistSearch", "artistId": artist["id"]},
            search_label=name,
            satisfied=bool(tracks) and all(t.get("hasFile") for t in tracks),
            context={"album": album, "tracks": tracks},
        )

    def register(self, release: ReleaseRecord, plan: Plan, directory: str) -> str:
        album = plan.context["album"]
        if album is None:
            self.log.info("Media found for %s but no album matched, leaving it for the next cycle", plan.title)
            return "no_album_match"

        tracks = plan.context["tracks"]
        registered = failed = 0
        for path in list_media_files(directory, self.extensions):
            number = parse_track_number(os.path.basename(path))
            if number is None:
                self.log.debug("No track number in %s", path)
                continue
            track = find_track(tracks, number)
            if track is None or track.get("hasFile"):
                continue
            quality = infer_audio_quality(os.path.basename(path))
            try:
                file_id = self.db.register_track_file(
                    album_id=album["id"],
                    file_path=path,
                    track_ids=[track["id"]],
                    quality=quality,
                    scene_name=release.job_name,
                )
            except (sqlite3.Error, OSError) as e:
                self.log.error("Failed to register %s: %s", path, e)
                file_id = None
            if file_id is None:
                failed += 1
                continue
            registered += 1
            self.log.info("Registered %s - %s track %s: %s (%s)", plan.title, album.get("title"),
                          track.get("trackNumber"), os.path.basename(path), quality.name)
        plan.context["registered"] = registered
        if registered:
            return REGISTERED
        return "register_failed" if failed else "no_files_matched"

    def refresh(self, plan: Plan) -> bool:
        return self.client.trigger_command({"name": "RefreshArtist", "artistId": plan.entity_id})

    def queue_matches(self, plan: Plan, record: Dict[str, Any]) -> bool:
        album = plan.context.get("album")
        if album is not None and record.get("albumId") == album["id"]:
            return True
        return album is None and record.get("artistId") == plan.entity_id
