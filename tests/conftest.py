"""
Pytest fixtures for DavToArr tests
"""

import sqlite3

import pytest

from davtoarr_catalog import LidarrDatabase, SonarrDatabase
from davtoarr_clients import service_logger


class FakeClock:
    """Manually advanced clock for cooldown and scheduler tests"""

    def __init__(self, now=0.0):
        self.now = float(now)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeArrClient:
    """
    In-memory stand-in for ArrClient.

    ``responses`` maps ``"endpoint"`` or ``"endpoint?key=value"`` to the
    decoded JSON the manager would return.
    """

    def __init__(self, name="Radarr", responses=None, command_ok=True):
        self.name = name
        self.base_url = "http://arr.local"
        self.log = service_logger(name)
        self.responses = responses or {}
        self.command_ok = command_ok
        self.commands = []
        self.puts = []
        self.deletes = []

    def get(self, endpoint, **params):
        if params:
            key = endpoint + "?" + "&".join(f"{k}={v}" for k, v in sorted(params.items()))
            if key in self.responses:
                return self.responses[key]
        return self.responses.get(endpoint)

    def get_list(self, endpoint, **params):
        data = self.get(endpoint, **params)
        if isinstance(data, dict):
            data = data.get("records")
        return list(data or [])

    def put(self, endpoint, body, **params):
        self.puts.append((endpoint, body, params))
        return body

    def update_item(self, endpoint, item_id, data):
        return self.put(f"{endpoint}/{item_id}", data, moveFiles="false")

    def delete(self, endpoint, **params):
        self.deletes.append(endpoint)
        return True

    def trigger_command(self, command):
        self.commands.append(command)
        return self.command_ok

    def get_queue(self):
        return self.get_list("queue", pageSize=1000)

    def remove_from_queue(self, queue_id):
        return self.delete(f"queue/{queue_id}", removeFromClient="false", blocklist="false")

    def command_names(self):
        return [c["name"] for c in self.commands]


SONARR_SCHEMA = """
CREATE TABLE Series (Id INTEGER PRIMARY KEY, Title TEXT, Path TEXT);
CREATE TABLE Episodes (
    Id INTEGER PRIMARY KEY, SeriesId INTEGER, SeasonNumber INTEGER,
    EpisodeNumber INTEGER, EpisodeFileId INTEGER DEFAULT 0
);
CREATE TABLE EpisodeFiles (
    Id INTEGER PRIMARY KEY AUTOINCREMENT, SeriesId INTEGER, SeasonNumber INTEGER,
    RelativePath TEXT, Size INTEGER, DateAdded TEXT, SceneName TEXT, ReleaseGroup TEXT,
    Quality TEXT, Languages TEXT, MediaInfo TEXT, OriginalFilePath TEXT,
    IndexerFlags INTEGER, ReleaseType INTEGER
);
"""

LIDARR_SCHEMA = """
CREATE TABLE Artists (Id INTEGER PRIMARY KEY, ArtistMetadataId INTEGER, Path TEXT);
CREATE TABLE Albums (Id INTEGER PRIMARY KEY, ArtistMetadataId INTEGER, Title TEXT);
CREATE TABLE Tracks (Id INTEGER PRIMARY KEY, TrackFileId INTEGER DEFAULT 0);
CREATE TABLE TrackFiles (
    Id INTEGER PRIMARY KEY AUTOINCREMENT, AlbumId INTEGER, Path TEXT, Size INTEGER,
    Quality TEXT, SceneName TEXT, ReleaseGroup TEXT, DateAdded TEXT, Modified TEXT, MediaInfo TEXT
);
"""


@pytest.fixture
def clock():
    return FakeClock(1_000_000.0)


@pytest.fixture
def mount(tmp_path):
    """Empty content mount root"""
    root = tmp_path / "content"
    root.mkdir()
    return root


@pytest.fixture
def make_release(mount):
    """Create ``<mount>/<name>`` holding the given files (name -> size in bytes)"""

    def _make(name, files=None, root=None):
        base = (root or mount) / name
        base.mkdir(parents=True, exist_ok=True)
        for rel, size in (files or {}).items():
            path = base / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(b"\0" * size)
        return base

    return _make


@pytest.fixture
def series_path(tmp_path):
    path = tmp_path / "library" / "Show"
    path.mkdir(parents=True)
    return path


@pytest.fixture
def sonarr_db(tmp_path, series_path):
    """sonarr.db with one series (id 1) and season-1 episodes E01-E03 (ids 11-13)"""
    db_path = tmp_path / "sonarr.db"
    conn = sqlite3.connect(db_path)
    conn.executescript(SONARR_SCHEMA)
    conn.execute("INSERT INTO Series (Id, Title, Path) VALUES (1, 'Show', ?)", (str(series_path),))
    conn.executemany(
        "INSERT INTO Episodes (Id, SeriesId, SeasonNumber, EpisodeNumber, EpisodeFileId) VALUES (?, 1, 1, ?, 0)",
        [(11, 1), (12, 2), (13, 3)],
    )
    conn.commit()
    conn.close()
    db = SonarrDatabase(str(db_path))
    yield db
    db.close()


@pytest.fixture
def lidarr_db(tmp_path):
    """lidarr.db with artist 5 (metadata 7), albums 50/51 and tracks 500-502"""
    db_path = tmp_path / "lidarr.db"
    conn = sqlite3.connect(db_path)
    conn.executescript(LIDARR_SCHEMA)
    conn.execute("INSERT INTO Artists (Id, ArtistMetadataId, Path) VALUES (5, 7, '/music/Daft Punk')")
    conn.executemany("INSERT INTO Albums (Id, ArtistMetadataId, Title) VALUES (?, 7, ?)",
                     [(50, "Discovery"), (51, "Homework")])
    conn.executemany("INSERT INTO Tracks (Id, TrackFileId) VALUES (?, 0)", [(500,), (501,), (502,)])
    conn.commit()
    conn.close()
    db = LidarrDatabase(str(db_path))
    yield db
    db.close()


def query(db, sql, params=()):
    return [tuple(r) for r in db.connection.execute(sql, params).fetchall()]
