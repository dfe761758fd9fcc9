"""
Tests for the placeholder mirroring tool
"""

import pytest

import make_placeholders


class TestMirror:
    """Tests for mirroring release trees"""

    def test_mirror_source(self, tmp_path, mount, make_release):
        make_release("Movie.2023.1080p", {"movie.mkv": 100, "movie.nfo": 5})
        make_release("Album-FLAC", {"CD1/01 - Song.flac": 50})
        make_release("Empty.Release")
        out = tmp_path / "out"

        count = make_placeholders.mirror_source(mount, out)

        assert count == 2
        assert (out / "Movie.2023.1080p" / "movie.mkv").stat().st_size == 0
        assert not (out / "Movie.2023.1080p" / "movie.nfo").exists()
        assert (out / "Album-FLAC" / "CD1" / "01 - Song.flac").exists()
        assert (out / "Empty.Release").is_dir()

    def test_main_with_source(self, tmp_path, mount, make_release):
        make_release("Show.S01E01", {"e.mkv": 1})
        out = tmp_path / "mirror"
        assert make_placeholders.main(["--source", str(mount), "--out", str(out)]) == 1
        assert (out / "Show.S01E01" / "e.mkv").exists()

    def test_multiple_sources_get_subfolders(self, tmp_path, make_release):
        movies = tmp_path / "movies"
        tv = tmp_path / "tv"
        make_release("Movie.2023", {"m.mkv": 1}, root=movies)
        make_release("Show.S01", {"e.mkv": 1}, root=tv)
        out = tmp_path / "mirror"
        make_placeholders.main(["--source", str(movies), "--source", str(tv), "--out", str(out)])
        assert (out / "movies" / "Movie.2023" / "m.mkv").exists()
        assert (out / "tv" / "Show.S01" / "e.mkv").exists()

    def test_use_config(self, tmp_path, mount, make_release, monkeypatch):
        make_release("Movie.2023", {"m.mkv": 1})
        config = tmp_path / "config.yaml"
        config.write_text(f"radarr:\n  enabled: true\n  mount_path: '{mount}'\n", encoding="utf-8")
        monkeypatch.delenv("RADARR_MOUNT_PATH", raising=False)
        out = tmp_path / "mirror"
        make_placeholders.main(["--use-config", "--config", str(config), "--out", str(out)])
        assert (out / "Movie.2023" / "m.mkv").exists()

    def test_no_sources(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        with pytest.raises(SystemExit) as exc:
            make_placeholders.main(["--out", str(tmp_path / "out")])
        assert exc.value.code == 2
