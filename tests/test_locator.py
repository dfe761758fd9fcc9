"""
Tests for the filesystem locator
"""

import os

from davtoarr_locator import (
    AUDIO_EXTENSIONS,
    VIDEO_EXTENSIONS,
    find_actual_path,
    is_sample,
    list_media_files,
    numbered_duplicates,
)


class TestMediaFiles:
    """Tests for media enumeration helpers"""

    def test_recursive_and_sorted(self, make_release):
        release = make_release("Release", {"b.mkv": 1, "Sub/a.mkv": 1, "notes.nfo": 1, "C.MP4": 1})
        files = [os.path.relpath(p, release) for p in list_media_files(str(release), VIDEO_EXTENSIONS)]
        assert files == ["b.mkv", "C.MP4", os.path.join("Sub", "a.mkv")]

    def test_extension_filter(self, make_release):
        release = make_release("Album", {"01 - Song.flac": 1, "cover.jpg": 1})
        assert list_media_files(str(release), VIDEO_EXTENSIONS) == []
        assert len(list_media_files(str(release), AUDIO_EXTENSIONS)) == 1

    def test_is_sample(self):
        assert is_sample("/x/movie-sample.mkv")
        assert is_sample("/x/Sample.mkv")
        assert not is_sample("/x/Sampler.Show.S01E01.mkv")


class TestNumberedDuplicates:
    """Tests for retry directory detection"""

    def test_order_and_filter(self):
        dirs = ["Release", "Release (2)", "Release (10)", "Release (1)", "Other (3)", "Release(4)"]
        assert numbered_duplicates("Release", dirs) == [(10, "Release (10)"), (2, "Release (2)")]

    def test_compact_comparison(self):
        assert numbered_duplicates("Movie.Title.2023", ["movie title 2023 (2)"]) == [(2, "movie title 2023 (2)")]


class TestFindActualPath:
    """Tests for find_actual_path"""

    def test_exact_match(self, mount, make_release):
        release = make_release("Movie.Title.2023.1080p.WEBDL-LAMA", {"movie.mkv": 10})
        assert find_actual_path("Movie.Title.2023.1080p.WEBDL-LAMA", str(mount)) == str(release)

    def test_highest_duplicate_with_media(self, mount, make_release):
        """Release, Release (2) empty, Release (3) with media -> Release (3)"""
        make_release("Release")
        make_release("Release (2)")
        third = make_release("Release (3)", {"movie.mkv": 10})
        assert find_actual_path("Release", str(mount)) == str(third)

    def test_duplicate_without_media_skipped(self, mount, make_release):
        second = make_release("Release (2)", {"movie.mkv": 10})
        make_release("Release (3)", {"movie.nfo": 10})
        assert find_actual_path("Release", str(mount)) == str(second)

    def test_exact_with_media_wins_over_duplicates(self, mount, make_release):
        exact = make_release("Release", {"movie.mkv": 10})
        make_release("Release (2)", {"movie.mkv": 10})
        assert find_actual_path("Release", str(mount)) == str(exact)

    def test_fuzzy_match(self, mount, make_release):
        renamed = make_release("Movie Title (2023)", {"Movie Title.mkv": 10})
        make_release("Other Film (2023)", {"other.mkv": 10})
        assert find_actual_path("Movie.Title.2023.1080p.WEBDL-LAMA", str(mount)) == str(renamed)

    def test_fuzzy_requires_media(self, mount, make_release):
        make_release("Movie Title (2023)", {"readme.txt": 10})
        assert find_actual_path("Movie.Title.2023.1080p.WEBDL-LAMA", str(mount)) is None

    def test_extension_set_respected(self, mount, make_release):
        make_release("Artist - Album", {"01 - Song.flac": 10})
        assert find_actual_path("Artist - Album", str(mount), VIDEO_EXTENSIONS) is None

    def test_missing_mount(self, tmp_path):
        assert find_actual_path("Release", str(tmp_path / "nope")) is None

    def test_unreadable_mount_is_no_match(self, mount, monkeypatch):
        def _boom(path):
            raise PermissionError("denied")

        monkeypatch.setattr(os, "scandir", _boom)
        assert find_actual_path("Release", str(mount)) is None
