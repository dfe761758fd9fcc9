"""
Tests for configuration, scheduling and the manifest
"""

import json
import logging

import pytest
import yaml

from unittest.mock import MagicMock

from conftest import FakeClock
from davtoarr_clients import ReleaseRecord
from davtoarr_reconcile import ManifestRec, MusicStrategy
import davtoarr_runner as runner


def valid_config(**overrides):
    cfg = runner.load_config(path="/nonexistent/config.yaml", environ={})
    cfg["nzbdav"].update(url="http://nzbdav:3000", api_key="k")
    cfg["radarr"].update(enabled=True, url="http://radarr:7878", api_key="k")
    for key, value in overrides.items():
        cfg[key] = value
    return cfg


class TestLoadConfig:
    """Tests for config files, secrets and environment overrides"""

    def test_defaults(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        cfg = runner.load_config(environ={})
        assert cfg["scheduler"]["poll_interval_seconds"] == 300
        assert cfg["sonarr"]["mount_path"] == "/mnt/nzbdav/content/tv"
        assert cfg["lidarr"]["categories"] == ["music", "lidarr"]
        assert cfg["dry_run"] is False

    def test_config_and_secrets_merged(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "config.yaml").write_text(yaml.safe_dump({
            "radarr": {"enabled": True, "url": "http://radarr:7878"},
            "scheduler": {"poll_interval_seconds": 120},
        }), encoding="utf-8")
        (tmp_path / "secrets.yaml").write_text(yaml.safe_dump({"radarr": {"api_key": "secret"}}), encoding="utf-8")

        cfg = runner.load_config(environ={})

        assert cfg["radarr"]["url"] == "http://radarr:7878"
        assert cfg["radarr"]["api_key"] == "secret"
        assert cfg["radarr"]["mount_path"] == "/mnt/nzbdav/content/movies"
        assert cfg["scheduler"]["poll_interval_seconds"] == 120
        assert cfg["scheduler"]["audit_interval_seconds"] == 3600

    def test_example_used_when_no_config(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "config.example.yaml").write_text("dry_run: true\n", encoding="utf-8")
        assert runner.load_config(environ={})["dry_run"] is True

    def test_explicit_path(self, tmp_path):
        path = tmp_path / "conf" / "davtoarr.yaml"
        path.parent.mkdir()
        path.write_text("nzbdav:\n  history_limit: 10\n", encoding="utf-8")
        assert runner.load_config(str(path), environ={})["nzbdav"]["history_limit"] == 10

    def test_environment_overrides(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        cfg = runner.load_config(environ={
            "SONARR_ENABLED": "true",
            "SONARR_DB_PATH": "/config/sonarr.db",
            "RADARR_ENABLED": "false",
            "POLL_INTERVAL_SECONDS": "90",
            "SEARCH_COOLDOWN_HOURS": "1.5",
            "DRY_RUN": "true",
            "LOG_LEVEL": "DEBUG",
        })
        assert cfg["sonarr"]["enabled"] is True
        assert cfg["sonarr"]["db_path"] == "/config/sonarr.db"
        assert cfg["radarr"]["enabled"] is False
        assert cfg["scheduler"]["poll_interval_seconds"] == 90
        assert cfg["scheduler"]["search_cooldown_hours"] == 1.5
        assert cfg["dry_run"] is True
        assert cfg["logging"]["level"] == "DEBUG"

    def test_invalid_environment_value_ignored(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        cfg = runner.load_config(environ={"POLL_INTERVAL_SECONDS": "often"})
        assert cfg["scheduler"]["poll_interval_seconds"] == 300

    def test_cfg_get(self):
        cfg = {"a": {"b": {"c": 1}}, "x": None}
        assert runner.cfg_get(cfg, "a.b.c") == 1
        assert runner.cfg_get(cfg, "a.missing", "d") == "d"
        assert runner.cfg_get(cfg, "x.y", 5) == 5


class TestValidateConfig:
    """Tests for fatal configuration problems"""

    def test_valid(self):
        assert runner.validate_config(valid_config()) == []

    def test_nothing_enabled(self):
        cfg = valid_config()
        cfg["radarr"]["enabled"] = False
        assert any("No services enabled" in p for p in runner.validate_config(cfg))

    def test_missing_nzbdav(self):
        cfg = valid_config()
        cfg["nzbdav"]["api_key"] = None
        assert any("NzbDAV" in p for p in runner.validate_config(cfg))

    def test_enabled_service_needs_credentials(self):
        cfg = valid_config()
        cfg["radarr"]["api_key"] = ""
        assert runner.validate_config(cfg) == ["Radarr is enabled but url or api_key is missing."]

    def test_database_services_need_db_path(self):
        cfg = valid_config()
        cfg["lidarr"].update(enabled=True, url="http://lidarr", api_key="k")
        assert runner.validate_config(cfg) == ["Lidarr is enabled but db_path is missing."]

    def test_main_exits_on_invalid_config(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        for var in ("RADARR_ENABLED", "SONARR_ENABLED", "LIDARR_ENABLED"):
            monkeypatch.delenv(var, raising=False)
        with pytest.raises(SystemExit) as exc:
            runner.main(["--config", str(tmp_path / "missing.yaml")])
        assert exc.value.code == 1

    def test_poll_interval_floor(self):
        cfg = valid_config()
        cfg["scheduler"]["poll_interval_seconds"] = 10
        assert runner.poll_interval(cfg) == runner.MIN_POLL_INTERVAL
        cfg["scheduler"]["poll_interval_seconds"] = 600
        assert runner.poll_interval(cfg) == 600

    def test_poll_floor_is_minutes(self):
        """Sub-two-minute intervals are raised to the floor with a warning"""
        cfg = valid_config()
        cfg["scheduler"]["poll_interval_seconds"] = 90
        logger = MagicMock()
        assert runner.MIN_POLL_INTERVAL >= 120
        assert runner.poll_interval(cfg, logger) == runner.MIN_POLL_INTERVAL
        logger.warning.assert_called_once()


class TestBuildServices:
    """Tests for wiring enabled categories"""

    def test_all_enabled(self, tmp_path):
        cfg = valid_config(matching={"album_threshold": 0.8})
        cfg["sonarr"].update(enabled=True, url="http://sonarr", api_key="k", db_path=str(tmp_path / "s.db"))
        cfg["lidarr"].update(enabled=True, url="http://lidarr", api_key="k", db_path=str(tmp_path / "l.db"))

        services = runner.build_services(cfg, dry_run=True)

        assert [r.name for r in services.reconcilers] == ["Radarr", "Sonarr", "Lidarr"]
        assert [a.source.name for a in services.auditors] == ["Radarr", "Sonarr", "Lidarr"]
        assert len(services.databases) == 2
        assert all(c.dry_run for c in services.clients)
        lidarr = services.reconcilers[2]
        assert isinstance(lidarr.strategy, MusicStrategy)
        assert lidarr.strategy.album_threshold == 0.8
        assert lidarr.client.api_version == "v1"
        assert lidarr.categories == ["music", "lidarr"]
        cooldowns = {id(r.cooldown) for r in services.reconcilers}
        assert len(cooldowns) == 3
        services.close()

    def test_only_radarr(self):
        services = runner.build_services(valid_config())
        assert [r.name for r in services.reconcilers] == ["Radarr"]
        assert services.reconcilers[0].cooldown.cooldown_seconds == 24 * 3600
        assert services.databases == []


def fake_reconciler(name, records=None, error=None):
    reconciler = MagicMock()
    reconciler.name = name
    if error:
        reconciler.process_history.side_effect = error
    else:
        reconciler.process_history.return_value = records or []
    return reconciler


class TestPollScheduler:
    """Tests for the Idle -> Polling -> Idle cycle"""

    def _scheduler(self, reconcilers, auditors=(), clock=None, skip_audit=False):
        history = MagicMock()
        history.fetch_completed_releases.return_value = [ReleaseRecord("Movie.2023", "movies")]
        scheduler = runner.PollScheduler(history, reconcilers, list(auditors), poll_interval=300,
                                         audit_interval=3600, clock=clock or FakeClock(),
                                         skip_audit=skip_audit)
        return history, scheduler

    def test_history_read_once_per_tick(self):
        first, second = fake_reconciler("Radarr"), fake_reconciler("Sonarr")
        history, scheduler = self._scheduler([first, second])
        scheduler.tick()
        history.fetch_completed_releases.assert_called_once()
        snapshot = history.fetch_completed_releases.return_value
        first.process_history.assert_called_once_with(snapshot)
        second.process_history.assert_called_once_with(snapshot)
        assert scheduler.state == runner.PollScheduler.IDLE

    def test_failing_reconciler_isolated(self):
        ok = ManifestRec("Sonarr", "Show.S01E01", "registered")
        history, scheduler = self._scheduler([
            fake_reconciler("Radarr", error=RuntimeError("boom")),
            fake_reconciler("Sonarr", [ok]),
        ])
        assert scheduler.tick() == [ok]
        assert scheduler.tick() == [ok]
        assert scheduler.cycles == 2

    def test_audit_interval(self):
        clock = FakeClock()
        auditor = MagicMock()
        history, scheduler = self._scheduler([fake_reconciler("Radarr")], [auditor], clock=clock)

        scheduler.tick()
        assert auditor.run.call_count == 1

        clock.advance(1800)
        scheduler.tick()
        assert auditor.run.call_count == 1

        clock.advance(1800)
        scheduler.tick()
        assert auditor.run.call_count == 2

    def test_skip_audit(self):
        auditor = MagicMock()
        history, scheduler = self._scheduler([fake_reconciler("Radarr")], [auditor], skip_audit=True)
        scheduler.tick()
        auditor.run.assert_not_called()

    def test_failing_auditor_isolated(self):
        broken, healthy = MagicMock(), MagicMock()
        broken.run.side_effect = RuntimeError("db locked")
        history, scheduler = self._scheduler([fake_reconciler("Radarr")], [broken, healthy])
        scheduler.tick()
        healthy.run.assert_called_once()
        assert scheduler.last_audit is not None

    def test_run_forever_stops(self):
        history, scheduler = self._scheduler([fake_reconciler("Radarr")])
        stop = MagicMock()
        stop.is_set.side_effect = [False, True]
        scheduler.run_forever(stop)
        history.fetch_completed_releases.assert_called_once()
        stop.wait.assert_called_once_with(300)


class TestManifest:
    """Tests for the cycle manifest"""

    def test_last_record_per_release_wins(self, tmp_path):
        records = [
            ManifestRec("Radarr", "Movie.2023", "search_triggered"),
            ManifestRec("Sonarr", "Show.S01E01", "registered", entity_id=1),
            ManifestRec("Radarr", "Movie.2023", "path_updated", path="/mnt/x"),
        ]
        out = tmp_path / "out" / "_manifest.json"

        payload = runner.write_manifest_and_summary(records, out, logging.getLogger("test"))

        assert payload["total"] == 2
        assert payload["summary"] == {"path_updated": 1, "registered": 1}
        saved = json.loads(out.read_text(encoding="utf-8"))
        assert saved["records"][0]["decision"] == "path_updated"
        assert saved["records"][0]["path"] == "/mnt/x"

    def test_cycle_summary(self):
        records = [ManifestRec("Radarr", "a", "no_match"), ManifestRec("Radarr", "b", "no_match")]
        assert runner.log_cycle_summary(records, logging.getLogger("test")) == {"no_match": 2}


class TestSetupLogger:
    """Tests for logger setup"""

    def test_handlers_replaced(self, tmp_path):
        cfg = {"logging": {"level": "debug", "log_file": str(tmp_path / "logs" / "d.log")}}
        runner.setup_logger(cfg)
        logger = runner.setup_logger(cfg)
        assert len(logger.handlers) == 2
        assert logger.level == logging.DEBUG
        assert logger.propagate is False
        assert (tmp_path / "logs").is_dir()
        for h in list(logger.handlers):
            h.close()
            logger.removeHandler(h)
