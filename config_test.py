"""Tests for config.py."""

from __future__ import annotations

from pathlib import Path

import json

import pytest

import config
from config import Channel, ChannelCatalog


def _write_channels(path: Path, entries: object) -> Path:
    path.write_text(json.dumps(entries))
    return path


class TestLoadSettings:
    def test_defaults_when_missing(self, tmp_path):
        settings = config.load_settings(tmp_path / "settings.json")
        assert settings["port"] == 7677
        assert settings["output_dir"] == "output"
        assert settings["channels_file"] == "channels.json"
        assert settings["grace_window_secs"] == 120
        assert settings["short_idle_timeout_secs"] == 120
        assert settings["long_idle_timeout_secs"] == 600
        assert settings["reap_interval_secs"] == 30
        assert settings["cold_wait_secs"] == 15
        assert settings["warm_wait_secs"] == 3

    def test_file_values_override_defaults(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"port": 9000, "long_idle_timeout_secs": 60}))
        settings = config.load_settings(path)
        assert settings["port"] == 9000
        assert settings["long_idle_timeout_secs"] == 60
        assert settings["short_idle_timeout_secs"] == 120


class TestResolvePath:
    def test_relative_to_base(self, tmp_path):
        assert config.resolve_path("output", tmp_path) == (tmp_path / "output").resolve()

    def test_absolute_kept(self, tmp_path):
        assert config.resolve_path(str(tmp_path / "x"), Path("/elsewhere")) == tmp_path / "x"


class TestLoadChannels:
    def test_loads_entries(self, tmp_path):
        path = _write_channels(
            tmp_path / "channels.json",
            [
                {"channel": "news", "url": "http://src/news"},
                {"channel": " sports ", "url": "http://src/sports"},
            ],
        )
        assert config.load_channels(path) == [
            Channel("news", "http://src/news"),
            Channel("sports", "http://src/sports"),
        ]

    @pytest.mark.parametrize("name", ["", "my_show", "a.b", "a/b", "a\\b"])
    def test_skips_unattributable_names(self, tmp_path, name):
        path = _write_channels(
            tmp_path / "channels.json",
            [{"channel": name, "url": "http://src/x"}, {"channel": "ok", "url": "http://src/ok"}],
        )
        assert [c.name for c in config.load_channels(path)] == ["ok"]

    def test_skips_missing_url(self, tmp_path):
        path = _write_channels(tmp_path / "channels.json", [{"channel": "news"}])
        assert config.load_channels(path) == []

    def test_rejects_non_list(self, tmp_path):
        path = _write_channels(tmp_path / "channels.json", {"news": "http://src/news"})
        with pytest.raises(ValueError, match="expected a JSON list"):
            config.load_channels(path)

    def test_rejects_non_object_entry(self, tmp_path):
        path = _write_channels(tmp_path / "channels.json", ["news"])
        with pytest.raises(ValueError, match="must be objects"):
            config.load_channels(path)

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "channels.json"
        path.write_text("not json")
        with pytest.raises(ValueError):
            config.load_channels(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            config.load_channels(tmp_path / "missing.json")


class TestChannelCatalog:
    def test_resolve(self):
        catalog = ChannelCatalog([Channel("news", "http://a"), Channel("sports", "http://b")])
        assert catalog.resolve("news") == "http://a"
        assert catalog.resolve("nope") is None
        assert "sports" in catalog
        assert "nope" not in catalog
        assert len(catalog) == 2

    def test_first_match_wins(self):
        catalog = ChannelCatalog([Channel("news", "http://first"), Channel("news", "http://second")])
        assert catalog.resolve("news") == "http://first"
