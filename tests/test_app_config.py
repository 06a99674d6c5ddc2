"""
Tests for app.config - Configuration loading functionality
Tests config loading from JSON and environment variables.
"""

from __future__ import annotations

import json
import os
from datetime import timedelta
from pathlib import Path
from unittest.mock import patch

from app.config import Config, _get, _resolve_base_dir, load_config


class TestResolveBaseDir:
    """Tests for _resolve_base_dir function"""

    def test_resolve_base_dir_normal(self):
        """Test _resolve_base_dir in normal (non-frozen) mode"""
        with patch("sys.frozen", False, create=True):
            result = _resolve_base_dir()
            assert isinstance(result, Path)
            assert (result / "app" / "config.py").exists()

    def test_resolve_base_dir_frozen(self, tmp_path):
        """Test _resolve_base_dir in frozen (PyInstaller) mode"""
        exe = tmp_path / "ConnSentry.exe"
        with patch("sys.frozen", True, create=True):
            with patch("sys.executable", str(exe)):
                assert _resolve_base_dir() == tmp_path


class TestGet:
    """Tests for _get helper function"""

    def test_get_from_env_int(self):
        """Test _get retrieves integer from environment"""
        with patch.dict(os.environ, {"CONNSENTRY_KEY": "200"}):
            assert _get({"key": 100}, "key", 50) == 200

    def test_get_from_env_float(self):
        """Test _get retrieves float from environment"""
        with patch.dict(os.environ, {"CONNSENTRY_KEY": "2.5"}):
            assert _get({"key": 1.5}, "key", 1.0) == 2.5

    def test_get_from_env_string(self):
        """Test _get retrieves string from environment"""
        with patch.dict(os.environ, {"CONNSENTRY_KEY": "override"}):
            assert _get({"key": "default"}, "key", "fallback") == "override"

    def test_get_bad_env_number_falls_back_to_default(self):
        """Test that an unparseable numeric env var is ignored"""
        with patch.dict(os.environ, {"CONNSENTRY_KEY": "fast"}):
            assert _get({"key": 100}, "key", 50) == 50

    def test_get_from_json(self):
        """Test _get uses the JSON value when no env var is set"""
        with patch.dict(os.environ, {}, clear=True):
            assert _get({"key": 7}, "key", 1) == 7

    def test_get_default(self):
        """Test _get falls back to the default"""
        with patch.dict(os.environ, {}, clear=True):
            assert _get({}, "key", "x") == "x"


class TestLoadConfig:
    """Tests for load_config function"""

    def test_defaults(self, tmp_path, monkeypatch):
        """Test that an empty base dir gives the documented defaults"""
        monkeypatch.setenv("CONNSENTRY_BASE_DIR", str(tmp_path))
        cfg = load_config()

        assert isinstance(cfg, Config)
        assert cfg.base_dir == tmp_path
        assert cfg.db_path == tmp_path / "data" / "network_logs.db"
        assert cfg.poll_interval_ms == 2000
        assert cfg.retention_max_age == timedelta(minutes=30)
        assert cfg.retention_interval == timedelta(minutes=5)
        assert cfg.retention_initial_delay == timedelta(seconds=60)
        assert cfg.geo_timeout_sec == 3.0
        assert cfg.port == 8766
        assert cfg.log_level == "WARNING"

    def test_json_file_overrides_defaults(self, tmp_path, monkeypatch):
        """Test values from data/config.json"""
        (tmp_path / "data").mkdir()
        (tmp_path / "data" / "config.json").write_text(
            json.dumps({"poll_interval_ms": 500, "retention_max_age_min": 10.0, "log_level": "debug"}),
            encoding="utf-8",
        )
        monkeypatch.setenv("CONNSENTRY_BASE_DIR", str(tmp_path))

        cfg = load_config()

        assert cfg.poll_interval_ms == 500
        assert cfg.retention_max_age == timedelta(minutes=10)
        assert cfg.log_level == "DEBUG"

    def test_env_beats_json(self, tmp_path, monkeypatch):
        """Test that environment variables win over the file"""
        (tmp_path / "data").mkdir()
        (tmp_path / "data" / "config.json").write_text(json.dumps({"port": 9000}), encoding="utf-8")
        monkeypatch.setenv("CONNSENTRY_BASE_DIR", str(tmp_path))
        monkeypatch.setenv("CONNSENTRY_PORT", "9100")

        assert load_config().port == 9100

    def test_broken_json_uses_defaults(self, tmp_path, monkeypatch):
        """Test that a corrupt config file is ignored"""
        (tmp_path / "data").mkdir()
        (tmp_path / "data" / "config.json").write_text("{not json", encoding="utf-8")
        monkeypatch.setenv("CONNSENTRY_BASE_DIR", str(tmp_path))

        assert load_config().poll_interval_ms == 2000

    def test_non_dict_json_uses_defaults(self, tmp_path, monkeypatch):
        (tmp_path / "data").mkdir()
        (tmp_path / "data" / "config.json").write_text("[1, 2, 3]", encoding="utf-8")
        monkeypatch.setenv("CONNSENTRY_BASE_DIR", str(tmp_path))

        assert load_config().live_events_max == 1000

    def test_non_positive_numbers_fall_back_to_defaults(self, tmp_path, monkeypatch):
        """Test that zero or negative intervals and sizes are rejected"""
        (tmp_path / "data").mkdir()
        (tmp_path / "data" / "config.json").write_text(
            json.dumps({"poll_interval_ms": 0, "retention_interval_min": -1, "live_events_max": 0}),
            encoding="utf-8",
        )
        monkeypatch.setenv("CONNSENTRY_BASE_DIR", str(tmp_path))

        cfg = load_config()

        assert cfg.poll_interval_ms == 2000
        assert cfg.retention_interval == timedelta(minutes=5)
        assert cfg.live_events_max == 1000

    def test_zero_env_interval_falls_back_to_default(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CONNSENTRY_BASE_DIR", str(tmp_path))
        monkeypatch.setenv("CONNSENTRY_POLL_INTERVAL_MS", "0")
        assert load_config().poll_interval_ms == 2000

    def test_non_numeric_json_value_falls_back_to_default(self, tmp_path, monkeypatch):
        (tmp_path / "data").mkdir()
        (tmp_path / "data" / "config.json").write_text(json.dumps({"geo_timeout_sec": "soon"}), encoding="utf-8")
        monkeypatch.setenv("CONNSENTRY_BASE_DIR", str(tmp_path))
        assert load_config().geo_timeout_sec == 3.0

    def test_numeric_strings_in_json_are_coerced(self, tmp_path, monkeypatch):
        (tmp_path / "data").mkdir()
        (tmp_path / "data" / "config.json").write_text(json.dumps({"poll_interval_ms": "500"}), encoding="utf-8")
        monkeypatch.setenv("CONNSENTRY_BASE_DIR", str(tmp_path))
        assert load_config().poll_interval_ms == 500

    def test_zero_initial_delay_is_allowed(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CONNSENTRY_BASE_DIR", str(tmp_path))
        monkeypatch.setenv("CONNSENTRY_RETENTION_INITIAL_DELAY_SEC", "0")
        assert load_config().retention_initial_delay == timedelta(0)

    def test_out_of_range_port_falls_back_to_default(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CONNSENTRY_BASE_DIR", str(tmp_path))
        monkeypatch.setenv("CONNSENTRY_PORT", "70000")
        assert load_config().port == 8766
