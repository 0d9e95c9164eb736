"""
tests/test_config.py — PulseConfig loading and validation.

Runs with:  poetry run pytest tests/test_config.py -v
"""
from __future__ import annotations

import pytest
from pydantic import ValidationError

from fastapi_pulse.config import PulseConfig


class TestPulseConfig:
    def test_defaults(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)  # no stray .env
        config = PulseConfig()

        assert config.storage_backend == "sqlite"
        assert config.table_prefix == "pulse"
        assert config.probe_min_timeout_ms == 3000
        assert config.probe_max_timeout_ms == 15000
        assert config.api_path == "/pulse"

    def test_env_prefix(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("PULSE_STORAGE_BACKEND", "memory")
        monkeypatch.setenv("PULSE_RECONCILE_INTERVAL_SECONDS", "5")
        monkeypatch.setenv("PULSE_WEBHOOK_TIMEOUT_SECONDS", "2.5")

        config = PulseConfig()

        assert config.storage_backend == "memory"
        assert config.reconcile_interval_seconds == 5.0
        assert config.webhook_timeout_seconds == 2.5

    def test_unknown_backend_rejected(self):
        with pytest.raises(ValidationError):
            PulseConfig(storage_backend="redis")

    @pytest.mark.parametrize("prefix", ["pulse-x", "1abc", "drop table", ""])
    def test_table_prefix_must_be_identifier(self, prefix):
        with pytest.raises(ValidationError):
            PulseConfig(table_prefix=prefix)

    @pytest.mark.parametrize(
        "raw, expected",
        [("monitor", "/monitor"), ("/monitor/", "/monitor"), ("/", "/pulse")],
    )
    def test_api_path_normalised(self, raw, expected):
        assert PulseConfig(api_path=raw).api_path == expected

    def test_runtime_instances_not_serialised(self):
        config = PulseConfig(storage_backend="memory")
        config.storage_instance = object()
        assert "storage_instance" not in config.model_dump()
