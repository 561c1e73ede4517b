"""
Tests for configuration loading
"""

import pytest
from pydantic import ValidationError

from adaptive_alarm.config import EngineConfig, FitbitAuth, Timings


def test_defaults():
    cfg = EngineConfig(fitbit=FitbitAuth())
    assert cfg.timezone == "Asia/Tokyo"
    assert cfg.zone.key == "Asia/Tokyo"
    assert cfg.pan_enabled is True
    assert cfg.output_format == "mp3"
    assert cfg.timings.render_timeout_s == 30.0
    assert cfg.timings.verifier_ttl_s == 600


def test_unknown_timezone_rejected():
    with pytest.raises(ValidationError):
        EngineConfig(fitbit=FitbitAuth(), timezone="Mars/Olympus_Mons")


def test_render_timeout_bounds():
    with pytest.raises(ValidationError):
        Timings(render_timeout_s=0)


def test_output_format_restricted():
    with pytest.raises(ValidationError):
        EngineConfig(fitbit=FitbitAuth(), output_format="flac")


def test_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("FITBIT_CLIENT_ID", "env-client")
    monkeypatch.setenv("FITBIT_CLIENT_SECRET", "env-secret")
    monkeypatch.setenv("ALARM_TIMEZONE", "Europe/Berlin")
    monkeypatch.setenv("ALARM_PAN_ENABLED", "off")
    monkeypatch.setenv("ALARM_RENDER_TIMEOUT_S", "45")
    monkeypatch.setenv("ALARM_SOUNDS_DIR", str(tmp_path))
    monkeypatch.setenv("DATABASE_URL", "sqlite://")

    cfg = EngineConfig.from_env()

    assert cfg.fitbit.client_id == "env-client"
    assert cfg.fitbit.client_secret == "env-secret"
    assert cfg.timezone == "Europe/Berlin"
    assert cfg.pan_enabled is False
    assert cfg.timings.render_timeout_s == 45.0
    assert cfg.sounds_dir == str(tmp_path)
    assert cfg.database_url == "sqlite://"
