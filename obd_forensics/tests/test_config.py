"""Tests for obd_forensics.config."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from obd_forensics.config import ForensicsSettings, RefuelSettings


def test_defaults_select_simulation() -> None:
    settings = ForensicsSettings(_env_file=None)
    assert settings.is_simulation
    assert not settings.is_network
    assert settings.dry_run is False


@pytest.mark.parametrize(
    "port, network",
    [("192.168.0.10:35000", True), ("/dev/ttyUSB0", False), ("COM4", False), ("sim", False)],
)
def test_network_detection(port: str, network: bool) -> None:
    assert ForensicsSettings(obd_port=port, _env_file=None).is_network is network


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OBD_PORT", "10.0.0.2:35000")
    monkeypatch.setenv("TANK_CAPACITY", "62")
    monkeypatch.setenv("DRY_RUN", "true")
    settings = ForensicsSettings(_env_file=None)
    assert settings.obd_port == "10.0.0.2:35000"
    assert settings.tank_capacity == 62.0
    assert settings.dry_run is True


def test_derived_analysis_settings() -> None:
    settings = ForensicsSettings(
        _env_file=None,
        tank_capacity=40.0,
        cranking_wait_timeout_s=30.0,
        parasitic_window_minutes=60.0,
        battery_capacity_ah=70.0,
    )
    assert settings.refuel_settings().tank_capacity == 40.0
    assert settings.cranking_settings().wait_timeout_s == 30.0
    draw = settings.parasitic_settings()
    assert draw.window_minutes == 60.0
    assert draw.battery_capacity_ah == 70.0


def test_analysis_settings_are_frozen_and_validated() -> None:
    settings = RefuelSettings()
    with pytest.raises(ValidationError):
        settings.tank_capacity = 10.0
    with pytest.raises(ValidationError):
        RefuelSettings(tank_capacity=0)
