"""Runtime configuration via environment variables.

Uses pydantic-settings so every field can be overridden with an env
var.  Simulation is the zero-hardware default.

Note: ``env_prefix`` is empty, so field names map directly to env vars
(e.g. ``OBD_PORT``, ``STFT_WARNING_THRESHOLD``).  Each analysis session
takes a frozen snapshot of its own settings (``refuel_settings()`` and
friends) so edits made while a session runs never leak into it.
"""

from __future__ import annotations

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings


class RefuelSettings(BaseModel):
    """Fuel-audit thresholds, frozen for the lifetime of one session."""

    model_config = {"frozen": True}

    tank_capacity: float = Field(default=50.0, gt=0, description="Litres")
    monitoring_distance_km: float = Field(default=5.0, gt=0)
    stft_warning_threshold: float = Field(default=15.0, ge=0)
    stft_critical_threshold: float = Field(default=25.0, ge=0)
    anomaly_duration_warning_s: float = Field(default=30.0, ge=0)
    anomaly_duration_critical_s: float = Field(default=60.0, ge=0)
    refuel_detect_delta: float = Field(
        default=5.0,
        description="Fuel-level rise (percent points) that counts as a refuel",
    )
    start_speed_kmh: float = Field(
        default=5.0,
        description="Speed that starts monitoring after a confirmed refuel",
    )
    min_moving_speed_kmh: float = Field(
        default=3.0,
        description="Below this speed no distance is accumulated",
    )
    max_tick_gap_s: float = Field(
        default=10.0,
        description="Longest tick interval credited to distance integration",
    )
    max_consecutive_failures: int = Field(default=5, ge=1)


class CrankingSettings(BaseModel):
    """Cranking burst capture parameters."""

    model_config = {"frozen": True}

    sample_interval_s: float = Field(default=0.1, gt=0, description="10 Hz")
    baseline_samples: int = Field(default=10, ge=1)
    crank_drop_volts: float = Field(default=1.0, gt=0)
    settle_duration_ms: int = Field(default=2000, gt=0)
    settle_tolerance_volts: float = Field(default=0.15, gt=0)
    min_sag_samples: int = Field(default=5, ge=1)
    wait_timeout_s: float = Field(default=120.0, gt=0)
    max_capture_ms: int = Field(default=20000, gt=0)
    max_consecutive_failures: int = Field(default=10, ge=1)


class ParasiticDrawSettings(BaseModel):
    """Parasitic draw long-monitor parameters."""

    model_config = {"frozen": True}

    sample_interval_s: float = Field(default=10.0, gt=0)
    window_minutes: float = Field(default=30.0, gt=0)
    drain_threshold_mv_per_min: float = Field(
        default=30.0,
        description="Instantaneous drain rate that marks an anomaly window",
    )
    min_anomaly_window_s: float = Field(default=60.0, ge=0)
    battery_capacity_ah: float = Field(default=60.0, gt=0)
    max_consecutive_failures: int = Field(default=5, ge=1)


class ForensicsSettings(BaseSettings):
    """OBD Forensics runtime settings."""

    model_config = {"env_prefix": "", "env_file": ".env", "extra": "ignore"}

    # -- adapter / vehicle --------------------------------------------------
    obd_port: str = Field(
        default="sim",
        description="'sim', 'host:port' for Wi-Fi adapters, or a serial device",
    )
    obd_baudrate: int = Field(default=38400, description="Serial baud rate")
    obd_headers: bool = Field(
        default=False,
        description="Ask the adapter to print CAN headers (AT H1)",
    )
    command_timeout_s: float = Field(default=2.5, gt=0)
    reset_timeout_s: float = Field(default=6.0, gt=0)
    reset_settle_s: float = Field(
        default=1.0,
        description="Pause after ATZ before the next init command",
    )
    max_retry_attempts: int = Field(
        default=3,
        description="Attempts per logical read before a timeout is surfaced",
    )
    retry_initial_delay_s: float = Field(default=0.25, ge=0)
    retry_max_delay_s: float = Field(default=2.0, ge=0)

    # -- simulation ---------------------------------------------------------
    obd_sim_scenario: str = Field(
        default="healthy",
        description="Simulation scenario name (from simulation_scenarios.json)",
    )
    obd_sim_latency_s: float = Field(default=0.0, ge=0)

    # -- live data ----------------------------------------------------------
    live_poll_interval_s: float = Field(default=1.0, gt=0)

    # -- fuel audit ---------------------------------------------------------
    tank_capacity: float = Field(default=50.0, gt=0)
    monitoring_distance_km: float = Field(default=5.0, gt=0)
    stft_warning_threshold: float = Field(default=15.0, ge=0)
    stft_critical_threshold: float = Field(default=25.0, ge=0)
    anomaly_duration_warning_s: float = Field(default=30.0, ge=0)
    anomaly_duration_critical_s: float = Field(default=60.0, ge=0)
    refuel_detect_delta: float = Field(default=5.0)
    refuel_tick_interval_s: float = Field(default=2.0, gt=0)

    # -- battery ------------------------------------------------------------
    cranking_sample_interval_s: float = Field(default=0.1, gt=0)
    cranking_wait_timeout_s: float = Field(default=120.0, gt=0)
    parasitic_sample_interval_s: float = Field(default=10.0, gt=0)
    parasitic_window_minutes: float = Field(default=30.0, gt=0)
    parasitic_drain_threshold_mv_per_min: float = Field(default=30.0)
    battery_capacity_ah: float = Field(default=60.0, gt=0)
    wake_lock_backend: str = Field(
        default="none",
        description="'none' or 'systemd' (systemd-inhibit)",
    )

    # -- persistence / API --------------------------------------------------
    pending_session_path: str = Field(
        default=".obd_forensics_pending.json",
        description="Where an interrupted fuel-audit session is stored",
    )
    diagnostic_api_base_url: str = Field(
        default="http://127.0.0.1:8000",
        description="Base URL of the service that stores finished results",
    )
    offline_buffer_max: int = Field(
        default=100,
        description="Max results to buffer when the API is unreachable",
    )

    # -- behaviour ----------------------------------------------------------
    dry_run: bool = Field(
        default=False,
        description="Log results locally; never POST to API",
    )
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(
        default="console",
        description="Log output format: 'console' or 'json'",
    )

    # -- derived ------------------------------------------------------------
    @property
    def is_simulation(self) -> bool:
        """Return ``True`` when the adapter is simulated."""
        return self.obd_port.strip().lower() == "sim"

    @property
    def is_network(self) -> bool:
        """Return ``True`` for ``host:port`` Wi-Fi adapters."""
        port = self.obd_port.strip()
        return ":" in port and not port.startswith("/dev") and not port.upper().startswith("COM")

    def refuel_settings(self) -> RefuelSettings:
        return RefuelSettings(
            tank_capacity=self.tank_capacity,
            monitoring_distance_km=self.monitoring_distance_km,
            stft_warning_threshold=self.stft_warning_threshold,
            stft_critical_threshold=self.stft_critical_threshold,
            anomaly_duration_warning_s=self.anomaly_duration_warning_s,
            anomaly_duration_critical_s=self.anomaly_duration_critical_s,
            refuel_detect_delta=self.refuel_detect_delta,
        )

    def cranking_settings(self) -> CrankingSettings:
        return CrankingSettings(
            sample_interval_s=self.cranking_sample_interval_s,
            wait_timeout_s=self.cranking_wait_timeout_s,
        )

    def parasitic_settings(self) -> ParasiticDrawSettings:
        return ParasiticDrawSettings(
            sample_interval_s=self.parasitic_sample_interval_s,
            window_minutes=self.parasitic_window_minutes,
            drain_threshold_mv_per_min=self.parasitic_drain_threshold_mv_per_min,
            battery_capacity_ah=self.battery_capacity_ah,
        )
