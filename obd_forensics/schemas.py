"""Diagnosis report models (Pydantic v2).

These are the immutable value objects handed to presentation, voice and
storage collaborators.  Nothing in here calls back into the core.

Additive contract: new fields may be added; existing fields remain
backward-compatible.
"""

from __future__ import annotations

import math
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator

from obd_forensics.config import RefuelSettings


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class Confidence(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class FuelQuality(str, Enum):
    UNKNOWN = "unknown"
    OK = "ok"
    WARNING = "warning"
    CRITICAL = "critical"


class RefuelMode(str, Enum):
    """Lifecycle states of the fuel-audit machine."""

    IDLE = "idle"
    WAITING = "waiting"
    WAITING_QUICK = "waiting-quick"
    MONITORING = "monitoring"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"


class FlowType(str, Enum):
    REFUEL = "refuel"
    QUICK_TEST = "quick-test"


class FuelChangeContext(str, Enum):
    """What the driver says they put in the tank."""

    SAME_FUEL = "same_fuel"
    GAS_TO_ETHANOL = "gas_to_ethanol"
    ETHANOL_TO_GAS = "ethanol_to_gas"
    UNKNOWN = "unknown"


class FuelState(str, Enum):
    """Forensic verdict of a completed fuel-audit session."""

    STABLE = "stable"
    ADAPTING = "adapting"
    SUSPICIOUS = "suspicious"
    CONTAMINATED = "contaminated"
    MECHANICAL = "mechanical"


class InferredFuelType(str, Enum):
    GASOLINE = "gasoline"
    GASOLINE_E27 = "gasoline_e27"
    GASOLINE_E30 = "gasoline_e30"
    ETHANOL_MIX = "ethanol_mix"
    ETHANOL_PURE = "ethanol_pure"
    UNKNOWN = "unknown"


class CrankingVerdict(str, Enum):
    OK = "battery_ok_alternator_ok"
    BATTERY_WEAK = "battery_weak"
    BATTERY_CRITICAL = "battery_critical"
    ALTERNATOR_WEAK = "alternator_weak"
    ALTERNATOR_FAIL = "alternator_fail"


class BatteryStatus(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    WEAK = "weak"
    CRITICAL = "critical"


class AlternatorStatus(str, Enum):
    OK = "ok"
    WEAK = "weak"
    FAIL = "fail"


class DrawLevel(str, Enum):
    NORMAL = "normal"
    MODERATE = "moderate"
    EXCESSIVE = "excessive"
    CRITICAL = "critical"
    INTERMITTENT = "intermittent"


class DtcKind(str, Enum):
    """Which service reported a trouble code."""

    STORED = "stored"  # Mode 03
    PENDING = "pending"  # Mode 07
    PERMANENT = "permanent"  # Mode 0A


# ---------------------------------------------------------------------------
# Live data
# ---------------------------------------------------------------------------

class PidReading(BaseModel):
    """A single decoded Mode 01 PID value."""

    model_config = {"frozen": True}

    pid: str = Field(..., description="Two hex digits, e.g. '0C'")
    name: str
    value: float
    unit: str
    plausible: bool = Field(
        default=True,
        description="False when the value falls outside the PID's valid range",
    )
    raw_hex: str = Field(default="", description="Data bytes as received")
    ts: datetime = Field(default_factory=_utcnow)


class VoltagePoint(BaseModel):
    """One battery voltage sample."""

    model_config = {"frozen": True}

    timestamp_ms: int
    volts: float

    @field_validator("volts")
    @classmethod
    def reject_non_finite(cls, v: float) -> float:
        if not math.isfinite(v):
            raise ValueError(f"volts must be finite, got {v}")
        return v


class FuelTrimSample(BaseModel):
    """One fuel-trim observation taken while a fuel audit is monitoring."""

    model_config = {"frozen": True}

    timestamp_ms: int
    stft: float
    ltft: Optional[float] = None
    o2_voltage: Optional[float] = None
    distance_km: float = 0.0


# ---------------------------------------------------------------------------
# Fuel audit
# ---------------------------------------------------------------------------

class RefuelEntry(BaseModel):
    """Finalised result of one refuel / quick-test monitoring session."""

    model_config = {"frozen": True}

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=_utcnow)
    flow_type: FlowType = FlowType.REFUEL
    station_name: Optional[str] = None

    price_per_liter: float = 0.0
    liters_added: float = 0.0
    total_paid: float = 0.0
    fuel_level_before: Optional[float] = None
    fuel_level_after: Optional[float] = None
    tank_capacity: float

    quality: FuelQuality = FuelQuality.UNKNOWN
    stft_average: float = 0.0
    ltft_delta: float = 0.0
    distance_monitored: float = 0.0
    sample_count: int = 0
    anomaly_detected: bool = False
    anomaly_details: Optional[str] = None
    max_sustained_anomaly_seconds: float = 0.0
    pump_accuracy_percent: Optional[int] = None
    forensic_state: Optional[FuelState] = None
    recommendation: Optional[str] = None


class FuelTypeVerdict(BaseModel):
    """Real-time estimate of the fuel currently being injected."""

    model_config = {"frozen": True}

    inferred_type: InferredFuelType
    confidence: Confidence
    estimated_ethanol_percent: int
    ltft_average: float
    stft_std: float
    adapting: bool = False
    ts: datetime = Field(default_factory=_utcnow)


class FuelTypeChange(BaseModel):
    """Emitted when a confident detection differs from the previous one."""

    model_config = {"frozen": True}

    previous: InferredFuelType
    current: InferredFuelType
    consumption_change_percent: int = Field(
        ...,
        description="Expected consumption change; positive means more fuel",
    )
    verdict: FuelTypeVerdict


class CancellationReport(BaseModel):
    """Why a session ended without a result."""

    model_config = {"frozen": True}

    session: str
    state: str
    reason: str
    at: datetime = Field(default_factory=_utcnow)


class PendingSession(BaseModel):
    """Serialisable snapshot of a fuel audit interrupted by a disconnect."""

    session_id: str
    flow_type: FlowType
    mode: RefuelMode
    settings: RefuelSettings
    samples: List[FuelTrimSample] = Field(default_factory=list)
    distance_km: float = 0.0
    fuel_level_before: Optional[float] = None
    fuel_level_after: Optional[float] = None
    price_per_liter: float = 0.0
    liters_added: float = 0.0
    station_name: Optional[str] = None
    purchase_confirmed: bool = False
    fuel_context: FuelChangeContext = FuelChangeContext.UNKNOWN
    max_sustained_anomaly_s: float = 0.0
    started_at_ms: Optional[int] = None
    interrupted_at: datetime = Field(default_factory=_utcnow)
    reason: str = ""


# ---------------------------------------------------------------------------
# Trouble codes
# ---------------------------------------------------------------------------

_DTC_SYSTEMS = {"P": "powertrain", "C": "chassis", "B": "body", "U": "network"}


class DiagnosticTroubleCode(BaseModel):
    """One trouble code as reported by one ECU."""

    model_config = {"frozen": True}

    code: str = Field(..., description="e.g. 'P0171'")
    raw: str = Field(..., description="The two code bytes as received, e.g. '0171'")
    kind: DtcKind
    ecu: Optional[str] = Field(
        default=None,
        description="CAN header of the answering ECU, when the adapter printed one",
    )

    @property
    def system(self) -> str:
        return _DTC_SYSTEMS[self.code[0]]


class FreezeFrame(BaseModel):
    """Mode 02 snapshot stored with the code that triggered it."""

    model_config = {"frozen": True}

    frame: int = 0
    trigger_dtc: str
    readings: Dict[str, PidReading] = Field(default_factory=dict)
    read_at: datetime = Field(default_factory=_utcnow)


class DtcScanResult(BaseModel):
    """Stored, pending and permanent codes read in one pass."""

    model_config = {"frozen": True}

    stored: Tuple[DiagnosticTroubleCode, ...] = ()
    pending: Tuple[DiagnosticTroubleCode, ...] = ()
    permanent: Tuple[DiagnosticTroubleCode, ...] = ()
    freeze_frame: Optional[FreezeFrame] = None
    cleared_ecus: Optional[int] = Field(
        default=None,
        description="ECUs that acknowledged Mode 04; None when no clear was requested",
    )
    scanned_at: datetime = Field(default_factory=_utcnow)

    @property
    def codes(self) -> List[str]:
        """Distinct codes across all three kinds, first seen first."""
        seen: List[str] = []
        for dtc in self.stored + self.pending + self.permanent:
            if dtc.code not in seen:
                seen.append(dtc.code)
        return seen


# ---------------------------------------------------------------------------
# Battery forensics
# ---------------------------------------------------------------------------

class CrankingTestResult(BaseModel):
    """Features and verdict derived from one cranking capture."""

    model_config = {"frozen": True}

    resting_voltage: float
    min_voltage: float
    sag_duration_ms: int
    recovery_slope: float = Field(..., description="Volts per second")
    stabilized_voltage: float
    classification: CrankingVerdict
    confidence: float = Field(..., ge=0.0, le=1.0)
    battery_status: BatteryStatus
    alternator_status: AlternatorStatus
    battery_health_percent: int
    sag_sample_count: int
    crank_start_ms: int
    samples: Tuple[VoltagePoint, ...] = ()
    analyzed_at: datetime = Field(default_factory=_utcnow)

    @property
    def voltage_drop(self) -> float:
        return round(self.resting_voltage - self.min_voltage, 3)


class AnomalyWindow(BaseModel):
    """Sub-interval where the drain rate exceeded the threshold."""

    model_config = {"frozen": True}

    start_ms: int
    end_ms: int
    peak_drain_mv_per_min: float

    @property
    def duration_s(self) -> float:
        return (self.end_ms - self.start_ms) / 1000.0


class ParasiticDrawResult(BaseModel):
    """Outcome of an engine-off voltage monitoring window."""

    model_config = {"frozen": True}

    samples: Tuple[VoltagePoint, ...]
    drain_rate_mv_per_min: float
    classification: DrawLevel
    anomaly_windows: Tuple[AnomalyWindow, ...] = ()
    start_voltage: float
    end_voltage: float
    duration_minutes: float
    estimated_draw_milliamps: int
    analyzed_at: datetime = Field(default_factory=_utcnow)

    @property
    def total_drop_mv(self) -> float:
        return round((self.start_voltage - self.end_voltage) * 1000.0, 1)
