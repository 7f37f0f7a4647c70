"""Real-time inference of the injected fuel from fuel-trim behaviour.

Flex-fuel engines calibrated for E27 gasoline settle their long term
fuel trim according to the ethanol content in the tank: pure gasoline
needs less fuel (negative LTFT), ethanol needs more (positive LTFT).
Trims only carry this information while the ECU runs closed loop, so
the detector ignores every sample taken in open loop.
"""

from __future__ import annotations

from collections import deque
from typing import Deque, Dict, Optional

import numpy as np
import structlog

from obd_forensics.decision_table import DecisionTable, Rule
from obd_forensics.hysteresis import Cooldown
from obd_forensics.pids import is_closed_loop
from obd_forensics.schemas import (
    Confidence,
    FuelTypeChange,
    FuelTypeVerdict,
    InferredFuelType,
)

logger = structlog.get_logger(__name__)

# Energy content relative to pure gasoline.
ENERGY_FACTORS: Dict[InferredFuelType, float] = {
    InferredFuelType.GASOLINE: 1.0,
    InferredFuelType.GASOLINE_E27: 0.92,
    InferredFuelType.GASOLINE_E30: 0.90,
    InferredFuelType.ETHANOL_MIX: 0.80,
    InferredFuelType.ETHANOL_PURE: 0.70,
    InferredFuelType.UNKNOWN: 0.85,
}

FUEL_TYPE_TABLE: DecisionTable[InferredFuelType] = DecisionTable(
    [
        Rule("rich_trim", InferredFuelType.GASOLINE, {"ltft": (None, -4.0)}),
        Rule("base_calibration", InferredFuelType.GASOLINE_E27, {"ltft": (-4.0, 3.0)}),
        Rule("slightly_lean", InferredFuelType.GASOLINE_E30, {"ltft": (3.0, 8.0)}),
        Rule("flex_blend", InferredFuelType.ETHANOL_MIX, {"ltft": (8.0, 20.0)}),
        Rule("ethanol", InferredFuelType.ETHANOL_PURE, {"ltft": (20.0, None)}),
    ],
    default=InferredFuelType.UNKNOWN,
)

# LTFT slope (percent per sample) above which the ECU is still adapting.
_ADAPTING_SLOPE = 0.2
_STABLE_STFT_STD = 3.0
_NOISY_STFT_STD = 6.0


def estimate_ethanol_percent(ltft: float) -> int:
    """Map LTFT onto ethanol content: 0 % trim is E27, +30 % is E100."""
    return int(round(max(0.0, min(100.0, 27.0 + ltft * 73.0 / 30.0))))


def consumption_change_percent(
    previous: InferredFuelType, current: InferredFuelType
) -> int:
    """Expected consumption change going from *previous* to *current*.

    Positive means the car will burn more fuel per kilometre.
    """
    before, after = ENERGY_FACTORS[previous], ENERGY_FACTORS[current]
    magnitude = abs(round((1 - after / before) * 100))
    return magnitude if after < before else -magnitude


class FuelTypeDetector:
    """Sliding-window classifier over closed-loop trim samples."""

    def __init__(self, window: int = 30, min_samples: int = 10) -> None:
        if min_samples < 2 or window < min_samples:
            raise ValueError("need 2 <= min_samples <= window")
        self.window = window
        self.min_samples = min_samples
        self._ltft: Deque[float] = deque(maxlen=window)
        self._stft: Deque[float] = deque(maxlen=window)

    @property
    def sample_count(self) -> int:
        return len(self._ltft)

    def reset(self) -> None:
        self._ltft.clear()
        self._stft.clear()

    def update(
        self,
        stft: float,
        ltft: float,
        fuel_system_status: Optional[float],
    ) -> Optional[FuelTypeVerdict]:
        """Feed one sample; ``None`` while the ECU is not in closed loop."""
        if fuel_system_status is None or not is_closed_loop(fuel_system_status):
            return None
        self._stft.append(stft)
        self._ltft.append(ltft)
        return self.verdict()

    def verdict(self) -> FuelTypeVerdict:
        n = len(self._ltft)
        if n == 0:
            return FuelTypeVerdict(
                inferred_type=InferredFuelType.UNKNOWN,
                confidence=Confidence.LOW,
                estimated_ethanol_percent=0,
                ltft_average=0.0,
                stft_std=0.0,
            )

        ltft = np.asarray(self._ltft, dtype=float)
        stft = np.asarray(self._stft, dtype=float)
        ltft_avg = float(ltft.mean())
        stft_std = float(stft.std(ddof=0))
        slope = float(np.polyfit(np.arange(n), ltft, 1)[0]) if n >= 3 else 0.0
        adapting = abs(slope) > _ADAPTING_SLOPE

        if n < self.min_samples:
            confidence = Confidence.LOW
            inferred = InferredFuelType.UNKNOWN
        else:
            inferred = FUEL_TYPE_TABLE.evaluate({"ltft": ltft_avg})
            if n >= self.window and stft_std < _STABLE_STFT_STD and not adapting:
                confidence = Confidence.HIGH
            elif stft_std < _NOISY_STFT_STD:
                confidence = Confidence.MEDIUM
            else:
                confidence = Confidence.LOW

        return FuelTypeVerdict(
            inferred_type=inferred,
            confidence=confidence,
            estimated_ethanol_percent=estimate_ethanol_percent(ltft_avg),
            ltft_average=round(ltft_avg, 2),
            stft_std=round(stft_std, 2),
            adapting=adapting,
        )


class FuelTypeChangeTracker:
    """Emits :class:`FuelTypeChange` when a confident detection changes.

    * Only high-confidence verdicts can raise a change.
    * A medium-confidence known type silently becomes the new reference.
    * The first confident verdict only sets the reference.
    * At most one change per *cooldown_s*, measured on sample time.
    """

    def __init__(self, cooldown_s: float = 60.0) -> None:
        self._previous: Optional[InferredFuelType] = None
        self._cooldown = Cooldown(cooldown_s)

    @property
    def previous(self) -> Optional[InferredFuelType]:
        return self._previous

    def observe(
        self, verdict: FuelTypeVerdict, timestamp_ms: int
    ) -> Optional[FuelTypeChange]:
        current = verdict.inferred_type
        if verdict.confidence != Confidence.HIGH:
            if verdict.confidence == Confidence.MEDIUM and current != InferredFuelType.UNKNOWN:
                self._previous = current
            return None

        if self._previous is None:
            self._previous = current
            logger.debug("fuel_type_first_detection", fuel_type=current.value)
            return None

        if not self._cooldown.ready(timestamp_ms):
            return None

        if current == self._previous or current == InferredFuelType.UNKNOWN:
            return None

        change = FuelTypeChange(
            previous=self._previous,
            current=current,
            consumption_change_percent=consumption_change_percent(self._previous, current),
            verdict=verdict,
        )
        self._cooldown.mark(timestamp_ms)
        self._previous = current
        logger.info(
            "fuel_type_changed",
            previous=change.previous.value,
            current=change.current.value,
            consumption_change_percent=change.consumption_change_percent,
            ethanol_percent=verdict.estimated_ethanol_percent,
        )
        return change
