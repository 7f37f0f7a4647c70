"""Forensic verdict for a completed fuel-audit session.

Tells a legitimate flex-fuel switch apart from adulterated fuel or a
mechanical fault.  The driver's statement about what went into the tank
(:class:`FuelChangeContext`) decides what counts as normal: a +20 %
short term trim is expected right after switching to ethanol but is a
red flag when the same fuel was bought again.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence, Tuple

import numpy as np

from obd_forensics.decision_table import DecisionTable, Rule
from obd_forensics.schemas import FuelChangeContext, FuelState, FuelTrimSample

_SWITCH = frozenset({FuelChangeContext.GAS_TO_ETHANOL, FuelChangeContext.ETHANOL_TO_GAS})
_SAME = FuelChangeContext.SAME_FUEL
_UNKNOWN = FuelChangeContext.UNKNOWN


@dataclass(frozen=True)
class ForensicThresholds:
    same_fuel_max_trim: float = 12.0
    same_fuel_warning_trim: float = 8.0
    fuel_switch_expected_trim: float = 25.0
    fuel_switch_max_trim: float = 35.0
    o2_lean_volts: float = 0.2
    o2_rich_volts: float = 0.8
    o2_frozen_s: float = 5.0
    ltft_min_delta: float = 3.0
    ltft_memory_trim: float = 15.0
    min_analysis_km: float = 2.0
    recommended_km: float = 5.0
    warmup_samples: int = 3
    rolling_window: int = 10
    min_o2_readings: int = 10


@dataclass(frozen=True)
class ForensicVerdict:
    state: FuelState
    rule: str
    features: Dict[str, Any]
    recommendation: str


RECOMMENDATIONS: Dict[FuelState, str] = {
    FuelState.STABLE: "Fuel approved. Normal operation.",
    FuelState.ADAPTING: "The ECU is adapting to the new fuel. Keep driving a few more kilometres.",
    FuelState.SUSPICIOUS: "Keep monitoring. If the values persist, consider refuelling elsewhere.",
    FuelState.CONTAMINATED: (
        "Fuel is possibly adulterated. Consider draining the tank and "
        "refuelling at a trusted station."
    ),
    FuelState.MECHANICAL: (
        "Mechanical problem suspected. Check for vacuum leaks, the lambda "
        "sensor and the injection system."
    ),
}


def build_table(th: ForensicThresholds) -> DecisionTable[FuelState]:
    """Ordered rules; ``total_trim`` is ``|STFT| + |LTFT|``."""
    same_max = th.same_fuel_max_trim + th.ltft_memory_trim
    same_warn = th.same_fuel_warning_trim + 10.0
    return DecisionTable(
        [
            # -- same fuel: any sizeable correction is suspect -------------
            Rule("ltft_memory", FuelState.SUSPICIOUS, {
                "context": _SAME,
                "ltft_abs": (th.ltft_memory_trim, None),
                "stft_abs": (None, 5.0),
            }),
            Rule("o2_frozen", FuelState.MECHANICAL, {
                "context": _SAME, "total_trim": (same_max, None), "o2": "frozen",
            }),
            Rule("o2_switching", FuelState.CONTAMINATED, {
                "context": _SAME, "total_trim": (same_max, None), "o2": "ok",
            }),
            Rule("no_o2_evidence", FuelState.SUSPICIOUS, {
                "context": _SAME, "total_trim": (same_max, None),
            }),
            Rule("same_fuel_warning", FuelState.SUSPICIOUS, {
                "context": _SAME, "total_trim": (same_warn, None),
            }),
            Rule("same_fuel_ok", FuelState.STABLE, {"context": _SAME}),
            # -- declared flex switch: a large correction is expected -------
            Rule("adaptation_complete", FuelState.STABLE, {
                "context": _SWITCH, "stft_abs": (None, 10.0), "ltft_moving": True,
            }),
            Rule("wrong_direction", FuelState.SUSPICIOUS, {
                "context": _SWITCH, "direction": "opposite",
            }),
            Rule("trim_saturated_ltft_stuck", FuelState.MECHANICAL, {
                "context": _SWITCH,
                "stft_abs": (th.fuel_switch_max_trim, None),
                "ltft_moving": False,
                "distance_km": (th.min_analysis_km, None),
            }),
            Rule("trim_saturated", FuelState.SUSPICIOUS, {
                "context": _SWITCH, "stft_abs": (th.fuel_switch_max_trim, None),
            }),
            Rule("ltft_not_absorbing", FuelState.MECHANICAL, {
                "context": _SWITCH,
                "stft_abs": (th.fuel_switch_expected_trim, None),
                "ltft_moving": False,
                "distance_km": (th.min_analysis_km * 2, None),
            }),
            Rule("switch_in_progress", FuelState.ADAPTING, {"context": _SWITCH}),
            # -- unknown context: conservative ------------------------------
            Rule("probably_switch", FuelState.ADAPTING, {
                "stft_abs": (th.fuel_switch_expected_trim, None), "ltft_moving": True,
            }),
            Rule("high_trim", FuelState.SUSPICIOUS, {
                "stft_abs": (th.fuel_switch_expected_trim, None),
            }),
            Rule("elevated_trim", FuelState.SUSPICIOUS, {
                "stft_abs": (th.same_fuel_max_trim, None),
            }),
        ],
        default=FuelState.STABLE,
    )


def rolling_stft(samples: Sequence[FuelTrimSample], th: ForensicThresholds) -> float:
    """Mean of the most recent STFT values after discarding warm-up samples."""
    values = [s.stft for s in samples]
    if not values:
        return 0.0
    settled = values[th.warmup_samples:] or values
    return float(np.mean(settled[-th.rolling_window:]))


def o2_status(samples: Sequence[FuelTrimSample], th: ForensicThresholds) -> Tuple[str, float]:
    """``("frozen" | "ok" | "insufficient", longest_stuck_seconds)``.

    The sensor is frozen when it stays lean (< 0.2 V) or rich (> 0.8 V)
    without crossing for at least ``o2_frozen_s``.
    """
    readings = [(s.timestamp_ms, s.o2_voltage) for s in samples if s.o2_voltage is not None]
    if len(readings) < th.min_o2_readings:
        return "insufficient", 0.0

    longest = 0.0
    side: Optional[str] = None
    since = 0
    for ts, volts in readings:
        current = "lean" if volts < th.o2_lean_volts else "rich" if volts > th.o2_rich_volts else None
        if current is None:
            side = None
            continue
        if current != side:
            side, since = current, ts
        longest = max(longest, (ts - since) / 1000.0)
    return ("frozen" if longest >= th.o2_frozen_s else "ok"), longest


def evaluate(
    samples: Sequence[FuelTrimSample],
    context: FuelChangeContext,
    distance_km: float,
    thresholds: Optional[ForensicThresholds] = None,
) -> ForensicVerdict:
    """Classify a monitoring session into a :class:`FuelState`."""
    th = thresholds or ForensicThresholds()
    stft = rolling_stft(samples, th)
    ltfts = [s.ltft for s in samples if s.ltft is not None]
    ltft_now = ltfts[-1] if ltfts else 0.0
    ltft_delta = ltfts[-1] - ltfts[0] if ltfts else 0.0
    o2, o2_stuck_s = o2_status(samples, th)

    if context == FuelChangeContext.GAS_TO_ETHANOL:
        expected = 1
    elif context == FuelChangeContext.ETHANOL_TO_GAS:
        expected = -1
    else:
        expected = 0
    actual = 1 if stft > 5.0 else -1 if stft < -5.0 else 0
    if actual == 0 or expected == 0:
        direction = "neutral"
    else:
        direction = "expected" if actual == expected else "opposite"

    features: Dict[str, Any] = {
        "context": context,
        "stft_abs": abs(stft),
        "ltft_abs": abs(ltft_now),
        "total_trim": abs(stft) + abs(ltft_now),
        "ltft_moving": abs(ltft_delta) > th.ltft_min_delta,
        "o2": o2,
        "o2_stuck_s": o2_stuck_s,
        "direction": direction,
        "distance_km": distance_km,
    }
    table = build_table(th)
    rule = table.match(features)
    state = table.default if rule is None else rule.outcome
    return ForensicVerdict(
        state=state,
        rule="default" if rule is None else rule.name,
        features=features,
        recommendation=RECOMMENDATIONS[state],
    )
