from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple


def coerce_watts(value: Any) -> Optional[float]:
    """
    Convert a raw telemetry/limit value to watts.

    Returns None for anything that is not a usable number: None, booleans,
    NaN/inf, and strings that do not parse as a float. Numeric strings are
    accepted since some transports deliver states as text.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return None
    if not isinstance(value, (int, float)):
        return None
    value = float(value)
    if math.isnan(value) or math.isinf(value):
        return None
    return value


# -----------------------------------
# Registry
# -----------------------------------
@dataclass(frozen=True)
class InverterSpec:
    id: str
    max_power_w: int
    name: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("Inverter id must not be empty")
        if self.max_power_w < 0:
            raise ValueError(f"Inverter {self.id} max power must be >= 0, got {self.max_power_w}")

    @property
    def display_name(self) -> str:
        return self.name or self.id


# -----------------------------------
# Per-tick values
# -----------------------------------
@dataclass(frozen=True)
class LimitSnapshot:
    inverter_id: str
    current_limit_w: float

    def __post_init__(self) -> None:
        if coerce_watts(self.current_limit_w) is None:
            raise ValueError(f"Snapshot for {self.inverter_id} needs a numeric limit, got {self.current_limit_w!r}")


@dataclass(frozen=True)
class PlannedLimit:
    inverter_id: str
    old_w: float
    new_w: int
    max_power_w: int

    def __post_init__(self) -> None:
        if not (0 <= self.new_w <= self.max_power_w):
            raise ValueError(
                f"Planned limit {self.new_w} W for {self.inverter_id} is outside 0..{self.max_power_w} W"
            )

    @property
    def changed(self) -> bool:
        return self.new_w != self.old_w


@dataclass(frozen=True)
class Plan:
    total_old_w: float
    total_new_w: int
    per_inverter: Tuple[PlannedLimit, ...]

    def __post_init__(self) -> None:
        if not self.per_inverter:
            raise ValueError("A plan needs at least one inverter")
        planned_sum = sum(p.new_w for p in self.per_inverter)
        if self.total_new_w != planned_sum:
            raise ValueError(f"Plan total {self.total_new_w} W does not match sum of limits {planned_sum} W")

    @property
    def delta_w(self) -> float:
        return self.total_new_w - self.total_old_w

    @property
    def is_decrease(self) -> bool:
        return self.total_new_w < self.total_old_w


# -----------------------------------
# Tick results
# -----------------------------------
class TickOutcome(Enum):
    NO_TELEMETRY = "no_telemetry"
    NO_SNAPSHOT = "no_snapshot"
    BELOW_THRESHOLD = "below_threshold"
    DECREASE_COOLDOWN = "decrease_cooldown"
    APPLIED = "applied"


@dataclass
class ActuationReport:
    applied_w: Dict[str, int] = field(default_factory=dict)
    failed: Dict[str, str] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class TickResult:
    outcome: TickOutcome
    grid_power_w: Optional[float] = None
    plan: Optional[Plan] = None
    actuation: Optional[ActuationReport] = None
    cooldown_remaining_ms: float = 0.0

    @property
    def control_active(self) -> Optional[bool]:
        """True when limits were applied, False when suppressed, None when the tick aborted."""
        if self.outcome is TickOutcome.APPLIED:
            return True
        if self.outcome in (TickOutcome.BELOW_THRESHOLD, TickOutcome.DECREASE_COOLDOWN):
            return False
        return None

    @property
    def aggregate_limit_w(self) -> Optional[int]:
        if self.outcome is TickOutcome.APPLIED and self.plan is not None:
            return self.plan.total_new_w
        return None

    @property
    def applied_w(self) -> Dict[str, int]:
        return dict(self.actuation.applied_w) if self.actuation else {}
