from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

from .exceptions import InvalidInputError


@dataclass(frozen=True)
class ToleranceRange:
    """m/z interval with independently open or closed bounds."""

    lower: float
    upper: float
    lower_closed: bool = True
    upper_closed: bool = True

    def contains(self, value: float) -> bool:
        if value < self.lower or value > self.upper:
            return False
        if value == self.lower and not self.lower_closed:
            return False
        if value == self.upper and not self.upper_closed:
            return False
        return True

    def is_empty(self) -> bool:
        if self.lower > self.upper:
            return True
        if self.lower == self.upper:
            return not (self.lower_closed and self.upper_closed)
        return False

    def __repr__(self) -> str:
        lo = "[" if self.lower_closed else "("
        hi = "]" if self.upper_closed else ")"
        return f"{lo}{self.lower:.6f}, {self.upper:.6f}{hi}"


def _check_non_negative(name: str, value: float) -> float:
    value = float(value)
    if math.isnan(value) or value < 0:
        raise InvalidInputError(f"{name} must be a non-negative number, got {value!r}.")
    return value


@dataclass(frozen=True)
class MZTolerance:
    """Absolute (Da) and relative (ppm) m/z tolerance; the wider of both applies."""

    mz_tolerance: float = 0.0
    ppm_tolerance: float = 0.0

    def __post_init__(self) -> None:
        _check_non_negative("mz_tolerance", self.mz_tolerance)
        _check_non_negative("ppm_tolerance", self.ppm_tolerance)

    def get_mz_tolerance_for_mass(self, mz: float) -> float:
        return max(float(self.mz_tolerance), abs(float(mz)) * float(self.ppm_tolerance) / 1e6)

    def get_tolerance_range(self, mz: float) -> ToleranceRange:
        tol = self.get_mz_tolerance_for_mass(mz)
        return ToleranceRange(float(mz) - tol, float(mz) + tol)

    def check_within_tolerance(self, mz1: float, mz2: float) -> bool:
        return self.get_tolerance_range(mz1).contains(float(mz2))

    @classmethod
    def coerce(cls, value: object) -> "MZTolerance":
        """Build from an MZTolerance, a number (Da) or a dict with `mz`/`ppm` keys."""
        if isinstance(value, MZTolerance):
            return value
        if isinstance(value, dict):
            return cls(float(value.get("mz", 0.0)), float(value.get("ppm", 0.0)))
        return cls(float(value), 0.0)  # type: ignore[arg-type]


@dataclass(frozen=True)
class RTTolerance:
    """Retention time tolerance.

    `unit="absolute"` uses the tolerance directly (minutes), `unit="relative"`
    interprets it as percent of the compared retention time.
    """

    tolerance: float = 0.1
    unit: str = "absolute"  # "absolute" | "relative"

    def __post_init__(self) -> None:
        _check_non_negative("rt tolerance", self.tolerance)
        if self.unit not in {"absolute", "relative"}:
            raise InvalidInputError(f"Unsupported RT tolerance unit: {self.unit!r}")

    def get_tolerance_range(self, rt: float) -> ToleranceRange:
        if self.unit == "relative":
            tol = abs(float(rt)) * float(self.tolerance) / 100.0
        else:
            tol = float(self.tolerance)
        return ToleranceRange(float(rt) - tol, float(rt) + tol)

    def check_within_tolerance(self, rt1: float, rt2: float) -> bool:
        return self.get_tolerance_range(rt1).contains(float(rt2))

    @classmethod
    def coerce(cls, value: object) -> "RTTolerance":
        if isinstance(value, RTTolerance):
            return value
        if isinstance(value, dict):
            return cls(float(value.get("tolerance", 0.1)), str(value.get("unit", "absolute")))
        return cls(float(value))  # type: ignore[arg-type]


def percent_error(value: Optional[float], reference: Optional[float]) -> Optional[float]:
    """Relative error of `value` against `reference` in percent; None when either is missing."""
    if value is None or reference is None:
        return None
    value = float(value)
    reference = float(reference)
    if not (math.isfinite(value) and math.isfinite(reference)) or reference == 0:
        return None
    return (value - reference) / reference * 100.0


@dataclass(frozen=True)
class PercentTolerance:
    """Relative tolerance in percent, used for CCS comparison."""

    percent: float

    def __post_init__(self) -> None:
        _check_non_negative("percent tolerance", self.percent)

    def matches(self, value: Optional[float], reference: Optional[float]) -> bool:
        # missing data on either side passes
        err = percent_error(value, reference)
        if err is None:
            return True
        return abs(err) <= float(self.percent)


__all__ = [
    "ToleranceRange",
    "MZTolerance",
    "RTTolerance",
    "PercentTolerance",
    "percent_error",
]
