from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

import numpy as np


class CenterMeasure(str, Enum):
    AVG = "avg"
    MEDIAN = "median"


class Weighting(str, Enum):
    NONE = "none"
    LINEAR = "linear"
    LOG10 = "log10"
    SQRT = "sqrt"

    def transform(self, intensities: np.ndarray) -> np.ndarray:
        if self is Weighting.NONE:
            return np.ones_like(intensities)
        if self is Weighting.LINEAR:
            return intensities
        if self is Weighting.LOG10:
            # keep weights non-negative for intensities below 1
            return np.log10(np.clip(intensities, 1.0, np.inf))
        return np.sqrt(np.clip(intensities, 0.0, np.inf))


def _weighted_median(values: np.ndarray, weights: np.ndarray) -> float:
    order = np.argsort(values, kind="mergesort")
    v = values[order]
    cw = np.cumsum(weights[order])
    half = cw[-1] / 2.0
    return float(v[int(np.searchsorted(cw, half, side="left"))])


@dataclass(frozen=True)
class CenterFunction:
    """Center of a set of m/z values, optionally weighted by intensity."""

    measure: CenterMeasure = CenterMeasure.AVG
    weighting: Weighting = Weighting.LINEAR

    def calc_center(self, values: np.ndarray, intensities: np.ndarray) -> float:
        values = np.asarray(values, dtype=float)
        if values.size == 0:
            return float("nan")
        if values.size == 1:
            return float(values[0])
        weights = self.weighting.transform(np.asarray(intensities, dtype=float))
        if not np.isfinite(weights).all() or weights.sum() <= 0:
            weights = np.ones_like(values)
        if self.measure is CenterMeasure.MEDIAN:
            return _weighted_median(values, weights)
        return float(np.average(values, weights=weights))

    __call__ = calc_center


__all__ = ["CenterMeasure", "Weighting", "CenterFunction"]
