"""Isotope handling for library matching.

`check_for_isotope_pattern` is a confidence heuristic: it only looks for
isotope/adduct spacings among library peaks that aligned with the query.
`filter_isotopes` removes 13C isotope peaks from a peak list.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

import numpy as np

from .alignment import PeakArrays, as_arrays
from .exceptions import ConfigurationError
from .similarity import SpectralSimilarity
from .tolerances import MZTolerance

# m/z spacings checked between aligned library signals:
#   13C 1.0034, H 1.0078 (M+ vs M+H, -H, -H2), 2H 2.0157, Cl 1.9970
DELTA_ISOTOPES: Tuple[float, ...] = (1.0034, 1.0078, 2.0157, 1.9970)

C13_DELTA = 1.003354835


def check_for_isotope_pattern(
    similarity: SpectralSimilarity,
    tolerance: MZTolerance,
    min_matched_iso_signals: int,
) -> bool:
    """True if at least `min_matched_iso_signals` isotope spacings are found.

    Each library peak counts at most once per spacing.
    """
    if int(min_matched_iso_signals) <= 0:
        return True
    lib = similarity.library_aligned_mzs()
    matches = 0
    for i in range(lib.size - 1):
        a = float(lib[i])
        for d_iso in DELTA_ISOTOPES:
            for k in range(i + 1, lib.size):
                dmz = abs(a - float(lib[k]))
                if tolerance.check_within_tolerance(d_iso, dmz):
                    matches += 1
                    if matches >= min_matched_iso_signals:
                        return True
                    break
    return False


@dataclass(frozen=True)
class DeisotoperConfig:
    mz_tolerance: MZTolerance = MZTolerance(0.001, 5.0)
    # isotope intensities must decrease from peak to peak
    monotonic_shape: bool = True
    maximum_charge: int = 1

    def __post_init__(self) -> None:
        if int(self.maximum_charge) < 1:
            raise ConfigurationError(f"maximum_charge must be >= 1, got {self.maximum_charge!r}.")


def filter_isotopes(mzs: np.ndarray, intensities: np.ndarray, config: DeisotoperConfig) -> PeakArrays:
    """Remove 13C isotope peaks, keeping the monoisotopic ones.

    Peaks are visited by descending intensity; for each kept peak and each
    charge the series at `n * 13C / z` is followed while peaks are found.
    Returns the remaining peaks in their input order.
    """
    mzs, intensities = as_arrays(mzs, intensities)
    n = mzs.size
    if n == 0:
        return mzs, intensities

    mz_order = np.argsort(mzs, kind="stable")
    mz_sorted = mzs[mz_order]
    removed = np.zeros(n, dtype=bool)

    for i in np.argsort(-intensities, kind="stable"):
        if removed[i]:
            continue
        for z in range(1, int(config.maximum_charge) + 1):
            step = C13_DELTA / z
            last_intensity = float(intensities[i])
            k = 1
            while True:
                target = float(mzs[i]) + k * step
                tol = config.mz_tolerance.get_mz_tolerance_for_mass(target)
                left = np.searchsorted(mz_sorted, target - tol, side="left")
                right = np.searchsorted(mz_sorted, target + tol, side="right")
                best = -1
                for j in mz_order[left:right]:
                    if j == i or removed[j]:
                        continue
                    if config.monotonic_shape and intensities[j] >= last_intensity:
                        continue
                    if best < 0 or intensities[j] > intensities[best]:
                        best = int(j)
                if best < 0:
                    break
                removed[best] = True
                last_intensity = float(intensities[best])
                k += 1

    keep = ~removed
    return mzs[keep], intensities[keep]


__all__ = [
    "DELTA_ISOTOPES",
    "C13_DELTA",
    "check_for_isotope_pattern",
    "DeisotoperConfig",
    "filter_isotopes",
]
