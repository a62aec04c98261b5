"""Peak list helpers shared by the similarity functions and the matcher."""
from __future__ import annotations

from typing import List, NamedTuple, Optional, Tuple

import numpy as np

from .tolerances import MZTolerance

PeakArrays = Tuple[np.ndarray, np.ndarray]


class Peak(NamedTuple):
    mz: float
    intensity: float


# (library peak, query peak); either side may be None
AlignedPair = Tuple[Optional[Peak], Optional[Peak]]


def as_arrays(mzs, intensities) -> PeakArrays:
    return np.asarray(mzs, dtype=float).reshape(-1), np.asarray(intensities, dtype=float).reshape(-1)


def filter_noise(mzs: np.ndarray, intensities: np.ndarray, noise_level: float) -> PeakArrays:
    """Keep points strictly above `noise_level`."""
    mzs, intensities = as_arrays(mzs, intensities)
    if noise_level <= 0:
        keep = intensities > 0
    else:
        keep = intensities > float(noise_level)
    return mzs[keep], intensities[keep]


def align(tolerance: MZTolerance, library: PeakArrays, query: PeakArrays) -> List[AlignedPair]:
    """Pair every library peak with the most intense unused query peak in tolerance.

    Library peaks are visited by descending intensity. Unpaired peaks of either
    side are returned as half-empty pairs.
    """
    lib_mz, lib_int = as_arrays(*library)
    q_mz, q_int = as_arrays(*query)

    q_order = np.argsort(q_mz, kind="stable")
    q_sorted = q_mz[q_order]
    used = np.zeros(q_mz.size, dtype=bool)

    pairs: List[AlignedPair] = []
    for i in np.argsort(-lib_int, kind="stable"):
        mz = float(lib_mz[i])
        tol = tolerance.get_mz_tolerance_for_mass(mz)
        left = np.searchsorted(q_sorted, mz - tol, side="left")
        right = np.searchsorted(q_sorted, mz + tol, side="right")
        best = -1
        for j in q_order[left:right]:
            if used[j]:
                continue
            if best < 0 or q_int[j] > q_int[best] or (
                q_int[j] == q_int[best] and abs(q_mz[j] - mz) < abs(q_mz[best] - mz)
            ):
                best = int(j)
        lib_peak = Peak(mz, float(lib_int[i]))
        if best < 0:
            pairs.append((lib_peak, None))
        else:
            used[best] = True
            pairs.append((lib_peak, Peak(float(q_mz[best]), float(q_int[best]))))

    for j in np.flatnonzero(~used):
        pairs.append((None, Peak(float(q_mz[j]), float(q_int[j]))))
    return pairs


def remove_unaligned(pairs: List[AlignedPair]) -> List[AlignedPair]:
    return [p for p in pairs if p[0] is not None and p[1] is not None]


def crop_to_overlap(tolerance: MZTolerance, library: PeakArrays, query: PeakArrays) -> Tuple[PeakArrays, PeakArrays]:
    """Crop both spectra to their common m/z span, widened by the tolerance."""
    lib_mz, lib_int = as_arrays(*library)
    q_mz, q_int = as_arrays(*query)
    if lib_mz.size == 0 or q_mz.size == 0:
        empty = (np.empty(0), np.empty(0))
        return empty, empty

    lo = max(float(lib_mz.min()), float(q_mz.min()))
    hi = min(float(lib_mz.max()), float(q_mz.max()))
    lo -= tolerance.get_mz_tolerance_for_mass(lo)
    hi += tolerance.get_mz_tolerance_for_mass(hi)

    lib_keep = (lib_mz >= lo) & (lib_mz <= hi)
    q_keep = (q_mz >= lo) & (q_mz <= hi)
    return (lib_mz[lib_keep], lib_int[lib_keep]), (q_mz[q_keep], q_int[q_keep])


def remove_precursor(mzs: np.ndarray, intensities: np.ndarray, precursor_mz: float, tolerance: MZTolerance) -> PeakArrays:
    """Drop points within `tolerance` of `precursor_mz`."""
    mzs, intensities = as_arrays(mzs, intensities)
    tol = np.maximum(tolerance.mz_tolerance, np.abs(mzs) * tolerance.ppm_tolerance / 1e6)
    keep = np.abs(mzs - float(precursor_mz)) > tol
    return mzs[keep], intensities[keep]


__all__ = [
    "Peak",
    "AlignedPair",
    "filter_noise",
    "align",
    "remove_unaligned",
    "crop_to_overlap",
    "remove_precursor",
]
