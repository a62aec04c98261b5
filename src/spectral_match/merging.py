"""Consensus merging of peaks from several spectra.

Points from all source spectra are visited by descending intensity. The most
intense point of a neighborhood opens a tolerance window; weaker points from
*other* spectra that fall into the window join its cluster. A second point
from a spectrum that already contributed to the cluster opens a new cluster,
so each consensus peak is built from independent observations.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from .center import CenterFunction, CenterMeasure, Weighting
from .exceptions import InvalidInputError
from .range_map import DisjointRangeMap
from .spectra import MergedSpectrum, Spectrum, validate_points
from .tolerances import MZTolerance, ToleranceRange

logger = logging.getLogger(__name__)


class MergingType(str, Enum):
    SUMMED = "summed"
    MAXIMUM = "maximum"
    AVERAGE = "average"

    def aggregate(self, intensities: np.ndarray) -> float:
        if self is MergingType.SUMMED:
            return float(intensities.sum())
        if self is MergingType.MAXIMUM:
            return float(intensities.max())
        return float(intensities.mean())


DEFAULT_CENTER_FUNCTION = CenterFunction(CenterMeasure.AVG, Weighting.LINEAR)


@dataclass
class _Cluster:
    seed_mz: float
    # source index -> (mz, intensity); at most one point per source spectrum
    points: Dict[int, Tuple[float, float]] = field(default_factory=dict)

    def has_source(self, index: int) -> bool:
        return index in self.points

    def add(self, index: int, mz: float, intensity: float) -> None:
        self.points[index] = (mz, intensity)

    def arrays(self) -> Tuple[np.ndarray, np.ndarray]:
        ordered = [self.points[k] for k in sorted(self.points)]
        return (
            np.array([p[0] for p in ordered], dtype=float),
            np.array([p[1] for p in ordered], dtype=float),
        )


def _indexed_points(sources: Sequence[Spectrum], noise_level: float) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    mzs: List[np.ndarray] = []
    ints: List[np.ndarray] = []
    idx: List[np.ndarray] = []
    for i, spectrum in enumerate(sources):
        smz, sint = spectrum.data_points()
        validate_points(smz, sint, name=f"source spectrum {i}")
        keep = sint > noise_level
        mzs.append(smz[keep])
        ints.append(sint[keep])
        idx.append(np.full(int(keep.sum()), i, dtype=int))
    if not mzs:
        return np.empty(0), np.empty(0), np.empty(0, dtype=int)
    return np.concatenate(mzs), np.concatenate(ints), np.concatenate(idx)


def _split_for_new_cluster(rng: ToleranceRange, seed_mz: float, mz: float) -> Tuple[ToleranceRange, ToleranceRange]:
    """Split `rng` at the midpoint between the cluster seed and `mz`.

    Returns (kept part for the existing cluster, part for the new cluster).
    The new part always contains `mz`; the kept part may be empty.
    """
    mid = 0.5 * (seed_mz + mz)
    if mz >= seed_mz:
        kept = ToleranceRange(rng.lower, mid, rng.lower_closed, False)
        new = ToleranceRange(mid, rng.upper, True, rng.upper_closed)
    else:
        kept = ToleranceRange(mid, rng.upper, True, rng.upper_closed)
        new = ToleranceRange(rng.lower, mid, rng.lower_closed, False)
    return kept, new


def calculate_merged_mzs_and_intensities(
    sources: Sequence[Spectrum],
    noise_level: float,
    tolerance: MZTolerance,
    merging_type: MergingType,
    center_function: CenterFunction = DEFAULT_CENTER_FUNCTION,
) -> Tuple[np.ndarray, np.ndarray]:
    """Merge the points of `sources` into consensus peaks.

    Returns:
        (mzs, intensities) float64 arrays, one element per cluster, ascending m/z.
    """
    noise_level = float(noise_level)
    if np.isnan(noise_level) or noise_level < 0:
        raise InvalidInputError(f"noise_level must be a non-negative number, got {noise_level!r}.")
    merging_type = MergingType(merging_type)

    mzs, intensities, source_idx = _indexed_points(sources, noise_level)
    if mzs.size == 0:
        return np.empty(0, dtype=float), np.empty(0, dtype=float)

    order = np.argsort(-intensities, kind="stable")
    range_map: DisjointRangeMap[_Cluster] = DisjointRangeMap()
    clusters: List[_Cluster] = []
    n_splits = 0

    for k in order:
        mz = float(mzs[k])
        intensity = float(intensities[k])
        index = int(source_idx[k])

        entry = range_map.get_entry(mz)
        if entry is None:
            rng = range_map.clip_to_neighbors(tolerance.get_tolerance_range(mz), mz)
            cluster = _Cluster(seed_mz=mz)
            range_map.put(rng, cluster)
            clusters.append(cluster)
        else:
            rng, cluster = entry
            if cluster.has_source(index):
                kept, new = _split_for_new_cluster(rng, cluster.seed_mz, mz)
                range_map.remove(rng)
                if not kept.is_empty():
                    range_map.put(kept, cluster)
                cluster = _Cluster(seed_mz=mz)
                range_map.put(new, cluster)
                clusters.append(cluster)
                n_splits += 1
        cluster.add(index, mz, intensity)

    out_mz = np.empty(len(clusters), dtype=float)
    out_int = np.empty(len(clusters), dtype=float)
    for i, cluster in enumerate(clusters):
        cmz, cint = cluster.arrays()
        out_mz[i] = center_function.calc_center(cmz, cint)
        out_int[i] = merging_type.aggregate(cint)

    final = np.argsort(out_mz, kind="stable")
    logger.debug(
        "Merged %d points from %d spectra into %d clusters (%d same-source splits)",
        mzs.size, len(sources), len(clusters), n_splits,
    )
    return out_mz[final], out_int[final]


def _shared(values: List[Optional[float]]) -> Optional[float]:
    known = {v for v in values if v is not None}
    return known.pop() if len(known) == 1 else None


def merge_spectra(
    sources: Sequence[Spectrum],
    noise_level: float,
    tolerance: MZTolerance,
    merging_type: MergingType = MergingType.SUMMED,
    center_function: CenterFunction = DEFAULT_CENTER_FUNCTION,
    *,
    precursor_mz: Optional[float] = None,
    collision_energy: Optional[float] = None,
    ms_level: Optional[int] = None,
) -> MergedSpectrum:
    """Merge `sources` into one consensus spectrum.

    Metadata shared by all sources (precursor m/z, collision energy, MS level)
    carries over unless given explicitly; rt is the mean of the known source rts.
    """
    merging_type = MergingType(merging_type)
    mzs, intensities = calculate_merged_mzs_and_intensities(
        sources, noise_level, tolerance, merging_type, center_function
    )
    rts = [s.rt for s in sources if s.rt is not None]
    levels = {int(s.ms_level) for s in sources}
    return MergedSpectrum(
        mzs,
        intensities,
        rt=float(np.mean(rts)) if rts else None,
        precursor_mz=precursor_mz if precursor_mz is not None else _shared([s.precursor_mz for s in sources]),
        precursor_charge=_shared([s.precursor_charge for s in sources]),
        ms_level=int(ms_level) if ms_level is not None else (levels.pop() if len(levels) == 1 else 1),
        collision_energy=collision_energy if collision_energy is not None else _shared([s.collision_energy for s in sources]),
        source_spectra=list(sources),
        merging_type=merging_type,
        center_function=center_function,
    )


def merge_mobility_scans(
    mobility_scans: Sequence[Spectrum],
    scan_number_range: Tuple[int, int],
    precursor_mz: float,
    noise_level: float,
    tolerance: MZTolerance,
    merging_type: MergingType = MergingType.SUMMED,
    *,
    collision_energy: Optional[float] = None,
    ms_level: int = 2,
) -> Optional[MergedSpectrum]:
    """Merge the mobility sub-scans of one PASEF precursor event.

    Scans whose `scan_number` lies in the inclusive `scan_number_range` are
    merged with an intensity-weighted average m/z. The result's `mobility` is the
    highest mobility of the selected scans. Returns None when there is nothing to merge.
    """
    lo, hi = int(scan_number_range[0]), int(scan_number_range[1])
    selected = [s for s in mobility_scans if s.scan_number is not None and lo <= s.scan_number <= hi]
    if not selected:
        return None
    merged = merge_spectra(
        selected,
        noise_level,
        tolerance,
        merging_type,
        DEFAULT_CENTER_FUNCTION,
        precursor_mz=precursor_mz,
        collision_energy=collision_energy,
        ms_level=ms_level,
    )
    mobilities = [s.mobility for s in selected if s.mobility is not None]
    if mobilities:
        merged.mobility = float(max(mobilities))
    return merged


__all__ = [
    "MergingType",
    "DEFAULT_CENTER_FUNCTION",
    "calculate_merged_mzs_and_intensities",
    "merge_spectra",
    "merge_mobility_scans",
]
