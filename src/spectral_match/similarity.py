"""
Spectral similarity functions.

All variants share one call signature

    score(library, query, tolerance, min_match, precursor_mzs=None) -> Optional[SpectralSimilarity]

where `library` and `query` are `(mzs, intensities)` arrays. A function returns
None when fewer than `min_match` peaks align or when the score is below its
`min_score`. Variants are selected by name through `create_similarity_function`.

- weighted_cosine: alignment-based cosine with m/z and intensity weighting and a
  policy for peaks without partner.
- dot_product: normalized peak-pair products, paired greedily or by optimal
  assignment (Hungarian, via scipy).
- modified_cosine: dot_product that also pairs peaks shifted by the precursor
  m/z difference.
"""
from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Type

import numpy as np
from scipy.optimize import linear_sum_assignment  # type: ignore

from .alignment import AlignedPair, Peak, PeakArrays, align, as_arrays
from .exceptions import ConfigurationError
from .tolerances import MZTolerance


@dataclass(frozen=True)
class SpectralSimilarity:
    function_name: str
    score: float
    overlapping_signals: int
    aligned_pairs: List[AlignedPair] = field(default_factory=list, repr=False)

    def library_aligned_mzs(self) -> np.ndarray:
        """m/z values of library peaks that have a query partner."""
        return np.array(
            [lib.mz for lib, q in self.aligned_pairs if lib is not None and q is not None],
            dtype=float,
        )


def _weights(mzs: np.ndarray, intensities: np.ndarray, mz_weight: float, intensity_weight: float) -> np.ndarray:
    w = np.power(np.clip(intensities, 0.0, np.inf), intensity_weight)
    if mz_weight != 0:
        w = w * np.power(mzs, mz_weight)
    return w


@dataclass
class SimilarityFunction(ABC):
    """Common parameters and validation for all variants."""

    name = "base"

    min_score: float = 0.0

    def __post_init__(self) -> None:
        if not (0.0 <= float(self.min_score) <= 1.0):
            raise ConfigurationError(f"min_score must be within [0, 1], got {self.min_score!r}.")

    @abstractmethod
    def score(
        self,
        library: PeakArrays,
        query: PeakArrays,
        tolerance: MZTolerance,
        min_match: int,
        precursor_mzs: Optional[Tuple[Optional[float], Optional[float]]] = None,
    ) -> Optional[SpectralSimilarity]:
        """Similarity of `query` to `library`, or None if the pair is rejected."""

    def _result(self, score: float, overlap: int, pairs: List[AlignedPair], min_match: int) -> Optional[SpectralSimilarity]:
        if overlap < int(min_match) or not math.isfinite(score) or score < float(self.min_score):
            return None
        return SpectralSimilarity(self.name, float(score), int(overlap), pairs)


@dataclass
class WeightedCosineSimilarity(SimilarityFunction):
    name = "weighted_cosine"

    mz_weight: float = 0.0
    intensity_weight: float = 1.0
    # "keep_all" | "keep_library" | "keep_experimental" | "remove_all"
    unmatched_signals: str = "keep_all"

    def __post_init__(self) -> None:
        super().__post_init__()
        if self.unmatched_signals not in {"keep_all", "keep_library", "keep_experimental", "remove_all"}:
            raise ConfigurationError(f"Unsupported unmatched_signals option: {self.unmatched_signals!r}")

    def _filter_pairs(self, pairs: List[AlignedPair]) -> List[AlignedPair]:
        opt = self.unmatched_signals
        if opt == "keep_all":
            return pairs
        if opt == "keep_library":
            return [p for p in pairs if p[0] is not None]
        if opt == "keep_experimental":
            return [p for p in pairs if p[1] is not None]
        return [p for p in pairs if p[0] is not None and p[1] is not None]

    def score(self, library, query, tolerance, min_match, precursor_mzs=None):
        pairs = self._filter_pairs(align(tolerance, library, query))
        overlap = sum(1 for lib, q in pairs if lib is not None and q is not None)
        if overlap < int(min_match) or not pairs:
            return None

        lib_mz = np.array([p[0].mz if p[0] is not None else 0.0 for p in pairs])
        lib_int = np.array([p[0].intensity if p[0] is not None else 0.0 for p in pairs])
        q_mz = np.array([p[1].mz if p[1] is not None else 0.0 for p in pairs])
        q_int = np.array([p[1].intensity if p[1] is not None else 0.0 for p in pairs])

        a = _weights(lib_mz, lib_int, self.mz_weight, self.intensity_weight)
        b = _weights(q_mz, q_int, self.mz_weight, self.intensity_weight)
        denom = float(np.linalg.norm(a) * np.linalg.norm(b))
        cosine = float(a @ b) / denom if denom > 0 else 0.0
        return self._result(cosine, overlap, pairs, min_match)


@dataclass
class DotProductSimilarity(SimilarityFunction):
    name = "dot_product"

    mz_weight: float = 0.0
    intensity_weight: float = 1.0
    assignment: str = "greedy"  # "greedy" | "hungarian"

    def __post_init__(self) -> None:
        super().__post_init__()
        if self.assignment not in {"greedy", "hungarian"}:
            raise ConfigurationError(f"Unsupported assignment: {self.assignment!r}")

    def _shifts(self, precursor_mzs) -> List[float]:
        return [0.0]

    def _candidate_pairs(
        self, lib_mz: np.ndarray, q_mz: np.ndarray, tolerance: MZTolerance, shifts: List[float]
    ) -> List[Tuple[int, int]]:
        q_order = np.argsort(q_mz, kind="stable")
        q_sorted = q_mz[q_order]
        seen = set()
        out: List[Tuple[int, int]] = []
        for shift in shifts:
            for i, mz in enumerate(lib_mz):
                target = float(mz) + shift
                tol = tolerance.get_mz_tolerance_for_mass(target)
                left = np.searchsorted(q_sorted, target - tol, side="left")
                right = np.searchsorted(q_sorted, target + tol, side="right")
                for j in q_order[left:right]:
                    key = (i, int(j))
                    if key not in seen:
                        seen.add(key)
                        out.append(key)
        return out

    def score(self, library, query, tolerance, min_match, precursor_mzs=None):
        lib_mz, lib_int = as_arrays(*library)
        q_mz, q_int = as_arrays(*query)
        if lib_mz.size == 0 or q_mz.size == 0:
            return None

        a = _weights(lib_mz, lib_int, self.mz_weight, self.intensity_weight)
        b = _weights(q_mz, q_int, self.mz_weight, self.intensity_weight)
        na, nb = float(np.linalg.norm(a)), float(np.linalg.norm(b))
        if na <= 0 or nb <= 0:
            return None
        a, b = a / na, b / nb

        candidates = self._candidate_pairs(lib_mz, q_mz, tolerance, self._shifts(precursor_mzs))
        if len(candidates) < int(min_match):
            return None

        if self.assignment == "hungarian":
            matched = self._hungarian(candidates, a, b)
        else:
            matched = self._greedy(candidates, a, b)

        score = float(sum(a[i] * b[j] for i, j in matched))
        pairs: List[AlignedPair] = []
        used_lib = {i for i, _ in matched}
        used_q = {j for _, j in matched}
        for i, j in matched:
            pairs.append((Peak(float(lib_mz[i]), float(lib_int[i])), Peak(float(q_mz[j]), float(q_int[j]))))
        for i in range(lib_mz.size):
            if i not in used_lib:
                pairs.append((Peak(float(lib_mz[i]), float(lib_int[i])), None))
        for j in range(q_mz.size):
            if j not in used_q:
                pairs.append((None, Peak(float(q_mz[j]), float(q_int[j]))))
        return self._result(min(score, 1.0), len(matched), pairs, min_match)

    @staticmethod
    def _greedy(candidates: List[Tuple[int, int]], a: np.ndarray, b: np.ndarray) -> List[Tuple[int, int]]:
        ranked = sorted(candidates, key=lambda ij: a[ij[0]] * b[ij[1]], reverse=True)
        used_lib, used_q = set(), set()
        matched: List[Tuple[int, int]] = []
        for i, j in ranked:
            if i in used_lib or j in used_q:
                continue
            used_lib.add(i)
            used_q.add(j)
            matched.append((i, j))
        return matched

    @staticmethod
    def _hungarian(candidates: List[Tuple[int, int]], a: np.ndarray, b: np.ndarray) -> List[Tuple[int, int]]:
        rows = sorted({i for i, _ in candidates})
        cols = sorted({j for _, j in candidates})
        r_pos = {i: k for k, i in enumerate(rows)}
        c_pos = {j: k for k, j in enumerate(cols)}
        cost = np.zeros((len(rows), len(cols)), dtype=float)
        allowed = np.zeros_like(cost, dtype=bool)
        for i, j in candidates:
            cost[r_pos[i], c_pos[j]] = -a[i] * b[j]
            allowed[r_pos[i], c_pos[j]] = True
        ri, ci = linear_sum_assignment(cost)
        return [(rows[r], cols[c]) for r, c in zip(ri, ci) if allowed[r, c]]


@dataclass
class ModifiedCosineSimilarity(DotProductSimilarity):
    """Dot product allowing fragment pairs shifted by the precursor m/z difference.

    Without both precursor m/z values this reduces to `dot_product`.
    """

    name = "modified_cosine"

    def _shifts(self, precursor_mzs) -> List[float]:
        if not precursor_mzs:
            return [0.0]
        lib_prec, q_prec = precursor_mzs
        if lib_prec is None or q_prec is None:
            return [0.0]
        delta = float(q_prec) - float(lib_prec)
        return [0.0] if delta == 0 else [0.0, delta]


SIMILARITY_FUNCTIONS: Dict[str, Type[SimilarityFunction]] = {
    WeightedCosineSimilarity.name: WeightedCosineSimilarity,
    DotProductSimilarity.name: DotProductSimilarity,
    ModifiedCosineSimilarity.name: ModifiedCosineSimilarity,
}


def create_similarity_function(name: str, **params) -> SimilarityFunction:
    key = str(name or "").strip().lower().replace("-", "_")
    cls = SIMILARITY_FUNCTIONS.get(key)
    if cls is None:
        raise ConfigurationError(
            f"Unknown similarity function {name!r}; expected one of {sorted(SIMILARITY_FUNCTIONS)}."
        )
    try:
        return cls(**params)
    except TypeError as e:
        raise ConfigurationError(f"Invalid parameters for {key}: {e}") from e


__all__ = [
    "SpectralSimilarity",
    "SimilarityFunction",
    "WeightedCosineSimilarity",
    "DotProductSimilarity",
    "ModifiedCosineSimilarity",
    "SIMILARITY_FUNCTIONS",
    "create_similarity_function",
]
