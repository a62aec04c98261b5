"""Spectral library matching.

Compares query spectra (a single scan, or feature list rows owning candidate
fragment scans) against the combined entries of one or more spectral
libraries. A comparison only produces a `SpectralMatch` when every enabled
filter passes (RT, precursor m/z, CCS, isotope corroboration) and the
similarity function accepts the pair.

Row mode keeps the best match per (row, library entry) and runs rows on a
thread pool. Workers share the read-only entry list and three atomic
counters; each row's match list is written by its own worker only.
"""
from __future__ import annotations

import logging
import math
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from .alignment import PeakArrays, crop_to_overlap, filter_noise, remove_precursor
from .exceptions import ConfigurationError, InvalidInputError, MissingMassListError
from .isotopes import DeisotoperConfig, check_for_isotope_pattern, filter_isotopes
from .similarity import SimilarityFunction, SpectralSimilarity, create_similarity_function
from .spectra import (
    FeatureRow,
    LibraryEntry,
    SpectralLibrary,
    Spectrum,
    combine_library_entries,
    validate_points,
)
from .tolerances import MZTolerance, PercentTolerance, RTTolerance, percent_error

logger = logging.getLogger(__name__)


@dataclass
class SpectralMatchConfig:
    """Configuration for spectral library matching."""

    # m/z tolerance for comparing spectral signals
    mz_tolerance: MZTolerance = MZTolerance(0.005, 15.0)
    # precursor m/z tolerance; required for MS level > 1
    precursor_tolerance: Optional[MZTolerance] = MZTolerance(0.01, 20.0)
    # MS level of the row candidate spectra (scan mode uses the scan's level)
    ms_level: int = 2
    # minimum number of aligned signals
    min_match: int = 4

    # Similarity function, selected by name: "weighted_cosine" | "dot_product" | "modified_cosine"
    similarity: str = "weighted_cosine"
    similarity_params: Dict[str, Any] = field(default_factory=lambda: {"min_score": 0.7})

    # Signals at or below this intensity are ignored in query spectra
    noise_level: float = 0.0

    # Retention time filter
    use_rt: bool = False
    rt_tolerance: Optional[RTTolerance] = None

    # CCS filter: relative tolerance in percent, None disables it
    ccs_tolerance_percent: Optional[float] = None

    # Require matched signals to contain isotope/adduct spacings
    needs_isotope_pattern: bool = False
    min_matched_iso_signals: int = 3

    # Remove 13C isotopes from query and library spectra (None disables)
    deisotoping: Optional[DeisotoperConfig] = None

    # Crop spectra to their overlapping m/z range (different fragmentation energies)
    crop_spectra_to_overlap: bool = False
    # Remove signals within precursor tolerance of the precursor m/z (MS level > 1)
    remove_precursor: bool = False

    # Row mode: compare all qualifying MS2 scans (True) or only the one with highest TIC
    all_ms2_spectra: bool = False
    # Scan mode: use this precursor m/z instead of the scan's own
    scan_precursor_mz: Optional[float] = None

    n_threads: int = 4

    def validate(self) -> "SpectralMatchConfig":
        """Coerce tolerance values and reject invalid settings.

        Raises:
            ConfigurationError: on any invalid or inconsistent setting.
        """
        try:
            self.mz_tolerance = MZTolerance.coerce(self.mz_tolerance)
            if self.precursor_tolerance is not None:
                self.precursor_tolerance = MZTolerance.coerce(self.precursor_tolerance)
            if self.rt_tolerance is not None:
                self.rt_tolerance = RTTolerance.coerce(self.rt_tolerance)
        except (InvalidInputError, TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid tolerance: {e}") from e

        if int(self.ms_level) < 1:
            raise ConfigurationError(f"ms_level must be >= 1, got {self.ms_level!r}.")
        if int(self.ms_level) > 1 and self.precursor_tolerance is None:
            raise ConfigurationError("precursor_tolerance is required for MS level > 1.")
        if int(self.min_match) < 0:
            raise ConfigurationError(f"min_match must be >= 0, got {self.min_match!r}.")
        noise = float(self.noise_level)
        if math.isnan(noise) or noise < 0:
            raise ConfigurationError(f"noise_level must be >= 0, got {self.noise_level!r}.")
        if self.use_rt and self.rt_tolerance is None:
            raise ConfigurationError("rt_tolerance is required when use_rt=True.")
        if self.ccs_tolerance_percent is not None and not float(self.ccs_tolerance_percent) >= 0:
            raise ConfigurationError(f"ccs_tolerance_percent must be >= 0, got {self.ccs_tolerance_percent!r}.")
        if self.needs_isotope_pattern and int(self.min_matched_iso_signals) < 1:
            raise ConfigurationError("min_matched_iso_signals must be >= 1 when needs_isotope_pattern=True.")
        if self.deisotoping is not None and not isinstance(self.deisotoping, DeisotoperConfig):
            raise ConfigurationError("deisotoping must be a DeisotoperConfig or None.")
        if int(self.n_threads) < 1:
            raise ConfigurationError(f"n_threads must be >= 1, got {self.n_threads!r}.")
        self.similarity_function()
        return self

    def similarity_function(self) -> SimilarityFunction:
        return create_similarity_function(self.similarity, **dict(self.similarity_params or {}))

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> "SpectralMatchConfig":
        """Build a validated config from plain values (e.g. parsed YAML/JSON)."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {unknown}")
        kwargs = dict(values)
        deiso = kwargs.get("deisotoping")
        if isinstance(deiso, dict):
            deiso = dict(deiso)
            if "mz_tolerance" in deiso:
                deiso["mz_tolerance"] = MZTolerance.coerce(deiso["mz_tolerance"])
            try:
                kwargs["deisotoping"] = DeisotoperConfig(**deiso)
            except TypeError as e:
                raise ConfigurationError(f"Invalid deisotoping parameters: {e}") from e
        return cls(**kwargs).validate()


@dataclass(frozen=True, eq=False)
class SpectralMatch:
    """One accepted library hit for a query scan or row."""

    entry: LibraryEntry
    similarity: SpectralSimilarity
    query_scan: Optional[Spectrum]
    query_id: Any
    ccs_error: Optional[float] = None

    @property
    def score(self) -> float:
        return self.similarity.score

    def to_record(self) -> Dict[str, Any]:
        return {
            "query_id": self.query_id,
            "library": self.entry.library_name,
            "entry_name": self.entry.name,
            "score": self.similarity.score,
            "n_matched_signals": self.similarity.overlapping_signals,
            "similarity": self.similarity.function_name,
            "library_precursor_mz": self.entry.precursor_mz,
            "library_rt": self.entry.rt,
            "ccs_error_percent": self.ccs_error,
            "query_scan_number": None if self.query_scan is None else self.query_scan.scan_number,
        }


def sort_matches(matches: List[SpectralMatch]) -> List[SpectralMatch]:
    """Sort by similarity score, best first (stable for ties)."""
    return sorted(matches, key=lambda m: m.score, reverse=True)


class AtomicCounter:
    def __init__(self, value: int = 0) -> None:
        self._value = int(value)
        self._lock = threading.Lock()

    def increment(self, n: int = 1) -> int:
        with self._lock:
            self._value += n
            return self._value

    @property
    def value(self) -> int:
        return self._value


@dataclass
class MatchingResult:
    # query id (row id or scan number) -> matches sorted by score
    matches: Dict[Any, List[SpectralMatch]]
    match_count: int
    error_count: int
    n_units: int
    n_finished: int
    cancelled: bool = False

    def all_matches(self) -> List[SpectralMatch]:
        return [m for ms in self.matches.values() for m in ms]

    def to_frame(self) -> pd.DataFrame:
        """One row per match with its rank within the query unit."""
        records = []
        for ms in self.matches.values():
            for rank, m in enumerate(ms, start=1):
                rec = m.to_record()
                rec["rank"] = rank
                records.append(rec)
        cols = [
            "query_id", "rank", "library", "entry_name", "score", "n_matched_signals", "similarity",
            "library_precursor_mz", "library_rt", "ccs_error_percent", "query_scan_number",
        ]
        if not records:
            return pd.DataFrame(columns=cols)
        return pd.DataFrame.from_records(records)[cols]


LibraryInput = Union[SpectralLibrary, Sequence[Union[SpectralLibrary, LibraryEntry]]]


class LibraryMatcher:
    """Match scans or feature list rows against spectral library entries.

    Match and error counters restart with every `match_rows` batch; `match_scan`
    calls add to the current counts.
    """

    def __init__(
        self,
        libraries: LibraryInput,
        config: Optional[SpectralMatchConfig] = None,
        *,
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        self.config = (config or SpectralMatchConfig()).validate()
        # combined once, read-only afterwards
        self.entries: List[LibraryEntry] = combine_library_entries(libraries)
        for entry in self.entries:
            if entry.spectrum.has_mass_list:
                validate_points(*entry.spectrum.data_points(), name=repr(entry))
        self.similarity_function = self.config.similarity_function()
        self.ccs_tolerance = (
            None if self.config.ccs_tolerance_percent is None
            else PercentTolerance(float(self.config.ccs_tolerance_percent))
        )
        self._stop_event = stop_event or threading.Event()
        self._reset_counters()
        self._total_rows = 0

    def _reset_counters(self) -> None:
        self._matches = AtomicCounter()
        self._errors = AtomicCounter()
        self._finished_rows = AtomicCounter()

    def cancel(self) -> None:
        self._stop_event.set()

    def is_cancelled(self) -> bool:
        return self._stop_event.is_set()

    @property
    def match_count(self) -> int:
        return self._matches.value

    @property
    def error_count(self) -> int:
        return self._errors.value

    @property
    def finished_percentage(self) -> float:
        return 0.0 if self._total_rows == 0 else self._finished_rows.value / float(self._total_rows)

    def check_rt(self, rt: Optional[float], entry: LibraryEntry) -> bool:
        if not self.config.use_rt or rt is None:
            return True
        lib_rt = entry.rt
        return lib_rt is None or self.config.rt_tolerance.check_within_tolerance(lib_rt, rt)

    def check_precursor_mz(self, precursor_mz: Optional[float], entry: LibraryEntry) -> bool:
        lib_prec = entry.precursor_mz
        if lib_prec is None or precursor_mz is None:
            return False
        return self.config.precursor_tolerance.check_within_tolerance(lib_prec, precursor_mz)

    def check_ccs(self, ccs: Optional[float], entry: LibraryEntry) -> bool:
        return self.ccs_tolerance is None or self.ccs_tolerance.matches(ccs, entry.ccs)

    def _remove_isotopes(self, mzs: np.ndarray, intensities: np.ndarray) -> PeakArrays:
        return filter_isotopes(mzs, intensities, self.config.deisotoping)

    def get_data_points(self, scan: Optional[Spectrum], noise_filter: bool = True) -> PeakArrays:
        """Noise-filtered (and optionally deisotoped) mass list of `scan`.

        Raises:
            MissingMassListError: if `scan` is None or has no mass list.
        """
        if scan is None:
            raise MissingMassListError("No scan given.")
        mzs, intensities = scan.data_points()
        validate_points(mzs, intensities, name=repr(scan))
        if noise_filter:
            mzs, intensities = filter_noise(mzs, intensities, self.config.noise_level)
        if self.config.deisotoping is not None:
            mzs, intensities = self._remove_isotopes(mzs, intensities)
        return mzs, intensities

    def get_scans(self, row: FeatureRow) -> List[Tuple[Spectrum, PeakArrays]]:
        """Candidate spectra of a row with their filtered peak lists, best first.

        MS1: the representative scan. MS2: fragment scans with at least
        `min_match` signals above noise, by descending TIC; only the first
        unless `all_ms2_spectra`. Fragment scans without a mass list are skipped.

        Raises:
            MissingMassListError: if no candidate is left.
        """
        if int(self.config.ms_level) == 1:
            if row.representative_scan is None:
                raise MissingMassListError(f"No representative scan for rowID={row.row_id}")
            return [(row.representative_scan, self.get_data_points(row.representative_scan))]

        scored = []
        for scan in row.fragment_scans:
            try:
                mzs, intensities = self.get_data_points(scan)
            except MissingMassListError:
                logger.debug("Skipping fragment scan without mass list for rowID=%s: %r", row.row_id, scan)
                continue
            if mzs.size >= int(self.config.min_match):
                scored.append((float(intensities.sum()), scan, (mzs, intensities)))
        if not scored:
            raise MissingMassListError(f"No fragment scans with enough signals for rowID={row.row_id}")
        scored.sort(key=lambda t: t[0], reverse=True)
        candidates = [(scan, points) for _, scan, points in scored]
        return candidates if self.config.all_ms2_spectra else candidates[:1]

    def match_spectrum(
        self,
        rt: Optional[float],
        precursor_mz: Optional[float],
        ccs: Optional[float],
        query: PeakArrays,
        entry: LibraryEntry,
        ms_level: Optional[int] = None,
    ) -> Optional[SpectralSimilarity]:
        """Compare one query peak list with one library entry.

        Returns the similarity, or None if any filter rejects the pair.
        """
        cfg = self.config
        ms_level = int(cfg.ms_level if ms_level is None else ms_level)
        if not self.check_rt(rt, entry):
            return None
        if ms_level > 1 and not self.check_precursor_mz(precursor_mz, entry):
            return None
        if not self.check_ccs(ccs, entry):
            return None

        if not entry.spectrum.has_mass_list:
            return None
        library = entry.spectrum.data_points()
        if cfg.deisotoping is not None:
            library = self._remove_isotopes(*library)

        if cfg.crop_spectra_to_overlap:
            library, query = crop_to_overlap(cfg.mz_tolerance, library, query)

        lib_prec = entry.precursor_mz
        if ms_level > 1 and cfg.remove_precursor and lib_prec is not None:
            library = remove_precursor(library[0], library[1], lib_prec, cfg.precursor_tolerance)
            query = remove_precursor(query[0], query[1], lib_prec, cfg.precursor_tolerance)

        sim = self.similarity_function.score(
            library, query, cfg.mz_tolerance, int(cfg.min_match), precursor_mzs=(lib_prec, precursor_mz)
        )
        if sim is None:
            return None
        if cfg.needs_isotope_pattern and not check_for_isotope_pattern(
            sim, cfg.mz_tolerance, int(cfg.min_matched_iso_signals)
        ):
            return None
        return sim

    def match_scan(self, scan: Spectrum) -> List[SpectralMatch]:
        """Compare one scan with every entry; all passing hits are kept."""
        ms_level = int(scan.ms_level)
        if ms_level > 1 and self.config.precursor_tolerance is None:
            raise ConfigurationError("precursor_tolerance is required for MS level > 1.")
        precursor_mz = self.config.scan_precursor_mz
        if precursor_mz is None:
            precursor_mz = scan.precursor_mz
        ccs = scan.ccs if self.ccs_tolerance is not None else None

        logger.info("Comparing %d library spectra to scan: %r", len(self.entries), scan)
        try:
            query = self.get_data_points(scan)
        except MissingMassListError:
            logger.warning("No mass list in spectrum: %r", scan, exc_info=True)
            self._errors.increment()
            return []

        found: List[SpectralMatch] = []
        for entry in self.entries:
            sim = self.match_spectrum(scan.rt, precursor_mz, ccs, query, entry, ms_level=ms_level)
            if sim is not None:
                found.append(SpectralMatch(entry, sim, scan, scan.scan_number, percent_error(ccs, entry.ccs)))
                self._matches.increment()

        found = sort_matches(found)
        logger.info(
            "library matches=%d (Errors:%d); library entries=%d; for scan: %r",
            len(found), self.error_count, len(self.entries), scan,
        )
        return found

    def match_row_to_libraries(self, row: FeatureRow) -> List[SpectralMatch]:
        """Best match per library entry over all candidate scans of `row`.

        The sorted list is stored on `row.spectral_matches` and returned. Rows
        without usable spectra are logged, counted as errors and skipped.
        """
        try:
            candidates = self.get_scans(row)
        except MissingMassListError:
            logger.warning("No mass list in spectrum for rowID=%s", row.row_id, exc_info=True)
            self._errors.increment()
            return []

        found: List[SpectralMatch] = []
        for entry in self.entries:
            best: Optional[SpectralMatch] = None
            for scan, query in candidates:
                sim = self.match_spectrum(row.rt, row.mz, row.ccs, query, entry)
                if sim is not None and (best is None or best.score < sim.score):
                    best = SpectralMatch(entry, sim, scan, row.row_id, percent_error(row.ccs, entry.ccs))
            if best is not None:
                found.append(best)
                self._matches.increment()

        found = sort_matches(found)
        row.spectral_matches = found
        return found

    def _process_row(self, row: FeatureRow) -> Optional[List[SpectralMatch]]:
        if self.is_cancelled():
            return None
        try:
            return self.match_row_to_libraries(row)
        finally:
            self._finished_rows.increment()

    def match_rows(self, rows: Sequence[FeatureRow]) -> MatchingResult:
        """Match all rows in parallel; stops admitting rows once cancelled.

        Counters restart at zero for every batch.
        """
        rows = list(rows)
        self._reset_counters()
        self._total_rows = len(rows)
        logger.info("Comparing %d library spectra to %d feature list rows", len(self.entries), len(rows))

        results: Dict[Any, List[SpectralMatch]] = {}
        with ThreadPoolExecutor(max_workers=int(self.config.n_threads)) as executor:
            futures = [(row, executor.submit(self._process_row, row)) for row in rows]
            for row, future in futures:
                found = future.result()
                if found is not None:
                    results[row.row_id] = found

        logger.info(
            "library matches=%d (Errors:%d); rows=%d; library entries=%d",
            self.match_count, self.error_count, len(rows), len(self.entries),
        )
        return MatchingResult(
            matches=results,
            match_count=self.match_count,
            error_count=self.error_count,
            n_units=len(rows),
            n_finished=len(results),
            cancelled=self.is_cancelled(),
        )


def match_rows(
    rows: Sequence[FeatureRow],
    libraries: LibraryInput,
    config: Optional[SpectralMatchConfig] = None,
    *,
    stop_event: Optional[threading.Event] = None,
) -> MatchingResult:
    return LibraryMatcher(libraries, config, stop_event=stop_event).match_rows(rows)


def match_query_to_library(
    query: Union[Spectrum, FeatureRow, Iterable[FeatureRow]],
    libraries: LibraryInput,
    config: Optional[SpectralMatchConfig] = None,
) -> List[SpectralMatch]:
    """Match a scan, a row or a list of rows; returns all accepted matches.

    For rows, the per-row lists are also stored on `row.spectral_matches`.
    """
    matcher = LibraryMatcher(libraries, config)
    if isinstance(query, Spectrum):
        return matcher.match_scan(query)
    if isinstance(query, FeatureRow):
        return matcher.match_row_to_libraries(query)
    return matcher.match_rows(list(query)).all_matches()


__all__ = [
    "SpectralMatchConfig",
    "SpectralMatch",
    "MatchingResult",
    "LibraryMatcher",
    "AtomicCounter",
    "sort_matches",
    "match_rows",
    "match_query_to_library",
]
