"""In-memory spectra, library entries and feature rows.

These are the structures handed in by the loading layer. Point arrays are
stored as read-only float64 numpy arrays; m/z order is not guaranteed.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np

from .exceptions import InvalidInputError, MissingMassListError


def _as_points(values: Optional[Iterable[float]]) -> Optional[np.ndarray]:
    if values is None:
        return None
    arr = np.array(values, dtype=np.float64).reshape(-1)
    arr.setflags(write=False)
    return arr


def validate_points(mzs: np.ndarray, intensities: np.ndarray, *, name: str = "spectrum") -> None:
    """Reject NaN m/z or intensity values and negative intensities."""
    if mzs.shape != intensities.shape:
        raise InvalidInputError(
            f"{name}: m/z and intensity arrays differ in length ({mzs.size} vs {intensities.size})."
        )
    if np.isnan(mzs).any() or np.isnan(intensities).any():
        raise InvalidInputError(f"{name}: NaN m/z or intensity values.")
    if (intensities < 0).any():
        raise InvalidInputError(f"{name}: negative intensity values.")


@dataclass(eq=False)
class Spectrum:
    """One acquisition event: points plus scalar metadata.

    `mzs`/`intensities` set to None means the scan carries no mass list.
    """

    mzs: Optional[np.ndarray]
    intensities: Optional[np.ndarray]
    rt: Optional[float] = None
    precursor_mz: Optional[float] = None
    precursor_charge: Optional[int] = None
    ms_level: int = 1
    mobility: Optional[float] = None
    ccs: Optional[float] = None
    scan_number: Optional[int] = None
    collision_energy: Optional[float] = None

    def __post_init__(self) -> None:
        self.mzs = _as_points(self.mzs)
        self.intensities = _as_points(self.intensities)
        if (self.mzs is None) != (self.intensities is None):
            raise InvalidInputError("m/z and intensity arrays must both be given or both be None.")
        if self.mzs is not None and self.mzs.shape != self.intensities.shape:
            raise InvalidInputError(
                f"m/z and intensity arrays differ in length ({self.mzs.size} vs {self.intensities.size})."
            )

    @classmethod
    def from_points(cls, points: Iterable[Tuple[float, float]], **meta: Any) -> "Spectrum":
        pts = list(points)
        mzs = [float(p[0]) for p in pts]
        ints = [float(p[1]) for p in pts]
        return cls(mzs, ints, **meta)

    @property
    def has_mass_list(self) -> bool:
        return self.mzs is not None

    @property
    def n_points(self) -> int:
        return 0 if self.mzs is None else int(self.mzs.size)

    def data_points(self) -> Tuple[np.ndarray, np.ndarray]:
        """Return `(mzs, intensities)`; raises MissingMassListError without a mass list."""
        if self.mzs is None or self.intensities is None:
            raise MissingMassListError(f"No mass list in spectrum: {self}")
        return self.mzs, self.intensities

    def points(self) -> List[Tuple[float, float]]:
        mzs, ints = self.data_points()
        return list(zip(mzs.tolist(), ints.tolist()))

    def tic(self) -> float:
        if self.intensities is None:
            return 0.0
        return float(self.intensities.sum())

    def base_peak_intensity(self) -> float:
        if self.intensities is None or self.intensities.size == 0:
            return 0.0
        return float(self.intensities.max())

    def __repr__(self) -> str:
        parts = [f"ms{self.ms_level}"]
        if self.scan_number is not None:
            parts.append(f"#{self.scan_number}")
        if self.rt is not None:
            parts.append(f"rt={self.rt:.3f}")
        if self.precursor_mz is not None:
            parts.append(f"prec={self.precursor_mz:.4f}")
        parts.append(f"n={self.n_points}")
        return f"Spectrum({', '.join(parts)})"


@dataclass(eq=False, repr=False)
class MergedSpectrum(Spectrum):
    """Consensus spectrum built by the merger from several source spectra."""

    source_spectra: List[Spectrum] = field(default_factory=list)
    merging_type: Any = None
    center_function: Any = None


class EntryField(str, Enum):
    NAME = "NAME"
    RT = "RT"
    CCS = "CCS"
    PRECURSOR_MZ = "PRECURSOR_MZ"
    CHARGE = "CHARGE"
    ION_TYPE = "ION_TYPE"
    FORMULA = "FORMULA"
    SMILES = "SMILES"
    INCHIKEY = "INCHIKEY"
    MS_LEVEL = "MS_LEVEL"
    ENTRY_ID = "ENTRY_ID"


FieldKey = Union[EntryField, str]


def _field_name(key: FieldKey) -> str:
    return key.value if isinstance(key, EntryField) else str(key).upper()


@dataclass(eq=False)
class LibraryEntry:
    """Reference spectrum plus a bag of named attributes."""

    spectrum: Spectrum
    fields: Dict[str, Any] = field(default_factory=dict)
    library_name: str = ""

    def __post_init__(self) -> None:
        self.fields = {_field_name(k): v for k, v in dict(self.fields).items()}

    def get_field(self, key: FieldKey) -> Any:
        return self.fields.get(_field_name(key))

    def get_or_else(self, key: FieldKey, default: Any = None, dtype: Optional[type] = None) -> Any:
        """Typed field access; `default` when absent, None, NaN or not convertible to `dtype`."""
        value = self.get_field(key)
        if value is None:
            return default
        if isinstance(value, float) and math.isnan(value):
            return default
        if dtype is None:
            return value
        try:
            return dtype(value)
        except (TypeError, ValueError):
            return default

    @property
    def name(self) -> str:
        return str(self.get_or_else(EntryField.NAME, ""))

    @property
    def precursor_mz(self) -> Optional[float]:
        value = self.get_or_else(EntryField.PRECURSOR_MZ, None, float)
        if value is None:
            value = self.spectrum.precursor_mz
        return value

    @property
    def rt(self) -> Optional[float]:
        value = self.get_or_else(EntryField.RT, None, float)
        if value is None:
            value = self.spectrum.rt
        return value

    @property
    def ccs(self) -> Optional[float]:
        value = self.get_or_else(EntryField.CCS, None, float)
        if value is None:
            value = self.spectrum.ccs
        return value

    def __repr__(self) -> str:
        label = self.name or self.get_or_else(EntryField.ENTRY_ID, "?")
        return f"LibraryEntry({label!r}, library={self.library_name!r})"


@dataclass(eq=False)
class SpectralLibrary:
    name: str
    entries: List[LibraryEntry] = field(default_factory=list)

    def __post_init__(self) -> None:
        for e in self.entries:
            if not e.library_name:
                e.library_name = self.name

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[LibraryEntry]:
        return iter(self.entries)


@dataclass(eq=False)
class FeatureRow:
    """Feature list row: aggregate m/z, RT and CCS plus candidate spectra.

    `spectral_matches` is written by the matcher only.
    """

    row_id: int
    mz: float
    rt: Optional[float] = None
    ccs: Optional[float] = None
    fragment_scans: List[Spectrum] = field(default_factory=list)
    representative_scan: Optional[Spectrum] = None
    spectral_matches: List[Any] = field(default_factory=list)

    def __repr__(self) -> str:
        return f"FeatureRow(id={self.row_id}, mz={self.mz:.4f}, n_ms2={len(self.fragment_scans)})"


def combine_library_entries(libraries: Union[SpectralLibrary, Sequence[Union[SpectralLibrary, LibraryEntry]]]) -> List[LibraryEntry]:
    """Flatten libraries (or loose entries) into one list, preserving order."""
    if isinstance(libraries, SpectralLibrary):
        return list(libraries.entries)
    entries: List[LibraryEntry] = []
    for lib in libraries:
        if isinstance(lib, LibraryEntry):
            entries.append(lib)
        else:
            entries.extend(lib.entries)
    return entries


__all__ = [
    "Spectrum",
    "MergedSpectrum",
    "EntryField",
    "LibraryEntry",
    "SpectralLibrary",
    "FeatureRow",
    "combine_library_entries",
    "validate_points",
]
