"""
spectral_match: consensus merging of spectra + spectral library matching for MS data.
"""

from .merging import MergingType, calculate_merged_mzs_and_intensities, merge_mobility_scans, merge_spectra
from .matcher import (
    LibraryMatcher,
    MatchingResult,
    SpectralMatch,
    SpectralMatchConfig,
    match_query_to_library,
    match_rows,
)
from .spectra import EntryField, FeatureRow, LibraryEntry, MergedSpectrum, SpectralLibrary, Spectrum
from .tolerances import MZTolerance, PercentTolerance, RTTolerance

__version__ = "0.1.0"

__all__ = [
    "MergingType",
    "calculate_merged_mzs_and_intensities",
    "merge_spectra",
    "merge_mobility_scans",
    "LibraryMatcher",
    "MatchingResult",
    "SpectralMatch",
    "SpectralMatchConfig",
    "match_query_to_library",
    "match_rows",
    "EntryField",
    "FeatureRow",
    "LibraryEntry",
    "MergedSpectrum",
    "SpectralLibrary",
    "Spectrum",
    "MZTolerance",
    "PercentTolerance",
    "RTTolerance",
    "__version__",
]
