import threading

import numpy as np
import pytest

from spectral_match import (
    FeatureRow,
    LibraryEntry,
    LibraryMatcher,
    MZTolerance,
    RTTolerance,
    SpectralLibrary,
    SpectralMatchConfig,
    Spectrum,
    match_query_to_library,
    match_rows,
)
from spectral_match.exceptions import ConfigurationError, InvalidInputError
from spectral_match.isotopes import DeisotoperConfig

MZS = [85.0, 110.0, 150.0, 200.0, 250.0]
INTS = [20.0, 50.0, 100.0, 40.0, 70.0]


def _entry(name, precursor_mz=300.10, mzs=MZS, ints=INTS, **fields):
    values = {"NAME": name, "PRECURSOR_MZ": precursor_mz}
    values.update(fields)
    return LibraryEntry(Spectrum(mzs, ints, ms_level=2), values)


def _scan(precursor_mz=300.102, mzs=MZS, ints=INTS, **meta):
    meta.setdefault("ms_level", 2)
    return Spectrum(mzs, ints, precursor_mz=precursor_mz, **meta)


def _config(**kwargs):
    kwargs.setdefault("mz_tolerance", MZTolerance(0.005, 0.0))
    kwargs.setdefault("precursor_tolerance", MZTolerance(0.01, 0.0))
    kwargs.setdefault("n_threads", 2)
    return SpectralMatchConfig(**kwargs)


def test_precursor_filter_selects_entry_within_tolerance():
    library = SpectralLibrary("lib", [_entry("A", 300.10), _entry("B", 305.00)])
    matcher = LibraryMatcher(library, _config())
    matches = matcher.match_scan(_scan(scan_number=3))
    assert [m.entry.name for m in matches] == ["A"]
    assert matches[0].score == pytest.approx(1.0)
    assert matches[0].query_id == 3
    assert matches[0].entry.library_name == "lib"
    assert matcher.match_count == 1


def test_zero_precursor_tolerance_needs_exact_value():
    library = [_entry("A", 300.10)]
    cfg = _config(precursor_tolerance=MZTolerance(0.0, 0.0))
    assert len(match_query_to_library(_scan(300.10), library, cfg)) == 1
    assert match_query_to_library(_scan(300.1001), library, cfg) == []


def test_library_entry_without_precursor_is_rejected_for_ms2():
    library = [_entry("no-precursor", precursor_mz=None)]
    assert match_query_to_library(_scan(), library, _config()) == []
    # MS1 scans skip the precursor check
    ms1 = _scan(precursor_mz=None, ms_level=1)
    assert len(match_query_to_library(ms1, library, _config())) == 1


def test_scan_precursor_override():
    library = [_entry("A", 300.10)]
    assert match_query_to_library(_scan(500.0), library, _config()) == []
    cfg = _config(scan_precursor_mz=300.101)
    assert len(match_query_to_library(_scan(500.0), library, cfg)) == 1


def test_ms2_scan_without_precursor_tolerance_is_a_configuration_error():
    matcher = LibraryMatcher([_entry("A")], _config(ms_level=1, precursor_tolerance=None))
    with pytest.raises(ConfigurationError):
        matcher.match_scan(_scan())


def test_rt_filter():
    library = [_entry("A", RT=5.0)]
    cfg = _config(use_rt=True, rt_tolerance=RTTolerance(0.1))
    assert len(match_query_to_library(_scan(rt=5.05), library, cfg)) == 1
    assert match_query_to_library(_scan(rt=5.2), library, cfg) == []
    # entries without RT pass
    assert len(match_query_to_library(_scan(rt=5.2), [_entry("B")], cfg)) == 1


def test_ccs_filter_and_error():
    library = [_entry("A", CCS=200.0)]
    cfg = _config(ccs_tolerance_percent=1.0)
    matches = match_query_to_library(_scan(ccs=198.5), library, cfg)
    assert len(matches) == 1
    assert matches[0].ccs_error == pytest.approx(-0.75)
    assert match_query_to_library(_scan(ccs=197.0), library, cfg) == []
    # missing CCS on the query passes
    assert len(match_query_to_library(_scan(), library, cfg)) == 1


def test_isotope_pattern_requirement():
    mzs = [100.0, 150.0, 151.0034, 200.0]
    ints = [50.0, 100.0, 40.0, 60.0]
    cfg = _config(needs_isotope_pattern=True, min_matched_iso_signals=1)
    with_iso = [_entry("iso", mzs=mzs, ints=ints)]
    assert len(match_query_to_library(_scan(mzs=mzs, ints=ints), with_iso, cfg)) == 1

    plain = [100.0, 150.0, 175.0, 200.0]
    assert match_query_to_library(_scan(mzs=plain, ints=ints), [_entry("plain", mzs=plain, ints=ints)], cfg) == []


def test_remove_precursor_signal():
    lib_mzs = MZS + [300.10]
    lib_ints = INTS + [1000.0]
    library = [_entry("A", mzs=lib_mzs, ints=lib_ints)]
    assert match_query_to_library(_scan(), library, _config()) == []
    matches = match_query_to_library(_scan(), library, _config(remove_precursor=True))
    assert len(matches) == 1
    assert matches[0].score == pytest.approx(1.0)


def test_deisotoping_removes_query_isotope():
    query = _scan(mzs=MZS + [151.00335], ints=INTS + [30.0])
    library = [_entry("A")]
    low = match_query_to_library(query, library, _config(similarity_params={"min_score": 0.0}))
    high = match_query_to_library(
        query, library, _config(similarity_params={"min_score": 0.0}, deisotoping=DeisotoperConfig())
    )
    assert low[0].score < 0.99
    assert high[0].score == pytest.approx(1.0)


def test_row_keeps_best_match_per_entry_sorted():
    close_ints = [20.0, 50.0, 100.0, 40.0, 35.0]
    library = SpectralLibrary("lib", [_entry("C", ints=close_ints), _entry("A")])
    row = FeatureRow(1, 300.102, rt=5.0, fragment_scans=[_scan(scan_number=i) for i in range(3)])
    matcher = LibraryMatcher(library, _config(all_ms2_spectra=True))
    matches = matcher.match_row_to_libraries(row)
    assert [m.entry.name for m in matches] == ["A", "C"]
    assert matches[0].score >= matches[1].score
    assert row.spectral_matches == matches
    assert matcher.match_count == 2


def test_all_ms2_spectra_compares_every_qualifying_scan():
    noisy = _scan(ints=[1000.0, 10.0, 10.0, 900.0, 10.0], scan_number=1)
    clean = _scan(scan_number=2)
    too_small = _scan(mzs=[110.0, 150.0], ints=[5000.0, 5000.0], scan_number=3)
    library = [_entry("A")]

    row = FeatureRow(1, 300.102, fragment_scans=[too_small, noisy, clean])
    assert match_query_to_library(row, library, _config()) == []

    row = FeatureRow(2, 300.102, fragment_scans=[too_small, noisy, clean])
    matches = match_query_to_library(row, library, _config(all_ms2_spectra=True))
    assert len(matches) == 1
    assert matches[0].query_scan is clean
    assert matches[0].query_id == 2


def test_rows_without_usable_spectra_are_counted_as_errors():
    library = [_entry("A")]
    rows = [
        FeatureRow(1, 300.102),
        FeatureRow(2, 300.102, fragment_scans=[Spectrum(None, None, ms_level=2)]),
        FeatureRow(3, 300.102, fragment_scans=[_scan()]),
    ]
    result = match_rows(rows, library, _config())
    assert result.error_count == 2
    assert result.match_count == 1
    assert result.matches[1] == [] and result.matches[2] == []
    assert len(result.matches[3]) == 1
    assert not result.cancelled


def test_cancelled_batch_admits_no_rows():
    stop = threading.Event()
    stop.set()
    rows = [FeatureRow(i, 300.102, fragment_scans=[_scan()]) for i in range(5)]
    result = match_rows(rows, [_entry("A")], _config(), stop_event=stop)
    assert result.cancelled
    assert result.matches == {}
    assert result.n_units == 5
    assert result.n_finished == 0


def test_parallel_rows_and_progress():
    rows = [FeatureRow(i, 300.102, fragment_scans=[_scan(scan_number=i)]) for i in range(20)]
    matcher = LibraryMatcher([_entry("A"), _entry("B", 305.0)], _config(n_threads=4))
    result = matcher.match_rows(rows)
    assert result.match_count == 20
    assert result.n_finished == 20
    assert matcher.finished_percentage == pytest.approx(1.0)
    assert all(len(r.spectral_matches) == 1 for r in rows)


def test_result_frame_ranks_matches_per_row():
    library = SpectralLibrary("lib", [_entry("C", ints=[20.0, 50.0, 100.0, 40.0, 35.0]), _entry("A")])
    rows = [FeatureRow(7, 300.102, fragment_scans=[_scan(scan_number=11)])]
    frame = match_rows(rows, library, _config()).to_frame()
    assert frame["rank"].tolist() == [1, 2]
    assert frame["entry_name"].tolist() == ["A", "C"]
    assert set(frame["query_id"]) == {7}
    assert frame["query_scan_number"].tolist() == [11, 11]
    assert frame["library"].tolist() == ["lib", "lib"]

    empty = match_rows([], library, _config()).to_frame()
    assert empty.empty
    assert "score" in empty.columns


def test_match_query_to_library_accepts_row_lists():
    rows = [FeatureRow(i, 300.102, fragment_scans=[_scan()]) for i in range(3)]
    matches = match_query_to_library(rows, [_entry("A")], _config())
    assert sorted(m.query_id for m in matches) == [0, 1, 2]


def test_noise_level_removes_query_signals():
    # 20.0 at 85.0 drops below min_match once filtered
    cfg = _config(noise_level=25.0, min_match=5)
    assert match_query_to_library(_scan(), [_entry("A")], cfg) == []


@pytest.mark.parametrize(
    "kwargs",
    [
        {"ms_level": 2, "precursor_tolerance": None},
        {"use_rt": True},
        {"n_threads": 0},
        {"noise_level": -1.0},
        {"similarity": "nope"},
        {"similarity_params": {"min_score": 2.0}},
        {"mz_tolerance": -0.1},
        {"ccs_tolerance_percent": -5.0},
        {"needs_isotope_pattern": True, "min_matched_iso_signals": 0},
    ],
)
def test_invalid_configuration(kwargs):
    with pytest.raises(ConfigurationError):
        SpectralMatchConfig(**kwargs).validate()


def test_config_from_dict():
    cfg = SpectralMatchConfig.from_dict(
        {
            "mz_tolerance": {"mz": 0.002, "ppm": 10},
            "precursor_tolerance": 0.01,
            "similarity": "dot_product",
            "similarity_params": {"assignment": "hungarian", "min_score": 0.5},
            "deisotoping": {"mz_tolerance": 0.001, "maximum_charge": 2},
        }
    )
    assert cfg.mz_tolerance == MZTolerance(0.002, 10.0)
    assert cfg.precursor_tolerance == MZTolerance(0.01, 0.0)
    assert cfg.deisotoping.maximum_charge == 2
    assert cfg.similarity_function().assignment == "hungarian"
    with pytest.raises(ConfigurationError):
        SpectralMatchConfig.from_dict({"unknown_key": 1})
    with pytest.raises(ConfigurationError):
        SpectralMatchConfig.from_dict({"deisotoping": {"charge": 2}})


def test_matched_query_peaks_are_not_modified():
    scan = _scan()
    before = np.array(scan.mzs)
    match_query_to_library(scan, [_entry("A")], _config(crop_spectra_to_overlap=True, remove_precursor=True))
    assert np.array_equal(scan.mzs, before)


def test_fragment_scan_without_mass_list_is_skipped_in_row():
    row = FeatureRow(1, 300.102, fragment_scans=[Spectrum(None, None, ms_level=2), _scan(scan_number=5)])
    result = match_rows([row], [_entry("A")], _config(all_ms2_spectra=True))
    assert result.error_count == 0
    assert result.match_count == 1
    assert result.matches[1][0].query_scan.scan_number == 5


def test_library_entry_with_nan_intensity_is_rejected():
    bad = _entry("bad", ints=[20.0, np.nan, 100.0, 40.0, 70.0])
    with pytest.raises(InvalidInputError):
        LibraryMatcher([_entry("A"), bad], _config())
    with pytest.raises(InvalidInputError):
        match_query_to_library(_scan(), [bad], _config())


def test_crop_to_overlap_lets_narrow_query_match_wider_library():
    library = [_entry("wide", mzs=MZS + [400.0, 450.0, 500.0], ints=INTS + [200.0, 200.0, 200.0])]
    assert match_query_to_library(_scan(), library, _config()) == []
    matches = match_query_to_library(_scan(), library, _config(crop_spectra_to_overlap=True))
    assert len(matches) == 1
    assert matches[0].score == pytest.approx(1.0)


def test_counters_restart_with_each_batch():
    rows = [FeatureRow(i, 300.102, fragment_scans=[_scan()]) for i in range(3)] + [FeatureRow(9, 300.102)]
    matcher = LibraryMatcher([_entry("A")], _config())
    first = matcher.match_rows(rows)
    second = matcher.match_rows(rows)
    assert (first.match_count, first.error_count) == (3, 1)
    assert (second.match_count, second.error_count) == (3, 1)
    assert matcher.finished_percentage == pytest.approx(1.0)


def test_get_scans_returns_filtered_peaks_best_first():
    weak = _scan(ints=[30.0, 30.0, 30.0, 30.0, 10.0], scan_number=1)
    strong = _scan(scan_number=2)
    row = FeatureRow(1, 300.102, fragment_scans=[weak, strong])
    matcher = LibraryMatcher([_entry("A")], _config(noise_level=25.0, all_ms2_spectra=True))
    candidates = matcher.get_scans(row)
    assert [scan.scan_number for scan, _ in candidates] == [2, 1]
    mzs, ints = candidates[0][1]
    assert mzs.tolist() == [110.0, 150.0, 200.0, 250.0]
    assert ints.min() > 25.0
