import numpy as np

from spectral_match.alignment import align, crop_to_overlap, filter_noise, remove_precursor, remove_unaligned
from spectral_match.tolerances import MZTolerance

TOL = MZTolerance(0.005, 0.0)


def _peaks(mzs, ints=None):
    mzs = np.array(mzs, dtype=float)
    ints = np.ones_like(mzs) if ints is None else np.array(ints, dtype=float)
    return mzs, ints


def test_crop_to_overlap_extends_common_span_by_tolerance():
    library = _peaks([100.0, 199.99, 200.0, 300.0, 400.0])
    query = _peaks([199.998, 250.0, 300.004])
    (lib_mz, lib_int), (q_mz, q_int) = crop_to_overlap(TOL, library, query)
    # common span [199.998, 300.004] widened to [199.993, 300.009]
    assert lib_mz.tolist() == [200.0, 300.0]
    assert lib_int.size == 2
    assert q_mz.tolist() == [199.998, 250.0, 300.004]
    assert q_int.size == 3


def test_crop_to_overlap_with_empty_side():
    library = _peaks([100.0, 200.0])
    (lib_mz, _), (q_mz, _) = crop_to_overlap(TOL, library, _peaks([]))
    assert lib_mz.size == 0
    assert q_mz.size == 0


def test_align_prefers_most_intense_query_peak():
    library = _peaks([100.0, 200.0], [10.0, 5.0])
    query = _peaks([99.998, 100.003, 300.0], [1.0, 8.0, 2.0])
    pairs = align(TOL, library, query)
    assert pairs[0][0].mz == 100.0 and pairs[0][1].mz == 100.003
    assert pairs[1][0].mz == 200.0 and pairs[1][1] is None
    assert [q.mz for lib, q in pairs[2:] if lib is None] == [99.998, 300.0]
    assert len(remove_unaligned(pairs)) == 1


def test_noise_and_precursor_removal():
    mzs, ints = filter_noise(*_peaks([100.0, 200.0, 300.0], [5.0, 10.0, 0.0]), 5.0)
    assert mzs.tolist() == [200.0]
    mzs, _ = filter_noise(*_peaks([100.0, 300.0], [5.0, 0.0]), 0.0)
    assert mzs.tolist() == [100.0]
    mzs, _ = remove_precursor(*_peaks([150.0, 300.095, 300.2]), 300.10, MZTolerance(0.01, 0.0))
    assert mzs.tolist() == [150.0, 300.2]
