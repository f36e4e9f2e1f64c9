"""Tests for peak finding and QTL intervals."""

import math

import numpy as np
import pandas as pd
import pytest

from qtlmap.peaks import bayes_int, find_peaks, lod_int
from qtlmap.scan import ScanResult


def _make_result(trait="y"):
    lod1 = [0.0, 1.0, 5.0, 2.0, 0.5, 2.0, 4.0, 1.0, 0.0, 0.0]
    lod2 = [0.2, 0.4, 3.5, 0.1]
    table = pd.DataFrame({
        "marker": [f"a{i}" for i in range(10)] + [f"b{i}" for i in range(4)],
        "chr": ["1"] * 10 + ["2"] * 4,
        "pos": list(np.arange(10.0)) + [0.0, 5.0, 10.0, 15.0],
        "lod": lod1 + lod2,
    })
    return ScanResult(trait, table)


class TestFindPeaks:
    def test_one_peak_per_chromosome(self):
        peaks = find_peaks(_make_result(), threshold=3.0)
        assert peaks["marker"].tolist() == ["a2", "b2"]
        assert list(peaks.columns) == ["trait", "chr", "marker", "pos", "lod"]

    def test_peakdrop_splits(self):
        peaks = find_peaks(_make_result(), threshold=3.0, peakdrop=1.5)
        assert peaks["marker"].tolist() == ["a2", "a6", "b2"]

    def test_peakdrop_deeper_than_dip(self):
        peaks = find_peaks(_make_result(), threshold=3.0, peakdrop=5.0)
        assert peaks["marker"].tolist() == ["a2", "b2"]

    def test_threshold_by_trait(self):
        results = {"y": _make_result("y"), "z": _make_result("z")}
        peaks = find_peaks(results, threshold={"y": 4.5, "z": 3.0})
        assert peaks[peaks["trait"] == "y"]["marker"].tolist() == ["a2"]
        assert peaks[peaks["trait"] == "z"]["marker"].tolist() == ["a2", "b2"]

    def test_nothing_above_threshold(self):
        peaks = find_peaks(_make_result(), threshold=10.0)
        assert peaks.empty

    def test_with_lod_interval(self):
        peaks = find_peaks(_make_result(), threshold=3.0, peakdrop=1.5, drop=1.5)
        first = peaks.iloc[0]
        assert (first["ci_lo"], first["pos"], first["ci_hi"]) == (1.0, 2.0, 3.0)
        second = peaks.iloc[1]
        assert (second["ci_lo"], second["pos"], second["ci_hi"]) == (5.0, 6.0, 7.0)

    def test_with_bayes_interval(self):
        peaks = find_peaks(_make_result(), threshold=3.0, prob=0.95)
        assert np.all(peaks["ci_lo"] <= peaks["pos"])
        assert np.all(peaks["pos"] <= peaks["ci_hi"])

    def test_drop_and_prob_exclusive(self):
        with pytest.raises(ValueError):
            find_peaks(_make_result(), threshold=3.0, drop=1.5, prob=0.95)

    def test_undefined_lod_skipped(self):
        table = _make_result().table
        table.loc[2, "lod"] = np.nan
        peaks = find_peaks(ScanResult("y", table), threshold=3.0)
        assert peaks["marker"].tolist() == ["a6", "b2"]


class TestIntervals:
    def test_lod_int(self):
        ci = lod_int(_make_result(), "1", drop=1.5)
        assert ci["marker"] == "a2"
        assert (ci["ci_lo"], ci["pos"], ci["ci_hi"]) == (1.0, 2.0, 3.0)
        assert ci["lod"] == 5.0

    def test_lod_int_wide_drop_reaches_chromosome_ends(self):
        ci = lod_int(_make_result(), "1", drop=10.0)
        assert (ci["ci_lo"], ci["ci_hi"]) == (0.0, 9.0)

    def test_lod_int_at_given_peak(self):
        ci = lod_int(_make_result(), "1", drop=1.5, peak=6)
        assert (ci["ci_lo"], ci["pos"], ci["ci_hi"]) == (5.0, 6.0, 7.0)

    def test_bayes_int_sharp_peak(self):
        table = pd.DataFrame({
            "marker": [f"m{i}" for i in range(5)],
            "chr": "1",
            "pos": [0.0, 1.0, 2.0, 3.0, 4.0],
            "lod": [0.0, 1.0, 20.0, 1.0, 0.0],
        })
        ci = bayes_int(ScanResult("y", table), "1", prob=0.95)
        assert (ci["ci_lo"], ci["pos"], ci["ci_hi"]) == (2.0, 2.0, 2.0)

    def test_bayes_int_flat(self):
        table = pd.DataFrame({
            "marker": [f"m{i}" for i in range(5)],
            "chr": "1",
            "pos": [0.0, 1.0, 2.0, 3.0, 4.0],
            "lod": [2.0, 2.0, 2.0, 2.0, 2.0],
        })
        ci = bayes_int(ScanResult("y", table), "1", prob=0.95)
        assert ci["ci_lo"] == 0.0
        assert ci["ci_hi"] == 4.0

    def test_unknown_chromosome(self):
        with pytest.raises(KeyError):
            lod_int(_make_result(), "9")

    def test_all_undefined(self):
        table = _make_result().table
        table["lod"] = math.nan
        with pytest.raises(ValueError):
            bayes_int(ScanResult("y", table), "1")
