"""Tests for the permutation engine and genome-wide thresholds."""

import numpy as np
import pytest

from qtlmap.config import ConfigError
from qtlmap.perm import PermutationEngine, PermutationResult, permutation_indices
from qtlmap.scan import Scanner


@pytest.fixture
def small(make_genoprobs, make_pheno):
    gp = make_genoprobs(n_samples=30, n_per_chr=(4, 4))
    return Scanner(gp), make_pheno(gp, marker="m1_2")


class TestPermutationIndices:
    def test_rows_are_permutations(self):
        idx = permutation_indices(10, 5, seed=1)
        assert idx.shape == (5, 10)
        for row in idx:
            np.testing.assert_array_equal(np.sort(row), np.arange(10))

    def test_seeded_and_offset(self):
        all_rows = permutation_indices(10, 6, seed=3)
        np.testing.assert_array_equal(all_rows, permutation_indices(10, 6, seed=3))
        np.testing.assert_array_equal(all_rows[4:], permutation_indices(10, 2, seed=3, start=4))
        assert not np.array_equal(all_rows, permutation_indices(10, 6, seed=4))

    def test_block_far_into_run_matches_full_run(self):
        all_rows = permutation_indices(12, 3005, seed=5)
        block = permutation_indices(12, 5, seed=5, start=3000)
        np.testing.assert_array_equal(block, all_rows[3000:])

    def test_matches_spawned_children(self):
        children = np.random.SeedSequence(11).spawn(4)
        expected = [np.random.default_rng(c).permutation(8) for c in children]
        np.testing.assert_array_equal(permutation_indices(8, 4, seed=11), np.array(expected))

    def test_strata_respected(self):
        strata = ["F"] * 4 + ["M"] * 6
        idx = permutation_indices(10, 20, seed=2, strata=strata)
        for row in idx:
            assert set(row[:4]) == set(range(4))
            assert set(row[4:]) == set(range(4, 10))

    def test_strata_length(self):
        with pytest.raises(ValueError):
            permutation_indices(10, 2, seed=1, strata=[0, 1])


class TestPermutationEngine:
    def test_n_entries(self, small):
        scanner, y = small
        result = PermutationEngine(scanner, n_perm=7, seed=1).run(y, trait="y")
        assert len(result) == 7
        assert result.trait == "y"
        assert np.all(np.isfinite(result.null))

    def test_same_seed_same_null(self, small):
        scanner, y = small
        a = PermutationEngine(scanner, n_perm=5, seed=42).run(y)
        b = PermutationEngine(scanner, n_perm=5, seed=42, batch_size=2).run(y)
        np.testing.assert_array_equal(a.null, b.null)

    def test_each_entry_is_permuted_max_lod(self, small):
        scanner, y = small
        engine = PermutationEngine(scanner, n_perm=3, seed=9)
        result = engine.run(y)
        for i, order in enumerate(engine.indices()):
            assert result.null[i] == pytest.approx(scanner.max_lod(y[order]), rel=1e-12)

    def test_single_permutation(self, small):
        scanner, y = small
        engine = PermutationEngine(scanner, n_perm=1, seed=2024)
        result = engine.run(y)
        assert len(result) == 1
        expected = scanner.scan(y[engine.indices()[0]]).max_lod()
        assert result.null[0] == pytest.approx(expected, rel=1e-12)

    def test_zero_permutations(self, small):
        scanner, _ = small
        with pytest.raises(ConfigError):
            PermutationEngine(scanner, n_perm=0)
        with pytest.raises(ValueError):
            PermutationEngine(scanner, n_perm=-3)

    def test_invalid_workers(self, small):
        scanner, _ = small
        with pytest.raises(ConfigError):
            PermutationEngine(scanner, n_perm=2, cores=0)
        with pytest.raises(ConfigError):
            PermutationEngine(scanner, n_perm=2, batch_size=0)

    def test_parallel_matches_serial(self, small):
        scanner, y = small
        serial = PermutationEngine(scanner, n_perm=6, seed=8, batch_size=2).run(y)
        parallel = PermutationEngine(scanner, n_perm=6, seed=8, cores=2, batch_size=2).run(y)
        np.testing.assert_array_equal(serial.null, parallel.null)

    def test_unseeded_records_seed(self, small):
        scanner, y = small
        engine = PermutationEngine(scanner, n_perm=2)
        result = engine.run(y)
        assert isinstance(result.seed, int)
        replay = PermutationEngine(scanner, n_perm=2, seed=result.seed).run(y)
        np.testing.assert_array_equal(result.null, replay.null)

    def test_failed_permutation_is_nan(self, small):
        scanner, y = small
        real = scanner.max_lod
        calls = []

        def flaky(pheno):
            calls.append(1)
            if len(calls) == 2:
                raise np.linalg.LinAlgError("SVD did not converge")
            return real(pheno)

        scanner.max_lod = flaky
        result = PermutationEngine(scanner, n_perm=4, seed=1).run(y)
        assert len(result) == 4
        assert np.isnan(result.null[1])
        assert result.n_failed == 1
        assert np.isfinite(result.threshold(0.1))

    def test_strata_length_checked(self, small):
        scanner, _ = small
        with pytest.raises(ValueError):
            PermutationEngine(scanner, n_perm=2, strata=[0, 1])

    def test_checkpoint_resume(self, small, tmp_path):
        scanner, y = small
        path = str(tmp_path / "perm.ckpt.npz")
        full = PermutationEngine(scanner, n_perm=6, seed=5, batch_size=2).run(y, checkpoint=path)

        # drop the last batch as if the run had been interrupted
        with np.load(path) as z:
            null, done = z["null"].copy(), z["done"].copy()
            saved = {k: z[k] for k in ("seed", "n_perm", "n_samples")}
        assert done.all()
        null[4:] = np.nan
        done[4:] = False
        np.savez(path, null=null, done=done, **saved)

        resumed = PermutationEngine(scanner, n_perm=6, seed=5, batch_size=2).run(y, checkpoint=path)
        np.testing.assert_array_equal(resumed.null, full.null)

    def test_checkpoint_settings_mismatch(self, small, tmp_path):
        scanner, y = small
        path = str(tmp_path / "perm.ckpt.npz")
        PermutationEngine(scanner, n_perm=2, seed=5).run(y, checkpoint=path)
        with pytest.raises(ConfigError):
            PermutationEngine(scanner, n_perm=2, seed=6).run(y, checkpoint=path)


class TestPermutationResult:
    def test_threshold_monotone_in_alpha(self, small):
        scanner, y = small
        result = PermutationEngine(scanner, n_perm=40, seed=3).run(y)
        thr = result.threshold([0.01, 0.05, 0.1, 0.2, 0.5])
        assert np.all(np.diff(thr) <= 0)

    def test_threshold_quantile(self):
        result = PermutationResult("y", np.arange(1.0, 11.0), seed=1)
        assert result.threshold(0.1) == pytest.approx(np.quantile(np.arange(1.0, 11.0), 0.9))

    def test_threshold_ignores_gaps(self):
        result = PermutationResult("y", [1.0, np.nan, 3.0], seed=1)
        assert result.threshold(0.5) == pytest.approx(2.0)

    def test_alpha_range(self):
        result = PermutationResult("y", [1.0, 2.0], seed=1)
        for alpha in (0.0, 1.0, -0.1, 1.5):
            with pytest.raises(ConfigError):
                result.threshold(alpha)

    def test_pvalue(self):
        result = PermutationResult("y", [1.0, 2.0, 3.0, 4.0], seed=1)
        assert result.pvalue(2.5) == pytest.approx(0.5)
        np.testing.assert_allclose(result.pvalue([0.0, 5.0]), [1.0, 0.0])

    def test_null_is_read_only_copy(self):
        result = PermutationResult("y", [1.0, 2.0], seed=1)
        null = result.null
        null[0] = 99.0
        assert result.null[0] == 1.0

    def test_summary_and_csv(self, tmp_path):
        result = PermutationResult("y", np.arange(1.0, 21.0), seed=7)
        summary = result.summary([0.1, 0.05])
        assert list(summary.columns) == ["trait", "alpha", "threshold", "n_perm", "n_failed"]
        assert summary["threshold"].iloc[1] >= summary["threshold"].iloc[0]
        single = result.summary(0.05)
        assert single["alpha"].tolist() == [0.05]
        assert single["threshold"].iloc[0] == pytest.approx(result.threshold(0.05))
        path = tmp_path / "perm.csv"
        result.to_csv(str(path))
        assert path.read_text().splitlines()[0] == "trait,perm,max_lod"
