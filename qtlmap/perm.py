"""
Permutation test for genome-wide significance.

Each permutation shuffles the phenotype over samples (covariates, genotype
probabilities and kinship stay fixed), rescans every marker and keeps the
genome-wide maximum LOD. The (1 - alpha) quantile of those maxima is the
genome-wide LOD threshold at level alpha.

Permutation i draws from the i-th child of ``numpy.random.SeedSequence(seed)``,
so a given seed always produces the same shuffles, whatever the number of
worker processes or the order in which batches finish. Without a seed the
shuffles differ from run to run; the seed actually used is logged and kept
on the result.
"""

import os
from multiprocessing import Pool
from typing import List, Optional, Sequence, Union

import numpy as np
import pandas as pd

from qtlmap.config import ConfigError, check_alpha
from qtlmap.log import logger
from qtlmap.scan import Scanner


def permutation_indices(n_samples: int, n_perm: int, seed: Optional[int] = None,
                        strata: Optional[Sequence] = None, start: int = 0) -> np.ndarray:
    """
    Index arrays for permutations ``start .. start + n_perm - 1``.

    Row ``i`` is the shuffle applied by permutation ``start + i``: sample ``j``
    receives the phenotype of sample ``idx[i, j]``. With ``strata`` values only
    move between samples of the same stratum.
    """
    if n_perm < 0:
        raise ConfigError("n_perm must be non-negative")
    # child i of the root, built directly: same stream as SeedSequence(seed).spawn(...)[i]
    root = np.random.SeedSequence(seed)
    children = [
        np.random.SeedSequence(root.entropy, spawn_key=root.spawn_key + (start + i,), pool_size=root.pool_size)
        for i in range(n_perm)
    ]
    if strata is None:
        groups = [np.arange(n_samples)]
    else:
        codes, _ = pd.factorize(pd.Series(list(strata)), use_na_sentinel=True)
        if len(codes) != n_samples:
            raise ValueError(f"strata has {len(codes)} values for {n_samples} samples")
        groups = [np.flatnonzero(codes == c) for c in np.unique(codes)]
    out = np.empty((n_perm, n_samples), dtype=int)
    for i, child in enumerate(children):
        rng = np.random.default_rng(child)
        row = np.arange(n_samples)
        for members in groups:
            row[members] = rng.permutation(members)
        out[i] = row
    return out


class PermutationResult:
    """Null distribution of genome-wide maximum LOD scores, one entry per permutation."""

    def __init__(self, trait: str, null: Sequence[float], seed: int):
        null = np.array(null, dtype=float, copy=True)
        null.setflags(write=False)
        self.trait = trait
        self._null = null
        self.seed = seed

    def __len__(self):
        return len(self._null)

    @property
    def null(self) -> np.ndarray:
        return self._null.copy()

    @property
    def n_failed(self) -> int:
        return int(np.isnan(self._null).sum())

    def threshold(self, alpha: Union[float, Sequence[float]] = 0.05):
        """(1 - alpha) quantile of the null; NaN gaps are ignored."""
        check_alpha(list(alpha) if isinstance(alpha, (list, tuple, np.ndarray)) else alpha)
        q = 1.0 - np.asarray(alpha, dtype=float)
        if not np.any(np.isfinite(self._null)):
            return np.full(q.shape, np.nan) if q.ndim else float("nan")
        thr = np.nanquantile(self._null, q)
        return thr if q.ndim else float(thr)

    def pvalue(self, lod: Union[float, Sequence[float]]):
        """Genome-wide empirical p-value: share of permutation maxima >= lod."""
        valid = self._null[np.isfinite(self._null)]
        lod_arr = np.asarray(lod, dtype=float)
        if valid.size == 0:
            return np.full(lod_arr.shape, np.nan) if lod_arr.ndim else float("nan")
        p = (valid[None, :] >= lod_arr.reshape(-1, 1)).mean(axis=1)
        return p.reshape(lod_arr.shape) if lod_arr.ndim else float(p[0])

    def summary(self, alphas: Union[float, Sequence[float]] = (0.1, 0.05)) -> pd.DataFrame:
        alphas = np.atleast_1d(np.asarray(alphas, dtype=float)).tolist()
        return pd.DataFrame({
            "trait": self.trait,
            "alpha": alphas,
            "threshold": np.atleast_1d(self.threshold(alphas)),
            "n_perm": len(self),
            "n_failed": self.n_failed,
        })

    def to_csv(self, path: str):
        pd.DataFrame({"trait": self.trait, "perm": np.arange(1, len(self) + 1), "max_lod": self._null}).to_csv(
            path, index=False, float_format="%.6g")
        logger.info(f"Saved {len(self)} permutation maxima for '{self.trait}' to {path} (seed {self.seed}).")


# worker state for the process pool
_WORKER = {}


def _init_worker(scanner: Scanner, y: np.ndarray):
    _WORKER["scanner"] = scanner
    _WORKER["y"] = y


def _perm_block(block):
    """Maximum LOD for each permutation in one block; a failure yields NaN for that permutation only."""
    scanner, y = _WORKER["scanner"], _WORKER["y"]
    start, idx = block
    out = np.full(len(idx), np.nan)
    for i, order in enumerate(idx):
        try:
            out[i] = scanner.max_lod(y[order])
        except (ValueError, np.linalg.LinAlgError, FloatingPointError) as e:
            logger.warning(f"Permutation {start + i + 1} failed: {e}")
    return start, out


class PermutationEngine:
    """
    Runs permutations of one phenotype against a prepared Scanner.

    :param scanner: the scan configuration to reuse for every permutation
    :param n_perm: number of permutations (>= 1)
    :param seed: seed for reproducible shuffles; None draws fresh entropy
    :param cores: worker processes (1 runs serially)
    :param strata: optional per-sample labels; shuffling stays within labels
    :param batch_size: permutations per task and per checkpoint write
    """

    def __init__(self, scanner: Scanner, n_perm: int = 1000, seed: Optional[int] = None, cores: int = 1,
                 strata: Optional[Sequence] = None, batch_size: int = 10):
        if not isinstance(n_perm, (int, np.integer)) or n_perm < 1:
            raise ConfigError(f"At least one permutation is required, got n_perm={n_perm!r}")
        if cores < 1:
            raise ConfigError("cores must be >= 1")
        if batch_size < 1:
            raise ConfigError("batch_size must be >= 1")
        if strata is not None and len(strata) != scanner.genoprobs.n_samples:
            raise ValueError(f"strata has {len(strata)} values for {scanner.genoprobs.n_samples} samples")
        self.scanner = scanner
        self.n_perm = int(n_perm)
        if seed is None:
            seed = int(np.random.default_rng().integers(0, 2**63 - 1))
            logger.info(f"No seed given; permutations will differ between runs (using seed {seed}).")
        self.seed = int(seed)
        self.cores = cores
        self.strata = strata
        self.batch_size = batch_size

    def indices(self) -> np.ndarray:
        """All permutation index rows used by ``run``."""
        return permutation_indices(self.scanner.genoprobs.n_samples, self.n_perm, self.seed, self.strata)

    # ------------------------------------------------------------------
    def _load_checkpoint(self, path: str, n_samples: int):
        null = np.full(self.n_perm, np.nan)
        done = np.zeros(self.n_perm, dtype=bool)
        if path and os.path.exists(path):
            with np.load(path, allow_pickle=False) as z:
                if int(z["seed"]) != self.seed or int(z["n_perm"]) != self.n_perm or int(z["n_samples"]) != n_samples:
                    raise ConfigError(
                        f"Checkpoint {path} was written for seed={int(z['seed'])}, n_perm={int(z['n_perm'])}, "
                        f"n_samples={int(z['n_samples'])}; refusing to resume with different settings."
                    )
                null[:] = z["null"]
                done[:] = z["done"]
            logger.info(f"Resuming from checkpoint {path}: {int(done.sum())} of {self.n_perm} permutations done.")
        return null, done

    def _save_checkpoint(self, path: str, null: np.ndarray, done: np.ndarray, n_samples: int):
        tmp = path + ".tmp"
        with open(tmp, "wb") as f:
            np.savez(f, null=null, done=done, seed=self.seed, n_perm=self.n_perm, n_samples=n_samples)
        os.replace(tmp, path)

    def _blocks(self, done: np.ndarray, n_samples: int) -> List:
        blocks = []
        for start in range(0, self.n_perm, self.batch_size):
            stop = min(start + self.batch_size, self.n_perm)
            if done[start:stop].all():
                continue
            idx = permutation_indices(n_samples, stop - start, self.seed, self.strata, start=start)
            blocks.append((start, idx))
        return blocks

    def run(self, pheno, trait: str = "pheno", checkpoint: Optional[str] = None) -> PermutationResult:
        """
        Build the null distribution for one phenotype.

        :param pheno: phenotype values in genotype sample order (or a Series by sample id)
        :param trait: label for logging and the result
        :param checkpoint: optional .npz path; partial results are saved after each batch
            and picked up again by a later run with the same seed and settings
        """
        y = self.scanner._phenotype_vector(pheno)
        n_samples = len(y)
        null, done = self._load_checkpoint(checkpoint, n_samples)
        blocks = self._blocks(done, n_samples)
        logger.info(
            f"Running {self.n_perm} permutations for '{trait}' "
            f"({len(blocks)} batch(es) to do, {self.cores} core(s), seed {self.seed})..."
        )

        def _collect(start, values):
            null[start:start + len(values)] = values
            done[start:start + len(values)] = True
            if checkpoint:
                self._save_checkpoint(checkpoint, null, done, n_samples)

        try:
            if self.cores == 1:
                _init_worker(self.scanner, y)
                for block in blocks:
                    _collect(*_perm_block(block))
            else:
                with Pool(processes=self.cores, initializer=_init_worker, initargs=(self.scanner, y)) as pool:
                    for start, values in pool.imap_unordered(_perm_block, blocks):
                        _collect(start, values)
        except KeyboardInterrupt:
            logger.warning(
                f"Interrupted after {int(done.sum())} of {self.n_perm} permutations"
                + (f"; progress kept in {checkpoint}." if checkpoint else ".")
            )
            raise
        finally:
            _WORKER.clear()

        result = PermutationResult(trait, null, self.seed)
        if result.n_failed:
            logger.warning(f"{result.n_failed} permutation(s) gave no defined LOD and are recorded as NA.")
        logger.info(f"Permutations for '{trait}' completed.")
        return result
