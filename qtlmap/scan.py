"""
Single-locus genome scan with founder haplotype probabilities.

For every marker two nested linear models are fitted on the samples with
complete data:

    null: y ~ covariates
    full: y ~ covariates + founder probabilities at the marker

and LOD = (n/2) * log10(RSS_null / RSS_full). With a kinship matrix the data
are first rotated by the kinship eigenvectors and weighted with the
heritability estimated under the null model (see qtlmap.lmm), after which the
same formula applies.
"""

from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from qtlmap.data import AlignmentError, CrossData, GenoProbs, _preview
from qtlmap.kinship import Kinship
from qtlmap.lmm import eigen_rotation, estimate_heritability, row_weights
from qtlmap.log import logger

RANK_TOL = 1e-8


class ScanResult:
    """LOD scores and effect estimates for one phenotype, one row per marker in map order."""

    id_column = "marker"

    def __init__(self, trait: str, table: pd.DataFrame, h2: Optional[Dict[str, float]] = None,
                 parameterization: str = "founders"):
        self.trait = trait
        self._table = table.reset_index(drop=True)
        self._h2 = dict(h2 or {})
        self.parameterization = parameterization

    def __len__(self):
        return len(self._table)

    @property
    def h2(self) -> Dict[str, float]:
        """Heritability by kinship matrix ("all" or chromosome); empty without kinship."""
        return dict(self._h2)

    @property
    def table(self) -> pd.DataFrame:
        return self._table.copy()

    @property
    def lod(self) -> np.ndarray:
        return self._table["lod"].to_numpy(dtype=float, copy=True)

    @property
    def markers(self) -> List[str]:
        return self._table[self.id_column].tolist()

    def coef(self) -> pd.DataFrame:
        """Effect estimates indexed by marker, one column per model term."""
        cols = [c for c in self._table.columns if c.startswith("coef_")]
        out = self._table.set_index(self.id_column)[cols].copy()
        out.columns = [c[len("coef_"):] for c in cols]
        return out

    def max_lod(self) -> float:
        lod = self._table["lod"].to_numpy(dtype=float)
        return float(np.nanmax(lod)) if np.any(np.isfinite(lod)) else float("nan")

    def chromosome(self, chrom) -> pd.DataFrame:
        return self._table[self._table["chr"] == str(chrom)].copy()

    def to_csv(self, path: str):
        out = self._table.copy()
        out.insert(0, "trait", self.trait)
        out.to_csv(path, index=False, float_format="%.6g")
        logger.info(f"Saved scan of {len(out)} markers for '{self.trait}' to {path}.")


def fit_stack(D: np.ndarray, y: np.ndarray, rank_tol: float = RANK_TOL):
    """
    Least-squares fit of one response against a stack of designs.

    :param D: designs, shape (b, n, p)
    :param y: response, shape (n,)
    :return: rss (b,), coefficients (b, p), full-rank flags (b,)
    """
    b, n, p = D.shape
    if n <= p:
        return np.full(b, np.nan), np.full((b, p), np.nan), np.zeros(b, dtype=bool)
    U, s, Vt = np.linalg.svd(D, full_matrices=False)
    smax = s.max(axis=1)
    full = (smax > 0) & (s.min(axis=1) > rank_tol * smax)
    uty = np.einsum("bnp,n->bp", U, y)
    resid = y[None, :] - np.einsum("bnp,bp->bn", U, uty)
    rss = np.einsum("bn,bn->b", resid, resid)
    with np.errstate(divide="ignore", invalid="ignore"):
        coef = np.einsum("bqp,bq->bp", Vt, uty / s)
    rss[~full] = np.nan
    coef[~full] = np.nan
    return rss, coef, full


def lod_from_rss(rss0: float, rss1: np.ndarray, n: int) -> np.ndarray:
    """(n/2) log10(RSS0/RSS1), clipped at 0; NaN where RSS1 is undefined."""
    rss1 = np.asarray(rss1, dtype=float)
    lod = np.full(rss1.shape, np.nan)
    ok = np.isfinite(rss1)
    if not np.isfinite(rss0):
        return lod
    if rss0 <= 0:
        lod[ok] = 0.0
        return lod
    floor = np.finfo(float).tiny
    with np.errstate(divide="ignore", invalid="ignore"):
        lod[ok] = 0.5 * n * (np.log10(rss0) - np.log10(np.maximum(rss1[ok], floor)))
    lod[ok & (rss1 >= rss0)] = 0.0
    return np.maximum(lod, 0.0, where=ok, out=lod)


class _Setup:
    """Transformed null model for one sample subset (and one kinship matrix)."""

    def __init__(self, rows: np.ndarray, y: np.ndarray, covar: Optional[np.ndarray],
                 K: Optional[np.ndarray], h2: Optional[float], reml: bool):
        self.rows = rows
        n = len(rows)
        X0 = np.ones((n, 1))
        if covar is not None:
            X0 = np.column_stack([X0, covar[rows]])
        ys = y[rows]
        self.h2 = None
        self.transform = None
        if K is not None:
            eigvals, Ut = eigen_rotation(K[np.ix_(rows, rows)])
            if h2 is None:
                h2 = estimate_heritability(Ut @ ys, Ut @ X0, eigvals, reml=reml)
            w = row_weights(eigvals, h2)
            self.transform = w[:, None] * Ut
            self.h2 = h2
            ys = self.transform @ ys
            X0 = self.transform @ X0
        self.y = ys
        rss0, _, full = fit_stack(X0[None, :, :], ys)
        self.rss0 = float(rss0[0]) if full[0] else float("nan")
        # phenotype fitted exactly by the null model (e.g. constant): nothing left to explain
        if full[0] and self.rss0 <= RANK_TOL ** 2 * float(ys @ ys):
            self.rss0 = 0.0

    def apply(self, D: np.ndarray) -> np.ndarray:
        if self.transform is None:
            return D
        return np.einsum("ij,bjp->bip", self.transform, D)


class Scanner:
    """
    Genome scan engine bound to one set of genotype probabilities, covariates
    and (optionally) kinship. Inputs are read-only; each call to ``scan``
    returns a new ScanResult.
    """

    def __init__(
        self,
        genoprobs: GenoProbs,
        covar: Optional[pd.DataFrame] = None,
        kinship: Optional[Kinship] = None,
        parameterization: str = "founders",
        reml: bool = True,
        chunk_size: int = 1000,
        h2: Optional[float] = None,
        chromosomes: Optional[Sequence] = None,
        rank_tol: float = RANK_TOL,
    ):
        if parameterization not in ("founders", "contrast"):
            raise ValueError(f"Unknown parameterization: {parameterization}")
        if chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        if h2 is not None and not (0.0 <= h2 < 1.0):
            raise ValueError("h2 must be in [0, 1)")
        if chromosomes is not None:
            wanted = {str(c) for c in chromosomes}
            unknown = wanted - set(genoprobs.map.chromosomes)
            if unknown:
                raise KeyError(f"Unknown chromosome(s): {sorted(unknown)}")
            keep = [m for m, c in zip(genoprobs.map.markers, genoprobs.map.chr) if c in wanted]
            genoprobs = genoprobs.subset_markers(keep)
        self.genoprobs = genoprobs

        if covar is not None:
            covar = CrossData._align(covar, genoprobs.samples, "covariate")
            if covar.shape[1] == 0:
                covar = None
        self.covar_names = [] if covar is None else [str(c) for c in covar.columns]
        self._covar = None if covar is None else covar.to_numpy(dtype=float)
        if kinship is not None and kinship.kind == "loco":
            absent = [c for c in genoprobs.map.chromosomes if c not in set(kinship.keys)]
            if absent:
                raise AlignmentError(f"No LOCO kinship matrix for chromosome(s): {_preview(absent)}")
        self.kinship = None if kinship is None else kinship.aligned_to(genoprobs.samples)
        self.parameterization = parameterization
        self.reml = reml
        self.chunk_size = chunk_size
        self.fixed_h2 = h2
        self.rank_tol = rank_tol

        if parameterization == "founders":
            self.terms = self.covar_names + list(genoprobs.founders)
        else:
            self.terms = ["intercept"] + self.covar_names + list(genoprobs.founders[1:])

    @classmethod
    def from_cross(cls, cross: CrossData, kinship: Optional[Kinship] = None, **kwargs) -> "Scanner":
        return cls(cross.genoprobs, covar=cross.covar, kinship=kinship, **kwargs)

    # ------------------------------------------------------------------
    def _phenotype_vector(self, pheno) -> np.ndarray:
        if isinstance(pheno, pd.Series):
            index = pheno.index.astype(str)
            if set(index) != set(self.genoprobs.samples) or len(index) != self.genoprobs.n_samples:
                raise AlignmentError("Phenotype samples differ from genotype samples")
            pheno = pd.Series(pheno.to_numpy(), index=index).loc[self.genoprobs.samples]
        y = np.asarray(pd.to_numeric(pd.Series(np.asarray(pheno).ravel()), errors="coerce"), dtype=float)
        if y.shape[0] != self.genoprobs.n_samples:
            raise AlignmentError(
                f"Phenotype has {y.shape[0]} values for {self.genoprobs.n_samples} genotyped samples"
            )
        return y

    def _design(self, P: np.ndarray, rows: np.ndarray) -> np.ndarray:
        """Stack of full-model designs; P has shape (n_rows, n_founders, b)."""
        b = P.shape[2]
        n = len(rows)
        geno = np.transpose(P, (2, 0, 1))
        parts = []
        if self.parameterization == "contrast":
            parts.append(np.ones((b, n, 1)))
            geno = geno[:, :, 1:]
        if self._covar is not None:
            parts.append(np.broadcast_to(self._covar[rows][None, :, :], (b, n, self._covar.shape[1])))
        parts.append(geno)
        return np.concatenate(parts, axis=2)

    def _groups(self):
        """(kinship key, marker indices) pairs; one group when there is no LOCO kinship."""
        gp_map = self.genoprobs.map
        if self.kinship is None or self.kinship.kind == "overall":
            return [("all", np.arange(self.genoprobs.n_markers))]
        return [(c, gp_map.indices(c)) for c in gp_map.chromosomes]

    def _scan_arrays(self, y: np.ndarray):
        n_markers = self.genoprobs.n_markers
        lod = np.full(n_markers, np.nan)
        n_used = np.zeros(n_markers, dtype=int)
        coef = np.full((n_markers, len(self.terms)), np.nan)
        h2_by_group: Dict[str, float] = {}

        base_ok = ~np.isnan(y)
        if self._covar is not None:
            base_ok &= ~np.isnan(self._covar).any(axis=1)
        base_rows = np.flatnonzero(base_ok)
        probs = self.genoprobs.probs
        missing = self.genoprobs.missing

        for key, idx in self._groups():
            K = None if self.kinship is None else self.kinship.for_chr(key)
            h2 = self.fixed_h2
            if K is not None and h2 is None and len(base_rows) > 1:
                h2 = _Setup(base_rows, y, self._covar, K, None, self.reml).h2
            if h2 is not None and K is not None:
                h2_by_group[key] = h2

            # markers sharing the same missing-genotype pattern share one null fit
            patterns: Dict[bytes, List[int]] = {}
            miss_sub = missing[base_rows][:, idx]
            for j, m in enumerate(idx):
                patterns.setdefault(miss_sub[:, j].tobytes(), []).append(m)

            for marker_list in patterns.values():
                marker_list = np.asarray(marker_list)
                rows = base_rows[~missing[base_rows, marker_list[0]]]
                if len(rows) <= len(self.terms):
                    logger.debug(f"{len(marker_list)} marker(s) skipped: only {len(rows)} complete samples.")
                    continue
                setup = _Setup(rows, y, self._covar, K, h2 if K is not None else None, self.reml)
                if not np.isfinite(setup.rss0):
                    logger.warning("Null model is singular (collinear covariates?); LOD undefined.")
                    continue
                for start in range(0, len(marker_list), self.chunk_size):
                    chunk = marker_list[start:start + self.chunk_size]
                    D = setup.apply(self._design(probs[np.ix_(rows, np.arange(probs.shape[1]), chunk)], rows))
                    rss1, beta, full = fit_stack(D, setup.y, self.rank_tol)
                    lod[chunk] = lod_from_rss(setup.rss0, rss1, len(rows))
                    coef[chunk] = beta
                    n_used[chunk] = len(rows)
                    if not full.all():
                        logger.debug(f"{int((~full).sum())} marker(s) with singular design; LOD set to NA.")
        return lod, n_used, coef, h2_by_group

    # ------------------------------------------------------------------
    def scan(self, pheno, trait: str = "pheno") -> ScanResult:
        """
        Scan all markers for one phenotype.

        :param pheno: values in genotype sample order, or a Series indexed by sample id
        :param trait: label stored on the result
        """
        y = self._phenotype_vector(pheno)
        lod, n_used, coef, h2 = self._scan_arrays(y)
        table = self.genoprobs.map.table
        table["lod"] = lod
        table["n"] = n_used
        for j, term in enumerate(self.terms):
            table[f"coef_{term}"] = coef[:, j]
        n_na = int(np.isnan(lod).sum())
        if n_na:
            logger.info(f"Scan '{trait}': {n_na} of {len(lod)} markers with undefined LOD.")
        return ScanResult(trait, table, h2=h2, parameterization=self.parameterization)

    def max_lod(self, pheno) -> float:
        """Genome-wide maximum LOD (NaN when every marker is undefined)."""
        lod = self._scan_arrays(self._phenotype_vector(pheno))[0]
        return float(np.nanmax(lod)) if np.any(np.isfinite(lod)) else float("nan")


def scan_cross(cross: CrossData, kinship: Optional[Kinship] = None, traits: Optional[Sequence[str]] = None,
               **kwargs) -> Dict[str, ScanResult]:
    """Scan several phenotypes of an aligned cross with one Scanner."""
    scanner = Scanner.from_cross(cross, kinship=kinship, **kwargs)
    results = {}
    for trait in traits or cross.traits:
        logger.info(f"Scanning phenotype '{trait}'...")
        results[trait] = scanner.scan(cross.phenotype(trait), trait=trait)
    return results
