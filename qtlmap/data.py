"""
Typed input containers for a mapping run.

- MarkerMap: ordered marker table (marker, chr, pos)
- GenoProbs: founder haplotype probabilities, axis order (sample, founder, marker)
- CrossData: phenotypes, covariates and genotype probabilities aligned by sample id
"""

import re
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from qtlmap.log import logger


class AlignmentError(ValueError):
    """Raised when sample or marker identifiers do not match across inputs."""


def _preview(ids, k: int = 5) -> str:
    ids = sorted(map(str, ids))
    more = f" ... (+{len(ids) - k} more)" if len(ids) > k else ""
    return ", ".join(ids[:k]) + more


def chr_sort_key(chrom):
    """Natural chromosome order: 1, 2, ..., 10, ..., X, Y, MT."""
    name = re.sub(r"^chr", "", str(chrom), flags=re.IGNORECASE)
    if name.isdigit():
        return (0, int(name), "")
    special = {"X": 1, "Y": 2, "M": 3, "MT": 3}
    return (1, special.get(name.upper(), 9), name)


def sort_by_position(df: pd.DataFrame) -> pd.DataFrame:
    """Rows ordered by natural chromosome order, then position (stable)."""
    keys = [(chr_sort_key(c), float(p)) for c, p in zip(df["chr"], pd.to_numeric(df["pos"], errors="coerce"))]
    order = sorted(range(len(keys)), key=keys.__getitem__)
    return df.iloc[order]


def check_unique(ids: Sequence, what: str) -> None:
    seen = pd.Index(ids)
    if seen.has_duplicates:
        dups = seen[seen.duplicated()].unique()
        raise AlignmentError(f"Duplicate {what} identifiers: {_preview(dups)}")


class MarkerMap:
    """Marker identifiers with chromosome and position, ordered by chromosome then position."""

    def __init__(self, markers: pd.DataFrame):
        required = {"marker", "chr", "pos"}
        missing = required - set(markers.columns)
        if missing:
            raise ValueError(
                f"The marker map is missing the following required columns: {missing}. "
                f"Please ensure the map contains columns: {required}."
            )
        table = markers.loc[:, ["marker", "chr", "pos"]].copy()
        table["marker"] = table["marker"].astype(str)
        table["chr"] = table["chr"].astype(str)
        table["pos"] = pd.to_numeric(table["pos"], errors="coerce")
        if table["pos"].isna().any():
            bad = table.loc[table["pos"].isna(), "marker"]
            raise ValueError(f"Non-numeric marker positions: {_preview(bad)}")
        check_unique(table["marker"], "marker")
        table = table.reset_index(drop=True)

        # each chromosome must be one contiguous, position-sorted block
        chroms: List[str] = []
        for chrom in table["chr"]:
            if not chroms or chroms[-1] != chrom:
                if chrom in chroms:
                    raise ValueError(f"Markers on chromosome {chrom} are not contiguous in the map")
                chroms.append(chrom)
        for chrom in chroms:
            pos = table.loc[table["chr"] == chrom, "pos"].to_numpy()
            if np.any(np.diff(pos) < 0):
                raise ValueError(f"Marker positions on chromosome {chrom} are not sorted")

        self._table = table
        self._chroms = chroms
        self._index = {m: i for i, m in enumerate(table["marker"])}

    @classmethod
    def from_unsorted(cls, markers: pd.DataFrame) -> "MarkerMap":
        """Sort a raw marker table by natural chromosome order and position first."""
        return cls(sort_by_position(markers))

    def __len__(self):
        return len(self._table)

    @property
    def table(self) -> pd.DataFrame:
        return self._table.copy()

    @property
    def markers(self) -> List[str]:
        return self._table["marker"].tolist()

    @property
    def chromosomes(self) -> List[str]:
        return list(self._chroms)

    @property
    def chr(self) -> np.ndarray:
        return self._table["chr"].to_numpy()

    @property
    def pos(self) -> np.ndarray:
        return self._table["pos"].to_numpy(dtype=float)

    def index_of(self, marker: str) -> int:
        try:
            return self._index[str(marker)]
        except KeyError:
            raise KeyError(f"Unknown marker: {marker}") from None

    def indices(self, chrom) -> np.ndarray:
        """Column indices of the markers on one chromosome."""
        chrom = str(chrom)
        if chrom not in self._chroms:
            raise KeyError(f"Unknown chromosome: {chrom}")
        return np.flatnonzero(self._table["chr"].to_numpy() == chrom)


class GenoProbs:
    """
    Founder haplotype probabilities.

    ``probs[i, f, m]`` is the probability that sample ``i`` carries founder ``f``'s
    haplotype at marker ``m``. A (sample, marker) slice containing NaN is treated as
    missing as a whole. The stored array is read-only.
    """

    def __init__(self, probs, samples: Sequence, founders: Sequence, marker_map: MarkerMap,
                 tol: float = 1e-3):
        arr = np.array(probs, dtype=float, copy=True)
        if arr.ndim != 3:
            raise ValueError(f"Genotype probabilities must be a 3-D array (sample, founder, marker), got {arr.ndim}-D")
        samples = [str(s) for s in samples]
        founders = [str(f) for f in founders]
        n_samples, n_founders, n_markers = arr.shape
        if len(samples) != n_samples:
            raise AlignmentError(f"{len(samples)} sample ids for {n_samples} rows of genotype probabilities")
        if len(founders) != n_founders:
            raise AlignmentError(f"{len(founders)} founder names for {n_founders} founder columns")
        if len(marker_map) != n_markers:
            raise AlignmentError(f"Marker map has {len(marker_map)} markers, probabilities have {n_markers}")
        if n_founders < 2:
            raise ValueError("At least two founders are required")
        check_unique(samples, "sample")
        check_unique(founders, "founder")

        missing = np.isnan(arr).any(axis=1)
        arr[np.broadcast_to(missing[:, None, :], arr.shape)] = np.nan
        observed = ~np.isnan(arr)
        if np.any((arr[observed] < -tol) | (arr[observed] > 1 + tol)):
            raise ValueError("Genotype probabilities must lie in [0, 1]")
        sums = arr.sum(axis=1)
        bad = ~missing & (np.abs(sums - 1.0) > tol)
        if bad.any():
            i, m = np.argwhere(bad)[0]
            raise ValueError(
                f"Founder probabilities do not sum to 1 for {int(bad.sum())} (sample, marker) pairs, "
                f"e.g. sample {samples[i]} at marker {marker_map.markers[m]}: {sums[i, m]:.4f}"
            )
        arr.setflags(write=False)
        missing.setflags(write=False)

        self._probs = arr
        self._missing = missing
        self.samples = samples
        self.founders = founders
        self.map = marker_map
        self.tol = tol
        self._sample_index = {s: i for i, s in enumerate(samples)}
        if missing.any():
            logger.info(f"Genotype probabilities: {int(missing.sum())} missing (sample, marker) slices.")

    @property
    def probs(self) -> np.ndarray:
        return self._probs

    @property
    def missing(self) -> np.ndarray:
        """Boolean (sample, marker) mask of missing slices."""
        return self._missing

    @property
    def shape(self):
        return self._probs.shape

    @property
    def n_samples(self) -> int:
        return self._probs.shape[0]

    @property
    def n_founders(self) -> int:
        return self._probs.shape[1]

    @property
    def n_markers(self) -> int:
        return self._probs.shape[2]

    def sample_index(self, sample: str) -> int:
        try:
            return self._sample_index[str(sample)]
        except KeyError:
            raise KeyError(f"Unknown sample: {sample}") from None

    def get(self, sample: str, marker: str) -> np.ndarray:
        """Founder probability vector for one sample at one marker."""
        return self._probs[self.sample_index(sample), :, self.map.index_of(marker)].copy()

    def subset_samples(self, samples: Sequence) -> "GenoProbs":
        idx = [self.sample_index(s) for s in samples]
        return GenoProbs(self._probs[idx], [self.samples[i] for i in idx], self.founders, self.map, self.tol)

    def subset_markers(self, markers: Sequence) -> "GenoProbs":
        idx = [self.map.index_of(m) for m in markers]
        sub_map = MarkerMap(self.map.table.iloc[idx])
        return GenoProbs(self._probs[:, :, idx], self.samples, self.founders, sub_map, self.tol)


class CrossData:
    """
    Phenotypes, covariates and genotype probabilities keyed by the same samples.

    Rows of ``pheno`` and ``covar`` are reordered to the genotype sample order. The
    sample sets must be identical; nothing is dropped silently.
    """

    def __init__(self, genoprobs: GenoProbs, pheno: pd.DataFrame, covar: Optional[pd.DataFrame] = None):
        samples = genoprobs.samples
        self.pheno = self._align(pheno, samples, "phenotype")
        self.covar = None if covar is None else self._align(covar, samples, "covariate")
        if self.covar is not None:
            non_numeric = [c for c in self.covar.columns if not pd.api.types.is_numeric_dtype(self.covar[c])]
            if non_numeric:
                raise ValueError(f"Covariate columns must be numeric: {non_numeric}")
        self.genoprobs = genoprobs
        logger.info(
            f"Aligned {len(samples)} samples: {self.pheno.shape[1]} phenotype(s), "
            f"{0 if self.covar is None else self.covar.shape[1]} covariate(s), "
            f"{genoprobs.n_markers} markers, {genoprobs.n_founders} founders."
        )

    @staticmethod
    def _align(df: pd.DataFrame, samples: List[str], what: str) -> pd.DataFrame:
        index = df.index.astype(str)
        check_unique(index, what + " sample")
        only_table = set(index) - set(samples)
        only_geno = set(samples) - set(index)
        if only_table or only_geno:
            parts = []
            if only_table:
                parts.append(f"{len(only_table)} only in {what} table ({_preview(only_table)})")
            if only_geno:
                parts.append(f"{len(only_geno)} only in genotype probabilities ({_preview(only_geno)})")
            raise AlignmentError(f"Sample sets differ between {what} table and genotypes: " + "; ".join(parts))
        out = df.copy()
        out.index = index
        return out.loc[samples]

    @property
    def samples(self) -> List[str]:
        return list(self.genoprobs.samples)

    @property
    def traits(self) -> List[str]:
        return [str(c) for c in self.pheno.columns]

    def phenotype(self, trait: str) -> np.ndarray:
        if trait not in self.pheno.columns:
            raise KeyError(f"Unknown phenotype: {trait}")
        return pd.to_numeric(self.pheno[trait], errors="coerce").to_numpy(dtype=float)

    def covariate_matrix(self) -> Optional[np.ndarray]:
        if self.covar is None or self.covar.shape[1] == 0:
            return None
        return self.covar.to_numpy(dtype=float)

    def strata(self, column: str) -> np.ndarray:
        """Per-sample strata labels taken from a covariate or phenotype column."""
        for df in (self.covar, self.pheno):
            if df is not None and column in df.columns:
                return df[column].to_numpy()
        raise KeyError(f"Strata column not found: {column}")

    def summary(self) -> Dict[str, int]:
        return {
            "samples": len(self.samples),
            "traits": len(self.traits),
            "covariates": 0 if self.covar is None else self.covar.shape[1],
            "markers": self.genoprobs.n_markers,
            "founders": self.genoprobs.n_founders,
        }
