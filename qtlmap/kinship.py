"""
Kinship from founder haplotype probabilities.

The kinship of samples i and j is the probability that they share a founder
haplotype at a random marker, averaged over markers:

    K = (1/M) * sum_m P_m @ P_m.T

where P_m is the (sample, founder) probability matrix at marker m. The
leave-one-chromosome-out (LOCO) matrix for chromosome c uses the subtraction
K_c = (S_all - S_c) / (M_all - M_c), so each chromosome's sum is computed once.
"""

from typing import Dict, Sequence

import numpy as np

from qtlmap.data import AlignmentError, GenoProbs
from qtlmap.log import logger


class Kinship:
    """One genome-wide matrix (key ``"all"``) or one LOCO matrix per chromosome."""

    def __init__(self, matrices: Dict[str, np.ndarray], samples: Sequence, tol: float = 1e-8):
        if not matrices:
            raise ValueError("Kinship requires at least one matrix")
        samples = [str(s) for s in samples]
        n = len(samples)
        checked = {}
        for key, K in matrices.items():
            K = np.array(K, dtype=float, copy=True)
            if K.shape != (n, n):
                raise AlignmentError(f"Kinship matrix '{key}' has shape {K.shape}, expected ({n}, {n})")
            if not np.all(np.isfinite(K)):
                raise ValueError(f"Kinship matrix '{key}' contains non-finite values")
            if not np.allclose(K, K.T, atol=tol):
                raise ValueError(f"Kinship matrix '{key}' is not symmetric")
            K.setflags(write=False)
            checked[str(key)] = K
        self._matrices = checked
        self.samples = samples

    @property
    def kind(self) -> str:
        return "overall" if "all" in self._matrices else "loco"

    @property
    def keys(self):
        return list(self._matrices)

    def for_chr(self, chrom) -> np.ndarray:
        """Matrix used when scanning markers on ``chrom``."""
        if "all" in self._matrices:
            return self._matrices["all"]
        try:
            return self._matrices[str(chrom)]
        except KeyError:
            raise KeyError(f"No LOCO kinship matrix for chromosome {chrom}") from None

    def aligned_to(self, samples: Sequence) -> "Kinship":
        """Reorder to ``samples``; the sample sets must be identical."""
        samples = [str(s) for s in samples]
        if set(samples) != set(self.samples) or len(samples) != len(self.samples):
            only_k = sorted(set(self.samples) - set(samples))[:5]
            only_s = sorted(set(samples) - set(self.samples))[:5]
            raise AlignmentError(
                f"Kinship samples differ from genotype samples (kinship only: {only_k}, genotypes only: {only_s})"
            )
        if samples == self.samples:
            return self
        pos = {s: i for i, s in enumerate(self.samples)}
        idx = np.array([pos[s] for s in samples])
        return Kinship({k: K[np.ix_(idx, idx)] for k, K in self._matrices.items()}, samples)

    def to_npz(self, path: str) -> None:
        np.savez_compressed(path, samples=np.array(self.samples), keys=np.array(self.keys),
                            **{f"K_{k}": K for k, K in self._matrices.items()})

    @classmethod
    def from_npz(cls, path: str) -> "Kinship":
        with np.load(path, allow_pickle=False) as z:
            keys = [str(k) for k in z["keys"]]
            return cls({k: z[f"K_{k}"] for k in keys}, [str(s) for s in z["samples"]])


def _chr_sums(genoprobs: GenoProbs, idx: np.ndarray):
    """Unscaled sum of P_m P_m' and the pairwise count of jointly observed markers."""
    P = np.nan_to_num(genoprobs.probs[:, :, idx], nan=0.0)
    S = np.tensordot(P, P, axes=([1, 2], [1, 2]))
    observed = (~genoprobs.missing[:, idx]).astype(float)
    C = observed @ observed.T
    return S, C


def calc_kinship(genoprobs: GenoProbs, kind: str = "overall") -> Kinship:
    """
    Estimate kinship from genotype probabilities.

    :param genoprobs: founder haplotype probabilities
    :param kind: "overall" for one genome-wide matrix, "loco" for one
        leave-one-chromosome-out matrix per chromosome
    """
    if kind not in ("overall", "loco"):
        raise ValueError(f"kind must be 'overall' or 'loco', got {kind!r}")
    chroms = genoprobs.map.chromosomes
    logger.info(f"Calculating {kind} kinship from {genoprobs.n_markers} markers on {len(chroms)} chromosome(s)...")

    sums = {c: _chr_sums(genoprobs, genoprobs.map.indices(c)) for c in chroms}
    S_all = sum(s for s, _ in sums.values())
    C_all = sum(c for _, c in sums.values())

    def _scale(S, C, label):
        with np.errstate(invalid="ignore", divide="ignore"):
            K = S / C
        if np.any(C == 0):
            logger.warning(f"Kinship '{label}': some sample pairs share no observed markers; set to 0.")
            K[C == 0] = 0.0
        return np.clip(K, 0.0, 1.0)

    if kind == "overall":
        return Kinship({"all": _scale(S_all, C_all, "all")}, genoprobs.samples)

    if len(chroms) < 2:
        raise ValueError("LOCO kinship needs markers on at least two chromosomes")
    matrices = {c: _scale(S_all - S_c, C_all - C_c, c) for c, (S_c, C_c) in sums.items()}
    return Kinship(matrices, genoprobs.samples)
