"""
SNP association mapping in a region.

Each SNP is described by its strain distribution pattern (SDP): which founders
carry the alternate allele. A sample's alternate-allele probability at the SNP
is the summed probability of those founders, interpolated between the flanking
markers. The SNP is then scanned like a marker with two "founders", the
reference and the alternate allele.
"""

from typing import Optional, Sequence

import numpy as np
import pandas as pd

from qtlmap.data import GenoProbs, MarkerMap, sort_by_position
from qtlmap.kinship import Kinship
from qtlmap.log import logger
from qtlmap.scan import Scanner, ScanResult

ALLELES = ("ref", "alt")


class SnpTable:
    """SNP positions, alleles and founder strain distribution patterns."""

    def __init__(self, snps: pd.DataFrame, founders: Sequence[str]):
        founders = [str(f) for f in founders]
        required = {"snp", "chr", "pos", "ref", "alt"}
        missing = required - set(snps.columns)
        if missing:
            raise ValueError(
                f"The SNP table is missing the following required columns: {missing}. "
                f"Please ensure the table contains columns: {required}."
            )
        absent = [f for f in founders if f not in snps.columns]
        if absent:
            raise ValueError(f"The SNP table has no strain distribution column for founder(s): {absent}")
        df = snps.loc[:, ["snp", "chr", "pos", "ref", "alt"] + founders].copy()
        df["snp"] = df["snp"].astype(str)
        df["chr"] = df["chr"].astype(str)
        df["pos"] = pd.to_numeric(df["pos"], errors="coerce")
        if df["pos"].isna().any():
            raise ValueError("SNP positions must be numeric")
        sdp = df[founders].apply(pd.to_numeric, errors="coerce")
        if sdp.isna().any().any() or not sdp.isin([0, 1]).all().all():
            raise ValueError("Strain distribution columns must contain only 0 (ref) and 1 (alt)")
        df[founders] = sdp.astype(int)
        df = sort_by_position(df).reset_index(drop=True)
        self.map = MarkerMap(df.rename(columns={"snp": "marker"}))
        self.table = df
        self.founders = founders

    def __len__(self):
        return len(self.table)

    @property
    def sdp(self) -> np.ndarray:
        """(snp, founder) 0/1 matrix."""
        return self.table[self.founders].to_numpy(dtype=float)

    def in_interval(self, chrom, start: Optional[float] = None, end: Optional[float] = None) -> "SnpTable":
        df = self.table[self.table["chr"] == str(chrom)]
        if start is not None:
            df = df[df["pos"] >= start]
        if end is not None:
            df = df[df["pos"] <= end]
        return SnpTable(df, self.founders)


def interp_genoprob(genoprobs: GenoProbs, chrom, positions: Sequence[float]) -> np.ndarray:
    """
    Founder probabilities at arbitrary positions on one chromosome.

    Linear interpolation between the flanking markers; positions outside the
    marker range take the nearest end marker. Returns shape (sample, founder, position).
    """
    idx = genoprobs.map.indices(chrom)
    mpos = genoprobs.map.pos[idx]
    probs = genoprobs.probs[:, :, idx]
    positions = np.asarray(positions, dtype=float)
    right = np.clip(np.searchsorted(mpos, positions, side="left"), 0, len(idx) - 1)
    left = np.clip(right - 1, 0, len(idx) - 1)
    # exact hits and the ends use a single marker
    exact = mpos[right] == positions
    left[exact] = right[exact]
    before = positions <= mpos[0]
    left[before] = 0
    right[before] = 0
    last = len(idx) - 1
    beyond = positions >= mpos[last]
    left[beyond] = last
    right[beyond] = last
    span = mpos[right] - mpos[left]
    with np.errstate(divide="ignore", invalid="ignore"):
        frac = np.where(span > 0, (positions - mpos[left]) / span, 0.0)
    return probs[:, :, left] * (1.0 - frac) + probs[:, :, right] * frac


def genoprob_to_snpprob(genoprobs: GenoProbs, snps: SnpTable) -> GenoProbs:
    """Two-column (ref, alt) allele probabilities at every SNP, as a GenoProbs."""
    if list(snps.founders) != list(genoprobs.founders):
        raise ValueError(
            f"SNP founders {snps.founders} do not match genotype founders {genoprobs.founders}"
        )
    sdp = snps.sdp
    alt = np.empty((genoprobs.n_samples, len(snps)))
    chroms = snps.table["chr"].to_numpy()
    for chrom in snps.map.chromosomes:
        cols = np.flatnonzero(chroms == chrom)
        fp = interp_genoprob(genoprobs, chrom, snps.table["pos"].to_numpy(dtype=float)[cols])
        alt[:, cols] = np.einsum("ifk,kf->ik", fp, sdp[cols])
    alt = np.clip(alt, 0.0, 1.0)
    probs = np.stack([1.0 - alt, alt], axis=1)
    return GenoProbs(probs, genoprobs.samples, ALLELES, snps.map, tol=genoprobs.tol)


class AssociationResult(ScanResult):
    """Per-SNP LOD scores with allele calls."""

    id_column = "snp"

    def top_snps(self, drop: float = 1.5) -> pd.DataFrame:
        return top_snps(self, drop)


def top_snps(result: ScanResult, drop: float = 1.5) -> pd.DataFrame:
    """SNPs whose LOD is within ``drop`` of the maximum, in position order."""
    table = result.table
    best = result.max_lod()
    if not np.isfinite(best):
        return table.iloc[0:0]
    return table[table["lod"] >= best - drop].reset_index(drop=True)


class AssociationMapper:
    """
    SNP scan over an interval, sharing the statistics of the haplotype scan.

    :param genoprobs: founder haplotype probabilities
    :param snps: SNP table with founder strain distribution patterns
    :param covar: covariates by sample id
    :param kinship: kinship; with LOCO matrices the SNP chromosome's matrix is used
    :param lod_threshold: LOD at or above which a SNP is flagged significant
    """

    def __init__(self, genoprobs: GenoProbs, snps: SnpTable, covar: Optional[pd.DataFrame] = None,
                 kinship: Optional[Kinship] = None, reml: bool = True, chunk_size: int = 1000,
                 lod_threshold: float = 4.0):
        self.genoprobs = genoprobs
        self.snps = snps
        self.covar = covar
        self.kinship = kinship
        self.reml = reml
        self.chunk_size = chunk_size
        self.lod_threshold = lod_threshold

    def scan(self, pheno, trait: str = "pheno", chrom=None, start: Optional[float] = None,
             end: Optional[float] = None) -> AssociationResult:
        """
        Scan the SNPs of one interval.

        :param pheno: phenotype values in genotype sample order, or a Series by sample id
        :param chrom: chromosome of the interval (all SNPs when None)
        :param start: interval start position (inclusive)
        :param end: interval end position (inclusive)
        """
        snps = self.snps if chrom is None else self.snps.in_interval(chrom, start, end)
        region = "all SNPs" if chrom is None else f"chr{chrom}:{start if start is not None else ''}-{end if end is not None else ''}"
        if len(snps) == 0:
            raise ValueError(f"No SNPs in {region}")
        logger.info(f"Association mapping of '{trait}' over {len(snps)} SNPs in {region}...")

        snpprobs = genoprob_to_snpprob(self.genoprobs, snps)
        scanner = Scanner(snpprobs, covar=self.covar, kinship=self.kinship, parameterization="founders",
                          reml=self.reml, chunk_size=self.chunk_size)
        y = scanner._phenotype_vector(pheno)
        scan = scanner.scan(y, trait=trait)

        # allele frequencies among phenotyped samples with genotype data
        alt = snpprobs.probs[:, 1, :]
        use = ~np.isnan(y)[:, None] & ~snpprobs.missing
        with np.errstate(invalid="ignore"):
            freq = np.where(use, alt, 0.0).sum(axis=0) / use.sum(axis=0)
        alt_minor = ~(freq > 0.5)

        sc = scan.table
        table = snps.table[["snp", "chr", "pos", "ref", "alt"]].copy()
        table["minor"] = np.where(alt_minor, table["alt"], table["ref"])
        table["major"] = np.where(alt_minor, table["ref"], table["alt"])
        table["maf"] = np.minimum(freq, 1.0 - freq)
        table["lod"] = sc["lod"].to_numpy()
        table["n"] = sc["n"].to_numpy()
        table["coef_ref"] = sc["coef_ref"].to_numpy()
        table["coef_alt"] = sc["coef_alt"].to_numpy()
        table["significant"] = table["lod"] >= self.lod_threshold
        n_sig = int(table["significant"].sum())
        logger.info(f"{n_sig} SNP(s) with LOD >= {self.lod_threshold} for '{trait}'.")
        return AssociationResult(trait, table, h2=scan.h2, parameterization="founders")
