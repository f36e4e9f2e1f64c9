import os
from typing import Dict, List, Optional

import numpy as np
import pandas as pd

from qtlmap.data import AlignmentError, CrossData, GenoProbs, MarkerMap, _preview
from qtlmap.kinship import Kinship
from qtlmap.log import logger
from qtlmap.perm import PermutationResult
from qtlmap.phe import read_covar, read_pheno
from qtlmap.scan import ScanResult
from qtlmap.snp import SnpTable


class QTL:
    def __init__(self, prob_tol: float = 1e-3):
        """
        Initialize the QTL mapping reader/writer.

        :param prob_tol: tolerance for founder probabilities summing to 1
        """
        self.prob_tol = prob_tol

    @staticmethod
    def _check_file(path: str):
        if not path or not os.path.isfile(path):
            raise FileNotFoundError(f"Input not found: {path}")

    def read_map(self, map_file: str) -> MarkerMap:
        """
        Read a marker map (CSV with columns marker, chr, pos).

        :param map_file: Path to the marker map
        """
        self._check_file(map_file)
        logger.info(f"Loading marker map: {map_file}")
        df = pd.read_csv(map_file, dtype={"marker": str, "chr": str})
        marker_map = MarkerMap.from_unsorted(df)
        logger.info(f"Loaded {len(marker_map)} markers on {len(marker_map.chromosomes)} chromosome(s).")
        return marker_map

    def read_genoprobs(self, npz_file: str, map_file: str) -> GenoProbs:
        """
        Read founder haplotype probabilities.

        :param npz_file: .npz with arrays probs (sample, founder, marker), samples, founders, markers
        :param map_file: marker map CSV; markers are reordered to map order
        """
        self._check_file(npz_file)
        logger.info(f"Loading genotype probabilities: {npz_file}")
        with np.load(npz_file, allow_pickle=False) as z:
            required = {"probs", "samples", "founders", "markers"}
            missing_keys = required - set(z.files)
            if missing_keys:
                raise ValueError(
                    f"The genotype file is missing the following required arrays: {missing_keys}. "
                    f"Please ensure the file contains arrays: {required}."
                )
            probs = z["probs"]
            samples = [str(s) for s in z["samples"]]
            founders = [str(f) for f in z["founders"]]
            markers = [str(m) for m in z["markers"]]

        marker_map = self.read_map(map_file)
        if len(markers) != probs.shape[2]:
            raise ValueError(f"{len(markers)} marker ids for {probs.shape[2]} marker columns in {npz_file}")
        pos = {m: i for i, m in enumerate(markers)}
        only_map = [m for m in marker_map.markers if m not in pos]
        only_probs = set(markers) - set(marker_map.markers)
        if only_map or only_probs:
            raise AlignmentError(
                f"Markers differ between map and genotype probabilities "
                f"(map only: {_preview(only_map)}; probabilities only: {_preview(only_probs)})"
            )
        probs = probs[:, :, [pos[m] for m in marker_map.markers]]
        genoprobs = GenoProbs(probs, samples, founders, marker_map, tol=self.prob_tol)
        logger.info(
            f"Loaded probabilities for {genoprobs.n_samples} samples, {genoprobs.n_founders} founders "
            f"and {genoprobs.n_markers} markers."
        )
        return genoprobs

    def read_pheno(self, phe_file: str, sample_col: Optional[str] = None, traits: Optional[str] = None,
                   sep: Optional[str] = "auto") -> pd.DataFrame:
        return read_pheno(phe_file, sample_col=sample_col, traits=traits, sep=sep)

    def read_covar(self, covar_file: Optional[str], sample_col: Optional[str] = None,
                   columns: Optional[str] = None, sep: Optional[str] = "auto") -> Optional[pd.DataFrame]:
        if not covar_file:
            return None
        return read_covar(covar_file, sample_col=sample_col, columns=columns, sep=sep)

    def read_kinship(self, kinship_file: Optional[str]) -> Optional[Kinship]:
        if not kinship_file:
            return None
        self._check_file(kinship_file)
        logger.info(f"Loading kinship: {kinship_file}")
        kinship = Kinship.from_npz(kinship_file)
        logger.info(f"Loaded {kinship.kind} kinship for {len(kinship.samples)} samples ({len(kinship.keys)} matrices).")
        return kinship

    def read_snp_file(self, snp_file: str, founders: List[str]) -> SnpTable:
        """
        Read a SNP file with founder strain distribution patterns.

        :param snp_file: CSV with columns snp chr pos ref alt founder1 ... founderN,
            founder columns holding 1 where the founder carries the alt allele
        :param founders: founder names, in genotype probability order
        """
        self._check_file(snp_file)
        logger.info(f"Loading SNP file: {snp_file}")
        snp_df = pd.read_csv(snp_file, dtype={"snp": str, "chr": str})
        snps = SnpTable(snp_df, founders)
        logger.info(f"Loaded {len(snps)} SNPs with strain distribution patterns for {len(founders)} founders.")
        return snps

    def load_cross(self, npz_file: str, map_file: str, phe_file: str, covar_file: Optional[str] = None,
                   traits: Optional[str] = None, sample_col: Optional[str] = None,
                   covar_cols: Optional[str] = None) -> CrossData:
        """Read and align genotype probabilities, phenotypes and covariates."""
        genoprobs = self.read_genoprobs(npz_file, map_file)
        pheno = self.read_pheno(phe_file, sample_col=sample_col, traits=traits)
        covar = self.read_covar(covar_file, sample_col=sample_col, columns=covar_cols)
        return CrossData(genoprobs, pheno, covar)

    # ------------------------------------------------------------------
    def save_scans(self, results: Dict[str, ScanResult], out_dir: str = ".", out_name: str = "qtlmap",
                   suffix: str = "scan") -> str:
        """
        Save scan results of several traits to one long-format table.

        :param results: scan results by trait
        :param out_dir: Output directory
        :param out_name: Output file name prefix
        """
        output_path = os.path.join(out_dir, f"{out_name}.{suffix}.csv")
        frames = []
        for trait, result in results.items():
            table = result.table
            table.insert(0, "trait", trait)
            frames.append(table)
        out = pd.concat(frames, ignore_index=True) if frames else pd.DataFrame()
        out.to_csv(output_path, index=False, float_format="%.6g")
        logger.info(f"Saved {len(out)} rows for {len(frames)} trait(s) to {output_path}.")
        return output_path

    def read_scans(self, scan_file: str) -> Dict[str, ScanResult]:
        """Read a table written by ``save_scans`` back into scan results."""
        self._check_file(scan_file)
        df = pd.read_csv(scan_file, dtype={"trait": str, "marker": str, "chr": str})
        required = {"trait", "marker", "chr", "pos", "lod"}
        missing = required - set(df.columns)
        if missing:
            raise ValueError(f"The scan file is missing the following required columns: {missing}.")
        results = {}
        for trait, table in df.groupby("trait", sort=False):
            results[trait] = ScanResult(trait, table.drop(columns="trait"))
        logger.info(f"Loaded scan results for {len(results)} trait(s) from {scan_file}.")
        return results

    def save_perms(self, perms: Dict[str, PermutationResult], alphas: List[float], out_dir: str = ".",
                   out_name: str = "qtlmap") -> pd.DataFrame:
        """Save permutation maxima (<out_name>.perm.csv) and thresholds (<out_name>.thresholds.csv)."""
        perm_path = os.path.join(out_dir, f"{out_name}.perm.csv")
        thr_path = os.path.join(out_dir, f"{out_name}.thresholds.csv")
        null = pd.DataFrame({trait: p.null for trait, p in perms.items()})
        null.insert(0, "perm", np.arange(1, len(null) + 1))
        null.to_csv(perm_path, index=False, float_format="%.6g")
        thresholds = pd.concat([p.summary(alphas) for p in perms.values()], ignore_index=True)
        thresholds["seed"] = [perms[t].seed for t in thresholds["trait"]]
        thresholds.to_csv(thr_path, index=False, float_format="%.6g")
        logger.info(f"Saved permutation maxima to {perm_path} and thresholds to {thr_path}.")
        return thresholds

    def read_thresholds(self, thr_file: str, alpha: float) -> Dict[str, float]:
        """LOD thresholds by trait at one significance level from a thresholds table."""
        self._check_file(thr_file)
        df = pd.read_csv(thr_file, dtype={"trait": str})
        sel = df[np.isclose(df["alpha"], alpha)]
        if sel.empty:
            raise ValueError(f"No thresholds for alpha={alpha} in {thr_file}")
        return dict(zip(sel["trait"], sel["threshold"].astype(float)))

    def save_table(self, df: pd.DataFrame, out_dir: str = ".", out_name: str = "qtlmap",
                   suffix: str = "peaks") -> str:
        output_path = os.path.join(out_dir, f"{out_name}.{suffix}.csv")
        df.to_csv(output_path, index=False, float_format="%.6g")
        logger.info(f"Saved {len(df)} rows to {output_path}.")
        return output_path
