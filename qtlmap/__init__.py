"""QTLMap package

Core modules:
- qtlmap.data: Genotype probabilities, marker map and sample alignment
- qtlmap.kinship: Kinship matrices (overall and leave-one-chromosome-out)
- qtlmap.lmm: Mixed-model rotation and heritability estimation
- qtlmap.scan: Single-locus genome scan
- qtlmap.perm: Permutation thresholds
- qtlmap.snp: SNP association mapping in an interval
- qtlmap.peaks: Peaks, LOD support and Bayes credible intervals
- qtlmap.phe: Phenotype utilities
- qtlmap.qtl: File readers and writers
- qtlmap.qtlmap: CLI entry point (main)
"""

from qtlmap.config import ConfigError
from qtlmap.data import AlignmentError, CrossData, GenoProbs, MarkerMap
from qtlmap.kinship import Kinship, calc_kinship
from qtlmap.peaks import bayes_int, find_peaks, lod_int
from qtlmap.perm import PermutationEngine, PermutationResult
from qtlmap.scan import ScanResult, Scanner, scan_cross
from qtlmap.snp import AssociationMapper, AssociationResult, SnpTable

__version__ = "1.0.0"

__all__ = [
    "AlignmentError",
    "AssociationMapper",
    "AssociationResult",
    "ConfigError",
    "CrossData",
    "GenoProbs",
    "Kinship",
    "MarkerMap",
    "PermutationEngine",
    "PermutationResult",
    "ScanResult",
    "Scanner",
    "SnpTable",
    "bayes_int",
    "calc_kinship",
    "find_peaks",
    "lod_int",
    "scan_cross",
]
