from qtlmap.qtl import QTL
from qtlmap.log import logger, set_verbosity
from qtlmap.phe import phe_stat, phe_transform
from qtlmap.config import load_config, apply_overrides, peakdrop_value, ConfigError
from qtlmap.kinship import calc_kinship
from qtlmap.scan import Scanner
from qtlmap.perm import PermutationEngine
from qtlmap.snp import AssociationMapper
from qtlmap.peaks import find_peaks

import argparse
import os
from typing import Dict, Optional

import pandas as pd


def _config(args, **overrides) -> Dict:
    """Defaults, then the --config JSON file, then explicit command-line flags."""
    cfg = load_config(getattr(args, "config", None))
    return apply_overrides(cfg, **overrides)


def _kinship(qtl: QTL, args, cfg, genoprobs):
    """Kinship from --kinship, else computed as configured ("none" disables the mixed model)."""
    if getattr(args, "kinship", None):
        return qtl.read_kinship(args.kinship)
    kind = cfg["kinship"]
    if kind == "none":
        logger.info("No kinship: fitting linear models.")
        return None
    if kind == "loco" and len(genoprobs.map.chromosomes) < 2:
        logger.warning("LOCO kinship needs at least two chromosomes; using overall kinship.")
        kind = "overall"
    return calc_kinship(genoprobs, kind=kind)


def _scanner(cfg, cross, kinship, chromosomes=None) -> Scanner:
    return Scanner.from_cross(
        cross,
        kinship=kinship,
        parameterization=cfg["parameterization"],
        reml=cfg["reml"],
        chunk_size=cfg["chunk_size"],
        chromosomes=chromosomes,
    )


def _load(args, cfg):
    qtl = QTL(prob_tol=cfg["prob_tol"])
    cross = qtl.load_cross(args.genoprobs, args.map, args.phe, args.covar, traits=args.traits,
                           sample_col=args.sample_col, covar_cols=args.covar_cols)
    return qtl, cross


def run_kinship(args):
    """Process kinship subcommand."""
    cfg = _config(args, kinship=args.kind, prob_tol=args.prob_tol)
    if cfg["kinship"] == "none":
        raise ConfigError("kinship kind 'none' produces no matrix; use 'overall' or 'loco'")
    qtl = QTL(prob_tol=cfg["prob_tol"])
    genoprobs = qtl.read_genoprobs(args.genoprobs, args.map)
    kinship = calc_kinship(genoprobs, kind=cfg["kinship"])
    output_path = os.path.join(args.out_dir, f"{args.out_name}.kinship.npz")
    kinship.to_npz(output_path)
    logger.info(f"Saved {kinship.kind} kinship ({len(kinship.keys)} matrices) to {output_path}.")
    logger.info("Done!")


def run_scan(args):
    """Process scan subcommand."""
    cfg = _config(
        args,
        parameterization=args.parameterization,
        kinship=args.kinship_kind,
        reml=False if args.ml else None,
        chunk_size=args.chunk_size,
        prob_tol=args.prob_tol,
    )
    qtl, cross = _load(args, cfg)
    kinship = _kinship(qtl, args, cfg, cross.genoprobs)
    scanner = _scanner(cfg, cross, kinship, chromosomes=args.chr)

    results = {}
    for trait in cross.traits:
        logger.info(f"Scanning phenotype '{trait}'...")
        results[trait] = scanner.scan(cross.phenotype(trait), trait=trait)
        best = results[trait].max_lod()
        if results[trait].h2:
            h2 = ", ".join(f"{k}: {v:.3f}" for k, v in results[trait].h2.items())
            logger.info(f"Estimated heritability for '{trait}': {h2}")
        logger.info(f"Maximum LOD for '{trait}': {best:.3f}")
    qtl.save_scans(results, out_dir=args.out_dir, out_name=args.out_name)
    logger.info("Done!")


def run_perm(args):
    """Process perm subcommand."""
    cfg = _config(
        args,
        n_perm=args.n_perm,
        seed=args.seed,
        cores=args.cores,
        perm_batch=args.batch,
        alpha=args.alpha,
        parameterization=args.parameterization,
        kinship=args.kinship_kind,
        reml=False if args.ml else None,
        chunk_size=args.chunk_size,
        prob_tol=args.prob_tol,
    )
    qtl, cross = _load(args, cfg)
    kinship = _kinship(qtl, args, cfg, cross.genoprobs)
    scanner = _scanner(cfg, cross, kinship, chromosomes=args.chr)
    strata = cross.strata(args.strata) if args.strata else None

    perms = {}
    for trait in cross.traits:
        engine = PermutationEngine(scanner, n_perm=cfg["n_perm"], seed=cfg["seed"], cores=cfg["cores"],
                                   strata=strata, batch_size=cfg["perm_batch"])
        checkpoint = None
        if args.checkpoint:
            checkpoint = os.path.join(args.out_dir, f"{args.out_name}.{trait}.perm.ckpt.npz")
        perms[trait] = engine.run(cross.phenotype(trait), trait=trait, checkpoint=checkpoint)
        for alpha, thr in zip(cfg["alpha"], perms[trait].summary(cfg["alpha"])["threshold"]):
            logger.info(f"'{trait}' genome-wide LOD threshold at alpha={alpha}: {thr:.3f}")
    qtl.save_perms(perms, cfg["alpha"], out_dir=args.out_dir, out_name=args.out_name)
    logger.info("Done!")


def run_assoc(args):
    """Process assoc subcommand."""
    cfg = _config(
        args,
        kinship=args.kinship_kind,
        reml=False if args.ml else None,
        chunk_size=args.chunk_size,
        prob_tol=args.prob_tol,
        snp_lod_threshold=args.lod_threshold,
        snp_drop=args.drop,
    )
    if args.start is not None and args.end is not None and args.start > args.end:
        raise ValueError("--start must not exceed --end")
    qtl, cross = _load(args, cfg)
    kinship = _kinship(qtl, args, cfg, cross.genoprobs)
    snps = qtl.read_snp_file(args.snps, cross.genoprobs.founders)
    mapper = AssociationMapper(cross.genoprobs, snps, covar=cross.covar, kinship=kinship, reml=cfg["reml"],
                               chunk_size=cfg["chunk_size"], lod_threshold=cfg["snp_lod_threshold"])

    results = {}
    top = []
    for trait in cross.traits:
        results[trait] = mapper.scan(cross.phenotype(trait), trait=trait, chrom=args.chr, start=args.start,
                                     end=args.end)
        best = results[trait].top_snps(cfg["snp_drop"])
        best.insert(0, "trait", trait)
        top.append(best)
        logger.info(f"'{trait}': {len(best)} SNP(s) within {cfg['snp_drop']} LOD of the maximum.")
    qtl.save_scans(results, out_dir=args.out_dir, out_name=args.out_name, suffix="snps")
    qtl.save_table(pd.concat(top, ignore_index=True), out_dir=args.out_dir, out_name=args.out_name,
                   suffix="top_snps")
    logger.info("Done!")


def run_peaks(args):
    """Process peaks subcommand."""
    cfg = _config(args, lod_threshold=args.threshold, peakdrop=args.peakdrop, lod_drop=args.drop,
                  bayes_prob=args.prob)
    qtl = QTL()
    results = qtl.read_scans(args.scan)

    threshold: Optional[object] = cfg["lod_threshold"]
    if args.thresholds:
        alpha = args.alpha if args.alpha is not None else min(cfg["alpha"])
        threshold = qtl.read_thresholds(args.thresholds, alpha)
        missing = [t for t in results if t not in threshold]
        if missing:
            raise ValueError(f"No permutation threshold for trait(s): {missing}")
        logger.info(f"Using permutation thresholds at alpha={alpha}.")
    if threshold is None:
        raise ConfigError("A LOD threshold is required: give --threshold, --thresholds or lod_threshold in --config")

    if args.interval == "bayes":
        peaks = find_peaks(results, threshold, peakdrop=peakdrop_value(cfg), prob=cfg["bayes_prob"])
    else:
        peaks = find_peaks(results, threshold, peakdrop=peakdrop_value(cfg), drop=cfg["lod_drop"])
    qtl.save_table(peaks, out_dir=args.out_dir, out_name=args.out_name, suffix="peaks")
    logger.info("Done!")


def _add_input_args(p, snps: bool = False):
    p.add_argument("--genoprobs", type=str, required=True, help="Genotype probabilities .npz (probs, samples, founders, markers)")
    p.add_argument("--map", type=str, required=True, help="Marker map CSV with columns marker, chr, pos")
    p.add_argument("--phe", type=str, required=True, help="Phenotype table (TSV/CSV, first column sample id)")
    p.add_argument("--covar", type=str, default=None, help="Covariate table (TSV/CSV, first column sample id)")
    p.add_argument("--traits", type=str, default=None, help="Comma-separated traits to analyze (default: all)")
    p.add_argument("--covar-cols", type=str, default=None, help="Comma-separated covariate columns to use (default: all)")
    p.add_argument("--sample-col", type=str, default=None, help="Sample id column name (default: first column)")
    p.add_argument("--kinship", type=str, default=None, help="Kinship .npz from 'qtlmap kinship' (default: computed)")
    p.add_argument("--kinship-kind", type=str, default=None, choices=["overall", "loco", "none"],
                   help="Kinship to compute when --kinship is not given (default: loco)")
    p.add_argument("--ml", action="store_true", help="Estimate heritability by ML instead of REML")
    p.add_argument("--chunk-size", type=int, default=None, help="Markers per batched fit (default: 1000)")
    p.add_argument("--prob-tol", type=float, default=None, help="Tolerance for founder probabilities summing to 1 (default: 1e-3)")
    p.add_argument("--config", type=str, default=None, help="JSON file with analysis settings")


def _add_output_args(p, default_name: str):
    p.add_argument("--out_dir", type=str, default=".", help="Output directory (default: %(default)s)")
    p.add_argument("--out_name", type=str, default=default_name, help="Output file name prefix (default: %(default)s)")


def main(argv=None):
    description = """
    qtlmap: haplotype-based QTL mapping in multi-parent populations from founder probabilities.
    """

    epilog = """
    Example usage:
    qtlmap kinship --genoprobs probs.npz --map map.csv --kind loco --out_name do
    qtlmap scan --genoprobs probs.npz --map map.csv --phe pheno.tsv --covar covar.tsv --kinship do.kinship.npz --out_name do
    qtlmap perm --genoprobs probs.npz --map map.csv --phe pheno.tsv --n_perm 1000 --seed 1 --cores 4 --out_name do
    qtlmap peaks --scan do.scan.csv --thresholds do.thresholds.csv --alpha 0.05 --out_name do
    qtlmap assoc --genoprobs probs.npz --map map.csv --phe pheno.tsv --snps snps.csv --chr 2 --start 96.5 --end 98.5
    """
    __version__ = "1.0.0"

    parser = argparse.ArgumentParser(
        description=description,
        epilog=epilog,
        formatter_class=argparse.RawDescriptionHelpFormatter  # Preserve formatting
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--log-level", type=str, default="INFO", help="Logging level (default: %(default)s)")

    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # phe subcommand group
    phe_parser = subparsers.add_parser("phe", help="Phenotype utilities: stat, transform")
    phe_subparsers = phe_parser.add_subparsers(dest="phe_command", help="phe subcommands")

    # phe stat
    phe_stat_p = phe_subparsers.add_parser("stat", help="Compute phenotype statistics")
    phe_stat_p.add_argument("--input", type=str, required=True, help="Input phenotype file (TXT/TSV/CSV)")
    phe_stat_p.add_argument("--sep", type=str, default="auto", help="Input separator: auto/csv/tsv/tab/','/'\t'")
    phe_stat_p.add_argument("--sample-col", type=str, default=None, help="Sample ID column name (default: first column)")
    phe_stat_p.add_argument("--columns", type=str, default=None, help="Comma-separated traits (default: all non-sample columns)")
    phe_stat_p.add_argument("--out-dir", dest="out_dir", type=str, default=".", help="Output directory")
    phe_stat_p.add_argument("--out-name", dest="out_name", type=str, default="phe_stat", help="Output name prefix")
    phe_stat_p.add_argument("--encoding", type=str, default="utf-8", help="File encoding")
    phe_stat_p.set_defaults(func=phe_stat)

    # phe transform
    phe_tr_p = phe_subparsers.add_parser("transform", help="Transform traits (log, log10, rank-based inverse normal)")
    phe_tr_p.add_argument("--input", type=str, required=True, help="Input phenotype file (TXT/TSV/CSV)")
    phe_tr_p.add_argument("--method", type=str, required=True, choices=["log", "log10", "rankz"], help="Transform to apply")
    phe_tr_p.add_argument("--sep", type=str, default="auto", help="Input separator: auto/csv/tsv/tab/','/'\t'")
    phe_tr_p.add_argument("--sample-col", type=str, default=None, help="Sample ID column name (default: first column)")
    phe_tr_p.add_argument("--columns", type=str, default=None, help="Comma-separated traits (default: all non-sample columns)")
    phe_tr_p.add_argument("--out-dir", dest="out_dir", type=str, default=".", help="Output directory")
    phe_tr_p.add_argument("--out-name", dest="out_name", type=str, default="phe_transformed", help="Output name prefix")
    phe_tr_p.add_argument("--encoding", type=str, default="utf-8", help="File encoding")
    phe_tr_p.set_defaults(func=phe_transform)

    # kinship subcommand
    kin_parser = subparsers.add_parser("kinship", help="Estimate kinship from genotype probabilities")
    kin_parser.add_argument("--genoprobs", type=str, required=True, help="Genotype probabilities .npz")
    kin_parser.add_argument("--map", type=str, required=True, help="Marker map CSV with columns marker, chr, pos")
    kin_parser.add_argument("--kind", type=str, default=None, choices=["overall", "loco"], help="Kinship kind (default: loco)")
    kin_parser.add_argument("--prob-tol", type=float, default=None, help="Tolerance for founder probabilities summing to 1")
    kin_parser.add_argument("--config", type=str, default=None, help="JSON file with analysis settings")
    _add_output_args(kin_parser, "qtlmap")
    kin_parser.set_defaults(func=run_kinship)

    # scan subcommand
    scan_parser = subparsers.add_parser("scan", help="Single-locus genome scan")
    _add_input_args(scan_parser)
    scan_parser.add_argument("--parameterization", type=str, default=None, choices=["founders", "contrast"],
                             help="Founder effects without intercept, or contrasts to the first founder (default: founders)")
    scan_parser.add_argument("--chr", type=str, nargs="+", default=None, help="Restrict the scan to these chromosomes")
    _add_output_args(scan_parser, "qtlmap")
    scan_parser.set_defaults(func=run_scan)

    # perm subcommand
    perm_parser = subparsers.add_parser("perm", help="Permutation test for genome-wide LOD thresholds")
    _add_input_args(perm_parser)
    perm_parser.add_argument("--parameterization", type=str, default=None, choices=["founders", "contrast"],
                             help="Genotype term parameterization (default: founders)")
    perm_parser.add_argument("--chr", type=str, nargs="+", default=None, help="Restrict the scans to these chromosomes")
    perm_parser.add_argument("--n_perm", type=int, default=None, help="Number of permutations (default: 1000)")
    perm_parser.add_argument("--seed", type=int, default=None, help="Random seed (default: fresh, logged)")
    perm_parser.add_argument("--cores", type=int, default=None, help="Worker processes (default: 1)")
    perm_parser.add_argument("--batch", type=int, default=None, help="Permutations per batch and checkpoint (default: 10)")
    perm_parser.add_argument("--alpha", type=float, nargs="+", default=None, help="Significance levels (default: 0.1 0.05)")
    perm_parser.add_argument("--strata", type=str, default=None, help="Covariate or phenotype column to permute within")
    perm_parser.add_argument("--checkpoint", action="store_true", help="Write and resume from per-trait checkpoints in --out_dir")
    _add_output_args(perm_parser, "qtlmap")
    perm_parser.set_defaults(func=run_perm)

    # assoc subcommand
    assoc_parser = subparsers.add_parser("assoc", help="SNP association mapping in an interval")
    _add_input_args(assoc_parser)
    assoc_parser.add_argument("--snps", type=str, required=True, help="SNP CSV: snp, chr, pos, ref, alt and one 0/1 column per founder")
    assoc_parser.add_argument("--chr", type=str, default=None, help="Chromosome of the interval (default: all SNPs)")
    assoc_parser.add_argument("--start", type=float, default=None, help="Interval start position")
    assoc_parser.add_argument("--end", type=float, default=None, help="Interval end position")
    assoc_parser.add_argument("--lod-threshold", type=float, default=None, help="LOD flagging a SNP as significant (default: 4)")
    assoc_parser.add_argument("--drop", type=float, default=None, help="LOD drop from the maximum for top SNPs (default: 1.5)")
    _add_output_args(assoc_parser, "qtlmap")
    assoc_parser.set_defaults(func=run_assoc)

    # peaks subcommand
    peaks_parser = subparsers.add_parser("peaks", help="Find LOD peaks and their intervals")
    peaks_parser.add_argument("--scan", type=str, required=True, help="Scan table from 'qtlmap scan'")
    peaks_parser.add_argument("--threshold", type=float, default=None, help="LOD threshold for all traits")
    peaks_parser.add_argument("--thresholds", type=str, default=None, help="Thresholds table from 'qtlmap perm'")
    peaks_parser.add_argument("--alpha", type=float, default=None, help="Significance level to take from --thresholds")
    peaks_parser.add_argument("--peakdrop", type=float, default=None, help="LOD dip separating peaks on one chromosome (default: one peak)")
    peaks_parser.add_argument("--interval", type=str, default="lod", choices=["lod", "bayes"], help="Interval type (default: %(default)s)")
    peaks_parser.add_argument("--drop", type=float, default=None, help="LOD drop for support intervals (default: 1.5)")
    peaks_parser.add_argument("--prob", type=float, default=None, help="Coverage of Bayes credible intervals (default: 0.95)")
    peaks_parser.add_argument("--config", type=str, default=None, help="JSON file with analysis settings")
    _add_output_args(peaks_parser, "qtlmap")
    peaks_parser.set_defaults(func=run_peaks)

    # Parse arguments and execute the corresponding subcommand
    args = parser.parse_args(argv)
    set_verbosity(args.log_level)
    if args.command and hasattr(args, "func"):
        # Create output directory if it doesn't exist
        os.makedirs(args.out_dir, exist_ok=True)
        args.func(args)
    elif args.command == "phe":
        phe_parser.print_help()
    else:
        parser.print_help()

if __name__ == "__main__":
    main()
