"""
Peaks and QTL intervals from scan results.
"""

import math
from typing import Dict, List, Optional, Tuple, Union

import numpy as np
import pandas as pd

from qtlmap.log import logger
from qtlmap.scan import ScanResult


def _chr_arrays(result: ScanResult, chrom) -> Tuple[np.ndarray, np.ndarray, List[str]]:
    df = result.chromosome(chrom)
    if df.empty:
        raise KeyError(f"No markers on chromosome {chrom} in scan '{result.trait}'")
    return df["pos"].to_numpy(dtype=float), df["lod"].to_numpy(dtype=float), df[result.id_column].tolist()


def _peak_segments(lod: np.ndarray, a: int, b: int, threshold: float, peakdrop: float, out: List[int]):
    """Collect peak indices in lod[a:b+1]; neighbouring peaks are separated by a dip of peakdrop."""
    seg = lod[a:b + 1]
    if seg.size == 0 or not np.any(np.isfinite(seg)):
        return
    m = a + int(np.nanargmax(seg))
    if lod[m] < threshold:
        return
    out.append(m)
    if math.isinf(peakdrop):
        return
    floor = lod[m] - peakdrop
    i = m - 1
    while i >= a and not (lod[i] <= floor):
        i -= 1
    if i >= a:
        _peak_segments(lod, a, i, threshold, peakdrop, out)
    j = m + 1
    while j <= b and not (lod[j] <= floor):
        j += 1
    if j <= b:
        _peak_segments(lod, j, b, threshold, peakdrop, out)


def _lod_int_idx(lod: np.ndarray, peak: int, drop: float) -> Tuple[int, int]:
    """Marker indices bounding the LOD support interval, expanded to the flanking markers."""
    floor = lod[peak] - drop
    lo = peak
    while lo > 0:
        lo -= 1
        if lod[lo] <= floor:
            break
    hi = peak
    while hi < len(lod) - 1:
        hi += 1
        if lod[hi] <= floor:
            break
    return lo, hi


def _bayes_int_idx(pos: np.ndarray, lod: np.ndarray, prob: float) -> Tuple[int, int]:
    ok = np.isfinite(lod)
    if len(pos) == 1:
        return 0, 0
    # each marker stands for half the distance to each neighbour
    mid = (pos[1:] + pos[:-1]) / 2.0
    width = np.diff(np.concatenate([[pos[0]], mid, [pos[-1]]]))
    if not np.any(width > 0):
        width = np.ones_like(pos)
    dens = np.zeros_like(lod)
    dens[ok] = 10.0 ** (lod[ok] - np.nanmax(lod)) * width[ok]
    total = dens.sum()
    if total <= 0:
        return 0, len(pos) - 1
    order = np.argsort(-dens, kind="mergesort")
    keep = order[: int(np.searchsorted(np.cumsum(dens[order]) / total, prob) + 1)]
    return int(keep.min()), int(keep.max())


def lod_int(result: ScanResult, chrom, drop: float = 1.5, peak: Optional[int] = None) -> pd.Series:
    """
    LOD support interval on one chromosome.

    :param drop: LOD drop from the peak that bounds the interval
    :param peak: index of the peak within the chromosome (default: the maximum)
    :return: Series with ci_lo, pos, ci_hi, lod and marker
    """
    pos, lod, names = _chr_arrays(result, chrom)
    if not np.any(np.isfinite(lod)):
        raise ValueError(f"All LOD scores on chromosome {chrom} are undefined")
    if peak is None:
        peak = int(np.nanargmax(lod))
    lo, hi = _lod_int_idx(lod, peak, drop)
    return pd.Series({"ci_lo": pos[lo], "pos": pos[peak], "ci_hi": pos[hi], "lod": lod[peak], "marker": names[peak]})


def bayes_int(result: ScanResult, chrom, prob: float = 0.95) -> pd.Series:
    """Bayesian credible interval on one chromosome from 10^LOD weighted by marker spacing."""
    pos, lod, names = _chr_arrays(result, chrom)
    if not np.any(np.isfinite(lod)):
        raise ValueError(f"All LOD scores on chromosome {chrom} are undefined")
    peak = int(np.nanargmax(lod))
    lo, hi = _bayes_int_idx(pos, lod, prob)
    return pd.Series({"ci_lo": pos[min(lo, peak)], "pos": pos[peak], "ci_hi": pos[max(hi, peak)],
                      "lod": lod[peak], "marker": names[peak]})


def find_peaks(
    results: Union[ScanResult, Dict[str, ScanResult]],
    threshold: Union[float, Dict[str, float]] = 3.0,
    peakdrop: float = math.inf,
    drop: Optional[float] = None,
    prob: Optional[float] = None,
) -> pd.DataFrame:
    """
    Find LOD peaks above a threshold.

    :param results: one ScanResult or a dict of them by trait
    :param threshold: LOD threshold, or a dict of thresholds by trait
    :param peakdrop: LOD dip required between two peaks on a chromosome
        (infinite: at most one peak per chromosome)
    :param drop: if given, add a LOD support interval (ci_lo, ci_hi)
    :param prob: if given (and drop is not), add a Bayesian credible interval
    """
    if drop is not None and prob is not None:
        raise ValueError("Give either drop or prob, not both")
    if isinstance(results, ScanResult):
        results = {results.trait: results}
    rows = []
    for trait, result in results.items():
        thr = threshold[trait] if isinstance(threshold, dict) else threshold
        table = result.table
        for chrom in pd.unique(table["chr"]):
            pos, lod, names = _chr_arrays(result, chrom)
            found: List[int] = []
            _peak_segments(lod, 0, len(lod) - 1, thr, peakdrop, found)
            for p in sorted(found):
                row = {"trait": trait, "chr": chrom, "marker": names[p], "pos": pos[p], "lod": lod[p]}
                if drop is not None:
                    lo, hi = _lod_int_idx(lod, p, drop)
                    row.update(ci_lo=pos[lo], ci_hi=pos[hi])
                elif prob is not None:
                    lo, hi = _bayes_int_idx(pos, lod, prob)
                    row.update(ci_lo=pos[min(lo, p)], ci_hi=pos[max(hi, p)])
                rows.append(row)
    peaks = pd.DataFrame(rows, columns=["trait", "chr", "marker", "pos", "lod"] +
                         (["ci_lo", "ci_hi"] if (drop is not None or prob is not None) else []))
    logger.info(f"Found {len(peaks)} peak(s) above the LOD threshold.")
    return peaks
