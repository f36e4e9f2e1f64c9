import os
import math
import pandas as pd
import numpy as np
from typing import List, Optional

from qtlmap.log import logger
from scipy import stats as sstats


# ------------------------
# Helpers
# ------------------------

def _infer_sep_from_ext(path: str, fallback: str = "\t") -> str:
	lower = (path or "").lower()
	if lower.endswith(".csv"):
		return ","
	# default treat .tsv/.txt as tab
	return fallback


def _normalize_sep(sep: Optional[str], path: Optional[str]) -> str:
	if sep in (None, "auto"):
		return _infer_sep_from_ext(path or "")
	if sep.lower() in {"csv", ","}:
		return ","
	if sep.lower() in {"tsv", "tab", "\t"}:
		return "\t"
	# allow custom single-char
	return sep


def _read_table(path: str, sep: Optional[str] = None, header: bool = True, encoding: str = "utf-8") -> pd.DataFrame:
	if not os.path.isfile(path):
		raise FileNotFoundError(f"Input not found: {path}")
	use_sep = _normalize_sep(sep, path)
	try:
		df = pd.read_csv(path, sep=use_sep, header=0 if header else None, encoding=encoding)
	except Exception as e:
		raise ValueError(f"Failed to read table: {path} ({e})") from e
	return df


def _write_table(df: pd.DataFrame, path: str, sep: Optional[str] = None, header: bool = True, index: bool = False, encoding: str = "utf-8"):
	os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
	use_sep = _normalize_sep(sep, path)
	df.to_csv(path, sep=use_sep, header=header, index=index, encoding=encoding, lineterminator="\n")


def _select_columns(df: pd.DataFrame, names: Optional[str]) -> List[str]:
	if not names:
		return [str(c) for c in df.columns]
	cols = [s.strip() for s in names.split(",") if s.strip()]
	unknown = [c for c in cols if c not in df.columns]
	if unknown:
		raise ValueError(f"Columns not found: {unknown}")
	return cols


def _indexed_table(path: str, sample_col: Optional[str], sep: Optional[str], encoding: str, what: str) -> pd.DataFrame:
	df = _read_table(path, sep=sep, header=True, encoding=encoding)
	if df.shape[1] < 2:
		raise ValueError(f"The {what} file must contain at least 2 columns (sample + values): {path}")
	s_col = sample_col or df.columns[0]
	if s_col not in df.columns:
		raise ValueError(f"Sample column '{s_col}' not found in {path}")
	df[s_col] = df[s_col].astype(str)
	dups = df[s_col][df[s_col].duplicated()].unique()
	if len(dups):
		raise ValueError(f"Duplicate sample ids in {path}: {', '.join(dups[:5])}")
	return df.set_index(s_col)


# ------------------------
# phenotypes and covariates
# ------------------------

SEX_CODES = {"f": 0, "female": 0, "m": 1, "male": 1}


def encode_sex(s: pd.Series) -> pd.Series:
	"""Encode a sex column as 0 (female) / 1 (male); numeric 0/1 (or 1/2) input is kept as 0/1."""
	num = pd.to_numeric(s, errors="coerce")
	if num.notna().sum() == s.notna().sum():
		values = set(num.dropna().unique())
		if values <= {0, 1}:
			return num
		if values <= {1, 2}:
			return num - 1
		raise ValueError(f"Numeric sex column must be coded 0/1 or 1/2, got {sorted(values)}")
	coded = s.astype(str).str.strip().str.lower().map(SEX_CODES)
	bad = s[s.notna() & coded.isna()]
	if len(bad):
		raise ValueError(f"Unrecognized sex values: {sorted(set(bad.astype(str)))[:5]}")
	return coded


def read_pheno(path: str, sample_col: Optional[str] = None, traits: Optional[str] = None, sep: Optional[str] = "auto", encoding: str = "utf-8") -> pd.DataFrame:
	"""
	Read a phenotype table (header required) indexed by sample id.

	:param sample_col: sample id column (default: first column)
	:param traits: comma-separated trait columns to keep (default: all)
	"""
	logger.info(f"Loading phenotype file: {path}")
	df = _indexed_table(path, sample_col, sep, encoding, "phenotype")
	cols = _select_columns(df, traits)
	out = df[cols].apply(pd.to_numeric, errors="coerce")
	for c in cols:
		n_bad = int(out[c].isna().sum() - df[c].isna().sum())
		if n_bad:
			logger.warning(f"Trait '{c}': {n_bad} non-numeric value(s) treated as missing.")
	logger.info(f"Loaded {len(out)} samples with {len(cols)} trait(s).")
	return out


def read_covar(path: str, sample_col: Optional[str] = None, columns: Optional[str] = None, sex_col: Optional[str] = "sex", sep: Optional[str] = "auto", encoding: str = "utf-8") -> pd.DataFrame:
	"""
	Read a covariate table indexed by sample id; the sex column is encoded 0/1.
	Remaining non-numeric columns are expanded into 0/1 indicator columns.
	"""
	logger.info(f"Loading covariate file: {path}")
	df = _indexed_table(path, sample_col, sep, encoding, "covariate")
	df = df[_select_columns(df, columns)].copy()
	if sex_col and sex_col in df.columns:
		df[sex_col] = encode_sex(df[sex_col])
	categorical = [c for c in df.columns if not pd.api.types.is_numeric_dtype(df[c])]
	if categorical:
		df = pd.get_dummies(df, columns=categorical, drop_first=True, dtype=float)
		logger.info(f"Expanded categorical covariates {categorical} into indicator columns.")
	logger.info(f"Loaded {df.shape[1]} covariate column(s) for {len(df)} samples.")
	return df.astype(float)


# ------------------------
# transform
# ------------------------

def rankz(s: pd.Series) -> pd.Series:
	"""Rank-based inverse normal transform; missing values stay missing."""
	s_num = pd.to_numeric(s, errors="coerce")
	n = s_num.notna().sum()
	ranks = s_num.rank(method="average")
	return pd.Series(sstats.norm.ppf((ranks - 0.5) / n), index=s.index, name=s.name)


def transform_series(s: pd.Series, method: str) -> pd.Series:
	s_num = pd.to_numeric(s, errors="coerce")
	if method == "rankz":
		return rankz(s_num)
	if method in {"log", "log10"}:
		if (s_num.dropna() <= 0).any():
			raise ValueError(f"Trait '{s.name}' has non-positive values; cannot apply {method}")
		return np.log(s_num) if method == "log" else np.log10(s_num)
	raise ValueError(f"Unknown transform: {method}")


def phe_transform(args):
	"""Apply log/log10/rankz to selected traits and write a new phenotype table."""
	df = read_pheno(args.input, sample_col=args.sample_col, sep=args.sep, encoding=args.encoding)
	cols = _select_columns(df, args.columns)
	out = df.copy()
	for c in cols:
		out[c] = transform_series(df[c], args.method)
		logger.info(f"Applied {args.method} to trait '{c}'.")
	out_dir = args.out_dir or "."
	out_path = os.path.join(out_dir, f"{args.out_name}.tsv")
	_write_table(out.reset_index().rename(columns={"index": "sample"}), out_path, sep="\t", header=True)
	logger.info(f"Transformed phenotypes saved to: {out_path}")


# ------------------------
# stat
# ------------------------

def _summarize_series(s: pd.Series) -> dict:
	s_num = pd.to_numeric(s, errors="coerce")
	n = int(s_num.shape[0])
	n_miss = int(s_num.isna().sum())
	s_clean = s_num.dropna()
	n_clean = int(s_clean.shape[0])
	mean = float(s_clean.mean()) if n_clean else float("nan")
	std = float(s_clean.std()) if n_clean > 1 else float("nan")

	# Shapiro-Wilk: practical range 3 <= n <= 5000 to avoid warnings
	shapiro_p = float("nan")
	if 3 <= n_clean <= 5000 and s_clean.nunique() > 1:
		shapiro_p = float(sstats.shapiro(s_clean.values)[1])
	skew = float(s_clean.skew()) if n_clean > 2 else float("nan")

	return {
		"count": n,
		"non_missing": n_clean,
		"missing": n_miss,
		"missing_rate": (n_miss / n) if n > 0 else float("nan"),
		"mean": mean,
		"std": std,
		"cv": float(std / abs(mean)) if (not math.isnan(std) and not math.isnan(mean) and abs(mean) > 1e-12) else float("nan"),
		"min": float(s_clean.min()) if n_clean else float("nan"),
		"q1": float(s_clean.quantile(0.25)) if n_clean else float("nan"),
		"median": float(s_clean.median()) if n_clean else float("nan"),
		"q3": float(s_clean.quantile(0.75)) if n_clean else float("nan"),
		"max": float(s_clean.max()) if n_clean else float("nan"),
		"skew": skew,
		"shapiro_p": shapiro_p,
	}


def phe_summary(df: pd.DataFrame, columns: Optional[List[str]] = None) -> pd.DataFrame:
	rows = []
	for col in columns or list(df.columns):
		rows.append({"trait": col, **_summarize_series(df[col])})
	return pd.DataFrame(rows)


def phe_stat(args):
	df = read_pheno(args.input, sample_col=args.sample_col, sep=args.sep, encoding=args.encoding)
	cols = _select_columns(df, args.columns)
	if not cols:
		raise ValueError("No trait columns selected for statistics")
	stat_df = phe_summary(df, cols)

	out_dir = args.out_dir or "."
	os.makedirs(out_dir, exist_ok=True)
	stats_path = os.path.join(out_dir, f"{args.out_name}.stats.tsv")
	_write_table(stat_df, stats_path, sep="\t", header=True)
	logger.info(f"Phenotype statistics saved to: {stats_path}")
	return stat_df
