"""
Analysis settings shared by the library and the command line.

Every tunable constant of a mapping run lives in ``DEFAULTS``. A run starts
from a copy of it, optionally overlaid with a JSON file (``load_config``) and
then with explicit command-line flags (``apply_overrides``).
"""

import copy
import json
import math
import os
from typing import Any, Dict, Optional

from qtlmap.log import logger


class ConfigError(ValueError):
    """Raised for invalid analysis settings."""


PARAMETERIZATIONS = ("founders", "contrast")
KINSHIP_KINDS = ("overall", "loco", "none")

DEFAULTS: Dict[str, Any] = {
    # permutations
    "n_perm": 1000,
    "alpha": [0.1, 0.05],
    "seed": None,
    "cores": 1,
    "perm_batch": 10,
    # scan
    "parameterization": "founders",
    "kinship": "loco",
    "reml": True,
    "chunk_size": 1000,
    "prob_tol": 1e-3,
    # peaks
    "lod_threshold": None,
    "peakdrop": None,  # None means a single peak per chromosome
    "lod_drop": 1.5,
    "bayes_prob": 0.95,
    # association mapping
    "snp_lod_threshold": 4.0,
    "snp_drop": 1.5,
}


def default_config() -> Dict[str, Any]:
    """Return a fresh copy of the default settings."""
    return copy.deepcopy(DEFAULTS)


def check_alpha(alpha) -> None:
    values = alpha if isinstance(alpha, (list, tuple)) else [alpha]
    if not values:
        raise ConfigError("alpha must contain at least one significance level")
    for a in values:
        if not isinstance(a, (int, float)) or not (0.0 < float(a) < 1.0):
            raise ConfigError(f"alpha must be in (0, 1), got {a!r}")


def validate_config(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Check types and ranges of a settings dict; returns it with alpha as a list of floats."""
    unknown = set(cfg) - set(DEFAULTS)
    if unknown:
        raise ConfigError(f"Unknown configuration keys: {sorted(unknown)}")

    n_perm = cfg["n_perm"]
    if not isinstance(n_perm, int) or isinstance(n_perm, bool) or n_perm < 1:
        raise ConfigError(f"n_perm must be a positive integer, got {n_perm!r}")
    check_alpha(cfg["alpha"])
    # a single level is kept as a one-item list
    if not isinstance(cfg["alpha"], (list, tuple)):
        cfg["alpha"] = [cfg["alpha"]]
    cfg["alpha"] = [float(a) for a in cfg["alpha"]]
    if cfg["seed"] is not None and (not isinstance(cfg["seed"], int) or cfg["seed"] < 0):
        raise ConfigError(f"seed must be a non-negative integer or null, got {cfg['seed']!r}")
    for key in ("cores", "perm_batch", "chunk_size"):
        if not isinstance(cfg[key], int) or cfg[key] < 1:
            raise ConfigError(f"{key} must be a positive integer, got {cfg[key]!r}")
    if cfg["parameterization"] not in PARAMETERIZATIONS:
        raise ConfigError(
            f"parameterization must be one of {PARAMETERIZATIONS}, got {cfg['parameterization']!r}"
        )
    if cfg["kinship"] not in KINSHIP_KINDS:
        raise ConfigError(f"kinship must be one of {KINSHIP_KINDS}, got {cfg['kinship']!r}")
    if not (0.0 < float(cfg["prob_tol"]) < 1.0):
        raise ConfigError("prob_tol must be in (0, 1)")
    for key in ("lod_drop", "snp_drop"):
        if float(cfg[key]) <= 0:
            raise ConfigError(f"{key} must be positive")
    if cfg["peakdrop"] is not None and float(cfg["peakdrop"]) <= 0:
        raise ConfigError("peakdrop must be positive or null")
    if not (0.0 < float(cfg["bayes_prob"]) < 1.0):
        raise ConfigError("bayes_prob must be in (0, 1)")
    return cfg


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Read a JSON settings file and merge it over the defaults."""
    cfg = default_config()
    if path:
        if not os.path.isfile(path):
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path, "r", encoding="utf-8") as f:
            try:
                user = json.load(f)
            except json.JSONDecodeError as e:
                raise ConfigError(f"Invalid JSON in config file {path}: {e}") from e
        if not isinstance(user, dict):
            raise ConfigError(f"Config file {path} must contain a JSON object")
        cfg.update(user)
        logger.info(f"Loaded configuration from {path}: {', '.join(sorted(user))}")
    return validate_config(cfg)


def apply_overrides(cfg: Dict[str, Any], **overrides) -> Dict[str, Any]:
    """Return a validated copy of ``cfg`` with every non-None override applied."""
    out = copy.deepcopy(cfg)
    for key, value in overrides.items():
        if value is not None:
            out[key] = value
    return validate_config(out)


def peakdrop_value(cfg: Dict[str, Any]) -> float:
    return math.inf if cfg.get("peakdrop") is None else float(cfg["peakdrop"])
