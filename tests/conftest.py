import numpy as np
import pandas as pd
import pytest

from qtlmap.data import GenoProbs, MarkerMap


def _make_map(n_per_chr=(5, 5), spacing=10.0):
    rows = []
    for c, n in enumerate(n_per_chr, start=1):
        for j in range(n):
            rows.append({"marker": f"m{c}_{j + 1}", "chr": str(c), "pos": j * spacing})
    return MarkerMap(pd.DataFrame(rows))


def _make_genoprobs(n_samples=40, n_founders=3, n_per_chr=(5, 5), seed=1, switch=0.2):
    """0/1 founder probabilities from a random walk along each chromosome."""
    rng = np.random.default_rng(seed)
    marker_map = _make_map(n_per_chr)
    probs = np.zeros((n_samples, n_founders, len(marker_map)))
    rows = np.arange(n_samples)
    col = 0
    for n in n_per_chr:
        state = rng.integers(0, n_founders, size=n_samples)
        for j in range(n):
            if j:
                flip = rng.random(n_samples) < switch
                state = np.where(flip, rng.integers(0, n_founders, size=n_samples), state)
            probs[rows, state, col] = 1.0
            col += 1
    samples = [f"s{i + 1}" for i in range(n_samples)]
    founders = [chr(ord("A") + f) for f in range(n_founders)]
    return GenoProbs(probs, samples, founders, marker_map)


def _make_pheno(genoprobs, marker="m1_3", effect=3.0, noise=0.5, seed=2):
    """Phenotype with an effect of the first founder at one marker."""
    rng = np.random.default_rng(seed)
    m = genoprobs.map.index_of(marker)
    return effect * genoprobs.probs[:, 0, m] + rng.normal(0.0, noise, genoprobs.n_samples)


@pytest.fixture
def make_genoprobs():
    return _make_genoprobs


@pytest.fixture
def genoprobs():
    return _make_genoprobs()


@pytest.fixture
def pheno(genoprobs):
    return _make_pheno(genoprobs)


@pytest.fixture
def make_pheno():
    return _make_pheno
