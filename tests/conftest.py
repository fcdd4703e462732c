"""Shared fixtures for decentpython tests."""

import numpy as np
import pandas as pd
import pytest


def simulate_dropout_counts(rng, mu, pi0, size, sf, ce):
    """Draw observed counts: ZINB latent counts thinned binomially.

    Parameters
    ----------
    mu : ndarray (genes x cells)
        Latent means before size-factor scaling.
    """
    mu = np.atleast_2d(mu)
    ngene, ncell = mu.shape
    lam = mu * sf[None, :]
    latent = rng.negative_binomial(size, size / (size + lam))
    latent[rng.uniform(size=(ngene, ncell)) < pi0] = 0
    return rng.binomial(latent, ce[None, :]).astype(np.float64)


def make_two_gene_data(seed=7, ncell=20):
    """Cells split into two cell types; gene 'flat' has no DE, gene 'de' a 4x change.

    Returns counts (DataFrame), fitted no-DE bundle, cell-type design and
    dispersion link.
    """
    rng = np.random.RandomState(seed)
    celltype = np.repeat([0, 1], ncell // 2)
    sf = rng.uniform(0.8, 1.2, ncell)
    ce = rng.uniform(0.3, 0.5, ncell)
    pi0 = 0.05

    mu = np.vstack([
        np.full(ncell, 20.0),
        np.where(celltype == 1, 40.0, 10.0),
    ])
    z = simulate_dropout_counts(rng, mu, pi0, 5.0, sf, ce)
    counts = pd.DataFrame(z, index=['flat', 'de'],
                          columns=[f"cell{i + 1}" for i in range(ncell)])

    est_mu = (z / (sf * ce)[None, :]).mean(axis=1)
    fit = {
        'est.sf': sf,
        'CE': ce,
        'est.mu': np.column_stack([est_mu, est_mu]),
        'est.pi0': np.full((2, 2), pi0),
        'est.disp': np.full(2, 0.2),
    }
    X = pd.DataFrame({
        '(Intercept)': np.ones(ncell),
        'celltypeB': celltype.astype(np.float64),
    })
    return {
        'counts': counts,
        'fit': fit,
        'X': X,
        'tau': np.array([-4.0, 0.0]),
        'celltype': celltype,
    }


@pytest.fixture
def rng():
    """Seeded random number generator for reproducibility."""
    return np.random.RandomState(42)


@pytest.fixture(scope="module")
def two_gene_data():
    """Two-gene data set simulated with a fixed seed."""
    return make_two_gene_data(7)


@pytest.fixture
def two_gene_factory():
    """Simulate the two-gene data set for a given seed."""
    return make_two_gene_data
