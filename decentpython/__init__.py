"""
decentpython: differential expression with capture efficiency adjustment.

Likelihood-ratio testing for single-cell RNA-seq counts under a
zero-inflated negative binomial model with beta-binomial dropout,
after DECENT (Ye, Speed & Salim, 2019).
"""

__version__ = "0.1.0"

# --- Classes ---
from .classes import DECENTLRT, GeneFitResult

# --- Quadrature ---
from .quadrature import gauss_quad, rescale_rule

# --- Distributions ---
from .distributions import dnbinom2, dbetabinom2, qzinb, dzinb

# --- Likelihood ---
from .likelihood import (
    bb_dispersion,
    quadrature_bounds,
    dbbnb,
    negll_incomplete,
    unpack_params,
)

# --- Likelihood-ratio test ---
from .lrt import (
    lr_test,
    fit_gene,
    clamp_params,
    null_start,
    alt_start,
    lrt_statistic,
    lrt_pvalue,
)

# --- Imputation ---
from .imputation import draw_sample, single_impute_by_gene, single_impute, expected_latent

# --- Utilities ---
from .utils import celltype_design, model_matrix, as_count_matrix, check_fit_bundle
