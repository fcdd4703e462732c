"""
Likelihood-ratio test for differential expression under the dropout model.

Port of DECENT's ``lrTest``.  For every gene a no-DE model (common mean
across cell types) and a DE model (cell-type specific means) are fitted
by maximum likelihood on the incomplete-data likelihood, the DE fit being
warm-started from the no-DE fit.  The two attained log-likelihoods give
a 1-df likelihood-ratio statistic.

Reference
---------
Ye C, Speed TP, Salim A. DECENT: differential expression with capture
efficiency adjustmeNT for single-cell RNA-seq data.
*Bioinformatics*, 35(24):5155-5162, 2019.
"""

import os
import warnings
from concurrent.futures import ProcessPoolExecutor
from datetime import datetime
from functools import partial

import numpy as np
import pandas as pd
from scipy.optimize import minimize as _minimize
from scipy.special import logit
from scipy.stats import chi2 as _chi2

from .classes import DECENTLRT, FAILED, GeneFitResult, NONCONVERGENCE, OK
from .likelihood import bb_dispersion, negll_incomplete
from .quadrature import GQ_ORDER, gauss_quad
from .utils import as_count_matrix, check_fit_bundle, model_matrix

PARAM_FLOOR = -100.0
# Stand-in for non-finite objective values during the simplex search
_BIG = 1.0e35
_NM_DEFAULTS = {'maxiter': 500, 'xatol': 1e-4, 'fatol': 1e-6}


# ---------------------------------------------------------------------------
# Starting values
# ---------------------------------------------------------------------------

def clamp_params(params, floor=PARAM_FLOOR):
    """Raise every parameter below *floor* to *floor*.

    Applied to a fitted noDE parameter vector before it is stored and
    reused as a starting value, so that a degenerate fit drifting towards -inf
    (e.g. a vanishing zero-inflation logit) does not poison the next
    optimisation.
    """
    return np.maximum(np.asarray(params, dtype=np.float64), floor)


def null_start(mu0, pi00, n_w):
    """Starting values for the noDE model.

    ``[logit(pi0), log(mu), 0 (one per W column), 0 (log-dispersion)]``.
    """
    with np.errstate(divide='ignore'):
        p = np.concatenate([[logit(pi00), np.log(mu0)], np.zeros(n_w + 1)])
    return clamp_params(p)


def alt_start(null_params, n_beta):
    """Warm start for the DE model from a noDE parameter vector.

    Keeps the zero-inflation logit, the intercept and the log-dispersion
    of *null_params* and zero-fills the remaining ``n_beta - 1`` mean
    coefficients (cell-type contrasts and covariates).
    """
    p = clamp_params(null_params)
    return np.concatenate([p[:2], np.zeros(n_beta - 1), p[-1:]])


# ---------------------------------------------------------------------------
# Optimisation
# ---------------------------------------------------------------------------

def _initial_simplex(p0):
    """Nelder-Mead starting simplex: p0 plus a step along each axis.

    The step is 10% of the largest absolute starting value, or 0.1 when
    all starting values are zero.
    """
    n = len(p0)
    step = 0.1 * np.max(np.abs(p0))
    if step == 0:
        step = 0.1
    sim = np.tile(p0, (n + 1, 1))
    sim[1:] += step * np.eye(n)
    return sim


def _optim(fn, p0, args, method='Nelder-Mead', options=None):
    """Minimise *fn* from *p0*.

    Raises ``FloatingPointError`` when *fn* is not finite at *p0*.
    Later non-finite values are replaced by a large constant.
    """
    f0 = fn(p0, *args)
    if not np.isfinite(f0):
        raise FloatingPointError(
            "function cannot be evaluated at initial parameters"
        )

    def _objective(p):
        v = fn(p, *args)
        return v if np.isfinite(v) else _BIG

    opts = dict(_NM_DEFAULTS) if method == 'Nelder-Mead' else {}
    if options:
        opts.update(options)
    if method == 'Nelder-Mead' and 'initial_simplex' not in opts:
        opts['initial_simplex'] = _initial_simplex(p0)
    return _minimize(_objective, p0, method=method, options=opts)


def _fit_model(p_init, z, sf, XW, do_par, rho, rule, method, options):
    """Fit one model; return (params, loglik, status)."""
    try:
        res = _optim(negll_incomplete, p_init,
                     (z, sf, XW, do_par, rho, rule),
                     method=method, options=options)
    except Exception:
        return p_init.copy(), np.nan, FAILED
    status = OK if res.success else NONCONVERGENCE
    return np.asarray(res.x, dtype=np.float64), -float(res.fun), status


def fit_gene(z, mu0, pi00, sf, XW, XW0, do_par, tau, rule,
             method='Nelder-Mead', options=None):
    """Fit the noDE and DE models for a single gene.

    Parameters
    ----------
    z : ndarray (ncell,)
        Observed counts of the gene.
    mu0, pi00 : float
        Baseline mean and zero-inflation proportion from the no-DE fit.
    sf : ndarray (ncell,)
        Size factors.
    XW : ndarray (ncell x p)
        DE design ``[X, W]``.
    XW0 : ndarray (ncell x q)
        noDE design ``[X[:, 0], W]``.
    do_par : ndarray (ncell x 2)
        Dropout logit parameters.
    tau : array_like
        Beta-binomial dispersion link ``(tau0, tau1)``.
    rule : dict
        Gauss-Legendre rule from ``gauss_quad``.
    method, options
        Passed to ``scipy.optimize.minimize``.

    Returns
    -------
    GeneFitResult
        The noDE parameters are stored clamped at ``PARAM_FLOOR``, the
        same vector the DE fit is warm-started from.  When both models
        fail, all parameters and log-likelihoods are 0.
    """
    z = np.asarray(z, dtype=np.float64)
    n_alt = XW.shape[1] + 2
    n_null = XW0.shape[1] + 2
    rho = bb_dispersion(tau, sf, mu0, pi00)

    p_init = null_start(mu0, pi00, XW0.shape[1] - 1)
    par0, ll0, status0 = _fit_model(p_init, z, sf, XW0, do_par, rho, rule,
                                    method, options)
    if status0 != FAILED:
        par0 = clamp_params(par0)

    start = p_init if status0 == FAILED else par0
    p2_init = alt_start(start, XW.shape[1])
    par1, ll1, status1 = _fit_model(p2_init, z, sf, XW, do_par, rho, rule,
                                    method, options)

    if status0 == FAILED and status1 == FAILED:
        return GeneFitResult.zero(n_alt, n_null)
    return GeneFitResult(par1, par0, ll1, ll0, status1, status0)


# ---------------------------------------------------------------------------
# Test statistic
# ---------------------------------------------------------------------------

def lrt_statistic(loglik_alt, loglik_null):
    """``2 * (loglik_alt - loglik_null)``, negative values set to 0."""
    stat = 2.0 * (np.asarray(loglik_alt, dtype=np.float64)
                  - np.asarray(loglik_null, dtype=np.float64))
    return np.where(stat < 0, 0.0, stat)


def lrt_pvalue(stat, df=1):
    """Chi-square upper-tail probability, evaluated on the log scale."""
    return np.exp(_chi2.logsf(stat, df))


# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------

def _as_design(x, cell_meta, prefix):
    """Return (matrix, column names) for a design argument."""
    if isinstance(x, str):
        x = model_matrix(x, cell_meta)
    if isinstance(x, pd.Series):
        x = x.to_frame()
    if isinstance(x, pd.DataFrame):
        return x.to_numpy(dtype=np.float64), [str(c) for c in x.columns]
    x = np.asarray(x, dtype=np.float64)
    if x.ndim == 1:
        x = x.reshape(-1, 1)
    return x, [f"{prefix}{i + 1}" for i in range(x.shape[1])]


def lr_test(counts, fit, X, W=None, tau=None, parallel=False, ncore=None,
            cell_meta=None, method='Nelder-Mead', options=None,
            verbose=True):
    """Likelihood-ratio test for DE between cell types.

    Port of DECENT's ``lrTest``.

    Parameters
    ----------
    counts : ndarray, DataFrame, dict or AnnData
        Observed counts of endogenous genes (genes x cells; AnnData is
        cells x genes). Gene names are taken from the DataFrame index,
        ``counts['genes']`` or ``var_names``.
    fit : dict
        Fitted no-DE model with ``'est.sf'``, ``'CE'``, ``'est.mu'`` and
        ``'est.pi0'``.
    X : ndarray, DataFrame or str
        Cell-type design (cells x cell types); the first column is the
        reference level. A string is a formula evaluated on *cell_meta*.
    W : ndarray or DataFrame, optional
        Additional covariates to adjust for.
    tau : array_like
        Beta-binomial dispersion link, ``(intercept, slope)`` or an
        (ncell x 2) matrix of per-cell pairs.
    parallel : bool
        Fit genes in a process pool.
    ncore : int, optional
        Number of worker processes (default: all CPUs).
    cell_meta : DataFrame, optional
        Cell metadata for a formula *X*.
    method : str
        ``scipy.optimize.minimize`` method.
    options : dict, optional
        Optimiser options; for Nelder-Mead these update
        ``{'maxiter': 500, 'xatol': 1e-4, 'fatol': 1e-6}``.
    verbose : bool
        Print start/finish and per-gene progress messages.

    Returns
    -------
    DECENTLRT
        With ``stat``, ``pval``, ``par_DE``, ``par_noDE``,
        ``loglik_DE``, ``loglik_noDE`` and ``status``.
    """
    if tau is None:
        raise ValueError("tau (beta-binomial dispersion link) is required")

    counts, gene_names = as_count_matrix(counts)
    ngene, ncell = counts.shape
    fit = check_fit_bundle(fit, ngene, ncell)

    X, xnames = _as_design(X, cell_meta, 'X')
    if X.shape[0] != ncell:
        raise ValueError("Design matrix rows must equal number of cells.")
    if X.shape[1] < 1:
        raise ValueError("X must have at least one column")
    if W is None:
        W = np.zeros((ncell, 0))
        wnames = []
    else:
        W, wnames = _as_design(W, cell_meta, 'W')
        if W.shape[0] != ncell:
            raise ValueError("W must have one row per cell")

    tau = np.asarray(tau, dtype=np.float64)
    if not (tau.shape == (2,) or tau.shape == (ncell, 2)):
        raise ValueError("tau must be a pair or an (ncell x 2) matrix")

    if verbose:
        print(f"Likelihood ratio test started at {datetime.now()}")

    XW = np.hstack([X, W])
    XW0 = np.hstack([X[:, :1], W])
    sf = fit['est.sf']
    do_par = np.zeros((ncell, 2))
    do_par[:, 0] = logit(fit['CE'])
    rule = gauss_quad(GQ_ORDER)

    par_names_alt = ['logit.pi0'] + xnames + wnames + ['log.disp']
    par_names_null = ['logit.pi0', xnames[0]] + wnames + ['log.disp']
    par1 = np.zeros((ngene, len(par_names_alt)))
    par2 = np.zeros((ngene, len(par_names_null)))
    logl1 = np.zeros(ngene)
    logl2 = np.zeros(ngene)
    status = np.empty((ngene, 2), dtype=object)

    if gene_names is None:
        gene_names = np.arange(ngene)
    labels = [str(g) for g in gene_names]

    def _collect(results):
        for i, res in enumerate(results):
            gene = labels[i]
            if verbose:
                print(f"Gene {i + 1}/{ngene}: {gene}")
            status[i] = (res.status_alt, res.status_null)
            if res.status_null == FAILED:
                warnings.warn(f"Numerical problem in noDE model for gene {gene}")
            if res.status_alt == FAILED:
                warnings.warn(f"Numerical problem in DE model for gene {gene}")
            if res.failed:
                # Row stays at zero: no evidence of DE
                continue
            if res.status_alt == NONCONVERGENCE:
                warnings.warn(f"DE model failed to converge for gene {gene}")
            if res.status_null == NONCONVERGENCE:
                warnings.warn(f"noDE model failed to converge for gene {gene}")
            par1[i] = res.params_alt
            par2[i] = res.params_null
            logl1[i] = res.loglik_alt
            logl2[i] = res.loglik_null

    task = partial(fit_gene, sf=sf, XW=XW, XW0=XW0, do_par=do_par, tau=tau,
                   rule=rule, method=method, options=options)
    gene_args = (counts, fit['est.mu'], fit['est.pi0'])

    if parallel:
        workers = ncore or os.cpu_count() or 1
        chunksize = max(1, ngene // (4 * workers))
        with ProcessPoolExecutor(max_workers=workers) as executor:
            _collect(executor.map(task, *gene_args, chunksize=chunksize))
    else:
        _collect(map(task, *gene_args))

    if verbose:
        print(f"Likelihood ratio test finished at {datetime.now()}")

    stat = lrt_statistic(logl1, logl2)
    pval = lrt_pvalue(stat)

    index = pd.Index(gene_names)
    return DECENTLRT({
        'stat': pd.Series(stat, index=index),
        'pval': pd.Series(pval, index=index),
        'par_DE': pd.DataFrame(par1, index=index, columns=par_names_alt),
        'par_noDE': pd.DataFrame(par2, index=index, columns=par_names_null),
        'loglik_DE': pd.Series(logl1, index=index),
        'loglik_noDE': pd.Series(logl2, index=index),
        'status': pd.DataFrame(status, index=index,
                               columns=['status.DE', 'status.noDE']),
    })
