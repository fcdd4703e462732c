"""
Incomplete-data likelihood of the dropout model.

The latent pre-dropout count of a gene in a cell follows a zero-inflated
negative binomial; the observed count is a beta-binomial thinning of it
with the cell's capture efficiency as success probability.  The latent
count is integrated out with a Gauss-Legendre rule whose support is
chosen per cell from the ZINB quantiles.
"""

import math

import numpy as np
from numba import njit
from scipy.special import expit

from .distributions import _log_dbetabinom_nb, _log_dnbinom_nb, dnbinom2, qzinb
from .quadrature import rescale_rule

QUANTILE_TAIL = 0.0005
_TINY = np.finfo(np.float64).tiny


# ---------------------------------------------------------------------------
# Numba-accelerated quadrature kernel
# ---------------------------------------------------------------------------

@njit(cache=True)
def _dbbnb_nb(z, pi0, mu, size, ce, rho, nodes, weights):
    """Quadrature part of P(Z=z) and its y-weighted counterpart, per cell.

    ``nodes`` and ``weights`` are (ncell x n), already rescaled per cell.
    """
    ncell = z.shape[0]
    n = nodes.shape[1]
    pz = np.empty(ncell)
    ey_num = np.empty(ncell)
    for i in range(ncell):
        if ce[i] >= 1.0:
            # No thinning: Z equals the latent count, zero mass lives in f0
            if z[i] > 0.0:
                pz[i] = (1.0 - pi0) * math.exp(_log_dnbinom_nb(z[i], mu[i], size))
            else:
                pz[i] = 0.0
            ey_num[i] = z[i] * pz[i]
            continue
        acc = 0.0
        acc_y = 0.0
        for k in range(n):
            y = nodes[i, k]
            lp = _log_dnbinom_nb(y, mu[i], size) + \
                _log_dbetabinom_nb(z[i], y, ce[i], rho[i])
            v = math.exp(lp) * weights[i, k]
            acc += v
            acc_y += v * y
        pz[i] = (1.0 - pi0) * acc
        ey_num[i] = (1.0 - pi0) * acc_y
    return pz, ey_num


# ---------------------------------------------------------------------------
# Parameter handling
# ---------------------------------------------------------------------------

def unpack_params(params, XW, sf):
    """Decode ``[logit(pi0), beta..., log-dispersion]``.

    Returns
    -------
    pi0 : float
    mu : ndarray (ncell,)
        Per-cell NB mean, ``exp(XW @ beta) * sf``.
    size : float
        NB size, ``exp(-params[-1])``.
    """
    params = np.asarray(params, dtype=np.float64)
    pi0 = float(expit(params[0]))
    with np.errstate(over='ignore'):
        mu = np.exp(XW @ params[1:-1]) * sf
        size = math.exp(-params[-1]) if params[-1] > -700 else math.inf
    return pi0, mu, size


def bb_dispersion(tau, sf, mu, pi0):
    """Beta-binomial dispersion linked to the expected expression.

    ``rho = expit(tau0 + tau1 * log(sf * mu * (1 - pi0)))``

    Parameters
    ----------
    tau : array_like
        Either ``(tau0, tau1)`` or an (ncell x 2) matrix of per-cell pairs.
    sf : ndarray (ncell,)
        Size factors.
    mu, pi0 : float
        Baseline mean and zero-inflation proportion of the gene.
    """
    tau = np.asarray(tau, dtype=np.float64)
    if tau.ndim == 1:
        if tau.size != 2:
            raise ValueError("tau must have two elements (intercept, slope)")
        tau0, tau1 = tau[0], tau[1]
    elif tau.ndim == 2 and tau.shape[1] == 2:
        tau0, tau1 = tau[:, 0], tau[:, 1]
    else:
        raise ValueError("tau must be a pair or an (ncell x 2) matrix")
    with np.errstate(divide='ignore'):
        lmean = np.log(np.asarray(sf, dtype=np.float64) * mu * (1.0 - pi0))
    return expit(tau0 + tau1 * lmean)


def quadrature_bounds(pi0, mu, size, tail=QUANTILE_TAIL):
    """Per-cell integration interval for the latent count.

    ``a`` is the ``tail`` quantile of the ZINB minus 0.5, floored at 0.5;
    ``b`` is the ``1 - tail`` quantile plus 0.5, floored at 2.5.
    Undefined quantiles fall back to the floors.
    """
    a = np.fmax(qzinb(tail, pi0, mu, size) - 0.5, 0.5)
    b = np.fmax(qzinb(1.0 - tail, pi0, mu, size) + 0.5, 2.5)
    return a, b


# ---------------------------------------------------------------------------
# Likelihood
# ---------------------------------------------------------------------------

def _as_cell_vector(x, ncell):
    x = np.asarray(x, dtype=np.float64)
    if x.ndim == 0:
        return np.full(ncell, float(x))
    return np.ascontiguousarray(x.ravel())


def dbbnb(z, pi0, mu, size, ce, rho, rule, ey=False):
    """Probability of the observed counts integrated over the latent count.

    Computes ``(1-pi0) * sum_k NB(y_k; mu, size) * BB(z; y_k, ce, rho) w_k``
    over the rescaled quadrature nodes ``y_k``.  The structural-zero term
    for ``z == 0`` is not included.

    Parameters
    ----------
    z : ndarray (ncell,)
        Observed counts of one gene.
    pi0 : float
        Zero-inflation proportion.
    mu : ndarray (ncell,)
        Latent NB means.
    size : float
        NB size.
    ce : ndarray (ncell,)
        Capture efficiencies. Cells with ``ce >= 1`` are not thinned and
        use the NB pmf directly.
    rho : ndarray (ncell,)
        Beta-binomial dispersion.
    rule : dict
        Output of ``gauss_quad``.
    ey : bool
        Also return the posterior mean of the latent count under the NB
        component, i.e. weighted by the quadrature terms only; for
        ``z == 0`` the structural zero does not enter the normalisation.

    Returns
    -------
    ndarray, or dict with 'PZ' and 'EY' when ``ey=True``.
    """
    z = np.ascontiguousarray(z, dtype=np.float64)
    ncell = z.shape[0]
    mu = _as_cell_vector(mu, ncell)
    ce = _as_cell_vector(ce, ncell)
    rho = _as_cell_vector(rho, ncell)
    a, b = quadrature_bounds(pi0, mu, size)
    nodes, weights = rescale_rule(rule, a, b)
    pz, ey_num = _dbbnb_nb(z, float(pi0), mu, float(size), ce, rho,
                           nodes, weights)
    if not ey:
        return pz
    with np.errstate(divide='ignore', invalid='ignore'):
        ey_val = np.where(pz > 0, ey_num / pz, 0.0)
    return {'PZ': pz, 'EY': ey_val}


def negll_incomplete(params, z, sf, XW, do_par, rho, rule):
    """Negative log-likelihood of one gene's observed counts.

    Parameters
    ----------
    params : ndarray
        ``[logit(pi0), beta (one per column of XW), log-dispersion]``.
    z : ndarray (ncell,)
        Observed counts.
    sf : ndarray (ncell,)
        Size factors.
    XW : ndarray (ncell x p)
        Design matrix for the log-mean.
    do_par : ndarray (ncell x 2) or (ncell,)
        Dropout logit parameters; only the intercept (capture-efficiency
        logit) is used.
    rho : ndarray (ncell,)
        Beta-binomial dispersion.
    rule : dict
        Gauss-Legendre rule from ``gauss_quad``.

    Returns
    -------
    float
    """
    z = np.asarray(z, dtype=np.float64)
    do_par = np.asarray(do_par, dtype=np.float64)
    logit_ce = do_par[:, 0] if do_par.ndim == 2 else do_par
    ce = expit(logit_ce)

    pi0, mu, size = unpack_params(params, XW, sf)
    f0 = pi0 + (1.0 - pi0) * dnbinom2(0.0, mu, size)
    pz = dbbnb(z, pi0, mu, size, ce, rho, rule)
    pz = pz + f0 * (z == 0)
    pz = np.where(pz == 0, _TINY, pz)
    return -float(np.sum(np.log(pz)))
