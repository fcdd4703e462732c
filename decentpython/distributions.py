"""
Count distributions with real-valued arguments.

Quadrature nodes for the latent count are not integers, so the negative
binomial and beta-binomial mass functions are evaluated through
``lgamma`` rather than through ``scipy.stats``.  Quantiles, which only
need integer support, are delegated to scipy.
"""

import math

import numpy as np
from numba import njit
from scipy.stats import nbinom, poisson

# NB size above which the Poisson limit is used
_POISSON_SIZE = 1e12
# beta-binomial rho is kept strictly below 1
_RHO_MAX = 1.0 - 1e-12


# ---------------------------------------------------------------------------
# Numba-accelerated scalar kernels
# ---------------------------------------------------------------------------

@njit(cache=True)
def _lbeta_nb(a, b):
    return math.lgamma(a) + math.lgamma(b) - math.lgamma(a + b)


@njit(cache=True)
def _log_dnbinom_nb(x, mu, size):
    """log NB(x; mu, size) for real x >= 0."""
    if x < 0.0 or not math.isfinite(mu):
        return -math.inf
    if mu <= 0.0 or size <= 0.0:
        return 0.0 if x == 0.0 else -math.inf
    if size > _POISSON_SIZE:
        return x * math.log(mu) - mu - math.lgamma(x + 1.0)
    return (math.lgamma(x + size) - math.lgamma(size) - math.lgamma(x + 1.0)
            + size * math.log(size / (size + mu))
            + x * math.log(mu / (size + mu)))


@njit(cache=True)
def _log_dbetabinom_nb(x, n, prob, rho):
    """log BetaBin(x; trials=n, prob, rho) for real n >= 0."""
    if x < 0.0 or x > n:
        return -math.inf
    if prob <= 0.0:
        return 0.0 if x == 0.0 else -math.inf
    if prob >= 1.0:
        return 0.0 if x == n else -math.inf
    lchoose = math.lgamma(n + 1.0) - math.lgamma(x + 1.0) - math.lgamma(n - x + 1.0)
    if rho <= 0.0:
        return lchoose + x * math.log(prob) + (n - x) * math.log1p(-prob)
    if rho > _RHO_MAX:
        rho = _RHO_MAX
    theta = (1.0 - rho) / rho
    a = prob * theta
    b = (1.0 - prob) * theta
    return lchoose + _lbeta_nb(x + a, n - x + b) - _lbeta_nb(a, b)


@njit(cache=True)
def _dnbinom2_nb(x, mu, size):
    out = np.empty(x.shape[0])
    for i in range(x.shape[0]):
        out[i] = math.exp(_log_dnbinom_nb(x[i], mu[i], size[i]))
    return out


@njit(cache=True)
def _dbetabinom2_nb(x, n, prob, rho):
    out = np.empty(x.shape[0])
    for i in range(x.shape[0]):
        out[i] = math.exp(_log_dbetabinom_nb(x[i], n[i], prob[i], rho[i]))
    return out


# ---------------------------------------------------------------------------
# Vectorised wrappers
# ---------------------------------------------------------------------------

def _flat_broadcast(*args):
    arrs = np.broadcast_arrays(*[np.asarray(a, dtype=np.float64) for a in args])
    shape = arrs[0].shape
    return shape, [np.ascontiguousarray(a).ravel() for a in arrs]


def dnbinom2(x, mu, size):
    """Negative binomial pmf for real-valued x.

    Parameterised by mean ``mu`` and size ``size`` (variance
    ``mu + mu**2/size``); agrees with ``scipy.stats.nbinom.pmf`` at
    integer x.
    """
    shape, (x, mu, size) = _flat_broadcast(x, mu, size)
    return _dnbinom2_nb(x, mu, size).reshape(shape)


def dbetabinom2(x, size, prob, rho):
    """Beta-binomial pmf with real-valued number of trials.

    Parameters
    ----------
    x : array_like
        Observed successes.
    size : array_like
        Number of trials; need not be an integer.
    prob : array_like
        Mean success probability.
    rho : array_like
        Intra-class correlation; the underlying beta has shapes
        ``prob*(1-rho)/rho`` and ``(1-prob)*(1-rho)/rho``.  ``rho == 0``
        gives the binomial.
    """
    shape, (x, size, prob, rho) = _flat_broadcast(x, size, prob, rho)
    return _dbetabinom2_nb(x, size, prob, rho).reshape(shape)


def qzinb(p, pi0, mu, size):
    """Quantile function of the zero-inflated negative binomial.

    Returns 0 where ``p <= pi0`` and the NB quantile of
    ``(p - pi0)/(1 - pi0)`` elsewhere.  Infinite ``size`` uses the
    Poisson limit.
    """
    p, pi0, mu, size = np.broadcast_arrays(
        *[np.asarray(a, dtype=np.float64) for a in (p, pi0, mu, size)]
    )
    q = np.zeros(p.shape)
    nz = p > pi0
    if not np.any(nz):
        return q
    pp = (p[nz] - pi0[nz]) / (1.0 - pi0[nz])
    s = size[nz]
    m = mu[nz]
    pois = ~np.isfinite(s) | (s > _POISSON_SIZE)
    qq = np.empty(pp.shape)
    with np.errstate(divide='ignore', invalid='ignore', over='ignore'):
        if np.any(pois):
            qq[pois] = poisson.ppf(pp[pois], m[pois])
        if np.any(~pois):
            sp = s[~pois]
            qq[~pois] = nbinom.ppf(pp[~pois], sp, sp / (sp + m[~pois]))
    q[nz] = qq
    return q


def dzinb(x, pi0, mu, size):
    """Zero-inflated negative binomial pmf."""
    x = np.asarray(x, dtype=np.float64)
    pi0 = np.asarray(pi0, dtype=np.float64)
    return pi0 * (x == 0) + (1.0 - pi0) * dnbinom2(x, mu, size)
