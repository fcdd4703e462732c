"""
Gauss quadrature rules for decentpython.

The latent pre-dropout count is integrated out with a fixed-order
Gauss-Legendre rule, rescaled per cell onto the interval where the
zero-inflated NB puts almost all of its mass.
"""

import numpy as np

GQ_ORDER = 16


def gauss_quad(n=GQ_ORDER, kind='legendre'):
    """Nodes and weights of an n-point Gauss quadrature rule on [-1, 1].

    Port of statmod's ``gauss.quad`` (Legendre kind only).

    Parameters
    ----------
    n : int
        Number of nodes.
    kind : str
        Only ``'legendre'`` is supported.

    Returns
    -------
    dict with 'nodes' and 'weights'. Both arrays are read-only, so one
    rule can be shared between genes and worker processes.
    """
    if kind != 'legendre':
        raise ValueError(f"Unsupported quadrature kind: {kind!r}")
    n = int(n)
    if n < 1:
        raise ValueError("n must be at least 1")

    nodes, weights = np.polynomial.legendre.leggauss(n)
    nodes = np.ascontiguousarray(nodes, dtype=np.float64)
    weights = np.ascontiguousarray(weights, dtype=np.float64)
    nodes.flags.writeable = False
    weights.flags.writeable = False
    return {'nodes': nodes, 'weights': weights}


def rescale_rule(rule, a, b):
    """Map a rule on [-1, 1] onto per-cell intervals [a, b].

    Returns
    -------
    nodes, weights : ndarray (ncell x n)
    """
    a = np.atleast_1d(np.asarray(a, dtype=np.float64))
    b = np.atleast_1d(np.asarray(b, dtype=np.float64))
    half = (b - a) / 2.0
    nodes = np.outer(half, rule['nodes']) + ((a + b) / 2.0)[:, None]
    weights = np.outer(half, rule['weights'])
    return nodes, weights
