"""
Utility functions for decentpython.

Design-matrix construction, count-matrix coercion and validation of the
fitted no-DE model bundle that feeds the likelihood-ratio test.
"""

import numpy as np
import pandas as pd


def celltype_design(labels, ref=None):
    """Intercept + treatment-coded design from cell-type labels.

    Equivalent to R's ``model.matrix(~cell.type)``.  The first column is
    the intercept (reference level), followed by one indicator column per
    non-reference level.

    Parameters
    ----------
    labels : array_like
        Cell-type label for each cell.
    ref : optional
        Reference level. Defaults to the first level in sorted order.

    Returns
    -------
    DataFrame (cells x levels)
    """
    labels = np.asarray(labels)
    levels = list(np.unique(labels))
    if ref is not None:
        if ref not in levels:
            raise ValueError(f"Reference level {ref!r} not found in labels")
        levels.remove(ref)
        levels.insert(0, ref)

    design = pd.DataFrame({'(Intercept)': np.ones(len(labels))})
    for lvl in levels[1:]:
        design[f'celltype{lvl}'] = (labels == lvl).astype(np.float64)
    return design


def model_matrix(formula, data=None):
    """Create a design matrix from an R-style formula.

    Uses patsy to parse the formula, matching R's
    ``model.matrix(formula, data)``.

    Parameters
    ----------
    formula : str
        R-style formula, e.g. ``'~ cell_type'`` or ``'~ cell_type + batch'``.
    data : DataFrame or dict
        Cell-level metadata.

    Returns
    -------
    DataFrame
        Design matrix (cells x coefficients) with patsy column names.

    Examples
    --------
    >>> import pandas as pd
    >>> df = pd.DataFrame({'cell_type': ['A', 'A', 'B', 'B']})
    >>> model_matrix('~ cell_type', df).values
    array([[1., 0.],
           [1., 0.],
           [1., 1.],
           [1., 1.]])
    """
    import patsy

    if data is None:
        raise ValueError("data must be provided for formula-based design")
    if isinstance(data, dict):
        data = pd.DataFrame(data)
    elif isinstance(data, pd.Series):
        name = data.name if data.name is not None else 'x0'
        data = pd.DataFrame({name: data.values})

    design = patsy.dmatrix(formula, data=data, return_type='dataframe')
    return design.astype(np.float64).reset_index(drop=True)


def as_count_matrix(y):
    """Coerce count input to a (genes x cells) float array.

    Accepts an AnnData object (cells x genes), a dict with 'counts' and
    optional 'genes', a DataFrame (gene names in the index) or an array.

    Returns
    -------
    counts : ndarray (genes x cells)
    gene_names : ndarray or None
    """
    gene_names = None
    try:
        import anndata
        is_anndata = isinstance(y, anndata.AnnData)
    except ImportError:
        is_anndata = False

    if is_anndata:
        X_raw = y.X
        if hasattr(X_raw, 'toarray'):
            X_raw = X_raw.toarray()
        counts = np.asarray(X_raw, dtype=np.float64).T
        gene_names = np.asarray(y.var_names)
    elif isinstance(y, dict) and 'counts' in y:
        counts = np.asarray(y['counts'], dtype=np.float64)
        if y.get('genes') is not None:
            gene_names = np.asarray(y['genes'])
    elif isinstance(y, pd.DataFrame):
        counts = y.to_numpy(dtype=np.float64)
        gene_names = np.asarray(y.index)
    else:
        if hasattr(y, 'toarray'):
            y = y.toarray()
        counts = np.asarray(y, dtype=np.float64)

    if counts.ndim == 1:
        counts = counts.reshape(1, -1)
    if counts.ndim != 2:
        raise ValueError("counts must be a genes x cells matrix")
    if not np.all(np.isfinite(counts)):
        raise ValueError("NA or infinite counts not allowed")
    if np.any(counts < 0):
        raise ValueError("Negative counts not allowed")
    if np.any(counts != np.round(counts)):
        raise ValueError("Non-integer counts not allowed")
    if gene_names is not None and len(gene_names) != counts.shape[0]:
        raise ValueError("Number of gene names does not match number of rows")
    return counts, gene_names


def _first_column(x, name, ngene):
    x = np.asarray(x, dtype=np.float64)
    if x.ndim == 2:
        x = x[:, 0]
    x = x.ravel()
    if len(x) != ngene:
        raise ValueError(f"'{name}' must have one entry per gene")
    return x


def check_fit_bundle(fit, ngene, ncell):
    """Validate and normalise the fitted no-DE model bundle.

    Parameters
    ----------
    fit : dict
        Must contain ``'est.sf'`` (size factors), ``'CE'`` (capture
        efficiencies), ``'est.mu'`` and ``'est.pi0'`` (per-gene baseline
        mean and zero-inflation; for matrices the first column is used).
        ``'est.disp'`` (per-gene NB dispersion) is optional.
    ngene, ncell : int

    Returns
    -------
    dict with 1-D float arrays under the same keys.
    """
    missing = [k for k in ('est.sf', 'CE', 'est.mu', 'est.pi0') if k not in fit]
    if missing:
        raise ValueError(f"Fitted model is missing: {', '.join(missing)}")

    sf = np.asarray(fit['est.sf'], dtype=np.float64).ravel()
    ce = np.asarray(fit['CE'], dtype=np.float64).ravel()
    if len(sf) != ncell or len(ce) != ncell:
        raise ValueError("'est.sf' and 'CE' must have one entry per cell")
    if np.any(~np.isfinite(sf)) or np.any(sf <= 0):
        raise ValueError("Size factors must be positive")
    if np.any(ce <= 0) or np.any(ce > 1):
        raise ValueError("Capture efficiencies must lie in (0, 1]")

    mu = _first_column(fit['est.mu'], 'est.mu', ngene)
    pi0 = _first_column(fit['est.pi0'], 'est.pi0', ngene)
    if np.any(pi0 < 0) or np.any(pi0 >= 1):
        raise ValueError("'est.pi0' must lie in [0, 1)")

    out = {'est.sf': sf, 'CE': ce, 'est.mu': mu, 'est.pi0': pi0}
    if fit.get('est.disp') is not None:
        out['est.disp'] = _first_column(fit['est.disp'], 'est.disp', ngene)
    return out
