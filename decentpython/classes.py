"""
Result containers for decentpython.

``GeneFitResult`` is the per-gene outcome of the null/DE model pair;
``DECENTLRT`` is the dict-like likelihood-ratio test result with
attribute access, in the style of edgeR's result objects.
"""

from dataclasses import dataclass

import numpy as np
import pandas as pd

OK = 'ok'
NONCONVERGENCE = 'nonconvergence'
FAILED = 'failed'


@dataclass(frozen=True)
class GeneFitResult:
    """Outcome of fitting the noDE (null) and DE (alternative) models for one gene.

    Attributes:
        params_alt: Fitted DE-model parameters.
        params_null: Fitted noDE-model parameters.
        loglik_alt: Attained DE-model log-likelihood.
        loglik_null: Attained noDE-model log-likelihood.
        status_alt: One of 'ok', 'nonconvergence', 'failed'.
        status_null: One of 'ok', 'nonconvergence', 'failed'.
    """

    params_alt: np.ndarray
    params_null: np.ndarray
    loglik_alt: float
    loglik_null: float
    status_alt: str = OK
    status_null: str = OK

    @property
    def converged_alt(self) -> bool:
        return self.status_alt == OK

    @property
    def converged_null(self) -> bool:
        return self.status_null == OK

    @property
    def failed(self) -> bool:
        """True if either model hit a numerical failure."""
        return FAILED in (self.status_alt, self.status_null)

    @classmethod
    def zero(cls, n_alt, n_null):
        """All-zero result used when neither model could be fitted."""
        return cls(np.zeros(n_alt), np.zeros(n_null), 0.0, 0.0, FAILED, FAILED)


class _DecentBase(dict):
    """Base class providing dict-like access, attribute access, and display."""

    def __getattr__(self, name):
        try:
            return self[name]
        except KeyError:
            raise AttributeError(f"'{type(self).__name__}' has no attribute '{name}'")

    def __setattr__(self, name, value):
        self[name] = value

    def __delattr__(self, name):
        try:
            del self[name]
        except KeyError:
            raise AttributeError(f"'{type(self).__name__}' has no attribute '{name}'")

    def __repr__(self):
        cls = type(self).__name__
        components = list(self.keys())
        s = self.shape
        if s is not None:
            return f"{cls} with {s[0]} genes\nComponents: {', '.join(components)}"
        return f"{cls}\nComponents: {', '.join(components)}"

    @property
    def shape(self):
        if 'par_DE' in self:
            return self['par_DE'].shape
        return None


class DECENTLRT(_DecentBase):
    """Likelihood-ratio test result.

    Components
    ----------
    stat : Series
        LRT statistic per gene, clamped at 0.
    pval : Series
        Chi-square (1 df) upper-tail p-value per gene.
    par_DE, par_noDE : DataFrame
        Fitted parameters of the DE and noDE models, one row per gene.
    loglik_DE, loglik_noDE : Series
        Attained log-likelihoods.
    status : DataFrame
        Per-gene fit status ('ok', 'nonconvergence', 'failed') of each model.
    """

    @property
    def table(self):
        """Per-gene summary: statistic, p-value and fit status."""
        out = pd.DataFrame({
            'stat': self['stat'],
            'pval': self['pval'],
            'loglik.DE': self['loglik_DE'],
            'loglik.noDE': self['loglik_noDE'],
        })
        return out.join(self['status'])

    def head(self, n=5):
        """Show first n rows of the summary table."""
        return self.table.head(n)

    def tail(self, n=5):
        """Show last n rows of the summary table."""
        return self.table.tail(n)
