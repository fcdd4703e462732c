"""Tests for the incomplete-data (dropout) likelihood."""

import numpy as np
import pytest
from scipy import stats
from scipy.special import expit, logit

import decentpython as dp


@pytest.fixture
def rule():
    return dp.gauss_quad(16)


class TestQuadratureBounds:
    @pytest.mark.parametrize("pi0", [0.0, 0.3, 0.9])
    @pytest.mark.parametrize("mu", [0.01, 1.0, 10.0, 1000.0])
    @pytest.mark.parametrize("size", [0.1, 1.0, 100.0, np.inf])
    def test_floors_and_order(self, pi0, mu, size):
        a, b = dp.quadrature_bounds(pi0, np.array([mu]), size)
        assert a[0] >= 0.5
        assert b[0] >= 2.5
        assert a[0] < b[0]

    def test_tracks_expression_scale(self):
        a, b = dp.quadrature_bounds(0.0, np.array([1.0, 100.0]), 100.0)
        assert b[1] > b[0]
        assert a[1] > a[0]

    def test_matches_zinb_quantiles(self):
        a, b = dp.quadrature_bounds(0.1, np.array([50.0]), 4.0)
        assert a[0] == max(dp.qzinb(0.0005, 0.1, 50.0, 4.0) - 0.5, 0.5)
        assert b[0] == max(dp.qzinb(0.9995, 0.1, 50.0, 4.0) + 0.5, 2.5)


class TestBBDispersion:
    def test_logistic_link(self):
        sf = np.array([0.5, 1.0, 2.0])
        rho = dp.bb_dispersion([-2.0, 0.5], sf, 4.0, 0.2)
        expected = expit(-2.0 + 0.5 * np.log(sf * 4.0 * 0.8))
        np.testing.assert_allclose(rho, expected)

    def test_per_cell_tau(self):
        sf = np.ones(3)
        tau = np.array([[-1.0, 0.0], [0.0, 0.0], [1.0, 0.0]])
        np.testing.assert_allclose(dp.bb_dispersion(tau, sf, 2.0, 0.0),
                                   expit([-1.0, 0.0, 1.0]))

    def test_bad_tau(self):
        with pytest.raises(ValueError):
            dp.bb_dispersion([1.0, 2.0, 3.0], np.ones(3), 1.0, 0.0)


class TestUnpackParams:
    def test_decoding(self):
        XW = np.column_stack([np.ones(4), [0, 0, 1, 1]])
        sf = np.array([1.0, 2.0, 1.0, 2.0])
        pi0, mu, size = dp.unpack_params([0.0, np.log(3.0), np.log(2.0), -np.log(5.0)],
                                         XW, sf)
        assert pi0 == 0.5
        np.testing.assert_allclose(mu, [3.0, 6.0, 6.0, 12.0])
        assert np.isclose(size, 5.0)


class TestNegLogLik:
    def test_no_dropout_limit_is_nb(self, rng, rule):
        # pi0 -> 0 and capture efficiency 1: plain NB likelihood
        ncell = 30
        mu, size = 6.0, 2.0
        z = rng.negative_binomial(size, size / (size + mu), ncell).astype(float)
        XW = np.ones((ncell, 1))
        sf = np.ones(ncell)
        do_par = np.zeros((ncell, 2))
        do_par[:, 0] = logit(np.ones(ncell))
        rho = np.full(ncell, 0.05)
        params = np.array([-30.0, np.log(mu), -np.log(size)])

        nll = dp.negll_incomplete(params, z, sf, XW, do_par, rho, rule)
        expected = -stats.nbinom.logpmf(z, size, size / (size + mu)).sum()
        assert np.isclose(nll, expected, rtol=1e-8)

    def test_underflow_floor(self, rule):
        # count far beyond any plausible latent value: likelihood floors at tiny
        z = np.array([500.0])
        do_par = np.array([[0.0, 0.0]])
        nll = dp.negll_incomplete([0.0, np.log(0.01), 0.0], z, np.ones(1),
                                  np.ones((1, 1)), do_par, np.array([0.1]), rule)
        assert np.isfinite(nll)
        assert np.isclose(nll, -np.log(np.finfo(np.float64).tiny))

    def test_zero_counts_include_structural_mass(self, rule):
        ncell = 5
        z = np.zeros(ncell)
        XW = np.ones((ncell, 1))
        do_par = np.zeros((ncell, 2))
        rho = np.full(ncell, 0.1)
        low = dp.negll_incomplete([logit(0.1), np.log(5.0), 0.0], z, np.ones(ncell),
                                  XW, do_par, rho, rule)
        high = dp.negll_incomplete([logit(0.9), np.log(5.0), 0.0], z, np.ones(ncell),
                                   XW, do_par, rho, rule)
        # more zero inflation makes all-zero data more likely
        assert high < low

    def test_accepts_vector_dropout_params(self, rule):
        ncell = 4
        z = np.array([0.0, 1.0, 3.0, 2.0])
        XW = np.ones((ncell, 1))
        rho = np.full(ncell, 0.05)
        params = [-2.0, np.log(4.0), 0.0]
        do_mat = np.column_stack([np.full(ncell, 0.2), np.zeros(ncell)])
        a = dp.negll_incomplete(params, z, np.ones(ncell), XW, do_mat, rho, rule)
        b = dp.negll_incomplete(params, z, np.ones(ncell), XW, do_mat[:, 0], rho, rule)
        assert a == b

    def test_prefers_true_mean(self, rng, rule):
        ncell = 60
        ce = np.full(ncell, 0.4)
        mu_true = 15.0
        latent = rng.negative_binomial(5.0, 5.0 / (5.0 + mu_true), ncell)
        z = rng.binomial(latent, ce).astype(float)
        XW = np.ones((ncell, 1))
        do_par = np.column_stack([logit(ce), np.zeros(ncell)])
        rho = np.full(ncell, 0.01)

        def nll(m):
            return dp.negll_incomplete([-5.0, np.log(m), -np.log(5.0)], z,
                                       np.ones(ncell), XW, do_par, rho, rule)

        assert nll(mu_true) < nll(mu_true / 4)
        assert nll(mu_true) < nll(mu_true * 4)


class TestDbbnb:
    def test_expected_latent_at_least_observed(self, rule):
        z = np.array([0.0, 2.0, 5.0, 9.0])
        mu = np.full(4, 10.0)
        ce = np.full(4, 0.5)
        rho = np.full(4, 0.05)
        out = dp.dbbnb(z, 0.1, mu, 3.0, ce, rho, rule, ey=True)
        assert set(out) == {'PZ', 'EY'}
        assert np.all(out['EY'] >= z)

    def test_no_dropout_posterior_is_observed(self, rule):
        z = np.array([0.0, 4.0])
        out = dp.dbbnb(z, 0.1, np.full(2, 5.0), 2.0, np.ones(2), np.full(2, 0.1),
                       rule, ey=True)
        np.testing.assert_allclose(out['EY'], z)
        assert out['PZ'][0] == 0.0

    def test_zero_count_posterior_excludes_structural_zero(self, rule):
        z = np.zeros(3)
        pi0, size = 0.3, 3.0
        mu = np.array([2.0, 8.0, 20.0])
        ce = np.full(3, 0.4)
        rho = np.full(3, 0.05)
        out = dp.dbbnb(z, pi0, mu, size, ce, rho, rule, ey=True)

        a, b = dp.quadrature_bounds(pi0, mu, size)
        nodes, weights = dp.rescale_rule(rule, a, b)
        terms = (dp.dnbinom2(nodes, mu[:, None], size)
                 * dp.dbetabinom2(0.0, nodes, ce[:, None], rho[:, None])
                 * weights)
        expected = (terms * nodes).sum(axis=1) / terms.sum(axis=1)
        np.testing.assert_allclose(out['EY'], expected, rtol=1e-10)
