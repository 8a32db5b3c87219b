"""Tests for the per-gene negative binomial GLM."""

import numpy as np
import pytest
import statsmodels.api as sm

from rnaseq_de.model import LN2, GLMFitResult, fit_nb_glm, ridge_penalty


def statsmodels_nb_fit(y, size_factors, x, alpha):
    """Unpenalized NB2 fit of one gene with a log size-factor offset."""
    model = sm.GLM(
        np.asarray(y, dtype=float),
        np.asarray(x, dtype=float),
        family=sm.families.NegativeBinomial(alpha=float(alpha)),
        offset=np.log(np.asarray(size_factors, dtype=float)),
    )
    return model.fit(maxiter=100)


@pytest.fixture
def two_group_x():
    return np.column_stack([np.ones(8), [0, 0, 0, 0, 1, 1, 1, 1]])


def test_docstring_example():
    x = np.column_stack([np.ones(4), [0, 0, 1, 1]])
    fit = fit_nb_glm(np.array([[10, 12, 40, 38]]), np.ones(4), np.array([0.01]), x)
    assert fit.converged[0]
    assert round(float(fit.coef[0, 1] / LN2), 1) == 1.8


def test_recovers_fold_change(rng):
    n = 50
    x = np.column_stack([np.ones(2 * n), np.repeat([0.0, 1.0], n)])
    sf = rng.lognormal(0.0, 0.2, size=2 * n)
    alpha = 0.05
    mu = sf * np.exp(x @ np.array([np.log(100.0), np.log(4.0)]))
    r = 1.0 / alpha
    counts = rng.negative_binomial(r, r / (r + mu), size=(30, 2 * n)).astype(float)

    fit = fit_nb_glm(counts, sf, np.full(30, alpha), x)

    assert fit.converged.all()
    lfc = fit.coef[:, 1] / LN2
    assert abs(np.median(lfc) - 2.0) < 0.1
    assert np.all(fit.se[:, 1] > 0)


def test_agrees_with_statsmodels(two_group_x):
    sf = np.array([0.8, 1.0, 1.2, 0.9, 1.1, 1.0, 0.7, 1.3])
    y = np.array([55, 70, 80, 60, 150, 140, 90, 210], dtype=float)
    alpha = 0.08

    ours = fit_nb_glm(y[None, :], sf, np.array([alpha]), two_group_x, ridge_lambda=0.0)
    ref = statsmodels_nb_fit(y, sf, two_group_x, alpha)

    np.testing.assert_allclose(ours.coef[0], ref.params, rtol=1e-4, atol=1e-5)
    np.testing.assert_allclose(ours.se[0], ref.bse, rtol=1e-4)
    np.testing.assert_allclose(ours.mu[0], ref.fittedvalues, rtol=1e-4)


def test_hat_diagonals_sum_to_rank(two_group_x):
    y = np.array([[20, 25, 30, 22, 80, 90, 70, 85]], dtype=float)
    fit = fit_nb_glm(y, np.ones(8), np.array([0.05]), two_group_x)
    assert fit.hat_diagonals[0].sum() == pytest.approx(2.0, abs=1e-4)


def test_invalid_dispersion_is_skipped(two_group_x):
    y = np.array([[20, 25, 30, 22, 80, 90, 70, 85], [5, 6, 4, 5, 9, 8, 10, 7]], dtype=float)
    fit = fit_nb_glm(y, np.ones(8), np.array([np.nan, 0.1]), two_group_x)
    assert not fit.converged[0]
    assert np.isnan(fit.coef[0]).all()
    assert fit.converged[1]


def test_means_floored(two_group_x):
    y = np.array([[0, 0, 0, 0, 40, 50, 45, 55]], dtype=float)
    fit = fit_nb_glm(y, np.ones(8), np.array([0.1]), two_group_x, min_mu=0.5)
    assert np.all(fit.mu[np.isfinite(fit.mu)] >= 0.5)
    assert fit.coef[0, 1] > 0


def test_ridge_penalty_scale():
    lam = ridge_penalty(3, [1.0, 2.0, 4.0])
    np.testing.assert_allclose(lam * LN2**2, [1.0, 2.0, 4.0])
    np.testing.assert_allclose(ridge_penalty(2, 1.0, log2_scale=False), [1.0, 1.0])


def test_strong_ridge_shrinks_fold_change(two_group_x):
    y = np.array([[20, 25, 30, 22, 80, 90, 70, 85]], dtype=float)
    free = fit_nb_glm(y, np.ones(8), np.array([0.05]), two_group_x)
    shrunk = fit_nb_glm(y, np.ones(8), np.array([0.05]), two_group_x, ridge_lambda=[1e-6, 10.0])
    assert 0 < shrunk.coef[0, 1] < free.coef[0, 1]


def test_scatter_and_concat(two_group_x):
    y = np.array([[20, 25, 30, 22, 80, 90, 70, 85]], dtype=float)
    a = fit_nb_glm(y, np.ones(8), np.array([0.05]), two_group_x)
    b = fit_nb_glm(y * 2, np.ones(8), np.array([0.05]), two_group_x)
    both = GLMFitResult.concat([a, b])
    assert both.n_genes == 2

    full = both.scatter(np.array([True, False, True]))
    assert full.n_genes == 3
    assert not full.converged[1]
    assert np.isnan(full.coef[1]).all()
    np.testing.assert_allclose(full.coef[2], b.coef[0])
    assert full.coef[2, 0] - full.coef[0, 0] == pytest.approx(np.log(2.0), abs=1e-4)
