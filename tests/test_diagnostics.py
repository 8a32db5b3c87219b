"""Tests for moment estimators, Cook's distances and per-sample QC."""

import numpy as np
import pandas as pd
import pytest

from rnaseq_de.diagnostics import (
    cooks_distance,
    cooks_outliers,
    linear_model_mu,
    moments_dispersion_estimate,
    n_or_more_replicates,
    robust_moments_dispersion,
    rough_dispersion_estimate,
    sample_qc,
)


@pytest.fixture
def x_two_by_four():
    return np.column_stack([np.ones(8), [0, 0, 0, 0, 1, 1, 1, 1]])


def test_linear_model_mu_group_means(x_two_by_four):
    y = np.array([[1.0, 2.0, 3.0, 6.0, 10.0, 10.0, 20.0, 20.0]])
    np.testing.assert_allclose(linear_model_mu(y, x_two_by_four), [[3, 3, 3, 3, 15, 15, 15, 15]])


def test_rough_and_moments_estimates(rng, x_two_by_four):
    alpha = 0.3
    mu = np.array([100.0] * 4 + [400.0] * 4)
    r = 1.0 / alpha
    y = rng.negative_binomial(r, r / (r + mu), size=(3000, 8)).astype(float)
    rough = rough_dispersion_estimate(y, x_two_by_four)
    assert np.median(rough) == pytest.approx(alpha, rel=0.25)

    flat = rng.negative_binomial(r, r / (r + 100.0), size=(2000, 20)).astype(float)
    mom = moments_dispersion_estimate(flat.mean(axis=1), flat.var(axis=1, ddof=1), np.ones(20))
    assert np.median(mom) == pytest.approx(alpha, rel=0.15)


def test_replicate_mask():
    x = np.column_stack([np.ones(7), [0, 0, 0, 1, 1, 2, 2]])
    np.testing.assert_array_equal(n_or_more_replicates(x, 3), [True, True, True, False, False, False, False])


def test_robust_dispersion_ignores_one_outlier(x_two_by_four):
    clean = np.array([[100, 104, 96, 100, 400, 410, 390, 400]], dtype=float)
    spiked = clean.copy()
    spiked[0, 5] = 5000
    np.testing.assert_allclose(robust_moments_dispersion(clean, x_two_by_four), 0.04)
    assert robust_moments_dispersion(spiked, x_two_by_four)[0] < 0.1


def test_cooks_flags_single_sample_outlier(x_two_by_four):
    counts = np.array(
        [
            [100, 104, 96, 100, 400, 410, 390, 400],
            [100, 104, 96, 100, 400, 5000, 390, 400],
        ],
        dtype=float,
    )
    mu = np.array([[100.0] * 4 + [400.0] * 4, [100.0] * 4 + [1550.0] * 4])
    hat = np.full((2, 8), 0.25)
    disp = np.array([0.04, 0.04])
    cooks = cooks_distance(counts, mu, hat, disp, 2)
    assert cooks.shape == (2, 8)
    assert cooks[1].argmax() == 5

    out = cooks_outliers(cooks, counts, x_two_by_four)
    np.testing.assert_array_equal(out, [False, True])


def test_cooks_outlier_needs_three_replicates():
    x = np.column_stack([np.ones(4), [0, 0, 1, 1]])
    cooks = np.array([[0.1, 0.1, 100.0, 0.1]])
    counts = np.array([[10, 10, 1000, 10]])
    assert not cooks_outliers(cooks, counts, x).any()


def test_cooks_outlier_cleared_when_not_isolated(x_two_by_four):
    cooks = np.array([[0.1, 0.1, 0.1, 0.1, 50.0, 0.1, 0.1, 0.1]])
    counts = np.array([[10, 10, 10, 10, 20, 900, 800, 700]])
    assert not cooks_outliers(cooks, counts, x_two_by_four, cutoff=5.0).any()




def test_sample_qc():
    counts = pd.DataFrame({"S1": [0, 10, 0, 6], "S2": [2, 0, 4, 0]})
    qc = sample_qc(counts, pd.Series({"S2": 1.0, "S1": 2.0}))

    assert list(qc.index) == ["S1", "S2"]
    assert qc["size_factor"].tolist() == [2.0, 1.0]
    assert qc["total_counts"].tolist() == [16.0, 6.0]
    assert qc["detected_genes"].tolist() == [2, 2]
    assert qc["zero_fraction"].tolist() == [0.5, 0.5]
    assert qc["relative_library_size"].prod() == pytest.approx(1.0)
    # normalized S1 = [0, 5, 0, 3]: mean 2, variance 6
    assert qc.loc["S1", "mean_normalized"] == pytest.approx(2.0)
    assert qc.loc["S1", "var_over_mean"] == pytest.approx(3.0)
    assert qc.loc["S2", "var_over_mean"] == pytest.approx((11.0 / 3.0) / 1.5)
