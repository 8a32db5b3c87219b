"""
Model diagnostics and moment-based dispersion estimates.

This module provides the quick dispersion estimators used to initialize the
likelihood-based fits, Cook's distances for flagging genes whose fit is
driven by a single sample, and a per-sample quality table.

Functions
---------
linear_model_mu
    Least-squares fitted values of each gene's counts on the design.
rough_dispersion_estimate
    Per-gene dispersion from residuals of a linear model.
moments_dispersion_estimate
    Per-gene dispersion from the mean and variance of normalized counts.
robust_moments_dispersion
    Trimmed, outlier-resistant per-gene dispersion for Cook's distances.
n_or_more_replicates
    Samples whose design cell has at least n replicates.
cooks_distance
    Cook's distance of every sample for every gene.
cooks_outliers
    Genes whose maximum Cook's distance exceeds a cutoff.
sample_qc
    Library size, size factor, zeros and overdispersion per sample.
"""
from __future__ import annotations

from typing import Optional

import numpy as np
import pandas as pd
from scipy import stats


def linear_model_mu(y: np.ndarray, x: np.ndarray) -> np.ndarray:
    """Least-squares fitted values of each row of ``y`` on design ``x``.

    Parameters
    ----------
    y : np.ndarray
        Matrix of shape (n_genes, n_samples).
    x : np.ndarray
        Design matrix of shape (n_samples, n_coef), full column rank.

    Returns
    -------
    np.ndarray
        Fitted values, same shape as ``y``.
    """
    q, _ = np.linalg.qr(x)
    # hat matrix is symmetric, so rows of y can be projected directly
    return (y @ q) @ q.T


def rough_dispersion_estimate(normed_counts: np.ndarray, x: np.ndarray) -> np.ndarray:
    """Per-gene dispersion from squared residuals of a linear model.

    Parameters
    ----------
    normed_counts : np.ndarray
        Normalized counts, shape (n_genes, n_samples).
    x : np.ndarray
        Design matrix, shape (n_samples, n_coef).

    Returns
    -------
    np.ndarray
        Non-negative rough dispersion estimates.
    """
    mu = np.clip(linear_model_mu(normed_counts, x), 1.0, None)
    m, p = x.shape
    est = np.sum(((normed_counts - mu) ** 2 - mu) / mu**2, axis=1) / (m - p)
    return np.clip(est, 0.0, None)


def moments_dispersion_estimate(
    base_mean: np.ndarray,
    base_var: np.ndarray,
    size_factors: np.ndarray,
) -> np.ndarray:
    """Per-gene dispersion from mean and variance of normalized counts.

    Solves Var = xim * mean + alpha * mean^2 with ``xim`` the mean inverse
    size factor.
    """
    xim = np.mean(1.0 / np.asarray(size_factors, dtype=float))
    with np.errstate(divide="ignore", invalid="ignore"):
        return (base_var - xim * base_mean) / base_mean**2


def n_or_more_replicates(x: np.ndarray, n: int = 3) -> np.ndarray:
    """Boolean mask of samples whose design row occurs at least ``n`` times."""
    _, inverse, counts = np.unique(x, axis=0, return_inverse=True, return_counts=True)
    inverse = np.asarray(inverse).ravel()
    return counts[inverse] >= n


def _trim_settings(n: int) -> tuple[float, float]:
    # trim ratio and consistency scale by replicate count
    if n <= 23:
        return 1.0 / 3.0, 2.04
    if n <= 99:
        return 1.0 / 4.0, 1.86
    return 1.0 / 8.0, 1.51


def robust_moments_dispersion(normed_counts: np.ndarray, x: np.ndarray) -> np.ndarray:
    """Outlier-resistant per-gene dispersion estimate.

    Uses trimmed within-cell variances when some design cell has three or
    more replicates (maximum across such cells), otherwise a trimmed variance
    across all samples. Floored at 0.04.

    Parameters
    ----------
    normed_counts : np.ndarray
        Normalized counts, shape (n_genes, n_samples).
    x : np.ndarray
        Design matrix, shape (n_samples, n_coef).

    Returns
    -------
    np.ndarray
        Dispersion per gene.
    """
    _, cells, sizes = np.unique(x, axis=0, return_inverse=True, return_counts=True)
    cells = np.asarray(cells).ravel()
    big = np.where(sizes >= 3)[0]

    if big.size:
        v = np.zeros(normed_counts.shape[0])
        for c in big:
            sub = normed_counts[:, cells == c]
            trim, scale = _trim_settings(sub.shape[1])
            centre = stats.trim_mean(sub, trim, axis=1)
            sq = (sub - centre[:, None]) ** 2
            n = sub.shape[1]
            v = np.maximum(v, scale * stats.trim_mean(sq, trim, axis=1) * n / (n - 1))
    else:
        centre = stats.trim_mean(normed_counts, 1.0 / 8.0, axis=1)
        sq = (normed_counts - centre[:, None]) ** 2
        v = 1.51 * stats.trim_mean(sq, 1.0 / 8.0, axis=1)

    m = normed_counts.mean(axis=1)
    with np.errstate(divide="ignore", invalid="ignore"):
        alpha = (v - m) / m**2
    return np.maximum(np.nan_to_num(alpha, nan=0.04), 0.04)


def cooks_distance(
    counts: np.ndarray,
    mu: np.ndarray,
    hat_diagonals: np.ndarray,
    dispersions: np.ndarray,
    n_coef: int,
) -> np.ndarray:
    """Cook's distance of each sample for each gene.

    D_ij = r_ij^2 / p * h_ij / (1 - h_ij)^2 with r_ij the Pearson residual
    under dispersion ``dispersions[i]``.

    Parameters
    ----------
    counts : np.ndarray
        Raw counts, shape (n_genes, n_samples).
    mu : np.ndarray
        Fitted means, same shape.
    hat_diagonals : np.ndarray
        Diagonal of the GLM hat matrix, same shape.
    dispersions : np.ndarray
        Dispersion per gene (usually :func:`robust_moments_dispersion`).
    n_coef : int
        Number of design coefficients p.

    Returns
    -------
    np.ndarray
        Cook's distances, shape (n_genes, n_samples).
    """
    var = mu + dispersions[:, None] * mu**2
    with np.errstate(divide="ignore", invalid="ignore"):
        pearson_sq = (counts - mu) ** 2 / var
        leverage = hat_diagonals / (1.0 - hat_diagonals) ** 2
    return pearson_sq / n_coef * leverage


def cooks_outliers(
    cooks: np.ndarray,
    counts: np.ndarray,
    x: np.ndarray,
    cutoff: Optional[float] = None,
) -> np.ndarray:
    """Flag genes whose maximum Cook's distance exceeds ``cutoff``.

    Only samples from design cells with three or more replicates are used to
    find the maximum. A flagged gene is cleared again when at least three
    samples have counts above the count of its maximum-Cook's sample, since
    then the extreme value is not isolated.

    Parameters
    ----------
    cooks : np.ndarray
        Cook's distances, shape (n_genes, n_samples).
    counts : np.ndarray
        Raw counts, same shape.
    x : np.ndarray
        Design matrix, shape (n_samples, n_coef).
    cutoff : float or None
        Cook's cutoff; default is the 0.99 quantile of F(p, m - p).

    Returns
    -------
    np.ndarray
        Boolean outlier flag per gene.
    """
    m, p = x.shape
    if cutoff is None:
        cutoff = stats.f.ppf(0.99, p, m - p)

    use = n_or_more_replicates(x, 3)
    out = np.zeros(cooks.shape[0], dtype=bool)
    if not use.any():
        return out

    sub = np.where(np.isfinite(cooks[:, use]), cooks[:, use], -np.inf)
    out = sub.max(axis=1) > cutoff

    idx = np.where(out)[0]
    if idx.size:
        filled = np.where(np.isfinite(cooks[idx]), cooks[idx], -np.inf)
        pos = filled.argmax(axis=1)
        at_max = counts[idx, pos]
        n_above = (counts[idx] > at_max[:, None]).sum(axis=1)
        out[idx] = n_above < 3
    return out


def sample_qc(counts: pd.DataFrame, size_factors: pd.Series) -> pd.DataFrame:
    """Per-sample quality summary of a count matrix.

    Library size and size factor together show whether normalization tracks
    sequencing depth; a sample whose size factor departs strongly from its
    relative library size is dominated by a few genes. The variance-to-mean
    ratio of the normalized counts is 1 for Poisson data and grows with
    overdispersion.

    Parameters
    ----------
    counts : pd.DataFrame
        Count matrix with genes as rows and samples as columns.
    size_factors : pd.Series
        Size factor per sample, indexed like ``counts.columns``.

    Returns
    -------
    pd.DataFrame
        Indexed by sample with columns ``total_counts``,
        ``relative_library_size``, ``size_factor``, ``detected_genes``,
        ``zero_fraction``, ``mean_normalized`` and ``var_over_mean``.

    Examples
    --------
    >>> counts = pd.DataFrame({"S1": [0, 10, 0, 6], "S2": [2, 0, 4, 0]})
    >>> sample_qc(counts, pd.Series({"S1": 2.0, "S2": 1.0}))["zero_fraction"]
    S1    0.5
    S2    0.5
    Name: zero_fraction, dtype: float64
    """
    sf = size_factors.reindex(counts.columns)
    totals = counts.sum(axis=0).astype(float)
    normed = counts / sf
    means = normed.mean(axis=0)
    vars_ = normed.var(axis=0, ddof=1)
    rel = totals / np.exp(np.log(totals.replace(0, np.nan)).mean())
    return pd.DataFrame(
        {
            "total_counts": totals,
            "relative_library_size": rel,
            "size_factor": sf,
            "detected_genes": (counts > 0).sum(axis=0),
            "zero_fraction": (counts == 0).mean(axis=0),
            "mean_normalized": means,
            "var_over_mean": vars_ / means.replace(0, np.nan),
        }
    )
