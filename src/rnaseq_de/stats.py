"""
Statistical utilities for testing and multiple comparison correction.

Functions
---------
bh_fdr
    Benjamini-Hochberg FDR adjustment.
nb_log_likelihood
    Negative binomial log-likelihood summed over samples.
wald_test
    Wald statistics and p-values, optionally against a fold-change threshold.
independent_filter
    Mean-based filtering that maximizes rejections before BH adjustment.
match_upper_quantile_for_variance
    Normal variance whose upper quantile matches that of the data.
weighted_upper_quantile_variance
    Weighted version of :func:`match_upper_quantile_for_variance`.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional

import numpy as np
import pandas as pd
from scipy import stats
from scipy.special import gammaln


def bh_fdr(pvals: np.ndarray) -> np.ndarray:
    """Benjamini-Hochberg FDR adjustment.

    Adjusts p-values to control the false discovery rate using the
    Benjamini-Hochberg procedure. Missing p-values stay missing and do not
    count towards the number of tests.

    Parameters
    ----------
    pvals : array-like
        Raw p-values.

    Returns
    -------
    qvals : np.ndarray
        BH-adjusted p-values, same shape as pvals.

    Notes
    -----
    The procedure ranks p-values and computes q_i = p_i * n / rank_i,
    then enforces monotonicity (q_i >= q_{i-1} for sorted p-values).

    Examples
    --------
    >>> pvals = np.array([0.001, 0.01, 0.05, 0.1])
    >>> qvals = bh_fdr(pvals)
    >>> qvals
    array([0.004     , 0.02      , 0.06666667, 0.1       ])
    """
    pvals = np.asarray(pvals, dtype=float)
    qvals = np.full(pvals.shape, np.nan, dtype=float)

    ok = np.isfinite(pvals)
    if ok.sum() == 0:
        return qvals

    p = pvals[ok]
    order = np.argsort(p, kind="mergesort")
    ranks = np.arange(1, p.size + 1)

    q = p[order] * p.size / ranks
    # enforce monotonicity
    q = np.minimum.accumulate(q[::-1])[::-1]
    q = np.clip(q, 0.0, 1.0)

    out_idx = np.where(ok)[0][order]
    qvals[out_idx] = q
    return qvals


#: Size parameter 1 / alpha above which asymptotic expansions are used.
ASYMPTOTIC_R = 10.0


def _stirling_tail(x):
    # gammaln(x) - [(x - 1/2) log x - x + log(2 pi) / 2]
    x2 = x * x
    return (1.0 / 12.0 - (1.0 / 360.0 - (1.0 / 1260.0 - 1.0 / (1680.0 * x2)) / x2) / x2) / x


def nb_log_likelihood(y: np.ndarray, mu: np.ndarray, alpha) -> np.ndarray:
    """Negative binomial log-likelihood, summed over the last axis.

    Uses the NB2 parameterization Var(Y) = mu + alpha * mu^2.

    Parameters
    ----------
    y : np.ndarray
        Observed counts, shape (..., n_samples).
    mu : np.ndarray
        Means, same shape as ``y``.
    alpha : float or np.ndarray
        Dispersion, scalar or broadcastable to ``y.shape[:-1]``.

    Returns
    -------
    np.ndarray or float
        Log-likelihood per row.
    """
    y = np.asarray(y, dtype=float)
    mu = np.asarray(mu, dtype=float)
    alpha = np.asarray(alpha, dtype=float)
    if alpha.ndim and y.ndim > 1:
        alpha = alpha[..., None]
    r = 1.0 / alpha
    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        direct = (
            gammaln(y + r)
            - gammaln(r)
            - gammaln(y + 1.0)
            - r * np.log1p(mu * alpha)
            + y * (np.log(mu) - np.log(mu + r))
        )
        # Stirling form of gammaln(y + r) - gammaln(r); exact to rounding for
        # large r where the direct difference cancels
        stirling = (
            y * np.log1p((y - mu) / (r + mu))
            + (r - 0.5) * np.log1p(y / r)
            - y
            + _stirling_tail(r + y)
            - _stirling_tail(r)
            - gammaln(y + 1.0)
            - r * np.log1p(mu / r)
            + y * np.log(mu)
        )
    ll = np.where(r >= ASYMPTOTIC_R, stirling, direct)
    return ll.sum(axis=-1)


def wald_test(
    lfc: np.ndarray,
    se: np.ndarray,
    lfc_threshold: float = 0.0,
    alt_hypothesis: Literal["greaterAbs", "lessAbs", "greater", "less"] = "greaterAbs",
    df: Optional[float] = None,
) -> tuple[np.ndarray, np.ndarray]:
    """Wald statistics and p-values for log fold changes.

    Parameters
    ----------
    lfc : np.ndarray
        Effect sizes (log2 fold changes).
    se : np.ndarray
        Standard errors on the same scale.
    lfc_threshold : float, default 0.0
        Threshold tau. With 0 and ``"greaterAbs"`` this is the usual test of
        lfc = 0.
    alt_hypothesis : {"greaterAbs", "lessAbs", "greater", "less"}
        ``greaterAbs``: |lfc| > tau (two-sided). ``lessAbs``: |lfc| < tau.
        ``greater``: lfc > tau. ``less``: lfc < -tau.
    df : float or None
        Degrees of freedom for a Student t reference; normal if None.

    Returns
    -------
    stat : np.ndarray
        Wald statistics.
    pvalue : np.ndarray
        P-values, NaN where ``lfc`` or ``se`` is not finite.

    Examples
    --------
    >>> stat, p = wald_test(np.array([1.0]), np.array([0.5]))
    >>> float(stat[0]), round(float(p[0]), 4)
    (2.0, 0.0455)
    """
    lfc = np.asarray(lfc, dtype=float)
    se = np.asarray(se, dtype=float)
    dist = stats.norm if df is None else stats.t(df)
    t = float(lfc_threshold)

    with np.errstate(divide="ignore", invalid="ignore"):
        if alt_hypothesis == "greaterAbs":
            z = (np.abs(lfc) - t) / se
            if t == 0:
                stat = lfc / se
            else:
                stat = np.sign(lfc) * np.maximum(z, 0.0)
            pvalue = np.minimum(1.0, 2.0 * dist.sf(z))
        elif alt_hypothesis == "lessAbs":
            stat_above = np.maximum((t - lfc) / se, 0.0)
            p_above = dist.cdf((lfc - t) / se)
            stat_below = np.maximum((lfc + t) / se, 0.0)
            p_below = dist.sf((lfc + t) / se)
            stat = np.minimum(stat_above, stat_below)
            pvalue = np.maximum(p_above, p_below)
        elif alt_hypothesis == "greater":
            z = (lfc - t) / se
            stat = np.maximum(z, 0.0)
            pvalue = dist.sf(z)
        elif alt_hypothesis == "less":
            z = (lfc + t) / se
            stat = np.minimum(z, 0.0)
            pvalue = dist.cdf(z)
        else:
            raise ValueError(f"Unknown alt_hypothesis='{alt_hypothesis}'")

    bad = ~(np.isfinite(lfc) & np.isfinite(se) & (se > 0))
    stat = np.where(bad, np.nan, stat)
    pvalue = np.where(bad, np.nan, pvalue)
    return stat, pvalue


@dataclass(frozen=True)
class FilterResult:
    """Outcome of :func:`independent_filter`."""

    #: BH-adjusted p-values, NaN for genes below the chosen cutoff.
    padj: np.ndarray
    #: Chosen cutoff on the filter statistic (genes with filter_stat >= cutoff pass).
    threshold: float
    #: Quantile of the filter statistic at the chosen cutoff.
    theta: float
    #: Rejections per candidate cutoff (columns theta, cutoff, num_rej).
    curve: pd.DataFrame


def independent_filter(
    filter_stat: np.ndarray,
    pvalues: np.ndarray,
    alpha: float = 0.1,
    n_quantiles: int = 50,
) -> FilterResult:
    """Choose a filter cutoff that maximizes BH rejections at ``alpha``.

    Candidate cutoffs are quantiles of ``filter_stat`` (the base mean) from
    the fraction of zero values up to 0.95. For each cutoff, genes with
    ``filter_stat >= cutoff`` are BH-adjusted among themselves; the others
    are excluded from the correction. The cutoff with the most adjusted
    p-values below ``alpha`` wins; ties go to the lowest cutoff, so when no
    cutoff helps no filtering is applied.

    Because each cutoff's rejection count can only grow with ``alpha``, the
    number of genes called at the chosen cutoff never decreases when
    ``alpha`` increases.

    Parameters
    ----------
    filter_stat : np.ndarray
        Filter statistic per gene, independent of the test under the null.
    pvalues : np.ndarray
        Raw p-values; NaN entries are never rejected and are not counted as
        tests.
    alpha : float, default 0.1
        Target FDR.
    n_quantiles : int, default 50
        Number of candidate cutoffs.

    Returns
    -------
    FilterResult
    """
    filter_stat = np.asarray(filter_stat, dtype=float)
    pvalues = np.asarray(pvalues, dtype=float)

    finite = np.isfinite(filter_stat)
    if not finite.any():
        padj = bh_fdr(pvalues)
        curve = pd.DataFrame({"theta": [0.0], "cutoff": [np.nan], "num_rej": [int(np.sum(padj < alpha))]})
        return FilterResult(padj=padj, threshold=np.nan, theta=0.0, curve=curve)

    lower = float(np.mean(filter_stat[finite] == 0))
    upper = 0.95 if lower < 0.95 else 1.0
    theta = np.linspace(lower, upper, n_quantiles)
    cutoffs = np.quantile(filter_stat[finite], theta)

    padj_grid = np.full((filter_stat.size, theta.size), np.nan)
    num_rej = np.zeros(theta.size, dtype=int)
    for i, cutoff in enumerate(cutoffs):
        use = finite & (filter_stat >= cutoff)
        if use.any():
            padj_grid[use, i] = bh_fdr(pvalues[use])
        num_rej[i] = int(np.sum(padj_grid[:, i] < alpha))

    j = int(np.argmax(num_rej))
    curve = pd.DataFrame({"theta": theta, "cutoff": cutoffs, "num_rej": num_rej})
    return FilterResult(
        padj=padj_grid[:, j],
        threshold=float(cutoffs[j]),
        theta=float(theta[j]),
        curve=curve,
    )


def match_upper_quantile_for_variance(x: np.ndarray, upper_quantile: float = 0.05) -> float:
    """Variance of a zero-mean normal sharing the upper quantile of |x|.

    Examples
    --------
    >>> rng = np.random.default_rng(0)
    >>> round(match_upper_quantile_for_variance(rng.normal(0, 2, 100_000)), 1)
    4.0
    """
    x = np.asarray(x, dtype=float)
    x = x[np.isfinite(x)]
    if x.size == 0:
        return np.nan
    sd = np.quantile(np.abs(x), 1.0 - upper_quantile) / stats.norm.ppf(1.0 - upper_quantile / 2.0)
    return float(sd**2)


def weighted_upper_quantile_variance(
    x: np.ndarray,
    weights: np.ndarray,
    upper_quantile: float = 0.05,
) -> float:
    """Weighted version of :func:`match_upper_quantile_for_variance`."""
    x = np.asarray(x, dtype=float)
    weights = np.asarray(weights, dtype=float)
    ok = np.isfinite(x) & np.isfinite(weights) & (weights > 0)
    if not ok.any():
        return np.nan
    a = np.abs(x[ok])
    w = weights[ok]
    order = np.argsort(a)
    a, w = a[order], w[order]
    cum = (np.cumsum(w) - 0.5 * w) / w.sum()
    q = np.interp(1.0 - upper_quantile, cum, a)
    sd = q / stats.norm.ppf(1.0 - upper_quantile / 2.0)
    return float(sd**2)
