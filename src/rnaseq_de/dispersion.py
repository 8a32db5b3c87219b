"""
Negative binomial dispersion estimation with empirical-Bayes shrinkage.

Dispersions are estimated in three stages:

1. Gene-wise maximum likelihood: for each gene, the Cox-Reid adjusted
   log-likelihood is maximized in log dispersion by bracketing root-finding
   on its derivative.
2. Trend: a smooth curve of dispersion against mean normalized count is fit
   across genes (parametric ``a0 + a1 / mean``, local regression, or a
   trimmed mean).
3. Maximum a posteriori: each gene's likelihood is combined with a log-normal
   prior centered on the trend, whose variance is the spread of gene-wise
   estimates around the trend minus their expected sampling variance. Genes
   far above the trend keep their gene-wise value.

Stages 1 and 3 are independent across genes and are run in blocks by
:mod:`rnaseq_de.pipeline`; stage 2 needs every gene-wise estimate.

Functions
---------
initial_dispersions
    Rough per-gene starting values from moment estimators.
genewise_mean_model
    Fitted means used by the gene-wise and MAP likelihoods.
fit_genewise_dispersions
    Stage 1 for a block of genes.
fit_dispersion_trend
    Stage 2 across all genes.
fit_map_dispersions
    Stage 3 for a block of genes.
finalize_dispersions
    Combine MAP values, outlier rule and fallbacks into final dispersions.

Classes
-------
DispersionTrend
    Fitted dispersion-mean curve with its prior variance.
DispersionResult
    Raw, trend, MAP and final dispersions with per-gene flags.
"""
from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy import stats
from scipy.optimize import brentq
from scipy.special import digamma, polygamma
from statsmodels.tools.sm_exceptions import DomainWarning

from .config import DESeqConfig
from .diagnostics import linear_model_mu, moments_dispersion_estimate, rough_dispersion_estimate
from .model import fit_nb_glm
from .stats import ASYMPTOTIC_R, nb_log_likelihood

logger = logging.getLogger(__name__)

#: Minimum number of genes for a local-regression trend.
MIN_GENES_LOCAL = 10


@dataclass(frozen=True)
class DispersionTrend:
    """Fitted dispersion-mean relationship.

    Attributes
    ----------
    fit_type : str
        ``"parametric"``, ``"local"``, ``"mean"`` or ``"constant"``.
    coefficients : tuple
        ``(asympt_disp, extra_pois)`` for parametric fits, ``(mean_disp,)``
        for mean and constant fits, empty for local fits.
    min_disp : float
        Floor applied to trend values.
    grid_log_mean, grid_log_disp : np.ndarray or None
        Local-regression curve on the log scale.
    var_log_disp : float
        Robust variance of log gene-wise estimates around the trend.
    prior_var : float
        Variance of the log-normal dispersion prior.
    """

    fit_type: str
    coefficients: Tuple[float, ...]
    min_disp: float
    grid_log_mean: Optional[np.ndarray] = None
    grid_log_disp: Optional[np.ndarray] = None
    var_log_disp: float = np.nan
    prior_var: float = 0.25

    def __call__(self, means) -> np.ndarray:
        means = np.asarray(means, dtype=float)
        if self.fit_type == "parametric":
            a0, a1 = self.coefficients
            with np.errstate(divide="ignore"):
                out = a0 + a1 / means
        elif self.fit_type == "local":
            with np.errstate(divide="ignore"):
                out = np.exp(np.interp(np.log(means), self.grid_log_mean, self.grid_log_disp))
        else:
            out = np.full(means.shape, self.coefficients[0])
        return np.maximum(out, self.min_disp)


@dataclass(frozen=True)
class DispersionResult:
    """Per-gene dispersion estimates (NaN for all-zero genes)."""

    base_mean: np.ndarray
    base_var: np.ndarray
    all_zero: np.ndarray
    genewise: np.ndarray
    genewise_converged: np.ndarray
    trend_values: np.ndarray
    map: np.ndarray
    map_converged: np.ndarray
    final: np.ndarray
    outlier: np.ndarray
    trend: DispersionTrend

    def to_frame(self, genes: pd.Index) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "baseMean": self.base_mean,
                "baseVar": self.base_var,
                "allZero": self.all_zero,
                "dispGeneEst": self.genewise,
                "dispGeneConverged": self.genewise_converged,
                "dispFit": self.trend_values,
                "dispMAP": self.map,
                "dispMAPConverged": self.map_converged,
                "dispersion": self.final,
                "dispOutlier": self.outlier,
            },
            index=genes,
        )


def initial_dispersions(
    normed_counts: np.ndarray,
    base_mean: np.ndarray,
    base_var: np.ndarray,
    size_factors: np.ndarray,
    x: np.ndarray,
    min_disp: float,
    max_disp: float,
) -> np.ndarray:
    """Starting dispersions: min of rough and moments estimates, bounded."""
    rough = rough_dispersion_estimate(normed_counts, x)
    moments = moments_dispersion_estimate(base_mean, base_var, size_factors)
    alpha = np.fmin(rough, moments)
    alpha = np.where(np.isfinite(alpha), alpha, min_disp)
    return np.clip(alpha, min_disp, max_disp)


def genewise_mean_model(
    counts: np.ndarray,
    size_factors: np.ndarray,
    x: np.ndarray,
    alpha_init: np.ndarray,
    config: DESeqConfig,
) -> np.ndarray:
    """Fitted means for the dispersion likelihood.

    When the design has as many distinct rows as coefficients (a pure group
    design) the means are group means of normalized counts. Otherwise a
    negative binomial GLM is fit at the starting dispersions; genes where it
    fails fall back to the linear-model means. Means are floored at
    ``config.min_mu``.
    """
    normed = counts / size_factors
    lin_mu = linear_model_mu(normed, x) * size_factors

    n_distinct = np.unique(x, axis=0).shape[0]
    if n_distinct == x.shape[1]:
        mu = lin_mu
    else:
        fit = fit_nb_glm(
            counts,
            size_factors,
            alpha_init,
            x,
            ridge_lambda=config.ridge_lambda,
            min_mu=config.min_mu,
            beta_tol=config.beta_tol,
            max_iter=config.max_iter,
        )
        mu = np.where(np.isfinite(fit.mu), fit.mu, lin_mu)
    return np.maximum(mu, config.min_mu)


def _cox_reid_terms(x: np.ndarray, mu: np.ndarray, alpha: float) -> Tuple[float, float]:
    w = 1.0 / (1.0 / mu + alpha)
    b = x.T @ (w[:, None] * x)
    sign, logdet = np.linalg.slogdet(b)
    if sign <= 0:
        raise np.linalg.LinAlgError("X'WX is not positive definite")
    dw = -(w**2)
    db = x.T @ (dw[:, None] * x)
    dcr = -0.5 * np.trace(np.linalg.solve(b, db))
    return -0.5 * logdet, dcr


def _log_posterior(log_alpha, y, mu, x, prior_mean=None, prior_var=None) -> float:
    alpha = np.exp(log_alpha)
    ll = nb_log_likelihood(y, mu, alpha)
    cr, _ = _cox_reid_terms(x, mu, alpha)
    out = ll + cr
    if prior_mean is not None:
        out -= (log_alpha - prior_mean) ** 2 / (2.0 * prior_var)
    return float(out)


def _log1p_minus_x(z):
    z = np.asarray(z, dtype=float)
    small = np.abs(z) < 0.1
    zs = np.where(small, z, 0.0)
    series = np.zeros_like(zs)
    term = zs
    for k in range(2, 18):
        term = -term * zs
        series += term / k
    with np.errstate(divide="ignore", invalid="ignore"):
        direct = np.log1p(z) - z
    return np.where(small, series, direct)


def _digamma_tail(x):
    # digamma(x) - log(x) + 1 / (2x)
    x2 = 1.0 / (x * x)
    return x2 * (-1.0 / 12.0 + x2 * (1.0 / 120.0 + x2 * (-1.0 / 252.0 + x2 * (1.0 / 240.0 - x2 / 132.0))))


def _dlog_posterior(log_alpha, y, mu, x, prior_mean=None, prior_var=None) -> float:
    alpha = np.exp(log_alpha)
    r = 1.0 / alpha
    if r < ASYMPTOTIC_R:
        ma = mu * alpha
        dll = np.sum(
            digamma(r) - digamma(y + r) + np.log1p(ma) - ma / (1.0 + ma) + y / (mu + r)
        ) * r**2
    else:
        # expanded around large r, where the digamma difference cancels
        t = (
            _log1p_minus_x((mu - y) / (r + y))
            + (mu - y) ** 2 / ((r + y) * (r + mu))
            - y / (2.0 * r * (r + y))
            + _digamma_tail(r)
            - _digamma_tail(r + y)
        )
        dll = np.sum(t) * r**2

    _, dcr = _cox_reid_terms(x, mu, alpha)
    out = alpha * (dll + dcr)
    if prior_mean is not None:
        out -= (log_alpha - prior_mean) / prior_var
    return float(out)


def _maximize_log_alpha(
    y, mu, x, lo, hi, tol, max_iter, prior_mean=None, prior_var=None
) -> Tuple[float, bool, int]:
    """Zero the derivative of the (log-)posterior in log alpha on [lo, hi].

    Returns the maximizing log alpha, a convergence flag and the number of
    iterations. A derivative that is negative at ``lo`` or positive at ``hi``
    puts the maximum on that bound.
    """
    def f(la):
        return _dlog_posterior(la, y, mu, x, prior_mean, prior_var)

    try:
        f_lo = f(lo)
        f_hi = f(hi)
    except (np.linalg.LinAlgError, FloatingPointError):
        return np.nan, False, 0
    if not (np.isfinite(f_lo) and np.isfinite(f_hi)):
        return np.nan, False, 0
    if f_lo <= 0:
        return lo, True, 0
    if f_hi >= 0:
        return hi, True, 0

    try:
        root, res = brentq(f, lo, hi, xtol=tol, maxiter=max_iter, full_output=True, disp=False)
    except (ValueError, RuntimeError, np.linalg.LinAlgError):
        return np.nan, False, max_iter
    if not res.converged or not np.isfinite(root):
        return np.nan, False, res.iterations
    return float(root), True, res.iterations


def _grid_log_alpha(y, mu, x, lo, hi, prior_mean=None, prior_var=None, n: int = 20) -> float:
    """Coarse-then-fine grid maximization of the log posterior."""
    def lp(la):
        try:
            return _log_posterior(la, y, mu, x, prior_mean, prior_var)
        except np.linalg.LinAlgError:
            return -np.inf

    grid = np.linspace(lo, hi, n)
    vals = np.array([lp(g) for g in grid])
    best = grid[int(np.argmax(vals))]
    step = grid[1] - grid[0]
    fine = np.linspace(max(lo, best - step), min(hi, best + step), n)
    vals = np.array([lp(g) for g in fine])
    return float(fine[int(np.argmax(vals))])


def fit_genewise_dispersions(
    counts: np.ndarray,
    size_factors: np.ndarray,
    x: np.ndarray,
    alpha_init: np.ndarray,
    config: DESeqConfig,
    max_disp: float,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """Gene-wise maximum-likelihood dispersions for a block of genes.

    Parameters
    ----------
    counts : np.ndarray
        Raw counts of genes with at least one non-zero count.
    size_factors : np.ndarray
        Size factor per sample.
    x : np.ndarray
        Design matrix.
    alpha_init : np.ndarray
        Starting dispersions (see :func:`initial_dispersions`).
    config : DESeqConfig
        Bounds, tolerances and iteration cap.
    max_disp : float
        Upper dispersion bound.

    Returns
    -------
    mu : np.ndarray
        Means used in the likelihood, shape (n_genes, n_samples).
    dispersions : np.ndarray
        Estimates clamped to ``[min_disp, max_disp]``; NaN where not converged.
    converged : np.ndarray
        Convergence flag per gene.
    n_iter : np.ndarray
        Root-finder iterations per gene.
    """
    mu = genewise_mean_model(counts, size_factors, x, alpha_init, config)
    lo = np.log(config.min_disp / 10.0)
    hi = np.log(max_disp)

    n = counts.shape[0]
    disp = np.full(n, np.nan)
    converged = np.zeros(n, dtype=bool)
    n_iter = np.zeros(n, dtype=int)
    for i in range(n):
        la, ok, it = _maximize_log_alpha(counts[i], mu[i], x, lo, hi, config.disp_tol, config.max_iter)
        converged[i] = ok
        n_iter[i] = it
        if ok:
            disp[i] = np.clip(np.exp(la), config.min_disp, max_disp)
    return mu, disp, converged, n_iter


def _parametric_trend(means: np.ndarray, disps: np.ndarray) -> Tuple[float, float]:
    """Gamma-family GLM fit of ``disp = a0 + a1 / mean`` (identity link).

    Genes whose ratio to the current curve leaves (1e-4, 15) are dropped
    before each refit.

    Raises
    ------
    RuntimeError
        If a coefficient becomes non-positive or the fit does not settle
        within 10 rounds.
    """
    coefs = np.array([0.1, 1.0])
    for it in range(11):
        residuals = disps / (coefs[0] + coefs[1] / means)
        good = (residuals > 1e-4) & (residuals < 15)
        if good.sum() < 3:
            raise RuntimeError("too few genes left for the parametric dispersion fit")
        exog = sm.add_constant(1.0 / means[good], has_constant="add")
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", DomainWarning)
            glm_gamma = sm.GLM(
                disps[good],
                exog,
                family=sm.families.Gamma(link=sm.families.links.Identity()),
            )
            try:
                fit = glm_gamma.fit(start_params=coefs)
            except (ValueError, np.linalg.LinAlgError) as e:
                raise RuntimeError(f"parametric dispersion fit failed: {e}") from e
        old = coefs
        coefs = np.asarray(fit.params, dtype=float)
        if not np.all(coefs > 0):
            raise RuntimeError("parametric dispersion fit failed: non-positive coefficients")
        if np.sum(np.log(coefs / old) ** 2) < 1e-6 and fit.converged:
            return float(coefs[0]), float(coefs[1])
    raise RuntimeError("parametric dispersion fit did not converge")


def _local_trend(means: np.ndarray, disps: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    fitted = sm.nonparametric.lowess(np.log(disps), np.log(means), frac=2.0 / 3.0, it=3, return_sorted=True)
    return fitted[:, 0], fitted[:, 1]


def fit_dispersion_trend(
    base_mean: np.ndarray,
    genewise: np.ndarray,
    usable: np.ndarray,
    fit_type: str,
    min_disp: float,
    n_samples: int,
    n_coef: int,
) -> DispersionTrend:
    """Fit the dispersion-mean trend and the dispersion prior variance.

    Parameters
    ----------
    base_mean : np.ndarray
        Mean normalized count per gene.
    genewise : np.ndarray
        Gene-wise dispersion estimates.
    usable : np.ndarray
        Genes eligible for the fit (converged, not all zero).
    fit_type : {"parametric", "local", "mean"}
        Requested trend. A failed parametric fit falls back to local
        regression (or the mean when there are too few genes) with a warning.
    min_disp : float
        Minimum dispersion; only estimates above ``100 * min_disp`` are used.
    n_samples, n_coef : int
        Design dimensions, for the expected sampling variance of log
        estimates.

    Returns
    -------
    DispersionTrend
    """
    use = usable & np.isfinite(genewise) & (genewise > 100 * min_disp) & (base_mean > 0)
    means = base_mean[use]
    disps = genewise[use]
    logger.info(f"Fitting {fit_type} dispersion trend on {int(use.sum())} genes")

    if use.sum() == 0:
        warnings.warn(
            f"All gene-wise dispersion estimates are within 2 orders of magnitude of "
            f"min_disp={min_disp}; using a constant dispersion of {10 * min_disp}"
        )
        return DispersionTrend(fit_type="constant", coefficients=(10 * min_disp,), min_disp=min_disp)

    trend: Optional[DispersionTrend] = None
    if fit_type == "parametric":
        try:
            a0, a1 = _parametric_trend(means, disps)
            trend = DispersionTrend(fit_type="parametric", coefficients=(a0, a1), min_disp=min_disp)
            logger.info(f"Dispersion trend: asymptDisp={a0:.4g}, extraPois={a1:.4g}")
        except RuntimeError as e:
            fallback = "local" if use.sum() >= MIN_GENES_LOCAL else "mean"
            warnings.warn(
                f"{e}; the trend y = a0 + a1/x did not capture the data, using "
                f"fit_type='{fallback}' instead"
            )
            fit_type = fallback

    if trend is None and fit_type == "local":
        if use.sum() >= MIN_GENES_LOCAL:
            gx, gy = _local_trend(means, disps)
            trend = DispersionTrend(
                fit_type="local", coefficients=(), min_disp=min_disp, grid_log_mean=gx, grid_log_disp=gy
            )
        else:
            warnings.warn(f"Only {int(use.sum())} genes for a local dispersion trend; using the mean")
            fit_type = "mean"

    if trend is None:
        keep = disps > 10 * min_disp
        mean_disp = float(stats.trim_mean(disps[keep], 0.001))
        trend = DispersionTrend(fit_type="mean", coefficients=(mean_disp,), min_disp=min_disp)

    # prior width from the robust spread of log estimates around the trend
    resid = np.log(disps) - np.log(trend(means))
    var_log_disp = float(stats.median_abs_deviation(resid, scale="normal") ** 2)
    df = n_samples - n_coef
    if df > 0:
        prior_var = max(var_log_disp - float(polygamma(1, df / 2.0)), 0.25)
    else:
        prior_var = var_log_disp
    logger.info(f"Dispersion prior variance {prior_var:.4g} (log-residual variance {var_log_disp:.4g})")

    return DispersionTrend(
        fit_type=trend.fit_type,
        coefficients=trend.coefficients,
        min_disp=min_disp,
        grid_log_mean=trend.grid_log_mean,
        grid_log_disp=trend.grid_log_disp,
        var_log_disp=var_log_disp,
        prior_var=prior_var,
    )


def fit_map_dispersions(
    counts: np.ndarray,
    mu: np.ndarray,
    x: np.ndarray,
    trend_values: np.ndarray,
    prior_var: float,
    config: DESeqConfig,
    max_disp: float,
) -> Tuple[np.ndarray, np.ndarray]:
    """Maximum a posteriori dispersions for a block of genes.

    Maximizes the Cox-Reid adjusted log-likelihood plus a normal prior on
    log dispersion centered at ``log(trend_values)``. Genes where the
    root-finder fails are resolved by a grid search.

    Returns
    -------
    map_disp : np.ndarray
        Estimates clamped to ``[min_disp, max_disp]``.
    converged : np.ndarray
        Whether the root-finder converged (False means the grid was used).
    """
    lo = np.log(config.min_disp / 10.0)
    hi = np.log(max_disp)
    n = counts.shape[0]
    out = np.full(n, np.nan)
    converged = np.zeros(n, dtype=bool)
    for i in range(n):
        prior_mean = np.log(trend_values[i])
        la, ok, _ = _maximize_log_alpha(
            counts[i], mu[i], x, lo, hi, config.disp_tol, config.max_iter, prior_mean, prior_var
        )
        if not ok:
            la = _grid_log_alpha(counts[i], mu[i], x, lo, hi, prior_mean, prior_var)
        converged[i] = ok
        out[i] = np.clip(np.exp(la), config.min_disp, max_disp)
    return out, converged


def finalize_dispersions(
    genewise: np.ndarray,
    genewise_converged: np.ndarray,
    trend_values: np.ndarray,
    map_disp: np.ndarray,
    trend: DispersionTrend,
    outlier_sd: float,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Final dispersions from MAP values, outlier rule and fallbacks.

    Genes whose gene-wise estimate lies more than ``outlier_sd`` robust
    standard deviations above the trend keep the gene-wise estimate. Genes
    whose gene-wise fit did not converge take the trend value for both the
    gene-wise and the final estimate.

    Returns
    -------
    genewise : np.ndarray
        Gene-wise estimates with non-converged genes set to the trend.
    final : np.ndarray
        Final dispersions.
    outlier : np.ndarray
        Dispersion outlier flag.
    """
    genewise = np.where(genewise_converged, genewise, trend_values)
    final = map_disp.copy()

    if np.isfinite(trend.var_log_disp):
        with np.errstate(invalid="ignore", divide="ignore"):
            outlier = np.log(genewise) > np.log(trend_values) + outlier_sd * np.sqrt(trend.var_log_disp)
        outlier &= genewise_converged & np.isfinite(genewise)
    else:
        outlier = np.zeros(genewise.shape, dtype=bool)

    final[outlier] = genewise[outlier]
    final = np.where(genewise_converged, final, trend_values)
    return genewise, final, outlier
