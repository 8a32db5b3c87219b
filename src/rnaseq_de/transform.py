"""
Count transformations for visualization and clustering.

Both transforms return a genes x samples matrix on an approximately log2
scale whose variance depends little on the mean. They use the dispersion
trend only, not the GLM fit or test results.

Functions
---------
vst
    Variance-stabilizing transformation derived from the dispersion trend.
rlog
    Regularized log: per-gene ridge-penalized NB fit with one coefficient
    per sample.
"""
from __future__ import annotations

import logging

import numpy as np
import pandas as pd
from scipy.integrate import cumulative_trapezoid

from .design import DesignMatrix
from .model import fit_nb_glm
from .pipeline import PipelineState, compute_size_factors, estimate_dispersions
from .stats import weighted_upper_quantile_variance

logger = logging.getLogger(__name__)


def _prepared_state(state: PipelineState, blind: bool) -> PipelineState:
    """State with size factors and dispersions, re-estimated under an
    intercept-only design when ``blind``."""
    if blind:
        ds = state.dataset
        ds = ds.with_design(DesignMatrix.intercept_only(ds.samples))
        state = PipelineState(dataset=ds, config=state.config)
        logger.info("Re-estimating dispersions blind to the design")
    if state.size_factors is None:
        state = compute_size_factors(state)
    if state.dispersions is None:
        state = estimate_dispersions(state)
    return state


def vst(state: PipelineState, blind: bool = False) -> pd.DataFrame:
    """Variance-stabilizing transformation.

    For a parametric trend ``alpha(q) = a0 + a1 / q`` the closed form

    ``log2((1 + a1 + 2 a0 q + 2 sqrt(a0 q (1 + a1 + a0 q))) / (4 a0))``

    is applied to normalized counts ``q``. A mean (constant) trend ``d``
    gives ``(2 asinh(sqrt(d q)) - log(d) - log(4)) / log(2)``. For a local
    trend the variance-stabilizing integral is computed numerically and
    scaled to match log2 at the upper quantiles of the base mean.

    Parameters
    ----------
    state : PipelineState
        A state with at least the dataset; missing stages are run.
    blind : bool, default False
        Estimate dispersions with an intercept-only design.

    Returns
    -------
    pd.DataFrame
        Transformed values, genes x samples.
    """
    state = _prepared_state(state, blind)
    trend = state.dispersions.trend
    q = state.normalized_counts().to_numpy()

    if trend.fit_type == "parametric":
        a0, a1 = trend.coefficients
        out = np.log2((1 + a1 + 2 * a0 * q + 2 * np.sqrt(a0 * q * (1 + a1 + a0 * q))) / (4 * a0))
    elif trend.fit_type in ("mean", "constant"):
        d = trend.coefficients[0]
        out = (2 * np.arcsinh(np.sqrt(d * q)) - np.log(d) - np.log(4)) / np.log(2)
    else:
        out = _vst_numeric(q, trend, state.size_factors.to_numpy(dtype=float))

    return pd.DataFrame(out, index=state.genes, columns=state.dataset.samples)


def _vst_numeric(q: np.ndarray, trend, size_factors: np.ndarray) -> np.ndarray:
    xg = np.sinh(np.linspace(0.0, np.arcsinh(q.max()), 1000))[1:]
    xim = np.mean(1.0 / size_factors)
    integrand = 1.0 / np.sqrt(xim * xg + trend(xg) * xg**2)
    mids = np.arcsinh((xg[1:] + xg[:-1]) / 2.0)
    cum = cumulative_trapezoid(integrand, xg)

    def h(v):
        return np.interp(np.arcsinh(v), mids, cum)

    base_mean = q.mean(axis=1)
    h1, h2 = np.quantile(base_mean, [0.95, 0.999])
    if h2 <= h1 or h1 <= 0:
        h1, h2 = np.quantile(base_mean[base_mean > 0], 0.5), base_mean.max()
    eta = (np.log2(h2) - np.log2(h1)) / (h(h2) - h(h1))
    xi = np.log2(h1) - eta * h(h1)
    return eta * h(q) + xi


def rlog(state: PipelineState, blind: bool = False) -> pd.DataFrame:
    """Regularized log transformation.

    Each gene is fit with an intercept and one coefficient per sample,
    ``log2 mu_ij = log2 s_j + beta_i0 + beta_ij``, at the trend dispersion
    for its base mean. The sample coefficients share a zero-centered normal
    prior whose variance matches the weighted upper 5% quantile of
    ``log2(q + 0.5) - log2(base_mean + 0.5)`` (weights
    ``1 / (1 / base_mean + dispersion)``). The output ``beta_i0 + beta_ij``
    is shrunk toward the gene mean for low counts and approaches
    ``log2`` normalized counts for high counts.

    Parameters
    ----------
    state : PipelineState
        A state with at least the dataset; missing stages are run.
    blind : bool, default False
        Estimate the dispersion trend with an intercept-only design.

    Returns
    -------
    pd.DataFrame
        Transformed values, genes x samples. All-zero genes are 0.
    """
    state = _prepared_state(state, blind)
    cfg = state.config
    counts = state.dataset.count_array()
    sf = state.size_factors.to_numpy(dtype=float)
    q = counts / sf
    base_mean = q.mean(axis=1)
    nz = base_mean > 0
    m = counts.shape[1]

    disp = state.dispersions.trend(base_mean[nz])
    log_fc = np.log2(q[nz] + 0.5) - np.log2(base_mean[nz] + 0.5)[:, None]
    weights = np.repeat(1.0 / (1.0 / base_mean[nz] + disp), m)
    prior_var = weighted_upper_quantile_variance(log_fc.ravel(), weights, 0.05)
    prior_var = max(prior_var, 1e-6) if np.isfinite(prior_var) else 1.0
    logger.info(f"rlog sample-coefficient prior variance {prior_var:.4g}")

    x = np.hstack([np.ones((m, 1)), np.eye(m)])
    lam = np.concatenate([[cfg.ridge_lambda], np.full(m, 1.0 / prior_var)])
    fit = fit_nb_glm(
        counts[nz],
        sf,
        disp,
        x,
        ridge_lambda=lam,
        min_mu=cfg.min_mu,
        beta_tol=cfg.beta_tol,
        max_iter=cfg.max_iter,
    )

    fitted = (fit.coef[:, :1] + fit.coef[:, 1:]) / np.log(2)
    failed = ~fit.converged
    if failed.any():
        logger.warning(f"rlog fit failed for {int(failed.sum())} genes; using log2(q + 0.5) for them")
        fitted[failed] = np.log2(q[nz][failed] + 0.5)

    out = np.zeros(counts.shape)
    out[nz] = fitted
    return pd.DataFrame(out, index=state.genes, columns=state.dataset.samples)
