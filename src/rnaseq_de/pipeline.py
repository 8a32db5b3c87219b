"""
Pipeline orchestration.

A run threads an immutable :class:`PipelineState` through the stages

1. size factors (serial)
2. gene-wise dispersions (parallel over gene blocks), then the dispersion
   trend and prior (serial), then MAP dispersions (parallel)
3. GLM fit and Cook's distances (parallel), Cook's outlier calls (serial)
4. optionally, the fold-change prior (serial) and a penalized refit
   (parallel)

Each stage returns a new state. Per-gene work is split into contiguous
blocks that are mapped with :meth:`multiprocessing.pool.Pool.starmap` and
reassembled in gene order, so results do not depend on ``n_cpus``.

Functions
---------
run_deseq
    Run every stage on a :class:`~rnaseq_de.dataset.CountDataSet`.
compute_size_factors, estimate_dispersions, fit_glm, fit_lfc_prior
    Individual stages.
"""
from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, replace
from multiprocessing import Pool
from typing import Callable, List, Optional, Sequence

import numpy as np
import pandas as pd

from .config import DESeqConfig
from .dataset import CountDataSet
from .diagnostics import cooks_distance, cooks_outliers, robust_moments_dispersion
from .dispersion import (
    DispersionResult,
    finalize_dispersions,
    fit_dispersion_trend,
    fit_genewise_dispersions,
    fit_map_dispersions,
    initial_dispersions,
)
from .errors import DESeqError
from .model import LN2, GLMFitResult, fit_nb_glm
from .size_factors import estimate_size_factors, normalized_counts
from .stats import match_upper_quantile_for_variance

logger = logging.getLogger(__name__)

#: Blocks per worker process; more blocks smooth out uneven per-gene cost.
BLOCKS_PER_CPU = 4


@dataclass(frozen=True)
class PipelineState:
    """Everything known about a run after some number of stages.

    Attributes
    ----------
    dataset : CountDataSet
        Validated counts, metadata and design.
    config : DESeqConfig
        Run settings.
    size_factors : pd.Series or None
        Per-sample size factors.
    dispersions : DispersionResult or None
        Gene-wise, trend, MAP and final dispersions.
    fit : GLMFitResult or None
        Maximum-likelihood GLM fit for every gene (NaN for all-zero genes).
    cooks : np.ndarray or None
        Cook's distances, genes x samples.
    cooks_outlier : np.ndarray or None
        Genes with an extreme Cook's distance.
    shrunk_fit : GLMFitResult or None
        Fit under the fold-change prior.
    lfc_prior_var : pd.Series or None
        Prior variance (log2 scale) per design column.
    """

    dataset: CountDataSet
    config: DESeqConfig
    size_factors: Optional[pd.Series] = None
    dispersions: Optional[DispersionResult] = None
    fit: Optional[GLMFitResult] = None
    cooks: Optional[np.ndarray] = None
    cooks_outlier: Optional[np.ndarray] = None
    shrunk_fit: Optional[GLMFitResult] = None
    lfc_prior_var: Optional[pd.Series] = None

    @property
    def genes(self) -> pd.Index:
        return self.dataset.genes

    @property
    def max_disp(self) -> float:
        return self.config.resolve_max_disp(self.dataset.n_samples)

    def normalized_counts(self) -> pd.DataFrame:
        """Counts divided by size factors."""
        self._require("size_factors")
        return normalized_counts(self.dataset.counts, self.size_factors)

    def base_mean(self) -> np.ndarray:
        return self.normalized_counts().to_numpy().mean(axis=1)

    def dispersion_frame(self) -> pd.DataFrame:
        """Per-gene dispersion estimates and flags as a DataFrame."""
        self._require("dispersions")
        return self.dispersions.to_frame(self.genes)

    def coefficients(self, shrunk: bool = False) -> pd.DataFrame:
        """Log2-scale GLM coefficients (genes x design columns)."""
        fit = self.shrunk_fit if shrunk else self.fit
        if fit is None:
            raise DESeqError("shrunken coefficients are not available" if shrunk else "GLM has not been fit")
        return fit.coef_frame(self.genes, self.dataset.design.columns)

    def _require(self, *names: str) -> None:
        missing = [n for n in names if getattr(self, n) is None]
        if missing:
            raise DESeqError(f"Pipeline stage(s) not run yet: {missing}")


def _gene_blocks(n_genes: int, n_cpus: int) -> List[np.ndarray]:
    if n_genes == 0:
        return []
    n_blocks = 1 if n_cpus == 1 else min(n_genes, n_cpus * BLOCKS_PER_CPU)
    return [b for b in np.array_split(np.arange(n_genes), n_blocks) if b.size]


def _map_blocks(func: Callable, arguments: Sequence[tuple], n_cpus: int) -> list:
    """Apply ``func`` to each argument tuple, in order, possibly in a pool."""
    if n_cpus == 1 or len(arguments) <= 1:
        return [func(*args) for args in arguments]
    with Pool(processes=n_cpus) as pool:
        return pool.starmap(func, arguments)


def _scatter(values: np.ndarray, mask: np.ndarray, fill=np.nan) -> np.ndarray:
    out = np.full((mask.size,) + values.shape[1:], fill, dtype=np.result_type(values, type(fill)))
    out[mask] = values
    return out


def compute_size_factors(state: PipelineState) -> PipelineState:
    """Stage 1: per-sample size factors."""
    ds = state.dataset
    logger.info(f"Estimating size factors for {ds.n_samples} samples ({ds.n_genes} genes)")
    sf = estimate_size_factors(ds.counts, method=state.config.size_factor_type)
    logger.debug(f"Size factors: {sf.round(4).to_dict()}")
    return replace(state, size_factors=sf)


def estimate_dispersions(state: PipelineState) -> PipelineState:
    """Stage 2: gene-wise, trend, MAP and final dispersions."""
    state._require("size_factors")
    ds, cfg = state.dataset, state.config
    counts = ds.count_array()
    sf = state.size_factors.to_numpy(dtype=float)
    x = ds.design.values
    m, p = x.shape
    max_disp = state.max_disp

    normed = counts / sf
    all_zero = (counts == 0).all(axis=1)
    nz = ~all_zero
    base_mean = normed.mean(axis=1)
    base_var = normed.var(axis=1, ddof=1)
    if all_zero.any():
        logger.info(f"{int(all_zero.sum())} genes have only zero counts and are excluded from fitting")
    if not nz.any():
        raise DESeqError("Every gene has only zero counts")

    y = counts[nz]
    alpha_init = initial_dispersions(normed[nz], base_mean[nz], base_var[nz], sf, x, cfg.min_disp, max_disp)
    blocks = _gene_blocks(y.shape[0], cfg.n_cpus)

    logger.info(f"Estimating gene-wise dispersions for {y.shape[0]} genes")
    parts = _map_blocks(
        fit_genewise_dispersions,
        [(y[b], sf, x, alpha_init[b], cfg, max_disp) for b in blocks],
        cfg.n_cpus,
    )
    mu = np.vstack([part[0] for part in parts])
    genewise = np.concatenate([part[1] for part in parts])
    gw_converged = np.concatenate([part[2] for part in parts])
    n_failed = int((~gw_converged).sum())
    if n_failed:
        logger.warning(f"{n_failed} gene-wise dispersion estimates did not converge; using the trend for them")

    trend = fit_dispersion_trend(base_mean[nz], genewise, gw_converged, cfg.fit_type, cfg.min_disp, m, p)
    trend_values = trend(base_mean[nz])

    logger.info("Estimating MAP dispersions")
    parts = _map_blocks(
        fit_map_dispersions,
        [(y[b], mu[b], x, trend_values[b], trend.prior_var, cfg, max_disp) for b in blocks],
        cfg.n_cpus,
    )
    map_disp = np.concatenate([part[0] for part in parts])
    map_converged = np.concatenate([part[1] for part in parts])
    n_grid = int((~map_converged).sum())
    if n_grid:
        logger.info(f"{n_grid} MAP dispersions were found by grid search")

    genewise, final, outlier = finalize_dispersions(
        genewise, gw_converged, trend_values, map_disp, trend, cfg.outlier_sd
    )
    logger.info(f"{int(outlier.sum())} genes flagged as dispersion outliers")

    result = DispersionResult(
        base_mean=base_mean,
        base_var=base_var,
        all_zero=all_zero,
        genewise=_scatter(genewise, nz),
        genewise_converged=_scatter(gw_converged, nz, False),
        trend_values=_scatter(trend_values, nz),
        map=_scatter(map_disp, nz),
        map_converged=_scatter(map_converged, nz, False),
        final=_scatter(final, nz),
        outlier=_scatter(outlier, nz, False),
        trend=trend,
    )
    return replace(state, dispersions=result)


def _fit_glm_block(counts, size_factors, dispersions, x, config: DESeqConfig, ridge_lambda, with_cooks):
    fit = fit_nb_glm(
        counts,
        size_factors,
        dispersions,
        x,
        ridge_lambda=ridge_lambda,
        min_mu=config.min_mu,
        beta_tol=config.beta_tol,
        max_iter=config.max_iter,
    )
    if not with_cooks:
        return fit, None
    normed = counts / size_factors
    robust = robust_moments_dispersion(normed, x)
    cooks = cooks_distance(counts, fit.mu, fit.hat_diagonals, robust, x.shape[1])
    return fit, cooks


def _fit_blocks(state: PipelineState, ridge_lambda, with_cooks: bool = True):
    ds, cfg = state.dataset, state.config
    counts = ds.count_array()
    sf = state.size_factors.to_numpy(dtype=float)
    x = ds.design.values
    nz = ~state.dispersions.all_zero
    y = counts[nz]
    disp = state.dispersions.final[nz]

    blocks = _gene_blocks(y.shape[0], cfg.n_cpus)
    parts = _map_blocks(
        _fit_glm_block,
        [(y[b], sf, disp[b], x, cfg, ridge_lambda, with_cooks) for b in blocks],
        cfg.n_cpus,
    )
    fit = GLMFitResult.concat([part[0] for part in parts]).scatter(nz)
    if not with_cooks:
        return fit, None
    cooks = _scatter(np.vstack([part[1] for part in parts]), nz)
    return fit, cooks


def fit_glm(state: PipelineState) -> PipelineState:
    """Stage 3: maximum-likelihood GLM, Cook's distances and outlier calls."""
    state._require("size_factors", "dispersions")
    cfg = state.config
    logger.info(f"Fitting negative binomial GLMs with {state.dataset.design.n_coef} coefficients")
    fit, cooks = _fit_blocks(state, cfg.ridge_lambda)

    nz = ~state.dispersions.all_zero
    n_failed = int((~fit.converged[nz]).sum())
    n_optim = int(fit.used_optim[nz].sum())
    if n_optim:
        logger.info(f"{n_optim} genes were refit by L-BFGS-B after IRLS did not converge")
    if n_failed:
        logger.warning(f"{n_failed} genes did not converge in the GLM fit")

    x = state.dataset.design.values
    counts = state.dataset.count_array()
    outlier = np.zeros(counts.shape[0], dtype=bool)
    outlier[nz] = cooks_outliers(cooks[nz], counts[nz], x, cfg.cooks_cutoff)
    logger.info(f"{int(outlier.sum())} genes have a Cook's distance outlier")
    return replace(state, fit=fit, cooks=cooks, cooks_outlier=outlier)


def fit_lfc_prior(state: PipelineState) -> PipelineState:
    """Stage 4: zero-centered normal prior on log2 fold changes and refit.

    The prior variance of each non-intercept column matches the upper 5%
    quantile of absolute maximum-likelihood log2 coefficients across genes;
    the refit uses ridge penalty ``1 / prior_var``. The intercept keeps the
    default small penalty.
    """
    state._require("fit")
    cfg = state.config
    design = state.dataset.design
    fit = state.fit
    usable = fit.converged & ~state.dispersions.all_zero

    mle = fit.coef / LN2
    prior_var = np.full(design.n_coef, np.inf)
    lam = np.full(design.n_coef, cfg.ridge_lambda)
    for j, col in enumerate(design.columns):
        if col == "Intercept":
            continue
        v = match_upper_quantile_for_variance(mle[usable, j])
        if not np.isfinite(v):
            warnings.warn(f"No usable coefficients for '{col}'; its fold changes are not shrunk")
            continue
        prior_var[j] = max(v, 1e-6)
        lam[j] = 1.0 / prior_var[j]

    prior = pd.Series(prior_var, index=design.columns, name="lfc_prior_var")
    logger.info(f"Fold-change prior variances: {prior.drop('Intercept', errors='ignore').round(4).to_dict()}")

    shrunk, _ = _fit_blocks(state, lam, with_cooks=False)
    return replace(state, shrunk_fit=shrunk, lfc_prior_var=prior)


def run_deseq(dataset: CountDataSet, config: Optional[DESeqConfig] = None) -> PipelineState:
    """Run size factors, dispersions, GLM fit and (optionally) fold-change shrinkage.

    Parameters
    ----------
    dataset : CountDataSet
        Validated counts with design.
    config : DESeqConfig, optional
        Run settings; defaults to ``DESeqConfig()``.

    Returns
    -------
    PipelineState
        Final state; pass it to :func:`rnaseq_de.results.results`.

    Examples
    --------
    >>> from rnaseq_de.simulate import simulate_nb_counts
    >>> counts, meta, truth = simulate_nb_counts(n_genes=200, n_per_group=3, seed=1)
    >>> ds = CountDataSet.from_frames(counts, meta, ["condition"])
    >>> state = run_deseq(ds)
    >>> state.fit.coef.shape
    (200, 2)
    """
    state = PipelineState(dataset=dataset, config=config or DESeqConfig())
    state = compute_size_factors(state)
    state = estimate_dispersions(state)
    state = fit_glm(state)
    if state.config.shrink_lfc:
        state = fit_lfc_prior(state)
    logger.info("Pipeline complete")
    return state
