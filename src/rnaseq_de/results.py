"""
Per-gene results: fold changes, Wald tests, filtering and FDR.

Functions
---------
results
    Build a :class:`ResultsTable` for one coefficient or contrast.

Classes
-------
ResultsTable
    Immutable per-gene results with run metadata.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Union

import numpy as np
import pandas as pd

from .contrasts import coef_vector, contrast_vector, wald_contrast
from .errors import ConfigurationError
from .model import LN2
from .pipeline import PipelineState, fit_lfc_prior
from .stats import bh_fdr, independent_filter as _independent_filter, wald_test

logger = logging.getLogger(__name__)

RESULT_COLUMNS = [
    "baseMean",
    "log2FoldChange",
    "lfcSE",
    "stat",
    "pvalue",
    "padj",
]

SORT_KEYS = ("padj", "pvalue", "gene", "log2FoldChange", "effect")


@dataclass(frozen=True)
class ResultsTable:
    """Per-gene results for one tested effect.

    Attributes
    ----------
    name : str
        Coefficient or contrast tested.
    alpha : float
        FDR level used for independent filtering and :meth:`summary`.
    lfc_threshold : float
        Wald-test threshold on the log2 scale.
    alt_hypothesis : str
        Alternative hypothesis of the Wald test.
    shrunk : bool
        Whether ``log2FoldChange`` holds shrunken estimates.
    filter_threshold : float
        Base-mean cutoff chosen by independent filtering (NaN if off).
    filter_curve : pd.DataFrame or None
        Rejections per candidate cutoff.
    """

    table: pd.DataFrame = field(repr=False)
    name: str
    alpha: float
    lfc_threshold: float = 0.0
    alt_hypothesis: str = "greaterAbs"
    shrunk: bool = False
    filter_threshold: float = np.nan
    filter_curve: Optional[pd.DataFrame] = field(default=None, repr=False)

    def __len__(self) -> int:
        return len(self.table)

    @property
    def df(self) -> pd.DataFrame:
        """Copy of the full results table."""
        return self.table.copy()

    @property
    def metadata(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "alpha": self.alpha,
            "lfc_threshold": self.lfc_threshold,
            "alt_hypothesis": self.alt_hypothesis,
            "shrunk": self.shrunk,
            "filter_threshold": self.filter_threshold,
        }

    def sort_by(self, key: str = "padj") -> pd.DataFrame:
        """Copy of the table sorted by ``key``.

        ``"padj"`` and ``"pvalue"`` sort ascending with missing values last,
        ``"gene"`` sorts by gene id, ``"log2FoldChange"`` ascending and
        ``"effect"`` by decreasing absolute log2 fold change.
        """
        if key not in SORT_KEYS:
            raise ConfigurationError(f"Unknown sort key '{key}'. Use one of {SORT_KEYS}.")
        df = self.df
        if key == "gene":
            return df.sort_index(kind="mergesort")
        if key == "effect":
            order = np.argsort(-np.abs(df["log2FoldChange"].to_numpy()), kind="mergesort")
            nan_last = np.isnan(df["log2FoldChange"].to_numpy()[order])
            order = np.concatenate([order[~nan_last], order[nan_last]])
            return df.iloc[order]
        return df.sort_values(key, kind="mergesort", na_position="last")

    def significant(self, alpha: Optional[float] = None) -> pd.DataFrame:
        """Genes with ``padj < alpha``, sorted by padj."""
        alpha = self.alpha if alpha is None else alpha
        df = self.sort_by("padj")
        return df[df["padj"] < alpha]

    def summary(self) -> pd.Series:
        """Counts of up, down, outlier and low-count genes.

        Examples
        --------
        >>> res.summary()  # doctest: +SKIP
        nonzero_total         980
        up                     51
        down                   47
        cooks_outliers          2
        low_counts            152
        mean_count_cutoff    3.41
        dtype: float64
        """
        df = self.table
        sig = df["padj"] < self.alpha
        out = pd.Series(
            {
                "nonzero_total": int((df["baseMean"] > 0).sum()),
                "up": int((sig & (df["log2FoldChange"] > 0)).sum()),
                "down": int((sig & (df["log2FoldChange"] < 0)).sum()),
                "cooks_outliers": int(df["cooksOutlier"].sum()),
                "low_counts": int(df["filtered"].sum()),
                "mean_count_cutoff": self.filter_threshold,
            },
            name=self.name,
        )
        return out

    def to_csv(self, path: Union[str, Path], **kwargs) -> None:
        self.table.to_csv(path, index_label="gene_id", **kwargs)


def _resolve_vector(state: PipelineState, contrast: Optional[Sequence[str]], name: Optional[str]):
    design = state.dataset.design
    if contrast is not None and name is not None:
        raise ConfigurationError("Pass either contrast or name, not both")
    if contrast is not None:
        if len(contrast) != 3:
            raise ConfigurationError(
                f"contrast must be (term, numerator, denominator), got {tuple(contrast)}"
            )
        term, numerator, denominator = contrast
        return contrast_vector(design, term, numerator, denominator)
    return coef_vector(design, name if name is not None else design.tested_coef)


def results(
    state: PipelineState,
    contrast: Optional[Sequence[str]] = None,
    name: Optional[str] = None,
    alpha: Optional[float] = None,
    lfc_threshold: Optional[float] = None,
    alt_hypothesis: Optional[str] = None,
    shrink: Optional[bool] = None,
    independent_filter: Optional[bool] = None,
    cooks_filter: Optional[bool] = None,
) -> ResultsTable:
    """Wald-test one coefficient or contrast for every gene.

    Parameters
    ----------
    state : PipelineState
        State after :func:`rnaseq_de.pipeline.fit_glm` (or ``run_deseq``).
    contrast : (term, numerator, denominator), optional
        Compare two levels of a factor; the log2 fold change is
        numerator over denominator.
    name : str, optional
        Design column to test. Defaults to the design's tested coefficient
        (last level of the last term vs its reference).
    alpha, lfc_threshold, alt_hypothesis, shrink, independent_filter, cooks_filter
        Override the corresponding :class:`~rnaseq_de.config.DESeqConfig`
        settings for this table only.

    Returns
    -------
    ResultsTable

    Notes
    -----
    With shrinkage, ``log2FoldChange`` and ``lfcSE`` are the posterior mode
    and its standard error, ``lfcMLE`` holds the maximum-likelihood value,
    and ``stat`` / ``pvalue`` are computed from the maximum-likelihood fit.
    P-values are NA for genes whose GLM did not converge, for Cook's
    outliers (when ``cooks_filter``) and for all-zero genes. ``padj`` is also
    NA for genes removed by independent filtering.
    """
    state._require("fit")
    overrides = {
        "alpha": alpha,
        "lfc_threshold": lfc_threshold,
        "alt_hypothesis": alt_hypothesis,
        "shrink_lfc": shrink,
        "independent_filter": independent_filter,
        "cooks_filter": cooks_filter,
    }
    cfg = replace(state.config, **{k: v for k, v in overrides.items() if v is not None})

    L, label = _resolve_vector(state, contrast, name)
    design = state.dataset.design
    disp = state.dispersions
    fit = state.fit
    base_mean = disp.base_mean
    all_zero = disp.all_zero

    est, se = wald_contrast(fit.coef, fit.cov, L)
    lfc_mle = est / LN2
    se_mle = se / LN2

    df = design.df_resid if cfg.use_t else None
    stat, pvalue = wald_test(lfc_mle, se_mle, cfg.lfc_threshold, cfg.alt_hypothesis, df=df)

    cooks_outlier = state.cooks_outlier.copy()
    if cfg.cooks_filter:
        pvalue = np.where(cooks_outlier, np.nan, pvalue)
    pvalue = np.where(fit.converged, pvalue, np.nan)

    if cfg.independent_filter:
        filt = _independent_filter(base_mean, pvalue, cfg.alpha, cfg.filter_quantiles)
        padj = filt.padj
        threshold, curve = filt.threshold, filt.curve
        logger.info(
            f"Independent filtering: base mean cutoff {threshold:.4g} (theta={filt.theta:.3f})"
        )
    else:
        padj = bh_fdr(pvalue)
        threshold, curve = np.nan, None
    filtered = np.isfinite(pvalue) & np.isnan(padj)

    shrunk = cfg.shrink_lfc
    if shrunk:
        if state.shrunk_fit is None:
            state = fit_lfc_prior(state)
        est_s, se_s = wald_contrast(state.shrunk_fit.coef, state.shrunk_fit.cov, L)
        lfc, lfc_se = est_s / LN2, se_s / LN2
    else:
        lfc, lfc_se = lfc_mle, se_mle

    table = pd.DataFrame(
        {
            "baseMean": base_mean,
            "log2FoldChange": lfc,
            "lfcSE": lfc_se,
            "stat": stat,
            "pvalue": pvalue,
            "padj": padj,
        },
        index=state.genes,
    )
    if shrunk:
        table["lfcMLE"] = lfc_mle
    table["dispersion"] = disp.final
    table["dispGeneConverged"] = disp.genewise_converged
    table["dispOutlier"] = disp.outlier
    table["glmConverged"] = fit.converged
    table["cooksOutlier"] = cooks_outlier
    table["filtered"] = filtered

    value_cols = [c for c in table.columns if c not in ("baseMean",) and table[c].dtype == float]
    table.loc[all_zero, value_cols] = np.nan

    n_sig = int(np.sum(padj < cfg.alpha))
    logger.info(f"{label}: {n_sig} genes with padj < {cfg.alpha}")

    return ResultsTable(
        table=table,
        name=label,
        alpha=cfg.alpha,
        lfc_threshold=cfg.lfc_threshold,
        alt_hypothesis=cfg.alt_hypothesis,
        shrunk=shrunk,
        filter_threshold=threshold,
        filter_curve=curve,
    )
