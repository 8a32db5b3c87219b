"""
Per-sample size factors for sequencing-depth normalization.

Functions
---------
estimate_size_factors
    Median-of-ratios (or positive-count) size factors.
normalized_counts
    Divide counts by size factors.
"""
from __future__ import annotations

import logging
from typing import Literal

import numpy as np
import pandas as pd

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


def estimate_size_factors(
    counts: pd.DataFrame,
    method: Literal["ratio", "poscounts"] = "ratio",
) -> pd.Series:
    """Estimate one positive scale factor per sample.

    With ``method="ratio"``, each gene's geometric mean across samples is the
    pseudo-reference. Genes with any zero count have a zero geometric mean and
    are left out of the ratios (but stay in the matrix). A sample's size
    factor is the median of its count-to-reference ratios.

    With ``method="poscounts"``, the geometric mean of a gene is taken over
    its positive counts only (still divided by the number of samples), so
    genes containing zeros contribute; the factors are then rescaled to a
    geometric mean of 1.

    Parameters
    ----------
    counts : pd.DataFrame
        Non-negative counts, genes as rows, samples as columns.
    method : {"ratio", "poscounts"}, default "ratio"
        Estimator.

    Returns
    -------
    pd.Series
        Size factors indexed by sample id.

    Raises
    ------
    ConfigurationError
        If no gene has a usable geometric mean or a sample's size factor is
        zero or undefined (for instance an all-zero sample).

    Notes
    -----
    The median ratio is insensitive to a minority of strongly differentially
    expressed genes, unlike a ratio of column sums.

    Examples
    --------
    >>> counts = pd.DataFrame({"a": [10, 20, 30], "b": [20, 40, 60]})
    >>> estimate_size_factors(counts).round(4).tolist()
    [0.7071, 1.4142]
    """
    values = counts.to_numpy(dtype=float)

    zero_samples = counts.columns[(values == 0).all(axis=0)].tolist()
    if zero_samples:
        raise ConfigurationError(f"Samples with all-zero counts have no size factor: {zero_samples}")

    with np.errstate(divide="ignore"):
        log_counts = np.log(values)

    if method == "ratio":
        log_geo_means = log_counts.mean(axis=1)
    elif method == "poscounts":
        log_pos = np.where(values > 0, log_counts, 0.0)
        log_geo_means = log_pos.sum(axis=1) / values.shape[1]
        # genes with no positive count stay excluded
        log_geo_means[(values > 0).sum(axis=1) == 0] = -np.inf
    else:
        raise ConfigurationError(f"Unknown size factor method='{method}'. Use 'ratio' or 'poscounts'.")

    usable = np.isfinite(log_geo_means)
    if not usable.any():
        raise ConfigurationError(
            "Every gene contains at least one zero count, so median-of-ratios size "
            "factors cannot be computed; use size_factor_type='poscounts'"
        )
    logger.debug(f"Size factors from {int(usable.sum())} of {values.shape[0]} genes")

    sf = np.full(values.shape[1], np.nan)
    for j in range(values.shape[1]):
        ratios = log_counts[usable, j] - log_geo_means[usable]
        if method == "poscounts":
            ratios = ratios[values[usable, j] > 0]
        ratios = ratios[np.isfinite(ratios)]
        if ratios.size:
            sf[j] = np.exp(np.median(ratios))

    bad = ~np.isfinite(sf) | (sf <= 0)
    if bad.any():
        samples = counts.columns[bad].tolist()
        raise ConfigurationError(
            f"Size factor undefined for samples {samples}: no positive counts among "
            "genes with a non-zero geometric mean"
        )

    if method == "poscounts":
        sf = sf / np.exp(np.mean(np.log(sf)))

    out = pd.Series(sf, index=counts.columns, name="size_factor")
    out.index.name = "sample_id"
    return out


def normalized_counts(counts: pd.DataFrame, size_factors: pd.Series) -> pd.DataFrame:
    """Divide each sample's counts by its size factor.

    Examples
    --------
    >>> counts = pd.DataFrame({"a": [10, 20], "b": [20, 40]})
    >>> normalized_counts(counts, pd.Series({"a": 0.5, "b": 1.0}))
          a     b
    0  20.0  20.0
    1  40.0  40.0
    """
    sf = size_factors.reindex(counts.columns)
    if sf.isna().any():
        raise ConfigurationError("Size factors missing for some count-matrix samples")
    return counts.astype(float).div(sf, axis=1)
