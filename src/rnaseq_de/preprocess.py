"""
Data preprocessing utilities.

Functions
---------
filter_genes_by_total_counts
    Filter genes by minimum total counts.
"""
from __future__ import annotations

import logging

import pandas as pd

logger = logging.getLogger(__name__)


def filter_genes_by_total_counts(
    counts_wide: pd.DataFrame,
    min_total: int = 10,
) -> pd.DataFrame:
    """Filter genes by minimum total counts across all samples.

    Removing genes with almost no reads before fitting saves time; it does
    not change the results of the remaining genes except through
    independent filtering and multiple-testing correction.

    Parameters
    ----------
    counts_wide : pd.DataFrame
        Wide-format count matrix with genes as rows.
    min_total : int, default 10
        Minimum total count threshold. Genes with fewer counts are removed.

    Returns
    -------
    pd.DataFrame
        Filtered count matrix containing only genes meeting the threshold.

    Examples
    --------
    >>> counts = pd.DataFrame(
    ...     {"S1": [1, 100], "S2": [5, 200]},
    ...     index=["low", "high"]
    ... )
    >>> filtered = filter_genes_by_total_counts(counts, min_total=10)
    >>> list(filtered.index)
    ['high']
    """
    totals = counts_wide.sum(axis=1)
    keep = totals[totals >= min_total].index
    logger.info(f"Keeping {len(keep)} of {len(totals)} genes with at least {min_total} total counts")
    return counts_wide.loc[keep]
