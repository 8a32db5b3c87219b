"""
Synthetic negative binomial count data with known parameters.

Functions
---------
simulate_nb_counts
    Counts, sample metadata and ground truth for a grouped design.
"""
from __future__ import annotations

from typing import Dict, Optional, Sequence, Tuple

import numpy as np
import pandas as pd


def simulate_nb_counts(
    n_genes: int = 1000,
    n_per_group: int = 3,
    n_groups: int = 2,
    asympt_disp: float = 0.05,
    extra_pois: float = 1.0,
    disp_log_sd: float = 0.3,
    frac_de: float = 0.1,
    lfc_sd: float = 1.5,
    mean_range: Tuple[float, float] = (5.0, 5000.0),
    size_factors: Optional[Sequence[float]] = None,
    n_batches: int = 1,
    batch_effect_sd: float = 0.3,
    seed: int = 42,
) -> Tuple[pd.DataFrame, pd.DataFrame, Dict]:
    """Generate counts from the negative binomial GLM.

    Gene means are log-uniform over ``mean_range``; dispersions follow
    ``asympt_disp + extra_pois / mean`` with log-normal scatter; a fraction
    ``frac_de`` of genes get normally distributed log2 fold changes for each
    non-reference group.

    Parameters
    ----------
    n_genes : int
        Number of genes.
    n_per_group : int
        Replicates per condition level.
    n_groups : int
        Number of condition levels (``A``, ``B``, ...). ``A`` is the
        reference.
    asympt_disp, extra_pois : float
        Parameters of the true dispersion trend.
    disp_log_sd : float
        SD of log dispersion around the trend.
    frac_de : float
        Fraction of differentially expressed genes.
    lfc_sd : float
        SD of true log2 fold changes of DE genes.
    mean_range : (float, float)
        Range of baseline mean counts.
    size_factors : sequence of float, optional
        Per-sample size factors. If None, drawn log-normally and scaled to
        geometric mean 1.
    n_batches : int
        Number of batches assigned cyclically to samples; batch effects are
        added when larger than 1.
    batch_effect_sd : float
        SD of log2 batch effects.
    seed : int
        Random seed.

    Returns
    -------
    counts : pd.DataFrame
        Integer counts, genes x samples.
    metadata : pd.DataFrame
        ``condition`` (and ``batch`` if ``n_batches > 1``) per sample.
    truth : dict
        ``base_mean``, ``dispersion`` and ``is_de`` (per gene Series),
        ``log2_fold_change`` (genes x non-reference levels DataFrame) and
        ``size_factors``.

    Examples
    --------
    >>> counts, meta, truth = simulate_nb_counts(n_genes=50, seed=0)
    >>> counts.shape
    (50, 6)
    """
    rng = np.random.default_rng(seed)
    levels = [chr(ord("A") + k) for k in range(n_groups)]
    n_samples = n_per_group * n_groups
    samples = [f"sample{j + 1}" for j in range(n_samples)]
    genes = [f"gene{i + 1}" for i in range(n_genes)]

    condition = np.repeat(levels, n_per_group)
    group_idx = np.repeat(np.arange(n_groups), n_per_group)
    meta = pd.DataFrame({"condition": condition}, index=pd.Index(samples, name="sample_id"))
    if n_batches > 1:
        meta["batch"] = [f"b{j % n_batches + 1}" for j in range(n_samples)]
        meta = meta[["batch", "condition"]]

    if size_factors is None:
        sf = rng.lognormal(0.0, 0.3, size=n_samples)
        sf = sf / np.exp(np.mean(np.log(sf)))
    else:
        sf = np.asarray(size_factors, dtype=float)
        if sf.shape != (n_samples,):
            raise ValueError(f"size_factors must have {n_samples} entries, got {sf.shape}")

    lo, hi = mean_range
    base_mean = np.exp(rng.uniform(np.log(lo), np.log(hi), size=n_genes))
    disp = (asympt_disp + extra_pois / base_mean) * np.exp(rng.normal(0.0, disp_log_sd, size=n_genes))

    is_de = rng.random(n_genes) < frac_de
    lfc = np.zeros((n_genes, n_groups))
    lfc[:, 1:] = rng.normal(0.0, lfc_sd, size=(n_genes, n_groups - 1)) * is_de[:, None]

    log2_mu = np.log2(base_mean)[:, None] + lfc[:, group_idx]
    if n_batches > 1:
        batch_idx = np.arange(n_samples) % n_batches
        batch_eff = np.zeros((n_genes, n_batches))
        batch_eff[:, 1:] = rng.normal(0.0, batch_effect_sd, size=(n_genes, n_batches - 1))
        log2_mu = log2_mu + batch_eff[:, batch_idx]

    mu = np.exp2(log2_mu) * sf[None, :]
    r = 1.0 / disp[:, None]
    counts = rng.negative_binomial(r, r / (r + mu))

    counts_df = pd.DataFrame(counts, index=pd.Index(genes, name="gene_id"), columns=samples)
    truth = {
        "base_mean": pd.Series(base_mean, index=genes),
        "dispersion": pd.Series(disp, index=genes),
        "is_de": pd.Series(is_de, index=genes),
        "log2_fold_change": pd.DataFrame(lfc[:, 1:], index=genes, columns=levels[1:]),
        "size_factors": pd.Series(sf, index=samples),
    }
    return counts_df, meta, truth
