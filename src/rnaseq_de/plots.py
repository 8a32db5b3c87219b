"""
Diagnostic plots for differential-expression results.

Functions
---------
ma_plot
    Log2 fold change against mean normalized count.
volcano_plot
    Log2 fold change against -log10 adjusted p-value.
dispersion_plot
    Gene-wise, fitted and final dispersions against mean normalized count.
"""
from __future__ import annotations

from pathlib import Path
from typing import Optional

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd


def _save(fig, outpath: Optional[str | Path], dpi: int) -> None:
    if outpath is not None:
        outpath = Path(outpath)
        outpath.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(outpath, dpi=dpi, bbox_inches="tight")


def ma_plot(
    df: pd.DataFrame,
    *,
    alpha: float = 0.1,
    title: Optional[str] = None,
    ylim: Optional[float] = None,
    outpath: Optional[str | Path] = None,
    dpi: int = 200,
):
    """Plot log2 fold change against mean of normalized counts.

    Genes with ``padj < alpha`` are drawn in red. Points beyond ``ylim`` are
    clipped to the border and drawn as triangles.

    Parameters
    ----------
    df : pd.DataFrame
        Results table (``ResultsTable.df``) with ``baseMean``,
        ``log2FoldChange`` and ``padj``.
    alpha : float, default 0.1
        Significance threshold for coloring.
    title : str or None, default None
        Plot title.
    ylim : float or None, default None
        Symmetric y-axis limit.
    outpath : str, Path, or None, default None
        If provided, save the figure to this path.
    dpi : int, default 200
        Resolution for saved figure.

    Returns
    -------
    fig : matplotlib.figure.Figure
    ax : matplotlib.axes.Axes

    Raises
    ------
    ValueError
        If the input DataFrame has no gene with a positive base mean.
    """
    sub = df[df["baseMean"] > 0]
    if sub.empty:
        raise ValueError("ma_plot received no genes with a positive base mean.")

    x = sub["baseMean"].to_numpy(dtype=float)
    y = sub["log2FoldChange"].to_numpy(dtype=float)
    sig = (sub["padj"] < alpha).to_numpy()

    fig, ax = plt.subplots()
    marker = np.full(y.shape, "o")
    if ylim is not None:
        out = np.abs(y) > ylim
        y = np.clip(y, -ylim, ylim)
        marker[out] = "^"
        ax.set_ylim(-ylim * 1.05, ylim * 1.05)

    for m in ("o", "^"):
        for is_sig, color in ((False, "#969696"), (True, "#e34a33")):
            sel = (marker == m) & (sig == is_sig)
            if sel.any():
                ax.scatter(x[sel], y[sel], c=color, s=6, marker=m, alpha=0.7, linewidths=0)

    ax.axhline(0.0, color="gray", linewidth=0.8)
    ax.set_xscale("log")
    ax.set_xlabel("mean of normalized counts")
    ax.set_ylabel(r"$\log_2$ fold change")
    if title:
        ax.set_title(title)
    fig.tight_layout()
    _save(fig, outpath, dpi)
    return fig, ax


def volcano_plot(
    df: pd.DataFrame,
    *,
    padj_thresh: float = 0.10,
    lfc_thresh: float = 1.0,
    title: Optional[str] = None,
    top_n_labels: int = 10,
    outpath: Optional[str | Path] = None,
    dpi: int = 200,
):
    """Create a volcano plot of log2 fold change vs adjusted p-value.

    Points are colored by direction: blue for positive LFC, red for negative
    LFC, grey when not significant. The most significant genes are labeled.

    Parameters
    ----------
    df : pd.DataFrame
        Results table indexed by gene id.
    padj_thresh : float, default 0.10
        Significance threshold; a horizontal line is drawn at
        -log10(padj_thresh).
    lfc_thresh : float, default 1.0
        Vertical lines are drawn at +/- lfc_thresh.
    title : str or None, default None
        Plot title.
    top_n_labels : int, default 10
        Number of most significant points to label.
    outpath : str, Path, or None, default None
        If provided, save the figure to this path.
    dpi : int, default 200
        Resolution for saved figure.

    Returns
    -------
    fig : matplotlib.figure.Figure
    ax : matplotlib.axes.Axes

    Raises
    ------
    ValueError
        If no gene has an adjusted p-value.
    """
    sub = df[np.isfinite(df["padj"]) & np.isfinite(df["log2FoldChange"])]
    if sub.empty:
        raise ValueError("volcano_plot received no genes with an adjusted p-value.")

    x = sub["log2FoldChange"].to_numpy(dtype=float)
    y = -np.log10(np.clip(sub["padj"].to_numpy(dtype=float), 1e-300, None))
    sig = (sub["padj"] < padj_thresh).to_numpy()

    colors = np.where(~sig, "#bdbdbd", np.where(x >= 0, "#3182bd", "#e34a33"))

    fig, ax = plt.subplots()
    ax.scatter(x, y, c=colors, s=10, alpha=0.7)

    y_line = -np.log10(max(padj_thresh, 1e-300))
    ax.axhline(y_line, color="gray", linestyle="--", linewidth=0.8, alpha=0.6)
    ax.axvline(+lfc_thresh, color="gray", linestyle="--", linewidth=0.8, alpha=0.6)
    ax.axvline(-lfc_thresh, color="gray", linestyle="--", linewidth=0.8, alpha=0.6)

    ax.set_xlabel(r"$\log_2$ fold change")
    ax.set_ylabel(r"$-\log_{10}$ adjusted p-value")
    if title:
        ax.set_title(title)

    if top_n_labels:
        top = sub.sort_values("padj", kind="mergesort").head(int(top_n_labels))
        for gene, r in top.iterrows():
            ax.text(float(r["log2FoldChange"]), -np.log10(max(float(r["padj"]), 1e-300)), str(gene), fontsize=8)

    ax.margins(0.05)
    fig.tight_layout()
    _save(fig, outpath, dpi)
    return fig, ax


def dispersion_plot(
    disp: pd.DataFrame,
    *,
    title: Optional[str] = None,
    outpath: Optional[str | Path] = None,
    dpi: int = 200,
):
    """Plot dispersion estimates against mean normalized count.

    Parameters
    ----------
    disp : pd.DataFrame
        Output of ``PipelineState.dispersion_frame()``.
    title : str or None, default None
        Plot title.
    outpath : str, Path, or None, default None
        If provided, save the figure to this path.
    dpi : int, default 200
        Resolution for saved figure.

    Returns
    -------
    fig : matplotlib.figure.Figure
    ax : matplotlib.axes.Axes
    """
    sub = disp[~disp["allZero"]]
    mean = sub["baseMean"].to_numpy(dtype=float)
    order = np.argsort(mean)

    fig, ax = plt.subplots()
    ax.scatter(mean, sub["dispGeneEst"], c="black", s=4, alpha=0.5, label="gene-wise", linewidths=0)
    ax.scatter(mean, sub["dispersion"], c="#3182bd", s=4, alpha=0.5, label="final", linewidths=0)
    out = sub["dispOutlier"].to_numpy()
    if out.any():
        ax.scatter(
            mean[out], sub["dispersion"].to_numpy()[out],
            facecolors="none", edgecolors="#3182bd", s=20, label="outlier",
        )
    ax.plot(mean[order], sub["dispFit"].to_numpy()[order], color="#e34a33", linewidth=1.2, label="trend")

    ax.set_xscale("log")
    ax.set_yscale("log")
    ax.set_xlabel("mean of normalized counts")
    ax.set_ylabel("dispersion")
    ax.legend(frameon=False, fontsize=8)
    if title:
        ax.set_title(title)
    fig.tight_layout()
    _save(fig, outpath, dpi)
    return fig, ax
