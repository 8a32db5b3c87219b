"""
rnaseq-de: Negative binomial differential expression for RNA-seq counts.

This package estimates size factors, shrinks per-gene dispersions toward a
mean-dependent trend, fits a negative binomial GLM per gene and reports Wald
tests with independent filtering and FDR control. Variance-stabilizing and
regularized-log transforms are provided for downstream exploration.

Modules
-------
dataset
    Validated count matrix with aligned sample metadata.
design
    Design specification and treatment-coded model matrices.
size_factors
    Median-of-ratios normalization.
dispersion
    Gene-wise, trend and MAP dispersion estimation.
model
    Per-gene negative binomial GLM fitting.
contrasts
    Coefficient and level-contrast vectors.
results
    Wald tests, independent filtering and results tables.
transform
    Variance-stabilizing and regularized-log transforms.
pipeline
    Stage orchestration over an immutable pipeline state.
stats
    Statistical utilities including FDR correction.
diagnostics
    Moment-based dispersion estimates, Cook's distances and sample QC.
io
    Loading count and metadata tables.
preprocess
    Pre-filtering of count matrices.
simulate
    Synthetic counts with known parameters.
plots
    MA, volcano and dispersion plots.

Example
-------
>>> import rnaseq_de as rd
>>> counts = rd.load_counts_matrix("data/counts.csv")
>>> smeta = rd.load_sample_metadata("data/samples.csv")
>>> ds = rd.CountDataSet.from_frames(counts, smeta, ["batch", "condition"],
...                                  reference_levels={"condition": "untreated"})
>>> state = rd.run_deseq(ds)
>>> res = rd.results(state)
"""

__version__ = "0.1.0"

# config
from .config import (
    DESeqConfig,
)

# contrasts
from .contrasts import (
    coef_vector,
    contrast_vector,
    wald_contrast,
)

# dataset
from .dataset import (
    CountDataSet,
)

# design
from .design import (
    DesignMatrix,
    DesignSpec,
    build_design_matrix,
    make_patsy_safe_columns,
)

# diagnostics
from .diagnostics import (
    cooks_distance,
    cooks_outliers,
    sample_qc,
)

# dispersion
from .dispersion import (
    DispersionResult,
    DispersionTrend,
)

# errors
from .errors import (
    ConfigurationError,
    DESeqError,
)

# io
from .io import (
    load_counts_matrix,
    load_sample_metadata,
)

# model
from .model import (
    GLMFitResult,
    fit_nb_glm,
)

# pipeline
from .pipeline import (
    PipelineState,
    compute_size_factors,
    estimate_dispersions,
    fit_glm,
    fit_lfc_prior,
    run_deseq,
)

# plots
from .plots import (
    dispersion_plot,
    ma_plot,
    volcano_plot,
)

# preprocess
from .preprocess import (
    filter_genes_by_total_counts,
)

# results
from .results import (
    ResultsTable,
    results,
)

# simulate
from .simulate import (
    simulate_nb_counts,
)

# size_factors
from .size_factors import (
    estimate_size_factors,
    normalized_counts,
)

# stats
from .stats import (
    bh_fdr,
    independent_filter,
    wald_test,
)

# transform
from .transform import (
    rlog,
    vst,
)

__all__ = [
    # config
    "DESeqConfig",
    # contrasts
    "coef_vector",
    "contrast_vector",
    "wald_contrast",
    # dataset
    "CountDataSet",
    # design
    "DesignMatrix",
    "DesignSpec",
    "build_design_matrix",
    "make_patsy_safe_columns",
    # diagnostics
    "cooks_distance",
    "cooks_outliers",
    "sample_qc",
    # dispersion
    "DispersionResult",
    "DispersionTrend",
    # errors
    "ConfigurationError",
    "DESeqError",
    # io
    "load_counts_matrix",
    "load_sample_metadata",
    # model
    "GLMFitResult",
    "fit_nb_glm",
    # pipeline
    "PipelineState",
    "compute_size_factors",
    "estimate_dispersions",
    "fit_glm",
    "fit_lfc_prior",
    "run_deseq",
    # plots
    "dispersion_plot",
    "ma_plot",
    "volcano_plot",
    # preprocess
    "filter_genes_by_total_counts",
    # results
    "ResultsTable",
    "results",
    # simulate
    "simulate_nb_counts",
    # size_factors
    "estimate_size_factors",
    "normalized_counts",
    # stats
    "bh_fdr",
    "independent_filter",
    "wald_test",
    # transform
    "rlog",
    "vst",
]
