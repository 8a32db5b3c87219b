"""
Run configuration for the differential-expression pipeline.

Classes
-------
DESeqConfig
    Frozen set of tuning parameters shared by every pipeline stage.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, fields
from typing import Any, Literal, Mapping, Optional

from .errors import ConfigurationError

FIT_TYPES = ("parametric", "local", "mean")
ALT_HYPOTHESES = ("greaterAbs", "lessAbs", "greater", "less")
SIZE_FACTOR_TYPES = ("ratio", "poscounts")


@dataclass(frozen=True)
class DESeqConfig:
    """Tuning parameters for a pipeline run.

    Parameters
    ----------
    alpha : float, default 0.1
        Target false discovery rate for independent filtering and for
        counting significant genes.
    fit_type : {"parametric", "local", "mean"}, default "parametric"
        Shape of the dispersion-mean trend.
    shrink_lfc : bool, default False
        Replace maximum-likelihood log2 fold changes with posterior modes
        under a zero-centered normal prior.
    lfc_threshold : float, default 0.0
        Effect-size threshold tau (log2 scale) for the Wald test.
    alt_hypothesis : {"greaterAbs", "lessAbs", "greater", "less"}
        Alternative hypothesis relative to ``lfc_threshold``.
    min_disp : float, default 1e-8
        Lower bound on dispersion estimates.
    max_disp : float or None, default None
        Upper bound on dispersion estimates. ``None`` means
        ``max(10, n_samples)``.
    max_iter : int, default 100
        Iteration cap for every per-gene root-finding and IRLS loop.
    disp_tol : float, default 1e-6
        Convergence tolerance on log dispersion.
    beta_tol : float, default 1e-8
        Relative deviance change at which IRLS stops.
    ridge_lambda : float, default 1e-6
        Ridge penalty on log2-scale GLM coefficients.
    min_mu : float, default 0.5
        Floor applied to fitted means.
    outlier_sd : float, default 2.0
        Gene-wise dispersions more than this many standard deviations above
        the trend are flagged as outliers and not shrunk.
    size_factor_type : {"ratio", "poscounts"}, default "ratio"
        Size factor estimator.
    cooks_filter : bool, default True
        Set p-values of genes with extreme Cook's distances to NA.
    cooks_cutoff : float or None, default None
        Cook's distance cutoff. ``None`` means the 0.99 quantile of the
        F(p, m - p) distribution.
    independent_filter : bool, default True
        Choose a base-mean cutoff that maximizes rejections.
    filter_quantiles : int, default 50
        Number of base-mean quantiles searched by independent filtering.
    use_t : bool, default False
        Use a Student t reference distribution with m - p degrees of freedom.
    n_cpus : int, default 1
        Worker processes for per-gene stages. 1 runs in-process.
    """

    alpha: float = 0.1
    fit_type: Literal["parametric", "local", "mean"] = "parametric"
    shrink_lfc: bool = False
    lfc_threshold: float = 0.0
    alt_hypothesis: Literal["greaterAbs", "lessAbs", "greater", "less"] = "greaterAbs"
    min_disp: float = 1e-8
    max_disp: Optional[float] = None
    max_iter: int = 100
    disp_tol: float = 1e-6
    beta_tol: float = 1e-8
    ridge_lambda: float = 1e-6
    min_mu: float = 0.5
    outlier_sd: float = 2.0
    size_factor_type: Literal["ratio", "poscounts"] = "ratio"
    cooks_filter: bool = True
    cooks_cutoff: Optional[float] = None
    independent_filter: bool = True
    filter_quantiles: int = 50
    use_t: bool = False
    n_cpus: int = 1

    def __post_init__(self):
        if not 0.0 < self.alpha < 1.0:
            raise ConfigurationError(f"alpha must be in (0, 1), got {self.alpha}")
        if self.fit_type not in FIT_TYPES:
            raise ConfigurationError(f"Unknown fit_type='{self.fit_type}'. Use one of {FIT_TYPES}.")
        if self.alt_hypothesis not in ALT_HYPOTHESES:
            raise ConfigurationError(
                f"Unknown alt_hypothesis='{self.alt_hypothesis}'. Use one of {ALT_HYPOTHESES}."
            )
        if self.size_factor_type not in SIZE_FACTOR_TYPES:
            raise ConfigurationError(
                f"Unknown size_factor_type='{self.size_factor_type}'. Use one of {SIZE_FACTOR_TYPES}."
            )
        if self.lfc_threshold < 0 or not math.isfinite(self.lfc_threshold):
            raise ConfigurationError("lfc_threshold must be a finite non-negative number")
        if self.alt_hypothesis == "lessAbs" and self.lfc_threshold == 0:
            raise ConfigurationError("alt_hypothesis='lessAbs' requires a positive lfc_threshold")
        if not self.min_disp > 0:
            raise ConfigurationError("min_disp must be positive")
        if self.max_disp is not None and self.max_disp <= self.min_disp:
            raise ConfigurationError("max_disp must be larger than min_disp")
        if self.max_iter < 1:
            raise ConfigurationError("max_iter must be at least 1")
        if self.n_cpus < 1:
            raise ConfigurationError("n_cpus must be at least 1")
        if self.filter_quantiles < 2:
            raise ConfigurationError("filter_quantiles must be at least 2")
        for name in ("disp_tol", "beta_tol", "min_mu", "outlier_sd"):
            if not getattr(self, name) > 0:
                raise ConfigurationError(f"{name} must be positive")
        if self.ridge_lambda < 0:
            raise ConfigurationError("ridge_lambda must be non-negative")

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "DESeqConfig":
        """Build a config from a mapping, ignoring ``None`` values.

        Unknown keys raise :class:`ConfigurationError` so that typos in
        command-line or file-based settings are not silently dropped.
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(k for k in values if k not in known)
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {unknown}")
        return cls(**{k: v for k, v in values.items() if v is not None})

    def resolve_max_disp(self, n_samples: int) -> float:
        if self.max_disp is not None:
            return float(self.max_disp)
        return float(max(10, n_samples))
