from __future__ import annotations

import numpy as np
from typing import Tuple

from .design import DesignMatrix
from .errors import ConfigurationError


def coef_name_for_level(design: DesignMatrix, term: str, level: str) -> str:
    # treatment coding names a level column "<term>_<level>_vs_<ref>"
    return design.coef_name(term, str(level))


def coef_vector(design: DesignMatrix, name: str) -> Tuple[np.ndarray, str]:
    """
    Build contrast vector selecting a single design column
    """
    cols = design.columns
    if name not in cols:
        raise ConfigurationError(f"Coefficient '{name}' not in design; available: {cols}")
    L = np.zeros(len(cols))
    L[cols.index(name)] = 1.0
    return L, name


def contrast_vector(
    design: DesignMatrix,
    term: str,
    numerator: str,
    denominator: str,
) -> Tuple[np.ndarray, str]:
    """
    Build contrast vector for (level numerator - level denominator) of factor term.

    The reference level has no column, so comparisons against it select the
    other level's coefficient; swapping numerator and denominator flips the sign.
    """
    if term not in design.factor_levels:
        raise ConfigurationError(f"'{term}' is not a factor term of the design")
    levels = design.factor_levels[term]
    numerator, denominator = str(numerator), str(denominator)
    missing = [lvl for lvl in (numerator, denominator) if lvl not in levels]
    if missing:
        raise ConfigurationError(f"Levels {missing} not found for '{term}'; levels are {list(levels)}")
    if numerator == denominator:
        raise ConfigurationError(f"Contrast needs two different levels of '{term}', got '{numerator}' twice")

    cols = design.columns
    L = np.zeros(len(cols))
    ref = levels[0]
    if numerator != ref:
        L[cols.index(coef_name_for_level(design, term, numerator))] += 1.0
    if denominator != ref:
        L[cols.index(coef_name_for_level(design, term, denominator))] -= 1.0
    name = f"{term}_{numerator}_vs_{denominator}"
    return L, name


def wald_contrast(
    coef: np.ndarray,
    cov: np.ndarray,
    L: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Returns (estimate, standard error) of L' beta for every gene.

    coef has shape (n_genes, n_coef) and cov (n_genes, n_coef, n_coef).
    """
    L = np.asarray(L, dtype=float)
    est = coef @ L
    var = np.einsum("j,gjk,k->g", L, cov, L)
    return est, np.sqrt(np.clip(var, 0.0, None))
