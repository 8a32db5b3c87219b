"""
Design specification and model-matrix construction.

This module turns an additive list of sample covariates into a treatment-coded
model matrix with patsy. Reference levels of categorical terms are an explicit
choice: either given per term, or derived from a documented ordering policy,
so the sign of an estimated effect never depends on ingestion order.

Functions
---------
build_design_matrix
    Build a :class:`DesignMatrix` from sample metadata and a :class:`DesignSpec`.
make_patsy_safe_columns
    Convert column names to patsy-safe identifiers.

Classes
-------
DesignSpec
    Symbolic additive design (terms, reference levels, level-order policy).
DesignMatrix
    Realized model matrix with readable coefficient names.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, Literal, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import patsy

from .errors import ConfigurationError


@dataclass(frozen=True)
class DesignSpec:
    """Additive design over sample metadata columns.

    Parameters
    ----------
    terms : sequence of str
        Metadata columns in the model, e.g. ``("batch", "condition")``. The
        last term is the default tested effect. An empty sequence gives an
        intercept-only design.
    reference_levels : mapping, optional
        ``{term: level}`` overrides for the reference level of factors.
        Naming a numeric column here makes it a factor.
    factors : sequence of str, optional
        Numeric columns to treat as factors without fixing their reference.
    level_order : {"sorted", "first_seen"}, default "sorted"
        How levels are ordered when no reference is given. The first level
        in this order is the reference.
    """

    terms: Tuple[str, ...] = ()
    reference_levels: Mapping[str, str] = field(default_factory=dict)
    factors: Tuple[str, ...] = ()
    level_order: Literal["sorted", "first_seen"] = "sorted"

    def __post_init__(self):
        object.__setattr__(self, "terms", tuple(self.terms))
        object.__setattr__(self, "factors", tuple(self.factors))
        object.__setattr__(
            self, "reference_levels", {k: str(v) for k, v in dict(self.reference_levels).items()}
        )
        if len(set(self.terms)) != len(self.terms):
            raise ConfigurationError(f"Duplicate design terms: {list(self.terms)}")
        if self.level_order not in ("sorted", "first_seen"):
            raise ConfigurationError(
                f"Unknown level_order='{self.level_order}'. Use 'sorted' or 'first_seen'."
            )
        extra = [t for t in self.reference_levels if t not in self.terms]
        if extra:
            raise ConfigurationError(f"Reference levels given for terms not in the design: {extra}")

    @property
    def tested_term(self) -> Optional[str]:
        return self.terms[-1] if self.terms else None


@dataclass(frozen=True)
class DesignMatrix:
    """Treatment-coded model matrix (samples x coefficients).

    Attributes
    ----------
    matrix : pd.DataFrame
        Model matrix indexed by sample id. Columns are ``Intercept``,
        ``<term>_<level>_vs_<reference>`` for factor levels and ``<term>``
        for continuous covariates.
    spec : DesignSpec
        The specification the matrix was built from.
    factor_levels : dict
        ``{term: (reference, level_1, ...)}`` for factor terms.
    term_columns : dict
        ``{term: (column, ...)}`` coefficient columns owned by each term.
    """

    matrix: pd.DataFrame
    spec: DesignSpec
    factor_levels: Dict[str, Tuple[str, ...]]
    term_columns: Dict[str, Tuple[str, ...]]

    @property
    def columns(self) -> list[str]:
        return list(self.matrix.columns)

    @property
    def values(self) -> np.ndarray:
        return self.matrix.to_numpy(dtype=float)

    @property
    def n_coef(self) -> int:
        return self.matrix.shape[1]

    @property
    def n_samples(self) -> int:
        return self.matrix.shape[0]

    @property
    def df_resid(self) -> int:
        return self.n_samples - self.n_coef

    @property
    def tested_coef(self) -> str:
        """Default tested coefficient: the last column of the last term."""
        term = self.spec.tested_term
        if term is None:
            return "Intercept"
        return self.term_columns[term][-1]

    def reference_level(self, term: str) -> str:
        if term not in self.factor_levels:
            raise KeyError(f"'{term}' is not a factor term of the design")
        return self.factor_levels[term][0]

    def coef_name(self, term: str, level: str) -> str:
        """Column name of ``level`` vs the reference of factor ``term``."""
        ref = self.reference_level(term)
        return _level_coef_name(term, str(level), ref)

    def row_groups(self) -> np.ndarray:
        """Integer label per sample identifying its distinct design row."""
        _, inverse = np.unique(self.values, axis=0, return_inverse=True)
        return np.asarray(inverse).ravel()

    def n_distinct_rows(self) -> int:
        return int(np.unique(self.values, axis=0).shape[0])

    @classmethod
    def intercept_only(cls, samples: Sequence[str]) -> "DesignMatrix":
        mat = pd.DataFrame({"Intercept": 1.0}, index=pd.Index(list(samples), name="sample_id"))
        return cls(matrix=mat, spec=DesignSpec(), factor_levels={}, term_columns={})


def make_patsy_safe_columns(
    cols: list[str],
    prefix: str = "F_",
) -> Tuple[list[str], dict[str, str]]:
    """Convert column names to patsy-safe identifiers.

    Replaces special characters, ensures names don't start with digits, and
    guarantees uniqueness.

    Parameters
    ----------
    cols : list of str
        Original column names.
    prefix : str, default ``"F_"``
        Prefix to add to names that start with a digit.

    Returns
    -------
    safe_cols : list of str
        Transformed column names that are valid identifiers.
    mapping : dict
        Mapping from original names to safe names.

    Examples
    --------
    >>> make_patsy_safe_columns(["cell line", "2nd batch"])
    (['cell_line', 'F_2nd_batch'], {'cell line': 'cell_line', '2nd batch': 'F_2nd_batch'})
    """
    safe = []
    mapping = {}
    used: set[str] = set()

    for c in cols:
        s = re.sub(r"[^0-9a-zA-Z_]+", "_", str(c)).strip("_")
        if s == "":
            s = "EMPTY"
        if re.match(r"^\d", s):
            s = prefix + s

        base = s
        k = 1
        while s in used:
            k += 1
            s = f"{base}_{k}"

        used.add(s)
        safe.append(s)
        mapping[str(c)] = s

    return safe, mapping


def _level_coef_name(term: str, level: str, ref: str) -> str:
    return f"{term}_{level}_vs_{ref}"


def _is_factor(term: str, values: pd.Series, spec: DesignSpec) -> bool:
    if term in spec.reference_levels or term in spec.factors:
        return True
    return not pd.api.types.is_numeric_dtype(values) or pd.api.types.is_bool_dtype(values)


def _ordered_levels(term: str, values: pd.Series, spec: DesignSpec) -> list[str]:
    if spec.level_order == "sorted":
        levels = sorted(pd.unique(values))
    else:
        levels = list(dict.fromkeys(values))
    if len(levels) < 2:
        raise ConfigurationError(f"Design factor '{term}' has a single level: {levels}")

    ref = spec.reference_levels.get(term)
    if ref is not None:
        if ref not in levels:
            raise ConfigurationError(
                f"Reference level '{ref}' not found for '{term}'; levels are {levels}"
            )
        levels.remove(ref)
        levels.insert(0, ref)
    return levels


def build_design_matrix(sample_metadata: pd.DataFrame, spec: DesignSpec) -> DesignMatrix:
    """Build a treatment-coded model matrix for ``spec``.

    Parameters
    ----------
    sample_metadata : pd.DataFrame
        One row per sample, indexed by sample id, in count-matrix column order.
    spec : DesignSpec
        Terms and reference-level policy.

    Returns
    -------
    DesignMatrix
        Model matrix with an intercept and one block of columns per term.

    Raises
    ------
    ConfigurationError
        If a term is missing from the metadata, has missing values or a single
        level, a reference level does not exist, the matrix is rank deficient,
        or there are no residual degrees of freedom.

    Examples
    --------
    >>> meta = pd.DataFrame({"condition": ["A", "A", "B", "B"]},
    ...                     index=["s1", "s2", "s3", "s4"])
    >>> dm = build_design_matrix(meta, DesignSpec(terms=("condition",)))
    >>> dm.columns
    ['Intercept', 'condition_B_vs_A']
    """
    missing = [t for t in spec.terms if t not in sample_metadata.columns]
    if missing:
        raise ConfigurationError(f"Design terms not present in sample metadata: {missing}")

    if not spec.terms:
        dm = DesignMatrix.intercept_only(sample_metadata.index.astype(str))
        _check_estimable(dm)
        return dm

    safe_names, mapping = make_patsy_safe_columns(list(spec.terms), prefix="T_")
    data = pd.DataFrame(index=sample_metadata.index)
    factor_levels: Dict[str, Tuple[str, ...]] = {}
    rhs = []

    for term, safe in zip(spec.terms, safe_names):
        values = sample_metadata[term]
        if values.isna().any():
            bad = list(values.index[values.isna()].astype(str))
            raise ConfigurationError(f"Design term '{term}' has missing values for samples {bad}")

        if _is_factor(term, values, spec):
            values = values.astype(str)
            levels = _ordered_levels(term, values, spec)
            data[safe] = pd.Categorical(values, categories=levels)
            factor_levels[term] = tuple(levels)
            rhs.append(f"C({safe})")
        else:
            data[safe] = pd.to_numeric(values).astype(float)
            rhs.append(safe)

    formula = "1 + " + " + ".join(rhs)
    X = patsy.dmatrix(formula, data=data, return_type="dataframe")

    # Rename patsy columns term by term
    names: list[str] = []
    term_columns: Dict[str, Tuple[str, ...]] = {}
    patsy_to_term = {r: t for r, t in zip(rhs, spec.terms)}
    for patsy_term, sl in X.design_info.term_name_slices.items():
        if patsy_term == "Intercept":
            names.append("Intercept")
            continue
        term = patsy_to_term[patsy_term]
        if term in factor_levels:
            ref, *others = factor_levels[term]
            cols = [_level_coef_name(term, lvl, ref) for lvl in others]
        else:
            cols = [term]
        if len(cols) != sl.stop - sl.start:
            raise ConfigurationError(f"Unexpected column layout for design term '{term}'")
        term_columns[term] = tuple(cols)
        names.extend(cols)

    X.columns = names
    X.index = sample_metadata.index.astype(str)
    X.index.name = "sample_id"

    dm = DesignMatrix(
        matrix=X.astype(float),
        spec=spec,
        factor_levels=factor_levels,
        term_columns=term_columns,
    )
    _check_estimable(dm)
    return dm


def _check_estimable(dm: DesignMatrix) -> None:
    rank = np.linalg.matrix_rank(dm.values)
    if rank < dm.n_coef:
        raise ConfigurationError(
            f"Design matrix is not full rank ({rank} < {dm.n_coef} columns); "
            "one or more terms are linear combinations of others"
        )
    if dm.df_resid < 1:
        raise ConfigurationError(
            f"The design has {dm.n_coef} coefficients for {dm.n_samples} samples, "
            "so dispersion estimation is not possible"
        )
