"""
Count matrix store.

Holds the validated raw count matrix, the aligned sample metadata and the
realized design. All checks that make a run impossible happen here, before
any per-gene computation.

Classes
-------
CountDataSet
    Immutable container of counts, sample metadata and design matrix.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd

from .design import DesignMatrix, DesignSpec, build_design_matrix
from .errors import ConfigurationError


@dataclass(frozen=True)
class CountDataSet:
    """Validated counts (genes x samples) with aligned metadata and design.

    Use :meth:`from_frames` to construct; it validates and aligns the inputs.

    Attributes
    ----------
    counts : pd.DataFrame
        Non-negative integer counts, genes as rows, samples as columns. The
        underlying array is read-only.
    sample_metadata : pd.DataFrame
        One row per sample, in the same order as ``counts.columns``.
    design : DesignMatrix
        Model matrix built from ``sample_metadata``.
    """

    counts: pd.DataFrame
    sample_metadata: pd.DataFrame
    design: DesignMatrix

    @classmethod
    def from_frames(
        cls,
        counts: pd.DataFrame,
        sample_metadata: pd.DataFrame,
        design: Union[DesignSpec, Sequence[str]],
        reference_levels: Optional[Mapping[str, str]] = None,
        align_metadata: bool = False,
    ) -> "CountDataSet":
        """Validate inputs and build the design matrix.

        Parameters
        ----------
        counts : pd.DataFrame
            Raw counts, gene ids as index, sample ids as columns.
        sample_metadata : pd.DataFrame
            Sample covariates indexed by sample id.
        design : DesignSpec or sequence of str
            Design specification, or just the list of terms.
        reference_levels : mapping, optional
            Reference-level overrides, used only when ``design`` is a list of
            terms.
        align_metadata : bool, default False
            If True, reorder metadata rows to the count-matrix column order
            when both hold the same sample ids. If False, any difference in
            order is an error.

        Returns
        -------
        CountDataSet

        Raises
        ------
        ConfigurationError
            On duplicate ids, negative / non-integer / missing counts, or
            metadata that does not match the count-matrix samples.

        Examples
        --------
        >>> counts = pd.DataFrame({"s1": [10, 0], "s2": [12, 3], "s3": [30, 1], "s4": [28, 2]},
        ...                       index=["g1", "g2"])
        >>> meta = pd.DataFrame({"condition": ["A", "A", "B", "B"]}, index=counts.columns)
        >>> ds = CountDataSet.from_frames(counts, meta, ["condition"])
        >>> ds.n_genes, ds.n_samples
        (2, 4)
        """
        if not isinstance(design, DesignSpec):
            design = DesignSpec(terms=tuple(design), reference_levels=dict(reference_levels or {}))
        elif reference_levels:
            raise ConfigurationError("Pass reference_levels inside the DesignSpec")

        counts = validate_counts(counts)
        sample_metadata = align_sample_metadata(counts, sample_metadata, reorder=align_metadata)
        dm = build_design_matrix(sample_metadata, design)
        return cls(counts=counts, sample_metadata=sample_metadata, design=dm)

    @property
    def n_genes(self) -> int:
        return self.counts.shape[0]

    @property
    def n_samples(self) -> int:
        return self.counts.shape[1]

    @property
    def genes(self) -> pd.Index:
        return self.counts.index

    @property
    def samples(self) -> pd.Index:
        return self.counts.columns

    def count_array(self) -> np.ndarray:
        """Counts as a float array (genes x samples)."""
        return self.counts.to_numpy(dtype=float)

    def with_design(self, design: DesignMatrix) -> "CountDataSet":
        """Return a copy of this dataset using another design matrix."""
        if list(design.matrix.index) != list(self.samples):
            raise ConfigurationError("Design matrix rows do not match count-matrix samples")
        return CountDataSet(counts=self.counts, sample_metadata=self.sample_metadata, design=design)


def validate_counts(counts: pd.DataFrame) -> pd.DataFrame:
    """Check a raw count table and return an integer, read-only copy.

    Raises
    ------
    ConfigurationError
        If ids are duplicated, the table is empty, or any entry is missing,
        negative or not an integer.
    """
    if not isinstance(counts, pd.DataFrame):
        raise ConfigurationError("counts must be a pandas DataFrame (genes x samples)")
    if counts.shape[0] == 0 or counts.shape[1] == 0:
        raise ConfigurationError(f"counts is empty (shape {counts.shape})")

    counts = counts.copy()
    counts.index = counts.index.astype(str)
    counts.columns = counts.columns.astype(str)

    dup_genes = counts.index[counts.index.duplicated()].unique().tolist()
    if dup_genes:
        raise ConfigurationError(f"Duplicate gene ids in counts: {dup_genes[:10]}")
    dup_samples = counts.columns[counts.columns.duplicated()].unique().tolist()
    if dup_samples:
        raise ConfigurationError(f"Duplicate sample ids in counts: {dup_samples}")

    try:
        values = counts.apply(pd.to_numeric, errors="raise").to_numpy(dtype=float)
    except (ValueError, TypeError) as e:
        raise ConfigurationError(f"counts contains non-numeric entries: {e}") from e

    if np.isnan(values).any():
        raise ConfigurationError("counts contains missing values")
    if not np.isfinite(values).all():
        raise ConfigurationError("counts contains infinite values")
    if (values < 0).any():
        bad = counts.index[(values < 0).any(axis=1)].tolist()
        raise ConfigurationError(f"counts contains negative values for genes {bad[:10]}")
    if not np.all(values == np.round(values)):
        bad = counts.index[(values != np.round(values)).any(axis=1)].tolist()
        raise ConfigurationError(f"counts contains non-integer values for genes {bad[:10]}")

    values = values.astype(np.int64)
    values.setflags(write=False)
    out = pd.DataFrame(values, index=counts.index, columns=counts.columns, copy=False)
    out.index.name = "gene_id"
    out.columns.name = "sample_id"
    return out


def align_sample_metadata(
    counts: pd.DataFrame,
    sample_metadata: pd.DataFrame,
    reorder: bool = False,
) -> pd.DataFrame:
    """Check that metadata rows match count columns 1:1 and in order.

    Raises
    ------
    ConfigurationError
        If samples are missing on either side, duplicated, or out of order
        while ``reorder`` is False.
    """
    if not isinstance(sample_metadata, pd.DataFrame):
        raise ConfigurationError("sample_metadata must be a pandas DataFrame indexed by sample id")

    meta = sample_metadata.copy()
    meta.index = meta.index.astype(str)
    samples = list(counts.columns)

    dup = meta.index[meta.index.duplicated()].unique().tolist()
    if dup:
        raise ConfigurationError(f"Duplicate sample ids in sample metadata: {dup}")

    missing = [s for s in samples if s not in meta.index]
    extra = [s for s in meta.index if s not in set(samples)]
    if missing or extra:
        raise ConfigurationError(
            f"Sample metadata does not match count columns; "
            f"missing from metadata: {missing}, not in counts: {extra}"
        )

    if list(meta.index) != samples:
        if not reorder:
            raise ConfigurationError(
                "Sample metadata rows are not in count-matrix column order; "
                "reorder them or pass align_metadata=True"
            )
        meta = meta.loc[samples]

    meta.index.name = "sample_id"
    return meta
