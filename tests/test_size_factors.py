"""Tests for median-of-ratios size factors."""

import numpy as np
import pandas as pd
import pytest

from rnaseq_de.errors import ConfigurationError
from rnaseq_de.size_factors import estimate_size_factors, normalized_counts


def test_recovers_per_sample_scalars(rng):
    base = rng.integers(5, 1000, size=(200, 1))
    multiples = np.array([1, 2, 3, 6])
    counts = pd.DataFrame(base * multiples, columns=["a", "b", "c", "d"])

    sf = estimate_size_factors(counts)

    ratio = sf.to_numpy() / multiples
    np.testing.assert_allclose(ratio, ratio[0], rtol=1e-10)
    assert np.exp(np.mean(np.log(sf))) == pytest.approx(1.0)
    assert list(sf.index) == ["a", "b", "c", "d"]


def test_docstring_example():
    counts = pd.DataFrame({"a": [10, 20, 30], "b": [20, 40, 60]})
    assert estimate_size_factors(counts).round(4).tolist() == [0.7071, 1.4142]


def test_four_by_four_depths(four_by_four):
    counts, _ = four_by_four
    sf = estimate_size_factors(counts)
    np.testing.assert_allclose(sf.to_numpy() / sf.iloc[0], [1.0, 1.0, 2.0, 2.0])


def test_genes_with_zeros_are_skipped_not_dropped():
    counts = pd.DataFrame(
        {"a": [10, 20, 0], "b": [20, 40, 500]},
        index=["g1", "g2", "g3"],
    )
    sf = estimate_size_factors(counts)
    np.testing.assert_allclose(sf.to_numpy(), [2**-0.5, 2**0.5])
    assert normalized_counts(counts, sf).shape == (3, 2)


def test_all_zero_sample_raises():
    counts = pd.DataFrame({"a": [10, 20], "b": [0, 0], "c": [5, 8]})
    with pytest.raises(ConfigurationError, match="all-zero"):
        estimate_size_factors(counts)


def test_every_gene_with_a_zero_needs_poscounts():
    counts = pd.DataFrame({"a": [0, 20, 7], "b": [10, 0, 9], "c": [12, 30, 0]})
    with pytest.raises(ConfigurationError, match="poscounts"):
        estimate_size_factors(counts)

    sf = estimate_size_factors(counts, method="poscounts")
    assert np.all(sf > 0)
    assert np.exp(np.mean(np.log(sf))) == pytest.approx(1.0)


def test_unknown_method():
    counts = pd.DataFrame({"a": [1, 2], "b": [2, 3]})
    with pytest.raises(ConfigurationError):
        estimate_size_factors(counts, method="tmm")


def test_normalized_counts_divides_by_size_factor():
    counts = pd.DataFrame({"a": [10, 20], "b": [20, 40]})
    out = normalized_counts(counts, pd.Series({"a": 0.5, "b": 1.0}))
    np.testing.assert_allclose(out.to_numpy(), [[20.0, 20.0], [40.0, 40.0]])

    with pytest.raises(ConfigurationError):
        normalized_counts(counts, pd.Series({"a": 0.5}))
