"""Tests for the synthetic count generator."""

import numpy as np
import pytest

from rnaseq_de.simulate import simulate_nb_counts


def test_shapes_and_truth():
    counts, meta, truth = simulate_nb_counts(n_genes=100, n_per_group=2, n_groups=3, seed=0)
    assert counts.shape == (100, 6)
    assert list(meta["condition"]) == ["A", "A", "B", "B", "C", "C"]
    assert list(truth["log2_fold_change"].columns) == ["B", "C"]
    assert (truth["log2_fold_change"][~truth["is_de"]] == 0).all().all()
    assert np.exp(np.mean(np.log(truth["size_factors"]))) == pytest.approx(1.0)
    assert (counts.to_numpy() >= 0).all()


def test_reproducible_with_seed():
    a, _, _ = simulate_nb_counts(n_genes=20, seed=5)
    b, _, _ = simulate_nb_counts(n_genes=20, seed=5)
    c, _, _ = simulate_nb_counts(n_genes=20, seed=6)
    assert a.equals(b)
    assert not a.equals(c)


def test_batches_and_fixed_size_factors():
    counts, meta, truth = simulate_nb_counts(
        n_genes=10, n_per_group=2, n_batches=2, size_factors=[1, 2, 1, 2], seed=1
    )
    assert list(meta.columns) == ["batch", "condition"]
    assert list(meta["batch"]) == ["b1", "b2", "b1", "b2"]
    np.testing.assert_allclose(truth["size_factors"], [1, 2, 1, 2])

    with pytest.raises(ValueError):
        simulate_nb_counts(n_genes=10, n_per_group=2, size_factors=[1, 2])
