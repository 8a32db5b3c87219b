"""
Shared test fixtures for rnaseq-de tests.
"""

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest

from rnaseq_de.config import DESeqConfig
from rnaseq_de.dataset import CountDataSet
from rnaseq_de.pipeline import run_deseq
from rnaseq_de.simulate import simulate_nb_counts


@pytest.fixture(scope="session")
def simulated():
    """Two-group data set with 4 replicates and known truth."""
    return simulate_nb_counts(n_genes=500, n_per_group=4, seed=7)


@pytest.fixture(scope="session")
def dataset(simulated):
    counts, meta, _ = simulated
    return CountDataSet.from_frames(counts, meta, ["condition"])


@pytest.fixture(scope="session")
def state(dataset):
    return run_deseq(dataset, DESeqConfig())


@pytest.fixture
def four_by_four():
    """Four genes, four samples, sequencing depths proportional to 1, 1, 2, 2.

    Every gene is an exact multiple of its group pattern; gene ``const`` has
    the same normalized count in every sample.
    """
    counts = pd.DataFrame(
        {
            "s1": [100, 50, 7, 10],
            "s2": [100, 50, 7, 40],
            "s3": [200, 100, 14, 20],
            "s4": [200, 100, 14, 80],
        },
        index=["const", "g2", "g3", "de"],
    )
    meta = pd.DataFrame({"condition": ["A", "B", "A", "B"]}, index=counts.columns)
    return counts, meta


@pytest.fixture
def rng():
    return np.random.default_rng(12345)
