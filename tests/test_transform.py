"""Tests for the variance-stabilizing and regularized-log transforms."""

import numpy as np
import pytest

from rnaseq_de.config import DESeqConfig
from rnaseq_de.dataset import CountDataSet
from rnaseq_de.pipeline import PipelineState, compute_size_factors, run_deseq
from rnaseq_de.simulate import simulate_nb_counts
from rnaseq_de.transform import rlog, vst


def _assert_monotone(values, q):
    order = np.argsort(q.ravel(), kind="mergesort")
    assert np.all(np.diff(values.ravel()[order]) >= -1e-9)


@pytest.fixture(scope="module")
def low_dispersion_state():
    counts, meta, _ = simulate_nb_counts(
        n_genes=300, n_per_group=3, asympt_disp=0.01, mean_range=(500.0, 5000.0), seed=3
    )
    return run_deseq(CountDataSet.from_frames(counts, meta, ["condition"]))


def test_vst_parametric_matches_log2_at_high_counts(state):
    out = vst(state)
    q = state.normalized_counts().to_numpy()
    assert out.shape == q.shape
    assert list(out.index) == list(state.genes)
    assert np.isfinite(out.to_numpy()).all()

    high = q > 1000
    assert np.abs(out.to_numpy()[high] - np.log2(q[high])).max() < 0.15
    _assert_monotone(out.to_numpy(), q)


@pytest.mark.parametrize("fit_type", ["mean", "local"])
def test_vst_other_trends(dataset, fit_type):
    st = PipelineState(dataset=dataset, config=DESeqConfig(fit_type=fit_type))
    out = vst(st).to_numpy()
    assert np.isfinite(out).all()
    _assert_monotone(out, compute_size_factors(st).normalized_counts().to_numpy())


def test_vst_compresses_low_counts(state):
    out = vst(state).to_numpy()
    q = state.normalized_counts().to_numpy()
    low = state.base_mean() < 10
    assert low.any()
    spread_vst = out[low].std(axis=1)
    spread_log = np.log2(q[low] + 1.0).std(axis=1)
    assert np.median(spread_vst) < np.median(spread_log)


def test_blind_vst_differs_but_agrees(state):
    aware = vst(state)
    blind = vst(state, blind=True)
    assert not np.allclose(aware.to_numpy(), blind.to_numpy())
    assert np.corrcoef(aware.to_numpy().ravel(), blind.to_numpy().ravel())[0, 1] > 0.99
    assert state.dataset.design.columns == ["Intercept", "condition_B_vs_A"]


def test_rlog_near_log2_for_high_counts(low_dispersion_state):
    st = low_dispersion_state
    out = rlog(st).to_numpy()
    q = st.normalized_counts().to_numpy()
    assert np.isfinite(out).all()
    assert np.median(np.abs(out - np.log2(q))) < 0.1


def test_rlog_shrinks_low_counts(state):
    out = rlog(state).to_numpy()
    q = state.normalized_counts().to_numpy()
    low = state.base_mean() < 20
    assert low.any()
    ratio = out[low].std(axis=1) / np.log2(q[low] + 0.5).std(axis=1)
    assert np.median(ratio) < 1.0


def test_all_zero_gene(simulated):
    counts, meta, _ = simulated
    counts = counts.copy()
    counts.loc["silent"] = 0
    st = PipelineState(dataset=CountDataSet.from_frames(counts, meta, ["condition"]), config=DESeqConfig())

    r = rlog(st)
    assert (r.loc["silent"] == 0).all()
    v = vst(st)
    assert np.isfinite(v.loc["silent"]).all()
    assert v.loc["silent"].nunique() == 1
