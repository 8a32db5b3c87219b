"""Tests for Wald testing, filtering and the results table."""

import warnings
from dataclasses import replace

import numpy as np
import pandas as pd
import pytest

from rnaseq_de.config import DESeqConfig
from rnaseq_de.dataset import CountDataSet
from rnaseq_de.errors import ConfigurationError, DESeqError
from rnaseq_de.pipeline import PipelineState, run_deseq
from rnaseq_de.results import results
from rnaseq_de.stats import bh_fdr


@pytest.fixture(scope="module")
def default_results(state):
    return results(state)


@pytest.fixture(scope="module")
def spiked_state(simulated):
    counts, meta, _ = simulated
    counts = counts.copy()
    counts.loc["spike"] = [100, 110, 95, 105, 100, 2500, 98, 102]
    counts.loc["silent"] = 0
    ds = CountDataSet.from_frames(counts, meta, ["condition"])
    return run_deseq(ds)


def test_columns_and_name(default_results):
    res = default_results
    assert res.name == "condition_B_vs_A"
    assert list(res.table.columns) == [
        "baseMean",
        "log2FoldChange",
        "lfcSE",
        "stat",
        "pvalue",
        "padj",
        "dispersion",
        "dispGeneConverged",
        "dispOutlier",
        "glmConverged",
        "cooksOutlier",
        "filtered",
    ]
    assert len(res) == 500
    assert res.metadata["alpha"] == 0.1
    assert not res.shrunk


def test_finds_true_differential_expression(default_results, simulated):
    _, _, truth = simulated
    res = default_results.df
    sig = res["padj"] < 0.1
    assert sig.sum() > 10
    precision = truth["is_de"][sig].mean()
    assert precision > 0.8

    est = res.loc[sig, "log2FoldChange"]
    true_lfc = truth["log2_fold_change"].loc[sig, "B"]
    de = truth["is_de"][sig]
    assert np.corrcoef(est[de], true_lfc[de])[0, 1] > 0.9


def test_null_genes_have_small_effects(default_results, simulated):
    _, _, truth = simulated
    res = default_results.df
    null = ~truth["is_de"] & (res["baseMean"] > 100)
    assert res.loc[null, "log2FoldChange"].abs().median() < 0.3


def test_more_calls_at_larger_alpha(state):
    called = [int((results(state, alpha=a).df["padj"] < a).sum()) for a in (0.01, 0.05, 0.1, 0.2)]
    assert called == sorted(called)


def test_filtered_genes_have_no_padj(default_results):
    df = default_results.df
    assert df["filtered"].dtype == bool
    assert df.loc[df["filtered"], "padj"].isna().all()
    assert df.loc[df["filtered"], "pvalue"].notna().all()
    assert np.isfinite(default_results.filter_threshold)
    assert (df.loc[df["filtered"], "baseMean"] < default_results.filter_threshold).all()


def test_without_independent_filtering(state):
    res = results(state, independent_filter=False)
    df = res.df
    assert not df["filtered"].any()
    np.testing.assert_allclose(df["padj"], bh_fdr(df["pvalue"].to_numpy()), equal_nan=True)
    assert res.filter_curve is None


def test_cooks_outlier_pvalue_is_missing(spiked_state):
    df = results(spiked_state).df
    assert df.loc["spike", "cooksOutlier"]
    assert np.isnan(df.loc["spike", "pvalue"])
    assert np.isnan(df.loc["spike", "padj"])
    assert np.isfinite(df.loc["spike", "log2FoldChange"])

    kept = results(spiked_state, cooks_filter=False).df
    assert kept.loc["spike", "cooksOutlier"]
    assert np.isfinite(kept.loc["spike", "pvalue"])


def test_all_zero_gene_row(spiked_state):
    row = results(spiked_state).df.loc["silent"]
    assert row["baseMean"] == 0
    for col in ("log2FoldChange", "lfcSE", "stat", "pvalue", "padj", "dispersion"):
        assert np.isnan(row[col])
    assert not row["glmConverged"]
    assert not row["filtered"]


def test_contrast_sign_flip(state, default_results):
    flipped = results(state, contrast=("condition", "A", "B"))
    same = results(state, contrast=("condition", "B", "A"))
    assert flipped.name == "condition_A_vs_B"

    base = default_results.df
    np.testing.assert_allclose(flipped.df["log2FoldChange"], -base["log2FoldChange"], equal_nan=True)
    np.testing.assert_allclose(flipped.df["pvalue"], base["pvalue"], equal_nan=True)
    np.testing.assert_allclose(same.df["log2FoldChange"], base["log2FoldChange"], equal_nan=True)


def test_threshold_raises_pvalues(state, default_results):
    thr = results(state, lfc_threshold=1.0)
    assert thr.lfc_threshold == 1.0
    p0 = default_results.df["pvalue"]
    p1 = thr.df["pvalue"]
    ok = p0.notna() & p1.notna()
    assert (p1[ok] >= p0[ok] - 1e-12).all()
    assert (thr.df["padj"] < 0.1).sum() <= (default_results.df["padj"] < 0.1).sum()


def test_t_reference_is_more_conservative(state, default_results):
    t_state = replace(state, config=replace(state.config, use_t=True))
    p_t = results(t_state).df["pvalue"]
    p_z = default_results.df["pvalue"]
    ok = p_t.notna() & p_z.notna()
    assert (p_t[ok] >= p_z[ok] - 1e-12).all()


def test_shrinkage(state, default_results):
    res = results(state, shrink=True)
    df = res.df
    assert res.shrunk
    assert "lfcMLE" in df.columns

    ok = df["glmConverged"] & df["log2FoldChange"].notna()
    assert (df.loc[ok, "log2FoldChange"].abs() <= df.loc[ok, "lfcMLE"].abs() + 1e-6).all()
    np.testing.assert_allclose(df["lfcMLE"], default_results.df["log2FoldChange"], equal_nan=True)
    np.testing.assert_allclose(df["stat"], default_results.df["stat"], equal_nan=True)
    np.testing.assert_allclose(df["pvalue"], default_results.df["pvalue"], equal_nan=True)
    # the fixture state stays untouched
    assert state.shrunk_fit is None


def test_parallel_run_matches_serial(dataset, default_results):
    parallel = run_deseq(dataset, DESeqConfig(n_cpus=2))
    pd.testing.assert_frame_equal(results(parallel).df, default_results.df)


def test_summary(default_results):
    s = default_results.summary()
    df = default_results.df
    assert s["up"] + s["down"] == int((df["padj"] < 0.1).sum())
    assert s["nonzero_total"] == int((df["baseMean"] > 0).sum())
    assert s["low_counts"] == int(df["filtered"].sum())
    assert s["cooks_outliers"] == int(df["cooksOutlier"].sum())
    assert s["mean_count_cutoff"] == default_results.filter_threshold


def test_sort_by(default_results):
    by_padj = default_results.sort_by("padj")
    padj = by_padj["padj"].to_numpy()
    n_finite = int(np.isfinite(padj).sum())
    assert np.all(np.diff(padj[:n_finite]) >= 0)
    assert np.isnan(padj[n_finite:]).all()

    assert list(default_results.sort_by("gene").index) == sorted(default_results.table.index)

    effect = default_results.sort_by("effect")["log2FoldChange"].abs().to_numpy()
    n_lfc = int(np.isfinite(effect).sum())
    assert np.all(np.diff(effect[:n_lfc]) <= 0)

    with pytest.raises(ConfigurationError):
        default_results.sort_by("baseMean")


def test_significant(default_results):
    sig = default_results.significant()
    assert (sig["padj"] < 0.1).all()
    assert len(default_results.significant(0.01)) <= len(sig)


def test_df_is_a_copy(default_results):
    df = default_results.df
    df["log2FoldChange"] = 0.0
    assert not (default_results.table["log2FoldChange"] == 0.0).all()


def test_to_csv(default_results, tmp_path):
    path = tmp_path / "res.csv"
    default_results.to_csv(path)
    back = pd.read_csv(path, index_col="gene_id")
    assert list(back.columns) == list(default_results.table.columns)
    assert len(back) == len(default_results)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"name": "condition_C_vs_A"},
        {"contrast": ("condition", "B")},
        {"contrast": ("condition", "B", "C")},
        {"contrast": ("condition", "B", "A"), "name": "condition_B_vs_A"},
        {"contrast": ("batch", "b2", "b1")},
    ],
)
def test_invalid_requests(state, kwargs):
    with pytest.raises(ConfigurationError):
        results(state, **kwargs)


def test_invalid_override(state):
    with pytest.raises(ConfigurationError):
        results(state, alt_hypothesis="lessAbs")


def test_results_before_fit(dataset):
    with pytest.raises(DESeqError, match="not run yet"):
        results(PipelineState(dataset=dataset, config=DESeqConfig()))


def test_unconverged_glm_has_no_pvalue(state, default_results):
    genes = state.genes
    failed = np.zeros(len(genes), dtype=bool)
    failed[[0, 5, 17]] = True
    fit = replace(state.fit, converged=state.fit.converged & ~failed)
    df = results(replace(state, fit=fit)).df

    for gene in genes[failed]:
        assert not df.loc[gene, "glmConverged"]
        assert np.isnan(df.loc[gene, "pvalue"])
        assert np.isnan(df.loc[gene, "padj"])
    ok = ~failed & ~state.dispersions.all_zero
    np.testing.assert_array_equal(df["pvalue"].to_numpy()[ok], default_results.df["pvalue"].to_numpy()[ok])


def test_dispersion_convergence_flag_in_results(simulated):
    counts, meta, _ = simulated
    ds = CountDataSet.from_frames(counts.iloc[:200], meta, ["condition"])
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        st = run_deseq(ds, DESeqConfig(max_iter=2))
        df = results(st).df

    d = st.dispersions
    assert (~df["dispGeneConverged"]).any()
    np.testing.assert_array_equal(df["dispGeneConverged"].to_numpy(), d.genewise_converged)
    stuck = ~d.genewise_converged & ~d.all_zero
    np.testing.assert_allclose(df["dispersion"].to_numpy()[stuck], d.trend_values[stuck])
