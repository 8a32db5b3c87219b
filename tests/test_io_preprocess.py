"""Tests for table loading and count-matrix preprocessing."""

import pandas as pd
import pytest

from rnaseq_de.errors import ConfigurationError
from rnaseq_de.io import load_counts_matrix, load_sample_metadata
from rnaseq_de.preprocess import filter_genes_by_total_counts


@pytest.fixture
def counts():
    return pd.DataFrame(
        {"gene_id": ["g1", "g2", "g3"], "s1": [10, 0, 3], "s2": [12, 1, 0], "s3": [30, 2, 1]}
    )


@pytest.fixture
def samples():
    return pd.DataFrame({"sample_id": ["s1", "s2", "s3"], "condition": ["a", "a", "b"]})


@pytest.mark.parametrize("suffix, sep", [(".csv", ","), (".tsv", "\t"), (".txt", "\t")])
def test_load_delimited_counts(tmp_path, counts, suffix, sep):
    path = tmp_path / f"counts{suffix}"
    counts.to_csv(path, sep=sep, index=False)
    df = load_counts_matrix(path)
    assert list(df.index) == ["g1", "g2", "g3"]
    assert list(df.columns) == ["s1", "s2", "s3"]
    assert df.index.name == "gene_id"
    assert df.loc["g1", "s3"] == 30


def test_load_excel(tmp_path, counts, samples):
    cpath = tmp_path / "counts.xlsx"
    spath = tmp_path / "samples.xlsx"
    counts.to_excel(cpath, index=False)
    samples.to_excel(spath, index=False)
    df = load_counts_matrix(cpath)
    meta = load_sample_metadata(spath, required=["condition"])
    assert df.shape == (3, 3)
    assert list(meta.index) == ["s1", "s2", "s3"]


def test_unknown_gene_column_uses_first(tmp_path, counts):
    path = tmp_path / "counts.csv"
    counts.rename(columns={"gene_id": "Geneid "}).to_csv(path, index=False)
    df = load_counts_matrix(path)
    assert list(df.index) == ["g1", "g2", "g3"]

    with pytest.raises(ConfigurationError, match="gene id column"):
        load_counts_matrix(path, skip_first_col_if_unknown=False)


def test_non_numeric_counts(tmp_path, counts):
    path = tmp_path / "counts.csv"
    counts.assign(s2=["12", "x", "0"]).to_csv(path, index=False)
    with pytest.raises(ConfigurationError, match="non-numeric"):
        load_counts_matrix(path)


def test_unsupported_suffix(tmp_path):
    path = tmp_path / "counts.parquet"
    path.write_text("")
    with pytest.raises(ConfigurationError, match="Unsupported"):
        load_counts_matrix(path)


def test_metadata_index_column(tmp_path, samples):
    path = tmp_path / "samples.csv"
    samples.set_index("sample_id").rename_axis(None).to_csv(path)
    meta = load_sample_metadata(path)
    assert list(meta.index) == ["s1", "s2", "s3"]
    assert meta.index.name == "sample_id"


def test_metadata_missing_columns(tmp_path, samples):
    path = tmp_path / "samples.csv"
    samples.to_csv(path, index=False)
    with pytest.raises(ConfigurationError, match="batch"):
        load_sample_metadata(path, required=["condition", "batch"])

    samples.rename(columns={"sample_id": "name"}).to_csv(path, index=False)
    with pytest.raises(ConfigurationError, match="sample_id"):
        load_sample_metadata(path)


def test_filter_genes_by_total_counts(counts):
    wide = counts.set_index("gene_id")
    assert list(filter_genes_by_total_counts(wide, min_total=5).index) == ["g1"]
    assert list(filter_genes_by_total_counts(wide, min_total=4).index) == ["g1", "g3"]
    assert len(filter_genes_by_total_counts(wide, min_total=0)) == 3
