from __future__ import annotations

from pathlib import Path
from typing import Optional

import pandas as pd

from .errors import ConfigurationError

DELIMITED = {".csv": ",", ".tsv": "\t", ".txt": "\t"}
EXCEL = (".xlsx", ".xls")


def _read_table(path: Path, sheet_name: str | int = 0) -> pd.DataFrame:
    suffix = path.suffix.lower()
    if suffix in DELIMITED:
        return pd.read_csv(path, sep=DELIMITED[suffix])
    if suffix in EXCEL:
        return pd.read_excel(path, sheet_name=sheet_name)
    raise ConfigurationError(
        f"Unsupported file type '{suffix}' for {path}; use one of {sorted(DELIMITED) + list(EXCEL)}"
    )


def load_counts_matrix(
    counts_path: str | Path,
    sheet_name: str | int = 0,
    gene_id_col: Optional[str] = "gene_id",
    skip_first_col_if_unknown: bool = True,
) -> pd.DataFrame:
    """
    Reads a raw count table (.csv, .tsv/.txt or .xlsx/.xls).

    Expected:
      - one column holding gene IDs (default 'gene_id').
      - remaining columns are sample_ids, values are raw integer counts.

    Values are coerced to numbers but not otherwise cleaned; negative,
    fractional or missing counts are rejected later by
    CountDataSet.from_frames.
    """
    counts_path = Path(counts_path)
    df = _norm_cols(_read_table(counts_path, sheet_name))

    if gene_id_col is not None and gene_id_col in df.columns:
        id_col = gene_id_col
    elif skip_first_col_if_unknown:
        id_col = df.columns[0]
    else:
        raise ConfigurationError(f"Could not determine gene id column in {counts_path}.")

    df[id_col] = df[id_col].astype(str)
    df = df.set_index(id_col)
    df.index.name = "gene_id"
    df.columns.name = "sample_id"

    try:
        df = df.apply(pd.to_numeric, errors="raise")
    except (ValueError, TypeError) as e:
        raise ConfigurationError(f"{counts_path} has non-numeric count entries: {e}") from e
    return df


def load_sample_metadata(
    sample_meta_path: str | Path,
    sheet_name: str | int = 0,
    sample_id_col: str = "sample_id",
    required: Optional[list[str]] = None,
) -> pd.DataFrame:
    """
    Reads a sample metadata table (.csv, .tsv/.txt or .xlsx/.xls).

    Expected columns:
      sample_id, plus the covariates used in the design (see ``required``).
    """
    sample_meta_path = Path(sample_meta_path)
    smeta = _norm_cols(_read_table(sample_meta_path, sheet_name))

    # Find the sample_id column - check for common names
    id_col_found = None
    if sample_id_col in smeta.columns:
        id_col_found = sample_id_col
    else:
        # unnamed index column written by DataFrame.to_csv / to_excel
        for candidate in ["Unnamed: 0", "index"]:
            if candidate in smeta.columns:
                id_col_found = candidate
                break

    if id_col_found is None:
        raise ConfigurationError(f"{sample_meta_path} missing '{sample_id_col}' column.")

    smeta[id_col_found] = smeta[id_col_found].astype(str)
    smeta = smeta.set_index(id_col_found)
    smeta.index.name = "sample_id"

    missing = [c for c in (required or []) if c not in smeta.columns]
    if missing:
        raise ConfigurationError(f"{sample_meta_path} missing required columns: {missing}")

    return smeta


def _norm_col(c: object) -> str:
    # strip whitespace; preserve internal chars
    return str(c).strip()


def _norm_cols(df: pd.DataFrame) -> pd.DataFrame:
    df = df.copy()
    df.columns = [_norm_col(c) for c in df.columns]
    return df
