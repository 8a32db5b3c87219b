"""
Exception types raised by the differential-expression engine.

Classes
-------
DESeqError
    Base class for all errors raised by rnaseq_de.
ConfigurationError
    Fatal input or configuration problem detected before per-gene work.
"""
from __future__ import annotations


class DESeqError(Exception):
    """Base class for exceptions in rnaseq_de."""
    pass


class ConfigurationError(DESeqError, ValueError):
    """Raised when inputs or settings make the run impossible.

    Covers mismatched samples between counts and metadata, design terms
    missing from the metadata, invalid counts, undefined size factors and
    out-of-range configuration values. Always raised before any per-gene
    computation starts.
    """
    pass
