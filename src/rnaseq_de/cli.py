"""Command-line interface: counts and sample metadata in, results table out."""
from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Optional, Sequence

from .config import ALT_HYPOTHESES, FIT_TYPES, SIZE_FACTOR_TYPES, DESeqConfig
from .dataset import CountDataSet
from .design import DesignSpec
from .diagnostics import sample_qc
from .errors import DESeqError
from .io import load_counts_matrix, load_sample_metadata
from .pipeline import run_deseq
from .preprocess import filter_genes_by_total_counts
from .results import results
from .transform import rlog, vst

logger = logging.getLogger(__name__)


def _parse_reference(items: Sequence[str]) -> dict[str, str]:
    refs = {}
    for item in items:
        term, sep, level = item.partition("=")
        if not sep or not term or not level:
            raise argparse.ArgumentTypeError(f"--reference expects TERM=LEVEL, got '{item}'")
        refs[term] = level
    return refs


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rnaseq-de",
        description='Negative binomial differential expression for RNA-seq count tables',
    )

    parser.add_argument(
        'counts',
        help='Count table (.csv, .tsv, .xlsx); genes as rows, samples as columns',
    )
    parser.add_argument(
        'metadata',
        help='Sample metadata table with a sample_id column',
    )
    parser.add_argument(
        '--design',
        nargs='+',
        required=True,
        help='Metadata columns of the additive design; the last one is tested',
    )
    parser.add_argument(
        '--reference',
        nargs='*',
        default=[],
        metavar='TERM=LEVEL',
        help='Reference level per factor, e.g. condition=untreated',
    )
    parser.add_argument(
        '--contrast',
        nargs=3,
        default=None,
        metavar=('TERM', 'NUMERATOR', 'DENOMINATOR'),
        help='Compare two levels of a factor instead of the default coefficient',
    )
    parser.add_argument(
        '--align-metadata',
        action='store_true',
        help='Reorder metadata rows to match the count columns',
    )
    parser.add_argument('--alpha', type=float, default=None, help='Target FDR (default 0.1)')
    parser.add_argument('--fit-type', choices=FIT_TYPES, default=None, help='Dispersion trend')
    parser.add_argument(
        '--size-factor-type', choices=SIZE_FACTOR_TYPES, default=None, help='Size factor estimator'
    )
    parser.add_argument('--shrink', action='store_true', help='Shrink log2 fold changes')
    parser.add_argument('--lfc-threshold', type=float, default=None, help='log2 fold-change threshold')
    parser.add_argument('--alt-hypothesis', choices=ALT_HYPOTHESES, default=None)
    parser.add_argument('--use-t', action='store_true', help='Student t reference distribution')
    parser.add_argument('--n-cpus', type=int, default=None, help='Worker processes')
    parser.add_argument(
        '--min-total',
        type=int,
        default=None,
        help='Drop genes with fewer total counts before fitting',
    )
    parser.add_argument(
        '--qc',
        action='store_true',
        help='Also write a per-sample QC table next to the results',
    )
    parser.add_argument(
        '--transform',
        choices=['rlog', 'vst'],
        default=None,
        help='Also write transformed counts next to the results',
    )
    parser.add_argument(
        '--blind',
        action='store_true',
        help='Estimate the transform dispersions with an intercept-only design',
    )
    parser.add_argument('--out', required=True, help='Output results CSV')
    parser.add_argument(
        '-d', '--debug',
        action='store_true',
        help='Enable debug logging',
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point of the ``rnaseq-de`` console script."""
    parser = build_parser()
    args = parser.parse_args(argv)

    # Configure logging
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )

    try:
        refs = _parse_reference(args.reference)
    except argparse.ArgumentTypeError as e:
        parser.error(str(e))

    try:
        config = DESeqConfig.from_mapping(
            {
                "alpha": args.alpha,
                "fit_type": args.fit_type,
                "size_factor_type": args.size_factor_type,
                "shrink_lfc": args.shrink or None,
                "lfc_threshold": args.lfc_threshold,
                "alt_hypothesis": args.alt_hypothesis,
                "use_t": args.use_t or None,
                "n_cpus": args.n_cpus,
            }
        )
        counts = load_counts_matrix(args.counts)
        if args.min_total is not None:
            counts = filter_genes_by_total_counts(counts, min_total=args.min_total)
        meta = load_sample_metadata(args.metadata, required=list(args.design))
        spec = DesignSpec(terms=tuple(args.design), reference_levels=refs)
        ds = CountDataSet.from_frames(counts, meta, spec, align_metadata=args.align_metadata)
        logger.info(f"Loaded {ds.n_genes} genes x {ds.n_samples} samples; design columns {ds.design.columns}")
        state = run_deseq(ds, config)
        res = results(state, contrast=args.contrast)
    except DESeqError as e:
        logger.error(str(e))
        return 2

    out = Path(args.out)
    out.parent.mkdir(parents=True, exist_ok=True)
    res.sort_by("padj").to_csv(out, index_label="gene_id")
    logger.info(f"Saved results for {len(res)} genes to {out}")
    summary = res.summary()
    for key, value in summary.items():
        logger.info(f"  {key}: {value}")

    if args.qc:
        qc = sample_qc(ds.counts, state.size_factors)
        qpath = out.with_name(f"{out.stem}_qc.csv")
        qc.to_csv(qpath, index_label="sample_id")
        logger.info(f"Saved per-sample QC to {qpath}")

    if args.transform is not None:
        func = rlog if args.transform == "rlog" else vst
        transformed = func(state, blind=args.blind)
        tpath = out.with_name(f"{out.stem}_{args.transform}.csv")
        transformed.to_csv(tpath, index_label="gene_id")
        logger.info(f"Saved {args.transform} matrix to {tpath}")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
