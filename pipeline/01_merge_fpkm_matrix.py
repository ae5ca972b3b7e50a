#!/usr/bin/env python3
"""
01_merge_fpkm_matrix.py - Build a gene x sample FPKM matrix from GDC STAR-Counts files

Reads metadata.json (a GDC files export) to map each data file name to
its sample submitter id, merges every matching quantification file in
the data directory, and writes one tab-separated matrix:

    GeneSymbol  <sample>  <sample>  ...
    <gene>      <value>   NA        ...

Genes and samples are sorted; cells with no value are NA.

Usage:
    python 01_merge_fpkm_matrix.py                       # defaults / config
    python 01_merge_fpkm_matrix.py --metadata metadata.json --data-dir file \\
        --output fpkm_matrix.tsv
    python 01_merge_fpkm_matrix.py --measure tpm_unstranded --output tpm_matrix.tsv
    python 01_merge_fpkm_matrix.py --config config/merge_config.yaml --verbose

Exit status: 0 on success (even if some data files were unreadable),
1 on bad/empty metadata, unreadable data directory, unwritable output,
or an invalid config.
"""

import os
import sys
import argparse
import logging
from datetime import datetime

# --- Config integration ---
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'lib'))
from merge_utils import (
    STAR_COUNTS_MEASURES,
    create_stage_manifest,
    load_config,
    manifest_path_for,
    resolve_path,
    validate_config,
)
from fpkm_matrix import MergeError, merge_fpkm_matrix


def setup_logging(verbose: bool = False) -> logging.Logger:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    return logging.getLogger(__name__)


def apply_overrides(config: dict, args: argparse.Namespace) -> dict:
    """Command-line flags win over YAML values."""
    m = config['merge']
    if args.metadata:
        m['metadata_file'] = args.metadata
    if args.data_dir:
        m['data_dir'] = args.data_dir
    if args.output:
        m['output_file'] = args.output
    if args.gene_col is not None:
        m['gene_symbol_col'] = args.gene_col
    if args.measure:
        m['value_col'] = STAR_COUNTS_MEASURES[args.measure]
    if args.value_col is not None:
        m['value_col'] = args.value_col
    if args.no_manifest:
        m['write_manifest'] = False
    return config


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description='Merge per-sample quantification files into a gene x sample matrix',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Measures (GDC STAR-Counts columns, 0-based):
  unstranded=3  stranded_first=4  stranded_second=5
  tpm_unstranded=6  fpkm_unstranded=7  fpkm_uq_unstranded=8
"""
    )
    parser.add_argument('--config', help='Path to merge_config.yaml')
    parser.add_argument('--metadata', help='Metadata JSON (default: metadata.json)')
    parser.add_argument('--data-dir', help='Directory of quantification files (default: file)')
    parser.add_argument('--output', help='Output matrix TSV (default: fpkm_matrix.tsv)')
    parser.add_argument('--gene-col', type=int,
                        help='0-based gene symbol column (default: 1)')
    value = parser.add_mutually_exclusive_group()
    value.add_argument('--value-col', type=int,
                       help='0-based expression value column (default: 7)')
    value.add_argument('--measure', choices=sorted(STAR_COUNTS_MEASURES),
                       help='Named STAR-Counts value column')
    parser.add_argument('--no-manifest', action='store_true',
                        help='Do not write <output>.manifest.json')
    parser.add_argument('--quiet', action='store_true', help='No progress bar')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    logger = setup_logging(args.verbose)

    try:
        config = apply_overrides(load_config(args.config), args)
        validate_config(config)
    except (FileNotFoundError, ValueError) as e:
        logger.error(str(e))
        return 1

    m = config['merge']
    metadata_path = resolve_path(config, m['metadata_file'])
    data_dir = resolve_path(config, m['data_dir'])
    output_path = resolve_path(config, m['output_file'])

    logger.info("=" * 60)
    logger.info("FPKM MATRIX MERGE")
    logger.info(f"  Metadata:  {metadata_path}")
    logger.info(f"  Data dir:  {data_dir}")
    logger.info(f"  Output:    {output_path}")
    logger.info(f"  Columns:   gene={m['gene_symbol_col']} value={m['value_col']}")
    logger.info("=" * 60)

    start = datetime.now()
    try:
        summary = merge_fpkm_matrix(
            str(metadata_path),
            str(data_dir),
            str(output_path),
            gene_symbol_col=m['gene_symbol_col'],
            value_col=m['value_col'],
            skip_prefixes=m['skip_prefixes'],
            header_label=m['header_label'],
            na_value=m['na_value'],
            progress=not args.quiet and sys.stderr.isatty(),
        )
    except MergeError as e:
        logger.error(f"FATAL: {e}")
        return 1

    elapsed = (datetime.now() - start).total_seconds()

    if m['write_manifest']:
        manifest_path = manifest_path_for(str(output_path))
        try:
            create_stage_manifest(
                stage_name="merge_fpkm_matrix",
                inputs={"metadata": str(metadata_path), "data_dir": str(data_dir)},
                outputs={"matrix": str(output_path)},
                config=config,
                stats=summary.to_dict(),
                output_path=manifest_path,
            )
            logger.info(f"Manifest: {manifest_path}")
        except OSError as e:
            logger.warning(f"Could not write manifest {manifest_path}: {e}")

    logger.info("=" * 60)
    logger.info("MERGE SUMMARY")
    logger.info(f"  Metadata mappings:   {summary.metadata_mappings} "
                f"({summary.metadata_skipped} incomplete entries skipped)")
    logger.info(f"  Matched files:       {summary.matched_files}/{summary.directory_entries} "
                f"directory entries")
    logger.info(f"  Unreadable files:    {summary.unreadable_files}")
    logger.info(f"  Missing from dir:    {summary.missing_files}")
    logger.info(f"  Data lines:          {summary.data_lines}/{summary.lines_read}")
    logger.info(f"  Matrix:              {summary.genes} genes x {summary.sample_columns} samples")
    logger.info(f"  Time:                {elapsed:.1f}s")
    logger.info("=" * 60)
    return 0


if __name__ == '__main__':
    sys.exit(main())
