#!/usr/bin/env python3
"""
02_matrix_stats.py - Summarize a merged gene x sample matrix

Reads the TSV written by 01_merge_fpkm_matrix.py and reports coverage
and value distributions per sample column, so empty or truncated
samples stand out before downstream analysis.

Per sample column:
  - genes with a value / NA cells
  - non-numeric values (values are carried verbatim by the merge)
  - min / median / mean / max of the numeric values

Overall:
  - gene and sample counts, repeated sample columns
  - fraction of NA cells, genes that are NA in every sample

Usage:
    python 02_matrix_stats.py
    python 02_matrix_stats.py --matrix fpkm_matrix.tsv --output fpkm_matrix_stats.json
"""

import os
import sys
import csv
import json
import argparse
import logging
from collections import Counter
from datetime import datetime
from typing import Dict, List, Optional

import numpy as np
import pandas as pd

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'lib'))
from merge_utils import load_config, resolve_path, validate_config

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> logging.Logger:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    return logging.getLogger(__name__)


# =============================================================================
# LOADING
# =============================================================================

def read_header(matrix_path: str) -> List[str]:
    with open(matrix_path, encoding='utf-8', errors='surrogateescape') as f:
        first = f.readline()
    if not first:
        raise ValueError(f"{matrix_path} is empty")
    return first.rstrip('\n').split('\t')


def load_matrix(matrix_path: str, header_label: str = 'GeneSymbol',
                na_value: str = 'NA') -> pd.DataFrame:
    """
    Load a merged matrix with every cell as a string.

    Only na_value marks a missing cell. Repeated sample columns are kept
    under their original (repeated) names.
    """
    header = read_header(matrix_path)
    if header[0] != header_label:
        raise ValueError(
            f"{matrix_path}: first header cell is {header[0]!r}, expected {header_label!r}"
        )
    samples = header[1:]

    # na_value applies to value columns only; a gene may be named like it
    try:
        df = pd.read_csv(
            matrix_path, sep='\t', header=None, skiprows=1,
            dtype=str, keep_default_na=False,
            na_values={j: [na_value] for j in range(1, len(samples) + 1)},
            quoting=csv.QUOTE_NONE, encoding='utf-8', encoding_errors='surrogateescape',
        )
    except pd.errors.EmptyDataError:
        df = pd.DataFrame(columns=range(len(samples) + 1), dtype=str)

    if df.shape[1] - 1 != len(samples):
        raise ValueError(
            f"{matrix_path}: {df.shape[1] - 1} value columns but {len(samples)} samples in header"
        )
    df = df.set_index(0)
    df.columns = samples
    df.index.name = header_label
    return df


# =============================================================================
# STATISTICS
# =============================================================================

def _finite(x) -> Optional[float]:
    # JSON has no inf/nan
    x = float(x)
    return x if np.isfinite(x) else None


def _describe_numeric(values: np.ndarray) -> Dict[str, Optional[float]]:
    if values.size == 0:
        return {"min": None, "median": None, "mean": None, "max": None}
    return {
        "min": _finite(np.min(values)),
        "median": _finite(np.median(values)),
        "mean": _finite(np.mean(values)),
        "max": _finite(np.max(values)),
    }


def sample_stats(column: pd.Series) -> dict:
    present = column.dropna()
    numeric = pd.to_numeric(present, errors='coerce')
    values = numeric.dropna().to_numpy(dtype=float)
    return {
        "genes_with_value": int(present.size),
        "na_cells": int(column.isna().sum()),
        "non_numeric_values": int(numeric.isna().sum()),
        **_describe_numeric(values),
    }


def compute_matrix_stats(matrix_path: str, header_label: str = 'GeneSymbol',
                         na_value: str = 'NA') -> dict:
    df = load_matrix(matrix_path, header_label=header_label, na_value=na_value)
    n_genes, n_samples = df.shape

    samples = []
    for j, name in enumerate(df.columns):
        entry = {"sample": name}
        entry.update(sample_stats(df.iloc[:, j]))
        samples.append(entry)

    missing = df.isna().to_numpy()
    repeated = {s: n for s, n in sorted(Counter(df.columns).items()) if n > 1}

    return {
        "matrix": os.path.abspath(matrix_path),
        "timestamp": datetime.now().isoformat(),
        "n_genes": int(n_genes),
        "n_samples": int(n_samples),
        "repeated_samples": repeated,
        "missing_fraction": float(missing.mean()) if missing.size else 0.0,
        "genes_missing_in_all_samples": int(missing.all(axis=1).sum()) if n_samples else 0,
        "samples": samples,
    }


# =============================================================================
# MAIN
# =============================================================================

def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description='Summarize a merged gene x sample matrix')
    parser.add_argument('--config', help='Path to merge_config.yaml')
    parser.add_argument('--matrix', help='Matrix TSV (default: merge.output_file)')
    parser.add_argument('--output', help='Stats JSON (default: stats.output_file)')
    parser.add_argument('--verbose', '-v', action='store_true')
    args = parser.parse_args(argv)

    logger = setup_logging(args.verbose)

    try:
        config = load_config(args.config)
        validate_config(config)
    except (FileNotFoundError, ValueError) as e:
        logger.error(str(e))
        return 1

    m = config['merge']
    matrix_path = args.matrix or str(resolve_path(config, m['output_file']))
    output_path = args.output or str(resolve_path(config, config['stats']['output_file']))

    logger.info(f"Summarizing {matrix_path}")
    try:
        stats = compute_matrix_stats(matrix_path, header_label=m['header_label'],
                                     na_value=m['na_value'])
    except (OSError, ValueError) as e:
        logger.error(f"FATAL: cannot summarize {matrix_path}: {e}")
        return 1

    try:
        with open(output_path, 'w') as f:
            json.dump(stats, f, indent=2, allow_nan=False)
    except (OSError, ValueError) as e:
        logger.error(f"FATAL: cannot write stats to {output_path}: {e}")
        return 1

    logger.info(f"  Genes:    {stats['n_genes']}")
    logger.info(f"  Samples:  {stats['n_samples']}")
    logger.info(f"  Missing:  {stats['missing_fraction']:.1%} of cells")
    empty = [s['sample'] for s in stats['samples'] if s['genes_with_value'] == 0]
    if empty:
        logger.warning(f"  {len(empty)} sample(s) without any value: {', '.join(empty[:10])}")
    if stats['repeated_samples']:
        logger.warning(f"  Repeated sample columns: {stats['repeated_samples']}")
    logger.info(f"Stats written to {output_path}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
