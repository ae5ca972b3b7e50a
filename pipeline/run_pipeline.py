#!/usr/bin/env python3
"""
run_pipeline.py - Orchestrator: merge quantification files, then QC the matrix

Runs the pipeline steps in dependency order:

  1. 01_merge_fpkm_matrix.py   → fpkm_matrix.tsv (+ manifest)
  2. 02_matrix_stats.py        → fpkm_matrix_stats.json

Usage:
    python run_pipeline.py                   # full run
    python run_pipeline.py --from 2          # start from step 2
    python run_pipeline.py --only 1          # run only step 1
    python run_pipeline.py --dry-run         # show plan without executing
    python run_pipeline.py --config config/merge_config.yaml
"""

import os
import sys
import subprocess
import argparse
import logging
from pathlib import Path
from datetime import datetime

# --- Config integration ---
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'lib'))
from merge_utils import load_config, resolve_path

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    handlers=[
        logging.StreamHandler(),
    ]
)
logger = logging.getLogger(__name__)

# ============================================================================
# STEP DEFINITIONS
# ============================================================================

SCRIPT_DIR = Path(__file__).parent


STEPS = [
    {
        'num': 1,
        'name': 'Merge quantification files into matrix',
        'script': '01_merge_fpkm_matrix.py',
        'outputs': lambda cfg: [
            resolve_path(cfg, cfg['merge']['output_file']),
        ],
    },
    {
        'num': 2,
        'name': 'Matrix statistics (QC)',
        'script': '02_matrix_stats.py',
        'outputs': lambda cfg: [
            resolve_path(cfg, cfg['stats']['output_file']),
        ],
    },
]


# ============================================================================
# EXECUTION
# ============================================================================

def check_outputs_exist(step: dict, config: dict) -> bool:
    """Check if all output files for a step already exist."""
    outputs = step['outputs'](config)
    if not outputs:
        return False
    return all(p.exists() for p in outputs)


def build_command(step: dict, config_path=None) -> list:
    cmd = [sys.executable, str(SCRIPT_DIR / step['script'])]
    if config_path:
        cmd.extend(['--config', str(config_path)])
    return cmd


def run_step(step: dict, config: dict, config_path=None, dry_run: bool = False) -> bool:
    """Run a single pipeline step. Returns True on success."""
    num = step['num']
    name = step['name']
    script = SCRIPT_DIR / step['script']

    if not script.exists():
        logger.error(f"Step {num}: Script not found: {script}")
        return False

    cmd = build_command(step, config_path)

    logger.info(f"{'-' * 60}")
    logger.info(f"Step {num}: {name}")
    logger.info(f"  Command: {' '.join(cmd)}")

    if dry_run:
        for p in step['outputs'](config):
            exists = 'exists' if p.exists() else 'missing'
            logger.info(f"  Output: {p} [{exists}]")
        return True

    start = datetime.now()
    try:
        result = subprocess.run(cmd, text=True)
    except OSError as e:
        logger.error(f"Step {num}: could not start: {e}")
        return False

    elapsed = (datetime.now() - start).total_seconds()
    if result.returncode != 0:
        logger.error(f"Step {num}: FAILED (exit code {result.returncode}) [{elapsed:.1f}s]")
        return False

    logger.info(f"Step {num}: DONE [{elapsed:.1f}s]")
    return True


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description='FPKM matrix pipeline orchestrator',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Steps:
  1  Merge quantification files into matrix
  2  Matrix statistics (QC)
"""
    )
    parser.add_argument('--config', help='Path to merge_config.yaml (passed to every step)')
    parser.add_argument('--from', dest='start_from', type=int, default=1,
                        help='Start from step N (default: 1)')
    parser.add_argument('--only', type=int, help='Run only step N')
    parser.add_argument('--dry-run', action='store_true',
                        help='Show plan without executing')
    parser.add_argument('--skip-existing', action='store_true',
                        help='Skip steps whose outputs already exist')
    parser.add_argument('--no-stop-on-fail', action='store_true',
                        help='Continue past failures (default: stop)')

    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except (FileNotFoundError, ValueError) as e:
        logger.error(str(e))
        return 1
    config_path = config['_config_path']

    if args.only:
        steps_to_run = [s for s in STEPS if s['num'] == args.only]
        if not steps_to_run:
            logger.error(f"No such step: {args.only}")
            return 1
    else:
        steps_to_run = [s for s in STEPS if s['num'] >= args.start_from]

    logger.info("=" * 60)
    logger.info("FPKM MATRIX PIPELINE")
    logger.info(f"Steps: {[s['num'] for s in steps_to_run]}")
    logger.info(f"Mode: {'DRY RUN' if args.dry_run else 'EXECUTE'}")
    logger.info("=" * 60)

    pipeline_start = datetime.now()
    passed = 0
    failed = 0
    skipped = 0

    for step in steps_to_run:
        if args.skip_existing and check_outputs_exist(step, config):
            logger.info(f"Step {step['num']}: {step['name']} - skipped (outputs exist)")
            skipped += 1
            continue

        ok = run_step(step, config, config_path=config_path, dry_run=args.dry_run)

        if ok:
            passed += 1
        else:
            failed += 1
            if not args.no_stop_on_fail and not args.dry_run:
                logger.error(f"Stopping pipeline at step {step['num']}.")
                break

    elapsed = (datetime.now() - pipeline_start).total_seconds()
    logger.info("=" * 60)
    logger.info("PIPELINE SUMMARY")
    logger.info(f"  Passed:  {passed}")
    logger.info(f"  Failed:  {failed}")
    logger.info(f"  Skipped: {skipped}")
    logger.info(f"  Time:    {elapsed:.1f}s")
    logger.info("=" * 60)

    return 1 if failed > 0 else 0


if __name__ == '__main__':
    sys.exit(main())
