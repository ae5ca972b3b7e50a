"""
merge_utils.py - Shared config and bookkeeping utilities for the FPKM merge pipeline.

MECHANISM ONLY. Policy (which columns to read, which line prefixes to
skip, where inputs and outputs live) lives in merge_config.yaml.

This module provides:
  - Config loading, defaults and path resolution
  - Config validation
  - Named value columns of the GDC STAR-Counts layout
  - File checksum computation
  - Stage manifest creation
"""

import copy
import hashlib
import json
import os
import subprocess
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional


# ============================================================
# DEFAULTS
# ============================================================

DEFAULT_CONFIG = {
    "project_root": ".",
    "merge": {
        "metadata_file": "metadata.json",
        "data_dir": "file",
        "output_file": "fpkm_matrix.tsv",
        "gene_symbol_col": 1,
        "value_col": 7,
        "skip_prefixes": [
            "#",
            "N_unmapped",
            "N_multimapping",
            "N_noFeature",
            "N_ambiguous",
            "gene_id",
        ],
        "header_label": "GeneSymbol",
        "na_value": "NA",
        "write_manifest": True,
    },
    "stats": {
        "output_file": "fpkm_matrix_stats.json",
    },
}

# GDC STAR-Counts augmented gene counts: 0-based column of each measure
STAR_COUNTS_MEASURES = {
    "unstranded":         3,
    "stranded_first":     4,
    "stranded_second":    5,
    "tpm_unstranded":     6,
    "fpkm_unstranded":    7,
    "fpkm_uq_unstranded": 8,
}


# ============================================================
# CONFIG LOADING
# ============================================================

def _merge_sections(base: dict, override: dict) -> dict:
    """Overlay a (possibly partial) YAML document onto the defaults."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key].update(value)
        else:
            merged[key] = value
    return merged


def load_config(config_path: Optional[str] = None) -> dict:
    """
    Load pipeline config from YAML, layered over DEFAULT_CONFIG.
    Resolves project_root from PIPELINE_ROOT env var or config default.

    Args:
        config_path: Path to YAML file. If None, searches for
                     config/merge_config.yaml relative to this file,
                     then cwd. If nothing is found the built-in
                     defaults are used.

    Raises:
        FileNotFoundError if config_path is given but does not exist.
        ValueError if the YAML document is not a mapping.
    """
    import yaml

    if config_path is None:
        candidates = [
            Path(__file__).parent.parent / "config" / "merge_config.yaml",
            Path.cwd() / "config" / "merge_config.yaml",
            Path.cwd() / "merge_config.yaml",
        ]
        for c in candidates:
            if c.is_file():
                config_path = str(c)
                break
    elif not os.path.isfile(config_path):
        raise FileNotFoundError(f"Config file not found: {config_path}")

    loaded = {}
    if config_path is not None:
        with open(config_path) as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"Config {config_path} must be a YAML mapping")

    config = _merge_sections(DEFAULT_CONFIG, loaded)
    config["_config_path"] = config_path

    config["_project_root"] = Path(
        os.environ.get("PIPELINE_ROOT", config.get("project_root", "."))
    ).resolve()

    return config


def resolve_path(config: dict, relative_path: str) -> Path:
    """Resolve a config-relative path to absolute using project_root."""
    return config["_project_root"] / relative_path


# ============================================================
# CONFIG VALIDATION
# ============================================================

def _is_index(value) -> bool:
    # bool is an int subclass; reject it explicitly
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def _is_cell_text(value) -> bool:
    return isinstance(value, str) and value != "" and not any(c in value for c in "\t\r\n")


def validate_config(config: dict):
    """
    Validate the merge section of a loaded config.
    Raises ValueError listing every problem found.
    """
    errors: List[str] = []
    m = config.get("merge", {})

    for key in ("metadata_file", "data_dir", "output_file"):
        if not m.get(key):
            errors.append(f"merge.{key} is required")

    gene_col = m.get("gene_symbol_col")
    value_col = m.get("value_col")
    if not _is_index(gene_col):
        errors.append(f"merge.gene_symbol_col must be a non-negative integer, got {gene_col!r}")
    if not _is_index(value_col):
        errors.append(f"merge.value_col must be a non-negative integer, got {value_col!r}")
    if _is_index(gene_col) and _is_index(value_col) and gene_col == value_col:
        errors.append("merge.gene_symbol_col and merge.value_col must differ")

    prefixes = m.get("skip_prefixes")
    if not isinstance(prefixes, list) or not all(
        isinstance(p, str) and p for p in prefixes
    ):
        errors.append("merge.skip_prefixes must be a list of non-empty strings")

    for key in ("header_label", "na_value"):
        if not _is_cell_text(m.get(key)):
            errors.append(
                f"merge.{key} must be a non-empty string without tabs or newlines"
            )

    if not config.get("stats", {}).get("output_file"):
        errors.append("stats.output_file is required")

    if errors:
        raise ValueError(
            "Config validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        )


# ============================================================
# FILE UTILITIES
# ============================================================

def compute_file_checksum(filepath: str, algorithm: str = "md5") -> str:
    """Compute hex digest of a file."""
    h = hashlib.new(algorithm)
    with open(filepath, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            h.update(chunk)
    return h.hexdigest()


def manifest_path_for(output_path: str) -> str:
    return f"{output_path}.manifest.json"


# ============================================================
# STAGE MANIFEST
# ============================================================

def _describe(fpath: str) -> dict:
    entry = {"path": fpath}
    if os.path.isfile(fpath):
        entry["md5"] = compute_file_checksum(fpath)
        entry["size_bytes"] = os.path.getsize(fpath)
    return entry


def _git_commit() -> Optional[str]:
    try:
        result = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            capture_output=True, text=True, timeout=5
        )
    except (OSError, subprocess.SubprocessError):
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip()


def create_stage_manifest(
    stage_name: str,
    inputs: Dict[str, str],
    outputs: Dict[str, str],
    config: dict,
    stats: dict,
    output_path: str,
) -> dict:
    """
    Write a JSON manifest for a pipeline stage.

    Records: inputs (with checksums), outputs, full config snapshot,
    git commit if available, timestamp, and runtime stats.
    """
    manifest = {
        "stage": stage_name,
        "timestamp": datetime.now().isoformat(),
        "inputs": {label: _describe(p) for label, p in inputs.items()},
        "outputs": {label: _describe(p) for label, p in outputs.items()},
        "config": {k: v for k, v in config.items() if not k.startswith("_")},
        "stats": stats,
    }

    commit = _git_commit()
    if commit:
        manifest["git_commit"] = commit

    with open(output_path, "w") as f:
        json.dump(manifest, f, indent=2)

    return manifest
