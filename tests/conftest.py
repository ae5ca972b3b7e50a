"""Shared fixtures: GDC-style metadata documents and STAR-Counts files on disk."""

import importlib.util
import json
import os
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT / "lib"))

PIPELINE_DIR = ROOT / "pipeline"

STAR_HEADER = "\t".join([
    "gene_id", "gene_name", "gene_type", "unstranded", "stranded_first",
    "stranded_second", "tpm_unstranded", "fpkm_unstranded", "fpkm_uq_unstranded",
])

STAR_SUMMARY = [
    "N_unmapped\t\t\t2714536\t2714536\t2714536\t\t\t",
    "N_multimapping\t\t\t3528455\t3528455\t3528455\t\t\t",
    "N_noFeature\t\t\t1811404\t29366453\t29499101\t\t\t",
    "N_ambiguous\t\t\t3578640\t133431\t134122\t\t\t",
]


def star_row(gene_id, gene_name, fpkm, tpm="0.0000", count="0"):
    return "\t".join([
        gene_id, gene_name, "protein_coding", count, count, count, tpm, fpkm, "0.0000",
    ])


def star_counts(rows):
    """Full STAR-Counts file text: comment, header, summary rows, then data."""
    lines = ["# gene-model: GENCODE v36", STAR_HEADER] + STAR_SUMMARY + list(rows)
    return "\n".join(lines) + "\n"


def gdc_record(file_name=None, sample_id=None):
    record = {"data_format": "TSV", "access": "open"}
    if file_name is not None:
        record["file_name"] = file_name
    if sample_id is not None:
        record["associated_entities"] = [{
            "entity_submitter_id": sample_id,
            "entity_type": "aliquot",
        }]
    return record


@pytest.fixture
def write_metadata(tmp_path):
    def _write(records, name="metadata.json"):
        path = tmp_path / name
        path.write_text(json.dumps(records))
        return path
    return _write


@pytest.fixture
def data_dir(tmp_path):
    d = tmp_path / "file"
    d.mkdir()
    return d


@pytest.fixture
def gdc_dataset(tmp_path, write_metadata, data_dir):
    """
    Two samples with partly overlapping genes, one data file that the
    metadata does not name, one metadata record whose file is absent.
    """
    (data_dir / "a.tsv").write_text(star_counts([
        star_row("ENSG00000000003.15", "TSPAN6", "1.2345", tpm="3.1"),
        star_row("ENSG00000000005.6", "TNMD", "0.0000", tpm="0.0"),
        star_row("ENSG00000000419.13", "DPM1", "45.6789", tpm="98.7"),
    ]))
    (data_dir / "b.tsv").write_text(star_counts([
        star_row("ENSG00000000003.15", "TSPAN6", "2.5000", tpm="6.2"),
        star_row("ENSG00000000457.14", "SCYL3", "3.0001", tpm="7.4"),
    ]))
    (data_dir / "unlisted.tsv").write_text(star_counts([
        star_row("ENSG00000000460.17", "C1orf112", "9.9"),
    ]))
    (data_dir / "README.txt").write_text("not a data file\n")

    metadata = write_metadata([
        gdc_record("b.tsv", "TCGA-02-0002-01A"),
        gdc_record("a.tsv", "TCGA-01-0001-01A"),
        gdc_record("missing.tsv", "TCGA-03-0003-01A"),
        gdc_record("orphan.tsv", None),
    ])
    return SimpleNamespace(
        metadata=metadata,
        data_dir=data_dir,
        output=tmp_path / "fpkm_matrix.tsv",
    )


@pytest.fixture
def load_script():
    """Import a numbered pipeline script by file path."""
    def _load(filename):
        path = PIPELINE_DIR / filename
        name = "script_" + os.path.splitext(filename)[0]
        spec = importlib.util.spec_from_file_location(name, path)
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
        return module
    return _load


@pytest.fixture
def star():
    return SimpleNamespace(row=star_row, counts=star_counts, header=STAR_HEADER)
