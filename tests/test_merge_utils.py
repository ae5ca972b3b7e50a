"""Tests for merge_utils: config loading and validation, checksums, manifests."""

import copy
import hashlib
import json

import pytest

from merge_utils import (
    DEFAULT_CONFIG,
    STAR_COUNTS_MEASURES,
    compute_file_checksum,
    create_stage_manifest,
    load_config,
    manifest_path_for,
    resolve_path,
    validate_config,
)


@pytest.fixture
def clean_env(monkeypatch):
    monkeypatch.delenv("PIPELINE_ROOT", raising=False)


def _config(**merge_overrides):
    config = copy.deepcopy(DEFAULT_CONFIG)
    config["merge"].update(merge_overrides)
    return config


class TestLoadConfig:
    def test_partial_yaml_layered_over_defaults(self, tmp_path, clean_env):
        path = tmp_path / "merge_config.yaml"
        path.write_text("merge:\n  value_col: 6\n  output_file: tpm.tsv\n")
        config = load_config(str(path))
        assert config["merge"]["value_col"] == 6
        assert config["merge"]["output_file"] == "tpm.tsv"
        assert config["merge"]["gene_symbol_col"] == 1
        assert config["merge"]["na_value"] == "NA"
        assert config["stats"]["output_file"] == "fpkm_matrix_stats.json"
        assert config["_config_path"] == str(path)

    def test_defaults_not_mutated(self, tmp_path, clean_env):
        path = tmp_path / "merge_config.yaml"
        path.write_text("merge:\n  value_col: 3\n")
        load_config(str(path))
        assert DEFAULT_CONFIG["merge"]["value_col"] == 7

    def test_empty_yaml_gives_defaults(self, tmp_path, clean_env):
        path = tmp_path / "merge_config.yaml"
        path.write_text("")
        config = load_config(str(path))
        assert config["merge"] == DEFAULT_CONFIG["merge"]

    def test_search_finds_a_config(self, clean_env):
        config = load_config()
        assert config["merge"]["value_col"] == STAR_COUNTS_MEASURES["fpkm_unstranded"]

    def test_explicit_missing_path(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "nope.yaml"))

    def test_non_mapping_yaml(self, tmp_path):
        path = tmp_path / "merge_config.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ValueError, match="mapping"):
            load_config(str(path))

    def test_project_root_from_config(self, tmp_path, clean_env):
        path = tmp_path / "merge_config.yaml"
        path.write_text(f"project_root: {tmp_path}\n")
        config = load_config(str(path))
        assert resolve_path(config, "file") == tmp_path.resolve() / "file"

    def test_pipeline_root_env_wins(self, tmp_path, monkeypatch):
        path = tmp_path / "merge_config.yaml"
        path.write_text("project_root: /somewhere/else\n")
        monkeypatch.setenv("PIPELINE_ROOT", str(tmp_path))
        config = load_config(str(path))
        assert config["_project_root"] == tmp_path.resolve()

    def test_absolute_paths_unchanged(self, tmp_path, clean_env):
        config = load_config()
        target = tmp_path / "metadata.json"
        assert resolve_path(config, str(target)) == target


class TestValidateConfig:
    def test_defaults_valid(self):
        validate_config(_config())

    def test_same_column(self):
        with pytest.raises(ValueError, match="must differ"):
            validate_config(_config(value_col=1))

    @pytest.mark.parametrize("value", [-1, "7", 7.0, True, None])
    def test_bad_value_col(self, value):
        with pytest.raises(ValueError, match="merge.value_col"):
            validate_config(_config(value_col=value))

    @pytest.mark.parametrize("key, value", [
        ("na_value", ""),
        ("na_value", "N\tA"),
        ("header_label", "Gene\n"),
        ("header_label", 5),
    ])
    def test_bad_cell_text(self, key, value):
        with pytest.raises(ValueError, match=f"merge.{key}"):
            validate_config(_config(**{key: value}))

    def test_bad_skip_prefixes(self):
        with pytest.raises(ValueError, match="skip_prefixes"):
            validate_config(_config(skip_prefixes="#"))
        with pytest.raises(ValueError, match="skip_prefixes"):
            validate_config(_config(skip_prefixes=["#", ""]))

    def test_all_errors_reported(self):
        with pytest.raises(ValueError) as excinfo:
            validate_config(_config(metadata_file="", gene_symbol_col=-2, na_value=""))
        message = str(excinfo.value)
        assert "merge.metadata_file" in message
        assert "merge.gene_symbol_col" in message
        assert "merge.na_value" in message


class TestManifest:
    def test_checksum(self, tmp_path):
        path = tmp_path / "x.tsv"
        path.write_bytes(b"GeneSymbol\tS1\n")
        assert compute_file_checksum(str(path)) == hashlib.md5(b"GeneSymbol\tS1\n").hexdigest()

    def test_manifest_path(self):
        assert manifest_path_for("out/fpkm_matrix.tsv") == "out/fpkm_matrix.tsv.manifest.json"

    def test_create_stage_manifest(self, tmp_path):
        metadata = tmp_path / "metadata.json"
        metadata.write_text("[]")
        matrix = tmp_path / "fpkm_matrix.tsv"
        matrix.write_text("GeneSymbol\n")
        out = tmp_path / "manifest.json"
        config = _config()
        config["_project_root"] = tmp_path

        manifest = create_stage_manifest(
            stage_name="merge_fpkm_matrix",
            inputs={"metadata": str(metadata), "data_dir": str(tmp_path / "file")},
            outputs={"matrix": str(matrix)},
            config=config,
            stats={"genes": 0},
            output_path=str(out),
        )

        on_disk = json.loads(out.read_text())
        assert on_disk == manifest
        assert on_disk["stage"] == "merge_fpkm_matrix"
        assert on_disk["inputs"]["metadata"]["md5"] == hashlib.md5(b"[]").hexdigest()
        assert on_disk["inputs"]["metadata"]["size_bytes"] == 2
        assert "md5" not in on_disk["inputs"]["data_dir"]
        assert on_disk["outputs"]["matrix"]["size_bytes"] == len("GeneSymbol\n")
        assert "_project_root" not in on_disk["config"]
        assert on_disk["stats"] == {"genes": 0}
