"""Unit tests for config_loader module - YAML loading and validation.

Tests cover:
- Loading the shipped parameters.yaml and custom paths
- FULFILLMENT_CONFIG environment override
- Validation of record store, merge, labels, http and pipeline sections
- Error handling for missing files

Real-world significance:
- Configuration names the spreadsheet, folders and merge service in production
- A bad value must stop the service at start, not halfway through a run
"""

from __future__ import annotations

from pathlib import Path

import pytest

from fulfillment import config_loader


@pytest.mark.unit
class TestLoadConfig:
    """Unit tests for load_config function."""

    def test_load_config_with_default_path(self) -> None:
        """Verify the shipped configuration loads and validates.

        Real-world significance:
        - The service must start with the committed defaults
        """
        config = config_loader.load_config(config_loader.DEFAULT_CONFIG_PATH)

        assert config["record_store"]["key_column"] == "FormID"
        assert config["labels"]["max_count"] == 5
        assert config["pipeline"]["cleanup_labels_on_merge_failure"] is False
        assert config["pipeline"]["serialize_per_form_id"] is True

    def test_load_config_with_custom_path(self, tmp_path: Path) -> None:
        config_path = tmp_path / "custom.yaml"
        config_path.write_text("merge:\n  backend: local\nlabels:\n  max_count: 3\n")

        config = config_loader.load_config(config_path)

        assert config["merge"]["backend"] == "local"
        assert config["labels"]["max_count"] == 3

    def test_load_config_empty_file(self, tmp_path: Path) -> None:
        """Verify an empty file is rejected because remote merge needs a URL.

        Real-world significance:
        - Defaults select the remote merge service, which cannot run without a URL
        """
        config_path = tmp_path / "empty.yaml"
        config_path.write_text("")

        with pytest.raises(ValueError, match="merge.url"):
            config_loader.load_config(config_path)

    def test_load_config_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError, match="Configuration file not found"):
            config_loader.load_config(tmp_path / "missing.yaml")

    def test_environment_override(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Verify FULFILLMENT_CONFIG selects another file.

        Real-world significance:
        - Deployments mount their configuration outside the package
        """
        config_path = tmp_path / "deployed.yaml"
        config_path.write_text("merge:\n  backend: local\napi:\n  service_name: pantry-test\n")
        monkeypatch.setenv(config_loader.CONFIG_ENV_VAR, str(config_path))

        config = config_loader.load_config()

        assert config["api"]["service_name"] == "pantry-test"

    def test_explicit_path_beats_environment(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv(config_loader.CONFIG_ENV_VAR, str(tmp_path / "missing.yaml"))

        assert config_loader.resolve_config_path(Path("explicit.yaml")) == Path("explicit.yaml")


@pytest.mark.unit
class TestValidateConfig:
    """Unit tests for validate_config function."""

    def test_valid_minimal_local_config(self) -> None:
        config_loader.validate_config({"merge": {"backend": "local"}})

    def test_remote_backend_requires_url(self) -> None:
        with pytest.raises(ValueError, match="merge.url is not specified"):
            config_loader.validate_config({"merge": {"backend": "remote"}})

    def test_unknown_transport(self) -> None:
        with pytest.raises(ValueError, match="Invalid merge configuration"):
            config_loader.validate_config(
                {"merge": {"backend": "local", "transport": "carrier-pigeon"}}
            )

    @pytest.mark.parametrize("value", [0, -1, "5", 2.5, True])
    def test_max_count_must_be_positive_int(self, value) -> None:
        with pytest.raises(ValueError, match="labels.max_count"):
            config_loader.validate_config(
                {"merge": {"backend": "local"}, "labels": {"max_count": value}}
            )

    @pytest.mark.parametrize("value", [6, 10])
    def test_max_count_capped_at_five(self, value) -> None:
        """Verify configuration cannot raise the bags-per-order ceiling.

        Real-world significance:
        - Orders are packed into at most five bags; more labels is a data-entry error
        """
        with pytest.raises(ValueError, match="labels.max_count must be at most 5"):
            config_loader.validate_config(
                {"merge": {"backend": "local"}, "labels": {"max_count": value}}
            )

    def test_max_count_may_be_lowered(self) -> None:
        config_loader.validate_config({"merge": {"backend": "local"}, "labels": {"max_count": 1}})

    @pytest.mark.parametrize(
        "section, key",
        [("labels", "filename_template"), ("pipeline", "merged_filename_template")],
    )
    def test_filename_template_unknown_placeholder(self, section, key) -> None:
        """Verify a template typo is rejected at load, not after labels are archived.

        Real-world significance:
        - A bad name template would otherwise fail every run midway
        """
        with pytest.raises(ValueError, match=rf"{section}.{key} has unknown placeholder\(s\) \['bogus'\]"):
            config_loader.validate_config(
                {"merge": {"backend": "local"}, section: {key: "{bogus}.pdf"}}
            )

    @pytest.mark.parametrize("template", ["", "{form_id.pdf", 42])
    def test_filename_template_malformed(self, template) -> None:
        with pytest.raises(ValueError, match="labels.filename_template"):
            config_loader.validate_config(
                {"merge": {"backend": "local"}, "labels": {"filename_template": template}}
            )

    def test_custom_templates_with_known_placeholders(self) -> None:
        config_loader.validate_config(
            {
                "merge": {"backend": "local"},
                "labels": {"filename_template": "{form_id}-{index}.pdf"},
                "pipeline": {"merged_filename_template": "{prefix}_{first_name}_{epoch_millis}.pdf"},
            }
        )

    def test_render_concurrency_must_be_positive(self) -> None:
        with pytest.raises(ValueError, match="labels.render_concurrency"):
            config_loader.validate_config(
                {"merge": {"backend": "local"}, "labels": {"render_concurrency": 0}}
            )

    @pytest.mark.parametrize("value", [-1, 101, "high"])
    def test_fuzzy_threshold_range(self, value) -> None:
        """Verify the fuzzy header threshold is a 0-100 ratio.

        Real-world significance:
        - A threshold above 100 silently disables matching; below 0 matches anything
        """
        with pytest.raises(ValueError, match="fuzzy_header_threshold"):
            config_loader.validate_config(
                {"merge": {"backend": "local"}, "record_store": {"fuzzy_header_threshold": value}}
            )

    def test_alias_tables_must_be_lists_of_names(self) -> None:
        with pytest.raises(ValueError, match="record_store.columns.first_name"):
            config_loader.validate_config(
                {
                    "merge": {"backend": "local"},
                    "record_store": {"columns": {"first_name": "First Name"}},
                }
            )

    def test_key_column_required(self) -> None:
        with pytest.raises(ValueError, match="key_column"):
            config_loader.validate_config(
                {"merge": {"backend": "local"}, "record_store": {"key_column": " "}}
            )

    def test_timeout_must_be_positive(self) -> None:
        with pytest.raises(ValueError, match="http.timeout_seconds"):
            config_loader.validate_config(
                {"merge": {"backend": "local"}, "http": {"timeout_seconds": 0}}
            )

    def test_pipeline_flags_must_be_booleans(self) -> None:
        """Verify YAML strings like "yes" in quotes are not accepted as flags."""
        with pytest.raises(ValueError, match="cleanup_labels_on_merge_failure"):
            config_loader.validate_config(
                {
                    "merge": {"backend": "local"},
                    "pipeline": {"cleanup_labels_on_merge_failure": "yes"},
                }
            )
