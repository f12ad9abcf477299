"""Configuration loading utilities for the fulfillment service.

Provides a centralized way to load and validate the parameters.yaml
configuration file across the record store, archive, merge, label and
pipeline components.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .enums import MergeBackend, MergeTransport
from .orchestrator import DEFAULT_MERGED_TEMPLATE, MERGED_FILENAME_FIELDS
from .render_labels import DEFAULT_FILENAME_TEMPLATE, FILENAME_FIELDS
from .utils import MAX_LABEL_COUNT, extract_template_fields

SCRIPT_DIR = Path(__file__).resolve().parent
DEFAULT_CONFIG_PATH = SCRIPT_DIR.parent / "config" / "parameters.yaml"
CONFIG_ENV_VAR = "FULFILLMENT_CONFIG"


def resolve_config_path(config_path: Optional[Path] = None) -> Path:
    """Return the explicit path, else $FULFILLMENT_CONFIG, else the default."""
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_PATH


def load_config(config_path: Optional[Path] = None) -> Dict[str, Any]:
    """Load and parse the parameters.yaml configuration file.

    Automatically validates the configuration after loading. Raises
    clear exceptions if validation fails, enabling fail-fast behavior
    for infrastructure errors.

    Parameters
    ----------
    config_path : Path, optional
        Path to the configuration file. If not provided, uses
        $FULFILLMENT_CONFIG when set, otherwise config/parameters.yaml in
        the project root.

    Returns
    -------
    Dict[str, Any]
        Parsed and validated YAML configuration as a nested dictionary.

    Raises
    ------
    FileNotFoundError
        If the configuration file does not exist.
    yaml.YAMLError
        If the configuration file is invalid YAML.
    ValueError
        If the configuration fails validation (see validate_config).
    """
    config_path = resolve_config_path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with config_path.open("r", encoding="utf-8") as f:
        config = yaml.safe_load(f) or {}

    validate_config(config)
    return config


def _require_positive_int(value: Any, key: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key} must be an integer, got {type(value).__name__}")
    if value <= 0:
        raise ValueError(f"{key} must be positive, got {value}")


def _validate_alias_table(table: Any, key: str) -> None:
    if not isinstance(table, dict):
        raise ValueError(f"{key} must be a mapping, got {type(table).__name__}")
    for field, aliases in table.items():
        if not isinstance(aliases, list) or not aliases:
            raise ValueError(f"{key}.{field} must be a non-empty list of header names")
        if not all(isinstance(alias, str) and alias.strip() for alias in aliases):
            raise ValueError(f"{key}.{field} must contain only non-empty strings")


def _validate_filename_template(template: Any, key: str, allowed_fields: set[str]) -> None:
    if not isinstance(template, str) or not template.strip():
        raise ValueError(
            f"{key} must be a non-empty string, got {type(template).__name__}"
        )
    try:
        placeholders = extract_template_fields(template)
    except ValueError as exc:
        raise ValueError(f"{key}: {exc}") from exc
    unknown = placeholders - allowed_fields
    if unknown:
        raise ValueError(
            f"{key} has unknown placeholder(s) {sorted(unknown)}. "
            f"Allowed: {sorted(allowed_fields)}"
        )


def validate_config(config: Dict[str, Any]) -> None:
    """Validate the entire configuration for consistency and required values.

    Parameters
    ----------
    config : Dict[str, Any]
        Configuration dictionary (result of load_config).

    Raises
    ------
    ValueError
        If required configuration is missing or invalid.

    Notes
    -----
    **Validation checks:**

    - **Record store:** key_column must be a non-empty string; column alias
      tables must map field names to non-empty lists of header names;
      fuzzy_header_threshold must be within 0-100
    - **Merge:** backend must be remote or local; a remote backend requires
      merge.url; transport must be base64 or url
    - **Labels:** max_count must be an integer in 1..MAX_LABEL_COUNT;
      render_concurrency must be a positive integer; filename_template may
      only use label filename placeholders
    - **HTTP:** timeout_seconds must be positive
    - **Pipeline:** boolean flags must be booleans; merged_filename_template
      may only use merged filename placeholders
    """
    record_config = config.get("record_store", {})
    key_column = record_config.get("key_column", "FormID")
    if not isinstance(key_column, str) or not key_column.strip():
        raise ValueError("record_store.key_column must be a non-empty string")

    threshold = record_config.get("fuzzy_header_threshold", 0)
    if isinstance(threshold, bool) or not isinstance(threshold, (int, float)):
        raise ValueError(
            f"record_store.fuzzy_header_threshold must be a number, "
            f"got {type(threshold).__name__}"
        )
    if not 0 <= threshold <= 100:
        raise ValueError(
            f"record_store.fuzzy_header_threshold must be between 0 and 100, got {threshold}"
        )

    if "columns" in record_config:
        _validate_alias_table(record_config["columns"], "record_store.columns")
    if "update_columns" in record_config:
        _validate_alias_table(
            record_config["update_columns"], "record_store.update_columns"
        )

    merge_config = config.get("merge", {})
    try:
        backend = MergeBackend.from_string(merge_config.get("backend"))
        MergeTransport.from_string(merge_config.get("transport"))
    except ValueError as exc:
        raise ValueError(f"Invalid merge configuration: {exc}") from exc

    if backend is MergeBackend.REMOTE:
        merge_url = merge_config.get("url")
        if not merge_url or not isinstance(merge_url, str):
            raise ValueError(
                "Merge backend is 'remote' but merge.url is not specified. "
                "Please define merge.url in config/parameters.yaml "
                "or set merge.backend to local."
            )

    labels_config = config.get("labels", {})
    max_count = labels_config.get("max_count", MAX_LABEL_COUNT)
    _require_positive_int(max_count, "labels.max_count")
    if max_count > MAX_LABEL_COUNT:
        raise ValueError(
            f"labels.max_count must be at most {MAX_LABEL_COUNT}, got {max_count}"
        )
    _require_positive_int(
        labels_config.get("render_concurrency", 1), "labels.render_concurrency"
    )
    _validate_filename_template(
        labels_config.get("filename_template", DEFAULT_FILENAME_TEMPLATE),
        "labels.filename_template",
        FILENAME_FIELDS,
    )

    timeout = config.get("http", {}).get("timeout_seconds", 60)
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
        raise ValueError(f"http.timeout_seconds must be a positive number, got {timeout!r}")

    pipeline_config = config.get("pipeline", {})
    _validate_filename_template(
        pipeline_config.get("merged_filename_template", DEFAULT_MERGED_TEMPLATE),
        "pipeline.merged_filename_template",
        MERGED_FILENAME_FIELDS,
    )
    for flag in ("cleanup_labels_on_merge_failure", "serialize_per_form_id"):
        value = pipeline_config.get(flag, False)
        if not isinstance(value, bool):
            raise ValueError(
                f"pipeline.{flag} must be a boolean, got {type(value).__name__}"
            )
