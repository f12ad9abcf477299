"""Shared pytest fixtures for unit and integration tests.

This module provides:
- Intake sheet grids and in-memory record stores
- In-memory archive, fake image fetcher and local merge client
- A fully wired FulfillmentServices container with a fixed clock
- Configuration fixtures for parameter testing
"""

from __future__ import annotations

import copy
import logging
from pathlib import Path
from typing import Any, Dict, List

import pytest
import yaml

from fulfillment.config_loader import DEFAULT_CONFIG_PATH, load_config
from fulfillment.merge_client import LocalMergeClient
from fulfillment.orchestrator import FulfillmentServices, PipelineSettings
from fulfillment.record_store import InMemoryRecordStore
from fulfillment.records import RecordSettings
from fulfillment.render_labels import LabelRenderer, LabelSettings
from tests.fixtures.sample_input import (
    FIXED_NOW,
    LABEL_FOLDER,
    MERGED_FOLDER,
    FakeImageFetcher,
    FlakyArchive,
    create_intake_grid,
)


@pytest.fixture(autouse=True)
def reset_package_logger():
    """Drop handlers added by configure_logging during a test.

    Handlers bind to the stream current at creation; a captured stream is
    closed once its test ends.
    """
    logger = logging.getLogger("fulfillment")
    saved = list(logger.handlers), logger.level
    yield
    logger.handlers[:] = saved[0]
    logger.setLevel(saved[1])


@pytest.fixture
def intake_grid() -> List[List[Any]]:
    """Provide the sample intake sheet grid.

    Real-world significance:
    - Header row plus two realistic client rows
    - Shared shape for lookup, update and pipeline tests
    """
    return create_intake_grid()


@pytest.fixture
def record_store(intake_grid: List[List[Any]]) -> InMemoryRecordStore:
    """Provide an in-memory record store holding the sample grid."""
    return InMemoryRecordStore(intake_grid)


@pytest.fixture
def archive() -> FlakyArchive:
    """Provide an empty in-memory archive (no failures injected)."""
    return FlakyArchive()


@pytest.fixture
def image_fetcher() -> FakeImageFetcher:
    """Provide an image fetcher serving a generated PNG."""
    return FakeImageFetcher()


@pytest.fixture
def label_settings() -> LabelSettings:
    """Provide label settings pointing at fake asset URLs."""
    return LabelSettings(
        logo_url="https://assets.invalid/logo.png",
        label_folder_id=LABEL_FOLDER,
    )


@pytest.fixture
def renderer(archive: FlakyArchive, image_fetcher: FakeImageFetcher, label_settings: LabelSettings) -> LabelRenderer:
    return LabelRenderer(archive=archive, fetcher=image_fetcher, settings=label_settings)


@pytest.fixture
def services(
    record_store: InMemoryRecordStore,
    archive: FlakyArchive,
    renderer: LabelRenderer,
) -> FulfillmentServices:
    """Provide a fully wired services container with no network access.

    Real-world significance:
    - Same pipeline code path as production, with in-memory collaborators
    - Merge runs locally with pypdf so merged page counts can be asserted
    - Clock is fixed so generated names and timestamps are deterministic
    """
    return FulfillmentServices(
        record_store=record_store,
        archive=archive,
        merge_client=LocalMergeClient(),
        renderer=renderer,
        record_settings=RecordSettings(),
        settings=PipelineSettings(merged_folder_id=MERGED_FOLDER),
        clock=lambda: FIXED_NOW,
    )


@pytest.fixture
def default_config() -> Dict[str, Any]:
    """Provide a copy of the shipped config/parameters.yaml.

    Real-world significance:
    - Tests exercise the same defaults operators deploy with
    - Copy so tests can mutate sections freely
    """
    return copy.deepcopy(load_config(DEFAULT_CONFIG_PATH))


@pytest.fixture
def config_file(tmp_path: Path, default_config: Dict[str, Any]) -> Path:
    """Write the default configuration to a temporary parameters.yaml.

    Returns
    -------
    Path
        Path to the written file.
    """
    path = tmp_path / "parameters.yaml"
    path.write_text(yaml.safe_dump(default_config), encoding="utf-8")
    return path
