"""Shared test fixtures for polydoc tests."""

from __future__ import annotations

import pytest

from polydoc.config import PolydocConfig
from polydoc.coordinator import ConditionalWriteCoordinator
from polydoc.service import DatabaseService
from polydoc.storage_local import LocalFileBackend


@pytest.fixture
def config(tmp_path) -> PolydocConfig:
    """Config rooted in a temporary directory with instant contention retries."""
    return PolydocConfig(
        database_name="testdb",
        local_root=str(tmp_path),
        contention_max_attempts=3,
        contention_retry_delay_s=0.0,
        mutex_acquire_timeout_s=5.0,
    )


@pytest.fixture
def backend(config):
    b = LocalFileBackend(root=config.local_root, database_name=config.database_name)
    yield b
    b.close()


@pytest.fixture
def coordinator(backend) -> ConditionalWriteCoordinator:
    return ConditionalWriteCoordinator(backend, max_attempts=3, retry_delay_s=0.0)


@pytest.fixture
def service(backend, config):
    svc = DatabaseService(backend, config=config)
    yield svc
    svc.close()
