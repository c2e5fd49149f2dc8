"""
Shared fixtures for core tests.

Every fixture writes under pytest's tmp_path so tests never touch the
default per-user database directory.
"""

from pathlib import Path

import pytest

from pipeline_debug.audit import AuditTrailBuilder
from pipeline_debug.config import DebugConfig
from pipeline_debug.recording import Recorder
from pipeline_debug.session import SessionContext
from pipeline_debug.storage import RecordStore


@pytest.fixture
def root_path(tmp_path: Path) -> Path:
    return tmp_path / "database"


@pytest.fixture
def config(root_path: Path) -> DebugConfig:
    """Create a DebugConfig rooted in a temporary directory."""
    return DebugConfig(root_path=root_path)


@pytest.fixture
def store(config: DebugConfig) -> RecordStore:
    store = RecordStore(config.root_path)
    store.ensure_namespaces()
    return store


@pytest.fixture
def context(store: RecordStore, config: DebugConfig) -> SessionContext:
    """Open a fresh session in the temporary store."""
    return SessionContext.open(store=store, config=config)


@pytest.fixture
def recorder(context: SessionContext) -> Recorder:
    return Recorder(context)


@pytest.fixture
def audit(context: SessionContext) -> AuditTrailBuilder:
    return AuditTrailBuilder(context)
