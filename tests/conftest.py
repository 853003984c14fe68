# tests/conftest.py
"""Shared test configuration.

Registers Hypothesis profiles and the shared fixtures:

- fake_cluster / fake_broker: in-memory broker (tests/fixtures/broker.py)
- stub_broker_binary: executable that behaves like a long-running broker
  process without opening any port, for lifecycle tests
"""

from __future__ import annotations

import logging
import os
import stat
from collections.abc import Iterator
from pathlib import Path

import pytest
import structlog
from hypothesis import Phase, Verbosity, settings

from tests.fixtures.broker import FakeBroker, FakeCluster, FakeServerManager

# =============================================================================
# Hypothesis Profiles
# =============================================================================

settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,  # Disable deadline for CI (timing varies)
)

settings.register_profile(
    "nightly",
    max_examples=1000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))


# =============================================================================
# Logging
# =============================================================================


@pytest.fixture(autouse=True)
def _restore_root_logger() -> Iterator[None]:
    """configure_logging replaces root handlers and the CLI binds run context;
    put the originals back."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers = handlers
    root.setLevel(level)
    structlog.contextvars.clear_contextvars()


# =============================================================================
# Broker Fixtures
# =============================================================================


@pytest.fixture
def fake_cluster() -> FakeCluster:
    """Empty in-memory cluster."""
    return FakeCluster()


@pytest.fixture
def fake_broker(fake_cluster: FakeCluster) -> FakeBroker:
    """Broker whose connections all point at fake_cluster."""
    return FakeBroker(fake_cluster)


@pytest.fixture
def fake_servers(fake_cluster: FakeCluster) -> FakeServerManager:
    """Three-server lifecycle double that pauses addresses of fake_cluster."""
    return FakeServerManager(fake_cluster, 3)


def _write_executable(path: Path, body: str) -> Path:
    path.write_text(f"#!/bin/sh\n{body}\n")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def stub_broker_binary(tmp_path: Path) -> Path:
    """Executable that ignores its arguments and sleeps until signalled."""
    return _write_executable(tmp_path / "stub-broker", "exec sleep 300")


@pytest.fixture
def crashing_broker_binary(tmp_path: Path) -> Path:
    """Executable that exits immediately with status 3."""
    return _write_executable(tmp_path / "crashing-broker", "exit 3")
