"""
Global pytest fixtures for girbridge tests.

This module provides:
- Fault handling for native crashes
- The fake native library and a repository describing it
- An engine wired to that repository

Native code is exercised for real: the fake library's entry points are
ctypes callbacks, so every engine call crosses libffi.
"""

import faulthandler
import gc
import logging

import pytest

from girbridge import Engine, EngineConfig, Repository
from girbridge._logging import logger
from tests.fixtures.native import FakeLibrary

# Enable faulthandler to trace native crashes (segfaults)
faulthandler.enable()


# =============================================================================
# Native Library
# =============================================================================


@pytest.fixture
def fake():
    """Fresh fake native library."""
    return FakeLibrary()


@pytest.fixture
def repository(fake):
    """Repository holding the fake library's metadata and symbols."""
    return fake.install(Repository())


@pytest.fixture
def engine(repository):
    """Engine over the fake library, closed after the test."""
    engine = Engine(repository, EngineConfig())
    yield engine
    engine.close()
    gc.collect()


# =============================================================================
# Logging
# =============================================================================


@pytest.fixture
def captured_logs(caplog):
    """Capture girbridge records at DEBUG level."""
    propagate = logger.propagate
    logger.propagate = True
    caplog.set_level(logging.DEBUG, logger="girbridge")
    yield caplog
    logger.propagate = propagate
