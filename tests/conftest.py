"""Shared fixtures for the test suite."""

import sys

import pytest

from mediaworker.core.config import WorkerSettings
from support import FAKE_ENGINE


@pytest.fixture
def engine_settings() -> WorkerSettings:
    """Settings that launch the scripted fake engine.

    :returns: Worker settings pointing at ``tests/fixtures/fake_engine.py``.
    """
    return WorkerSettings(
        engine_script=FAKE_ENGINE,
        python=sys.executable,
        log_level="debug",
        call_timeout=10.0,
        shutdown_grace=2.0,
    )
