"""
Pytest Configuration and Fixtures

Every test gets its own runtime: nothing is shared between tests.
"""

from typing import Any, Dict

import pytest

from bpm_engine.config.settings import Settings
from bpm_engine.runtime import create_runtime

from .factories import approval_definition as _approval_definition
from .factories import review_definition as _review_definition


@pytest.fixture
def settings() -> Settings:
    """Settings with persistence, remote sync and background sweeps out of the way"""
    return Settings(
        local_persistence_enabled=False,
        remote_store_url="",
        condition_check_interval_seconds=3600,
        sync_interval_seconds=3600,
        log_to_file=False,
        _env_file=None,
    )


@pytest.fixture
def approval_definition() -> Dict[str, Any]:
    return _approval_definition()


@pytest.fixture
def review_definition() -> Dict[str, Any]:
    return _review_definition()


@pytest.fixture
async def runtime(settings):
    """Started runtime for the "test-org" organization"""
    rt = create_runtime(settings)
    await rt.start("test-org")
    yield rt
    await rt.stop()


@pytest.fixture
def service(runtime):
    return runtime.service
