"""Shared fixtures for reqflow tests."""

import pytest

from reqflow.config import Settings
from reqflow.executor.scheduler import Scheduler


@pytest.fixture
def settings():
    """Settings isolated from the developer's environment and .env file."""
    return Settings(_env_file=None, resolve_env=False)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_scheduler(settings, sleeps):
    """Build a Scheduler whose retry waits are recorded instead of slept."""

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    def _make(transport, **kwargs):
        kwargs.setdefault("settings", settings)
        kwargs.setdefault("sleep", fake_sleep)
        return Scheduler(transport, **kwargs)

    return _make
