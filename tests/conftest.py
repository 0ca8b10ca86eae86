"""Shared pytest fixtures for modular_di tests."""

import pytest

from modular_di.commit_policy import CommitPolicy
from modular_di.injector import Injector

pytest_plugins = ["modular_di.integrations.pytest_plugin"]


@pytest.fixture()
def injector() -> Injector:
    """Uncommitted injector with the advisory commit policy."""
    return Injector()


@pytest.fixture()
def strict_injector() -> Injector:
    """Uncommitted injector that rejects registrations after commit."""
    return Injector(commit_policy=CommitPolicy.STRICT)
