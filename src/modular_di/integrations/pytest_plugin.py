from __future__ import annotations

from collections.abc import Iterator

import pytest

from modular_di.registry import ModuleRegistry
from modular_di.tree import TreeBinder


@pytest.fixture()
def module_registry() -> Iterator[ModuleRegistry]:
    """Provide an isolated module registry for one test.

    Every module still alive when the test ends is disposed, so instances
    never leak into the next test. Override the fixture to change
    registry options, for example ``ModuleRegistry(autoregister=False)``.

    Yields:
        A new ``ModuleRegistry`` instance.

    """
    registry = ModuleRegistry()
    yield registry
    registry.dispose_all()


@pytest.fixture()
def tree_binder(module_registry: ModuleRegistry) -> TreeBinder:
    """Provide a ``TreeBinder`` bound to the per-test ``module_registry``."""
    return TreeBinder(module_registry)
