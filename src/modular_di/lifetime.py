from __future__ import annotations

from enum import Enum


class Lifetime(str, Enum):
    """Define how an injector builds and caches the value of a binding."""

    TRANSIENT = "transient"
    """Call the factory on every ``get``; results are not owned by the injector."""

    EAGER_SINGLETON = "eager_singleton"
    """Build once when the injector commits and reuse it until disposal."""

    LAZY_SINGLETON = "lazy_singleton"
    """Build on the first ``get`` and reuse it until disposal."""

    INSTANCE = "instance"
    """Return a pre-built value; no factory is ever called."""
