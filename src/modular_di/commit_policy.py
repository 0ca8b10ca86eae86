from __future__ import annotations

from enum import Enum


class CommitPolicy(Enum):
    """Select what an injector does with registrations after ``commit()``.

    ``Module.initialize`` commits the injector once ``register_binds``
    returns. Modules pick a policy through the ``commit_policy`` class
    attribute.
    """

    ADVISORY = "advisory"
    """Accept late registrations; eager singletons added late are built at once."""

    STRICT = "strict"
    """Reject late registrations with ``InjectorCommittedError``."""
