from __future__ import annotations

from collections.abc import Sequence
from typing import Any


def _name(value: Any) -> str:
    return getattr(value, "__qualname__", repr(value))


def _describe_key(dependency: Any, key: str | None) -> str:
    if key is None:
        return _name(dependency)
    return f"{_name(dependency)} (key={key!r})"


class ModularDIError(Exception):
    """Represent a base class for all modular_di failures.

    Catch this type when you want to handle any injector, module, or registry
    error without matching each concrete exception class individually.
    """


class BindingNotFoundError(ModularDIError):
    """Signal that ``Injector.get`` found no binding for a key.

    The lookup covers the injector's own bindings and the injectors of every
    module it imports, transitively. Typical fixes are registering the
    dependency in ``register_binds`` or adding the module that owns it to
    ``imports``.
    """

    def __init__(self, dependency: Any, key: str | None = None) -> None:
        self.dependency = dependency
        self.key = key
        super().__init__(f"No binding found for {_describe_key(dependency, key)}")


class DuplicateBindingError(ModularDIError):
    """Signal a second registration of the same ``(type, key)`` pair.

    Use ``Injector.replace`` to substitute the value of an existing binding.
    """

    def __init__(self, dependency: Any, key: str | None = None) -> None:
        self.dependency = dependency
        self.key = key
        super().__init__(
            f"{_describe_key(dependency, key)} is already bound; use replace() to override it",
        )


class InvalidBindingError(ModularDIError):
    """Signal a binding that cannot be turned into a working factory.

    Raised at registration time, for example when a factory has a required
    parameter without a type annotation.
    """


class InjectorCommittedError(ModularDIError):
    """Signal registration on a committed injector under ``CommitPolicy.STRICT``."""

    def __init__(self, dependency: Any, key: str | None = None) -> None:
        self.dependency = dependency
        self.key = key
        super().__init__(
            f"Cannot bind {_describe_key(dependency, key)}: the injector is already committed",
        )


class CircularDependencyError(ModularDIError):
    """Signal a factory graph that requires itself while being built."""

    def __init__(self, chain: Sequence[Any]) -> None:
        self.chain = tuple(chain)
        path = " -> ".join(_name(dependency) for dependency in self.chain)
        super().__init__(f"Circular dependency detected: {path}")


class ModuleNotRegisteredError(ModularDIError):
    """Signal that the registry has no way to build a module type.

    Raised by ``ModuleRegistry.get_module`` for types that were never
    registered while autoregistration is disabled, and for types that are not
    concrete ``Module`` subclasses.
    """

    def __init__(self, module_type: Any) -> None:
        self.module_type = module_type
        super().__init__(f"Module {_name(module_type)} is not registered")


class CyclicImportError(ModularDIError):
    """Signal a cycle in the module import graph.

    The acquisition that found the cycle is aborted and every module it had
    acquired is released again.
    """

    def __init__(self, chain: Sequence[type[Any]]) -> None:
        self.chain = tuple(chain)
        path = " -> ".join(_name(module_type) for module_type in self.chain)
        super().__init__(f"Cyclic module import detected: {path}")


class ModuleStateError(ModularDIError):
    """Signal a lifecycle call that is invalid in the module's current state."""


class ModuleNotFoundError(ModularDIError):  # noqa: A001
    """Signal that no published module was found above a tree position."""

    def __init__(self, module_type: Any, position: Any) -> None:
        self.module_type = module_type
        self.position = position
        wanted = "Module" if module_type is None else _name(module_type)
        super().__init__(f"No {wanted} found in the tree above {position}")


class ModuleNotInitializedError(ModularDIError):
    """Signal access to a module whose injector is not available.

    The module is either not initialized yet or has already been disposed.
    """

    def __init__(self, module_type: Any) -> None:
        self.module_type = module_type
        super().__init__(f"Module {_name(module_type)} is not initialized")


class ModuleAlreadyAttachedError(ModularDIError):
    """Signal a second ``TreeBinder.attach`` on the same tree position."""

    def __init__(self, module_type: Any, position: Any) -> None:
        self.module_type = module_type
        self.position = position
        super().__init__(f"{position} already publishes module {_name(module_type)}")


class InvalidModuleError(ModularDIError):
    """Signal a module registration that can never produce a usable module.

    Raised by ``ModuleRegistry.register`` for types that are not ``Module``
    subclasses, and for abstract modules registered without a factory.
    """
