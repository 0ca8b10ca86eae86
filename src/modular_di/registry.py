from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import TypeVar, cast

from modular_di.exceptions import (
    CyclicImportError,
    InvalidModuleError,
    ModuleNotRegisteredError,
)
from modular_di.injector import DisposeCallback
from modular_di.module import Module, ModuleState

M = TypeVar("M", bound=Module)

logger = logging.getLogger(__name__)

ModuleFactory = Callable[[], Module]
"""Build a new, uninitialized module instance."""


@dataclass(slots=True)
class ModuleEntry:
    """Track the shared instance of one module type and who holds it."""

    module_type: type[Module]
    module: Module
    ref_count: int = 0

    @property
    def state(self) -> ModuleState:
        return self.module.state


@dataclass(slots=True)
class _TypeLock:
    """Creation lock of one module type and the acquisitions using it."""

    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class ModuleRegistry:
    """Share module instances between consumers and dispose them when unused.

    ``get_module`` returns the live instance of a module type, creating and
    initializing it (imports first, depth-first in declaration order) when
    none exists, and adds one reference. ``dispose_module`` drops one
    reference; the module is disposed and its imports released only when the
    last reference goes away.

    Creation of a module type is serialized with a per-type ``asyncio.Lock``:
    concurrent ``get_module`` calls for the same type wait for the first
    call's initialization and share its instance. There is no cancellation;
    a ``register_binds`` that never finishes keeps every waiter pending.
    """

    def __init__(self, *, autoregister: bool = True) -> None:
        """Create an empty registry.

        Args:
            autoregister: Register concrete ``Module`` subclasses on first
                request. Disable it to require ``register`` for every module.

        """
        self._autoregister = autoregister
        self._factories: dict[type[Module], ModuleFactory] = {}
        self._entries: dict[type[Module], ModuleEntry] = {}
        self._locks: dict[type[Module], _TypeLock] = {}

    def register(self, module_type: type[M], factory: Callable[[], M] | None = None) -> None:
        """Declare how the registry builds ``module_type``.

        Args:
            module_type: ``Module`` subclass used as the registry key.
            factory: Zero-argument callable returning a new instance;
                ``module_type`` itself when omitted.

        Raises:
            InvalidModuleError: If ``module_type`` is not a ``Module``
                subclass, or is abstract and no factory is given.

        """
        if not (inspect.isclass(module_type) and issubclass(module_type, Module)):
            msg = f"{module_type!r} is not a Module subclass."
            raise InvalidModuleError(msg)
        if factory is None and inspect.isabstract(module_type):
            msg = f"Module '{module_type.__qualname__}' is abstract and needs a factory."
            raise InvalidModuleError(msg)
        self._factories[module_type] = module_type if factory is None else factory

    def is_registered(self, module_type: type[Module]) -> bool:
        return module_type in self._factories

    async def get_module(self, module_type: type[M]) -> M:
        """Acquire the shared instance of ``module_type``.

        Raises:
            ModuleNotRegisteredError: If the registry cannot build the type.
            CyclicImportError: If the import graph below the type has a cycle.

        """
        module = await self._acquire(module_type, ())
        return cast("M", module)

    def dispose_module(
        self,
        module_type: type[Module],
        callback: DisposeCallback | None = None,
    ) -> bool:
        """Release one reference to ``module_type``.

        At zero references the module is disposed (``callback`` receives each
        owned instance) and its imports are released in reverse order.
        Releasing a type without references does nothing.

        Returns:
            ``True`` when a reference was released.

        """
        entry = self._entries.get(module_type)
        if entry is None or entry.ref_count == 0:
            logger.debug("[ModuleRegistry] Release ignored for %s", module_type.__name__)
            return False

        entry.ref_count -= 1
        if entry.ref_count > 0:
            logger.debug(
                "[ModuleRegistry] Release %s (refs=%d)",
                module_type.__name__,
                entry.ref_count,
            )
            return True

        del self._entries[module_type]
        self._drop_idle_lock(module_type)
        if entry.state is ModuleState.INITIALIZING:
            # Mid-reset: the module disposes itself once initialize settles.
            self._release_imports_when_settled(entry.module, callback)
            entry.module.dispose(callback)
            logger.debug("[ModuleRegistry] Dispose deferred %s", module_type.__name__)
            return True
        try:
            entry.module.dispose(callback)
            logger.debug("[ModuleRegistry] Dispose %s", module_type.__name__)
        finally:
            self._release_imports(entry.module, callback)
        return True

    def dispose_all(self, callback: DisposeCallback | None = None) -> None:
        """Dispose every live module regardless of its reference count.

        Dependents are disposed before the modules they import. A module in
        the middle of ``reset`` is disposed once its initialization finishes.
        Modules whose first acquisition is still running are left alone.
        """
        for entry in reversed(list(self._entries.values())):
            if entry.state is ModuleState.INITIALIZING and entry.ref_count == 0:
                logger.warning(
                    "[ModuleRegistry] Skip dispose of initializing %s",
                    entry.module_type.__name__,
                )
                continue
            del self._entries[entry.module_type]
            self._drop_idle_lock(entry.module_type)
            entry.ref_count = 0
            entry.module.dispose(callback)
            logger.debug("[ModuleRegistry] Dispose %s", entry.module_type.__name__)

    # region Diagnostics
    def ref_count(self, module_type: type[Module]) -> int:
        entry = self._entries.get(module_type)
        return 0 if entry is None else entry.ref_count

    def state_of(self, module_type: type[Module]) -> ModuleState | None:
        entry = self._entries.get(module_type)
        return None if entry is None else entry.state

    def peek(self, module_type: type[M]) -> M | None:
        """Return the live instance without acquiring a reference."""
        entry = self._entries.get(module_type)
        return None if entry is None else cast("M", entry.module)

    def __contains__(self, module_type: object) -> bool:
        return module_type in self._entries

    def __iter__(self) -> Iterator[ModuleEntry]:
        return iter(list(self._entries.values()))

    def __len__(self) -> int:
        return len(self._entries)

    # endregion Diagnostics

    async def _acquire(
        self,
        module_type: type[Module],
        chain: tuple[type[Module], ...],
    ) -> Module:
        if module_type in chain:
            raise CyclicImportError([*chain, module_type])
        factory = self._factory_for(module_type)

        type_lock = self._lock_for(module_type)
        type_lock.users += 1
        try:
            async with type_lock.lock:
                entry = self._entries.get(module_type)
                if entry is None:
                    entry = await self._create_entry(module_type, factory, (*chain, module_type))
                entry.ref_count += 1
                logger.debug(
                    "[ModuleRegistry] Acquire %s (refs=%d)",
                    module_type.__name__,
                    entry.ref_count,
                )
                return entry.module
        finally:
            type_lock.users -= 1
            if module_type not in self._entries:
                self._drop_idle_lock(module_type)

    async def _create_entry(
        self,
        module_type: type[Module],
        factory: ModuleFactory,
        chain: tuple[type[Module], ...],
    ) -> ModuleEntry:
        module = factory()
        if not isinstance(module, module_type):
            msg = f"Factory for '{module_type.__qualname__}' returned {module!r}."
            raise InvalidModuleError(msg)

        entry = ModuleEntry(module_type=module_type, module=module)
        self._entries[module_type] = entry
        acquired: list[type[Module]] = []
        try:
            imported: list[Module] = []
            for import_type in module.imports:
                imported.append(await self._acquire(import_type, chain))
                acquired.append(import_type)
            logger.debug("[ModuleRegistry] Init %s", module_type.__name__)
            await module.initialize(imported)
        except BaseException:
            del self._entries[module_type]
            for import_type in reversed(acquired):
                self.dispose_module(import_type)
            logger.debug("[ModuleRegistry] Abort %s", module_type.__name__)
            raise

        # Keep entries ordered by completion so imports precede their dependents.
        self._entries[module_type] = self._entries.pop(module_type)
        return entry

    def _factory_for(self, module_type: type[Module]) -> ModuleFactory:
        factory = self._factories.get(module_type)
        if factory is not None:
            return factory
        if (
            self._autoregister
            and inspect.isclass(module_type)
            and issubclass(module_type, Module)
            and not inspect.isabstract(module_type)
        ):
            logger.debug("[ModuleRegistry] Autoregister %s", module_type.__name__)
            self._factories[module_type] = module_type
            return module_type
        raise ModuleNotRegisteredError(module_type)

    def _release_imports(self, module: Module, callback: DisposeCallback | None) -> None:
        for import_type in reversed(module.imports):
            self.dispose_module(import_type, callback)

    def _release_imports_when_settled(
        self,
        module: Module,
        callback: DisposeCallback | None,
    ) -> None:
        def on_state(_: Module) -> None:
            if module.state in (ModuleState.INITIALIZING, ModuleState.READY):
                return
            module.unsubscribe(on_state)
            self._release_imports(module, callback)

        module.subscribe(on_state)

    def _lock_for(self, module_type: type[Module]) -> _TypeLock:
        type_lock = self._locks.get(module_type)
        if type_lock is None:
            type_lock = self._locks[module_type] = _TypeLock()
        return type_lock

    def _drop_idle_lock(self, module_type: type[Module]) -> None:
        # A released lock may still have a woken waiter that has not run yet.
        type_lock = self._locks.get(module_type)
        if type_lock is not None and type_lock.users == 0:
            del self._locks[module_type]


module_registry = ModuleRegistry()
"""Process-wide registry used by ``TreeBinder`` unless another one is given."""
