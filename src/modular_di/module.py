from __future__ import annotations

import inspect
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Sequence
from enum import Enum
from typing import Any, ClassVar, TypeVar, overload

from modular_di.commit_policy import CommitPolicy
from modular_di.exceptions import ModuleNotInitializedError, ModuleStateError
from modular_di.injector import DisposeCallback, Injector, InjectorRegister

T = TypeVar("T")

logger = logging.getLogger(__name__)

ModuleListener = Callable[["Module"], None]
"""Receive the module after each of its state transitions."""


class ModuleState(Enum):
    """Lifecycle states of a ``Module``."""

    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    DISPOSED = "disposed"


class Module(ABC):
    """Group the bindings of one feature and the modules it depends on.

    Subclasses declare ``imports`` and implement ``register_binds``. The
    registry initializes every imported module before this one, so
    ``register_binds`` may already ``get`` bindings owned by imports.

    Examples:
        .. code-block:: python

            class FeatureModule(Module):
                imports = [CoreModule]

                async def register_binds(self, i: InjectorRegister) -> None:
                    i.add_singleton(FeatureService)
                    i.add(FeatureRepository)

    """

    imports: ClassVar[Sequence[type[Module]]] = ()
    """Module types this module depends on, in lookup order."""

    commit_policy: ClassVar[CommitPolicy] = CommitPolicy.ADVISORY
    """Policy applied to the injector created by ``initialize``."""

    def __init__(self) -> None:
        self.injector: Injector | None = None
        self._state = ModuleState.UNINITIALIZED
        self._imported_modules: tuple[Module, ...] = ()
        self._listeners: list[ModuleListener] = []
        self._dispose_requested = False
        self._deferred_callback: DisposeCallback | None = None

    @abstractmethod
    def register_binds(self, i: InjectorRegister) -> Awaitable[None] | None:
        """Register the module's bindings; may be a coroutine function."""

    @property
    def state(self) -> ModuleState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is ModuleState.READY

    @property
    def imported_modules(self) -> tuple[Module, ...]:
        return self._imported_modules

    async def initialize(self, imported: Sequence[Module] | None = None) -> Injector:
        """Create the injector, run ``register_binds`` and commit.

        Calling this on a ready module returns the current injector without
        registering anything again. A failing ``register_binds`` leaves the
        module uninitialized and re-raises.

        Args:
            imported: Ready instances of the declared ``imports``. ``None``
                keeps the modules given to the previous call.

        Raises:
            ModuleStateError: If the module is already initializing.

        """
        if self._state is ModuleState.READY and self.injector is not None:
            return self.injector
        if self._state is ModuleState.INITIALIZING:
            msg = f"{type(self).__name__} is already initializing"
            raise ModuleStateError(msg)

        if imported is not None:
            self._imported_modules = tuple(imported)
        injector = Injector(self._imported_modules, commit_policy=self.commit_policy)
        self._set_state(ModuleState.INITIALIZING)
        try:
            result = self.register_binds(injector)
            if inspect.isawaitable(result):
                await result
            injector.commit()
        except BaseException:
            injector.dispose()
            self._dispose_requested = False
            self._deferred_callback = None
            self._set_state(ModuleState.UNINITIALIZED)
            raise

        self.injector = injector
        self._set_state(ModuleState.READY)
        logger.debug("[Module] Initialized %s", type(self).__name__)
        if self._dispose_requested:
            callback, self._deferred_callback = self._deferred_callback, None
            self._dispose_requested = False
            self.dispose(callback)
        return injector

    def dispose(self, callback: DisposeCallback | None = None) -> None:
        """Dispose the injector and its instances, then notify listeners.

        Does nothing when the module is uninitialized or already disposed.
        While the module is initializing the dispose is deferred: it runs as
        soon as ``initialize`` reaches the ready state, and is dropped if
        ``initialize`` fails.

        """
        if self._state in (ModuleState.UNINITIALIZED, ModuleState.DISPOSED):
            return
        if self._state is ModuleState.INITIALIZING:
            self._dispose_requested = True
            self._deferred_callback = callback
            logger.debug("[Module] Dispose deferred %s", type(self).__name__)
            return

        injector, self.injector = self.injector, None
        if injector is not None:
            injector.dispose(callback)
        self._set_state(ModuleState.DISPOSED)
        logger.debug("[Module] Disposed %s", type(self).__name__)

    async def reset(self, callback: DisposeCallback | None = None) -> None:
        """Dispose the module and initialize it again with a fresh binding set."""
        self.dispose(callback)
        await self.initialize()
        logger.debug("[Module] Reset %s", type(self).__name__)

    @overload
    def get(self, dependency: type[T], *, key: str | None = None) -> T: ...

    @overload
    def get(self, dependency: Any, *, key: str | None = None) -> Any: ...

    def get(self, dependency: Any, *, key: str | None = None) -> Any:
        if self.injector is None:
            raise ModuleNotInitializedError(type(self))
        return self.injector.get(dependency, key=key)

    # region Listeners
    def subscribe(self, listener: ModuleListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: ModuleListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def notify(self) -> None:
        """Call every listener with this module; a failing listener does not stop the rest."""
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.exception("[Module] Listener failed for %s", type(self).__name__)

    # endregion Listeners

    def _set_state(self, state: ModuleState) -> None:
        self._state = state
        self.notify()

    def __repr__(self) -> str:
        return f"{type(self).__name__}(state={self._state.value})"
