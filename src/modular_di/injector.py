from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeVar, cast, overload

from typing_extensions import Self

from modular_di._internal.dependencies import FactoryDependenciesExtractor, FactoryDependency
from modular_di.commit_policy import CommitPolicy
from modular_di.exceptions import (
    BindingNotFoundError,
    CircularDependencyError,
    DuplicateBindingError,
    InjectorCommittedError,
    InvalidBindingError,
)
from modular_di.lifetime import Lifetime

T = TypeVar("T")

logger = logging.getLogger(__name__)

_NO_VALUE: Any = object()

BindingKey = tuple[Any, "str | None"]
"""Identify a binding by its dependency type and optional string key."""

DisposeCallback = Callable[[Any], None]
"""Receive every owned instance while an injector is disposed."""


class InjectorRegister(Protocol):
    """Describe the registration surface handed to ``Module.register_binds``.

    ``get`` is part of the surface so that a module can read bindings of the
    modules it imports while it registers its own.
    """

    def add(
        self,
        dependency: type[T],
        factory: Callable[..., T] | None = None,
        *,
        key: str | None = None,
    ) -> Self: ...

    def add_singleton(
        self,
        dependency: type[T],
        factory: Callable[..., T] | None = None,
        *,
        key: str | None = None,
        on_dispose: Callable[[T], None] | None = None,
    ) -> Self: ...

    def add_lazy_singleton(
        self,
        dependency: type[T],
        factory: Callable[..., T] | None = None,
        *,
        key: str | None = None,
        on_dispose: Callable[[T], None] | None = None,
    ) -> Self: ...

    def add_instance(
        self,
        instance: T,
        *,
        provides: type[T] | None = None,
        key: str | None = None,
        on_dispose: Callable[[T], None] | None = None,
    ) -> Self: ...

    def replace(
        self,
        instance: T,
        *,
        provides: type[T] | None = None,
        key: str | None = None,
    ) -> Self: ...

    def commit(self) -> None: ...

    def get(self, dependency: type[T], *, key: str | None = None) -> T: ...


class InjectorSource(Protocol):
    """Anything that exposes an injector, such as an imported ``Module``.

    The injector is read at lookup time, so a source that is reset later is
    still resolved through its current injector.
    """

    @property
    def injector(self) -> Injector | None: ...


@dataclass(slots=True)
class Binding:
    """Store how one ``(dependency, key)`` pair is built and cached."""

    dependency: Any
    key: str | None
    lifetime: Lifetime
    factory: Callable[..., Any] | None = None
    dependencies: tuple[FactoryDependency, ...] = ()
    on_dispose: DisposeCallback | None = None
    override: Any = field(default=_NO_VALUE, repr=False)

    @property
    def binding_key(self) -> BindingKey:
        return (self.dependency, self.key)

    @property
    def is_replaced(self) -> bool:
        return self.override is not _NO_VALUE


class Injector:
    """Register bindings for one module and resolve them to instances.

    Lookups check the injector's own bindings first and then the injectors
    of imported modules in declaration order; the first match wins. Cached
    values (singletons, fixed instances, replacements) are owned by the
    injector and handed to the disposal callback in reverse construction
    order when the injector is disposed.

    Examples:
        .. code-block:: python

            injector = Injector()
            injector.add_lazy_singleton(HttpClient, HttpClientImpl)
            injector.add(Service)
            injector.commit()

            service = injector.get(Service)

    """

    def __init__(
        self,
        imports: Sequence[Injector | InjectorSource] = (),
        *,
        commit_policy: CommitPolicy = CommitPolicy.ADVISORY,
        tag: str | None = None,
    ) -> None:
        """Create an empty injector.

        Args:
            imports: Injectors, or objects exposing ``injector``, that are
                searched in order when a key is not bound locally.
            commit_policy: Whether registrations after ``commit()`` are
                accepted or rejected.
            tag: Unique identifier used in logs; a random UUID by default.

        """
        self.tag = tag if tag is not None else str(uuid.uuid4())
        self._imports = tuple(imports)
        self._commit_policy = commit_policy
        self._committed = False
        self._disposed = False

        self._dependencies_extractor = FactoryDependenciesExtractor()
        self._bindings: dict[BindingKey, Binding] = {}
        self._instances: dict[BindingKey, Any] = {}
        self._owned: list[tuple[Binding, Any]] = []
        self._resolving: list[BindingKey] = []

    # region Registration Methods
    def add(
        self,
        dependency: type[T],
        factory: Callable[..., T] | None = None,
        *,
        key: str | None = None,
    ) -> Self:
        """Register a transient binding; the factory runs on every ``get``.

        Args:
            dependency: Type the binding provides.
            factory: Callable building the value; defaults to ``dependency``.
                Its parameters are resolved from this injector by annotation.
            key: Optional string distinguishing several bindings of one type.

        Raises:
            DuplicateBindingError: If ``(dependency, key)`` is already bound.
            InvalidBindingError: If the factory cannot be inspected.

        """
        self._add_factory_binding(dependency, factory, key, Lifetime.TRANSIENT, None)
        return self

    def add_singleton(
        self,
        dependency: type[T],
        factory: Callable[..., T] | None = None,
        *,
        key: str | None = None,
        on_dispose: Callable[[T], None] | None = None,
    ) -> Self:
        """Register an eager singleton, built on ``commit()`` and cached.

        When the injector is already committed the instance is built
        immediately.
        """
        binding = self._add_factory_binding(
            dependency,
            factory,
            key,
            Lifetime.EAGER_SINGLETON,
            on_dispose,
        )
        if self._committed:
            self._resolve_binding(binding)
        return self

    def add_lazy_singleton(
        self,
        dependency: type[T],
        factory: Callable[..., T] | None = None,
        *,
        key: str | None = None,
        on_dispose: Callable[[T], None] | None = None,
    ) -> Self:
        """Register a lazy singleton, built on the first ``get`` and cached."""
        self._add_factory_binding(dependency, factory, key, Lifetime.LAZY_SINGLETON, on_dispose)
        return self

    def add_instance(
        self,
        instance: T,
        *,
        provides: type[T] | None = None,
        key: str | None = None,
        on_dispose: Callable[[T], None] | None = None,
    ) -> Self:
        """Register a pre-built instance.

        Args:
            instance: Value returned by ``get``.
            provides: Type to bind; ``type(instance)`` when omitted.
            key: Optional string distinguishing several bindings of one type.
            on_dispose: Called with ``instance`` when the injector is disposed.

        """
        dependency = type(instance) if provides is None else provides
        self._check_can_register(dependency, key)
        binding = Binding(
            dependency=dependency,
            key=key,
            lifetime=Lifetime.INSTANCE,
            on_dispose=on_dispose,
        )
        self._bindings[binding.binding_key] = binding
        self._store(binding, instance)
        return self

    def replace(
        self,
        instance: T,
        *,
        provides: type[T] | None = None,
        key: str | None = None,
    ) -> Self:
        """Make ``get`` return ``instance`` for ``(provides, key)``.

        The existing binding keeps its lifetime and its factory is not called
        again. When nothing is bound yet, a fixed-instance binding is created.
        Replacement is allowed after commit regardless of the commit policy.
        """
        dependency = type(instance) if provides is None else provides
        binding = self._bindings.get((dependency, key))
        if binding is None:
            binding = Binding(dependency=dependency, key=key, lifetime=Lifetime.INSTANCE)
            self._bindings[binding.binding_key] = binding
            self._store(binding, instance)
            logger.debug("[Injector] Replace %s (new binding)", _type_name(binding.dependency))
            return self

        if binding.is_replaced:
            self._owned = [
                (owner, value)
                for owner, value in self._owned
                if not (owner is binding and value is binding.override)
            ]
        binding.override = instance
        self._owned.append((binding, instance))
        logger.debug("[Injector] Replace %s", _type_name(binding.dependency))
        return self

    def commit(self) -> None:
        """Finalize the binding set and build eager singletons in registration order."""
        if self._committed:
            return
        self._committed = True
        for binding in list(self._bindings.values()):
            if binding.lifetime is Lifetime.EAGER_SINGLETON:
                self._resolve_binding(binding)
        logger.debug("[Injector] Commit %s", self.tag)

    # endregion Registration Methods

    # region Resolution Methods
    @overload
    def get(self, dependency: type[T], *, key: str | None = None) -> T: ...

    @overload
    def get(self, dependency: Any, *, key: str | None = None) -> Any: ...

    def get(self, dependency: Any, *, key: str | None = None) -> Any:
        """Resolve a dependency from this injector or its imports.

        Args:
            dependency: Type to resolve.
            key: Optional string key selecting a keyed binding.

        Raises:
            BindingNotFoundError: If neither this injector nor any import
                binds ``(dependency, key)``.
            CircularDependencyError: If building the value needs itself.

        """
        value = self._find(dependency, key)
        if value is _NO_VALUE:
            raise BindingNotFoundError(dependency, key)
        return value

    def is_bound(self, dependency: Any, *, key: str | None = None) -> bool:
        """Return whether ``get`` would find a binding, without building anything."""
        if (dependency, key) in self._bindings:
            return True
        return any(injector.is_bound(dependency, key=key) for injector in self._imported_injectors())

    # endregion Resolution Methods

    def dispose(self, callback: DisposeCallback | None = None) -> None:
        """Release every owned instance and clear the injector.

        Each binding's ``on_dispose`` hook and then ``callback`` are called for
        every cached instance, newest first. A failing callback is logged and
        the remaining instances are still processed.
        """
        owned = list(reversed(self._owned))
        self._owned.clear()
        self._instances.clear()
        self._bindings.clear()
        self._imports = ()
        self._disposed = True

        for binding, instance in owned:
            for hook in (binding.on_dispose, callback):
                if hook is None:
                    continue
                try:
                    hook(instance)
                except Exception:
                    logger.exception(
                        "[Injector] Dispose callback failed for %s",
                        _type_name(binding.dependency),
                    )
        logger.debug("[Injector] Disposed %s", self.tag)

    @property
    def committed(self) -> bool:
        return self._committed

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def commit_policy(self) -> CommitPolicy:
        return self._commit_policy

    def __contains__(self, dependency: object) -> bool:
        return self.is_bound(dependency)

    def __iter__(self) -> Iterator[Binding]:
        return iter(list(self._bindings.values()))

    def __len__(self) -> int:
        return len(self._bindings)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(tag={self.tag!r}, bindings={len(self._bindings)})"

    def _add_factory_binding(
        self,
        dependency: Any,
        factory: Callable[..., Any] | None,
        key: str | None,
        lifetime: Lifetime,
        on_dispose: DisposeCallback | None,
    ) -> Binding:
        self._check_can_register(dependency, key)
        resolved_factory = dependency if factory is None else factory
        if not callable(resolved_factory):
            msg = f"Factory for {_type_name(dependency)} must be callable, got {resolved_factory!r}."
            raise InvalidBindingError(msg)

        binding = Binding(
            dependency=dependency,
            key=key,
            lifetime=lifetime,
            factory=resolved_factory,
            dependencies=self._dependencies_extractor.extract(resolved_factory),
            on_dispose=on_dispose,
        )
        self._bindings[binding.binding_key] = binding
        return binding

    def _check_can_register(self, dependency: Any, key: str | None) -> None:
        if self._committed and self._commit_policy is CommitPolicy.STRICT:
            raise InjectorCommittedError(dependency, key)
        if (dependency, key) in self._bindings:
            raise DuplicateBindingError(dependency, key)

    def _store(self, binding: Binding, instance: Any) -> None:
        self._instances[binding.binding_key] = instance
        self._owned.append((binding, instance))

    def _imported_injectors(self) -> Iterator[Injector]:
        for source in self._imports:
            injector = source if isinstance(source, Injector) else source.injector
            if injector is not None:
                yield injector

    def _find(self, dependency: Any, key: str | None) -> Any:
        binding = self._bindings.get((dependency, key))
        if binding is not None:
            return self._resolve_binding(binding)

        for injector in self._imported_injectors():
            value = injector._find(dependency, key)  # noqa: SLF001
            if value is not _NO_VALUE:
                return value
        return _NO_VALUE

    def _resolve_binding(self, binding: Binding) -> Any:
        if binding.is_replaced:
            return binding.override
        if binding.lifetime is Lifetime.TRANSIENT:
            return self._build(binding)

        cached = self._instances.get(binding.binding_key, _NO_VALUE)
        if cached is not _NO_VALUE:
            return cached
        instance = self._build(binding)
        self._store(binding, instance)
        return instance

    def _build(self, binding: Binding) -> Any:
        binding_key = binding.binding_key
        if binding_key in self._resolving:
            start = self._resolving.index(binding_key)
            chain = [dependency for dependency, _ in self._resolving[start:]]
            raise CircularDependencyError([*chain, binding.dependency])

        self._resolving.append(binding_key)
        try:
            args, kwargs = self._factory_arguments(binding)
            factory = cast("Callable[..., Any]", binding.factory)
            return factory(*args, **kwargs)
        finally:
            self._resolving.pop()

    def _factory_arguments(self, binding: Binding) -> tuple[list[Any], dict[str, Any]]:
        args: list[Any] = []
        kwargs: dict[str, Any] = {}
        for parameter in binding.dependencies:
            if not parameter.is_typed:
                value: Any = _NO_VALUE
            elif parameter.key is None and parameter.dependency in (Injector, InjectorRegister):
                value = self
            else:
                value = self._find(parameter.dependency, parameter.key)
            if value is _NO_VALUE:
                if not parameter.has_default:
                    raise BindingNotFoundError(parameter.dependency, parameter.key)
                if not parameter.is_positional_only:
                    continue
                # Positional slots cannot be skipped without shifting the rest.
                value = parameter.default

            if parameter.is_positional_only:
                args.append(value)
            else:
                kwargs[parameter.name] = value
        return args, kwargs


def _type_name(dependency: Any) -> str:
    return getattr(dependency, "__qualname__", repr(dependency))
