from __future__ import annotations

import inspect
from collections.abc import Callable
from dataclasses import dataclass
from inspect import Parameter
from typing import Any, get_type_hints

from modular_di.exceptions import InvalidBindingError
from modular_di.markers import split_named_annotation


@dataclass(frozen=True, slots=True)
class FactoryDependency:
    """Describe one factory parameter that the injector fills in."""

    name: str
    dependency: Any
    key: str | None
    kind: Any
    default: Any = Parameter.empty

    @property
    def has_default(self) -> bool:
        return self.default is not Parameter.empty

    @property
    def is_typed(self) -> bool:
        return self.dependency is not Parameter.empty

    @property
    def is_positional_only(self) -> bool:
        return self.kind is Parameter.POSITIONAL_ONLY


@dataclass(slots=True)
class FactoryDependenciesExtractor:
    """Extract type-hinted dependencies from binding factories.

    Classes are inspected through ``__init__``; other callables through their
    own signature. Results are validated once at registration time so that
    unusable factories fail before anything asks for them.
    """

    def extract(self, factory: Callable[..., Any]) -> tuple[FactoryDependency, ...]:
        factory_name = self._factory_name(factory)
        parameters = self._factory_parameters(factory, factory_name)
        hints, hints_error = self._resolved_type_hints(factory)

        dependencies: list[FactoryDependency] = []
        for parameter in parameters:
            if parameter.kind in (Parameter.VAR_POSITIONAL, Parameter.VAR_KEYWORD):
                continue

            # Resolved hints win; an unresolved string annotation is unusable.
            annotation = hints.get(parameter.name, parameter.annotation)
            if annotation is Parameter.empty or isinstance(annotation, str):
                if parameter.default is Parameter.empty:
                    msg = (
                        f"Factory '{factory_name}' needs a type for parameter "
                        f"'{parameter.name}': annotate it or give it a default."
                    )
                    if hints_error is not None:
                        msg = f"{msg} Type hints failed to resolve: {hints_error}"
                    raise InvalidBindingError(msg) from hints_error
                if parameter.kind is not Parameter.POSITIONAL_ONLY:
                    continue
                # Untyped positional slots stay listed so later ones keep their place.
                annotation = Parameter.empty

            dependency, key = split_named_annotation(annotation)
            dependencies.append(
                FactoryDependency(
                    name=parameter.name,
                    dependency=dependency,
                    key=key,
                    kind=parameter.kind,
                    default=parameter.default,
                ),
            )
        return tuple(dependencies)

    def _factory_parameters(
        self,
        factory: Callable[..., Any],
        factory_name: str,
    ) -> tuple[Parameter, ...]:
        try:
            signature = inspect.signature(factory)
        except (TypeError, ValueError) as error:
            msg = f"Factory '{factory_name}' has no inspectable signature."
            raise InvalidBindingError(msg) from error
        return tuple(signature.parameters.values())

    def _resolved_type_hints(
        self,
        factory: Callable[..., Any],
    ) -> tuple[dict[str, Any], Exception | None]:
        target = factory.__init__ if inspect.isclass(factory) else factory
        try:
            return get_type_hints(target, include_extras=True), None
        except (AttributeError, NameError, TypeError) as error:
            return {}, error

    def _factory_name(self, factory: Callable[..., Any]) -> str:
        return getattr(factory, "__qualname__", repr(factory))
