from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any, TypeVar, overload

from modular_di.exceptions import (
    ModuleAlreadyAttachedError,
    ModuleNotFoundError,
    ModuleNotInitializedError,
)
from modular_di.module import Module, ModuleListener
from modular_di.registry import ModuleRegistry, module_registry

M = TypeVar("M", bound=Module)
T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ModuleBinding:
    """A module published at one tree position."""

    module_type: type[Module]
    module: Module
    auto_release: bool


@dataclass(slots=True)
class PendingAttach:
    """An attach whose acquisition has not finished yet."""

    module_type: type[Module]
    cancelled: bool = False


class TreeNode:
    """Position in a consumer tree that modules can be published at.

    The host application mirrors its component tree with nodes; a module
    attached to a node is visible to the node and all of its descendants.
    """

    def __init__(self, name: str | None = None, parent: TreeNode | None = None) -> None:
        self.name = name
        self.parent = parent
        self.children: list[TreeNode] = []
        self.binding: ModuleBinding | None = None
        self.pending: PendingAttach | None = None
        if parent is not None:
            parent.children.append(self)

    def child(self, name: str | None = None) -> TreeNode:
        return TreeNode(name, parent=self)

    def ancestors(self) -> Iterator[TreeNode]:
        """Yield this node and then each parent up to the root."""
        node: TreeNode | None = self
        while node is not None:
            yield node
            node = node.parent

    def descendants(self) -> Iterator[TreeNode]:
        """Yield every node below this one, deepest first."""
        for child in list(self.children):
            yield from child.descendants()
            yield child

    @property
    def path(self) -> str:
        names = [node.name or "?" for node in self.ancestors()]
        return "/" + "/".join(reversed(names))

    def __repr__(self) -> str:
        return f"TreeNode({self.path!r})"


class TreeBinder:
    """Tie module lifetime to tree positions through a ``ModuleRegistry``.

    ``attach`` acquires a module and publishes it at a node, ``detach``
    unpublishes it and releases the registry reference, and ``lookup``
    finds the nearest published module above a consumer.

    Examples:
        .. code-block:: python

            binder = TreeBinder()
            root = TreeNode("app")
            screen = root.child("feature")

            await binder.attach(FeatureModule, screen)
            service = binder.get(screen.child("button"), FeatureService)
            binder.detach(screen)

    """

    def __init__(self, registry: ModuleRegistry | None = None) -> None:
        self._registry = module_registry if registry is None else registry

    @property
    def registry(self) -> ModuleRegistry:
        return self._registry

    async def attach(
        self,
        module_type: type[M],
        node: TreeNode,
        *,
        auto_release: bool = True,
    ) -> M | None:
        """Acquire ``module_type`` and publish it at ``node``.

        When acquisition fails the error is logged, nothing is published and
        ``None`` is returned; descendants then see the next outer module.
        When ``node`` is detached before acquisition finishes, the acquired
        reference is released again and ``None`` is returned.

        Args:
            module_type: Module type to acquire from the registry.
            node: Position whose subtree sees the module.
            auto_release: Release the registry reference on ``detach``.

        Raises:
            ModuleAlreadyAttachedError: If ``node`` already publishes a module
                or another attach on it is still in flight.

        """
        if node.binding is not None:
            raise ModuleAlreadyAttachedError(node.binding.module_type, node)
        if node.pending is not None:
            raise ModuleAlreadyAttachedError(node.pending.module_type, node)

        pending = node.pending = PendingAttach(module_type)
        logger.debug("[TreeBinder] Init %s", module_type.__name__)
        try:
            module = await self._registry.get_module(module_type)
        except Exception:
            logger.warning(
                "[TreeBinder] Module of type %s not found",
                module_type.__name__,
                exc_info=True,
            )
            return None
        finally:
            if node.pending is pending:
                node.pending = None

        if pending.cancelled:
            logger.debug("[TreeBinder] Detached during init %s", module_type.__name__)
            self._registry.dispose_module(module_type)
            return None

        node.binding = ModuleBinding(
            module_type=module_type,
            module=module,
            auto_release=auto_release,
        )
        return module

    def detach(self, node: TreeNode) -> None:
        """Unpublish modules at ``node`` and below, deepest first.

        Attaches still in flight on those nodes are cancelled.
        """
        for descendant in node.descendants():
            self._unbind(descendant)
        self._unbind(node)

    @overload
    def lookup(
        self,
        node: TreeNode,
        module_type: type[M],
        *,
        listener: ModuleListener | None = None,
    ) -> M: ...

    @overload
    def lookup(
        self,
        node: TreeNode,
        module_type: None = None,
        *,
        listener: ModuleListener | None = None,
    ) -> Module: ...

    def lookup(
        self,
        node: TreeNode,
        module_type: type[Module] | None = None,
        *,
        listener: ModuleListener | None = None,
    ) -> Module:
        """Find the nearest module published at ``node`` or above.

        Args:
            node: Consumer position to search from.
            module_type: Accept only instances of this type; any module
                when ``None``.
            listener: Subscribed to the module that was found.

        Raises:
            ModuleNotFoundError: If no matching module is published above.
            ModuleNotInitializedError: If the module has no injector.

        """
        for ancestor in node.ancestors():
            binding = ancestor.binding
            if binding is None:
                continue
            if module_type is not None and not isinstance(binding.module, module_type):
                continue
            if binding.module.injector is None:
                logger.warning("[TreeBinder] Not initialized %s", binding.module_type.__name__)
                raise ModuleNotInitializedError(binding.module_type)
            if listener is not None:
                binding.module.subscribe(listener)
            return binding.module

        wanted = "Module" if module_type is None else module_type.__name__
        logger.warning("[TreeBinder] Not found %s", wanted)
        raise ModuleNotFoundError(module_type, node)

    @overload
    def get(self, node: TreeNode, dependency: type[T], *, key: str | None = None) -> T: ...

    @overload
    def get(self, node: TreeNode, dependency: Any, *, key: str | None = None) -> Any: ...

    def get(self, node: TreeNode, dependency: Any, *, key: str | None = None) -> Any:
        """Resolve ``dependency`` through the nearest module above ``node``."""
        return self.lookup(node).get(dependency, key=key)

    def _unbind(self, node: TreeNode) -> None:
        if node.pending is not None:
            node.pending.cancelled = True
            node.pending = None
        binding = node.binding
        if binding is None:
            return
        node.binding = None
        if binding.auto_release:
            logger.debug("[TreeBinder] Dispose %s", binding.module_type.__name__)
            self._registry.dispose_module(binding.module_type)
