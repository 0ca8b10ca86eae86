from modular_di.commit_policy import CommitPolicy
from modular_di.exceptions import (
    BindingNotFoundError,
    CircularDependencyError,
    CyclicImportError,
    DuplicateBindingError,
    InjectorCommittedError,
    InvalidBindingError,
    InvalidModuleError,
    ModularDIError,
    ModuleAlreadyAttachedError,
    ModuleNotFoundError,
    ModuleNotInitializedError,
    ModuleNotRegisteredError,
    ModuleStateError,
)
from modular_di.injector import Binding, Injector, InjectorRegister
from modular_di.lifetime import Lifetime
from modular_di.markers import Named
from modular_di.module import Module, ModuleState
from modular_di.registry import ModuleRegistry, module_registry
from modular_di.tree import TreeBinder, TreeNode

__all__ = [
    "Binding",
    "BindingNotFoundError",
    "CircularDependencyError",
    "CommitPolicy",
    "CyclicImportError",
    "DuplicateBindingError",
    "Injector",
    "InjectorCommittedError",
    "InjectorRegister",
    "InvalidBindingError",
    "InvalidModuleError",
    "Lifetime",
    "ModularDIError",
    "Module",
    "ModuleAlreadyAttachedError",
    "ModuleNotFoundError",
    "ModuleNotInitializedError",
    "ModuleNotRegisteredError",
    "ModuleRegistry",
    "ModuleState",
    "ModuleStateError",
    "Named",
    "TreeBinder",
    "TreeNode",
    "module_registry",
]
