"""Tests for module sharing, import ordering and reference counting in ModuleRegistry."""

import asyncio
from dataclasses import dataclass

import pytest

from modular_di.exceptions import (
    BindingNotFoundError,
    CyclicImportError,
    InvalidModuleError,
    ModuleNotRegisteredError,
)
from modular_di.injector import InjectorRegister
from modular_di.module import Module, ModuleState
from modular_di.registry import ModuleRegistry


class HttpClient:
    pass


@dataclass
class Service:
    client: HttpClient


class Probe:
    pass


class CoreModule(Module):
    def register_binds(self, i: InjectorRegister) -> None:
        i.add_lazy_singleton(HttpClient)
        i.add_instance(Probe())


class FeatureModule(Module):
    imports = [CoreModule]

    def __init__(self) -> None:
        super().__init__()
        self.probe_seen: Probe | None = None

    def register_binds(self, i: InjectorRegister) -> None:
        self.probe_seen = i.get(Probe)
        i.add(Service)


class OtherFeatureModule(Module):
    imports = [CoreModule]

    def register_binds(self, i: InjectorRegister) -> None:
        pass


class CycleA(Module):
    imports: list[type[Module]] = []

    def register_binds(self, i: InjectorRegister) -> None:
        pass


class CycleB(Module):
    imports = [CycleA]

    def register_binds(self, i: InjectorRegister) -> None:
        pass


CycleA.imports = [CycleB]


class SelfImporting(Module):
    imports: list[type[Module]] = []

    def register_binds(self, i: InjectorRegister) -> None:
        pass


SelfImporting.imports = [SelfImporting]


class BrokenModule(Module):
    imports = [CoreModule]

    def register_binds(self, i: InjectorRegister) -> None:
        i.get(Service)


class AbstractModule(Module):
    pass


class TestImportOrder:
    @pytest.mark.asyncio
    async def test_imports_are_ready_before_register_binds(
        self,
        module_registry: ModuleRegistry,
    ) -> None:
        feature = await module_registry.get_module(FeatureModule)
        core = module_registry.peek(CoreModule)

        assert core is not None
        assert feature.probe_seen is core.get(Probe)

    @pytest.mark.asyncio
    async def test_imports_are_initialized_depth_first_in_declaration_order(
        self,
        module_registry: ModuleRegistry,
    ) -> None:
        order: list[str] = []

        class Leaf(Module):
            def register_binds(self, i: InjectorRegister) -> None:
                order.append("leaf")

        class Left(Module):
            imports = [Leaf]

            def register_binds(self, i: InjectorRegister) -> None:
                order.append("left")

        class Right(Module):
            def register_binds(self, i: InjectorRegister) -> None:
                order.append("right")

        class Root(Module):
            imports = [Left, Right]

            def register_binds(self, i: InjectorRegister) -> None:
                order.append("root")

        await module_registry.get_module(Root)

        assert order == ["leaf", "left", "right", "root"]

    @pytest.mark.asyncio
    async def test_example_feature_service_shares_core_client(
        self,
        module_registry: ModuleRegistry,
    ) -> None:
        feature = await module_registry.get_module(FeatureModule)

        first = feature.get(Service)
        second = feature.get(Service)

        assert first is not second
        assert first.client is second.client

    @pytest.mark.asyncio
    async def test_releasing_feature_disposes_it_then_releases_core(
        self,
        module_registry: ModuleRegistry,
    ) -> None:
        feature = await module_registry.get_module(FeatureModule)
        core = module_registry.peek(CoreModule)
        assert core is not None
        events: list[str] = []
        feature.subscribe(lambda m: events.append(f"feature:{m.state.value}"))
        core.subscribe(lambda m: events.append(f"core:{m.state.value}"))

        module_registry.dispose_module(FeatureModule)

        assert events == ["feature:disposed", "core:disposed"]
        assert FeatureModule not in module_registry
        assert CoreModule not in module_registry


class TestReferenceCounting:
    @pytest.mark.asyncio
    async def test_same_instance_is_shared_between_requesters(
        self,
        module_registry: ModuleRegistry,
    ) -> None:
        first = await module_registry.get_module(CoreModule)
        second = await module_registry.get_module(CoreModule)

        assert first is second
        assert module_registry.ref_count(CoreModule) == 2

    @pytest.mark.asyncio
    async def test_module_survives_until_last_release(
        self,
        module_registry: ModuleRegistry,
    ) -> None:
        acquisitions = 3
        for _ in range(acquisitions):
            module = await module_registry.get_module(CoreModule)

        for _ in range(acquisitions - 1):
            assert module_registry.dispose_module(CoreModule)

        assert module.is_ready
        assert isinstance(module.get(HttpClient), HttpClient)

        assert module_registry.dispose_module(CoreModule)
        assert module.state is ModuleState.DISPOSED

        fresh = await module_registry.get_module(CoreModule)
        assert fresh is not module
        assert fresh.is_ready

    @pytest.mark.asyncio
    async def test_shared_import_is_counted_per_dependent(
        self,
        module_registry: ModuleRegistry,
    ) -> None:
        await module_registry.get_module(FeatureModule)
        await module_registry.get_module(OtherFeatureModule)
        core = module_registry.peek(CoreModule)

        assert module_registry.ref_count(CoreModule) == 2

        module_registry.dispose_module(FeatureModule)
        assert core is not None
        assert core.is_ready

        module_registry.dispose_module(OtherFeatureModule)
        assert core.state is ModuleState.DISPOSED

    @pytest.mark.asyncio
    async def test_release_of_unknown_module_is_noop(
        self,
        module_registry: ModuleRegistry,
    ) -> None:
        core = await module_registry.get_module(CoreModule)

        assert not module_registry.dispose_module(FeatureModule)
        assert not module_registry.dispose_module(OtherFeatureModule)

        assert core.is_ready
        assert module_registry.ref_count(CoreModule) == 1

    @pytest.mark.asyncio
    async def test_release_after_last_reference_is_noop(
        self,
        module_registry: ModuleRegistry,
    ) -> None:
        await module_registry.get_module(CoreModule)
        module_registry.dispose_module(CoreModule)

        assert not module_registry.dispose_module(CoreModule)
        assert module_registry.state_of(CoreModule) is None

    @pytest.mark.asyncio
    async def test_dispose_callback_receives_instances(
        self,
        module_registry: ModuleRegistry,
    ) -> None:
        core = await module_registry.get_module(CoreModule)
        client = core.get(HttpClient)
        probe = core.get(Probe)
        disposed: list[object] = []

        module_registry.dispose_module(CoreModule, disposed.append)

        assert disposed == [client, probe]


class TestCycles:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("module_type", [CycleA, CycleB])
    async def test_cycle_is_reported_and_nothing_stays_registered(
        self,
        module_registry: ModuleRegistry,
        module_type: type[Module],
    ) -> None:
        with pytest.raises(CyclicImportError) as exc_info:
            await module_registry.get_module(module_type)

        assert exc_info.value.chain[0] is module_type
        assert exc_info.value.chain[-1] is module_type
        assert CycleA not in module_registry
        assert CycleB not in module_registry
        assert len(module_registry) == 0

    @pytest.mark.asyncio
    async def test_self_import_is_a_cycle(self, module_registry: ModuleRegistry) -> None:
        with pytest.raises(CyclicImportError):
            await module_registry.get_module(SelfImporting)

        assert len(module_registry) == 0

    @pytest.mark.asyncio
    async def test_diamond_imports_are_not_a_cycle(
        self,
        module_registry: ModuleRegistry,
    ) -> None:
        class Diamond(Module):
            imports = [FeatureModule, OtherFeatureModule]

            def register_binds(self, i: InjectorRegister) -> None:
                pass

        await module_registry.get_module(Diamond)

        assert module_registry.ref_count(CoreModule) == 2


class TestFailures:
    @pytest.mark.asyncio
    async def test_failed_registration_releases_acquired_imports(
        self,
        module_registry: ModuleRegistry,
    ) -> None:
        with pytest.raises(BindingNotFoundError):
            await module_registry.get_module(BrokenModule)

        assert BrokenModule not in module_registry
        assert CoreModule not in module_registry

    @pytest.mark.asyncio
    async def test_failure_does_not_touch_other_live_modules(
        self,
        module_registry: ModuleRegistry,
    ) -> None:
        core = await module_registry.get_module(CoreModule)

        with pytest.raises(BindingNotFoundError):
            await module_registry.get_module(BrokenModule)

        assert core.is_ready
        assert module_registry.ref_count(CoreModule) == 1

    @pytest.mark.asyncio
    async def test_failed_acquisitions_leave_no_creation_locks(
        self,
        module_registry: ModuleRegistry,
    ) -> None:
        with pytest.raises(BindingNotFoundError):
            await module_registry.get_module(BrokenModule)
        with pytest.raises(CyclicImportError):
            await module_registry.get_module(CycleA)

        assert module_registry._locks == {}

    @pytest.mark.asyncio
    async def test_strict_registry_rejects_unregistered_modules(self) -> None:
        registry = ModuleRegistry(autoregister=False)

        with pytest.raises(ModuleNotRegisteredError) as exc_info:
            await registry.get_module(CoreModule)

        assert exc_info.value.module_type is CoreModule

    @pytest.mark.asyncio
    async def test_strict_registry_uses_registered_factory(self) -> None:
        registry = ModuleRegistry(autoregister=False)
        built: list[CoreModule] = []

        def factory() -> CoreModule:
            module = CoreModule()
            built.append(module)
            return module

        registry.register(CoreModule, factory)
        module = await registry.get_module(CoreModule)

        assert registry.is_registered(CoreModule)
        assert built == [module]
        registry.dispose_all()

    @pytest.mark.asyncio
    async def test_abstract_module_is_not_registered(
        self,
        module_registry: ModuleRegistry,
    ) -> None:
        with pytest.raises(ModuleNotRegisteredError):
            await module_registry.get_module(AbstractModule)

    @pytest.mark.asyncio
    async def test_non_module_type_is_not_registered(
        self,
        module_registry: ModuleRegistry,
    ) -> None:
        with pytest.raises(ModuleNotRegisteredError):
            await module_registry.get_module(HttpClient)  # type: ignore[type-var]

    def test_register_rejects_non_modules(self, module_registry: ModuleRegistry) -> None:
        with pytest.raises(InvalidModuleError):
            module_registry.register(HttpClient)  # type: ignore[type-var]

    def test_register_rejects_abstract_module_without_factory(
        self,
        module_registry: ModuleRegistry,
    ) -> None:
        with pytest.raises(InvalidModuleError):
            module_registry.register(AbstractModule)


class TestDisposeAll:
    @pytest.mark.asyncio
    async def test_dispose_all_disposes_dependents_first(
        self,
        module_registry: ModuleRegistry,
    ) -> None:
        feature = await module_registry.get_module(FeatureModule)
        await module_registry.get_module(FeatureModule)
        core = module_registry.peek(CoreModule)
        assert core is not None
        order: list[str] = []
        feature.subscribe(lambda _: order.append("feature"))
        core.subscribe(lambda _: order.append("core"))

        module_registry.dispose_all()

        assert order == ["feature", "core"]
        assert len(module_registry) == 0


class TestConcurrentAcquisition:
    @pytest.mark.asyncio
    async def test_racing_acquisitions_share_one_instance(
        self,
        module_registry: ModuleRegistry,
    ) -> None:
        created: list[Module] = []

        class SlowModule(Module):
            def __init__(self) -> None:
                super().__init__()
                created.append(self)

            async def register_binds(self, i: InjectorRegister) -> None:
                await asyncio.sleep(0.01)
                i.add_instance(Probe())

        results = await asyncio.gather(
            *(module_registry.get_module(SlowModule) for _ in range(5)),
        )

        assert len(created) == 1
        assert all(result is results[0] for result in results)
        assert module_registry.ref_count(SlowModule) == 5

    @pytest.mark.asyncio
    async def test_waiter_observes_initializing_then_ready(
        self,
        module_registry: ModuleRegistry,
    ) -> None:
        gate = asyncio.Event()

        class GatedModule(Module):
            async def register_binds(self, i: InjectorRegister) -> None:
                await gate.wait()

        first = asyncio.create_task(module_registry.get_module(GatedModule))
        await asyncio.sleep(0)
        assert module_registry.state_of(GatedModule) is ModuleState.INITIALIZING
        assert module_registry.ref_count(GatedModule) == 0
        assert not module_registry.dispose_module(GatedModule)

        second = asyncio.create_task(module_registry.get_module(GatedModule))
        await asyncio.sleep(0)
        gate.set()

        assert await first is await second
        assert module_registry.state_of(GatedModule) is ModuleState.READY
        assert module_registry.ref_count(GatedModule) == 2

    @pytest.mark.asyncio
    async def test_concurrent_dependents_share_their_import(
        self,
        module_registry: ModuleRegistry,
    ) -> None:
        await asyncio.gather(
            module_registry.get_module(FeatureModule),
            module_registry.get_module(OtherFeatureModule),
        )

        assert module_registry.ref_count(CoreModule) == 2


class TestReleaseDuringReset:
    @pytest.mark.asyncio
    async def test_last_release_during_reset_disposes_after_reinitialization(
        self,
        module_registry: ModuleRegistry,
    ) -> None:
        gate = asyncio.Event()
        gate.set()

        class ResettableModule(Module):
            imports = [CoreModule]

            async def register_binds(self, i: InjectorRegister) -> None:
                await gate.wait()
                i.add(Service)

        module = await module_registry.get_module(ResettableModule)
        gate.clear()
        reset = asyncio.create_task(module.reset())
        await asyncio.sleep(0)
        assert module.state is ModuleState.INITIALIZING

        assert module_registry.dispose_module(ResettableModule)
        assert ResettableModule not in module_registry
        assert module_registry.ref_count(CoreModule) == 1

        gate.set()
        await reset

        assert module.state is ModuleState.DISPOSED
        assert module.injector is None
        assert CoreModule not in module_registry
        assert module_registry._locks == {}

    @pytest.mark.asyncio
    async def test_last_release_during_failed_reset_still_releases_imports(
        self,
        module_registry: ModuleRegistry,
    ) -> None:
        gate = asyncio.Event()
        gate.set()
        failures: list[Exception] = []

        class ResettableModule(Module):
            imports = [CoreModule]

            async def register_binds(self, i: InjectorRegister) -> None:
                await gate.wait()
                if failures:
                    raise failures.pop()

        module = await module_registry.get_module(ResettableModule)
        gate.clear()
        failures.append(RuntimeError("storage unavailable"))
        reset = asyncio.create_task(module.reset())
        await asyncio.sleep(0)

        module_registry.dispose_module(ResettableModule)
        gate.set()
        with pytest.raises(RuntimeError, match="storage unavailable"):
            await reset

        assert module.state is ModuleState.UNINITIALIZED
        assert len(module_registry) == 0

    @pytest.mark.asyncio
    async def test_dispose_all_during_reset_disposes_after_reinitialization(
        self,
        module_registry: ModuleRegistry,
    ) -> None:
        gate = asyncio.Event()
        gate.set()

        class ResettableModule(Module):
            async def register_binds(self, i: InjectorRegister) -> None:
                await gate.wait()

        module = await module_registry.get_module(ResettableModule)
        gate.clear()
        reset = asyncio.create_task(module.reset())
        await asyncio.sleep(0)

        module_registry.dispose_all()
        assert len(module_registry) == 0

        gate.set()
        await reset

        assert module.state is ModuleState.DISPOSED
