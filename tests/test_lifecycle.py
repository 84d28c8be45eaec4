"""
Registration lifecycle tests - state transitions, registry round trips and
error propagation, all against the in-process registry.
"""
import itertools

import pytest

from ecommerce.discovery import InMemoryServiceRegistry, RegistrationLifecycle, RegistrationState
from ecommerce.discovery.lifecycle import new_instance_id
from ecommerce.errors import RegistrationError


async def _healthy(record) -> bool:
    return True


class RecordingRegistry(InMemoryServiceRegistry):
    def __init__(self) -> None:
        super().__init__(probe=_healthy)
        self.calls: list[tuple[str, str]] = []

    async def register(self, record) -> None:
        self.calls.append(("register", record.instance_id))
        await super().register(record)

    async def deregister(self, instance_id: str) -> None:
        self.calls.append(("deregister", instance_id))
        await super().deregister(instance_id)


def _lifecycle(registry, **kwargs) -> RegistrationLifecycle:
    counter = itertools.count(1)
    return RegistrationLifecycle(
        registry,
        service_name="cart-service",
        host="cart-service",
        port=80,
        id_factory=lambda name: f"{name}-{next(counter)}",
        **kwargs,
    )


def test_instance_ids_are_unique_and_prefixed():
    first, second = new_instance_id("cart-service"), new_instance_id("cart-service")
    assert first != second
    assert first.startswith("cart-service-")


@pytest.mark.asyncio
async def test_start_registers_discoverable_record():
    registry = InMemoryServiceRegistry(probe=_healthy)
    lifecycle = _lifecycle(registry, check_interval_seconds=15, deregister_after_seconds=120)
    assert lifecycle.state is RegistrationState.NOT_REGISTERED

    record = await lifecycle.start()

    assert lifecycle.state is RegistrationState.REGISTERED
    assert lifecycle.instance_id == "cart-service-1"
    assert record.health_check_url == "http://cart-service:80/health"
    assert record.check_interval_seconds == 15
    assert record.deregister_after_seconds == 120
    assert registry.get_record("cart-service-1") == record
    assert [i.instance_id for i in await registry.discover("cart-service")] == ["cart-service-1"]


@pytest.mark.asyncio
async def test_start_clears_stale_entry_first():
    registry = RecordingRegistry()
    await _lifecycle(registry).start()
    assert registry.calls == [("deregister", "cart-service-1"), ("register", "cart-service-1")]


@pytest.mark.asyncio
async def test_start_twice_returns_same_record():
    registry = RecordingRegistry()
    lifecycle = _lifecycle(registry)
    first = await lifecycle.start()
    second = await lifecycle.start()
    assert first is second
    assert len(registry.calls) == 2


@pytest.mark.asyncio
async def test_stop_removes_registration():
    registry = InMemoryServiceRegistry(probe=_healthy)
    lifecycle = _lifecycle(registry)
    await lifecycle.start()

    await lifecycle.stop()

    assert lifecycle.state is RegistrationState.DEREGISTERED
    assert lifecycle.record is None
    assert await registry.lookup("cart-service-1") is None


@pytest.mark.asyncio
async def test_stop_is_idempotent():
    registry = RecordingRegistry()
    lifecycle = _lifecycle(registry)
    await lifecycle.stop()
    assert lifecycle.state is RegistrationState.NOT_REGISTERED

    await lifecycle.start()
    await lifecycle.stop()
    await lifecycle.stop()
    assert registry.calls.count(("deregister", "cart-service-1")) == 2
    assert lifecycle.state is RegistrationState.DEREGISTERED


@pytest.mark.asyncio
async def test_restart_uses_fresh_instance_id():
    registry = InMemoryServiceRegistry(probe=_healthy)
    lifecycle = _lifecycle(registry)
    await lifecycle.start()
    await lifecycle.stop()

    await lifecycle.start()

    assert lifecycle.instance_id == "cart-service-2"
    assert await registry.lookup("cart-service-1") is None


@pytest.mark.asyncio
async def test_start_failure_leaves_state_unchanged():
    registry = InMemoryServiceRegistry(probe=_healthy)
    registry.available = False
    lifecycle = _lifecycle(registry)

    with pytest.raises(RegistrationError):
        await lifecycle.start()
    assert lifecycle.state is RegistrationState.NOT_REGISTERED
    assert lifecycle.instance_id is None

    registry.available = True
    await lifecycle.start()
    assert lifecycle.state is RegistrationState.REGISTERED


@pytest.mark.asyncio
async def test_stop_failure_keeps_registration():
    registry = InMemoryServiceRegistry(probe=_healthy)
    lifecycle = _lifecycle(registry)
    await lifecycle.start()
    registry.available = False

    with pytest.raises(RegistrationError):
        await lifecycle.stop()
    assert lifecycle.state is RegistrationState.REGISTERED
    assert lifecycle.instance_id == "cart-service-1"


@pytest.mark.asyncio
async def test_ensure_registered_after_eviction():
    registry = InMemoryServiceRegistry(probe=_healthy)
    lifecycle = _lifecycle(registry)
    await lifecycle.start()
    assert await lifecycle.ensure_registered() is False

    # Simulate the registry dropping the instance after failed health checks.
    await registry.deregister("cart-service-1")

    assert await lifecycle.ensure_registered() is True
    assert lifecycle.instance_id == "cart-service-2"
    assert await registry.lookup("cart-service-2") is not None


@pytest.mark.asyncio
async def test_ensure_registered_is_noop_when_not_started():
    lifecycle = _lifecycle(InMemoryServiceRegistry(probe=_healthy))
    assert await lifecycle.ensure_registered() is False
    assert lifecycle.state is RegistrationState.NOT_REGISTERED


@pytest.mark.asyncio
async def test_context_manager_registers_for_its_duration():
    registry = InMemoryServiceRegistry(probe=_healthy)
    async with _lifecycle(registry) as lifecycle:
        assert await registry.lookup(lifecycle.instance_id) is not None
    assert lifecycle.state is RegistrationState.DEREGISTERED
    assert await registry.lookup("cart-service-1") is None
