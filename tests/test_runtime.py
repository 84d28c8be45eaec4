"""
Service runtime tests - start/stop ordering, registry outages and the
health endpoint the registry polls.
"""
import asyncio
import logging

import pytest
from httpx import AsyncClient

from ecommerce.config import Settings
from ecommerce.discovery import ConsulRegistryClient, InMemoryServiceRegistry, RegistrationState
from ecommerce.errors import RegistrationError, TransportError
from ecommerce.logging_config import configure_logging
from ecommerce.messaging import InMemoryMessageBus, RabbitMQMessageBus, Subscription
from ecommerce.messaging.events import InventoryUpdated
from ecommerce.products.main import app as products_app
from ecommerce.runtime import build_message_bus, build_registry, build_runtime
from tests.support import always_healthy, build_test_runtime


@pytest.mark.asyncio
async def test_start_connects_then_registers():
    bus = InMemoryMessageBus()
    registry = InMemoryServiceRegistry(probe=always_healthy)
    runtime = build_test_runtime("product-service", bus, registry)

    await runtime.start()

    assert bus.is_connected
    assert runtime.healthy
    assert runtime.lifecycle.state is RegistrationState.REGISTERED
    assert await registry.lookup(runtime.instance_id) is not None

    await runtime.stop()
    assert not bus.is_connected
    assert not runtime.healthy
    assert await registry.discover("product-service") == []


@pytest.mark.asyncio
async def test_registry_outage_is_tolerated_by_default():
    bus = InMemoryMessageBus()
    registry = InMemoryServiceRegistry(probe=always_healthy)
    registry.available = False
    runtime = build_test_runtime("product-service", bus, registry)

    await runtime.start()

    assert runtime.healthy
    assert runtime.instance_id is None
    await runtime.stop()


@pytest.mark.asyncio
async def test_registry_outage_aborts_when_required():
    bus = InMemoryMessageBus()
    registry = InMemoryServiceRegistry(probe=always_healthy)
    registry.available = False
    runtime = build_test_runtime("product-service", bus, registry, registry_required=True)

    with pytest.raises(RegistrationError):
        await runtime.start()
    assert not bus.is_connected
    assert not runtime.healthy
    assert not registry.polling


@pytest.mark.asyncio
async def test_stop_survives_deregistration_failure():
    bus = InMemoryMessageBus()
    registry = InMemoryServiceRegistry(probe=always_healthy)
    runtime = build_test_runtime("product-service", bus, registry)
    await runtime.start()
    registry.available = False

    await runtime.stop()

    assert not bus.is_connected


@pytest.mark.asyncio
async def test_failed_subscription_releases_bus_and_registry():
    class RefusingBus(InMemoryMessageBus):
        async def subscribe(self, subscription):
            raise TransportError("Channel closed")

    bus = RefusingBus()
    registry = InMemoryServiceRegistry(probe=always_healthy)
    runtime = build_test_runtime("product-service", bus, registry)
    subscription = Subscription(
        queue_name="product-service.inventory",
        exchange_name="ecommerce.events",
        routing_key_pattern="inventory.*",
        handler=lambda envelope: None,
        payload_type=InventoryUpdated,
    )

    with pytest.raises(TransportError):
        await runtime.start([subscription])

    assert not bus.is_connected
    assert not registry.polling
    assert not runtime.healthy
    assert runtime.instance_id is None


@pytest.mark.asyncio
async def test_evicted_instance_registers_again():
    bus = InMemoryMessageBus()
    registry = InMemoryServiceRegistry(probe=always_healthy)
    runtime = build_test_runtime("product-service", bus, registry)
    runtime.recheck_interval = 0.01
    await runtime.start()
    evicted = runtime.instance_id

    await registry.deregister(evicted)
    for _ in range(100):
        if runtime.instance_id != evicted:
            break
        await asyncio.sleep(0.01)

    assert runtime.instance_id != evicted
    assert await registry.lookup(runtime.instance_id) is not None
    await runtime.stop()
    assert await registry.discover("product-service") == []


@pytest.mark.asyncio
async def test_memory_registry_evicts_instance_with_dead_health_endpoint():
    cfg = Settings(
        MESSAGE_BROKER="memory",
        SERVICE_REGISTRY="memory",
        SERVICE_HOST="127.0.0.1",
        SERVICE_PORT=1,
        HEALTH_CHECK_INTERVAL_SECONDS=1,
        HEALTH_CHECK_TIMEOUT_SECONDS=1,
        HEALTH_CHECK_DEREGISTER_AFTER_SECONDS=0,
        REGISTRY_POLL_INTERVAL_SECONDS=0.05,
    )
    runtime = build_runtime("product-service", cfg)
    await runtime.start()
    instance_id = runtime.instance_id
    assert instance_id is not None

    for _ in range(60):
        if await runtime.registry.lookup(instance_id) is None:
            break
        await asyncio.sleep(0.05)

    assert await runtime.registry.lookup(instance_id) is None
    await runtime.stop()
    assert not runtime.registry.polling

# ---------------------------------------------------------------------------
# Health endpoint
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_health_reports_instance(product_client: AsyncClient):
    resp = await product_client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert data["service"] == "product-service"
    assert data["instance_id"] == products_app.state.runtime.instance_id
    assert resp.headers["x-served-by"] == data["instance_id"]
    assert "x-response-time-ms" in resp.headers


@pytest.mark.asyncio
async def test_health_unhealthy_without_bus(product_client: AsyncClient, bus: InMemoryMessageBus):
    await bus.shutdown()
    resp = await product_client.get("/health")
    assert resp.status_code == 503
    assert resp.json()["status"] == "unhealthy"


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def test_builders_follow_configuration():
    memory = Settings(MESSAGE_BROKER="memory", SERVICE_REGISTRY="memory")
    assert isinstance(build_message_bus(memory), InMemoryMessageBus)
    assert isinstance(build_registry(memory), InMemoryServiceRegistry)

    remote = Settings(MESSAGE_BROKER="rabbitmq", SERVICE_REGISTRY="consul")
    assert isinstance(build_message_bus(remote), RabbitMQMessageBus)
    assert isinstance(build_registry(remote), ConsulRegistryClient)

    with pytest.raises(ValueError):
        build_message_bus(Settings(MESSAGE_BROKER="kafka"))


def test_build_runtime_identity():
    cfg = Settings(MESSAGE_BROKER="memory", SERVICE_REGISTRY="memory", SERVICE_PORT=8081)
    runtime = build_runtime("cart-service", cfg)
    assert runtime.service_name == "cart-service"
    assert runtime.lifecycle.health_check_url == "http://cart-service:8081/health"

    named = Settings(MESSAGE_BROKER="memory", SERVICE_REGISTRY="memory", SERVICE_NAME="carts-eu", SERVICE_HOST="10.0.0.9")
    runtime = build_runtime("cart-service", named)
    assert runtime.service_name == "carts-eu"
    assert runtime.lifecycle.host == "10.0.0.9"


def test_configure_logging_sets_levels():
    configure_logging("cart-service", "debug")
    assert logging.getLogger().level == logging.DEBUG
    assert logging.getLogger("aio_pika").level == logging.WARNING
    formatter = logging.getLogger().handlers[0].formatter
    assert "[cart-service]" in formatter._fmt
    configure_logging("cart-service", "warning")
