"""Doubles and builders shared by the fixtures and the runtime tests."""
from ecommerce.discovery import InMemoryServiceRegistry, RegistrationLifecycle
from ecommerce.messaging import InMemoryMessageBus
from ecommerce.runtime import ServiceRuntime


async def always_healthy(record) -> bool:
    return True


class RedisDouble:
    """Dict-backed stand-in for the redis.asyncio calls the cart store makes."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.expiry: dict[str, int | None] = {}

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        return self.data.get(key)

    async def set(self, key: str, value: str, ex: int | None = None) -> bool:
        self.data[key] = value
        self.expiry[key] = ex
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                self.expiry.pop(key, None)
                removed += 1
        return removed

    async def aclose(self) -> None:
        pass


def build_test_runtime(
    service_name: str,
    bus: InMemoryMessageBus,
    registry: InMemoryServiceRegistry | None = None,
    *,
    registry_required: bool = False,
) -> ServiceRuntime:
    registry = registry or InMemoryServiceRegistry(probe=always_healthy)
    lifecycle = RegistrationLifecycle(registry, service_name=service_name, host="localhost", port=8000)
    return ServiceRuntime(bus, lifecycle, registry, registry_required=registry_required)
