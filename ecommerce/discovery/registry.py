"""
Discovery registry clients.

``ConsulRegistryClient`` talks to a Consul agent over its HTTP API.
``InMemoryServiceRegistry`` plays the registry's role inside the process:
it stores registrations, polls their health-check URLs on the advertised
interval and evicts instances that keep failing past their grace period.
"""
import asyncio
import contextlib
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable
from urllib.parse import quote

import httpx

from ecommerce.errors import RegistrationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServiceRegistrationRecord:
    service_name: str
    instance_id: str
    host: str
    port: int
    health_check_url: str
    check_interval_seconds: int = 10
    check_timeout_seconds: int = 5
    deregister_after_seconds: int = 60

    def to_consul(self) -> dict:
        """Render the record as a Consul agent service definition."""
        return {
            "ID": self.instance_id,
            "Name": self.service_name,
            "Address": self.host,
            "Port": self.port,
            "Check": {
                "HTTP": self.health_check_url,
                "Interval": f"{self.check_interval_seconds}s",
                "Timeout": f"{self.check_timeout_seconds}s",
                "DeregisterCriticalServiceAfter": f"{self.deregister_after_seconds}s",
            },
        }


@dataclass(frozen=True)
class ServiceInstance:
    """What other services see when they look an instance up."""

    service_name: str
    instance_id: str
    host: str
    port: int

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"


class RegistryClient(ABC):
    @abstractmethod
    async def register(self, record: ServiceRegistrationRecord) -> None:
        ...

    @abstractmethod
    async def deregister(self, instance_id: str) -> None:
        """Remove *instance_id*; removing an unknown id is not an error."""

    @abstractmethod
    async def lookup(self, instance_id: str) -> ServiceInstance | None:
        ...

    @abstractmethod
    async def discover(self, service_name: str) -> list[ServiceInstance]:
        """Return the healthy instances of *service_name*."""

    async def start(self) -> None:
        """Begin any background work the client needs; none by default."""

    async def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Consul
# ---------------------------------------------------------------------------

class ConsulRegistryClient(RegistryClient):
    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            return await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise RegistrationError(f"Registry unreachable ({method} {path}): {exc}") from exc

    @staticmethod
    def _check(response: httpx.Response, operation: str) -> None:
        if response.is_error:
            raise RegistrationError(
                f"Registry rejected {operation}: HTTP {response.status_code} {response.text.strip()}"
            )

    async def register(self, record: ServiceRegistrationRecord) -> None:
        response = await self._request("PUT", "/v1/agent/service/register", json=record.to_consul())
        self._check(response, f"register {record.instance_id}")

    async def deregister(self, instance_id: str) -> None:
        response = await self._request(
            "PUT", f"/v1/agent/service/deregister/{quote(instance_id, safe='')}"
        )
        if response.status_code == 404:
            return
        self._check(response, f"deregister {instance_id}")

    async def lookup(self, instance_id: str) -> ServiceInstance | None:
        response = await self._request("GET", f"/v1/agent/service/{quote(instance_id, safe='')}")
        if response.status_code == 404:
            return None
        self._check(response, f"lookup {instance_id}")
        data = response.json()
        return ServiceInstance(
            service_name=data["Service"],
            instance_id=data["ID"],
            host=data.get("Address", ""),
            port=data.get("Port", 0),
        )

    async def discover(self, service_name: str) -> list[ServiceInstance]:
        response = await self._request(
            "GET", f"/v1/health/service/{quote(service_name, safe='')}", params={"passing": "true"}
        )
        self._check(response, f"discover {service_name}")
        instances = []
        for entry in response.json():
            service = entry["Service"]
            instances.append(
                ServiceInstance(
                    service_name=service["Service"],
                    instance_id=service["ID"],
                    # Consul leaves Address empty when the node address applies.
                    host=service.get("Address") or entry.get("Node", {}).get("Address", ""),
                    port=service.get("Port", 0),
                )
            )
        return instances

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


# ---------------------------------------------------------------------------
# In-process registry
# ---------------------------------------------------------------------------

Probe = Callable[[ServiceRegistrationRecord], Awaitable[bool]]


async def http_probe(record: ServiceRegistrationRecord) -> bool:
    """Healthy when the health-check URL answers 2xx within the check timeout."""
    try:
        async with httpx.AsyncClient(timeout=record.check_timeout_seconds) as client:
            response = await client.get(record.health_check_url)
    except httpx.HTTPError:
        return False
    return response.is_success


@dataclass
class _Entry:
    record: ServiceRegistrationRecord
    next_check_at: float
    failing_since: float | None = None

    def instance(self) -> ServiceInstance:
        r = self.record
        return ServiceInstance(r.service_name, r.instance_id, r.host, r.port)


class InMemoryServiceRegistry(RegistryClient):
    """
    Registry held in process memory.

    ``check_health()`` runs one polling round: every registration whose
    interval has elapsed is probed (bounded by its check timeout); a failing
    registration is evicted once it has been failing continuously for
    ``deregister_after_seconds``.  ``start()`` runs a round every
    *poll_interval* seconds in a background task until ``close()``.  Set
    ``available = False`` to make every client call fail as if the registry
    were unreachable.
    """

    def __init__(
        self,
        *,
        probe: Probe = http_probe,
        clock: Callable[[], float] = time.monotonic,
        poll_interval: float = 1.0,
    ) -> None:
        self._probe = probe
        self._clock = clock
        self._poll_interval = poll_interval
        self._poller: asyncio.Task | None = None
        self._entries: dict[str, _Entry] = {}
        self.available = True

    def _ensure_available(self) -> None:
        if not self.available:
            raise RegistrationError("Registry unreachable")

    async def register(self, record: ServiceRegistrationRecord) -> None:
        self._ensure_available()
        self._entries[record.instance_id] = _Entry(record, next_check_at=self._clock())

    async def deregister(self, instance_id: str) -> None:
        self._ensure_available()
        self._entries.pop(instance_id, None)

    async def lookup(self, instance_id: str) -> ServiceInstance | None:
        self._ensure_available()
        entry = self._entries.get(instance_id)
        return entry.instance() if entry else None

    async def discover(self, service_name: str) -> list[ServiceInstance]:
        self._ensure_available()
        return [
            entry.instance()
            for entry in self._entries.values()
            if entry.record.service_name == service_name and entry.failing_since is None
        ]

    def get_record(self, instance_id: str) -> ServiceRegistrationRecord | None:
        entry = self._entries.get(instance_id)
        return entry.record if entry else None

    async def check_health(self) -> list[str]:
        """Run one polling round and return the ids evicted by it."""
        now = self._clock()
        evicted: list[str] = []
        for instance_id, entry in list(self._entries.items()):
            record = entry.record
            if now < entry.next_check_at:
                continue
            entry.next_check_at = now + record.check_interval_seconds

            try:
                healthy = await asyncio.wait_for(self._probe(record), timeout=record.check_timeout_seconds)
            except TimeoutError:
                healthy = False
            except Exception as exc:
                logger.debug("Health probe for %s raised %s", instance_id, exc)
                healthy = False

            if healthy:
                entry.failing_since = None
                continue
            if entry.failing_since is None:
                entry.failing_since = now
            if now - entry.failing_since >= record.deregister_after_seconds:
                self._entries.pop(instance_id, None)
                evicted.append(instance_id)
                logger.warning(
                    "Evicted %s (%s): failing health checks for %ss",
                    instance_id, record.service_name, int(now - entry.failing_since),
                )
        return evicted

    async def _poll(self) -> None:
        while True:
            await self.check_health()
            await asyncio.sleep(self._poll_interval)

    @property
    def polling(self) -> bool:
        return self._poller is not None and not self._poller.done()

    async def start(self) -> None:
        if not self.polling:
            self._poller = asyncio.create_task(self._poll(), name="registry-health-poller")

    async def close(self) -> None:
        poller, self._poller = self._poller, None
        if poller is None:
            return
        poller.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await poller
