"""
Per-process service runtime: ties the message bus and the registration
lifecycle to an application's startup and shutdown.

Ordering
--------
- Start: start the registry client, connect the bus, set up subscriptions,
  mark ready, then register.  The instance becomes discoverable only once it
  can actually serve.  If any step fails, the bus and the registry client
  are released before the error propagates.
- While running, a watchdog task asks the lifecycle every
  ``recheck_interval`` seconds whether the registry still lists this
  instance, and registers again under a fresh id if it was evicted.
- Stop: cancel the watchdog, mark not ready, deregister, then shut the bus
  down.  If the process dies before ``stop()`` runs, the registry's health
  checks remove it after the grace period.
"""
import asyncio
import contextlib
import logging
from typing import Callable, Iterable

from fastapi import APIRouter, FastAPI, Request, Response

from ecommerce.config import Settings, settings
from ecommerce.discovery.lifecycle import RegistrationLifecycle
from ecommerce.discovery.registry import (
    ConsulRegistryClient,
    InMemoryServiceRegistry,
    RegistryClient,
)
from ecommerce.errors import RegistrationError
from ecommerce.messaging.bus import MessageBus, RabbitMQMessageBus, Subscription
from ecommerce.messaging.memory import InMemoryMessageBus

logger = logging.getLogger(__name__)


class ServiceRuntime:
    def __init__(
        self,
        bus: MessageBus,
        lifecycle: RegistrationLifecycle,
        registry: RegistryClient,
        *,
        registry_required: bool = False,
        recheck_interval: float | None = None,
    ) -> None:
        self.bus = bus
        self.lifecycle = lifecycle
        self.registry = registry
        self.registry_required = registry_required
        self.recheck_interval = recheck_interval
        self.ready = False
        self._watchdog: asyncio.Task | None = None

    @property
    def service_name(self) -> str:
        return self.lifecycle.service_name

    @property
    def instance_id(self) -> str | None:
        return self.lifecycle.instance_id

    @property
    def healthy(self) -> bool:
        return self.ready and self.bus.is_connected

    async def start(self, subscriptions: Iterable[Subscription] = ()) -> None:
        try:
            await self.registry.start()
            await self.bus.connect()
            for subscription in subscriptions:
                await self.bus.subscribe(subscription)
            self.ready = True

            try:
                await self.lifecycle.start()
            except RegistrationError:
                if self.registry_required:
                    raise
                logger.warning("%s is running without a registry entry", self.service_name)
        except BaseException:
            self.ready = False
            await self._release()
            raise

        if self.recheck_interval:
            self._watchdog = asyncio.create_task(
                self._watch_registration(), name=f"registration-watchdog-{self.service_name}"
            )

    async def _watch_registration(self) -> None:
        while True:
            await asyncio.sleep(self.recheck_interval)
            try:
                await self.lifecycle.ensure_registered()
            except RegistrationError as exc:
                logger.warning("Registration check for %s failed: %s", self.service_name, exc)

    async def _release(self) -> None:
        try:
            await self.bus.shutdown()
        finally:
            await self.registry.close()

    async def stop(self) -> None:
        watchdog, self._watchdog = self._watchdog, None
        if watchdog is not None:
            watchdog.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watchdog

        self.ready = False
        try:
            await self.lifecycle.stop()
        except RegistrationError as exc:
            logger.warning(
                "Deregistration failed, registry health checks will remove %s: %s",
                self.instance_id, exc,
            )
        finally:
            await self._release()


def build_message_bus(cfg: Settings = settings) -> MessageBus:
    if cfg.MESSAGE_BROKER == "memory":
        return InMemoryMessageBus(delivery_limit=cfg.MESSAGE_DELIVERY_LIMIT)
    if cfg.MESSAGE_BROKER == "rabbitmq":
        return RabbitMQMessageBus(
            cfg.rabbitmq_url,
            dead_letter_exchange=cfg.DEAD_LETTER_EXCHANGE,
            delivery_limit=cfg.MESSAGE_DELIVERY_LIMIT,
        )
    raise ValueError(f"Unknown MESSAGE_BROKER {cfg.MESSAGE_BROKER!r}")


def build_registry(cfg: Settings = settings) -> RegistryClient:
    if cfg.SERVICE_REGISTRY == "memory":
        return InMemoryServiceRegistry(poll_interval=cfg.REGISTRY_POLL_INTERVAL_SECONDS)
    if cfg.SERVICE_REGISTRY == "consul":
        return ConsulRegistryClient(cfg.consul_url, timeout=cfg.HEALTH_CHECK_TIMEOUT_SECONDS)
    raise ValueError(f"Unknown SERVICE_REGISTRY {cfg.SERVICE_REGISTRY!r}")


def build_runtime(default_service_name: str, cfg: Settings = settings) -> ServiceRuntime:
    """Assemble the runtime for one service from configuration."""
    service_name = cfg.SERVICE_NAME or default_service_name
    registry = build_registry(cfg)
    lifecycle = RegistrationLifecycle(
        registry,
        service_name=service_name,
        host=cfg.SERVICE_HOST or service_name,
        port=cfg.SERVICE_PORT,
        health_check_path=cfg.HEALTH_CHECK_PATH,
        check_interval_seconds=cfg.HEALTH_CHECK_INTERVAL_SECONDS,
        check_timeout_seconds=cfg.HEALTH_CHECK_TIMEOUT_SECONDS,
        deregister_after_seconds=cfg.HEALTH_CHECK_DEREGISTER_AFTER_SECONDS,
    )
    return ServiceRuntime(
        build_message_bus(cfg),
        lifecycle,
        registry,
        registry_required=cfg.REGISTRY_REQUIRED,
        recheck_interval=cfg.REGISTRATION_RECHECK_SECONDS or None,
    )


def instance_id_of(app: FastAPI) -> Callable[[], str | None]:
    def _instance_id() -> str | None:
        runtime = getattr(app.state, "runtime", None)
        return runtime.instance_id if runtime else None

    return _instance_id


# ---------------------------------------------------------------------------
# Health endpoint polled by the registry
# ---------------------------------------------------------------------------

health_router = APIRouter(tags=["health"])


async def health(request: Request, response: Response) -> dict:
    runtime: ServiceRuntime | None = getattr(request.app.state, "runtime", None)
    healthy = runtime is not None and runtime.healthy
    if not healthy:
        response.status_code = 503
    return {
        "status": "healthy" if healthy else "unhealthy",
        "service": runtime.service_name if runtime else None,
        "instance_id": runtime.instance_id if runtime else None,
    }


health_router.add_api_route(settings.HEALTH_CHECK_PATH, health, methods=["GET"])
