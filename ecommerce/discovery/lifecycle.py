"""
Registration lifecycle: keeps the registry's view of this process in step
with the process itself.

State machine::

    NOT_REGISTERED -> REGISTERING -> REGISTERED -> DEREGISTERING -> DEREGISTERED

``REGISTERED`` can also be left from the registry side when health checks
fail past the grace period.  The controller never re-registers an evicted
id; ``ensure_registered()`` recovers by starting again under a fresh one.
"""
import asyncio
import enum
import logging
import uuid
from typing import Callable

from ecommerce.discovery.registry import RegistryClient, ServiceRegistrationRecord
from ecommerce.errors import RegistrationError

logger = logging.getLogger(__name__)


class RegistrationState(str, enum.Enum):
    NOT_REGISTERED = "not_registered"
    REGISTERING = "registering"
    REGISTERED = "registered"
    DEREGISTERING = "deregistering"
    DEREGISTERED = "deregistered"


def new_instance_id(service_name: str) -> str:
    return f"{service_name}-{uuid.uuid4()}"


class RegistrationLifecycle:
    """
    Drives a ``RegistryClient`` through the registration state machine.

    The controller exclusively owns the current ``ServiceRegistrationRecord``;
    it is created by ``start()`` and dropped by ``stop()``.  Neither call
    retries: a ``RegistrationError`` is returned to the caller, which decides
    whether to carry on unregistered, retry, or abort.
    """

    def __init__(
        self,
        registry: RegistryClient,
        *,
        service_name: str,
        host: str,
        port: int,
        health_check_path: str = "/health",
        check_interval_seconds: int = 10,
        check_timeout_seconds: int = 5,
        deregister_after_seconds: int = 60,
        id_factory: Callable[[str], str] = new_instance_id,
    ) -> None:
        self._registry = registry
        self.service_name = service_name
        self.host = host
        self.port = port
        self.health_check_path = health_check_path
        self.check_interval_seconds = check_interval_seconds
        self.check_timeout_seconds = check_timeout_seconds
        self.deregister_after_seconds = deregister_after_seconds
        self._id_factory = id_factory
        self._state = RegistrationState.NOT_REGISTERED
        self._record: ServiceRegistrationRecord | None = None
        self._lock = asyncio.Lock()

    @property
    def state(self) -> RegistrationState:
        return self._state

    @property
    def record(self) -> ServiceRegistrationRecord | None:
        return self._record

    @property
    def instance_id(self) -> str | None:
        return self._record.instance_id if self._record else None

    @property
    def health_check_url(self) -> str:
        return f"http://{self.host}:{self.port}{self.health_check_path}"

    def _new_record(self) -> ServiceRegistrationRecord:
        return ServiceRegistrationRecord(
            service_name=self.service_name,
            instance_id=self._id_factory(self.service_name),
            host=self.host,
            port=self.port,
            health_check_url=self.health_check_url,
            check_interval_seconds=self.check_interval_seconds,
            check_timeout_seconds=self.check_timeout_seconds,
            deregister_after_seconds=self.deregister_after_seconds,
        )

    async def start(self) -> ServiceRegistrationRecord:
        """
        Register this process under a freshly generated instance id.

        A deregistration of the same id is issued first to clear any stale
        entry.  Once this returns the instance is discoverable.
        """
        async with self._lock:
            if self._state is RegistrationState.REGISTERED:
                return self._record
            if self._state not in (RegistrationState.NOT_REGISTERED, RegistrationState.DEREGISTERED):
                raise RuntimeError(f"Cannot start registration from state {self._state.value}")
            return await self._register()

    async def _register(self) -> ServiceRegistrationRecord:
        previous = self._state
        record = self._new_record()
        self._state = RegistrationState.REGISTERING
        try:
            await self._registry.deregister(record.instance_id)
            await self._registry.register(record)
        except RegistrationError:
            self._state = previous
            logger.error("Registration of %s failed", record.instance_id)
            raise
        self._record = record
        self._state = RegistrationState.REGISTERED
        logger.info(
            "Registered %s as %s at %s:%s", record.service_name, record.instance_id, record.host, record.port
        )
        return record

    async def stop(self) -> None:
        """
        Deregister the instance created by ``start()``.

        A no-op unless currently registered, so repeated calls are safe.
        """
        async with self._lock:
            if self._state is not RegistrationState.REGISTERED:
                logger.debug("Deregistration skipped in state %s", self._state.value)
                return
            record = self._record
            self._state = RegistrationState.DEREGISTERING
            try:
                await self._registry.deregister(record.instance_id)
            except RegistrationError:
                self._state = RegistrationState.REGISTERED
                logger.error("Deregistration of %s failed", record.instance_id)
                raise
            self._record = None
            self._state = RegistrationState.DEREGISTERED
            logger.info("Deregistered %s", record.instance_id)

    async def ensure_registered(self) -> bool:
        """
        Re-register under a fresh id if the registry evicted this instance.

        ``ServiceRuntime`` calls this periodically while the service runs.
        Returns True when a new registration was made.
        """
        async with self._lock:
            if self._state is not RegistrationState.REGISTERED:
                return False
            if await self._registry.lookup(self._record.instance_id) is not None:
                return False
            logger.warning("Registry no longer lists %s; registering again", self._record.instance_id)
            self._record = None
            self._state = RegistrationState.DEREGISTERED
            await self._register()
            return True

    async def __aenter__(self) -> "RegistrationLifecycle":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()
