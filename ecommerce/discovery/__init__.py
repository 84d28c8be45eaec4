# Discovery package.
#
#   registry - ServiceRegistrationRecord, the RegistryClient interface,
#                the Consul HTTP client and an in-process registry
#   lifecycle - RegistrationLifecycle state machine driven by process start/stop
from ecommerce.discovery.lifecycle import RegistrationLifecycle, RegistrationState
from ecommerce.discovery.registry import (
    ConsulRegistryClient,
    InMemoryServiceRegistry,
    RegistryClient,
    ServiceInstance,
    ServiceRegistrationRecord,
)

__all__ = [
    "ConsulRegistryClient",
    "InMemoryServiceRegistry",
    "RegistrationLifecycle",
    "RegistrationState",
    "RegistryClient",
    "ServiceInstance",
    "ServiceRegistrationRecord",
]
