"""Rule-evaluation drivers: an in-process evaluator and a networked one."""

from constraint_framework.drivers.base import (
    BackoffConfig,
    Driver,
    DriverProtocol,
    DriverRegistry,
    QueryInput,
    QueryOptions,
    QueryResponse,
)
from constraint_framework.drivers.local import LOCAL_DRIVER_NAME, LocalDriver
from constraint_framework.drivers.remote import REMOTE_DRIVER_NAME, RemoteDriver


def default_driver_registry() -> DriverRegistry:
    """Registry with the built-in ``local`` and ``remote`` drivers."""

    registry = DriverRegistry()
    registry.register(LOCAL_DRIVER_NAME, LocalDriver)
    registry.register(REMOTE_DRIVER_NAME, RemoteDriver)
    return registry


__all__ = [
    "BackoffConfig",
    "Driver",
    "DriverProtocol",
    "DriverRegistry",
    "LOCAL_DRIVER_NAME",
    "LocalDriver",
    "QueryInput",
    "QueryOptions",
    "QueryResponse",
    "REMOTE_DRIVER_NAME",
    "RemoteDriver",
    "default_driver_registry",
]
