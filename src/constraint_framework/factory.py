"""
constraint-framework — client factory.

File: src/constraint_framework/factory.py

Purpose
- Build a ``Client`` from validated config, resolving targets and drivers through registries.

Functional requirements
- Registries are resolved once, at construction time; unknown names fail fast.
- The remote driver token is read from the environment variable named in config.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import structlog

from constraint_framework.client import Client
from constraint_framework.config.loader import remote_token
from constraint_framework.config.schema import assert_valid_config, default_config
from constraint_framework.drivers import (
    LOCAL_DRIVER_NAME,
    REMOTE_DRIVER_NAME,
    BackoffConfig,
    DriverProtocol,
    DriverRegistry,
    default_driver_registry,
)
from constraint_framework.observability.metrics import MetricsRegistry
from constraint_framework.targets import TargetRegistry, default_target_registry


def _driver_options(
    name: str,
    section: Mapping[str, Any],
    *,
    environ: Mapping[str, str] | None,
    config: Mapping[str, Any],
    logger: Any,
) -> dict[str, Any]:
    options = dict(section.get(name, {}))
    if name == LOCAL_DRIVER_NAME:
        options["logger"] = logger
    elif name == REMOTE_DRIVER_NAME:
        options["backoff"] = BackoffConfig(max_retries=int(options.pop("max_retries", 2)))
        options.pop("token_env", None)
        options["token"] = remote_token(config, environ)
        options["logger"] = logger
    return options


def create_client(
    config: Mapping[str, Any] | None = None,
    *,
    driver_registry: DriverRegistry | None = None,
    target_registry: TargetRegistry | None = None,
    metrics: MetricsRegistry | None = None,
    logger: Any | None = None,
    environ: Mapping[str, str] | None = None,
) -> Client:
    """Return a client wired from ``config`` (defaults when omitted)."""

    effective = assert_valid_config(config if config is not None else default_config())
    log = logger if logger is not None else structlog.get_logger("constraint_framework.client")
    drivers_registry = driver_registry or default_driver_registry()
    targets_registry = target_registry or default_target_registry()

    targets = [targets_registry.create(name) for name in effective["client"]["targets"]]

    drivers_section = effective["drivers"]
    drivers: list[DriverProtocol] = []
    for driver_name in drivers_section["enabled"]:
        options = _driver_options(
            driver_name, drivers_section, environ=environ, config=effective, logger=log
        )
        drivers.append(drivers_registry.create(driver_name, **options))

    if metrics is None and effective["observability"]["metrics_enabled"]:
        metrics = MetricsRegistry()

    log.info(
        "client_created",
        targets=[target.name for target in targets],
        drivers=[driver.name for driver in drivers],
    )
    return Client(
        targets=targets,
        drivers=drivers,
        query_timeout_seconds=effective["client"]["query_timeout_seconds"],
        metrics=metrics,
        logger=log,
    )


__all__ = ["create_client"]
