# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.
import logging

from healthwatch.health_watch.types import EntityRef, HealthResult, HealthSystem
from healthwatch.schemas.health_watch.incident import ErrorDetail, HealthResponse

logger = logging.getLogger(__name__)


def report_incident(
    entity: EntityRef,
    health: HealthResult,
    system: HealthSystem,
    error: ErrorDetail,
    response: HealthResponse,
) -> None:
    """Record an incident on the caller's response and log it."""
    response.add_incident(system, health, error, entity)
    logger.error(
        "Detected a %s in health system %s: '%s'",
        health.label,
        system.label,
        error.msg,
    )
