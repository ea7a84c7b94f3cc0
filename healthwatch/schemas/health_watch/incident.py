# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.
from dataclasses import dataclass, field
from typing import List, Optional

from healthwatch.health_watch.types import (
    EntityRef,
    HealthResult,
    HealthSystem,
    Status,
)


@dataclass(frozen=True)
class ErrorDetail:
    code: int
    msg: str


@dataclass(frozen=True)
class Incident:
    system: HealthSystem
    health: HealthResult
    error: ErrorDetail
    entity: EntityRef


@dataclass
class IncidentRecord:
    """Flat representation of an incident, suitable for sinks."""

    entity_type: str
    entity_id: int
    system: str
    health: str
    code: int
    message: str


@dataclass
class HealthResponse:
    """Incidents gathered by one evaluation call.

    Detected incidents are not errors: `status` only reflects upstream failures or
    bad parameters, and stays OK while incidents accumulate.
    """

    incidents: List[Incident] = field(default_factory=list)
    status: Status = Status.OK

    def add_incident(
        self,
        system: HealthSystem,
        health: HealthResult,
        error: ErrorDetail,
        entity: EntityRef,
    ) -> None:
        self.incidents.append(Incident(system, health, error, entity))

    @property
    def overall_health(self) -> HealthResult:
        return max(
            (incident.health for incident in self.incidents),
            default=HealthResult.PASS,
        )

    def incidents_for(
        self,
        entity: Optional[EntityRef] = None,
        system: Optional[HealthSystem] = None,
    ) -> List[Incident]:
        return [
            incident
            for incident in self.incidents
            if (entity is None or incident.entity == entity)
            and (system is None or incident.system == system)
        ]

    def to_records(self) -> List[IncidentRecord]:
        return [
            IncidentRecord(
                entity_type=incident.entity.entity_type.name,
                entity_id=incident.entity.entity_id,
                system=incident.system.label,
                health=incident.health.label,
                code=incident.error.code,
                message=incident.error.msg,
            )
            for incident in self.incidents
        ]
