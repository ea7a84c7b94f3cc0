# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.
from dataclasses import dataclass
from enum import auto, Enum
from typing import Optional, Protocol, runtime_checkable

from healthwatch.schemas.log import Log


class DataType(Enum):
    INCIDENT = auto()
    SUMMARY = auto()


@dataclass
class SinkAdditionalParams:
    """Sinks may use this information as needed, e.g. to route records by type."""

    data_type: Optional[DataType] = None
    group_id: Optional[int] = None


class SinkWrite(Protocol):
    def __call__(self, data: Log, additional_params: SinkAdditionalParams) -> None: ...


@runtime_checkable
class SinkImpl(Protocol):
    """A destination for health records."""

    def write(
        self,
        data: Log,
        additional_params: SinkAdditionalParams,
    ) -> None:
        """Writes data to the sink, see available sinks in /exporters."""
