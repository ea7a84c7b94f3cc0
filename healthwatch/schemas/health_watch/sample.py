# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.
from dataclasses import dataclass
from typing import Optional, Union

from healthwatch.health_watch.types import EntityRef

SampleValue = Union[int, float]


@dataclass(frozen=True)
class Sample:
    """One timestamped value of one field for one entity.

    `value` is None when the store recorded a blank for that instant. A sample
    flagged `not_supported` is also blank, but tells the caller the field cannot be
    read on this entity at all.
    """

    value: Optional[SampleValue]
    timestamp: int
    not_supported: bool = False

    @property
    def is_blank(self) -> bool:
        return self.value is None or self.not_supported


@dataclass(frozen=True)
class FieldValue:
    """An entry of the metric-update feed."""

    entity: EntityRef
    field_id: int
    timestamp: int
    value: Optional[SampleValue]
