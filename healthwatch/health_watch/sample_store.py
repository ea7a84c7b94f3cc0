# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.
from dataclasses import dataclass
from typing import List, Optional, Protocol, runtime_checkable, Sequence

from healthwatch.health_watch.types import EntityRef, LinkState, Order, Status
from healthwatch.schemas.health_watch.sample import Sample


class SampleStoreException(Exception):
    """Raised by a sample store for any non-OK answer.

    NO_DATA and NOT_WATCHED are expected absences which callers turn into a pass;
    every other status is an upstream failure.
    """

    def __init__(self, status: Status, msg: str = "") -> None:
        super().__init__(msg or status.name)
        self.status = status


@dataclass(frozen=True)
class Watcher:
    """Identity of the party that owns a subscription."""

    watcher_type: str = "health_watch"
    connection_id: int = 0


@runtime_checkable
class SampleStore(Protocol):
    """Time-series store that samples, retains and serves field values."""

    def add_watch(
        self,
        entity: EntityRef,
        field_id: int,
        update_interval_usec: int,
        max_keep_age_sec: float,
        watcher: Watcher,
        subscribe_for_updates: bool = False,
    ) -> None:
        """Start sampling `field_id` for `entity`. With `subscribe_for_updates`, new
        values are also pushed to the field-value listeners."""
        ...

    def get_samples(
        self,
        entity: EntityRef,
        field_id: int,
        count: int,
        start_usec: Optional[int],
        end_usec: Optional[int],
        order: Order,
    ) -> List[Sample]:
        """At most `count` samples with start <= timestamp <= end. A None bound is open."""
        ...

    def get_latest_sample(self, entity: EntityRef, field_id: int) -> Sample: ...

    def update_all_fields(self, wait_for_update: bool) -> None: ...

    def get_group_entities(self, group_id: int) -> List[EntityRef]: ...

    def get_link_states(self, entity: EntityRef) -> Sequence[LinkState]: ...
