# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.
from __future__ import annotations

import bisect
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Literal, Optional, Sequence, Tuple

from healthwatch.health_watch.fields import (
    NVLINK_MAX_LINKS_PER_GPU,
    NVLINK_MAX_LINKS_PER_NVSWITCH,
)
from healthwatch.health_watch.sample_store import SampleStoreException, Watcher
from healthwatch.health_watch.types import (
    EntityRef,
    EntityType,
    LinkState,
    Order,
    Status,
)
from healthwatch.schemas.health_watch.sample import FieldValue, Sample, SampleValue
from pydantic import BaseModel, Field
from typeguard import typechecked

logger = logging.getLogger(__name__)

FieldValueListener = Callable[[Sequence[FieldValue]], None]
_Key = Tuple[EntityRef, int]


@dataclass
class WatchInfo:
    update_interval_usec: int
    max_keep_age_sec: float
    subscribe_for_updates: bool
    watchers: List[Watcher]


class SnapshotEntity(BaseModel):
    entity_type: Literal[
        "GPU", "VGPU", "SWITCH", "GPU_I", "GPU_CI", "LINK", "CPU", "CPU_CORE"
    ]
    entity_id: int = Field(ge=0)

    def to_ref(self) -> EntityRef:
        return EntityRef(EntityType[self.entity_type], self.entity_id)


class SnapshotSample(SnapshotEntity):
    field_id: int
    timestamp: int
    value: Optional[SampleValue] = None
    not_supported: bool = False


class SnapshotLinks(SnapshotEntity):
    states: List[Literal["NOT_SUPPORTED", "DISABLED", "DOWN", "UP"]]


class Snapshot(BaseModel):
    """On-disk form of an InMemorySampleStore.

    {
        "groups": {"1": [{"entity_type": "GPU", "entity_id": 0}]},
        "samples": [{"entity_type": "GPU", "entity_id": 0, "field_id": 202,
                     "timestamp": 1700000000000000, "value": 3}],
        "link_states": [{"entity_type": "GPU", "entity_id": 0, "states": ["UP"]}]
    }
    """

    groups: Dict[int, List[SnapshotEntity]] = Field(default_factory=dict)
    samples: List[SnapshotSample] = Field(default_factory=list)
    link_states: List[SnapshotLinks] = Field(default_factory=list)


@typechecked
def load_snapshot(path: Path) -> Snapshot:
    snapshot = Snapshot.model_validate_json(Path(path).read_text())
    logger.info(
        "Loaded %d groups and %d samples from %s",
        len(snapshot.groups),
        len(snapshot.samples),
        path,
    )
    return snapshot


def _default_link_count(entity: EntityRef) -> int:
    if entity.is_gpu_like:
        return NVLINK_MAX_LINKS_PER_GPU
    if entity.entity_type is EntityType.SWITCH:
        return NVLINK_MAX_LINKS_PER_NVSWITCH
    return 0


class InMemorySampleStore:
    """A SampleStore backed by dicts, fed by `inject` instead of hardware sampling.

    Values injected for a field watched with `subscribe_for_updates` are pushed to
    every registered listener, outside of the store's lock.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._groups: Dict[int, List[EntityRef]] = {}
        self._samples: Dict[_Key, List[Sample]] = {}
        self._watches: Dict[_Key, WatchInfo] = {}
        self._link_states: Dict[EntityRef, List[LinkState]] = {}
        self._listeners: List[FieldValueListener] = []
        self.update_count = 0

    @classmethod
    def from_snapshot(cls, path: Path) -> InMemorySampleStore:
        store = cls()
        snapshot = load_snapshot(path)
        store.apply_topology(snapshot)
        store.apply_samples(snapshot)
        return store

    def apply_topology(self, snapshot: Snapshot) -> None:
        """Load groups and link states. Samples are loaded separately so that
        watches can be installed first and subscribed fields reach the listeners."""
        for group_id, members in snapshot.groups.items():
            self.set_group(group_id, [m.to_ref() for m in members])
        for links in snapshot.link_states:
            self.set_link_states(
                links.to_ref(), [LinkState[state] for state in links.states]
            )

    def apply_samples(self, snapshot: Snapshot) -> None:
        for s in sorted(snapshot.samples, key=lambda s: s.timestamp):
            self.inject(
                s.to_ref(),
                s.field_id,
                s.value,
                s.timestamp,
                not_supported=s.not_supported,
            )

    def set_group(self, group_id: int, entities: Sequence[EntityRef]) -> None:
        with self._lock:
            self._groups[group_id] = list(entities)

    def remove_group(self, group_id: int) -> None:
        with self._lock:
            self._groups.pop(group_id, None)

    def set_link_states(self, entity: EntityRef, states: Sequence[LinkState]) -> None:
        with self._lock:
            self._link_states[entity] = list(states)

    def add_field_value_listener(self, listener: FieldValueListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def inject(
        self,
        entity: EntityRef,
        field_id: int,
        value: Optional[SampleValue],
        timestamp: int,
        *,
        not_supported: bool = False,
    ) -> None:
        sample = Sample(value=value, timestamp=timestamp, not_supported=not_supported)
        key = (entity, field_id)
        with self._lock:
            series = self._samples.setdefault(key, [])
            bisect.insort(series, sample, key=lambda s: s.timestamp)
            watch = self._watches.get(key)
            listeners = (
                list(self._listeners)
                if watch is not None and watch.subscribe_for_updates
                else []
            )

        update = [FieldValue(entity, field_id, timestamp, value)]
        for listener in listeners:
            listener(update)

    def watch_info(self, entity: EntityRef, field_id: int) -> Optional[WatchInfo]:
        with self._lock:
            return self._watches.get((entity, field_id))

    def add_watch(
        self,
        entity: EntityRef,
        field_id: int,
        update_interval_usec: int,
        max_keep_age_sec: float,
        watcher: Watcher,
        subscribe_for_updates: bool = False,
    ) -> None:
        if update_interval_usec <= 0:
            raise SampleStoreException(
                Status.BADPARAM,
                f"update interval must be > 0, got {update_interval_usec}",
            )
        key = (entity, field_id)
        with self._lock:
            watch = self._watches.get(key)
            if watch is None:
                self._watches[key] = WatchInfo(
                    update_interval_usec,
                    max_keep_age_sec,
                    subscribe_for_updates,
                    [watcher],
                )
                return
            watch.update_interval_usec = min(
                watch.update_interval_usec, update_interval_usec
            )
            watch.max_keep_age_sec = max(watch.max_keep_age_sec, max_keep_age_sec)
            watch.subscribe_for_updates |= subscribe_for_updates
            if watcher not in watch.watchers:
                watch.watchers.append(watcher)

    def _series(self, entity: EntityRef, field_id: int) -> List[Sample]:
        key = (entity, field_id)
        series = self._samples.get(key)
        if series is None:
            if key in self._watches:
                raise SampleStoreException(Status.NO_DATA)
            raise SampleStoreException(Status.NOT_WATCHED)
        return series

    def get_samples(
        self,
        entity: EntityRef,
        field_id: int,
        count: int,
        start_usec: Optional[int],
        end_usec: Optional[int],
        order: Order,
    ) -> List[Sample]:
        if count < 1:
            raise SampleStoreException(
                Status.BADPARAM, f"count must be >= 1, got {count}"
            )
        with self._lock:
            window = [
                s
                for s in self._series(entity, field_id)
                if (start_usec is None or s.timestamp >= start_usec)
                and (end_usec is None or s.timestamp <= end_usec)
            ]
        if not window:
            raise SampleStoreException(Status.NO_DATA)
        if order is Order.DESCENDING:
            window.reverse()
        return window[:count]

    def get_latest_sample(self, entity: EntityRef, field_id: int) -> Sample:
        with self._lock:
            series = self._series(entity, field_id)
            if not series:
                raise SampleStoreException(Status.NO_DATA)
            return series[-1]

    def update_all_fields(self, wait_for_update: bool) -> None:
        with self._lock:
            self.update_count += 1

    def get_group_entities(self, group_id: int) -> List[EntityRef]:
        with self._lock:
            entities = self._groups.get(group_id)
        if entities is None:
            raise SampleStoreException(
                Status.NOT_CONFIGURED, f"group {group_id} does not exist"
            )
        return list(entities)

    def get_link_states(self, entity: EntityRef) -> Sequence[LinkState]:
        with self._lock:
            states = self._link_states.get(entity)
        if states is None:
            return [LinkState.NOT_SUPPORTED] * _default_link_count(entity)
        return list(states)
