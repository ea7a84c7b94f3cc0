# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.
import logging
from typing import Dict, List, Optional, Sequence

from healthwatch.health_watch.evaluators import (
    CPU_MONITORS,
    GPU_MONITORS,
    Monitor,
    MonitorContext,
    SWITCH_MONITORS,
)
from healthwatch.health_watch.fields import HealthLimits, MAX_NUM_DEVICES
from healthwatch.health_watch.installers import (
    CPU_WATCH_INSTALLERS,
    GPU_WATCH_INSTALLERS,
    Installer,
    set_nvswitch_watches,
)
from healthwatch.health_watch.sample_store import (
    SampleStore,
    SampleStoreException,
    Watcher,
)
from healthwatch.health_watch.types import (
    EntityRef,
    EntityType,
    HEALTH_WATCH_COUNT_V1,
    health_system_bits,
    HealthSystem,
    Status,
)
from healthwatch.health_watch.uncontained_errors import UncontainedErrorTracker
from healthwatch.health_watch.watch_registry import WatchRegistry
from healthwatch.monitoring.clock import Clock, ClockImpl
from healthwatch.schemas.health_watch.incident import HealthResponse
from healthwatch.schemas.health_watch.sample import FieldValue

logger = logging.getLogger(__name__)


class HealthWatch:
    """Keeps the enabled health systems of every group and evaluates them on demand.

    `set_watches` installs the sample store subscriptions each enabled system needs,
    `monitor_watches` evaluates a time window for every entity of a group, and
    `on_field_values_update` is the listener for the XID update feed.
    """

    def __init__(
        self,
        store: SampleStore,
        *,
        clock: Optional[Clock] = None,
        limits: Optional[HealthLimits] = None,
    ) -> None:
        self.store = store
        self.registry = WatchRegistry()
        self.tracker = UncontainedErrorTracker()
        self.ctx = MonitorContext(
            store=store,
            clock=clock if clock is not None else ClockImpl(),
            limits=limits if limits is not None else HealthLimits(),
            tracker=self.tracker,
        )

    def set_watches(
        self,
        group_id: int,
        systems: HealthSystem,
        watcher: Watcher,
        update_interval_usec: int,
        max_keep_age_sec: float,
    ) -> Status:
        """Replace the group's mask and subscribe every member to what it needs.

        Returns the last failure seen, or OK. An installer failure only stops the
        remaining systems of that entity.
        """
        try:
            entities = self.store.get_group_entities(group_id)
        except SampleStoreException as e:
            logger.error("Got st %s from get_group_entities()", e.status.name)
            return e.status

        self.registry.set_mask(group_id, systems)

        ret = Status.OK
        switch_ids: List[int] = []
        for entity in entities:
            if entity.is_gpu_like or entity.entity_type is EntityType.CPU:
                status = self.install_entity_watches(
                    entity,
                    systems,
                    watcher,
                    update_interval_usec,
                    max_keep_age_sec,
                )
            elif entity.entity_type is EntityType.SWITCH:
                switch_ids.append(entity.entity_id)
                continue
            elif entity.entity_type is EntityType.LINK:
                # TODO: attach link entities to the health of their owning switch or GPU
                continue
            else:
                logger.debug("No health watches for %s", entity)
                continue
            if status is not Status.OK:
                ret = status

        if switch_ids:
            status = set_nvswitch_watches(
                self.store,
                switch_ids,
                systems,
                watcher,
                update_interval_usec,
                max_keep_age_sec,
            )
            if status is not Status.OK:
                ret = status

        # make sure every new watch has a sample before the first evaluation
        try:
            self.store.update_all_fields(True)
        except SampleStoreException as e:
            logger.error("update_all_fields() returned %s", e.status.name)
            ret = e.status

        return ret

    def install_entity_watches(
        self,
        entity: EntityRef,
        systems: HealthSystem,
        watcher: Watcher,
        update_interval_usec: int,
        max_keep_age_sec: float,
    ) -> Status:
        """Install the watches of a GPU-like or CPU entity, stopping at the first
        failing health system."""
        installers = _installers_for(entity)
        for bit in health_system_bits():
            installer = installers.get(bit)
            if installer is None:
                continue
            status = installer(
                self.store,
                entity,
                bool(bit & systems),
                watcher,
                update_interval_usec,
                max_keep_age_sec,
            )
            if status is not Status.OK:
                logger.error(
                    "Failed to set %s watches for %s: %s",
                    bit.label,
                    entity,
                    status.name,
                )
                return status
        return Status.OK

    def get_watches(self, group_id: int) -> HealthSystem:
        """Raises SampleStoreException if the group cannot be resolved."""
        self.store.get_group_entities(group_id)
        return self.registry.get_mask(group_id)

    def on_group_remove(self, group_id: int) -> None:
        self.registry.remove(group_id)

    def on_field_values_update(self, values: Sequence[FieldValue]) -> None:
        self.tracker.ingest(values)

    def monitor_watches(
        self,
        group_id: int,
        start_usec: Optional[int] = None,
        end_usec: Optional[int] = None,
    ) -> HealthResponse:
        response = HealthResponse()
        try:
            entities = self.store.get_group_entities(group_id)
        except SampleStoreException as e:
            logger.error("Got st %s from get_group_entities()", e.status.name)
            response.status = e.status
            return response

        systems = self.registry.get_mask(group_id)
        if not systems:
            return response

        for entity in entities:
            monitors = _monitors_for(entity)
            for bit in health_system_bits():
                if not bit & systems:
                    continue
                monitor = monitors.get(bit)
                if monitor is None:
                    logger.debug("Unhandled health bit %s for %s", bit.label, entity)
                    continue
                status = self._evaluate(monitor, entity, start_usec, end_usec, response)
                if status is not Status.OK:
                    response.status = status
        return response

    def monitor_watches_for_gpu(
        self,
        gpu_id: int,
        start_usec: Optional[int],
        end_usec: Optional[int],
        systems: HealthSystem,
    ) -> HealthResponse:
        """Evaluate one GPU against an explicit mask. Switch systems are ignored and
        the first upstream failure is kept."""
        response = HealthResponse()
        if not 0 <= gpu_id < MAX_NUM_DEVICES:
            logger.error("Bad gpuId: %d", gpu_id)
            response.status = Status.BADPARAM
            return response

        entity = EntityRef(EntityType.GPU, gpu_id)
        for bit in health_system_bits(HEALTH_WATCH_COUNT_V1):
            monitor = GPU_MONITORS.get(bit)
            if monitor is None or not bit & systems:
                continue
            status = self._evaluate(monitor, entity, start_usec, end_usec, response)
            if response.status is Status.OK and status is not Status.OK:
                response.status = status
        return response

    def _evaluate(
        self,
        monitor: Monitor,
        entity: EntityRef,
        start_usec: Optional[int],
        end_usec: Optional[int],
        response: HealthResponse,
    ) -> Status:
        try:
            monitor(self.ctx, entity, start_usec, end_usec, response)
        except SampleStoreException as e:
            logger.error("Evaluating %s failed: %s", entity, e)
            return e.status
        return Status.OK


def _installers_for(entity: EntityRef) -> Dict[HealthSystem, Installer]:
    if entity.is_gpu_like:
        return GPU_WATCH_INSTALLERS
    if entity.entity_type is EntityType.CPU:
        return CPU_WATCH_INSTALLERS
    return {}


def _monitors_for(entity: EntityRef) -> Dict[HealthSystem, Monitor]:
    if entity.is_gpu_like:
        return GPU_MONITORS
    if entity.entity_type is EntityType.CPU:
        return CPU_MONITORS
    if entity.entity_type is EntityType.SWITCH:
        return SWITCH_MONITORS
    return {}
