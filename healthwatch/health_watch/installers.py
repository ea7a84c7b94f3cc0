# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.
"""Subscriptions each health system needs before it can be evaluated.

Every installer has the same shape and returns the status of the first failing
subscription, or OK. Disabling is a no-op: subscriptions are not reference
counted, so removing one would remove it for every other watcher as well.
"""
import logging
from typing import Collection, Dict, Iterable, Protocol

from healthwatch.health_watch.fields import (
    CPU_POWER_FIELD_IDS,
    CPU_THERMAL_FIELD_IDS,
    FieldId,
    INFOROM_MIN_MAX_KEEP_AGE_SEC,
    INFOROM_MIN_UPDATE_INTERVAL_USEC,
    MIN_UPDATE_INTERVAL_USEC,
    NVLINK_ERROR_FIELD_IDS,
    NVSWITCH_FATAL_FIELD_IDS,
    NVSWITCH_NON_FATAL_FIELD_IDS,
)
from healthwatch.health_watch.sample_store import (
    SampleStore,
    SampleStoreException,
    Watcher,
)
from healthwatch.health_watch.types import (
    EntityRef,
    EntityType,
    HealthSystem,
    Status,
)

logger = logging.getLogger(__name__)


class Installer(Protocol):
    def __call__(
        self,
        store: SampleStore,
        entity: EntityRef,
        enable: bool,
        watcher: Watcher,
        update_interval_usec: int,
        max_keep_age_sec: float,
    ) -> Status: ...


def add_watches(
    store: SampleStore,
    entity: EntityRef,
    field_ids: Iterable[int],
    watcher: Watcher,
    update_interval_usec: int,
    max_keep_age_sec: float,
    *,
    subscribe_for_updates: Collection[int] = (),
) -> Status:
    """Subscribe to each field in order, stopping at the first failure."""
    for field_id in field_ids:
        try:
            store.add_watch(
                entity,
                field_id,
                update_interval_usec,
                max_keep_age_sec,
                watcher,
                subscribe_for_updates=field_id in subscribe_for_updates,
            )
        except SampleStoreException as e:
            logger.error(
                "Failed to set watch for field %d on %s %d: %s",
                field_id,
                entity.entity_type.label,
                entity.entity_id,
                e,
            )
            return e.status
    return Status.OK


def set_pcie(
    store: SampleStore,
    entity: EntityRef,
    enable: bool,
    watcher: Watcher,
    update_interval_usec: int,
    max_keep_age_sec: float,
) -> Status:
    if not enable:
        return Status.OK
    return add_watches(
        store,
        entity,
        [FieldId.PCIE_REPLAY_COUNTER],
        watcher,
        update_interval_usec,
        max_keep_age_sec,
    )


def set_mem(
    store: SampleStore,
    entity: EntityRef,
    enable: bool,
    watcher: Watcher,
    update_interval_usec: int,
    max_keep_age_sec: float,
) -> Status:
    if not enable:
        return Status.OK

    status = add_watches(
        store,
        entity,
        [FieldId.ECC_DBE_VOL_TOTAL],
        watcher,
        update_interval_usec,
        max_keep_age_sec,
    )
    if status is not Status.OK:
        return status

    # page retirement and XIDs change rarely, sample them at most every 30 seconds
    # XIDs are subscribed for updates so that uncontained errors reach the tracker
    return add_watches(
        store,
        entity,
        [
            FieldId.RETIRED_SBE,
            FieldId.RETIRED_DBE,
            FieldId.RETIRED_PENDING,
            FieldId.XID_ERRORS,
            FieldId.ROW_REMAP_FAILURE,
        ],
        watcher,
        max(MIN_UPDATE_INTERVAL_USEC, update_interval_usec),
        max_keep_age_sec,
        subscribe_for_updates={FieldId.XID_ERRORS},
    )


def set_inforom(
    store: SampleStore,
    entity: EntityRef,
    enable: bool,
    watcher: Watcher,
    update_interval_usec: int,
    max_keep_age_sec: float,
) -> Status:
    if not enable:
        return Status.OK
    # hourly samples, kept for at least 2 hours so there is always one to read
    return add_watches(
        store,
        entity,
        [FieldId.INFOROM_CONFIG_VALID],
        watcher,
        max(INFOROM_MIN_UPDATE_INTERVAL_USEC, update_interval_usec),
        max(INFOROM_MIN_MAX_KEEP_AGE_SEC, max_keep_age_sec),
    )


def set_thermal(
    store: SampleStore,
    entity: EntityRef,
    enable: bool,
    watcher: Watcher,
    update_interval_usec: int,
    max_keep_age_sec: float,
) -> Status:
    if not enable:
        return Status.OK
    return add_watches(
        store,
        entity,
        [FieldId.THERMAL_VIOLATION],
        watcher,
        max(MIN_UPDATE_INTERVAL_USEC, update_interval_usec),
        max_keep_age_sec,
    )


def set_power(
    store: SampleStore,
    entity: EntityRef,
    enable: bool,
    watcher: Watcher,
    update_interval_usec: int,
    max_keep_age_sec: float,
) -> Status:
    if not enable:
        return Status.OK
    return add_watches(
        store,
        entity,
        [FieldId.POWER_VIOLATION, FieldId.POWER_USAGE],
        watcher,
        max(MIN_UPDATE_INTERVAL_USEC, update_interval_usec),
        max_keep_age_sec,
    )


def set_nvlink(
    store: SampleStore,
    entity: EntityRef,
    enable: bool,
    watcher: Watcher,
    update_interval_usec: int,
    max_keep_age_sec: float,
) -> Status:
    if not enable:
        return Status.OK
    return add_watches(
        store,
        entity,
        NVLINK_ERROR_FIELD_IDS,
        watcher,
        update_interval_usec,
        max_keep_age_sec,
    )


def set_cpu_thermal(
    store: SampleStore,
    entity: EntityRef,
    enable: bool,
    watcher: Watcher,
    update_interval_usec: int,
    max_keep_age_sec: float,
) -> Status:
    if not enable:
        return Status.OK
    return add_watches(
        store,
        entity,
        CPU_THERMAL_FIELD_IDS,
        watcher,
        max(MIN_UPDATE_INTERVAL_USEC, update_interval_usec),
        max_keep_age_sec,
    )


def set_cpu_power(
    store: SampleStore,
    entity: EntityRef,
    enable: bool,
    watcher: Watcher,
    update_interval_usec: int,
    max_keep_age_sec: float,
) -> Status:
    if not enable:
        return Status.OK
    return add_watches(
        store,
        entity,
        CPU_POWER_FIELD_IDS,
        watcher,
        max(MIN_UPDATE_INTERVAL_USEC, update_interval_usec),
        max_keep_age_sec,
    )


def set_nvswitch_watches(
    store: SampleStore,
    switch_ids: Iterable[int],
    systems: HealthSystem,
    watcher: Watcher,
    update_interval_usec: int,
    max_keep_age_sec: float,
) -> Status:
    """Switch watches are installed once for every switch of a group."""
    for switch_id in switch_ids:
        entity = EntityRef(EntityType.SWITCH, switch_id)
        if HealthSystem.NVSWITCH_NONFATAL & systems:
            status = add_watches(
                store,
                entity,
                NVSWITCH_NON_FATAL_FIELD_IDS,
                watcher,
                update_interval_usec,
                max_keep_age_sec,
            )
            if status is not Status.OK:
                return status
        if HealthSystem.NVSWITCH_FATAL & systems:
            status = add_watches(
                store,
                entity,
                NVSWITCH_FATAL_FIELD_IDS,
                watcher,
                update_interval_usec,
                max_keep_age_sec,
            )
            if status is not Status.OK:
                return status
    return Status.OK


# Bits without an entry (PMU, MCU, SM, DRIVER) have nothing to install
GPU_WATCH_INSTALLERS: Dict[HealthSystem, Installer] = {
    HealthSystem.PCIE: set_pcie,
    HealthSystem.NVLINK: set_nvlink,
    HealthSystem.MEM: set_mem,
    HealthSystem.INFOROM: set_inforom,
    HealthSystem.THERMAL: set_thermal,
    HealthSystem.POWER: set_power,
}

CPU_WATCH_INSTALLERS: Dict[HealthSystem, Installer] = {
    HealthSystem.THERMAL: set_cpu_thermal,
    HealthSystem.POWER: set_cpu_power,
}
