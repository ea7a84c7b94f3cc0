# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.
import pytest

from healthwatch.health_watch.fields import (
    CPU_THERMAL_FIELD_IDS,
    FieldId,
    NVLINK_ERROR_FIELD_IDS,
    ONE_SECOND_USEC,
)
from healthwatch.health_watch.installers import (
    CPU_WATCH_INSTALLERS,
    GPU_WATCH_INSTALLERS,
    Installer,
    set_cpu_power,
    set_cpu_thermal,
    set_inforom,
    set_mem,
    set_nvlink,
    set_nvswitch_watches,
    set_pcie,
    set_power,
    set_thermal,
)
from healthwatch.health_watch.memory_store import InMemorySampleStore
from healthwatch.health_watch.sample_store import Watcher
from healthwatch.health_watch.types import HealthSystem, Status
from healthwatch.tests.fakes import CPU0, FailingStore, GPU0, SWITCH2

WATCHER = Watcher()
ONE_SECOND = ONE_SECOND_USEC
THIRTY_SECONDS = 30 * ONE_SECOND_USEC


@pytest.mark.parametrize("installer", list(GPU_WATCH_INSTALLERS.values()))
def test_disable_installs_nothing(store: InMemorySampleStore, installer: Installer) -> None:
    assert installer(store, GPU0, False, WATCHER, ONE_SECOND, 60.0) is Status.OK
    for field_id in FieldId:
        assert store.watch_info(GPU0, field_id) is None


def test_pcie_uses_requested_interval(store: InMemorySampleStore) -> None:
    assert set_pcie(store, GPU0, True, WATCHER, ONE_SECOND, 60.0) is Status.OK

    watch = store.watch_info(GPU0, FieldId.PCIE_REPLAY_COUNTER)
    assert watch is not None
    assert watch.update_interval_usec == ONE_SECOND
    assert watch.max_keep_age_sec == 60.0
    assert watch.watchers == [WATCHER]


def test_mem_floors_slow_fields(store: InMemorySampleStore) -> None:
    assert set_mem(store, GPU0, True, WATCHER, ONE_SECOND, 60.0) is Status.OK

    dbe = store.watch_info(GPU0, FieldId.ECC_DBE_VOL_TOTAL)
    assert dbe is not None and dbe.update_interval_usec == ONE_SECOND
    for field_id in (
        FieldId.RETIRED_SBE,
        FieldId.RETIRED_DBE,
        FieldId.RETIRED_PENDING,
        FieldId.XID_ERRORS,
        FieldId.ROW_REMAP_FAILURE,
    ):
        watch = store.watch_info(GPU0, field_id)
        assert watch is not None
        assert watch.update_interval_usec == THIRTY_SECONDS
        assert watch.subscribe_for_updates == (field_id == FieldId.XID_ERRORS)


def test_mem_keeps_slower_interval(store: InMemorySampleStore) -> None:
    interval = 120 * ONE_SECOND_USEC
    assert set_mem(store, GPU0, True, WATCHER, interval, 60.0) is Status.OK

    watch = store.watch_info(GPU0, FieldId.RETIRED_DBE)
    assert watch is not None and watch.update_interval_usec == interval


@pytest.mark.parametrize(
    "interval, keep_age, expected_interval, expected_keep_age",
    [
        (ONE_SECOND_USEC, 60.0, 3600 * ONE_SECOND_USEC, 7200.0),
        (7200 * ONE_SECOND_USEC, 86400.0, 7200 * ONE_SECOND_USEC, 86400.0),
    ],
)
def test_inforom_floors(
    store: InMemorySampleStore,
    interval: int,
    keep_age: float,
    expected_interval: int,
    expected_keep_age: float,
) -> None:
    assert set_inforom(store, GPU0, True, WATCHER, interval, keep_age) is Status.OK

    watch = store.watch_info(GPU0, FieldId.INFOROM_CONFIG_VALID)
    assert watch is not None
    assert watch.update_interval_usec == expected_interval
    assert watch.max_keep_age_sec == expected_keep_age


def test_thermal_and_power(store: InMemorySampleStore) -> None:
    assert set_thermal(store, GPU0, True, WATCHER, ONE_SECOND, 60.0) is Status.OK
    assert set_power(store, GPU0, True, WATCHER, ONE_SECOND, 60.0) is Status.OK

    for field_id in (
        FieldId.THERMAL_VIOLATION,
        FieldId.POWER_VIOLATION,
        FieldId.POWER_USAGE,
    ):
        watch = store.watch_info(GPU0, field_id)
        assert watch is not None and watch.update_interval_usec == THIRTY_SECONDS


def test_nvlink_watches_every_counter(store: InMemorySampleStore) -> None:
    assert set_nvlink(store, GPU0, True, WATCHER, ONE_SECOND, 60.0) is Status.OK

    for field_id in NVLINK_ERROR_FIELD_IDS:
        watch = store.watch_info(GPU0, field_id)
        assert watch is not None and watch.update_interval_usec == ONE_SECOND


def test_cpu_installers(store: InMemorySampleStore) -> None:
    assert set(CPU_WATCH_INSTALLERS) == {HealthSystem.THERMAL, HealthSystem.POWER}
    assert set_cpu_thermal(store, CPU0, True, WATCHER, ONE_SECOND, 60.0) is Status.OK
    assert set_cpu_power(store, CPU0, True, WATCHER, ONE_SECOND, 60.0) is Status.OK

    for field_id in CPU_THERMAL_FIELD_IDS + (
        FieldId.CPU_POWER_UTIL_CURRENT,
        FieldId.CPU_POWER_LIMIT,
    ):
        watch = store.watch_info(CPU0, field_id)
        assert watch is not None and watch.update_interval_usec == THIRTY_SECONDS


def test_first_failure_stops_installation() -> None:
    store = FailingStore(Status.GENERIC_ERROR, failing_fields={FieldId.RETIRED_SBE})

    assert set_mem(store, GPU0, True, WATCHER, ONE_SECOND, 60.0) is Status.GENERIC_ERROR

    assert store.watch_info(GPU0, FieldId.ECC_DBE_VOL_TOTAL) is not None
    assert store.watch_info(GPU0, FieldId.RETIRED_SBE) is None
    assert store.watch_info(GPU0, FieldId.XID_ERRORS) is None


def test_bad_interval_is_reported(store: InMemorySampleStore) -> None:
    assert set_pcie(store, GPU0, True, WATCHER, 0, 60.0) is Status.BADPARAM


@pytest.mark.parametrize(
    "systems, fatal, non_fatal",
    [
        (HealthSystem.NVSWITCH_FATAL, True, False),
        (HealthSystem.NVSWITCH_NONFATAL, False, True),
        (HealthSystem.NVSWITCH_FATAL | HealthSystem.NVSWITCH_NONFATAL, True, True),
        (HealthSystem.PCIE, False, False),
    ],
)
def test_nvswitch_watches(
    store: InMemorySampleStore, systems: HealthSystem, fatal: bool, non_fatal: bool
) -> None:
    status = set_nvswitch_watches(store, [2], systems, WATCHER, ONE_SECOND, 60.0)

    assert status is Status.OK
    assert (store.watch_info(SWITCH2, FieldId.NVSWITCH_FATAL_ERRORS) is not None) == fatal
    assert (
        store.watch_info(SWITCH2, FieldId.NVSWITCH_NON_FATAL_ERRORS) is not None
    ) == non_fatal
