# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.
import json
from pathlib import Path
from typing import List

import pydantic
import pytest

from healthwatch.health_watch.fields import FieldId
from healthwatch.health_watch.memory_store import InMemorySampleStore, load_snapshot
from healthwatch.health_watch.sample_store import (
    SampleStore,
    SampleStoreException,
    Watcher,
)
from healthwatch.health_watch.types import LinkState, Order, Status
from healthwatch.schemas.health_watch.sample import FieldValue
from healthwatch.tests.fakes import CPU0, GPU0, NOW_USEC, SWITCH2

FIELD = FieldId.PCIE_REPLAY_COUNTER


def test_implements_sample_store(store: InMemorySampleStore) -> None:
    assert isinstance(store, SampleStore)


class TestWatches:
    @staticmethod
    def test_merging_keeps_the_most_demanding_settings(
        store: InMemorySampleStore,
    ) -> None:
        a, b = Watcher(connection_id=1), Watcher(connection_id=2)
        store.add_watch(GPU0, FIELD, 60_000_000, 100.0, a)
        store.add_watch(GPU0, FIELD, 10_000_000, 50.0, b, subscribe_for_updates=True)
        store.add_watch(GPU0, FIELD, 30_000_000, 10.0, a)

        watch = store.watch_info(GPU0, FIELD)
        assert watch is not None
        assert watch.update_interval_usec == 10_000_000
        assert watch.max_keep_age_sec == 100.0
        assert watch.subscribe_for_updates
        assert watch.watchers == [a, b]

    @staticmethod
    def test_non_positive_interval(store: InMemorySampleStore) -> None:
        with pytest.raises(SampleStoreException) as e:
            store.add_watch(GPU0, FIELD, 0, 10.0, Watcher())
        assert e.value.status is Status.BADPARAM


class TestReads:
    @staticmethod
    def test_unwatched_and_empty_fields(store: InMemorySampleStore) -> None:
        with pytest.raises(SampleStoreException) as e:
            store.get_latest_sample(GPU0, FIELD)
        assert e.value.status is Status.NOT_WATCHED

        store.add_watch(GPU0, FIELD, 1_000_000, 10.0, Watcher())
        with pytest.raises(SampleStoreException) as e:
            store.get_samples(GPU0, FIELD, 1, None, None, Order.ASCENDING)
        assert e.value.status is Status.NO_DATA

    @staticmethod
    def test_window_and_order(store: InMemorySampleStore) -> None:
        # out of order on purpose
        for ts, value in [(30, 3), (10, 1), (40, 4), (20, 2)]:
            store.inject(GPU0, FIELD, value, ts)

        def values(order: Order, count: int = 10) -> List[object]:
            return [s.value for s in store.get_samples(GPU0, FIELD, count, 15, 35, order)]

        assert values(Order.ASCENDING) == [2, 3]
        assert values(Order.DESCENDING) == [3, 2]
        assert values(Order.DESCENDING, count=1) == [3]
        assert store.get_latest_sample(GPU0, FIELD).value == 4

    @staticmethod
    def test_same_timestamp_keeps_injection_order(store: InMemorySampleStore) -> None:
        for value in range(50):
            store.inject(GPU0, FIELD, value, 10)
        store.inject(GPU0, FIELD, -1, 5)

        samples = store.get_samples(GPU0, FIELD, 100, None, None, Order.ASCENDING)

        assert [s.value for s in samples] == [-1, *range(50)]
        assert store.get_latest_sample(GPU0, FIELD).value == 49

    @staticmethod
    def test_empty_window_is_no_data(store: InMemorySampleStore) -> None:
        store.inject(GPU0, FIELD, 1, 10)
        with pytest.raises(SampleStoreException) as e:
            store.get_samples(GPU0, FIELD, 1, 20, None, Order.ASCENDING)
        assert e.value.status is Status.NO_DATA

    @staticmethod
    def test_count_must_be_positive(store: InMemorySampleStore) -> None:
        store.inject(GPU0, FIELD, 1, 10)
        with pytest.raises(SampleStoreException) as e:
            store.get_samples(GPU0, FIELD, 0, None, None, Order.ASCENDING)
        assert e.value.status is Status.BADPARAM

    @staticmethod
    def test_groups(store: InMemorySampleStore) -> None:
        store.set_group(1, [GPU0, CPU0])
        assert store.get_group_entities(1) == [GPU0, CPU0]

        store.remove_group(1)
        with pytest.raises(SampleStoreException) as e:
            store.get_group_entities(1)
        assert e.value.status is Status.NOT_CONFIGURED

    @staticmethod
    def test_default_link_states(store: InMemorySampleStore) -> None:
        assert store.get_link_states(GPU0) == [LinkState.NOT_SUPPORTED] * 18
        assert store.get_link_states(SWITCH2) == [LinkState.NOT_SUPPORTED] * 64
        assert store.get_link_states(CPU0) == []


def test_listeners_only_see_subscribed_fields(store: InMemorySampleStore) -> None:
    seen: List[FieldValue] = []
    store.add_field_value_listener(seen.extend)
    store.add_watch(GPU0, FieldId.XID_ERRORS, 1_000_000, 10.0, Watcher(), True)
    store.add_watch(GPU0, FIELD, 1_000_000, 10.0, Watcher())

    store.inject(GPU0, FieldId.XID_ERRORS, 95, NOW_USEC)
    store.inject(GPU0, FIELD, 3, NOW_USEC)

    assert seen == [FieldValue(GPU0, FieldId.XID_ERRORS, NOW_USEC, 95)]


def _write_snapshot(tmp_path: Path) -> Path:
    path = tmp_path / "snapshot.json"
    path.write_text(
        json.dumps(
            {
                "groups": {"5": [{"entity_type": "SWITCH", "entity_id": 2}]},
                "samples": [
                    {
                        "entity_type": "SWITCH",
                        "entity_id": 2,
                        "field_id": int(FieldId.NVSWITCH_FATAL_ERRORS),
                        "timestamp": 20,
                        "value": 1,
                    },
                    {
                        "entity_type": "SWITCH",
                        "entity_id": 2,
                        "field_id": int(FieldId.NVSWITCH_FATAL_ERRORS),
                        "timestamp": 10,
                        "value": 0,
                    },
                    {
                        "entity_type": "GPU",
                        "entity_id": 0,
                        "field_id": int(FieldId.POWER_USAGE),
                        "timestamp": 10,
                        "not_supported": True,
                    },
                ],
                "link_states": [
                    {"entity_type": "SWITCH", "entity_id": 2, "states": ["UP", "DOWN"]}
                ],
            }
        )
    )
    return path


def test_from_snapshot(tmp_path: Path) -> None:
    store = InMemorySampleStore.from_snapshot(_write_snapshot(tmp_path))

    assert store.get_group_entities(5) == [SWITCH2]
    assert store.get_link_states(SWITCH2) == [LinkState.UP, LinkState.DOWN]
    latest = store.get_latest_sample(SWITCH2, FieldId.NVSWITCH_FATAL_ERRORS)
    assert (latest.timestamp, latest.value) == (20, 1)
    power = store.get_latest_sample(GPU0, FieldId.POWER_USAGE)
    assert power.not_supported and power.is_blank


@pytest.mark.parametrize(
    "contents",
    [
        '{"groups": {"1": [{"entity_type": "FPGA", "entity_id": 0}]}}',
        '{"groups": {"1": [{"entity_type": "GPU", "entity_id": -1}]}}',
        '{"link_states": [{"entity_type": "GPU", "entity_id": 0, "states": ["?"]}]}',
        "not json",
    ],
)
def test_invalid_snapshot(tmp_path: Path, contents: str) -> None:
    path = tmp_path / "snapshot.json"
    path.write_text(contents)
    with pytest.raises(pydantic.ValidationError):
        load_snapshot(path)
