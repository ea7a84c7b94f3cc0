# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.
"""Per health system evaluators.

Each evaluator reads samples for one entity over a window and reports zero or more
incidents on the response. Missing data (NO_DATA, NOT_WATCHED, blank samples) is a
pass. Any other sample store failure is raised as SampleStoreException and aborts
the evaluator; the caller records its status.
"""
import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from healthwatch.health_watch.error_codes import format_error, HealthErrorCode
from healthwatch.health_watch.fields import (
    CPU_POWER_FIELD_IDS,
    CPU_THERMAL_FIELD_IDS,
    field_tag,
    FieldId,
    HealthLimits,
    NVLINK_CRITICAL_FIELD_IDS,
    NVLINK_ERROR_FIELD_IDS,
    NVSWITCH_FATAL_FIELD_IDS,
    NVSWITCH_NON_FATAL_FIELD_IDS,
    ONE_MINUTE_USEC,
    ONE_SECOND_USEC,
    ONE_WEEK_USEC,
)
from healthwatch.health_watch.incidents import report_incident
from healthwatch.health_watch.sample_store import SampleStore, SampleStoreException
from healthwatch.health_watch.types import (
    EntityRef,
    HealthResult,
    HealthSystem,
    LinkState,
    Order,
    Status,
)
from healthwatch.health_watch.uncontained_errors import UncontainedErrorTracker
from healthwatch.monitoring.clock import Clock, ClockImpl
from healthwatch.schemas.health_watch.incident import HealthResponse
from healthwatch.schemas.health_watch.sample import Sample

logger = logging.getLogger(__name__)


@dataclass
class MonitorContext:
    """Collaborators shared by every evaluator of one engine."""

    store: SampleStore
    clock: Clock = field(default_factory=ClockImpl)
    limits: HealthLimits = field(default_factory=HealthLimits)
    tracker: UncontainedErrorTracker = field(default_factory=UncontainedErrorTracker)


class Monitor(Protocol):
    def __call__(
        self,
        ctx: MonitorContext,
        entity: EntityRef,
        start_usec: Optional[int],
        end_usec: Optional[int],
        response: HealthResponse,
    ) -> None: ...


def resolve_window(
    clock: Clock, start_usec: Optional[int], end_usec: Optional[int]
) -> Tuple[int, Optional[int]]:
    """A blank start means one minute ago. A blank end is left open so the window
    reaches the most recent sample, even one newer than now."""
    if not start_usec:
        start_usec = clock.unixtime_usec() - ONE_MINUTE_USEC
    return start_usec, end_usec or None


def _log_absence(status: Status, entity: EntityRef, field_id: int) -> None:
    if status is Status.NOT_WATCHED:
        logger.warning("%s not watched for %s", field_tag(field_id), entity)
    else:
        logger.debug("No data for %s for %s", field_tag(field_id), entity)


def fetch_sample(
    store: SampleStore,
    entity: EntityRef,
    field_id: int,
    start_usec: Optional[int],
    end_usec: Optional[int],
    order: Order,
) -> Optional[Sample]:
    """First sample of the window in `order`, or None if there is nothing usable."""
    try:
        samples = store.get_samples(
            entity, field_id, 1, start_usec, end_usec, order
        )
    except SampleStoreException as e:
        if e.status.is_absence:
            _log_absence(e.status, entity, field_id)
            return None
        logger.error(
            "get_samples returned %s for %s field %d", e.status.name, entity, field_id
        )
        raise
    if not samples or samples[0].is_blank:
        return None
    return samples[0]


def fetch_latest(
    store: SampleStore, entity: EntityRef, field_id: int
) -> Optional[Sample]:
    try:
        sample = store.get_latest_sample(entity, field_id)
    except SampleStoreException as e:
        if e.status.is_absence:
            _log_absence(e.status, entity, field_id)
            return None
        logger.error(
            "Unable to retrieve field %d from cache for %s: %s",
            field_id,
            entity,
            e.status.name,
        )
        raise
    if sample.is_blank:
        return None
    return sample


def fetch_window_delta(
    store: SampleStore,
    entity: EntityRef,
    field_id: int,
    start_usec: int,
    end_usec: Optional[int],
) -> Optional[int]:
    """Absolute difference between the first and last sample of the window."""
    first = fetch_sample(store, entity, field_id, start_usec, end_usec, Order.ASCENDING)
    if first is None:
        return None
    last = fetch_sample(store, entity, field_id, start_usec, end_usec, Order.DESCENDING)
    if last is None:
        return None
    assert first.value is not None and last.value is not None
    return int(abs(last.value - first.value))


def _down_links(store: SampleStore, entity: EntityRef) -> List[int]:
    return [
        link
        for link, state in enumerate(store.get_link_states(entity))
        if state is LinkState.DOWN
    ]


def monitor_pcie(
    ctx: MonitorContext,
    entity: EntityRef,
    start_usec: Optional[int],
    end_usec: Optional[int],
    response: HealthResponse,
) -> None:
    start_usec, end_usec = resolve_window(ctx.clock, start_usec, end_usec)
    replays = fetch_window_delta(
        ctx.store, entity, FieldId.PCIE_REPLAY_COUNTER, start_usec, end_usec
    )
    if replays is None:
        return
    limit = ctx.limits.max_pcie_replay_rate
    if replays > limit:
        report_incident(
            entity,
            HealthResult.WARN,
            HealthSystem.PCIE,
            format_error(
                HealthErrorCode.PCI_REPLAY_RATE,
                limit=limit,
                entity=entity,
                rate=replays,
            ),
            response,
        )


def _check_volatile_dbes(
    ctx: MonitorContext,
    entity: EntityRef,
    start_usec: int,
    end_usec: Optional[int],
    response: HealthResponse,
) -> None:
    sample = fetch_sample(
        ctx.store,
        entity,
        FieldId.ECC_DBE_VOL_TOTAL,
        start_usec,
        end_usec,
        Order.DESCENDING,
    )
    if sample is None:
        return
    assert sample.value is not None
    if sample.value > 0:
        report_incident(
            entity,
            HealthResult.FAIL,
            HealthSystem.MEM,
            format_error(
                HealthErrorCode.VOLATILE_DBE_DETECTED,
                count=int(sample.value),
                entity=entity,
            ),
            response,
        )


def _check_retired_pending(
    ctx: MonitorContext,
    entity: EntityRef,
    start_usec: int,
    end_usec: Optional[int],
    response: HealthResponse,
) -> None:
    sample = fetch_sample(
        ctx.store,
        entity,
        FieldId.RETIRED_PENDING,
        start_usec,
        end_usec,
        Order.DESCENDING,
    )
    if sample is not None and sample.value != 0:
        report_incident(
            entity,
            HealthResult.WARN,
            HealthSystem.MEM,
            format_error(HealthErrorCode.PENDING_PAGE_RETIREMENTS, entity=entity),
            response,
        )


def _check_retired_pages(
    ctx: MonitorContext,
    entity: EntityRef,
    start_usec: int,
    end_usec: Optional[int],
    response: HealthResponse,
) -> None:
    dbe = fetch_sample(
        ctx.store, entity, FieldId.RETIRED_DBE, start_usec, end_usec, Order.DESCENDING
    )
    sbe = fetch_sample(
        ctx.store, entity, FieldId.RETIRED_SBE, start_usec, end_usec, Order.DESCENDING
    )
    dbe_pages = int(dbe.value) if dbe is not None and dbe.value is not None else 0
    sbe_pages = int(sbe.value) if sbe is not None and sbe.value is not None else 0

    limits = ctx.limits
    if sbe_pages + dbe_pages >= limits.max_retired_pages:
        report_incident(
            entity,
            HealthResult.FAIL,
            HealthSystem.MEM,
            format_error(
                HealthErrorCode.RETIRED_PAGES_LIMIT,
                limit=limits.max_retired_pages,
                entity=entity,
            ),
            response,
        )
        return

    if dbe is None or dbe_pages <= limits.max_retired_pages_soft_limit:
        return

    # past the soft limit, fail only if DBE retirements keep accumulating
    week_ago = fetch_sample(
        ctx.store,
        entity,
        FieldId.RETIRED_DBE,
        None,
        ctx.clock.unixtime_usec() - ONE_WEEK_USEC,
        Order.DESCENDING,
    )
    if week_ago is None or week_ago.value is None:
        logger.debug("No retired DBE page count from a week ago for %s", entity)
        return
    retired_this_week = dbe_pages - int(week_ago.value)
    if retired_this_week > 1:
        report_incident(
            entity,
            HealthResult.FAIL,
            HealthSystem.MEM,
            format_error(
                HealthErrorCode.RETIRED_PAGES_DBE_LIMIT,
                limit=limits.max_retired_pages_soft_limit,
                entity=entity,
                count=retired_this_week,
            ),
            response,
        )


def _check_row_remap_failures(
    ctx: MonitorContext,
    entity: EntityRef,
    start_usec: int,
    end_usec: Optional[int],
    response: HealthResponse,
) -> None:
    sample = fetch_sample(
        ctx.store,
        entity,
        FieldId.ROW_REMAP_FAILURE,
        start_usec,
        end_usec,
        Order.DESCENDING,
    )
    if sample is None:
        return
    assert sample.value is not None
    if sample.value > 0:
        report_incident(
            entity,
            HealthResult.FAIL,
            HealthSystem.MEM,
            format_error(HealthErrorCode.ROW_REMAP_FAILURE, entity=entity),
            response,
        )


def _check_uncontained_errors(
    ctx: MonitorContext,
    entity: EntityRef,
    start_usec: int,
    end_usec: Optional[int],
    response: HealthResponse,
) -> None:
    if not entity.is_gpu_like:
        return
    if not ctx.tracker.had_uncontained_error(entity):
        logger.debug("%s hasn't had any uncontained errors", entity)
        return
    report_incident(
        entity,
        HealthResult.FAIL,
        HealthSystem.MEM,
        format_error(HealthErrorCode.UNCONTAINED_ERROR, entity=entity),
        response,
    )


_MEMORY_CHECKS = (
    _check_volatile_dbes,
    _check_retired_pending,
    _check_retired_pages,
    _check_row_remap_failures,
    _check_uncontained_errors,
)


def monitor_mem(
    ctx: MonitorContext,
    entity: EntityRef,
    start_usec: Optional[int],
    end_usec: Optional[int],
    response: HealthResponse,
) -> None:
    """Run every memory sub-check, even after one of them failed upstream.

    The last upstream failure is raised once all of them have run.
    """
    start_usec, end_usec = resolve_window(ctx.clock, start_usec, end_usec)
    error: Optional[SampleStoreException] = None
    for check in _MEMORY_CHECKS:
        try:
            check(ctx, entity, start_usec, end_usec, response)
        except SampleStoreException as e:
            error = e
    if error is not None:
        raise error


def monitor_inforom(
    ctx: MonitorContext,
    entity: EntityRef,
    start_usec: Optional[int],
    end_usec: Optional[int],
    response: HealthResponse,
) -> None:
    sample = fetch_latest(ctx.store, entity, FieldId.INFOROM_CONFIG_VALID)
    if sample is not None and not sample.value:
        report_incident(
            entity,
            HealthResult.WARN,
            HealthSystem.INFOROM,
            format_error(HealthErrorCode.CORRUPT_INFOROM, entity=entity),
            response,
        )


def monitor_thermal(
    ctx: MonitorContext,
    entity: EntityRef,
    start_usec: Optional[int],
    end_usec: Optional[int],
    response: HealthResponse,
) -> None:
    start_usec, end_usec = resolve_window(ctx.clock, start_usec, end_usec)
    violation = fetch_window_delta(
        ctx.store, entity, FieldId.THERMAL_VIOLATION, start_usec, end_usec
    )
    # any growth of the violation time is reported, however small
    if violation:
        report_incident(
            entity,
            HealthResult.WARN,
            HealthSystem.THERMAL,
            format_error(HealthErrorCode.CLOCK_THROTTLE_THERMAL, entity=entity),
            response,
        )


def _check_power_readable(
    ctx: MonitorContext, entity: EntityRef, response: HealthResponse
) -> None:
    try:
        sample = ctx.store.get_latest_sample(entity, FieldId.POWER_USAGE)
    except SampleStoreException as e:
        logger.debug("No power usage reading for %s: %s", entity, e.status.name)
        return
    if sample.value is None and not sample.not_supported:
        report_incident(
            entity,
            HealthResult.WARN,
            HealthSystem.POWER,
            format_error(HealthErrorCode.POWER_UNREADABLE, entity=entity),
            response,
        )


def monitor_power(
    ctx: MonitorContext,
    entity: EntityRef,
    start_usec: Optional[int],
    end_usec: Optional[int],
    response: HealthResponse,
) -> None:
    if entity.is_gpu_like:
        _check_power_readable(ctx, entity, response)

    start_usec, end_usec = resolve_window(ctx.clock, start_usec, end_usec)
    violation = fetch_window_delta(
        ctx.store, entity, FieldId.POWER_VIOLATION, start_usec, end_usec
    )
    if violation:
        report_incident(
            entity,
            HealthResult.WARN,
            HealthSystem.POWER,
            format_error(HealthErrorCode.CLOCK_THROTTLE_POWER, entity=entity),
            response,
        )


def _crc_errors_per_second(
    ctx: MonitorContext, errors: int, start_usec: int, end_usec: Optional[int]
) -> float:
    end = end_usec if end_usec is not None else ctx.clock.unixtime_usec()
    elapsed_sec = (end - start_usec) / ONE_SECOND_USEC
    if elapsed_sec <= 0:
        return math.inf
    return errors / elapsed_sec


def monitor_nvlink(
    ctx: MonitorContext,
    entity: EntityRef,
    start_usec: Optional[int],
    end_usec: Optional[int],
    response: HealthResponse,
) -> None:
    start_usec, end_usec = resolve_window(ctx.clock, start_usec, end_usec)
    limits = ctx.limits

    for field_id in NVLINK_ERROR_FIELD_IDS:
        # counters the device does not support are skipped, the others still run
        errors = fetch_window_delta(ctx.store, entity, field_id, start_usec, end_usec)
        if errors is None or errors < limits.max_nvlink_error:
            continue

        tag = field_tag(field_id)
        if field_id in NVLINK_CRITICAL_FIELD_IDS:
            report_incident(
                entity,
                HealthResult.FAIL,
                HealthSystem.NVLINK,
                format_error(
                    HealthErrorCode.NVLINK_ERROR_CRITICAL,
                    count=errors,
                    field=tag,
                    entity=entity,
                ),
                response,
            )
            continue

        # CRC errors only fail when they happen faster than the per-second limit
        per_sec = _crc_errors_per_second(ctx, errors, start_usec, end_usec)
        if per_sec > limits.max_nvlink_crc_error_per_sec:
            report_incident(
                entity,
                HealthResult.FAIL,
                HealthSystem.NVLINK,
                format_error(
                    HealthErrorCode.NVLINK_CRC_ERROR_THRESHOLD,
                    rate=per_sec,
                    field=tag,
                    entity=entity,
                    limit=limits.max_nvlink_crc_error_per_sec,
                ),
                response,
            )
        else:
            report_incident(
                entity,
                HealthResult.WARN,
                HealthSystem.NVLINK,
                format_error(
                    HealthErrorCode.NVLINK_ERROR_THRESHOLD,
                    count=errors,
                    field=tag,
                    entity=entity,
                    limit=limits.max_nvlink_error,
                ),
                response,
            )

    for link in _down_links(ctx.store, entity):
        report_incident(
            entity,
            HealthResult.FAIL,
            HealthSystem.NVLINK,
            format_error(HealthErrorCode.NVLINK_DOWN, entity=entity, link=link),
            response,
        )


def _monitor_nvswitch(
    fatal: bool,
    ctx: MonitorContext,
    entity: EntityRef,
    start_usec: Optional[int],
    end_usec: Optional[int],
    response: HealthResponse,
) -> None:
    start_usec, end_usec = resolve_window(ctx.clock, start_usec, end_usec)
    field_ids: Sequence[int]
    if fatal:
        field_ids = NVSWITCH_FATAL_FIELD_IDS
        health = HealthResult.FAIL
        system = HealthSystem.NVSWITCH_FATAL
        code = HealthErrorCode.NVSWITCH_FATAL_ERROR
    else:
        field_ids = NVSWITCH_NON_FATAL_FIELD_IDS
        health = HealthResult.WARN
        system = HealthSystem.NVSWITCH_NONFATAL
        code = HealthErrorCode.NVSWITCH_NON_FATAL_ERROR

    for field_id in field_ids:
        sample = fetch_sample(
            ctx.store, entity, field_id, start_usec, end_usec, Order.DESCENDING
        )
        if sample is None:
            continue
        assert sample.value is not None
        if sample.value > 0:
            link = field_id - field_ids[0]
            report_incident(
                entity,
                health,
                system,
                format_error(code, entity=entity, link=link),
                response,
            )

    # links are only scanned on the fatal pass so both passes don't report them
    if fatal:
        for link in _down_links(ctx.store, entity):
            report_incident(
                entity,
                health,
                system,
                format_error(HealthErrorCode.NVLINK_DOWN, entity=entity, link=link),
                response,
            )


def monitor_nvswitch_fatal(
    ctx: MonitorContext,
    entity: EntityRef,
    start_usec: Optional[int],
    end_usec: Optional[int],
    response: HealthResponse,
) -> None:
    _monitor_nvswitch(True, ctx, entity, start_usec, end_usec, response)


def monitor_nvswitch_non_fatal(
    ctx: MonitorContext,
    entity: EntityRef,
    start_usec: Optional[int],
    end_usec: Optional[int],
    response: HealthResponse,
) -> None:
    _monitor_nvswitch(False, ctx, entity, start_usec, end_usec, response)


def monitor_cpu_thermal(
    ctx: MonitorContext,
    entity: EntityRef,
    start_usec: Optional[int],
    end_usec: Optional[int],
    response: HealthResponse,
) -> None:
    start_usec, end_usec = resolve_window(ctx.clock, start_usec, end_usec)

    start_values: Dict[int, float] = {}
    for field_id in CPU_THERMAL_FIELD_IDS:
        sample = fetch_sample(
            ctx.store, entity, field_id, start_usec, end_usec, Order.ASCENDING
        )
        if sample is None or sample.value is None:
            return
        start_values[field_id] = float(sample.value)

    end_values: Dict[int, float] = {}
    for field_id in CPU_THERMAL_FIELD_IDS:
        sample = fetch_latest(ctx.store, entity, field_id)
        if sample is None or sample.value is None:
            return
        end_values[field_id] = float(sample.value)

    average = (
        start_values[FieldId.CPU_TEMP_CURRENT] + end_values[FieldId.CPU_TEMP_CURRENT]
    ) / 2
    warning = end_values[FieldId.CPU_TEMP_WARNING]
    if average >= warning:
        report_incident(
            entity,
            HealthResult.WARN,
            HealthSystem.THERMAL,
            format_error(
                HealthErrorCode.FIELD_THRESHOLD_DBL,
                field=field_tag(FieldId.CPU_TEMP_CURRENT),
                value=average,
                entity=entity,
                threshold=warning,
            ),
            response,
        )

    current = end_values[FieldId.CPU_TEMP_CURRENT]
    critical = end_values[FieldId.CPU_TEMP_CRITICAL]
    if current >= critical:
        report_incident(
            entity,
            HealthResult.FAIL,
            HealthSystem.THERMAL,
            format_error(
                HealthErrorCode.FIELD_THRESHOLD_DBL,
                field=field_tag(FieldId.CPU_TEMP_CURRENT),
                value=current,
                entity=entity,
                threshold=critical,
            ),
            response,
        )


def monitor_cpu_power(
    ctx: MonitorContext,
    entity: EntityRef,
    start_usec: Optional[int],
    end_usec: Optional[int],
    response: HealthResponse,
) -> None:
    values: Dict[int, float] = {}
    for field_id in CPU_POWER_FIELD_IDS:
        sample = fetch_latest(ctx.store, entity, field_id)
        if sample is None or sample.value is None:
            return
        values[field_id] = float(sample.value)

    current = values[FieldId.CPU_POWER_UTIL_CURRENT]
    limit = values[FieldId.CPU_POWER_LIMIT]
    if current >= limit:
        report_incident(
            entity,
            HealthResult.FAIL,
            HealthSystem.POWER,
            format_error(
                HealthErrorCode.FIELD_THRESHOLD_DBL,
                field=field_tag(FieldId.CPU_POWER_UTIL_CURRENT),
                value=current,
                entity=entity,
                threshold=limit,
            ),
            response,
        )


# Bits without an entry are reserved and never evaluated
GPU_MONITORS: Dict[HealthSystem, Monitor] = {
    HealthSystem.PCIE: monitor_pcie,
    HealthSystem.NVLINK: monitor_nvlink,
    HealthSystem.MEM: monitor_mem,
    HealthSystem.INFOROM: monitor_inforom,
    HealthSystem.THERMAL: monitor_thermal,
    HealthSystem.POWER: monitor_power,
}

CPU_MONITORS: Dict[HealthSystem, Monitor] = {
    HealthSystem.THERMAL: monitor_cpu_thermal,
    HealthSystem.POWER: monitor_cpu_power,
}

SWITCH_MONITORS: Dict[HealthSystem, Monitor] = {
    HealthSystem.NVSWITCH_NONFATAL: monitor_nvswitch_non_fatal,
    HealthSystem.NVSWITCH_FATAL: monitor_nvswitch_fatal,
}
