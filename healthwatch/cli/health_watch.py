# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.
"""Evaluate health watches over a recorded sample snapshot.

The commands load a JSON snapshot into an in-memory sample store, install the
watches of the requested health systems, evaluate one window and publish the
incidents to a sink. The exit code follows the Nagios plugin API.
"""
import logging
import os
import socket
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Collection, Optional, Protocol

import click
from healthwatch._version import __version__
from healthwatch.exporters import registry
from healthwatch.health_watch.engine import HealthWatch
from healthwatch.health_watch.fields import HealthLimits, MAX_NUM_DEVICES
from healthwatch.health_watch.memory_store import (
    InMemorySampleStore,
    load_snapshot,
    Snapshot,
)
from healthwatch.health_watch.sample_store import Watcher
from healthwatch.health_watch.types import (
    EntityRef,
    EntityType,
    ExitCode,
    HealthSystem,
    LOG_LEVEL,
    Status,
)
from healthwatch.monitoring.click import (
    common_options,
    HealthSystemsParam,
    SINK_EPILOG,
    toml_config_option,
)
from healthwatch.monitoring.clock import Clock, ClockImpl
from healthwatch.monitoring.sink.protocol import DataType, SinkAdditionalParams
from healthwatch.monitoring.sink.utils import make_sink
from healthwatch.monitoring.utils.error import log_error
from healthwatch.monitoring.utils.monitor import init_logger
from healthwatch.schemas.health_watch.incident import HealthResponse
from healthwatch.schemas.log import Log
from typeguard import typechecked

LOGGER_NAME = "healthwatch"


class HealthWatchCli(Protocol):
    def get_clock(self) -> Clock: ...

    def get_snapshot(self, path: Path) -> Snapshot: ...


@dataclass
class HealthWatchCliImpl:
    def get_clock(self) -> Clock:
        return ClockImpl()

    def get_snapshot(self, path: Path) -> Snapshot:
        return load_snapshot(path)


def snapshot_options(f: Callable[..., Any]) -> Callable[..., Any]:
    options = [
        click.option(
            "--snapshot",
            type=click.Path(exists=True, dir_okay=False, path_type=Path),
            required=True,
            help="JSON snapshot of groups, samples and link states to evaluate.",
        ),
        click.option(
            "--systems",
            type=HealthSystemsParam(),
            default="all",
            show_default=True,
            help="Health systems to watch: comma separated names, 'all' or a mask.",
        ),
        click.option(
            "--start",
            "start_usec",
            type=click.IntRange(min=0),
            default=0,
            help="Window start in usec since the epoch. 0 means one minute ago.",
        ),
        click.option(
            "--end",
            "end_usec",
            type=click.IntRange(min=0),
            default=0,
            help="Window end in usec since the epoch. 0 means the latest sample.",
        ),
        click.option(
            "--update-interval",
            "update_interval_usec",
            type=click.IntRange(min=1),
            default=30_000_000,
            show_default=True,
            help="Sampling interval in usec requested for every watch.",
        ),
        click.option(
            "--max-keep-age",
            "max_keep_age_sec",
            type=click.FloatRange(min=0),
            default=3600.0,
            show_default=True,
            help="Sample retention in seconds requested for every watch.",
        ),
        click.option(
            "--max-pcie-replay-rate",
            type=click.IntRange(min=0),
            default=HealthLimits.max_pcie_replay_rate,
            show_default=True,
            help="PCIe replays allowed per window.",
        ),
        click.option(
            "--max-retired-pages",
            type=click.IntRange(min=0),
            default=HealthLimits.max_retired_pages,
            show_default=True,
            help="Retired pages (SBE + DBE) that fail the memory check.",
        ),
        click.option(
            "--max-retired-pages-soft-limit",
            type=click.IntRange(min=0),
            default=HealthLimits.max_retired_pages_soft_limit,
            show_default=True,
            help="DBE retired pages after which the weekly retirement rate is checked.",
        ),
        click.option(
            "--max-nvlink-error",
            type=click.IntRange(min=0),
            default=HealthLimits.max_nvlink_error,
            show_default=True,
            help="NvLink errors per window that raise an incident.",
        ),
        click.option(
            "--max-nvlink-crc-error-per-sec",
            type=click.FloatRange(min=0, min_open=True),
            default=HealthLimits.max_nvlink_crc_error_per_sec,
            show_default=True,
            help="NvLink CRC errors per second that fail instead of warn.",
        ),
    ]
    for option in reversed(options):
        f = option(f)
    return f


def make_limits(**kwargs: Any) -> HealthLimits:
    try:
        return HealthLimits(**kwargs)
    except ValueError as e:
        raise click.BadParameter(str(e)) from e


@dataclass
class Evaluation:
    clock: Clock
    snapshot: Snapshot
    store: InMemorySampleStore
    watch: HealthWatch


def prepare_evaluation(
    obj: Optional[HealthWatchCli], snapshot: Path, **limits: Any
) -> Evaluation:
    """Load the snapshot topology into a fresh store and attach a health watch.

    Samples are applied later, once the watches are installed, so that
    subscribed fields reach the uncontained-error tracker.
    """
    if obj is None:
        obj = HealthWatchCliImpl()
    health_limits = make_limits(**limits)
    clock = obj.get_clock()
    data = obj.get_snapshot(snapshot)

    store = InMemorySampleStore()
    store.apply_topology(data)
    watch = HealthWatch(store, clock=clock, limits=health_limits)
    store.add_field_value_listener(watch.on_field_values_update)
    return Evaluation(clock=clock, snapshot=data, store=store, watch=watch)


def exit_code_for(response: HealthResponse) -> ExitCode:
    exit_code = response.overall_health.exit_code
    if exit_code is ExitCode.OK and response.status is not Status.OK:
        return ExitCode.UNKNOWN
    return exit_code


def publish(
    logger: logging.Logger,
    response: HealthResponse,
    sink: str,
    sink_opts: Collection[str],
    clock: Clock,
    group_id: Optional[int],
) -> None:
    sink_impl = make_sink(sink, sink_opts, registry)
    write = log_error(logger.name)(sink_impl.write)
    write(
        Log(ts=clock.unixtime(), message=response.to_records()),
        SinkAdditionalParams(data_type=DataType.INCIDENT, group_id=group_id),
    )


def setup_logging(log_level: str, log_folder: str, stdout: bool) -> logging.Logger:
    logger, _ = init_logger(
        logger_name=LOGGER_NAME,
        log_dir=os.path.join(log_folder, "health_watch_logs"),
        log_name=socket.gethostname() + ".log",
        log_level=getattr(logging, log_level),
        log_stdout=stdout,
    )
    return logger


@click.group(epilog=f"health_watch version: {__version__}")
@toml_config_option("health_watch")
@click.version_option(__version__)
def health_watch() -> None:
    """Health watches for GPUs, NvSwitches and CPUs."""


@health_watch.command(epilog=SINK_EPILOG)
@common_options
@snapshot_options
@click.option(
    "--group",
    "group_id",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Group of the snapshot to watch and evaluate.",
)
@click.pass_obj
@typechecked
def check(
    obj: Optional[HealthWatchCli],
    log_level: LOG_LEVEL,
    log_folder: str,
    stdout: bool,
    sink: str,
    sink_opts: Collection[str],
    snapshot: Path,
    systems: HealthSystem,
    start_usec: int,
    end_usec: int,
    update_interval_usec: int,
    max_keep_age_sec: float,
    max_pcie_replay_rate: int,
    max_retired_pages: int,
    max_retired_pages_soft_limit: int,
    max_nvlink_error: int,
    max_nvlink_crc_error_per_sec: float,
    group_id: int,
) -> None:
    """Watch and evaluate every entity of a group."""
    logger = setup_logging(log_level, log_folder, stdout)
    evaluation = prepare_evaluation(
        obj,
        snapshot,
        max_pcie_replay_rate=max_pcie_replay_rate,
        max_retired_pages=max_retired_pages,
        max_retired_pages_soft_limit=max_retired_pages_soft_limit,
        max_nvlink_error=max_nvlink_error,
        max_nvlink_crc_error_per_sec=max_nvlink_crc_error_per_sec,
    )
    watch = evaluation.watch

    logger.info(
        "check: group: %d, systems: %#x, start: %d, end: %d",
        group_id,
        int(systems),
        start_usec,
        end_usec,
    )
    status = watch.set_watches(
        group_id, systems, Watcher(), update_interval_usec, max_keep_age_sec
    )
    if status is not Status.OK:
        logger.error("set_watches for group %d returned %s", group_id, status.name)
    evaluation.store.apply_samples(evaluation.snapshot)

    response = watch.monitor_watches(group_id, start_usec, end_usec)
    if response.status is not Status.OK:
        logger.error(
            "monitor_watches for group %d returned %s", group_id, response.status.name
        )
    publish(logger, response, sink, sink_opts, evaluation.clock, group_id)
    sys.exit(exit_code_for(response).value)


@health_watch.command("check-gpu", epilog=SINK_EPILOG)
@common_options
@snapshot_options
@click.option(
    "--gpu",
    "gpu_id",
    type=click.IntRange(min=0),
    required=True,
    help="Id of the GPU to evaluate.",
)
@click.pass_obj
@typechecked
def check_gpu(
    obj: Optional[HealthWatchCli],
    log_level: LOG_LEVEL,
    log_folder: str,
    stdout: bool,
    sink: str,
    sink_opts: Collection[str],
    snapshot: Path,
    systems: HealthSystem,
    start_usec: int,
    end_usec: int,
    update_interval_usec: int,
    max_keep_age_sec: float,
    max_pcie_replay_rate: int,
    max_retired_pages: int,
    max_retired_pages_soft_limit: int,
    max_nvlink_error: int,
    max_nvlink_crc_error_per_sec: float,
    gpu_id: int,
) -> None:
    """Evaluate a single GPU against an explicit set of health systems."""
    logger = setup_logging(log_level, log_folder, stdout)
    evaluation = prepare_evaluation(
        obj,
        snapshot,
        max_pcie_replay_rate=max_pcie_replay_rate,
        max_retired_pages=max_retired_pages,
        max_retired_pages_soft_limit=max_retired_pages_soft_limit,
        max_nvlink_error=max_nvlink_error,
        max_nvlink_crc_error_per_sec=max_nvlink_crc_error_per_sec,
    )
    watch = evaluation.watch

    logger.info("check-gpu: gpu: %d, systems: %#x", gpu_id, int(systems))
    # ids past the device range are reported by monitor_watches_for_gpu
    if gpu_id < MAX_NUM_DEVICES:
        status = watch.install_entity_watches(
            EntityRef(EntityType.GPU, gpu_id),
            systems,
            Watcher(),
            update_interval_usec,
            max_keep_age_sec,
        )
        if status is not Status.OK:
            logger.error(
                "Installing watches for GPU %d returned %s", gpu_id, status.name
            )
    evaluation.store.apply_samples(evaluation.snapshot)

    response = watch.monitor_watches_for_gpu(gpu_id, start_usec, end_usec, systems)
    if response.status is Status.BADPARAM:
        raise click.BadParameter(
            f"GPU id must be lower than {MAX_NUM_DEVICES}", param_hint="--gpu"
        )
    if response.status is not Status.OK:
        logger.error(
            "monitor_watches_for_gpu %d returned %s", gpu_id, response.status.name
        )
    publish(logger, response, sink, sink_opts, evaluation.clock, None)
    sys.exit(exit_code_for(response).value)


if __name__ == "__main__":
    health_watch()
