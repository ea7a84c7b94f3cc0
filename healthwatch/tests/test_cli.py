# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.
import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import click
import pytest
from click.testing import CliRunner, Result

from healthwatch.cli.health_watch import health_watch, prepare_evaluation
from healthwatch.health_watch.error_codes import HealthErrorCode
from healthwatch.health_watch.fields import FieldId
from healthwatch.health_watch.sample_store import Watcher
from healthwatch.health_watch.types import (
    EntityRef,
    EntityType,
    ExitCode,
    HealthSystem,
)
from healthwatch.tests.fakes import FakeHealthWatchCli, seconds_ago

GROUP = [
    {"entity_type": "GPU", "entity_id": 0},
    {"entity_type": "GPU", "entity_id": 1},
    {"entity_type": "SWITCH", "entity_id": 0},
    {"entity_type": "CPU", "entity_id": 0},
]


def sample(
    entity_type: str, entity_id: int, field_id: int, value: Any, age_sec: float
) -> Dict[str, Any]:
    return {
        "entity_type": entity_type,
        "entity_id": entity_id,
        "field_id": int(field_id),
        "timestamp": seconds_ago(age_sec),
        "value": value,
    }


PCIE_REPLAYS = [
    sample("GPU", 0, FieldId.PCIE_REPLAY_COUNTER, 10, 50),
    sample("GPU", 0, FieldId.PCIE_REPLAY_COUNTER, 19, 10),
]
VOLATILE_DBE = [sample("GPU", 1, FieldId.ECC_DBE_VOL_TOTAL, 2, 5)]
UNCONTAINED_XID = [sample("GPU", 1, FieldId.XID_ERRORS, 95, 5)]
HEALTHY = [
    sample("GPU", 0, FieldId.PCIE_REPLAY_COUNTER, 10, 50),
    sample("GPU", 0, FieldId.PCIE_REPLAY_COUNTER, 10, 10),
    sample("GPU", 0, FieldId.INFOROM_CONFIG_VALID, 1, 600),
    sample("SWITCH", 0, FieldId.NVSWITCH_FATAL_ERRORS, 0, 5),
    sample("CPU", 0, FieldId.CPU_POWER_UTIL_CURRENT, 120.0, 5),
    sample("CPU", 0, FieldId.CPU_POWER_LIMIT, 350.0, 5),
]


def write_snapshot(tmp_path: Path, samples: List[Dict[str, Any]]) -> Path:
    path = tmp_path / "snapshot.json"
    path.write_text(json.dumps({"groups": {"1": GROUP}, "samples": samples}))
    return path


def run(
    tmp_path: Path,
    command: str,
    samples: List[Dict[str, Any]],
    extra: Sequence[str] = (),
    config: Optional[Path] = None,
) -> Result:
    args = [
        "--config",
        str(config) if config is not None else "/dev/null",
        command,
        "--snapshot",
        str(write_snapshot(tmp_path, samples)),
        "--log-folder",
        str(tmp_path / "logs"),
        "--sink",
        "file",
        "-o",
        f"file_path={tmp_path / 'incidents.json'}",
        *extra,
    ]
    return CliRunner().invoke(health_watch, args, obj=FakeHealthWatchCli())


def published(tmp_path: Path) -> List[Dict[str, Any]]:
    path = tmp_path / "incidents.json"
    return [json.loads(line) for line in path.read_text().splitlines()]


class TestCheck:
    @staticmethod
    def test_healthy(tmp_path: Path) -> None:
        r = run(tmp_path, "check", HEALTHY, ["--group", "1"])

        assert r.exit_code == ExitCode.OK.value, r.output
        assert published(tmp_path) == []

    @staticmethod
    def test_warning(tmp_path: Path) -> None:
        r = run(tmp_path, "check", PCIE_REPLAYS, ["--group", "1"])

        assert r.exit_code == ExitCode.WARN.value, r.output
        (record,) = published(tmp_path)
        assert record["group_id"] == 1
        assert record["entity_type"] == "GPU"
        assert record["entity_id"] == 0
        assert record["system"] == "PCIe"
        assert record["health"] == "WARNING"
        assert record["code"] == HealthErrorCode.PCI_REPLAY_RATE
        assert record["message"].endswith(": 9")

    @staticmethod
    def test_failure(tmp_path: Path) -> None:
        r = run(tmp_path, "check", PCIE_REPLAYS + VOLATILE_DBE, ["--group", "1"])

        assert r.exit_code == ExitCode.CRITICAL.value, r.output
        assert {record["code"] for record in published(tmp_path)} == {
            HealthErrorCode.PCI_REPLAY_RATE,
            HealthErrorCode.VOLATILE_DBE_DETECTED,
        }

    @staticmethod
    def test_uncontained_error_from_snapshot(tmp_path: Path) -> None:
        r = run(tmp_path, "check", UNCONTAINED_XID, ["--group", "1", "--systems", "mem"])

        assert r.exit_code == ExitCode.CRITICAL.value, r.output
        (record,) = published(tmp_path)
        assert record["code"] == HealthErrorCode.UNCONTAINED_ERROR
        assert record["entity_id"] == 1

    @staticmethod
    def test_systems_limit_evaluation(tmp_path: Path) -> None:
        r = run(
            tmp_path,
            "check",
            PCIE_REPLAYS + VOLATILE_DBE,
            ["--group", "1", "--systems", "mem,thermal"],
        )

        assert r.exit_code == ExitCode.CRITICAL.value, r.output
        assert [record["code"] for record in published(tmp_path)] == [
            HealthErrorCode.VOLATILE_DBE_DETECTED
        ]

    @staticmethod
    def test_unknown_group_is_unknown(tmp_path: Path) -> None:
        r = run(tmp_path, "check", HEALTHY, ["--group", "9"])

        assert r.exit_code == ExitCode.UNKNOWN.value, r.output
        assert published(tmp_path) == []

    @staticmethod
    def test_limits_from_config(tmp_path: Path) -> None:
        config = tmp_path / "config.toml"
        config.write_text(
            """
            [health_watch.check]
            group_id = 1
            max_pcie_replay_rate = 100
            """
        )

        r = run(tmp_path, "check", PCIE_REPLAYS, config=config)

        assert r.exit_code == ExitCode.OK.value, r.output
        assert published(tmp_path) == []

    @staticmethod
    def test_command_line_wins_over_config(tmp_path: Path) -> None:
        config = tmp_path / "config.toml"
        config.write_text(
            """
            [health_watch.check]
            max_pcie_replay_rate = 100
            """
        )

        r = run(
            tmp_path,
            "check",
            PCIE_REPLAYS,
            ["--group", "1", "--max-pcie-replay-rate", "8"],
            config=config,
        )

        assert r.exit_code == ExitCode.WARN.value, r.output

    @staticmethod
    def test_inconsistent_limits(tmp_path: Path) -> None:
        r = run(tmp_path, "check", HEALTHY, ["--group", "1", "--max-retired-pages", "5"])

        assert r.exit_code == 2
        assert "max_retired_pages_soft_limit" in r.output

    @staticmethod
    def test_stdout_sink(tmp_path: Path) -> None:
        args = [
            "--config",
            "/dev/null",
            "check",
            "--snapshot",
            str(write_snapshot(tmp_path, VOLATILE_DBE)),
            "--log-folder",
            str(tmp_path / "logs"),
            "--group",
            "1",
        ]

        r = CliRunner().invoke(health_watch, args, obj=FakeHealthWatchCli())

        assert r.exit_code == ExitCode.CRITICAL.value, r.output
        (record,) = json.loads(r.output)
        assert record["health"] == "FAILURE"
        assert record["message"] == (
            "Detected 2 volatile double-bit ECC error(s) in GPU 1."
        )


class TestCheckGpu:
    @staticmethod
    @pytest.mark.parametrize(
        "systems, expected",
        [
            ("inforom", ExitCode.WARN),
            ("pcie,mem", ExitCode.OK),
            ("all", ExitCode.WARN),
        ],
    )
    def test_evaluates_requested_systems(
        tmp_path: Path, systems: str, expected: ExitCode
    ) -> None:
        samples = [sample("GPU", 0, FieldId.INFOROM_CONFIG_VALID, 0, 600)]

        r = run(tmp_path, "check-gpu", samples, ["--gpu", "0", "--systems", systems])

        assert r.exit_code == expected.value, r.output

    @staticmethod
    def test_bad_gpu_id(tmp_path: Path) -> None:
        r = run(tmp_path, "check-gpu", HEALTHY, ["--gpu", "32"])

        assert r.exit_code == 2
        assert "--gpu" in r.output

    @staticmethod
    def test_published_without_group(tmp_path: Path) -> None:
        r = run(tmp_path, "check-gpu", VOLATILE_DBE, ["--gpu", "1", "--systems", "mem"])

        assert r.exit_code == ExitCode.CRITICAL.value, r.output
        (record,) = published(tmp_path)
        assert "group_id" not in record
        assert record["entity_id"] == 1


class TestPrepareEvaluation:
    @staticmethod
    def test_topology_limits_and_feed(tmp_path: Path) -> None:
        cli = FakeHealthWatchCli()
        evaluation = prepare_evaluation(
            cli,
            write_snapshot(tmp_path, UNCONTAINED_XID),
            max_pcie_replay_rate=3,
        )

        assert evaluation.clock is cli.clock
        assert evaluation.watch.ctx.limits.max_pcie_replay_rate == 3
        assert len(evaluation.store.get_group_entities(1)) == len(GROUP)

        evaluation.watch.set_watches(1, HealthSystem.MEM, Watcher(), 1_000_000, 60.0)
        evaluation.store.apply_samples(evaluation.snapshot)

        assert evaluation.watch.tracker.had_uncontained_error(
            EntityRef(EntityType.GPU, 1)
        )

    @staticmethod
    def test_inconsistent_limits(tmp_path: Path) -> None:
        with pytest.raises(click.BadParameter, match="max_retired_pages_soft_limit"):
            prepare_evaluation(
                FakeHealthWatchCli(),
                write_snapshot(tmp_path, HEALTHY),
                max_retired_pages=5,
            )
