# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.
from dataclasses import dataclass
from enum import Enum, IntFlag
from functools import total_ordering
from typing import Dict, FrozenSet, Literal

LOG_LEVEL = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class HealthSystem(IntFlag):
    """Bitmask of health watch categories. One mask is stored per group."""

    PCIE = 0x1
    NVLINK = 0x2
    PMU = 0x4
    MCU = 0x8
    MEM = 0x10
    SM = 0x20
    INFOROM = 0x40
    THERMAL = 0x80
    POWER = 0x100
    DRIVER = 0x200
    NVSWITCH_NONFATAL = 0x400
    NVSWITCH_FATAL = 0x800

    @property
    def label(self) -> str:
        return _HEALTH_SYSTEM_LABELS.get(self, "Unknown")


NO_HEALTH_SYSTEMS = HealthSystem(0)
ALL_HEALTH_SYSTEMS = HealthSystem(0xFFF)

# v1 masks predate NvSwitch support
HEALTH_WATCH_COUNT_V1 = 10
HEALTH_WATCH_COUNT_V2 = 12

_HEALTH_SYSTEM_LABELS: Dict[HealthSystem, str] = {
    HealthSystem.PCIE: "PCIe",
    HealthSystem.NVLINK: "NVLink",
    HealthSystem.PMU: "PMU",
    HealthSystem.MCU: "MCU",
    HealthSystem.MEM: "Memory",
    HealthSystem.SM: "SM",
    HealthSystem.INFOROM: "Inforom",
    HealthSystem.THERMAL: "Thermal",
    HealthSystem.POWER: "Power",
    HealthSystem.DRIVER: "Driver",
    HealthSystem.NVSWITCH_NONFATAL: "NVSwitch non-fatal errors",
    HealthSystem.NVSWITCH_FATAL: "NVSwitch fatal errors",
}


def health_system_bits(count: int = HEALTH_WATCH_COUNT_V2) -> list[HealthSystem]:
    """Every single-bit health system in bit order, limited to the first `count` bits."""
    return [HealthSystem(1 << index) for index in range(count)]


class ExitCode(Enum):
    """Process exit codes, in sync with the Nagios plugin API
    https://assets.nagios.com/downloads/nagioscore/docs/nagioscore/3/en/pluginapi.html"""

    OK = 0
    WARN = 1
    CRITICAL = 2
    UNKNOWN = 3


@total_ordering
class HealthResult(Enum):
    """Verdict of one incident. Ordered PASS < WARN < FAIL."""

    PASS = 0
    WARN = 10
    FAIL = 20

    @property
    def label(self) -> str:
        return {
            HealthResult.PASS: "PASS",
            HealthResult.WARN: "WARNING",
            HealthResult.FAIL: "FAILURE",
        }[self]

    @property
    def exit_code(self) -> ExitCode:
        return {
            HealthResult.PASS: ExitCode.OK,
            HealthResult.WARN: ExitCode.WARN,
            HealthResult.FAIL: ExitCode.CRITICAL,
        }[self]

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, HealthResult):
            return NotImplemented
        return self.value < other.value


class EntityType(Enum):
    NONE = 0
    GPU = 1
    VGPU = 2
    SWITCH = 3
    GPU_I = 4
    GPU_CI = 5
    LINK = 6
    CPU = 7
    CPU_CORE = 8

    @property
    def label(self) -> str:
        return _ENTITY_TYPE_LABELS.get(self, "Unknown")


_ENTITY_TYPE_LABELS: Dict[EntityType, str] = {
    EntityType.GPU: "GPU",
    EntityType.VGPU: "VGPU",
    EntityType.SWITCH: "NvSwitch",
    EntityType.GPU_I: "GPU Instance",
    EntityType.GPU_CI: "Compute Instance",
    EntityType.LINK: "Link",
    EntityType.CPU: "CPU",
    EntityType.CPU_CORE: "CPU Core",
}

# Full GPUs, GPU instances and compute instances share the device health checks
GPU_LIKE_ENTITY_TYPES: FrozenSet[EntityType] = frozenset(
    {EntityType.GPU, EntityType.GPU_I, EntityType.GPU_CI}
)


@dataclass(frozen=True)
class EntityRef:
    entity_type: EntityType
    entity_id: int

    def __post_init__(self) -> None:
        if self.entity_id < 0:
            raise ValueError(f"entity_id must be >= 0, got {self.entity_id}")

    @property
    def is_gpu_like(self) -> bool:
        return self.entity_type in GPU_LIKE_ENTITY_TYPES

    def __str__(self) -> str:
        return f"{self.entity_type.label} {self.entity_id}"


class Status(Enum):
    """Return codes shared by the sample store and the health watch engine."""

    OK = 0
    BADPARAM = -1
    GENERIC_ERROR = -3
    NOT_CONFIGURED = -5
    NOT_SUPPORTED = -6
    NO_DATA = -14
    NOT_WATCHED = -16
    CONNECTION_NOT_VALID = -21

    @property
    def is_absence(self) -> bool:
        """NO_DATA and NOT_WATCHED mean there is nothing to evaluate, not that something broke."""
        return self in (Status.NO_DATA, Status.NOT_WATCHED)


class LinkState(Enum):
    NOT_SUPPORTED = 0
    DISABLED = 1
    DOWN = 2
    UP = 3


class Order(Enum):
    ASCENDING = 1
    DESCENDING = 2
