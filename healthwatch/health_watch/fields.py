# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.
"""Field ids, fixed limits and sampling floors used by the health watches."""
from dataclasses import dataclass
from enum import IntEnum
from typing import Dict, Tuple


class FieldId(IntEnum):
    INFOROM_CONFIG_VALID = 94
    POWER_USAGE = 155
    PCIE_REPLAY_COUNTER = 202
    XID_ERRORS = 230
    POWER_VIOLATION = 240
    THERMAL_VIOLATION = 241
    ECC_DBE_VOL_TOTAL = 311
    RETIRED_SBE = 390
    RETIRED_DBE = 391
    RETIRED_PENDING = 392
    ROW_REMAP_FAILURE = 395
    NVLINK_CRC_FLIT_ERROR_COUNT_TOTAL = 409
    NVLINK_CRC_DATA_ERROR_COUNT_TOTAL = 419
    NVLINK_REPLAY_ERROR_COUNT_TOTAL = 429
    NVLINK_RECOVERY_ERROR_COUNT_TOTAL = 439
    NVSWITCH_FATAL_ERRORS = 856
    NVSWITCH_NON_FATAL_ERRORS = 857
    CPU_TEMP_CURRENT = 1110
    CPU_TEMP_WARNING = 1111
    CPU_TEMP_CRITICAL = 1112
    CPU_POWER_UTIL_CURRENT = 1130
    CPU_POWER_LIMIT = 1131


_FIELD_TAGS: Dict[int, str] = {
    FieldId.INFOROM_CONFIG_VALID: "inforom_config_valid",
    FieldId.POWER_USAGE: "power_usage",
    FieldId.PCIE_REPLAY_COUNTER: "pcie_replay_counter",
    FieldId.XID_ERRORS: "xid_errors",
    FieldId.POWER_VIOLATION: "power_violation",
    FieldId.THERMAL_VIOLATION: "thermal_violation",
    FieldId.ECC_DBE_VOL_TOTAL: "ecc_dbe_volatile_total",
    FieldId.RETIRED_SBE: "retired_pages_sbe",
    FieldId.RETIRED_DBE: "retired_pages_dbe",
    FieldId.RETIRED_PENDING: "retired_pages_pending",
    FieldId.ROW_REMAP_FAILURE: "row_remap_failure",
    FieldId.NVLINK_CRC_FLIT_ERROR_COUNT_TOTAL: "nvlink_flit_crc_error_count_total",
    FieldId.NVLINK_CRC_DATA_ERROR_COUNT_TOTAL: "nvlink_data_crc_error_count_total",
    FieldId.NVLINK_REPLAY_ERROR_COUNT_TOTAL: "nvlink_replay_error_count_total",
    FieldId.NVLINK_RECOVERY_ERROR_COUNT_TOTAL: "nvlink_recovery_error_count_total",
    FieldId.NVSWITCH_FATAL_ERRORS: "nvswitch_fatal_error",
    FieldId.NVSWITCH_NON_FATAL_ERRORS: "nvswitch_non_fatal_error",
    FieldId.CPU_TEMP_CURRENT: "cpu_temp_current",
    FieldId.CPU_TEMP_WARNING: "cpu_temp_warning",
    FieldId.CPU_TEMP_CRITICAL: "cpu_temp_critical",
    FieldId.CPU_POWER_UTIL_CURRENT: "cpu_power_util_current",
    FieldId.CPU_POWER_LIMIT: "cpu_power_limit",
}


def field_tag(field_id: int) -> str:
    return _FIELD_TAGS.get(field_id, f"Unknown field {field_id}")


# NvLink counters checked by the NVLink health system, in evaluation order
NVLINK_ERROR_FIELD_IDS: Tuple[FieldId, ...] = (
    FieldId.NVLINK_CRC_FLIT_ERROR_COUNT_TOTAL,
    FieldId.NVLINK_CRC_DATA_ERROR_COUNT_TOTAL,
    FieldId.NVLINK_REPLAY_ERROR_COUNT_TOTAL,
    FieldId.NVLINK_RECOVERY_ERROR_COUNT_TOTAL,
)

# Replay and recovery errors are failures as soon as they cross the count limit
NVLINK_CRITICAL_FIELD_IDS: Tuple[FieldId, ...] = (
    FieldId.NVLINK_REPLAY_ERROR_COUNT_TOTAL,
    FieldId.NVLINK_RECOVERY_ERROR_COUNT_TOTAL,
)

# The link index of a switch incident is the offset from the first field in its list
NVSWITCH_FATAL_FIELD_IDS: Tuple[FieldId, ...] = (FieldId.NVSWITCH_FATAL_ERRORS,)
NVSWITCH_NON_FATAL_FIELD_IDS: Tuple[FieldId, ...] = (
    FieldId.NVSWITCH_NON_FATAL_ERRORS,
)

CPU_THERMAL_FIELD_IDS: Tuple[FieldId, ...] = (
    FieldId.CPU_TEMP_CURRENT,
    FieldId.CPU_TEMP_WARNING,
    FieldId.CPU_TEMP_CRITICAL,
)
CPU_POWER_FIELD_IDS: Tuple[FieldId, ...] = (
    FieldId.CPU_POWER_UTIL_CURRENT,
    FieldId.CPU_POWER_LIMIT,
)

ONE_SECOND_USEC = 1_000_000
ONE_MINUTE_USEC = 60 * ONE_SECOND_USEC
ONE_WEEK_USEC = 7 * 24 * 3600 * ONE_SECOND_USEC

MIN_UPDATE_INTERVAL_USEC = 30 * ONE_SECOND_USEC
INFOROM_MIN_UPDATE_INTERVAL_USEC = 3600 * ONE_SECOND_USEC
INFOROM_MIN_MAX_KEEP_AGE_SEC = 7200.0

MAX_NUM_DEVICES = 32
NVLINK_MAX_LINKS_PER_GPU = 18
NVLINK_MAX_LINKS_PER_NVSWITCH = 64

XID_UNCONTAINED_ERROR = 95


@dataclass(frozen=True)
class HealthLimits:
    max_pcie_replay_rate: int = 8
    max_retired_pages: int = 64
    max_retired_pages_soft_limit: int = 15
    max_nvlink_error: int = 1
    max_nvlink_crc_error_per_sec: float = 100.0

    def __post_init__(self) -> None:
        for name in (
            "max_pcie_replay_rate",
            "max_retired_pages",
            "max_retired_pages_soft_limit",
            "max_nvlink_error",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")
        if self.max_nvlink_crc_error_per_sec <= 0:
            raise ValueError("max_nvlink_crc_error_per_sec must be > 0")
        if self.max_retired_pages_soft_limit > self.max_retired_pages:
            raise ValueError(
                "max_retired_pages_soft_limit must be <= max_retired_pages for consistent page retirement thresholds"
            )
