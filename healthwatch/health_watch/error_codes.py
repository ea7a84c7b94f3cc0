# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.
"""Numeric codes and message templates for health incidents."""
from enum import IntEnum
from typing import Any, Dict

from healthwatch.schemas.health_watch.incident import ErrorDetail


class HealthErrorCode(IntEnum):
    PCI_REPLAY_RATE = 3
    VOLATILE_DBE_DETECTED = 4
    PENDING_PAGE_RETIREMENTS = 6
    RETIRED_PAGES_LIMIT = 7
    RETIRED_PAGES_DBE_LIMIT = 8
    CORRUPT_INFOROM = 9
    CLOCK_THROTTLE_THERMAL = 10
    POWER_UNREADABLE = 11
    CLOCK_THROTTLE_POWER = 12
    NVLINK_ERROR_THRESHOLD = 13
    NVLINK_DOWN = 14
    NVSWITCH_FATAL_ERROR = 15
    NVSWITCH_NON_FATAL_ERROR = 16
    FIELD_THRESHOLD_DBL = 29
    NVLINK_CRC_ERROR_THRESHOLD = 46
    NVLINK_ERROR_CRITICAL = 48
    ROW_REMAP_FAILURE = 84
    UNCONTAINED_ERROR = 93


_MESSAGES: Dict[HealthErrorCode, str] = {
    HealthErrorCode.PCI_REPLAY_RATE: "Detected more than {limit} PCIe replays per minute for {entity} : {rate}",
    HealthErrorCode.VOLATILE_DBE_DETECTED: "Detected {count} volatile double-bit ECC error(s) in {entity}.",
    HealthErrorCode.PENDING_PAGE_RETIREMENTS: "A pending retired page has been detected in {entity}.",
    HealthErrorCode.RETIRED_PAGES_LIMIT: "{limit} or more retired pages have been detected in {entity}.",
    HealthErrorCode.RETIRED_PAGES_DBE_LIMIT: (
        "More than {limit} pages have been retired due to double-bit ECC errors in {entity} "
        "and {count} more were retired in the past week."
    ),
    HealthErrorCode.CORRUPT_INFOROM: "A corrupt InfoROM has been detected in {entity}.",
    HealthErrorCode.CLOCK_THROTTLE_THERMAL: "Clocks are being throttled for {entity} because of thermal violations.",
    HealthErrorCode.POWER_UNREADABLE: "Cannot reliably read the power usage for {entity}.",
    HealthErrorCode.CLOCK_THROTTLE_POWER: "Clocks are being throttled for {entity} because of power violations.",
    HealthErrorCode.NVLINK_ERROR_THRESHOLD: (
        "Detected {count} {field} NvLink errors on {entity} which exceeds threshold of {limit}."
    ),
    HealthErrorCode.NVLINK_DOWN: "{entity}'s NvLink link {link} is currently down.",
    HealthErrorCode.NVSWITCH_FATAL_ERROR: "Detected one or more fatal errors on {entity} link {link}.",
    HealthErrorCode.NVSWITCH_NON_FATAL_ERROR: "Detected one or more non-fatal errors on {entity} link {link}.",
    HealthErrorCode.FIELD_THRESHOLD_DBL: "{field} value {value:.2f} for {entity} reached the threshold of {threshold:.2f}.",
    HealthErrorCode.NVLINK_CRC_ERROR_THRESHOLD: (
        "{rate:.1f} {field} NvLink errors found occurring per second on {entity}, "
        "exceeding the limit of {limit} per second."
    ),
    HealthErrorCode.NVLINK_ERROR_CRITICAL: "Detected {count} {field} NvLink errors on {entity}'s NVLink (should be 0).",
    HealthErrorCode.ROW_REMAP_FAILURE: "{entity} had uncorrectable memory errors and row remapping failed.",
    HealthErrorCode.UNCONTAINED_ERROR: "{entity} had an uncontained memory error (XID 95) and must be reset.",
}


def format_error(code: HealthErrorCode, **kwargs: Any) -> ErrorDetail:
    return ErrorDetail(code=int(code), msg=_MESSAGES[code].format(**kwargs))
