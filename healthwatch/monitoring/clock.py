# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.
import time
from typing import Protocol


class Clock(Protocol):
    """An object that can tell time."""

    def unixtime(self) -> int:
        """Get the current unixtime."""

    def unixtime_usec(self) -> int:
        """Get the current unixtime in microseconds. Sample timestamps use this unit."""


class ClockImpl:
    def unixtime(self) -> int:
        return int(time.time())

    def unixtime_usec(self) -> int:
        return time.time_ns() // 1000
