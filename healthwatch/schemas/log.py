# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.
from dataclasses import dataclass
from typing import Sequence

from healthwatch.schemas.health_watch.incident import IncidentRecord


@dataclass
class Log:
    """Incident records published to a sink in one write, stamped in unix seconds."""

    ts: int
    message: Sequence[IncidentRecord]
