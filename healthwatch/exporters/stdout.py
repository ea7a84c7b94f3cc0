# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.
import json
import logging
from dataclasses import asdict

from healthwatch.exporters import register
from healthwatch.monitoring.sink.protocol import SinkAdditionalParams
from healthwatch.schemas.log import Log

logger = logging.getLogger(__name__)


@register("stdout")
class Stdout:
    """Print each write as one JSON array of records."""

    def write(
        self,
        data: Log,
        additional_params: SinkAdditionalParams,
    ) -> None:
        if additional_params.data_type is None:
            logger.warning(
                "Stdout write without a data_type: %s", additional_params
            )
        print(json.dumps([asdict(message) for message in data.message]))
