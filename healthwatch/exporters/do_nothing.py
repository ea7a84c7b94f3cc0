# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.
import logging

from healthwatch.exporters import register
from healthwatch.monitoring.sink.protocol import SinkAdditionalParams
from healthwatch.schemas.log import Log

logger = logging.getLogger(__name__)


@register("do_nothing")
class DoNothing:
    """Drop incident records. The exit code still reflects overall health."""

    def write(
        self,
        data: Log,
        additional_params: SinkAdditionalParams,
    ) -> None:
        logger.debug("Dropping %d incident record(s)", len(data.message))
