# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.
import json
import os
from dataclasses import asdict

from healthwatch.exporters import register
from healthwatch.monitoring.sink.protocol import SinkAdditionalParams
from healthwatch.monitoring.utils.monitor import init_logger
from healthwatch.schemas.log import Log


@register("file")
class File:
    """Append one JSON object per record to `file_path`, rotating like the logs."""

    def __init__(self, *, file_path: str):
        self.logger, _ = init_logger(
            logger_name=__name__ + file_path,
            log_dir=os.path.dirname(file_path),
            log_name=os.path.basename(file_path),
            log_formatter=None,
        )
        # records must not also end up in the command's own log
        self.logger.propagate = False

    def write(
        self,
        data: Log,
        additional_params: SinkAdditionalParams,
    ) -> None:
        for payload in data.message:
            record = {"ts": data.ts, **asdict(payload)}
            if additional_params.group_id is not None:
                record["group_id"] = additional_params.group_id
            self.logger.info(json.dumps(record))
