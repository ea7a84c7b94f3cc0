# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.
"""Logging setup shared by the health watch commands."""
from __future__ import annotations

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional, Tuple


def init_logger(
    logger_name: str,
    log_dir: str,
    log_name: str,
    log_formatter: Optional[logging.Formatter] = logging.Formatter(
        "[%(asctime)s] - [%(levelname)s] - [%(name)s] - %(message)s"
    ),
    log_level: int = logging.INFO,
    max_bytes: int = 1024 * 1024,
    backup_count: int = 2,
    log_stdout: bool = False,
) -> Tuple[logging.Logger, logging.Handler]:
    """Attach a rotating file handler, or a stdout handler, to `logger_name`.

    Logs are stored at: {log_dir}/{log_name}
    """
    handler: logging.Handler
    if log_stdout:
        handler = logging.StreamHandler(sys.stdout)
    else:
        os.makedirs(log_dir or ".", exist_ok=True)
        handler = RotatingFileHandler(
            os.path.join(log_dir, log_name),
            mode="a",
            maxBytes=max_bytes,
            backupCount=backup_count,
        )

    if log_formatter:
        handler.setFormatter(log_formatter)

    logger = logging.getLogger(logger_name)
    logger.setLevel(log_level)
    logger.addHandler(handler)
    return logger, handler
