"""Logging configuration shared by the command line entry points."""
from __future__ import annotations

import datetime
import logging
import logging.handlers
import os
import sys

LOG_FORMAT = (
    '[%(asctime)s.%(msecs)03d] %(levelname)-5s (%(name)s) :: %(message)s'
)
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def configure_logging(
    level: int | str = logging.INFO,
    *,
    log_dir: str | None = None,
    filename: str = 'peershare.log',
    websockets_level: int | str = logging.WARNING,
) -> None:
    """Configure the root logger.

    Logs are always written to stdout. If `log_dir` is set, logs are also
    written to `filename` inside that directory which is rotated weekly.

    Args:
        level: Minimum logging level of the root logger.
        log_dir: Optional directory to write log files to.
        filename: Name of the log file inside `log_dir`.
        websockets_level: Log level for the `websockets` logger. Websockets
            logs with much higher frequency so it is suggested to set this
            to `WARNING` or higher.
    """
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_dir is not None:
        os.makedirs(log_dir, exist_ok=True)
        handlers.append(
            logging.handlers.TimedRotatingFileHandler(
                os.path.join(log_dir, filename),
                # Rotate logs Sunday at midnight
                when='W6',
                atTime=datetime.time(hour=0, minute=0, second=0),
            ),
        )

    logging.basicConfig(
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        level=level,
        handlers=handlers,
        force=True,
    )

    logging.getLogger('websockets').setLevel(websockets_level)
