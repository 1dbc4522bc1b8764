# src/token_relay/logging_setup.py

import logging
import sys
from pathlib import Path
from typing import Optional, Union

import colorlog

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class LibraryDebugFilter(logging.Filter):
    """Lets only DEBUG records from the token_relay loggers through."""

    def filter(self, record):
        return record.levelno == logging.DEBUG and record.name.startswith(
            "token_relay"
        )


def configure_logging(
    level: Union[int, str] = logging.INFO,
    log_dir: Optional[Union[Path, str]] = None,
    debug_file: bool = False,
) -> logging.Logger:
    """
    Configure the root logger for an application embedding the pipeline.

    - Colored console output at `level`
    - token_relay.log with INFO and above when `log_dir` is given
    - token_relay_debug.log with library DEBUG records when `debug_file` is set

    Returns the library logger.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())

    console_handler = colorlog.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(
        colorlog.ColoredFormatter(
            "%(log_color)s%(message)s",
            log_colors={
                "DEBUG": "cyan",
                "INFO": "green",
                "WARNING": "yellow",
                "ERROR": "red",
                "CRITICAL": "red,bg_white",
            },
        )
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.addHandler(console_handler)

    if log_dir is not None:
        logs = Path(log_dir)
        logs.mkdir(parents=True, exist_ok=True)

        info_file_handler = logging.FileHandler(logs / "token_relay.log", encoding="utf-8")
        info_file_handler.setLevel(logging.INFO)
        info_file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root_logger.addHandler(info_file_handler)

        if debug_file:
            debug_file_handler = logging.FileHandler(
                logs / "token_relay_debug.log", encoding="utf-8"
            )
            debug_file_handler.setLevel(logging.DEBUG)
            debug_file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
            debug_file_handler.addFilter(LibraryDebugFilter())
            root_logger.addHandler(debug_file_handler)

    # Silence noisy transport loggers by setting their level higher than root
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    return logging.getLogger("token_relay")
