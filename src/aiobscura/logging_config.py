"""
Logging setup for aiobscura.

Logs go to a rotating file in the XDG state directory so that terminal
output (tables, progress) stays clean. Console logging is opt-in.
"""

import logging
import logging.handlers
from pathlib import Path
from typing import Optional

from aiobscura.config import LoggingSettings, get_settings

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_configured_handlers: list[logging.Handler] = []


def _parse_level(level: str) -> int:
    value = logging.getLevelName(level.upper())
    if isinstance(value, int):
        return value
    return logging.INFO


def setup_logging(
    context: str = "cli",
    config: Optional[LoggingSettings] = None,
) -> Path:
    """
    Configure the ``aiobscura`` logger.

    Calling this again replaces the handlers installed by a previous call.

    Args:
        context: Name of the entry point, recorded in the first log line
        config: Logging section; defaults to the global settings

    Returns:
        Path of the active log file
    """
    config = config or get_settings().logging
    root_logger = logging.getLogger("aiobscura")
    level = _parse_level(config.level)

    for handler in _configured_handlers:
        root_logger.removeHandler(handler)
        handler.close()
    _configured_handlers.clear()

    log_dir = config.log_directory
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / "aiobscura.log"

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

    file_handler = logging.handlers.RotatingFileHandler(
        log_path,
        maxBytes=config.max_bytes,
        backupCount=config.max_files,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    _configured_handlers.append(file_handler)

    if config.console_enabled:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        _configured_handlers.append(console_handler)

    for handler in _configured_handlers:
        root_logger.addHandler(handler)
    root_logger.setLevel(level)
    root_logger.propagate = False

    root_logger.info(f"Logging initialized (context={context}, file={log_path})")
    return log_path
