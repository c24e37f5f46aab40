"""
Logging configuration for the storm control plane.

The service and the launcher scripts call setup_logging once at startup;
every module logs through logging.getLogger(__name__).
"""

import logging
import sys
from pathlib import Path
from typing import Optional, Union

DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def _resolve_level(level: Union[int, str]) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logging(
    component_name: str,
    level: Union[int, str] = logging.INFO,
    log_file: Optional[str] = None,
    format_string: Optional[str] = None
):
    """
    Configure logging for a storm component.

    Args:
        component_name: Component identifier (e.g., 'storm', 'reconciler')
        level: Logging level, as int or name ('DEBUG', 'INFO', ...)
        log_file: Optional file path for log output
        format_string: Custom format string (default provided)
    """
    level = _resolve_level(level)
    if format_string is None:
        format_string = f'[%(asctime)s] [{component_name.upper()}] %(levelname)s %(name)s - %(message)s'

    # Configure root logger; force replaces handlers installed by uvicorn or earlier calls
    logging.basicConfig(
        level=level,
        format=format_string,
        datefmt=DATE_FORMAT,
        handlers=[
            logging.StreamHandler(sys.stdout)
        ],
        force=True,
    )

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(format_string, datefmt=DATE_FORMAT))
        logging.getLogger().addHandler(file_handler)

    # SQL echo is noise at INFO
    logging.getLogger("sqlalchemy.engine").setLevel(max(level, logging.WARNING))

    logger = logging.getLogger(component_name)
    logger.info(f"{component_name.upper()} logging initialized (level={logging.getLevelName(level)})")

    return logger
