"""
Logging - console logging for the service and the scripts.

Nothing in the engine logs the developer private key; addresses and
transaction hashes are fine to log.
"""

from typing import Union
import logging


LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'


def configure_logging(level: Union[int, str] = logging.INFO) -> None:
    """Install one console handler on the root logger. Safe to call twice."""
    root = logging.getLogger()
    if root.handlers:
        return

    if isinstance(level, str):
        # unknown names come back as "Level X" strings
        resolved = logging.getLevelName(level.upper())
        level = resolved if isinstance(resolved, int) else logging.INFO

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt='%H:%M:%S'))
    root.addHandler(handler)
    root.setLevel(level)

    # httpx logs every request line at INFO
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
