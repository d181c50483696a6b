import logging
from typing import Optional, Union


def setup_logging(level: Union[int, str] = logging.INFO, log_format: Optional[str] = None) -> None:
    """
    Configure process-wide logging with a consistent format.

    Called once from the service entrypoint. Safe to call multiple times;
    subsequent calls are ignored if handlers exist.
    """
    if logging.getLogger().handlers:
        return

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    fmt = log_format or "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(level=level, format=fmt)

    # websockets logs every handshake at INFO
    logging.getLogger("websockets").setLevel(max(level, logging.WARNING))
