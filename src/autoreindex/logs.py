"""Logging setup: timestamped stderr lines duplicated to syslog."""

from __future__ import annotations

import logging
import logging.handlers
import os

LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
SYSLOG_TAG = "autoreindex: "

_ROOT = "autoreindex"


def _syslog_handler() -> logging.Handler | None:
    address: str | tuple[str, int] = ("localhost", 514)
    if os.path.exists("/dev/log"):
        address = "/dev/log"
    try:
        handler = logging.handlers.SysLogHandler(address=address)
    except OSError as exc:
        logging.getLogger(__name__).warning("Syslog unavailable, logging to stderr only: %s", exc)
        return None
    handler.ident = SYSLOG_TAG
    handler.setFormatter(logging.Formatter("%(levelname)s %(message)s"))
    handler.setLevel(logging.INFO)
    return handler


def configure_logging(*, verbose: bool = False, quiet: bool = False, syslog: bool = True) -> None:
    """Attach handlers to the package logger; safe to call more than once."""
    logger = logging.getLogger(_ROOT)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    stream = logging.StreamHandler()
    stream.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
    stream.setLevel(logging.ERROR if quiet else logging.DEBUG)
    logger.addHandler(stream)

    if syslog:
        handler = _syslog_handler()
        if handler is not None:
            logger.addHandler(handler)
