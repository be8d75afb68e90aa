"""
Logging setup for the bulk scripts and services.

Service runs log through a PipelineLogger, which tags every line with the
run id and the bulk step, e.g.:

    2025-03-01 12:00:00 [INFO] src.services.bulk_blog_analysis_service: [run:3f9c0a1b2d4e] [blog_analysis] Completed: ...

DEBUG_MODE=true (or the scripts' --debug flag) turns on DEBUG output for
pipeline loggers.
"""

import logging
import os
import sys
from typing import Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Client libraries that log every request at INFO
QUIET_LOGGERS = ("httpx", "httpcore", "pymongo")

_debug_mode = os.getenv("DEBUG_MODE", "false").lower() == "true"


def is_debug_mode() -> bool:
    return _debug_mode


class PipelineLogger(logging.LoggerAdapter):
    """
    Logger adapter that prefixes messages with `[run:<id>] [<layer>]`.

    Only the last 12 characters of the run id are shown; run ids look like
    "op_bulk-blog-analysis_3f9c0a1b2d4e" and the tail is the unique part.
    """

    def __init__(
        self,
        name: str,
        run_id: Optional[str] = None,
        layer: Optional[str] = None,
        debug_mode: Optional[bool] = None,
    ):
        super().__init__(logging.getLogger(name), {"run_id": run_id, "layer": layer})
        if debug_mode if debug_mode is not None else is_debug_mode():
            self.logger.setLevel(logging.DEBUG)

    @property
    def run_id(self) -> Optional[str]:
        return self.extra["run_id"]

    @property
    def layer(self) -> Optional[str]:
        return self.extra["layer"]

    def process(self, msg, kwargs):
        prefix = []
        if self.run_id:
            prefix.append(f"[run:{self.run_id[-12:]}]")
        if self.layer:
            prefix.append(f"[{self.layer}]")
        if prefix:
            msg = f"{' '.join(prefix)} {msg}"
        return msg, kwargs


def setup_logging(debug: bool = False, level: str = "WARNING") -> None:
    """
    Configure root logging for a script run.

    Args:
        debug: Log everything at DEBUG and enable debug mode for pipeline loggers
        level: Root level when not in debug mode
    """
    global _debug_mode
    _debug_mode = debug

    log_level = logging.DEBUG if debug else getattr(logging, level.upper(), logging.WARNING)

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))


def get_logger(
    name: str,
    run_id: Optional[str] = None,
    layer: Optional[str] = None,
    debug_mode: Optional[bool] = None,
) -> PipelineLogger:
    """Get a pipeline logger for one run of a bulk step."""
    return PipelineLogger(name, run_id, layer, debug_mode)
