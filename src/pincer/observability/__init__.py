"""
observability/ — Structured logging for Pincer

    setup_logging / setup_logging_from_settings   configure once at startup
    get_logger                                    module-level bound logger
    bind_run / clear_run                          run correlation ids
"""

from pincer.observability.logger import (
    bind_run,
    clear_run,
    get_logger,
    setup_logging,
    setup_logging_from_settings,
)

__all__ = [
    "bind_run",
    "clear_run",
    "get_logger",
    "setup_logging",
    "setup_logging_from_settings",
]
