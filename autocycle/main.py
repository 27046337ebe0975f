"""
Main — logging setup and service wiring.

``run_service`` is the one place the pieces meet: configuration, the
Anthropic-backed executor, the single-instance lock and the heartbeat. The CLI
calls it; tests call it with a scripted executor.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import structlog

from autocycle.config import AutocycleConfig
from autocycle.executor import ClaudeExecutor, Executor
from autocycle.heartbeat import Heartbeat
from autocycle.prompt import build_system_prompt

_TRUNCATED_KEYS = ("prompt", "response", "content")
_MAX_FIELD_LEN = 200


def _truncate_long_fields(logger, method_name, event_dict):
    """Structlog processor that keeps prompt and response bodies out of the console."""
    for key in _TRUNCATED_KEYS:
        val = event_dict.get(key)
        if isinstance(val, str) and len(val) > _MAX_FIELD_LEN:
            event_dict[key] = val[:_MAX_FIELD_LEN] + "... [truncated]"
    return event_dict


_logging_configured = False


def configure_logging(verbose: bool = False) -> None:
    """Configure structlog over standard-library logging.

    Safe to call more than once; only the first call takes effect.
    """
    global _logging_configured  # noqa: PLW0603
    if _logging_configured:
        return
    _logging_configured = True

    logging.basicConfig(
        format="%(message)s",
        level=logging.DEBUG if verbose else logging.INFO,
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S"),
            _truncate_long_fields,
            structlog.dev.ConsoleRenderer(colors=True),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )


logger = structlog.get_logger(__name__)


def build_heartbeat(
    config: AutocycleConfig,
    executor: Optional[Executor] = None,
) -> Heartbeat:
    """Wire a heartbeat; builds a ClaudeExecutor when none is supplied."""
    if executor is None:
        executor = ClaudeExecutor(config.claude, build_system_prompt(config.home_dir))
    return Heartbeat(config, executor)


async def run_service(
    config: AutocycleConfig,
    executor: Optional[Executor] = None,
) -> Heartbeat:
    """Run the heartbeat until SIGINT/SIGTERM. Returns the stopped heartbeat."""
    heartbeat = build_heartbeat(config, executor)
    heartbeat.install_signal_handlers(asyncio.get_running_loop())
    logger.info("service.starting", config=repr(config))
    await heartbeat.start()
    return heartbeat
