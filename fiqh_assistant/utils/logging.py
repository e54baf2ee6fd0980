from __future__ import annotations

import logging
import os
from typing import Any, Dict

import structlog

_CONFIGURED_LEVEL: int | None = None


def _add_log_level(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    event_dict["level"] = method_name
    return event_dict


def _resolve_level() -> int:
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    return getattr(logging, level, logging.INFO)


def configure_logging(force: bool = False) -> None:
    global _CONFIGURED_LEVEL
    level = _resolve_level()
    if _CONFIGURED_LEVEL == level and not force:
        return
    logging.basicConfig(format="%(message)s", level=level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", key="ts"),
            _add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(ensure_ascii=False),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )
    _CONFIGURED_LEVEL = level


def get_logger(name: str):
    configure_logging()
    return structlog.get_logger(name)
