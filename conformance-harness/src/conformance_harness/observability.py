"""Structured logging via structlog.

The host process calls `setup_logging` once; library code only asks for a
logger through `get_logger` or receives one injected.
"""

from __future__ import annotations

import logging
import sys
from typing import Any, MutableMapping, Optional

import structlog

from conformance_harness.config import HarnessConfig

REDACTED = "[redacted]"

SECRET_KEYS = {"token", "access_token", "refresh_token", "client_secret", "authorization", "code"}


def redact_secrets(_: Any, __: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    for key in list(event_dict.keys()):
        if key.lower() in SECRET_KEYS and event_dict[key] is not None:
            event_dict[key] = REDACTED
    return event_dict


def setup_logging(config: Optional[HarnessConfig] = None) -> None:
    config = config or HarnessConfig()
    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        redact_secrets,
    ]

    final_processors: list[Any] = [structlog.stdlib.ProcessorFormatter.remove_processors_meta]
    if config.log_format == "json":
        final_processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        final_processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(processors=final_processors)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def get_logger(name: str = "conformance", **context: Any) -> Any:
    logger = structlog.get_logger(name)
    if context:
        logger = logger.bind(**context)
    return logger
