"""Log output for the ``docket`` package.

Modules keep plain ``logging.getLogger(__name__)`` loggers; structlog's
``ProcessorFormatter`` renders their records either as console text or as
JSON lines.
"""

from __future__ import annotations

import logging
import os
import sys

import structlog

LOG_FORMATS = ("text", "json")

# Third-party loggers that only repeat what the request log already says.
_NOISE_LOGGERS = (
    "uvicorn.access",
    "httpx",
    "httpcore",
    "urllib3",
)


def _build_processors(time_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt),
        structlog.stdlib.ExtraAdder(),
    ]


def _resolve_level(name: str) -> int:
    resolved = logging.getLevelName(name.strip().upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_logging(level: str | None = None, fmt: str | None = None) -> None:
    """Route ``docket.*`` loggers to one stderr handler.

    ``DOCKET_LOG_LEVEL`` and ``DOCKET_LOG_FORMAT`` win over the arguments.
    Calling this again replaces the handler instead of adding a second one.
    """
    resolved = _resolve_level(os.getenv("DOCKET_LOG_LEVEL") or level or "INFO")
    fmt = (os.getenv("DOCKET_LOG_FORMAT") or fmt or "text").strip().lower()

    if fmt == "json":
        pre_chain = _build_processors(time_fmt="iso")
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        pre_chain = _build_processors(time_fmt="%Y-%m-%d %H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=pre_chain,
    )
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    handler._docket = True  # type: ignore[attr-defined]

    package_logger = logging.getLogger("docket")
    package_logger.handlers = [h for h in package_logger.handlers if not getattr(h, "_docket", False)]
    package_logger.addHandler(handler)
    package_logger.setLevel(resolved)

    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            *pre_chain,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
