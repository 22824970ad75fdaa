"""
Structured logging for agent-swarm using structlog.

Lifecycle operations bind ``project`` / ``task_id`` into the context so every
line a provider emits while serving them carries the same keys. Secret
material never reaches a handler: ``redact_secrets`` masks it first.
"""

import logging
import sys
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Mapping, MutableMapping, Optional

import structlog

REDACTED = "***"

# event keys whose values may hold secret material
SENSITIVE_KEYS = frozenset({"value", "plaintext", "ciphertext", "password", "token", "key", "env"})

# keys lifted into the context for the duration of an operation
CONTEXT_KEYS = ("project", "task_id")


def redact_secrets(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """structlog processor masking values stored under sensitive keys.

    Mappings (a resolved session env) keep their names, values are masked.
    """
    for name in list(event_dict):
        if name.lower() not in SENSITIVE_KEYS:
            continue
        value = event_dict[name]
        if isinstance(value, Mapping):
            event_dict[name] = {k: REDACTED for k in value}
        else:
            event_dict[name] = REDACTED
    return event_dict


def _shared_processors() -> list:
    return [
        structlog.contextvars.merge_contextvars,
        redact_secrets,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]


def configure_logging(
    level: str = "WARNING",
    json_output: bool = False,
    log_file: Optional[Path] = None,
) -> None:
    """
    Route structlog through stdlib logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_output: Render stderr lines as JSON instead of console text
        log_file: Optional file that receives every line as JSON
    """
    shared = _shared_processors()
    structlog.configure(
        processors=shared + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(
            colors=sys.stderr.isatty(),
            exception_formatter=structlog.dev.plain_traceback,
        )

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(processor=renderer, foreign_pre_chain=shared)
    )
    handlers = [stderr_handler]

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processor=structlog.processors.JSONRenderer(),
                foreign_pre_chain=shared,
            )
        )
        handlers.append(file_handler)

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level.upper()),
        handlers=handlers,
        force=True,
    )


def get_logger(name: str = "agent_swarm") -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


@contextmanager
def log_operation(
    logger: structlog.stdlib.BoundLogger, operation: str, **kwargs: Any
) -> Iterator[structlog.stdlib.BoundLogger]:
    """
    Log ``<operation>.started`` / ``.completed`` / ``.failed`` with ``duration_ms``.

    ``project`` and ``task_id`` are also bound into the contextvars, so logs
    from providers called inside the block carry them. Errors re-raise.

    Usage:
        with log_operation(log, "task_create", task_id="t-1", project="webapp") as op:
            op.info("task_create.cloning")
    """
    context = {k: kwargs[k] for k in CONTEXT_KEYS if k in kwargs}
    with structlog.contextvars.bound_contextvars(**context):
        op = logger.bind(operation=operation, **kwargs)
        start = time.monotonic()
        op.info(f"{operation}.started")
        try:
            yield op
        except Exception as e:
            op.error(
                f"{operation}.failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_ms=round((time.monotonic() - start) * 1000, 2),
            )
            raise
        op.info(
            f"{operation}.completed",
            duration_ms=round((time.monotonic() - start) * 1000, 2),
        )
