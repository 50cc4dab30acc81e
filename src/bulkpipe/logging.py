import logging
import sys
import typing as t
from collections.abc import Iterator
from contextlib import contextmanager

import structlog
from structlog.types import EventDict

_HANDLER_NAME = "bulkpipe-console"

_REDACTED_LOG_FIELDS = frozenset(
    {
        "password",
        "token",
        "session_id",
        "sessionId",
        "X-SFDC-Session",
    }
)


def _redact_credentials(
    logger: t.Any, method_name: str, event_dict: EventDict
) -> EventDict:
    for key in _REDACTED_LOG_FIELDS.intersection(event_dict):
        event_dict[key] = "***"
    return event_dict


def setup_logging(level: int = logging.WARNING) -> None:
    """
    Configure structlog on top of the stdlib ``bulkpipe`` logger.

    Parameters
    ----------
    level : int
        Level applied to the ``bulkpipe`` logger.
    """
    logger = logging.getLogger("bulkpipe")
    logger.setLevel(level)
    handler = next((h for h in logger.handlers if h.get_name() == _HANDLER_NAME), None)
    if handler is None:
        handler = logging.StreamHandler()
        handler.set_name(_HANDLER_NAME)
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)
    # sys.stderr may have been replaced since the last call.
    handler.setStream(sys.stderr)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,  # job-scoped context
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            _redact_credentials,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


@contextmanager
def logging_context(**required_context: t.Any) -> Iterator[None]:
    current = structlog.contextvars.get_contextvars()
    to_bind = {
        k: v for k, v in required_context.items() if k not in current and v is not None
    }

    if to_bind:
        with structlog.contextvars.bound_contextvars(**to_bind):
            yield
    else:
        yield
