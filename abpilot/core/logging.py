"""Structured logging for abpilot.

Library modules log through ``logging.getLogger(__name__)`` with %-style
arguments. ``configure_logging`` routes those stdlib records through
structlog, so every line carries:

- the correlation id of the scheduler tick (or CLI command) that produced it
- fields bound with ``bind_context``, usually ``test_id`` and ``variant_id``
- process fields: service name, abpilot version and hostname

Output is JSON when stdout is not a terminal and a console rendering otherwise.

Example usage:
    from abpilot.core.logging import bind_context, correlation_context

    async with correlation_context():
        with bind_context(test_id="checkout-cta"):
            logger.info("Evaluating %s", "checkout-cta")
"""

import logging
import socket
import sys
import uuid
from contextvars import ContextVar, Token
from functools import lru_cache
from typing import TYPE_CHECKING, Any, TextIO

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from abpilot import __version__

if TYPE_CHECKING:
    from abpilot.core.settings import ABPilotSettings

CORRELATION_KEY = "correlation_id"

# Loggers that stay at WARNING or above whatever level abpilot runs at.
_QUIET_LOGGERS = ("asyncio",)

_log_context: ContextVar[dict[str, Any]] = ContextVar(
    "abpilot_log_context", default={}
)


def generate_correlation_id() -> str:
    """Return a short id for one scheduler tick or CLI invocation."""
    return uuid.uuid4().hex[:16]


def get_correlation_id() -> str | None:
    return _log_context.get().get(CORRELATION_KEY)


def set_correlation_id(correlation_id: str | None) -> None:
    context = dict(_log_context.get())
    if correlation_id is None:
        context.pop(CORRELATION_KEY, None)
    else:
        context[CORRELATION_KEY] = correlation_id
    _log_context.set(context)


def get_log_context() -> dict[str, Any]:
    """Return a copy of the fields currently attached to every log line."""
    return dict(_log_context.get())


class _ContextScope:
    """Layer fields over the log context and restore the outer layer on exit."""

    def __init__(self, fields: dict[str, Any]) -> None:
        self._fields = fields
        self._token: Token[dict[str, Any]] | None = None

    def _push(self) -> None:
        self._token = _log_context.set({**_log_context.get(), **self._fields})

    def _pop(self) -> None:
        if self._token is not None:
            _log_context.reset(self._token)
            self._token = None


class correlation_context(_ContextScope):
    """Tag all logging inside the block with one correlation id.

    The scheduler opens one per tick, so every evaluation logged during the
    tick can be grouped. Usable with ``with`` and ``async with``.
    """

    def __init__(self, correlation_id: str | None = None) -> None:
        self.correlation_id = correlation_id or generate_correlation_id()
        super().__init__({CORRELATION_KEY: self.correlation_id})

    def __enter__(self) -> str:
        self._push()
        return self.correlation_id

    def __exit__(self, *exc_info: Any) -> None:
        self._pop()

    async def __aenter__(self) -> str:
        return self.__enter__()

    async def __aexit__(self, *exc_info: Any) -> None:
        self.__exit__(*exc_info)


class bind_context(_ContextScope):
    """Attach fields such as ``test_id`` to all logging inside the block."""

    def __init__(self, **fields: Any) -> None:
        super().__init__(fields)

    def __enter__(self) -> "bind_context":
        self._push()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self._pop()


# =============================================================================
# Structlog Processors
# =============================================================================


def add_log_context(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Merge the correlation id and bound fields; explicit event keys win."""
    for key, value in _log_context.get().items():
        event_dict.setdefault(key, value)
    return event_dict


@lru_cache(maxsize=1)
def _process_fields() -> dict[str, str]:
    try:
        hostname = socket.gethostname()
    except OSError:
        hostname = "unknown"
    return {
        "service": "abpilot",
        "abpilot_version": __version__,
        "hostname": hostname,
    }


def add_process_fields(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    for key, value in _process_fields().items():
        event_dict.setdefault(key, value)
    return event_dict


def _pre_chain() -> list[Processor]:
    return [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        add_log_context,
        add_process_fields,
        structlog.processors.format_exc_info,
    ]


# =============================================================================
# Logging Configuration
# =============================================================================


def _resolve_level(level: str | int) -> int:
    if isinstance(level, int):
        return level
    return logging.getLevelNamesMapping().get(level.upper(), logging.INFO)


def _clear_handlers(root_logger: logging.Logger) -> None:
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()


def configure_logging(
    level: str | int = logging.INFO,
    json_output: bool | None = None,
    log_file: str | None = None,
    stream: TextIO | None = None,
) -> None:
    """Route stdlib and structlog logging through one structlog formatter.

    Args:
        level: Root log level, as a name or a ``logging`` constant.
        json_output: Render JSON lines. ``None`` picks JSON when stdout is not
            a terminal.
        log_file: Also write the rendered lines to this file.
        stream: Console stream, stdout by default. The CLI logs to stderr so
            its JSON output stays clean.
    """
    level = _resolve_level(level)
    if json_output is None:
        json_output = not sys.stdout.isatty()

    pre_chain = _pre_chain()
    structlog.configure(
        processors=[
            *pre_chain,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    renderer: Processor = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    )
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=pre_chain,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handlers: list[logging.Handler] = [
        logging.StreamHandler(stream if stream is not None else sys.stdout)
    ]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    root_logger = logging.getLogger()
    _clear_handlers(root_logger)
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)
    root_logger.setLevel(level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def configure_logging_from_settings(
    settings: "ABPilotSettings | None" = None,
    stream: TextIO | None = None,
) -> None:
    """Configure logging from the ``logging`` section of the settings.

    Uses the cached settings when none are given.
    """
    from abpilot.core.settings import get_cached_settings

    section = (settings or get_cached_settings()).logging
    configure_logging(
        level=section.level,
        json_output=section.json_output,
        log_file=section.file,
        stream=stream,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger for key/value events.

    Example:
        get_logger(__name__).info("winner_selected", test_id="t-1", variant="b")
    """
    return structlog.get_logger(name)


def reset_logging() -> None:
    """Drop handlers, context and structlog configuration (for tests)."""
    _log_context.set({})
    structlog.reset_defaults()

    root_logger = logging.getLogger()
    _clear_handlers(root_logger)
    root_logger.setLevel(logging.WARNING)
