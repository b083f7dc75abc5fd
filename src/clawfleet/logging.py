"""Logging utilities for clawfleet.

Wraps the standard library logger with:
- a TRACE level below DEBUG that shows full remote commands
- verbosity flag mapping for the CLI
- timing of remote operations
- redaction of passwords and gateway tokens
- a structured logger that appends key=value context to every message
"""

import logging
import re
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Iterable, Mapping

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

CONSOLE_FORMAT = "%(levelname)s %(name)s: %(message)s"
DETAILED_FORMAT = "%(asctime)s %(levelname)-7s %(name)s:%(lineno)d %(message)s"
TRACE_FORMAT = "%(asctime)s.%(msecs)03d %(levelname)-7s %(name)s.%(funcName)s:%(lineno)d %(message)s"

# -v, -vv, -vvv; -vvv includes redacted remote commands
VERBOSITY_LEVELS = (logging.WARNING, logging.INFO, logging.DEBUG, TRACE)

LEVEL_NAMES = {
    "trace": TRACE,
    **{name.lower(): getattr(logging, name) for name in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")},
}

MASK = "***"

# --token "abc", --password=abc, --token 'abc'
_SECRET_ARG_RE = re.compile(
    r"""(--(?:token|password)(?:=|\s+))("[^"]*"|'[^']*'|\S+)""",
    re.IGNORECASE,
)
_SECRET_QUERY_RE = re.compile(r"([?&]token=)[^&\s]+", re.IGNORECASE)


def get_level_from_verbosity(verbosity: int) -> int:
    """Convert a count of -v flags to a logging level."""
    return VERBOSITY_LEVELS[max(0, min(verbosity, len(VERBOSITY_LEVELS) - 1))]


def get_level_from_name(level_name: str) -> int:
    """Convert a level name to a logging level.

    Raises:
        ValueError: If level name is invalid
    """
    try:
        return LEVEL_NAMES[level_name.lower()]
    except KeyError:
        raise ValueError(
            f"Invalid log level: {level_name}. Valid levels: {', '.join(LEVEL_NAMES)}"
        ) from None


def _format_for(level: int, debug: bool) -> str:
    if level <= TRACE:
        return TRACE_FORMAT
    if debug or level <= logging.DEBUG:
        return DETAILED_FORMAT
    return CONSOLE_FORMAT


def _attach(root: logging.Logger, handler: logging.Handler, level: int, fmt: str) -> None:
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt))
    root.addHandler(handler)


def configure_logging(
    level: int = logging.WARNING,
    format_string: str | None = None,
    debug: bool = False,
    log_file: str | Path | None = None,
    file_level: int | None = None,
) -> None:
    """Replace the root logger's handlers with a console and optional file handler.

    Args:
        level: Console logging level
        format_string: Custom console format (chosen from level if None)
        debug: Use the detailed format regardless of level
        log_file: Optional path to also write logs to
        file_level: Separate level for the log file (defaults to level)

    Example:
        >>> configure_logging(level=logging.INFO)
        >>> configure_logging(level=TRACE, log_file="/tmp/clawfleet.log")
    """
    file_level = level if file_level is None else file_level

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.setLevel(min(level, file_level) if log_file else level)

    _attach(root, logging.StreamHandler(), level, format_string or _format_for(level, debug))

    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        _attach(root, logging.FileHandler(path), file_level, _format_for(file_level, True))


def redact(text: str, secrets: Iterable[str | None] = ()) -> str:
    """Mask secrets in text destined for a log line.

    Every literal secret is replaced, and so is the value following any
    ``--token`` or ``--password`` argument and any ``token=`` query
    parameter, whether or not the value is known.

    Example:
        >>> redact('openclaw devices list --token "abc123"')
        'openclaw devices list --token ***'
        >>> redact("login hunter2 ok", ["hunter2"])
        'login *** ok'
    """
    if not text:
        return text
    for secret in secrets:
        if secret and len(secret) >= 3:
            text = text.replace(secret, MASK)
    text = _SECRET_ARG_RE.sub(lambda m: m.group(1) + MASK, text)
    return _SECRET_QUERY_RE.sub(lambda m: m.group(1) + MASK, text)


def _with_context(message: str, context: Mapping[str, Any]) -> str:
    if not context:
        return message
    return "{} ({})".format(message, ", ".join(f"{key}={value}" for key, value in context.items()))


@contextmanager
def log_performance(
    logger: logging.Logger,
    operation: str,
    level: int = logging.DEBUG,
    threshold: float | None = None,
    **context: Any,
) -> Iterator[None]:
    """Time the body of a with-block and log how long it took.

    The line is logged even when the body raises. With a threshold, only
    operations at least that many seconds long are logged.

    Example:
        >>> with log_performance(logger, "Remote command", command="status"):
        ...     await executor.run_named("status", target)
        DEBUG clawfleet.executor: Remote command completed in 0.812s (command=status)
    """
    started = time.monotonic()
    try:
        yield
    finally:
        elapsed = time.monotonic() - started
        if threshold is None or elapsed >= threshold:
            logger.log(level, _with_context(f"{operation} completed in {elapsed:.3f}s", context))


class StructuredLogger:
    """Logger that appends key=value context to every message.

    Attributes:
        logger: Underlying Python logger
        context: Default context added to all messages

    Example:
        >>> logger = StructuredLogger("clawfleet.reconcile", instance="prod")
        >>> logger.info("Gateway online", method="node-list")
        INFO clawfleet.reconcile: Gateway online (instance=prod, method=node-list)
    """

    def __init__(self, name: str, **context: Any) -> None:
        self.logger = logging.getLogger(name)
        self.context: dict[str, Any] = dict(context)

    def add_context(self, **context: Any) -> None:
        self.context.update(context)

    def remove_context(self, *keys: str) -> None:
        for key in keys:
            self.context.pop(key, None)

    def log(self, level: int, message: str, **extra: Any) -> None:
        if self.logger.isEnabledFor(level):
            self.logger.log(level, _with_context(message, {**self.context, **extra}), stacklevel=3)

    def trace(self, message: str, **extra: Any) -> None:
        self.log(TRACE, message, **extra)

    def debug(self, message: str, **extra: Any) -> None:
        self.log(logging.DEBUG, message, **extra)

    def info(self, message: str, **extra: Any) -> None:
        self.log(logging.INFO, message, **extra)

    def warning(self, message: str, **extra: Any) -> None:
        self.log(logging.WARNING, message, **extra)

    def error(self, message: str, **extra: Any) -> None:
        self.log(logging.ERROR, message, **extra)

    @contextmanager
    def performance(
        self,
        operation: str,
        level: int = logging.DEBUG,
        threshold: float | None = None,
        **context: Any,
    ) -> Iterator[None]:
        """Like log_performance(), with this logger's context merged in."""
        with log_performance(self.logger, operation, level, threshold, **{**self.context, **context}):
            yield


def get_logger(name: str, **context: Any) -> StructuredLogger:
    return StructuredLogger(name, **context)
