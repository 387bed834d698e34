"""
Logging helpers shared by every klinecache module.

The custom logger class accepts a ``wipe_line`` keyword so batch progress can
be rewritten in place on the console, and a ``TRACE`` level sits below
``DEBUG`` for per-candle diagnostics.
"""
from __future__ import annotations

import logging
import sys
from collections import deque
from logging import handlers
from typing import Any
from typing import Deque
from typing import Dict
from typing import Optional
from typing import Type

TRACE_LEVEL = 5
TRACE_LEVEL_NAME = "TRACE"

LOG_LEVELS = {
    "all": logging.NOTSET,
    "trace": TRACE_LEVEL,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}
SORTED_LEVEL_NAMES = [name for name, _ in sorted(LOG_LEVELS.items(), key=lambda x: x[1])]

# Store an instance of the current logging logger class
LOGGING_LOGGER_CLASS: Type[logging.Logger] = logging.getLoggerClass()


class TemporaryLoggingHandler(logging.NullHandler):
    """
    Buffers log records until the logging system is configured.

    Once configured, pass the handlers that should receive the early records
    to :func:`TemporaryLoggingHandler.sync_with_handlers`.
    """

    def __init__(self, level=logging.NOTSET, max_queue_size=10000):
        super().__init__(level=level)
        self.__messages: Deque[logging.LogRecord] = deque(maxlen=max_queue_size)

    def handle(self, record):
        self.acquire()
        try:
            self.__messages.append(record)
        finally:
            self.release()
        return True

    def sync_with_handlers(self, handlers=()):
        if not handlers:
            return

        while self.__messages:
            record = self.__messages.popleft()
            for handler in handlers:
                if handler is self or handler.level > record.levelno:
                    continue
                handler.handle(record)


LOGGING_TEMP_HANDLER = TemporaryLoggingHandler(logging.WARNING)


class ConsoleHandler(logging.StreamHandler):
    """
    Stream handler that honours ``wipe_line`` by rewriting the current line.
    """

    _previous_record_wiped: bool = False

    def format(self, record):
        msg = super().format(record)
        wipe_line = getattr(record, "wipe_line", False)
        previous_record_wiped = self._previous_record_wiped
        self._previous_record_wiped = wipe_line
        if wipe_line and previous_record_wiped:
            msg = f"\r{msg}"
        elif previous_record_wiped:
            msg = f"\n{msg}"
        return msg

    def emit(self, record):
        try:
            msg = self.format(record)
            if getattr(record, "wipe_line", False) is False:
                msg = f"{msg}{self.terminator}"
            self.stream.write(msg)
            self.flush()
        except RecursionError:
            raise
        except Exception:
            self.handleError(record)


class KlineCacheLoggingClass(LOGGING_LOGGER_CLASS):  # type: ignore[valid-type,misc]
    def _log(
        self,
        level,
        msg,
        args,
        exc_info=None,
        extra: Optional[Dict[Any, Any]] = None,
        stack_info: bool = False,
        stacklevel: int = 1,
        wipe_line: bool = False,
    ):
        extra = dict(extra) if extra else {}
        extra["wipe_line"] = wipe_line

        super()._log(
            level,
            msg,
            args,
            exc_info=exc_info,
            extra=extra,
            stack_info=stack_info,
            stacklevel=stacklevel + 1,
        )

    def trace(self, msg, *args, **kwargs):
        if self.isEnabledFor(TRACE_LEVEL):
            kwargs["stacklevel"] = kwargs.get("stacklevel", 1) + 1
            self._log(TRACE_LEVEL, msg, args, **kwargs)

    def makeRecord(
        self,
        name,
        level,
        fn,
        lno,
        msg,
        args,
        exc_info,
        func=None,
        extra=None,
        sinfo=None,
    ):
        wipe_line = False
        if extra:
            wipe_line = extra.pop("wipe_line", False)
        if not extra:
            extra = None

        logrecord = super().makeRecord(
            name, level, fn, lno, msg, args, exc_info, func=func, extra=extra, sinfo=sinfo
        )
        logrecord.wipe_line = wipe_line
        return logrecord


def _ensure_trace_level() -> None:
    if logging.getLevelName(TRACE_LEVEL) != TRACE_LEVEL_NAME:
        logging.addLevelName(TRACE_LEVEL, TRACE_LEVEL_NAME)


def set_logger_class() -> None:
    """
    Override python's logging logger class. This should be called as soon as possible
    """
    _ensure_trace_level()
    if logging.getLoggerClass() is not KlineCacheLoggingClass:
        logging.setLoggerClass(KlineCacheLoggingClass)
        logging.root.addHandler(LOGGING_TEMP_HANDLER)


def reset_logging_handlers() -> None:
    """
    Remove any logging handlers attached to python's root logger
    """
    for handler in list(logging.root.handlers):
        logging.root.removeHandler(handler)


def _level_for(log_level: str) -> int:
    level = LOG_LEVELS.get(log_level)
    if level is None:
        return logging.WARNING
    return level


def setup_cli_logging(
    log_level: str, fmt: Optional[str] = None, datefmt: Optional[str] = None, stream=None
) -> logging.Handler:
    """
    Setup console logging.

    Should be called before ``setup_logfile_logging``.
    """
    if fmt is None:
        fmt = "[%(asctime)s][%(levelname)-7s] - %(message)s"
    if datefmt is None:
        datefmt = "%H:%M:%S"

    reset_logging_handlers()

    level = _level_for(log_level)
    handler = ConsoleHandler(stream=stream or sys.stderr)
    handler.setLevel(level=level)
    handler.setFormatter(logging.Formatter(fmt=fmt, datefmt=datefmt))
    logging.root.addHandler(handler)
    logging.root.setLevel(level)

    LOGGING_TEMP_HANDLER.sync_with_handlers(logging.root.handlers)
    return handler


def setup_logfile_logging(
    logfile, log_level: str, fmt: Optional[str] = None, datefmt: Optional[str] = None
) -> logging.Handler:
    """
    Setup log file logging.

    Should be called after ``setup_cli_logging``.
    """
    if fmt is None:
        fmt = "%(asctime)s,%(msecs)03d [%(name)-24s:%(lineno)-4d][%(levelname)-7s] %(message)s"
    if datefmt is None:
        datefmt = "%Y-%m-%d %H:%M:%S"
    level = _level_for(log_level)
    handler = handlers.WatchedFileHandler(logfile, mode="a", encoding="utf-8", delay=False)
    handler.setLevel(level=level)
    handler.setFormatter(logging.Formatter(fmt=fmt, datefmt=datefmt))
    logging.root.addHandler(handler)
    if logging.root.level > level:
        logging.root.setLevel(level)
    return handler
