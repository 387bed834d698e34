import io
import logging

import pytest

from klinecache.utils import logs


@pytest.fixture
def restore_root_logging():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    # Drop records buffered by earlier tests so they are not replayed here
    logs.LOGGING_TEMP_HANDLER.sync_with_handlers([logging.NullHandler()])
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)


def test_logger_class_is_installed():
    log = logging.getLogger("klinecache.tests.logs")
    assert isinstance(log, logs.KlineCacheLoggingClass)
    assert logging.getLevelName(logs.TRACE_LEVEL) == "TRACE"
    assert logs.SORTED_LEVEL_NAMES[:3] == ["all", "trace", "debug"]


def test_cli_logging_wipes_progress_lines(restore_root_logging):
    stream = io.StringIO()
    handler = logs.setup_cli_logging("info", fmt="%(message)s", stream=stream)
    assert isinstance(handler, logs.ConsoleHandler)
    log = logging.getLogger("klinecache.tests.wipe")
    log.info("progress 1/3", wipe_line=True)
    log.info("progress 2/3", wipe_line=True)
    log.info("done")
    log.debug("hidden")
    assert stream.getvalue() == "progress 1/3\rprogress 2/3\ndone\n"


def test_trace_level(restore_root_logging):
    stream = io.StringIO()
    logs.setup_cli_logging("trace", fmt="%(levelname)s %(message)s", stream=stream)
    log = logging.getLogger("klinecache.tests.trace")
    log.trace("row=%d", 7)
    assert stream.getvalue() == "TRACE row=7\n"


def test_records_point_at_the_calling_code(restore_root_logging):
    stream = io.StringIO()
    logs.setup_cli_logging(
        "trace", fmt="%(filename)s:%(funcName)s %(levelname)s %(message)s", stream=stream
    )
    log = logging.getLogger("klinecache.tests.caller")
    log.info("plain")
    log.info("progress", wipe_line=True)
    log.trace("detail")
    log.warning("warned")
    lines = stream.getvalue().replace("\r", "\n").splitlines()
    assert lines == [
        "test_logs.py:test_records_point_at_the_calling_code INFO plain",
        "test_logs.py:test_records_point_at_the_calling_code INFO progress",
        "test_logs.py:test_records_point_at_the_calling_code TRACE detail",
        "test_logs.py:test_records_point_at_the_calling_code WARNING warned",
    ]


def test_unknown_level_defaults_to_warning(restore_root_logging):
    stream = io.StringIO()
    handler = logs.setup_cli_logging("chatty", stream=stream)
    assert handler.level == logging.WARNING


def test_logfile_logging(tmp_path, restore_root_logging):
    logs.setup_cli_logging("warning", stream=io.StringIO())
    logfile = tmp_path / "klinecache.log"
    handler = logs.setup_logfile_logging(str(logfile), "debug")
    logging.getLogger("klinecache.tests.file").debug("event=test value=%s", 1)
    handler.flush()
    contents = logfile.read_text()
    assert "event=test value=1" in contents
    assert "klinecache.tests.file" in contents
    assert logging.getLogger().level == logging.DEBUG


def test_temporary_handler_replays_buffered_records():
    temp = logs.TemporaryLoggingHandler(level=logging.WARNING)
    record = logging.LogRecord("x", logging.WARNING, __file__, 1, "early", None, None)
    temp.handle(record)

    stream = io.StringIO()
    target = logging.StreamHandler(stream)
    target.setFormatter(logging.Formatter("%(message)s"))
    temp.sync_with_handlers([temp, target])
    temp.sync_with_handlers([target])
    assert stream.getvalue() == "early\n"
