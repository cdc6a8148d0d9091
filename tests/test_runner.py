import io
import logging
import sys

import pytest

from buildrunners.config import Config
from buildrunners.runner import (
    Loader,
    Runner,
    RunnerError,
    monitor_cmd,
    monitor_pipe,
)

LOGGER_NAME = "buildrunners.test"


def _records(caplog):
    return [(r.levelno, r.getMessage()) for r in caplog.records if r.name == LOGGER_NAME]


def test_monitor_pipe_logs_info_lines_and_closes(caplog):
    caplog.set_level(logging.DEBUG, logger=LOGGER_NAME)
    pipe = io.BytesIO(b"first\nsecond\r\nthird")
    monitor_pipe(logging.getLogger(LOGGER_NAME), logging.INFO, pipe)
    assert _records(caplog) == [
        (logging.INFO, "first"),
        (logging.INFO, "second"),
        (logging.INFO, "third"),
    ]
    assert pipe.closed


def test_monitor_pipe_logs_warning_lines(caplog):
    caplog.set_level(logging.DEBUG, logger=LOGGER_NAME)
    monitor_pipe(logging.getLogger(LOGGER_NAME), logging.WARNING, io.BytesIO(b"oops\n"))
    assert _records(caplog) == [(logging.WARNING, "oops")]


def test_monitor_pipe_ignores_other_levels(caplog):
    caplog.set_level(logging.DEBUG, logger=LOGGER_NAME)
    pipe = io.BytesIO(b"hidden\n")
    monitor_pipe(logging.getLogger(LOGGER_NAME), logging.ERROR, pipe)
    assert _records(caplog) == []
    assert pipe.closed


def test_monitor_cmd_routes_stdout_and_stderr(caplog):
    caplog.set_level(logging.DEBUG, logger=LOGGER_NAME)
    cfg = Config(logger=logging.getLogger(LOGGER_NAME))
    script = "import sys; print('out-line'); sys.stdout.flush(); sys.stderr.write('err-line\\n')"
    monitor_cmd(cfg, [sys.executable, "-c", script])
    records = _records(caplog)
    assert (logging.INFO, "out-line") in records
    assert (logging.WARNING, "err-line") in records
    assert len(records) == 2


def test_monitor_cmd_raises_on_failure():
    cfg = Config(logger=logging.getLogger(LOGGER_NAME))
    with pytest.raises(RunnerError, match="exit status 3"):
        monitor_cmd(cfg, [sys.executable, "-c", "import sys; sys.exit(3)"])


def test_interfaces_are_abstract():
    with pytest.raises(TypeError):
        Runner()
    with pytest.raises(TypeError):
        Loader()