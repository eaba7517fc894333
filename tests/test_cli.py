"""
Tests for the framefeed command line.
"""

import asyncio
import logging
import threading
import time

import pytest

from framefeed.cli import build_parser, main, shutdown
from framefeed.cv.frame_buffer import FrameBuffer
from framefeed.core.logging_setup import setup_logger


class TestParser:

    def test_run_defaults(self):
        args = build_parser().parse_args(["run"])
        assert args.source == "camera"
        assert args.format is None
        assert args.size is None

    def test_run_options(self):
        args = build_parser().parse_args(
            ["run", "--source", "pattern", "--format", "argb", "--size", "640x480", "--port", "9000"]
        )
        assert args.source == "pattern"
        assert args.format == "ARGB32"
        assert args.size == (640, 480)
        assert args.port == 9000

    @pytest.mark.parametrize("argv", [
        ["run", "--format", "yuv420"],
        ["run", "--size", "640"],
        ["run", "--source", "scanner"],
        [],
    ])
    def test_invalid_arguments(self, argv):
        with pytest.raises(SystemExit):
            build_parser().parse_args(argv)


def test_formats_command(capsys):
    main(["formats"])
    out = capsys.readouterr().out.splitlines()
    assert [line.split() for line in out] == [["ARGB32", "big32"], ["BGRA32", "little32"]]


def test_verbose_flag():
    assert build_parser().parse_args(["run", "-v"]).verbose is True
    assert build_parser().parse_args(["run"]).verbose is False


def test_setup_logger_level_override():
    logger = setup_logger("DEBUG")
    assert logger.name == "framefeed"
    assert logger.level == logging.DEBUG
    assert logging.getLogger("aiohttp.access").level == logging.WARNING

    assert setup_logger("bogus").level == logging.INFO


class SlowStopper:
    """Stands in for a source or pipeline whose stop() joins a thread."""

    def __init__(self, name, calls):
        self.name = name
        self.calls = calls

    def stop(self):
        time.sleep(0.1)
        self.calls.append((self.name, threading.get_ident()))


class FakeRunner:

    def __init__(self, calls):
        self.calls = calls

    async def cleanup(self):
        self.calls.append(("runner", threading.get_ident()))


@pytest.mark.asyncio
async def test_shutdown_joins_off_the_loop_thread():
    calls = []
    ticks = []
    loop_thread = threading.get_ident()

    async def ticker():
        while True:
            ticks.append(time.monotonic())
            await asyncio.sleep(0.01)

    task = asyncio.ensure_future(ticker())
    try:
        await shutdown(SlowStopper("source", calls), SlowStopper("pipeline", calls), FrameBuffer(), FakeRunner(calls))
    finally:
        task.cancel()

    assert [name for name, _ in calls] == ["source", "pipeline", "runner"]
    assert calls[0][1] != loop_thread
    assert calls[1][1] != loop_thread
    assert calls[2][1] == loop_thread
    # The loop kept running while both stops blocked
    assert len(ticks) > 5
