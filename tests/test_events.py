"""
Tests for the JSON-lines event log.
"""

import json
import os

import pytest

from framefeed import events


@pytest.fixture
def events_file(tmp_path, monkeypatch):
    path = tmp_path / "sub" / "framefeed.events"
    monkeypatch.setenv("FRAMEFEED_EVENTS", str(path))
    return path


def test_emit_appends_lines(events_file):
    line = events.emit("PIPELINE_STARTED", source="pattern")
    events.emit("PIPELINE_STOPPED")

    assert line["event"] == "PIPELINE_STARTED"
    assert line["source"] == "pattern"
    stored = [json.loads(raw) for raw in events_file.read_text().splitlines()]
    assert [e["event"] for e in stored] == ["PIPELINE_STARTED", "PIPELINE_STOPPED"]
    assert oct(os.stat(events_file).st_mode & 0o777) == oct(0o600)


def test_recent(events_file):
    assert events.recent() == []
    for n in range(5):
        events.emit("TICK", n=n)
    with open(events_file, "a") as f:
        f.write("not json\n")

    assert [e["n"] for e in events.recent(3)] == [3, 4]
    assert events.recent(0) == []


@pytest.mark.parametrize("block", [1, 7, 64, 8192])
def test_tail_reads_backwards_in_blocks(events_file, block):
    for n in range(200):
        events.emit("TICK", n=n)

    lines = events._tail_lines(events_file, 4, block=block)
    assert [json.loads(raw)["n"] for raw in lines] == [196, 197, 198, 199]


def test_recent_reads_only_the_tail(events_file, monkeypatch):
    for n in range(2000):
        events.emit("TICK", n=n)
    size = events_file.stat().st_size

    read_sizes = []

    class CountingReader:
        def __init__(self, f):
            self._f = f

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            self._f.close()

        def seek(self, *args):
            return self._f.seek(*args)

        def tell(self):
            return self._f.tell()

        def read(self, n=-1):
            data = self._f.read(n)
            read_sizes.append(len(data))
            return data

    monkeypatch.setattr(events, "open", lambda *a, **kw: CountingReader(open(*a, **kw)), raising=False)
    assert [e["n"] for e in events.recent(2)] == [1998, 1999]
    assert 0 < sum(read_sizes) < size
