import json, os, pathlib, threading, time
from typing import Any, Dict, List

from .utils.config import SETTINGS

# Worker and loop threads both emit
_write_lock = threading.Lock()


def path() -> str:
    return str(os.environ.get("FRAMEFEED_EVENTS", SETTINGS.events_path))

def emit(kind: str, **kv) -> Dict[str, Any]:
    """Append one pipeline event as a JSON line."""
    p = pathlib.Path(path())
    line = {"ts": time.time(), "event": kind, **kv}
    with _write_lock:
        p.parent.mkdir(parents=True, exist_ok=True, mode=0o750)
        with open(p, "a") as f:
            f.write(json.dumps(line) + "\n")
    # Owner read/write only
    try:
        os.chmod(p, 0o600)
    except OSError:
        pass
    return line

def _tail_lines(p: pathlib.Path, limit: int, block: int = 8192) -> List[bytes]:
    # Read backwards until `limit` complete lines are in hand
    with open(p, "rb") as f:
        f.seek(0, os.SEEK_END)
        pos = f.tell()
        chunk = b""
        while pos > 0 and chunk.count(b"\n") <= limit:
            step = min(block, pos)
            pos -= step
            f.seek(pos)
            chunk = f.read(step) + chunk
    lines = chunk.splitlines()
    if pos > 0:
        # First line may be cut mid-way
        lines = lines[1:]
    return lines[-limit:]

def recent(limit: int = 20) -> List[Dict[str, Any]]:
    """Last `limit` events, oldest first. Unreadable lines are skipped."""
    p = pathlib.Path(path())
    if limit <= 0 or not p.exists():
        return []
    with _write_lock:
        lines = _tail_lines(p, limit)
    out = []
    for raw in lines:
        try:
            out.append(json.loads(raw))
        except (json.JSONDecodeError, UnicodeDecodeError):
            continue
    return out
