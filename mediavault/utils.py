import time
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Optional

from .errors import BadRequest

CHUNK_SIZE = 1024 * 1024

def safe_component(value: Optional[str], what: str) -> str:
    """Reject empty values and anything that could escape a per-user directory."""
    if not value or not value.strip():
        raise BadRequest(f"{what} is required")
    value = value.strip()
    if "/" in value or "\\" in value or value in (".", "..") or "\x00" in value:
        raise BadRequest(f"Invalid {what.lower()}")
    return value

def stage_stream(source: BinaryIO, target: Path) -> int:
    """Copies a stream to disk in chunks and returns the number of bytes written"""
    target.parent.mkdir(parents=True, exist_ok=True)
    written = 0
    with open(target, "wb") as buffer:
        while chunk := source.read(CHUNK_SIZE):
            buffer.write(chunk)
            written += len(chunk)
    return written

def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")

class RateLimiter:
    """Sliding-window request counter keyed by client address."""

    def __init__(self, calls: int, window: float):
        self.calls = calls
        self.window = window
        self.history = {}
        self.last_prune = 0.0

    def allow(self, key: str, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        if now - self.last_prune >= self.window:
            self.prune(now)
            self.last_prune = now
        recent = [t for t in self.history.get(key, []) if now - t < self.window]

        if len(recent) >= self.calls:
            self.history[key] = recent
            return False

        recent.append(now)
        self.history[key] = recent
        return True

    def prune(self, now: Optional[float] = None):
        """Forget clients with no request inside the window."""
        now = time.time() if now is None else now
        for key in [k for k, stamps in self.history.items() if not stamps or now - stamps[-1] >= self.window]:
            del self.history[key]

    def reset(self):
        self.history.clear()
        self.last_prune = 0.0
