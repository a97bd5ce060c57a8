"""Append-only audit trail for admin actions."""

from __future__ import annotations

import io
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock

from ..config import settings


_WRITE_LOCK = Lock()
_LOGGER = logging.getLogger("researchhub.audit")


def _audit_root() -> Path:
    root = Path(settings.STORAGE_DIR) / "audit"
    root.mkdir(parents=True, exist_ok=True)
    return root


def _events_path() -> Path:
    return _audit_root() / "admin_events.jsonl"


def record_event(actor_id: int | None, action: str, target: str = "", details: dict | None = None) -> dict:
    """Write one audit event as a JSON line and log it."""
    payload = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "actor_id": actor_id,
        "action": action,
        "target": target,
        "details": details or {},
    }
    with _WRITE_LOCK:
        with _events_path().open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(payload, ensure_ascii=True, default=str) + "\n")
    _LOGGER.info("audit_event %s", json.dumps(payload, ensure_ascii=True, default=str))
    return payload


def _tail_lines(path: Path, count: int, chunk_size: int = 8192) -> list[str]:
    """Read the last `count` lines by seeking backwards from the end of the file."""
    with path.open("rb") as fh:
        pos = fh.seek(0, io.SEEK_END)
        data = b""
        while pos > 0 and data.count(b"\n") <= count:
            step = min(chunk_size, pos)
            pos -= step
            fh.seek(pos)
            data = fh.read(step) + data
    return data.decode("utf-8", errors="replace").splitlines()[-count:]


def recent_events(limit: int = 50) -> list[dict]:
    """Return the newest `limit` events, newest first."""
    path = _events_path()
    if limit <= 0 or not path.exists():
        return []
    with _WRITE_LOCK:
        lines = _tail_lines(path, limit)
    out = []
    for line in reversed(lines):
        if not line.strip():
            continue
        try:
            out.append(json.loads(line))
        except json.JSONDecodeError:
            _LOGGER.warning("skipping malformed audit line")
            continue
        if len(out) >= limit:
            break
    return out
