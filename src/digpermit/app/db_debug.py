"""Opt-in JSON-lines trace of permit store traffic.

Set ``DIGPERMIT_DB_DEBUG=1`` to enable. Records are appended to the file named
by ``DIGPERMIT_DB_DEBUG_LOG`` when it is set and writable, otherwise written to
stderr. Credentials are masked and signature or photo blobs are reduced to
their length.
"""

from __future__ import annotations

import json
import os
import sys
from datetime import datetime, timezone
from itertools import count
from pathlib import Path
from threading import Lock
from time import perf_counter


DEBUG_ENV = "DIGPERMIT_DB_DEBUG"
DEBUG_LOG_ENV = "DIGPERMIT_DB_DEBUG_LOG"

_SECRET_KEYS = frozenset({"api_key", "apikey", "authorization", "token", "secret"})
_BLOB_KEYS = frozenset({"data", "payload_json"})
_TRUTHY = frozenset({"1", "true", "yes", "on", "y"})
_sequence = count(1)
_lock = Lock()


def db_debug_enabled() -> bool:
    return os.getenv(DEBUG_ENV, "").strip().casefold() in _TRUTHY


def elapsed_ms(started_at: float) -> float:
    return round((perf_counter() - started_at) * 1000.0, 2)


def db_debug(event: str, **fields: object) -> None:
    if not db_debug_enabled():
        return
    # One lock around numbering and writing keeps lines whole and in order.
    with _lock:
        record = {
            "seq": next(_sequence),
            "ts": datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
            "event": str(event or "").strip() or "unknown",
            "data": _scrub(fields),
        }
        line = json.dumps(record, ensure_ascii=True, default=str)
        if not _append_to_log(line):
            _write_stderr(line)


def _append_to_log(line: str) -> bool:
    target = os.getenv(DEBUG_LOG_ENV, "").strip()
    if not target:
        return False
    destination = Path(target).expanduser()
    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
        with destination.open("a", encoding="utf-8") as handle:
            handle.write(f"{line}\n")
    except OSError:
        return False
    return True


def _write_stderr(line: str) -> None:
    try:
        sys.stderr.write(f"[digpermit-db] {line}\n")
        sys.stderr.flush()
    except (OSError, ValueError):
        return


def _scrub(value: object, key: str = "") -> object:
    if key in _SECRET_KEYS:
        return "<redacted>"
    if key in _BLOB_KEYS and isinstance(value, str):
        return f"<{len(value)} chars>"
    if isinstance(value, dict):
        return {str(name): _scrub(raw, str(name).strip().casefold()) for name, raw in value.items()}
    if isinstance(value, set):
        return [_scrub(entry) for entry in sorted(value, key=str)]
    if isinstance(value, (list, tuple)):
        return [_scrub(entry) for entry in value]
    return value
