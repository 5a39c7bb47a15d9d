from __future__ import annotations

import json
import os
import re
import socket
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from risk_intel.errors import RunLockError


def _holder_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def lock_path_for(lock_dir: Path, organization_id: str) -> Path:
    safe = re.sub(r"[^A-Za-z0-9_.-]+", "_", str(organization_id or "")).strip("._") or "default"
    return lock_dir / f"scan-{safe}.lock"


@contextmanager
def acquire_run_lock(lock_path: Path, *, run_id: str, purpose: str) -> Iterator[dict[str, Any]]:
    """
    Non-blocking flock on `lock_path`, one holder per organization on this host.

    A `*.meta.json` sidecar records the holder so a refused caller can report it.
    The OS drops the lock if the holder dies.
    """
    try:
        import fcntl
    except ImportError as e:  # pragma: no cover
        raise RunLockError(f"fcntl not available: {e}") from e

    lock_path.parent.mkdir(parents=True, exist_ok=True)
    meta_path = lock_path.with_suffix(lock_path.suffix + ".meta.json")
    f = lock_path.open("a+", encoding="utf-8")
    try:
        try:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            try:
                meta = json.loads(meta_path.read_text(encoding="utf-8"))
            except (OSError, ValueError):
                meta = {}
            raise RunLockError(f"lock busy: {lock_path.name} holder={json.dumps(meta, ensure_ascii=False)}") from e

        meta = {
            "run_id": run_id,
            "purpose": purpose,
            "holder": _holder_id(),
            "acquired_at": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        }
        meta_path.write_text(json.dumps(meta, ensure_ascii=False, indent=2), encoding="utf-8")
        try:
            yield meta
        finally:
            fcntl.flock(f.fileno(), fcntl.LOCK_UN)
    finally:
        f.close()
