"""File operations for XML documents: fingerprint, backup, atomic write, locking."""

from __future__ import annotations

import hashlib
import os
import shutil
import tempfile
import time
from datetime import datetime, timezone
from io import TextIOWrapper
from pathlib import Path

import portalocker

LOCK_SUFFIX = ".xtab.lock"


def fingerprint_bytes(data: bytes) -> str:
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


def fingerprint_text(text: str) -> str:
    """Fingerprint of ``text`` as it is written to disk (UTF-8)."""
    return fingerprint_bytes(text.encode("utf-8"))


def fingerprint(path: str | Path) -> str:
    """Compute the SHA-256 fingerprint of a file."""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            h.update(chunk)
    return f"sha256:{h.hexdigest()}"


def backup(path: str | Path) -> str:
    """Create a timestamped backup next to the document. Returns backup path."""
    path = Path(path)
    ts = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
    backup_path = path.parent / f"{path.stem}.{ts}.bak{path.suffix}"
    shutil.copy2(path, backup_path)
    return str(backup_path)


def atomic_write(target: str | Path, data: bytes) -> None:
    """Write data to target atomically via temp file + rename."""
    target = Path(target)
    fd, tmp_path = tempfile.mkstemp(
        dir=target.parent, suffix=target.suffix, prefix=".xtab_tmp_"
    )
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        shutil.move(tmp_path, target)
    except Exception:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def write_text_atomic(target: str | Path, text: str) -> str:
    """Atomically write UTF-8 text. Returns the new fingerprint."""
    data = text.encode("utf-8")
    atomic_write(target, data)
    return fingerprint_bytes(data)


def lock_path_for(path: str | Path) -> Path:
    p = Path(path).resolve()
    return p.parent / (p.name + LOCK_SUFFIX)


class DocumentLock:
    """Exclusive sidecar lock held while a document is rewritten.

    The ``<file>.xtab.lock`` sidecar may outlive a crashed process; the OS
    drops the lock itself, so a stale sidecar is simply re-acquired.
    """

    def __init__(self, document_path: str | Path, *, timeout: float = 0) -> None:
        self.document_path = Path(document_path).resolve()
        self.timeout = timeout
        self._lock_path = lock_path_for(self.document_path)
        self._lock_file: TextIOWrapper | None = None

    @property
    def lock_path(self) -> Path:
        return self._lock_path

    def _acquire(self, lock_file: TextIOWrapper) -> None:
        if self.timeout <= 0:
            portalocker.lock(lock_file, portalocker.LOCK_EX | portalocker.LOCK_NB)
            return
        deadline = time.monotonic() + self.timeout
        interval = min(0.1, max(0.01, self.timeout / 20))
        while True:
            try:
                portalocker.lock(lock_file, portalocker.LOCK_EX | portalocker.LOCK_NB)
                return
            except portalocker.LockException:
                if time.monotonic() >= deadline:
                    raise
                time.sleep(interval)

    def __enter__(self) -> "DocumentLock":
        lock_file = open(self._lock_path, "a+")  # noqa: SIM115
        try:
            self._acquire(lock_file)
        except portalocker.LockException:
            lock_file.close()
            raise
        self._lock_file = lock_file
        self._lock_file.seek(0)
        self._lock_file.truncate()
        self._lock_file.write(f"pid={os.getpid()}\n")
        self._lock_file.write(f"time={datetime.now(timezone.utc).isoformat()}\n")
        self._lock_file.flush()
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        if self._lock_file is not None:
            try:
                portalocker.unlock(self._lock_file)
            finally:
                self._lock_file.close()
                self._lock_file = None


def read_text_safe(path: str | Path) -> str:
    """Read a text file, stripping a leading UTF-8 BOM when present."""
    return Path(path).read_text(encoding="utf-8-sig")
