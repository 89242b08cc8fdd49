"""Document hosts: where the text lives and where change notifications come from."""

from __future__ import annotations

from collections import deque
from collections.abc import Callable
from pathlib import Path
from typing import Protocol, runtime_checkable

from xtab.io.fileops import DocumentLock, backup, fingerprint, read_text_safe, write_text_atomic

# callback(text, seq): seq is the sequence number of our own write when the
# host can correlate the notification with it, else None.
ChangeCallback = Callable[[str, "int | None"], None]


@runtime_checkable
class DocumentStore(Protocol):
    """Whole-content replace writes in, full-text change notifications out."""

    correlates_writes: bool

    def get_text(self) -> str: ...

    def replace(self, text: str, seq: int) -> None: ...

    def subscribe(self, callback: ChangeCallback) -> None: ...


class MemoryDocument:
    """In-memory host. Notifications queue up until :meth:`deliver` runs them.

    With ``correlates_writes`` the echo of a write carries its sequence
    number; without it every notification is untagged, like an editor host
    that only reports "the text changed".
    """

    def __init__(self, text: str = "", *, correlates_writes: bool = True, echo: bool = True) -> None:
        self.text = text
        self.correlates_writes = correlates_writes
        self.echo = echo
        self.writes: list[tuple[str, int]] = []
        self._queue: deque[tuple[str, int | None]] = deque()
        self._subscribers: list[ChangeCallback] = []

    def get_text(self) -> str:
        return self.text

    def replace(self, text: str, seq: int) -> None:
        self.text = text
        self.writes.append((text, seq))
        if self.echo:
            self._queue.append((text, seq if self.correlates_writes else None))

    def subscribe(self, callback: ChangeCallback) -> None:
        self._subscribers.append(callback)

    def external_write(self, text: str) -> None:
        """Another actor replaces the document."""
        self.text = text
        self._queue.append((text, None))

    def notify(self, text: str, seq: int | None = None) -> None:
        """Queue an arbitrary notification (re-notification of unchanged text, reordering)."""
        self._queue.append((text, seq))

    @property
    def pending(self) -> int:
        return len(self._queue)

    def drop_pending(self) -> int:
        n = len(self._queue)
        self._queue.clear()
        return n

    def deliver(self, limit: int | None = None) -> int:
        """Deliver queued notifications in order. Returns how many ran."""
        count = 0
        while self._queue and (limit is None or count < limit):
            text, seq = self._queue.popleft()
            for callback in list(self._subscribers):
                callback(text, seq)
            count += 1
        return count


class FileDocument:
    """File-backed host.

    Writes are atomic under the sidecar lock. :meth:`poll` compares the file
    fingerprint with the last one seen and notifies with the full text; a
    change whose fingerprint matches one of our own writes is tagged with
    that write's sequence number.
    """

    correlates_writes = True

    def __init__(self, path: str | Path, *, lock_timeout: float = 0, make_backup: bool = False) -> None:
        self.path = Path(path).resolve()
        if not self.path.exists():
            raise FileNotFoundError(f"Document not found: {self.path}")
        self.lock_timeout = lock_timeout
        self.make_backup = make_backup
        self.backup_path: str | None = None
        self.last_fingerprint = fingerprint(self.path)
        self.write_count = 0
        self._own: dict[str, int] = {}
        self._subscribers: list[ChangeCallback] = []

    def get_text(self) -> str:
        return read_text_safe(self.path)

    def replace(self, text: str, seq: int) -> None:
        with DocumentLock(self.path, timeout=self.lock_timeout):
            if self.make_backup and self.backup_path is None:
                self.backup_path = backup(self.path)
            fp = write_text_atomic(self.path, text)
        self.write_count += 1
        self._own[fp] = seq

    def subscribe(self, callback: ChangeCallback) -> None:
        self._subscribers.append(callback)

    def poll(self) -> bool:
        """Notify subscribers if the file changed since the last poll."""
        if not self.path.exists():
            return False
        fp = fingerprint(self.path)
        if fp == self.last_fingerprint:
            return False
        self.last_fingerprint = fp
        text = self.get_text()
        seq = self._own.pop(fp, None)
        if seq is not None:
            # Writes older than the one observed were overwritten unseen.
            self._own = {k: s for k, s in self._own.items() if s > seq}
        for callback in list(self._subscribers):
            callback(text, seq)
        return True
