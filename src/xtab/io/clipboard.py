"""Clipboard hosts. Reads are deferred (Future); writes complete synchronously."""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from typing import Protocol, runtime_checkable

import pyperclip

from xtab.contracts.common import XtabError


class ClipboardError(XtabError):
    """The system clipboard is not reachable."""

    code = "ERR_CLIPBOARD"


@runtime_checkable
class Clipboard(Protocol):
    def read_text(self) -> Future[str]: ...

    def write_text(self, text: str) -> None: ...


class MemoryClipboard:
    """Process-local clipboard.

    With ``deferred`` reads stay pending until :meth:`resolve` runs, which
    lets callers interleave other commands with an outstanding read.
    """

    def __init__(self, text: str = "", *, deferred: bool = False) -> None:
        self.text = text
        self.deferred = deferred
        self._pending: list[Future[str]] = []

    def read_text(self) -> Future[str]:
        fut: Future[str] = Future()
        if self.deferred:
            self._pending.append(fut)
        else:
            fut.set_result(self.text)
        return fut

    def write_text(self, text: str) -> None:
        self.text = text

    def resolve(self, text: str | None = None) -> int:
        """Complete every pending read with ``text`` (or the current text)."""
        pending, self._pending = self._pending, []
        for fut in pending:
            fut.set_result(self.text if text is None else text)
        return len(pending)


class SystemClipboard:
    """OS clipboard through pyperclip; reads run on a worker thread."""

    def __init__(self) -> None:
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="xtab-clipboard")

    @staticmethod
    def _paste() -> str:
        try:
            return pyperclip.paste() or ""
        except pyperclip.PyperclipException as e:
            raise ClipboardError(f"Clipboard unavailable: {e}") from e

    def read_text(self) -> Future[str]:
        return self._executor.submit(self._paste)

    def write_text(self, text: str) -> None:
        try:
            pyperclip.copy(text)
        except pyperclip.PyperclipException as e:
            raise ClipboardError(f"Clipboard unavailable: {e}") from e

    def close(self) -> None:
        self._executor.shutdown(wait=False)
