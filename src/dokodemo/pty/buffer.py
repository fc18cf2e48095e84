"""Bounded output history for PTY sessions."""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable

from dokodemo.model import OutputKind, OutputLine

DEFAULT_LIMIT = 500


class HistoryBuffer:
    """Sliding window over the most recent output chunks of a session.

    Holds at most ``limit`` entries; appending past capacity drops the
    oldest entry and keeps the order of the rest.
    """

    def __init__(self, limit: int = DEFAULT_LIMIT) -> None:
        self._lines: deque[OutputLine] = deque(maxlen=limit)
        self._total_lines: int = 0  # Total entries ever added

    @property
    def limit(self) -> int:
        return self._lines.maxlen or 0

    def append(
        self, content: str, kind: OutputKind = OutputKind.STDOUT
    ) -> OutputLine:
        """Store a chunk and return the entry created for it."""
        line = OutputLine(content=content, kind=kind)
        self._lines.append(line)
        self._total_lines += 1
        return line

    def extend(self, lines: Iterable[OutputLine]) -> None:
        """Append existing entries (e.g. a restored transcript) in order."""
        for line in lines:
            self._lines.append(line)
            self._total_lines += 1

    def snapshot(self) -> list[OutputLine]:
        """Copy of the buffered entries, oldest first."""
        return list(self._lines)

    def tail(self, n: int = 100) -> list[OutputLine]:
        """The last ``n`` entries."""
        lines = list(self._lines)
        return lines[-n:] if len(lines) > n else lines

    @property
    def total_lines(self) -> int:
        return self._total_lines

    def clear(self) -> None:
        self._lines.clear()
        self._total_lines = 0

    def __len__(self) -> int:
        return len(self._lines)
