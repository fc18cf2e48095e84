"""Provider output filters — rewrite raw PTY output before it is stored.

Some assistant CLIs probe the terminal with status queries and block
until they get an answer. Nothing on the far side of the wire is a real
terminal that could reply in time, so the filter answers the query
itself by writing the response back into the same PTY and strips the
query from the transcript.
"""

from __future__ import annotations

import re
from typing import Callable, Protocol

from dokodemo.model import Provider

Responder = Callable[[str], None]

# Query -> reply. Cursor position is always reported as 1;1 since the
# real cursor lives in the remote terminal emulator.
_REPLIES: dict[str, str] = {
    "\x1b[6n": "\x1b[1;1R",  # cursor position report
    "\x1b[5n": "\x1b[0n",  # device status: OK
    "\x1b[c": "\x1b[?1;2c",  # primary device attributes: VT100 with AVO
    "\x1b[0c": "\x1b[?1;2c",
    "\x1b[>c": "\x1b[>0;0;0c",  # secondary device attributes
    "\x1b[>0c": "\x1b[>0;0;0c",
}

_QUERY_RE = re.compile(r"\x1b\[(?:6n|5n|>?0?c)")

# Every proper prefix of a query, so a query split across two reads can
# be held back and completed by the next chunk.
_PREFIXES: frozenset[str] = frozenset(
    query[:i] for query in _REPLIES for i in range(1, len(query))
)
_MAX_PREFIX = max(len(p) for p in _PREFIXES)


class OutputFilter(Protocol):
    def apply(self, chunk: str, respond: Responder) -> str:
        """Return the text to store/emit for ``chunk``."""
        ...

    def flush(self) -> str:
        """Return any text still held back (called when the process exits)."""
        ...


class PassthroughFilter:
    def apply(self, chunk: str, respond: Responder) -> str:
        return chunk

    def flush(self) -> str:
        return ""


class TerminalQueryResponder:
    """Answers terminal status queries embedded in the output stream.

    Recognized queries are removed from the returned text and their reply
    is passed to ``respond``. Anything else, including unknown escape
    sequences, passes through unchanged.
    """

    def __init__(self) -> None:
        self._pending = ""

    def apply(self, chunk: str, respond: Responder) -> str:
        text = self._pending + chunk
        self._pending = ""

        def _answer(match: re.Match[str]) -> str:
            respond(_REPLIES[match.group(0)])
            return ""

        text = _QUERY_RE.sub(_answer, text)

        for size in range(min(_MAX_PREFIX, len(text)), 0, -1):
            if text[-size:] in _PREFIXES:
                self._pending = text[-size:]
                return text[:-size]
        return text

    def flush(self) -> str:
        pending, self._pending = self._pending, ""
        return pending


def filter_for(provider: Provider | None) -> OutputFilter:
    """Build a fresh filter for one session of ``provider``."""
    if provider == Provider.CODEX:
        return TerminalQueryResponder()
    return PassthroughFilter()
