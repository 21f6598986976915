"""Capped ring buffer for diagnostic output of one tool server."""

from __future__ import annotations

from collections import deque
from typing import Deque, List

MAX_LOG_LINES = 500


class LogBuffer:
    def __init__(self, max_lines: int = MAX_LOG_LINES):
        self.max_lines = max_lines
        self._lines: Deque[str] = deque(maxlen=max_lines)

    def append(self, chunk: str) -> List[str]:
        """Split a chunk into non-blank lines and retain them.

        Returns the lines that were added, so callers can forward them.
        """
        lines = [line for line in chunk.splitlines() if line.strip()]
        self._lines.extend(lines)
        return lines

    def lines(self) -> List[str]:
        return list(self._lines)

    def clear(self) -> None:
        self._lines.clear()

    def __len__(self) -> int:
        return len(self._lines)
