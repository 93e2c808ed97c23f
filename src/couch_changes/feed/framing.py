"""Line framing for newline-delimited change feed bodies."""

from __future__ import annotations

import codecs
from typing import List, Optional, Union


class LineFramer:
    """Accumulates arbitrarily-chunked data and yields complete lines.

    The trailing fragment of each chunk (text after the last terminator) is kept
    until more data arrives or :meth:`flush` is called at end of stream.
    """

    def __init__(self, terminator: str = "\n", encoding: str = "utf-8") -> None:
        if not terminator:
            raise ValueError("terminator must be non-empty")
        self._terminator = terminator
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""

    @property
    def pending(self) -> str:
        return self._buffer

    def feed(self, chunk: Union[bytes, str]) -> List[str]:
        if isinstance(chunk, (bytes, bytearray)):
            text = self._decoder.decode(bytes(chunk))
        else:
            text = chunk
        if not text:
            return []
        self._buffer += text
        parts = self._buffer.split(self._terminator)
        self._buffer = parts.pop()
        return [self._strip_cr(part) for part in parts]

    def flush(self) -> Optional[str]:
        self._buffer += self._decoder.decode(b"", final=True)
        remaining, self._buffer = self._buffer, ""
        remaining = self._strip_cr(remaining)
        return remaining or None

    def _strip_cr(self, line: str) -> str:
        if self._terminator == "\n" and line.endswith("\r"):
            return line[:-1]
        return line


__all__ = ["LineFramer"]
