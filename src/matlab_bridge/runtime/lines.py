"""Incremental text decoding and line splitting for subprocess streams."""

from __future__ import annotations

import codecs

__all__ = ["StreamDecoder", "LineSplitter"]


class StreamDecoder:
    """Decode a byte stream chunk by chunk.

    Multi-byte UTF-8 sequences split across reads are held back until the
    rest arrives; undecodable bytes are replaced.
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")

    def decode(self, data: bytes) -> str:
        return self._decoder.decode(data)

    def flush(self) -> str:
        return self._decoder.decode(b"", final=True)


class LineSplitter:
    """Turn arbitrary text chunks into complete lines.

    ``feed`` returns the lines completed by the chunk (without the line
    terminator); the unterminated tail is kept until more text arrives or
    ``flush`` is called.
    """

    def __init__(self) -> None:
        self._partial = ""

    def feed(self, text: str) -> list[str]:
        if not text:
            return []
        data = self._partial + text
        lines = data.split("\n")
        self._partial = lines.pop()
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> list[str]:
        if not self._partial:
            return []
        tail, self._partial = self._partial.rstrip("\r"), ""
        return [tail]

    def reset(self) -> None:
        self._partial = ""
