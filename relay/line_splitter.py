"""Split a raw byte stream into decoded log lines."""

from config import MAX_LINE_BYTES


class LineSplitter:
    """
    Incremental line splitter for chunked process output.

    Bytes after the last newline are carried over to the next feed() call,
    but never more than `max_line_bytes` of them: a longer line is emitted
    truncated at that size and the rest of it, up to the next newline, is
    dropped. `truncated` counts how often that happened.

    There is no flush: a partial segment left when the stream ends is
    discarded, never emitted as a truncated line.
    """

    def __init__(self, encoding: str = "utf-8", max_line_bytes: int = MAX_LINE_BYTES) -> None:
        if max_line_bytes < 1:
            raise ValueError(f"max_line_bytes must be >= 1, got {max_line_bytes}")
        self._encoding = encoding
        self.max_line_bytes = max_line_bytes
        self._partial = bytearray()
        self._discarding = False
        self.truncated = 0

    @property
    def pending(self) -> bytes:
        """The carried partial segment (no terminator seen yet)."""
        return bytes(self._partial)

    def feed(self, chunk: bytes) -> list[str]:
        """Consume a chunk and return the complete, non-empty lines it finished."""
        lines: list[str] = []
        *complete, rest = chunk.split(b"\n")
        for segment in complete:
            self._extend(segment, lines)
            if self._discarding:
                # Head of this line was already emitted when it overflowed
                self._discarding = False
            else:
                self._emit(lines)
        self._extend(rest, lines)
        return lines

    def _extend(self, data: bytes, lines: list[str]) -> None:
        if self._discarding or not data:
            return
        room = self.max_line_bytes - len(self._partial)
        if len(data) <= room:
            self._partial += data
            return
        self._partial += data[:room]
        self._emit(lines)
        self.truncated += 1
        self._discarding = True

    def _emit(self, lines: list[str]) -> None:
        # strip() also drops the \r of CRLF-terminated lines
        line = self._partial.decode(self._encoding, errors="replace").strip()
        self._partial.clear()
        if line:
            lines.append(line)
