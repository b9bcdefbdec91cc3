from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional, Sequence

LINE = "line"
PERCENT = "percent"
FILENAME = "filename"
COMPLETE = "complete"
TIMEOUT = "timeout"

DEFAULT_EXTENSIONS = ("gguf", "safetensors", "tar.gz", "tgz", "zip", "dmg", "pkg")

_PERCENT_RE = re.compile(r"\b(\d{1,3})%(?!\w)")
_TERMINATORS = re.compile(rb"[\r\n]")


@dataclass(frozen=True)
class ProgressEvent:
    """A purely observational progress signal.

    kind is one of line|percent|filename|complete|timeout. Percent values are
    fractions in [0.0, 1.0].
    """

    kind: str
    value: object

    @classmethod
    def line(cls, text: str) -> "ProgressEvent":
        return cls(kind=LINE, value=text)


def _filename_re(extensions: Sequence[str]) -> re.Pattern[str]:
    # Longest first so "tar.gz" wins over "gz"-like prefixes.
    alts = "|".join(re.escape(e) for e in sorted(extensions, key=len, reverse=True))
    return re.compile(rf"([A-Za-z0-9._-]+\.(?:{alts}))(?![A-Za-z0-9])")


class OutputParser:
    """Incremental splitter for raw process output.

    Bytes go in via feed(); complete, trimmed, non-blank lines come out as
    soon as a terminator (\\n or \\r) is seen. The trailing partial line is
    held until more data arrives or finish() is called. Because blank lines
    are dropped, the emitted sequence does not depend on chunk boundaries.

    Every emitted line is scanned for a percentage and a filename token.
    Both are sticky: a line without a match leaves the previous value alone.
    """

    def __init__(self, *, extensions: Sequence[str] = DEFAULT_EXTENSIONS, encoding: str = "utf-8") -> None:
        self._buf = bytearray()
        self._encoding = encoding
        self._filename_re = _filename_re(extensions)
        self.progress: Optional[float] = None
        self.filename: Optional[str] = None

    def feed(self, chunk: bytes) -> List[str]:
        if not chunk:
            return []
        self._buf.extend(chunk)

        out: List[str] = []
        start = 0
        for m in _TERMINATORS.finditer(self._buf):
            self._emit(bytes(self._buf[start : m.start()]), out)
            start = m.end()
        del self._buf[:start]
        return out

    def finish(self) -> List[str]:
        out: List[str] = []
        if self._buf:
            self._emit(bytes(self._buf), out)
            self._buf.clear()
        return out

    def scan(self, line: str) -> List[ProgressEvent]:
        """Return the progress events found in one line, updating sticky state."""

        events: List[ProgressEvent] = []

        fm = self._filename_re.search(line)
        if fm:
            self.filename = fm.group(1)
            events.append(ProgressEvent(kind=FILENAME, value=self.filename))

        pm = _PERCENT_RE.search(line)
        if pm:
            pct = int(pm.group(1))
            self.progress = max(0.0, min(1.0, pct / 100.0))
            events.append(ProgressEvent(kind=PERCENT, value=self.progress))

        return events

    def _emit(self, raw: bytes, out: List[str]) -> None:
        line = raw.decode(self._encoding, errors="replace").strip()
        if not line:
            return
        self.scan(line)
        out.append(line)
