"""
Newline-delimited JSON progress/result stream.

Producers write one JSON object per line. Consumers must cope with a record
split across reads and with lines that are not valid JSON, so decoding is
buffered and skips anything it cannot parse.
"""

import codecs
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional, Union

from utils.logging import get_logger

logger = get_logger(__name__)


class EventType(Enum):
    """Kinds of records on the stream."""

    LOG = "log"
    ERROR = "error"
    RESULT = "result"


@dataclass(frozen=True)
class ScanEvent:
    """One record on the progress/result stream."""

    type: EventType
    message: Optional[str] = None
    data: Optional[Dict[str, Any]] = None

    @classmethod
    def log(cls, message: str) -> "ScanEvent":
        return cls(EventType.LOG, message=message)

    @classmethod
    def error(cls, message: str) -> "ScanEvent":
        return cls(EventType.ERROR, message=message)

    @classmethod
    def result(cls, data: Dict[str, Any]) -> "ScanEvent":
        return cls(EventType.RESULT, data=data)

    @property
    def is_terminal_result(self) -> bool:
        return self.type == EventType.RESULT

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the wire record."""
        if self.type == EventType.RESULT:
            return {"type": self.type.value, "data": self.data}
        return {"type": self.type.value, "message": self.message}

    def to_json_line(self) -> str:
        """Encode as a single NDJSON line, newline included."""
        return json.dumps(self.to_dict(), ensure_ascii=False, separators=(",", ":")) + "\n"


class NDJSONDecoder:
    """
    Incremental NDJSON decoder.

    Usage:
        decoder = NDJSONDecoder()
        for chunk in response.iter_bytes():
            for record in decoder.feed(chunk):
                handle(record)
        for record in decoder.flush():
            handle(record)
    """

    def __init__(self, encoding: str = "utf-8"):
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self.skipped = 0

    def feed(self, chunk: Union[str, bytes]) -> List[Dict[str, Any]]:
        """
        Add a chunk and return every record completed by it.

        Args:
            chunk: Raw text or bytes; may end mid-record or mid-character

        Returns:
            Parsed records, in stream order
        """
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)

        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        return self._parse_lines(lines)

    def flush(self) -> List[Dict[str, Any]]:
        """Parse whatever is left once the stream has ended."""
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        return self._parse_lines([tail])

    def _parse_lines(self, lines: List[str]) -> List[Dict[str, Any]]:
        records = []
        for line in lines:
            line = line.strip()
            if not line:
                continue

            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                self.skipped += 1
                logger.debug(f"Skipping malformed stream line: {line[:80]!r}")
                continue

            if not isinstance(record, dict):
                self.skipped += 1
                continue

            records.append(record)
        return records


def iter_ndjson(chunks: Iterable[Union[str, bytes]]) -> Iterator[Dict[str, Any]]:
    """
    Decode an NDJSON stream delivered in arbitrary chunks.

    Args:
        chunks: Text or byte chunks, split anywhere

    Yields:
        Each well-formed JSON object, in order
    """
    decoder = NDJSONDecoder()
    for chunk in chunks:
        yield from decoder.feed(chunk)
    yield from decoder.flush()
