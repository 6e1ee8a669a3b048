from __future__ import annotations

import re
from dataclasses import dataclass

from .errors import RangeNotSatisfiable

_BYTE_RANGE = re.compile(r"^\s*bytes\s*=\s*(\d+)\s*-\s*(\d*)\s*$", re.IGNORECASE)
_CONTENT_RANGE_TOTAL = re.compile(r"/\s*(\d+)\s*$")
_CONTENT_RANGE = re.compile(
    r"^\s*bytes\s+(\d+)\s*-\s*(\d+)\s*/\s*(\d+|\*)\s*$", re.IGNORECASE
)


@dataclass(frozen=True)
class RangeSpec:
    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    def header(self) -> str:
        """Value for an upstream ``Range`` request header."""
        return f"bytes={self.start}-{self.end}"

    def content_range(self, total_size: int) -> str:
        return f"bytes {self.start}-{self.end}/{total_size}"


def parse_range(range_header: str, total_size: int) -> RangeSpec:
    """Parse a single ``bytes=start-[end]`` range against ``total_size``.

    Out of bounds ranges are rejected, not clamped. Suffix ranges
    (``bytes=-N``) and multi-range requests are rejected too.

    Raises:
        RangeNotSatisfiable: the header is malformed or outside the resource.
    """
    match = _BYTE_RANGE.match(range_header)
    if match is None:
        msg = f"Unsupported range {range_header!r}"
        raise RangeNotSatisfiable(total_size, msg)

    start = int(match.group(1))
    end = int(match.group(2)) if match.group(2) else total_size - 1

    if start >= total_size or end >= total_size or start > end:
        msg = f"Range {start}-{end} outside of {total_size} bytes"
        raise RangeNotSatisfiable(total_size, msg)
    return RangeSpec(start=start, end=end)


def total_from_content_range(value: str | None) -> int | None:
    """Extract the complete length from a ``Content-Range`` header."""
    if not value:
        return None
    match = _CONTENT_RANGE_TOTAL.search(value)
    if match is None:
        return None
    return int(match.group(1))


def span_from_content_range(value: str | None) -> tuple[int, int] | None:
    """Extract the ``(start, end)`` byte span from a ``Content-Range`` header."""
    if not value:
        return None
    match = _CONTENT_RANGE.match(value)
    if match is None:
        return None
    return int(match.group(1)), int(match.group(2))
