"""Record-boundary finders for each format family.

A boundary is a byte offset at which a record starts, so a chunk may
begin there without splitting a logical unit. Every finder scans raw
bytes in bounded blocks; callers never hold more than one block (plus
one partial record) in memory.
"""

import logging

from logchunk.formats import (
    FORMAT_AVRO,
    FORMAT_CSV,
    FORMAT_FIX,
    FORMAT_JSONL,
    FORMAT_TEXT,
    FORMAT_TSV,
    FORMAT_XML,
    Layout,
    fix_message_valid,
    read_avro_long,
)

logger = logging.getLogger(__name__)

SCAN_BLOCK_SIZE = 1024 * 1024
SEARCH_WINDOW = 4 * 1024 * 1024


class BoundaryFinder:
    """Newline-aligned boundaries for line-delimited formats.

    ``context`` is how many bytes before a candidate offset the scan needs
    to see; ``lookahead`` is how many bytes after it.
    """

    strategy = "newline"
    context = 1
    lookahead = 0

    def __init__(self, layout: Layout):
        self.layout = layout

    @property
    def floor(self) -> int:
        """Boundaries must lie strictly after this offset."""
        return self.layout.header_size

    def starts_at_zero(self, f) -> bool:
        """Whether the first byte of the file starts a record."""
        return True

    def scan(self, buf: bytes, base: int):
        """Yield absolute record-start offsets inside buf, ascending.

        ``base`` is the absolute offset of buf[0]. Offsets needing context
        outside buf are not reported.
        """
        pos = buf.find(b"\n")
        while pos >= 0:
            yield base + pos + 1
            pos = buf.find(b"\n", pos + 1)

    def accept(self, f, offset: int) -> bool:
        """Extra validation for a candidate boundary (may read the file)."""
        return True


class CsvBoundaryFinder(BoundaryFinder):
    """Newline-aligned boundaries that never fall inside the header row."""

    strategy = "csv-row"

    def starts_at_zero(self, f) -> bool:
        return False


class XmlBoundaryFinder(BoundaryFinder):
    """Line starts where the record element (e.g. <event) opens."""

    strategy = "xml-record"

    def __init__(self, layout: Layout):
        super().__init__(layout)
        self.tag = layout.record_tag
        self.lookahead = len(self.tag) + 64

    def _opens_record(self, buf: bytes, pos: int) -> bool:
        line = buf[pos:pos + self.lookahead].lstrip(b" \t")
        if not line.startswith(self.tag):
            return False
        after = line[len(self.tag):len(self.tag) + 1]
        return after in (b"", b" ", b"\t", b"\r", b"\n", b">", b"/")

    def starts_at_zero(self, f) -> bool:
        f.seek(0)
        return self._opens_record(f.read(self.lookahead), 0)

    def scan(self, buf: bytes, base: int):
        for offset in super().scan(buf, base):
            if self._opens_record(buf, offset - base):
                yield offset


class FixBoundaryFinder(BoundaryFinder):
    """BeginString (8=FIX) offsets whose preceding message checks out."""

    strategy = "fix-message"
    lookahead = 5

    def __init__(self, layout: Layout):
        super().__init__(layout)
        self.delimiter = layout.delimiter or b"\x01"

    def starts_at_zero(self, f) -> bool:
        f.seek(0)
        return f.read(5) == b"8=FIX"

    def scan(self, buf: bytes, base: int):
        pos = buf.find(b"8=FIX", 1)
        while pos >= 0:
            before = buf[pos - 1:pos]
            if before in (self.delimiter, b"\n"):
                yield base + pos
            pos = buf.find(b"8=FIX", pos + 1)

    def accept(self, f, offset: int) -> bool:
        """The message just before ``offset`` must end in a valid CheckSum."""
        lo = max(0, offset - SEARCH_WINDOW)
        f.seek(lo)
        window = f.read(offset - lo)
        start = -1
        for candidate in self.scan(window, 0):
            if candidate < len(window):
                start = candidate
        if start < 0:
            if window.startswith(b"8=FIX"):
                start = 0
            else:
                # Preceding message is longer than the search window
                tail = window.rstrip(b"\r\n")[-12:]
                return (self.delimiter + b"10=") in tail
        return fix_message_valid(window[start:], self.delimiter)


class AvroBoundaryFinder(BoundaryFinder):
    """Offsets immediately after a container sync marker."""

    strategy = "avro-sync"
    context = 16

    def __init__(self, layout: Layout):
        super().__init__(layout)
        self.sync = layout.sync_marker

    def starts_at_zero(self, f) -> bool:
        return False

    def scan(self, buf: bytes, base: int):
        pos = buf.find(self.sync)
        while pos >= 0:
            yield base + pos + len(self.sync)
            pos = buf.find(self.sync, pos + 1)


_FINDERS = {
    FORMAT_JSONL: BoundaryFinder,
    FORMAT_TEXT: BoundaryFinder,
    FORMAT_CSV: CsvBoundaryFinder,
    FORMAT_TSV: CsvBoundaryFinder,
    FORMAT_XML: XmlBoundaryFinder,
    FORMAT_FIX: FixBoundaryFinder,
    FORMAT_AVRO: AvroBoundaryFinder,
}


def finder_for(layout: Layout) -> BoundaryFinder:
    return _FINDERS[layout.format](layout)


# ---------------------------------------------------------------------------
# Searching
# ---------------------------------------------------------------------------

def _read_at(f, lo: int, hi: int) -> bytes:
    f.seek(lo)
    return f.read(hi - lo)


def find_forward(f, finder: BoundaryFinder, start: int, total: int,
                 block_size: int = SCAN_BLOCK_SIZE) -> int | None:
    """Smallest accepted boundary >= start (and past the floor), or None."""
    pos = max(start, finder.floor + 1)
    while pos < total:
        hi = min(total, pos + block_size)
        buf_lo = max(0, pos - finder.context)
        buf = _read_at(f, buf_lo, min(total, hi + finder.lookahead))
        for offset in finder.scan(buf, buf_lo):
            if offset < pos:
                continue
            if offset >= hi:
                break
            if finder.accept(f, offset):
                return offset
        pos = hi
    return None


def find_backward(f, finder: BoundaryFinder, start: int, lower: int,
                  window: int = SEARCH_WINDOW) -> int | None:
    """Largest accepted boundary in [max(lower, start - window), start), or None."""
    lo = max(lower, finder.floor + 1, start - window)
    if lo >= start:
        return None
    buf_lo = max(0, lo - finder.context)
    buf = _read_at(f, buf_lo, start + finder.lookahead)
    candidates = [o for o in finder.scan(buf, buf_lo) if lo <= o < start]
    for offset in reversed(candidates):
        if finder.accept(f, offset):
            return offset
    return None


def nearest_boundary(f, finder: BoundaryFinder, provisional: int,
                     previous: int, total: int) -> int | None:
    """Snap a provisional offset to a legal boundary.

    The first boundary at or after ``provisional`` wins; the last one
    before it is used only when nothing follows before EOF. The result
    lies strictly between ``previous`` and ``total``.
    """
    forward = find_forward(f, finder, provisional, total)
    if forward is not None and forward < total:
        return forward
    return find_backward(f, finder, provisional, previous + 1)


# ---------------------------------------------------------------------------
# Counting and splitting
# ---------------------------------------------------------------------------

def count_records(f, finder: BoundaryFinder, lo: int, hi: int,
                  block_size: int = SCAN_BLOCK_SIZE) -> int:
    """Number of records starting in [lo, hi)."""
    if lo >= hi:
        return 0
    if isinstance(finder, AvroBoundaryFinder):
        return count_avro_objects(f, finder.layout, lo, hi)

    count = 0
    if lo == 0 and finder.starts_at_zero(f):
        count += 1
    pos = lo
    while pos < hi:
        end = min(hi, pos + block_size)
        buf_lo = max(0, pos - finder.context)
        buf = _read_at(f, buf_lo, end + finder.lookahead)
        for offset in finder.scan(buf, buf_lo):
            if offset < pos or offset == 0:
                continue
            if offset >= end:
                break
            count += 1
        pos = end
    return count


def count_avro_objects(f, layout: Layout, lo: int, hi: int) -> int:
    """Sum the object counts of every block starting in [lo, hi)."""
    pos = max(lo, layout.header_size)
    total = 0
    while pos < hi:
        head = _read_at(f, pos, pos + 20)
        if not head:
            break
        try:
            count, used = read_avro_long(head, 0)
            size, used = read_avro_long(head, used)
        except ValueError:
            logger.warning("Unreadable Avro block header at byte %d", pos)
            break
        total += abs(count)
        pos += used + size + len(layout.sync_marker)
    return total


def iter_records(f, finder: BoundaryFinder, lo: int, hi: int,
                 block_size: int = SCAN_BLOCK_SIZE):
    """Yield (offset, raw bytes) for every record slice in [lo, hi).

    The first slice starts at ``lo`` whether or not ``lo`` is a record
    start; callers decide what to do with leading partial data.
    """
    f.seek(lo)
    buf = b""
    buf_base = lo
    start = lo
    pos = lo
    while pos < hi:
        data = f.read(min(block_size, hi - pos))
        if not data:
            break
        buf += data
        pos += len(data)
        limit = len(buf) if pos >= hi else len(buf) - finder.lookahead
        for offset in finder.scan(buf, buf_base):
            if offset <= start:
                continue
            if offset - buf_base > limit or offset >= hi:
                break
            yield start, buf[start - buf_base:offset - buf_base]
            start = offset
        buf = buf[start - buf_base:]
        buf_base = start
    if buf:
        yield start, buf
