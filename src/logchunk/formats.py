"""Format families, format detection, and per-format layout helpers.

Detection only ever looks at a bounded leading sample of the file. The
layout read here (CSV header, FIX delimiter, XML record tag, Avro
container header) is everything the planner and processor need to
locate record boundaries anywhere in the file.
"""

import json
import logging
import os
import re
from dataclasses import dataclass

from logchunk.errors import FormatDetectionError

logger = logging.getLogger(__name__)

FORMAT_JSONL = "jsonl"
FORMAT_TEXT = "text"
FORMAT_XML = "xml"
FORMAT_FIX = "fix"
FORMAT_CSV = "csv"
FORMAT_TSV = "tsv"
FORMAT_AVRO = "avro"

FORMATS = (
    FORMAT_JSONL, FORMAT_TEXT, FORMAT_XML, FORMAT_FIX,
    FORMAT_CSV, FORMAT_TSV, FORMAT_AVRO,
)
LINE_FORMATS = (FORMAT_JSONL, FORMAT_TEXT)
DELIMITED_FORMATS = (FORMAT_CSV, FORMAT_TSV)

SAMPLE_SIZE = 64 * 1024
AVRO_HEADER_LIMIT = 1024 * 1024
AVRO_MAGIC = b"Obj\x01"
AVRO_SYNC_SIZE = 16

EXTENSION_HINTS = {
    ".jsonl": FORMAT_JSONL,
    ".ndjson": FORMAT_JSONL,
    ".json": FORMAT_JSONL,
    ".log": FORMAT_TEXT,
    ".txt": FORMAT_TEXT,
    ".xml": FORMAT_XML,
    ".fix": FORMAT_FIX,
    ".csv": FORMAT_CSV,
    ".tsv": FORMAT_TSV,
    ".avro": FORMAT_AVRO,
}

_FIX_BEGIN = b"8=FIX"
_FIX_CHECKSUM_RE = re.compile(rb"10=(\d{3})$")
_XML_OPEN_TAG_RE = re.compile(rb"^[ \t]*<([A-Za-z_][\w.:-]*)", re.MULTILINE)


@dataclass(frozen=True)
class Layout:
    """Format-specific facts needed to find and decode records.

    header_size is the byte length of any leading header that is not a
    record (CSV header line, Avro container header).
    """

    format: str
    header: bytes = b""
    header_size: int = 0
    delimiter: bytes = b""
    record_tag: bytes = b""
    sync_marker: bytes = b""
    codec: str = ""
    schema: dict | None = None


# ---------------------------------------------------------------------------
# Sampling and detection
# ---------------------------------------------------------------------------

def read_sample(path: str, size: int = SAMPLE_SIZE) -> bytes:
    """Read at most ``size`` leading bytes of a file."""
    with open(path, "rb") as f:
        return f.read(size)


def is_binary_content(content: bytes) -> bool:
    """Detect binary content by NUL bytes or a high share of non-text bytes."""
    if not content:
        return False
    if b"\x00" in content:
        return True
    text_chars = set(range(32, 127)) | {9, 10, 13}
    non_text = sum(1 for byte in content if byte not in text_chars and byte < 128)
    return (non_text / len(content)) > 0.30


def _leading_lines(sample: bytes, limit: int = 20) -> list[bytes]:
    """Return up to ``limit`` complete, non-blank lines from the sample."""
    lines = sample.split(b"\n")
    if len(lines) > 1 and not sample.endswith(b"\n"):
        # Last line may be cut off by the sample size
        lines = lines[:-1]
    return [ln.rstrip(b"\r") for ln in lines if ln.strip()][:limit]


def _looks_like_jsonl(lines: list[bytes]) -> bool:
    if not lines:
        return False
    parsed = 0
    for line in lines:
        try:
            value = json.loads(line)
        except ValueError:
            return False
        if not isinstance(value, dict):
            return False
        parsed += 1
    return parsed > 0


def _looks_delimited(lines: list[bytes], delimiter: bytes) -> bool:
    """Every leading line has the same, non-zero count of ``delimiter``."""
    if len(lines) < 2:
        return False
    counts = {line.count(delimiter) for line in lines}
    return len(counts) == 1 and counts.pop() > 0


def detect_format(path: str, sample: bytes | None = None) -> str:
    """Detect the format family of a file from its leading sample.

    Raises FormatDetectionError for empty files and for binary content
    that is not a recognised container format.
    """
    if sample is None:
        sample = read_sample(path)
    if not sample:
        raise FormatDetectionError(path, "file is empty")

    if sample.startswith(AVRO_MAGIC):
        return FORMAT_AVRO
    if is_binary_content(sample[:8192]):
        raise FormatDetectionError(path, "binary content in an unknown container format")

    stripped = sample.lstrip()
    if stripped.startswith(_FIX_BEGIN):
        return FORMAT_FIX
    if stripped.startswith(b"<"):
        return FORMAT_XML

    lines = _leading_lines(sample)
    if _looks_like_jsonl(lines):
        return FORMAT_JSONL

    hint = EXTENSION_HINTS.get(os.path.splitext(path)[1].lower())
    tab = _looks_delimited(lines, b"\t")
    comma = _looks_delimited(lines, b",")
    if tab and (hint == FORMAT_TSV or not comma):
        return FORMAT_TSV
    if comma and hint != FORMAT_TEXT:
        return FORMAT_CSV

    head = sample[:8192]
    try:
        head.decode("utf-8")
    except UnicodeDecodeError as e:
        # A multi-byte sequence cut at the sample edge is fine
        if e.start < len(head) - 3:
            raise FormatDetectionError(path, "content is not valid UTF-8 text") from None
    return FORMAT_TEXT


# ---------------------------------------------------------------------------
# FIX helpers
# ---------------------------------------------------------------------------

def fix_delimiter(sample: bytes) -> bytes:
    """Return the field delimiter used by a FIX sample (SOH or '|')."""
    head = sample[:512]
    if b"\x01" in head:
        return b"\x01"
    if b"|" in head:
        return b"|"
    return b"\x01"


def fix_checksum(data: bytes) -> int:
    """FIX CheckSum(10): byte sum modulo 256 of everything before '10='."""
    return sum(data) % 256


def fix_message_valid(message: bytes, delimiter: bytes) -> bool:
    """Whether a complete FIX message ends with a correct CheckSum field.

    ``message`` runs from '8=' through the delimiter that closes '10=NNN'.
    Trailing line endings are ignored.
    """
    body = message.rstrip(b"\r\n")
    if not body.endswith(delimiter):
        return False
    body = body[:-len(delimiter)]
    cut = body.rfind(delimiter + b"10=")
    if cut < 0:
        return False
    match = _FIX_CHECKSUM_RE.match(body[cut + len(delimiter):])
    if not match:
        return False
    return fix_checksum(body[:cut + len(delimiter)]) == int(match.group(1))


def split_fix_fields(message: bytes, delimiter: bytes) -> list[tuple[str, str]]:
    """Split a FIX message into (tag, value) pairs, in order."""
    fields = []
    for part in message.rstrip(b"\r\n").split(delimiter):
        if not part:
            continue
        tag, sep, value = part.partition(b"=")
        if not sep:
            raise ValueError(f"malformed FIX field {part[:40]!r}")
        fields.append((tag.decode("ascii", "replace"), value.decode("utf-8", "replace")))
    return fields


# ---------------------------------------------------------------------------
# XML helpers
# ---------------------------------------------------------------------------

def xml_record_tag(sample: bytes) -> bytes:
    """Return the opening-tag prefix (e.g. b'<log4j:event') of an XML record.

    The record element is the most frequent element name that opens a
    line. The root wrapper and the prolog occur once and lose the vote.
    """
    counts: dict[bytes, int] = {}
    order: list[bytes] = []
    for match in _XML_OPEN_TAG_RE.finditer(sample):
        name = match.group(1)
        if name not in counts:
            counts[name] = 0
            order.append(name)
        counts[name] += 1
    if not counts:
        return b""
    best = max(order, key=lambda n: (counts[n], -order.index(n)))
    return b"<" + best


# ---------------------------------------------------------------------------
# Avro object container helpers
# ---------------------------------------------------------------------------

def read_avro_long(data: bytes, pos: int) -> tuple[int, int]:
    """Decode one zig-zag varint long. Returns (value, next position)."""
    shift = 0
    accum = 0
    while True:
        if pos >= len(data):
            raise ValueError("truncated varint")
        byte = data[pos]
        pos += 1
        accum |= (byte & 0x7F) << shift
        if not byte & 0x80:
            break
        shift += 7
        if shift > 63:
            raise ValueError("varint too long")
    return (accum >> 1) ^ -(accum & 1), pos


def _read_avro_bytes(data: bytes, pos: int) -> tuple[bytes, int]:
    length, pos = read_avro_long(data, pos)
    if length < 0 or pos + length > len(data):
        raise ValueError("truncated bytes field")
    return data[pos:pos + length], pos + length


def parse_avro_header(data: bytes) -> tuple[dict[str, bytes], bytes, int]:
    """Parse an Avro container header: (metadata, sync marker, header size)."""
    if not data.startswith(AVRO_MAGIC):
        raise ValueError("missing Avro magic")
    pos = len(AVRO_MAGIC)
    meta: dict[str, bytes] = {}
    while True:
        count, pos = read_avro_long(data, pos)
        if count == 0:
            break
        if count < 0:
            count = -count
            _, pos = read_avro_long(data, pos)
        for _ in range(count):
            key, pos = _read_avro_bytes(data, pos)
            value, pos = _read_avro_bytes(data, pos)
            meta[key.decode("utf-8")] = value
    sync = data[pos:pos + AVRO_SYNC_SIZE]
    if len(sync) != AVRO_SYNC_SIZE:
        raise ValueError("truncated sync marker")
    return meta, sync, pos + AVRO_SYNC_SIZE


# ---------------------------------------------------------------------------
# Layout
# ---------------------------------------------------------------------------

def read_layout(path: str, fmt: str) -> Layout:
    """Read the leading bytes of ``path`` and build its Layout."""
    if fmt not in FORMATS:
        raise ValueError(f"Unknown format {fmt!r}. Expected one of: {', '.join(FORMATS)}")

    if fmt == FORMAT_AVRO:
        data = read_sample(path, AVRO_HEADER_LIMIT)
        try:
            meta, sync, header_size = parse_avro_header(data)
        except ValueError as e:
            raise FormatDetectionError(path, f"unreadable Avro header: {e}") from e
        schema = None
        if "avro.schema" in meta:
            try:
                schema = json.loads(meta["avro.schema"])
            except ValueError:
                logger.warning("Avro schema in %s is not valid JSON", path)
        return Layout(
            format=fmt,
            header_size=header_size,
            sync_marker=sync,
            codec=meta.get("avro.codec", b"null").decode("utf-8", "replace"),
            schema=schema if isinstance(schema, dict) else None,
        )

    sample = read_sample(path)

    if fmt in DELIMITED_FORMATS:
        end = sample.find(b"\n")
        if end < 0:
            header = sample
        else:
            header = sample[:end + 1]
        return Layout(
            format=fmt,
            header=header,
            header_size=len(header),
            delimiter=b"\t" if fmt == FORMAT_TSV else b",",
        )

    if fmt == FORMAT_FIX:
        return Layout(format=fmt, delimiter=fix_delimiter(sample))

    if fmt == FORMAT_XML:
        tag = xml_record_tag(sample)
        if not tag:
            raise FormatDetectionError(path, "no XML record element found in sample")
        return Layout(format=fmt, record_tag=tag)

    return Layout(format=fmt)
