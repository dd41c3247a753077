"""Chunk Processor: stream one chunk and extract samples and patterns.

Reads exactly one ChunkSpec's byte range in bounded blocks, decodes each
record for the file's format family, and produces a ChunkResult:

- up to ``samples_per_entity`` sample records per entity type,
- one schema pattern per entity type (its dominant signature in this chunk),
- one transition pattern per observed state edge,
- attribute observations (field -> value type -> count).

A record at a chunk edge that cannot be reconstructed raises
BoundaryCorruptionError internally; the processor skips it and records
an anomaly instead of failing the chunk.
"""

import csv
import json
import logging
import re
import xml.etree.ElementTree as ET
from collections import Counter, OrderedDict

from logchunk.boundaries import finder_for, iter_records
from logchunk.errors import BoundaryCorruptionError
from logchunk.formats import (
    DELIMITED_FORMATS,
    FORMAT_AVRO,
    FORMAT_FIX,
    FORMAT_JSONL,
    FORMAT_TEXT,
    FORMAT_XML,
    Layout,
    fix_message_valid,
    read_avro_long,
    read_layout,
    split_fix_fields,
)
from logchunk.models import (
    ANOMALY_BOUNDARY_CORRUPTION,
    ANOMALY_CHECKSUM_MISMATCH,
    ANOMALY_PARSE_ERROR,
    KIND_SCHEMA,
    KIND_TRANSITION,
    Anomaly,
    ChunkResult,
    ChunkSpec,
    Pattern,
    Provenance,
)

logger = logging.getLogger(__name__)

READ_BUFFER_SIZE = 1024 * 1024
DEFAULT_SAMPLES_PER_ENTITY = 15
MAX_RECORD_ANOMALIES = 5
MAX_TRACKED_ENTITIES = 100_000
MAX_FIELDS_PER_ENTITY = 200

ENTITY_TYPE_FIELDS = ("type", "event", "eventType", "event_type", "msgType", "kind", "entity")
ENTITY_ID_FIELDS = (
    "id", "entityId", "entity_id", "orderId", "order_id",
    "requestId", "request_id", "sessionId", "session_id",
)
STATE_FIELDS = ("state", "status", "State", "Status")

# FIX tags: 35 MsgType, 11 ClOrdID, 37 OrderID, 39 OrdStatus
FIX_MSG_TYPE = "35"
FIX_ID_TAGS = ("37", "11")
FIX_STATE_TAG = "39"
FIX_ENVELOPE_TAGS = frozenset({"8", "9", "10"})

_TEXT_LINE_RE = re.compile(
    r"^(?P<timestamp>\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2}(?:[.,]\d+)?(?:Z|[+-]\d{2}:?\d{2})?)?"
    r"\s*(?P<level>TRACE|DEBUG|INFO|NOTICE|WARN|WARNING|ERROR|SEVERE|FATAL|CRITICAL)?"
    r"\s*(?:\[(?P<logger>[^\]]+)\])?"
    r"\s*[:-]?\s*(?P<message>.*)$"
)
_MASKS = [
    (re.compile(r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}\b"), "<uuid>"),
    (re.compile(r"\b0x[0-9a-fA-F]+\b"), "<hex>"),
    (re.compile(r"\"[^\"]*\"|'[^']*'"), "<str>"),
    (re.compile(r"\b\d+(?:\.\d+)?\b"), "<num>"),
]
_XML_PREFIX_RE = re.compile(r"(</?)[\w.-]+:")
_XML_ATTR_PREFIX_RE = re.compile(r"(\s)[\w.-]+:([\w.-]+=)")
_XML_XMLNS_RE = re.compile(r"\s+xmlns(?::[\w.-]+)?=(\"[^\"]*\"|'[^']*')")


class _ChecksumError(ValueError):
    """A FIX message whose CheckSum(10) is missing or wrong."""


# ---------------------------------------------------------------------------
# Value typing and signatures
# ---------------------------------------------------------------------------

def value_type(value) -> str:
    """Type name used in schema signatures."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, int):
        return "int"
    if isinstance(value, float):
        return "float"
    if isinstance(value, dict):
        return "object"
    if isinstance(value, list):
        return "list"
    return "str"


def infer_scalar_type(text: str) -> str:
    """Type name for a value that arrived as text (CSV cells, XML, FIX)."""
    text = text.strip()
    if not text:
        return "null"
    if text.lower() in ("true", "false"):
        return "bool"
    try:
        int(text)
    except ValueError:
        pass
    else:
        return "int"
    try:
        float(text)
    except ValueError:
        return "str"
    return "float"


def dict_signature(fields: dict, typer=value_type) -> tuple[str, ...]:
    return tuple(sorted(f"{name}:{typer(value)}" for name, value in fields.items()))


def mask_message(message: str) -> str:
    """Collapse variable parts of a log message into placeholders."""
    for pattern, placeholder in _MASKS:
        message = pattern.sub(placeholder, message)
    return message


def timestamp_shape(timestamp: str) -> str:
    return re.sub(r"\d", "d", timestamp)


def _first_present(fields: dict, names) -> str | None:
    for name in names:
        value = fields.get(name)
        if value not in (None, ""):
            return str(value)
    return None


class _Decoded:
    """One decoded record: entity type, flat fields, and schema signature."""

    __slots__ = ("entity", "fields", "signature", "entity_id", "state", "typer")

    def __init__(self, entity, fields, signature, entity_id=None, state=None,
                 typer=value_type):
        self.entity = entity
        self.fields = fields
        self.signature = signature
        self.entity_id = entity_id
        self.state = state
        self.typer = typer


# ---------------------------------------------------------------------------
# Per-format decoders
# ---------------------------------------------------------------------------

def _decode_mapping(fields: dict, default_entity: str, typer=value_type) -> _Decoded:
    entity = _first_present(fields, ENTITY_TYPE_FIELDS) or default_entity
    return _Decoded(
        entity=entity,
        fields=fields,
        signature=dict_signature(fields, typer),
        entity_id=_first_present(fields, ENTITY_ID_FIELDS),
        state=_first_present(fields, STATE_FIELDS),
        typer=typer,
    )


def decode_json_line(text: str) -> _Decoded:
    value = json.loads(text)
    if not isinstance(value, dict):
        raise ValueError(f"expected a JSON object, got {type(value).__name__}")
    return _decode_mapping(value, "record")


def decode_text_line(text: str) -> _Decoded:
    """Key a plain log line by level and logger; its signature is the message template."""
    match = _TEXT_LINE_RE.match(text)
    parts = {k: v for k, v in match.groupdict().items() if v}
    fields = dict(parts)
    fields["template"] = mask_message(parts.get("message", ""))
    entity = ":".join(parts[name] for name in ("level", "logger") if name in parts) or "LINE"
    signature = [fields["template"]]
    if "timestamp" in parts:
        signature.append("ts=" + timestamp_shape(parts["timestamp"]))
    return _Decoded(entity=entity, fields=fields, signature=tuple(signature))


def _strip_xml_namespaces(text: str) -> str:
    text = _XML_XMLNS_RE.sub("", text)
    text = _XML_PREFIX_RE.sub(r"\1", text)
    return _XML_ATTR_PREFIX_RE.sub(r"\1\2", text)


def _cut_xml_record(text: str, tag: str) -> str:
    """Trim anything after the record's own closing tag (e.g. a root close)."""
    close = re.search(rf"</{re.escape(tag)}\s*>", text)
    if close:
        return text[:close.end()]
    end = text.find("/>")
    return text[:end + 2] if end >= 0 else text


def decode_xml_record(text: str, record_tag: str) -> _Decoded:
    element = ET.fromstring(_strip_xml_namespaces(_cut_xml_record(text.strip(), record_tag)))
    fields: dict = dict(element.attrib)
    for child in element:
        value = (child.text or "").strip()
        if not value and child.attrib:
            fields[child.tag] = dict(child.attrib)
        else:
            fields[child.tag] = value
    return _decode_mapping(fields, element.tag, typer=_text_typer)


def _text_typer(value) -> str:
    if isinstance(value, dict):
        return "object"
    return infer_scalar_type(str(value))


def decode_delimited_row(text: str, header: list[str], delimiter: str) -> _Decoded:
    rows = list(csv.reader([text], delimiter=delimiter))
    if not rows:
        raise ValueError("empty row")
    row = rows[0]
    if len(row) != len(header):
        raise ValueError(f"expected {len(header)} columns, got {len(row)}")
    fields = dict(zip(header, row))
    return _decode_mapping(fields, "row", typer=_text_typer)


def decode_fix_message(data: bytes, delimiter: bytes) -> _Decoded:
    pairs = split_fix_fields(data, delimiter)
    if not pairs or pairs[0][0] != "8":
        raise ValueError("message does not start with BeginString (8)")
    fields = dict(pairs)
    msg_type = fields.get(FIX_MSG_TYPE, "?")
    tags = sorted({tag for tag, _ in pairs if tag not in FIX_ENVELOPE_TAGS}, key=_tag_order)
    entity_id = next((fields[t] for t in FIX_ID_TAGS if fields.get(t)), None)
    return _Decoded(
        entity=f"FIX:{msg_type}",
        fields=fields,
        signature=tuple(tags),
        entity_id=entity_id,
        state=fields.get(FIX_STATE_TAG) or None,
        typer=_text_typer,
    )


def _tag_order(tag: str):
    return (0, int(tag)) if tag.isdigit() else (1, tag)


# ---------------------------------------------------------------------------
# Per-chunk accumulation
# ---------------------------------------------------------------------------

class _ChunkState:
    """Bounded accumulators for one chunk."""

    def __init__(self, path: str, chunk: ChunkSpec, samples_per_entity: int):
        self.path = path
        self.chunk = chunk
        self.samples_per_entity = samples_per_entity
        self.samples: dict[str, list[dict]] = {}
        self.attributes: dict[str, dict[str, dict[str, int]]] = {}
        self.signatures: dict[str, Counter] = {}
        self.first_seen: dict[tuple[str, tuple], Provenance] = {}
        self.last_state: OrderedDict[tuple[str, str], str] = OrderedDict()
        self.transitions: dict[tuple[str, str, str], Provenance] = {}
        self.anomalies: list[Anomaly] = []
        self.record_anomalies: Counter = Counter()
        self.records = 0

    def provenance(self, offset: int, length: int, recno: int) -> Provenance:
        return Provenance(
            file=self.path,
            chunk_index=self.chunk.index,
            byte_range=(offset, offset + length),
            record_range=(recno, recno + 1),
        )

    def add(self, decoded: _Decoded, offset: int, length: int, recno: int,
            objects: int = 1) -> None:
        self.records += objects
        entity = decoded.entity

        counter = self.signatures.setdefault(entity, Counter())
        counter[decoded.signature] += 1
        if (entity, decoded.signature) not in self.first_seen:
            self.first_seen[(entity, decoded.signature)] = self.provenance(offset, length, recno)

        samples = self.samples.setdefault(entity, [])
        if len(samples) < self.samples_per_entity:
            samples.append(_json_safe(decoded.fields))

        attrs = self.attributes.setdefault(entity, {})
        for name, value in decoded.fields.items():
            if name not in attrs and len(attrs) >= MAX_FIELDS_PER_ENTITY:
                continue
            kind = decoded.typer(value)
            attrs.setdefault(name, {})
            attrs[name][kind] = attrs[name].get(kind, 0) + 1

        if decoded.entity_id is not None and decoded.state is not None:
            self._track_state(entity, decoded, offset, length, recno)

    def _track_state(self, entity, decoded, offset, length, recno) -> None:
        ident = (entity, decoded.entity_id)
        previous = self.last_state.pop(ident, None)
        self.last_state[ident] = decoded.state
        if len(self.last_state) > MAX_TRACKED_ENTITIES:
            self.last_state.popitem(last=False)
        if previous is None or previous == decoded.state:
            return
        edge = (entity, previous, decoded.state)
        if edge not in self.transitions:
            self.transitions[edge] = self.provenance(offset, length, recno)

    def anomaly(self, kind: str, message: str, key: str = "", **detail) -> None:
        """Record a per-record anomaly, capping how many are kept per kind."""
        self.record_anomalies[kind] += 1
        if self.record_anomalies[kind] > MAX_RECORD_ANOMALIES:
            return
        logger.warning("[chunk %d] %s: %s", self.chunk.index, kind, message)
        self.anomalies.append(Anomaly(
            kind=kind, key=key, chunk_index=self.chunk.index,
            message=message, detail=detail,
        ))

    def result(self) -> ChunkResult:
        for kind, count in self.record_anomalies.items():
            if count > MAX_RECORD_ANOMALIES:
                self.anomalies.append(Anomaly(
                    kind=kind, key="", chunk_index=self.chunk.index,
                    message=f"{count - MAX_RECORD_ANOMALIES} more {kind} occurrence(s) suppressed",
                    detail={"total": count},
                ))

        patterns = []
        for entity, counter in self.signatures.items():
            # Dominant signature; ties resolved by sort order for determinism
            signature = min(counter, key=lambda s: (-counter[s], s))
            patterns.append(Pattern(
                kind=KIND_SCHEMA,
                key=entity,
                signature=signature,
                provenance=self.first_seen[(entity, signature)],
                chunks=[self.chunk.index],
            ))
        for (entity, src, dst), prov in self.transitions.items():
            patterns.append(Pattern(
                kind=KIND_TRANSITION,
                key=f"{entity}:{src}->{dst}",
                signature=(src, dst),
                provenance=prov,
                chunks=[self.chunk.index],
            ))

        return ChunkResult(
            chunk=self.chunk.mark_analyzed(),
            samples=self.samples,
            patterns=patterns,
            attributes=self.attributes,
            anomalies=self.anomalies,
            records_seen=self.records,
        )


def _json_safe(fields: dict) -> dict:
    return json.loads(json.dumps(fields, default=str))


# ---------------------------------------------------------------------------
# Processor
# ---------------------------------------------------------------------------

class ChunkProcessor:
    """Streams chunks of one file, one at a time, in bounded memory."""

    def __init__(self, path: str, fmt: str, layout: Layout | None = None,
                 samples_per_entity: int = DEFAULT_SAMPLES_PER_ENTITY,
                 buffer_size: int = READ_BUFFER_SIZE):
        self.path = path
        self.format = fmt
        self.layout = layout or read_layout(path, fmt)
        self.samples_per_entity = samples_per_entity
        self.buffer_size = buffer_size
        self._header: list[str] = []
        if fmt in DELIMITED_FORMATS:
            header_text = self.layout.header.decode("utf-8", "replace").rstrip("\r\n")
            rows = list(csv.reader([header_text], delimiter=self._delimiter()))
            self._header = rows[0] if rows else []

    def _delimiter(self) -> str:
        return self.layout.delimiter.decode("ascii")

    def process(self, chunk: ChunkSpec, total_size: int | None = None) -> ChunkResult:
        """Read one chunk and return what it contains.

        ``total_size`` tells the processor whether this chunk ends at EOF;
        it defaults to the file's current size.
        """
        if total_size is None:
            with open(self.path, "rb") as f:
                f.seek(0, 2)
                total_size = f.tell()
        state = _ChunkState(self.path, chunk, self.samples_per_entity)
        at_eof = chunk.byte_range[1] >= total_size

        with open(self.path, "rb") as f:
            if self.format == FORMAT_AVRO:
                self._process_avro(f, chunk, state)
            else:
                self._process_records(f, chunk, state, at_eof)

        result = state.result()
        logger.info("[chunk %d] %d record(s), %d entity type(s), %d pattern(s), %d anomaly(ies)",
                    chunk.index, result.records_seen, len(result.samples),
                    len(result.patterns), len(result.anomalies))
        return result

    # -- delimited / line / message formats --------------------------------

    def _process_records(self, f, chunk: ChunkSpec, state: _ChunkState, at_eof: bool) -> None:
        finder = finder_for(self.layout)
        lo, hi = chunk.byte_range
        recno = chunk.record_range[0]
        slices = iter_records(f, finder, lo, hi, self.buffer_size)
        first = True
        pending = None
        for item in slices:
            if pending is not None:
                recno = self._handle(state, pending, recno, first=first, last=False, at_eof=at_eof)
                first = False
            pending = item
        if pending is not None:
            self._handle(state, pending, recno, first=first, last=True, at_eof=at_eof)

    def _handle(self, state, item, recno, first, last, at_eof) -> int:
        """Decode one raw slice; returns the record number of the next slice."""
        offset, raw = item
        if offset == 0 and not self._zero_is_record(raw):
            # CSV header or XML prolog/root open: not a record
            return recno
        edge = (first and state.chunk.index > 0) or (last and not at_eof)
        try:
            decoded = self._decode_checked(state.chunk, offset, raw, edge, last and not at_eof)
        except BoundaryCorruptionError as e:
            state.anomaly(ANOMALY_BOUNDARY_CORRUPTION, e.reason,
                          byte=e.offset, record=recno)
        except _ChecksumError as e:
            state.anomaly(ANOMALY_CHECKSUM_MISMATCH, str(e), byte=offset, record=recno)
        except (ValueError, ET.ParseError, csv.Error) as e:
            state.anomaly(ANOMALY_PARSE_ERROR, str(e), byte=offset, record=recno)
        else:
            if decoded is not None:
                state.add(decoded, offset, len(raw), recno)
        return recno + 1

    def _decode_checked(self, chunk: ChunkSpec, offset: int, raw: bytes,
                        edge: bool, must_terminate: bool) -> _Decoded | None:
        """Decode a slice, raising BoundaryCorruptionError for broken edge records."""
        if must_terminate:
            self._check_terminated(chunk, offset, raw)
        try:
            return self._decode(raw)
        except (ValueError, ET.ParseError, csv.Error) as e:
            if edge:
                raise BoundaryCorruptionError(
                    chunk.index, offset, f"edge record cannot be reconstructed: {e}"
                ) from e
            raise

    def _zero_is_record(self, raw: bytes) -> bool:
        if self.format in DELIMITED_FORMATS:
            return False
        if self.format == FORMAT_XML:
            return raw.lstrip().startswith(self.layout.record_tag)
        return True

    def _check_terminated(self, chunk: ChunkSpec, offset: int, raw: bytes) -> None:
        """A chunk that does not end at EOF must end on a complete record."""
        if self.format == FORMAT_FIX:
            ok = (self.layout.delimiter + b"10=") in raw.rstrip(b"\r\n")[-12:]
        else:
            ok = raw.endswith(b"\n")
        if not ok:
            raise BoundaryCorruptionError(chunk.index, offset,
                                          "last record is not terminated")

    def _decode(self, raw: bytes) -> _Decoded | None:
        if self.format == FORMAT_FIX:
            if not raw.startswith(b"8=FIX"):
                raise ValueError("record does not start with 8=FIX")
            if not fix_message_valid(raw, self.layout.delimiter):
                raise _ChecksumError("CheckSum(10) missing or does not match")
            return decode_fix_message(raw, self.layout.delimiter)

        text = raw.decode("utf-8", "replace").rstrip("\r\n")
        if not text.strip():
            return None
        if self.format == FORMAT_JSONL:
            return decode_json_line(text)
        if self.format == FORMAT_XML:
            tag = self.layout.record_tag.decode("utf-8")[1:]
            return decode_xml_record(text, tag)
        if self.format in DELIMITED_FORMATS:
            return decode_delimited_row(text, self._header, self._delimiter())
        if self.format == FORMAT_TEXT:
            return decode_text_line(text)
        raise ValueError(f"no decoder for format {self.format!r}")

    # -- block containers --------------------------------------------------

    def _process_avro(self, f, chunk: ChunkSpec, state: _ChunkState) -> None:
        layout = self.layout
        lo, hi = chunk.byte_range
        pos = max(lo, layout.header_size)
        recno = chunk.record_range[0]
        schema = layout.schema or {}
        entity = schema.get("name") or "avro"
        fields = schema.get("fields") or []
        signature = tuple(sorted(
            f"{fld.get('name')}:{_avro_type_name(fld.get('type'))}" for fld in fields
        )) + (f"codec={layout.codec}",)

        block = 0
        while pos < hi:
            f.seek(pos)
            head = f.read(20)
            try:
                count, used = read_avro_long(head, 0)
                size, used = read_avro_long(head, used)
                if count < 0 or size < 0:
                    raise ValueError("negative block header")
                end = pos + used + size
                f.seek(end)
                sync = f.read(len(layout.sync_marker))
                if sync != layout.sync_marker:
                    raise BoundaryCorruptionError(chunk.index, pos,
                                                  "block is not followed by the sync marker")
            except (ValueError, BoundaryCorruptionError) as e:
                reason = e.reason if isinstance(e, BoundaryCorruptionError) else str(e)
                state.anomaly(ANOMALY_BOUNDARY_CORRUPTION, reason, key=entity, byte=pos)
                # Block boundaries past this point cannot be trusted
                break
            decoded = _Decoded(
                entity=entity,
                fields={"block": block, "offset": pos, "objects": count,
                        "size": size, "codec": layout.codec},
                signature=signature,
            )
            # Records are counted per object, not per block
            state.add(decoded, pos, end + len(sync) - pos, recno, objects=count)
            recno += count
            block += 1
            pos = end + len(sync)


def _avro_type_name(avro_type) -> str:
    if isinstance(avro_type, str):
        return avro_type
    if isinstance(avro_type, list):
        return "|".join(_avro_type_name(t) for t in avro_type)
    if isinstance(avro_type, dict):
        return str(avro_type.get("type", "complex"))
    return "unknown"
