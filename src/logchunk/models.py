"""Data model shared by the planner, processor, and validator.

A ChunkingPlan is the only persisted artifact. Its JSON form keeps the
camelCase field names used by downstream consumers (documentation and
test-generation agents) so that a plan written by one pass can be
reloaded to resume or audit it.
"""

import hashlib
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime

PLAN_VERSION = 1

STATUS_COMPLETE = "complete"
STATUS_INCOMPLETE = "incomplete"
STATUS_LOW_CONFIDENCE = "low-confidence"

KIND_SCHEMA = "schema"
KIND_TRANSITION = "transition"

ANOMALY_SCHEMA_DRIFT = "schema-drift"
ANOMALY_PATTERN_MISSING = "pattern-missing"
ANOMALY_UNEXPECTED_TRANSITION = "unexpected-transition"
ANOMALY_BOUNDARY_CORRUPTION = "boundary-corruption"
ANOMALY_CHECKSUM_MISMATCH = "checksum-mismatch"
ANOMALY_PARSE_ERROR = "parse-error"
ANOMALY_COVERAGE_SHORTFALL = "coverage-shortfall"


def _pair(value) -> tuple[int, int]:
    start, end = value
    return int(start), int(end)


@dataclass(frozen=True)
class ChunkSpec:
    """One delimiter-aligned slice of a file.

    Both ranges are half-open: byte_range covers [start, end) of the file,
    record_range covers 0-based record numbers [start, end).
    """

    index: int
    byte_range: tuple[int, int]
    record_range: tuple[int, int]
    record_count: int
    analyzed: bool = False

    @property
    def size(self) -> int:
        return self.byte_range[1] - self.byte_range[0]

    def mark_analyzed(self) -> "ChunkSpec":
        return replace(self, analyzed=True)

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "byteRange": list(self.byte_range),
            "recordRange": list(self.record_range),
            "recordCount": self.record_count,
            "analyzed": self.analyzed,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ChunkSpec":
        # Older plans used lineRange for line-delimited formats
        record_range = data.get("recordRange", data.get("lineRange"))
        return cls(
            index=int(data["index"]),
            byte_range=_pair(data["byteRange"]),
            record_range=_pair(record_range),
            record_count=int(data["recordCount"]),
            analyzed=bool(data.get("analyzed", False)),
        )


@dataclass(frozen=True)
class Provenance:
    """Where a pattern was first observed within one chunk."""

    file: str
    chunk_index: int
    byte_range: tuple[int, int]
    record_range: tuple[int, int]

    def to_dict(self) -> dict:
        return {
            "file": self.file,
            "chunk": self.chunk_index,
            "byteRange": list(self.byte_range),
            "recordRange": list(self.record_range),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Provenance":
        return cls(
            file=data["file"],
            chunk_index=int(data["chunk"]),
            byte_range=_pair(data["byteRange"]),
            record_range=_pair(data["recordRange"]),
        )


@dataclass
class Pattern:
    """A structural signature (schema or state transition) with provenance.

    ``chunks`` lists every chunk index the pattern was seen in. The
    processor emits patterns with a single entry; the validator merges
    observations of the same pattern across chunks. ``provenance`` is the
    first sighting, ``last_seen`` the most recent one.
    """

    kind: str
    key: str
    signature: tuple[str, ...]
    provenance: Provenance
    chunks: list[int] = field(default_factory=list)
    last_seen: Provenance | None = None

    @property
    def id(self) -> str:
        digest = hashlib.sha1("\x1f".join(self.signature).encode()).hexdigest()
        return f"{self.kind}:{self.key}:{digest[:10]}"

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "kind": self.kind,
            "key": self.key,
            "signature": list(self.signature),
            "provenance": self.provenance.to_dict(),
            "chunks": list(self.chunks),
        }
        if self.last_seen is not None:
            data["lastSeen"] = self.last_seen.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Pattern":
        last_seen = data.get("lastSeen")
        return cls(
            kind=data["kind"],
            key=data["key"],
            signature=tuple(data["signature"]),
            provenance=Provenance.from_dict(data["provenance"]),
            chunks=[int(c) for c in data.get("chunks", [])],
            last_seen=Provenance.from_dict(last_seen) if last_seen else None,
        )


@dataclass
class Anomaly:
    """A deviation detected within or between chunks."""

    kind: str
    key: str
    chunk_index: int
    message: str
    detail: dict = field(default_factory=dict)

    def __str__(self) -> str:
        key = f" {self.key}" if self.key else ""
        return f"[chunk {self.chunk_index}] {self.kind}{key}: {self.message}"

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "key": self.key,
            "chunk": self.chunk_index,
            "message": self.message,
            "detail": self.detail,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Anomaly":
        return cls(
            kind=data["kind"],
            key=data.get("key", ""),
            chunk_index=int(data["chunk"]),
            message=data.get("message", ""),
            detail=data.get("detail") or {},
        )


@dataclass
class ChunkResult:
    """Everything the processor extracted from one chunk."""

    chunk: ChunkSpec
    samples: dict[str, list[dict]] = field(default_factory=dict)
    patterns: list[Pattern] = field(default_factory=list)
    attributes: dict[str, dict[str, dict[str, int]]] = field(default_factory=dict)
    anomalies: list[Anomaly] = field(default_factory=list)
    records_seen: int = 0


@dataclass
class ChunkingPlan:
    """Chunk layout and accumulated validation state for one file."""

    file_path: str
    total_size: int
    format: str
    strategy: str
    target_chunk_size: int
    chunks: list[ChunkSpec] = field(default_factory=list)
    patterns_validated: set[str] = field(default_factory=set)
    anomalies: list[Anomaly] = field(default_factory=list)
    patterns: dict[str, Pattern] = field(default_factory=dict)
    # entity type -> field name -> value type -> count, summed over analyzed chunks
    attributes: dict[str, dict[str, dict[str, int]]] = field(default_factory=dict)
    limitations: list[str] = field(default_factory=list)
    header: str | None = None
    status: str = STATUS_INCOMPLETE
    created_at: str = field(
        default_factory=lambda: datetime.now(UTC).isoformat(timespec="seconds")
    )

    @property
    def anomalies_found(self) -> list[str]:
        return [str(a) for a in self.anomalies]

    @property
    def analyzed_chunks(self) -> int:
        return sum(1 for c in self.chunks if c.analyzed)

    @property
    def total_chunks(self) -> int:
        return len(self.chunks)

    def coverage_fraction(self) -> float:
        if not self.chunks:
            return 0.0
        return self.analyzed_chunks / self.total_chunks

    def coverage_report(self) -> str:
        """Human-readable coverage, e.g. '2/3 chunks analyzed (67%)'."""
        return (f"{self.analyzed_chunks}/{self.total_chunks} chunks analyzed "
                f"({self.coverage_fraction() * 100:.0f}%)")

    def to_dict(self) -> dict:
        return {
            "version": PLAN_VERSION,
            "file": self.file_path,
            "totalsize": self.total_size,
            "format": self.format,
            "chunkStrategy": self.strategy,
            "targetChunkSize": self.target_chunk_size,
            "header": self.header,
            "createdAt": self.created_at,
            "status": self.status,
            "coverage": {
                "analyzed": self.analyzed_chunks,
                "total": self.total_chunks,
                "fraction": round(self.coverage_fraction(), 4),
            },
            "chunks": [c.to_dict() for c in self.chunks],
            "patternsValidated": sorted(self.patterns_validated),
            "anomaliesFound": self.anomalies_found,
            "anomalies": [a.to_dict() for a in self.anomalies],
            "patterns": [p.to_dict() for p in self.patterns.values()],
            "attributes": self.attributes,
            "limitations": list(self.limitations),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ChunkingPlan":
        patterns = [Pattern.from_dict(p) for p in data.get("patterns", [])]
        return cls(
            file_path=data["file"],
            total_size=int(data["totalsize"]),
            format=data["format"],
            strategy=data["chunkStrategy"],
            target_chunk_size=int(data["targetChunkSize"]),
            chunks=[ChunkSpec.from_dict(c) for c in data.get("chunks", [])],
            patterns_validated=set(data.get("patternsValidated", [])),
            anomalies=[Anomaly.from_dict(a) for a in data.get("anomalies", [])],
            patterns={p.id: p for p in patterns},
            attributes=data.get("attributes") or {},
            limitations=list(data.get("limitations", [])),
            header=data.get("header"),
            status=data.get("status", STATUS_INCOMPLETE),
            created_at=data.get("createdAt", ""),
        )
