"""Cross-Chunk Validator: merge per-chunk findings for one file.

Owns the file's ChunkingPlan. Each processed chunk is compared with the
previously processed one; differences become anomalies rather than being
dropped, and every variant of a pattern is kept with its provenance.

A pattern is only *validated* once it has been seen in at least
``MIN_VALIDATION_CHUNKS`` distinct chunks. Until then it stays a
*candidate*. The same floor applies to the file as a whole: a file whose
analysis covered fewer chunks is never reported complete, even when it
was small enough to fit in one chunk, because a single chunk cannot
reveal drift inside the file.
"""

import logging

from logchunk.errors import CoverageShortfall
from logchunk.models import (
    ANOMALY_COVERAGE_SHORTFALL,
    ANOMALY_PATTERN_MISSING,
    ANOMALY_SCHEMA_DRIFT,
    ANOMALY_UNEXPECTED_TRANSITION,
    KIND_TRANSITION,
    STATUS_COMPLETE,
    STATUS_INCOMPLETE,
    STATUS_LOW_CONFIDENCE,
    Anomaly,
    ChunkingPlan,
    ChunkResult,
    Pattern,
)

logger = logging.getLogger(__name__)

MIN_VALIDATION_CHUNKS = 2

PATTERN_VALIDATED = "validated"
PATTERN_CANDIDATE = "candidate"

_SHORTFALL_PREFIX = "Coverage shortfall:"


class CrossChunkValidator:
    """Accumulates patterns and anomalies across the chunks of one file."""

    def __init__(self, plan: ChunkingPlan, min_chunks: int = MIN_VALIDATION_CHUNKS):
        self.plan = plan
        self.min_chunks = min_chunks
        self._first_index: int | None = None
        self._last_index: int | None = None
        # (kind, key) -> pattern as observed in the last recorded chunk
        self._last_seen: dict[tuple[str, str], Pattern] = {}
        self._restore()

    def _restore(self) -> None:
        """Rebuild comparison state from a (possibly reloaded) plan."""
        analyzed = [c.index for c in self.plan.chunks if c.analyzed]
        if not analyzed:
            return
        self._first_index = min(analyzed)
        self._last_index = max(analyzed)
        for pattern in self.plan.patterns.values():
            if self._last_index in pattern.chunks:
                self._last_seen[(pattern.kind, pattern.key)] = Pattern(
                    kind=pattern.kind,
                    key=pattern.key,
                    signature=pattern.signature,
                    provenance=pattern.last_seen or pattern.provenance,
                    chunks=[self._last_index],
                )

    def next_index(self) -> int | None:
        """Index of the lowest chunk not yet recorded, or None when all are."""
        for chunk in self.plan.chunks:
            if not chunk.analyzed:
                return chunk.index
        return None

    # ------------------------------------------------------------------
    # Accumulation
    # ------------------------------------------------------------------

    def record(self, result: ChunkResult) -> list[Anomaly]:
        """Merge one chunk's result. Returns the anomalies it produced.

        Chunks must be recorded in ascending index order, each exactly once.
        """
        index = result.chunk.index
        if index < 0 or index >= len(self.plan.chunks):
            raise ValueError(f"Chunk {index} is not part of the plan for {self.plan.file_path}")
        if self.plan.chunks[index].analyzed:
            raise ValueError(f"Chunk {index} of {self.plan.file_path} was already recorded")
        expected = self.next_index()
        if index != expected:
            raise ValueError(
                f"Chunk {index} recorded while chunk {expected} is pending; "
                "chunks must be processed in index order"
            )

        new_anomalies = list(result.anomalies)
        current: dict[tuple[str, str], Pattern] = {}

        for observed in result.patterns:
            merged = self._merge_pattern(observed, index)
            current[(observed.kind, observed.key)] = observed
            if observed.kind == KIND_TRANSITION:
                anomaly = self._check_transition(merged, observed, index)
                if anomaly:
                    new_anomalies.append(anomaly)

        if self._last_index is not None:
            new_anomalies.extend(self._compare(current, index))

        self._merge_attributes(result.attributes)
        self.plan.chunks[index] = self.plan.chunks[index].mark_analyzed()
        self.plan.anomalies.extend(new_anomalies)
        if self._first_index is None:
            self._first_index = index
        self._last_index = index
        self._last_seen = current
        self.plan.status = self.status()

        for anomaly in new_anomalies:
            logger.debug("%s", anomaly)
        logger.info("[chunk %d] recorded -- %s, %d new anomaly(ies)",
                    index, self.coverage_report(), len(new_anomalies))
        return new_anomalies

    def _merge_pattern(self, observed: Pattern, index: int) -> Pattern:
        existing = self.plan.patterns.get(observed.id)
        if existing is None:
            existing = Pattern(
                kind=observed.kind,
                key=observed.key,
                signature=observed.signature,
                provenance=observed.provenance,
                chunks=[],
            )
            self.plan.patterns[existing.id] = existing
        if index not in existing.chunks:
            existing.chunks.append(index)
        existing.last_seen = observed.provenance
        if len(existing.chunks) >= self.min_chunks:
            self.plan.patterns_validated.add(existing.id)
        return existing

    def _merge_attributes(self, attributes: dict[str, dict[str, dict[str, int]]]) -> None:
        for entity, fields in attributes.items():
            merged = self.plan.attributes.setdefault(entity, {})
            for name, types in fields.items():
                counts = merged.setdefault(name, {})
                for type_name, count in types.items():
                    counts[type_name] = counts.get(type_name, 0) + count

    def _check_transition(self, merged: Pattern, observed: Pattern,
                          index: int) -> Anomaly | None:
        """A transition first seen after the first processed chunk is unexpected."""
        if self._first_index is None or index == self._first_index:
            return None
        if merged.chunks != [index]:
            return None
        src, dst = observed.signature
        return Anomaly(
            kind=ANOMALY_UNEXPECTED_TRANSITION,
            key=observed.key,
            chunk_index=index,
            message=f"transition {src} -> {dst} not seen in earlier chunks",
            detail={"pattern": observed.id, "provenance": observed.provenance.to_dict()},
        )

    def _compare(self, current: dict[tuple[str, str], Pattern], index: int) -> list[Anomaly]:
        """Patterns of the previous chunk that vanished or changed in this one."""
        anomalies = []
        previous_index = self._last_index
        for (kind, key), before in self._last_seen.items():
            after = current.get((kind, key))
            if after is None:
                anomalies.append(Anomaly(
                    kind=ANOMALY_PATTERN_MISSING,
                    key=key,
                    chunk_index=index,
                    message=f"{kind} seen in chunk {previous_index}, absent in chunk {index}",
                    detail={
                        "pattern": before.id,
                        "patternKind": kind,
                        "previous": before.provenance.to_dict(),
                    },
                ))
            elif after.signature != before.signature:
                added = sorted(set(after.signature) - set(before.signature))
                removed = sorted(set(before.signature) - set(after.signature))
                anomalies.append(Anomaly(
                    kind=ANOMALY_SCHEMA_DRIFT,
                    key=key,
                    chunk_index=index,
                    message=(
                        f"signature changed since chunk {previous_index}"
                        f" (+{len(added)} / -{len(removed)})"
                    ),
                    detail={
                        "previous": {
                            "pattern": before.id,
                            "signature": list(before.signature),
                            "provenance": before.provenance.to_dict(),
                        },
                        "current": {
                            "pattern": after.id,
                            "signature": list(after.signature),
                            "provenance": after.provenance.to_dict(),
                        },
                        "added": added,
                        "removed": removed,
                    },
                ))
        return anomalies

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def pattern_status(self, pattern: Pattern) -> str:
        if pattern.id in self.plan.patterns_validated:
            return PATTERN_VALIDATED
        return PATTERN_CANDIDATE

    def validated(self) -> list[Pattern]:
        return [p for p in self.plan.patterns.values()
                if p.id in self.plan.patterns_validated]

    def candidates(self) -> list[Pattern]:
        return [p for p in self.plan.patterns.values()
                if p.id not in self.plan.patterns_validated]

    def coverage(self) -> float:
        return self.plan.coverage_fraction()

    def coverage_report(self) -> str:
        return self.plan.coverage_report()

    def meets_floor(self) -> bool:
        return self.plan.analyzed_chunks >= self.min_chunks

    def is_complete(self) -> bool:
        """Every chunk analyzed and at least the validation floor reached."""
        return (self.plan.total_chunks > 0
                and self.plan.analyzed_chunks == self.plan.total_chunks
                and self.meets_floor())

    def status(self) -> str:
        if not self.meets_floor():
            return STATUS_LOW_CONFIDENCE
        if not self.is_complete():
            return STATUS_INCOMPLETE
        return STATUS_COMPLETE

    def check_coverage(self) -> None:
        """Raise CoverageShortfall when below the validation floor."""
        if not self.meets_floor():
            raise CoverageShortfall(self.plan.analyzed_chunks,
                                    self.plan.total_chunks, self.min_chunks)

    # ------------------------------------------------------------------
    # Finalisation
    # ------------------------------------------------------------------

    def finalize(self, strict: bool = False) -> ChunkingPlan:
        """Settle status and limitations, and return the plan.

        Below the validation floor the plan is marked low-confidence and
        carries a coverage-shortfall anomaly. With ``strict=True`` the
        CoverageShortfall is raised instead.
        """
        plan = self.plan
        plan.anomalies = [a for a in plan.anomalies if a.kind != ANOMALY_COVERAGE_SHORTFALL]
        plan.limitations = [x for x in plan.limitations if not x.startswith(_SHORTFALL_PREFIX)]

        try:
            self.check_coverage()
        except CoverageShortfall as e:
            if strict:
                raise
            logger.warning("%s: %s -- results are low-confidence", plan.file_path, e)
            last = self._last_index if self._last_index is not None else 0
            plan.anomalies.append(Anomaly(
                kind=ANOMALY_COVERAGE_SHORTFALL,
                key="",
                chunk_index=last,
                message=str(e),
                detail={"analyzed": e.analyzed, "total": e.total, "floor": e.floor},
            ))
            if plan.total_chunks < self.min_chunks:
                reason = "file fits in fewer chunks than the floor; intra-file drift was not checked"
            else:
                reason = "analysis stopped before enough chunks were processed"
            plan.limitations.append(f"{_SHORTFALL_PREFIX} {e.analyzed}/{e.total} chunks; {reason}")

        plan.status = self.status()
        logger.info("%s: %s, %d validated / %d candidate pattern(s), %d anomaly(ies), status %s",
                    plan.file_path, self.coverage_report(), len(self.validated()),
                    len(self.candidates()), len(plan.anomalies), plan.status)
        return plan
