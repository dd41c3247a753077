"""Tests for logchunk.planner -- chunk boundaries and plan construction."""

import io

import pytest
from conftest import (
    make_avro_content,
    make_csv_content,
    make_fix_orders,
    make_jsonl_content,
    make_order_records,
    make_xml_content,
)

from logchunk.errors import FormatDetectionError
from logchunk.formats import Layout
from logchunk.models import ChunkingPlan, ChunkSpec
from logchunk.planner import (
    compute_boundaries,
    plan_chunks,
    plan_with_fallback,
    verify_plan,
)


def _write(tmp_path, name, content):
    path = tmp_path / name
    if isinstance(content, str):
        path.write_text(content)
    else:
        path.write_bytes(content)
    return str(path)


# ---------------------------------------------------------------------------
# Single-chunk files
# ---------------------------------------------------------------------------

class TestSingleChunk:
    def test_small_file_is_one_chunk(self, tmp_path):
        content = make_jsonl_content(make_order_records(10))
        path = _write(tmp_path, "orders.jsonl", content)
        plan = plan_chunks(path)
        assert plan.format == "jsonl"
        assert plan.strategy == "single"
        assert len(plan.chunks) == 1
        chunk = plan.chunks[0]
        assert chunk.byte_range == (0, len(content))
        assert chunk.record_range == (0, 10)
        assert chunk.record_count == 10
        assert not chunk.analyzed

    def test_file_at_limit_is_one_chunk(self, tmp_path):
        content = make_jsonl_content(make_order_records(10))
        path = _write(tmp_path, "orders.jsonl", content)
        plan = plan_chunks(path, single_chunk_limit=len(content), target_chunk_size=10)
        assert len(plan.chunks) == 1

    def test_csv_header_kept_on_plan(self, tmp_path):
        content = make_csv_content(["id", "state"], [[1, "open"], [2, "done"]])
        path = _write(tmp_path, "orders.csv", content)
        plan = plan_chunks(path)
        assert plan.header == "id,state"
        assert plan.chunks[0].record_count == 2


# ---------------------------------------------------------------------------
# Multi-chunk planning
# ---------------------------------------------------------------------------

class TestMultiChunk:
    def test_three_equal_chunks(self, tmp_path):
        content = make_jsonl_content(make_order_records(30))
        line = len(content) // 30
        path = _write(tmp_path, "orders.jsonl", content)
        plan = plan_chunks(path, target_chunk_size=10 * line, single_chunk_limit=10 * line)
        assert plan.strategy == "newline"
        assert [c.byte_range for c in plan.chunks] == [
            (0, 10 * line), (10 * line, 20 * line), (20 * line, 30 * line),
        ]
        assert [c.record_range for c in plan.chunks] == [(0, 10), (10, 20), (20, 30)]
        assert verify_plan(plan) == []

    def test_boundaries_snap_to_line_starts(self, tmp_path):
        records = [{"type": "log", "msg": "x" * (i % 37)} for i in range(200)]
        content = make_jsonl_content(records).encode()
        path = _write(tmp_path, "mixed.jsonl", content)
        plan = plan_chunks(path, target_chunk_size=1000, single_chunk_limit=1000)
        assert len(plan.chunks) > 3
        for chunk in plan.chunks[1:]:
            assert content[chunk.byte_range[0] - 1:chunk.byte_range[0]] == b"\n"
        assert sum(c.record_count for c in plan.chunks) == 200
        assert verify_plan(plan) == []

    def test_idempotent(self, tmp_path):
        records = [{"type": "log", "msg": "y" * (i % 53)} for i in range(300)]
        path = _write(tmp_path, "mixed.jsonl", make_jsonl_content(records))
        first = plan_chunks(path, target_chunk_size=2048, single_chunk_limit=2048)
        second = plan_chunks(path, target_chunk_size=2048, single_chunk_limit=2048)
        assert first.chunks == second.chunks

    def test_fix_boundary_moves_to_next_message(self, tmp_path):
        content = make_fix_orders(20).encode()
        size = len(content) // 20
        path = _write(tmp_path, "session.fix", content)
        # Naive boundary falls 3 bytes before message 5 starts
        target = 5 * size - 3
        plan = plan_chunks(path, target_chunk_size=target, single_chunk_limit=target)
        assert plan.format == "fix"
        assert plan.strategy == "fix-message"
        boundary = plan.chunks[1].byte_range[0]
        assert boundary == 5 * size
        assert content[boundary:boundary + 5] == b"8=FIX"

    def test_fix_straddling_message_stays_in_earlier_chunk(self, tmp_path):
        content = make_fix_orders(20).encode()
        size = len(content) // 20
        path = _write(tmp_path, "session.fix", content)
        # Naive boundary falls 3 bytes into message 5
        target = 5 * size + 3
        plan = plan_chunks(path, target_chunk_size=target, single_chunk_limit=target)
        boundary = plan.chunks[1].byte_range[0]
        assert boundary == 6 * size
        assert content[boundary:boundary + 5] == b"8=FIX"
        assert plan.chunks[0].record_count == 6
        assert verify_plan(plan) == []

    def test_fix_chunks_hold_whole_messages(self, tmp_path):
        content = make_fix_orders(40).encode()
        path = _write(tmp_path, "session.fix", content)
        plan = plan_chunks(path, target_chunk_size=700, single_chunk_limit=700)
        assert len(plan.chunks) > 1
        for chunk in plan.chunks:
            lo, hi = chunk.byte_range
            assert content[lo:lo + 5] == b"8=FIX"
            assert content[lo:hi].count(b"8=FIX") == chunk.record_count
        assert sum(c.record_count for c in plan.chunks) == 40
        assert verify_plan(plan) == []

    def test_csv_never_splits_row_or_header(self, tmp_path):
        rows = [[i, "open" if i % 3 else "done", "x" * (i % 11)] for i in range(150)]
        content = make_csv_content(["id", "state", "note"], rows).encode()
        path = _write(tmp_path, "orders.csv", content)
        plan = plan_chunks(path, target_chunk_size=400, single_chunk_limit=400)
        header_size = content.index(b"\n") + 1
        assert plan.strategy == "csv-row"
        for chunk in plan.chunks[1:]:
            lo = chunk.byte_range[0]
            assert lo > header_size
            assert content[lo - 1:lo] == b"\n"
        assert sum(c.record_count for c in plan.chunks) == 150

    def test_xml_boundaries_on_record_lines(self, tmp_path):
        records = [{"id": str(i), "type": "order", "msg": "m" * (i % 20)} for i in range(80)]
        content = make_xml_content(records).encode()
        path = _write(tmp_path, "events.xml", content)
        plan = plan_chunks(path, target_chunk_size=600, single_chunk_limit=600)
        assert plan.strategy == "xml-record"
        for chunk in plan.chunks[1:]:
            assert content[chunk.byte_range[0]:].lstrip().startswith(b"<event ")
        assert sum(c.record_count for c in plan.chunks) == 80

    def test_avro_boundaries_after_sync(self, tmp_path):
        blocks = [(i + 1, bytes([65 + i % 26]) * 50) for i in range(12)]
        content = make_avro_content(blocks)
        path = _write(tmp_path, "events.avro", content)
        plan = plan_chunks(path, target_chunk_size=200, single_chunk_limit=200)
        assert plan.strategy == "avro-sync"
        assert len(plan.chunks) > 1
        for chunk in plan.chunks[1:]:
            lo = chunk.byte_range[0]
            assert content[lo - 16:lo] == bytes(range(16))
        assert sum(c.record_count for c in plan.chunks) == sum(n for n, _ in blocks)
        assert verify_plan(plan) == []


class TestComputeBoundaries:
    def test_rejects_non_positive_target(self):
        with pytest.raises(ValueError, match="positive"):
            compute_boundaries(io.BytesIO(b"a\n"), Layout(format="text"), 2, 0)

    def test_single_long_record_runs_to_eof(self):
        data = b"x" * 100 + b"\n"
        boundaries = compute_boundaries(io.BytesIO(data), Layout(format="text"), len(data), 10)
        assert boundaries == [0, len(data)]


# ---------------------------------------------------------------------------
# Fallback policy
# ---------------------------------------------------------------------------

class TestPlanWithFallback:
    def test_undetectable_falls_back_to_text(self, tmp_path):
        path = _write(tmp_path, "blob.bin", bytes(range(32)) * 8 + b"\n")
        plan = plan_with_fallback(path)
        assert plan.format == "text"
        assert any("Format detection failed" in x for x in plan.limitations)

    def test_abort_raises(self, tmp_path):
        path = _write(tmp_path, "blob.bin", bytes(range(32)) * 8)
        with pytest.raises(FormatDetectionError):
            plan_with_fallback(path, fallback="abort")

    def test_empty_file_always_raises(self, tmp_path):
        path = _write(tmp_path, "empty.log", b"")
        with pytest.raises(FormatDetectionError, match="empty"):
            plan_with_fallback(path)

    def test_unknown_policy(self, tmp_path):
        path = _write(tmp_path, "a.log", "a\n")
        with pytest.raises(ValueError, match="fallback"):
            plan_with_fallback(path, fallback="retry")

    def test_explicit_format_skips_detection(self, tmp_path):
        path = _write(tmp_path, "orders.log", make_jsonl_content(make_order_records(4)))
        plan = plan_with_fallback(path, fmt="text")
        assert plan.format == "text"
        assert plan.limitations == []


# ---------------------------------------------------------------------------
# verify_plan
# ---------------------------------------------------------------------------

class TestVerifyPlan:
    def _plan(self, chunks, total):
        return ChunkingPlan(file_path="x.log", total_size=total, format="text",
                            strategy="newline", target_chunk_size=10, chunks=chunks)

    def test_gap_detected(self):
        plan = self._plan([
            ChunkSpec(0, (0, 10), (0, 2), 2),
            ChunkSpec(1, (12, 20), (2, 4), 2),
        ], 20)
        assert any("starts at byte 12" in p for p in verify_plan(plan))

    def test_record_range_mismatch(self):
        plan = self._plan([ChunkSpec(0, (0, 10), (0, 2), 3)], 10)
        assert any("record count" in p for p in verify_plan(plan))

    def test_short_coverage(self):
        plan = self._plan([ChunkSpec(0, (0, 10), (0, 2), 2)], 15)
        assert any("cover 10 of 15" in p for p in verify_plan(plan))
