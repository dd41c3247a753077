"""Tests for logchunk.report -- Markdown rendering of plans."""

import os

import pytest

from logchunk.models import Anomaly, ChunkingPlan, ChunkSpec, Pattern, Provenance
from logchunk.planfile import save_plan, save_samples
from logchunk.report import human_size, run, write_report_md


def _plan():
    prov = Provenance("app.avro", 0, (100, 200), (0, 5))
    validated = Pattern("schema", "Event", ("id:long", "state:null|string"), prov, [0, 1])
    candidate = Pattern("transition", "order:open->done", ("open", "done"), prov, [1])
    return ChunkingPlan(
        file_path="app.avro", total_size=3 * 1024 * 1024, format="avro",
        strategy="avro-sync", target_chunk_size=1024 * 1024,
        chunks=[
            ChunkSpec(0, (0, 1024), (0, 5), 5, analyzed=True),
            ChunkSpec(1, (1024, 2048), (5, 9), 4, analyzed=True),
            ChunkSpec(2, (2048, 3 * 1024 * 1024), (9, 12), 3),
        ],
        patterns_validated={validated.id},
        patterns={validated.id: validated, candidate.id: candidate},
        anomalies=[Anomaly("schema-drift", "Event", 1, "signature changed since chunk 0")],
        attributes={"Event": {"id": {"int": 6, "str": 2}}},
        limitations=["Coverage shortfall: 2/3 chunks"],
        status="incomplete",
    )


class TestHumanSize:
    @pytest.mark.parametrize("size, expected", [
        (512, "512 B"),
        (1536, "1.5 KiB"),
        (49 * 1024 * 1024, "49.0 MiB"),
        (3 * 1024 ** 3, "3.0 GiB"),
    ])
    def test_units(self, size, expected):
        assert human_size(size) == expected


class TestWriteReportMd:
    def test_sections(self, tmp_path):
        path = str(tmp_path / "app.avro.report.md")
        write_report_md(path, _plan(), {"Event": [{"id": 1}]})
        with open(path) as f:
            text = f.read()
        assert text.startswith("# Chunked Log Analysis: `app.avro`")
        assert "**Coverage:** 2/3 chunks analyzed (67%)" in text
        assert "**Status:** incomplete" in text
        assert "## Validated Patterns" in text
        assert "## Candidate Patterns" in text
        assert "open -> done" in text
        assert "## Anomalies" in text
        assert "## Limitations" in text
        assert '{"id": 1}' in text
        assert "## Attributes" in text
        assert "| `id` | int (6), str (2) |" in text

    def test_pipe_in_signature_escaped(self, tmp_path):
        path = str(tmp_path / "r.md")
        write_report_md(path, _plan())
        with open(path) as f:
            text = f.read()
        assert "state:null\\|string" in text
        assert "## Samples" not in text

    def test_no_optional_sections(self, tmp_path):
        plan = ChunkingPlan("a.log", 10, "text", "single", 10,
                            chunks=[ChunkSpec(0, (0, 10), (0, 1), 1)])
        path = str(tmp_path / "r.md")
        write_report_md(path, plan)
        with open(path) as f:
            text = f.read()
        assert "## Chunks" in text
        assert "## Anomalies" not in text
        assert "## Validated Patterns" not in text
        assert "## Attributes" not in text


class TestRun:
    def test_missing_plan(self, tmp_path):
        assert run(str(tmp_path / "none.plan.json")) == 1

    def test_default_output_and_samples(self, tmp_path):
        plan_file = str(tmp_path / "app.avro.plan.json")
        save_plan(_plan(), plan_file)
        save_samples(str(tmp_path / "app.avro.samples.json"), "app.avro",
                     {"Event": [{"id": 42}]})
        assert run(plan_file) == 0
        report = tmp_path / "app.avro.report.md"
        assert report.exists()
        assert '{"id": 42}' in report.read_text()

    def test_explicit_output(self, tmp_path):
        plan_file = str(tmp_path / "app.avro.plan.json")
        save_plan(_plan(), plan_file)
        out = str(tmp_path / "custom.md")
        assert run(plan_file, out) == 0
        assert os.path.exists(out)
