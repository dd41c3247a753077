"""Tests for logchunk.planfile -- output naming, plan and sample files."""

import json
import os

from logchunk.models import ChunkingPlan, ChunkSpec
from logchunk.planfile import (
    list_plan_stems,
    load_plan,
    load_resumable_plan,
    load_samples,
    merge_samples,
    output_stem,
    plan_path,
    save_plan,
    save_samples,
    save_summary,
)


def _plan(file_path="logs/app.log", total=20, target=10):
    return ChunkingPlan(
        file_path=file_path, total_size=total, format="text", strategy="newline",
        target_chunk_size=target,
        chunks=[ChunkSpec(0, (0, 10), (0, 1), 1), ChunkSpec(1, (10, 20), (1, 2), 1)],
    )


# ---------------------------------------------------------------------------
# Naming
# ---------------------------------------------------------------------------

class TestOutputStem:
    def test_basename(self):
        assert output_stem("/var/log/app.log") == "app.log"

    def test_relative_to_root(self):
        path = os.path.join("logs", "svc", "app.log")
        assert output_stem(path, "logs") == "svc__app.log"

    def test_plan_path(self):
        assert plan_path("out", "app.log") == os.path.join("out", "app.log.plan.json")


class TestListPlanStems:
    def test_lists_plans_only(self, tmp_path):
        (tmp_path / "b.log.plan.json").write_text("{}")
        (tmp_path / "a.log.plan.json").write_text("{}")
        (tmp_path / "a.log.report.md").write_text("")
        assert list_plan_stems(str(tmp_path)) == ["a.log", "b.log"]

    def test_missing_dir(self, tmp_path):
        assert list_plan_stems(str(tmp_path / "nope")) == []


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------

class TestSaveLoadPlan:
    def test_round_trip(self, tmp_path):
        path = str(tmp_path / "app.log.plan.json")
        plan = _plan()
        save_plan(plan, path)
        assert load_plan(path) == plan
        assert not os.path.exists(path + ".tmp")


class TestLoadResumablePlan:
    def test_matching_plan(self, tmp_path):
        path = str(tmp_path / "app.log.plan.json")
        save_plan(_plan(), path)
        assert load_resumable_plan(path, "logs/app.log", 20, None, 10) is not None

    def test_missing(self, tmp_path):
        assert load_resumable_plan(str(tmp_path / "x.plan.json"), "x", 1, None, 1) is None

    def test_size_changed(self, tmp_path):
        path = str(tmp_path / "app.log.plan.json")
        save_plan(_plan(), path)
        assert load_resumable_plan(path, "logs/app.log", 25, None, 10) is None

    def test_target_changed(self, tmp_path):
        path = str(tmp_path / "app.log.plan.json")
        save_plan(_plan(), path)
        assert load_resumable_plan(path, "logs/app.log", 20, None, 99) is None

    def test_format_changed(self, tmp_path):
        path = str(tmp_path / "app.log.plan.json")
        save_plan(_plan(), path)
        assert load_resumable_plan(path, "logs/app.log", 20, "jsonl", 10) is None

    def test_malformed(self, tmp_path):
        path = tmp_path / "app.log.plan.json"
        path.write_text("{not json")
        assert load_resumable_plan(str(path), "logs/app.log", 20, None, 10) is None

    def test_missing_keys(self, tmp_path):
        path = tmp_path / "app.log.plan.json"
        path.write_text(json.dumps({"file": "logs/app.log"}))
        assert load_resumable_plan(str(path), "logs/app.log", 20, None, 10) is None


# ---------------------------------------------------------------------------
# Samples and summary
# ---------------------------------------------------------------------------

class TestSamples:
    def test_merge_respects_limit(self):
        into = {"order": [{"i": 0}]}
        merge_samples(into, {"order": [{"i": 1}, {"i": 2}], "fill": [{"i": 3}]}, limit=2)
        assert into == {"order": [{"i": 0}, {"i": 1}], "fill": [{"i": 3}]}

    def test_save_and_load(self, tmp_path):
        path = str(tmp_path / "app.log.samples.json")
        save_samples(path, "app.log", {"order": [{"id": 1}]})
        assert load_samples(path) == {"order": [{"id": 1}]}
        with open(path) as f:
            assert json.load(f)["file"] == "app.log"

    def test_load_missing(self, tmp_path):
        assert load_samples(str(tmp_path / "none.json")) == {}

    def test_load_malformed(self, tmp_path):
        path = tmp_path / "bad.samples.json"
        path.write_text("[")
        assert load_samples(str(path)) == {}


class TestSaveSummary:
    def test_writes_files_list(self, tmp_path):
        path = save_summary(str(tmp_path), [{"file": "a.log", "status": "complete"}])
        with open(path) as f:
            assert json.load(f) == {"files": [{"file": "a.log", "status": "complete"}]}
