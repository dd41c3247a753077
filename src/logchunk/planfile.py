"""Read, write, and resume plan files and sample files.

Per analysed log file ``<name>`` the output directory holds:
- ``<name>.plan.json``     -- the ChunkingPlan (re-loadable)
- ``<name>.samples.json``  -- bounded sample records per entity type
- ``<name>.report.md``     -- Markdown rendering of the plan
"""

import json
import logging
import os
from pathlib import Path

from logchunk.models import ChunkingPlan

logger = logging.getLogger(__name__)

PLAN_SUFFIX = ".plan.json"
SAMPLES_SUFFIX = ".samples.json"
REPORT_SUFFIX = ".report.md"
SUMMARY_NAME = "summary.json"


# ---------------------------------------------------------------------------
# Naming
# ---------------------------------------------------------------------------

def output_stem(file_path: str, root: str | None = None) -> str:
    """Name used for a log file's outputs.

    Inside a directory run the path relative to ``root`` is flattened
    with '__' so that files with the same basename do not collide.
    """
    if root:
        rel = os.path.relpath(file_path, root)
        return rel.replace(os.sep, "__")
    return os.path.basename(file_path)


def plan_path(output_dir: str, stem: str) -> str:
    return os.path.join(output_dir, stem + PLAN_SUFFIX)


def samples_path(output_dir: str, stem: str) -> str:
    return os.path.join(output_dir, stem + SAMPLES_SUFFIX)


def report_path(output_dir: str, stem: str) -> str:
    return os.path.join(output_dir, stem + REPORT_SUFFIX)


def list_plan_stems(output_dir: str) -> list[str]:
    """Stems of every plan file in ``output_dir``, sorted."""
    if not os.path.isdir(output_dir):
        return []
    return sorted(
        name[:-len(PLAN_SUFFIX)]
        for name in os.listdir(output_dir)
        if name.endswith(PLAN_SUFFIX)
    )


# ---------------------------------------------------------------------------
# JSON I/O
# ---------------------------------------------------------------------------

def _write_json(path: str, data) -> None:
    """Write JSON via a temp file and rename, so readers never see half a file."""
    tmp = path + ".tmp"
    with open(tmp, "w") as f:
        json.dump(data, f, indent=2)
        f.write("\n")
    os.replace(tmp, path)


def save_plan(plan: ChunkingPlan, path: str) -> None:
    _write_json(path, plan.to_dict())
    logger.debug("Wrote %s", path)


def load_plan(path: str) -> ChunkingPlan:
    with open(path) as f:
        data = json.load(f)
    return ChunkingPlan.from_dict(data)


def load_resumable_plan(path: str, file_path: str, total_size: int,
                        fmt: str | None, target_chunk_size: int) -> ChunkingPlan | None:
    """Load a saved plan if it still describes ``file_path``.

    Returns None when there is no plan, it is unreadable, or the file's
    size, format, or chunk target no longer match (the file changed or
    the caller asked for a different layout).
    """
    if not os.path.exists(path):
        return None
    try:
        plan = load_plan(path)
    except (json.JSONDecodeError, KeyError, TypeError, ValueError):
        logger.warning("Could not parse %s, planning from scratch", path)
        return None

    mismatches = []
    if os.path.abspath(plan.file_path) != os.path.abspath(file_path):
        mismatches.append("file")
    if plan.total_size != total_size:
        mismatches.append("size")
    if fmt is not None and plan.format != fmt:
        mismatches.append("format")
    if plan.target_chunk_size != target_chunk_size:
        mismatches.append("target chunk size")
    if mismatches:
        logger.info("Saved plan %s is stale (%s differs), planning from scratch",
                    path, ", ".join(mismatches))
        return None
    return plan


# ---------------------------------------------------------------------------
# Samples
# ---------------------------------------------------------------------------

def load_samples(path: str) -> dict[str, list[dict]]:
    """Load a samples file; missing or malformed files yield {}."""
    if not os.path.exists(path):
        return {}
    try:
        data = json.loads(Path(path).read_text())
    except json.JSONDecodeError:
        logger.warning("Could not parse %s, starting samples afresh", path)
        return {}
    samples = data.get("samples", {}) if isinstance(data, dict) else {}
    return {k: list(v) for k, v in samples.items() if isinstance(v, list)}


def merge_samples(into: dict[str, list[dict]], new: dict[str, list[dict]],
                  limit: int) -> dict[str, list[dict]]:
    """Append new samples per entity type, keeping at most ``limit`` each."""
    for entity, records in new.items():
        bucket = into.setdefault(entity, [])
        room = limit - len(bucket)
        if room > 0:
            bucket.extend(records[:room])
    return into


def save_samples(path: str, file_path: str, samples: dict[str, list[dict]]) -> None:
    _write_json(path, {"file": file_path, "samples": samples})
    logger.debug("Wrote %s", path)


def save_summary(output_dir: str, entries: list[dict]) -> str:
    path = os.path.join(output_dir, SUMMARY_NAME)
    _write_json(path, {"files": entries})
    logger.info("Wrote %s", path)
    return path
