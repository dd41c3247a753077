#!/usr/bin/env python3
"""Run the plan -> process -> validate pass over files and directories.

Each file gets its own plan, processor, and validator, and is processed
strictly one chunk at a time in index order. A FormatDetectionError (or
an unreadable file) aborts only that file's pass; directory runs record
it in summary.json and carry on with the next file.
"""

import fnmatch
import logging
import os

from logchunk.errors import ChunkAnalysisError, FormatDetectionError
from logchunk.formats import read_layout
from logchunk.models import ChunkingPlan
from logchunk.planfile import (
    PLAN_SUFFIX,
    REPORT_SUFFIX,
    SAMPLES_SUFFIX,
    SUMMARY_NAME,
    list_plan_stems,
    load_resumable_plan,
    load_samples,
    merge_samples,
    output_stem,
    plan_path,
    report_path,
    samples_path,
    save_plan,
    save_samples,
    save_summary,
)
from logchunk.planner import (
    DEFAULT_TARGET_CHUNK_SIZE,
    FALLBACK_TEXT,
    SINGLE_CHUNK_LIMIT,
    plan_with_fallback,
    verify_plan,
)
from logchunk.processor import DEFAULT_SAMPLES_PER_ENTITY, ChunkProcessor
from logchunk.report import write_report_md
from logchunk.validator import CrossChunkValidator

logger = logging.getLogger(__name__)

STATUS_OK = 0
STATUS_ERROR = 1

# Outputs of earlier runs that must not be re-analysed as logs
_OUTPUT_SUFFIXES = (PLAN_SUFFIX, SAMPLES_SUFFIX, REPORT_SUFFIX, ".tmp")


def analyze_file(
    path: str,
    output_dir: str,
    fmt: str | None = None,
    target_chunk_size: int = DEFAULT_TARGET_CHUNK_SIZE,
    single_chunk_limit: int = SINGLE_CHUNK_LIMIT,
    fallback: str = FALLBACK_TEXT,
    samples_per_entity: int = DEFAULT_SAMPLES_PER_ENTITY,
    resume: bool = False,
    max_chunks: int | None = None,
    strict: bool = False,
    stem: str | None = None,
) -> ChunkingPlan:
    """Analyse one file and write its plan, samples, and report.

    With ``resume=True`` a matching plan file from an earlier pass is
    reloaded and only its unanalysed chunks are processed.
    ``max_chunks`` caps how many chunks this call processes; the plan
    is saved after every chunk so an interrupted pass can resume.
    """
    os.makedirs(output_dir, exist_ok=True)
    stem = stem or output_stem(path)
    plan_file = plan_path(output_dir, stem)
    samples_file = samples_path(output_dir, stem)

    plan = None
    samples: dict[str, list[dict]] = {}
    if resume:
        plan = load_resumable_plan(plan_file, path, os.path.getsize(path), fmt,
                                   target_chunk_size)
        problems = verify_plan(plan) if plan is not None else []
        if problems:
            logger.warning("Saved plan %s is inconsistent (%s), planning from scratch",
                           plan_file, problems[0])
            plan = None
        if plan is not None:
            samples = load_samples(samples_file)
            logger.info("Resuming %s: %s", path, plan.coverage_report())
    if plan is None:
        plan = plan_with_fallback(path, fmt, target_chunk_size, single_chunk_limit, fallback)

    validator = CrossChunkValidator(plan)
    processor = ChunkProcessor(path, plan.format, layout=read_layout(path, plan.format),
                               samples_per_entity=samples_per_entity)

    pending = [c for c in plan.chunks if not c.analyzed]
    if max_chunks is not None:
        pending = pending[:max_chunks]
    total = len(plan.chunks)
    for chunk in pending:
        logger.info("[%d/%d] %s chunk %d (bytes %d-%d)", chunk.index + 1, total,
                    os.path.basename(path), chunk.index, *chunk.byte_range)
        result = processor.process(chunk, total_size=plan.total_size)
        validator.record(result)
        merge_samples(samples, result.samples, samples_per_entity)
        # Checkpoint after every chunk: samples, then the plan marking it analyzed
        save_samples(samples_file, path, samples)
        save_plan(plan, plan_file)

    validator.finalize(strict=strict)
    save_plan(plan, plan_file)
    save_samples(samples_file, path, samples)
    write_report_md(report_path(output_dir, stem), plan, samples)
    logger.info("Wrote %s", plan_file)
    return plan


def _iter_log_files(input_dir: str, include: list[str] | None):
    for root, dirs, files in os.walk(input_dir):
        dirs[:] = sorted(d for d in dirs if not d.startswith("."))
        for name in sorted(files):
            if name.startswith(".") or name == SUMMARY_NAME or name.endswith(_OUTPUT_SUFFIXES):
                continue
            if include and not any(fnmatch.fnmatch(name, pat) for pat in include):
                continue
            yield os.path.join(root, name)


def analyze_directory(
    input_dir: str,
    output_dir: str,
    include: list[str] | None = None,
    **kwargs,
) -> list[dict]:
    """Analyse every log file under ``input_dir``. Returns summary entries.

    Files are processed one after another; a failure in one file is
    recorded in its summary entry and does not stop the others.
    """
    os.makedirs(output_dir, exist_ok=True)
    out_abs = os.path.abspath(output_dir)
    entries = []
    files = [
        p for p in _iter_log_files(input_dir, include)
        if not os.path.abspath(p).startswith(out_abs + os.sep)
    ]
    for i, path in enumerate(files, 1):
        stem = output_stem(path, input_dir)
        logger.info("=== [%d/%d] %s ===", i, len(files), path)
        try:
            plan = analyze_file(path, output_dir, stem=stem, **kwargs)
        except FormatDetectionError as e:
            logger.error("%s -- skipping file", e)
            entries.append({"file": path, "status": "aborted", "error": str(e)})
            continue
        except (OSError, ChunkAnalysisError) as e:
            logger.error("Analysis of %s failed: %s", path, e)
            entries.append({"file": path, "status": "aborted", "error": str(e)})
            continue
        entries.append({
            "file": path,
            "plan": plan_path(output_dir, stem),
            "format": plan.format,
            "status": plan.status,
            "coverage": plan.coverage_report(),
            "chunks": plan.total_chunks,
            "patternsValidated": len(plan.patterns_validated),
            "anomalies": len(plan.anomalies),
        })
    save_summary(output_dir, entries)
    return entries


def run(input_path: str, output_dir: str = ".", include: list[str] | None = None,
        **kwargs) -> int:
    """Analyse a file or a directory of files. Returns exit code."""
    if os.path.isdir(input_path):
        entries = analyze_directory(input_path, output_dir, include=include, **kwargs)
        aborted = [e for e in entries if e["status"] == "aborted"]
        logger.info("")
        logger.info("=== Chunked Log Analysis Summary ===")
        logger.info("")
        for entry in entries:
            logger.info("  %-50s  %-14s  %s", entry["file"], entry["status"],
                        entry.get("coverage", entry.get("error", "")))
        logger.info("")
        logger.info("  %d file(s) analysed, %d aborted, %d plan(s) in %s",
                    len(entries) - len(aborted), len(aborted),
                    len(list_plan_stems(output_dir)), output_dir)
        return STATUS_ERROR if aborted else STATUS_OK

    if not os.path.exists(input_path):
        logger.error("Input %s not found", input_path)
        return STATUS_ERROR
    try:
        plan = analyze_file(input_path, output_dir, **kwargs)
    except ChunkAnalysisError as e:
        logger.error("%s", e)
        return STATUS_ERROR
    logger.info("")
    logger.info("  %s: %s, status %s, %d validated pattern(s), %d anomaly(ies)",
                input_path, plan.coverage_report(), plan.status,
                len(plan.patterns_validated), len(plan.anomalies))
    return STATUS_OK
