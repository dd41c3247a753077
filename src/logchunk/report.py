#!/usr/bin/env python3
"""Render a ChunkingPlan as a Markdown report.

The report is a plain data-to-text rendering of the plan (and optionally
its samples): chunk table, validated and candidate patterns, anomalies
with provenance, attribute observations, and limitations.
"""

import json
import logging
import os
from datetime import UTC, datetime

from logchunk.models import ChunkingPlan, Pattern
from logchunk.planfile import (
    PLAN_SUFFIX,
    REPORT_SUFFIX,
    SAMPLES_SUFFIX,
    load_plan,
    load_samples,
)

logger = logging.getLogger(__name__)

SAMPLES_IN_REPORT = 3


def human_size(size: int) -> str:
    """Format a byte count: 512 B, 1.5 KiB, 49.0 MiB."""
    value = float(size)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if value < 1024 or unit == "GiB":
            if unit == "B":
                return f"{int(value)} B"
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"


def _truncate(text: str, limit: int) -> str:
    if len(text) > limit:
        return text[:limit - 3] + "..."
    return text


def _format_signature(pattern: Pattern) -> str:
    if pattern.kind == "transition":
        return f"{pattern.signature[0]} -> {pattern.signature[1]}"
    # Avro union types use '|', which would split the table cell
    return _truncate(", ".join(pattern.signature), 120).replace("|", "\\|")


def _write_pattern_table(f, patterns: list[Pattern]) -> None:
    f.write("| Kind | Key | Signature | Chunks | First Seen |\n")
    f.write("|------|-----|-----------|--------|------------|\n")
    for p in sorted(patterns, key=lambda p: (p.kind, p.key, p.provenance.chunk_index)):
        prov = p.provenance
        first = (f"chunk {prov.chunk_index}, bytes {prov.byte_range[0]}-{prov.byte_range[1]}, "
                 f"record {prov.record_range[0]}")
        chunks = ", ".join(str(c) for c in p.chunks)
        f.write(f"| {p.kind} | `{p.key}` | {_format_signature(p)} | {chunks} | {first} |\n")


def write_report_md(path: str, plan: ChunkingPlan,
                    samples: dict[str, list[dict]] | None = None) -> None:
    """Write the Markdown report for one plan."""
    validated = [p for p in plan.patterns.values() if p.id in plan.patterns_validated]
    candidates = [p for p in plan.patterns.values() if p.id not in plan.patterns_validated]

    with open(path, "w") as f:
        f.write(f"# Chunked Log Analysis: `{os.path.basename(plan.file_path)}`\n\n")
        f.write(f"**Date:** {datetime.now(UTC).date().isoformat()}\n\n")
        f.write(f"- **File:** `{plan.file_path}`\n")
        f.write(f"- **Format:** {plan.format}\n")
        f.write(f"- **Size:** {human_size(plan.total_size)} ({plan.total_size} bytes)\n")
        f.write(f"- **Chunk strategy:** {plan.strategy}, "
                f"target {human_size(plan.target_chunk_size)}\n")
        f.write(f"- **Coverage:** {plan.coverage_report()}\n")
        f.write(f"- **Status:** {plan.status}\n\n")

        f.write(f"**{len(validated)} validated patterns**, "
                f"**{len(candidates)} candidates**, "
                f"**{len(plan.anomalies)} anomalies**.\n\n")

        f.write("## Chunks\n\n")
        f.write("| # | Bytes | Records | Count | Analyzed |\n")
        f.write("|---|-------|---------|-------|----------|\n")
        for c in plan.chunks:
            f.write(
                f"| {c.index} | {c.byte_range[0]}-{c.byte_range[1]} "
                f"| {c.record_range[0]}-{c.record_range[1]} "
                f"| {c.record_count} | {'yes' if c.analyzed else 'no'} |\n"
            )
        f.write("\n")

        if validated:
            f.write("## Validated Patterns\n\n")
            _write_pattern_table(f, validated)
            f.write("\n")

        if candidates:
            f.write("## Candidate Patterns\n\n")
            f.write("Seen in a single chunk only; not yet confirmed.\n\n")
            _write_pattern_table(f, candidates)
            f.write("\n")

        if plan.anomalies:
            f.write("## Anomalies\n\n")
            f.write("| Chunk | Kind | Key | Message |\n")
            f.write("|-------|------|-----|---------|\n")
            for a in plan.anomalies:
                key = f"`{a.key}`" if a.key else ""
                f.write(f"| {a.chunk_index} | {a.kind} | {key} "
                        f"| {_truncate(a.message, 200)} |\n")
            f.write("\n")

        if plan.attributes:
            f.write("## Attributes\n\n")
            f.write("Observed fields per entity type, with value-type counts "
                    "over the analyzed chunks.\n\n")
            for entity in sorted(plan.attributes):
                f.write(f"### `{entity}`\n\n")
                f.write("| Field | Types |\n")
                f.write("|-------|-------|\n")
                for name, types in sorted(plan.attributes[entity].items()):
                    counts = ", ".join(f"{t} ({n})" for t, n in
                                       sorted(types.items(), key=lambda kv: (-kv[1], kv[0])))
                    field = _truncate(name, 80).replace("|", "\\|")
                    f.write(f"| `{field}` | {counts} |\n")
                f.write("\n")

        if plan.limitations:
            f.write("## Limitations\n\n")
            for limitation in plan.limitations:
                f.write(f"- {limitation}\n")
            f.write("\n")

        if samples:
            f.write("## Samples\n\n")
            for entity in sorted(samples):
                records = samples[entity][:SAMPLES_IN_REPORT]
                if not records:
                    continue
                f.write(f"### `{entity}`\n\n")
                f.write("```json\n")
                for record in records:
                    f.write(_truncate(json.dumps(record, ensure_ascii=False), 400) + "\n")
                f.write("```\n\n")

    logger.info("Wrote %s", path)


def run(plan_file: str, output_md: str | None = None,
        samples_file: str | None = None) -> int:
    """Render a saved plan file to Markdown. Returns exit code."""
    if not os.path.exists(plan_file):
        logger.error("Plan file %s not found", plan_file)
        return 1
    plan = load_plan(plan_file)

    if samples_file is None and plan_file.endswith(PLAN_SUFFIX):
        auto = plan_file[:-len(PLAN_SUFFIX)] + SAMPLES_SUFFIX
        if os.path.exists(auto):
            samples_file = auto
    samples = load_samples(samples_file) if samples_file else None

    if output_md is None:
        base = plan_file[:-len(PLAN_SUFFIX)] if plan_file.endswith(PLAN_SUFFIX) else plan_file
        output_md = base + REPORT_SUFFIX
    write_report_md(output_md, plan, samples)
    return 0
