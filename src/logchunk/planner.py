"""Chunk Planner: delimiter-aligned chunk boundaries for one file.

Files at or under the single-chunk limit get exactly one chunk. Larger
files get provisional boundaries every ``target_chunk_size`` bytes, each
snapped to the nearest record boundary for the file's format. Record
ranges are then filled in by a bounded streaming count so that every
ChunkSpec carries contiguous record numbers.
"""

import logging
import os

from logchunk.boundaries import count_records, finder_for, nearest_boundary
from logchunk.errors import FormatDetectionError
from logchunk.formats import (
    DELIMITED_FORMATS,
    FORMAT_TEXT,
    Layout,
    detect_format,
    read_layout,
)
from logchunk.models import ChunkingPlan, ChunkSpec

logger = logging.getLogger(__name__)

MIB = 1024 * 1024
SINGLE_CHUNK_LIMIT = 50 * MIB
DEFAULT_TARGET_CHUNK_SIZE = 49 * MIB

FALLBACK_TEXT = "text"
FALLBACK_ABORT = "abort"
FALLBACK_CHOICES = (FALLBACK_TEXT, FALLBACK_ABORT)

STRATEGY_SINGLE = "single"


def compute_boundaries(f, layout: Layout, total_size: int,
                       target_chunk_size: int) -> list[int]:
    """Return ordered boundary offsets, starting at 0 and ending at total_size."""
    if target_chunk_size <= 0:
        raise ValueError(f"target_chunk_size must be positive, got {target_chunk_size}")
    finder = finder_for(layout)
    boundaries = [0]
    while True:
        previous = boundaries[-1]
        provisional = previous + target_chunk_size
        if provisional >= total_size:
            break
        boundary = nearest_boundary(f, finder, provisional, previous, total_size)
        if boundary is None or boundary <= previous:
            logger.debug("No record boundary after byte %d, last chunk runs to EOF",
                         previous)
            break
        if boundary != provisional:
            logger.debug("Boundary %d snapped to %d (%+d bytes)",
                         provisional, boundary, boundary - provisional)
        boundaries.append(boundary)
    boundaries.append(total_size)
    return boundaries


def build_chunks(f, layout: Layout, boundaries: list[int]) -> list[ChunkSpec]:
    """Turn boundary offsets into ChunkSpecs with contiguous record ranges."""
    finder = finder_for(layout)
    chunks = []
    record_start = 0
    for index, (lo, hi) in enumerate(zip(boundaries, boundaries[1:])):
        count = count_records(f, finder, lo, hi)
        chunks.append(ChunkSpec(
            index=index,
            byte_range=(lo, hi),
            record_range=(record_start, record_start + count),
            record_count=count,
        ))
        record_start += count
    return chunks


def plan_chunks(
    path: str,
    fmt: str | None = None,
    target_chunk_size: int = DEFAULT_TARGET_CHUNK_SIZE,
    single_chunk_limit: int = SINGLE_CHUNK_LIMIT,
) -> ChunkingPlan:
    """Plan chunk boundaries for ``path``.

    Raises FormatDetectionError when ``fmt`` is not given and the format
    cannot be detected from the leading sample.
    """
    total_size = os.path.getsize(path)
    if fmt is None:
        fmt = detect_format(path)
    layout = read_layout(path, fmt)

    with open(path, "rb") as f:
        if total_size <= single_chunk_limit:
            boundaries = [0, total_size]
            strategy = STRATEGY_SINGLE
        else:
            boundaries = compute_boundaries(f, layout, total_size, target_chunk_size)
            strategy = finder_for(layout).strategy
        chunks = build_chunks(f, layout, boundaries)

    header = None
    if fmt in DELIMITED_FORMATS and layout.header:
        header = layout.header.decode("utf-8", "replace").rstrip("\r\n")

    logger.info("Planned %s: %s, %d bytes, %d chunk(s), strategy %s",
                path, fmt, total_size, len(chunks), strategy)
    return ChunkingPlan(
        file_path=path,
        total_size=total_size,
        format=fmt,
        strategy=strategy,
        target_chunk_size=target_chunk_size,
        chunks=chunks,
        header=header,
    )


def plan_with_fallback(
    path: str,
    fmt: str | None = None,
    target_chunk_size: int = DEFAULT_TARGET_CHUNK_SIZE,
    single_chunk_limit: int = SINGLE_CHUNK_LIMIT,
    fallback: str = FALLBACK_TEXT,
) -> ChunkingPlan:
    """Plan ``path``, re-planning as generic text when detection fails.

    With ``fallback="abort"`` the FormatDetectionError propagates.
    """
    if fallback not in FALLBACK_CHOICES:
        raise ValueError(f"Unknown fallback {fallback!r}")
    try:
        return plan_chunks(path, fmt, target_chunk_size, single_chunk_limit)
    except FormatDetectionError as e:
        if fallback == FALLBACK_ABORT or os.path.getsize(path) == 0:
            raise
        logger.warning("%s -- falling back to line-based chunking", e)
        plan = plan_chunks(path, FORMAT_TEXT, target_chunk_size, single_chunk_limit)
        plan.limitations.append(
            f"Format detection failed ({e.reason}); analyzed as generic line-delimited text"
        )
        return plan


def verify_plan(plan: ChunkingPlan) -> list[str]:
    """Check the contiguity invariants of a plan. Returns a list of problems."""
    problems = []
    expected_byte = 0
    expected_record = 0
    for i, chunk in enumerate(plan.chunks):
        if chunk.index != i:
            problems.append(f"chunk at position {i} has index {chunk.index}")
        lo, hi = chunk.byte_range
        if lo != expected_byte:
            problems.append(f"chunk {i} starts at byte {lo}, expected {expected_byte}")
        if hi < lo:
            problems.append(f"chunk {i} has negative byte length")
        rlo, rhi = chunk.record_range
        if rlo != expected_record:
            problems.append(f"chunk {i} starts at record {rlo}, expected {expected_record}")
        if rhi - rlo != chunk.record_count:
            problems.append(f"chunk {i} record count {chunk.record_count} "
                            f"does not match range {rlo}-{rhi}")
        expected_byte = hi
        expected_record = rhi
    if expected_byte != plan.total_size:
        problems.append(f"chunks cover {expected_byte} of {plan.total_size} bytes")
    return problems
