#!/usr/bin/env python3
"""Unified CLI for logchunk -- chunked log analysis."""

import argparse
import json
import logging
import re
import sys

from logchunk import __version__
from logchunk.formats import FORMATS
from logchunk.planner import (
    DEFAULT_TARGET_CHUNK_SIZE,
    FALLBACK_CHOICES,
    FALLBACK_TEXT,
    SINGLE_CHUNK_LIMIT,
)
from logchunk.processor import DEFAULT_SAMPLES_PER_ENTITY

_SIZE_RE = re.compile(r"^\s*(\d+)\s*([KMG]i?B?|B)?\s*$", re.IGNORECASE)
_SIZE_UNITS = {"": 1, "B": 1, "K": 1024, "M": 1024 ** 2, "G": 1024 ** 3}


def _parse_csv_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_size(value: str) -> int:
    """Parse a byte size such as 4096, 512K, 49M, 1G, or 2GiB."""
    m = _SIZE_RE.match(value)
    if not m:
        raise argparse.ArgumentTypeError(f"invalid size: {value!r}")
    unit = (m.group(2) or "").upper()[:1]
    size = int(m.group(1)) * _SIZE_UNITS[unit]
    if size <= 0:
        raise argparse.ArgumentTypeError(f"size must be positive: {value!r}")
    return size


def _analysis_kwargs(args) -> dict:
    return {
        "fmt": args.format,
        "target_chunk_size": args.target_chunk_size,
        "single_chunk_limit": args.single_chunk_limit,
        "fallback": args.fallback,
        "samples_per_entity": args.samples,
        "resume": args.resume,
        "max_chunks": args.max_chunks,
        "strict": args.strict,
    }


def cmd_detect(args):
    from logchunk.errors import FormatDetectionError
    from logchunk.formats import detect_format

    logger = logging.getLogger(__name__)
    rc = 0
    for path in args.files:
        try:
            fmt = detect_format(path)
        except FormatDetectionError as e:
            logger.error("%s", e)
            rc = 1
            continue
        except OSError as e:
            logger.error("Cannot read %s: %s", path, e)
            rc = 1
            continue
        print(f"{path}\t{fmt}")
    return rc


def cmd_plan(args):
    from logchunk.errors import ChunkAnalysisError
    from logchunk.planfile import save_plan
    from logchunk.planner import plan_with_fallback

    logger = logging.getLogger(__name__)
    try:
        plan = plan_with_fallback(
            args.file, args.format, args.target_chunk_size,
            args.single_chunk_limit, args.fallback,
        )
    except ChunkAnalysisError as e:
        logger.error("%s", e)
        return 1
    except OSError as e:
        logger.error("Cannot read %s: %s", args.file, e)
        return 1

    if args.output:
        save_plan(plan, args.output)
        logger.info("Wrote %s", args.output)
    else:
        json.dump(plan.to_dict(), sys.stdout, indent=2)
        sys.stdout.write("\n")
    return 0


def cmd_analyze(args):
    from logchunk.analyze import run
    include = _parse_csv_list(args.include) if args.include else None
    return run(args.input, args.output_dir, include=include, **_analysis_kwargs(args))


def cmd_report(args):
    from logchunk.report import run
    return run(args.plan, args.output_md, samples_file=args.samples_file)


def _add_planning_args(parser) -> None:
    parser.add_argument(
        "--format", choices=FORMATS, default=None,
        help="Skip detection and use this format (default: auto-detect)",
    )
    parser.add_argument(
        "--target-chunk-size", type=_parse_size, default=DEFAULT_TARGET_CHUNK_SIZE,
        help="Target chunk size, e.g. 49M or 512K (default: 49M)",
    )
    parser.add_argument(
        "--single-chunk-limit", type=_parse_size, default=SINGLE_CHUNK_LIMIT,
        help="Files up to this size are planned as a single chunk (default: 50M)",
    )
    parser.add_argument(
        "--fallback", choices=FALLBACK_CHOICES, default=FALLBACK_TEXT,
        help="When format detection fails: analyze as text, or abort (default: text)",
    )


def main():
    parser = argparse.ArgumentParser(
        prog="logchunk",
        description="Chunked log analysis -- plans, processes, and cross-validates large log files",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--debug", action="store_true",
        help="Enable debug logging (verbose output)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # --- detect ---
    p_detect = subparsers.add_parser(
        "detect", help="Detect the log format of one or more files",
    )
    p_detect.add_argument("files", nargs="+", help="Log files to inspect")
    p_detect.set_defaults(func=cmd_detect)

    # --- plan ---
    p_plan = subparsers.add_parser(
        "plan", help="Compute a chunking plan without processing any chunk",
    )
    p_plan.add_argument("file", help="Log file to plan")
    _add_planning_args(p_plan)
    p_plan.add_argument(
        "--output", default=None,
        help="Write the plan JSON to this path (default: stdout)",
    )
    p_plan.set_defaults(func=cmd_plan)

    # --- analyze ---
    p_analyze = subparsers.add_parser(
        "analyze", help="Plan, process, and validate a log file or a directory of logs",
    )
    p_analyze.add_argument("input", help="Log file or directory")
    _add_planning_args(p_analyze)
    p_analyze.add_argument(
        "--output-dir", default=".",
        help="Directory for plan, samples, and report files (default: current directory)",
    )
    p_analyze.add_argument(
        "--include", default="",
        help="Comma-separated filename globs for directory runs (default: all files)",
    )
    p_analyze.add_argument(
        "--samples", type=int, default=DEFAULT_SAMPLES_PER_ENTITY,
        help=f"Sample records kept per entity type (default: {DEFAULT_SAMPLES_PER_ENTITY})",
    )
    p_analyze.add_argument(
        "--resume", action="store_true",
        help="Continue from an existing plan file, skipping analyzed chunks",
    )
    p_analyze.add_argument(
        "--max-chunks", type=int, default=None,
        help="Process at most this many chunks per file in this run (default: all)",
    )
    p_analyze.add_argument(
        "--strict", action="store_true",
        help="Fail a file instead of reporting low confidence when too few chunks are analyzed",
    )
    p_analyze.set_defaults(func=cmd_analyze)

    # --- report ---
    p_report = subparsers.add_parser(
        "report", help="Render a saved plan file as Markdown",
    )
    p_report.add_argument("plan", help="Path to a .plan.json file")
    p_report.add_argument(
        "--output-md", default=None,
        help="Output markdown path (default: next to the plan, .report.md)",
    )
    p_report.add_argument(
        "--samples-file", default=None,
        help="Samples JSON to include (default: auto-detected next to the plan)",
    )
    p_report.set_defaults(func=cmd_report)

    args = parser.parse_args()

    level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(
        level=level,
        format=(
            "%(message)s" if level == logging.INFO
            else "%(asctime)s %(name)s %(levelname)s %(message)s"
        ),
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )

    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
