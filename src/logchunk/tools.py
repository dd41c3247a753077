"""MCP tools for documentation and test-generation agents.

Provides list_plans, get_plan, list_patterns, list_anomalies, and
get_samples over the plan files of one output directory. The directory
is baked in via closure -- agents only pass file names.

This is the downstream entry point for agents built on claude_agent_sdk.
After ``logchunk analyze --output-dir out`` has written its plans, hand
the server to an agent::

    options = ClaudeAgentOptions(
        allowed_tools=["Read", *ALLOWED_TOOLS],
        mcp_servers={SERVER_NAME: create_tools_server("out")},
    )
"""

import json
import os
import sys

from claude_agent_sdk import create_sdk_mcp_server, tool

from logchunk.planfile import (
    PLAN_SUFFIX,
    list_plan_stems,
    load_plan,
    load_samples,
    samples_path,
)
from logchunk.validator import PATTERN_CANDIDATE, PATTERN_VALIDATED

SERVER_NAME = "logchunk"
TOOL_NAMES = ("list_plans", "get_plan", "list_patterns", "list_anomalies", "get_samples")
# Names as agents see them, for ClaudeAgentOptions.allowed_tools
ALLOWED_TOOLS = [f"mcp__{SERVER_NAME}__{name}" for name in TOOL_NAMES]

_PATTERN_STATUSES = frozenset({PATTERN_VALIDATED, PATTERN_CANDIDATE, "all"})

_MAX_OUTPUT_CHARS = 100_000


def _mcp_error(msg: str) -> dict:
    """Return an MCP error response."""
    return {
        "content": [{"type": "text", "text": msg}],
        "is_error": True,
    }


def _mcp_text(text: str) -> dict:
    """Return an MCP text response."""
    return {"content": [{"type": "text", "text": text}]}


def _mcp_json(data) -> dict:
    output = json.dumps(data, indent=2, ensure_ascii=False)
    if len(output) > _MAX_OUTPUT_CHARS:
        output = output[:_MAX_OUTPUT_CHARS] + "\n... (truncated at 100K chars)"
    return _mcp_text(output)


def _resolve_stem(output_dir: str, name: str) -> str | None:
    """Map a log or plan file name to a plan stem inside ``output_dir``.

    Only the basename is used, so agents cannot read outside the directory.
    """
    name = os.path.basename(name or "")
    if name.endswith(PLAN_SUFFIX):
        name = name[:-len(PLAN_SUFFIX)]
    if not name or name not in list_plan_stems(output_dir):
        return None
    return name


def _filter_patterns(plan, status: str) -> list[dict]:
    out = []
    for pattern in plan.patterns.values():
        validated = pattern.id in plan.patterns_validated
        if status == PATTERN_VALIDATED and not validated:
            continue
        if status == PATTERN_CANDIDATE and validated:
            continue
        entry = pattern.to_dict()
        entry["status"] = PATTERN_VALIDATED if validated else PATTERN_CANDIDATE
        out.append(entry)
    return sorted(out, key=lambda p: (p["kind"], p["key"], p["provenance"]["chunk"]))


def _select_entities(samples: dict, attributes: dict, entity: str) -> dict | None:
    """Samples and attribute observations per entity type.

    Returns None when ``entity`` is given but unknown.
    """
    names = sorted(set(samples) | set(attributes))
    if entity:
        if entity not in names:
            return None
        names = [entity]
    return {
        name: {"samples": samples.get(name, []), "attributes": attributes.get(name, {})}
        for name in names
    }


def create_tools_server(output_dir: str):
    """Create MCP server with read-only tools over ``output_dir``.

    Parameters
    ----------
    output_dir : str
        Directory holding ``*.plan.json`` and ``*.samples.json`` files
        written by ``logchunk analyze``.
    """

    def _load(name: str):
        stem = _resolve_stem(output_dir, name)
        if stem is None:
            return None, _mcp_error(
                f"No plan for '{name}'. Use list_plans to see available files."
            )
        plan = load_plan(os.path.join(output_dir, stem + PLAN_SUFFIX))
        return plan, None

    @tool(
        "list_plans",
        "List every analysed log file with its format, status, and coverage. "
        "Use the returned 'name' with the other tools.",
        {},
    )
    async def list_plans_tool(args):
        entries = []
        for stem in list_plan_stems(output_dir):
            try:
                plan = load_plan(os.path.join(output_dir, stem + PLAN_SUFFIX))
            except (OSError, ValueError, KeyError) as e:
                print(f"[list_plans] skipping {stem}: {e}", file=sys.stderr, flush=True)
                continue
            entries.append({
                "name": stem,
                "file": plan.file_path,
                "format": plan.format,
                "status": plan.status,
                "coverage": plan.coverage_report(),
                "patternsValidated": len(plan.patterns_validated),
                "anomalies": len(plan.anomalies),
            })
        print(f"[list_plans] {len(entries)} plan(s)", file=sys.stderr, flush=True)
        return _mcp_json(entries)

    @tool(
        "get_plan",
        "Return the full chunking plan for one analysed file: chunk byte and "
        "record ranges, coverage, status, validated pattern ids, anomalies, "
        "attribute observations, and limitations.",
        {"file": str},
    )
    async def get_plan_tool(args):
        plan, err = _load(args["file"])
        if err:
            return err
        return _mcp_json(plan.to_dict())

    @tool(
        "list_patterns",
        "List structural patterns (schemas and state transitions) for one file "
        "with provenance. status is 'validated' (seen in 2+ chunks), "
        "'candidate', or 'all'.",
        {"file": str, "status": str},
    )
    async def list_patterns_tool(args):
        status = args.get("status") or "all"
        if status not in _PATTERN_STATUSES:
            return _mcp_error(
                f"Unknown status '{status}'. Use one of: "
                f"{', '.join(sorted(_PATTERN_STATUSES))}"
            )
        plan, err = _load(args["file"])
        if err:
            return err
        return _mcp_json(_filter_patterns(plan, status))

    @tool(
        "list_anomalies",
        "List anomalies for one file (schema drift, missing patterns, "
        "unexpected transitions, boundary corruption, checksum mismatches, "
        "parse errors, coverage shortfall) with their chunk and detail.",
        {"file": str},
    )
    async def list_anomalies_tool(args):
        plan, err = _load(args["file"])
        if err:
            return err
        return _mcp_json([a.to_dict() for a in plan.anomalies])

    @tool(
        "get_samples",
        "Return sample records and observed attribute types (field -> value "
        "type -> count) for one file. Pass an entity type to get only that "
        "entity, or an empty string for all entity types.",
        {"file": str, "entity": str},
    )
    async def get_samples_tool(args):
        plan, err = _load(args["file"])
        if err:
            return err
        stem = _resolve_stem(output_dir, args["file"])
        samples = load_samples(samples_path(output_dir, stem))
        entity = args.get("entity") or ""
        selected = _select_entities(samples, plan.attributes, entity)
        if selected is None:
            known = sorted(set(samples) | set(plan.attributes))
            return _mcp_error(
                f"No samples for entity '{entity}'. "
                f"Known: {', '.join(known) or '(none)'}"
            )
        return _mcp_json(selected)

    tools = [
        list_plans_tool,
        get_plan_tool,
        list_patterns_tool,
        list_anomalies_tool,
        get_samples_tool,
    ]
    return create_sdk_mcp_server(name=SERVER_NAME, version="1.0.0", tools=tools)
