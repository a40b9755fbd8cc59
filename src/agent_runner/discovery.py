# discovery.py
# Discovery extraction from tool output.
#
# Discoveries are derived, never authoritative. Each well-known tool name maps
# to an extractor; unknown names contribute nothing. Ids are deterministic
# (kind + path), so re-discovering the same thing is a no-op.

from __future__ import annotations

import json
from typing import Any, Callable, Iterable

from agent_runner.models import Discovery, ToolResult

Extractor = Callable[[dict[str, Any], ToolResult], list[Discovery]]

EXTRACTORS: dict[str, Extractor] = {}


def register_extractor(tool_name: str, extractor: Extractor) -> None:
    """Attach an extractor to a tool name. Replaces any existing one."""
    EXTRACTORS[tool_name] = extractor


def extract_discoveries(
    tool_name: str, tool_input: dict[str, Any], result: ToolResult
) -> list[Discovery]:
    if not result.success or result.data is None:
        return []
    extractor = EXTRACTORS.get(tool_name)
    if extractor is None:
        return []
    return extractor(tool_input, result)


def merge_discoveries(known: list[Discovery], found: Iterable[Discovery]) -> list[Discovery]:
    """
    Append discoveries whose id is not yet in `known`.

    Mutates `known` in place and returns only the newly added entries, in order.
    """
    seen = {d.id for d in known}
    added: list[Discovery] = []
    for discovery in found:
        if discovery.id in seen:
            continue
        seen.add(discovery.id)
        known.append(discovery)
        added.append(discovery)
    return added


# ---------------------------------------------------------------------------
# Built-in extractors
# ---------------------------------------------------------------------------


def _from_directory_listing(tool_input: dict[str, Any], result: ToolResult) -> list[Discovery]:
    if not isinstance(result.data, list):
        return []

    discoveries: list[Discovery] = []
    for entry in result.data:
        if not isinstance(entry, dict) or not isinstance(entry.get("path"), str):
            continue
        path = entry["path"]
        name = entry.get("name")
        kind = "directory" if entry.get("kind") == "directory" else "file"
        discoveries.append(
            Discovery(
                id=f"{kind}-{path}",
                type=kind,
                path=path,
                description=f"{kind.capitalize()}: {name if isinstance(name, str) else path}",
            )
        )
    return discoveries


def _from_file_read(tool_input: dict[str, Any], result: ToolResult) -> list[Discovery]:
    data = result.data
    path = tool_input.get("path")
    if not isinstance(data, dict) or not isinstance(path, str) or not path:
        return []

    fmt = data.get("format")
    if isinstance(fmt, dict) and fmt.get("fileType"):
        columns = fmt.get("columns")
        if not isinstance(columns, list):
            columns = None
        description = f"{fmt['fileType']} file: {path}"
        if columns:
            description += f" with {len(columns)} columns"
        return [
            Discovery(
                id=f"data-type-{path}",
                type="data_type",
                path=path,
                description=description,
                metadata={
                    "fileType": fmt["fileType"],
                    "columns": columns,
                    "jsonStructure": fmt.get("jsonStructure"),
                    "delimiter": fmt.get("delimiter"),
                },
            )
        ]

    content = data.get("content")
    if not isinstance(content, str) or not content:
        return []
    sniffed = identify_data_type(content, path)
    if sniffed is None:
        return []
    kind, metadata = sniffed
    return [
        Discovery(
            id=f"data-type-{path}",
            type="data_type",
            path=path,
            description=f"{kind} data in {path}",
            metadata=metadata,
        )
    ]


def identify_data_type(content: str, path: str) -> tuple[str, dict[str, Any]] | None:
    """Best-effort sniffing for content that arrived without format info."""
    trimmed = content.strip()

    if trimmed[:1] in ("{", "["):
        try:
            parsed = json.loads(trimmed)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            return "JSON", {"isArray": True, "arrayLength": len(parsed)}
        if isinstance(parsed, dict):
            return "JSON", {"isArray": False, "topLevelKeys": list(parsed)[:10]}

    lines = trimmed.splitlines()
    if len(lines) > 1 and (path.lower().endswith(".csv") or "," in lines[0]):
        return "CSV", {
            "columns": [c.strip() for c in lines[0].split(",")],
            "rowCount": len(lines) - 1,
        }

    return None


register_extractor("list_directory", _from_directory_listing)
register_extractor("read_file", _from_file_read)
