# tools.py
# Tool implementations and the result-block helpers the runner uses.
#
# Every tool is a plain function `_tool_x(root, args) -> ToolResult` bound to
# a root directory by a factory. The runner never calls these directly; it
# only sees Tool objects and their result envelopes.

from __future__ import annotations

import csv
import io
import json
import mimetypes
import os
import re
import subprocess
import sys
import tempfile
from datetime import datetime, timezone
from functools import partial
from pathlib import Path
from typing import Any

from agent_runner.models import ImageBlock, TextBlock, Tool, ToolResult, ToolResultBlock

# ---------------------------------------------------------------------------
# Result blocks
# ---------------------------------------------------------------------------

_DATA_URL = re.compile(r"^data:(image/(?:png|jpeg|gif|webp));base64,(.+)$", re.DOTALL)


def create_tool_result(tool_use_id: str, text: str, is_error: bool = False) -> ToolResultBlock:
    return ToolResultBlock(tool_use_id=tool_use_id, content=text, is_error=is_error)


def create_tool_result_with_image(
    tool_use_id: str, text: str, data_url: str, is_error: bool = False
) -> ToolResultBlock:
    """Tool result carrying `[text, image]` so the model can inspect the picture."""
    match = _DATA_URL.match(data_url)
    if not match:
        raise ValueError("Invalid image data URL format")
    return ToolResultBlock(
        tool_use_id=tool_use_id,
        content=[
            TextBlock(text=text),
            ImageBlock(media_type=match.group(1), data=match.group(2)),
        ],
        is_error=is_error,
    )


def wants_image(result: ToolResult) -> bool:
    """True when the payload declares an embedded image via the includeImage convention."""
    data = result.data
    return (
        isinstance(data, dict)
        and data.get("includeImage") is True
        and isinstance(data.get("dataUrl"), str)
    )


# ---------------------------------------------------------------------------
# File-system helpers
# ---------------------------------------------------------------------------

DEFAULT_LINES = 30
MAX_LINES = 500
MAX_FULL_FILE_SIZE = 50 * 1024
MAX_OUTPUT_CHARS = 30_000

_BINARY_EXTENSIONS = {
    ".png", ".jpg", ".jpeg", ".gif", ".webp", ".bmp", ".ico", ".mp3", ".mp4",
    ".wav", ".flac", ".m4a", ".mov", ".avi", ".zip", ".gz", ".tar", ".pdf",
    ".fit", ".bin", ".exe", ".dll", ".so", ".sqlite", ".db",
}
_TEXT_EXTENSIONS = {
    ".txt", ".md", ".csv", ".tsv", ".json", ".jsonl", ".log", ".xml", ".html",
    ".htm", ".yaml", ".yml", ".ini", ".cfg", ".py", ".js", ".ts",
}


class PathEscapeError(ValueError):
    """Raised when a requested path resolves outside the tool root."""


def _resolve(root: Path, path: str) -> Path:
    candidate = (root / (path or "").lstrip("/")).resolve()
    root = root.resolve()
    if candidate != root and root not in candidate.parents:
        raise PathEscapeError(f"Path {path!r} is outside the permitted root.")
    return candidate


def _relative(root: Path, target: Path) -> str:
    return target.resolve().relative_to(root.resolve()).as_posix()


def format_bytes(size: int) -> str:
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024 or unit == "GB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GB"


def is_likely_binary(path: str) -> bool:
    return Path(path).suffix.lower() in _BINARY_EXTENSIONS


def is_likely_text(path: str) -> bool:
    return Path(path).suffix.lower() in _TEXT_EXTENSIONS


def _file_info(root: Path, path: str) -> dict[str, Any]:
    target = _resolve(root, path)
    if not target.is_file():
        raise FileNotFoundError(f"No such file: {path}")
    stat = target.stat()
    return {
        "name": target.name,
        "path": _relative(root, target),
        "size": stat.st_size,
        "type": mimetypes.guess_type(target.name)[0] or "application/octet-stream",
        "lastModified": datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat(),
    }


def _parse_delimited_header(line: str, delimiter: str) -> list[str]:
    row = next(csv.reader(io.StringIO(line), delimiter=delimiter), [])
    return [c.strip() for c in row]


def extract_format_info(path: str, content: str, all_lines: list[str]) -> dict[str, Any]:
    """File type plus the column / structure details a code writer needs."""
    ext = Path(path).suffix.lower().lstrip(".")
    info: dict[str, Any] = {"fileType": ext.upper() or "TEXT"}

    if ext in ("csv", "tsv"):
        delimiter = "\t" if ext == "tsv" else ","
        info["delimiter"] = delimiter
        if all_lines:
            info["columns"] = _parse_delimited_header(all_lines[0], delimiter)
            info["fileType"] = f"{ext.upper()} ({len(info['columns'])} columns)"

    if ext == "jsonl":
        first = next((line for line in all_lines if line.strip()), "")
        try:
            record = json.loads(first)
        except json.JSONDecodeError:
            info["jsonStructure"] = "Invalid or incomplete JSON"
        else:
            info["jsonStructure"] = "JSON Lines, one record per line"
            if isinstance(record, dict):
                info["columns"] = list(record)

    if ext == "json":
        try:
            parsed = json.loads(content.strip())
        except json.JSONDecodeError:
            info["jsonStructure"] = "Invalid or incomplete JSON"
        else:
            if isinstance(parsed, list):
                if parsed and isinstance(parsed[0], dict):
                    info["jsonStructure"] = f"Array of {len(parsed)} objects"
                    info["columns"] = list(parsed[0])
                else:
                    info["jsonStructure"] = f"Array of {len(parsed)} items"
            elif isinstance(parsed, dict):
                keys = list(parsed)
                suffix = "..." if len(keys) > 5 else ""
                info["jsonStructure"] = f"Object with keys: {', '.join(keys[:5])}{suffix}"
                info["columns"] = keys

    return info


# ---------------------------------------------------------------------------
# Tool implementations
# ---------------------------------------------------------------------------


def _tool_list_directory(root: Path, args: dict) -> ToolResult:
    path = args.get("path", "") or ""
    try:
        target = _resolve(root, path)
        if not target.is_dir():
            raise NotADirectoryError(f"Not a directory: {path or '/'}")
        children = sorted(target.iterdir(), key=lambda p: (not p.is_dir(), p.name.lower()))
    except (OSError, ValueError) as exc:
        return ToolResult(success=False, output=f'Error listing directory "{path}": {exc}')

    entries = [
        {
            "name": child.name,
            "kind": "directory" if child.is_dir() else "file",
            "path": _relative(root, child),
        }
        for child in children
    ]
    if not entries:
        return ToolResult(success=True, output="Directory is empty.", data=entries)

    lines = [f"{'[dir] ' if e['kind'] == 'directory' else '[file]'} {e['name']}" for e in entries]
    return ToolResult(
        success=True,
        output=f"Found {len(entries)} items:\n" + "\n".join(lines),
        data=entries,
    )


def _tool_get_file_info(root: Path, args: dict) -> ToolResult:
    path = args.get("path", "")
    try:
        info = _file_info(root, path)
    except (OSError, ValueError) as exc:
        return ToolResult(success=False, output=f'Error getting file info for "{path}": {exc}')

    category = "binary" if is_likely_binary(path) else "text" if is_likely_text(path) else "unknown"
    output = "\n".join(
        [
            f"File: {info['name']}",
            f"Path: {info['path']}",
            f"Size: {format_bytes(info['size'])}",
            f"Type: {info['type']}",
            f"Category: {category}",
            f"Last Modified: {info['lastModified']}",
        ]
    )
    return ToolResult(success=True, output=output, data={**info, "category": category})


def _tool_read_file(root: Path, args: dict) -> ToolResult:
    path = args.get("path", "")
    offset = args.get("offset")
    from_end = bool(args.get("fromEnd"))

    if offset is not None and from_end:
        return ToolResult(
            success=False,
            output='Error: Cannot use both "offset" and "fromEnd" parameters together. '
            "Use offset for chunked reading OR fromEnd for reading from the end.",
        )

    try:
        info = _file_info(root, path)
        if is_likely_binary(path):
            return ToolResult(
                success=True,
                output=f'Cannot read binary file "{path}" ({info["type"]}, '
                f"{format_bytes(info['size'])}). Use get_file_info for metadata.",
                data={"isBinary": True, "info": info},
            )
        text = _resolve(root, path).read_text(encoding="utf-8", errors="replace")
    except (OSError, ValueError) as exc:
        return ToolResult(success=False, output=f'Error reading file "{path}": {exc}')

    full_file = bool(args.get("fullFile")) and info["size"] <= MAX_FULL_FILE_SIZE
    line_count = min(int(args.get("lines") or DEFAULT_LINES), MAX_LINES)
    line_offset = int(offset or 0)
    all_lines = text.split("\n")
    total = len(all_lines)
    truncated = False

    if full_file:
        output = text
        lines_read = total
    else:
        if from_end:
            start, end = max(0, total - line_count), total
        elif line_offset > 0:
            if line_offset >= total:
                return ToolResult(
                    success=False,
                    output=f"Error: Offset {line_offset} exceeds total lines in file "
                    f"({total} lines). Try a smaller offset.",
                )
            start, end = line_offset, min(line_offset + line_count, total)
        else:
            start, end = 0, min(line_count, total)

        selected = all_lines[start:end]
        lines_read = len(selected)
        truncated = total > line_count
        output = "\n".join(selected)
        if line_offset > 0 or from_end:
            output += f"\n\n[Showing lines {start}-{end - 1} of {total} total lines]"
        elif truncated:
            output += (
                f"\n\n[... {total - line_count} remaining lines not shown. "
                f"File has {total} total lines.]"
            )

    if len(output) > MAX_OUTPUT_CHARS:
        suggested = max(1, (line_count * MAX_OUTPUT_CHARS) // len(output))
        return ToolResult(
            success=False,
            output=f"Error: Output exceeds {MAX_OUTPUT_CHARS:,} character limit "
            f"({len(output):,} chars). File has {total} total lines. "
            f"Try reading {suggested} lines at a time using the offset parameter.",
        )

    fmt = extract_format_info(path, output, all_lines)
    header = [
        f"File: {path}",
        f"Type: {fmt['fileType']}",
        f"Size: {format_bytes(info['size'])}",
        f"Total lines: {total}",
        f"Lines shown: {lines_read}",
    ]
    if fmt.get("columns"):
        header.append(f"Columns ({len(fmt['columns'])}): {', '.join(fmt['columns'])}")
    if fmt.get("jsonStructure"):
        header.append(f"JSON Structure: {fmt['jsonStructure']}")

    return ToolResult(
        success=True,
        output=" | ".join(header) + "\n" + "─" * 60 + "\n" + output,
        data={
            "content": output,
            "info": info,
            "linesRead": lines_read,
            "totalLines": total,
            "offset": line_offset,
            "truncated": truncated,
            "fromEnd": from_end,
            "format": fmt,
        },
    )


_SMART_DEFAULTS = {
    ".json": (50, False),
    ".csv": (20, False),
    ".tsv": (20, False),
    ".log": (50, True),
    ".md": (40, False),
    ".txt": (40, False),
}


def _tool_smart_read_file(root: Path, args: dict) -> ToolResult:
    """read_file with per-extension defaults. Explicit arguments always win."""
    args = dict(args)
    if args.get("offset") is None:
        lines, from_end = _SMART_DEFAULTS.get(Path(args.get("path", "")).suffix.lower(), (None, False))
        if lines and not args.get("lines"):
            args["lines"] = lines
        if from_end and args.get("fromEnd") is None:
            args["fromEnd"] = True
    return _tool_read_file(root, args)


_RESULT_MARKER = "__AGENT_RUNNER_RESULT__"

# The only parent variables a snippet inherits. Credentials never reach it.
_CHILD_ENV_KEYS = ("PATH", "SYSTEMROOT", "LANG")

_CODE_PRELUDE = '''\
import csv, json, os
ROOT = os.path.realpath(os.environ["AGENT_CODE_ROOT"])

def read_file(path):
    full = os.path.realpath(os.path.join(ROOT, str(path).lstrip("/")))
    if os.path.commonpath([ROOT, full]) != ROOT:
        raise PermissionError(f"Path {path!r} is outside the permitted root.")
    ext = os.path.splitext(full)[1].lower()
    with open(full, encoding="utf-8", errors="replace", newline="") as fh:
        if ext in (".csv", ".tsv"):
            return list(csv.DictReader(fh, delimiter="\\t" if ext == ".tsv" else ","))
        if ext == ".json":
            return json.load(fh)
        if ext == ".jsonl":
            return [json.loads(line) for line in fh if line.strip()]
        return fh.read()

result = None
'''

_CODE_EPILOGUE = f'''
print({_RESULT_MARKER!r})
print(json.dumps(result, default=str))
'''


def _tool_execute_code(root: Path, timeout: float, args: dict) -> ToolResult:
    code = args.get("code", "")
    if not code.strip():
        return ToolResult(success=False, output="Error: no code provided.")

    with tempfile.TemporaryDirectory() as workdir:
        script = Path(workdir) / "snippet.py"
        script.write_text(_CODE_PRELUDE + "\n" + code + "\n" + _CODE_EPILOGUE, encoding="utf-8")
        env = {k: os.environ[k] for k in _CHILD_ENV_KEYS if k in os.environ}
        env["AGENT_CODE_ROOT"] = str(root.resolve())
        try:
            proc = subprocess.run(
                [sys.executable, "-I", str(script)],
                cwd=workdir,
                env=env,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            return ToolResult(success=False, output=f"Code execution timed out after {timeout:g}s.")

    logs, _, tail = proc.stdout.partition(_RESULT_MARKER)
    logs = logs.strip()
    if proc.returncode != 0:
        return ToolResult(
            success=False,
            output=f"Code execution failed:\n{proc.stderr.strip()}" + (f"\n\nLogs:\n{logs}" if logs else ""),
            data={"logs": logs, "stderr": proc.stderr},
        )

    try:
        value = json.loads(tail.strip() or "null")
    except json.JSONDecodeError:
        value = tail.strip()
    rendered = json.dumps(value, indent=2, default=str)
    output = f"Result:\n{rendered}"
    if logs:
        output = f"Logs:\n{logs}\n\n{output}"
    return ToolResult(success=True, output=output, data={"result": value, "logs": logs})


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

_PATH_SCHEMA = {
    "type": "string",
    "description": "Path relative to the root. Use an empty string or '/' for the root itself.",
}


def create_list_directory_tool(root: str | Path) -> Tool:
    return Tool(
        name="list_directory",
        description="List the contents of a directory. Returns files and subdirectories "
        "with their types. Use this to explore the file structure.",
        input_schema={"type": "object", "properties": {"path": _PATH_SCHEMA}, "required": ["path"]},
        execute=partial(_tool_list_directory, Path(root)),
    )


_READ_FILE_SCHEMA = {
    "type": "object",
    "properties": {
        "path": _PATH_SCHEMA,
        "lines": {"type": "number", "description": "Number of lines to read. Default 30, max 500."},
        "offset": {"type": "number", "description": "Start line (0-indexed) for chunked reads."},
        "fullFile": {"type": "boolean", "description": "Read the entire file if under 50KB."},
        "fromEnd": {"type": "boolean", "description": "Read the last N lines. Not combinable with offset."},
    },
    "required": ["path"],
}

_READ_FILE_DESCRIPTION = (
    "Read a text file with automatic format detection. Reports file type, CSV/TSV "
    "column headers and delimiter, JSON structure and key names, and total line "
    "count. Output is limited to 30,000 characters; read large files in chunks with "
    "offset. Binary files cannot be read; use get_file_info instead."
)


def create_read_file_tool(root: str | Path) -> Tool:
    return Tool(
        name="read_file",
        description=_READ_FILE_DESCRIPTION,
        input_schema=_READ_FILE_SCHEMA,
        execute=partial(_tool_read_file, Path(root)),
    )


def create_smart_read_file_tool(root: str | Path) -> Tool:
    return Tool(
        name="read_file",
        description=_READ_FILE_DESCRIPTION,
        input_schema=_READ_FILE_SCHEMA,
        execute=partial(_tool_smart_read_file, Path(root)),
    )


def create_get_file_info_tool(root: str | Path) -> Tool:
    return Tool(
        name="get_file_info",
        description="Get file metadata (size, type, last modified) without reading its contents.",
        input_schema={"type": "object", "properties": {"path": _PATH_SCHEMA}, "required": ["path"]},
        execute=partial(_tool_get_file_info, Path(root)),
    )


def create_execute_code_tool(root: str | Path, timeout: float = 30.0) -> Tool:
    return Tool(
        name="execute_code",
        description=(
            "Execute Python code to analyze the data files. `read_file(path)` returns parsed "
            "CSV/TSV rows (list of dicts), parsed JSON, JSONL records, or raw text. "
            "print() output is captured as logs. Assign the final value to `result`; it is "
            f"returned as JSON. Runs in a separate process with a {timeout:g}s timeout."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "code": {"type": "string", "description": "Python source to execute."},
                "description": {"type": "string", "description": "What this code does."},
            },
            "required": ["code"],
        },
        execute=partial(_tool_execute_code, Path(root), timeout),
    )


def create_file_system_tools(root: str | Path) -> list[Tool]:
    """Exploration tool set: listing, smart reads, metadata."""
    return [
        create_list_directory_tool(root),
        create_smart_read_file_tool(root),
        create_get_file_info_tool(root),
    ]


def create_code_writer_tools(root: str | Path, timeout: float = 30.0) -> list[Tool]:
    return [create_read_file_tool(root), create_execute_code_tool(root, timeout)]
