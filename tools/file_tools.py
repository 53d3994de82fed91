"""Local file tools: read, write, edit and list.

Blocking filesystem work runs in a worker thread so a slow disk does not
stall the event loop.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Any, Dict, List

from agent.errors import ToolExecutionFailed
from tools.registry import ToolSpec

logger = logging.getLogger(__name__)

DEFAULT_READ_LIMIT = 2000
MAX_LISTING_ENTRIES = 500


def _require_str(args: Dict[str, Any], key: str) -> str:
    value = args.get(key)
    if not isinstance(value, str) or not value:
        raise ToolExecutionFailed(f"Missing required argument: {key}")
    return value


def _as_int(args: Dict[str, Any], key: str, default: int) -> int:
    value = args.get(key, default)
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ToolExecutionFailed(f"Argument {key} must be an integer, got {value!r}")


def _read(path: str, offset: int, limit: int) -> str:
    p = Path(path).expanduser()
    if not p.exists():
        raise ToolExecutionFailed(f"File not found: {path}")
    if p.is_dir():
        raise ToolExecutionFailed(f"Path is a directory: {path}")
    with open(p, "r", encoding="utf-8", errors="replace") as f:
        lines = f.readlines()
    start = max(offset, 1) - 1
    selected = lines[start:start + limit]
    numbered = [f"{start + i + 1:6d}\t{line.rstrip(chr(10))}" for i, line in enumerate(selected)]
    text = "\n".join(numbered)
    remaining = len(lines) - (start + len(selected))
    if remaining > 0:
        text += f"\n\n[{remaining} more lines; continue with offset={start + len(selected) + 1}]"
    return text


async def read_file_handler(args: Dict[str, Any], token) -> str:
    path = _require_str(args, "path")
    offset = _as_int(args, "offset", 1)
    limit = _as_int(args, "limit", DEFAULT_READ_LIMIT)
    return await asyncio.to_thread(_read, path, offset, limit)


def _write(path: str, content: str) -> str:
    p = Path(path).expanduser()
    if p.is_dir():
        raise ToolExecutionFailed(f"Path is a directory: {path}")
    p.parent.mkdir(parents=True, exist_ok=True)
    with open(p, "w", encoding="utf-8") as f:
        f.write(content)
    return f"Wrote {len(content)} characters to {path}"


async def write_file_handler(args: Dict[str, Any], token) -> str:
    path = _require_str(args, "path")
    content = args.get("content")
    if not isinstance(content, str):
        raise ToolExecutionFailed("Missing required argument: content")
    return await asyncio.to_thread(_write, path, content)


def _edit(path: str, old: str, new: str, replace_all: bool) -> str:
    p = Path(path).expanduser()
    if not p.is_file():
        raise ToolExecutionFailed(f"File not found: {path}")
    with open(p, "r", encoding="utf-8") as f:
        text = f.read()
    count = text.count(old)
    if count == 0:
        raise ToolExecutionFailed(f"old_string not found in {path}")
    if count > 1 and not replace_all:
        raise ToolExecutionFailed(
            f"old_string occurs {count} times in {path}; add context to make it unique "
            f"or set replace_all"
        )
    updated = text.replace(old, new) if replace_all else text.replace(old, new, 1)
    with open(p, "w", encoding="utf-8") as f:
        f.write(updated)
    return f"Replaced {count if replace_all else 1} occurrence(s) in {path}"


async def edit_file_handler(args: Dict[str, Any], token) -> str:
    path = _require_str(args, "path")
    old = _require_str(args, "old_string")
    new = args.get("new_string")
    if not isinstance(new, str):
        raise ToolExecutionFailed("Missing required argument: new_string")
    if old == new:
        raise ToolExecutionFailed("old_string and new_string are identical")
    return await asyncio.to_thread(_edit, path, old, new, bool(args.get("replace_all", False)))


def _list(path: str) -> str:
    p = Path(path).expanduser()
    if not p.exists():
        raise ToolExecutionFailed(f"Directory not found: {path}")
    if not p.is_dir():
        raise ToolExecutionFailed(f"Not a directory: {path}")
    entries: List[str] = []
    for entry in sorted(os.scandir(p), key=lambda e: e.name):
        entries.append(entry.name + ("/" if entry.is_dir() else ""))
        if len(entries) >= MAX_LISTING_ENTRIES:
            entries.append(f"... (truncated at {MAX_LISTING_ENTRIES} entries)")
            break
    return "\n".join(entries) if entries else "(empty directory)"


async def list_directory_handler(args: Dict[str, Any], token) -> str:
    path = args.get("path") or "."
    return await asyncio.to_thread(_list, str(path))


FILE_TOOLS = [
    ToolSpec(
        name="read_file",
        description="Read a text file and return its lines prefixed with line numbers.",
        parameters={
            "path": {"type": "string", "description": "Path of the file to read"},
            "offset": {"type": "integer", "description": "1-based line to start from (default 1)"},
            "limit": {"type": "integer", "description": f"Maximum lines to return (default {DEFAULT_READ_LIMIT})"},
        },
        required=["path"],
        handler=read_file_handler,
    ),
    ToolSpec(
        name="write_file",
        description="Create or overwrite a file with the given content. Parent directories are created.",
        parameters={
            "path": {"type": "string", "description": "Path of the file to write"},
            "content": {"type": "string", "description": "Full file content"},
        },
        required=["path", "content"],
        handler=write_file_handler,
        needs_permission=True,
    ),
    ToolSpec(
        name="edit_file",
        description=(
            "Replace old_string with new_string in a file. old_string must occur exactly once "
            "unless replace_all is set."
        ),
        parameters={
            "path": {"type": "string", "description": "Path of the file to edit"},
            "old_string": {"type": "string", "description": "Exact text to replace"},
            "new_string": {"type": "string", "description": "Replacement text"},
            "replace_all": {"type": "boolean", "description": "Replace every occurrence"},
        },
        required=["path", "old_string", "new_string"],
        handler=edit_file_handler,
        needs_permission=True,
    ),
    ToolSpec(
        name="list_directory",
        description="List the entries of a directory; subdirectories end with '/'.",
        parameters={
            "path": {"type": "string", "description": "Directory to list (default: current directory)"},
        },
        handler=list_directory_handler,
    ),
]
