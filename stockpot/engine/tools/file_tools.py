"""Built-in file tools: read, list, grep, edit and delete.

All paths go through the WorkTree so nothing outside the project root
is read or written. Edits are computed by the diff engine in memory
first and only written back when they apply cleanly.
"""
from __future__ import annotations

import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any

from ..errors import DiffConflictError, ToolInvocationError
from ..models import Capability
from ..tool_registry import ToolContext, ToolSpec
from .diff import (
    ContentPayload,
    DeleteSnippetPayload,
    DiffPayload,
    EditPayload,
    Replacement,
    ReplacementsPayload,
    apply_edit,
    make_unified_diff,
    parse_unified_diff,
)

logger = logging.getLogger(__name__)

IGNORE_PATTERNS = (
    ".git", ".svn", ".hg",
    "node_modules", "vendor", ".venv", "venv", "__pycache__",
    "target", "dist", "build", ".next", ".nuxt",
    ".idea", ".vscode",
    ".cache", ".pytest_cache", ".mypy_cache",
    ".npm", ".yarn", ".pnpm-store",
)

READ_MAX_BYTES = 10 * 1024 * 1024
LIST_DEFAULT_MAX_ENTRIES = 2000
LIST_HARD_MAX_ENTRIES = 10000
LIST_DEFAULT_MAX_DEPTH = 10
LIST_HARD_MAX_DEPTH = 50
GREP_DEFAULT_MAX_MATCHES = 100
GREP_HARD_MAX_MATCHES = 200
GREP_MAX_MATCHES_PER_FILE = 10
GREP_MAX_LINE_LENGTH = 512
GREP_MAX_FILE_BYTES = 5 * 1024 * 1024


def should_ignore(relative_path: str) -> bool:
    parts = Path(relative_path).parts
    return any(part.lower() in IGNORE_PATTERNS for part in parts)


def _read_text(path: Path, tool_name: str) -> str:
    try:
        # newline="" keeps "\r\n" as written.
        with open(path, encoding="utf-8", newline="") as handle:
            return handle.read()
    except FileNotFoundError:
        raise ToolInvocationError(tool_name, f"file not found: {path}") from None
    except IsADirectoryError:
        raise ToolInvocationError(tool_name, f"is a directory: {path}") from None
    except UnicodeDecodeError:
        raise ToolInvocationError(tool_name, f"not a UTF-8 text file: {path}") from None
    except OSError as exc:
        raise ToolInvocationError(tool_name, f"failed to read {path}: {exc}") from exc


def _write_text(path: Path, content: str) -> None:
    """Write via a sibling temp file so readers never see partial content."""
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
            handle.write(content)
        if path.exists():
            os.chmod(tmp_name, path.stat().st_mode & 0o7777)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


# ── read_file ──────────────────────────────────────────────────────


async def read_file(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    path = ctx.work_tree.resolve(args["file_path"], "read_file")
    if path.is_file() and path.stat().st_size > READ_MAX_BYTES:
        raise ToolInvocationError(
            "read_file",
            f"file too large: {path.stat().st_size} bytes (max {READ_MAX_BYTES})",
        )
    text = _read_text(path, "read_file")
    lines = text.splitlines()
    start_line = args.get("start_line")
    if start_line is not None:
        start = max(int(start_line), 1) - 1
        num_lines = args.get("num_lines")
        end = len(lines) if num_lines is None else min(start + max(int(num_lines), 0), len(lines))
        content = "\n".join(lines[start:end])
    else:
        content = text
    return {
        "path": ctx.work_tree.relative(path),
        "content": content,
        "total_lines": len(lines),
    }


# ── list_files ─────────────────────────────────────────────────────


async def list_files(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    base = ctx.work_tree.resolve(args.get("directory") or ".", "list_files")
    if not base.exists():
        raise ToolInvocationError("list_files", f"path not found: {args.get('directory')}")
    if not base.is_dir():
        raise ToolInvocationError("list_files", f"not a directory: {args.get('directory')}")

    recursive = bool(args.get("recursive", True))
    max_depth = min(int(args.get("max_depth") or LIST_DEFAULT_MAX_DEPTH), LIST_HARD_MAX_DEPTH)
    max_entries = min(
        max(int(args.get("max_entries") or LIST_DEFAULT_MAX_ENTRIES), 1),
        LIST_HARD_MAX_ENTRIES,
    )

    entries: list[dict[str, Any]] = []
    truncated = False

    def _walk(directory: Path, depth: int) -> None:
        nonlocal truncated
        if depth > max_depth or truncated:
            return
        try:
            children = sorted(directory.iterdir(), key=lambda p: p.name)
        except OSError:
            if depth == 0:
                raise
            return
        for child in children:
            if len(entries) >= max_entries:
                truncated = True
                return
            rel = str(child.relative_to(base))
            if should_ignore(rel):
                continue
            if child.is_symlink() and not ctx.work_tree.contains(child):
                continue
            try:
                is_dir = child.is_dir()
                size = 0 if is_dir else child.stat().st_size
            except OSError:
                continue
            entries.append({"path": rel, "is_dir": is_dir, "size": size, "depth": depth})
            if is_dir and recursive and not child.is_symlink():
                _walk(child, depth + 1)

    try:
        _walk(base, 0)
    except OSError as exc:
        raise ToolInvocationError("list_files", f"cannot list {base}: {exc}") from exc

    files = [e for e in entries if not e["is_dir"]]
    return {
        "directory": ctx.work_tree.relative(base),
        "entries": entries,
        "total_files": len(files),
        "total_dirs": len(entries) - len(files),
        "total_size": sum(e["size"] for e in files),
        "truncated": truncated,
    }


# ── grep ───────────────────────────────────────────────────────────


def _compile_pattern(pattern: str) -> re.Pattern[str]:
    flags = 0
    for prefix in ("--ignore-case ", "-i "):
        if pattern.startswith(prefix):
            pattern = pattern[len(prefix):]
            flags = re.IGNORECASE
            break
    pattern = pattern.strip()
    if not pattern:
        raise ToolInvocationError("grep", "pattern must not be empty")
    try:
        return re.compile(pattern, flags)
    except re.error:
        # Not a valid regex: search for it literally.
        return re.compile(re.escape(pattern), flags)


async def grep(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    regex = _compile_pattern(str(args.get("pattern") or ""))
    base = ctx.work_tree.resolve(args.get("directory") or ".", "grep")
    if not base.is_dir():
        raise ToolInvocationError("grep", f"not a directory: {args.get('directory')}")
    max_matches = min(
        int(args.get("max_results") or GREP_DEFAULT_MAX_MATCHES), GREP_HARD_MAX_MATCHES
    )

    matches: list[dict[str, Any]] = []
    for root, dirs, files in os.walk(base):
        root_path = Path(root)
        rel_root = root_path.relative_to(base)
        dirs[:] = sorted(
            d for d in dirs
            if not should_ignore(str(rel_root / d))
            and len((rel_root / d).parts) <= LIST_DEFAULT_MAX_DEPTH
        )
        for name in sorted(files):
            if len(matches) >= max_matches:
                break
            path = root_path / name
            if not ctx.work_tree.contains(path):
                # link out of the tree
                continue
            try:
                if path.stat().st_size > GREP_MAX_FILE_BYTES:
                    continue
                text = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError):
                continue
            per_file = 0
            for number, line in enumerate(text.splitlines(), start=1):
                if not regex.search(line):
                    continue
                if len(line) > GREP_MAX_LINE_LENGTH:
                    extra = len(line) - GREP_MAX_LINE_LENGTH
                    line = f"{line[:GREP_MAX_LINE_LENGTH]} [...{extra} more chars]"
                matches.append({
                    "path": str(path.relative_to(base)),
                    "line_number": number,
                    "content": line,
                })
                per_file += 1
                if per_file >= GREP_MAX_MATCHES_PER_FILE or len(matches) >= max_matches:
                    break
        if len(matches) >= max_matches:
            break

    return {"matches": matches, "total_matches": len(matches)}


# ── edit_file / delete_file ────────────────────────────────────────


_EDIT_MODES = ("content", "replacements", "delete_snippet", "diff")


def build_payload(path: str, args: dict[str, Any]) -> EditPayload:
    """Pick the edit payload from tool arguments. Exactly one mode allowed."""
    modes = [m for m in _EDIT_MODES if args.get(m) is not None]
    if len(modes) != 1:
        raise ToolInvocationError(
            "edit_file",
            f"provide exactly one of {', '.join(_EDIT_MODES)} (got {len(modes)})",
        )
    mode = modes[0]
    if mode == "content":
        return ContentPayload(path, str(args["content"]), bool(args.get("overwrite", False)))
    if mode == "delete_snippet":
        return DeleteSnippetPayload(path, str(args["delete_snippet"]))
    if mode == "diff":
        return DiffPayload(path, str(args["diff"]))

    replacements = []
    for item in args["replacements"]:
        if not isinstance(item, dict) or "old_str" not in item or "new_str" not in item:
            raise ToolInvocationError(
                "edit_file", "each replacement needs 'old_str' and 'new_str'"
            )
        replacements.append(Replacement(str(item["old_str"]), str(item["new_str"])))
    return ReplacementsPayload(path, tuple(replacements))


async def edit_file(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    path = ctx.work_tree.resolve(args["file_path"], "edit_file")
    rel = ctx.work_tree.relative(path)
    payload = build_payload(rel, args)
    if path.is_dir():
        raise ToolInvocationError("edit_file", f"is a directory: {rel}")

    current = _read_text(path, "edit_file") if path.exists() else None
    new_content = apply_edit(payload, current, fuzz=ctx.config.diff_fuzz_lines)

    if isinstance(payload, DiffPayload):
        patches = [p for p in parse_unified_diff(payload.diff) if p.hunks]
        if patches and patches[0].is_deleted_file:
            path.unlink()
            logger.info("edit_file deleted %s via diff", rel)
            return {"path": rel, "deleted": True, "diff": make_unified_diff(current or "", "", rel)}

    if not path.parent.exists():
        if not args.get("create_directories", True):
            raise DiffConflictError(rel, "parent directory does not exist")
        path.parent.mkdir(parents=True, exist_ok=True)

    try:
        _write_text(path, new_content)
    except OSError as exc:
        raise ToolInvocationError("edit_file", f"failed to write {rel}: {exc}") from exc

    logger.info(
        "edit_file %s %s (%d -> %d chars)",
        "created" if current is None else "updated",
        rel, len(current or ""), len(new_content),
    )
    return {
        "path": rel,
        "created": current is None,
        "changed": current != new_content,
        "diff": make_unified_diff(current or "", new_content, rel),
    }


async def delete_file(args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
    path = ctx.work_tree.resolve(args["file_path"], "delete_file")
    rel = ctx.work_tree.relative(path)
    if path == ctx.work_tree.root:
        raise ToolInvocationError("delete_file", "refusing to delete the project root")
    if not path.exists():
        raise ToolInvocationError("delete_file", f"file not found: {rel}")
    if path.is_dir():
        raise ToolInvocationError("delete_file", f"is a directory: {rel}")
    path.unlink()
    logger.info("delete_file removed %s", rel)
    return {"path": rel, "deleted": True}


_PATH_PROP = {"type": "string", "description": "Path relative to the project root"}

FILE_TOOLS = [
    ToolSpec(
        name="read_file",
        description="Read a text file, optionally a range of lines (1-based).",
        handler=read_file,
        parameters={
            "type": "object",
            "properties": {
                "file_path": _PATH_PROP,
                "start_line": {"type": "integer"},
                "num_lines": {"type": "integer"},
            },
            "required": ["file_path"],
        },
        capability=Capability.FILE_READ,
    ),
    ToolSpec(
        name="list_files",
        description="List files and directories, skipping VCS and build folders.",
        handler=list_files,
        parameters={
            "type": "object",
            "properties": {
                "directory": _PATH_PROP,
                "recursive": {"type": "boolean"},
                "max_depth": {"type": "integer"},
                "max_entries": {"type": "integer"},
            },
        },
        capability=Capability.FILE_READ,
    ),
    ToolSpec(
        name="grep",
        description=(
            "Search file contents with a regular expression. Prefix the "
            "pattern with '-i ' for a case-insensitive search."
        ),
        handler=grep,
        parameters={
            "type": "object",
            "properties": {
                "pattern": {"type": "string"},
                "directory": _PATH_PROP,
                "max_results": {"type": "integer"},
            },
            "required": ["pattern"],
        },
        capability=Capability.FILE_READ,
    ),
    ToolSpec(
        name="edit_file",
        description=(
            "Create or change a file. Give exactly one of: content (whole "
            "file; set overwrite to replace an existing file), replacements "
            "(list of {old_str, new_str}, each old_str must match exactly "
            "once), delete_snippet (text to remove, must match once) or "
            "diff (a unified diff)."
        ),
        handler=edit_file,
        parameters={
            "type": "object",
            "properties": {
                "file_path": _PATH_PROP,
                "content": {"type": "string"},
                "overwrite": {"type": "boolean"},
                "replacements": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "old_str": {"type": "string"},
                            "new_str": {"type": "string"},
                        },
                        "required": ["old_str", "new_str"],
                    },
                },
                "delete_snippet": {"type": "string"},
                "diff": {"type": "string"},
                "create_directories": {"type": "boolean"},
            },
            "required": ["file_path"],
        },
        capability=Capability.FILE_WRITE,
    ),
    ToolSpec(
        name="delete_file",
        description="Delete a single file.",
        handler=delete_file,
        parameters={
            "type": "object",
            "properties": {"file_path": _PATH_PROP},
            "required": ["file_path"],
        },
        capability=Capability.FILE_WRITE,
    ),
]
