"""Diff engine.

Turns an edit payload plus the current file content into new file
content. Nothing here touches the disk: callers read the file, call
``apply_edit`` and write the result back only if it succeeded, so a
failed edit never leaves a half-written file behind.

Payload kinds:

    ContentPayload         full replacement, refused for an existing
                           file unless ``overwrite`` is set
    ReplacementsPayload    ordered exact-substring replacements; each
                           old text must occur exactly once
    DeleteSnippetPayload   remove one exact occurrence of a snippet
    DiffPayload            a unified diff, verified hunk by hunk with a
                           small positional fuzz
"""
from __future__ import annotations

import difflib
import logging
import re
from dataclasses import dataclass, field
from typing import Union

from ..errors import (
    AlreadyExistsError,
    AmbiguousMatchError,
    DiffConflictError,
    NoMatchError,
    PatchDidNotApplyError,
)

logger = logging.getLogger(__name__)

DEV_NULL = "/dev/null"
DEFAULT_FUZZ = 3

_HUNK_HEADER = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@ ?(.*)$")


@dataclass(frozen=True)
class ContentPayload:
    path: str
    content: str
    overwrite: bool = False


@dataclass(frozen=True)
class Replacement:
    old_text: str
    new_text: str


@dataclass(frozen=True)
class ReplacementsPayload:
    path: str
    replacements: tuple[Replacement, ...]


@dataclass(frozen=True)
class DeleteSnippetPayload:
    path: str
    snippet: str


@dataclass(frozen=True)
class DiffPayload:
    path: str
    diff: str


EditPayload = Union[ContentPayload, ReplacementsPayload, DeleteSnippetPayload, DiffPayload]


# ── Unified diff model ─────────────────────────────────────────────


@dataclass
class Hunk:
    old_start: int
    old_count: int
    new_start: int
    new_count: int
    section: str = ""
    # (op, text) with op in " ", "-", "+"
    lines: list[tuple[str, str]] = field(default_factory=list)
    old_missing_newline: bool = False
    new_missing_newline: bool = False

    @property
    def old_lines(self) -> list[str]:
        return [text for op, text in self.lines if op != "+"]

    @property
    def new_lines(self) -> list[str]:
        return [text for op, text in self.lines if op != "-"]


@dataclass
class FilePatch:
    old_path: str | None = None
    new_path: str | None = None
    hunks: list[Hunk] = field(default_factory=list)

    @property
    def is_new_file(self) -> bool:
        return self.old_path == DEV_NULL

    @property
    def is_deleted_file(self) -> bool:
        return self.new_path == DEV_NULL

    @property
    def path(self) -> str | None:
        if self.new_path and self.new_path != DEV_NULL:
            return self.new_path
        if self.old_path and self.old_path != DEV_NULL:
            return self.old_path
        return None


def is_unified_diff(text: str) -> bool:
    """Cheap check for text that looks like a unified diff."""
    return "@@" in text and ("---" in text or "+++" in text)


def _clean_header_path(raw: str) -> str:
    path = raw.split("\t", 1)[0].strip()
    if path == DEV_NULL:
        return path
    if path.startswith(("a/", "b/")):
        path = path[2:]
    return path


def parse_unified_diff(text: str) -> list[FilePatch]:
    """Parse diff text into per-file patches.

    Lenient the way hand-written diffs need: hunk counts are not
    enforced, an empty line inside a hunk is context, and a line with
    no recognised prefix is treated as context too. Lines are split on
    "\\n" only, the same way hunks are applied, so a "\\r" before the
    newline belongs to the line.
    """
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    patches: list[FilePatch] = []
    current: FilePatch | None = None
    hunk: Hunk | None = None
    last_op: str | None = None
    i = 0
    while i < len(lines):
        line = lines[i]

        if line.startswith("--- ") and i + 1 < len(lines) and lines[i + 1].startswith("+++ "):
            current = FilePatch(
                old_path=_clean_header_path(line[4:]),
                new_path=_clean_header_path(lines[i + 1][4:]),
            )
            patches.append(current)
            hunk = None
            i += 2
            continue

        match = _HUNK_HEADER.match(line)
        if match:
            if current is None:
                current = FilePatch()
                patches.append(current)
            hunk = Hunk(
                old_start=int(match.group(1)),
                old_count=int(match.group(2)) if match.group(2) is not None else 1,
                new_start=int(match.group(3)),
                new_count=int(match.group(4)) if match.group(4) is not None else 1,
                section=match.group(5).strip(),
            )
            current.hunks.append(hunk)
            last_op = None
            i += 1
            continue

        if hunk is None or line.startswith(("diff ", "index ")):
            # preamble, git metadata or commentary between files
            i += 1
            continue

        if line.startswith("\\"):
            if last_op in (" ", "-"):
                hunk.old_missing_newline = True
            if last_op in (" ", "+"):
                hunk.new_missing_newline = True
        elif line == "":
            hunk.lines.append((" ", ""))
            last_op = " "
        elif line[0] in " -+":
            hunk.lines.append((line[0], line[1:]))
            last_op = line[0]
        else:
            hunk.lines.append((" ", line))
            last_op = " "
        i += 1

    for patch in patches:
        for h in patch.hunks:
            _trim_trailing_blank_context(h)
    return patches


def _trim_trailing_blank_context(hunk: Hunk) -> None:
    # Blank lines after the last real hunk line usually separate files or
    # trail the text block; keep only as many as the header accounts for.
    while (
        hunk.lines
        and hunk.lines[-1] == (" ", "")
        and len(hunk.old_lines) > hunk.old_count
        and len(hunk.new_lines) > hunk.new_count
    ):
        hunk.lines.pop()


def _split_lines(text: str) -> tuple[list[str], bool]:
    if text == "":
        return [], True
    if text.endswith("\n"):
        return text[:-1].split("\n"), True
    return text.split("\n"), False


def _join_lines(lines: list[str], trailing_newline: bool) -> str:
    if not lines:
        return ""
    return "\n".join(lines) + ("\n" if trailing_newline else "")


def _locate(
    source: list[str],
    needle: list[str],
    expected: int,
    lower_bound: int,
    fuzz: int,
) -> int | None:
    upper = len(source) - len(needle)
    for distance in range(fuzz + 1):
        for candidate in ((expected,) if distance == 0 else (expected - distance, expected + distance)):
            if candidate < lower_bound or candidate > upper:
                continue
            if source[candidate:candidate + len(needle)] == needle:
                return candidate
    return None


def apply_patch(original: str, patch: FilePatch, *, fuzz: int = DEFAULT_FUZZ) -> str:
    """Apply one file's hunks to ``original``. All hunks or nothing."""
    label = patch.path or "<diff>"
    if patch.is_new_file:
        if original:
            raise AlreadyExistsError(label)
        new_lines = [line for h in patch.hunks for line in h.new_lines]
        missing = any(h.new_missing_newline for h in patch.hunks)
        return _join_lines(new_lines, not missing)

    source, trailing = _split_lines(original)
    placements: list[tuple[int, Hunk]] = []
    lower_bound = 0
    for index, hunk in enumerate(patch.hunks, start=1):
        old = hunk.old_lines
        expected = hunk.old_start if hunk.old_count == 0 else hunk.old_start - 1
        expected = max(expected, 0)
        if not old:
            if expected > len(source) + fuzz:
                raise PatchDidNotApplyError(
                    label, index, f"insertion point line {hunk.old_start} is past end of file"
                )
            position = min(max(expected, lower_bound), len(source))
        else:
            position = _locate(source, old, expected, lower_bound, fuzz)
            if position is None:
                raise PatchDidNotApplyError(
                    label,
                    index,
                    f"context does not match near line {hunk.old_start} (fuzz {fuzz})",
                )
        if position != expected:
            logger.debug(
                "Hunk %d of %s applied at offset %+d", index, label, position - expected
            )
        placements.append((position, hunk))
        lower_bound = position + len(old)

    result: list[str] = []
    cursor = 0
    for position, hunk in placements:
        result.extend(source[cursor:position])
        result.extend(hunk.new_lines)
        cursor = position + len(hunk.old_lines)
    result.extend(source[cursor:])

    if patch.is_deleted_file:
        if result:
            raise PatchDidNotApplyError(
                label, len(patch.hunks), "file deletion leaves lines behind"
            )
        return ""

    if any(h.new_missing_newline for h in patch.hunks):
        trailing = False
    elif any(h.old_missing_newline for h in patch.hunks):
        trailing = True
    return _join_lines(result, trailing)


def apply_unified_diff(original: str, diff_text: str, *, fuzz: int = DEFAULT_FUZZ) -> str:
    """Apply a single-file unified diff to ``original``."""
    patches = [p for p in parse_unified_diff(diff_text) if p.hunks]
    if not patches:
        if diff_text.strip():
            raise DiffConflictError("<diff>", "no hunks found in diff")
        return original
    if len(patches) > 1:
        raise DiffConflictError(
            patches[0].path or "<diff>",
            f"diff touches {len(patches)} files; apply one file at a time",
        )
    return apply_patch(original, patches[0], fuzz=fuzz)


def _lines_with_endings(text: str) -> list[str]:
    # Only "\n" ends a line; "\r" and form feeds stay part of the content.
    parts = text.split("\n")
    lines = [part + "\n" for part in parts[:-1]]
    if parts[-1]:
        lines.append(parts[-1])
    return lines


def make_unified_diff(old: str, new: str, path: str, *, context: int = 3) -> str:
    """Render the change from ``old`` to ``new`` as a unified diff."""
    fromfile = DEV_NULL if old == "" and new != "" else f"a/{path}"
    tofile = DEV_NULL if new == "" and old != "" else f"b/{path}"
    out: list[str] = []
    for line in difflib.unified_diff(
        _lines_with_endings(old),
        _lines_with_endings(new),
        fromfile=fromfile,
        tofile=tofile,
        n=context,
    ):
        if line.endswith("\n"):
            out.append(line)
        else:
            out.append(line + "\n")
            out.append("\\ No newline at end of file\n")
    return "".join(out)


# ── Payload application ───────────────────────────────────────────


def count_occurrences(haystack: str, needle: str) -> int:
    """Count occurrences of ``needle``, overlapping ones included."""
    count = 0
    start = haystack.find(needle)
    while start != -1:
        count += 1
        start = haystack.find(needle, start + 1)
    return count


def _replace_once(path: str, content: str, old: str, new: str) -> str:
    if old == "":
        raise DiffConflictError(path, "replacement text to find is empty")
    occurrences = count_occurrences(content, old)
    if occurrences == 0:
        raise NoMatchError(path, old)
    if occurrences > 1:
        raise AmbiguousMatchError(path, old, occurrences)
    return content.replace(old, new, 1)


def apply_edit(
    payload: EditPayload,
    current: str | None,
    *,
    fuzz: int = DEFAULT_FUZZ,
) -> str:
    """Compute new content for ``payload``.

    ``current`` is the file's text, or None when the file does not exist.
    Raises a DiffConflictError subclass when the payload cannot apply;
    in that case the caller must leave the file untouched.
    """
    if isinstance(payload, ContentPayload):
        if current is not None and not payload.overwrite:
            raise AlreadyExistsError(payload.path)
        return payload.content

    if isinstance(payload, DiffPayload):
        return apply_unified_diff(current or "", payload.diff, fuzz=fuzz)

    if current is None:
        raise DiffConflictError(payload.path, "file does not exist")

    if isinstance(payload, ReplacementsPayload):
        if not payload.replacements:
            raise DiffConflictError(payload.path, "no replacements given")
        updated = current
        for replacement in payload.replacements:
            updated = _replace_once(
                payload.path, updated, replacement.old_text, replacement.new_text
            )
        return updated

    if isinstance(payload, DeleteSnippetPayload):
        return _replace_once(payload.path, current, payload.snippet, "")

    raise TypeError(f"Unsupported edit payload: {type(payload).__name__}")
