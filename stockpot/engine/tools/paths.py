"""Working tree path handling shared by the file tools."""
from __future__ import annotations

import os
from pathlib import Path

from ..errors import PathEscapeError


class WorkTree:
    """Root directory that every file tool argument must stay inside."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).expanduser().resolve()

    def resolve(self, path: str, tool_name: str = "") -> Path:
        """Canonicalize ``path`` against the root.

        Symlinks and ``..`` segments are resolved before the check, so a
        link pointing outside the tree is rejected like a plain escape.
        """
        candidate = Path(os.path.expanduser(str(path)))
        if not candidate.is_absolute():
            candidate = self.root / candidate
        resolved = candidate.resolve()
        if resolved != self.root and self.root not in resolved.parents:
            raise PathEscapeError(tool_name, str(path), str(self.root))
        return resolved

    def contains(self, path: Path) -> bool:
        """True when ``path`` resolves, links followed, inside the root."""
        try:
            resolved = path.resolve()
        except OSError:
            return False
        return resolved == self.root or self.root in resolved.parents

    def relative(self, path: Path) -> str:
        try:
            rel = path.relative_to(self.root)
        except ValueError:
            return str(path)
        return str(rel) if str(rel) != "." else "."
