from __future__ import annotations

import posixpath
import re
from dataclasses import dataclass
from typing import Any

from src.orchestrator.errors import InvalidRequestError

_FILE_BLOCK_RE = re.compile(
    r"<file\s+path\s*=\s*[\"']([^\"']+)[\"']\s*>(.*?)</file>", re.DOTALL
)
_FENCE_RE = re.compile(r"^\s*```[\w.+-]*\n(.*?)\n?```\s*$", re.DOTALL)


@dataclass(frozen=True)
class FileEdit:
    path: str
    content: str


def normalize_path(path: str, *, workspace_dir: str = "/workspace") -> str:
    """Map a client-supplied path to a workspace-relative one.

    Accepts `src/App.jsx`, `/src/App.jsx` and `/workspace/src/App.jsx`.
    Raises ValueError for empty paths and paths escaping the workspace.
    """
    p = (path or "").strip().replace("\\", "/")
    root = workspace_dir.rstrip("/")
    if root and (p == root or p.startswith(root + "/")):
        p = p[len(root) :]
    p = p.lstrip("/")
    if not p:
        raise ValueError("empty path")
    norm = posixpath.normpath(p)
    if norm in (".", "..") or norm.startswith("../"):
        raise ValueError(f"path escapes workspace: {path}")
    return norm


def _strip_fence(content: str) -> str:
    m = _FENCE_RE.match(content)
    if m:
        return m.group(1)
    return content


def parse_file_blocks(text: str) -> list[FileEdit]:
    out: list[FileEdit] = []
    for m in _FILE_BLOCK_RE.finditer(text or ""):
        content = _strip_fence(m.group(2).strip("\n"))
        out.append(FileEdit(path=m.group(1).strip(), content=content))
    return out


def collect_edits(
    *,
    files: list[dict[str, Any]] | None,
    response: str | None,
    workspace_dir: str = "/workspace",
) -> list[FileEdit]:
    """Merge explicit file edits and `<file>` blocks into one ordered batch.

    A file named more than once, under any spelling of its path, keeps its
    first position and its last content. Paths that do not normalize are
    kept as given so the caller can report them.
    """
    edits: list[FileEdit] = []
    for item in files or []:
        if not isinstance(item, dict):
            raise InvalidRequestError("each file edit must be an object")
        path = item.get("path")
        content = item.get("content")
        if not isinstance(path, str) or not isinstance(content, str):
            raise InvalidRequestError("each file edit needs string 'path' and 'content'")
        edits.append(FileEdit(path=path, content=content))
    if response:
        edits.extend(parse_file_blocks(response))

    merged: dict[str, FileEdit] = {}
    for edit in edits:
        try:
            key = normalize_path(edit.path, workspace_dir=workspace_dir)
        except ValueError:
            key = edit.path
        if key in merged:
            merged[key] = FileEdit(path=merged[key].path, content=edit.content)
        else:
            merged[key] = edit
    return list(merged.values())
