"""Sandboxed directory listing and repository snapshot for the code edit agent."""

import logging
import os
from collections import deque
from pathlib import Path

from ..safety.guards import normalize_relative_path

logger = logging.getLogger(__name__)

IGNORED_DIRECTORIES = frozenset(
    {
        ".git",
        "node_modules",
        ".next",
        ".turbo",
        ".gradle",
        ".idea",
        ".vscode",
        "dist",
        "build",
        "coverage",
        "coverage-tmp",
        ".cache",
    }
)
IGNORED_FILES = frozenset(
    {
        "package-lock.json",
        "pnpm-lock.yaml",
        "yarn.lock",
        "bun.lockb",
        ".DS_Store",
    }
)


def _is_ignored(entry: os.DirEntry) -> bool:
    if entry.is_dir():
        return entry.name in IGNORED_DIRECTORIES
    return entry.name in IGNORED_FILES


def _sorted_entries(directory: Path) -> list[os.DirEntry]:
    with os.scandir(directory) as it:
        return sorted(it, key=lambda entry: entry.name)


def walk_project_tree(root: Path, limit: int) -> list[str]:
    """Breadth-first walk returning relative paths, directories suffixed with '/'.

    Unreadable directories are skipped.
    """
    results: list[str] = []
    queue: deque[str] = deque([""])
    while queue and len(results) < limit:
        relative = queue.popleft()
        try:
            entries = _sorted_entries(root / relative)
        except OSError:
            continue

        for entry in entries:
            if len(results) >= limit:
                break
            if _is_ignored(entry):
                continue
            rel_path = f"{relative}/{entry.name}" if relative else entry.name
            if entry.is_dir():
                results.append(f"{rel_path}/")
                queue.append(rel_path)
            else:
                results.append(rel_path)
    return results


def build_file_tree_snapshot(root: Path, limit: int = 400) -> str:
    try:
        entries = walk_project_tree(Path(root), limit)
    except OSError as e:
        return f"(unable to build file tree: {e})"
    if not entries:
        return "(empty directory)"
    return "\n".join(f"- {entry}" for entry in entries)


def list_directory_for_agent(root: Path, candidate: str | None, limit: int = 200) -> dict:
    """List one directory inside the project root.

    Returns:
        ``{"path", "entries": [{"name", "type": "dir"|"file"}]}`` plus an
        ``"error"`` key when the directory cannot be read

    Raises:
        PermissionError: If the resolved path is outside the project root
    """
    relative = normalize_relative_path(candidate or ".")
    resolved_root = Path(root).resolve()
    absolute = (resolved_root / relative).resolve()
    if absolute != resolved_root and resolved_root not in absolute.parents:
        raise PermissionError("Directory access outside of project root is not allowed")

    display = relative if relative else "."
    try:
        entries = _sorted_entries(absolute)
    except OSError as e:
        logger.debug("list_dir failed for %s: %s", display, e)
        return {"path": display, "entries": [], "error": e.strerror or str(e)}

    mapped = [
        {"name": entry.name, "type": "dir" if entry.is_dir() else "file"}
        for entry in entries
        if not _is_ignored(entry)
    ]
    return {"path": display, "entries": mapped[:limit]}
