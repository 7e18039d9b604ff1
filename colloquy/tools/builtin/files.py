"""Local file tools.

``read_file``, ``write_file`` and ``create_file`` return :class:`FileInfo`
snapshots, so only the latest copy of a file ever stays in context.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List

from colloquy.context.resources import ResourceStatus, StatefulResource
from colloquy.tools.base import (
    AttachmentResponse,
    ContextBehavior,
    ToolContext,
    ToolDescriptor,
    ToolError,
    ToolParam,
)
from colloquy.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

DEFAULT_MAX_FILE_SIZE = 1048576

_LIST_DIR_SKIP_DIRS: frozenset[str] = frozenset({
    ".git", "__pycache__", "node_modules", ".venv", ".mypy_cache",
    ".pytest_cache", ".ruff_cache", ".tox", ".colloquy",
})


class ResourceConflictError(OSError):
    """The file changed on disk since the version the model is editing."""


class FileInfo(StatefulResource):
    path: str
    content: str
    content_lines: int

    @property
    def resource_id(self) -> str:
        return self.path

    @classmethod
    def read(cls, path: Path) -> "FileInfo":
        content = path.read_text(encoding="utf-8")
        st = path.stat()
        return cls(
            path=str(path),
            content=content,
            content_lines=len(content.splitlines()),
            last_modified=int(st.st_mtime * 1000),
            size_bytes=st.st_size,
        )


def _mtime_ms(path: Path) -> int:
    return int(path.stat().st_mtime * 1000)


def read_file(ctx: ToolContext, path: str) -> FileInfo:
    resolved = ctx.resolve_path(path)
    if not resolved.exists():
        raise FileNotFoundError(f"File not found: {path}")
    if not resolved.is_file():
        raise IsADirectoryError(f"Not a file: {path}")

    max_size = int(ctx.settings.get("max_file_size", DEFAULT_MAX_FILE_SIZE))
    size = resolved.stat().st_size
    if size > max_size:
        raise ToolError(f"{path} is {size} bytes, over the {max_size} byte limit")

    current = ctx.store.resources.lookup(str(resolved))
    if current.status == ResourceStatus.VALID:
        raise ToolError(
            f"{resolved} is already in context and up to date (part {current.part_ref}); "
            "no need to read it again"
        )
    return FileInfo.read(resolved)


def write_file(ctx: ToolContext, path: str, content: str, last_modified: int) -> FileInfo:
    """Overwrite a file the model has read, refusing if it changed since."""
    resolved = ctx.resolve_path(path)
    if not resolved.exists():
        raise FileNotFoundError(f"File not found: {path}; use create_file for new files")
    on_disk = _mtime_ms(resolved)
    if on_disk != int(last_modified):
        raise ResourceConflictError(
            f"{resolved} was modified on disk (last_modified={on_disk}, expected "
            f"{last_modified}); read it again before writing"
        )
    resolved.write_text(content, encoding="utf-8")
    return FileInfo.read(resolved)


def create_file(ctx: ToolContext, path: str, content: str) -> FileInfo:
    resolved = ctx.resolve_path(path)
    if resolved.exists():
        raise FileExistsError(f"File already exists: {path}")
    resolved.parent.mkdir(parents=True, exist_ok=True)
    resolved.write_text(content, encoding="utf-8")
    return FileInfo.read(resolved)


def delete_file(ctx: ToolContext, path: str) -> str:
    resolved = ctx.resolve_path(path)
    if not resolved.is_file():
        raise FileNotFoundError(f"File not found: {path}")
    resolved.unlink()
    pruned = ctx.store.resources.prune_stateful_resources([str(resolved)], f"{resolved} deleted")
    return f"Deleted {resolved} ({pruned} context part(s) removed)"


def list_directory(ctx: ToolContext, path: str = ".", recursive: bool = False) -> List[str]:
    resolved = ctx.resolve_path(path)
    if not resolved.is_dir():
        raise NotADirectoryError(f"Not a directory: {path}")
    entries: List[str] = []
    iterator = resolved.rglob("*") if recursive else resolved.iterdir()
    for entry in sorted(iterator):
        rel = entry.relative_to(resolved)
        if any(part in _LIST_DIR_SKIP_DIRS for part in rel.parts):
            continue
        entries.append(f"{rel}/" if entry.is_dir() else str(rel))
    return entries


def attach_files(ctx: ToolContext, paths: List[str]) -> AttachmentResponse:
    resolved = [str(ctx.resolve_path(p)) for p in paths]
    missing = [p for p in resolved if not Path(p).is_file()]
    if missing:
        raise FileNotFoundError(f"Not found: {', '.join(missing)}")
    return AttachmentResponse(file_paths=resolved, message=f"Attached {len(resolved)} file(s)")


def register(registry: ToolRegistry) -> None:
    path_param = ToolParam("path", "string", "File path, absolute or relative to the working directory")
    registry.register(ToolDescriptor(
        name="read_file",
        description="Read a text file into the context. Older copies of the same file are removed.",
        func=read_file,
        params=[path_param],
        behavior=ContextBehavior.STATEFUL_REPLACE,
        requires_approval=False,
        resource_type=FileInfo,
        returns="FileInfo {path, content, content_lines, last_modified, size_bytes}",
    ))
    registry.register(ToolDescriptor(
        name="write_file",
        description=(
            "Overwrite an existing file. Pass the last_modified value from the FileInfo "
            "you are editing; the write is refused if the file changed since."
        ),
        func=write_file,
        params=[
            path_param,
            ToolParam("content", "string", "Complete new file content"),
            ToolParam("last_modified", "integer", "last_modified of the FileInfo being replaced"),
        ],
        behavior=ContextBehavior.STATEFUL_REPLACE,
        resource_type=FileInfo,
        returns="FileInfo of the written file",
    ))
    registry.register(ToolDescriptor(
        name="create_file",
        description="Create a new file. Fails if the file exists.",
        func=create_file,
        params=[path_param, ToolParam("content", "string", "File content")],
        behavior=ContextBehavior.STATEFUL_REPLACE,
        resource_type=FileInfo,
        returns="FileInfo of the created file",
    ))
    registry.register(ToolDescriptor(
        name="delete_file",
        description="Delete a file and remove its copies from the context.",
        func=delete_file,
        params=[path_param],
    ))
    registry.register(ToolDescriptor(
        name="list_directory",
        description="List directory entries (directories end with '/').",
        func=list_directory,
        params=[
            ToolParam("path", "string", "Directory path", required=False),
            ToolParam("recursive", "boolean", "Recurse into subdirectories", required=False),
        ],
        requires_approval=False,
    ))
    registry.register(ToolDescriptor(
        name="attach_files",
        description="Show files (for example images) to the model as attachments.",
        func=attach_files,
        params=[ToolParam("paths", "array", "File paths", items="string")],
    ))
