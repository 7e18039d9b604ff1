"""Saving, loading, and auto-backing-up the conversation.

The serializer is pluggable; the default writes JSON with base64 blobs.
Sessions live in ``<directory>/<name>.json`` and the running session is
mirrored to ``<directory>/autobackup-<session_id>.json`` after every
context change.
"""

from __future__ import annotations

import json
import logging
import re
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional, Protocol, Sequence

from colloquy.context.message import Message, iter_parts
from colloquy.context.summary import summary_table

if TYPE_CHECKING:
    from colloquy.context.store import ContextStore
    from colloquy.workers import BackgroundWorkers

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1


class Serializer(Protocol):
    extension: str

    def dumps(self, messages: Sequence[Message]) -> bytes: ...

    def loads(self, data: bytes) -> List[Message]: ...


class JsonSerializer:
    """Full-fidelity JSON encoding of the message list."""

    extension = ".json"

    def __init__(self, indent: Optional[int] = 2):
        self.indent = indent

    def dumps(self, messages: Sequence[Message]) -> bytes:
        doc = {"version": FORMAT_VERSION, "messages": [m.to_dict() for m in messages]}
        return json.dumps(doc, indent=self.indent, default=str).encode("utf-8")

    def loads(self, data: bytes) -> List[Message]:
        doc = json.loads(data.decode("utf-8"))
        version = doc.get("version")
        if version != FORMAT_VERSION:
            raise ValueError(f"Unsupported session format version: {version!r}")
        return [Message.from_dict(m) for m in doc.get("messages", [])]


@dataclass
class SavedSession:
    name: str
    path: Path
    modified: datetime
    size_bytes: int


@dataclass
class LoadedSession:
    name: str
    messages: List[Message]
    next_sequence_id: int
    next_tool_call_id: int


_NUMERIC_ID = re.compile(r"^\d+$")


def highest_numeric_call_id(messages: Sequence[Message]) -> int:
    """Largest counter-assigned tool call id, 0 when none."""
    highest = 0
    for _, _, part in iter_parts(messages):
        call_id = part.call_id
        if call_id and _NUMERIC_ID.match(call_id):
            highest = max(highest, int(call_id))
    return highest


class SessionManager:
    """Persists a :class:`ContextStore` to disk."""

    def __init__(
        self,
        store: "ContextStore",
        directory: Path,
        session_id: str,
        *,
        serializer: Optional[Serializer] = None,
        workers: Optional["BackgroundWorkers"] = None,
    ):
        self.store = store
        self.directory = Path(directory)
        self.session_id = session_id
        self.serializer: Serializer = serializer or JsonSerializer()
        self._workers = workers
        self._backup_lock = threading.Lock()

    def _path(self, name: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9._-]+", "_", name).strip("._") or "session"
        return self.directory / f"{safe}{self.serializer.extension}"

    @property
    def autobackup_path(self) -> Path:
        return self._path(f"autobackup-{self.session_id}")

    def save(self, name: str) -> Path:
        path = self._path(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(self.serializer.dumps(self.store.snapshot()))
        logger.info(f"Saved session {name!r} to {path}")
        return path

    def list_sessions(self) -> List[SavedSession]:
        if not self.directory.exists():
            return []
        sessions = []
        for path in self.directory.glob(f"*{self.serializer.extension}"):
            st = path.stat()
            sessions.append(
                SavedSession(
                    name=path.stem,
                    path=path,
                    modified=datetime.fromtimestamp(st.st_mtime),
                    size_bytes=st.st_size,
                )
            )
        return sorted(sessions, key=lambda s: s.modified, reverse=True)

    def read(self, name: str) -> List[Message]:
        path = self._path(name)
        if not path.exists():
            raise FileNotFoundError(f"Session not found: {path}")
        return self.serializer.loads(path.read_bytes())

    def load(self, name: str) -> LoadedSession:
        """Replace the context with a saved session and reset the sequence counter."""
        messages = self.read(name)
        next_sequence = max((m.sequence_id for m in messages), default=0) + 1
        self.store.replace_all(messages)
        self.store.reset_sequence(next_sequence)
        logger.info(f"Loaded session {name!r} ({len(messages)} messages)")
        return LoadedSession(
            name=name,
            messages=messages,
            next_sequence_id=next_sequence,
            next_tool_call_id=highest_numeric_call_id(messages) + 1,
        )

    def write_backup(self) -> Optional[Path]:
        """Mirror the context to the autobackup file; removes it when empty."""
        with self._backup_lock:
            messages = self.store.snapshot()
            path = self.autobackup_path
            if not messages:
                if path.exists():
                    path.unlink()
                    logger.debug(f"Removed empty autobackup {path}")
                return None
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(path.suffix + ".tmp")
            tmp.write_bytes(self.serializer.dumps(messages))
            tmp.replace(path)
            return path

    def trigger_autobackup(self) -> Optional[Future]:
        """Schedule :meth:`write_backup` on the background workers."""
        if self._workers is None:
            self.write_backup()
            return None
        return self._workers.submit(self.write_backup)

    def summary_table(self) -> str:
        return summary_table(self.store.snapshot())
