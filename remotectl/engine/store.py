"""Persistence collaborator for orchestrations, transcripts and subtasks.

The engine is the only writer. ``InMemoryStore`` keeps everything in
dicts; ``JsonFileStore`` additionally mirrors each orchestration to
one JSON document under ``<state_dir>/orchestrations/<id>.json``,
written atomically (temp file + fsync + rename).
"""
from __future__ import annotations

import abc
import json
import logging
import os
import tempfile
from pathlib import Path

from .models import Orchestration, OrchestrationMessage, Subtask

logger = logging.getLogger(__name__)


class OrchestrationStore(abc.ABC):
    """Create/update/query orchestration records by id."""

    @abc.abstractmethod
    def create(self, orchestration: Orchestration) -> None: ...

    @abc.abstractmethod
    def update(self, orchestration: Orchestration) -> None: ...

    @abc.abstractmethod
    def get(self, orchestration_id: str) -> Orchestration | None: ...

    @abc.abstractmethod
    def list(self, project: str | None = None) -> list[Orchestration]:
        """Orchestrations, newest first, optionally filtered by project."""

    @abc.abstractmethod
    def append_message(self, message: OrchestrationMessage) -> None: ...

    @abc.abstractmethod
    def messages(self, orchestration_id: str) -> list[OrchestrationMessage]: ...

    @abc.abstractmethod
    def save_subtask(self, subtask: Subtask) -> None: ...

    @abc.abstractmethod
    def get_subtask(self, orchestration_id: str, subtask_id: str) -> Subtask | None: ...

    @abc.abstractmethod
    def subtasks(self, orchestration_id: str) -> list[Subtask]: ...


class InMemoryStore(OrchestrationStore):

    def __init__(self) -> None:
        self._orchestrations: dict[str, Orchestration] = {}
        self._messages: dict[str, list[OrchestrationMessage]] = {}
        self._subtasks: dict[str, dict[str, Subtask]] = {}

    def create(self, orchestration: Orchestration) -> None:
        self._orchestrations[orchestration.id] = orchestration
        self._messages.setdefault(orchestration.id, [])
        self._subtasks.setdefault(orchestration.id, {})
        self._persist(orchestration.id)

    def update(self, orchestration: Orchestration) -> None:
        self._orchestrations[orchestration.id] = orchestration
        self._persist(orchestration.id)

    def get(self, orchestration_id: str) -> Orchestration | None:
        return self._orchestrations.get(orchestration_id)

    def list(self, project: str | None = None) -> list[Orchestration]:
        items = [
            o for o in self._orchestrations.values()
            if project is None or o.project == project
        ]
        return sorted(items, key=lambda o: o.created_at, reverse=True)

    def append_message(self, message: OrchestrationMessage) -> None:
        self._messages.setdefault(message.orchestration_id, []).append(message)
        self._persist(message.orchestration_id)

    def messages(self, orchestration_id: str) -> list[OrchestrationMessage]:
        return list(self._messages.get(orchestration_id, []))

    def save_subtask(self, subtask: Subtask) -> None:
        self._subtasks.setdefault(subtask.orchestration_id, {})[subtask.id] = subtask
        self._persist(subtask.orchestration_id)

    def get_subtask(self, orchestration_id: str, subtask_id: str) -> Subtask | None:
        return self._subtasks.get(orchestration_id, {}).get(subtask_id)

    def subtasks(self, orchestration_id: str) -> list[Subtask]:
        items = list(self._subtasks.get(orchestration_id, {}).values())
        return sorted(items, key=lambda s: s.started_at or 0)

    def _persist(self, orchestration_id: str) -> None:
        """Hook for durable subclasses."""


def _fsync_dir(dir_path: Path) -> None:
    try:
        flags = os.O_RDONLY
        if hasattr(os, "O_DIRECTORY"):
            flags |= os.O_DIRECTORY
        fd = os.open(str(dir_path), flags)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)
    except OSError:
        pass  # not supported on every filesystem


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Write *content* to *path* via a fsynced temp file and rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent),
    )
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding=encoding) as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
        _fsync_dir(path.parent)
    finally:
        if tmp_path.exists():
            try:
                tmp_path.unlink()
            except OSError:
                pass


class JsonFileStore(InMemoryStore):
    """In-memory store mirrored to one JSON document per orchestration."""

    def __init__(self, state_dir: str | Path) -> None:
        super().__init__()
        self._dir = Path(state_dir).expanduser() / "orchestrations"
        self._dir.mkdir(parents=True, exist_ok=True)
        self._load()

    @property
    def directory(self) -> Path:
        return self._dir

    def _path(self, orchestration_id: str) -> Path:
        return self._dir / f"{orchestration_id}.json"

    def _load(self) -> None:
        loaded = 0
        for path in sorted(self._dir.glob("*.json")):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                orch = Orchestration.from_dict(data["orchestration"])
                messages = [OrchestrationMessage.from_dict(m) for m in data.get("messages", [])]
                subtasks = [Subtask.from_dict(s) for s in data.get("subtasks", [])]
            except (OSError, ValueError, KeyError, TypeError) as exc:
                logger.warning("Skipping unreadable orchestration file %s: %s", path, exc)
                continue
            self._orchestrations[orch.id] = orch
            self._messages[orch.id] = messages
            self._subtasks[orch.id] = {s.id: s for s in subtasks}
            loaded += 1
        if loaded:
            logger.info("Loaded %d orchestrations from %s", loaded, self._dir)

    def _persist(self, orchestration_id: str) -> None:
        orch = self._orchestrations.get(orchestration_id)
        if orch is None:
            return
        document = {
            "orchestration": orch.to_dict(),
            "messages": [m.to_dict() for m in self._messages.get(orchestration_id, [])],
            "subtasks": [s.to_dict() for s in self.subtasks(orchestration_id)],
        }
        try:
            atomic_write_text(self._path(orchestration_id), json.dumps(document, indent=2))
        except OSError:
            logger.exception("Failed to persist orchestration %s", orchestration_id)
