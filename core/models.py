#!/usr/bin/env python3
"""
Task Data Models

Tasks, chained subtasks and screenshots. The task record is explicit and
versioned; new attributes are added as fields with a schema upgrade in
from_dict() rather than through a free-form metadata blob.
"""

import logging
from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from core.errors import TaskStateError

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2
CHAINED_TYPE = "chained"

# Version 1 records used camelCase keys and kept chain state in "metadata"
_LEGACY_KEYS = {
    "startTime": "start_time",
    "endTime": "end_time",
    "currentIndex": "current_index",
    "createdAt": "created_at",
}


def _now() -> str:
    return datetime.now().isoformat()


class TaskStatus(str, Enum):
    """Task lifecycle states."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    STOPPED = "stopped"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.ERROR, TaskStatus.STOPPED})


def _rename_legacy(data: Dict[str, Any]) -> Dict[str, Any]:
    return {_LEGACY_KEYS.get(key, key): value for key, value in data.items()}


def _reject_unknown(cls, data: Dict[str, Any]):
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"Unknown {cls.__name__} fields: {', '.join(unknown)}")


@dataclass
class SubTask:
    """One step of a chained task. Mirrors the task lifecycle fields, without an id."""
    index: int
    type: str
    params: Dict[str, Any] = field(default_factory=dict)
    status: TaskStatus = TaskStatus.PENDING
    stage: str = ""
    logs: List[str] = field(default_factory=list)
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    error: Optional[str] = None
    result: Optional[str] = None

    def reset(self):
        self.status = TaskStatus.PENDING
        self.stage = ""
        self.logs = []
        self.start_time = None
        self.end_time = None
        self.error = None
        self.result = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "type": self.type,
            "params": dict(self.params),
            "status": self.status.value,
            "stage": self.stage,
            "logs": list(self.logs),
            "start_time": self.start_time,
            "end_time": self.end_time,
            "error": self.error,
            "result": self.result,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], index: Optional[int] = None) -> "SubTask":
        data = _rename_legacy(dict(data))
        if index is not None:
            data.setdefault("index", index)
        _reject_unknown(cls, data)
        data["status"] = TaskStatus(data.get("status") or TaskStatus.PENDING)
        data["params"] = dict(data.get("params") or {})
        data["logs"] = list(data.get("logs") or [])
        return cls(**data)


@dataclass
class Task:
    """
    A unit of requested work.

    Only the runner that holds the task writes its lifecycle fields; the
    transition methods below raise TaskStateError on illegal moves.
    """
    id: str
    type: str
    name: str = ""
    params: Dict[str, Any] = field(default_factory=dict)
    status: TaskStatus = TaskStatus.PENDING
    stage: str = "Queued"
    logs: List[str] = field(default_factory=list)
    subtasks: List[SubTask] = field(default_factory=list)
    current_index: int = 0
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    result: Optional[str] = None
    error: Optional[str] = None
    created_at: str = field(default_factory=_now)
    schema_version: int = SCHEMA_VERSION

    @property
    def is_chained(self) -> bool:
        return self.type == CHAINED_TYPE or bool(self.subtasks)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def log(self, message: str) -> str:
        """Append a timestamped line to the task log and mirror it to the logger."""
        line = f"[{_now()}] {message}"
        self.logs.append(line)
        logger.info(f"[{self.id}] {message}")
        return line

    # ============== Transitions ==============

    def start(self):
        """pending or terminal -> running."""
        if self.status == TaskStatus.RUNNING:
            raise TaskStateError(f"Task {self.id} is already running")
        self.status = TaskStatus.RUNNING
        self.start_time = _now()
        self.end_time = None
        self.error = None
        self.stage = "Starting"
        self.log("Task started")

    def complete(self, result: Optional[str] = None):
        self._finish(TaskStatus.COMPLETED)
        self.result = result
        self.stage = "Completed"
        self.log(f"Task completed: {result}" if result else "Task completed")

    def fail(self, error: str):
        self._finish(TaskStatus.ERROR)
        self.error = error
        self.stage = "Error"
        self.log(f"Task failed: {error}")

    def stop(self, reason: str = "Stopped by user"):
        """Cancellation. Also allowed for a task that was queued but never started."""
        if self.status == TaskStatus.PENDING:
            self.status = TaskStatus.RUNNING
        self._finish(TaskStatus.STOPPED)
        self.stage = reason
        self.log(reason)

    def _finish(self, status: TaskStatus):
        if self.status != TaskStatus.RUNNING:
            raise TaskStateError(
                f"Cannot move task {self.id} from {self.status.value} to {status.value}"
            )
        if self.end_time is not None:
            raise TaskStateError(f"Task {self.id} already has an end time")
        self.status = status
        self.end_time = _now()

    def reset_for_restart(self):
        """Clear every terminal field so the same id can run again from the start."""
        if self.status == TaskStatus.RUNNING:
            raise TaskStateError(f"Task {self.id} is running and cannot be restarted")
        self.status = TaskStatus.PENDING
        self.stage = "Queued"
        self.logs = []
        self.start_time = None
        self.end_time = None
        self.result = None
        self.error = None
        self.current_index = 0
        for subtask in self.subtasks:
            subtask.reset()

    # ============== Serialization ==============

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "name": self.name,
            "params": dict(self.params),
            "status": self.status.value,
            "stage": self.stage,
            "logs": list(self.logs),
            "subtasks": [s.to_dict() for s in self.subtasks],
            "current_index": self.current_index,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "result": self.result,
            "error": self.error,
            "created_at": self.created_at,
            "schema_version": self.schema_version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        """
        Build a task from a stored record, upgrading older schema versions.

        Raises:
            ValueError: the record carries fields this version does not know
        """
        data = dict(data)
        version = int(data.pop("schema_version", 1) or 1)
        if version < 2:
            data = cls._upgrade_v1(data)

        _reject_unknown(cls, data)
        data["status"] = TaskStatus(data.get("status") or TaskStatus.PENDING)
        data["params"] = dict(data.get("params") or {})
        data["logs"] = list(data.get("logs") or [])
        data["subtasks"] = [
            SubTask.from_dict(s, index=i) for i, s in enumerate(data.get("subtasks") or [])
        ]
        data["current_index"] = int(data.get("current_index") or 0)
        data["schema_version"] = SCHEMA_VERSION
        if not data.get("created_at"):
            data["created_at"] = _now()
        return cls(**data)

    @staticmethod
    def _upgrade_v1(data: Dict[str, Any]) -> Dict[str, Any]:
        data = _rename_legacy(data)
        metadata = data.pop("metadata", None) or {}
        if "subtasks" in metadata and not data.get("subtasks"):
            data["subtasks"] = metadata.pop("subtasks")
        if "currentIndex" in metadata and "current_index" not in data:
            data["current_index"] = metadata.pop("currentIndex")
        if "name" in metadata and not data.get("name"):
            data["name"] = metadata.pop("name")
        dropped = sorted(k for k in metadata if k not in ("subtasks", "currentIndex", "name"))
        if dropped:
            logger.debug(f"Dropping legacy metadata keys for task {data.get('id')}: {dropped}")
        return data


@dataclass
class Screenshot:
    """A captured PNG. Indices grow per task and are never reused."""
    task_id: str
    index: int
    label: str
    data: bytes
    timestamp: str = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        """Metadata only; image bytes are served separately."""
        return {
            "task_id": self.task_id,
            "index": self.index,
            "label": self.label,
            "timestamp": self.timestamp,
            "size": len(self.data),
        }
