"""
Task Store

In-memory live tasks and screenshots on top of the persistence repository.
While a task runs, the object held here is the only writable copy; once
evicted, the repository is the source of truth.
"""

import logging
import re
from typing import Any, Dict, List, Optional

from core.models import Screenshot, Task, TaskStatus

logger = logging.getLogger(__name__)

# Synthetic ids that chains use for their disposable subtask runs
SYNTHETIC_ID = re.compile(r"_sub\d+$")


def is_synthetic_id(task_id: str) -> bool:
    return bool(SYNTHETIC_ID.search(task_id))


class TaskStore:
    """
    Live task cache.

    Args:
        repository: persistence collaborator (api.database.Database or a fake
            with the same save/load/delete methods)
    """

    def __init__(self, repository: Any):
        self.repository = repository
        self.tasks: Dict[str, Task] = {}
        self._screenshots: Dict[str, List[Screenshot]] = {}
        self._next_index: Dict[str, int] = {}

    def put(self, task: Task) -> Task:
        self.tasks[task.id] = task
        return task

    def get_live(self, task_id: str) -> Optional[Task]:
        return self.tasks.get(task_id)

    async def get(self, task_id: str) -> Optional[Task]:
        """Memory first, then the repository."""
        task = self.tasks.get(task_id)
        if task is not None:
            return task
        return await self.repository.load_task(task_id)

    async def save(self, task: Task):
        await self.repository.save_task(task.id, task)

    def evict(self, task_id: str):
        """Drop the in-memory copy. Index bookkeeping is kept."""
        self.tasks.pop(task_id, None)
        self._screenshots.pop(task_id, None)

    async def remove(self, task_id: str):
        """Forget a task everywhere, screenshots included."""
        self.tasks.pop(task_id, None)
        self._screenshots.pop(task_id, None)
        self._next_index.pop(task_id, None)
        await self.repository.delete_task(task_id)

    async def list_tasks(
        self,
        status: Optional[str] = None,
        name_filter: Optional[str] = None,
        limit: int = 500,
    ) -> List[Task]:
        """Durable and live tasks merged (live wins), newest first."""
        merged = {task.id: task for task in await self.repository.list_tasks(limit)}
        merged.update(self.tasks)

        needle = name_filter.lower() if name_filter else None
        result = []
        for task in merged.values():
            if is_synthetic_id(task.id):
                continue
            if status and task.status.value != status:
                continue
            if needle and needle not in (task.name or "").lower() and needle not in task.type.lower():
                continue
            result.append(task)

        result.sort(key=lambda t: t.created_at or "", reverse=True)
        return result

    def running_tasks(self) -> List[Task]:
        return [t for t in self.tasks.values() if t.status == TaskStatus.RUNNING]

    # ============== Screenshots ==============

    async def add_screenshot(self, task_id: str, label: str, data: bytes) -> Screenshot:
        """Store a screenshot under the next free index for the task."""
        if task_id not in self._screenshots:
            self._screenshots[task_id] = await self.repository.load_screenshots(task_id)
        if task_id not in self._next_index:
            existing = self._screenshots.get(task_id) or []
            self._next_index[task_id] = max((s.index for s in existing), default=-1) + 1

        index = self._next_index[task_id]
        self._next_index[task_id] = index + 1

        shot = Screenshot(task_id=task_id, index=index, label=label, data=data)
        self._screenshots.setdefault(task_id, []).append(shot)
        await self.repository.save_screenshot(task_id, index, label, data, shot.timestamp)
        return shot

    async def screenshots(self, task_id: str) -> List[Screenshot]:
        if task_id in self._screenshots:
            return list(self._screenshots[task_id])
        return await self.repository.load_screenshots(task_id)

    async def screenshot(self, task_id: str, index: int) -> Optional[Screenshot]:
        for shot in await self.screenshots(task_id):
            if shot.index == index:
                return shot
        return None

    async def clear_screenshots(self, task_id: str):
        """Drop stored images. Indices already handed out stay retired."""
        self._screenshots[task_id] = []
        await self.repository.delete_screenshots(task_id)

    async def adopt_screenshots(self, from_id: str, to_id: str, label_prefix: str = "") -> int:
        """Copy screenshots onto another task (subtask -> parent). Returns the count."""
        shots = await self.screenshots(from_id)
        for shot in shots:
            await self.add_screenshot(to_id, f"{label_prefix}{shot.label}", shot.data)
        return len(shots)
