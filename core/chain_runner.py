"""
Chained task execution.

Runs a parent task's subtasks strictly in order. Each one is delegated to the
TaskRunner under a disposable id ({parent}_sub{i}); its outcome, logs and
screenshots are copied back afterwards. The first failure ends the chain.
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Any

from core.models import SubTask, Task, TaskStatus

logger = logging.getLogger(__name__)


def synthetic_id(parent_id: str, index: int) -> str:
    return f"{parent_id}_sub{index}"


class ChainRunner:
    """Sequential composition of atomic task runs."""

    def __init__(self, runner: Any, store: Any, subtask_delay: float = 2.0):
        self.runner = runner
        self.store = store
        self.subtask_delay = subtask_delay

    async def run(self, task_id: str, task: Task):
        if task.status == TaskStatus.STOPPED:
            return
        if task.status != TaskStatus.RUNNING:
            task.start()

        total = len(task.subtasks)
        if not total:
            task.fail("Chained task has no subtasks")
            await self.store.save(task)
            return

        task.log(f"Starting chained task: {task.name}")
        task.log(f"Total subtasks: {total}")

        for i, subtask in enumerate(task.subtasks):
            if task.status != TaskStatus.RUNNING:
                return
            if subtask.status == TaskStatus.COMPLETED:
                task.log(f"Subtask {i + 1} already completed, skipping")
                continue

            task.current_index = i
            task.stage = f"Running subtask {i + 1}/{total}"
            subtask.status = TaskStatus.RUNNING
            subtask.start_time = datetime.now().isoformat()
            await self.store.save(task)

            task.log(f"=== Subtask {i + 1}/{total}: {subtask.type} ===")
            task.log(f"Parameters: {json.dumps(subtask.params, default=str)}")

            if not await self._run_subtask(task_id, task, subtask, i):
                return

            await self.store.save(task)
            if i < total - 1:
                task.log(f"Waiting {self.subtask_delay:g} seconds before next subtask...")
                await asyncio.sleep(self.subtask_delay)

        if task.status != TaskStatus.RUNNING:
            return
        task.complete(f"Completed {total} subtasks")
        task.stage = "All subtasks completed"
        await self.store.save(task)

    async def _run_subtask(self, task_id: str, task: Task, subtask: SubTask, i: int) -> bool:
        """Returns True when the chain may continue."""
        sub_id = synthetic_id(task_id, i)
        temp = Task(
            id=sub_id,
            type=subtask.type,
            name=f"{task.name} [{i + 1}]",
            params=dict(subtask.params),
        )
        self.store.put(temp)

        try:
            await self.runner.run(sub_id, temp)
        except Exception as e:
            await self.runner.running_browsers.close(sub_id, task.log)
            subtask.status = TaskStatus.ERROR
            subtask.error = str(e)
            subtask.logs = list(temp.logs)
            subtask.end_time = datetime.now().isoformat()
            await self._discard(sub_id, task_id, i)
            task.log(f"Subtask {i + 1} (index {i}) exception: {e}")
            if task.status == TaskStatus.RUNNING:
                task.fail(f"Subtask {i + 1} (index {i}) exception: {e}")
            await self.store.save(task)
            return False

        if not temp.is_terminal:
            # Its browser was closed by a stop or kill-all that will finish the parent
            subtask.logs = list(temp.logs)
            await self._discard(sub_id, task_id, i)
            task.log(f"Subtask {i + 1} interrupted")
            return False

        subtask.status = temp.status
        subtask.logs = list(temp.logs)
        subtask.stage = temp.stage
        subtask.end_time = temp.end_time or datetime.now().isoformat()
        subtask.error = temp.error
        subtask.result = temp.result
        await self._discard(sub_id, task_id, i)

        if task.status != TaskStatus.RUNNING:
            task.log(f"Chain {task.status.value} during subtask {i + 1}")
            await self.store.save(task)
            return False

        if subtask.status == TaskStatus.COMPLETED:
            task.log(f"Subtask {i + 1} completed: {subtask.result or 'Success'}")
            return True

        reason = subtask.error or f"ended as {subtask.status.value}"
        task.log(f"Subtask {i + 1} (index {i}) failed: {reason}")
        task.fail(f"Subtask {i + 1} (index {i}) failed: {reason}")
        await self.store.save(task)
        return False

    async def _discard(self, sub_id: str, task_id: str, i: int):
        await self.store.adopt_screenshots(sub_id, task_id, label_prefix=f"[{i + 1}] ")
        await self.store.remove(sub_id)
