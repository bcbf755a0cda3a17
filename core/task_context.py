"""
Per-run handle given to automations.
"""

import logging
from typing import Any, Callable, Dict, Optional

from core.models import Task
from core.polling import poll_for_condition

logger = logging.getLogger(__name__)


class TaskContext:
    """What an automation may touch while it drives a page."""

    def __init__(self, task_id: str, task: Task, store: Any, pool: Any):
        self.task_id = task_id
        self.task = task
        self.store = store
        self.pool = pool

    @property
    def params(self) -> Dict[str, Any]:
        return self.task.params

    def log(self, message: str) -> str:
        return self.task.log(message)

    async def set_stage(self, stage: str):
        self.task.stage = stage
        await self.store.save(self.task)

    async def add_screenshot(self, page: Any, label: str) -> Optional[int]:
        """Best effort; returns the screenshot index or None."""
        try:
            data = await page.screenshot(type="png")
            shot = await self.store.add_screenshot(self.task_id, label, data)
        except Exception as e:
            self.log(f"Screenshot '{label}' failed: {e}")
            return None
        self.log(f"Screenshot #{shot.index}: {label}")
        return shot.index

    def record_url(self, url: Optional[str]):
        self.pool.record_url(url, self.task_id)

    async def poll(
        self,
        check: Callable,
        timeout: float = 30.0,
        interval: float = 1.0,
        label: str = "condition",
    ) -> Dict[str, Any]:
        return await poll_for_condition(check, timeout=timeout, interval=interval, label=label, log=self.log)
