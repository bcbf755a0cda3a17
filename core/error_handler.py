"""
Uniform cleanup for tasks that failed with an unclassified error.

Captures what the browser was showing, records the error on the task, then
tears the browser down. Diagnostic capture is best effort and never raises.
"""

import logging
from typing import Any, Optional

from core.browser import close_or_kill
from core.models import Task, TaskStatus

logger = logging.getLogger(__name__)

PREVIEW_CHARS = 500
PREVIEW_LOG_CHARS = 200

PAGE_PREVIEW_JS = (
    "() => (document.body ? document.body.innerText : '')"
    f".substring(0, {PREVIEW_CHARS}).replace(/\\s+/g, ' ')"
)


class TaskErrorHandler:
    """Handles generic task failures for the runner."""

    def __init__(self, store: Any, running_browsers: Any):
        self.store = store
        self.running_browsers = running_browsers

    async def handle(self, task_id: str, task: Task, error: BaseException, instance: Any = None):
        message = str(error) or type(error).__name__
        task.log(f"ERROR: {message}")
        logger.error(f"Task {task_id} failed: {message}")

        if instance is not None:
            await self._capture_diagnostics(task_id, task, instance)

        if task.status == TaskStatus.RUNNING:
            task.fail(message)
        try:
            await self.store.save(task)
        finally:
            closed = await self.running_browsers.close(task_id, task.log)
            if closed is None and instance is not None:
                await close_or_kill(instance, task.log)

    async def _capture_diagnostics(self, task_id: str, task: Task, instance: Any):
        try:
            page = instance.last_page()
            if page is None:
                return
            task.log(f"Final URL: {page.url}")
            preview = await self._page_preview(page)
            if preview:
                task.log(f"Page preview: {preview[:PREVIEW_LOG_CHARS]}...")
            data = await page.screenshot(type="png")
            shot = await self.store.add_screenshot(task_id, "error_final", data)
            task.log(f"Screenshot #{shot.index}: error_final")
        except Exception as e:
            task.log(f"Could not capture error screenshot: {e}")

    @staticmethod
    async def _page_preview(page: Any) -> Optional[str]:
        try:
            return await page.evaluate(PAGE_PREVIEW_JS)
        except Exception:
            return None
