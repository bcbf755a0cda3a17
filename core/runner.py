"""
Task Runner

Runs one atomic task: lease the pooled browser, open a page, hand it to the
task's automation and map the outcome onto the task lifecycle.

Retry policy:
- CredentialError: fail immediately, never retried
- TransientNavigationError: close the browser and retry after a fixed delay,
  at most ``max_retries`` times
- anything else: TaskErrorHandler (diagnostics, error state, teardown)
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from core.browser import browser_args_for, close_or_kill
from core.errors import ErrorKind, UnknownTaskTypeError, classify_error
from core.models import Task, TaskStatus
from core.task_context import TaskContext

logger = logging.getLogger(__name__)

DEFAULT_PROXY_HOST = "127.0.0.1"
DEFAULT_PROXY_PORT = 8888


@dataclass
class RunningBrowser:
    """A browser attributed to a running task."""
    task_id: str
    instance: Any
    pid: Optional[int]
    started_at: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {"task_id": self.task_id, "pid": self.pid, "started_at": self.started_at}


class RunningBrowsers:
    """task_id -> browser registry used by stop and kill-all."""

    def __init__(self):
        self._entries: Dict[str, RunningBrowser] = {}

    def register(self, task_id: str, instance: Any, pid: Optional[int]) -> RunningBrowser:
        entry = RunningBrowser(task_id=task_id, instance=instance, pid=pid)
        self._entries[task_id] = entry
        return entry

    def get(self, task_id: str) -> Optional[RunningBrowser]:
        return self._entries.get(task_id)

    def pop(self, task_id: str) -> Optional[RunningBrowser]:
        return self._entries.pop(task_id, None)

    def items(self) -> List[RunningBrowser]:
        return list(self._entries.values())

    def pids(self) -> Set[int]:
        return {entry.pid for entry in self._entries.values() if entry.pid}

    def __contains__(self, task_id: str) -> bool:
        return task_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    async def close(self, task_id: str, log: Optional[Callable[[str], None]] = None) -> Optional[str]:
        """
        Close the browser attributed to ``task_id`` (force-killing if needed).

        Returns "closed", "killed", or None when nothing was attributed.
        """
        entry = self._entries.pop(task_id, None)
        if entry is None:
            return None
        return await close_or_kill(entry.instance, log)

    async def close_all(self, log: Optional[Callable[[str], None]] = None) -> List[str]:
        """Close every attributed browser. Returns the task ids that had one."""
        task_ids = list(self._entries)
        for task_id in task_ids:
            await self.close(task_id, log)
        return task_ids


class TaskRunner:
    """Runs atomic tasks against the injected browser pool."""

    def __init__(
        self,
        pool: Any,
        store: Any,
        registry: Any,
        error_handler: Any,
        route_table: Any = None,
        proxy: Any = None,
        running_browsers: Optional[RunningBrowsers] = None,
        credentials: Any = None,
        max_retries: int = 3,
        retry_delay: float = 2.0,
    ):
        self.pool = pool
        self.store = store
        self.registry = registry
        self.error_handler = error_handler
        self.route_table = route_table
        self.proxy = proxy
        self.running_browsers = running_browsers if running_browsers is not None else error_handler.running_browsers
        self.credentials = credentials
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    async def run(self, task_id: str, task: Task):
        """Run ``task`` to a terminal state. Never raises for automation failures."""
        if task.status == TaskStatus.STOPPED:
            # Stopped before it ever started
            return
        if task.status != TaskStatus.RUNNING:
            task.start()
        await self.store.save(task)

        try:
            automation = self.registry.resolve(task.type)
        except UnknownTaskTypeError as e:
            task.fail(str(e))
            await self.store.save(task)
            return

        for attempt in range(self.max_retries + 1):
            retry = await self._attempt(task_id, task, automation, attempt)
            if not retry:
                return
            await asyncio.sleep(self.retry_delay)
            if task.status != TaskStatus.RUNNING:
                return

    async def _attempt(self, task_id: str, task: Task, automation: Any, attempt: int) -> bool:
        """One browser session. Returns True when the caller should retry."""
        if attempt:
            task.log(f"Retry attempt {attempt}/{self.max_retries}")
        lease = None
        try:
            if self.proxy is not None and self.route_table is not None and self.route_table.enabled:
                await self.proxy.start()

            lease = await self.pool.acquire(
                self._browser_args(task), task_id=task_id, task_type=task.type, log=task.log
            )
            if task.status != TaskStatus.RUNNING:
                await self.pool.release(log=task.log, instance=lease.instance)
                return False
            self.running_browsers.register(task_id, lease.instance, lease.pid)
            task.log(f"Browser {'reused' if lease.cached else 'launched'} (pid={lease.pid})")

            cookies = self.credentials.load() if self.credentials is not None else None
            page = await lease.instance.new_page(cookies)
            ctx = TaskContext(task_id, task, self.store, self.pool)
            result = await automation.run(ctx, page)

        except asyncio.CancelledError:
            task.log("Run cancelled")
            await self._close_lease(task_id, lease, task.log)
            raise
        except Exception as e:
            return await self._on_error(task_id, task, e, lease, attempt)

        if task_id not in self.running_browsers:
            # Browser was taken away (stop / kill-all); whoever did it sets the final state
            task.log("Browser was closed externally, discarding result")
            await self.pool.discard(lease.instance)
            return False
        try:
            if task.status == TaskStatus.RUNNING:
                task.complete(result)
                await self.store.save(task)
        finally:
            await self._release(task_id, lease, task.log)
        return False

    async def _on_error(self, task_id: str, task: Task, error: Exception, lease: Any, attempt: int) -> bool:
        message = str(error) or type(error).__name__

        if lease is not None and task_id not in self.running_browsers:
            task.log(f"Browser was closed externally: {message}")
            await self.pool.discard(lease.instance)
            return False

        if task.status != TaskStatus.RUNNING:
            # Stopped while running; the stop already owns the terminal state
            task.log(f"Task is {task.status.value}, cleaning up after: {message}")
            await self._close_lease(task_id, lease, task.log)
            await self.store.save(task)
            return False

        kind = classify_error(error)

        if kind == ErrorKind.CREDENTIAL:
            task.log(f"Credentials need attention: {message}")
            task.fail(message)
            try:
                await self.store.save(task)
            finally:
                await self._release(task_id, lease, task.log)
            return False

        if kind == ErrorKind.TRANSIENT_NAVIGATION:
            task.log(f"Page navigated mid-operation (attempt {attempt + 1}/{self.max_retries + 1}): {message}")
            await self._close_lease(task_id, lease, task.log)
            if attempt < self.max_retries:
                task.log(f"Retrying in {self.retry_delay:g}s...")
                await self.store.save(task)
                return True
            task.fail(f"Failed after {self.max_retries} retries: {message}")
            await self.store.save(task)
            return False

        instance = lease.instance if lease is not None else None
        try:
            await self.error_handler.handle(task_id, task, error, instance)
        finally:
            await self.pool.discard(instance)
        return False

    def _browser_args(self, task: Task) -> List[str]:
        host = getattr(self.proxy, "host", DEFAULT_PROXY_HOST)
        port = getattr(self.proxy, "port", DEFAULT_PROXY_PORT)
        if self.route_table is not None and self.route_table.enabled:
            task.log(f"Using proxy: http://{host}:{port}")
        else:
            task.log("Proxy disabled - direct connections")
        return browser_args_for(self.route_table, host, port)

    async def _release(self, task_id: str, lease: Any, log: Callable[[str], None]):
        """Return a healthy browser to the pool for the next task."""
        self.running_browsers.pop(task_id)
        if lease is None:
            return
        try:
            await lease.instance.close_pages()
        except Exception as e:
            log(f"Closing pages failed: {e}")
        await self.pool.release(log=log, instance=lease.instance)

    async def _close_lease(self, task_id: str, lease: Any, log: Callable[[str], None]):
        """Close the attributed browser and drop it from the pool."""
        closed = await self.running_browsers.close(task_id, log)
        if lease is None:
            return
        if closed is None and self.pool.instance is lease.instance:
            await close_or_kill(lease.instance, log)
        await self.pool.discard(lease.instance)
