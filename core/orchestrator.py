"""
Task Orchestrator - Ties all components together behind the admin operations.

Usage:
    orchestrator = TaskOrchestrator.build(database, ChromiumLauncher(), registry=default_registry())
    await orchestrator.start()
    task = await orchestrator.create_task("navigate", {"url": "https://example.com"})
    ...
    await orchestrator.shutdown()
"""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from core.browser_pool import BrowserPool
from core.chain_runner import ChainRunner, synthetic_id
from core.cleanup import OrphanSweeper
from core.error_handler import TaskErrorHandler
from core.errors import (
    MissingParameterError,
    TaskConflictError,
    TaskNotFoundError,
    UnknownTaskTypeError,
)
from core.models import CHAINED_TYPE, Screenshot, SubTask, Task, TaskStatus
from core.proxy import RouteTable, SelectiveProxy, check_tunnel, probe_url
from core.runner import RunningBrowsers, TaskRunner
from core.task_store import TaskStore, is_synthetic_id
from core.task_types import TaskTypeCatalog

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (TaskStatus.PENDING, TaskStatus.RUNNING)


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def _parent_id(task_id: str) -> str:
    return task_id.rsplit("_sub", 1)[0]


class TaskOrchestrator:
    """
    Owns the live components and exposes one method per admin operation.

    Coordinates:
    - TaskStore for live and persisted tasks
    - TaskRunner / ChainRunner for execution in background asyncio tasks
    - BrowserPool and RunningBrowsers for the browser and its attribution
    - SelectiveProxy and its RouteTable
    - OrphanSweeper for leaked browser processes
    """

    def __init__(
        self,
        store: TaskStore,
        pool: BrowserPool,
        registry: Any,
        catalog: TaskTypeCatalog,
        runner: TaskRunner,
        chain_runner: ChainRunner,
        running_browsers: RunningBrowsers,
        route_table: RouteTable,
        proxy: SelectiveProxy,
        sweeper: Optional[OrphanSweeper] = None,
    ):
        self.store = store
        self.pool = pool
        self.registry = registry
        self.catalog = catalog
        self.runner = runner
        self.chain_runner = chain_runner
        self.running_browsers = running_browsers
        self.route_table = route_table
        self.proxy = proxy
        self.sweeper = sweeper

        self._background: Dict[str, asyncio.Task] = {}
        self._stopping: Set[str] = set()

    @classmethod
    def build(
        cls,
        repository: Any,
        launcher: Any,
        registry: Any,
        credentials: Any = None,
        route_table: Optional[RouteTable] = None,
        proxy_host: str = "127.0.0.1",
        proxy_port: int = 8888,
        idle_timeout: float = 300.0,
        max_age: float = 600.0,
        acquire_timeout: float = 600.0,
        max_retries: int = 3,
        retry_delay: float = 2.0,
        subtask_delay: float = 2.0,
        cleanup_interval: Optional[float] = None,
    ) -> "TaskOrchestrator":
        """Wire every component around one repository and one launcher."""
        store = TaskStore(repository)
        pool = BrowserPool(
            launcher,
            idle_timeout=idle_timeout,
            max_age=max_age,
            acquire_timeout=acquire_timeout,
        )
        route_table = route_table or RouteTable()
        proxy = SelectiveProxy(route_table, host=proxy_host, port=proxy_port)
        running_browsers = RunningBrowsers()
        error_handler = TaskErrorHandler(store, running_browsers)
        runner = TaskRunner(
            pool,
            store,
            registry,
            error_handler,
            route_table=route_table,
            proxy=proxy,
            running_browsers=running_browsers,
            credentials=credentials,
            max_retries=max_retries,
            retry_delay=retry_delay,
        )
        orchestrator = cls(
            store=store,
            pool=pool,
            registry=registry,
            catalog=TaskTypeCatalog(repository, registry),
            runner=runner,
            chain_runner=ChainRunner(runner, store, subtask_delay=subtask_delay),
            running_browsers=running_browsers,
            route_table=route_table,
            proxy=proxy,
        )
        if cleanup_interval:
            orchestrator.sweeper = OrphanSweeper(
                known_pids=orchestrator.known_pids,
                is_busy=orchestrator.is_busy,
                interval=cleanup_interval,
            )
        return orchestrator

    # ============== Lifecycle ==============

    async def start(self):
        if self.route_table.enabled:
            try:
                await self.proxy.start()
            except OSError as e:
                logger.error(f"Failed to start selective proxy: {e}")
        if self.sweeper is not None:
            self.sweeper.start()

    async def shutdown(self):
        """Cancel background work, close the browser and stop the proxy."""
        logger.info("Shutting down task orchestrator...")
        pending = [t for t in self._background.values() if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        await self.running_browsers.close_all(logger.info)
        await self.pool.close(logger.info)
        await self.proxy.stop()
        if self.sweeper is not None:
            await self.sweeper.stop()
        logger.info("Task orchestrator stopped")

    def known_pids(self) -> Set[int]:
        pids = self.running_browsers.pids()
        if self.pool.pid:
            pids.add(self.pool.pid)
        return pids

    def is_busy(self) -> bool:
        return bool(self.store.running_tasks()) or self.pool.in_use

    # ============== Creation ==============

    async def create_task(self, task_type: str, params: Optional[Dict[str, Any]] = None,
                          name: Optional[str] = None) -> Task:
        """Create and start a task of a built-in or custom type."""
        params = dict(params or {})
        automation = self.registry.get(task_type)
        if automation is None:
            try:
                return await self.create_from_task_type(task_type, params)
            except UnknownTaskTypeError:
                raise UnknownTaskTypeError(f"Unknown task type: {task_type}") from None

        missing = automation.missing_params(params)
        if missing:
            raise MissingParameterError(missing[0])

        task = Task(
            id=_new_id(automation.name),
            type=automation.name,
            name=name or params.pop("name", None) or automation.description or automation.name,
            params=params,
        )
        task.log(f"Task created: {task.type}")
        return await self._launch(task)

    async def create_chained_task(self, name: str, subtasks: List[Dict[str, Any]]) -> Task:
        task = Task(
            id=_new_id(CHAINED_TYPE),
            type=CHAINED_TYPE,
            name=name,
            subtasks=self._build_subtasks(subtasks),
        )
        task.log(f"Chained task created with {len(task.subtasks)} subtasks")
        return await self._launch(task)

    async def create_from_task_type(self, type_id: str, params: Optional[Dict[str, Any]] = None) -> Task:
        resolved = await self.catalog.instantiate(type_id, dict(params or {}))
        for subtask in resolved["subtasks"]:
            self._check_subtask(subtask)
        task = Task(
            id=_new_id(CHAINED_TYPE),
            type=CHAINED_TYPE,
            name=resolved["name"],
            subtasks=resolved["subtasks"],
        )
        task.log(f"Task created from type: {resolved['task_type']['name']}")
        return await self._launch(task)

    def _build_subtasks(self, specs: List[Dict[str, Any]]) -> List[SubTask]:
        if not specs:
            raise ValueError("A chained task needs at least one subtask")
        subtasks = []
        for index, spec in enumerate(specs):
            spec = dict(spec)
            sub_type = spec.pop("type", None)
            if not sub_type:
                raise ValueError(f"Subtask {index + 1} has no type")
            params = dict(spec.pop("params", None) or {})
            params.update(spec)
            subtask = SubTask(index=index, type=sub_type, params=params)
            self._check_subtask(subtask)
            subtasks.append(subtask)
        return subtasks

    def _check_subtask(self, subtask: SubTask):
        automation = self.registry.resolve(subtask.type)
        subtask.type = automation.name
        missing = automation.missing_params(subtask.params)
        if missing:
            raise MissingParameterError(missing[0])

    async def _launch(self, task: Task) -> Task:
        self.store.put(task)
        await self.store.save(task)
        background = asyncio.create_task(self._execute(task))
        self._background[task.id] = background
        background.add_done_callback(lambda t, task_id=task.id: self._forget_background(task_id, t))
        return task

    def _forget_background(self, task_id: str, background: asyncio.Task):
        if self._background.get(task_id) is background:
            del self._background[task_id]

    async def _execute(self, task: Task):
        try:
            if task.is_chained:
                await self.chain_runner.run(task.id, task)
            else:
                await self.runner.run(task.id, task)
        except asyncio.CancelledError:
            if task.status in ACTIVE_STATUSES and task.id not in self._stopping:
                task.stop("Cancelled")
                await self.store.save(task)
            raise
        except Exception as e:
            logger.exception(f"Task {task.id} crashed: {e}")
            if task.status == TaskStatus.PENDING:
                task.start()
            if task.status == TaskStatus.RUNNING:
                task.fail(str(e))
            try:
                await self.store.save(task)
            except Exception as save_error:
                logger.error(f"Could not persist task {task.id}: {save_error}")
        else:
            if task.status == TaskStatus.RUNNING and task.id not in self._stopping:
                task.fail("Run ended without reaching a final state")
                await self.store.save(task)
        finally:
            if task.is_terminal and self.store.get_live(task.id) is task:
                self.store.evict(task.id)

    # ============== Queries ==============

    async def _require(self, task_id: str) -> Task:
        task = await self.store.get(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        return task

    async def get_task(self, task_id: str) -> Dict[str, Any]:
        """Task view; a running chain shows the live log of its running subtask."""
        task = await self._require(task_id)
        view = task.to_dict()
        if task.is_chained and task.status == TaskStatus.RUNNING:
            for i, subtask in enumerate(view["subtasks"]):
                if subtask["status"] != TaskStatus.RUNNING.value:
                    continue
                live = self.store.get_live(synthetic_id(task_id, i))
                if live is not None:
                    subtask["logs"] = list(live.logs)
                    subtask["stage"] = live.stage
        return view

    async def list_tasks(self, status: Optional[str] = None, name: Optional[str] = None) -> List[Dict[str, Any]]:
        tasks = await self.store.list_tasks(status=status, name_filter=name)
        summaries = []
        for task in tasks:
            summary = task.to_dict()
            summary.pop("logs")
            summaries.append(summary)
        return summaries

    # ============== Mutation ==============

    def _apply_updates(self, task: Task, updates: Dict[str, Any]):
        if updates.get("name") is not None:
            task.name = updates["name"]
        if updates.get("params") is not None:
            task.params.update(updates["params"])
        if updates.get("subtasks") is not None:
            task.subtasks = self._build_subtasks(updates["subtasks"])
            task.current_index = 0

    async def update_task(self, task_id: str, updates: Dict[str, Any]) -> Task:
        task = await self._require(task_id)
        if task.status == TaskStatus.RUNNING:
            raise TaskConflictError("Cannot update running task")
        self._apply_updates(task, updates)
        await self.store.save(task)
        return task

    async def delete_task(self, task_id: str):
        live = self.store.get_live(task_id)
        if live is not None and live.status == TaskStatus.RUNNING:
            raise TaskConflictError("Cannot delete running task")
        await self._require(task_id)
        await self.store.remove(task_id)

    async def delete_tasks(self, task_ids: List[str]) -> Dict[str, Any]:
        deleted, skipped = [], []
        for task_id in task_ids:
            live = self.store.get_live(task_id)
            if live is not None and live.status == TaskStatus.RUNNING:
                skipped.append({"id": task_id, "reason": "running"})
                continue
            await self.store.remove(task_id)
            deleted.append(task_id)
        return {"deleted": deleted, "skipped": skipped}

    async def restart_task(self, task_id: str, updates: Optional[Dict[str, Any]] = None) -> Task:
        """Reset a finished task (same id) and run it again from the start."""
        task = await self._require(task_id)
        if task.status == TaskStatus.RUNNING:
            raise TaskConflictError("Task is already running")
        background = self._background.get(task_id)
        if background is not None and not background.done():
            raise TaskConflictError("Task is still shutting down")

        self._apply_updates(task, updates or {})
        task.reset_for_restart()
        task.log("Task restarted")
        await self.store.clear_screenshots(task_id)
        return await self._launch(task)

    async def stop_task(self, task_id: str) -> Task:
        """
        Cancel a task: close every browser attributed to it or its subtasks,
        then mark it stopped.
        """
        task = await self._require(task_id)
        if task.status not in ACTIVE_STATUSES:
            raise TaskConflictError("Task is not running")

        reason = "Task stopped by user"
        self._stopping.add(task_id)
        try:
            closed = await self.running_browsers.close(task_id, task.log) is not None
            for i, subtask in enumerate(task.subtasks):
                sub_id = synthetic_id(task_id, i)
                closed = await self.running_browsers.close(sub_id, task.log) is not None or closed
                temp = self.store.get_live(sub_id)
                if temp is not None and temp.status in ACTIVE_STATUSES:
                    temp.stop("Parent task stopped by user")
                if subtask.status in ACTIVE_STATUSES:
                    subtask.status = TaskStatus.STOPPED
                    subtask.stage = "Parent task stopped by user"
                    subtask.end_time = datetime.now().isoformat()

            if not closed:
                # Nothing attributed yet: it is waiting (pool slot, retry or chain delay)
                await self._cancel_background(task_id)

            if task.status in ACTIVE_STATUSES:
                task.stop(reason)
            await self.store.save(task)
        finally:
            self._stopping.discard(task_id)
        self._evict_if_idle(task_id)
        return task

    def _evict_if_idle(self, task_id: str):
        background = self._background.get(task_id)
        task = self.store.get_live(task_id)
        if task is not None and task.is_terminal and (background is None or background.done()):
            self.store.evict(task_id)

    async def _cancel_background(self, task_id: str):
        background = self._background.get(task_id)
        if background is None or background.done():
            return
        background.cancel()
        try:
            await background
        except asyncio.CancelledError:
            pass

    async def kill_all_browsers(self) -> Dict[str, Any]:
        """Close every attributed browser and mark the affected tasks stopped."""
        affected = set()
        for entry in self.running_browsers.items():
            affected.add(entry.task_id)
            if is_synthetic_id(entry.task_id):
                affected.add(_parent_id(entry.task_id))

        self._stopping.update(affected)
        try:
            killed = await self.running_browsers.close_all(logger.info)
            for task_id in sorted(affected, key=is_synthetic_id, reverse=True):
                task = self.store.get_live(task_id)
                if task is None or task.status not in ACTIVE_STATUSES:
                    continue
                for subtask in task.subtasks:
                    if subtask.status in ACTIVE_STATUSES:
                        subtask.status = TaskStatus.STOPPED
                        subtask.end_time = datetime.now().isoformat()
                task.stop("Browser killed by admin")
                await self.store.save(task)
        finally:
            self._stopping.difference_update(affected)
        for task_id in affected:
            if not is_synthetic_id(task_id):
                self._evict_if_idle(task_id)

        logger.info(f"Killed {len(killed)} browser processes")
        return {"killed": len(killed), "task_ids": killed}

    # ============== Screenshots ==============

    async def screenshots(self, task_id: str) -> List[Dict[str, Any]]:
        return [shot.to_dict() for shot in await self.store.screenshots(task_id)]

    async def screenshot(self, task_id: str, index: int) -> Screenshot:
        shot = await self.store.screenshot(task_id, index)
        if shot is None:
            raise TaskNotFoundError("Screenshot not found")
        return shot

    # ============== Proxy and pool ==============

    def proxy_config(self) -> Dict[str, Any]:
        return {
            **self.route_table.to_dict(),
            "local_host": self.proxy.host,
            "local_port": self.proxy.port,
            "running": self.proxy.is_running,
            "existing": self.proxy.existing,
            "stats": dict(self.proxy.stats),
        }

    async def update_proxy_config(self, **changes) -> Dict[str, Any]:
        self.route_table.update(**changes)
        logger.info(f"Proxy config updated: {self.route_table.to_dict()}")
        if self.route_table.enabled and not self.proxy.is_running:
            await self.proxy.start()
        return self.proxy_config()

    async def test_proxy(self, port: Optional[int] = None, url: Optional[str] = None) -> Dict[str, Any]:
        result = await check_tunnel(self.route_table.tunnel_host, port or self.route_table.tunnel_port)
        if url:
            result["probe"] = await probe_url(url, self.proxy.proxy_url)
        return result

    def pool_status(self) -> Dict[str, Any]:
        status = self.pool.get_status()
        status["running_browsers"] = [entry.to_dict() for entry in self.running_browsers.items()]
        return status

    async def close_pool(self):
        await self.pool.close(logger.info)
