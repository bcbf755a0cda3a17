"""
Pytest fixtures and configuration for the BrowserPilot test suite.

No real Chromium is started: FakeLauncher hands out FakeInstance objects with
made-up pids, and FakeRepository stands in for the SQLite database.
"""

import pytest
import pytest_asyncio
import asyncio
import itertools
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

# Add project root to path
import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

# Keep log files out of the working tree
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="browserpilot_test_logs_"))
os.environ.setdefault("CLEANUP_ENABLED", "false")

from automations.base import Automation, AutomationRegistry, ParamSpec
from core.browser_pool import BrowserPool
from core.errors import AutomationError, TransientNavigationError
from core.models import Screenshot, Task, TaskStatus
from core.orchestrator import TaskOrchestrator
from core.proxy import RouteTable

# Well above the kernel's pid_max, so a stray os.kill never hits a real process
_pids = itertools.count(50_000_000)


# === Fake Browser ===

class FakePage:
    """Just enough of a Playwright page for the runner, handler and automations."""

    def __init__(self, instance: "FakeInstance", url: str = "about:blank"):
        self.instance = instance
        self.url = url
        self.title_text = "Fake Page"
        self.ready_state = "complete"
        self.selectors: set = set()
        self.goto_error: Optional[BaseException] = None
        self.closed = False

    async def goto(self, url: str, **kwargs):
        if self.goto_error is not None:
            raise self.goto_error
        self.url = url

    async def evaluate(self, script: str):
        if "readyState" in script:
            return self.ready_state
        return "Fake   page\n body text"

    async def query_selector(self, selector: str):
        return object() if selector in self.selectors else None

    async def title(self) -> str:
        return self.title_text

    async def screenshot(self, **kwargs) -> bytes:
        if self.instance.closed:
            raise RuntimeError("Target page, context or browser has been closed")
        return b"\x89PNG fake"

    async def wait_until_closed(self):
        """Blocks until the owning browser is closed, then fails like Playwright does."""
        await self.instance.closed_event.wait()
        raise RuntimeError("Target page, context or browser has been closed")


class FakeInstance:
    """Stand-in for core.browser.BrowserInstance."""

    def __init__(self, args: List[str]):
        self.pid = next(_pids)
        self.args = args
        self.pages: List[FakePage] = []
        self.closed = False
        self.killed = False
        self.fail_close = False
        self.probe_error: Optional[BaseException] = None
        self.closed_event = asyncio.Event()
        self._callbacks = []

    def on_disconnect(self, callback):
        self._callbacks.append(callback)

    def disconnect(self):
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    async def probe(self):
        if self.probe_error is not None:
            raise self.probe_error

    def last_page(self) -> Optional[FakePage]:
        return self.pages[-1] if self.pages else None

    async def new_page(self, cookies=None) -> FakePage:
        page = FakePage(self)
        self.pages.append(page)
        return page

    async def close_pages(self):
        for page in self.pages:
            page.closed = True
        self.pages = []

    async def close(self):
        if self.fail_close:
            raise RuntimeError("close timed out")
        self.closed = True
        self.closed_event.set()
        self.disconnect()

    def kill(self) -> bool:
        self.killed = True
        self.closed = True
        self.closed_event.set()
        self.disconnect()
        return True


class FakeLauncher:
    """Launches FakeInstances; set ``fail_next`` to make the next launch raise."""

    def __init__(self):
        self.instances: List[FakeInstance] = []
        self.fail_next: Optional[BaseException] = None

    @property
    def launches(self) -> int:
        return len(self.instances)

    async def launch(self, args: List[str]) -> FakeInstance:
        if self.fail_next is not None:
            error, self.fail_next = self.fail_next, None
            raise error
        instance = FakeInstance(args)
        self.instances.append(instance)
        return instance


# === Fake Persistence ===

class FakeRepository:
    """In-memory version of api.database.Database."""

    def __init__(self):
        self.tasks: Dict[str, Dict[str, Any]] = {}
        self.shots: Dict[str, Dict[int, Screenshot]] = {}
        self.task_types: Dict[str, Dict[str, Any]] = {}
        self.saves = 0

    async def save_task(self, task_id: str, task: Task) -> bool:
        self.tasks[task_id] = task.to_dict()
        self.saves += 1
        return True

    async def load_task(self, task_id: str) -> Optional[Task]:
        record = self.tasks.get(task_id)
        return Task.from_dict(record) if record else None

    async def list_tasks(self, limit: int = 500) -> List[Task]:
        records = sorted(self.tasks.values(), key=lambda r: r["created_at"], reverse=True)
        return [Task.from_dict(r) for r in records[:limit]]

    async def delete_task(self, task_id: str) -> bool:
        self.shots.pop(task_id, None)
        return self.tasks.pop(task_id, None) is not None

    async def delete_tasks(self, task_ids) -> int:
        return sum([await self.delete_task(task_id) for task_id in task_ids])

    async def save_screenshot(self, task_id, index, label, data, timestamp=None) -> bool:
        self.shots.setdefault(task_id, {})[index] = Screenshot(task_id, index, label, data, timestamp or "")
        return True

    async def load_screenshots(self, task_id: str) -> List[Screenshot]:
        return [shot for _, shot in sorted(self.shots.get(task_id, {}).items())]

    async def delete_screenshots(self, task_id: str) -> int:
        return len(self.shots.pop(task_id, {}))

    async def list_task_types(self) -> List[Dict[str, Any]]:
        return list(self.task_types.values())

    async def get_task_type(self, type_id: str) -> Optional[Dict[str, Any]]:
        return self.task_types.get(type_id)

    async def find_task_type(self, id_or_name: str) -> Optional[Dict[str, Any]]:
        if id_or_name in self.task_types:
            return self.task_types[id_or_name]
        for task_type in self.task_types.values():
            if task_type["name"] == id_or_name:
                return task_type
        return None

    async def create_task_type(self, task_type: Dict[str, Any]) -> Dict[str, Any]:
        type_id = task_type.get("id") or f"tt_{len(self.task_types) + 1}"
        self.task_types[type_id] = {
            "id": type_id,
            "name": task_type["name"],
            "description": task_type.get("description"),
            "parameters": list(task_type.get("parameters") or []),
            "subtasks": list(task_type.get("subtasks") or []),
        }
        return self.task_types[type_id]

    async def update_task_type(self, type_id: str, updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if type_id not in self.task_types:
            return None
        self.task_types[type_id].update({k: v for k, v in updates.items() if v is not None})
        return self.task_types[type_id]

    async def delete_task_type(self, type_id: str) -> bool:
        return self.task_types.pop(type_id, None) is not None


# === Test Automations ===

class StepAutomation(Automation):
    """
    Scripted automation driven by its params:
      outcome: ok | fail | transient | block
    Every run appends its label to ``calls``.
    """

    name = "step"
    description = "Scripted step"
    params = [ParamSpec("label", "Label"), ParamSpec("outcome", "Outcome", required=False)]

    def __init__(self):
        self.calls: List[str] = []

    async def run(self, ctx, page):
        label = ctx.params["label"]
        outcome = ctx.params.get("outcome", "ok")
        self.calls.append(label)
        ctx.log(f"Running step {label}")
        await ctx.add_screenshot(page, f"step {label}")
        if outcome == "fail":
            raise AutomationError(f"step {label} broke")
        if outcome == "transient":
            raise TransientNavigationError("Execution context was destroyed, most likely because of a navigation")
        if outcome == "block":
            await page.wait_until_closed()
        return f"done {label}"


# === Fixtures ===

@pytest.fixture
def launcher():
    return FakeLauncher()


@pytest.fixture
def repository():
    return FakeRepository()


@pytest.fixture
def step():
    return StepAutomation()


@pytest.fixture
def registry(step):
    return AutomationRegistry([step])


@pytest.fixture
def pool(launcher):
    return BrowserPool(launcher, idle_timeout=60, max_age=600, acquire_timeout=5)


@pytest_asyncio.fixture
async def orchestrator(repository, launcher, registry):
    orchestrator = TaskOrchestrator.build(
        repository,
        launcher,
        registry=registry,
        route_table=RouteTable(enabled=False),
        idle_timeout=60,
        max_age=600,
        acquire_timeout=5,
        max_retries=3,
        retry_delay=0,
        subtask_delay=0,
    )
    yield orchestrator
    await orchestrator.shutdown()


async def wait_for(predicate, timeout: float = 5.0, interval: float = 0.01):
    """Spin the loop until ``predicate()`` is truthy."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(interval)


@pytest.fixture
def settle(orchestrator):
    """Returns a coroutine function that waits until a task reaches a terminal state."""
    async def _settle(task_id: str, timeout: float = 5.0) -> Dict[str, Any]:
        async def current():
            return await orchestrator.store.get(task_id)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            task = await current()
            if task is not None and task.is_terminal and not orchestrator._background.get(task_id):
                return await orchestrator.get_task(task_id)
            if loop.time() > deadline:
                raise AssertionError(f"task {task_id} still {task.status.value if task else 'missing'}")
            await asyncio.sleep(0.01)

    return _settle


@pytest.fixture
def running(orchestrator):
    """Returns a coroutine function that waits until a task holds a browser."""
    async def _running(task_id: str):
        await wait_for(lambda: task_id in orchestrator.running_browsers)

    return _running

