"""
Core components for browser task execution.

Modules:
- polling: bounded condition polling used for every asynchronous wait
- browser: Chromium processes attached over CDP
- browser_pool: single-slot browser cache with idle and max-age eviction
- proxy: selective CONNECT proxy (direct vs tunnel routing)
- models: task, subtask and screenshot records
- task_store: live task cache over the persistence repository
- runner / chain_runner: atomic and chained task execution with retry
- error_handler: diagnostics and teardown for failed tasks
- orchestrator: ties everything together behind the admin operations
"""

from .browser_pool import BrowserPool, PoolLease
from .errors import (
    AutomationError,
    CredentialError,
    ErrorKind,
    TransientNavigationError,
)
from .models import SubTask, Task, TaskStatus
from .polling import poll_for_condition
from .proxy import RouteTable, SelectiveProxy
from .orchestrator import TaskOrchestrator

__all__ = [
    "AutomationError",
    "BrowserPool",
    "CredentialError",
    "ErrorKind",
    "PoolLease",
    "RouteTable",
    "SelectiveProxy",
    "SubTask",
    "Task",
    "TaskOrchestrator",
    "TaskStatus",
    "TransientNavigationError",
    "poll_for_condition",
]
