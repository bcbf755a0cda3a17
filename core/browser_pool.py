"""
Single-slot browser pool.

Keeps at most one Chromium process alive between tasks so consecutive tasks
skip the launch cost. Only one task may hold the browser at a time; other
acquirers wait (bounded) for release().

Usage:
    pool = BrowserPool(ChromiumLauncher())
    lease = await pool.acquire(extra_args)
    page = await lease.instance.new_page()
    ...
    await pool.release()
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

from core.browser import close_or_kill, force_kill, merge_browser_args
from core.errors import PoolBusyError

logger = logging.getLogger(__name__)

URL_HISTORY_SIZE = 50
TASK_HISTORY_SIZE = 20


@dataclass
class PoolLease:
    """What acquire() hands out."""
    instance: Any
    pid: Optional[int]
    cached: bool


class BrowserPool:
    """
    Single-slot cache of one browser process with idle and max-age eviction.

    Pass the launcher in (ChromiumLauncher in production, a fake in tests);
    the pool never reaches for a global.
    """

    def __init__(
        self,
        launcher: Any,
        idle_timeout: float = 300.0,
        max_age: float = 600.0,
        acquire_timeout: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.launcher = launcher
        self.idle_timeout = idle_timeout
        self.max_age = max_age
        self.acquire_timeout = acquire_timeout
        self.clock = clock

        self.instance: Any = None
        self.pid: Optional[int] = None
        self.in_use = False
        self._created_at: Optional[float] = None
        self._last_used: Optional[float] = None
        self._created_wall: Optional[datetime] = None
        self._last_used_wall: Optional[datetime] = None

        self._idle_task: Optional[asyncio.Task] = None
        self._slot = asyncio.Condition()

        self.url_history: deque = deque(maxlen=URL_HISTORY_SIZE)
        self.task_history: deque = deque(maxlen=TASK_HISTORY_SIZE)

    @property
    def has_instance(self) -> bool:
        return self.instance is not None

    async def acquire(
        self,
        extra_args: Optional[List[str]] = None,
        task_id: Optional[str] = None,
        task_type: Optional[str] = None,
        log: Optional[Callable[[str], None]] = None,
    ) -> PoolLease:
        """
        Take exclusive use of the browser, launching one if needed.

        Launch failures propagate; the slot is given back first.
        """
        emit = log or logger.info

        async with self._slot:
            try:
                await asyncio.wait_for(
                    self._slot.wait_for(lambda: not self.in_use),
                    timeout=self.acquire_timeout,
                )
            except asyncio.TimeoutError:
                raise PoolBusyError(
                    f"Browser pool still in use after {self.acquire_timeout:.0f}s"
                ) from None
            self.in_use = True

        self._cancel_idle_timer()
        try:
            lease = await self._checkout(extra_args, emit)
        except BaseException:
            self.in_use = False
            await self._notify_waiters()
            raise
        if task_id:
            self.record_task(task_id, task_type)
        return lease

    async def _checkout(self, extra_args: Optional[List[str]], emit: Callable[[str], None]) -> PoolLease:
        if self.instance is not None:
            age = self.clock() - (self._created_at or 0)
            if age > self.max_age:
                emit(f"[BrowserPool] Browser too old ({age:.0f}s), closing...")
                old = self._forget()
                await close_or_kill(old, emit)
            else:
                try:
                    await self.instance.probe()
                    self._touch()
                    emit(f"[BrowserPool] Reusing cached browser (pid={self.pid}, age={age:.0f}s)")
                    return PoolLease(self.instance, self.pid, True)
                except Exception as e:
                    emit(f"[BrowserPool] Cached browser disconnected: {e}")
                    stale = self._forget()
                    force_kill(stale.pid)

        emit("[BrowserPool] Launching new browser...")
        instance = await self.launcher.launch(merge_browser_args(extra_args))

        self.instance = instance
        self.pid = instance.pid
        self._created_at = self.clock()
        self._created_wall = datetime.now()
        self._touch()
        self.url_history.clear()
        self.task_history.clear()

        def on_disconnect():
            if self.instance is instance:
                logger.info(f"[BrowserPool] Browser pid={instance.pid} disconnected")
                self._forget()
                self.in_use = False
                asyncio.ensure_future(self._notify_waiters())

        instance.on_disconnect(on_disconnect)
        emit(f"[BrowserPool] New browser launched with PID: {instance.pid}")
        return PoolLease(instance, instance.pid, False)

    async def release(self, log: Optional[Callable[[str], None]] = None, instance: Any = None):
        """
        Give the browser back and arm the idle-eviction timer.

        Passing the leased ``instance`` makes a late release harmless: if that
        browser already went away (and the slot may have been re-leased), the
        call does nothing.
        """
        emit = log or logger.info
        if instance is not None and self.instance is not instance:
            emit("[BrowserPool] Lease already ended, nothing to release")
            return
        self.in_use = False
        self._touch()
        self._cancel_idle_timer()
        if self.instance is not None:
            self._idle_task = asyncio.create_task(self._evict_when_idle(self.instance))
        emit("[BrowserPool] Browser released back to pool")
        await self._notify_waiters()

    async def _evict_when_idle(self, instance: Any):
        await asyncio.sleep(self.idle_timeout)
        self._idle_task = None
        if not self.in_use and self.instance is instance:
            logger.info("[BrowserPool] Closing idle browser")
            self._forget()
            await close_or_kill(instance, logger.info)

    async def discard(self, instance: Any):
        """Forget a leased browser the caller has closed or killed itself."""
        if instance is None or self.instance is not instance:
            return
        self._cancel_idle_timer()
        self._forget()
        self.in_use = False
        await self._notify_waiters()

    async def close(self, log: Optional[Callable[[str], None]] = None):
        """Close the browser (force-killing if needed) and reset all pool state."""
        emit = log or logger.info
        self._cancel_idle_timer()
        instance = self._forget()
        if instance is not None:
            emit("[BrowserPool] Closing browser")
            await close_or_kill(instance, emit)
        self.in_use = False
        self._created_wall = None
        self.url_history.clear()
        self.task_history.clear()
        await self._notify_waiters()

    def record_url(self, url: Optional[str], task_id: Optional[str] = None):
        if not url or url == "about:blank":
            return
        try:
            domain = urlparse(url).hostname
        except ValueError:
            return
        if not domain:
            return
        self.url_history.append({
            "url": url[:200],
            "domain": domain,
            "task_id": task_id,
            "time": datetime.now().isoformat(),
        })

    def record_task(self, task_id: str, task_type: Optional[str] = None):
        self.task_history.append({
            "task_id": task_id,
            "task_type": task_type,
            "time": datetime.now().isoformat(),
        })

    def get_status(self) -> Dict[str, Any]:
        """Diagnostic snapshot of the slot."""
        now = self.clock()
        domains = list(dict.fromkeys(entry["domain"] for entry in self.url_history))
        return {
            "has_instance": self.has_instance,
            "in_use": self.in_use,
            "pid": self.pid,
            "created_at": self._created_wall.isoformat() if self._created_wall and self.has_instance else None,
            "last_used": self._last_used_wall.isoformat() if self._last_used_wall else None,
            "idle_sec": round(now - self._last_used) if self._last_used is not None else None,
            "uptime_sec": round(now - self._created_at) if self._created_at is not None else None,
            "url_count": len(self.url_history),
            "domains": domains,
            "recent_urls": list(self.url_history)[-10:][::-1],
            "task_count": len(self.task_history),
            "recent_tasks": list(self.task_history)[-5:][::-1],
        }

    def _touch(self):
        self._last_used = self.clock()
        self._last_used_wall = datetime.now()

    def _forget(self) -> Any:
        instance = self.instance
        self.instance = None
        self.pid = None
        self._created_at = None
        return instance

    def _cancel_idle_timer(self):
        task = self._idle_task
        self._idle_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _notify_waiters(self):
        async with self._slot:
            self._slot.notify_all()
