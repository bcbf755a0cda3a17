"""
Orphaned browser sweep.

Finds Chromium main processes this service started (their command line has a
DevTools port flag and one of our profile dirs) that no task or pool holds,
and kills them.
"""

import asyncio
import logging
from typing import Callable, Iterable, List, Optional, Set

import psutil

from core.browser import PROFILE_DIR_PREFIX

logger = logging.getLogger(__name__)


def find_orphaned_browsers(known_pids: Iterable[int]) -> List[psutil.Process]:
    known = set(known_pids)
    orphans = []
    for proc in psutil.process_iter(['pid', 'name', 'cmdline']):
        try:
            cmdline = ' '.join(proc.info['cmdline'] or [])
            if '--remote-debugging-port' not in cmdline or PROFILE_DIR_PREFIX not in cmdline:
                continue
            # Renderer/GPU helpers die with their main process
            if '--type=' in cmdline:
                continue
            if proc.info['pid'] in known:
                continue
            orphans.append(proc)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return orphans


def cleanup_orphaned_browsers(known_pids: Iterable[int]) -> int:
    """Kill unattributed browsers. Returns how many were killed."""
    killed = 0
    for proc in find_orphaned_browsers(known_pids):
        try:
            proc.terminate()
            try:
                proc.wait(timeout=3)
            except psutil.TimeoutExpired:
                proc.kill()
            killed += 1
            logger.info(f"[Cleanup] Killed orphaned browser pid={proc.pid}")
        except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
            logger.debug(f"[Cleanup] Could not kill pid={proc.pid}: {e}")
    return killed


class OrphanSweeper:
    """Runs cleanup_orphaned_browsers periodically while the service is idle."""

    def __init__(
        self,
        known_pids: Callable[[], Set[int]],
        is_busy: Callable[[], bool],
        interval: float = 300.0,
    ):
        self.known_pids = known_pids
        self.is_busy = is_busy
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info(f"[Cleanup] Orphan sweep every {self.interval:.0f}s")

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def sweep_once(self) -> int:
        if self.is_busy():
            logger.debug("[Cleanup] Skipping sweep, browsers in use")
            return 0
        return await asyncio.to_thread(cleanup_orphaned_browsers, self.known_pids())

    async def _loop(self):
        while True:
            await asyncio.sleep(self.interval)
            try:
                killed = await self.sweep_once()
                if killed:
                    logger.info(f"[Cleanup] Killed {killed} orphaned browsers")
            except Exception as e:
                logger.error(f"[Cleanup] Sweep failed: {e}")
