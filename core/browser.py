#!/usr/bin/env python3
"""
Local Chromium Browser Processes

Starts Chromium as a real OS process (so it has a pid we can kill) and
attaches Playwright to it over CDP.

Example:
    from core.browser import ChromiumLauncher, close_or_kill

    launcher = ChromiumLauncher(headless=True)
    instance = await launcher.launch(["--window-size=1600,1000"])
    page = await instance.new_page()
    await page.goto("https://example.com")
    await close_or_kill(instance)
"""

import asyncio
import logging
import os
import re
import shutil
import signal
import tempfile
from typing import Any, Callable, Dict, List, Optional

from playwright.async_api import Browser, Page, async_playwright

logger = logging.getLogger(__name__)

# Profile dirs carry this prefix so the orphan sweep can recognise our processes
PROFILE_DIR_PREFIX = "browserpilot_profile_"

DEVTOOLS_LINE = re.compile(r"DevTools listening on (ws://\S+)")

VIEWPORT = {"width": 1600, "height": 1000}
USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

# Fixed baseline for stability on Linux hosts and containers
BASE_BROWSER_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--disable-software-rasterizer",
    "--disable-features=IsolateOrigins,site-per-process,ServiceWorker",
    "--disable-extensions",
    "--disable-background-networking",
    "--disable-sync",
    "--disable-translate",
    "--disable-default-apps",
    "--no-first-run",
    "--disable-component-update",
    "--disable-domain-reliability",
    "--js-flags=--max-old-space-size=1024",
]


def merge_browser_args(extra_args: Optional[List[str]] = None) -> List[str]:
    """Baseline args followed by caller args, without duplicates."""
    merged = list(BASE_BROWSER_ARGS)
    for arg in extra_args or []:
        if arg not in merged:
            merged.append(arg)
    return merged


def browser_args_for(route_table: Any, proxy_host: str, proxy_port: int) -> List[str]:
    """Per-task browser args; points Chromium at the selective proxy when routing is enabled."""
    args = [
        "--window-size=1600,1000",
        "--force-device-scale-factor=1",
        "--disable-accelerated-2d-canvas",
        "--disable-gpu-compositing",
        "--enable-features=NetworkService,NetworkServiceInProcess",
    ]
    if route_table is not None and route_table.enabled:
        args.append(f"--proxy-server=http://{proxy_host}:{proxy_port}")
    return args


def force_kill(pid: Optional[int]) -> bool:
    """SIGKILL a process by pid. Returns False if there was nothing to kill."""
    if not pid:
        return False
    try:
        os.kill(pid, signal.SIGKILL)
        return True
    except (ProcessLookupError, PermissionError):
        return False


class BrowserInstance:
    """
    One Chromium process plus the Playwright connection attached to it.

    The pool and the runner only talk to browsers through this handle, so
    tests can substitute a fake with the same methods.
    """

    def __init__(
        self,
        browser: Browser,
        process: Optional[asyncio.subprocess.Process] = None,
        profile_dir: Optional[str] = None,
        playwright: Any = None,
        close_timeout: float = 10.0,
    ):
        self.browser = browser
        self.process = process
        self.pid: Optional[int] = process.pid if process else None
        self.profile_dir = profile_dir
        self.close_timeout = close_timeout
        self._playwright = playwright
        self._callbacks: List[Callable[[], None]] = []
        self._disconnected = False
        self._watcher: Optional[asyncio.Task] = None

        browser.on("disconnected", lambda _browser: self._notify_disconnect())
        if process is not None:
            self._watcher = asyncio.create_task(self._watch_process())

    async def _watch_process(self):
        await self.process.wait()
        self._notify_disconnect()

    def _notify_disconnect(self):
        if self._disconnected:
            return
        self._disconnected = True
        for callback in list(self._callbacks):
            try:
                callback()
            except Exception as e:
                logger.warning(f"Disconnect callback failed: {e}")

    def on_disconnect(self, callback: Callable[[], None]):
        """Register a callback fired once when the browser goes away."""
        self._callbacks.append(callback)

    @property
    def is_connected(self) -> bool:
        return not self._disconnected and self.browser.is_connected()

    async def probe(self):
        """Cheap CDP round trip. Raises if the browser no longer answers."""
        if not self.is_connected:
            raise RuntimeError("Browser disconnected")
        session = await self.browser.new_browser_cdp_session()
        try:
            await session.send("Browser.getVersion")
        finally:
            await session.detach()

    def pages(self) -> List[Page]:
        return [page for context in self.browser.contexts for page in context.pages]

    def last_page(self) -> Optional[Page]:
        pages = self.pages()
        return pages[-1] if pages else None

    async def new_page(self, cookies: Optional[List[Dict[str, Any]]] = None) -> Page:
        """Open a page in a fresh context with the standard viewport and user agent."""
        context = await self.browser.new_context(viewport=VIEWPORT, user_agent=USER_AGENT)
        if cookies:
            await context.add_cookies(cookies)
        return await context.new_page()

    async def close_pages(self):
        """Close every context opened for a task, keeping the process alive."""
        for context in list(self.browser.contexts):
            try:
                await context.close()
            except Exception as e:
                logger.debug(f"Context close failed: {e}")

    async def close(self):
        """
        Graceful shutdown: drop the CDP connection, then terminate the process.

        Raises if the process does not exit within ``close_timeout``; callers
        fall back to kill().
        """
        try:
            await asyncio.wait_for(self.browser.close(), timeout=self.close_timeout)
        finally:
            if self.process is not None and self.process.returncode is None:
                self.process.terminate()
                await asyncio.wait_for(self.process.wait(), timeout=self.close_timeout)
            await self._dispose()

    def kill(self) -> bool:
        killed = force_kill(self.pid)
        self._notify_disconnect()
        if self.profile_dir:
            shutil.rmtree(self.profile_dir, ignore_errors=True)
        return killed

    async def _dispose(self):
        if self._playwright is not None:
            try:
                await self._playwright.stop()
            except Exception as e:
                logger.debug(f"Playwright stop failed: {e}")
            self._playwright = None
        if self.profile_dir:
            shutil.rmtree(self.profile_dir, ignore_errors=True)


async def close_or_kill(instance: Any, log: Optional[Callable[[str], None]] = None) -> str:
    """
    Close a browser gracefully, force-killing by pid if that fails.

    Returns "closed" or "killed".
    """
    emit = log or logger.info
    try:
        await instance.close()
        emit("Browser closed")
        return "closed"
    except Exception as e:
        killed = instance.kill()
        emit(f"Browser close failed ({e}); force kill pid={instance.pid}: {killed}")
        return "killed"


class ChromiumLauncher:
    """Launches local Chromium processes and attaches Playwright over CDP."""

    def __init__(
        self,
        executable_path: Optional[str] = None,
        headless: bool = True,
        launch_timeout: float = 30.0,
    ):
        self.executable_path = executable_path
        self.headless = headless
        self.launch_timeout = launch_timeout

    async def launch(self, args: List[str]) -> BrowserInstance:
        """
        Start a Chromium process with ``args`` and connect to it.

        Raises on any failure; a half-started process is killed first.
        """
        playwright = await async_playwright().start()
        profile_dir = tempfile.mkdtemp(prefix=PROFILE_DIR_PREFIX)
        executable = self.executable_path or playwright.chromium.executable_path

        command = [
            executable,
            "--remote-debugging-port=0",
            f"--user-data-dir={profile_dir}",
        ]
        if self.headless:
            command.append("--headless=new")
        command.extend(args)
        command.append("about:blank")

        process = None
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
            ws_url = await asyncio.wait_for(
                self._read_devtools_url(process), timeout=self.launch_timeout
            )
            asyncio.create_task(self._drain(process))
            browser = await playwright.chromium.connect_over_cdp(ws_url)
        except BaseException:
            if process is not None and process.returncode is None:
                force_kill(process.pid)
            await playwright.stop()
            shutil.rmtree(profile_dir, ignore_errors=True)
            raise

        logger.info(f"Chromium started pid={process.pid} endpoint={ws_url}")
        return BrowserInstance(browser, process, profile_dir=profile_dir, playwright=playwright)

    @staticmethod
    async def _read_devtools_url(process: asyncio.subprocess.Process) -> str:
        while True:
            line = await process.stderr.readline()
            if not line:
                raise RuntimeError(f"Chromium exited before DevTools was ready (code={process.returncode})")
            match = DEVTOOLS_LINE.search(line.decode(errors="replace"))
            if match:
                return match.group(1)

    @staticmethod
    async def _drain(process: asyncio.subprocess.Process):
        # Keep the pipe empty so Chromium never blocks on stderr writes
        while True:
            line = await process.stderr.readline()
            if not line:
                return
            logger.debug(f"chromium[{process.pid}] {line.decode(errors='replace').rstrip()}")
