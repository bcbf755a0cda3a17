"""
Generic navigation automation: open a URL, wait for it to settle, capture it.
"""

from typing import Any, Dict

from playwright.async_api import Error as PlaywrightError

from automations.base import Automation, ParamSpec
from core.errors import (
    AutomationError,
    CredentialError,
    ErrorKind,
    TransientNavigationError,
    classify_error,
)

DEFAULT_TIMEOUT = 30.0


class NavigateAutomation(Automation):
    """Opens ``url`` and waits for the document (and optional selector) to be ready."""

    name = "navigate"
    description = "Open URL"
    aliases = ("open_url",)
    params = [
        ParamSpec("url", "URL"),
        ParamSpec("selector", "Wait for selector", required=False),
        ParamSpec("login_url_contains", "Login page URL marker", required=False),
        ParamSpec("timeout", "Load timeout (seconds)", required=False),
    ]

    async def run(self, ctx, page) -> str:
        params = ctx.params
        url = params["url"]
        selector = params.get("selector")
        login_marker = params.get("login_url_contains")
        timeout = float(params.get("timeout") or DEFAULT_TIMEOUT)

        await ctx.set_stage(f"Opening {url}")
        try:
            await page.goto(url, wait_until="domcontentloaded", timeout=timeout * 1000)
        except PlaywrightError as e:
            if classify_error(e) == ErrorKind.TRANSIENT_NAVIGATION:
                raise TransientNavigationError(str(e)) from e
            raise
        ctx.record_url(page.url)

        async def check() -> Dict[str, Any]:
            if login_marker and login_marker in page.url:
                return {"ready": True, "login_redirect": True, "url": page.url}
            state = await page.evaluate("document.readyState")
            found = True
            if selector:
                found = await page.query_selector(selector) is not None
            return {"ready": state == "complete" and found, "state": state, "selector_found": found}

        await ctx.set_stage("Waiting for page")
        result = await ctx.poll(check, timeout=timeout, interval=1.0, label="page load")

        if result.get("login_redirect"):
            await ctx.add_screenshot(page, "Login page")
            raise CredentialError(f"Not logged in - redirected to {page.url}, refresh cookies")

        if not result.get("ready"):
            error = result.get("error") or ""
            if "Execution context was destroyed" in error:
                raise TransientNavigationError(error)
            if result.get("fatal_error"):
                raise AutomationError(f"Page went away while loading: {error}")
            raise AutomationError(
                f"Page not ready after {timeout:.0f}s"
                + (f" (selector {selector} not found)" if selector else "")
            )

        ctx.record_url(page.url)
        await ctx.add_screenshot(page, "Loaded")
        title = await page.title()
        ctx.log(f"Loaded {page.url} - {title}")
        return title or page.url
