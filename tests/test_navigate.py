"""
Tests for the generic navigate automation against a fake page.
"""

import pytest
from playwright.async_api import Error as PlaywrightError

from automations.navigate import NavigateAutomation
from conftest import FakeInstance, FakePage
from core.errors import AutomationError, CredentialError, ErrorKind, TransientNavigationError
from core.models import Task
from core.task_context import TaskContext
from core.task_store import TaskStore


@pytest.fixture
def page():
    return FakePage(FakeInstance([]))


@pytest.fixture
def make_ctx(repository, pool):
    store = TaskStore(repository)

    def make(**params):
        task = store.put(Task(id="navigate_1", type="navigate", params=params))
        return TaskContext(task.id, task, store, pool), store

    return make


@pytest.mark.asyncio
class TestNavigate:

    async def test_loaded_page(self, page, make_ctx, pool):
        ctx, store = make_ctx(url="https://example.com/home")

        result = await NavigateAutomation().run(ctx, page)

        assert result == "Fake Page"
        assert page.url == "https://example.com/home"
        assert [s.label for s in await store.screenshots(ctx.task_id)] == ["Loaded"]
        assert pool.url_history[0]["domain"] == "example.com"
        assert any("Loaded https://example.com/home" in line for line in ctx.task.logs)

    async def test_waits_for_selector(self, page, make_ctx):
        page.selectors.add("#main")
        ctx, _ = make_ctx(url="https://example.com", selector="#main")
        assert await NavigateAutomation().run(ctx, page) == "Fake Page"

    async def test_login_redirect_is_credential_error(self, page, make_ctx):
        ctx, store = make_ctx(url="https://example.com/login?next=/", login_url_contains="/login")

        with pytest.raises(CredentialError) as excinfo:
            await NavigateAutomation().run(ctx, page)

        assert excinfo.value.kind == ErrorKind.CREDENTIAL
        assert "refresh cookies" in str(excinfo.value)
        assert [s.label for s in await store.screenshots(ctx.task_id)] == ["Login page"]

    async def test_destroyed_context_is_transient(self, page, make_ctx):
        page.goto_error = PlaywrightError("Execution context was destroyed, most likely because of a navigation")
        ctx, _ = make_ctx(url="https://example.com")

        with pytest.raises(TransientNavigationError):
            await NavigateAutomation().run(ctx, page)

    async def test_other_navigation_errors_propagate(self, page, make_ctx):
        page.goto_error = PlaywrightError("net::ERR_NAME_NOT_RESOLVED")
        ctx, _ = make_ctx(url="https://nowhere.invalid")

        with pytest.raises(PlaywrightError):
            await NavigateAutomation().run(ctx, page)

    async def test_missing_selector_times_out(self, page, make_ctx):
        ctx, _ = make_ctx(url="https://example.com", selector="#never", timeout="1")

        with pytest.raises(AutomationError, match="selector #never not found"):
            await NavigateAutomation().run(ctx, page)

    async def test_missing_url_is_reported(self):
        assert NavigateAutomation().missing_params({"url": " "}) == ["url"]
