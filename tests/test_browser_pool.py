"""
Tests for the single-slot browser pool: reuse, exclusivity, eviction and teardown.
"""

import asyncio

import pytest

from conftest import FakeLauncher
from core.browser import BASE_BROWSER_ARGS
from core.browser_pool import BrowserPool
from core.errors import PoolBusyError


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.mark.pool
@pytest.mark.asyncio
class TestAcquireRelease:

    async def test_first_acquire_launches_then_reuses(self, pool, launcher):
        lease = await pool.acquire(["--window-size=1600,1000"])
        assert lease.cached is False
        assert pool.in_use and pool.pid == lease.pid
        await pool.release()

        again = await pool.acquire()
        assert again.cached is True
        assert again.pid == lease.pid
        assert launcher.launches == 1

    async def test_launch_args_merge_baseline_without_duplicates(self, pool, launcher):
        await pool.acquire(["--no-sandbox", "--window-size=1600,1000"])
        args = launcher.instances[0].args
        assert args[:len(BASE_BROWSER_ARGS)] == BASE_BROWSER_ARGS
        assert args.count("--no-sandbox") == 1
        assert args[-1] == "--window-size=1600,1000"

    async def test_second_acquire_waits_for_release(self, pool):
        first = await pool.acquire()
        waiter = asyncio.create_task(pool.acquire())
        await asyncio.sleep(0.02)
        assert not waiter.done()
        assert pool.in_use

        await pool.release(instance=first.instance)
        second = await asyncio.wait_for(waiter, timeout=1)
        assert second.cached is True
        assert pool.in_use

    async def test_never_two_holders(self, pool):
        holders = []
        max_holders = 0

        async def worker():
            nonlocal max_holders
            lease = await pool.acquire()
            holders.append(lease)
            max_holders = max(max_holders, len(holders))
            await asyncio.sleep(0.005)
            holders.remove(lease)
            await pool.release(instance=lease.instance)

        await asyncio.gather(*(worker() for _ in range(5)))
        assert max_holders == 1
        assert not pool.in_use

    async def test_busy_slot_times_out(self, launcher):
        pool = BrowserPool(launcher, acquire_timeout=0.05)
        await pool.acquire()
        with pytest.raises(PoolBusyError):
            await pool.acquire()

    async def test_launch_failure_propagates_and_frees_slot(self, pool, launcher):
        launcher.fail_next = RuntimeError("chromium missing")
        with pytest.raises(RuntimeError, match="chromium missing"):
            await pool.acquire()
        assert not pool.in_use
        assert not pool.has_instance

        lease = await pool.acquire()
        assert lease.cached is False

    async def test_records_task_history(self, pool):
        await pool.acquire(task_id="navigate_1", task_type="navigate")
        status = pool.get_status()
        assert status["task_count"] == 1
        assert status["recent_tasks"][0]["task_id"] == "navigate_1"


@pytest.mark.pool
@pytest.mark.asyncio
class TestEviction:

    async def test_idle_browser_is_closed(self, launcher):
        pool = BrowserPool(launcher, idle_timeout=0.05)
        lease = await pool.acquire()
        await pool.release()
        await asyncio.sleep(0.15)
        assert not pool.has_instance
        assert lease.instance.closed

    async def test_reacquire_before_idle_timeout_cancels_eviction(self, launcher):
        pool = BrowserPool(launcher, idle_timeout=0.1)
        first = await pool.acquire()
        await pool.release()
        await asyncio.sleep(0.05)

        second = await pool.acquire()
        await asyncio.sleep(0.15)
        assert second.pid == first.pid
        assert pool.has_instance
        assert not first.instance.closed

    async def test_max_age_forces_new_browser(self, launcher):
        clock = FakeClock()
        pool = BrowserPool(launcher, max_age=10, clock=clock)
        first = await pool.acquire()
        await pool.release()

        clock.now += 11
        second = await pool.acquire()
        assert second.cached is False
        assert second.pid != first.pid
        assert first.instance.closed

    async def test_young_browser_is_kept(self, launcher):
        clock = FakeClock()
        pool = BrowserPool(launcher, max_age=10, clock=clock)
        first = await pool.acquire()
        await pool.release()

        clock.now += 9
        second = await pool.acquire()
        assert second.pid == first.pid

    async def test_failed_probe_replaces_browser(self, pool, launcher):
        first = await pool.acquire()
        await pool.release()
        first.instance.probe_error = RuntimeError("Browser disconnected")

        second = await pool.acquire()
        assert second.cached is False
        assert second.pid != first.pid
        assert launcher.launches == 2

    async def test_disconnect_clears_slot(self, pool):
        lease = await pool.acquire()
        lease.instance.disconnect()
        await asyncio.sleep(0)
        assert not pool.has_instance
        assert not pool.in_use


@pytest.mark.pool
@pytest.mark.asyncio
class TestTeardown:

    async def test_close_resets_state(self, pool):
        lease = await pool.acquire(task_id="t1")
        pool.record_url("https://example.com/a", "t1")
        await pool.close()

        status = pool.get_status()
        assert status["has_instance"] is False
        assert status["in_use"] is False
        assert status["url_count"] == 0
        assert status["task_count"] == 0
        assert lease.instance.closed

    async def test_close_falls_back_to_kill(self, pool):
        lease = await pool.acquire()
        lease.instance.fail_close = True
        await pool.close()
        assert lease.instance.killed

    async def test_late_release_of_replaced_browser_is_harmless(self, pool):
        first = await pool.acquire()
        await pool.discard(first.instance)
        second = await pool.acquire()

        await pool.release(instance=first.instance)
        assert pool.in_use
        assert pool.instance is second.instance

    async def test_discard_ignores_other_instances(self, pool):
        lease = await pool.acquire()
        other = await FakeLauncher().launch([])
        await pool.discard(other)
        assert pool.in_use
        assert pool.instance is lease.instance


@pytest.mark.pool
class TestHistory:

    def test_record_url_skips_blank_and_truncates(self, pool):
        pool.record_url("about:blank")
        pool.record_url("")
        pool.record_url("not a url")
        pool.record_url("https://example.com/" + "x" * 300, "t1")
        pool.record_url("https://other.test/page", "t1")

        status = pool.get_status()
        assert status["url_count"] == 2
        assert status["domains"] == ["example.com", "other.test"]
        assert status["recent_urls"][0]["domain"] == "other.test"
        assert len(status["recent_urls"][1]["url"]) == 200

    def test_history_is_bounded(self, pool):
        for i in range(60):
            pool.record_url(f"https://site{i}.test/")
        status = pool.get_status()
        assert status["url_count"] == 50
        assert len(status["recent_urls"]) == 10
