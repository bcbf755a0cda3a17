"""
Condition polling.

Every wait on asynchronous browser state goes through poll_for_condition so
that no wait in the service is unbounded.
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from core.errors import is_fatal_poll_error

logger = logging.getLogger(__name__)

MAX_CONSECUTIVE_ERRORS = 5
PROGRESS_LOG_INTERVAL = 3.0  # seconds

CheckFn = Callable[[], Awaitable[Dict[str, Any]]]


def _preview(result: Dict[str, Any], limit: int) -> str:
    try:
        text = json.dumps(result, default=str)
    except (TypeError, ValueError):
        text = repr(result)
    return text[:limit]


async def poll_for_condition(
    check: CheckFn,
    timeout: float = 30.0,
    interval: float = 1.0,
    label: str = "condition",
    log: Optional[Callable[[str], None]] = None,
) -> Dict[str, Any]:
    """
    Call ``check`` every ``interval`` seconds until it reports ready.

    Args:
        check: Async callable returning a dict with at least a ``ready`` key
        timeout: Total time budget in seconds
        interval: Delay between checks in seconds
        label: Name used in progress lines
        log: Optional sink for progress lines (a task log); module logger otherwise

    Returns:
        The first ready result, or a not-ready dict flagged with one of
        ``fatal_error``, ``too_many_errors`` or ``timed_out``.
    """
    emit = log or logger.info
    loop = asyncio.get_running_loop()
    started = loop.time()
    deadline = started + timeout
    consecutive_errors = 0
    last_progress = -PROGRESS_LOG_INTERVAL

    while True:
        remaining = deadline - loop.time()
        if remaining <= 0:
            break
        elapsed = loop.time() - started
        try:
            # A wedged page must not hold the poll past its deadline
            result = await asyncio.wait_for(check(), timeout=remaining)
            consecutive_errors = 0

            if result.get("ready"):
                emit(f"[{label}] Ready after {loop.time() - started:.1f}s: {_preview(result, 100)}")
                return result

            if elapsed - last_progress >= PROGRESS_LOG_INTERVAL:
                last_progress = elapsed
                emit(f"[{label}] {elapsed:.1f}s: {_preview(result, 80)}")

        except asyncio.CancelledError:
            raise
        except Exception as e:
            if isinstance(e, asyncio.TimeoutError) and deadline - loop.time() < interval:
                emit(f"[{label}] Check still pending at deadline")
                break
            consecutive_errors += 1
            emit(f"[{label}] Error at {elapsed:.1f}s: {str(e)[:50]}")

            if is_fatal_poll_error(e):
                emit(f"[{label}] Fatal error detected, aborting poll")
                return {"ready": False, "fatal_error": True, "error": str(e)}

            if consecutive_errors >= MAX_CONSECUTIVE_ERRORS:
                emit(f"[{label}] Too many consecutive errors ({consecutive_errors}), aborting poll")
                return {"ready": False, "too_many_errors": True, "error": str(e)}

        pause = min(interval, deadline - loop.time())
        if pause <= 0:
            break
        await asyncio.sleep(pause)

    emit(f"[{label}] Timeout after {timeout:.1f}s")
    return {"ready": False, "timed_out": True}
