"""
Tests for the task record: lifecycle transitions, restart and stored-record upgrades.
"""

import pytest

from core.errors import TaskStateError
from core.models import SCHEMA_VERSION, Screenshot, SubTask, Task, TaskStatus


def make_chain() -> Task:
    return Task(
        id="chained_1",
        type="chained",
        name="Two steps",
        subtasks=[
            SubTask(index=0, type="navigate", params={"url": "https://a.test"}),
            SubTask(index=1, type="navigate", params={"url": "https://b.test"}),
        ],
    )


class TestTransitions:

    def test_start_then_complete(self):
        task = Task(id="t1", type="navigate")
        task.start()
        assert task.status == TaskStatus.RUNNING
        assert task.start_time is not None

        task.complete("Example Domain")
        assert task.status == TaskStatus.COMPLETED
        assert task.result == "Example Domain"
        assert task.end_time is not None
        assert task.error is None

    def test_terminal_transition_happens_once(self):
        task = Task(id="t1", type="navigate")
        task.start()
        task.fail("boom")
        end_time = task.end_time
        with pytest.raises(TaskStateError):
            task.complete("late")
        assert task.status == TaskStatus.ERROR
        assert task.end_time == end_time

    def test_cannot_finish_a_pending_task(self):
        task = Task(id="t1", type="navigate")
        with pytest.raises(TaskStateError):
            task.fail("never ran")

    def test_cannot_start_twice(self):
        task = Task(id="t1", type="navigate")
        task.start()
        with pytest.raises(TaskStateError):
            task.start()

    def test_stop_keeps_error_empty(self):
        task = Task(id="t1", type="navigate")
        task.start()
        task.stop("Task stopped by user")
        assert task.status == TaskStatus.STOPPED
        assert task.error is None
        assert task.stage == "Task stopped by user"
        assert task.logs[-1].endswith("Task stopped by user")

    def test_pending_task_can_be_stopped(self):
        task = Task(id="t1", type="navigate")
        task.stop()
        assert task.status == TaskStatus.STOPPED
        assert task.end_time is not None

    def test_log_lines_are_timestamped(self):
        task = Task(id="t1", type="navigate")
        line = task.log("hello")
        assert line.startswith("[") and line.endswith("] hello")
        assert task.logs == [line]


class TestRestart:

    def test_completed_chain_resets_everything(self):
        task = make_chain()
        task.start()
        for subtask in task.subtasks:
            subtask.status = TaskStatus.COMPLETED
            subtask.result = "ok"
            subtask.logs = ["line"]
        task.current_index = 1
        task.complete("Completed 2 subtasks")

        task.reset_for_restart()

        assert task.status == TaskStatus.PENDING
        assert task.current_index == 0
        assert task.logs == []
        assert task.result is None and task.error is None
        assert task.start_time is None and task.end_time is None
        for subtask in task.subtasks:
            assert subtask.status == TaskStatus.PENDING
            assert subtask.logs == []
            assert subtask.result is None and subtask.error is None

    def test_running_task_cannot_be_reset(self):
        task = Task(id="t1", type="navigate")
        task.start()
        with pytest.raises(TaskStateError):
            task.reset_for_restart()


class TestSerialization:

    def test_round_trip(self):
        task = make_chain()
        task.start()
        restored = Task.from_dict(task.to_dict())
        assert restored == task
        assert restored.is_chained

    def test_upgrades_version_one_records(self):
        legacy = {
            "id": "chained_old",
            "type": "chained",
            "status": "completed",
            "startTime": "2024-01-01T10:00:00",
            "endTime": "2024-01-01T10:05:00",
            "metadata": {
                "name": "Legacy chain",
                "currentIndex": 1,
                "subtasks": [
                    {"type": "navigate", "params": {"url": "https://a.test"}, "status": "completed"},
                    {"type": "navigate", "params": {"url": "https://b.test"}, "status": "completed",
                     "startTime": "2024-01-01T10:01:00"},
                ],
                "color": "blue",
            },
        }
        task = Task.from_dict(legacy)
        assert task.schema_version == SCHEMA_VERSION
        assert task.name == "Legacy chain"
        assert task.current_index == 1
        assert task.start_time == "2024-01-01T10:00:00"
        assert [s.index for s in task.subtasks] == [0, 1]
        assert task.subtasks[1].start_time == "2024-01-01T10:01:00"
        assert task.status == TaskStatus.COMPLETED

    def test_unknown_fields_are_rejected(self):
        record = Task(id="t1", type="navigate").to_dict()
        record["priority"] = "high"
        with pytest.raises(ValueError, match="priority"):
            Task.from_dict(record)

    def test_screenshot_metadata_has_no_bytes(self):
        shot = Screenshot(task_id="t1", index=0, label="Loaded", data=b"12345")
        meta = shot.to_dict()
        assert meta["size"] == 5
        assert "data" not in meta
