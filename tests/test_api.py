"""
HTTP surface tests: routes, status codes and the {"error": ...} body.

The app runs in-process through httpx's ASGI transport, sharing the test's
event loop and the fake-backed orchestrator fixture.
"""

import httpx
import pytest
import pytest_asyncio

from api.main import app


@pytest_asyncio.fixture
async def client(orchestrator):
    app.state.orchestrator = orchestrator
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.mark.api
@pytest.mark.asyncio
class TestBasics:

    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    async def test_builtin_types(self, client):
        response = await client.get("/api/builtin-types")
        types = response.json()["types"]
        assert [t["id"] for t in types] == ["step"]
        assert types[0]["params"][0]["key"] == "label"


@pytest.mark.api
@pytest.mark.asyncio
class TestTasks:

    async def test_create_and_fetch(self, client, settle):
        response = await client.post("/api/tasks", json={"type": "step", "params": {"label": "A"}})
        assert response.status_code == 200
        task_id = response.json()["id"]

        await settle(task_id)
        body = (await client.get(f"/api/tasks/{task_id}")).json()
        assert body["status"] == "completed"
        assert body["result"] == "done A"

        listed = (await client.get("/api/tasks", params={"status": "completed"})).json()["tasks"]
        assert [t["id"] for t in listed] == [task_id]

    async def test_unknown_task_is_404(self, client):
        response = await client.get("/api/tasks/nope")
        assert response.status_code == 404
        assert response.json() == {"error": "Task not found: nope"}

    async def test_missing_parameter_is_400(self, client):
        response = await client.post("/api/tasks", json={"type": "step", "params": {}})
        assert response.status_code == 400
        assert response.json() == {"error": "Missing required parameter: label"}

    async def test_unknown_type_is_404(self, client):
        response = await client.post("/api/tasks", json={"type": "teleport"})
        assert response.status_code == 404
        assert "Unknown task type" in response.json()["error"]

    async def test_empty_chain_is_400(self, client):
        response = await client.post("/api/tasks/chained", json={"name": "Empty", "subtasks": []})
        assert response.status_code == 400

    async def test_stop_finished_task_is_400(self, client, settle):
        task_id = (await client.post("/api/tasks", json={"type": "step", "params": {"label": "A"}})).json()["id"]
        await settle(task_id)

        response = await client.post(f"/api/tasks/{task_id}/stop")
        assert response.status_code == 400
        assert response.json() == {"error": "Task is not running"}

    async def test_stop_running_task(self, client, running, settle):
        task_id = (await client.post(
            "/api/tasks", json={"type": "step", "params": {"label": "A", "outcome": "block"}}
        )).json()["id"]
        await running(task_id)

        response = await client.post(f"/api/tasks/{task_id}/stop")
        assert response.status_code == 200
        assert response.json()["status"] == "stopped"
        assert (await settle(task_id))["status"] == "stopped"

    async def test_screenshots(self, client, settle):
        task_id = (await client.post("/api/tasks", json={"type": "step", "params": {"label": "A"}})).json()["id"]
        await settle(task_id)

        shots = (await client.get(f"/api/tasks/{task_id}/screenshots")).json()["screenshots"]
        assert [s["label"] for s in shots] == ["step A"]
        assert "data" not in shots[0]

        image = await client.get(f"/api/tasks/{task_id}/screenshots/0")
        assert image.status_code == 200
        assert image.headers["content-type"] == "image/png"
        assert image.content == b"\x89PNG fake"

        assert (await client.get(f"/api/tasks/{task_id}/screenshots/7")).status_code == 404

    async def test_patch_restart_and_delete(self, client, settle):
        task_id = (await client.post(
            "/api/tasks", json={"type": "step", "params": {"label": "A", "outcome": "fail"}}
        )).json()["id"]
        await settle(task_id)

        patched = await client.patch(f"/api/tasks/{task_id}", json={"name": "Renamed"})
        assert patched.json()["name"] == "Renamed"

        restarted = await client.post(f"/api/tasks/{task_id}/restart", json={"params": {"outcome": "ok"}})
        assert restarted.status_code == 200
        assert (await settle(task_id))["status"] == "completed"

        assert (await client.delete(f"/api/tasks/{task_id}")).json() == {"success": True}
        assert (await client.get(f"/api/tasks/{task_id}")).status_code == 404

    async def test_batch_delete(self, client, settle):
        task_id = (await client.post("/api/tasks", json={"type": "step", "params": {"label": "A"}})).json()["id"]
        await settle(task_id)

        response = await client.post("/api/tasks/batch-delete", json={"ids": [task_id]})
        assert response.json() == {"deleted": [task_id], "skipped": []}


@pytest.mark.api
@pytest.mark.asyncio
class TestBrowserAndProxy:

    async def test_browser_status_and_close(self, client):
        status = (await client.get("/api/browser/status")).json()
        assert status["has_instance"] is False
        assert status["running_browsers"] == []
        assert (await client.post("/api/browser/close")).json() == {"success": True}

    async def test_kill_all(self, client):
        assert (await client.post("/api/browsers/kill-all")).json() == {"killed": 0, "task_ids": []}

    async def test_proxy_config(self, client):
        config = (await client.get("/api/proxy/config")).json()
        assert config["enabled"] is False

        updated = await client.post("/api/proxy/config", json={"tunnel_domains": ["corp.test"]})
        assert updated.status_code == 200
        assert updated.json()["tunnel_domains"] == ["corp.test"]

    async def test_invalid_proxy_port_is_400(self, client):
        response = await client.post("/api/proxy/config", json={"tunnel_port": 70000})
        assert response.status_code == 400
        assert "Invalid tunnel port" in response.json()["error"]


@pytest.mark.api
@pytest.mark.asyncio
class TestTaskTypes:

    async def test_crud_and_create_task(self, client, settle):
        created = await client.post("/api/task-types", json={
            "id": "greet",
            "name": "Greet",
            "parameters": [{"name": "who"}],
            "subtasks": [{"type": "step", "label": "hello ${who}"}],
        })
        assert created.status_code == 200
        assert created.json()["parameters"] == [{"name": "who", "required": True}]

        listing = (await client.get("/api/task-types")).json()
        assert [t["id"] for t in listing["custom"]] == ["greet"]
        assert [t["id"] for t in listing["builtin"]] == ["step"]

        patched = await client.patch("/api/task-types/greet", json={"description": "Says hi"})
        assert patched.json()["description"] == "Says hi"

        missing = await client.post("/api/task-types/greet/create-task", json={"params": {}})
        assert missing.status_code == 400

        task = (await client.post("/api/task-types/greet/create-task", json={"params": {"who": "sam"}})).json()
        assert task["type"] == "chained"
        assert task["subtasks"][0]["params"] == {"label": "hello sam"}
        assert (await settle(task["id"]))["status"] == "completed"

        assert (await client.delete("/api/task-types/greet")).json() == {"success": True}
        assert (await client.get("/api/task-types/greet")).status_code == 404

    async def test_invalid_task_type_is_rejected(self, client):
        response = await client.post("/api/task-types", json={
            "name": "Bad",
            "subtasks": [{"type": "teleport"}],
        })
        assert response.status_code == 404
