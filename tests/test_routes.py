"""HTTP mapping tests for the /deployments routes.

Validates:
  - Status codes and payloads for every outcome kind.
  - The site lifecycle scenario: create → update → concurrent update (409)
    → delete → get (404).
"""

import asyncio

import pytest
from httpx import ASGITransport, AsyncClient
from slowapi import Limiter
from slowapi.util import get_remote_address

from infra_over_http.main import app


@pytest.fixture
def api(service):
    app.state.limiter.reset()
    app.state.deployment_service = service
    yield app
    app.state.deployment_service = None


def _client(application):
    return AsyncClient(transport=ASGITransport(app=application), base_url="http://test")


# =====================================================================
# Create
# =====================================================================


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_returns_201_with_url(self, api):
        async with _client(api) as c:
            r = await c.post("/deployments", json={"id": "site-a", "content": "<h1>A</h1>"})
        assert r.status_code == 201
        body = r.json()
        assert body["id"] == "site-a"
        assert body["url"].startswith("https://")

    @pytest.mark.asyncio
    async def test_duplicate_create_returns_409(self, api):
        async with _client(api) as c:
            await c.post("/deployments", json={"id": "site-a", "content": "<h1>A</h1>"})
            r = await c.post("/deployments", json={"id": "site-a", "content": "<h1>B</h1>"})
        assert r.status_code == 409
        assert r.json()["detail"] == 'deployment "site-a" already exists'

    @pytest.mark.asyncio
    async def test_engine_failure_returns_500_with_detail(self, api, engine):
        engine.fail("apply", "subscription disabled")
        async with _client(api) as c:
            r = await c.post("/deployments", json={"id": "site-a", "content": "<h1>A</h1>"})
        assert r.status_code == 500
        assert "subscription disabled" in r.json()["detail"]

    @pytest.mark.asyncio
    async def test_invalid_id_is_rejected(self, api):
        async with _client(api) as c:
            r = await c.post("/deployments", json={"id": "bad/id", "content": "x"})
        assert r.status_code == 422

    @pytest.mark.asyncio
    async def test_missing_content_is_rejected(self, api):
        async with _client(api) as c:
            r = await c.post("/deployments", json={"id": "site-a"})
        assert r.status_code == 422

    @pytest.mark.asyncio
    async def test_content_that_is_not_utf8_is_rejected(self, api, engine):
        body = b'{"id": "site-a", "content": "\\ud800"}'
        async with _client(api) as c:
            r = await c.post("/deployments", content=body, headers={"Content-Type": "application/json"})
        assert r.status_code == 422
        assert engine.calls == []


# =====================================================================
# Read
# =====================================================================


class TestRead:
    @pytest.mark.asyncio
    async def test_list_returns_ids(self, api):
        async with _client(api) as c:
            await c.post("/deployments", json={"id": "site-b", "content": "b"})
            await c.post("/deployments", json={"id": "site-a", "content": "a"})
            r = await c.get("/deployments")
        assert r.status_code == 200
        assert r.json() == {"ids": ["site-b", "site-a"]}

    @pytest.mark.asyncio
    async def test_list_failure_returns_500(self, api, engine):
        engine.fail("list", "bucket unreachable")
        async with _client(api) as c:
            r = await c.get("/deployments")
        assert r.status_code == 500

    @pytest.mark.asyncio
    async def test_get_returns_same_url_as_create(self, api):
        async with _client(api) as c:
            created = await c.post("/deployments", json={"id": "site-a", "content": "a"})
            r = await c.get("/deployments/site-a")
        assert r.status_code == 200
        assert r.json() == created.json()

    @pytest.mark.asyncio
    async def test_get_unknown_returns_404(self, api):
        async with _client(api) as c:
            r = await c.get("/deployments/ghost")
        assert r.status_code == 404
        assert r.json()["detail"] == 'deployment "ghost" does not exist'

    @pytest.mark.asyncio
    async def test_get_while_creating_returns_404(self, api, engine):
        async with _client(api) as c:
            gate = engine.hold()
            creating = asyncio.create_task(c.post("/deployments", json={"id": "site-a", "content": "a"}))
            assert await asyncio.to_thread(engine.entered.wait, 5)
            r = await c.get("/deployments/site-a")
            gate.set()
            created = await creating
            after = await c.get("/deployments/site-a")
        assert r.status_code == 404
        assert created.status_code == 201
        assert after.json()["url"] == created.json()["url"]

    @pytest.mark.asyncio
    async def test_logs_report_state_and_last_error(self, api, engine):
        async with _client(api) as c:
            await c.post("/deployments", json={"id": "site-a", "content": "a"})
            engine.fail("apply", "bad gateway")
            await c.put("/deployments/site-a", json={"content": "b"})
            r = await c.get("/deployments/site-a/logs")
        assert r.status_code == 200
        body = r.json()
        assert body["state"] == "active"
        assert body["in_progress"] is False
        assert body["last_error"]["kind"] == "engine_failure"
        assert body["last_error"]["message"] == "bad gateway"

    @pytest.mark.asyncio
    async def test_logs_unknown_returns_404(self, api):
        async with _client(api) as c:
            r = await c.get("/deployments/ghost/logs")
        assert r.status_code == 404


# =====================================================================
# Update and delete
# =====================================================================


class TestMutations:
    @pytest.mark.asyncio
    async def test_update_unknown_returns_404(self, api):
        async with _client(api) as c:
            r = await c.put("/deployments/ghost", json={"content": "x"})
        assert r.status_code == 404

    @pytest.mark.asyncio
    async def test_delete_unknown_returns_404(self, api):
        async with _client(api) as c:
            r = await c.delete("/deployments/ghost")
        assert r.status_code == 404

    @pytest.mark.asyncio
    async def test_delete_returns_empty_body(self, api):
        async with _client(api) as c:
            await c.post("/deployments", json={"id": "site-a", "content": "a"})
            r = await c.delete("/deployments/site-a")
        assert r.status_code == 200
        assert r.content == b""

    @pytest.mark.asyncio
    async def test_delete_failure_returns_500(self, api, engine):
        async with _client(api) as c:
            await c.post("/deployments", json={"id": "site-a", "content": "a"})
            engine.fail("destroy", "resource locked")
            r = await c.delete("/deployments/site-a")
            still_there = await c.get("/deployments/site-a")
        assert r.status_code == 500
        assert still_there.status_code == 200


class TestSiteLifecycle:
    @pytest.mark.asyncio
    async def test_create_update_conflict_delete(self, api, engine, service):
        async with _client(api) as c:
            r = await c.post("/deployments", json={"id": "site-a", "content": "<h1>A</h1>"})
            assert r.status_code == 201
            assert r.json()["url"]

            r = await c.put("/deployments/site-a", json={"content": "<h1>B</h1>"})
            assert r.status_code == 200
            assert r.json()["id"] == "site-a"
            assert (await service.get("site-a")).deployment.content == "<h1>B</h1>"

            gate = engine.hold()
            first = asyncio.create_task(c.put("/deployments/site-a", json={"content": "<h1>C</h1>"}))
            assert await asyncio.to_thread(engine.entered.wait, 5)
            r = await c.put("/deployments/site-a", json={"content": "<h1>D</h1>"})
            assert r.status_code == 409
            assert "in progress" in r.json()["detail"]
            gate.set()
            assert (await first).status_code == 200

            r = await c.delete("/deployments/site-a")
            assert r.status_code == 200

            r = await c.get("/deployments/site-a")
            assert r.status_code == 404


@pytest.mark.asyncio
async def test_health_and_security_headers(api):
    async with _client(api) as c:
        r = await c.get("/health")
        ready = await c.get("/ready")
    assert r.json() == {"status": "healthy"}
    assert r.headers["X-Content-Type-Options"] == "nosniff"
    assert ready.json() == {"status": "ready", "engine": "memory"}


@pytest.mark.asyncio
async def test_rate_limit_returns_429(api, monkeypatch):
    monkeypatch.setattr(app.state, "limiter", Limiter(key_func=get_remote_address, default_limits=["2/minute"]))
    async with _client(api) as c:
        codes = [(await c.get("/deployments")).status_code for _ in range(4)]
    assert codes == [200, 200, 429, 429]
