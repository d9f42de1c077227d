from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio
from fastapi import Request
from redis.exceptions import ConnectionError as RedisConnectionError

from defense_service import Editor, create_app

ADMIN = {"X-Admin-Token": "admin-secret"}
ALICE = {"X-Editor-Id": "1", "X-Editor-Name": "Alice"}
BOB = {"X-Editor-Id": "2", "X-Editor-Name": "Bob"}


def header_editor(request: Request):
    editor_id = request.headers.get("x-editor-id")
    if not editor_id:
        return None
    return Editor(id=editor_id, name=request.headers.get("x-editor-name", ""))


@pytest.fixture
def app(config, store, clock):
    app = create_app(config, store=store, editor_resolver=header_editor, clock=clock)
    app.state.pipeline.mailer.send_threat_alert = AsyncMock(return_value=True)
    app.state.pipeline.mailer.send_rate_limit_alert = AsyncMock(return_value=True)

    @app.api_route("/echo/{slug}", methods=["GET", "POST"])
    async def echo(slug: str, request: Request):
        return {
            "security_info": request.state.security_info,
            "security_analysis": request.state.security_analysis,
        }

    return app


@pytest_asyncio.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


# ============================================================
# Defense middleware
# ============================================================

@pytest.mark.asyncio
async def test_clean_request_passes_with_annotations(client):
    response = await client.post("/echo/budget", json={"title": "Budget vote"})
    assert response.status_code == 200
    body = response.json()
    assert body["security_info"]["validated"] is True
    assert body["security_analysis"]["has_threats"] is False
    assert response.headers["RateLimit-Limit"] == "60"


@pytest.mark.asyncio
async def test_sql_injection_in_json_body_is_rejected(client, app):
    response = await client.post("/echo/x", json={"q": "1 UNION SELECT * FROM users"},
                                 headers={"X-Forwarded-For": "198.51.100.4, 10.0.0.1"})
    assert response.status_code == 403
    assert response.json()["success"] is False
    assert response.json()["hasSession"] is False

    await app.state.pipeline.drain()
    assert (await app.state.pipeline.threat_blocks.is_blocked("198.51.100.4")).blocked


@pytest.mark.asyncio
async def test_threat_in_query_and_form(client):
    response = await client.get("/echo/x", params={"file": "../../../etc/passwd"})
    assert response.status_code == 403

    response = await client.post("/echo/x", data={"cmd": "x; cat /etc/shadow"},
                                 headers={"X-Real-IP": "198.51.100.5"})
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_repeated_keys_are_all_scanned(client):
    response = await client.get("/echo/x", params=[("q", "1 UNION SELECT password FROM users"),
                                                   ("q", "ok")])
    assert response.status_code == 403

    response = await client.post("/echo/x", data={"c": ["x; cat /etc/shadow", "ok"]},
                                 headers={"X-Real-IP": "198.51.100.6"})
    assert response.status_code == 403

    response = await client.get("/echo/x", params=[("tag", "budget"), ("tag", "vote")],
                                headers={"X-Real-IP": "198.51.100.7"})
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_threat_in_path_params(client):
    response = await client.get("/echo/1%20UNION%20SELECT%20password")
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_malformed_json_is_skipped(client):
    response = await client.post("/echo/x", content=b"{not json",
                                 headers={"Content-Type": "application/json"})
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_client_ip_header_precedence(client, app):
    await client.post("/echo/x", json={"q": "1 UNION SELECT 1"},
                      headers={"X-Client-IP": "192.0.2.1", "X-Real-IP": "192.0.2.2",
                               "X-Forwarded-For": "192.0.2.3"})
    await app.state.pipeline.drain()
    assert (await app.state.pipeline.threat_blocks.is_blocked("192.0.2.1")).blocked
    assert not (await app.state.pipeline.threat_blocks.is_blocked("192.0.2.2")).blocked


@pytest.mark.asyncio
async def test_rate_limit_returns_429(client, app):
    for _ in range(60):
        assert (await client.get("/echo/x")).status_code == 200
    response = await client.get("/echo/x")
    assert response.status_code == 429
    assert response.json()["hasSession"] is False
    assert (await client.get("/echo/x")).status_code == 429
    await app.state.pipeline.drain()


# ============================================================
# Content locks
# ============================================================

@pytest.mark.asyncio
async def test_lock_routes_require_editor(client):
    assert (await client.post("/locks/art1")).status_code == 401
    assert (await client.get("/locks/me")).status_code == 401


@pytest.mark.asyncio
async def test_lock_conflict_and_status(client):
    acquired = await client.post("/locks/art1", headers=ALICE)
    assert acquired.status_code == 200
    assert acquired.json()["success"] is True

    conflict = await client.post("/locks/art1", headers=BOB)
    assert conflict.status_code == 409
    assert conflict.json()["locked_by"] == "Alice"

    assert (await client.get("/locks/art1", headers=BOB)).json()["can_edit"] is False
    assert (await client.get("/locks/art1", headers=ALICE)).json()["can_edit"] is True


@pytest.mark.asyncio
async def test_disconnect_lets_another_editor_take_over(client):
    await client.post("/locks/art1", headers=ALICE)
    assert (await client.post("/locks/disconnect", headers=ALICE)).json()["success"] is True

    assert (await client.post("/locks/art1", headers=BOB)).status_code == 200
    status = (await client.get("/locks/art1", headers=ALICE)).json()
    assert status["locked_by"] == "Bob"
    assert status["can_edit"] is False


@pytest.mark.asyncio
async def test_current_lock_heartbeat_and_release(client):
    await client.post("/locks/art1", headers=ALICE)
    await client.post("/locks/art2", headers=ALICE)

    me = (await client.get("/locks/me", headers=ALICE)).json()
    assert me["has_lock"] is True and me["article_id"] == "art2"

    beat = (await client.post("/locks/heartbeat", headers=ALICE)).json()
    assert beat["success"] is True and beat["article_id"] == "art2"

    assert (await client.delete("/locks/art2", headers=BOB)).status_code == 404
    assert (await client.delete("/locks/art2", headers=ALICE)).status_code == 200
    assert (await client.get("/locks/me", headers=ALICE)).json() == {"has_lock": False}


@pytest.mark.asyncio
async def test_store_error_becomes_503(client, app):
    app.state.locks.redis = AsyncMock()
    app.state.locks.redis.get.side_effect = RedisConnectionError("down")
    response = await client.post("/locks/art1", headers=ALICE)
    assert response.status_code == 503
    assert response.json() == {"success": False, "message": "Service temporarily unavailable"}


# ============================================================
# Service and admin
# ============================================================

@pytest.mark.asyncio
async def test_root(client):
    body = (await client.get("/")).json()
    assert body["status"] == "running"
    assert body["store_backend"] == "memory"


@pytest.mark.asyncio
async def test_admin_requires_token(client):
    assert (await client.get("/security/ip/192.0.2.9")).status_code == 403
    bad = await client.get("/security/ip/192.0.2.9", headers={"X-Admin-Token": "nope"})
    assert bad.status_code == 403


@pytest.mark.asyncio
async def test_admin_disabled_without_token(config, store, clock):
    config.ADMIN_TOKEN = None
    app = create_app(config, store=store, clock=clock)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver") as client:
        assert (await client.get("/security/ip/192.0.2.9", headers=ADMIN)).status_code == 404


@pytest.mark.asyncio
async def test_admin_ip_status_and_unblock(client, app):
    await app.state.pipeline.overuse_blocks.block("192.0.2.9")
    await app.state.pipeline.threat_blocks.block("192.0.2.9", "xss", "high")

    status = (await client.get("/security/ip/192.0.2.9", headers=ADMIN)).json()
    assert status["blocked"] is True
    assert status["overuse"]["attempts"] == 1
    assert status["threat"]["threat_type"] == "xss"

    lifted = await client.delete("/security/ip/192.0.2.9", headers=ADMIN)
    assert lifted.json()["unblocked"] == {"overuse": True, "threat": True}
    assert (await client.delete("/security/ip/192.0.2.9", headers=ADMIN)).status_code == 404


@pytest.mark.asyncio
async def test_admin_analyze(client):
    response = await client.post("/security/analyze", headers=ADMIN,
                                 json={"data": {"nested": {"q": "$ne: null"}}})
    assert response.status_code == 200
    body = response.json()
    assert body["threat_types"] == ["nosql_injection"]
    assert body["threats"]["nosql_injection"][0]["field"] == "nested.q"
    assert body["threats"]["nosql_injection"][0]["matched_patterns"]


@pytest.mark.asyncio
async def test_admin_sweep(client, clock):
    await client.post("/locks/art1", headers=ALICE)
    clock.advance(301)
    response = await client.post("/locks/sweep", headers=ADMIN)
    assert response.json() == {"success": True, "swept": 1}
