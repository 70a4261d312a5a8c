"""Tests for the FastAPI server."""

import json
import shlex
import threading

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

import aichat_gateway.server as srv
from aichat_gateway.server import app

MYAPP = "-Users-testuser-dev-myapp"


@pytest.fixture(autouse=True)
def reset_component_cache():
    """Reset the component caches before each test."""
    srv._store = srv._engine = srv._gateway = None
    yield
    srv._store = srv._engine = srv._gateway = None


@pytest.fixture
def configure(monkeypatch, storage_root, fake_claude, tmp_path):
    """Point the app at the test storage root and a fake claude CLI."""
    def apply(mode="ok", command=None):
        monkeypatch.setenv("AICHAT_GATEWAY_ROOT", str(storage_root))
        monkeypatch.setenv("AICHAT_CLAUDE_COMMAND", command or shlex.join(fake_claude(mode)))
        monkeypatch.setenv("AICHAT_WORKDIR", str(tmp_path))
        monkeypatch.setenv("AICHAT_CANCEL_GRACE", "2")
        srv._store = srv._engine = srv._gateway = None
    apply()
    return apply


@pytest_asyncio.fixture
async def client(configure, populated_store):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


def assert_ok(resp, status=200):
    assert resp.status_code == status, resp.text
    body = resp.json()
    assert body["success"] is True
    assert body["meta"]["request_id"]
    assert body["meta"]["timestamp"]
    return body


def assert_error(resp, status, code):
    assert resp.status_code == status, resp.text
    body = resp.json()
    assert body["success"] is False
    assert body["error"]["code"] == code
    assert body["error"]["message"]
    assert body["meta"]["request_id"]
    return body["error"]


@pytest.mark.asyncio
async def test_health(client, storage_root):
    body = assert_ok(await client.get("/api/v1/health"))
    assert body["data"]["status"] == "ok"
    assert body["data"]["storage"] == str(storage_root)


class TestProjects:
    @pytest.mark.asyncio
    async def test_list(self, client):
        body = assert_ok(await client.get("/api/v1/projects"))
        assert [p["id"] for p in body["data"]] == [MYAPP, "scratch"]
        assert body["meta"]["total"] == 2

    @pytest.mark.asyncio
    async def test_create_get_delete(self, client):
        body = assert_ok(await client.post("/api/v1/projects", json={"id": "webapp"}), 201)
        assert body["data"]["session_count"] == 0

        body = assert_ok(await client.get("/api/v1/projects/webapp"))
        assert body["data"]["id"] == "webapp"

        body = assert_ok(await client.delete("/api/v1/projects/webapp"))
        assert body["data"]["deleted"] is True
        assert_error(await client.get("/api/v1/projects/webapp"), 404, "PROJECT_NOT_FOUND")

    @pytest.mark.asyncio
    async def test_invalid_id(self, client):
        assert_error(await client.post("/api/v1/projects", json={"id": "../etc"}), 400, "VALIDATION_ERROR")

    @pytest.mark.asyncio
    async def test_project_sessions(self, client):
        body = assert_ok(await client.get(f"/api/v1/projects/{MYAPP}/sessions", params={"sort": "title"}))
        assert [s["title"] for s in body["data"]] == ["API tests", "Refactor auth"]
        assert_error(await client.get("/api/v1/projects/ghost/sessions"), 404, "PROJECT_NOT_FOUND")

    @pytest.mark.asyncio
    async def test_stats(self, client):
        body = assert_ok(await client.get(f"/api/v1/projects/{MYAPP}/stats"))
        stats = body["data"]
        assert stats["project"] == MYAPP
        assert stats["session_count"] == 2
        assert stats["message_count"] == 6
        assert stats["messages_by_role"] == {"user": 3, "assistant": 3, "system": 0}
        assert stats["usage"] == {"input_tokens": 400, "output_tokens": 365}
        assert stats["log_bytes"] > 0
        assert stats["first_activity"] <= stats["last_activity"]

        resp = await client.get("/api/v1/projects/ghost/stats")
        assert_error(resp, 404, "PROJECT_NOT_FOUND")


class TestSessions:
    @pytest.mark.asyncio
    async def test_create_and_fetch(self, client):
        body = assert_ok(
            await client.post("/api/v1/sessions", json={"project": "webapp", "title": "New", "model": "opus"}),
            201,
        )
        session_id = body["data"]["id"]
        assert body["data"]["project"] == "webapp"
        assert body["data"]["model"] == "opus"

        body = assert_ok(await client.get(f"/api/v1/sessions/{session_id}"))
        assert body["data"]["title"] == "New"
        assert body["data"]["messages"] == []

    @pytest.mark.asyncio
    async def test_create_in_default_project(self, client):
        body = assert_ok(await client.post("/api/v1/sessions", json={}), 201)
        assert body["data"]["project"] == "default"
        assert body["data"]["title"] == "Untitled"

        body = assert_ok(await client.get("/api/v1/sessions", params={"project": "default"}))
        assert body["meta"]["total"] == 1

        body = assert_ok(await client.get("/api/v1/sessions"))
        assert body["meta"]["total"] == 4

    @pytest.mark.asyncio
    async def test_list_across_projects(self, client):
        body = assert_ok(await client.get("/api/v1/sessions"))
        assert body["meta"]["total"] == 3
        assert {(s["project"], s["id"]) for s in body["data"]} == {
            (MYAPP, "auth"), (MYAPP, "tests"), ("scratch", "notes"),
        }

    @pytest.mark.asyncio
    async def test_list_by_message_role_and_content(self, client):
        body = assert_ok(await client.get("/api/v1/sessions", params={"role": "system"}))
        assert [s["id"] for s in body["data"]] == ["notes"]

        body = assert_ok(await client.get("/api/v1/sessions", params={"content": "EXPIRED"}))
        assert [s["id"] for s in body["data"]] == ["auth"]

        body = assert_ok(await client.get("/api/v1/sessions", params={"content": "expired", "role": "user"}))
        assert body["data"] == []

        body = assert_ok(await client.get(f"/api/v1/projects/{MYAPP}/sessions", params={"content": "pytest"}))
        assert [s["id"] for s in body["data"]] == ["tests"]

        resp = await client.get("/api/v1/sessions", params={"role": "robot"})
        assert_error(resp, 400, "VALIDATION_ERROR")

    @pytest.mark.asyncio
    async def test_list_with_search_and_paging(self, client):
        body = assert_ok(await client.get("/api/v1/sessions", params={"project": MYAPP, "search": "auth"}))
        assert [s["id"] for s in body["data"]] == ["auth"]

        body = assert_ok(await client.get("/api/v1/sessions", params={"project": MYAPP, "limit": 1, "sort": "oldest"}))
        assert [s["id"] for s in body["data"]] == ["auth"]
        assert body["meta"]["total"] == 2

    @pytest.mark.asyncio
    async def test_duplicate_id(self, client):
        resp = await client.post("/api/v1/sessions", json={"project": "scratch", "id": "notes"})
        assert_error(resp, 409, "SESSION_EXISTS")

    @pytest.mark.asyncio
    async def test_get_with_messages(self, client):
        body = assert_ok(await client.get("/api/v1/sessions/auth"))
        data = body["data"]
        assert data["project"] == MYAPP
        assert data["message_count"] == 4
        assert [m["role"] for m in data["messages"]] == ["user", "assistant", "user", "assistant"]
        assert data["messages"][1]["usage"] == {"input_tokens": 120, "output_tokens": 40}

    @pytest.mark.asyncio
    async def test_get_missing(self, client):
        assert_error(await client.get("/api/v1/sessions/missing"), 404, "SESSION_NOT_FOUND")
        assert_error(await client.get("/api/v1/sessions/auth", params={"project": "scratch"}), 404, "SESSION_NOT_FOUND")

    @pytest.mark.asyncio
    async def test_update(self, client):
        body = assert_ok(await client.put("/api/v1/sessions/notes", json={"title": "Journal"}))
        assert body["data"]["title"] == "Journal"
        assert_error(
            await client.put("/api/v1/sessions/notes", json={"message_count": 10}), 400, "VALIDATION_ERROR"
        )

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, client):
        body = assert_ok(await client.delete("/api/v1/sessions/notes"))
        assert body["data"]["deleted"] is True
        body = assert_ok(await client.delete("/api/v1/sessions/notes"))
        assert body["data"]["deleted"] is False
        assert_error(await client.get("/api/v1/sessions/notes"), 404, "SESSION_NOT_FOUND")

    @pytest.mark.asyncio
    async def test_unknown_route(self, client):
        assert_error(await client.get("/api/v1/nothing"), 404, "NOT_FOUND")


class TestMessages:
    @pytest.mark.asyncio
    async def test_page(self, client):
        body = assert_ok(await client.get("/api/v1/sessions/auth/messages", params={"offset": 1, "limit": 2}))
        assert [m["index"] for m in body["data"]] == [1, 2]
        assert body["meta"]["total"] == 4

    @pytest.mark.asyncio
    async def test_filter(self, client):
        resp = await client.get(
            "/api/v1/sessions/auth/messages",
            params={"q": 'select(.role == "assistant") | .usage.output_tokens'},
        )
        body = assert_ok(resp)
        assert body["data"] == [40, 25]
        assert body["meta"]["query"]["messages_scanned"] == 4

    @pytest.mark.asyncio
    async def test_filter_slurp(self, client):
        resp = await client.get(
            "/api/v1/sessions/auth/messages",
            params={"q": "map(.role) | unique", "slurp": "true"},
        )
        assert assert_ok(resp)["data"] == [["assistant", "user"]]

    @pytest.mark.asyncio
    async def test_invalid_filter(self, client):
        resp = await client.get("/api/v1/sessions/auth/messages", params={"q": 'select(.role == "user"'})
        error = assert_error(resp, 400, "INVALID_JQ_QUERY")
        assert "position" in error


class TestQuery:
    @pytest.mark.asyncio
    async def test_across_sessions(self, client):
        resp = await client.post("/api/v1/query", json={"query": "select(.role == \"user\") | .session_id"})
        body = assert_ok(resp)
        assert body["data"] == ["auth", "auth", "tests"]
        assert body["meta"]["query"]["sessions_scanned"] == 3

    @pytest.mark.asyncio
    async def test_scoped(self, client):
        resp = await client.post(
            "/api/v1/query",
            json={"query": ".content", "sessions": ["scratch/notes"]},
        )
        assert assert_ok(resp)["data"] == ["You are a note taker."]

        resp = await client.post("/api/v1/query", json={"query": ".index", "sessions": ["tests"]})
        assert assert_ok(resp)["data"] == [0, 1]

    @pytest.mark.asyncio
    async def test_slurp_totals(self, client):
        resp = await client.post(
            "/api/v1/query",
            json={"query": "map(.usage.input_tokens // 0) | add", "projects": [MYAPP], "slurp": True},
        )
        assert assert_ok(resp)["data"] == [400]

    @pytest.mark.asyncio
    async def test_budget_exceeded(self, client):
        resp = await client.post("/api/v1/query", json={"query": ".", "max_steps": 5})
        assert_error(resp, 422, "BUDGET_EXCEEDED")

    @pytest.mark.asyncio
    async def test_bad_budget(self, client):
        resp = await client.post("/api/v1/query", json={"query": ".", "max_steps": 0})
        assert_error(resp, 400, "VALIDATION_ERROR")

    @pytest.mark.asyncio
    async def test_unknown_project(self, client):
        resp = await client.post("/api/v1/query", json={"query": ".", "projects": ["ghost"]})
        assert_error(resp, 404, "PROJECT_NOT_FOUND")

    @pytest.mark.asyncio
    async def test_unknown_function(self, client):
        resp = await client.post("/api/v1/query", json={"query": "frobnicate"})
        error = assert_error(resp, 400, "INVALID_JQ_QUERY")
        assert error["position"] == 0

    @pytest.mark.asyncio
    async def test_validate(self, client):
        resp = await client.post("/api/v1/query/validate", json={"query": 'select(.role == "user") | .content'})
        assert assert_ok(resp)["data"] == {"valid": True, "query": 'select(.role == "user") | .content'}

        resp = await client.post("/api/v1/query/validate", json={"query": ".invalid[syntax"})
        error = assert_error(resp, 400, "INVALID_JQ_QUERY")
        assert "position" in error

        resp = await client.post("/api/v1/query/validate", json={"query": "frobnicate(1)"})
        assert_error(resp, 400, "INVALID_JQ_QUERY")

    @pytest.mark.asyncio
    async def test_patterns(self, client):
        body = assert_ok(await client.get("/api/v1/query/patterns"))
        assert body["data"]["category"] == "all"
        assert {"user_messages", "message_count", "content_search"} <= set(body["data"]["patterns"])

        body = assert_ok(await client.get("/api/v1/query/patterns", params={"category": "messages"}))
        patterns = body["data"]["patterns"]
        assert "user_messages" in patterns
        assert "session_summary" not in patterns
        assert body["data"]["category"] == "messages"

        resp = await client.get("/api/v1/query/patterns", params={"category": "time"})
        assert_error(resp, 400, "VALIDATION_ERROR")

    @pytest.mark.asyncio
    async def test_patterns_run(self, client):
        body = assert_ok(await client.get("/api/v1/query/patterns", params={"category": "statistics"}))
        pattern = body["data"]["patterns"]["message_count"]
        resp = await client.post(
            "/api/v1/query",
            json={"query": pattern["filter"], "sessions": ["auth"], "slurp": pattern["slurp"]},
        )
        assert assert_ok(resp)["data"] == [[{"role": "assistant", "count": 2}, {"role": "user", "count": 2}]]


class TestChat:
    @pytest.mark.asyncio
    async def test_non_streaming(self, client, populated_store):
        resp = await client.post("/api/v1/sessions/notes/chat", json={"message": "What is 2+2?"})
        body = assert_ok(resp)
        assert body["data"]["content"] == "2 + 2 = 4"
        assert body["data"]["usage"]["output_tokens"] == 7
        assert populated_store.get_session("scratch", "notes").message_count == 3

    @pytest.mark.asyncio
    async def test_streaming(self, client, populated_store):
        resp = await client.post(
            "/api/v1/sessions/notes/chat",
            params={"project": "scratch"},
            json={"message": "hi", "stream": True},
        )
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("application/x-ndjson")
        events = [json.loads(line) for line in resp.text.splitlines() if line]
        assert [e["type"] for e in events] == ["start", "data", "end"]
        assert events[1]["content"] == "Hello!"
        assert events[2]["usage"]["input_tokens"] == 12
        messages = populated_store.get_messages("scratch", "notes")
        assert [m.role for m in messages] == ["system", "user", "assistant"]

    @pytest.mark.asyncio
    async def test_streaming_failure_is_an_event(self, client, configure):
        configure("fail")
        resp = await client.post("/api/v1/sessions/notes/chat", json={"message": "hi", "stream": True})
        assert resp.status_code == 200
        events = [json.loads(line) for line in resp.text.splitlines() if line]
        assert events[-1]["type"] == "error"
        assert events[-1]["code"] == "PROCESS_FAILED"

    @pytest.mark.asyncio
    async def test_spawn_error(self, client, configure, populated_store):
        configure(command="/nonexistent/bin/claude")
        resp = await client.post("/api/v1/sessions/notes/chat", json={"message": "hi"})
        assert_error(resp, 502, "SPAWN_ERROR")
        assert populated_store.get_session("scratch", "notes").message_count == 2

    @pytest.mark.asyncio
    async def test_missing_session(self, client):
        resp = await client.post("/api/v1/sessions/ghost/chat", json={"message": "hi", "stream": True})
        assert_error(resp, 404, "SESSION_NOT_FOUND")

    @pytest.mark.asyncio
    async def test_missing_message(self, client):
        resp = await client.post("/api/v1/sessions/notes/chat", json={"stream": False})
        assert_error(resp, 400, "VALIDATION_ERROR")

    @pytest.mark.asyncio
    async def test_session_lookup_runs_off_the_event_loop(self, client, monkeypatch):
        loop_thread = threading.get_ident()
        seen = []
        original = srv._resolve_project

        def recording(session_id, project):
            seen.append(threading.get_ident())
            return original(session_id, project)

        monkeypatch.setattr(srv, "_resolve_project", recording)
        assert_ok(await client.post("/api/v1/sessions/notes/chat", json={"message": "hi"}))
        assert_ok(await client.get("/api/v1/sessions/notes/messages"))
        assert len(seen) == 2
        assert loop_thread not in seen

    @pytest.mark.asyncio
    async def test_status_and_kill(self, client, configure):
        configure("slow")
        gateway = srv._get_gateway()
        turn = await gateway.open_turn("scratch", "notes", "hi")
        events = gateway.run_turn(turn)
        assert (await events.__anext__())["type"] == "start"

        body = assert_ok(await client.get("/api/v1/chat/status"))
        assert body["data"]["cli_available"] is True
        assert body["data"]["active_processes"] == 1
        [process] = body["data"]["processes"]
        assert process["project"] == "scratch"
        assert process["session_id"] == "notes"

        body = assert_ok(await client.post(f"/api/v1/chat/kill/{process['process_id']}"))
        assert body["data"]["killed"] is True
        rest = [event async for event in events]
        assert rest[-1]["type"] == "error"
        assert rest[-1]["code"] == "PROCESS_KILLED"

        body = assert_ok(await client.get("/api/v1/chat/status"))
        assert body["data"]["active_processes"] == 0
        resp = await client.post(f"/api/v1/chat/kill/{process['process_id']}")
        assert_error(resp, 404, "PROCESS_NOT_FOUND")

    @pytest.mark.asyncio
    async def test_status_without_cli(self, client, configure):
        configure(command="/nonexistent/bin/claude")
        body = assert_ok(await client.get("/api/v1/chat/status"))
        assert body["data"]["cli_command"] == "/nonexistent/bin/claude"
        assert body["data"]["cli_available"] is False
        assert body["data"]["processes"] == []


@pytest.mark.asyncio
async def test_export_markdown(client):
    resp = await client.get("/api/v1/sessions/auth/export", params={"format": "md"})
    assert resp.status_code == 200
    assert "text/markdown" in resp.headers["content-type"]
    assert "Refactor auth" in resp.headers["content-disposition"]
    assert "# Refactor auth" in resp.text
    assert "Now add tests" in resp.text


@pytest.mark.asyncio
async def test_export_json(client):
    resp = await client.get("/api/v1/sessions/auth/export", params={"format": "json"})
    assert resp.status_code == 200
    data = resp.json()
    assert data["session"]["id"] == "auth"
    assert len(data["messages"]) == 4


@pytest.mark.asyncio
async def test_export_unknown_format(client):
    resp = await client.get("/api/v1/sessions/auth/export", params={"format": "pdf"})
    assert_error(resp, 400, "VALIDATION_ERROR")
