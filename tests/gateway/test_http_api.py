"""HTTP surface tests: Chat Completions, Responses, multimodal, sessions.

Runs the real FastAPI app through ``TestClient`` with a scripted model in
place of the upstream provider.
"""

import json

import pytest
from fastapi.testclient import TestClient

from agent.errors import ProviderUnavailable
from agent.models import AgentConfig
from agent.provider import ProviderEvent
from gateway.config import ServerConfig
from gateway.server import create_app
from tests.fakes.scripted_provider import Block, ScriptedProvider, tool
from tools.registry import ToolRegistry, ToolSpec


async def _echo(args, token):
    return f"echo:{args.get('text', '')}"


def _registry():
    reg = ToolRegistry()
    reg.register(ToolSpec(name="echo", description="Echo text", parameters={"text": {"type": "string"}},
                          handler=_echo))
    return reg


@pytest.fixture
def make_client():
    clients = []

    def make(script=(), **server):
        provider = ScriptedProvider(list(script))
        app = create_app(
            ServerConfig(grace_period=0.5, **server),
            AgentConfig(model="test-model", max_turns=4, max_retries=0),
            provider_factory=provider,
            registry=_registry(),
        )
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client, provider

    yield make
    for client in clients:
        client.__exit__(None, None, None)


def _sse_data(text):
    """Decode the ``data:`` payloads of an SSE body."""
    frames = []
    for line in text.splitlines():
        if line.startswith("data: "):
            payload = line[len("data: "):]
            frames.append(payload if payload == "[DONE]" else json.loads(payload))
    return frames


def _assert_error(resp, status, error_type):
    assert resp.status_code == status
    err = resp.json()["error"]
    assert err["type"] == error_type
    assert err["message"]


# ---------------------------------------------------------------------------
# Chat Completions
# ---------------------------------------------------------------------------

class TestChatCompletions:
    def test_non_streaming(self, make_client):
        client, provider = make_client(["Hello world"])
        resp = client.post("/v1/chat/completions", json={
            "model": "test-model",
            "messages": [
                {"role": "system", "content": "Be brief."},
                {"role": "user", "content": "Say hello"},
            ],
        })
        assert resp.status_code == 200
        data = resp.json()
        assert data["object"] == "chat.completion"
        assert data["choices"][0]["message"] == {"role": "assistant", "content": "Hello world"}
        sent = provider.calls[0]["messages"]
        assert sent[0]["role"] == "system" and "Be brief." in sent[0]["content"]
        assert sent[-1] == {"role": "user", "content": "Say hello"}

    def test_non_streaming_reports_token_usage(self, make_client):
        client, _ = make_client([[ProviderEvent.usage(11, 4), "Hi"]])
        resp = client.post("/v1/chat/completions", json={
            "model": "test-model",
            "messages": [{"role": "user", "content": "Say hello"}],
        })
        assert resp.json()["usage"] == {"prompt_tokens": 11, "completion_tokens": 4, "total_tokens": 15}

    def test_streaming_chunks_then_done(self, make_client):
        client, _ = make_client(["Hello world"])
        resp = client.post("/v1/chat/completions", json={
            "messages": [{"role": "user", "content": "hi"}], "stream": True,
        })
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        frames = _sse_data(resp.text)
        assert frames[-1] == "[DONE]"
        chunks = frames[:-1]
        assert chunks[0]["choices"][0]["delta"]["role"] == "assistant"
        text = "".join(c["choices"][0]["delta"].get("content", "") for c in chunks)
        assert text == "Hello world"
        assert chunks[-1]["choices"][0]["finish_reason"] == "stop"

    def test_history_is_seeded_and_tools_run_server_side(self, make_client):
        client, provider = make_client([[tool("echo", text="x")], "done"])
        resp = client.post("/v1/chat/completions", json={
            "messages": [
                {"role": "user", "content": "earlier"},
                {"role": "assistant", "content": "earlier reply"},
                {"role": "user", "content": "now"},
            ],
        })
        assert resp.json()["choices"][0]["message"]["content"] == "done"
        second_call = provider.calls[1]["messages"]
        assert [m["role"] for m in second_call if m["role"] != "system"] == [
            "user", "assistant", "user", "assistant", "tool",
        ]
        assert second_call[-1]["content"] == "echo:x"

    def test_last_message_must_be_user(self, make_client):
        client, _ = make_client()
        resp = client.post("/v1/chat/completions", json={
            "messages": [{"role": "assistant", "content": "hi"}],
        })
        _assert_error(resp, 400, "invalid_request")
        assert resp.json()["error"]["code"] == "InvalidRequest"

    def test_unsupported_history_role_is_400(self, make_client):
        client, provider = make_client(["never"])
        resp = client.post("/v1/chat/completions", json={
            "messages": [
                {"role": "user", "content": "what is 2+2?"},
                {"role": "function", "name": "calc", "content": "4"},
                {"role": "user", "content": "thanks"},
            ],
        })
        _assert_error(resp, 400, "invalid_request")
        assert "function" in resp.json()["error"]["message"]
        assert provider.call_count == 0
        assert client.get("/health").json()["sessions"] == 0

    def test_malformed_body_is_400(self, make_client):
        client, _ = make_client()
        _assert_error(client.post("/v1/chat/completions", json={"model": "x"}), 400, "invalid_request")

    def test_provider_failure_maps_to_502(self, make_client):
        client, _ = make_client([ProviderUnavailable("upstream down")])
        resp = client.post("/v1/chat/completions", json={"messages": [{"role": "user", "content": "hi"}]})
        _assert_error(resp, 502, "upstream_error")
        assert resp.json()["error"]["code"] == "ProviderUnavailable"

    def test_ephemeral_sessions_are_released(self, make_client):
        client, _ = make_client(["a"])
        client.post("/v1/chat/completions", json={"messages": [{"role": "user", "content": "hi"}]})
        assert client.get("/health").json()["sessions"] == 0


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

class TestResponses:
    def test_create_and_fetch(self, make_client):
        client, _ = make_client(["The answer"])
        resp = client.post("/v1/responses", json={"model": "test-model", "input": "question"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "completed"
        assert data["output_text"] == "The answer"
        assert data["store"] is True

        fetched = client.get(f"/v1/responses/{data['id']}")
        assert fetched.json()["output_text"] == "The answer"

    def test_completed_response_reports_usage(self, make_client):
        client, _ = make_client([[ProviderEvent.usage(9, 3), "ok"]])
        data = client.post("/v1/responses", json={"input": "question"}).json()
        assert data["usage"] == {"input_tokens": 9, "output_tokens": 3, "total_tokens": 12}

    def test_previous_response_id_continues_the_session(self, make_client):
        client, provider = make_client(["first", "second"])
        first = client.post("/v1/responses", json={"input": "one"}).json()
        second = client.post("/v1/responses", json={
            "input": "two", "previous_response_id": first["id"],
        }).json()
        assert second["status"] == "completed"
        assert second["metadata"]["session_id"] == first["metadata"]["session_id"]
        contents = [m["content"] for m in provider.calls[1]["messages"] if m["role"] != "system"]
        assert contents == ["one", "first", "two"]

    def test_unstored_response_cannot_be_continued(self, make_client):
        client, _ = make_client(["a"])
        first = client.post("/v1/responses", json={"input": "one", "store": False}).json()
        assert first["store"] is False
        resp = client.post("/v1/responses", json={"input": "two", "previous_response_id": first["id"]})
        _assert_error(resp, 400, "invalid_request")

    def test_ephemeral_server_never_stores_sessions(self, make_client):
        client, _ = make_client(["a"], ephemeral=True)
        data = client.post("/v1/responses", json={"input": "one"}).json()
        assert data["store"] is False
        health = client.get("/health").json()
        assert health["sessions"] == 0
        assert health["ephemeral_only"] is True

    def test_streaming_event_sequence(self, make_client):
        client, _ = make_client(["Hi there"])
        resp = client.post("/v1/responses", json={"input": "hello", "stream": True})
        frames = _sse_data(resp.text)
        types = [f["type"] for f in frames]
        assert types[:3] == ["response.created", "response.in_progress", "response.output_item.added"]
        assert types[-1] == "response.completed"
        deltas = [f["delta"] for f in frames if f["type"] == "response.output_text.delta"]
        assert "".join(deltas) == "Hi there"
        assert [f["sequence_number"] for f in frames] == list(range(len(frames)))

    def test_background_response_can_be_cancelled(self, make_client):
        client, _ = make_client([Block(before="partial ")])
        created = client.post("/v1/responses", json={"input": "long task", "background": True}).json()
        assert created["background"] is True
        assert created["status"] in ("queued", "in_progress")

        cancelled = client.post(f"/v1/responses/{created['id']}/cancel").json()
        assert cancelled["status"] == "cancelled"
        assert client.get(f"/v1/responses/{created['id']}").json()["status"] == "cancelled"

    def test_unknown_response_is_404(self, make_client):
        client, _ = make_client()
        _assert_error(client.get("/v1/responses/resp_nope"), 404, "not_found")
        _assert_error(client.post("/v1/responses/resp_nope/cancel"), 404, "not_found")


# ---------------------------------------------------------------------------
# Multimodal
# ---------------------------------------------------------------------------

class TestMultimodal:
    def test_non_streaming_reports_calls_and_answer(self, make_client):
        client, _ = make_client([[tool("echo", text="hi")], "All done"])
        resp = client.post("/v1/multimodal", json={"messages": [{"message": "run echo"}]})
        assert resp.status_code == 200
        data = resp.json()
        assert data["model"] == "test-model"
        assert data["result"] == [
            {"call": {"tool": "echo", "args": {"text": "hi"}, "output": "echo:hi"},
             "result": {"text": "echo:hi"}},
            {"assistant": "All done"},
        ]

    def test_streaming_frames(self, make_client):
        client, _ = make_client([["Let me check. ", tool("echo", text="a")], "Done"])
        resp = client.post("/v1/multimodal", json={"stream": True, "messages": [{"message": "go"}]})
        frames = _sse_data(resp.text)
        assert all(f["id"] and f["model"] == "test-model" for f in frames)
        body = [{k: v for k, v in f.items() if k not in ("id", "model")} for f in frames]
        assert body == [
            {"assistant": "Let me check. "},
            {"call": {"tool": "echo", "args": {"text": "a"}}},
            {"call": {"tool": "echo", "args": {"text": "a"}, "output": "echo:a"},
             "result": {"text": "echo:a"}},
            {"assistant": "Done"},
        ]

    def test_prior_calls_become_history(self, make_client):
        client, provider = make_client(["ok"])
        client.post("/v1/multimodal", json={"messages": [
            {"message": "first"},
            {"call": {"tool": "echo", "args": {"text": "z"}}, "result": {"error": "boom"}},
            {"assistant": "it failed"},
            {"message": "try again"},
        ]})
        sent = [m for m in provider.calls[0]["messages"] if m["role"] != "system"]
        assert [m["role"] for m in sent] == ["user", "assistant", "tool", "assistant", "user"]
        assert sent[1]["tool_calls"][0]["function"]["name"] == "echo"
        assert sent[2]["content"] == "boom"

    def test_session_route_keeps_context(self, make_client):
        client, provider = make_client(["one", "two"])
        client.post("/v1/multimodal/sess-a", json={"messages": [{"message": "hi"}]})
        client.post("/v1/multimodal/sess-a", json={"messages": [{"message": "again"}]})
        contents = [m["content"] for m in provider.calls[1]["messages"] if m["role"] != "system"]
        assert contents == ["hi", "one", "again"]
        assert client.get("/v1/sessions/sess-a").json()["turns"] == 2

    def test_must_end_with_user_message(self, make_client):
        client, _ = make_client()
        resp = client.post("/v1/multimodal", json={"messages": [{"assistant": "hi"}]})
        _assert_error(resp, 400, "invalid_request")


# ---------------------------------------------------------------------------
# Session administration
# ---------------------------------------------------------------------------

class TestSessions:
    def test_lifecycle(self, make_client):
        client, _ = make_client()
        created = client.post("/v1/sessions", json={"session_id": "s1"}).json()
        assert created["id"] == "s1"
        assert created["mode"] == "persistent"
        assert [s["id"] for s in client.get("/v1/sessions").json()["data"]] == ["s1"]

        cancelled = client.post("/v1/sessions/s1/cancel").json()
        assert cancelled == {"id": "s1", "cancelled": True, "status": "cancelled"}

        assert client.delete("/v1/sessions/s1").json() == {"id": "s1", "deleted": True}
        _assert_error(client.delete("/v1/sessions/s1"), 404, "not_found")
        _assert_error(client.get("/v1/sessions/s1"), 404, "not_found")

    def test_event_replay_of_ended_session(self, make_client):
        client, _ = make_client(["hello"])
        client.post("/v1/multimodal/s2", json={"messages": [{"message": "hi"}]})
        client.post("/v1/sessions/s2/cancel")
        resp = client.get("/v1/sessions/s2/events", params={"after": 0})
        events = _sse_data(resp.text)
        assert [e["type"] for e in events] == ["text-delta", "turn-completed", "conversation-ended"]
        assert [e["seq"] for e in events] == [1, 2, 3]

        later = _sse_data(client.get("/v1/sessions/s2/events", params={"after": 2}).text)
        assert [e["type"] for e in later] == ["conversation-ended"]

    def test_session_limit_is_429(self, make_client):
        client, _ = make_client(max_sessions=1)
        client.post("/v1/sessions", json={})
        _assert_error(client.post("/v1/sessions", json={}), 429, "rate_limit_exceeded")

    def test_ephemeral_mode_refuses_persistent_sessions(self, make_client):
        client, _ = make_client(ephemeral=True)
        _assert_error(client.post("/v1/sessions", json={}), 400, "invalid_request")

    def test_health(self, make_client):
        client, _ = make_client()
        data = client.get("/health").json()
        assert data["status"] == "ok"
        assert data["sessions"] == 0
        assert data["ephemeral_only"] is False


class TestCors:
    def test_cross_origin_requests_are_not_allowed_by_default(self, make_client):
        client, _ = make_client()
        resp = client.get("/health", headers={"Origin": "https://evil.example"})
        assert "access-control-allow-origin" not in resp.headers
        preflight = client.options("/v1/chat/completions", headers={
            "Origin": "https://evil.example",
            "Access-Control-Request-Method": "POST",
        })
        assert "access-control-allow-origin" not in preflight.headers

    def test_configured_origin_without_credentials(self, make_client):
        client, _ = make_client(cors_origins=["http://localhost:3000"])
        resp = client.get("/health", headers={"Origin": "http://localhost:3000"})
        assert resp.headers["access-control-allow-origin"] == "http://localhost:3000"
        assert "access-control-allow-credentials" not in resp.headers
        other = client.get("/health", headers={"Origin": "https://evil.example"})
        assert "access-control-allow-origin" not in other.headers
