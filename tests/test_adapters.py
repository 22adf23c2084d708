import asyncio
import json

import httpx
import pytest

from switchboard.models.agent import AgentAdapter, access_policies, build_input, extract_rpc_error
from switchboard.models.base import ProtocolError, TransportError
from switchboard.models.claude import ClaudeAdapter, parse_rate_limits
from switchboard.models.cli import CliAdapter, CliHooks, CliRunner
from switchboard.models.gemini import GeminiAdapter
from switchboard.models.registry import AgentProvider, CliProvider, CliStyle
from switchboard.models.session import extract_session_delta, extract_session_text


# --------------------------------------------------------------------------- #
# Agent
# --------------------------------------------------------------------------- #
class RecordingBackend:
    def __init__(self, response):
        self.response = response
        self.calls = []

    async def request(self, method, params):
        self.calls.append((method, params))
        return self.response


def test_start_turn_builds_params_and_returns_id(tmp_path):
    backend = RecordingBackend({"result": {"turn": {"id": "turn-1"}}})
    adapter = AgentAdapter(AgentProvider("agent"), backend, workspace=tmp_path)

    turn_id = asyncio.run(
        adapter.start_turn(
            "t1",
            " hi ",
            ["https://example.com/a.png", "/tmp/b.png", " "],
            model="gpt-5",
            effort="high",
            collaboration_mode={"mode": "plan"},
        )
    )

    method, params = backend.calls[0]
    assert turn_id == "turn-1"
    assert method == "turn/start"
    assert params["input"] == [
        {"type": "text", "text": "hi"},
        {"type": "image", "url": "https://example.com/a.png"},
        {"type": "localImage", "path": "/tmp/b.png"},
    ]
    assert params["sandboxPolicy"] == {"type": "workspaceWrite", "writableRoots": [str(tmp_path)], "networkAccess": True}
    assert params["approvalPolicy"] == "onRequest"
    assert params["collaborationMode"] == {"mode": "plan"}
    assert params["effort"] == "high"


def test_start_turn_errors():
    adapter = AgentAdapter(AgentProvider("agent"), RecordingBackend({"error": {"message": "thread not found"}}))
    with pytest.raises(ProtocolError, match="Turn failed to start: thread not found"):
        asyncio.run(adapter.start_turn("t1", "hi"))

    adapter = AgentAdapter(AgentProvider("agent"), RecordingBackend({"result": {"turn": {}}}))
    with pytest.raises(ProtocolError, match=r"^Turn failed to start\.$"):
        asyncio.run(adapter.start_turn("t1", "hi"))


def test_access_policies():
    assert access_policies("full-access", None) == ({"type": "dangerFullAccess"}, "never")
    assert access_policies("read-only", None) == ({"type": "readOnly"}, "onRequest")
    assert access_policies(None, None)[0]["type"] == "workspaceWrite"


def test_helpers():
    assert build_input("  ", ["data:image/png;base64,xx"]) == [{"type": "image", "url": "data:image/png;base64,xx"}]
    assert extract_rpc_error({"error": "boom"}) == "boom"
    assert extract_rpc_error({"result": {"turn": {"id": "x"}}}) is None


# --------------------------------------------------------------------------- #
# Session helpers
# --------------------------------------------------------------------------- #
def test_extract_session_delta_and_text():
    assert extract_session_delta({"params": {"textDelta": "ab"}}) == "ab"
    assert extract_session_delta({"params": {"delta": ""}}) is None
    assert extract_session_text({"result": "plain"}) == "plain"
    assert extract_session_text({"result": {"message": {"content": "m"}}}) == "m"
    assert extract_session_text({"result": {"choices": [{"message": {"content": "c"}}]}}) == "c"
    assert extract_session_text({"result": {}}) is None


# --------------------------------------------------------------------------- #
# CLI
# --------------------------------------------------------------------------- #
def test_stream_json_command_line():
    runner = CliRunner("claude", ["--permission-mode", "plan"], style=CliStyle.STREAM_JSON)
    argv, stdin = runner.build_command("hi", "claude-opus-4-5")
    assert argv == [
        "claude",
        "--print",
        "--verbose",
        "--output-format",
        "stream-json",
        "--permission-mode",
        "plan",
        "--model",
        "claude-opus-4-5",
        "hi",
    ]
    assert stdin is None

    runner = CliRunner("claude", ["--model", "pinned"], style=CliStyle.STREAM_JSON)
    argv, _ = runner.build_command("hi", "other")
    assert argv.count("--model") == 1


def test_plain_command_line_uses_placeholder_or_stdin():
    argv, stdin = CliRunner("gemini", ["-p", "{prompt}"]).build_command("hi", None)
    assert argv == ["gemini", "-p", "hi"]
    assert stdin is None
    argv, stdin = CliRunner("gemini", ["--yolo"]).build_command("hi", None)
    assert argv == ["gemini", "--yolo"]
    assert stdin == "hi"


def test_stream_json_lines_drive_hooks():
    runner = CliRunner("claude", style=CliStyle.STREAM_JSON)
    seen = []
    hooks = CliHooks(
        on_init=lambda sid, model: seen.append(("init", sid, model)),
        on_content=lambda text: seen.append(("content", text)),
        on_complete=lambda text, usage: seen.append(("complete", text, usage.output_tokens, usage.total_cost_usd)),
        on_error=lambda message: seen.append(("error", message)),
    )
    lines = [
        {"type": "system", "session_id": "s-1", "model": "claude-opus-4-5"},
        {"type": "assistant", "message": {"content": [{"type": "text", "text": "Hel"}, {"type": "tool_use"}]}},
        {"type": "result", "result": "Hello", "usage": {"input_tokens": 2, "output_tokens": 4}, "total_cost_usd": 0.01},
        {"type": "result", "is_error": True, "result": "rate limited"},
    ]
    for line in lines:
        runner._handle_json_line(json.dumps(line), hooks)
    runner._handle_json_line("not json", hooks)

    assert seen == [
        ("init", "s-1", "claude-opus-4-5"),
        ("content", "Hel"),
        ("complete", "Hello", 4, 0.01),
        ("error", "rate limited"),
    ]


def test_cli_adapter_collects_output(monkeypatch):
    async def fake_run(self, prompt, model, hooks):
        hooks.on_init("s-1", model)
        hooks.on_content("Hel")
        hooks.on_content("lo")
        hooks.on_complete(None, None)

    monkeypatch.setattr(CliRunner, "run", fake_run)
    adapter = CliAdapter(CliProvider("claude", "Claude", "claude", "claude"))
    deltas, started = [], []

    result = asyncio.run(adapter.send("hi", "m", deltas.append, on_started=started.append))

    assert result.text == "Hello"
    assert result.turn_id == "s-1"
    assert deltas == ["Hel", "lo"]
    assert started == ["s-1"]


def test_cli_adapter_raises_stream_error(monkeypatch):
    async def fake_run(self, prompt, model, hooks):
        hooks.on_error("bad key")

    monkeypatch.setattr(CliRunner, "run", fake_run)
    adapter = CliAdapter(CliProvider("claude", "Claude", "claude", "claude"))
    with pytest.raises(TransportError, match="bad key"):
        asyncio.run(adapter.send("hi", None, lambda _d: None))


def test_cli_runner_spawn_failure(tmp_path):
    runner = CliRunner(str(tmp_path / "missing"), style=CliStyle.PLAIN)
    with pytest.raises(TransportError, match="Failed to spawn CLI"):
        asyncio.run(runner.run("hi", None, CliHooks()))


# --------------------------------------------------------------------------- #
# HTTP
# --------------------------------------------------------------------------- #
def _sse(*events):
    return "".join(f"data: {json.dumps(event)}\n\n" for event in events).encode()


def test_claude_streaming_with_rate_limits():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["headers"] = request.headers
        captured["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            headers={
                "content-type": "text/event-stream",
                "anthropic-ratelimit-requests-limit": "50",
                "anthropic-ratelimit-requests-remaining": "49",
                "anthropic-ratelimit-tokens-reset": "2026-01-01T00:00:00Z",
            },
            content=_sse(
                {"type": "message_start", "message": {"id": "msg_1", "usage": {"input_tokens": 7}}},
                {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Hi"}},
                {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "!"}},
                {"type": "message_delta", "usage": {"output_tokens": 2}},
                {"type": "message_stop"},
            ),
        )

    adapter = ClaudeAdapter(api_key="sk-test", transport=httpx.MockTransport(handler))
    deltas, usages, started = [], [], []
    result = asyncio.run(
        adapter.send("hello", "claude-haiku-4-5", deltas.append, usages.append, on_started=started.append)
    )

    assert result.text == "Hi!"
    assert deltas == ["Hi", "!"]
    assert started == ["msg_1"]
    assert (result.usage.input_tokens, result.usage.output_tokens) == (7, 2)
    assert usages == [result.usage]
    assert result.rate_limits.requests_remaining == 49
    assert result.rate_limits.tokens_reset == "2026-01-01T00:00:00Z"
    assert captured["headers"]["x-api-key"] == "sk-test"
    assert captured["body"]["model"] == "claude-haiku-4-5"
    assert captured["body"]["stream"] is True


def test_claude_error_status_is_transport_error():
    def handler(request):
        return httpx.Response(401, json={"error": {"type": "authentication_error", "message": "invalid x-api-key"}})

    adapter = ClaudeAdapter(api_key="bad", stream=False, transport=httpx.MockTransport(handler))
    with pytest.raises(TransportError, match="Claude API error 401: invalid x-api-key"):
        asyncio.run(adapter.send("hello", None, lambda _d: None))


def test_claude_list_models_filters_prefix():
    def handler(request):
        return httpx.Response(200, json={"data": [{"id": "claude-opus-4-5"}, {"id": "other"}, {"id": "claude-opus-4-5"}]})

    adapter = ClaudeAdapter(api_key="sk", transport=httpx.MockTransport(handler))
    assert asyncio.run(adapter.list_models()) == ["claude-opus-4-5"]


def test_parse_rate_limits_empty():
    assert parse_rate_limits({}) is None


def test_gemini_streaming():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["alt"] == "sse"
        assert request.url.params["key"] == "g-key"
        assert request.url.path.endswith("/models/gemini-2.5-pro:streamGenerateContent")
        return httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            content=_sse(
                {"responseId": "r-1", "candidates": [{"content": {"parts": [{"text": "Bon"}]}}]},
                {
                    "candidates": [{"content": {"parts": [{"text": "jour"}]}}],
                    "usageMetadata": {"promptTokenCount": 4, "candidatesTokenCount": 2},
                },
            ),
        )

    adapter = GeminiAdapter(api_key="g-key", transport=httpx.MockTransport(handler))
    deltas = []
    result = asyncio.run(adapter.send("hello", "gemini-2.5-pro", deltas.append))

    assert result.text == "Bonjour"
    assert deltas == ["Bon", "jour"]
    assert result.turn_id == "r-1"
    assert (result.usage.input_tokens, result.usage.output_tokens) == (4, 2)


def test_gemini_list_models_filters_prefix():
    def handler(request):
        return httpx.Response(200, json={"models": [{"name": "models/gemini-2.5-pro"}, {"name": "models/embedding-001"}]})

    adapter = GeminiAdapter(api_key="g-key", transport=httpx.MockTransport(handler))
    assert asyncio.run(adapter.list_models()) == ["gemini-2.5-pro"]
