"""Tests for the CLI: argument parsing, subcommands, event rendering, and the REPL."""

from io import StringIO
from unittest.mock import MagicMock, patch

import pytest

from deepseek_cli import cli
from deepseek_cli.agent import (
    Failed,
    FinalAnswer,
    Orchestrator,
    TextChunk,
    ToolInvoked,
    ToolResultEvent,
)
from deepseek_cli.cli import EventPrinter, ReplState, build_parser, main, repl_loop, run_exchange
from deepseek_cli.conversation import Conversation, Message, ToolCall
from deepseek_cli.errors import TransportError
from deepseek_cli.store import SessionStore
from deepseek_cli.tools import default_registry
from deepseek_cli.transport import Response, TextDelta, ToolCallDelta, TurnComplete


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeTransport:
    def __init__(self, replies=(), model="deepseek-chat", models=()):
        self.replies = list(replies)
        self.requests = []
        self.model = model
        self.models = list(models)

    def send(self, request, stream=True):
        self.requests.append(request)
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        if not stream:
            return reply
        fragments = [TextDelta(reply.content)] if reply.content else []
        for i, call in enumerate(reply.tool_calls):
            fragments.append(ToolCallDelta(i, call.id, call.name, call.arguments))
        fragments.append(TurnComplete(reply.finish_reason or "stop"))
        return iter(fragments)

    def with_model(self, model):
        clone = FakeTransport(self.replies, model, self.models)
        clone.requests = self.requests
        return clone

    def list_models(self):
        if isinstance(self.models, Exception):
            raise self.models
        return self.models


@pytest.fixture(autouse=True)
def isolated_dirs(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    for var in ("DEEPSEEK_API_KEY", "OPENAI_API_KEY", "XAI_API_KEY", "GROK_API_KEY", "GROQ_API_KEY"):
        monkeypatch.delenv(var, raising=False)


def _state(tmp_path, transport, **kwargs):
    return ReplState(
        transport=transport,
        registry=default_registry(),
        store=SessionStore(tmp_path / "sessions.db"),
        **kwargs,
    )


def _mock_session(inputs):
    session = MagicMock()
    side = []
    for v in inputs:
        side.append(v() if isinstance(v, type) and issubclass(v, BaseException) else v)
    session.prompt.side_effect = side
    return session


def _run_repl(state, inputs, system_prompt=None):
    session = _mock_session(inputs)
    with patch("prompt_toolkit.PromptSession", return_value=session):
        repl_loop(state, system_prompt=system_prompt)
    return session


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


class TestParser:
    def test_chat_options(self):
        args = build_parser().parse_args(
            ["-m", "deepseek-coder", "--no-stream", "chat", "hi", "-s", "sys", "-t", "0.2", "--tools"]
        )
        assert args.command == "chat"
        assert args.message == "hi"
        assert args.system == "sys"
        assert args.temperature == 0.2
        assert args.tools and args.no_stream
        assert args.model == "deepseek-coder"

    def test_no_command(self):
        args = build_parser().parse_args([])
        assert args.command is None

    def test_config_set_rejects_unknown_key(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["config", "set", "colour", "blue"])

    def test_provider_choices(self):
        assert build_parser().parse_args(["--provider", "grok", "models"]).provider == "grok"
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--provider", "acme", "models"])

    def test_max_rounds_validated(self):
        with pytest.raises(SystemExit):
            main(["--max-rounds", "0", "models"])


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------


class TestSubcommands:
    def test_models_needs_no_key(self, capsys):
        main(["models"])
        out = capsys.readouterr().out
        assert "deepseek-chat" in out
        assert "deepseek-reasoner" in out

    def test_config_set_then_get(self, capsys):
        main(["config", "set", "api-key", "sk-1234567890abcd"])
        main(["config", "get", "api-key"])
        assert "API Key: sk-123...abcd" in capsys.readouterr().out

    def test_config_get_default_model(self, capsys):
        main(["config", "get", "model"])
        assert "Model: deepseek-chat" in capsys.readouterr().out

    def test_missing_key_exits_1(self, capsys):
        with pytest.raises(SystemExit) as exc:
            main(["chat", "hello"])
        assert exc.value.code == 1
        assert "no API key" in capsys.readouterr().err

    def test_one_shot_streams_to_stdout(self, capsys, monkeypatch):
        monkeypatch.setenv("DEEPSEEK_API_KEY", "sk-test")
        sent = []

        def fake_send(self, request, stream=True):
            sent.append((self, request, stream))
            return iter([TextDelta("Hel"), TextDelta("lo"), TurnComplete("stop")])

        monkeypatch.setattr("deepseek_cli.transport.Transport.send", fake_send)
        main(["chat", "greet me", "-s", "be kind", "-t", "0.1"])

        assert capsys.readouterr().out == "Hello\n"
        transport, request, stream = sent[0]
        assert stream is True
        assert transport.temperature == 0.1
        assert transport.api_key == "sk-test"
        assert request.messages == [
            {"role": "system", "content": "be kind"},
            {"role": "user", "content": "greet me"},
        ]
        assert request.tools == []

    def test_one_shot_with_tools(self, capsys, monkeypatch):
        monkeypatch.setenv("DEEPSEEK_API_KEY", "sk-test")
        replies = [
            Response(
                tool_calls=(ToolCall("c1", "calculator", '{"expression": "6*7"}'),),
                finish_reason="tool_calls",
            ),
            Response(content="42"),
        ]
        monkeypatch.setattr(
            "deepseek_cli.transport.Transport.send",
            lambda self, request, stream=True: replies.pop(0),
        )
        main(["--no-stream", "chat", "--tools", "6*7?"])
        assert capsys.readouterr().out.strip() == "42"

    def test_one_shot_failure_exits_1(self, monkeypatch):
        monkeypatch.setenv("DEEPSEEK_API_KEY", "sk-test")

        def fail(self, request, stream=True):
            raise TransportError("LLM call failed: ConnectionError: refused")

        monkeypatch.setattr("deepseek_cli.transport.Transport.send", fail)
        with pytest.raises(SystemExit) as exc:
            main(["chat", "hi"])
        assert exc.value.code == 1

    def test_mcp_config_file_starts_servers(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DEEPSEEK_API_KEY", "sk-test")
        mcp_json = tmp_path / ".mcp.json"
        mcp_json.write_text('{"mcpServers": {"web": {"url": "http://localhost:8080/sse"}}}')
        started = []

        class FakeManager:
            def __init__(self, servers):
                started.append(servers)

            def start(self):
                pass

            def tools(self):
                return []

            def close(self):
                started.append("closed")

        monkeypatch.setattr("deepseek_cli.mcp_client.McpManager", FakeManager)
        monkeypatch.setattr(
            "deepseek_cli.transport.Transport.send",
            lambda self, request, stream=True: Response(content="ok"),
        )
        main(["--no-stream", "--mcp-config", str(mcp_json), "chat", "hi"])
        assert started == [{"web": {"url": "http://localhost:8080/sse"}}, "closed"]

    def test_default_model_from_config(self, monkeypatch):
        monkeypatch.setenv("DEEPSEEK_API_KEY", "sk-test")
        main(["config", "set", "model", "deepseek-reasoner"])
        args = build_parser().parse_args(["chat", "x"])
        transport = cli._make_transport(args, cli.cfg.load_config(), interactive=False)
        assert transport.model == "deepseek-reasoner"


# ---------------------------------------------------------------------------
# Event rendering
# ---------------------------------------------------------------------------


class TestEventPrinter:
    def test_stream_text_then_newline(self):
        out = StringIO()
        printer = EventPrinter(stream=True, out=out)
        for event in (TextChunk("Hel"), TextChunk("lo"), FinalAnswer("Hello")):
            printer(event)
        assert out.getvalue() == "Hello\n"

    def test_tool_events_go_to_stderr(self, capsys):
        out = StringIO()
        printer = EventPrinter(stream=True, out=out)
        printer(TextChunk("Checking"))
        printer(ToolInvoked("calculator", {"expression": "1+1"}, "c1"))
        printer(ToolResultEvent("calculator", True, "1+1 = 2", "c1", 0.01))
        printer(Failed("boom"))
        assert out.getvalue() == "Checking\n"
        err = capsys.readouterr().err
        assert "calculator" in err
        assert "Error: boom" in err

    def test_non_stream_prints_answer_after_run(self, capsys):
        conv = Conversation()
        conv.append(Message.user("hi"))
        transport = FakeTransport([Response(content="answer")])
        result = run_exchange(conv, Orchestrator(transport, None, stream=False), stream=False)
        assert result.answer == "answer"
        assert capsys.readouterr().out == "answer\n"


# ---------------------------------------------------------------------------
# REPL
# ---------------------------------------------------------------------------


class TestRepl:
    def test_exit_commands(self, tmp_path):
        for word in ("exit", "quit", "/exit", "/quit"):
            state = _state(tmp_path, FakeTransport())
            _run_repl(state, [word])
            assert len(state.conversation) == 0

    def test_eof(self, tmp_path):
        state = _state(tmp_path, FakeTransport())
        _run_repl(state, [EOFError])
        assert len(state.conversation) == 0

    def test_question_answered_and_saved(self, tmp_path, capsys):
        transport = FakeTransport([Response(content="hi there")])
        state = _state(tmp_path, transport)
        _run_repl(state, ["", "hello", "exit"])

        assert "hi there" in capsys.readouterr().out
        assert len(transport.requests) == 1
        saved = state.store.load(state.session_id)
        assert [m.content for m in saved] == ["hello", "hi there"]

    def test_resumes_last_session(self, tmp_path):
        store = SessionStore(tmp_path / "sessions.db")
        store.save("s-old", [Message.user("earlier"), Message.assistant("reply")])
        transport = FakeTransport([Response(content="ok")])
        state = ReplState(transport=transport, registry=default_registry(), store=store)
        _run_repl(state, ["next", "exit"])

        assert state.session_id == "s-old"
        assert [m["content"] for m in transport.requests[0].messages] == ["earlier", "reply", "next"]

    def test_system_prompt_flag_and_command(self, tmp_path):
        transport = FakeTransport([Response(content="a"), Response(content="b")])
        state = _state(tmp_path, transport)
        _run_repl(state, ["one", "system be terse", "two", "exit"], system_prompt="be kind")

        assert transport.requests[0].messages[0] == {"role": "system", "content": "be kind"}
        second = transport.requests[1].messages
        assert second[0] == {"role": "system", "content": "be terse"}
        assert [m["content"] for m in second[1:]] == ["one", "a", "two"]

    def test_clear_keeps_system_prompt(self, tmp_path):
        transport = FakeTransport([Response(content="a"), Response(content="b")])
        state = _state(tmp_path, transport)
        _run_repl(state, ["one", "clear", "two", "exit"], system_prompt="sys")
        assert [m["content"] for m in transport.requests[1].messages] == ["sys", "two"]

    def test_new_and_switch_session(self, tmp_path):
        transport = FakeTransport([Response(content="a"), Response(content="b")])
        state = _state(tmp_path, transport)
        _run_repl(
            state,
            [":new first", "q1", ":new second", "q2", ":session first", ":session missing", "exit"],
        )
        assert state.session_id == "first"
        assert [m.content for m in state.conversation] == ["q1", "a"]
        assert [m.content for m in state.store.load("second")] == ["q2", "b"]

    def test_ctrl_c_during_question(self, tmp_path):
        transport = FakeTransport([KeyboardInterrupt(), Response(content="ok")])
        state = _state(tmp_path, transport)
        _run_repl(state, ["interrupted", "again", "exit"])
        assert len(transport.requests) == 2
        assert [m["content"] for m in transport.requests[1].messages] == ["again"]

    def test_failed_question_not_kept(self, tmp_path):
        transport = FakeTransport([TransportError("down"), Response(content="ok")])
        state = _state(tmp_path, transport)
        _run_repl(state, ["q", "q", "exit"])
        assert [m.content for m in state.conversation] == ["q", "ok"]

    def test_failure_after_tool_round_not_kept(self, tmp_path):
        transport = FakeTransport(
            [
                Response(
                    tool_calls=(ToolCall("c1", "calculator", '{"expression": "2+3"}'),),
                    finish_reason="tool_calls",
                ),
                TransportError("down"),
            ]
        )
        state = _state(tmp_path, transport, tools_on=True, stream=False)
        _run_repl(state, ["q", "exit"])
        assert len(state.conversation) == 0

    def test_stream_toggle(self, tmp_path):
        transport = FakeTransport([Response(content="ok")])
        state = _state(tmp_path, transport)
        _run_repl(state, [":stream off", "hi", "exit"])
        assert state.stream is False

    def test_tools_mode(self, tmp_path):
        transport = FakeTransport(
            [
                Response(
                    tool_calls=(ToolCall("c1", "calculator", '{"expression": "2+3"}'),),
                    finish_reason="tool_calls",
                ),
                Response(content="5"),
            ]
        )
        state = _state(tmp_path, transport, stream=False)
        _run_repl(state, [":tools on", "2+3?", "exit"])

        assert state.tools_on
        assert transport.requests[0].tools
        tool_msg = [m for m in state.conversation if m.role == "tool"][0]
        assert tool_msg.content == "2+3 = 5"

    def test_tools_off_sends_no_schemas(self, tmp_path):
        transport = FakeTransport([Response(content="x")])
        state = _state(tmp_path, transport, tools_on=True)
        _run_repl(state, [":tools off", "hi", "exit"])
        assert transport.requests[0].tools == []

    def test_tools_list(self, tmp_path, capsys):
        _run_repl(_state(tmp_path, FakeTransport()), [":tools list", "exit"])
        out = capsys.readouterr().out
        assert "- shell: Execute a shell command" in out
        assert "- write_file:" in out

    def test_models_and_model_by_index(self, tmp_path):
        transport = FakeTransport(models=["deepseek-chat", "deepseek-reasoner"])
        state = _state(tmp_path, transport)
        _run_repl(state, [":model 2", ":models", ":model 2", "exit"])
        assert state.transport.model == "deepseek-reasoner"

    def test_model_by_name(self, tmp_path):
        state = _state(tmp_path, FakeTransport())
        _run_repl(state, [":model deepseek-coder", "exit"])
        assert state.transport.model == "deepseek-coder"

    def test_models_error_reported(self, tmp_path, capsys):
        transport = FakeTransport()
        transport.models = TransportError("could not list models")
        _run_repl(_state(tmp_path, transport), [":models", "exit"])
        assert "models error" in capsys.readouterr().err

    def test_status_and_help(self, tmp_path, capsys):
        _run_repl(_state(tmp_path, FakeTransport()), [":status", "/help", "exit"])
        err = capsys.readouterr().err
        assert "model=deepseek-chat" in err
        assert ":session <id>" in err

    def test_sessions_listing(self, tmp_path, capsys):
        state = _state(tmp_path, FakeTransport())
        state.store.save("s-1", [Message.user("a")])
        _run_repl(state, [":sessions", "exit"])
        assert "s-1" in capsys.readouterr().err

    def test_keys_saved_to_config(self, tmp_path):
        state = _state(tmp_path, FakeTransport())
        session = _run_repl(state, [":keys", "", "xai-key-123456", "", "", "exit"])
        assert session.prompt.call_count == 6
        assert cli.cfg.load_config() == {"xai_api_key": "xai-key-123456"}
