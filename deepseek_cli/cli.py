"""Command-line entry point and interactive REPL."""

import argparse
import json
import logging
import sys
from dataclasses import dataclass, field
from importlib import metadata
from pathlib import Path

from . import config as cfg
from . import fmt
from .agent import (
    DEFAULT_MAX_ROUNDS,
    FinalAnswer,
    Failed,
    Orchestrator,
    RoundLimitExceeded,
    RunResult,
    TextChunk,
    ToolInvoked,
    ToolResultEvent,
)
from .conversation import Conversation, Message
from .errors import ConfigError, DeepseekCliError, StoreError, TransportError
from .registry import ToolRegistry
from .store import SessionStore, data_dir, new_session_id
from .tools import default_registry
from .transport import PROVIDERS, Transport, resolve_api_key

KNOWN_MODELS = [
    ("deepseek-chat", "latest chat model"),
    ("deepseek-chat-v3", ""),
    ("deepseek-coder", "latest coder model"),
    ("deepseek-coder-v2", ""),
    ("deepseek-reasoner", "latest reasoning model"),
    ("deepseek-reasoner-r1", ""),
    ("deepseek-reasoner-r1-distill-qwen-32b", ""),
    ("deepseek-reasoner-r1-distill-llama-70b", ""),
]

# (prompt label, config key) for :keys
_KEY_PROMPTS = [
    ("OPENAI_API_KEY", "openai_api_key"),
    ("XAI_API_KEY (Grok)", "xai_api_key"),
    ("GROQ_API_KEY", "groq_api_key"),
    ("DEEPSEEK_API_KEY", "api_key"),
]

_CONFIG_KEY_FOR_PROVIDER = {
    "deepseek": "api_key",
    "openai": "openai_api_key",
    "grok": "xai_api_key",
    "groq": "groq_api_key",
}


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="deepseek-cli",
        description="Chat with DeepSeek and other OpenAI-compatible models, "
        "optionally letting the model run local tools.",
    )
    parser.add_argument("--version", action="store_true", help="Print the version and exit.")
    parser.add_argument(
        "--api-key",
        default=None,
        help="API key for the provider (overrides env var and config file).",
    )
    parser.add_argument("-m", "--model", default=None, help="Model name (default: per provider).")
    parser.add_argument(
        "--provider",
        choices=sorted(PROVIDERS),
        default=None,
        help="Chat-completion provider (default: deepseek).",
    )
    parser.add_argument(
        "--no-stream", action="store_true", help="Wait for complete replies instead of streaming."
    )
    parser.add_argument(
        "--max-rounds",
        type=int,
        default=None,
        help=f"Maximum model round trips per question in tools mode (default: {DEFAULT_MAX_ROUNDS}).",
    )
    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color", action="store_true", help="Force ANSI color even when stderr is not a TTY."
    )
    color_group.add_argument(
        "--no-color", action="store_true", help="Disable ANSI color even when stderr is a TTY."
    )
    parser.add_argument(
        "--mcp-config",
        metavar="PATH",
        default=None,
        help="Load extra MCP servers from a .mcp.json file (mcpServers object).",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging on stderr.")

    sub = parser.add_subparsers(dest="command")

    chat = sub.add_parser("chat", help="Send a message, or start an interactive chat.")
    chat.add_argument("message", nargs="?", default=None, help="Message to send.")
    chat.add_argument("-s", "--system", default=None, help="System prompt.")
    chat.add_argument(
        "-t", "--temperature", type=float, default=None, help="Sampling temperature (default: 0.7)."
    )
    chat.add_argument("--interactive", action="store_true", help="Start an interactive chat.")
    chat.add_argument("--tools", action="store_true", help="Let the model call local tools.")

    config = sub.add_parser("config", help="Read or change the configuration file.")
    config_sub = config.add_subparsers(dest="action", required=True)
    config_set = config_sub.add_parser("set", help="Set a configuration value.")
    config_set.add_argument("key", choices=list(cfg.SETTABLE_KEYS))
    config_set.add_argument("value")
    config_get = config_sub.add_parser("get", help="Show configuration values.")
    config_get.add_argument("key", nargs="?", choices=list(cfg.SETTABLE_KEYS), default=None)

    sub.add_parser("models", help="List known DeepSeek models.")
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        try:
            version = metadata.version("deepseek-cli")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.max_rounds is not None and args.max_rounds < 1:
        parser.error("--max-rounds must be at least 1")

    fmt.init(color=args.color, no_color=args.no_color)
    if args.debug:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(name)s %(levelname)s: %(message)s",
        )

    try:
        _run_main(args)
    except DeepseekCliError as e:
        fmt.error(str(e))
        sys.exit(1)


def _run_main(args) -> None:
    if args.command == "models":
        _print_models()
        return
    if args.command == "config":
        _run_config(args)
        return

    config = cfg.load_config()
    chat = args.command == "chat"
    message = args.message if chat else None
    system = (args.system if chat else None) or config.get("system_prompt")
    use_tools = chat and args.tools
    interactive = not chat or args.interactive or message is None

    transport = _make_transport(args, config, interactive=interactive)
    max_rounds = args.max_rounds or config.get("max_rounds", DEFAULT_MAX_ROUNDS)

    servers = dict(config.get("mcp_servers") or {})
    if args.mcp_config:
        servers.update(cfg.load_mcp_json(Path(args.mcp_config)))

    registry = default_registry()
    mcp = None
    if servers:
        from .mcp_client import McpManager, register_mcp_tools

        mcp = McpManager(servers)
        mcp.start()
        register_mcp_tools(registry, mcp)

    try:
        if interactive:
            state = ReplState(
                transport=transport,
                registry=registry,
                store=SessionStore(),
                tools_on=use_tools,
                stream=not args.no_stream,
                max_rounds=max_rounds,
            )
            repl_loop(state, system_prompt=system)
        else:
            conversation = Conversation(system)
            conversation.append(Message.user(message))
            result = run_exchange(
                conversation,
                Orchestrator(
                    transport,
                    registry if use_tools else None,
                    max_rounds=max_rounds if use_tools else 1,
                    stream=not args.no_stream,
                ),
                stream=not args.no_stream,
            )
            if result.outcome == "error":
                sys.exit(1)
            if result.outcome == "max_rounds_exceeded":
                sys.exit(2)
    finally:
        if mcp is not None:
            mcp.close()


def _print_models() -> None:
    print("Available DeepSeek models:")
    for name, note in KNOWN_MODELS:
        print(f"  • {name} ({note})" if note else f"  • {name}")
    print()
    print("Note: you can use any valid model name with -m")


def _run_config(args) -> None:
    if args.action == "set":
        cfg.set_value(args.key, args.value)
        fmt.success(f"Configuration saved to {cfg.config_path()}")
    else:
        print(cfg.get_value(args.key, cfg.load_config()))


def _make_transport(args, config: dict, interactive: bool) -> Transport:
    provider = args.provider or config.get("provider", "deepseek")
    if provider not in PROVIDERS:
        raise ConfigError(f"unknown provider {provider!r}")
    key = resolve_api_key(provider, args.api_key, config)
    if not key and interactive and sys.stdin.isatty():
        key = _prompt_and_save_key(provider, config)
    if not key:
        env = " or ".join(PROVIDERS[provider].env_vars)
        raise ConfigError(f"no API key for {provider}: set {env}, pass --api-key, or run "
                          f"'deepseek-cli config set api-key KEY'")

    model = args.model
    if model is None and provider == "deepseek":
        model = config.get("default_model")
    temperature = getattr(args, "temperature", None)
    if temperature is None:
        temperature = config.get("default_temperature", cfg.DEFAULT_TEMPERATURE)
    return Transport(provider, model=model, api_key=key, temperature=temperature)


def _prompt_and_save_key(provider: str, config: dict) -> str | None:
    from prompt_toolkit import prompt

    env = PROVIDERS[provider].env_vars[0]
    try:
        key = prompt(f"Enter {env}: ", is_password=True).strip()
    except (EOFError, KeyboardInterrupt):
        return None
    if not key:
        return None
    config[_CONFIG_KEY_FOR_PROVIDER[provider]] = key
    path = cfg.save_config(config)
    fmt.info(f"Saved key to {path}")
    return key


# -- Event rendering ----------------------------------------------------------


class EventPrinter:
    """Render loop events: assistant text on stdout, tool activity on stderr."""

    def __init__(self, stream: bool, out=None):
        self.stream = stream
        self.out = out or sys.stdout
        self._mid_line = False

    def _end_line(self):
        if self._mid_line:
            self.out.write("\n")
            self.out.flush()
            self._mid_line = False

    def __call__(self, event) -> None:
        if isinstance(event, TextChunk):
            self.out.write(event.text)
            self.out.flush()
            self._mid_line = not event.text.endswith("\n")
        elif isinstance(event, ToolInvoked):
            self._end_line()
            fmt.tool_call(event.name, json.dumps(event.arguments, ensure_ascii=False))
        elif isinstance(event, ToolResultEvent):
            if event.success:
                fmt.tool_result(event.name, event.elapsed, event.text)
            else:
                fmt.tool_error(event.name, event.text)
        elif isinstance(event, FinalAnswer):
            self._end_line()
        elif isinstance(event, RoundLimitExceeded):
            self._end_line()
            fmt.warning(f"max rounds reached ({event.rounds}) without a final answer.")
        elif isinstance(event, Failed):
            self._end_line()
            fmt.error(event.reason)


def run_exchange(conversation: Conversation, orchestrator: Orchestrator, stream: bool) -> RunResult:
    """Run one question to completion, printing as it goes."""
    printer = EventPrinter(stream)
    if stream:
        return orchestrator.run_to_completion(conversation, printer)
    with fmt.llm_spinner():
        result = orchestrator.run_to_completion(conversation, printer)
    if result.outcome == "final_answer" and result.answer:
        print(result.answer)
    return result


# -- REPL ---------------------------------------------------------------------


@dataclass
class ReplState:
    transport: Transport
    registry: ToolRegistry
    store: SessionStore
    tools_on: bool = False
    stream: bool = True
    max_rounds: int = DEFAULT_MAX_ROUNDS
    session_id: str = ""
    conversation: Conversation = field(default_factory=Conversation)
    cached_models: list[str] = field(default_factory=list)


def _repl_help() -> None:
    """Print available REPL commands."""
    fmt.info(
        "Available commands:\n"
        "  /help                  Show this help message\n"
        "  clear                  Clear chat history (keeps the system prompt)\n"
        "  system <prompt>        Replace the system prompt\n"
        "  :new [id]              Start a new session\n"
        "  :session <id>          Switch to a saved session\n"
        "  :sessions              List saved sessions\n"
        "  :status                Show session, model and mode\n"
        "  :models                List models offered by the provider\n"
        "  :model <name|index>    Switch model\n"
        "  :stream on|off         Toggle streaming\n"
        "  :tools list            List available tools\n"
        "  :tools on|off          Toggle tool use\n"
        "  :keys                  Store provider API keys in the config file\n"
        "  exit, quit             Exit the REPL"
    )


def _repl_banner(state: ReplState) -> None:
    title = "DeepSeek Interactive Chat"
    if state.tools_on:
        title += " with Tools"
    hints = ["Type /help for commands, 'exit' or 'quit' to end the session"]
    if state.tools_on:
        hints.insert(0, "Available tools: " + ", ".join(state.registry.names()))
    fmt.banner(title, hints)


def _repl_clear(state: ReplState) -> None:
    removed = state.conversation.reset(keep_system=True)
    fmt.info(f"Chat history cleared ({removed} messages removed)")


def _repl_system(state: ReplState, text: str) -> None:
    if not text.strip():
        fmt.warning("usage: system <prompt>")
        return
    state.conversation.replace_system_prompt(text.strip())
    fmt.success("System prompt updated")


def _repl_new(state: ReplState, arg: str) -> None:
    state.session_id = arg.strip() or new_session_id()
    state.conversation.reset(keep_system=True)
    fmt.success(f"Started new session {state.session_id}")


def _repl_switch(state: ReplState, arg: str) -> None:
    session_id = arg.strip()
    if not session_id:
        fmt.warning("usage: :session <id>")
        return
    if not state.store.exists(session_id):
        fmt.warning(f"no such session: {session_id}")
        return
    state.session_id = session_id
    state.conversation = Conversation.from_messages(state.store.load(session_id))
    fmt.success(f"Switched to session {session_id} ({len(state.conversation)} messages)")


def _repl_sessions(state: ReplState) -> None:
    rows = state.store.list()
    if not rows:
        fmt.info("no saved sessions")
        return
    fmt.listing(
        [
            f"{sid}  {updated[:19]}  ({count} messages){'  *' if sid == state.session_id else ''}"
            for sid, updated, count in rows
        ]
    )


def _repl_status(state: ReplState) -> None:
    fmt.info(
        f"session={state.session_id} messages={len(state.conversation)} "
        f"model={state.transport.model} stream={'on' if state.stream else 'off'} "
        f"tools={'on' if state.tools_on else 'off'}"
    )


def _repl_models(state: ReplState) -> None:
    try:
        models = state.transport.list_models()
    except TransportError as e:
        fmt.error(f"models error: {e}")
        return
    if not models:
        fmt.info("provider returned no models")
        return
    state.cached_models = models
    fmt.listing(models)
    fmt.info("use :model <number> to select")


def _repl_model(state: ReplState, arg: str) -> None:
    arg = arg.strip()
    if not arg:
        fmt.warning("usage: :model <name|index>")
        return
    if arg.isdigit():
        idx = int(arg)
        if idx < 1 or idx > len(state.cached_models):
            fmt.warning("invalid index (run :models first)")
            return
        arg = state.cached_models[idx - 1]
    state.transport = state.transport.with_model(arg)
    fmt.info(f"model set to {arg}")


def _parse_switch(arg: str) -> bool | None:
    arg = arg.strip().lower()
    if arg in ("on", "true", "1"):
        return True
    if arg in ("off", "false", "0"):
        return False
    return None


def _repl_stream(state: ReplState, arg: str) -> None:
    value = _parse_switch(arg)
    if value is None:
        fmt.warning("usage: :stream on|off")
        return
    state.stream = value
    fmt.info(f"stream={'on' if value else 'off'}")


def _repl_tools(state: ReplState, arg: str) -> None:
    arg = arg.strip().lower()
    if arg == "list":
        for definition in state.registry.list():
            summary = (definition.description.splitlines() or [""])[0]
            print(f"- {definition.name}: {summary}")
        return
    value = _parse_switch(arg)
    if value is None:
        fmt.warning("usage: :tools list|on|off")
        return
    state.tools_on = value
    fmt.info(f"tools {'enabled' if value else 'disabled'}")


def _repl_keys(session) -> None:
    config = cfg.load_config()
    fmt.info("Set keys (leave blank to skip):")
    changed = False
    for label, key in _KEY_PROMPTS:
        value = session.prompt(f"{label}: ", is_password=True).strip()
        if value:
            config[key] = value
            changed = True
    if changed:
        path = cfg.save_config(config)
        fmt.success(f"Saved keys to {path}")


def _save(state: ReplState) -> None:
    try:
        state.store.save(state.session_id, list(state.conversation.snapshot()))
    except StoreError as e:
        fmt.warning(f"session not saved: {e}")


def _ask(state: ReplState, line: str) -> None:
    orchestrator = Orchestrator(
        state.transport,
        state.registry if state.tools_on else None,
        # Without tools there is nothing to loop on.
        max_rounds=state.max_rounds if state.tools_on else 1,
        stream=state.stream,
    )
    before = state.conversation.snapshot()
    state.conversation.append(Message.user(line))
    try:
        result = run_exchange(state.conversation, orchestrator, state.stream)
    except KeyboardInterrupt:
        state.conversation.restore(before)
        print()
        fmt.warning("interrupted, question aborted.")
        return
    if result.outcome == "error":
        # Keep the log as it was so the question can simply be asked again.
        state.conversation.restore(before)
        return
    if state.tools_on and result.rounds > 1:
        fmt.completion(result.rounds, result.outcome)
    _save(state)


def _load_initial_session(state: ReplState, system_prompt: str | None) -> None:
    try:
        last = state.store.last()
        messages = state.store.load(last) if last else []
    except StoreError as e:
        fmt.warning(f"cannot resume session: {e}")
        last, messages = None, []
    state.session_id = last or new_session_id()
    state.conversation = Conversation.from_messages(messages)
    if messages:
        fmt.info(f"Resumed session {state.session_id} ({len(messages)} messages)")
    if system_prompt:
        state.conversation.replace_system_prompt(system_prompt)
        fmt.success("System prompt set")


def repl_loop(state: ReplState, system_prompt: str | None = None) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = data_dir() / "repl_history"
    history_path.parent.mkdir(parents=True, exist_ok=True)
    session = PromptSession(history=FileHistory(str(history_path)), enable_history_search=True)
    prompt_text = FormattedText([("bold fg:ansigreen", "You: ")])

    _repl_banner(state)
    _load_initial_session(state, system_prompt)

    while True:
        try:
            line = session.prompt(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)
            break

        line = line.strip()
        if not line:
            continue
        if line in ("exit", "quit", "/exit", "/quit"):
            fmt.info("Goodbye!")
            break

        cmd, _, arg = line.partition(" ")
        if line == "clear":
            _repl_clear(state)
        elif cmd == "system":
            _repl_system(state, arg)
        elif cmd == "/help":
            _repl_help()
        elif cmd == ":new":
            _repl_new(state, arg)
        elif cmd == ":session":
            _repl_switch(state, arg)
        elif cmd == ":sessions":
            _repl_sessions(state)
        elif cmd == ":status":
            _repl_status(state)
        elif cmd == ":models":
            _repl_models(state)
        elif cmd == ":model":
            _repl_model(state, arg)
        elif cmd == ":stream":
            _repl_stream(state, arg)
        elif cmd == ":tools":
            _repl_tools(state, arg)
        elif cmd == ":keys":
            try:
                _repl_keys(session)
            except (EOFError, KeyboardInterrupt):
                fmt.warning("key entry cancelled")
        else:
            _ask(state, line)


if __name__ == "__main__":
    main()
