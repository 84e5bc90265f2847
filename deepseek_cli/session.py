"""Public library API for deepseek-cli: Session class and Result dataclass."""

from dataclasses import dataclass

from .agent import DEFAULT_MAX_ROUNDS, Orchestrator
from .conversation import Conversation, Message
from .errors import ConfigError
from .registry import ToolRegistry
from .tools import default_registry
from .transport import DEFAULT_TEMPERATURE, PROVIDERS, Transport, resolve_api_key


@dataclass
class Result:
    """Result of a session run or ask call."""

    answer: str | None
    outcome: str
    rounds: int
    messages: list[dict]
    error: str | None = None

    @property
    def exhausted(self) -> bool:
        return self.outcome == "max_rounds_exceeded"


class Session:
    """Programmatic interface to the tool-calling loop.

    Call .run() for single-shot questions or .ask() for multi-turn
    conversations. Setup (API key, registry, MCP servers) happens on first
    use and is reused until .close().
    """

    def __init__(
        self,
        *,
        provider: str = "deepseek",
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        temperature: float | None = DEFAULT_TEMPERATURE,
        max_rounds: int = DEFAULT_MAX_ROUNDS,
        system_prompt: str | None = None,
        tools: bool = True,
        mcp_servers: dict[str, dict] | None = None,
        token_budget: int | None = None,
        config: dict | None = None,
        transport: Transport | None = None,
        registry: ToolRegistry | None = None,
    ):
        if provider not in PROVIDERS:
            raise ConfigError(f"unknown provider {provider!r}")
        self.provider = provider
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self.temperature = temperature
        self.max_rounds = max_rounds
        self.system_prompt = system_prompt
        self.tools = tools
        self.mcp_servers = mcp_servers or {}
        self.token_budget = token_budget
        self.config = config or {}

        self._transport = transport
        self._registry = registry
        self._mcp = None
        self._setup_done = False
        self._conversation: Conversation | None = None

    def _setup(self) -> None:
        if self._setup_done:
            return

        if self._transport is None:
            key = resolve_api_key(self.provider, self.api_key, self.config)
            if not key:
                env = " or ".join(PROVIDERS[self.provider].env_vars)
                raise ConfigError(f"no API key for {self.provider}: set {env} or pass api_key")
            self._transport = Transport(
                self.provider,
                model=self.model,
                api_key=key,
                base_url=self.base_url,
                temperature=self.temperature,
            )

        if self._registry is None and self.tools:
            self._registry = default_registry()
            if self.mcp_servers:
                from .mcp_client import McpManager, register_mcp_tools

                self._mcp = McpManager(self.mcp_servers)
                self._mcp.start()
                register_mcp_tools(self._registry, self._mcp)

        self._setup_done = True

    def _orchestrator(self) -> Orchestrator:
        return Orchestrator(
            self._transport,
            self._registry if self.tools else None,
            max_rounds=self.max_rounds,
            stream=False,
            token_budget=self.token_budget,
        )

    def _run(self, conversation: Conversation, question: str) -> Result:
        before = conversation.snapshot()
        conversation.append(Message.user(question))
        try:
            outcome = self._orchestrator().run_to_completion(conversation)
        except KeyboardInterrupt:
            conversation.restore(before)
            raise
        if outcome.outcome == "error":
            # Drop the whole question, tool rounds included, so ask() can be retried.
            conversation.restore(before)
        return Result(
            answer=outcome.answer,
            outcome=outcome.outcome,
            rounds=outcome.rounds,
            messages=conversation.to_wire(),
            error=outcome.error,
        )

    def run(self, question: str) -> Result:
        """Single-shot: run a question with a fresh conversation."""
        self._setup()
        return self._run(Conversation(self.system_prompt), question)

    def ask(self, question: str) -> Result:
        """Conversational: share context across questions (like the REPL)."""
        self._setup()
        if self._conversation is None:
            self._conversation = Conversation(self.system_prompt)
        return self._run(self._conversation, question)

    def reset(self) -> None:
        """Clear conversation state without invalidating setup."""
        self._conversation = None

    def close(self) -> None:
        if self._mcp is not None:
            self._mcp.close()
            self._mcp = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
