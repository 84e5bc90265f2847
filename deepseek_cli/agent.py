"""The tool-calling orchestration loop.

Drives rounds of: send conversation -> receive (possibly streamed) turn ->
execute requested tools in order -> append results -> send again, until the
model answers without tool calls, the round limit is hit, or the transport
fails. Progress is reported as a stream of events so any front end can
render it.
"""

import enum
import logging
from dataclasses import dataclass, field
from typing import Callable, Iterator

from .conversation import Conversation, Message, ToolCall
from .errors import ProtocolDecodeError, TransportError
from .registry import ToolRegistry, parse_arguments
from .transport import (
    Request,
    Response,
    TextDelta,
    ToolCallDelta,
    Transport,
    TurnComplete,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_ROUNDS = 20


class LoopState(enum.Enum):
    AWAITING_MODEL = "awaiting_model"
    MODEL_RESPONDED = "model_responded"
    HAS_TOOL_CALLS = "has_tool_calls"
    EXECUTING_TOOLS = "executing_tools"
    FINAL_ANSWER = "final_answer"
    ERROR = "error"
    MAX_ROUNDS_EXCEEDED = "max_rounds_exceeded"


# -- Events ------------------------------------------------------------------


@dataclass(frozen=True)
class TextChunk:
    text: str


@dataclass(frozen=True)
class ToolInvoked:
    name: str
    arguments: dict
    call_id: str = ""


@dataclass(frozen=True)
class ToolResultEvent:
    name: str
    success: bool
    text: str
    call_id: str = ""
    elapsed: float = 0.0


@dataclass(frozen=True)
class FinalAnswer:
    text: str


@dataclass(frozen=True)
class RoundLimitExceeded:
    rounds: int


@dataclass(frozen=True)
class Failed:
    reason: str


Event = TextChunk | ToolInvoked | ToolResultEvent | FinalAnswer | RoundLimitExceeded | Failed
TERMINAL_EVENTS = (FinalAnswer, RoundLimitExceeded, Failed)


# -- Stream reassembly -------------------------------------------------------


class ToolCallAccumulator:
    """Reassembles streamed tool-call deltas, keyed by call index.

    The first delta for an index carries id and name; later ones append
    argument text. Calls are released in index order.
    """

    def __init__(self):
        self._calls: dict[int, dict] = {}

    def add(self, delta: ToolCallDelta) -> None:
        entry = self._calls.setdefault(delta.index, {"id": "", "name": "", "arguments": ""})
        if delta.id:
            entry["id"] = delta.id
        if delta.name and not entry["name"]:
            entry["name"] = delta.name
        if delta.arguments_delta:
            entry["arguments"] += delta.arguments_delta

    def __bool__(self) -> bool:
        return bool(self._calls)

    def calls(self) -> tuple[ToolCall, ...]:
        out = []
        for index in sorted(self._calls):
            entry = self._calls[index]
            out.append(
                ToolCall(
                    id=entry["id"] or f"call_{index}",
                    name=entry["name"],
                    arguments=entry["arguments"],
                )
            )
        return tuple(out)


# -- Loop --------------------------------------------------------------------


def build_request(conversation: Conversation, registry: ToolRegistry | None) -> Request:
    tools = registry.schemas() if registry is not None and len(registry) else []
    return Request(messages=conversation.to_wire(), tools=tools)


@dataclass
class RunResult:
    answer: str | None
    outcome: str  # "final_answer" | "max_rounds_exceeded" | "error"
    rounds: int
    error: str | None = None
    events: list = field(default_factory=list)


class Orchestrator:
    """Runs one conversation through the send/execute loop.

    The conversation is only touched between rounds: a round that fails
    (transport error, decode error, or interruption) is rolled back so the
    log is exactly what it was before the round began.
    """

    def __init__(
        self,
        transport: Transport,
        registry: ToolRegistry | None = None,
        *,
        max_rounds: int = DEFAULT_MAX_ROUNDS,
        stream: bool = True,
        token_budget: int | None = None,
    ):
        if max_rounds < 1:
            raise ValueError("max_rounds must be at least 1")
        self.transport = transport
        self.registry = registry
        self.max_rounds = max_rounds
        self.stream = stream
        self.token_budget = token_budget
        self.state = LoopState.AWAITING_MODEL
        self.rounds = 0
        self.last_request: Request | None = None

    def run(self, conversation: Conversation) -> Iterator[Event]:
        self.rounds = 0
        while self.rounds < self.max_rounds:
            self.rounds += 1
            self.state = LoopState.AWAITING_MODEL

            # Truncation is undone too if the round fails.
            before = conversation.snapshot()
            if self.token_budget is not None:
                conversation.truncate_to_budget(
                    self.token_budget, build_request(conversation, self.registry).tools
                )
            request = build_request(conversation, self.registry)
            self.last_request = request
            logger.debug(
                "round %d/%d: %d messages", self.rounds, self.max_rounds, len(request.messages)
            )

            try:
                turn = yield from self._receive(request)
                self.state = LoopState.MODEL_RESPONDED
                if turn.tool_calls:
                    if not self.stream and turn.content:
                        yield TextChunk(turn.content)
                    self.state = LoopState.HAS_TOOL_CALLS
                    conversation.append(Message.assistant(turn.content, turn.tool_calls))
                    self.state = LoopState.EXECUTING_TOOLS
                    yield from self._execute(turn.tool_calls, conversation)
                    continue
                conversation.append(Message.assistant(turn.content))
            except TransportError as e:
                conversation.restore(before)
                self.state = LoopState.ERROR
                logger.debug("round %d failed: %s", self.rounds, e)
                yield Failed(str(e))
                return
            except (KeyboardInterrupt, GeneratorExit):
                conversation.restore(before)
                self.state = LoopState.AWAITING_MODEL
                raise

            self.state = LoopState.FINAL_ANSWER
            yield FinalAnswer(turn.content)
            return

        self.state = LoopState.MAX_ROUNDS_EXCEEDED
        yield RoundLimitExceeded(self.rounds)

    def _receive(self, request: Request):
        """Send one request and reassemble the turn, yielding TextChunks."""
        reply = self.transport.send(request, stream=self.stream)
        if isinstance(reply, Response):
            return reply

        text_parts: list[str] = []
        calls = ToolCallAccumulator()
        complete = None
        try:
            for fragment in reply:
                if isinstance(fragment, TextDelta):
                    text_parts.append(fragment.text)
                    yield TextChunk(fragment.text)
                elif isinstance(fragment, ToolCallDelta):
                    calls.add(fragment)
                elif isinstance(fragment, TurnComplete):
                    complete = fragment
                    break
                else:
                    raise ProtocolDecodeError(f"unexpected fragment {fragment!r}")
        finally:
            close = getattr(reply, "close", None)
            if close is not None:
                close()
        if complete is None:
            raise ProtocolDecodeError("stream ended before the turn completed")
        return Response(
            content="".join(text_parts),
            tool_calls=calls.calls(),
            finish_reason=complete.finish_reason,
        )

    def _execute(self, tool_calls: tuple[ToolCall, ...], conversation: Conversation):
        # Sequential on purpose: results must land in the order requested.
        for call in tool_calls:
            yield ToolInvoked(call.name, parse_arguments(call.arguments), call.id)
            if self.registry is None:
                result_text = f"error: unknown tool {call.name!r}. No tools are available"
                success, elapsed = False, 0.0
            else:
                result = self.registry.invoke(call.name, call.arguments, call_id=call.id)
                result_text, success, elapsed = result.text, result.success, result.elapsed
            conversation.append(Message.tool(call.id, call.name, result_text))
            yield ToolResultEvent(call.name, success, result_text, call.id, elapsed)

    def run_to_completion(
        self,
        conversation: Conversation,
        on_event: Callable[[Event], None] | None = None,
    ) -> RunResult:
        events = []
        for event in self.run(conversation):
            events.append(event)
            if on_event is not None:
                on_event(event)

        last = events[-1]
        if isinstance(last, FinalAnswer):
            return RunResult(last.text, "final_answer", self.rounds, events=events)
        if isinstance(last, RoundLimitExceeded):
            return RunResult(
                conversation.last_assistant_text(), "max_rounds_exceeded", self.rounds, events=events
            )
        return RunResult(None, "error", self.rounds, error=last.reason, events=events)
