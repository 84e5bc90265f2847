"""Conversation state: the ordered message log sent to the model each round."""

import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Callable, Iterable, Iterator

import tiktoken

from .errors import OrphanToolResultError

logger = logging.getLogger(__name__)

ROLES = ("system", "user", "assistant", "tool")


@lru_cache(maxsize=1)
def _encoder():
    return tiktoken.get_encoding("cl100k_base")


@dataclass(frozen=True)
class ToolCall:
    """One tool request inside an assistant turn.

    ``arguments`` is the raw JSON text exactly as the model produced it.
    """

    id: str
    name: str
    arguments: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ToolCall":
        fn = data.get("function") or {}
        args = fn.get("arguments", "")
        if not isinstance(args, str):
            args = json.dumps(args)
        return cls(id=data.get("id") or "", name=fn.get("name") or "", arguments=args)


@dataclass(frozen=True)
class Message:
    role: str
    content: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    tool_call_id: str | None = None
    name: str | None = None

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"invalid role {self.role!r}")

    @classmethod
    def system(cls, text: str) -> "Message":
        return cls("system", text)

    @classmethod
    def user(cls, text: str) -> "Message":
        return cls("user", text)

    @classmethod
    def assistant(cls, text: str = "", tool_calls: Iterable[ToolCall] = ()) -> "Message":
        return cls("assistant", text or "", tuple(tool_calls))

    @classmethod
    def tool(cls, call_id: str, name: str, text: str) -> "Message":
        return cls("tool", text, tool_call_id=call_id, name=name)

    def to_dict(self) -> dict:
        """Chat-completions wire shape."""
        d: dict = {"role": self.role, "content": self.content}
        if self.tool_calls:
            d["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.role == "tool":
            d["tool_call_id"] = self.tool_call_id
        return d

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        return cls(
            role=data["role"],
            content=data.get("content") or "",
            tool_calls=tuple(ToolCall.from_dict(tc) for tc in data.get("tool_calls") or ()),
            tool_call_id=data.get("tool_call_id"),
            name=data.get("name"),
        )


def estimate_tokens(messages: Iterable[Message], tools: list | None = None) -> int:
    """Count tokens across all messages using tiktoken."""
    enc = _encoder()
    total = 0
    count = 0
    for m in messages:
        count += 1
        text = m.content
        for tc in m.tool_calls:
            text += tc.name + tc.arguments
        total += len(enc.encode(text))
    if tools:
        total += len(enc.encode(json.dumps(tools)))
    # Per-message overhead (role, separators): ~4 tokens each
    return total + 4 * count


def group_into_turns(messages: list[Message]) -> list[list[Message]]:
    """Group messages into atomic turns.

    A turn is either a single message, or an assistant message with
    tool_calls followed by all of its matching tool results.
    """
    turns = []
    i = 0
    while i < len(messages):
        msg = messages[i]
        if msg.role == "assistant" and msg.tool_calls:
            ids = {tc.id for tc in msg.tool_calls}
            j = i + 1
            while j < len(messages) and messages[j].role == "tool" and messages[j].tool_call_id in ids:
                j += 1
            turns.append(messages[i:j])
            i = j
        else:
            turns.append([msg])
            i += 1
    return turns


class Conversation:
    """Append-only message log.

    The only validation on append is tool-call linkage: a ``tool`` message
    must answer a ToolCall id emitted by an earlier assistant message.
    """

    def __init__(self, system_prompt: str | None = None):
        self._messages: list[Message] = []
        self._call_ids: Counter[str] = Counter()
        if system_prompt:
            self.append(Message.system(system_prompt))

    # -- reading --

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(self.snapshot())

    def snapshot(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    def to_wire(self) -> list[dict]:
        return [m.to_dict() for m in self._messages]

    @property
    def system_prompt(self) -> str | None:
        if self._messages and self._messages[0].role == "system":
            return self._messages[0].content
        return None

    def last_assistant_text(self) -> str | None:
        for m in reversed(self._messages):
            if m.role == "assistant" and m.content:
                return m.content
        return None

    # -- mutation --

    def append(self, message: Message) -> None:
        if message.role == "tool" and self._call_ids[message.tool_call_id or ""] == 0:
            raise OrphanToolResultError(
                f"tool result references unknown tool_call_id {message.tool_call_id!r}"
            )
        self._messages.append(message)
        for tc in message.tool_calls:
            self._call_ids[tc.id] += 1

    def extend(self, messages: Iterable[Message]) -> None:
        for m in messages:
            self.append(m)

    def rollback(self, length: int) -> None:
        """Drop every message appended after the log had ``length`` entries."""
        if length < len(self._messages):
            self._set(self._messages[:length])

    def restore(self, snapshot: tuple[Message, ...]) -> None:
        """Put the log back exactly as ``snapshot()`` returned it."""
        self._set(list(snapshot))

    def reset(self, new_system_prompt: str | None = None, *, keep_system: bool = False) -> int:
        """Clear the conversation, optionally re-seeding a system message.

        Returns the number of messages removed.
        """
        before = len(self._messages)
        if new_system_prompt is not None:
            seed = [Message.system(new_system_prompt)]
        elif keep_system and self.system_prompt is not None:
            seed = [self._messages[0]]
        else:
            seed = []
        self._set(seed)
        return before - len(seed)

    def replace_system_prompt(self, text: str, *, keep_history: bool = True) -> None:
        if not keep_history:
            self.reset(text)
            return
        rest = [m for m in self._messages if m.role != "system"]
        self._set([Message.system(text)] + rest)

    def truncate_to_budget(
        self,
        limit: int,
        tools: list | None = None,
        counter: Callable[[list[Message], list | None], int] = estimate_tokens,
    ) -> int:
        """Drop the oldest non-system turns until the log fits in ``limit``.

        Tool results go together with the assistant message that requested
        them. The system message and the most recent turn are never
        dropped. Returns the number of messages removed.
        """
        msgs = list(self._messages)
        if counter(msgs, tools) <= limit:
            return 0

        lead = [msgs[0]] if msgs and msgs[0].role == "system" else []
        turns = group_into_turns(msgs[len(lead):])
        while len(turns) > 1:
            turns.pop(0)
            candidate = lead + [m for t in turns for m in t]
            if counter(candidate, tools) <= limit:
                break
        self._set(lead + [m for t in turns for m in t], drop_orphans=True)
        removed = len(msgs) - len(self._messages)
        if removed:
            logger.debug("truncated %d messages to fit %d tokens", removed, limit)
        return removed

    def _set(self, messages: list[Message], drop_orphans: bool = False) -> None:
        self._messages = []
        self._call_ids = Counter()
        for m in messages:
            if drop_orphans and m.role == "tool" and not self._call_ids[m.tool_call_id or ""]:
                continue
            self.append(m)

    # -- (de)serialization --

    @classmethod
    def from_messages(cls, messages: Iterable[Message]) -> "Conversation":
        """Rebuild a conversation, dropping orphaned tool results."""
        conv = cls()
        for m in messages:
            try:
                conv.append(m)
            except OrphanToolResultError:
                logger.warning("dropping orphaned tool result %r", m.tool_call_id)
        return conv

    def copy(self) -> "Conversation":
        return Conversation.from_messages(self._messages)

    @classmethod
    def from_dicts(cls, data: Iterable[dict]) -> "Conversation":
        return cls.from_messages(Message.from_dict(d) for d in data)
