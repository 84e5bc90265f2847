"""Tool registry: name -> capability lookup with declared parameter schemas."""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from .errors import (
    DuplicateNameError,
    InvalidArgumentsError,
    ToolInvocationError,
    UnknownToolError,
)

logger = logging.getLogger(__name__)

DEFAULT_TOOL_TIMEOUT = 120  # seconds

Capability = Callable[[dict], str]


@dataclass(frozen=True)
class ToolParam:
    type: str
    description: str = ""
    required: bool = False


@dataclass(frozen=True)
class ToolDefinition:
    """A named capability plus the schema advertised to the model.

    ``parameters`` maps argument name to ToolParam. Tools imported from an
    external source (MCP) may carry a ready-made JSON schema in
    ``input_schema`` instead; it is sent verbatim.
    """

    name: str
    description: str
    capability: Capability
    parameters: dict[str, ToolParam] = field(default_factory=dict)
    input_schema: dict | None = None

    def required(self) -> list[str]:
        if self.input_schema is not None:
            req = self.input_schema.get("required", [])
            return [r for r in req if isinstance(r, str)]
        return [name for name, p in self.parameters.items() if p.required]

    def to_openai(self) -> dict:
        if self.input_schema is not None:
            schema = self.input_schema
        else:
            schema = {
                "type": "object",
                "properties": {
                    name: {"type": p.type, "description": p.description}
                    for name, p in self.parameters.items()
                },
                "required": self.required(),
            }
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": schema,
            },
        }


@dataclass(frozen=True)
class ToolResult:
    call_id: str
    name: str
    success: bool
    text: str
    elapsed: float = 0.0


def parse_arguments(raw: Any) -> dict:
    """Decode a tool-call argument payload.

    Empty or malformed payloads decode to ``{}`` so that required-argument
    validation reports what is missing.
    """
    if isinstance(raw, dict):
        return raw
    if raw is None:
        return {}
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if not isinstance(raw, str) or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.debug("malformed tool arguments: %r", raw[:200])
        return {}
    return parsed if isinstance(parsed, dict) else {}


class ToolRegistry:
    """Immutable-after-startup mapping of tool name to ToolDefinition.

    ``invoke`` never raises for tool-level failures: unknown tools, bad
    arguments, capability exceptions and timeouts all come back as a failed
    ToolResult whose text starts with ``error:``.
    """

    def __init__(self, tool_timeout: float = DEFAULT_TOOL_TIMEOUT):
        self._tools: dict[str, ToolDefinition] = {}
        self.tool_timeout = tool_timeout

    def register(self, definition: ToolDefinition) -> None:
        if definition.name in self._tools:
            raise DuplicateNameError(
                f"tool {definition.name!r} is already registered"
            )
        self._tools[definition.name] = definition

    def list(self) -> list[ToolDefinition]:
        return list(self._tools.values())

    def names(self) -> list[str]:
        return list(self._tools)

    def get(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def schemas(self) -> list[dict]:
        """Return the ``tools`` payload for the chat-completion request."""
        return [d.to_openai() for d in self._tools.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def invoke(self, name: str, arguments: Any = None, call_id: str = "") -> ToolResult:
        t0 = time.monotonic()

        def _fail(exc: Exception) -> ToolResult:
            return ToolResult(
                call_id=call_id,
                name=name,
                success=False,
                text=f"error: {exc}",
                elapsed=time.monotonic() - t0,
            )

        definition = self._tools.get(name)
        if definition is None:
            available = ", ".join(sorted(self._tools)) or "(none)"
            return _fail(
                UnknownToolError(
                    f"unknown tool {name!r}. Available tools: {available}"
                )
            )

        args = parse_arguments(arguments)
        missing = [r for r in definition.required() if r not in args]
        if missing:
            return _fail(
                InvalidArgumentsError(
                    f"missing required argument(s) for {name!r}: {', '.join(missing)}"
                )
            )

        try:
            text = self._run_with_timeout(definition, args)
        except TimeoutError:
            return _fail(
                ToolInvocationError(
                    f"tool {name!r} timed out after {self.tool_timeout:g}s"
                )
            )
        except ToolInvocationError as e:
            return _fail(e)
        except Exception as e:
            logger.debug("tool %s raised", name, exc_info=True)
            return _fail(ToolInvocationError(f"{type(e).__name__}: {e}"))

        return ToolResult(
            call_id=call_id,
            name=name,
            success=True,
            text=text if isinstance(text, str) else str(text),
            elapsed=time.monotonic() - t0,
        )

    def _run_with_timeout(self, definition: ToolDefinition, args: dict) -> str:
        """Run the capability on a daemon thread, bounded by tool_timeout.

        A capability that overruns is abandoned, not killed; capabilities
        that spawn processes enforce their own kill timeout.
        """
        outcome: dict[str, Any] = {}

        def _target():
            try:
                outcome["value"] = definition.capability(args)
            except BaseException as e:  # re-raised on the caller's thread
                outcome["error"] = e

        worker = threading.Thread(
            target=_target, name=f"tool-{definition.name}", daemon=True
        )
        worker.start()
        worker.join(timeout=self.tool_timeout)
        if worker.is_alive():
            raise TimeoutError(definition.name)
        if "error" in outcome:
            raise outcome["error"]
        return outcome.get("value", "")
