"""Transport client: send a conversation to a chat-completion API via LiteLLM.

The orchestration loop only depends on the fragment contract defined here
(TextDelta / ToolCallDelta / TurnComplete for streams, Response otherwise);
the wire protocol is LiteLLM's concern.
"""

import json
import logging
import os
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Iterator, Union

from .conversation import ToolCall
from .errors import ConfigError, ProtocolDecodeError, TransportError

logger = logging.getLogger(__name__)

DEFAULT_TEMPERATURE = 0.7
DEFAULT_REQUEST_TIMEOUT = 120  # seconds


@dataclass(frozen=True)
class Provider:
    name: str
    litellm_prefix: str
    env_vars: tuple[str, ...]
    base_url: str
    default_model: str


PROVIDERS: dict[str, Provider] = {
    "deepseek": Provider(
        "deepseek", "deepseek", ("DEEPSEEK_API_KEY",), "https://api.deepseek.com", "deepseek-chat"
    ),
    "openai": Provider(
        "openai", "openai", ("OPENAI_API_KEY",), "https://api.openai.com", "gpt-4o-mini"
    ),
    "grok": Provider(
        "grok", "xai", ("XAI_API_KEY", "GROK_API_KEY"), "https://api.x.ai/v1", "grok-code-fast-1"
    ),
    "groq": Provider(
        "groq", "groq", ("GROQ_API_KEY",), "https://api.groq.com/openai", "llama3-70b-8192"
    ),
}


# -- Fragments ---------------------------------------------------------------


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolCallDelta:
    index: int
    id: str | None = None
    name: str | None = None
    arguments_delta: str = ""


@dataclass(frozen=True)
class TurnComplete:
    finish_reason: str | None = None


Fragment = Union[TextDelta, ToolCallDelta, TurnComplete]


@dataclass(frozen=True)
class Response:
    """A complete, non-streamed model turn."""

    content: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    finish_reason: str | None = None


@dataclass(frozen=True)
class Request:
    """Outbound request: conversation snapshot plus tool schemas."""

    messages: list[dict]
    tools: list[dict] = field(default_factory=list)

    def to_json(self) -> str:
        """Canonical serialization; identical conversations give identical bytes."""
        return json.dumps(
            {"messages": self.messages, "tools": self.tools},
            sort_keys=True,
            ensure_ascii=False,
        )


# -- Client ------------------------------------------------------------------


def resolve_api_key(provider: str, api_key: str | None = None, config: dict | None = None) -> str | None:
    """CLI value > provider env vars > config file."""
    if api_key:
        return api_key
    info = PROVIDERS[provider]
    for var in info.env_vars:
        value = os.environ.get(var)
        if value:
            return value
    config = config or {}
    config_keys = {
        "deepseek": ("api_key",),
        "openai": ("openai_api_key",),
        "grok": ("xai_api_key", "grok_api_key"),
        "groq": ("groq_api_key",),
    }[provider]
    for key in config_keys:
        if config.get(key):
            return config[key]
    return None


def _summarize(exc: Exception) -> str:
    first = str(exc).strip().split("\n", 1)[0]
    return f"{type(exc).__name__}: {first}" if first else type(exc).__name__


def _close_quietly(stream) -> None:
    close = getattr(stream, "close", None)
    if close is None:
        return
    try:
        close()
    except Exception:
        logger.debug("closing completion stream failed", exc_info=True)


class Transport:
    """Chat-completion client bound to one provider and model.

    Configuration is fixed at construction; use ``with_model`` to get a
    client for a different model.
    """

    def __init__(
        self,
        provider: str = "deepseek",
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        temperature: float | None = DEFAULT_TEMPERATURE,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ):
        if provider not in PROVIDERS:
            raise ConfigError(f"unknown provider {provider!r}")
        self.provider = provider
        self.model = model or PROVIDERS[provider].default_model
        self.api_key = api_key
        self.base_url = base_url
        self.temperature = temperature
        self.timeout = timeout

    @property
    def model_string(self) -> str:
        prefix = PROVIDERS[self.provider].litellm_prefix
        if self.model.startswith(prefix + "/"):
            return self.model
        return f"{prefix}/{self.model}"

    def with_model(self, model: str) -> "Transport":
        clone = Transport.__new__(Transport)
        clone.__dict__.update(self.__dict__)
        clone.model = model
        return clone

    def completion_kwargs(self, request: Request, stream: bool) -> dict:
        kwargs = dict(
            model=self.model_string,
            messages=request.messages,
            stream=stream,
            timeout=self.timeout,
        )
        if request.tools:
            kwargs["tools"] = request.tools
            kwargs["tool_choice"] = "auto"
        if self.temperature is not None:
            kwargs["temperature"] = self.temperature
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.base_url:
            kwargs["api_base"] = self.base_url
        return kwargs

    def send(self, request: Request, stream: bool = True) -> Union[Response, Iterator[Fragment]]:
        """Send one round. Raises TransportError before any fragment is produced
        if the request itself fails; errors during a stream surface while
        iterating."""
        import litellm

        litellm.suppress_debug_info = True
        kwargs = self.completion_kwargs(request, stream)
        logger.debug("calling %s (stream=%s, %d messages)", kwargs["model"], stream, len(request.messages))

        try:
            response = litellm.completion(**kwargs)
        except Exception as e:
            raise TransportError(f"LLM call failed: {_summarize(e)}") from e

        if stream:
            return self._fragments(response)
        return self._to_response(response)

    @staticmethod
    def _to_response(response) -> Response:
        try:
            choice = response.choices[0]
            msg = choice.message
        except (AttributeError, IndexError, TypeError) as e:
            raise ProtocolDecodeError(f"malformed completion response: {_summarize(e)}") from e
        calls = []
        for tc in getattr(msg, "tool_calls", None) or ():
            fn = tc.function
            calls.append(ToolCall(id=tc.id or "", name=fn.name or "", arguments=fn.arguments or ""))
        return Response(
            content=getattr(msg, "content", None) or "",
            tool_calls=tuple(calls),
            finish_reason=getattr(choice, "finish_reason", None),
        )

    @staticmethod
    def _fragments(chunks) -> Iterator[Fragment]:
        finish_reason = None
        iterator = iter(chunks)
        try:
            while True:
                try:
                    chunk = next(iterator)
                except StopIteration:
                    break
                except Exception as e:
                    raise TransportError(f"stream interrupted: {_summarize(e)}") from e

                try:
                    choices = chunk.choices
                except AttributeError as e:
                    raise ProtocolDecodeError(f"malformed stream chunk: {_summarize(e)}") from e
                if not choices:
                    continue
                choice = choices[0]
                delta = getattr(choice, "delta", None)
                if delta is not None:
                    text = getattr(delta, "content", None)
                    if text:
                        yield TextDelta(text)
                    for tc in getattr(delta, "tool_calls", None) or ():
                        index = getattr(tc, "index", None)
                        if index is None:
                            raise ProtocolDecodeError("tool call delta without index")
                        fn = getattr(tc, "function", None)
                        yield ToolCallDelta(
                            index=index,
                            id=getattr(tc, "id", None),
                            name=getattr(fn, "name", None) if fn else None,
                            arguments_delta=(getattr(fn, "arguments", None) or "") if fn else "",
                        )
                if getattr(choice, "finish_reason", None):
                    finish_reason = choice.finish_reason
            yield TurnComplete(finish_reason)
        finally:
            # Release the HTTP stream even when the consumer stops early.
            _close_quietly(chunks)

    # -- model listing --

    def models_url(self) -> str:
        base = (self.base_url or PROVIDERS[self.provider].base_url).rstrip("/")
        if base.endswith("/v1"):
            return f"{base}/models"
        return f"{base}/v1/models"

    def list_models(self) -> list[str]:
        """Query the provider's OpenAI-compatible ``/models`` endpoint."""
        url = self.models_url()
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            req = urllib.request.Request(url, headers=headers)
            with urllib.request.urlopen(req, timeout=10) as resp:
                data = json.loads(resp.read().decode())
        except urllib.error.URLError as e:
            raise TransportError(f"could not list models at {url}: {e}") from e
        except json.JSONDecodeError as e:
            raise ProtocolDecodeError(f"invalid JSON from {url}: {e}") from e

        if not isinstance(data, dict):
            raise ProtocolDecodeError(f"unexpected payload from {url}")
        entries = data.get("data") or data.get("models") or []
        return sorted(e["id"] for e in entries if isinstance(e, dict) and e.get("id"))

