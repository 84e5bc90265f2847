"""Exception types shared across deepseek-cli."""


class DeepseekCliError(Exception):
    """Base class for reportable runtime failures."""


class ConfigError(DeepseekCliError):
    """Raised for invalid configuration (bad TOML, missing API key, etc.)."""


class TransportError(DeepseekCliError):
    """Network or protocol failure talking to the chat-completion API.

    Fails the current round only. The conversation is left unmodified so
    the same round can be re-issued.
    """


class ProtocolDecodeError(TransportError):
    """A streamed fragment could not be decoded."""


class StoreError(DeepseekCliError):
    """Raised when the session database cannot be read or written."""


class OrphanToolResultError(DeepseekCliError):
    """A tool message references a tool call id that was never emitted."""


# -- Tool errors -------------------------------------------------------------
#
# Apart from DuplicateNameError (raised at registration time), these never
# escape ToolRegistry.invoke(): they are rendered into the tool message so
# the model can read them and react.


class ToolError(DeepseekCliError):
    """Base class for tool registration and invocation failures."""


class DuplicateNameError(ToolError):
    pass


class UnknownToolError(ToolError):
    pass


class InvalidArgumentsError(ToolError):
    pass


class ToolInvocationError(ToolError):
    """Raised by a capability to report a failure with a clean message."""
