"""Exceptions raised by the call flow components.

Every failure is scoped to the current completion round or the current event;
none of these should end the call session.
"""


class CallflowError(Exception):
    """Base class for call flow errors."""


class CompletionError(CallflowError):
    """The LLM stream failed before the round could finish."""


class ToolError(CallflowError):
    """Base class for tool discovery, validation and invocation failures."""


class ToolRegistryError(ToolError):
    """A catalog entry has no registered handler (raised at startup)."""


class UnknownToolError(ToolError):
    """The model asked for a tool that is not in the registry."""

    def __init__(self, name: str):
        super().__init__(f"Unknown tool requested: {name!r}")
        self.name = name


class ToolArgumentsError(ToolError):
    """Tool arguments could not be parsed or failed schema validation."""

    def __init__(self, message: str, raw_arguments: str = ""):
        super().__init__(message)
        self.raw_arguments = raw_arguments
