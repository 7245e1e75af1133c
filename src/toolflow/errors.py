# errors.py
# Exception hierarchy for the toolflow engine.
#
# Only InvocationError is ever converted into an Issue (by the executor).
# Everything else is a programming or configuration defect and propagates.


class ToolFlowError(Exception):
    """Base class for all toolflow errors."""


class ConfigurationError(ToolFlowError):
    """A step or flow definition is invalid. Raised at construction time."""


class DecodeError(ToolFlowError):
    """Raw output could not be turned into the registered typed output. Always fatal."""

    def __init__(self, tool_name: str, message: str) -> None:
        self.tool_name = tool_name
        super().__init__(f"Cannot decode output of '{tool_name}': {message}")


class UnregisteredToolError(DecodeError):
    """No decoder is registered for the tool."""

    def __init__(self, tool_name: str) -> None:
        super().__init__(tool_name, "no output type is registered for this tool")


class OutputTypeError(ToolFlowError, TypeError):
    """A checked downcast of a stored output did not match its concrete type."""


class InputBuildError(ToolFlowError):
    """A step's input builder or input sanitizer raised."""

    def __init__(self, tool_name: str, message: str) -> None:
        self.tool_name = tool_name
        super().__init__(f"Failed to build input for step '{tool_name}': {message}")


class InvocationError(ToolFlowError):
    """The generation collaborator failed. Retryable."""

    def __init__(self, tool_name: str, message: str) -> None:
        self.tool_name = tool_name
        super().__init__(f"Invocation of '{tool_name}' failed: {message}")
