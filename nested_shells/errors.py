from typing import Optional


class NestedShellsError(Exception):
    """Base class for wrapper errors."""


class ConfigurationError(NestedShellsError):
    """Invalid isolation/option input. Always raised before anything is spawned."""


class ToolUnavailableError(NestedShellsError):
    """A backend binary is not installed."""

    def __init__(self, tool: str, hint: Optional[str] = None):
        self.tool = tool
        self.hint = hint
        message = f"{tool} is not installed"
        if hint:
            message = f"{message}. {hint}"
        super().__init__(message)


class TrackingError(NestedShellsError):
    """The execution store could not be locked or written. Never fatal."""


class JanitorError(NestedShellsError):
    """A backing resource could not be torn down. Never changes the exit code."""

    def __init__(self, resource: str, detail: str):
        self.resource = resource
        self.detail = detail
        super().__init__(f"Could not clean up {resource}: {detail}")


class LaunchError(NestedShellsError):
    """A resource needed before the command can start could not be created."""
