"""Exception hierarchy for composition failures."""

from typing import List, Optional, Sequence


class ComposerError(Exception):
    """Base exception for all composition errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.details = details or {}


class ToolchainUnavailable(ComposerError):
    """Exception raised when a required transcoding binary cannot be located."""

    def __init__(self, tool: str, message: Optional[str] = None):
        super().__init__(message or f"Required tool not available: {tool}")
        self.tool = tool


class SourceUnresolved(ComposerError):
    """Exception raised when no lookup strategy finds a layer's source file."""

    def __init__(
        self,
        label: str,
        attempted: Sequence[str],
        locations: Sequence[str],
        hint: str = "",
    ):
        self.label = label
        self.attempted: List[str] = list(attempted)
        self.locations: List[str] = list(locations)
        lines = [f"Source not found: {label}", "", "Tried:"]
        lines.extend(f"  - {strategy}" for strategy in self.attempted)
        if self.locations:
            lines.append("Searched:")
            lines.extend(f"  - {location}" for location in self.locations)
        if hint:
            lines.extend(["", hint])
        super().__init__("\n".join(lines))


class CorruptSource(ComposerError):
    """Exception raised when a source or cached intermediate fails to decode."""

    hint = "The damaged file was deleted. Retry the export to re-fetch it."

    def __init__(self, path: str, stderr: str = ""):
        super().__init__(f"Corrupt media file: {path}\n{self.hint}")
        self.path = path
        self.stderr = stderr


class ToolFailure(ComposerError):
    """Exception raised when an external tool exits with an error."""

    def __init__(self, command: Sequence[str], returncode: int, stderr: str = ""):
        name = command[0] if command else "tool"
        message = f"{name} failed with return code {returncode}"
        if stderr:
            message += f"\nSTDERR: {stderr.strip()[-2000:]}"
        super().__init__(message)
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr


class OperationTimeout(ComposerError):
    """Exception raised when an external invocation exceeds its time budget."""

    def __init__(self, command: Sequence[str], timeout: float):
        name = command[0] if command else "request"
        super().__init__(f"{name} timed out after {timeout:.0f}s")
        self.command = list(command)
        self.timeout = timeout


class CompositionCancelled(ComposerError):
    """Raised when the caller cancels a request. Not a user-facing failure."""

    def __init__(self, message: str = "Composition cancelled"):
        super().__init__(message)


class InvalidRequest(ComposerError):
    """Exception raised when a request is structurally unusable."""

    pass
