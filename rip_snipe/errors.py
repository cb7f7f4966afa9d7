"""
errors.py - Everything that can go wrong between the prompt and the disk.

Hierarchy:

    SnipeError
      ValidationError            bad options, surfaced before any query (exit 2)
      PatternError               engine rejected the pattern (exit 2)
      ReplacementError           bad capture reference in a replacement (exit 2)
      ConfirmationRequiredError  apply() called without a yes (exit 2)
      WorkflowStateError         replacement step out of order (exit 2)
      NoMatchError               nothing to do, not fatal (exit 1)
      PathNotFoundError          a root path is missing (exit 3)
      SnipeIOError               per-file read/write/backup failure (exit 3)
      EngineError                rg died for a reason we can't explain (exit 3)

None of these are retried. Pattern and engine errors are almost always a
pattern or environment problem, not a transient one.
"""

from __future__ import annotations

from pathlib import Path


class SnipeError(Exception):
    """Base for every rip_snipe error. Carries the exit code the CLI uses."""

    exit_code = 3

    def __init__(self, message: str, original_error: Exception | None = None):
        super().__init__(message)
        self.message = message
        self.original_error = original_error


class ValidationError(SnipeError):
    """Raw options could not be turned into a SearchSpec."""

    exit_code = 2

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class PatternError(SnipeError):
    """The search engine reported a malformed pattern."""

    exit_code = 2


class ReplacementError(SnipeError):
    """Replacement text references a capture group the pattern doesn't have."""

    exit_code = 2

    def __init__(self, group: int | str, message: str | None = None):
        super().__init__(message or f"Replacement references unknown group ${group}")
        self.group = group


class ConfirmationRequiredError(SnipeError):
    """apply() refuses to touch files without an explicit confirmation."""

    exit_code = 2


class WorkflowStateError(SnipeError):
    """A replacement workflow step was called from the wrong state."""

    exit_code = 2


class NoMatchError(SnipeError):
    """Pattern not found anywhere in scope. An empty result, not a crash."""

    exit_code = 1


class PathNotFoundError(SnipeError):
    """A search root does not exist."""

    exit_code = 3

    def __init__(self, path: Path | str):
        super().__init__(f"Path does not exist: {path}")
        self.path = Path(path)


class SnipeIOError(SnipeError):
    """Per-file I/O failure. Collected in ApplyResult.failed during batch runs."""

    exit_code = 3

    def __init__(self, path: Path | str, cause: str | Exception):
        message = f"{path}: {cause}"
        super().__init__(message, cause if isinstance(cause, Exception) else None)
        self.path = Path(path)
        self.cause = cause


class EngineError(SnipeError):
    """The external engine failed unexpectedly. Message holds its diagnostic."""

    exit_code = 3
