"""
Exception hierarchy for the upload optimizer.

Errors fall into a few families that are handled at different layers:

- ConfigurationError: raised while loading settings or the task list; fatal at startup
- TaskAttemptError: one task attempt failed; recovered by falling back to the next task
- PipelineError: every matching task failed (or none matched); blocks the upload
- JobNotFoundError / JobRetiredError: continuation protocol lookups that cannot be served
- UpstreamError / AssetUploadError: the upstream server could not be reached or refused a file
"""

from __future__ import annotations

from typing import Sequence


class UploadOptimizerError(Exception):
    """Base class for all errors raised by this package."""


class ConfigurationError(UploadOptimizerError):
    """Invalid settings or task configuration."""


class TaskAttemptError(UploadOptimizerError):
    """A single task attempt failed."""

    def __init__(self, task_name: str, message: str) -> None:
        super().__init__(f"task {task_name} failed: {message}")
        self.task_name = task_name


class PipelineError(UploadOptimizerError):
    """
    The pipeline could not produce a file.

    Attributes:
        errors: Every attempt error collected while walking the fallback chain
    """

    def __init__(self, message: str, errors: Sequence[Exception] = ()) -> None:
        super().__init__(message)
        self.errors = list(errors)

    @classmethod
    def from_attempts(cls, errors: Sequence[Exception]) -> "PipelineError":
        if len(errors) == 1:
            return cls(str(errors[0]), errors)
        listing = "\n".join(f"- {error}" for error in errors)
        return cls(f"{len(errors)} tasks failed:\n{listing}", errors)


class NoMatchingTaskError(PipelineError):
    """No configured task handles the file extension."""


class InvalidUploadError(PipelineError):
    """The uploaded file cannot be processed safely (e.g. bad extension)."""


class JobNotFoundError(UploadOptimizerError):
    """The job id is unknown or already retired."""


class JobRetiredError(UploadOptimizerError):
    """The job was retired while a consumer was waiting for its result."""


class UpstreamError(UploadOptimizerError):
    """The upstream server could not be reached."""


class AssetUploadError(UploadOptimizerError):
    """The asset upload API rejected a file or could not be reached."""
