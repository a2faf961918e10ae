"""Error taxonomy for the pipeline controller."""

from __future__ import annotations

from typing import Optional

from ci_release.schemas import ConfigError


class PipelineError(RuntimeError):
    """Raised when a pipeline execution fails validation or runtime checks."""


class ProvisionError(PipelineError):
    """An auxiliary service could not be started or never became ready."""

    def __init__(self, service: str, kind: str, message: str) -> None:
        super().__init__(message)
        self.service = service
        self.kind = kind


class StageError(PipelineError):
    def __init__(self, stage: str, exit_code: int, message: Optional[str] = None) -> None:
        super().__init__(message or f"Stage '{stage}' exited with status {exit_code}.")
        self.stage = stage
        self.exit_code = exit_code


class PublishError(PipelineError):
    """Publishing failed: ``kind`` is one of no_match, duplicate, secret, provider or upload."""

    def __init__(self, kind: str, message: str) -> None:
        super().__init__(message)
        self.kind = kind


class NotifyError(PipelineError):
    """A notification could not be delivered. Never fatal to the run."""


__all__ = [
    "ConfigError",
    "NotifyError",
    "PipelineError",
    "ProvisionError",
    "PublishError",
    "StageError",
]
