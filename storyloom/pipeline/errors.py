from __future__ import annotations


class PipelineError(Exception):
    """Fatal failure that stops a turn."""

    phase: str = "pipeline"

    def __init__(self, message: str, *, phase: str | None = None):
        super().__init__(message)
        if phase is not None:
            self.phase = phase


class NarrativeError(PipelineError):
    phase = "narrative"


class PersistenceError(PipelineError):
    phase = "post_generation"


class PipelineAborted(Exception):
    """Raised when the turn's abort signal fires during a unit of work."""

    def __init__(self, reason: str | None = None):
        super().__init__(reason or "aborted")
        self.reason = reason
