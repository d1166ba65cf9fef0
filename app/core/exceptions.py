"""Core custom exceptions for the application."""


class PipelineError(Exception):
    """Base exception for pipeline-related errors."""


class ConfigurationError(PipelineError):
    """Exception for configuration-related errors (e.g., unknown default model, missing templates)."""


class ValidationError(PipelineError):
    """The uploaded document or request was rejected before any stage ran."""


class ExtractionError(PipelineError):
    """The document could not be read."""


class UpstreamError(PipelineError):
    """A generation call failed: non-200 status, or the upstream was unreachable."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ParseError(PipelineError):
    """A single streamed line could not be parsed. Never leaves the relay."""


class TransportError(PipelineError):
    """Reading the streaming response body failed."""


class Cancelled(PipelineError):
    """The run or call was aborted through its cancellation token."""


class StageFailure(PipelineError):
    """A pipeline stage raised; carries the name of the failing stage."""

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"Stage '{stage}' failed: {message}")
        self.stage = stage
        self.reason = message
