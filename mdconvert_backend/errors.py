from __future__ import annotations

from typing import Optional


class ConversionError(RuntimeError):
    """Base error for a failed conversion; carries the API error code and HTTP status."""

    code = "GENERATION_FAILED"
    status_code = 500
    default_message = "Document generation failed. Please try again."

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class InvalidContentError(ConversionError):
    code = "INVALID_CONTENT"
    status_code = 400
    default_message = "Please provide valid markdown content."


class ContentTooLargeError(ConversionError):
    code = "CONTENT_TOO_LARGE"
    status_code = 413
    default_message = "Content exceeds the maximum allowed size."


class GenerationTimeoutError(ConversionError):
    code = "GENERATION_TIMEOUT"
    status_code = 504
    default_message = "Document generation timed out. Please try again with a smaller document."


class RenderTimeoutError(GenerationTimeoutError):
    """A render sandbox stage (launch, load, render) ran past its budget."""

    def __init__(self, stage: str, timeout: float) -> None:
        super().__init__(f"PDF {stage} timed out after {timeout:g}s")
        self.stage = stage
        self.timeout = timeout


class GenerationFailedError(ConversionError):
    pass
