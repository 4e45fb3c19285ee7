"""Exception types shared across the patent-watch services."""

from typing import Optional


class PatentWatchError(Exception):
    """Base class for all patent-watch errors."""


class ConfigurationError(PatentWatchError):
    """A required setting or secret is missing."""


class AuthenticationError(PatentWatchError):
    """The caller could not be identified."""


class UpstreamServiceError(PatentWatchError):
    """A third-party service answered with a failure."""

    def __init__(self, service: str, message: str, status: Optional[int] = None, body: Optional[str] = None):
        self.service = service
        self.status = status
        self.body = body
        detail = f"{service} error"
        if status is not None:
            detail += f" {status}"
        detail += f": {message}"
        super().__init__(detail)


class ExtractionError(UpstreamServiceError):
    """The OCR job failed or could not be started."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__("textract", message, status=status)


class ExtractionTimeoutError(ExtractionError):
    """The OCR job did not finish within the polling budget."""


class LLMError(UpstreamServiceError):
    """The chat completion API returned a non-retryable error."""

    def __init__(self, message: str, status: Optional[int] = None, body: Optional[str] = None):
        super().__init__("anthropic", message, status=status, body=body)


class RateLimitExceededError(LLMError):
    """Rate limiting persisted past the retry budget."""


class JSONExtractionError(PatentWatchError):
    """No parseable JSON object could be found in model output."""

    def __init__(self, message: str, raw_text: str = ""):
        self.raw_text = raw_text
        super().__init__(message)
