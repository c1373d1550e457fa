from typing import Optional

GENERIC_UPSTREAM_MESSAGE = "Sorry, something went wrong while generating a response. Please try again."


class QueryAgentError(Exception):
    """Base error. `message` is always safe to show to an end user."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class RequestValidationError(QueryAgentError):
    status_code = 400
    code = "INVALID_REQUEST"


class AuthError(QueryAgentError):
    status_code = 401
    code = "UNAUTHORIZED"

    def __init__(self, message: str, status_code: int = 401, code: Optional[str] = None):
        super().__init__(message, code)
        self.status_code = status_code


class UsageLimitExceeded(QueryAgentError):
    status_code = 429
    code = "USAGE_LIMIT_EXCEEDED"


class QueryExecutionError(QueryAgentError):
    """Raised by the executor. Codes: TIMEOUT, QUERY_FAILED, ABORTED."""

    code = "QUERY_FAILED"


class UpstreamError(QueryAgentError):
    """Model provider failure."""

    status_code = 502
    code = "UPSTREAM_ERROR"

    def __init__(self, message: str, status: Optional[int] = None, retryable: bool = False):
        super().__init__(message)
        self.status = status
        self.retryable = retryable


class AbortError(QueryAgentError):
    code = "ABORTED"

    def __init__(self, reason: str = "aborted"):
        super().__init__("The operation was cancelled")
        self.reason = reason
