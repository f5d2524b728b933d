from typing import Optional


class ProxyError(Exception):
    """Base class for all errors raised by the proxy core."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ConfigurationError(ProxyError):
    """Raised when the mapping table or another setting is malformed."""


class RouteNotMapped(ProxyError):
    """Raised when no mapping (not even the default one) matches a path."""

    def __init__(self, path: str):
        super().__init__(f"No upstream mapping for path: {path}")
        self.path = path


class UpstreamError(ProxyError):
    """An upstream call that could not produce an acceptable response."""

    # Status returned to the client when this error is surfaced.
    response_status = 502

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class UpstreamTimeout(UpstreamError):
    response_status = 504


class UpstreamConnectionError(UpstreamError):
    response_status = 502


class UpstreamBadStatus(UpstreamError):
    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message, status)
        # 5xx are mirrored, client errors from the upstream become a bad gateway
        if status is not None and 500 <= status <= 599:
            self.response_status = status
        else:
            self.response_status = 502


class RedirectLoopDetected(UpstreamError):
    response_status = 508

    def __init__(self, message: str = "Upstream reported a redirect loop"):
        super().__init__(message, status=508)


class BodyDecodeError(UpstreamError):
    response_status = 502


class RewriteFailure(ProxyError):
    """Parsing or serialization failed while rewriting a response body."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause
