"""Errors raised while resolving and relaying a stream.

Anything raised before the downstream response starts is rendered as a JSON
error with ``status_code``. ``InternalRelayFailure`` is the only error raised
after headers were sent; it tears the connection down instead.
"""

from __future__ import annotations


class GatewayError(Exception):
    status_code = 500
    error = "Internal error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.error)
        self.message = message or self.error

    def to_dict(self) -> dict[str, str]:
        return {"error": self.error, "message": self.message}


class ItemNotFound(GatewayError):
    status_code = 404
    error = "Movie not found"


class QualityUnavailable(GatewayError):
    status_code = 404
    error = "Quality not available"


class Forbidden(GatewayError):
    status_code = 403
    error = "Not authorized to stream"


class UpstreamUnavailable(GatewayError):
    status_code = 500
    error = "Streaming failed"


class UpstreamTimeout(UpstreamUnavailable):
    error = "Upstream timed out"


class RangeNotSatisfiable(GatewayError):
    status_code = 416
    error = "Range not satisfiable"

    def __init__(self, total_size: int, message: str | None = None) -> None:
        super().__init__(message)
        self.total_size = total_size

    @property
    def content_range(self) -> str:
        return f"bytes */{self.total_size}"


class InternalRelayFailure(Exception):
    """Upstream failed after bytes were already sent downstream."""
