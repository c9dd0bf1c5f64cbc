"""Exception taxonomy shared by the gateway, cache, and routers.

Upstream failures are split by where they happened so callers can pick a
policy per kind: the progressive loader retries transport, protocol and
upstream errors, the gateway re-authenticates once on ``AuthRequired``,
and cache or geometry problems are logged and never reach the client.

Example:
    Map an upstream failure onto an HTTP response:
        >>> from smokemap.core import errors
        >>> try:
        ...     raise errors.UpstreamError("Service unavailable", code=503)
        ... except errors.SmokeMapError as exc:
        ...     status = errors.http_status_for(exc)
        >>> status
        502
"""

from __future__ import annotations


class SmokeMapError(RuntimeError):
    """Base class for every error raised by the smokemap core."""


class RequestValidationError(SmokeMapError):
    """Raised when client supplied parameters cannot be used."""


class TransportError(SmokeMapError):
    """No response reached us (DNS, connect, read timeout, reset)."""


class ProtocolError(SmokeMapError):
    """A response arrived but its body was not the expected JSON document."""


class UpstreamError(SmokeMapError):
    """The provider answered with an explicit error document.

    Attributes:
        code: Provider error code when one was reported.
    """

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


class AuthRequired(UpstreamError):
    """The provider rejected the request for a missing or invalid token."""


class GeometryError(SmokeMapError):
    """A single feature geometry could not be converted."""


class CacheError(SmokeMapError):
    """A cache entry could not be read from or written to storage."""


def http_status_for(exc: SmokeMapError) -> int:
    """Return the HTTP status code a router should answer with.

    Args:
        exc: Error raised while serving a request.

    Returns:
        400 for bad client input, 401 when upstream auth is needed,
        504 when the upstream was unreachable, 502 otherwise.
    """
    if isinstance(exc, RequestValidationError):
        return 400
    if isinstance(exc, AuthRequired):
        return 401
    if isinstance(exc, TransportError):
        return 504
    return 502
