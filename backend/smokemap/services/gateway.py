"""Upstream HTTP gateway with failure classification and token auth.

The gateway performs one upstream call per ``fetch`` and turns every
outcome into either a decoded JSON document or one of the errors in
``smokemap.core.errors``:

- no response at all (connect/read failure, timeout) -> TransportError
- an HTML, empty or otherwise non-JSON body -> ProtocolError
- a JSON ``error`` naming an invalid/missing/expired token -> AuthRequired
- any other JSON ``error`` -> UpstreamError with the provider's message

It never retries, with one exception: when a request that carried a token
is rejected with AuthRequired, the token is dropped, a fresh one is
exchanged and the request is sent once more. A second rejection surfaces as
UpstreamError.

Tokens live in an explicit TokenSession injected into the gateway, holding
the token and its expiry. Requests switch from GET to a form-encoded POST
when a token is attached or the encoded query grows past the configured
threshold.

Example:
    Fetch a feature service query:
        >>> async with gateway.open_gateway(settings) as gw:
        ...     doc = await gw.fetch(
        ...         settings.fire_incidents_url,
        ...         {"f": "json", "where": "1=1"},
        ...         authenticated=True,
        ...     )
"""

from __future__ import annotations

import contextlib
import dataclasses
import functools
import json
import logging
import time
import urllib.parse
from typing import TYPE_CHECKING, Any

import httpx

from smokemap.core import errors

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable, Mapping

    from smokemap.core import config

logger = logging.getLogger(__name__)

AUTH_ERROR_CODES = frozenset({498, 499})
AUTH_ERROR_MARKERS = ("invalid token", "token required", "token expired")
SNIPPET_LENGTH = 200


@dataclasses.dataclass
class TokenSession:
    """Credentials and the bearer token obtained with them.

    Attributes:
        username: Portal username; empty disables token auth.
        password: Portal password.
        portal_url: Portal base URL hosting ``/sharing/rest/generateToken``.
        expiration_minutes: Token lifetime requested from the portal.
        referer: Referer the token is bound to.
        token: Current token, if any.
        expires_at: POSIX time after which ``token`` must not be used.
    """

    username: str
    password: str
    portal_url: str
    expiration_minutes: int = 1440
    referer: str = "localhost"
    token: str | None = None
    expires_at: float = 0.0

    @property
    def has_credentials(self) -> bool:
        return bool(self.username and self.password)

    @property
    def token_url(self) -> str:
        return f"{self.portal_url.rstrip('/')}/sharing/rest/generateToken"

    def current_token(self, now: float) -> str | None:
        """Return the token while it is unexpired, else None."""
        if self.token and now < self.expires_at:
            return self.token
        return None

    def store(self, token: str, expires_at: float) -> None:
        self.token = token
        self.expires_at = expires_at

    def invalidate(self) -> None:
        self.token = None
        self.expires_at = 0.0


def _is_auth_error(code: object, message: str) -> bool:
    lowered = message.lower()
    return code in AUTH_ERROR_CODES or any(
        marker in lowered for marker in AUTH_ERROR_MARKERS
    )


def parse_document(response: httpx.Response) -> dict[str, Any]:
    """Decode and classify an upstream response body.

    Args:
        response: Received HTTP response.

    Returns:
        The decoded JSON object.

    Raises:
        ProtocolError: If the body is empty, HTML, or not a JSON object.
        AuthRequired: If the document reports a token problem.
        UpstreamError: If the document reports any other error, or the
            status code signals failure.
    """
    text = response.text.strip()
    if not text:
        raise errors.ProtocolError(
            f"Empty response from upstream (HTTP {response.status_code})"
        )
    if text.startswith("<"):
        raise errors.ProtocolError(
            "Upstream returned HTML instead of JSON: " + text[:SNIPPET_LENGTH]
        )

    try:
        document = json.loads(text)
    except ValueError as exc:
        raise errors.ProtocolError(
            f"Invalid JSON from upstream: {exc}. " + text[:SNIPPET_LENGTH]
        ) from exc
    if not isinstance(document, dict):
        raise errors.ProtocolError("Upstream JSON is not an object")

    error = document.get("error")
    if error:
        if isinstance(error, dict):
            code = error.get("code")
            message = str(error.get("message") or "Unknown upstream error")
            details = error.get("details")
            if details:
                message = f"{message} ({'; '.join(map(str, details))})"
        else:
            code = None
            message = str(document.get("reason") or error)
        if _is_auth_error(code, message):
            raise errors.AuthRequired(
                f"Authentication required: {message}",
                code=code if isinstance(code, int) else None,
            )
        raise errors.UpstreamError(
            message,
            code=code if isinstance(code, int) else None,
        )

    if response.is_error:
        raise errors.UpstreamError(
            f"HTTP {response.status_code} from upstream",
            code=response.status_code,
        )
    return document


class Gateway:
    """Performs classified upstream calls over a shared httpx client."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        session: TokenSession | None = None,
        post_threshold: int = 2000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the gateway.

        Args:
            client: Client carrying timeout and User-Agent defaults.
            session: Token session for authenticated calls.
            post_threshold: Encoded query length that triggers POST.
            clock: Source of the current POSIX time.
        """
        self.client = client
        self.session = session
        self.post_threshold = post_threshold
        self._clock = clock

    @property
    def authenticated(self) -> bool:
        """Whether an unexpired token is currently held."""
        return bool(
            self.session and self.session.current_token(self._clock())
        )

    async def _send(
        self,
        url: str,
        params: Mapping[str, Any],
    ) -> httpx.Response:
        encoded = urllib.parse.urlencode(params)
        use_post = "token" in params or len(encoded) > self.post_threshold
        try:
            if use_post:
                return await self.client.post(url, data=dict(params))
            return await self.client.get(url, params=dict(params))
        except httpx.HTTPError as exc:
            raise errors.TransportError(
                f"Request to {url} failed: {exc!r}"
            ) from exc

    async def fetch(
        self,
        url: str,
        params: Mapping[str, Any],
        *,
        authenticated: bool = False,
    ) -> dict[str, Any]:
        """Fetch and decode one upstream document.

        Args:
            url: Endpoint URL.
            params: Query or form parameters.
            authenticated: Attach a session token when credentials exist.

        Returns:
            Decoded JSON document.

        Raises:
            TransportError, ProtocolError, AuthRequired, UpstreamError.
        """
        token = await self.ensure_token() if authenticated else None
        request_params = dict(params)
        if token:
            request_params["token"] = token

        response = await self._send(url, request_params)
        try:
            return parse_document(response)
        except errors.AuthRequired:
            if not token or self.session is None:
                raise
            logger.info("Token rejected by %s, re-authenticating once", url)
            self.session.invalidate()

        return await self._retry_with_new_token(url, request_params)

    async def _retry_with_new_token(
        self,
        url: str,
        request_params: dict[str, Any],
    ) -> dict[str, Any]:
        token = await self.ensure_token()
        if not token:
            raise errors.UpstreamError(
                "Authentication failed: could not obtain a new token"
            )
        request_params["token"] = token
        response = await self._send(url, request_params)
        try:
            return parse_document(response)
        except errors.AuthRequired as exc:
            raise errors.UpstreamError(str(exc), code=exc.code) from exc

    async def ensure_token(self) -> str | None:
        """Return a valid token, exchanging credentials when needed.

        A failed exchange is logged and yields None so the request can
        still be attempted anonymously.
        """
        session = self.session
        if session is None or not session.has_credentials:
            return None

        now = self._clock()
        token = session.current_token(now)
        if token:
            return token

        form = {
            "username": session.username,
            "password": session.password,
            "referer": session.referer,
            "f": "json",
            "expiration": str(session.expiration_minutes),
        }
        try:
            response = await self.client.post(session.token_url, data=form)
            document = parse_document(response)
        except httpx.HTTPError as exc:
            logger.warning("Token request failed: %r", exc)
            return None
        except errors.SmokeMapError as exc:
            logger.warning("Token request rejected: %s", exc)
            return None

        token = document.get("token")
        if not token:
            logger.warning("Token response did not include a token")
            return None

        expires_ms = document.get("expires")
        if isinstance(expires_ms, (int, float)) and expires_ms > 0:
            expires_at = expires_ms / 1000
        else:
            expires_at = now + session.expiration_minutes * 60
        session.store(str(token), expires_at)
        logger.info("Obtained portal token valid until %s", expires_at)
        return session.token


@functools.lru_cache
def _token_session(
    portal_url: str,
    username: str,
    password: str,
    expiration_minutes: int,
    referer: str,
) -> TokenSession:
    return TokenSession(
        username=username,
        password=password,
        portal_url=portal_url,
        expiration_minutes=expiration_minutes,
        referer=referer,
    )


def get_token_session(settings: config.Settings) -> TokenSession:
    """Return the process-wide token session for the configured account.

    Sessions are cached per account and token options, so changed
    credentials get a fresh session.
    """
    return _token_session(
        settings.arcgis_portal,
        settings.arcgis_username,
        settings.arcgis_password.get_secret_value(),
        settings.token_expiration_minutes,
        settings.token_referer,
    )


def build_client(
    settings: config.Settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Create the async client used for upstream calls."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(settings.upstream_timeout_seconds),
        headers={"User-Agent": settings.user_agent},
        follow_redirects=True,
        transport=transport,
    )


@contextlib.asynccontextmanager
async def open_gateway(
    settings: config.Settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> AsyncIterator[Gateway]:
    """Yield a gateway whose client is closed on exit."""
    async with build_client(settings, transport) as client:
        yield Gateway(
            client,
            session=get_token_session(settings),
            post_threshold=settings.post_threshold_chars,
        )
