"""Tests for the upstream gateway.

Upstream services are faked with ``httpx.MockTransport`` so every failure
class (transport, protocol, auth, provider error) and the token exchange
can be exercised without network access.
"""

from __future__ import annotations

import json
import urllib.parse
from collections.abc import Callable

import httpx
import pytest

from smokemap.core import config, errors
from smokemap.services import gateway

QUERY_URL = "https://example.test/FeatureServer/0/query"
PORTAL = "https://portal.test"
TOKEN_URL = f"{PORTAL}/sharing/rest/generateToken"

Handler = Callable[[httpx.Request], httpx.Response]


def _gateway(
    handler: Handler,
    *,
    session: gateway.TokenSession | None = None,
    post_threshold: int = 2000,
) -> gateway.Gateway:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return gateway.Gateway(
        client,
        session=session,
        post_threshold=post_threshold,
        clock=lambda: 1000.0,
    )


def _session() -> gateway.TokenSession:
    return gateway.TokenSession(
        username="viewer",
        password="secret",
        portal_url=PORTAL,
    )


def _form(request: httpx.Request) -> dict[str, str]:
    parsed = urllib.parse.parse_qs(request.content.decode())
    return {key: values[0] for key, values in parsed.items()}


@pytest.mark.asyncio
async def test_fetch_anonymous_get() -> None:
    """Test that a short anonymous query is sent as GET."""
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"features": []})

    gw = _gateway(handler)
    document = await gw.fetch(QUERY_URL, {"f": "json", "where": "1=1"})

    assert document == {"features": []}
    assert seen[0].method == "GET"
    assert seen[0].url.params["where"] == "1=1"


@pytest.mark.asyncio
async def test_long_query_switches_to_post() -> None:
    """Test that queries past the threshold are sent as form POST."""
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={})

    gw = _gateway(handler, post_threshold=50)
    await gw.fetch(QUERY_URL, {"where": "x" * 100})

    assert seen[0].method == "POST"
    assert _form(seen[0])["where"] == "x" * 100


@pytest.mark.parametrize(
    ("body", "message"),
    [
        ("<html><body>Bad gateway</body></html>", "HTML"),
        ("", "Empty"),
        ("{not json", "Invalid JSON"),
        ("[1, 2]", "not an object"),
    ],
)
@pytest.mark.asyncio
async def test_protocol_errors(body: str, message: str) -> None:
    """Test that non-JSON bodies raise ProtocolError."""
    gw = _gateway(lambda request: httpx.Response(200, text=body))
    with pytest.raises(errors.ProtocolError, match=message):
        await gw.fetch(QUERY_URL, {})


@pytest.mark.asyncio
async def test_provider_error_raises_upstream_error() -> None:
    """Test that a provider error document surfaces its message and code."""
    body = {
        "error": {
            "code": 400,
            "message": "Unable to complete operation.",
            "details": ["Invalid query"],
        }
    }
    gw = _gateway(lambda request: httpx.Response(200, json=body))
    with pytest.raises(errors.UpstreamError) as exc_info:
        await gw.fetch(QUERY_URL, {})

    assert type(exc_info.value) is errors.UpstreamError
    assert exc_info.value.code == 400
    assert "Unable to complete operation." in str(exc_info.value)
    assert "Invalid query" in str(exc_info.value)


@pytest.mark.asyncio
async def test_reason_style_error() -> None:
    """Test that ``error``/``reason`` documents use the reason."""
    body = {"error": True, "reason": "Latitude must be in range"}
    gw = _gateway(lambda request: httpx.Response(400, json=body))
    with pytest.raises(errors.UpstreamError, match="Latitude must be in range"):
        await gw.fetch(QUERY_URL, {})


@pytest.mark.asyncio
async def test_http_error_status_without_error_body() -> None:
    """Test that a failing status with a plain JSON body is an upstream error."""
    gw = _gateway(lambda request: httpx.Response(503, json={}))
    with pytest.raises(errors.UpstreamError) as exc_info:
        await gw.fetch(QUERY_URL, {})
    assert exc_info.value.code == 503


@pytest.mark.asyncio
async def test_transport_error() -> None:
    """Test that connection failures raise TransportError."""

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    gw = _gateway(handler)
    with pytest.raises(errors.TransportError):
        await gw.fetch(QUERY_URL, {})


@pytest.mark.asyncio
async def test_auth_error_without_token_raises_auth_required() -> None:
    """Test that a token error on an anonymous call is AuthRequired."""
    body = {"error": {"code": 499, "message": "Token Required"}}
    gw = _gateway(lambda request: httpx.Response(200, json=body))
    with pytest.raises(errors.AuthRequired):
        await gw.fetch(QUERY_URL, {}, authenticated=True)


@pytest.mark.asyncio
async def test_token_is_obtained_once_and_attached() -> None:
    """Test the token exchange and its reuse across calls."""
    token_calls: list[dict[str, str]] = []
    queries: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) == TOKEN_URL:
            token_calls.append(_form(request))
            return httpx.Response(
                200,
                json={"token": "abc", "expires": (1000 + 3600) * 1000},
            )
        queries.append(request)
        return httpx.Response(200, json={"features": []})

    session = _session()
    gw = _gateway(handler, session=session)
    await gw.fetch(QUERY_URL, {"f": "json"}, authenticated=True)
    await gw.fetch(QUERY_URL, {"f": "json"}, authenticated=True)

    assert len(token_calls) == 1
    assert token_calls[0]["username"] == "viewer"
    assert token_calls[0]["expiration"] == "1440"
    assert [q.method for q in queries] == ["POST", "POST"]
    assert _form(queries[0])["token"] == "abc"
    assert session.expires_at == 4600
    assert gw.authenticated


@pytest.mark.asyncio
async def test_rejected_token_is_refreshed_once() -> None:
    """Test that a rejected token triggers exactly one re-authentication."""
    tokens = iter(["old", "new"])
    used: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) == TOKEN_URL:
            return httpx.Response(200, json={"token": next(tokens)})
        token = _form(request)["token"]
        used.append(token)
        if token == "old":
            return httpx.Response(
                200,
                json={"error": {"code": 498, "message": "Invalid token."}},
            )
        return httpx.Response(200, json={"features": [1]})

    gw = _gateway(handler, session=_session())
    document = await gw.fetch(QUERY_URL, {}, authenticated=True)

    assert document == {"features": [1]}
    assert used == ["old", "new"]


@pytest.mark.asyncio
async def test_second_rejection_becomes_upstream_error() -> None:
    """Test that a still-rejected token surfaces as UpstreamError."""

    def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) == TOKEN_URL:
            return httpx.Response(200, json={"token": "t"})
        return httpx.Response(
            200,
            json={"error": {"code": 498, "message": "Invalid token."}},
        )

    gw = _gateway(handler, session=_session())
    with pytest.raises(errors.UpstreamError) as exc_info:
        await gw.fetch(QUERY_URL, {}, authenticated=True)
    assert not isinstance(exc_info.value, errors.AuthRequired)


@pytest.mark.asyncio
async def test_failed_token_exchange_falls_back_to_anonymous() -> None:
    """Test that a failed token request still sends the query without one."""
    queries: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) == TOKEN_URL:
            return httpx.Response(
                200,
                json={"error": {"code": 400, "message": "Invalid credentials"}},
            )
        queries.append(request)
        return httpx.Response(200, json={"features": []})

    gw = _gateway(handler, session=_session())
    await gw.fetch(QUERY_URL, {"f": "json"}, authenticated=True)

    assert queries[0].method == "GET"
    assert "token" not in queries[0].url.params
    assert not gw.authenticated


def test_token_session_expiry() -> None:
    """Test token validity relative to its expiry."""
    session = _session()
    assert session.current_token(0) is None
    session.store("abc", expires_at=100)
    assert session.current_token(99) == "abc"
    assert session.current_token(100) is None
    session.invalidate()
    assert session.token is None
    assert session.token_url == TOKEN_URL


def test_get_token_session_is_shared() -> None:
    """Test that one account maps to one process-wide session."""
    gateway._token_session.cache_clear()
    settings = config.Settings(
        arcgis_username="viewer",
        arcgis_password="secret",
        arcgis_portal=PORTAL,
    )
    try:
        session = gateway.get_token_session(settings)
        assert session is gateway.get_token_session(settings)
        assert session is gateway.get_token_session(settings.model_copy())
        assert session.password == "secret"
        assert session.has_credentials

        rotated = config.Settings(
            arcgis_username="viewer",
            arcgis_password="rotated",
            arcgis_portal=PORTAL,
        )
        other = gateway.get_token_session(rotated)
        assert other is not session
        assert other.password == "rotated"
    finally:
        gateway._token_session.cache_clear()


def test_parse_document_success() -> None:
    """Test decoding a plain JSON object."""
    response = httpx.Response(200, text=json.dumps({"a": 1}))
    assert gateway.parse_document(response) == {"a": 1}


@pytest.mark.asyncio
async def test_open_gateway_uses_settings() -> None:
    """Test that open_gateway applies the configured client defaults."""
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={})

    settings = config.Settings(user_agent="SmokeMapTest/1.0")
    async with gateway.open_gateway(
        settings,
        transport=httpx.MockTransport(handler),
    ) as gw:
        await gw.fetch(QUERY_URL, {})
        client = gw.client

    assert seen[0].headers["User-Agent"] == "SmokeMapTest/1.0"
    assert client.is_closed
