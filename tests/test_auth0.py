import httpx
import pytest

from panel.services.auth0 import Auth0Client, IdentityProviderError, compile_identity_pattern
from panel.utils.cache import TTLCache


class FakeClock:
    def __init__(self, value=1000.0):
        self.value = value

    def __call__(self):
        return self.value


def _client(handler, clock=None, cache=None):
    clock = clock or FakeClock()
    cache = cache if cache is not None else TTLCache(300, clock=clock)
    return Auth0Client(cache, transport=httpx.MockTransport(handler), clock=clock)


def _handler(user_status, calls):
    def handler(request):
        calls.append(request.url.path)
        if request.url.path == "/oauth/token":
            return httpx.Response(200, json={"access_token": "mgmt-token", "expires_in": 86400})
        assert request.headers["Authorization"] == "Bearer mgmt-token"
        if user_status == 200:
            return httpx.Response(200, json={"user_id": "auth0|abc"})
        return httpx.Response(user_status, json={"message": "error"})

    return handler


def test_existing_user_is_cached():
    calls = []
    client = _client(_handler(200, calls))

    assert client.user_exists("auth0|abc") is True
    assert client.user_exists("auth0|abc") is True

    assert calls == ["/oauth/token", "/api/v2/users/auth0|abc"]


def test_missing_user_returns_false_with_short_cache():
    calls = []
    clock = FakeClock()
    client = _client(_handler(404, calls), clock=clock)

    assert client.user_exists("auth0|gone") is False
    assert client.user_exists("auth0|gone") is False
    clock.value += 31
    assert client.user_exists("auth0|gone") is False

    assert calls.count("/api/v2/users/auth0|gone") == 2


def test_server_error_raises():
    client = _client(_handler(503, []))

    with pytest.raises(IdentityProviderError) as excinfo:
        client.user_exists("auth0|abc")

    assert excinfo.value.status_code == 503
    assert len(client.cache) == 0


def test_rate_limit_raises():
    with pytest.raises(IdentityProviderError):
        _client(_handler(429, [])).user_exists("auth0|abc")


def test_unauthorised_drops_token():
    client = _client(_handler(401, []))

    with pytest.raises(IdentityProviderError):
        client.user_exists("auth0|abc")

    assert client._token is None


def test_token_failure_raises():
    def handler(request):
        return httpx.Response(403, json={"error": "access_denied"})

    with pytest.raises(IdentityProviderError):
        _client(handler).user_exists("auth0|abc")


def test_network_error_raises():
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    with pytest.raises(IdentityProviderError):
        _client(handler).user_exists("auth0|abc")


def test_identity_reference_pattern():
    client = _client(_handler(200, []))

    assert client.is_identity_reference("auth0|65f0c2a1b2")
    assert not client.is_identity_reference("google-oauth2|123")
    assert not client.is_identity_reference(None)
    assert not client.is_identity_reference("")


def test_empty_pattern_matches_nothing():
    assert compile_identity_pattern("").match("auth0|abc") is None
