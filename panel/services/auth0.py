import logging
import re
import time
from urllib.parse import quote

import httpx

from panel.core.config import get_settings
from panel.utils.cache import TTLCache

settings = get_settings()
logger = logging.getLogger(__name__)


class IdentityProviderError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def compile_identity_pattern(value: str) -> re.Pattern:
    raw = (value or "").strip()
    if not raw:
        # An empty pattern recognises nothing.
        return re.compile(r"(?!x)x")
    return re.compile(raw)


def normalize_domain(raw: str) -> str:
    domain = str(raw or "").strip().rstrip("/")
    if not domain.startswith(("http://", "https://")):
        domain = f"https://{domain}"
    return domain


class Auth0Client:
    """Answers "does this identity still exist" against the Auth0 Management API.

    ``user_exists`` returns True/False only for definitive answers (200/404)
    and raises ``IdentityProviderError`` for everything else; each caller
    decides whether an outage means "exists" or "gone".
    """

    def __init__(self, cache: TTLCache | None = None, *, transport: httpx.BaseTransport | None = None, clock=time.time):
        self.base_url = normalize_domain(settings.auth0_domain)
        self.client_id = settings.auth0_client_id
        self.client_secret = settings.auth0_client_secret
        self.timeout = settings.auth0_timeout_seconds
        self.cache = cache if cache is not None else TTLCache(settings.auth0_exists_cache_ttl_seconds)
        self.exists_ttl = settings.auth0_exists_cache_ttl_seconds
        self.not_exists_ttl = settings.auth0_not_exists_cache_ttl_seconds
        self.identity_pattern = compile_identity_pattern(settings.identity_ext_relation_pattern)
        self._transport = transport
        self._clock = clock
        self._token: str | None = None
        self._token_expires_at = 0.0

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self.timeout, transport=self._transport)

    def _management_token(self) -> str:
        # Refresh a minute early so a token never expires mid-sweep.
        if self._token and self._clock() < self._token_expires_at - 60:
            return self._token
        payload = {
            "grant_type": "client_credentials",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "audience": f"{self.base_url}/api/v2/",
        }
        try:
            with self._client() as client:
                response = client.post(f"{self.base_url}/oauth/token", json=payload)
        except httpx.HTTPError as exc:
            raise IdentityProviderError(f"Auth0 token request failed: {exc}") from exc
        if response.status_code >= 400:
            raise IdentityProviderError(
                f"Auth0 token request failed: HTTP {response.status_code}",
                status_code=response.status_code,
            )
        data = response.json()
        self._token = data.get("access_token")
        if not self._token:
            raise IdentityProviderError("Auth0 token response did not include an access token")
        self._token_expires_at = self._clock() + int(data.get("expires_in") or 3600)
        return self._token

    def is_identity_reference(self, value: str | None) -> bool:
        if not value:
            return False
        return bool(self.identity_pattern.match(str(value)))

    def user_exists(self, owner_id: str) -> bool:
        cached = self.cache.get(owner_id)
        if cached is not None:
            return cached

        token = self._management_token()
        url = f"{self.base_url}/api/v2/users/{quote(owner_id, safe='')}"
        try:
            with self._client() as client:
                response = client.get(url, headers={"Authorization": f"Bearer {token}"}, params={"fields": "user_id"})
        except httpx.HTTPError as exc:
            raise IdentityProviderError(f"Auth0 user lookup failed for {owner_id}: {exc}") from exc

        if response.status_code == 404:
            logger.info("Auth0 user %s not found (deleted)", owner_id)
            self.cache.set(owner_id, False, self.not_exists_ttl)
            return False
        if response.status_code == 401:
            # Token revoked or rotated; drop it so the next call fetches a new one.
            self._token = None
        if response.status_code >= 400:
            raise IdentityProviderError(
                f"Auth0 user lookup failed for {owner_id}: HTTP {response.status_code}",
                status_code=response.status_code,
            )
        self.cache.set(owner_id, True, self.exists_ttl)
        return True
