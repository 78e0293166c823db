"""
Transport Credentials

Bearer tokens for the control plane, held as secrets and refreshed
single-flight: however many requests hit a 401 at once, the identity
provider sees one refresh.

Features:
- SecretToken: value kept in a mutable buffer, zeroed when dropped
- Static and Keycloak password-grant token providers
- Proactive refresh shortly before expiry

Usage:
    from csm_admin.client.credentials import CredentialManager, KeycloakTokenProvider

    provider = KeycloakTokenProvider("https://auth.cmn.example.com/keycloak", "alice", password)
    credentials = CredentialManager(provider)

    token = credentials.current()          # fetches on first use
    token = credentials.refresh(token)     # after a 401; concurrent callers share one fetch
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

import requests

from ..errors import AuthenticationFailed
from . import jwt

logger = logging.getLogger(__name__)


class SecretToken:
    """Bearer token that never prints its value and can be wiped."""

    __slots__ = ("_buffer", "_wiped")

    def __init__(self, value: str):
        self._buffer = bytearray(value.encode("utf-8"))
        self._wiped = False

    def reveal(self) -> str:
        if self._wiped:
            raise ValueError("secret has been wiped")
        return self._buffer.decode("utf-8")

    def wipe(self) -> None:
        for i in range(len(self._buffer)):
            self._buffer[i] = 0
        self._wiped = True

    @property
    def wiped(self) -> bool:
        return self._wiped

    def __repr__(self) -> str:
        return "SecretToken('***masked***')"

    __str__ = __repr__


@dataclass
class IssuedToken:
    """What a provider hands back."""

    value: str
    expires_at: Optional[float] = None  # epoch seconds


class TokenProvider(ABC):
    """Obtains fresh tokens from an identity provider."""

    @abstractmethod
    def fetch(self) -> IssuedToken:
        """Return a new token; raise AuthenticationFailed when refused."""


class StaticTokenProvider(TokenProvider):
    """Always returns the same token (e.g. one pasted from the environment)."""

    def __init__(self, token: str):
        self._token = SecretToken(token)

    def fetch(self) -> IssuedToken:
        value = self._token.reveal()
        return IssuedToken(value, jwt.expires_at(value))


class KeycloakTokenProvider(TokenProvider):
    """Password grant against the control plane's Keycloak realm."""

    def __init__(
        self,
        keycloak_url: str,
        username: str,
        password: str,
        realm: str = "shasta",
        client_id: str = "shasta",
        session: requests.Session = None,
        verify=True,
        proxies: dict = None,
        timeout: float = 30.0,
    ):
        self.token_url = f"{keycloak_url.rstrip('/')}/realms/{realm}/protocol/openid-connect/token"
        self.username = username
        self._password = SecretToken(password)
        self.client_id = client_id
        self.session = session or requests.Session()
        self.verify = verify
        self.proxies = proxies
        self.timeout = timeout

    def fetch(self) -> IssuedToken:
        logger.info(f"Requesting token for '{self.username}' from {self.token_url}")
        try:
            response = self.session.post(
                self.token_url,
                data={
                    "grant_type": "password",
                    "client_id": self.client_id,
                    "username": self.username,
                    "password": self._password.reveal(),
                },
                verify=self.verify,
                proxies=self.proxies,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise AuthenticationFailed("keycloak", self.token_url, reason=str(e))

        if response.status_code != 200:
            raise AuthenticationFailed("keycloak", self.token_url, status=response.status_code)

        try:
            body = response.json()
            value = body["access_token"]
        except (ValueError, KeyError, TypeError):
            raise AuthenticationFailed("keycloak", self.token_url, reason="no access_token in response")

        expires_in = body.get("expires_in")
        if isinstance(expires_in, (int, float)):
            expiry = time.time() + expires_in
        else:
            expiry = jwt.expires_at(value)
        return IssuedToken(value, expiry)


class CredentialManager:
    """
    Single owner of the current credential.

    Refresh is single-flight: callers pass the token they saw fail; if the
    manager already holds a different one, that one is returned without
    another fetch.
    """

    def __init__(
        self,
        provider: TokenProvider,
        refresh_margin: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        self.provider = provider
        self.refresh_margin = refresh_margin
        self._clock = clock
        self._lock = threading.Lock()
        self._token: Optional[SecretToken] = None
        self._expires_at: Optional[float] = None
        self.generation = 0
        self.refresh_count = 0

    def current(self) -> SecretToken:
        """The live token, fetching or proactively refreshing as needed."""
        with self._lock:
            if self._token is None or self._near_expiry():
                self._replace()
            return self._token

    def authorization(self) -> Tuple[SecretToken, str]:
        """Current token plus its Authorization header value, read under the lock."""
        with self._lock:
            if self._token is None or self._near_expiry():
                self._replace()
            return self._token, f"Bearer {self._token.reveal()}"

    def refresh(self, stale: Optional[SecretToken] = None) -> SecretToken:
        """Replace the credential unless another caller already replaced stale."""
        with self._lock:
            if self._token is not None and stale is not None and self._token is not stale:
                return self._token
            self._replace()
            return self._token

    def close(self) -> None:
        with self._lock:
            if self._token is not None:
                self._token.wipe()
            self._token = None

    def _near_expiry(self) -> bool:
        if self._expires_at is None:
            return False
        return self._clock() >= self._expires_at - self.refresh_margin

    def _replace(self) -> None:
        issued = self.provider.fetch()
        old = self._token
        self._token = SecretToken(issued.value)
        self._expires_at = issued.expires_at
        self.generation += 1
        self.refresh_count += 1
        if old is not None:
            old.wipe()
        logger.debug(f"Credential replaced (generation {self.generation})")
