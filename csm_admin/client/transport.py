"""
Resilient Service Client

One ServiceClient per backend service. Every backend adapter goes through
execute(), which owns retries, backoff, credential refresh, deadlines,
proxying and TLS trust so the adapters never see them.

Failure classification:
    connection error/reset, read timeout, HTTP 5xx, HTTP 429
        -> retried with exponential backoff, bounded attempts
        -> TransportError once attempts run out
    HTTP 401/403
        -> credential refreshed once (single-flight), request retried once
        -> AuthenticationFailed if still refused
    other HTTP 4xx      -> RequestRejected immediately
    undecodable body    -> MalformedResponse immediately
    deadline elapsed    -> DeadlineExceeded

Outcomes that say nothing about the backend's health, such as a 4xx or an
elapsed deadline, release a half-open trial without a verdict.

Usage:
    client = ServiceClient("hsm", "https://api.cmn.example.com/apis/smd/hsm/v2", credentials)
    response = client.execute(ApiRequest("GET", "/groups/compute"))
    members = response.payload["members"]["ids"]
"""

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import requests

from ..deadline import Deadline
from ..errors import (
    AuthenticationFailed,
    BackendUnavailable,
    DeadlineExceeded,
    MalformedResponse,
    RequestRejected,
    TransportError,
)
from ..log_context import correlation_headers, mask_headers
from .circuit_breaker import CircuitBreaker
from .credentials import CredentialManager

logger = logging.getLogger(__name__)

AUTH_STATUSES = (401, 403)
RETRYABLE_EXCEPTIONS = (
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
    requests.exceptions.ChunkedEncodingError,
)


def is_retryable_status(status: int) -> bool:
    return status == 429 or 500 <= status <= 599


@dataclass
class ApiRequest:
    """A backend call, relative to the client's base URL."""

    method: str
    path: str
    params: Optional[Dict[str, Any]] = None
    json: Any = None
    headers: Dict[str, str] = field(default_factory=dict)
    timeout: Optional[float] = None  # whole-call deadline in seconds
    expect_json: bool = True


@dataclass
class ApiResponse:
    status: int
    url: str
    payload: Any = None
    headers: Dict[str, str] = field(default_factory=dict)
    attempts: int = 1


@dataclass
class RetryPolicy:
    """Bounded exponential backoff."""

    max_attempts: int = 5
    backoff_base: float = 0.5
    backoff_max: float = 30.0
    jitter: float = 0.25  # fraction of the delay added at random

    def delay(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        """Sleep before retry number attempt (1-based)."""
        delay = min(self.backoff_max, self.backoff_base * (2 ** (attempt - 1)))
        return delay * (1 + self.jitter * rng())


def _retry_after_seconds(response) -> Optional[float]:
    value = (response.headers or {}).get("Retry-After")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        return None


class ServiceClient:
    """HTTP client for one backend with retries, auth refresh and deadlines."""

    def __init__(
        self,
        backend: str,
        base_url: str,
        credentials: Optional[CredentialManager] = None,
        session: requests.Session = None,
        retry: RetryPolicy = None,
        request_timeout: float = 30.0,
        proxies: Dict[str, str] = None,
        verify=True,
        breaker: Optional[CircuitBreaker] = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Callable[[], float] = random.random,
    ):
        self.backend = backend
        self.base_url = base_url.rstrip("/")
        self.credentials = credentials
        self.session = session or requests.Session()
        self.retry = retry or RetryPolicy()
        self.request_timeout = request_timeout
        self.proxies = proxies
        self.verify = verify
        self.breaker = breaker
        self._sleep = sleep
        self._rng = rng

    def url_for(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def execute(self, request: ApiRequest, deadline: Optional[Deadline] = None) -> ApiResponse:
        """Perform request; see the module docstring for failure handling."""
        url = self.url_for(request.path)
        method = request.method.upper()
        deadline = Deadline.coalesce(deadline, request.timeout or self.request_timeout)

        if self.breaker is not None and not self.breaker.allow_request():
            raise BackendUnavailable(self.backend, self.breaker.retry_after())
        try:
            return self._attempt(request, method, url, deadline)
        except (RequestRejected, AuthenticationFailed, DeadlineExceeded):
            if self.breaker is not None:
                self.breaker.release()
            raise

    def _attempt(self, request: ApiRequest, method: str, url: str, deadline: Deadline) -> ApiResponse:
        what = f"{method} {url}"
        attempt = 0
        auth_refreshed = False
        while True:
            attempt += 1
            deadline.check(what)

            token = None
            headers = {"Accept": "application/json", **correlation_headers(), **request.headers}
            if self.credentials is not None:
                token, headers["Authorization"] = self.credentials.authorization()

            logger.debug(f"{what} attempt {attempt} headers={mask_headers(headers)}")
            try:
                response = self.session.request(
                    method,
                    url,
                    params=request.params,
                    json=request.json,
                    headers=headers,
                    timeout=deadline.cap(self.request_timeout),
                    proxies=self.proxies,
                    verify=self.verify,
                )
            except RETRYABLE_EXCEPTIONS as e:
                if attempt >= self.retry.max_attempts:
                    self._record_failure(e)
                    raise TransportError(self.backend, method, url, attempt, cause=e)
                logger.warning(f"{what} failed ({type(e).__name__}: {e}), retrying")
                self._backoff(attempt, deadline)
                continue

            status = response.status_code

            if status in AUTH_STATUSES:
                if self.credentials is None or auth_refreshed:
                    raise AuthenticationFailed(self.backend, url, status=status)
                logger.info(f"{what} returned {status}, refreshing credential")
                self.credentials.refresh(token)
                auth_refreshed = True
                attempt -= 1
                continue

            if is_retryable_status(status):
                if attempt >= self.retry.max_attempts:
                    error = TransportError(self.backend, method, url, attempt, status=status)
                    self._record_failure(error)
                    raise error
                logger.warning(f"{what} returned {status}, retrying")
                self._backoff(attempt, deadline, _retry_after_seconds(response))
                continue

            if 400 <= status <= 499:
                raise RequestRejected(self.backend, url, status, self._decode_lenient(response))

            if self.breaker is not None:
                self.breaker.record_success()
            return ApiResponse(
                status=status,
                url=url,
                payload=self._decode(response, request.expect_json, url),
                headers=dict(response.headers or {}),
                attempts=attempt,
            )

    # ------------------------------------------------------------------
    # Convenience wrappers returning the decoded payload
    # ------------------------------------------------------------------

    def get(self, path: str, params: Dict[str, Any] = None, deadline: Deadline = None) -> Any:
        return self.execute(ApiRequest("GET", path, params=params), deadline).payload

    def post(self, path: str, json: Any = None, deadline: Deadline = None, **kwargs) -> Any:
        return self.execute(ApiRequest("POST", path, json=json, **kwargs), deadline).payload

    def patch(self, path: str, json: Any = None, deadline: Deadline = None, **kwargs) -> Any:
        return self.execute(ApiRequest("PATCH", path, json=json, **kwargs), deadline).payload

    def put(self, path: str, json: Any = None, deadline: Deadline = None, **kwargs) -> Any:
        return self.execute(ApiRequest("PUT", path, json=json, **kwargs), deadline).payload

    def delete(self, path: str, deadline: Deadline = None, **kwargs) -> Any:
        return self.execute(ApiRequest("DELETE", path, **kwargs), deadline).payload

    # ------------------------------------------------------------------

    def _backoff(self, attempt: int, deadline: Deadline, retry_after: float = None) -> None:
        delay = self.retry.delay(attempt, self._rng)
        if retry_after is not None:
            delay = min(max(delay, retry_after), self.retry.backoff_max)
        delay = deadline.cap(delay)
        if delay:
            self._sleep(delay)

    def _record_failure(self, error: Exception) -> None:
        if self.breaker is not None:
            self.breaker.record_failure(error)

    def _decode(self, response, expect_json: bool, url: str) -> Any:
        if not response.content:
            return None
        if not expect_json:
            return response.text
        try:
            return response.json()
        except ValueError as e:
            raise MalformedResponse(self.backend, url, f"invalid JSON ({e})", status=response.status_code)

    @staticmethod
    def _decode_lenient(response) -> Any:
        try:
            return response.json()
        except ValueError:
            return response.text


def proxies_for(proxy_url: Optional[str]) -> Optional[Dict[str, str]]:
    """requests proxy mapping for a single proxy URL (http, https or socks5)."""
    if not proxy_url:
        return None
    return {"http": proxy_url, "https": proxy_url}
