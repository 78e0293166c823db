"""
Error Taxonomy

Every call-level failure raised by csm_admin derives from CsmError and
carries the identifier, expression or backend it concerns. Per-node
failures inside an operation are never raised; they are report data.

Usage:
    from csm_admin.errors import CsmError, UnknownGroup

    try:
        nodes = resolve("@compute & ~x1000c0", context)
    except UnknownGroup as e:
        print(f"no such group: {e.name}")
    except CsmError as e:
        print(f"resolution failed: {e}")
"""

from typing import Any, Optional


class CsmError(Exception):
    """Base class for every error raised by csm_admin."""

    pass


# ---------------------------------------------------------------------------
# Identifier and group resolution
# ---------------------------------------------------------------------------


class InvalidIdentifier(CsmError):
    """Raised when text is not a valid component identifier."""

    def __init__(self, text: str, reason: str = ""):
        self.text = text
        self.reason = reason
        message = f"Invalid identifier '{text}'"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class ExpressionSyntaxError(CsmError):
    """Raised when a group expression cannot be parsed."""

    def __init__(self, expression: str, position: int, reason: str):
        self.expression = expression
        self.position = position
        self.reason = reason
        super().__init__(f"Syntax error at position {position} in '{expression}': {reason}")


class UnknownGroup(CsmError):
    """Raised when an expression references a group or partition that does not exist."""

    def __init__(self, name: str, kind: str = "group"):
        self.name = name
        self.kind = kind
        super().__init__(f"Unknown {kind} '{name}'")


class AmbiguousComplement(CsmError):
    """Raised when a complement is requested without a universe to take it against."""

    def __init__(self, expression: str = ""):
        self.expression = expression
        message = "Complement requires a universe (base group or full inventory)"
        if expression:
            message += f" in '{expression}'"
        super().__init__(message)


class AccessDenied(CsmError):
    """Raised when resolved nodes fall outside the groups the caller may target."""

    def __init__(self, identifiers, allowed_groups=None):
        self.identifiers = list(identifiers)
        self.allowed_groups = sorted(allowed_groups or [])
        shown = ", ".join(str(i) for i in self.identifiers[:5])
        if len(self.identifiers) > 5:
            shown += f" (+{len(self.identifiers) - 5} more)"
        super().__init__(f"Access denied to: {shown}")


# ---------------------------------------------------------------------------
# Service client layer
# ---------------------------------------------------------------------------


class ServiceError(CsmError):
    """Base class for failures talking to a backend service."""

    def __init__(self, message: str, backend: str = "", url: str = "", status: int = None):
        self.backend = backend
        self.url = url
        self.status = status
        super().__init__(message)


class AuthenticationFailed(ServiceError):
    """Raised when a request is still unauthorized after one credential refresh."""

    def __init__(self, backend: str, url: str = "", status: int = None, reason: str = ""):
        message = f"Authentication with {backend or 'backend'} failed"
        if status:
            message += f" (HTTP {status})"
        if reason:
            message += f": {reason}"
        super().__init__(message, backend=backend, url=url, status=status)


class RequestRejected(ServiceError):
    """Raised for non-retryable 4xx responses."""

    def __init__(self, backend: str, url: str, status: int, payload: Any = None):
        self.payload = payload
        detail = ""
        if isinstance(payload, dict):
            detail = payload.get("detail") or payload.get("title") or payload.get("message") or ""
        elif payload:
            detail = str(payload)[:200]
        message = f"{backend} rejected request to {url} (HTTP {status})"
        if detail:
            message += f": {detail}"
        super().__init__(message, backend=backend, url=url, status=status)


class MalformedResponse(ServiceError):
    """Raised when a backend answers with a body that cannot be decoded."""

    def __init__(self, backend: str, url: str, reason: str, status: int = None):
        self.reason = reason
        super().__init__(
            f"Malformed response from {backend} at {url}: {reason}",
            backend=backend,
            url=url,
            status=status,
        )


class TransportError(ServiceError):
    """Raised when retryable failures persist past the attempt bound."""

    def __init__(
        self,
        backend: str,
        method: str,
        url: str,
        attempts: int,
        status: int = None,
        cause: Optional[BaseException] = None,
    ):
        self.method = method
        self.attempts = attempts
        self.cause = cause
        reason = f"HTTP {status}" if status else (str(cause) if cause else "unknown error")
        super().__init__(
            f"{method} {url} failed after {attempts} attempt(s): {reason}",
            backend=backend,
            url=url,
            status=status,
        )


class BackendUnavailable(ServiceError):
    """Raised without contacting a backend whose circuit breaker is open."""

    def __init__(self, backend: str, retry_after: float = None):
        self.retry_after = retry_after
        message = f"Backend '{backend}' is unavailable"
        if retry_after:
            message += f", retry after {retry_after:.1f}s"
        super().__init__(message, backend=backend)


class DeadlineExceeded(CsmError):
    """Raised when a call's deadline elapses before it completes."""

    def __init__(self, what: str, seconds: float = None):
        self.what = what
        self.seconds = seconds
        message = f"Deadline exceeded: {what}"
        if seconds is not None:
            message += f" (after {seconds:.1f}s)"
        super().__init__(message)


# ---------------------------------------------------------------------------
# Operations and consoles
# ---------------------------------------------------------------------------


class SubmissionFailed(CsmError):
    """Raised when an operation cannot be submitted to its backend."""

    def __init__(self, kind: str, reason: str, cause: Optional[BaseException] = None):
        self.kind = kind
        self.reason = reason
        self.cause = cause
        super().__init__(f"Submission of {kind} operation failed: {reason}")


class TargetUnreachable(CsmError):
    """Raised when a console endpoint for a node cannot be reached."""

    def __init__(self, identifier, reason: str = ""):
        self.identifier = identifier
        self.reason = reason
        message = f"Console for {identifier} is unreachable"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class StreamClosed(CsmError):
    """Raised when a console stream closes before any byte was exchanged."""

    def __init__(self, identifier, reason: str = ""):
        self.identifier = identifier
        self.reason = reason
        message = f"Console stream for {identifier} closed"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class ConfigError(CsmError):
    """Raised when configuration validation fails."""

    pass
