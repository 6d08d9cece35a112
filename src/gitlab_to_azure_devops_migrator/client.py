"""Resilient remote-call client shared by the GitLab and Azure DevOps adapters.

``CallClient.call`` never raises for HTTP or network failures. It retries the
transient ones (429, 500, 502, 503, 504, connection errors and timeouts) with
exponential backoff and returns a ``CallResult`` whose ``error`` is a
``NormalizedError`` once the failure is terminal or the retries are
exhausted. Callers branch on ``ok`` / ``not_found`` / ``error`` and only turn
a result into an exception via ``raise_for_error()`` where a step has to
abort.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Final, NoReturn

import requests
import urllib3

from .exceptions import (
    AuthorizationError,
    ConflictError,
    MigrationError,
    NotFoundError,
    RateLimitedError,
    TransientNetworkError,
)
from .models import ErrorKind, NormalizedError

if TYPE_CHECKING:
    from .protocols import CallTransport
    from .session import SessionContext

# Module-wide logger
logger: logging.Logger = logging.getLogger(__name__)

_LOGGED_BODY_LIMIT: Final[int] = 500

_insecure_warning_lock = threading.Lock()
_insecure_warning_emitted: bool = False


def warn_insecure_once() -> None:
    """Emit the certificate-validation bypass warning once per process."""
    global _insecure_warning_emitted  # noqa: PLW0603
    with _insecure_warning_lock:
        if _insecure_warning_emitted:
            return
        _insecure_warning_emitted = True
    logger.warning("TLS certificate validation disabled - this is insecure!")
    urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)


@dataclass(frozen=True)
class TransportResponse:
    """Raw answer of one transport attempt."""

    status: int
    body: Any = None
    headers: Mapping[str, str] = field(default_factory=dict)


_ERROR_EXCEPTIONS: Final[dict[ErrorKind, type[MigrationError]]] = {
    ErrorKind.TRANSIENT_NETWORK: TransientNetworkError,
    ErrorKind.RATE_LIMITED: RateLimitedError,
    ErrorKind.AUTHORIZATION: AuthorizationError,
    ErrorKind.NOT_FOUND: NotFoundError,
    ErrorKind.CONFLICT: ConflictError,
}


@dataclass
class CallResult:
    """Outcome of a (possibly retried) remote call."""

    status: int | None
    body: Any = None
    error: NormalizedError | None = None
    attempts: int = 1
    headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def not_found(self) -> bool:
        return self.status == 404

    def json(self) -> dict[str, Any]:
        """Body as a mapping, empty when the platform answered with something else."""
        return self.body if isinstance(self.body, dict) else {}

    def raise_for_error(self) -> None:
        if self.error is None:
            return
        raise_normalized(self.error)


def raise_normalized(error: NormalizedError) -> NoReturn:
    """Raise the taxonomy exception matching a normalized error."""
    exception_class = _ERROR_EXCEPTIONS.get(error.kind, MigrationError)
    raise exception_class(str(error), normalized=error)


def classify_status(status: int) -> ErrorKind:
    """Map an HTTP error status onto the error taxonomy."""
    if status in (401, 403):
        return ErrorKind.AUTHORIZATION
    if status == 404:
        return ErrorKind.NOT_FOUND
    if status == 409:
        return ErrorKind.CONFLICT
    if status == 429:
        return ErrorKind.RATE_LIMITED
    if status >= 500:
        return ErrorKind.TRANSIENT_NETWORK
    return ErrorKind.HTTP


def _error_message(body: Any) -> str:
    if isinstance(body, dict):
        for key in ("message", "error_description", "error"):
            value = body.get(key)
            if value:
                return value if isinstance(value, str) else json.dumps(value)
        return json.dumps(body)[:_LOGGED_BODY_LIMIT]
    if body is None:
        return ""
    return str(body)[:_LOGGED_BODY_LIMIT]


def _retry_after(headers: Mapping[str, str]) -> float:
    value = headers.get("Retry-After") if headers else None
    try:
        return float(value) if value is not None else 0.0
    except ValueError:
        return 0.0


class CallClient:
    """Executes remote calls through a transport with retry, backoff and redaction."""

    def __init__(
        self,
        transport: CallTransport,
        session: SessionContext,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.transport = transport
        self.session = session
        self._sleep = sleep

    @property
    def system(self) -> str:
        return self.transport.system

    def sleep(self, seconds: float) -> None:
        """Blocking wait on the client's clock (injectable for tests)."""
        self._sleep(seconds)

    def _snippet(self, value: Any) -> str:
        if value is None:
            return "-"
        text = value if isinstance(value, str) else json.dumps(value, default=str)
        return self.session.redactor.redact(text[:_LOGGED_BODY_LIMIT])

    def _log_attempt(
        self,
        method: str,
        path: str,
        attempt: int,
        max_attempts: int,
        status: int | str,
        elapsed: float,
        *,
        headers: Mapping[str, str] | None,
        body: Any,
        response_body: Any,
    ) -> None:
        if not logger.isEnabledFor(logging.DEBUG):
            return
        redact = self.session.redactor.redact
        logger.debug(
            redact(
                f"call system={self.system} method={method} path={path} attempt={attempt}/{max_attempts} "
                f"status={status} elapsed={elapsed:.3f}s headers={dict(headers or {})} "
                f"request={self._snippet(body)} response={self._snippet(response_body)}"
            )
        )

    def call(
        self,
        method: str,
        path: str,
        body: Any = None,
        *,
        query: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
        timeout: float | None = None,
        preview: bool = False,
    ) -> CallResult:
        """Execute one logical call, retrying transient failures.

        Args:
            method: HTTP verb
            path: Path relative to the transport's base URL
            body: JSON-serializable request body
            query: Query parameters
            headers: Extra request headers
            timeout: Per-attempt wall-clock timeout (defaults to the session's)
            preview: Request the preview flavour of the API version (Azure DevOps graph endpoints)

        Returns:
            CallResult with ``error`` set when the call failed terminally
        """
        policy = self.session.retry_policy
        max_attempts = policy.attempts + 1
        effective_timeout = timeout if timeout is not None else self.session.request_timeout
        redact = self.session.redactor.redact
        endpoint = f"{method.upper()} {path}"

        attempt = 0
        while True:
            attempt += 1
            started = time.monotonic()
            try:
                response = self.transport.send(
                    method.upper(),
                    path,
                    body=body,
                    query=query,
                    headers=headers,
                    timeout=effective_timeout,
                    preview=preview,
                )
            except (requests.ConnectionError, requests.Timeout) as e:
                elapsed = time.monotonic() - started
                self._log_attempt(
                    method, path, attempt, max_attempts, "network-error", elapsed,
                    headers=headers, body=body, response_body=str(e),
                )
                error = NormalizedError(
                    system=self.system,
                    endpoint=endpoint,
                    status=None,
                    kind=ErrorKind.TRANSIENT_NETWORK,
                    message=redact(str(e)),
                )
                if attempt < max_attempts:
                    delay = policy.delay(attempt)
                    logger.warning(f"{self.system} {endpoint} network error, retrying in {delay:g}s ({attempt}/{policy.attempts})")
                    self._sleep(delay)
                    continue
                return CallResult(status=None, error=error, attempts=attempt)
            except requests.RequestException as e:
                error = NormalizedError(
                    system=self.system,
                    endpoint=endpoint,
                    status=None,
                    kind=ErrorKind.HTTP,
                    message=redact(str(e)),
                )
                return CallResult(status=None, error=error, attempts=attempt)

            elapsed = time.monotonic() - started
            status = response.status
            self._log_attempt(
                method, path, attempt, max_attempts, status, elapsed,
                headers=headers, body=body, response_body=response.body,
            )

            if 200 <= status < 400:
                return CallResult(status=status, body=response.body, attempts=attempt, headers=response.headers)

            if status in policy.retry_statuses and attempt < max_attempts:
                delay = policy.delay(attempt)
                if status == 429:
                    delay = max(delay, _retry_after(response.headers))
                logger.warning(f"{self.system} {endpoint} returned {status}, retrying in {delay:g}s ({attempt}/{policy.attempts})")
                self._sleep(delay)
                continue

            error = NormalizedError(
                system=self.system,
                endpoint=endpoint,
                status=status,
                kind=classify_status(status),
                message=redact(_error_message(response.body)),
            )
            if status in policy.retry_statuses:
                logger.error(f"{self.system} {endpoint} still failing with {status} after {attempt} attempts")
            return CallResult(
                status=status, body=response.body, error=error, attempts=attempt, headers=response.headers
            )
