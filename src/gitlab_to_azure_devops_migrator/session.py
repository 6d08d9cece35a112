"""Run-scoped session context: endpoints, credentials and call policy.

One SessionContext is created per run and passed explicitly into every
client, validator, reconciler and orchestrator. It is read-only after
construction and therefore safe to share between worker threads. Secrets are
held in ``SecretToken`` handles and wiped by ``clear()``, which the context
manager protocol guarantees on every exit path.
"""

from __future__ import annotations

import base64
import logging
import threading
from collections.abc import Callable
from urllib.parse import urlsplit
from dataclasses import dataclass, field
from typing import Final, NoReturn, Self

from .exceptions import UnsupportedApiVersionError
from .redaction import MASK, SecretRedactor

logger: logging.Logger = logging.getLogger(__name__)

SUPPORTED_API_VERSIONS: Final[tuple[str, ...]] = ("6.0", "7.0", "7.1")
DEFAULT_API_VERSION: Final[str] = "7.1"
RETRYABLE_STATUSES: Final[frozenset[int]] = frozenset({429, 500, 502, 503, 504})


class SecretToken:
    """Scoped handle on a credential.

    The raw value is only reachable through ``reveal()``; string conversion,
    repr and pickling never expose it.
    """

    __slots__ = ("_buffer",)

    def __init__(self, value: str | None) -> None:
        self._buffer: bytearray = bytearray((value or "").encode())

    def __bool__(self) -> bool:
        return len(self._buffer) > 0

    def __repr__(self) -> str:
        return f"SecretToken({MASK!r})" if self else "SecretToken(<empty>)"

    __str__ = __repr__

    def __reduce__(self) -> NoReturn:
        msg = "SecretToken cannot be serialized"
        raise TypeError(msg)

    def reveal(self) -> str:
        return self._buffer.decode()

    def clear(self) -> None:
        for i in range(len(self._buffer)):
            self._buffer[i] = 0
        self._buffer = bytearray()


@dataclass(frozen=True)
class RetryPolicy:
    """Retry attempts after the initial call and exponential backoff base (seconds)."""

    attempts: int = 3
    backoff_base: float = 5.0
    retry_statuses: frozenset[int] = field(default=RETRYABLE_STATUSES)

    def __post_init__(self) -> None:
        if self.attempts < 0:
            msg = f"Retry attempts must not be negative: {self.attempts}"
            raise ValueError(msg)
        if self.backoff_base < 0:
            msg = f"Backoff base must not be negative: {self.backoff_base}"
            raise ValueError(msg)

    def delay(self, retry_number: int) -> float:
        """Delay before retry number ``retry_number`` (1-based): base, 2*base, 4*base, ..."""
        return self.backoff_base * (2 ** (retry_number - 1))

    def schedule(self) -> list[float]:
        return [self.delay(n) for n in range(1, self.attempts + 1)]


def _derive_graph_url(organization_url: str) -> str:
    parts = urlsplit(organization_url)
    host = (parts.hostname or "").lower()
    segments = [segment for segment in parts.path.split("/") if segment]
    if host == "dev.azure.com" and segments:
        return f"https://vssps.dev.azure.com/{segments[0]}"
    if host.endswith(".visualstudio.com") and not host.endswith(".vssps.visualstudio.com"):
        organization = host.removesuffix(".visualstudio.com")
        return f"https://{organization}.vssps.visualstudio.com"
    # Azure DevOps Server serves Graph from the collection URL itself
    return organization_url


class SessionContext:
    """Credentials, endpoints and policy shared by every layer of one run."""

    def __init__(
        self,
        *,
        gitlab_url: str,
        azure_devops_url: str,
        gitlab_token: str | None,
        azure_devops_token: str | None,
        api_version: str = DEFAULT_API_VERSION,
        retry_policy: RetryPolicy | None = None,
        verify_tls: bool = True,
        request_timeout: float = 60.0,
        transfer_timeout: float = 3600.0,
        graph_url: str | None = None,
    ) -> None:
        if api_version not in SUPPORTED_API_VERSIONS:
            msg = (
                f"Unsupported Azure DevOps API version '{api_version}'. "
                f"Supported versions: {', '.join(SUPPORTED_API_VERSIONS)}"
            )
            raise UnsupportedApiVersionError(msg)

        self._gitlab_url: str = gitlab_url.rstrip("/")
        self._azure_devops_url: str = azure_devops_url.rstrip("/")
        self._graph_url: str = graph_url.rstrip("/") if graph_url else _derive_graph_url(self._azure_devops_url)
        self._api_version: str = api_version
        self._retry_policy: RetryPolicy = retry_policy or RetryPolicy()
        self._verify_tls: bool = verify_tls
        self._request_timeout: float = request_timeout
        self._transfer_timeout: float = transfer_timeout

        self._gitlab_token: SecretToken = SecretToken(gitlab_token)
        self._azure_devops_token: SecretToken = SecretToken(azure_devops_token)

        self.redactor: SecretRedactor = SecretRedactor()
        self.redactor.register(gitlab_token)
        self.redactor.register(azure_devops_token)
        if azure_devops_token:
            # The PAT also travels base64-encoded inside the Basic auth header
            self.redactor.register(self._basic_credential(azure_devops_token))

        self._cleanups: list[tuple[str | None, str, Callable[[], None]]] = []
        self._lock = threading.Lock()
        self._cleared: bool = False

    @staticmethod
    def _basic_credential(token: str) -> str:
        return base64.b64encode(f":{token}".encode()).decode()

    @property
    def gitlab_url(self) -> str:
        return self._gitlab_url

    @property
    def azure_devops_url(self) -> str:
        return self._azure_devops_url

    @property
    def azure_devops_graph_url(self) -> str:
        """Base URL of the Graph and descriptor APIs (a separate vssps host on the cloud service)."""
        return self._graph_url

    @property
    def api_version(self) -> str:
        return self._api_version

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    @property
    def verify_tls(self) -> bool:
        return self._verify_tls

    @property
    def request_timeout(self) -> float:
        return self._request_timeout

    @property
    def transfer_timeout(self) -> float:
        return self._transfer_timeout

    @property
    def cleared(self) -> bool:
        return self._cleared

    @property
    def gitlab_token(self) -> SecretToken:
        return self._gitlab_token

    @property
    def azure_devops_token(self) -> SecretToken:
        return self._azure_devops_token

    def destination_auth_headers(self) -> dict[str, str]:
        """Authorization header for Azure DevOps (PAT as Basic credential with empty user)."""
        if not self._azure_devops_token:
            return {}
        return {"Authorization": f"Basic {self._basic_credential(self._azure_devops_token.reveal())}"}

    def source_private_token(self) -> str | None:
        return self._gitlab_token.reveal() if self._gitlab_token else None

    def register_cleanup(self, description: str, callback: Callable[[], None], *, scope: str | None = None) -> None:
        """Register removal of a transient credential (e.g. a token in a git remote URL).

        Args:
            description: What the callback removes, for logging
            callback: Removal function
            scope: Owner of the credential (a unit id), so one unit can release its own
        """
        with self._lock:
            self._cleanups.append((scope, description, callback))

    def release_transient_credentials(self, scope: str | None = None) -> int:
        """Run the registered cleanups of one scope (all scopes when None).

        Cleanup callbacks are best effort: a failing callback is logged and the
        remaining ones still run. The in-memory tokens stay usable.

        Returns:
            Number of cleanups that ran
        """
        with self._lock:
            cleanups = [entry for entry in self._cleanups if scope is None or entry[0] == scope]
            self._cleanups = [entry for entry in self._cleanups if entry not in cleanups]

        for _, description, callback in cleanups:
            try:
                callback()
                logger.debug(f"Removed transient credential: {description}")
            except Exception as e:  # noqa: BLE001
                logger.warning(f"Failed to remove transient credential ({description}): {self.redactor.redact(str(e))}")
        return len(cleanups)

    def clear(self) -> None:
        """Remove all transient credentials and zero the in-memory tokens. Idempotent."""
        self.release_transient_credentials()
        self._gitlab_token.clear()
        self._azure_devops_token.clear()
        # Pattern-based masking keeps working once the registered secrets are gone
        self.redactor.forget_all()
        if not self._cleared:
            logger.info("Session credentials cleared")
        self._cleared = True

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *_exc: object) -> None:
        self.clear()

    def __repr__(self) -> str:
        return (
            f"SessionContext(gitlab_url={self._gitlab_url!r}, azure_devops_url={self._azure_devops_url!r}, "
            f"api_version={self._api_version!r}, verify_tls={self._verify_tls})"
        )
