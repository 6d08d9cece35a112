"""Azure DevOps destination adapter: transport, credentials and shared REST helpers."""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Final

import requests

from . import utils
from .client import CallClient, CallResult, TransportResponse, warn_insecure_once
from .models import ErrorKind, NormalizedError

if TYPE_CHECKING:
    from collections.abc import Mapping

    from .session import SessionContext

# Module-wide logger
logger: logging.Logger = logging.getLogger(__name__)

_TOKEN_ENV_VAR: Final[str] = "AZURE_DEVOPS_PAT"  # noqa: S105
_URL_ENV_VAR: Final[str] = "AZURE_DEVOPS_URL"
_GRAPH_URL_ENV_VAR: Final[str] = "AZURE_DEVOPS_GRAPH_URL"
_DEFAULT_TOKEN_PASS_PATH: Final[str] = "azure-devops/cli/pat"  # noqa: S105
_PREVIEW_SUFFIX: Final[str] = "-preview.1"

# Terminal states of the _apis/operations resource
_OPERATION_DONE: Final[frozenset[str]] = frozenset({"succeeded", "failed", "cancelled"})

# Served by the identity (vssps) host rather than the organization URL
_GRAPH_PATH_PREFIXES: Final[tuple[str, ...]] = ("_apis/graph/", "_apis/descriptors/")


def get_token(pass_path: str | None = None) -> str | None:
    """Get Azure DevOps PAT from pass path, env var AZURE_DEVOPS_PAT, or default pass location."""
    if pass_path:
        return utils.get_pass_value(pass_path)

    token: str | None = os.environ.get(_TOKEN_ENV_VAR)
    if token:
        return token

    try:
        return utils.get_pass_value(_DEFAULT_TOKEN_PASS_PATH)
    except (OSError, utils.PassError):
        logger.warning("No Azure DevOps token specified nor found")
        return None


def get_url(url: str | None = None) -> str | None:
    return url or os.environ.get(_URL_ENV_VAR)


def get_graph_url(url: str | None = None) -> str | None:
    """Explicit Graph API base URL; None lets the session derive it from the organization URL."""
    return url or os.environ.get(_GRAPH_URL_ENV_VAR)


class AzureDevOpsTransport:
    """CallTransport over a requests session.

    Every request carries the session's API version as the ``api-version``
    query parameter.
    """

    system: str = "azure_devops"

    def __init__(self, session: SessionContext, http: requests.Session | None = None) -> None:
        if not session.verify_tls:
            warn_insecure_once()
        self._session = session
        self._http: requests.Session = http or requests.Session()

    def url(self, path: str) -> str:
        if "#" in path:
            msg = f"URL fragments are not allowed in API paths: {path}"
            raise ValueError(msg)
        relative = path.lstrip("/")
        if relative.startswith(_GRAPH_PATH_PREFIXES):
            return f"{self._session.azure_devops_graph_url}/{relative}"
        return f"{self._session.azure_devops_url}/{relative}"

    def send(
        self,
        method: str,
        path: str,
        *,
        body: Any = None,
        query: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
        timeout: float | None = None,
        preview: bool = False,
    ) -> TransportResponse:
        params = dict(query or {})
        params["api-version"] = self._session.api_version + (_PREVIEW_SUFFIX if preview else "")
        request_headers = {
            "Accept": "application/json",
            **self._session.destination_auth_headers(),
            **(headers or {}),
        }
        response = self._http.request(
            method,
            self.url(path),
            params=params,
            json=body,
            headers=request_headers,
            timeout=timeout,
            verify=self._session.verify_tls,
        )
        status = response.status_code
        if status == 203:
            # Azure DevOps answers a rejected PAT with a 203 sign-in page instead of 401
            return TransportResponse(status=401, body={"message": "Authentication failed (sign-in page returned)"})
        return TransportResponse(status=status, body=_decode(response), headers=response.headers)

    def close(self) -> None:
        self._http.close()


def _decode(response: requests.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def check_credentials(client: CallClient) -> CallResult:
    """Probe the PAT against the connection data endpoint."""
    return client.call("GET", "_apis/connectionData", preview=True)


def wait_for_operation(
    client: CallClient,
    operation: Mapping[str, Any],
    *,
    timeout: float,
    poll_interval: float = 2.0,
    sleep: Callable[[float], None] = time.sleep,
) -> NormalizedError | None:
    """Poll an asynchronous operation (project create/update) until it finishes.

    Returns:
        None on success, otherwise the error describing the failure or timeout
    """
    operation_id = operation.get("id")
    if not operation_id:
        return None

    deadline = time.monotonic() + timeout
    while True:
        result = client.call("GET", f"_apis/operations/{operation_id}")
        if not result.ok:
            return result.error
        status = str(result.json().get("status", "")).lower()
        if status in _OPERATION_DONE:
            if status == "succeeded":
                return None
            return NormalizedError(
                system=client.system,
                endpoint=f"GET _apis/operations/{operation_id}",
                status=result.status,
                kind=ErrorKind.HTTP,
                message=f"Operation {status}: {result.json().get('detailedMessage') or result.json().get('resultMessage') or ''}".strip(),
            )
        if time.monotonic() >= deadline:
            return NormalizedError(
                system=client.system,
                endpoint=f"GET _apis/operations/{operation_id}",
                status=result.status,
                kind=ErrorKind.TRANSIENT_NETWORK,
                message=f"Operation still '{status}' after {timeout:g}s",
            )
        sleep(poll_interval)


def get_scope_descriptor(client: CallClient, project_id: str) -> tuple[str | None, NormalizedError | None]:
    """Graph scope descriptor of a project, needed to create project-scoped groups."""
    result = client.call("GET", f"_apis/descriptors/{project_id}", preview=True)
    if not result.ok:
        return None, result.error
    return result.json().get("value"), None


def repository_has_commits(client: CallClient, project: str, repository_id: str) -> tuple[bool, NormalizedError | None]:
    """Whether a repository holds at least one branch (i.e. commit history)."""
    result = client.call(
        "GET",
        f"{project}/_apis/git/repositories/{repository_id}/refs",
        query={"filter": "heads/", "$top": 1},
    )
    if not result.ok:
        return False, result.error
    return int(result.json().get("count", 0)) > 0, None
