"""GitLab source adapter.

Requests go through python-gitlab's low-level ``Gitlab.http_request`` with the
library's own rate-limit handling and transient retries switched off, so the
``CallClient`` retry policy is the only one in effect.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Final

import requests
from gitlab import Gitlab
from gitlab.exceptions import GitlabError
from gitlab.utils import EncodedId

from . import utils
from .client import CallClient, CallResult, TransportResponse, warn_insecure_once

if TYPE_CHECKING:
    from collections.abc import Mapping

    from .models import NormalizedError
    from .session import SessionContext

# Module-wide logger
logger: logging.Logger = logging.getLogger(__name__)

_TOKEN_ENV_VAR: Final[str] = "GITLAB_TOKEN"  # noqa: S105
_URL_ENV_VAR: Final[str] = "GITLAB_URL"
_DEFAULT_TOKEN_PASS_PATH: Final[str] = "gitlab/cli/ro_token"  # noqa: S105
DEFAULT_URL: Final[str] = "https://gitlab.com"
_PAGE_SIZE: Final[int] = 100


def get_token(pass_path: str | None = None) -> str | None:
    """Get GitLab token from pass path, env var GITLAB_TOKEN, or default pass location."""
    # Try pass path first
    if pass_path:
        return utils.get_pass_value(pass_path)

    # Try environment variable
    token: str | None = os.environ.get(_TOKEN_ENV_VAR)
    if token:
        return token

    # Try default pass path
    try:
        return utils.get_pass_value(_DEFAULT_TOKEN_PASS_PATH)
    except (OSError, utils.PassError):
        logger.warning("No GitLab token specified nor found")
        return None


def get_url(url: str | None = None) -> str:
    return url or os.environ.get(_URL_ENV_VAR) or DEFAULT_URL


def get_client(session: SessionContext) -> Gitlab:
    """Get a GitLab client bound to the session's URL, token and TLS policy."""
    return Gitlab(
        session.gitlab_url,
        private_token=session.source_private_token(),
        ssl_verify=session.verify_tls,
        timeout=session.request_timeout,
        api_version="4",
        retry_transient_errors=False,
    )


def _decode(response: requests.Response) -> Any:
    if not response.content:
        return None
    if "json" in response.headers.get("Content-Type", ""):
        try:
            return response.json()
        except ValueError:
            return response.text
    return response.text


def _decode_error_body(body: bytes | str | None) -> Any:
    if not body:
        return None
    text = body.decode(errors="replace") if isinstance(body, bytes) else body
    try:
        return json.loads(text)
    except ValueError:
        return text


class GitLabTransport:
    """CallTransport over python-gitlab."""

    system: str = "gitlab"

    def __init__(self, session: SessionContext, client: Gitlab | None = None) -> None:
        if not session.verify_tls:
            warn_insecure_once()
        self._client: Gitlab = client or get_client(session)

    def send(
        self,
        method: str,
        path: str,
        *,
        body: Any = None,
        query: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
        timeout: float | None = None,
        preview: bool = False,  # noqa: ARG002 - GitLab has no preview API flavours
    ) -> TransportResponse:
        extra: dict[str, Any] = {"extra_headers": dict(headers)} if headers else {}
        try:
            response = self._client.http_request(
                method.lower(),
                path,
                query_data=dict(query or {}),
                post_data=body,
                timeout=timeout,
                obey_rate_limit=False,
                retry_transient_errors=False,
                **extra,
            )
        except GitlabError as e:
            if e.response_code is None:
                raise requests.RequestException(str(e)) from e
            return TransportResponse(
                status=e.response_code,
                body=_decode_error_body(e.response_body) or e.error_message,
            )
        return TransportResponse(status=response.status_code, body=_decode(response), headers=response.headers)

    def close(self) -> None:
        self._client.private_token = None
        self._client.headers.pop("PRIVATE-TOKEN", None)


def project_path(project: str | int) -> str:
    return f"/projects/{EncodedId(project)}"


@dataclass
class RefListing:
    names: list[str]
    error: NormalizedError | None = None


class GitLabSource:
    """Read-only access to the source project metadata."""

    def __init__(self, client: CallClient) -> None:
        self.client = client

    def check_credentials(self) -> CallResult:
        """Probe the token (GET /user)."""
        return self.client.call("GET", "/user")

    def get_project(self, project: str | int) -> CallResult:
        """Project metadata including repository and LFS statistics."""
        return self.client.call("GET", project_path(project), query={"statistics": "true"})

    def list_refs(self, project: str | int, ref_type: str) -> RefListing:
        """List all branch or tag names, following GitLab's X-Next-Page header.

        Args:
            project: Project id or path with namespace
            ref_type: "branches" or "tags"
        """
        names: list[str] = []
        page: str | None = "1"
        while page:
            result = self.client.call(
                "GET",
                f"{project_path(project)}/repository/{ref_type}",
                query={"per_page": _PAGE_SIZE, "page": page},
            )
            if not result.ok:
                return RefListing(names=names, error=result.error)
            body = result.body if isinstance(result.body, list) else []
            names.extend(ref["name"] for ref in body if isinstance(ref, dict) and "name" in ref)
            page = result.headers.get("X-Next-Page") or None
        logger.debug(f"Found {len(names)} {ref_type} in {project}")
        return RefListing(names=names)
