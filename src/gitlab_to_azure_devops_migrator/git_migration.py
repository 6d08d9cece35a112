"""Git repository transfer from source to destination.

The source is mirrored into a local cache (one bare mirror per unit, reused
and fetched again on later runs when a cache directory is configured), then
branches and tags are pushed to the destination. Merge-request and pipeline
refs that GitLab keeps under ``refs/`` are fetched but never pushed.

Tokens only ever live in remote URLs for the duration of the transfer: the
source remote is reset to its plain URL and the destination remote is
removed on every exit path, and the same cleanup is registered with the
session so ``SessionContext.clear()`` repeats it.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import tempfile
import time
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, Final
from urllib.parse import urlsplit, urlunsplit

from .exceptions import ContentTransferError
from .models import ErrorKind, NormalizedError, RefTransferReport

if TYPE_CHECKING:
    from .session import SessionContext

logger: logging.Logger = logging.getLogger(__name__)

_DESTINATION_REMOTE: Final[str] = "destination"
_PUSH_REFSPECS: Final[tuple[str, ...]] = ("refs/heads/*:refs/heads/*", "refs/tags/*:refs/tags/*")

Runner = Callable[..., subprocess.CompletedProcess[str]]


def _inject_token(url: str, token: str | None, prefix: str = "") -> str:
    """Inject authentication token into HTTPS URL.

    Any user-info already present (Azure DevOps remote URLs carry the
    organization name there) is replaced.

    Args:
        url: The URL to modify
        token: Token to inject (if None, returns original URL)
        prefix: Prefix before token (e.g., "oauth2:" for GitLab)

    Returns:
        URL with token injected, or original if not HTTPS or no token
    """
    if not token or not url.startswith("https://"):
        return url
    parts = urlsplit(url)
    host = parts.netloc.rsplit("@", 1)[-1]
    return urlunsplit(parts._replace(netloc=f"{prefix}{token}@{host}"))


def _plain_url(url: str) -> str:
    """URL without any user-info."""
    if "://" not in url:
        return url
    parts = urlsplit(url)
    return urlunsplit(parts._replace(netloc=parts.netloc.rsplit("@", 1)[-1]))


class GitContentTransfer:
    """ContentTransport implementation driving the git CLI."""

    def __init__(
        self,
        session: SessionContext,
        *,
        cache_root: Path | str | None = None,
        runner: Runner = subprocess.run,
        git: str = "git",
    ) -> None:
        self.session = session
        self.cache_root: Path | None = Path(cache_root) if cache_root else None
        self._runner = runner
        self._git_executable = git

    def cache_path(self, unit_id: str) -> Path:
        if self.cache_root is None:
            msg = "No cache directory configured"
            raise ValueError(msg)
        return self.cache_root / f"{unit_id}.git"

    def _error(self, command: str, message: str) -> ContentTransferError:
        message = self.session.redactor.redact(message)
        normalized = NormalizedError(
            system="git", endpoint=f"git {command}", status=None, kind=ErrorKind.CONTENT_TRANSFER, message=message
        )
        return ContentTransferError(f"git {command} failed: {message}", normalized=normalized)

    def _git(self, args: list[str], cwd: Path | None = None, *, check: bool = True) -> subprocess.CompletedProcess[str]:
        config = ["-c", "credential.helper="]
        if not self.session.verify_tls:
            config += ["-c", "http.sslVerify=false"]
        env = os.environ.copy() | {"GIT_TERMINAL_PROMPT": "0"}
        timeout = self.session.transfer_timeout
        try:
            result = self._runner(  # noqa: S603
                [self._git_executable, *config, *args],
                cwd=str(cwd) if cwd else None,
                check=False,
                capture_output=True,
                text=True,
                timeout=timeout,
                env=env,
            )
        except subprocess.TimeoutExpired:
            raise self._error(args[0], f"no progress within {timeout:g}s, transfer aborted") from None
        except OSError as e:
            raise self._error(args[0], str(e)) from e

        if check and result.returncode != 0:
            raise self._error(args[0], (result.stderr or result.stdout or "").strip())
        return result

    def _list_refs(self, path: Path, *patterns: str) -> list[str]:
        result = self._git(["for-each-ref", "--format=%(refname)", *patterns], cwd=path)
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def _strip_credentials(self, path: Path, source_url: str) -> None:
        """Reset the source remote to its plain URL and drop the destination remote."""
        if not (path / "HEAD").exists():
            return
        self._git(["remote", "set-url", "origin", _plain_url(source_url)], cwd=path, check=False)
        self._git(["remote", "remove", _DESTINATION_REMOTE], cwd=path, check=False)
        logger.debug(f"Stripped credentials from git config in {path}")

    def _fetch(self, path: Path, source_url: str) -> None:
        if (path / "HEAD").exists():
            logger.info(f"Updating cached mirror {path}")
            self._git(["remote", "set-url", "origin", source_url], cwd=path)
            self._git(["fetch", "--prune", "origin"], cwd=path)
        else:
            path.parent.mkdir(parents=True, exist_ok=True)
            logger.info(f"Cloning source mirror into {path}")
            self._git(["clone", "--mirror", source_url, str(path)])

    def transfer(
        self,
        unit_id: str,
        source_url: str,
        destination_url: str,
        *,
        lfs: bool,
        force: bool,
    ) -> RefTransferReport:
        """Mirror the source into the cache and push branches, tags and LFS objects.

        Args:
            unit_id: Identity of the migration unit (names the cache directory)
            source_url: Source repository HTTPS clone URL
            destination_url: Destination repository HTTPS remote URL
            lfs: Whether to transfer large-object storage objects too
            force: Whether to force-push over diverging destination refs (sync intent)

        Returns:
            RefTransferReport listing fetched and pushed refs

        Raises:
            ContentTransferError: If any git command fails or times out
        """
        started = time.monotonic()
        temp_dir: str | None = None
        if self.cache_root is None:
            temp_dir = tempfile.mkdtemp(prefix="gitlab_migration_")
            path = Path(temp_dir) / "mirror.git"
        else:
            path = self.cache_path(unit_id)

        source_token = self.session.source_private_token()
        destination_token = self.session.azure_devops_token.reveal() if self.session.azure_devops_token else None
        authenticated_source = _inject_token(source_url, source_token, prefix="oauth2:")
        authenticated_destination = _inject_token(destination_url, destination_token, prefix="pat:")

        def strip() -> None:
            try:
                self._strip_credentials(path, source_url)
            except ContentTransferError as e:
                logger.warning(f"Could not strip credentials from {path}: {e}")

        self.session.register_cleanup(f"git remotes in {path}", strip, scope=unit_id)

        try:
            self._fetch(path, authenticated_source)
            fetched = self._list_refs(path)
            to_push = self._list_refs(path, "refs/heads", "refs/tags")

            if lfs:
                self._git(["lfs", "fetch", "--all", "origin"], cwd=path)

            self._git(["remote", "remove", _DESTINATION_REMOTE], cwd=path, check=False)
            self._git(["remote", "add", _DESTINATION_REMOTE, authenticated_destination], cwd=path)

            push: list[str] = ["push", _DESTINATION_REMOTE, *_PUSH_REFSPECS]
            if force:
                push.append("--force")
            self._git(push, cwd=path)

            if lfs:
                self._git(["lfs", "push", "--all", _DESTINATION_REMOTE], cwd=path)
        finally:
            strip()
            if temp_dir and Path(temp_dir).exists():
                shutil.rmtree(temp_dir, ignore_errors=True)

        duration = time.monotonic() - started
        logger.info(f"Repository content migrated successfully ({len(to_push)} refs pushed in {duration:.1f}s)")
        return RefTransferReport(
            refs_fetched=fetched,
            refs_pushed=to_push,
            lfs_transferred=lfs,
            duration_seconds=round(duration, 3),
        )


def tool_available(*command: str, runner: Runner = subprocess.run) -> bool:
    """Whether a command (e.g. ``git --version``) runs successfully on this machine."""
    if shutil.which(command[0]) is None:
        return False
    try:
        result = runner(list(command), check=False, capture_output=True, text=True, timeout=30)  # noqa: S603
    except (OSError, subprocess.SubprocessError):
        return False
    return result.returncode == 0

