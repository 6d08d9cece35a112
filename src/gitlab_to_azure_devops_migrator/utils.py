"""
Utility functions for the GitLab to Azure DevOps migration tool.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
from subprocess import CompletedProcess
from typing import TYPE_CHECKING

from .exceptions import MigrationError
from .redaction import RedactingFilter

if TYPE_CHECKING:
    from .redaction import SecretRedactor


class PassError(MigrationError):
    """Reading a secret from the pass store failed."""


class InvalidPassPathError(PassError):
    """The pass path is malformed or has no entry."""


class PassphraseRequiredError(PassError):
    """The entry needs a GPG passphrase that could not be obtained."""


def setup_logging(
    *,
    verbosity: int = 0,
    redactor: SecretRedactor | None = None,
    log_file: str | os.PathLike[str] = "migration.log",
) -> None:
    """Configure logging for the migration process.

    The log file always receives INFO and above (DEBUG with -vv); the console
    shows warnings by default, INFO with -v and per-attempt call lines with -vv.
    With a redactor, both handlers mask secrets in every formatted message.

    Args:
        verbosity: Number of -v flags
        redactor: Session redactor applied to every handler
        log_file: Path of the log file
    """
    level = logging.DEBUG if verbosity > 1 else logging.INFO
    console = logging.StreamHandler()
    console.setLevel({0: logging.WARNING, 1: logging.INFO}.get(verbosity, logging.DEBUG))
    handlers: list[logging.Handler] = [console, logging.FileHandler(log_file, mode="a")]
    if redactor is not None:
        for handler in handlers:
            handler.addFilter(RedactingFilter(redactor))
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
        handlers=handlers,
        force=True,
    )
    # urllib3 logs full request lines at DEBUG
    logging.getLogger("urllib3").setLevel(logging.DEBUG if verbosity > 2 else logging.WARNING)


_PASS_PATH = re.compile(r"[A-Za-z0-9_-]+(?:/[A-Za-z0-9_-]+)*")
_LOOPBACK_GPG_OPTS = "--pinentry-mode=loopback --passphrase-fd 0"


def _run_pass(pass_path: str, passphrase: str | None = None) -> CompletedProcess[str]:
    env = None
    if passphrase is not None:
        env = os.environ.copy() | {"PASSWORD_STORE_GPG_OPTS": _LOOPBACK_GPG_OPTS}
    return subprocess.run(  # noqa: S603
        ["pass", pass_path], input=passphrase, capture_output=True, text=True, check=True, env=env
    )


def _needs_passphrase(error: subprocess.CalledProcessError) -> bool:
    stderr = error.stderr.lower()
    return error.returncode == 2 and "gpg" in stderr and "public key decryption failed" in stderr


def get_pass_value(pass_path: str) -> str:
    """Read a secret from the pass store.

    When the GPG agent cannot decrypt on its own, the passphrase is asked for
    once on the terminal and handed to gpg in loopback mode. Error messages
    carry stderr only, never stdout, which may hold the secret.
    """
    if not _PASS_PATH.fullmatch(pass_path):
        msg = f"Invalid pass path: {pass_path}"
        raise InvalidPassPathError(msg)

    try:
        return _run_pass(pass_path).stdout.strip()
    except subprocess.CalledProcessError as e:
        if e.returncode == 1 and "not in the password store" in e.stderr.lower():
            msg = f"Pass path '{pass_path}' not found in the password store"
            raise InvalidPassPathError(msg) from e
        if not _needs_passphrase(e):
            msg = f"Failed to read '{pass_path}' from pass (return code {e.returncode}): {e.stderr.strip()}"
            raise PassError(msg) from e

    # Fails in non-interactive sessions (e.g. pytest, CI)
    try:
        passphrase = input(f"Enter passphrase for the GPG key protecting '{pass_path}': ")
    except EOFError as e:
        msg = f"Pass entry '{pass_path}' needs a GPG passphrase; run interactively or export the token instead"
        raise PassphraseRequiredError(msg) from e
    try:
        return _run_pass(pass_path, passphrase).stdout.strip()
    except subprocess.CalledProcessError as e:
        msg = f"Failed to read '{pass_path}' from pass with the given passphrase (return code {e.returncode})"
        raise PassphraseRequiredError(msg) from e
