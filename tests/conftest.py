"""
Pytest configuration and fixtures.

Integration tests fail when the migrator logs a warning or error: against
real instances a retry, an override or a blocking finding means the
environment is not what the test expects. Unit tests provoke those paths on
purpose and are not checked.

Also provides the session fixture shared by the unit tests.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, override

import pytest

from fakes import make_session

if TYPE_CHECKING:
    from collections.abc import Generator

    from gitlab_to_azure_devops_migrator.session import SessionContext

PACKAGE_LOGGER = "gitlab_to_azure_devops_migrator"

_logged_warnings = pytest.StashKey[list[logging.LogRecord]]()


class WarningCollector(logging.Handler):
    """Keeps WARNING and above records of the migrator's loggers."""

    def __init__(self, records: list[logging.LogRecord]) -> None:
        super().__init__(level=logging.WARNING)
        self.records = records

    @override
    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)


@pytest.fixture(autouse=True)
def collect_migrator_warnings(request: pytest.FixtureRequest) -> Generator[None]:
    if request.node.get_closest_marker("integration") is None:
        yield
        return

    records: list[logging.LogRecord] = []
    request.node.stash[_logged_warnings] = records
    handler = WarningCollector(records)
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.addHandler(handler)
    try:
        yield
    finally:
        package_logger.removeHandler(handler)


@pytest.hookimpl(hookwrapper=True)
def pytest_runtest_makereport(item: pytest.Item, call: pytest.CallInfo[None]) -> Generator[None]:  # type: ignore[misc]
    """Turn a passed integration test into a failure if the migrator logged warnings during the call."""
    outcome = yield
    report = outcome.get_result()
    records = item.stash.get(_logged_warnings, [])
    if call.when != "call" or report.outcome != "passed" or not records:
        return

    lines = [f"  - {r.levelname} {r.name}:{r.lineno}: {r.getMessage()}" for r in records]
    report.outcome = "failed"
    report.longrepr = f"Migrator logged {len(records)} warning(s) during an integration test:\n" + "\n".join(lines)


@pytest.fixture
def session() -> Generator[SessionContext]:
    """Session with fake credentials, cleared after the test."""
    with make_session() as context:
        yield context
