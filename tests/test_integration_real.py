"""
Integration tests against real GitLab and Azure DevOps instances.

These tests only read: they check the credentials and run a preflight of a
real unit, which never creates, updates or deletes anything on either side.

Required environment:
- SOURCE_GITLAB_TEST_PROJECT: GitLab project path (namespace/project)
- TARGET_AZURE_DEVOPS_TEST_PROJECT: Azure DevOps project name
- AZURE_DEVOPS_URL: organization URL, e.g. https://dev.azure.com/your-org

Tokens come from $GITLAB_TOKEN / $AZURE_DEVOPS_PAT or the pass store.
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING

import pytest

from gitlab_to_azure_devops_migrator import azure_devops as ado
from gitlab_to_azure_devops_migrator import gitlab_utils as glu
from gitlab_to_azure_devops_migrator.client import CallClient
from gitlab_to_azure_devops_migrator.models import MigrationUnit
from gitlab_to_azure_devops_migrator.preflight import PreflightValidator
from gitlab_to_azure_devops_migrator.session import SessionContext
from gitlab_to_azure_devops_migrator.store import ReportStore

if TYPE_CHECKING:
    from collections.abc import Generator
    from pathlib import Path


def _required_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        pytest.skip(f"{name} environment variable is required for integration tests")
    return value


@pytest.fixture(scope="module")
def real_session() -> Generator[SessionContext]:
    azure_url = ado.get_url() or _required_env("AZURE_DEVOPS_URL")
    azure_token = ado.get_token()
    if not azure_token:
        pytest.skip("No Azure DevOps PAT available")
    with SessionContext(
        gitlab_url=glu.get_url(),
        azure_devops_url=azure_url,
        gitlab_token=glu.get_token(),
        azure_devops_token=azure_token,
    ) as session:
        yield session


@pytest.fixture(scope="module")
def gitlab_client(real_session: SessionContext) -> Generator[CallClient]:
    transport = glu.GitLabTransport(real_session)
    yield CallClient(transport, real_session)
    transport.close()


@pytest.fixture(scope="module")
def azure_client(real_session: SessionContext) -> Generator[CallClient]:
    transport = ado.AzureDevOpsTransport(real_session)
    yield CallClient(transport, real_session)
    transport.close()


@pytest.fixture(scope="module")
def unit() -> MigrationUnit:
    return MigrationUnit(
        source=_required_env("SOURCE_GITLAB_TEST_PROJECT"),
        destination_project=_required_env("TARGET_AZURE_DEVOPS_TEST_PROJECT"),
    )


@pytest.mark.integration
class TestCredentials:
    def test_gitlab_token_is_accepted(self, gitlab_client: CallClient) -> None:
        result = glu.GitLabSource(gitlab_client).check_credentials()
        assert result.ok, result.error

    def test_azure_devops_pat_is_accepted(self, azure_client: CallClient) -> None:
        result = ado.check_credentials(azure_client)
        assert result.ok, result.error

    def test_source_project_is_readable(self, gitlab_client: CallClient, unit: MigrationUnit) -> None:
        result = glu.GitLabSource(gitlab_client).get_project(unit.source)
        assert result.ok, result.error
        assert result.body["path_with_namespace"] == unit.source


@pytest.mark.integration
class TestPreflight:
    def test_preflight_report(
        self, gitlab_client: CallClient, azure_client: CallClient, unit: MigrationUnit, tmp_path: Path
    ) -> None:
        store = ReportStore(tmp_path)
        validator = PreflightValidator(glu.GitLabSource(gitlab_client), azure_client, store=store)

        report = validator.run(unit)

        assert report.source.path_with_namespace == unit.source
        assert report.source.http_url_to_repo
        assert report.metrics["ref_count"] == len(report.source.branches) + len(report.source.tags)
        assert store.load_preflight(unit.unit_id) == report
