"""Tests for preflight validation."""

from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from fakes import (
    PROJECT,
    REPOSITORY,
    REPOSITORY_ID,
    REPOSITORY_PATH,
    REPOSITORY_REFS_PATH,
    FakeContent,
    make_client,
    make_session,
    project_body,
    refs_body,
    repository_body,
    respond,
)
from gitlab_to_azure_devops_migrator.gitlab_utils import GitLabSource
from gitlab_to_azure_devops_migrator.models import (
    MigrationUnit,
    PreflightReport,
    RefTransferReport,
    Severity,
    StepRecord,
    UnitStatus,
    UnitSummary,
)
from gitlab_to_azure_devops_migrator.orchestrator import MigrationOrchestrator
from gitlab_to_azure_devops_migrator.preflight import PreflightValidator
from gitlab_to_azure_devops_migrator.session import RetryPolicy, SessionContext
from gitlab_to_azure_devops_migrator.store import ReportStore

MiB = 1024 * 1024


def _gitlab_project(**overrides: Any) -> dict[str, Any]:
    project = {
        "id": 42,
        "path_with_namespace": "group/app",
        "http_url_to_repo": "https://gitlab.example.com/group/app.git",
        "default_branch": "main",
        "lfs_enabled": False,
        "statistics": {"repository_size": 5 * MiB, "lfs_objects_size": 0},
    }
    project.update(overrides)
    return project


class PreflightFixture:
    """GitLab and Azure DevOps fakes answering a healthy, empty destination."""

    def __init__(self, session: SessionContext, store: ReportStore | None = None) -> None:
        self.gitlab_client, self.gitlab, _ = make_client(session, "gitlab")
        self.azure_client, self.azure, _ = make_client(session)
        self.store = store
        self.tools: dict[str, bool] = {"git": True, "lfs": True}
        self.gitlab.add("GET", "/user", respond(200, {"username": "migrator"}))
        self.set_project(_gitlab_project())
        self.gitlab.add("GET", "/projects/42/repository/branches", respond(200, [{"name": "main"}, {"name": "dev"}]))
        self.gitlab.add("GET", "/projects/42/repository/tags", respond(200, [{"name": "v1.0"}]))
        self.azure.add("GET", "_apis/connectionData", respond(200, {"authenticatedUser": {"id": "u-1"}}))

    def set_project(self, body: dict[str, Any]) -> None:
        self.gitlab.add("GET", "/projects/group%2Fapp", respond(200, body))

    def existing_repository(self, commits: int) -> None:
        self.azure.add("GET", f"_apis/projects/{PROJECT}", respond(200, project_body()))
        self.azure.add("GET", REPOSITORY_PATH, respond(200, repository_body()))
        self.azure.add("GET", REPOSITORY_REFS_PATH, respond(200, refs_body(commits)))

    def tool_check(self, *command: str) -> bool:
        return self.tools["lfs" if "lfs" in command else "git"]

    def validator(self, **kwargs: Any) -> PreflightValidator:
        return PreflightValidator(
            GitLabSource(self.gitlab_client), self.azure_client, store=self.store, tool_probe=self.tool_check, **kwargs
        )


def _unit(**intents: bool) -> MigrationUnit:
    return MigrationUnit(source="group/app", destination_project=PROJECT, destination_repository=REPOSITORY, **intents)


def _summary(unit: MigrationUnit, status: UnitStatus, *steps: StepRecord) -> UnitSummary:
    return UnitSummary(
        unit_id=unit.unit_id,
        source=unit.source,
        destination_project=PROJECT,
        destination_repository=REPOSITORY,
        status=status,
        steps=list(steps),
    )


def _codes(findings: list[Any], severity: Severity | None = None) -> list[str]:
    return [f.code for f in findings if severity is None or f.severity == severity]


@pytest.mark.unit
class TestPreflightPasses:
    def test_clean_unit_passes_and_is_persisted(self, session: SessionContext, tmp_path: Path) -> None:
        store = ReportStore(tmp_path)
        fixture = PreflightFixture(session, store)
        unit = _unit()

        report = fixture.validator().run(unit)

        assert report.passed
        assert report.findings == []
        assert report.metrics == {
            "repository_size": 5 * MiB,
            "lfs_objects_size": 0,
            "branch_count": 2,
            "tag_count": 1,
            "ref_count": 3,
            "large_object_estimate": 0,
        }
        assert report.source.branches == ["main", "dev"]
        assert report.source.tags == ["v1.0"]
        assert report.source.default_branch == "main"
        assert unit.preflight_report == str(store.preflight_path(unit.unit_id))
        persisted = store.load_preflight(unit.unit_id)
        assert persisted is not None
        assert persisted.passed
        assert persisted.source.http_url_to_repo == "https://gitlab.example.com/group/app.git"

    def test_preflight_never_mutates(self, session: SessionContext) -> None:
        fixture = PreflightFixture(session)
        fixture.existing_repository(commits=4)

        _ = fixture.validator().run(_unit(replace=True))

        assert fixture.azure.mutating_calls() == []
        assert fixture.gitlab.mutating_calls() == []

    def test_existing_empty_repository_is_info(self, session: SessionContext) -> None:
        fixture = PreflightFixture(session)
        fixture.existing_repository(commits=0)

        report = fixture.validator().run(_unit())

        assert report.passed
        assert _codes(report.findings, Severity.INFO) == ["DESTINATION_PROJECT_EXISTS", "DESTINATION_REPOSITORY_EXISTS"]


@pytest.mark.unit
class TestSourceChecks:
    def test_rejected_token(self, session: SessionContext) -> None:
        fixture = PreflightFixture(session)
        fixture.gitlab.add("GET", "/user", respond(401, {"message": "401 Unauthorized"}))

        report = fixture.validator().run(_unit())

        assert not report.passed
        assert _codes(report.blocking) == ["SOURCE_AUTH_INVALID"]

    def test_missing_project(self, session: SessionContext) -> None:
        fixture = PreflightFixture(session)
        fixture.gitlab.add("GET", "/projects/group%2Fapp", respond(404, {"message": "404 Project Not Found"}))

        report = fixture.validator().run(_unit())

        assert _codes(report.blocking) == ["SOURCE_INACCESSIBLE"]
        assert "large_object_estimate" not in report.metrics

    def test_unreachable_gitlab(self) -> None:
        with make_session(retry_policy=RetryPolicy(attempts=0)) as session:
            fixture = PreflightFixture(session)
            fixture.gitlab.add("GET", "/user", respond(503))

            report = fixture.validator().run(_unit())

        assert _codes(report.blocking) == ["SOURCE_INACCESSIBLE"]

    def test_empty_source_repository_warns(self, session: SessionContext) -> None:
        fixture = PreflightFixture(session)
        fixture.gitlab.add("GET", "/projects/42/repository/branches", respond(200, []))

        report = fixture.validator().run(_unit())

        assert report.passed
        assert "SOURCE_REPOSITORY_EMPTY" in _codes(report.findings, Severity.WARNING)

    def test_missing_statistics_warns(self, session: SessionContext) -> None:
        fixture = PreflightFixture(session)
        project = _gitlab_project()
        del project["statistics"]
        fixture.set_project(project)

        report = fixture.validator().run(_unit())

        assert report.passed
        assert "SOURCE_STATISTICS_UNAVAILABLE" in _codes(report.findings, Severity.WARNING)
        assert report.metrics["repository_size"] is None


@pytest.mark.unit
class TestDestinationChecks:
    def test_repository_with_commits_blocks(self, session: SessionContext) -> None:
        fixture = PreflightFixture(session)
        fixture.existing_repository(commits=2)

        report = fixture.validator().run(_unit())

        assert not report.passed
        assert _codes(report.blocking) == ["DESTINATION_REPOSITORY_NOT_EMPTY"]

    @pytest.mark.parametrize(
        ("intent", "code"),
        [("replace", "DESTINATION_REPOSITORY_WILL_BE_REPLACED"), ("sync", "DESTINATION_REPOSITORY_WILL_BE_SYNCED")],
    )
    def test_intent_turns_block_into_warning(self, session: SessionContext, intent: str, code: str) -> None:
        fixture = PreflightFixture(session)
        fixture.existing_repository(commits=2)

        report = fixture.validator().run(_unit(**{intent: True}))

        assert report.passed
        assert _codes(report.findings, Severity.WARNING) == [code]

    def test_content_from_earlier_run_is_resumed(self, session: SessionContext, tmp_path: Path) -> None:
        store = ReportStore(tmp_path)
        unit = _unit()
        _ = store.save_transfer(unit.unit_id, REPOSITORY_ID, RefTransferReport(refs_pushed=["refs/heads/main"]))
        fixture = PreflightFixture(session, store)
        fixture.existing_repository(commits=2)

        report = fixture.validator().run(unit)

        assert report.passed
        assert "DESTINATION_REPOSITORY_RESUMED" in _codes(report.findings, Severity.INFO)

    def test_failed_transfer_is_not_our_content(self, session: SessionContext, tmp_path: Path) -> None:
        store = ReportStore(tmp_path)
        unit = _unit()
        _ = store.save_summary(_summary(unit, UnitStatus.FAILED, StepRecord(name="transfer_content", outcome="failed")))
        fixture = PreflightFixture(session, store)
        fixture.existing_repository(commits=2)

        report = fixture.validator().run(unit)

        assert _codes(report.blocking) == ["DESTINATION_REPOSITORY_NOT_EMPTY"]

    def test_transfer_into_a_recreated_repository_is_not_resumed(self, session: SessionContext, tmp_path: Path) -> None:
        store = ReportStore(tmp_path)
        unit = _unit()
        _ = store.save_transfer(unit.unit_id, "r-deleted", RefTransferReport(refs_pushed=["refs/heads/main"]))
        fixture = PreflightFixture(session, store)
        fixture.existing_repository(commits=2)

        report = fixture.validator().run(unit)

        assert _codes(report.blocking) == ["DESTINATION_REPOSITORY_NOT_EMPTY"]

    def test_resume_survives_a_blocked_run(self, session: SessionContext, tmp_path: Path) -> None:
        store = ReportStore(tmp_path)
        unit = _unit()
        # Left behind by a run that pushed the content
        _ = store.save_summary(
            _summary(unit, UnitStatus.SUCCEEDED, StepRecord(name="transfer_content", outcome="succeeded"))
        )
        _ = store.save_transfer(unit.unit_id, REPOSITORY_ID, RefTransferReport(refs_pushed=["refs/heads/main"]))
        # A later run is blocked and rewrites summary.json without any transfer step
        blocked = PreflightReport(unit_id=unit.unit_id)
        blocked.add(Severity.BLOCKING, "DESTINATION_AUTH_INVALID", "PAT expired")
        _ = store.save_preflight(blocked)
        orchestrator = MigrationOrchestrator(
            session, source=MagicMock(), reconciler=MagicMock(), content=FakeContent(), store=store
        )
        assert orchestrator.run(unit).status == UnitStatus.BLOCKED
        persisted = store.load_summary(unit.unit_id)
        assert persisted is not None
        assert [step["name"] for step in persisted["steps"]] == ["preflight", "clear_credentials"]

        fixture = PreflightFixture(session, store)
        fixture.existing_repository(commits=2)
        report = fixture.validator().run(unit)

        assert report.passed
        assert "DESTINATION_REPOSITORY_RESUMED" in _codes(report.findings, Severity.INFO)

    def test_rejected_pat(self, session: SessionContext) -> None:
        fixture = PreflightFixture(session)
        fixture.azure.add("GET", "_apis/connectionData", respond(401))

        report = fixture.validator().run(_unit())

        assert _codes(report.blocking) == ["DESTINATION_AUTH_INVALID"]

    def test_destination_lookup_failure(self, session: SessionContext) -> None:
        fixture = PreflightFixture(session)
        fixture.azure.add("GET", f"_apis/projects/{PROJECT}", respond(400, {"message": "bad request"}))

        report = fixture.validator().run(_unit())

        assert _codes(report.blocking) == ["DESTINATION_PROBE_FAILED"]


@pytest.mark.unit
class TestToolingAndSize:
    def test_git_missing_blocks(self, session: SessionContext) -> None:
        fixture = PreflightFixture(session)
        fixture.tools["git"] = False

        report = fixture.validator().run(_unit())

        assert "GIT_UNAVAILABLE" in _codes(report.blocking)

    def test_lfs_objects_need_git_lfs(self, session: SessionContext) -> None:
        fixture = PreflightFixture(session)
        fixture.tools["lfs"] = False
        fixture.set_project(
            _gitlab_project(lfs_enabled=True, statistics={"repository_size": 10 * MiB, "lfs_objects_size": 3 * MiB})
        )

        report = fixture.validator().run(_unit())

        assert _codes(report.blocking) == ["GIT_LFS_UNAVAILABLE"]
        assert report.metrics["large_object_estimate"] == 3 * MiB

    def test_oversized_repository_without_lfs_warns(self, session: SessionContext) -> None:
        fixture = PreflightFixture(session)
        fixture.set_project(_gitlab_project(statistics={"repository_size": 150 * MiB, "lfs_objects_size": 0}))

        report = fixture.validator(large_repository_threshold=100 * MiB).run(_unit())

        assert report.passed
        assert _codes(report.findings, Severity.WARNING) == ["REPOSITORY_OVERSIZED"]
        assert report.metrics["large_object_estimate"] == 50 * MiB

    def test_oversized_repository_with_lfs_is_fine(self, session: SessionContext) -> None:
        fixture = PreflightFixture(session)
        fixture.set_project(
            _gitlab_project(lfs_enabled=True, statistics={"repository_size": 150 * MiB, "lfs_objects_size": 0})
        )

        report = fixture.validator(large_repository_threshold=100 * MiB).run(_unit())

        assert report.findings == []