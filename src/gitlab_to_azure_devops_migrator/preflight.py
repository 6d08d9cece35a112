"""Preflight validation: read-only checks that gate a unit before any mutation.

Nothing here writes to either platform. Findings are classified as Blocking,
Warning or Info; the report passes iff no finding is Blocking. The report is
persisted per unit so the orchestrator can gate on the latest run.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Final

from . import azure_devops as ado
from .git_migration import tool_available
from .models import ErrorKind, PreflightReport, ResourceDescriptor, Severity, SourceFacts
from .resources import ProjectKind, RepositoryKind

if TYPE_CHECKING:
    from .client import CallClient
    from .gitlab_utils import GitLabSource
    from .models import MigrationUnit, NormalizedError
    from .store import ReportStore

logger: logging.Logger = logging.getLogger(__name__)

DEFAULT_LARGE_REPOSITORY_THRESHOLD: Final[int] = 100 * 1024 * 1024  # 100 MiB

ToolProbe = Callable[..., bool]


def _is_auth_failure(error: NormalizedError | None) -> bool:
    return error is not None and error.kind == ErrorKind.AUTHORIZATION


class PreflightValidator:
    """Runs the preflight checks of one migration unit."""

    def __init__(
        self,
        source: GitLabSource,
        destination: CallClient,
        *,
        store: ReportStore | None = None,
        tool_probe: ToolProbe = tool_available,
        large_repository_threshold: int = DEFAULT_LARGE_REPOSITORY_THRESHOLD,
    ) -> None:
        self.source = source
        self.destination = destination
        self.store = store
        self.tool_probe = tool_probe
        self.large_repository_threshold = large_repository_threshold
        self._projects = ProjectKind()
        self._repositories = RepositoryKind()

    def run(self, unit: MigrationUnit) -> PreflightReport:
        """Validate a unit and persist the report (when a store is configured)."""
        logger.info(f"Running preflight for {unit.source} -> {unit.destination_project}/{unit.destination_repository}")
        report = PreflightReport(unit_id=unit.unit_id)

        self._check_tools(report)
        source_ok = self._check_source(unit, report)
        self._check_destination(unit, report)
        if source_ok:
            self._check_large_objects(report)

        for finding in report.findings:
            level = logging.ERROR if finding.severity == Severity.BLOCKING else logging.INFO
            logger.log(level, f"[{finding.severity}] {finding.code}: {finding.message}")
        logger.info(f"Preflight {'passed' if report.passed else 'blocked'} for {unit.unit_id}")

        if self.store is not None:
            unit.preflight_report = str(self.store.save_preflight(report))
        return report

    def _check_tools(self, report: PreflightReport) -> None:
        if not self.tool_probe("git", "--version"):
            report.add(Severity.BLOCKING, "GIT_UNAVAILABLE", "git is not installed or not runnable")

    def _check_source(self, unit: MigrationUnit, report: PreflightReport) -> bool:
        credentials = self.source.check_credentials()
        if not credentials.ok:
            if _is_auth_failure(credentials.error):
                report.add(Severity.BLOCKING, "SOURCE_AUTH_INVALID", f"GitLab rejected the token: {credentials.error}")
            else:
                report.add(Severity.BLOCKING, "SOURCE_INACCESSIBLE", f"GitLab is unreachable: {credentials.error}")
            return False

        project = self.source.get_project(unit.source)
        if not project.ok:
            report.add(
                Severity.BLOCKING,
                "SOURCE_INACCESSIBLE",
                f"Source project {unit.source} is not accessible: {project.error}",
            )
            return False

        body = project.json()
        statistics: dict[str, Any] = body.get("statistics") or {}
        report.source = SourceFacts(
            project_id=body.get("id"),
            path_with_namespace=body.get("path_with_namespace", unit.source),
            http_url_to_repo=body.get("http_url_to_repo", ""),
            default_branch=body.get("default_branch"),
            lfs_enabled=bool(body.get("lfs_enabled", False)),
        )

        for ref_type in ("branches", "tags"):
            listing = self.source.list_refs(body.get("id", unit.source), ref_type)
            if listing.error is not None:
                report.add(
                    Severity.BLOCKING,
                    "SOURCE_INACCESSIBLE",
                    f"Could not list {ref_type} of {unit.source}: {listing.error}",
                )
                return False
            setattr(report.source, ref_type, listing.names)

        branch_count = len(report.source.branches)
        tag_count = len(report.source.tags)
        report.metrics.update(
            {
                "repository_size": statistics.get("repository_size"),
                "lfs_objects_size": statistics.get("lfs_objects_size"),
                "branch_count": branch_count,
                "tag_count": tag_count,
                "ref_count": branch_count + tag_count,
            }
        )
        if not statistics:
            report.add(
                Severity.WARNING,
                "SOURCE_STATISTICS_UNAVAILABLE",
                "Repository statistics are not visible with this token; size checks skipped",
            )
        if branch_count == 0:
            report.add(Severity.WARNING, "SOURCE_REPOSITORY_EMPTY", f"{unit.source} has no branches")
        return True

    def _check_large_objects(self, report: PreflightReport) -> None:
        repository_size = report.metrics.get("repository_size") or 0
        lfs_size = report.metrics.get("lfs_objects_size") or 0
        over_threshold = max(0, repository_size - self.large_repository_threshold)
        # Bytes that live (or should live) in large-object storage
        report.metrics["large_object_estimate"] = lfs_size if lfs_size else over_threshold

        if lfs_size and not self.tool_probe("git", "lfs", "version"):
            report.add(
                Severity.BLOCKING,
                "GIT_LFS_UNAVAILABLE",
                f"Source stores {lfs_size} bytes of LFS objects but git lfs is not installed",
            )
        if over_threshold and not report.source.lfs_enabled:
            report.add(
                Severity.WARNING,
                "REPOSITORY_OVERSIZED",
                f"Repository is {repository_size} bytes (threshold {self.large_repository_threshold}) "
                "and large-object storage is not enabled",
            )

    def _check_destination(self, unit: MigrationUnit, report: PreflightReport) -> None:
        credentials = ado.check_credentials(self.destination)
        if not credentials.ok:
            if _is_auth_failure(credentials.error):
                report.add(
                    Severity.BLOCKING, "DESTINATION_AUTH_INVALID", f"Azure DevOps rejected the PAT: {credentials.error}"
                )
            else:
                report.add(
                    Severity.BLOCKING, "DESTINATION_PROBE_FAILED", f"Azure DevOps is unreachable: {credentials.error}"
                )
            return

        project = self._projects.read(
            self.destination, ResourceDescriptor(kind="project", key={"project": unit.destination_project})
        )
        if project.error is not None:
            self._probe_failed(report, f"project {unit.destination_project}", project.error)
            return
        if project.state is None:
            return
        report.add(Severity.INFO, "DESTINATION_PROJECT_EXISTS", f"Project {unit.destination_project} already exists")

        repository = self._repositories.read(
            self.destination,
            ResourceDescriptor(
                kind="repository",
                key={"project": unit.destination_project, "repository": unit.destination_repository},
            ),
        )
        if repository.error is not None:
            self._probe_failed(report, f"repository {unit.destination_repository}", repository.error)
            return
        if repository.state is None:
            return

        name = f"{unit.destination_project}/{unit.destination_repository}"
        if not repository.state.get("has_commits"):
            report.add(Severity.INFO, "DESTINATION_REPOSITORY_EXISTS", f"Repository {name} exists and is empty")
        elif unit.replace:
            report.add(
                Severity.WARNING,
                "DESTINATION_REPOSITORY_WILL_BE_REPLACED",
                f"Repository {name} has commits and will be deleted and recreated",
            )
        elif unit.sync:
            report.add(
                Severity.WARNING,
                "DESTINATION_REPOSITORY_WILL_BE_SYNCED",
                f"Repository {name} has commits; refs will be force-pushed over it",
            )
        elif self._previously_transferred(unit, repository.state.get("id")):
            report.add(
                Severity.INFO,
                "DESTINATION_REPOSITORY_RESUMED",
                f"Repository {name} holds content pushed by an earlier run of this unit",
            )
        else:
            report.add(
                Severity.BLOCKING,
                "DESTINATION_REPOSITORY_NOT_EMPTY",
                f"Repository {name} already has commits; use replace or sync intent",
            )

    def _previously_transferred(self, unit: MigrationUnit, repository_id: str | None) -> bool:
        """Whether an earlier run of this unit pushed content into this very repository.

        Only a completed transfer counts; a failed push may have been rejected before
        any ref landed, so the commits could belong to someone else.
        """
        if self.store is None:
            return False
        marker = self.store.load_transfer(unit.unit_id)
        if not marker:
            return False
        recorded = marker.get("repository_id")
        # A recreated repository with the same name is not the one we pushed to
        return recorded is None or repository_id is None or recorded == repository_id

    @staticmethod
    def _probe_failed(report: PreflightReport, what: str, error: NormalizedError) -> None:
        if error.kind == ErrorKind.AUTHORIZATION:
            report.add(Severity.BLOCKING, "DESTINATION_AUTH_INVALID", f"Not authorized to read {what}: {error}")
        else:
            report.add(Severity.BLOCKING, "DESTINATION_PROBE_FAILED", f"Could not probe {what}: {error}")
