"""Migration orchestrator that drives one unit from preflight to summary.

The MigrationOrchestrator is the central coordinator of a unit. It:
1. Runs preflight and gates on the latest persisted report
2. Reconciles the destination project, repository and governance resources
3. Transfers repository content through the ContentTransport
4. Applies branch policies and optional enrichment hooks
5. Clears transient credentials and writes the unit summary

State Machine
-------------
    Pending ──preflight──► Validated ──► InProgress ──► Succeeded
                      └──► Blocked ──(force)──┘    └──► Failed

A unit never enters InProgress without a passing preflight report, unless
the caller passes ``force=True``.

Step Sequence
-------------
    ensure_project          project exists (created and polled if absent)
    ensure_repository       repository exists (replaced only under replace intent)
    ensure_governance       groups, memberships, baseline wiki and home page
    transfer_content        mirror source refs, push branches/tags (+ LFS)
    apply_branch_policies   policies on the default branch
    enrichment              default branch, then extra hooks
    clear_credentials       strip tokens from transient git config (always runs)

Error Handling
--------------
- A failing step aborts the remaining steps; they are recorded as skipped.
- The unit becomes Failed with the failing step and its NormalizedError.
- Nothing is rolled back. Reconciliation is idempotent, so running the unit
  again resumes from where it stopped without duplicating earlier work.
- Cancellation is checked between steps; a cancelled unit is Failed with the
  step name ``cancelled``.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Final

from .client import raise_normalized
from .exceptions import MigrationCancelledError, MigrationError
from .models import (
    ErrorKind,
    NormalizedError,
    ReconcileOutcome,
    ResourceDescriptor,
    SourceFacts,
    StepRecord,
    UnitStatus,
    UnitSummary,
    utc_now,
)
from .resources import COMMENT_REQUIREMENTS_POLICY, MINIMUM_REVIEWERS_POLICY, WORK_ITEM_LINKING_POLICY

if TYPE_CHECKING:
    from .gitlab_utils import GitLabSource
    from .models import MigrationUnit, PreflightReport, ReconciliationResult, RefTransferReport
    from .preflight import PreflightValidator
    from .protocols import ContentTransport, EnrichmentHook
    from .reconciler import Reconciler
    from .session import SessionContext
    from .store import ReportStore

logger = logging.getLogger(__name__)

_SYSTEM: Final[str] = "orchestrator"

SUCCEEDED: Final[str] = "succeeded"
FAILED: Final[str] = "failed"
SKIPPED: Final[str] = "skipped"


class CancellationToken:
    """Operator-abort signal shared by the orchestrator and the bulk coordinator."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, before: str) -> None:
        if self.cancelled:
            msg = f"Cancelled before {before}"
            raise MigrationCancelledError(msg)


@dataclass
class GroupSpec:
    name: str
    description: str = ""


@dataclass
class MembershipSpec:
    """Membership of a member (graph descriptor) in a group created by the plan."""

    member: str
    group: str


@dataclass
class GovernancePlan:
    """Governance resources every migrated unit gets in its destination project."""

    groups: list[GroupSpec] = field(default_factory=list)
    memberships: list[MembershipSpec] = field(default_factory=list)
    wiki_name: str | None = None  # defaults to "<project>.wiki"
    home_page_path: str = "/Home"
    home_page_content: str | None = None
    minimum_reviewers: int = 2
    require_work_item_linking: bool = True
    require_comment_resolution: bool = True
    project_attributes: dict[str, Any] = field(default_factory=lambda: {"source_control_type": "Git"})

    def policy_descriptors(self, project: str, repository_id: str, ref_name: str) -> list[ResourceDescriptor]:
        """Branch policies for one ref of one repository."""
        key = {"project": project, "repository_id": repository_id, "ref_name": ref_name}
        descriptors = [
            ResourceDescriptor(
                kind="branch_policy",
                key=key | {"policy_type": MINIMUM_REVIEWERS_POLICY},
                attributes={
                    "is_enabled": True,
                    "is_blocking": True,
                    "settings": {
                        "minimumApproverCount": self.minimum_reviewers,
                        "creatorVoteCounts": False,
                        "resetOnSourcePush": True,
                    },
                },
            )
        ]
        if self.require_work_item_linking:
            descriptors.append(
                ResourceDescriptor(
                    kind="branch_policy",
                    key=key | {"policy_type": WORK_ITEM_LINKING_POLICY},
                    attributes={"is_enabled": True, "is_blocking": True, "settings": {}},
                )
            )
        if self.require_comment_resolution:
            descriptors.append(
                ResourceDescriptor(
                    kind="branch_policy",
                    key=key | {"policy_type": COMMENT_REQUIREMENTS_POLICY},
                    attributes={"is_enabled": True, "is_blocking": True, "settings": {}},
                )
            )
        return descriptors


@dataclass
class _UnitRun:
    """Mutable state threaded through the steps of one unit run."""

    unit: MigrationUnit
    report: PreflightReport | None = None
    project: dict[str, Any] = field(default_factory=dict)
    repository: dict[str, Any] = field(default_factory=dict)
    facts: SourceFacts | None = None
    transfer: RefTransferReport | None = None
    steps: list[StepRecord] = field(default_factory=list)
    results: list[ReconciliationResult] = field(default_factory=list)
    current_step: str | None = None


class MigrationOrchestrator:
    """Runs migration units against one source and one destination.

    Usage:
        orchestrator = MigrationOrchestrator(
            session, source=GitLabSource(gitlab_client), reconciler=Reconciler(ado_client),
            content=GitContentTransfer(session), store=ReportStore(state_dir),
            preflight=PreflightValidator(source, ado_client, store=store),
        )
        summary = orchestrator.run(MigrationUnit("group/project", "TargetProject"))
    """

    def __init__(
        self,
        session: SessionContext,
        *,
        source: GitLabSource,
        reconciler: Reconciler,
        content: ContentTransport,
        store: ReportStore,
        preflight: PreflightValidator | None = None,
        governance: GovernancePlan | None = None,
        hooks: Sequence[EnrichmentHook] = (),
        cancellation: CancellationToken | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            session: Run-scoped session context
            source: GitLab metadata access
            reconciler: Reconciler bound to the destination call client
            content: Content transport (git)
            store: Artifact store for reports and summaries
            preflight: Validator run at the start of every unit; when None the
                latest persisted report is used as is
            governance: Governance plan (defaults to branch policies only)
            hooks: Extra enrichment hooks, run in order after the default branch is set
            cancellation: Operator-abort signal checked between steps
        """
        self.session = session
        self.source = source
        self.reconciler = reconciler
        self.content = content
        self.store = store
        self.preflight = preflight
        self.governance = governance or GovernancePlan()
        self.hooks = list(hooks)
        self.cancellation = cancellation or CancellationToken()

        self._steps: list[tuple[str, Callable[[_UnitRun], str]]] = [
            ("ensure_project", self._ensure_project),
            ("ensure_repository", self._ensure_repository),
            ("ensure_governance", self._ensure_governance),
            ("transfer_content", self._transfer_content),
            ("apply_branch_policies", self._apply_branch_policies),
            ("enrichment", self._enrichment),
        ]

    def validate(self, unit: MigrationUnit) -> PreflightReport:
        """Run preflight and move the unit to Validated or Blocked."""
        if self.preflight is None:
            msg = "No preflight validator configured"
            raise MigrationError(msg)
        report = self.preflight.run(unit)
        unit.transition(UnitStatus.VALIDATED if report.passed else UnitStatus.BLOCKED)
        return report

    def run(self, unit: MigrationUnit, *, force: bool = False) -> UnitSummary:
        """Migrate one unit.

        Args:
            unit: The unit to migrate; its status and timestamps are updated in place
            force: Proceed even if the latest preflight report is blocking or missing

        Returns:
            UnitSummary, also written to the store
        """
        run = _UnitRun(unit=unit)
        unit.failed_step = None
        unit.error = None
        force = force or unit.force

        if not self._gate(run, force=force):
            self._clear_credentials(run)
            return self._finish(run)

        unit.started_at = utc_now()
        unit.finished_at = None
        unit.transition(UnitStatus.IN_PROGRESS, override=force)
        logger.info(f"Migrating {unit.source} -> {unit.destination_project}/{unit.destination_repository}")

        completed = False
        try:
            self._execute(run)
            completed = True
        except BaseException as e:
            if isinstance(e, Exception):
                kind = ErrorKind.HTTP
                message = self.session.redactor.redact(str(e)) or type(e).__name__
            else:
                # KeyboardInterrupt (second Ctrl+C) or SystemExit mid-step
                kind = ErrorKind.CANCELLED
                message = f"interrupted by {type(e).__name__}"
            step = run.current_step or "interrupted"
            self._fail(run, step, self._error(message, step, kind=kind))
            raise
        finally:
            self._clear_credentials(run)
            summary = self._finish(run, completed=completed)
        return summary

    def _gate(self, run: _UnitRun, *, force: bool) -> bool:
        unit = run.unit
        started = utc_now()
        t0 = time.monotonic()
        if self.preflight is not None:
            self.validate(unit)

        # The persisted report is authoritative, whoever produced it
        report = self.store.load_preflight(unit.unit_id)
        run.report = report
        if report is not None:
            run.facts = report.source
            if report.passed and unit.status != UnitStatus.VALIDATED:
                unit.transition(UnitStatus.VALIDATED)
            elif not report.passed and unit.status != UnitStatus.BLOCKED:
                unit.transition(UnitStatus.BLOCKED)

        if report is not None and report.passed:
            detail = "passed"
        elif force:
            reason = "no preflight report" if report is None else self._blocking_codes(report)
            logger.warning(f"Preflight override for {unit.unit_id}: proceeding despite {reason}")
            detail = f"overridden ({reason})"
        else:
            reason = "no preflight report" if report is None else self._blocking_codes(report)
            error = NormalizedError(
                system=_SYSTEM, endpoint="preflight", status=None, kind=ErrorKind.VALIDATION, message=reason
            )
            run.steps.append(
                StepRecord("preflight", FAILED, started, round(time.monotonic() - t0, 3), "blocked", error)
            )
            if unit.status != UnitStatus.BLOCKED:
                unit.transition(UnitStatus.BLOCKED)
            unit.failed_step = "preflight"
            unit.error = error
            logger.error(f"Unit {unit.unit_id} blocked by preflight: {reason}")
            return False

        run.steps.append(StepRecord("preflight", SUCCEEDED, started, round(time.monotonic() - t0, 3), detail))
        return True

    @staticmethod
    def _blocking_codes(report: PreflightReport) -> str:
        return ", ".join(finding.code for finding in report.blocking)

    def _execute(self, run: _UnitRun) -> None:
        for index, (name, step) in enumerate(self._steps):
            try:
                self.cancellation.raise_if_cancelled(name)
            except MigrationCancelledError as e:
                logger.warning(f"Unit {run.unit.unit_id}: {e}")
                error = self._error(str(e), name, kind=ErrorKind.CANCELLED)
                run.steps.append(StepRecord("cancelled", FAILED, utc_now(), 0.0, str(e), error))
                self._fail(run, "cancelled", error)
                self._skip(run, index)
                return

            run.current_step = name
            started = utc_now()
            t0 = time.monotonic()
            try:
                detail = step(run)
            except MigrationError as e:
                duration = round(time.monotonic() - t0, 3)
                error = e.normalized or self._error(self.session.redactor.redact(str(e)), name)
                logger.error(f"Step {name} failed for {run.unit.unit_id}: {error}")
                run.steps.append(StepRecord(name, FAILED, started, duration, "", error))
                self._fail(run, name, error)
                self._skip(run, index + 1)
                return
            except Exception:
                logger.exception(f"Step {name} crashed for {run.unit.unit_id}")
                run.steps.append(StepRecord(name, FAILED, started, round(time.monotonic() - t0, 3)))
                self._skip(run, index + 1)
                raise
            except BaseException as e:
                logger.error(f"Step {name} interrupted for {run.unit.unit_id} ({type(e).__name__})")  # noqa: TRY400
                run.steps.append(StepRecord(name, FAILED, started, round(time.monotonic() - t0, 3), "interrupted"))
                self._skip(run, index + 1)
                raise
            duration = round(time.monotonic() - t0, 3)
            logger.info(f"Step {name} succeeded in {duration:.1f}s: {detail}")
            run.steps.append(StepRecord(name, SUCCEEDED, started, duration, detail))
        run.current_step = None

    def _skip(self, run: _UnitRun, start: int) -> None:
        for name, _ in self._steps[start:]:
            run.steps.append(StepRecord(name, SKIPPED))

    @staticmethod
    def _error(message: str, endpoint: str | None, *, kind: ErrorKind = ErrorKind.HTTP) -> NormalizedError:
        return NormalizedError(system=_SYSTEM, endpoint=endpoint or "-", status=None, kind=kind, message=message)

    @staticmethod
    def _fail(run: _UnitRun, step: str, error: NormalizedError) -> None:
        run.current_step = None
        run.unit.failed_step = step
        run.unit.error = error
        run.unit.transition(UnitStatus.FAILED)

    def _clear_credentials(self, run: _UnitRun) -> None:
        started = utc_now()
        t0 = time.monotonic()
        released = self.session.release_transient_credentials(run.unit.unit_id)
        run.steps.append(
            StepRecord(
                "clear_credentials",
                SUCCEEDED,
                started,
                round(time.monotonic() - t0, 3),
                f"{released} transient credential store(s) cleaned",
            )
        )

    def _finish(self, run: _UnitRun, *, completed: bool = False) -> UnitSummary:
        unit = run.unit
        if completed and unit.status == UnitStatus.IN_PROGRESS:
            unit.transition(UnitStatus.SUCCEEDED)
        if unit.started_at is not None:
            unit.finished_at = utc_now()

        summary = UnitSummary(
            unit_id=unit.unit_id,
            source=unit.source,
            destination_project=unit.destination_project,
            destination_repository=unit.destination_repository,
            status=unit.status,
            steps=run.steps,
            reconciliation=run.results,
            transfer=run.transfer,
            failed_step=unit.failed_step,
            error=unit.error,
        )
        if run.results:
            self.store.save_reconciliation(unit.unit_id, run.results)
        unit.summary_report = str(self.store.save_summary(summary))
        logger.info(f"Unit {unit.unit_id} finished with status {unit.status}")
        return summary

    # Steps

    def _ensure(self, run: _UnitRun, desired: ResourceDescriptor) -> ReconciliationResult:
        """Reconcile one resource; a Failed outcome aborts the step."""
        result = self.reconciler.ensure(desired)
        run.results.append(result)
        if result.outcome == ReconcileOutcome.FAILED:
            if result.error is not None:
                raise_normalized(result.error)
            msg = f"Reconciling {desired.label} failed: {result.message}"
            raise MigrationError(msg)
        return result

    def _ensure_project(self, run: _UnitRun) -> str:
        desired = ResourceDescriptor(
            kind="project",
            key={"project": run.unit.destination_project},
            attributes=dict(self.governance.project_attributes),
        )
        result = self._ensure(run, desired)
        run.project = result.state
        return f"project {run.unit.destination_project}: {result.outcome}"

    def _repository_descriptor(self, run: _UnitRun, *, replace: bool, **attributes: Any) -> ResourceDescriptor:
        return ResourceDescriptor(
            kind="repository",
            key={"project": run.unit.destination_project, "repository": run.unit.destination_repository},
            attributes={"project_id": run.project.get("id"), **attributes},
            replace=replace,
        )

    def _ensure_repository(self, run: _UnitRun) -> str:
        result = self._ensure(run, self._repository_descriptor(run, replace=run.unit.replace))
        run.repository = result.state
        return f"repository {run.unit.destination_repository}: {result.outcome}"

    def _ensure_governance(self, run: _UnitRun) -> str:
        project = run.unit.destination_project
        plan = self.governance
        outcomes: list[ReconciliationResult] = []

        group_descriptors: dict[str, str] = {}
        for group in plan.groups:
            result = self._ensure(
                run,
                ResourceDescriptor(
                    kind="group",
                    key={"project": project, "group": group.name},
                    attributes={"project_id": run.project.get("id"), "description": group.description},
                ),
            )
            outcomes.append(result)
            if result.state.get("descriptor"):
                group_descriptors[group.name] = result.state["descriptor"]

        for membership in plan.memberships:
            container = group_descriptors.get(membership.group)
            if container is None:
                msg = f"Membership refers to group '{membership.group}' which is not part of the plan"
                raise MigrationError(msg)
            outcomes.append(
                self._ensure(
                    run,
                    ResourceDescriptor(kind="membership", key={"member": membership.member, "group": container}),
                )
            )

        wiki = self._ensure(
            run,
            ResourceDescriptor(
                kind="wiki",
                key={"project": project, "wiki": plan.wiki_name or f"{project}.wiki"},
                attributes={"project_id": run.project.get("id"), "type": "projectWiki"},
            ),
        )
        outcomes.append(wiki)

        if plan.home_page_content is not None and wiki.state.get("id"):
            outcomes.append(
                self._ensure(
                    run,
                    ResourceDescriptor(
                        kind="wiki_page",
                        key={"project": project, "wiki_id": wiki.state["id"], "path": plan.home_page_path},
                        attributes={"content": plan.home_page_content},
                    ),
                )
            )

        return self._describe(outcomes)

    @staticmethod
    def _describe(results: Sequence[ReconciliationResult]) -> str:
        counts: dict[str, int] = {}
        for result in results:
            counts[result.outcome] = counts.get(result.outcome, 0) + 1
        return f"{len(results)} resources: " + ", ".join(f"{n} {outcome}" for outcome, n in sorted(counts.items()))

    def _source_facts(self, run: _UnitRun) -> SourceFacts:
        if run.facts is not None and run.facts.http_url_to_repo:
            return run.facts
        # Forced run without a usable preflight report
        result = self.source.get_project(run.unit.source)
        result.raise_for_error()
        body = result.json()
        branches = self.source.list_refs(body.get("id", run.unit.source), "branches")
        if branches.error is not None:
            raise_normalized(branches.error)
        run.facts = SourceFacts(
            project_id=body.get("id"),
            path_with_namespace=body.get("path_with_namespace", run.unit.source),
            http_url_to_repo=body.get("http_url_to_repo", ""),
            default_branch=body.get("default_branch"),
            lfs_enabled=bool(body.get("lfs_enabled", False)),
            branches=branches.names,
        )
        return run.facts

    def _uses_lfs(self, run: _UnitRun, facts: SourceFacts) -> bool:
        if run.report is not None and run.report.metrics.get("lfs_objects_size") is not None:
            return bool(run.report.metrics["lfs_objects_size"])
        return facts.lfs_enabled

    def _transfer_content(self, run: _UnitRun) -> str:
        facts = self._source_facts(run)
        if not facts.branches:
            return "source repository is empty, nothing to push"
        remote_url = run.repository.get("remote_url")
        if not remote_url:
            msg = f"Repository {run.unit.destination_repository} has no remote URL"
            raise MigrationError(msg)
        run.transfer = self.content.transfer(
            run.unit.unit_id,
            facts.http_url_to_repo,
            remote_url,
            lfs=self._uses_lfs(run, facts),
            force=run.unit.sync,
        )
        _ = self.store.save_transfer(run.unit.unit_id, run.repository.get("id"), run.transfer)
        lfs = ", LFS objects transferred" if run.transfer.lfs_transferred else ""
        return f"{len(run.transfer.refs_pushed)} refs pushed ({len(run.transfer.refs_fetched)} fetched){lfs}"

    def _default_ref(self, run: _UnitRun) -> str | None:
        facts = run.facts
        if facts is None or not facts.default_branch:
            return None
        if facts.branches and facts.default_branch not in facts.branches:
            return None
        return f"refs/heads/{facts.default_branch}"

    def _apply_branch_policies(self, run: _UnitRun) -> str:
        ref_name = self._default_ref(run)
        if ref_name is None:
            return "no default branch, no policies applied"
        descriptors = self.governance.policy_descriptors(run.unit.destination_project, run.repository["id"], ref_name)
        return self._describe([self._ensure(run, desired) for desired in descriptors])

    def _enrichment(self, run: _UnitRun) -> str:
        details: list[str] = []
        ref_name = self._default_ref(run)
        if ref_name is not None and run.transfer is not None:
            result = self._ensure(run, self._repository_descriptor(run, replace=False, default_branch=ref_name))
            run.repository = result.state
            details.append(f"default branch {ref_name}: {result.outcome}")

        for hook in self.hooks:
            self.cancellation.raise_if_cancelled(f"enrichment hook {hook.name}")
            details.append(f"{hook.name}: {hook(run.unit, run.repository, self.reconciler, self.session)}")
        return "; ".join(details) or "nothing to do"

