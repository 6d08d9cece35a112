"""
Command-line interface for the GitLab to Azure DevOps migration tool.
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from . import azure_devops as ado
from . import gitlab_utils as glu
from .bulk import BulkCoordinator, load_descriptor, state_path_for
from .client import CallClient
from .exceptions import MigrationError
from .git_migration import GitContentTransfer
from .models import MigrationUnit, UnitStatus
from .orchestrator import CancellationToken, GovernancePlan, GroupSpec, MembershipSpec, MigrationOrchestrator
from .preflight import DEFAULT_LARGE_REPOSITORY_THRESHOLD, PreflightValidator
from .reconciler import Reconciler
from .session import DEFAULT_API_VERSION, SUPPORTED_API_VERSIONS, RetryPolicy, SessionContext
from .store import ReportStore, read_json
from .utils import setup_logging

if TYPE_CHECKING:
    from types import FrameType

    from .models import PreflightReport, UnitSummary
    from .protocols import CallTransport

logger: logging.Logger = logging.getLogger(__name__)


def _add_unit_arguments(parser: argparse.ArgumentParser) -> None:
    _ = parser.add_argument("gitlab_project", help="GitLab project path (namespace/project)")
    _ = parser.add_argument("azure_project", help="Azure DevOps project name")
    _ = parser.add_argument(
        "--repository", "-r", help="Azure DevOps repository name (default: last segment of the GitLab path)"
    )
    intent = parser.add_mutually_exclusive_group()
    _ = intent.add_argument(
        "--replace", action="store_true", help="Delete and recreate a destination repository that already has commits"
    )
    _ = intent.add_argument(
        "--sync", action="store_true", help="Force-push source refs over a destination repository that has commits"
    )


def parse_arguments(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    common = argparse.ArgumentParser(add_help=False)
    _ = common.add_argument("--gitlab-url", help="GitLab base URL (default: $GITLAB_URL or https://gitlab.com)")
    _ = common.add_argument("--azure-url", help="Azure DevOps organization URL (default: $AZURE_DEVOPS_URL)")
    _ = common.add_argument(
        "--azure-graph-url",
        help="Azure DevOps Graph API URL (default: $AZURE_DEVOPS_GRAPH_URL, else derived from --azure-url)",
    )
    _ = common.add_argument(
        "--gitlab-pass-token", help="Path for GitLab token in pass utility (default: $GITLAB_TOKEN or gitlab/cli/ro_token)"
    )
    _ = common.add_argument(
        "--azure-pass-token",
        help="Path for Azure DevOps PAT in pass utility (default: $AZURE_DEVOPS_PAT or azure-devops/cli/pat)",
    )
    _ = common.add_argument(
        "--api-version",
        choices=SUPPORTED_API_VERSIONS,
        default=DEFAULT_API_VERSION,
        help=f"Azure DevOps REST API version (default: {DEFAULT_API_VERSION})",
    )
    _ = common.add_argument("--retry-attempts", type=int, default=3, help="Retries after a transient failure (default: 3)")
    _ = common.add_argument(
        "--retry-backoff", type=float, default=5.0, help="Backoff base in seconds, doubled per retry (default: 5)"
    )
    _ = common.add_argument("--insecure", action="store_true", help="Disable TLS certificate validation (insecure!)")
    _ = common.add_argument(
        "--request-timeout", type=float, default=60.0, help="Per-request timeout in seconds (default: 60)"
    )
    _ = common.add_argument(
        "--transfer-timeout", type=float, default=3600.0, help="Per git command timeout in seconds (default: 3600)"
    )
    _ = common.add_argument(
        "--state-dir", type=Path, default=Path("migration-state"), help="Directory for reports and summaries"
    )
    _ = common.add_argument("--cache-dir", type=Path, help="Keep source mirrors here between runs (default: temporary)")
    _ = common.add_argument(
        "--large-repository-threshold",
        type=int,
        default=DEFAULT_LARGE_REPOSITORY_THRESHOLD,
        help="Repository size in bytes above which preflight warns when LFS is not enabled",
    )
    _ = common.add_argument(
        "--governance", type=Path, help="JSON file with groups, memberships, wiki and branch policy settings"
    )
    _ = common.add_argument(
        "--verbose", "-v", action="count", default=0, help="Increase verbosity (-v: info, -vv: debug with call traces)"
    )

    parser = argparse.ArgumentParser(description="Migrate GitLab projects to Azure DevOps repositories")
    subparsers = parser.add_subparsers(dest="command", required=True)

    preflight = subparsers.add_parser("preflight", parents=[common], help="Validate a unit without changing anything")
    _add_unit_arguments(preflight)

    migrate = subparsers.add_parser("migrate", parents=[common], help="Preflight and migrate one unit")
    _add_unit_arguments(migrate)
    _ = migrate.add_argument("--force", action="store_true", help="Proceed even if preflight reports blocking findings")

    bulk = subparsers.add_parser("bulk", parents=[common], help="Migrate every unit of a batch descriptor")
    _ = bulk.add_argument("descriptor", type=Path, help="Batch descriptor (JSON)")
    _ = bulk.add_argument("--workers", type=int, default=1, help="Units migrated in parallel (default: 1)")
    _ = bulk.add_argument("--stop-on-failure", action="store_true", help="Stop the batch at the first failed unit")

    return parser.parse_args(argv)


def build_session(args: argparse.Namespace) -> SessionContext:
    """Create the run's session from flags, environment and the pass store."""
    azure_url = ado.get_url(args.azure_url)
    if not azure_url:
        msg = "Azure DevOps URL missing: pass --azure-url or set AZURE_DEVOPS_URL"
        raise MigrationError(msg)
    return SessionContext(
        gitlab_url=glu.get_url(args.gitlab_url),
        azure_devops_url=azure_url,
        gitlab_token=glu.get_token(args.gitlab_pass_token),
        azure_devops_token=ado.get_token(args.azure_pass_token),
        api_version=args.api_version,
        retry_policy=RetryPolicy(attempts=args.retry_attempts, backoff_base=args.retry_backoff),
        verify_tls=not args.insecure,
        request_timeout=args.request_timeout,
        transfer_timeout=args.transfer_timeout,
        graph_url=ado.get_graph_url(args.azure_graph_url),
    )


def load_governance(path: Path | None) -> GovernancePlan:
    """Read a governance plan file; the home page content may come from a separate file."""
    if path is None:
        return GovernancePlan()
    data = read_json(path)
    if data is None:
        msg = f"Governance file not found: {path}"
        raise MigrationError(msg)
    home_page_content: str | None = data.get("home_page_content")
    if data.get("home_page_file"):
        home_page_content = (path.parent / data["home_page_file"]).read_text(encoding="utf-8")
    plan = GovernancePlan(
        groups=[GroupSpec(name=g["name"], description=g.get("description", "")) for g in data.get("groups", [])],
        memberships=[MembershipSpec(member=m["member"], group=m["group"]) for m in data.get("memberships", [])],
        wiki_name=data.get("wiki_name"),
        home_page_content=home_page_content,
        minimum_reviewers=int(data.get("minimum_reviewers", 2)),
        require_work_item_linking=bool(data.get("require_work_item_linking", True)),
        require_comment_resolution=bool(data.get("require_comment_resolution", True)),
    )
    if data.get("home_page_path"):
        plan.home_page_path = data["home_page_path"]
    return plan


@dataclass
class Components:
    transports: list[CallTransport]
    preflight: PreflightValidator
    orchestrator: MigrationOrchestrator
    store: ReportStore

    def close(self) -> None:
        for transport in self.transports:
            transport.close()


def build_components(session: SessionContext, args: argparse.Namespace, cancellation: CancellationToken) -> Components:
    gitlab_transport = glu.GitLabTransport(session)
    azure_transport = ado.AzureDevOpsTransport(session)
    gitlab_client = CallClient(gitlab_transport, session)
    azure_client = CallClient(azure_transport, session)

    source = glu.GitLabSource(gitlab_client)
    store = ReportStore(args.state_dir)
    preflight = PreflightValidator(
        source, azure_client, store=store, large_repository_threshold=args.large_repository_threshold
    )
    orchestrator = MigrationOrchestrator(
        session,
        source=source,
        reconciler=Reconciler(azure_client),
        content=GitContentTransfer(session, cache_root=args.cache_dir),
        store=store,
        preflight=preflight,
        governance=load_governance(args.governance),
        cancellation=cancellation,
    )
    return Components([gitlab_transport, azure_transport], preflight, orchestrator, store)


def _unit_from_args(args: argparse.Namespace) -> MigrationUnit:
    return MigrationUnit(
        source=args.gitlab_project,
        destination_project=args.azure_project,
        destination_repository=args.repository or "",
        force=getattr(args, "force", False),
        replace=args.replace,
        sync=args.sync,
    )


def _print_preflight_report(report: PreflightReport) -> None:
    """Print a preflight report to stdout."""
    print(f"Preflight for {report.unit_id}: {'PASSED' if report.passed else 'BLOCKED'}")
    for finding in report.findings:
        print(f"  [{finding.severity}] {finding.code}: {finding.message}")
    metrics = ", ".join(f"{key}={value}" for key, value in report.metrics.items() if value is not None)
    if metrics:
        print(f"  Metrics: {metrics}")


def _print_unit_summary(summary: UnitSummary) -> None:
    """Print a unit summary to stdout."""
    print(f"{summary.unit_id}: {summary.status}")
    for step in summary.steps:
        detail = f" - {step.detail}" if step.detail else ""
        error = f" ({step.error})" if step.error else ""
        print(f"  {step.name:<22} {step.outcome:<9} {step.duration_seconds:>8.1f}s{detail}{error}")


def _print_bulk_summary(summary: dict[str, Any]) -> None:
    """Print a batch summary to stdout."""
    counts = ", ".join(f"{status}={n}" for status, n in summary["counts"].items() if n)
    print(f"Batch: {summary['total']} unit(s) in {summary['elapsed_seconds']:.1f}s ({counts})")
    for failure in summary["failures"]:
        print(f"  {failure['unit_id']}: {failure['status']} at {failure['failed_step']}: {failure['reason']}")


def _install_interrupt_handler(cancellation: CancellationToken) -> None:
    """First Ctrl+C cancels between steps, a second one interrupts immediately."""

    def handler(_signum: int, _frame: FrameType | None) -> None:
        if cancellation.cancelled:
            raise KeyboardInterrupt
        logger.warning("Cancellation requested, stopping after the current step (press Ctrl+C again to abort)")
        cancellation.cancel()

    signal.signal(signal.SIGINT, handler)


def run_command(args: argparse.Namespace, components: Components) -> int:
    """Execute the selected subcommand and return the process exit code."""
    if args.command == "preflight":
        report = components.preflight.run(_unit_from_args(args))
        _print_preflight_report(report)
        return 0 if report.passed else 1

    if args.command == "migrate":
        summary = components.orchestrator.run(_unit_from_args(args))
        _print_unit_summary(summary)
        return 0 if summary.status == UnitStatus.SUCCEEDED else 1

    bulk = load_descriptor(args.descriptor)
    if args.stop_on_failure:
        bulk.stop_on_failure = True
    coordinator = BulkCoordinator(components.orchestrator, components.store, max_workers=args.workers)
    summary = coordinator.run(bulk, state_path=state_path_for(args.descriptor))
    _print_bulk_summary(summary)
    return 0 if not summary["failures"] and summary["counts"][UnitStatus.SUCCEEDED.value] == summary["total"] else 1


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    args = parse_arguments(argv)

    try:
        session = build_session(args)
    except MigrationError as e:
        setup_logging(verbosity=args.verbose)
        logger.error(str(e))  # noqa: TRY400
        sys.exit(1)

    with session:
        setup_logging(verbosity=args.verbose, redactor=session.redactor)
        cancellation = CancellationToken()
        _install_interrupt_handler(cancellation)
        components: Components | None = None
        try:
            components = build_components(session, args, cancellation)
            exit_code = run_command(args, components)
        except MigrationError as e:
            logger.error(f"Migration failed: {e}")  # noqa: TRY400
            exit_code = 1
        except Exception:
            logger.exception("Migration failed")
            exit_code = 1
        finally:
            if components is not None:
                components.close()

    sys.exit(exit_code)
