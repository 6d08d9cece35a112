"""
Tests for CLI module.
"""

import json
import logging
import signal
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock, patch

import pytest

from gitlab_to_azure_devops_migrator import cli
from gitlab_to_azure_devops_migrator.cli import load_governance, main, parse_arguments
from gitlab_to_azure_devops_migrator.exceptions import MigrationError
from gitlab_to_azure_devops_migrator.models import PreflightReport, Severity, StepRecord, UnitStatus, UnitSummary
from gitlab_to_azure_devops_migrator.orchestrator import CancellationToken
from gitlab_to_azure_devops_migrator.redaction import RedactingFilter, SecretRedactor
from gitlab_to_azure_devops_migrator.utils import setup_logging


@pytest.mark.unit
class TestParseArguments:
    def test_migrate_defaults(self) -> None:
        args = parse_arguments(["migrate", "group/app", "Platform"])

        assert args.command == "migrate"
        assert args.gitlab_project == "group/app"
        assert args.azure_project == "Platform"
        assert args.repository is None
        assert args.api_version == "7.1"
        assert args.retry_attempts == 3
        assert args.retry_backoff == 5.0
        assert args.state_dir == Path("migration-state")
        assert (args.force, args.replace, args.sync, args.insecure) == (False, False, False, False)

    def test_replace_and_sync_are_exclusive(self) -> None:
        with pytest.raises(SystemExit):
            _ = parse_arguments(["migrate", "group/app", "Platform", "--replace", "--sync"])

    def test_unsupported_api_version(self) -> None:
        with pytest.raises(SystemExit):
            _ = parse_arguments(["preflight", "group/app", "Platform", "--api-version", "5.1"])

    def test_bulk_options(self) -> None:
        args = parse_arguments(["bulk", "batch.json", "--workers", "4", "--stop-on-failure", "-vv"])

        assert args.descriptor == Path("batch.json")
        assert args.workers == 4
        assert args.stop_on_failure is True
        assert args.verbose == 2

    def test_preflight_has_no_force(self) -> None:
        args = parse_arguments(["preflight", "group/app", "Platform", "-r", "app-legacy"])

        assert args.repository == "app-legacy"
        assert not hasattr(args, "force")


@pytest.mark.unit
class TestSetupLogging:
    """Test setup_logging verbosity levels."""

    def _setup(self, tmp_path: Path, **kwargs: Any) -> list[logging.Handler]:
        root_logger = logging.getLogger()
        original_handlers = root_logger.handlers[:]
        original_level = root_logger.level
        root_logger.handlers.clear()
        try:
            setup_logging(log_file=tmp_path / "migration.log", **kwargs)
            return root_logger.handlers[:]
        finally:
            for h in root_logger.handlers:
                h.close()
            root_logger.handlers = original_handlers
            root_logger.setLevel(original_level)

    @pytest.mark.parametrize(
        ("verbosity", "level"), [(0, logging.WARNING), (1, logging.INFO), (2, logging.DEBUG), (3, logging.DEBUG)]
    )
    def test_console_level(self, tmp_path: Path, verbosity: int, level: int) -> None:
        handlers = self._setup(tmp_path, verbosity=verbosity)
        console = next(h for h in handlers if not isinstance(h, logging.FileHandler))
        assert console.level == level

    def test_log_file_is_written(self, tmp_path: Path) -> None:
        handlers = self._setup(tmp_path)
        assert any(isinstance(h, logging.FileHandler) for h in handlers)
        assert (tmp_path / "migration.log").exists()

    def test_redactor_filters_every_handler(self, tmp_path: Path) -> None:
        handlers = self._setup(tmp_path, redactor=SecretRedactor())
        assert all(any(isinstance(f, RedactingFilter) for f in h.filters) for h in handlers)


@pytest.mark.unit
class TestLoadGovernance:
    def test_defaults_without_file(self) -> None:
        plan = load_governance(None)
        assert plan.groups == []
        assert plan.minimum_reviewers == 2

    def test_plan_file(self, tmp_path: Path) -> None:
        (tmp_path / "home.md").write_text("# Welcome\n", encoding="utf-8")
        path = tmp_path / "governance.json"
        path.write_text(
            json.dumps(
                {
                    "groups": [{"name": "Reviewers", "description": "Code reviewers"}],
                    "memberships": [{"member": "aad.alice", "group": "Reviewers"}],
                    "home_page_file": "home.md",
                    "home_page_path": "/Start",
                    "minimum_reviewers": 1,
                    "require_comment_resolution": False,
                }
            ),
            encoding="utf-8",
        )

        plan = load_governance(path)

        assert [g.name for g in plan.groups] == ["Reviewers"]
        assert plan.memberships[0].member == "aad.alice"
        assert plan.home_page_content == "# Welcome\n"
        assert plan.home_page_path == "/Start"
        assert plan.minimum_reviewers == 1
        assert plan.require_work_item_linking is True
        assert plan.require_comment_resolution is False

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(MigrationError, match="Governance file not found"):
            _ = load_governance(tmp_path / "absent.json")


@pytest.mark.unit
class TestInterruptHandler:
    def test_first_interrupt_cancels_second_aborts(self) -> None:
        cancellation = CancellationToken()
        with patch.object(cli.signal, "signal") as install:
            cli._install_interrupt_handler(cancellation)  # noqa: SLF001
        signum, handler = install.call_args.args
        assert signum == signal.SIGINT

        handler(signal.SIGINT, None)
        assert cancellation.cancelled
        with pytest.raises(KeyboardInterrupt):
            handler(signal.SIGINT, None)


@pytest.mark.unit
class TestMain:
    def _run_main(self, argv: list[str], components: MagicMock) -> tuple[int, MagicMock]:
        with (
            patch.dict("os.environ", {"AZURE_DEVOPS_URL": "https://dev.azure.com/org"}),
            patch("gitlab_to_azure_devops_migrator.cli.glu.get_token", return_value="gl-token"),
            patch("gitlab_to_azure_devops_migrator.cli.ado.get_token", return_value="ado-token"),
            patch("gitlab_to_azure_devops_migrator.cli.setup_logging"),
            patch("gitlab_to_azure_devops_migrator.cli._install_interrupt_handler"),
            patch("gitlab_to_azure_devops_migrator.cli.build_components", return_value=components) as build,
        ):
            with pytest.raises(SystemExit) as exc_info:
                main(argv)
        return int(exc_info.value.code or 0), build

    def test_preflight_exit_code(self, capsys: pytest.CaptureFixture[str]) -> None:
        report = PreflightReport(unit_id="group__app--Platform--app")
        report.add(Severity.BLOCKING, "DESTINATION_REPOSITORY_NOT_EMPTY", "has commits")
        components = MagicMock()
        components.preflight.run.return_value = report

        code, _ = self._run_main(["preflight", "group/app", "Platform"], components)

        assert code == 1
        assert "BLOCKED" in capsys.readouterr().out
        unit = components.preflight.run.call_args.args[0]
        assert (unit.source, unit.destination_project, unit.destination_repository) == ("group/app", "Platform", "app")
        components.close.assert_called_once()

    def test_migrate_success(self, capsys: pytest.CaptureFixture[str]) -> None:
        components = MagicMock()
        components.orchestrator.run.return_value = UnitSummary(
            unit_id="group__app--Platform--app",
            source="group/app",
            destination_project="Platform",
            destination_repository="app",
            status=UnitStatus.SUCCEEDED,
            steps=[StepRecord("ensure_project", "succeeded", detail="project Platform: AlreadyConformant")],
        )

        code, build = self._run_main(["migrate", "group/app", "Platform", "--force", "--sync"], components)

        assert code == 0
        unit = components.orchestrator.run.call_args.args[0]
        assert unit.force is True
        assert unit.sync is True
        assert "ensure_project" in capsys.readouterr().out
        session = build.call_args.args[0]
        assert session.cleared

    def test_migration_error_exits_with_failure(self) -> None:
        components = MagicMock()
        components.orchestrator.run.side_effect = MigrationError("boom")

        code, _ = self._run_main(["migrate", "group/app", "Platform"], components)

        assert code == 1
        components.close.assert_called_once()

    def test_missing_azure_url(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("AZURE_DEVOPS_URL", raising=False)
        with (
            patch("gitlab_to_azure_devops_migrator.cli.setup_logging"),
            patch("gitlab_to_azure_devops_migrator.cli.build_components") as build,
            pytest.raises(SystemExit) as exc_info,
        ):
            main(["migrate", "group/app", "Platform"])

        assert exc_info.value.code == 1
        build.assert_not_called()

    def test_bulk_exit_code(self, tmp_path: Path) -> None:
        descriptor = tmp_path / "batch.json"
        descriptor.write_text(json.dumps({"destination_project": "Platform", "units": [{"source": "g/a"}]}))
        components = MagicMock()
        components.orchestrator.cancellation = CancellationToken()

        def run(unit: Any) -> None:
            unit.transition(UnitStatus.IN_PROGRESS, override=True)
            unit.transition(UnitStatus.SUCCEEDED)

        components.orchestrator.run.side_effect = run
        components.store = MagicMock()

        code, _ = self._run_main(["bulk", str(descriptor)], components)

        assert code == 0
        assert (tmp_path / "batch.json.state.json").exists()
