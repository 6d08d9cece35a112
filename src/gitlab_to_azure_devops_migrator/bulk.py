"""Bulk coordinator: runs an ordered batch of migration units.

Batch descriptor (JSON)::

    {
      "destination_project": "Platform",
      "defaults": {"force": false, "replace": false, "sync": false},
      "stop_on_failure": false,
      "units": [
        {"source": "group/service-a"},
        {"source": "group/service-b", "repository": "service-b-legacy", "sync": true},
        {"source": "other/tool", "destination_project": "Tools"}
      ]
    }

Unit status is persisted next to the descriptor (``<descriptor>.state.json``)
after every unit, so invoking the batch again skips units that already
Succeeded and only (re)processes failed, blocked or never-attempted ones.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .exceptions import MigrationError
from .models import SCHEMA_VERSION, BulkRun, ErrorKind, MigrationUnit, NormalizedError, UnitStatus, utc_now
from .store import read_json, write_json

if TYPE_CHECKING:
    from .orchestrator import CancellationToken, MigrationOrchestrator
    from .store import ReportStore

logger: logging.Logger = logging.getLogger(__name__)

_INTENTS = ("force", "replace", "sync")


def state_path_for(descriptor: Path | str) -> Path:
    path = Path(descriptor)
    return path.with_name(f"{path.name}.state.json")


def load_descriptor(descriptor: Path | str) -> BulkRun:
    """Build a BulkRun from a batch descriptor, restoring unit status from its state file.

    Raises:
        MigrationError: If the descriptor is missing or malformed
    """
    path = Path(descriptor)
    data = read_json(path)
    if data is None:
        msg = f"Batch descriptor not found: {path}"
        raise MigrationError(msg)

    default_project = data.get("destination_project")
    defaults: dict[str, Any] = data.get("defaults") or {}
    units: list[MigrationUnit] = []
    for index, entry in enumerate(data.get("units") or []):
        if not isinstance(entry, dict) or not entry.get("source"):
            msg = f"Batch descriptor {path}: unit #{index + 1} has no source"
            raise MigrationError(msg)
        project = entry.get("destination_project") or default_project
        if not project:
            msg = f"Batch descriptor {path}: unit {entry['source']} has no destination project"
            raise MigrationError(msg)
        units.append(
            MigrationUnit(
                source=entry["source"],
                destination_project=project,
                destination_repository=entry.get("repository", ""),
                **{intent: bool(entry.get(intent, defaults.get(intent, False))) for intent in _INTENTS},
            )
        )

    bulk = BulkRun(units=units, stop_on_failure=bool(data.get("stop_on_failure", False)))
    _restore_state(bulk, state_path_for(path))
    return bulk


def _restore_state(bulk: BulkRun, state_path: Path) -> None:
    state = read_json(state_path)
    if state is None:
        return
    previous = {entry.get("unit_id"): entry for entry in state.get("units", [])}
    for unit in bulk.units:
        entry = previous.get(unit.unit_id)
        if entry is None:
            continue
        restored = MigrationUnit.from_dict(entry)
        # Status and history come from the state file, intents from the descriptor
        unit.status = restored.status
        unit.created_at = restored.created_at
        unit.updated_at = restored.updated_at
        unit.started_at = restored.started_at
        unit.finished_at = restored.finished_at
        unit.preflight_report = restored.preflight_report
        unit.summary_report = restored.summary_report
        unit.failed_step = restored.failed_step
        unit.error = restored.error
        if unit.status == UnitStatus.IN_PROGRESS:
            # The process that wrote this state died while the unit was running
            logger.warning(f"Unit {unit.unit_id} was interrupted in a previous run, marking it failed")
            unit.status = UnitStatus.FAILED
            unit.failed_step = unit.failed_step or "interrupted"
    logger.info(f"Restored batch state from {state_path}: {bulk.counts()}")


class BulkCoordinator:
    """Runs every unit of a BulkRun through one orchestrator."""

    def __init__(
        self,
        orchestrator: MigrationOrchestrator,
        store: ReportStore,
        *,
        max_workers: int = 1,
        cancellation: CancellationToken | None = None,
    ) -> None:
        if max_workers < 1:
            msg = f"max_workers must be at least 1: {max_workers}"
            raise ValueError(msg)
        self.orchestrator = orchestrator
        self.store = store
        self.max_workers = max_workers
        self.cancellation = cancellation or orchestrator.cancellation
        self._state_lock = threading.Lock()

    def run(self, bulk: BulkRun, *, state_path: Path | None = None) -> dict[str, Any]:
        """Process all units that have not succeeded yet.

        Args:
            bulk: The batch; unit status is updated in place
            state_path: Where to persist unit status after every unit

        Returns:
            The batch summary (also written as bulk-summary.json)
        """
        bulk.started_at = utc_now()
        t0 = time.monotonic()
        pending = [unit for unit in bulk.units if unit.status != UnitStatus.SUCCEEDED]
        skipped = len(bulk.units) - len(pending)
        if skipped:
            logger.info(f"Skipping {skipped} unit(s) that already succeeded")
        logger.info(f"Processing {len(pending)} unit(s) with {self.max_workers} worker(s)")

        stop = threading.Event()

        def process(unit: MigrationUnit) -> None:
            if stop.is_set() or self.cancellation.cancelled:
                logger.info(f"Not starting {unit.unit_id}: batch is stopping")
                return
            try:
                self._process(unit)
            finally:
                # Also on Ctrl+C, so a resumed batch sees the unit as failed rather than pending
                self._save_state(bulk, state_path)
            if bulk.stop_on_failure and unit.status in (UnitStatus.FAILED, UnitStatus.BLOCKED):
                logger.error(f"Stopping batch after failure of {unit.unit_id}")
                stop.set()

        if self.max_workers == 1:
            for unit in pending:
                process(unit)
        else:
            with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="migrate") as executor:
                # Propagate unexpected worker errors
                for future in [executor.submit(process, unit) for unit in pending]:
                    future.result()

        bulk.finished_at = utc_now()
        bulk.elapsed_seconds = time.monotonic() - t0
        self._save_state(bulk, state_path)
        summary = bulk.summary()
        self.store.save_bulk_summary(summary)

        counts = {status: n for status, n in summary["counts"].items() if n}
        logger.info(f"Batch finished in {bulk.elapsed_seconds:.1f}s: {counts}")
        for failure in summary["failures"]:
            logger.error(f"{failure['unit_id']} {failure['status']} at {failure['failed_step']}: {failure['reason']}")
        return summary

    def _process(self, unit: MigrationUnit) -> None:
        try:
            self.orchestrator.run(unit)
        except Exception as e:
            # One unit crashing never aborts the batch
            logger.exception(f"Unit {unit.unit_id} crashed")
            if unit.status not in (UnitStatus.FAILED, UnitStatus.BLOCKED):
                unit.failed_step = unit.failed_step or "unknown"
                unit.error = NormalizedError(
                    system="bulk",
                    endpoint=unit.failed_step,
                    status=None,
                    kind=ErrorKind.HTTP,
                    message=self.orchestrator.session.redactor.redact(str(e)) or type(e).__name__,
                )
                unit.transition(UnitStatus.FAILED)

    def _save_state(self, bulk: BulkRun, state_path: Path | None) -> None:
        if state_path is None:
            return
        with self._state_lock:
            write_json(
                state_path,
                {
                    "schema_version": SCHEMA_VERSION,
                    "updated_at": utc_now(),
                    "units": [unit.to_dict() for unit in bulk.units],
                },
            )
