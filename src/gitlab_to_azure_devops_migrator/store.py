"""Versioned JSON artifacts on disk.

Layout under the state directory::

    units/<unit_id>/preflight.json
    units/<unit_id>/reconciliation.json
    units/<unit_id>/summary.json
    units/<unit_id>/transfer.json
    bulk-summary.json
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .models import SCHEMA_VERSION, PreflightReport, utc_now

if TYPE_CHECKING:
    from .models import ReconciliationResult, RefTransferReport, UnitSummary

logger: logging.Logger = logging.getLogger(__name__)


def write_json(path: Path, data: dict[str, Any]) -> Path:
    """Atomically write a JSON document (temp file in the same directory, then rename)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2, sort_keys=False, default=str)
            handle.write("\n")
        Path(temp_name).replace(path)
    except BaseException:
        Path(temp_name).unlink(missing_ok=True)
        raise
    return path


def read_json(path: Path) -> dict[str, Any] | None:
    if not path.exists():
        return None
    with path.open(encoding="utf-8") as handle:
        data: dict[str, Any] = json.load(handle)
    return data


class ReportStore:
    """Reads and writes the per-unit and per-batch artifacts."""

    def __init__(self, root: Path | str) -> None:
        self.root: Path = Path(root)

    def unit_dir(self, unit_id: str) -> Path:
        return self.root / "units" / unit_id

    def preflight_path(self, unit_id: str) -> Path:
        return self.unit_dir(unit_id) / "preflight.json"

    def summary_path(self, unit_id: str) -> Path:
        return self.unit_dir(unit_id) / "summary.json"

    def save_preflight(self, report: PreflightReport) -> Path:
        path = write_json(self.preflight_path(report.unit_id), report.to_dict())
        logger.debug(f"Preflight report written to {path}")
        return path

    def load_preflight(self, unit_id: str) -> PreflightReport | None:
        """Latest persisted preflight report of a unit, or None if preflight never ran."""
        data = read_json(self.preflight_path(unit_id))
        return PreflightReport.from_dict(data) if data is not None else None

    def save_reconciliation(self, unit_id: str, results: list[ReconciliationResult]) -> Path:
        data = {
            "schema_version": SCHEMA_VERSION,
            "unit_id": unit_id,
            "results": [result.to_dict() for result in results],
        }
        return write_json(self.unit_dir(unit_id) / "reconciliation.json", data)

    def save_summary(self, summary: UnitSummary) -> Path:
        path = write_json(self.summary_path(summary.unit_id), summary.to_dict())
        logger.info(f"Unit summary written to {path}")
        return path

    def load_summary(self, unit_id: str) -> dict[str, Any] | None:
        return read_json(self.summary_path(unit_id))

    def transfer_path(self, unit_id: str) -> Path:
        return self.unit_dir(unit_id) / "transfer.json"

    def save_transfer(self, unit_id: str, repository_id: str | None, transfer: RefTransferReport) -> Path:
        """Record that content of a unit reached its destination repository.

        Unlike summary.json this marker is never rewritten by a later blocked or
        failed run, so a resumed preflight can still tell the content is ours.
        """
        data = {
            "schema_version": SCHEMA_VERSION,
            "unit_id": unit_id,
            "repository_id": repository_id,
            "refs_pushed": list(transfer.refs_pushed),
            "recorded_at": utc_now(),
        }
        return write_json(self.transfer_path(unit_id), data)

    def load_transfer(self, unit_id: str) -> dict[str, Any] | None:
        return read_json(self.transfer_path(unit_id))

    def save_bulk_summary(self, summary: dict[str, Any]) -> Path:
        path = write_json(self.root / "bulk-summary.json", summary)
        logger.info(f"Bulk summary written to {path}")
        return path
