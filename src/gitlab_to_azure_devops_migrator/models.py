"""Data models shared by the preflight, reconciliation, orchestration and bulk layers.

All persisted artifacts are built from these dataclasses and serialized to
versioned JSON by ``store.py``. Enumerations derive from ``StrEnum`` so they
serialize as their plain string values.
"""

from __future__ import annotations

import datetime as dt
import re
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any, Final

from .exceptions import InvalidTransitionError

SCHEMA_VERSION: Final[int] = 1


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string with seconds precision."""
    return dt.datetime.now(dt.UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


class UnitStatus(StrEnum):
    PENDING = "Pending"
    VALIDATED = "Validated"
    BLOCKED = "Blocked"
    IN_PROGRESS = "InProgress"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


# Edges of the unit status machine; IN_PROGRESS from anything but VALIDATED needs an override
_FROM_IDLE: Final[frozenset[UnitStatus]] = frozenset({UnitStatus.VALIDATED, UnitStatus.BLOCKED, UnitStatus.FAILED})
_TRANSITIONS: Final[dict[UnitStatus, frozenset[UnitStatus]]] = {
    UnitStatus.PENDING: _FROM_IDLE,
    UnitStatus.VALIDATED: _FROM_IDLE | {UnitStatus.IN_PROGRESS},
    UnitStatus.BLOCKED: _FROM_IDLE,
    UnitStatus.IN_PROGRESS: frozenset({UnitStatus.SUCCEEDED, UnitStatus.FAILED}),
    UnitStatus.SUCCEEDED: _FROM_IDLE,
    UnitStatus.FAILED: _FROM_IDLE,
}
_OVERRIDABLE: Final[frozenset[UnitStatus]] = frozenset(
    {UnitStatus.PENDING, UnitStatus.BLOCKED, UnitStatus.FAILED, UnitStatus.SUCCEEDED}
)


class Severity(StrEnum):
    BLOCKING = "Blocking"
    WARNING = "Warning"
    INFO = "Info"


class ReconcileOutcome(StrEnum):
    CREATED = "Created"
    ALREADY_CONFORMANT = "AlreadyConformant"
    UPDATED = "Updated"
    CONFLICT_SKIPPED = "ConflictSkipped"
    FAILED = "Failed"


class ErrorKind(StrEnum):
    TRANSIENT_NETWORK = "TransientNetworkError"
    RATE_LIMITED = "RateLimited"
    AUTHORIZATION = "AuthorizationError"
    NOT_FOUND = "NotFound"
    CONFLICT = "ConflictError"
    VALIDATION = "ValidationError"
    CONTENT_TRANSFER = "ContentTransferError"
    HTTP = "HttpError"
    CANCELLED = "Cancelled"


@dataclass(frozen=True)
class NormalizedError:
    """Uniform error shape regardless of which external system produced the failure."""

    system: str  # "gitlab", "azure_devops" or "git"
    endpoint: str
    status: int | None
    kind: ErrorKind
    message: str

    def __str__(self) -> str:
        status = f" {self.status}" if self.status is not None else ""
        return f"{self.system} {self.endpoint}:{status} {self.kind}: {self.message}"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NormalizedError:
        return cls(
            system=data["system"],
            endpoint=data["endpoint"],
            status=data.get("status"),
            kind=ErrorKind(data["kind"]),
            message=data["message"],
        )


@dataclass
class Finding:
    severity: Severity
    code: str
    message: str


@dataclass
class SourceFacts:
    """What preflight learned about the source project."""

    project_id: int | None = None
    path_with_namespace: str = ""
    http_url_to_repo: str = ""
    default_branch: str | None = None
    lfs_enabled: bool = False
    branches: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)


@dataclass
class PreflightReport:
    unit_id: str
    findings: list[Finding] = field(default_factory=list)
    metrics: dict[str, int | None] = field(default_factory=dict)
    source: SourceFacts = field(default_factory=SourceFacts)
    generated_at: str = field(default_factory=utc_now)
    schema_version: int = SCHEMA_VERSION

    @property
    def passed(self) -> bool:
        return not self.blocking

    @property
    def blocking(self) -> list[Finding]:
        return [f for f in self.findings if f.severity == Severity.BLOCKING]

    def add(self, severity: Severity, code: str, message: str) -> None:
        self.findings.append(Finding(severity=severity, code=code, message=message))

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["passed"] = self.passed
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PreflightReport:
        return cls(
            unit_id=data["unit_id"],
            findings=[
                Finding(severity=Severity(f["severity"]), code=f["code"], message=f["message"])
                for f in data.get("findings", [])
            ],
            metrics=dict(data.get("metrics", {})),
            source=SourceFacts(**data.get("source", {})),
            generated_at=data.get("generated_at", ""),
            schema_version=data.get("schema_version", SCHEMA_VERSION),
        )


@dataclass(frozen=True)
class ResourceDescriptor:
    """Desired state of one destination resource."""

    kind: str
    key: dict[str, str]
    attributes: dict[str, Any] = field(default_factory=dict)
    replace: bool = False

    @property
    def label(self) -> str:
        identity = ", ".join(f"{k}={v}" for k, v in sorted(self.key.items()))
        return f"{self.kind}({identity})"


@dataclass
class ReconciliationResult:
    kind: str
    key: dict[str, str]
    outcome: ReconcileOutcome
    diff: dict[str, dict[str, Any]] = field(default_factory=dict)
    state: dict[str, Any] = field(default_factory=dict)
    message: str = ""
    error: NormalizedError | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome != ReconcileOutcome.FAILED

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "key": self.key,
            "outcome": self.outcome,
            "diff": self.diff,
            "message": self.message,
            "error": asdict(self.error) if self.error else None,
        }


@dataclass
class RefTransferReport:
    refs_fetched: list[str] = field(default_factory=list)
    refs_pushed: list[str] = field(default_factory=list)
    lfs_transferred: bool = False
    duration_seconds: float = 0.0


@dataclass
class StepRecord:
    name: str
    outcome: str  # "succeeded", "failed" or "skipped"
    started_at: str = ""
    duration_seconds: float = 0.0
    detail: str = ""
    error: NormalizedError | None = None


@dataclass
class UnitSummary:
    unit_id: str
    source: str
    destination_project: str
    destination_repository: str
    status: UnitStatus
    steps: list[StepRecord] = field(default_factory=list)
    reconciliation: list[ReconciliationResult] = field(default_factory=list)
    transfer: RefTransferReport | None = None
    failed_step: str | None = None
    error: NormalizedError | None = None
    generated_at: str = field(default_factory=utc_now)
    schema_version: int = SCHEMA_VERSION

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "generated_at": self.generated_at,
            "unit_id": self.unit_id,
            "source": self.source,
            "destination_project": self.destination_project,
            "destination_repository": self.destination_repository,
            "status": self.status,
            "failed_step": self.failed_step,
            "error": asdict(self.error) if self.error else None,
            "steps": [asdict(step) for step in self.steps],
            "reconciliation": [result.to_dict() for result in self.reconciliation],
            "transfer": asdict(self.transfer) if self.transfer else None,
        }


_UNSAFE_ID_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def make_unit_id(source: str, destination_project: str, destination_repository: str) -> str:
    """Stable, filesystem-safe identity of a unit."""
    raw = f"{source}--{destination_project}--{destination_repository}"
    return _UNSAFE_ID_CHARS.sub("_", raw.replace("/", "__")).strip("_")


@dataclass
class MigrationUnit:
    """One source project migrating into one destination repository."""

    source: str  # GitLab path with namespace
    destination_project: str
    destination_repository: str = ""
    force: bool = False
    replace: bool = False
    sync: bool = False
    status: UnitStatus = UnitStatus.PENDING
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)
    started_at: str | None = None
    finished_at: str | None = None
    preflight_report: str | None = None
    summary_report: str | None = None
    failed_step: str | None = None
    error: NormalizedError | None = None

    def __post_init__(self) -> None:
        if not self.destination_repository:
            self.destination_repository = self.source.rstrip("/").rsplit("/", 1)[-1]

    @property
    def unit_id(self) -> str:
        return make_unit_id(self.source, self.destination_project, self.destination_repository)

    def transition(self, status: UnitStatus, *, override: bool = False) -> None:
        """Move to a new status.

        Raises:
            InvalidTransitionError: If the status machine has no such edge. Entering
                InProgress without a passing preflight requires ``override``.
        """
        allowed = status in _TRANSITIONS[self.status] or (
            override and status == UnitStatus.IN_PROGRESS and self.status in _OVERRIDABLE
        )
        if not allowed:
            msg = f"Unit {self.unit_id} cannot move from {self.status} to {status}"
            raise InvalidTransitionError(msg)
        self.status = status
        self.updated_at = utc_now()

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["unit_id"] = self.unit_id
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MigrationUnit:
        error = data.get("error")
        return cls(
            source=data["source"],
            destination_project=data["destination_project"],
            destination_repository=data.get("destination_repository", ""),
            force=bool(data.get("force", False)),
            replace=bool(data.get("replace", False)),
            sync=bool(data.get("sync", False)),
            status=UnitStatus(data.get("status", UnitStatus.PENDING)),
            created_at=data.get("created_at") or utc_now(),
            updated_at=data.get("updated_at") or utc_now(),
            started_at=data.get("started_at"),
            finished_at=data.get("finished_at"),
            preflight_report=data.get("preflight_report"),
            summary_report=data.get("summary_report"),
            failed_step=data.get("failed_step"),
            error=NormalizedError.from_dict(error) if error else None,
        )


@dataclass
class BulkRun:
    """Ordered batch of units plus the aggregate outcome of the last run."""

    units: list[MigrationUnit] = field(default_factory=list)
    stop_on_failure: bool = False
    started_at: str | None = None
    finished_at: str | None = None
    elapsed_seconds: float = 0.0

    def counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in UnitStatus}
        for unit in self.units:
            counts[unit.status.value] += 1
        return counts

    def failures(self) -> list[dict[str, Any]]:
        return [
            {
                "unit_id": unit.unit_id,
                "source": unit.source,
                "status": unit.status,
                "failed_step": unit.failed_step,
                "reason": str(unit.error) if unit.error else None,
            }
            for unit in self.units
            if unit.status in (UnitStatus.FAILED, UnitStatus.BLOCKED)
        ]

    def summary(self) -> dict[str, Any]:
        return {
            "schema_version": SCHEMA_VERSION,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "total": len(self.units),
            "counts": self.counts(),
            "failures": self.failures(),
            "units": [{"unit_id": u.unit_id, "status": u.status, "summary": u.summary_report} for u in self.units],
        }
