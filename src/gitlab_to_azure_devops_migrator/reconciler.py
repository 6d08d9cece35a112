"""Idempotent "ensure desired state" engine.

The algorithm is written once over the ResourceKind interface:

1. Read the current state (found / known-absent / error).
2. Absent: create it -> Created. A create answered with 409 re-reads the
   resource and continues as if it had been present, which makes concurrent
   creators converge (at most one effective creator).
3. Present and conformant -> AlreadyConformant, without any write. This is
   what makes ``ensure`` safe to call any number of times.
4. Present with divergent mutable attributes -> patch the minimal diff -> Updated.
5. Present with divergent protected attributes -> ConflictSkipped; nothing is
   overwritten and the diff is reported for manual resolution.

Resources holding content (repositories with commits) are only ever deleted
under explicit replace intent, as a delete followed by a create. A failed
delete aborts before the create so no orphan is left behind.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .models import ReconcileOutcome, ReconciliationResult
from .resources import default_kinds

if TYPE_CHECKING:
    from collections.abc import Mapping

    from .client import CallClient
    from .models import ResourceDescriptor
    from .protocols import ResourceKind

logger: logging.Logger = logging.getLogger(__name__)


class Reconciler:
    """Applies ResourceDescriptors to the destination through the call client."""

    def __init__(self, client: CallClient, kinds: Mapping[str, ResourceKind] | None = None) -> None:
        self.client = client
        self.kinds: dict[str, ResourceKind] = dict(kinds) if kinds is not None else dict(default_kinds())

    def _kind(self, desired: ResourceDescriptor) -> ResourceKind:
        try:
            return self.kinds[desired.kind]
        except KeyError:
            msg = f"Unknown resource kind: {desired.kind}"
            raise ValueError(msg) from None

    @staticmethod
    def _result(
        desired: ResourceDescriptor,
        outcome: ReconcileOutcome,
        *,
        state: Mapping[str, Any] | None = None,
        **kwargs: Any,
    ) -> ReconciliationResult:
        return ReconciliationResult(
            kind=desired.kind, key=dict(desired.key), outcome=outcome, state=dict(state or {}), **kwargs
        )

    def ensure(self, desired: ResourceDescriptor) -> ReconciliationResult:
        """Bring one destination resource to the desired state."""
        kind = self._kind(desired)
        lookup = kind.read(self.client, desired)
        if lookup.error is not None:
            logger.error(f"Failed to read {desired.label}: {lookup.error}")
            return self._result(desired, ReconcileOutcome.FAILED, error=lookup.error, message="read failed")
        if lookup.state is None:
            return self._create(kind, desired)
        return self._reconcile_present(kind, desired, lookup.state)

    def _create(self, kind: ResourceKind, desired: ResourceDescriptor) -> ReconciliationResult:
        created = kind.create(self.client, desired)
        if created.error is None and created.state is not None:
            logger.info(f"Created {desired.label}")
            return self._result(desired, ReconcileOutcome.CREATED, state=created.state)

        error = created.error
        if error is not None and error.status == 409:
            if kind.is_benign_conflict(desired):
                message = getattr(kind, "conflict_message", "already exists")
                logger.info(f"{desired.label}: {message}")
                return self._result(desired, ReconcileOutcome.CONFLICT_SKIPPED, message=message)
            # Someone else created it between our read and our create
            reread = kind.read(self.client, desired)
            if reread.state is not None and reread.error is None:
                logger.info(f"{desired.label} appeared concurrently, reconciling the existing resource")
                return self._reconcile_present(kind, desired, reread.state)

        logger.error(f"Failed to create {desired.label}: {error}")
        return self._result(desired, ReconcileOutcome.FAILED, error=error, message="create failed")

    def _reconcile_present(
        self,
        kind: ResourceKind,
        desired: ResourceDescriptor,
        observed: Mapping[str, Any],
    ) -> ReconciliationResult:
        if desired.replace and kind.holds_content(observed):
            return self._replace(kind, desired, observed)

        diff = kind.diff(observed, desired)
        if diff.protected:
            logger.warning(
                f"{desired.label} diverges on protected attributes {sorted(diff.protected)}; "
                "skipping, manual resolution required"
            )
            return self._result(
                desired,
                ReconcileOutcome.CONFLICT_SKIPPED,
                state=observed,
                diff=diff.merged(),
                message="protected attributes diverge",
            )
        if not diff.mutable:
            logger.debug(f"{desired.label} already conformant")
            return self._result(desired, ReconcileOutcome.ALREADY_CONFORMANT, state=observed)

        patched = kind.patch(self.client, observed, diff, desired)
        if patched.error is not None or patched.state is None:
            logger.error(f"Failed to update {desired.label}: {patched.error}")
            return self._result(
                desired, ReconcileOutcome.FAILED, state=observed, diff=diff.mutable, error=patched.error,
                message="update failed",
            )
        logger.info(f"Updated {desired.label}: {sorted(diff.mutable)}")
        return self._result(desired, ReconcileOutcome.UPDATED, state=patched.state, diff=diff.mutable)

    def _replace(
        self,
        kind: ResourceKind,
        desired: ResourceDescriptor,
        observed: Mapping[str, Any],
    ) -> ReconciliationResult:
        logger.warning(f"Replacing {desired.label}: deleting the existing resource and its content")
        error = kind.delete(self.client, observed, desired)
        if error is not None:
            logger.error(f"Failed to delete {desired.label}, not recreating: {error}")
            return self._result(
                desired, ReconcileOutcome.FAILED, state=observed, error=error, message="delete failed, create not attempted"
            )
        created = kind.create(self.client, desired)
        if created.error is not None or created.state is None:
            logger.error(f"Deleted {desired.label} but recreating it failed: {created.error}")
            return self._result(desired, ReconcileOutcome.FAILED, error=created.error, message="recreate after delete failed")
        logger.info(f"Replaced {desired.label}")
        return self._result(desired, ReconcileOutcome.CREATED, state=created.state, message="replaced")
