"""Protocols defining the contracts between the migration layers.

The migration architecture separates concerns into independent seams:

1. CallTransport: Sends one HTTP request to one platform (GitLab, Azure DevOps)
2. ResourceKind: Knows how to read, create, diff, patch and delete one kind of
   destination resource
3. ContentTransport: Moves git refs (and large-object storage) between platforms
4. EnrichmentHook: Optional post-creation work on a migrated unit

This separation allows:
- Writing the reconciliation algorithm once for every resource kind
- Testing each layer in isolation with in-memory fakes
- Adding resource kinds without touching the orchestrator
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from collections.abc import Mapping
    from pathlib import Path

    from .client import CallClient, TransportResponse
    from .models import MigrationUnit, NormalizedError, RefTransferReport, ResourceDescriptor
    from .reconciler import Reconciler
    from .resources import Lookup, ResourceDiff
    from .session import SessionContext


class CallTransport(Protocol):
    """Sends a single request. Retries, redaction and normalization live in CallClient.

    Implementations raise ``requests.ConnectionError`` / ``requests.Timeout``
    for network failures and return every HTTP answer, including error
    statuses, as a TransportResponse.
    """

    system: str

    def send(
        self,
        method: str,
        path: str,
        *,
        body: Any = None,
        query: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
        timeout: float | None = None,
        preview: bool = False,
    ) -> TransportResponse:
        """Send one request and return the raw answer."""
        ...

    def close(self) -> None:
        """Drop connections and any credential the transport holds."""
        ...


class ResourceKind(Protocol):
    """Capability set the Reconciler needs for one kind of destination resource.

    Observed state is a flat mapping using the same attribute names as
    ResourceDescriptor.attributes, so ``diff`` can compare them directly.
    """

    name: str

    def read(self, client: CallClient, desired: ResourceDescriptor) -> Lookup:
        """Return the current state: found, known-absent, or error."""
        ...

    def create(self, client: CallClient, desired: ResourceDescriptor) -> Lookup:
        """Create the resource with the desired attributes and return its state."""
        ...

    def diff(self, observed: Mapping[str, Any], desired: ResourceDescriptor) -> ResourceDiff:
        """Split divergent desired attributes into mutable and protected ones."""
        ...

    def patch(
        self,
        client: CallClient,
        observed: Mapping[str, Any],
        diff: ResourceDiff,
        desired: ResourceDescriptor,
    ) -> Lookup:
        """Apply the mutable part of the diff and return the new state."""
        ...

    def delete(self, client: CallClient, observed: Mapping[str, Any], desired: ResourceDescriptor) -> NormalizedError | None:
        """Delete the resource. Only used under explicit replace intent."""
        ...

    def holds_content(self, observed: Mapping[str, Any]) -> bool:
        """Whether the resource holds user content that must not be replaced implicitly."""
        ...

    def is_benign_conflict(self, desired: ResourceDescriptor) -> bool:
        """Whether a 409 on create means "already there" for this kind rather than a race."""
        ...


class ContentTransport(Protocol):
    """Moves repository content from the source to the destination."""

    def transfer(
        self,
        unit_id: str,
        source_url: str,
        destination_url: str,
        *,
        lfs: bool,
        force: bool,
    ) -> RefTransferReport:
        """Fetch all source refs into the local cache and push branches, tags and LFS objects.

        Raises:
            ContentTransferError: If any git command fails or exceeds its timeout
        """
        ...

    def cache_path(self, unit_id: str) -> Path:
        """Local cache directory used for the unit."""
        ...


class EnrichmentHook(Protocol):
    """Optional post-creation step run after branch policies are applied."""

    name: str

    def __call__(
        self,
        unit: MigrationUnit,
        repository: Mapping[str, Any],
        reconciler: Reconciler,
        session: SessionContext,
    ) -> str:
        """Run the enrichment and return a one-line description of what was done.

        Raises:
            MigrationError: If the enrichment fails
        """
        ...
