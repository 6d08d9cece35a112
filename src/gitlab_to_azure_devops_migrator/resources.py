"""Azure DevOps resource kinds reconciled by the Reconciler.

Each kind translates between the platform's REST shapes and a flat attribute
mapping. Comparison only covers attributes present in the desired
descriptor, minus create-only inputs (such as the owning project's id), so
server-managed fields never cause drift.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar, Final

from . import azure_devops as ado
from .models import ErrorKind, NormalizedError

if TYPE_CHECKING:
    from collections.abc import Mapping

    from .client import CallClient, CallResult
    from .models import ResourceDescriptor

logger: logging.Logger = logging.getLogger(__name__)

AGILE_PROCESS_TEMPLATE_ID: Final[str] = "adcc42ab-9882-485e-a3ed-7678f01f66bc"

# Built-in branch policy type ids
MINIMUM_REVIEWERS_POLICY: Final[str] = "fa4e907d-c16b-4a4c-9dfa-4906e5d171dd"
WORK_ITEM_LINKING_POLICY: Final[str] = "40e92b44-2fe1-4dd6-b3d8-74a9c21d0c6e"
COMMENT_REQUIREMENTS_POLICY: Final[str] = "c6a1889d-b943-4856-b76f-9e46bb6b0df2"

_JSON_PATCH: Final[dict[str, str]] = {"Content-Type": "application/json-patch+json"}


@dataclass
class Lookup:
    """Typed result of reading a resource: found, known-absent, or error."""

    state: dict[str, Any] | None = None
    error: NormalizedError | None = None

    @property
    def found(self) -> bool:
        return self.error is None and self.state is not None

    @classmethod
    def absent(cls) -> Lookup:
        return cls()

    @classmethod
    def failed(cls, error: NormalizedError | None) -> Lookup:
        return cls(error=error)


@dataclass
class ResourceDiff:
    """Divergent attributes as {attribute: {"observed": ..., "desired": ...}}."""

    mutable: dict[str, dict[str, Any]] = field(default_factory=dict)
    protected: dict[str, dict[str, Any]] = field(default_factory=dict)

    @property
    def empty(self) -> bool:
        return not self.mutable and not self.protected

    def merged(self) -> dict[str, dict[str, Any]]:
        return {**self.mutable, **self.protected}


def conforms(observed: Any, desired: Any) -> bool:
    """Whether the observed value satisfies the desired one.

    Mappings compare as subsets (the server may add fields); lists compare
    element-wise; everything else compares by equality.
    """
    if isinstance(desired, dict):
        return isinstance(observed, dict) and all(conforms(observed.get(k), v) for k, v in desired.items())
    if isinstance(desired, list):
        return (
            isinstance(observed, list)
            and len(observed) == len(desired)
            and all(conforms(o, d) for o, d in zip(observed, desired, strict=True))
        )
    return observed == desired


def _unsupported(client: CallClient, kind: str, operation: str) -> NormalizedError:
    return NormalizedError(
        system=client.system,
        endpoint=f"{kind}.{operation}",
        status=None,
        kind=ErrorKind.HTTP,
        message=f"{operation} is not supported for {kind} resources",
    )


class BaseResourceKind:
    """Shared diff logic and conservative defaults for resource kinds."""

    name: ClassVar[str] = ""
    protected_fields: ClassVar[frozenset[str]] = frozenset()
    create_only_fields: ClassVar[frozenset[str]] = frozenset()

    def diff(self, observed: Mapping[str, Any], desired: ResourceDescriptor) -> ResourceDiff:
        result = ResourceDiff()
        for attribute, value in desired.attributes.items():
            if attribute in self.create_only_fields:
                continue
            current = observed.get(attribute)
            if conforms(current, value):
                continue
            entry = {"observed": current, "desired": value}
            if attribute in self.protected_fields:
                result.protected[attribute] = entry
            else:
                result.mutable[attribute] = entry
        return result

    def patch(
        self,
        client: CallClient,
        observed: Mapping[str, Any],  # noqa: ARG002
        diff: ResourceDiff,  # noqa: ARG002
        desired: ResourceDescriptor,  # noqa: ARG002
    ) -> Lookup:
        return Lookup.failed(_unsupported(client, self.name, "patch"))

    def delete(
        self,
        client: CallClient,
        observed: Mapping[str, Any],  # noqa: ARG002
        desired: ResourceDescriptor,  # noqa: ARG002
    ) -> NormalizedError | None:
        return _unsupported(client, self.name, "delete")

    def holds_content(self, observed: Mapping[str, Any]) -> bool:  # noqa: ARG002
        return False

    def is_benign_conflict(self, desired: ResourceDescriptor) -> bool:  # noqa: ARG002
        return False

    @staticmethod
    def _from_result(result: CallResult) -> Lookup:
        if result.not_found:
            return Lookup.absent()
        if not result.ok:
            return Lookup.failed(result.error)
        return Lookup(state=result.json())


class ProjectKind(BaseResourceKind):
    """Team project. Creation and updates are asynchronous operations that are polled."""

    name: ClassVar[str] = "project"
    protected_fields: ClassVar[frozenset[str]] = frozenset({"source_control_type", "process_template_id"})

    def __init__(self, *, operation_timeout: float = 300.0, poll_interval: float = 2.0) -> None:
        self.operation_timeout = operation_timeout
        self.poll_interval = poll_interval

    @staticmethod
    def _state(body: Mapping[str, Any]) -> dict[str, Any]:
        capabilities = body.get("capabilities") or {}
        return {
            "id": body.get("id"),
            "name": body.get("name"),
            "description": body.get("description") or "",
            "visibility": body.get("visibility"),
            "state": body.get("state"),
            "source_control_type": (capabilities.get("versioncontrol") or {}).get("sourceControlType"),
            "process_template_id": (capabilities.get("processTemplate") or {}).get("templateTypeId"),
        }

    def read(self, client: CallClient, desired: ResourceDescriptor) -> Lookup:
        result = client.call("GET", f"_apis/projects/{desired.key['project']}", query={"includeCapabilities": "true"})
        lookup = self._from_result(result)
        if lookup.found and lookup.state is not None:
            lookup.state = self._state(lookup.state)
        return lookup

    def _await(self, client: CallClient, result: CallResult, desired: ResourceDescriptor) -> Lookup:
        if not result.ok:
            return Lookup.failed(result.error)
        error = ado.wait_for_operation(
            client,
            result.json(),
            timeout=self.operation_timeout,
            poll_interval=self.poll_interval,
            sleep=client.sleep,
        )
        if error is not None:
            return Lookup.failed(error)
        return self.read(client, desired)

    def create(self, client: CallClient, desired: ResourceDescriptor) -> Lookup:
        attributes = desired.attributes
        body = {
            "name": desired.key["project"],
            "description": attributes.get("description", ""),
            "visibility": attributes.get("visibility", "private"),
            "capabilities": {
                "versioncontrol": {"sourceControlType": attributes.get("source_control_type", "Git")},
                "processTemplate": {
                    "templateTypeId": attributes.get("process_template_id", AGILE_PROCESS_TEMPLATE_ID)
                },
            },
        }
        return self._await(client, client.call("POST", "_apis/projects", body), desired)

    def patch(
        self,
        client: CallClient,
        observed: Mapping[str, Any],
        diff: ResourceDiff,
        desired: ResourceDescriptor,
    ) -> Lookup:
        body = {attribute: change["desired"] for attribute, change in diff.mutable.items()}
        return self._await(client, client.call("PATCH", f"_apis/projects/{observed['id']}", body), desired)


class RepositoryKind(BaseResourceKind):
    """Git repository inside a project. Holds content once any branch exists."""

    name: ClassVar[str] = "repository"
    create_only_fields: ClassVar[frozenset[str]] = frozenset({"project_id"})

    def _state(self, client: CallClient, project: str, body: Mapping[str, Any]) -> Lookup:
        has_commits, error = ado.repository_has_commits(client, project, body["id"])
        if error is not None:
            return Lookup.failed(error)
        return Lookup(
            state={
                "id": body["id"],
                "name": body.get("name"),
                "default_branch": body.get("defaultBranch"),
                "remote_url": body.get("remoteUrl"),
                "web_url": body.get("webUrl"),
                "size": body.get("size", 0),
                "project_id": (body.get("project") or {}).get("id"),
                "has_commits": has_commits,
            }
        )

    def read(self, client: CallClient, desired: ResourceDescriptor) -> Lookup:
        project = desired.key["project"]
        result = client.call("GET", f"{project}/_apis/git/repositories/{desired.key['repository']}")
        lookup = self._from_result(result)
        if not lookup.found or lookup.state is None:
            return lookup
        return self._state(client, project, lookup.state)

    def create(self, client: CallClient, desired: ResourceDescriptor) -> Lookup:
        project = desired.key["project"]
        body: dict[str, Any] = {"name": desired.key["repository"]}
        if desired.attributes.get("project_id"):
            body["project"] = {"id": desired.attributes["project_id"]}
        result = client.call("POST", f"{project}/_apis/git/repositories", body)
        if not result.ok:
            return Lookup.failed(result.error)
        return self._state(client, project, result.json())

    def patch(
        self,
        client: CallClient,
        observed: Mapping[str, Any],
        diff: ResourceDiff,
        desired: ResourceDescriptor,
    ) -> Lookup:
        project = desired.key["project"]
        body: dict[str, Any] = {}
        if "default_branch" in diff.mutable:
            body["defaultBranch"] = diff.mutable["default_branch"]["desired"]
        result = client.call("PATCH", f"{project}/_apis/git/repositories/{observed['id']}", body)
        if not result.ok:
            return Lookup.failed(result.error)
        return self._state(client, project, result.json())

    def delete(self, client: CallClient, observed: Mapping[str, Any], desired: ResourceDescriptor) -> NormalizedError | None:
        result = client.call("DELETE", f"{desired.key['project']}/_apis/git/repositories/{observed['id']}")
        return result.error

    def holds_content(self, observed: Mapping[str, Any]) -> bool:
        return bool(observed.get("has_commits"))


class GroupKind(BaseResourceKind):
    """Project-scoped security group (Graph API)."""

    name: ClassVar[str] = "group"
    create_only_fields: ClassVar[frozenset[str]] = frozenset({"project_id"})

    @staticmethod
    def _state(body: Mapping[str, Any]) -> dict[str, Any]:
        return {
            "descriptor": body.get("descriptor"),
            "display_name": body.get("displayName"),
            "description": body.get("description") or "",
        }

    def _scope(self, client: CallClient, desired: ResourceDescriptor) -> tuple[str | None, NormalizedError | None]:
        return ado.get_scope_descriptor(client, desired.attributes["project_id"])

    def read(self, client: CallClient, desired: ResourceDescriptor) -> Lookup:
        scope, error = self._scope(client, desired)
        if error is not None:
            return Lookup.failed(error)
        wanted = desired.key["group"].lower()
        continuation: str | None = None
        while True:
            query = {"scopeDescriptor": scope}
            if continuation:
                query["continuationToken"] = continuation
            result = client.call("GET", "_apis/graph/groups", query=query, preview=True)
            if not result.ok:
                return Lookup.failed(result.error)
            for group in result.json().get("value", []):
                if str(group.get("displayName", "")).lower() == wanted:
                    return Lookup(state=self._state(group))
            continuation = result.headers.get("X-MS-ContinuationToken")
            if not continuation:
                return Lookup.absent()

    def create(self, client: CallClient, desired: ResourceDescriptor) -> Lookup:
        scope, error = self._scope(client, desired)
        if error is not None:
            return Lookup.failed(error)
        body = {"displayName": desired.key["group"], "description": desired.attributes.get("description", "")}
        result = client.call("POST", "_apis/graph/groups", body, query={"scopeDescriptor": scope}, preview=True)
        if not result.ok:
            return Lookup.failed(result.error)
        return Lookup(state=self._state(result.json()))

    def patch(
        self,
        client: CallClient,
        observed: Mapping[str, Any],
        diff: ResourceDiff,
        desired: ResourceDescriptor,  # noqa: ARG002
    ) -> Lookup:
        operations = [
            {"op": "replace", "path": f"/{attribute}", "value": change["desired"]}
            for attribute, change in diff.mutable.items()
        ]
        result = client.call(
            "PATCH", f"_apis/graph/groups/{observed['descriptor']}", operations, headers=_JSON_PATCH, preview=True
        )
        if not result.ok:
            return Lookup.failed(result.error)
        return Lookup(state=self._state(result.json()))


class MembershipKind(BaseResourceKind):
    """Graph membership of a member (user or group descriptor) in a container group.

    The membership endpoint answers a duplicate add with 409, the same status
    it uses for real conflicts, so for this kind a 409 on create means
    "already a member".
    """

    name: ClassVar[str] = "membership"
    conflict_message: ClassVar[str] = "already a member"

    @staticmethod
    def _path(desired: ResourceDescriptor) -> str:
        return f"_apis/graph/memberships/{desired.key['member']}/{desired.key['group']}"

    def read(self, client: CallClient, desired: ResourceDescriptor) -> Lookup:
        return self._from_result(client.call("GET", self._path(desired), preview=True))

    def create(self, client: CallClient, desired: ResourceDescriptor) -> Lookup:
        result = client.call("PUT", self._path(desired), preview=True)
        if not result.ok:
            return Lookup.failed(result.error)
        return Lookup(state=result.json())

    def is_benign_conflict(self, desired: ResourceDescriptor) -> bool:  # noqa: ARG002
        return True


class BranchPolicyKind(BaseResourceKind):
    """Branch policy configuration scoped to one repository and ref."""

    name: ClassVar[str] = "branch_policy"

    @staticmethod
    def _matches(configuration: Mapping[str, Any], desired: ResourceDescriptor) -> bool:
        if (configuration.get("type") or {}).get("id") != desired.key["policy_type"]:
            return False
        scopes = (configuration.get("settings") or {}).get("scope") or []
        return any(
            scope.get("repositoryId") == desired.key["repository_id"] and scope.get("refName") == desired.key["ref_name"]
            for scope in scopes
        )

    @staticmethod
    def _state(configuration: Mapping[str, Any]) -> dict[str, Any]:
        settings = {k: v for k, v in (configuration.get("settings") or {}).items() if k != "scope"}
        return {
            "id": configuration.get("id"),
            "is_enabled": configuration.get("isEnabled"),
            "is_blocking": configuration.get("isBlocking"),
            "settings": settings,
        }

    @staticmethod
    def _body(desired: ResourceDescriptor, settings: Mapping[str, Any]) -> dict[str, Any]:
        return {
            "isEnabled": desired.attributes.get("is_enabled", True),
            "isBlocking": desired.attributes.get("is_blocking", True),
            "type": {"id": desired.key["policy_type"]},
            "settings": {
                **settings,
                "scope": [
                    {
                        "repositoryId": desired.key["repository_id"],
                        "refName": desired.key["ref_name"],
                        "matchKind": "Exact",
                    }
                ],
            },
        }

    def read(self, client: CallClient, desired: ResourceDescriptor) -> Lookup:
        result = client.call(
            "GET",
            f"{desired.key['project']}/_apis/git/policy/configurations",
            query={
                "repositoryId": desired.key["repository_id"],
                "refName": desired.key["ref_name"],
                "policyType": desired.key["policy_type"],
            },
        )
        if not result.ok:
            return Lookup.failed(result.error)
        for configuration in result.json().get("value", []):
            if self._matches(configuration, desired):
                return Lookup(state=self._state(configuration))
        return Lookup.absent()

    def create(self, client: CallClient, desired: ResourceDescriptor) -> Lookup:
        body = self._body(desired, desired.attributes.get("settings", {}))
        result = client.call("POST", f"{desired.key['project']}/_apis/policy/configurations", body)
        if not result.ok:
            return Lookup.failed(result.error)
        return Lookup(state=self._state(result.json()))

    def patch(
        self,
        client: CallClient,
        observed: Mapping[str, Any],
        diff: ResourceDiff,  # noqa: ARG002
        desired: ResourceDescriptor,
    ) -> Lookup:
        # The configuration endpoint only supports full replacement
        settings = {**observed.get("settings", {}), **desired.attributes.get("settings", {})}
        result = client.call(
            "PUT", f"{desired.key['project']}/_apis/policy/configurations/{observed['id']}", self._body(desired, settings)
        )
        if not result.ok:
            return Lookup.failed(result.error)
        return Lookup(state=self._state(result.json()))


class WikiKind(BaseResourceKind):
    """Project wiki. Its type cannot change after creation."""

    name: ClassVar[str] = "wiki"
    protected_fields: ClassVar[frozenset[str]] = frozenset({"type"})
    create_only_fields: ClassVar[frozenset[str]] = frozenset({"project_id"})

    @staticmethod
    def _state(body: Mapping[str, Any]) -> dict[str, Any]:
        return {"id": body.get("id"), "name": body.get("name"), "type": body.get("type")}

    def read(self, client: CallClient, desired: ResourceDescriptor) -> Lookup:
        result = client.call("GET", f"{desired.key['project']}/_apis/wiki/wikis")
        if not result.ok:
            return Lookup.failed(result.error)
        wanted = desired.key["wiki"].lower()
        wikis = result.json().get("value", [])
        for wiki in wikis:
            if str(wiki.get("name", "")).lower() == wanted:
                return Lookup(state=self._state(wiki))
        if desired.attributes.get("type", "projectWiki") == "projectWiki":
            # A project has at most one project wiki, whatever its name
            for wiki in wikis:
                if wiki.get("type") == "projectWiki":
                    return Lookup(state=self._state(wiki))
        return Lookup.absent()

    def create(self, client: CallClient, desired: ResourceDescriptor) -> Lookup:
        body = {
            "name": desired.key["wiki"],
            "projectId": desired.attributes.get("project_id"),
            "type": desired.attributes.get("type", "projectWiki"),
        }
        result = client.call("POST", f"{desired.key['project']}/_apis/wiki/wikis", body)
        if not result.ok:
            return Lookup.failed(result.error)
        return Lookup(state=self._state(result.json()))


class WikiPageKind(BaseResourceKind):
    """Wiki page with create-only content: existing pages are never overwritten."""

    name: ClassVar[str] = "wiki_page"
    protected_fields: ClassVar[frozenset[str]] = frozenset({"content"})

    @staticmethod
    def _path(desired: ResourceDescriptor) -> str:
        return f"{desired.key['project']}/_apis/wiki/wikis/{desired.key['wiki_id']}/pages"

    def read(self, client: CallClient, desired: ResourceDescriptor) -> Lookup:
        result = client.call("GET", self._path(desired), query={"path": desired.key["path"], "includeContent": "true"})
        lookup = self._from_result(result)
        if lookup.found and lookup.state is not None:
            lookup.state = {
                "path": lookup.state.get("path"),
                "content": lookup.state.get("content", ""),
                "etag": result.headers.get("ETag"),
            }
        return lookup

    def create(self, client: CallClient, desired: ResourceDescriptor) -> Lookup:
        content = desired.attributes.get("content", "")
        result = client.call("PUT", self._path(desired), {"content": content}, query={"path": desired.key["path"]})
        if not result.ok:
            return Lookup.failed(result.error)
        return Lookup(state={"path": desired.key["path"], "content": content, "etag": result.headers.get("ETag")})


def default_kinds() -> dict[str, BaseResourceKind]:
    """One instance of every supported resource kind, keyed by kind name."""
    kinds: list[BaseResourceKind] = [
        ProjectKind(),
        RepositoryKind(),
        GroupKind(),
        MembershipKind(),
        BranchPolicyKind(),
        WikiKind(),
        WikiPageKind(),
    ]
    return {kind.name: kind for kind in kinds}
