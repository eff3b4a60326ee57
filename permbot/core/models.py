"""Canonical domain models.

Two families live here:
- the policy config as written by admins (TOML/JSON keys are camelCase, Python fields are snake_case)
- the RBAC objects generated from it, which serialize to the Kubernetes wire format via `to_manifest()`

Design note:
- Everything is frozen. A config snapshot is decoded once per cycle and never mutated; generated
  objects are recomputed from scratch every cycle.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

RBAC_API_GROUP = "rbac.authorization.k8s.io"
RBAC_API_VERSION = f"{RBAC_API_GROUP}/v1"

ANNOTATION_VERSION = "dafni.ac.uk/permbot-version"
ANNOTATION_RULES_REF = "dafni.ac.uk/permbot-rules-ref"
LABEL_OWNER = "dafni.ac.uk/permbot-owner"


class BaseModelStrict(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)


# ---- Policy config ----


class Rule(BaseModelStrict):
    api_groups: List[str] = Field(default_factory=list, alias="apiGroups")
    resources: List[str] = Field(default_factory=list)
    verbs: List[str] = Field(default_factory=list)


class RoleUsers(BaseModelStrict):
    # Must name a Role.name; not validated.
    role: str
    users: List[str] = Field(default_factory=list)
    service_accounts: List[str] = Field(default_factory=list, alias="serviceAccounts")


class Project(BaseModelStrict):
    namespace: str = Field(min_length=1)
    role_assignments: List[RoleUsers] = Field(default_factory=list, alias="roles")


class Role(BaseModelStrict):
    name: str
    rules: List[Rule] = Field(default_factory=list)
    global_users: List[str] = Field(default_factory=list, alias="globalUsers")
    global_service_accounts: List[str] = Field(default_factory=list, alias="globalServiceAccounts")

    @property
    def global_subject_count(self) -> int:
        return len(self.global_users) + len(self.global_service_accounts)


class PermbotConfig(BaseModelStrict):
    projects: List[Project] = Field(default_factory=list, alias="project")
    roles: List[Role] = Field(default_factory=list, alias="role")

    def namespaces(self) -> List[str]:
        return [p.namespace for p in self.projects]


# ---- Generated RBAC objects ----


class Subject(BaseModelStrict):
    """A qualified identity; `namespace` is only set for ServiceAccounts."""

    kind: Literal["User", "ServiceAccount"]
    name: str
    namespace: Optional[str] = None
    api_group: str = Field(default="", alias="apiGroup")


class PolicyRule(BaseModelStrict):
    api_groups: List[str] = Field(default_factory=list, alias="apiGroups")
    resources: List[str] = Field(default_factory=list)
    verbs: List[str] = Field(default_factory=list)


class ObjectMeta(BaseModelStrict):
    name: str
    namespace: Optional[str] = None
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)


class RoleRef(BaseModelStrict):
    api_group: str = Field(default=RBAC_API_GROUP, alias="apiGroup")
    kind: Literal["Role", "ClusterRole"]
    name: str


class GeneratedResource(BaseModelStrict):
    api_version: str = Field(default=RBAC_API_VERSION, alias="apiVersion")
    kind: str
    metadata: ObjectMeta

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> Optional[str]:
        return self.metadata.namespace

    def to_manifest(self) -> Dict[str, Any]:
        """Kubernetes wire shape: camelCase keys, unset optionals dropped, apiVersion/kind first."""
        data = self.model_dump(by_alias=True, exclude_none=True)
        return {"apiVersion": data.pop("apiVersion"), "kind": data.pop("kind"), **data}


class GeneratedRole(GeneratedResource):
    kind: Literal["Role"] = "Role"
    rules: List[PolicyRule] = Field(default_factory=list)


class GeneratedRoleBinding(GeneratedResource):
    kind: Literal["RoleBinding"] = "RoleBinding"
    role_ref: RoleRef = Field(alias="roleRef")
    subjects: List[Subject] = Field(default_factory=list)


class GeneratedClusterRole(GeneratedResource):
    kind: Literal["ClusterRole"] = "ClusterRole"
    rules: List[PolicyRule] = Field(default_factory=list)


class GeneratedClusterRoleBinding(GeneratedResource):
    kind: Literal["ClusterRoleBinding"] = "ClusterRoleBinding"
    role_ref: RoleRef = Field(alias="roleRef")
    subjects: List[Subject] = Field(default_factory=list)


# ---- Policy source / agent bookkeeping ----


class Provenance(BaseModelStrict):
    """Metadata of the object the config was read from."""

    source: str = ""
    resource_version: Optional[str] = None
    annotations: Dict[str, str] = Field(default_factory=dict)

    @property
    def rules_ref(self) -> Optional[str]:
        ref = (self.annotations.get(ANNOTATION_RULES_REF) or "").strip()
        return ref or None


@dataclass(frozen=True)
class ChangeEvent:
    kind: str
    object: Any = None
    resource_version: Optional[str] = None


@dataclass
class CycleOutcome:
    rules_ref: str
    dry_run: bool = False
    applied: List[str] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)
    skipped_namespaces: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return not self.failures
