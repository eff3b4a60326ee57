"""
Policy compiler: PermbotConfig -> Kubernetes RBAC objects.

Both entry points are pure: no I/O, no mutation of the config, and the same input always
produces the same objects in the same order. Object names are keyed only by role name, so
every object carrying the `permbot-auto-role` prefix is owned (and overwritten) by permbot.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

from permbot.core.errors import InvariantViolation, NamespaceNotFound
from permbot.core.models import (
    ANNOTATION_RULES_REF,
    ANNOTATION_VERSION,
    LABEL_OWNER,
    GeneratedClusterRole,
    GeneratedClusterRoleBinding,
    GeneratedRole,
    GeneratedRoleBinding,
    ObjectMeta,
    PermbotConfig,
    PolicyRule,
    Role,
    RoleRef,
    Subject,
)
from permbot.core.subjects import GLOBAL_DEFAULT_NAMESPACE, resolve_service_account, user_subject
from permbot.version import version

logger = logging.getLogger(__name__)

ROLE_PREFIX = "permbot-auto-role"
DEFAULT_OWNER = "permbot"


def role_name(role: str) -> str:
    return f"{ROLE_PREFIX}-{role}"


def role_binding_name(role: str) -> str:
    return f"{ROLE_PREFIX}-binding-{role}"


def cluster_role_name(role: str) -> str:
    return f"{ROLE_PREFIX}-global-{role}"


def cluster_role_binding_name(role: str) -> str:
    return f"{ROLE_PREFIX}-global-binding-{role}"


def object_annotations(rules_ref: str) -> Dict[str, str]:
    annotations = {ANNOTATION_VERSION: version()}
    if rules_ref:
        annotations[ANNOTATION_RULES_REF] = rules_ref
    return annotations


def object_labels(owner: str) -> Dict[str, str]:
    return {LABEL_OWNER: owner}


def _meta(name: str, *, rules_ref: str, owner: str, namespace: Optional[str] = None) -> ObjectMeta:
    return ObjectMeta(
        name=name,
        namespace=namespace,
        labels=object_labels(owner),
        annotations=object_annotations(rules_ref),
    )


def _policy_rules(role: Role) -> List[PolicyRule]:
    # Verbatim copy, order preserved, no dedupe.
    return [
        PolicyRule(api_groups=list(r.api_groups), resources=list(r.resources), verbs=list(r.verbs)) for r in role.rules
    ]


def _user_subjects(users: List[str]) -> List[Subject]:
    return [user_subject(u) for u in users]


def _service_account_subjects(accounts: List[str], default_namespace: str) -> List[Subject]:
    return [resolve_service_account(sa, default_namespace) for sa in accounts]


def compile_global(
    config: PermbotConfig,
    rules_ref: str,
    owner: str,
    *,
    log: Optional[logging.Logger] = None,
) -> Tuple[List[GeneratedClusterRole], List[GeneratedClusterRoleBinding]]:
    """
    Build one ClusterRole + ClusterRoleBinding per Role that lists global subjects.

    Roles without global users/service accounts produce nothing. Binding subjects are the
    global users (declared order) followed by the global service accounts, which default to the
    "default" namespace.
    """
    log = log or logger
    roles: List[GeneratedClusterRole] = []
    bindings: List[GeneratedClusterRoleBinding] = []

    for role in config.roles:
        subject_count = role.global_subject_count
        if subject_count == 0:
            continue
        log.debug("role %s: defining clusterrole+clusterrolebinding for %d global subjects", role.name, subject_count)

        crole = GeneratedClusterRole(
            metadata=_meta(cluster_role_name(role.name), rules_ref=rules_ref, owner=owner),
            rules=_policy_rules(role),
        )
        subjects = _user_subjects(role.global_users) + _service_account_subjects(
            role.global_service_accounts, GLOBAL_DEFAULT_NAMESPACE
        )
        if len(subjects) != subject_count:
            raise InvariantViolation(
                f"subject count mismatch for global role {role.name}: expected {subject_count}, built {len(subjects)}"
            )
        crb = GeneratedClusterRoleBinding(
            metadata=_meta(cluster_role_binding_name(role.name), rules_ref=rules_ref, owner=owner),
            role_ref=RoleRef(kind="ClusterRole", name=crole.name),
            subjects=subjects,
        )
        roles.append(crole)
        bindings.append(crb)

    return roles, bindings


def compile_namespace(
    config: PermbotConfig,
    namespace: str,
    rules_ref: str,
    owner: str,
    *,
    log: Optional[logging.Logger] = None,
) -> Tuple[List[GeneratedRole], List[GeneratedRoleBinding]]:
    """
    Build the Roles and RoleBindings for one namespace.

    Raises NamespaceNotFound when no project declares `namespace`. Only role assignments of the
    requested namespace are emitted; a role nobody is assigned to produces no objects, while an
    assignment with empty user/service-account lists produces a binding with zero subjects.
    """
    log = log or logger
    if not any(p.namespace == namespace for p in config.projects):
        raise NamespaceNotFound(namespace)

    roles: List[GeneratedRole] = []
    bindings: List[GeneratedRoleBinding] = []

    for role in config.roles:
        for project in config.projects:
            if project.namespace != namespace:
                continue
            for assignment in project.role_assignments:
                if assignment.role != role.name:
                    continue
                log.debug("namespace %s: defining role+rolebinding for role %s", namespace, role.name)

                nrole = GeneratedRole(
                    metadata=_meta(role_name(role.name), rules_ref=rules_ref, owner=owner, namespace=namespace),
                    rules=_policy_rules(role),
                )
                rb = GeneratedRoleBinding(
                    metadata=_meta(role_binding_name(role.name), rules_ref=rules_ref, owner=owner, namespace=namespace),
                    role_ref=RoleRef(kind="Role", name=nrole.name),
                    subjects=_user_subjects(assignment.users)
                    + _service_account_subjects(assignment.service_accounts, namespace),
                )
                roles.append(nrole)
                bindings.append(rb)

    return roles, bindings
