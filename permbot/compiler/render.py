"""YAML rendering of generated objects (one-shot / CI mode)."""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Sequence

import yaml

from permbot.compiler.rbac import compile_global, compile_namespace
from permbot.core.models import GeneratedResource, PermbotConfig

logger = logging.getLogger(__name__)

DOCUMENT_SEPARATOR = "---\n"


def collect_resources(
    config: PermbotConfig,
    *,
    namespaces: Optional[Sequence[str]] = None,
    include_global: bool = True,
    rules_ref: str = "",
    owner: str = "permbot",
) -> List[GeneratedResource]:
    """
    Output order: per namespace (config order unless given) Roles then RoleBindings, then all
    ClusterRoles, then all ClusterRoleBindings.

    An unknown namespace raises NamespaceNotFound before anything is collected.
    """
    targets = list(namespaces) if namespaces else config.namespaces()
    per_namespace = [compile_namespace(config, ns, rules_ref, owner) for ns in targets]

    out: List[GeneratedResource] = []
    for roles, bindings in per_namespace:
        out.extend(roles)
        out.extend(bindings)
    if include_global:
        croles, cbindings = compile_global(config, rules_ref, owner)
        out.extend(croles)
        out.extend(cbindings)
    return out


def render_yaml(resources: Iterable[GeneratedResource]) -> str:
    docs = [
        yaml.safe_dump(r.to_manifest(), sort_keys=False, default_flow_style=False, allow_unicode=True)
        for r in resources
    ]
    return DOCUMENT_SEPARATOR.join(docs)
