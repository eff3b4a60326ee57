"""
One-shot (CI) mode: compile a static config file once, then either print YAML or apply it.

Unlike the watch loop, every error surfaces to the caller so CI jobs fail loudly.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional, Sequence, TextIO

from permbot.agent.config import AgentSettings
from permbot.agent.reconciler import PermbotAgent
from permbot.agent.source import FileSource
from permbot.compiler.render import collect_resources, render_yaml
from permbot.core.models import CycleOutcome
from permbot.providers.k8s_provider import ClusterClient, get_k8s_provider

logger = logging.getLogger(__name__)


def render_config(
    source: FileSource,
    *,
    namespace: Optional[str] = None,
    include_global: bool = True,
    owner: str = "permbot",
    out: Optional[TextIO] = None,
) -> int:
    """
    Print generated objects as YAML documents. Returns the number of documents written.

    With `namespace` set only that namespace (plus global objects) is rendered; an unknown namespace
    raises NamespaceNotFound and nothing is printed.
    """
    out = out or sys.stdout
    config, _provenance = source.fetch()
    namespaces: Optional[Sequence[str]] = [namespace] if namespace else None
    if namespace:
        logger.debug("rendering single namespace %s", namespace)
    else:
        logger.debug("no namespace specified - rendering all %d", len(config.projects))
    resources = collect_resources(
        config,
        namespaces=namespaces,
        include_global=include_global,
        rules_ref=source.rules_ref or "",
        owner=owner,
    )
    if resources:
        out.write(render_yaml(resources))
    return len(resources)


def apply_config(
    source: FileSource,
    *,
    settings: AgentSettings,
    cluster: Optional[ClusterClient] = None,
) -> CycleOutcome:
    """Apply once against the cluster (respects settings.dry_run / include_global)."""
    agent = PermbotAgent(cluster=cluster or get_k8s_provider(), source=source, settings=settings)
    config, provenance = agent.fetch_policy_source()
    outcome = agent.apply_cycle(
        config,
        provenance,
        dry_run=settings.dry_run,
        include_global=settings.include_global,
        rules_ref=source.rules_ref or "",
    )
    for failure in outcome.failures:
        logger.error("failed to apply %s", failure)
    return outcome
