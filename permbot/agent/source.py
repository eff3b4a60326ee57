"""Policy sources: where a cycle's PermbotConfig snapshot comes from."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Optional, Protocol, Tuple, Union

from permbot.core.config_loader import decode_config, load_config_file
from permbot.core.errors import ConfigDecodeError, SourceEmpty, SourceInvalid, SourceUnavailable
from permbot.core.models import ANNOTATION_RULES_REF, PermbotConfig, Provenance
from permbot.providers.k8s_provider import ClusterClient

logger = logging.getLogger(__name__)


class PolicySource(Protocol):
    def fetch(self) -> Tuple[PermbotConfig, Provenance]: ...


class ConfigMapSource:
    """
    Reads the policy TOML from one key of a ConfigMap.

    The ConfigMap's annotations become the provenance, so a CI job that writes the ConfigMap
    can stamp `dafni.ac.uk/permbot-rules-ref` with the git ref of the rules.
    """

    def __init__(self, cluster: ClusterClient, namespace: str, name: str, key: str = "permbot.toml") -> None:
        self.cluster = cluster
        self.namespace = namespace
        self.name = name
        self.key = key

    @property
    def ref(self) -> str:
        return f"{self.namespace}/{self.name}"

    def fetch(self) -> Tuple[PermbotConfig, Provenance]:
        try:
            cm = self.cluster.read_config_map(self.namespace, self.name)
        except Exception as e:
            raise SourceUnavailable(f"unable to read configmap {self.ref}: {e}") from e
        if cm is None:
            raise SourceUnavailable(f"configmap {self.ref} not found")

        text = (cm.get("data") or {}).get(self.key) or ""
        if not text.strip():
            raise SourceEmpty(f"configmap {self.ref} key `{self.key}` is empty")
        try:
            cfg = decode_config(text)
        except ConfigDecodeError as e:
            raise SourceInvalid(f"configmap {self.ref} key `{self.key}`: {e}") from e

        provenance = Provenance(
            source=f"configmap/{self.ref}",
            resource_version=cm.get("resource_version"),
            annotations=dict(cm.get("annotations") or {}),
        )
        return cfg, provenance


class FileSource:
    """A static config file (one-shot mode). `rules_ref` stands in for ConfigMap annotations."""

    def __init__(self, path: Union[str, Path], *, rules_ref: Optional[str] = None) -> None:
        self.path = Path(path)
        self.rules_ref = rules_ref

    def fetch(self) -> Tuple[PermbotConfig, Provenance]:
        if not self.path.exists():
            raise SourceUnavailable(f"config file {self.path} not found")
        cfg = load_config_file(self.path)
        annotations: Dict[str, str] = {}
        if self.rules_ref:
            annotations[ANNOTATION_RULES_REF] = self.rules_ref
        return cfg, Provenance(source=f"file/{self.path}", annotations=annotations)
