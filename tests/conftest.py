"""
Pytest config.

Local imports like `import permbot` rely on the repo root being on sys.path. When invoking a
global `pytest` entrypoint that doesn't happen reliably during collection, so we pin it here.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import pytest


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_syspath()


SAMPLE_TOML = """
[[role]]
name = "viewer"
globalUsers = ["ops@example.com"]
globalServiceAccounts = ["monitoring:prometheus", "auditor"]

[[role.rules]]
apiGroups = [""]
resources = ["pods", "services"]
verbs = ["get", "list", "watch"]

[[role]]
name = "editor"

[[role.rules]]
apiGroups = ["apps"]
resources = ["deployments"]
verbs = ["get", "list", "update", "patch"]

[[project]]
namespace = "team-a"

[[project.roles]]
role = "viewer"
users = ["alice"]
serviceAccounts = ["ci", "team-b:deployer"]

[[project.roles]]
role = "editor"
users = ["bob"]

[[project]]
namespace = "team-b"

[[project.roles]]
role = "viewer"
users = ["carol"]
"""


@pytest.fixture(autouse=True)
def _clear_permbot_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep host env (CI runners, dev shells) from leaking into settings/version under test."""
    for name in (
        "PERMBOT_VERSION",
        "PERMBOT_CONFIGMAP",
        "PERMBOT_CONFIGMAP_KEY",
        "PERMBOT_OWNER",
        "PERMBOT_DRY_RUN",
        "PERMBOT_GLOBAL",
        "SLACK_WEBHOOK",
        "HTTP_LISTEN",
        "JSON_LOGS",
        "PERMBOT_WATCH_TIMEOUT_SECONDS",
        "PERMBOT_RESYNC_SECONDS",
        "PERMBOT_BACKOFF_BASE_SECONDS",
        "PERMBOT_BACKOFF_MAX_SECONDS",
        "PERMBOT_MAX_WATCH_FAILURES",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def sample_toml() -> str:
    return SAMPLE_TOML


@pytest.fixture
def sample_config():
    from permbot.core.config_loader import decode_config

    return decode_config(SAMPLE_TOML)


@pytest.fixture
def sample_config_file(tmp_path: Path) -> Path:
    p = tmp_path / "permbot.toml"
    p.write_text(SAMPLE_TOML, encoding="utf-8")
    return p


class FakeCluster:
    """
    In-memory ClusterClient.

    Records every upsert as (kind, namespace, manifest). `fail_names` makes upserts of those object
    names raise; `watch_streams` is consumed one list per watch_config_map call.
    """

    def __init__(
        self,
        *,
        namespaces: Optional[List[str]] = None,
        config_maps: Optional[Dict[tuple, Dict[str, Any]]] = None,
        fail_names: Optional[List[str]] = None,
        watch_streams: Optional[List[Any]] = None,
    ) -> None:
        self.namespaces = set(namespaces or [])
        self.config_maps = config_maps or {}
        self.fail_names = set(fail_names or [])
        self.watch_streams = list(watch_streams or [])
        self.applied: List[tuple] = []
        self.watch_calls: List[Dict[str, Any]] = []
        self.on_watch_exhausted = None

    def get_namespace(self, name):
        return name in self.namespaces

    def _record(self, kind, namespace, manifest, dry_run):
        if manifest["metadata"]["name"] in self.fail_names:
            raise RuntimeError(f"forbidden: {manifest['metadata']['name']}")
        self.applied.append((kind, namespace, manifest, dry_run))
        return {"name": manifest["metadata"]["name"], "namespace": namespace, "resource_version": "1"}

    def upsert_role(self, namespace, manifest, *, dry_run=False):
        return self._record("Role", namespace, manifest, dry_run)

    def upsert_role_binding(self, namespace, manifest, *, dry_run=False):
        return self._record("RoleBinding", namespace, manifest, dry_run)

    def upsert_cluster_role(self, manifest, *, dry_run=False):
        return self._record("ClusterRole", None, manifest, dry_run)

    def upsert_cluster_role_binding(self, manifest, *, dry_run=False):
        return self._record("ClusterRoleBinding", None, manifest, dry_run)

    def read_config_map(self, namespace, name):
        cm = self.config_maps.get((namespace, name))
        if isinstance(cm, Exception):
            raise cm
        return cm

    def watch_config_map(self, namespace, name, *, resource_version=None, timeout_seconds=300) -> Iterator[Any]:
        self.watch_calls.append(
            {"namespace": namespace, "name": name, "resource_version": resource_version, "timeout": timeout_seconds}
        )
        if not self.watch_streams:
            if self.on_watch_exhausted is not None:
                self.on_watch_exhausted()
            return iter(())
        nxt = self.watch_streams.pop(0)
        if isinstance(nxt, Exception):
            raise nxt
        return iter(nxt)


@pytest.fixture
def fake_cluster_cls():
    return FakeCluster
