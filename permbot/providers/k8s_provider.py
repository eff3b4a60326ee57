"""Kubernetes API client: namespace lookups, RBAC upserts and ConfigMap read/watch."""

from __future__ import annotations

import threading
from typing import Any, Dict, Iterator, Optional, Protocol, runtime_checkable

from permbot.core.models import ChangeEvent

_core_v1_api = None
_rbac_v1_api = None
_config_loaded = False
_init_lock = threading.Lock()

WATCH_READ_TIMEOUT_MARGIN_SECONDS = 30


@runtime_checkable
class ClusterClient(Protocol):
    def get_namespace(self, name: str) -> bool: ...

    def upsert_role(self, namespace: str, manifest: Dict[str, Any], *, dry_run: bool = False) -> Dict[str, Any]: ...

    def upsert_role_binding(
        self, namespace: str, manifest: Dict[str, Any], *, dry_run: bool = False
    ) -> Dict[str, Any]: ...

    def upsert_cluster_role(self, manifest: Dict[str, Any], *, dry_run: bool = False) -> Dict[str, Any]: ...

    def upsert_cluster_role_binding(self, manifest: Dict[str, Any], *, dry_run: bool = False) -> Dict[str, Any]: ...

    def read_config_map(self, namespace: str, name: str) -> Optional[Dict[str, Any]]: ...

    def watch_config_map(
        self,
        namespace: str,
        name: str,
        *,
        resource_version: Optional[str] = None,
        timeout_seconds: int = 300,
    ) -> Iterator[ChangeEvent]: ...


class DefaultK8sProvider:
    def get_namespace(self, name: str) -> bool:
        return namespace_exists(name)

    def upsert_role(self, namespace: str, manifest: Dict[str, Any], *, dry_run: bool = False) -> Dict[str, Any]:
        return upsert_role(namespace, manifest, dry_run=dry_run)

    def upsert_role_binding(
        self, namespace: str, manifest: Dict[str, Any], *, dry_run: bool = False
    ) -> Dict[str, Any]:
        return upsert_role_binding(namespace, manifest, dry_run=dry_run)

    def upsert_cluster_role(self, manifest: Dict[str, Any], *, dry_run: bool = False) -> Dict[str, Any]:
        return upsert_cluster_role(manifest, dry_run=dry_run)

    def upsert_cluster_role_binding(self, manifest: Dict[str, Any], *, dry_run: bool = False) -> Dict[str, Any]:
        return upsert_cluster_role_binding(manifest, dry_run=dry_run)

    def read_config_map(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        return read_config_map(namespace, name)

    def watch_config_map(
        self,
        namespace: str,
        name: str,
        *,
        resource_version: Optional[str] = None,
        timeout_seconds: int = 300,
    ) -> Iterator[ChangeEvent]:
        return watch_config_map(namespace, name, resource_version=resource_version, timeout_seconds=timeout_seconds)


def get_k8s_provider() -> ClusterClient:
    """Seam for swapping provider implementations (tests use in-memory fakes)."""
    return DefaultK8sProvider()


def _ensure_config_loaded() -> None:
    """Load in-cluster config, falling back to kubeconfig (honours KUBECONFIG). Caller holds the lock."""
    global _config_loaded
    if _config_loaded:
        return
    from kubernetes import config

    try:
        config.load_incluster_config()
    except config.ConfigException:
        config.load_kube_config()
    _config_loaded = True


def _get_core_v1():
    """Return a cached CoreV1Api client (thread-safe lazy init)."""
    global _core_v1_api
    if _core_v1_api is not None:
        return _core_v1_api

    with _init_lock:
        if _core_v1_api is not None:
            return _core_v1_api
        from kubernetes import client

        _ensure_config_loaded()
        _core_v1_api = client.CoreV1Api()
        return _core_v1_api


def _get_rbac_v1():
    """Return a cached RbacAuthorizationV1Api client (thread-safe lazy init)."""
    global _rbac_v1_api
    if _rbac_v1_api is not None:
        return _rbac_v1_api

    with _init_lock:
        if _rbac_v1_api is not None:
            return _rbac_v1_api
        from kubernetes import client

        _ensure_config_loaded()
        _rbac_v1_api = client.RbacAuthorizationV1Api()
        return _rbac_v1_api


def _status(err: BaseException) -> Optional[int]:
    # kubernetes.client.rest.ApiException carries the HTTP status.
    status = getattr(err, "status", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def _dry_run_kwargs(dry_run: bool) -> Dict[str, Any]:
    return {"dry_run": "All"} if dry_run else {}


def _summary(obj: Any) -> Dict[str, Any]:
    md = getattr(obj, "metadata", None)
    return {
        "name": getattr(md, "name", None),
        "namespace": getattr(md, "namespace", None),
        "resource_version": getattr(md, "resource_version", None),
    }


def _upsert(replace_fn: Any, create_fn: Any, *, name: str, body: Dict[str, Any], dry_run: bool, **scope: Any):
    """
    Full overwrite by name: replace, or create when the object does not exist yet.

    No read-before-write and no patch; whatever is on the cluster under this name is clobbered.
    """
    kwargs = _dry_run_kwargs(dry_run)
    try:
        return _summary(replace_fn(name=name, body=body, **scope, **kwargs))
    except Exception as e:
        if _status(e) != 404:
            raise
    return _summary(create_fn(body=body, **scope, **kwargs))


def namespace_exists(name: str) -> bool:
    v1 = _get_core_v1()
    try:
        v1.read_namespace(name=name)
    except Exception as e:
        if _status(e) == 404:
            return False
        raise
    return True


def upsert_role(namespace: str, manifest: Dict[str, Any], *, dry_run: bool = False) -> Dict[str, Any]:
    rbac = _get_rbac_v1()
    return _upsert(
        rbac.replace_namespaced_role,
        rbac.create_namespaced_role,
        name=manifest["metadata"]["name"],
        body=manifest,
        dry_run=dry_run,
        namespace=namespace,
    )


def upsert_role_binding(namespace: str, manifest: Dict[str, Any], *, dry_run: bool = False) -> Dict[str, Any]:
    rbac = _get_rbac_v1()
    return _upsert(
        rbac.replace_namespaced_role_binding,
        rbac.create_namespaced_role_binding,
        name=manifest["metadata"]["name"],
        body=manifest,
        dry_run=dry_run,
        namespace=namespace,
    )


def upsert_cluster_role(manifest: Dict[str, Any], *, dry_run: bool = False) -> Dict[str, Any]:
    rbac = _get_rbac_v1()
    return _upsert(
        rbac.replace_cluster_role,
        rbac.create_cluster_role,
        name=manifest["metadata"]["name"],
        body=manifest,
        dry_run=dry_run,
    )


def upsert_cluster_role_binding(manifest: Dict[str, Any], *, dry_run: bool = False) -> Dict[str, Any]:
    rbac = _get_rbac_v1()
    return _upsert(
        rbac.replace_cluster_role_binding,
        rbac.create_cluster_role_binding,
        name=manifest["metadata"]["name"],
        body=manifest,
        dry_run=dry_run,
    )


def _config_map_dict(cm: Any) -> Dict[str, Any]:
    md = getattr(cm, "metadata", None)
    return {
        "name": getattr(md, "name", None),
        "namespace": getattr(md, "namespace", None),
        "resource_version": getattr(md, "resource_version", None),
        "annotations": dict(getattr(md, "annotations", None) or {}),
        "data": dict(getattr(cm, "data", None) or {}),
    }


def read_config_map(namespace: str, name: str) -> Optional[Dict[str, Any]]:
    """
    Read a ConfigMap and return {name, namespace, resource_version, annotations, data}.

    Returns None when it does not exist; other API errors propagate.
    """
    v1 = _get_core_v1()
    try:
        cm = v1.read_namespaced_config_map(name=name, namespace=namespace)
    except Exception as e:
        if _status(e) == 404:
            return None
        raise
    return _config_map_dict(cm)


def watch_config_map(
    namespace: str,
    name: str,
    *,
    resource_version: Optional[str] = None,
    timeout_seconds: int = 300,
) -> Iterator[ChangeEvent]:
    """
    Stream change events for a single ConfigMap.

    The stream ends when the server-side timeout elapses; callers re-open it. `ERROR` events
    (e.g. 410 Gone for an expired resource version) are passed through with the raw Status as
    the event object.
    """
    from kubernetes import watch

    v1 = _get_core_v1()
    kwargs: Dict[str, Any] = {
        "namespace": namespace,
        "field_selector": f"metadata.name={name}",
        "timeout_seconds": timeout_seconds,
        # client-side read timeout so a half-open connection raises instead of blocking forever
        "_request_timeout": timeout_seconds + WATCH_READ_TIMEOUT_MARGIN_SECONDS,
    }
    if resource_version:
        kwargs["resource_version"] = resource_version

    w = watch.Watch()
    try:
        for ev in w.stream(v1.list_namespaced_config_map, **kwargs):
            kind = str(ev.get("type") or "").upper()
            obj = ev.get("object")
            if kind == "ERROR":
                yield ChangeEvent(kind=kind, object=ev.get("raw_object") or obj)
                continue
            cm = _config_map_dict(obj)
            yield ChangeEvent(kind=kind, object=cm, resource_version=cm.get("resource_version"))
    finally:
        w.stop()
