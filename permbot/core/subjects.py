from __future__ import annotations

from permbot.core.models import RBAC_API_GROUP, Subject

GLOBAL_DEFAULT_NAMESPACE = "default"


def user_subject(raw: str) -> Subject:
    """Users are never split: the raw identifier is the subject name."""
    return Subject(kind="User", name=raw, api_group=RBAC_API_GROUP)


def resolve_service_account(raw: str, default_namespace: str) -> Subject:
    """
    Resolve `name` or `namespace:name` into a namespace-qualified ServiceAccount subject.

    Split happens on the first ':' only. When either side is empty the non-empty token is the
    name and the account lives in `default_namespace`:
      "foo"    -> (default_namespace, "foo")
      "ns:foo" -> ("ns", "foo")
      "ns:"    -> (default_namespace, "ns")
      ":foo"   -> (default_namespace, "foo")
    """
    head, sep, tail = raw.partition(":")
    if sep and head and tail:
        namespace, name = head, tail
    else:
        namespace, name = default_namespace, head or tail
    return Subject(kind="ServiceAccount", name=name, namespace=namespace)
