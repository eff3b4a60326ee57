from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Any, Optional, Tuple

from permbot.compiler.rbac import DEFAULT_OWNER

CONFIGMAP_KEY = "permbot.toml"


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "y", "on")


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except Exception:
        return default


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except Exception:
        return default


def split_configmap_ref(raw: str) -> Tuple[str, str]:
    """`ns/name` -> (ns, name); a bare `name` lives in the "default" namespace."""
    ns, sep, name = (raw or "").strip().partition("/")
    if not sep:
        return "default", ns
    return ns, name


@dataclass(frozen=True)
class AgentSettings:
    configmap_namespace: str = "permbot"
    configmap_name: str = "config"
    configmap_key: str = CONFIGMAP_KEY
    owner: str = DEFAULT_OWNER
    slack_webhook_url: Optional[str] = None
    http_listen: Optional[str] = None
    dry_run: bool = False
    include_global: bool = True

    # Watch hardening
    watch_timeout_seconds: int = 300
    resync_seconds: int = 600
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 60.0
    max_watch_failures: int = 0  # 0 = retry forever

    @property
    def configmap_ref(self) -> str:
        return f"{self.configmap_namespace}/{self.configmap_name}"

    def with_overrides(self, **overrides: Any) -> "AgentSettings":
        """Apply CLI flags on top of env values; None means "not given"."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


def load_agent_settings() -> AgentSettings:
    """
    Load agent settings from env (Deployment/ConfigMap friendly).

    Vars:
    - PERMBOT_CONFIGMAP=permbot/config   (ns/name, bare name -> "default" ns)
    - PERMBOT_CONFIGMAP_KEY=permbot.toml
    - PERMBOT_OWNER=permbot
    - PERMBOT_DRY_RUN=0
    - PERMBOT_GLOBAL=1
    - SLACK_WEBHOOK=https://hooks.slack.com/...
    - HTTP_LISTEN=0.0.0.0:8080
    - PERMBOT_WATCH_TIMEOUT_SECONDS=300
    - PERMBOT_RESYNC_SECONDS=600
    - PERMBOT_BACKOFF_BASE_SECONDS=1
    - PERMBOT_BACKOFF_MAX_SECONDS=60
    - PERMBOT_MAX_WATCH_FAILURES=0
    """
    ns, name = split_configmap_ref(os.getenv("PERMBOT_CONFIGMAP") or "permbot/config")
    return AgentSettings(
        configmap_namespace=ns,
        configmap_name=name,
        configmap_key=(os.getenv("PERMBOT_CONFIGMAP_KEY") or "").strip() or CONFIGMAP_KEY,
        owner=(os.getenv("PERMBOT_OWNER") or "").strip() or DEFAULT_OWNER,
        slack_webhook_url=(os.getenv("SLACK_WEBHOOK") or "").strip() or None,
        http_listen=(os.getenv("HTTP_LISTEN") or "").strip() or None,
        dry_run=_env_bool("PERMBOT_DRY_RUN", False),
        include_global=_env_bool("PERMBOT_GLOBAL", True),
        watch_timeout_seconds=max(1, _env_int("PERMBOT_WATCH_TIMEOUT_SECONDS", 300)),
        resync_seconds=max(0, _env_int("PERMBOT_RESYNC_SECONDS", 600)),
        backoff_base_seconds=max(0.0, _env_float("PERMBOT_BACKOFF_BASE_SECONDS", 1.0)),
        backoff_max_seconds=max(0.0, _env_float("PERMBOT_BACKOFF_MAX_SECONDS", 60.0)),
        max_watch_failures=max(0, _env_int("PERMBOT_MAX_WATCH_FAILURES", 0)),
    )


def backoff_delay(attempt: int, *, base: float, cap: float) -> float:
    """Exponential backoff: base, 2*base, 4*base, ... capped at `cap`. `attempt` is 1-based."""
    n = max(1, int(attempt))
    return min(cap, base * (2 ** min(n - 1, 30)))
