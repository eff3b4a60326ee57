"""
Reconciliation agent.

One cycle = fetch the policy ConfigMap -> compile -> upsert every generated object -> record the
outcome -> notify. Cycles never overlap: the watch loop handles one event completely before
reading the next.

Apply semantics:
- every upsert is a full overwrite by name; permbot owns every object named `permbot-auto-role-*`
  and manual edits to those objects are clobbered on the next cycle
- best effort: a failed upsert is logged and recorded, later objects and namespaces are still
  attempted, nothing is rolled back
- a cycle is classified `error` when the fetch fails or any upsert fails; namespaces that do not
  exist on the cluster are skipped with a warning and do not count as errors
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

from permbot.agent.config import AgentSettings, backoff_delay
from permbot.agent.metrics import AgentMetrics
from permbot.agent.source import PolicySource
from permbot.compiler.rbac import compile_global, compile_namespace
from permbot.core.errors import ApplyError, InvariantViolation, PermbotError, SourceDeleted, SourceUnavailable
from permbot.core.models import CycleOutcome, GeneratedResource, PermbotConfig, Provenance
from permbot.providers.k8s_provider import ClusterClient
from permbot.providers.notify_provider import NullNotifier, Notifier

logger = logging.getLogger(__name__)

UNKNOWN_RULES_REF = "unknown"
CYCLE_EVENTS = ("ADDED", "MODIFIED", "RESYNC")

# A watch that closes faster than this without delivering anything is treated as a failure.
MIN_HEALTHY_STREAM_SECONDS = 1.0


def _http_status(err: BaseException) -> Optional[int]:
    status = getattr(err, "status", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def _is_gone(obj: Any) -> bool:
    """ERROR event payload for an expired resource version (HTTP 410)."""
    code = obj.get("code") if isinstance(obj, dict) else getattr(obj, "code", None)
    try:
        return int(code) == 410
    except (TypeError, ValueError):
        return False


def rules_ref_from_provenance(provenance: Optional[Provenance]) -> str:
    if provenance is None:
        return UNKNOWN_RULES_REF
    return provenance.rules_ref or UNKNOWN_RULES_REF


class PermbotAgent:
    def __init__(
        self,
        *,
        cluster: ClusterClient,
        source: PolicySource,
        settings: Optional[AgentSettings] = None,
        notifier: Optional[Notifier] = None,
        metrics: Optional[AgentMetrics] = None,
        log: Optional[logging.Logger] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cluster = cluster
        self.source = source
        self.settings = settings or AgentSettings()
        self.notifier = notifier or NullNotifier()
        self.metrics = metrics or AgentMetrics()
        self.log = log or logger
        self._sleep = sleep
        self._clock = clock
        self._stop = threading.Event()
        self._last_cycle_at: Optional[float] = None

    # ---- single cycle ----

    def fetch_policy_source(self) -> Tuple[PermbotConfig, Provenance]:
        return self.source.fetch()

    def on_change_event(self, event_kind: str) -> Optional[CycleOutcome]:
        """
        React to one watch event.

        DELETED raises SourceDeleted (nothing is re-created locally); ADDED/MODIFIED/RESYNC run a
        full cycle; anything else (BOOKMARK, ...) is ignored.
        """
        kind = (event_kind or "").strip().upper()
        if kind == "DELETED":
            raise SourceDeleted(f"policy source received deletion event ({getattr(self.source, 'ref', 'source')})")
        if kind not in CYCLE_EVENTS:
            self.log.debug("ignoring watch event %s", kind)
            return None
        return self.reconcile()

    def reconcile(self) -> CycleOutcome:
        """Fetch + apply, then record metrics and notify. Fetch errors propagate after being counted."""
        try:
            config, provenance = self.fetch_policy_source()
        except PermbotError:
            self.metrics.record_outcome(False)
            self._notify(False)
            raise

        self.log.info("applying changed config with %d projects, %d roles", len(config.projects), len(config.roles))
        outcome = self.apply_cycle(
            config,
            provenance,
            dry_run=self.settings.dry_run,
            include_global=self.settings.include_global,
        )
        self._last_cycle_at = self._clock()
        self.metrics.record_outcome(outcome.success)
        self._notify(outcome.success)
        return outcome

    def apply_cycle(
        self,
        config: PermbotConfig,
        provenance: Optional[Provenance],
        *,
        dry_run: bool = False,
        include_global: bool = True,
        rules_ref: Optional[str] = None,
    ) -> CycleOutcome:
        """`rules_ref`, when given, is stamped as-is (empty = no annotation) instead of the provenance value."""
        if rules_ref is None:
            rules_ref = rules_ref_from_provenance(provenance)
        owner = self.settings.owner
        outcome = CycleOutcome(rules_ref=rules_ref, dry_run=dry_run)
        started = self._clock()

        if include_global:
            croles, cbindings = compile_global(config, rules_ref, owner, log=self.log)
            for cr in croles:
                self._apply(outcome, cr, lambda m: self.cluster.upsert_cluster_role(m, dry_run=dry_run))
            for crb in cbindings:
                self._apply(outcome, crb, lambda m: self.cluster.upsert_cluster_role_binding(m, dry_run=dry_run))

        for project in config.projects:
            ns = project.namespace
            try:
                exists = self.cluster.get_namespace(ns)
            except Exception as e:
                self.log.error("namespace %s: unable to check namespace: %s", ns, e)
                outcome.failures.append(f"Namespace/{ns}")
                continue
            if not exists:
                self.log.warning("namespace %s: does not exist on the cluster, skipping", ns)
                outcome.skipped_namespaces.append(ns)
                continue

            roles, bindings = compile_namespace(config, ns, rules_ref, owner, log=self.log)
            for r in roles:
                self._apply(outcome, r, lambda m, ns=ns: self.cluster.upsert_role(ns, m, dry_run=dry_run))
            for rb in bindings:
                self._apply(outcome, rb, lambda m, ns=ns: self.cluster.upsert_role_binding(ns, m, dry_run=dry_run))

        outcome.duration_seconds = max(0.0, self._clock() - started)
        self.metrics.observe_apply_time(outcome.duration_seconds)
        self.log.info(
            "cycle done (rules_ref=%s dry_run=%s): applied=%d failed=%d skipped_namespaces=%d in %.3fs",
            rules_ref,
            dry_run,
            len(outcome.applied),
            len(outcome.failures),
            len(outcome.skipped_namespaces),
            outcome.duration_seconds,
        )
        return outcome

    def _apply(
        self,
        outcome: CycleOutcome,
        resource: GeneratedResource,
        upsert: Callable[[Dict[str, Any]], Any],
    ) -> None:
        where = f"{resource.namespace}/{resource.name}" if resource.namespace else resource.name
        label = f"{resource.kind}/{where}"
        try:
            upsert(resource.to_manifest())
        except Exception as e:
            err = ApplyError(resource.kind, resource.name, resource.namespace, e)
            self.log.error("%s", err)
            outcome.failures.append(label)
            return
        outcome.applied.append(label)
        self.log.debug("applied %s", label)

    def _notify(self, success: bool) -> None:
        try:
            self.notifier.notify(success)
        except Exception as e:
            self.log.error("notifier failed, ignoring: %s", e)

    # ---- watch loop ----

    def stop(self) -> None:
        """Ask the watch loop to exit after the current event (never mid-cycle)."""
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def _handle_event(self, kind: str) -> None:
        try:
            self.on_change_event(kind)
        except SourceDeleted as e:
            self.metrics.record_outcome(False)
            self._notify(False)
            self.log.error("%s; waiting for the next event", e)
        except PermbotError as e:
            self.log.error("reconcile aborted (%s): %s", kind, e)

    def _resync_due(self) -> bool:
        every = self.settings.resync_seconds
        if every <= 0:
            return False
        if self._last_cycle_at is None:
            return True
        return self._clock() - self._last_cycle_at >= every

    def run_forever(self) -> None:
        """
        Watch the policy ConfigMap and reconcile on every change until stop().

        - the source must be readable at startup, otherwise the error propagates
        - a stream that ends at its server-side timeout is re-opened from the last resource version
        - an expired resource version (410) re-lists from scratch
        - other watch failures back off exponentially; after `max_watch_failures` consecutive
          failures (if set) SourceUnavailable is raised
        - a full re-sync runs whenever no cycle has happened for `resync_seconds`
        """
        s = self.settings
        self.fetch_policy_source()

        resource_version: Optional[str] = None
        failures = 0
        self.log.info(
            "watching configmap %s (watch_timeout=%ss resync=%ss dry_run=%s)",
            s.configmap_ref,
            s.watch_timeout_seconds,
            s.resync_seconds,
            s.dry_run,
        )

        while not self._stop.is_set():
            opened = self._clock()
            saw_events = False
            try:
                self.log.debug("waiting for configmap change event...")
                stream = self.cluster.watch_config_map(
                    s.configmap_namespace,
                    s.configmap_name,
                    resource_version=resource_version,
                    timeout_seconds=s.watch_timeout_seconds,
                )
                for event in stream:
                    saw_events = True
                    if event.kind == "ERROR":
                        if _is_gone(event.object):
                            self.log.info("watch resource version expired, re-listing")
                            resource_version = None
                            break
                        raise SourceUnavailable(f"watch error event: {event.object}")
                    failures = 0
                    if event.resource_version:
                        resource_version = event.resource_version
                    self.log.debug("received configmap watch event %s", event.kind)
                    self._handle_event(event.kind)
                    if self._stop.is_set():
                        break
            except InvariantViolation:
                raise
            except Exception as e:
                if _http_status(e) == 410:
                    self.log.info("watch resource version expired, re-listing")
                    resource_version = None
                    continue
                failures += 1
                if s.max_watch_failures and failures >= s.max_watch_failures:
                    raise SourceUnavailable(f"watch on {s.configmap_ref} failed {failures} times in a row: {e}") from e
                delay = backoff_delay(failures, base=s.backoff_base_seconds, cap=s.backoff_max_seconds)
                self.log.warning("watch on %s failed (%s), reconnecting in %.1fs", s.configmap_ref, e, delay)
                self._sleep(delay)
                continue

            if self._stop.is_set():
                break

            if not saw_events and self._clock() - opened < MIN_HEALTHY_STREAM_SECONDS:
                failures += 1
                if s.max_watch_failures and failures >= s.max_watch_failures:
                    raise SourceUnavailable(f"watch on {s.configmap_ref} keeps closing immediately")
                delay = backoff_delay(failures, base=s.backoff_base_seconds, cap=s.backoff_max_seconds)
                self.log.warning("watch on %s closed immediately, reconnecting in %.1fs", s.configmap_ref, delay)
                self._sleep(delay)
                continue

            if self._resync_due():
                self.log.info("no reconcile for %ss, running full re-sync", s.resync_seconds)
                self._handle_event("RESYNC")

        self.log.info("watch loop stopped")
