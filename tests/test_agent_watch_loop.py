"""
Watch loop tests.

The fake cluster hands out one prepared stream per watch call; once it runs out it stops the
agent, so every test terminates deterministically. Sleep and clock are injected.
"""

from __future__ import annotations

import pytest

from permbot.agent.config import AgentSettings
from permbot.agent.metrics import AgentMetrics
from permbot.agent.reconciler import PermbotAgent
from permbot.core.errors import InvariantViolation, SourceInvalid, SourceUnavailable
from permbot.core.models import ChangeEvent, Provenance


class _Source:
    def __init__(self, config, errors=None):
        self.config = config
        self.errors = list(errors or [])
        self.calls = 0

    def fetch(self):
        self.calls += 1
        if self.errors:
            err = self.errors.pop(0)
            if err is not None:
                raise err
        return self.config, Provenance()


class _Ticker:
    def __init__(self, step=5.0):
        self.now = 0.0
        self.step = step

    def __call__(self):
        self.now += self.step
        return self.now


class _RecordingNotifier:
    def __init__(self):
        self.calls = []

    def notify(self, success):
        self.calls.append(success)


class _Gone(Exception):
    status = 410


def _run(cluster, source, *, settings=None, clock=None, notifier=None):
    sleeps = []
    agent = PermbotAgent(
        cluster=cluster,
        source=source,
        notifier=notifier,
        settings=settings or AgentSettings(resync_seconds=0, backoff_base_seconds=1, backoff_max_seconds=3),
        metrics=AgentMetrics(),
        sleep=sleeps.append,
        clock=clock or _Ticker(),
    )
    cluster.on_watch_exhausted = agent.stop
    agent.run_forever()
    return agent, sleeps


def _ev(kind, rv=None, obj=None):
    return ChangeEvent(kind=kind, object=obj, resource_version=rv)


def test_events_trigger_cycles_and_watch_resumes_from_last_version(fake_cluster_cls, sample_config):
    cluster = fake_cluster_cls(namespaces=["team-a", "team-b"], watch_streams=[[_ev("ADDED", "5"), _ev("MODIFIED", "6")]])
    source = _Source(sample_config)

    agent, sleeps = _run(cluster, source)

    assert agent.stopped
    assert source.calls == 3  # startup check + two events
    assert [c["resource_version"] for c in cluster.watch_calls] == [None, "6"]
    assert agent.metrics.outcome_count("success") == 2
    assert sleeps == []


def test_watch_uses_configured_target_and_timeout(fake_cluster_cls, sample_config):
    cluster = fake_cluster_cls()
    settings = AgentSettings(configmap_namespace="ops", configmap_name="rbac", watch_timeout_seconds=30, resync_seconds=0)
    _run(cluster, _Source(sample_config), settings=settings)
    assert cluster.watch_calls[0] == {"namespace": "ops", "name": "rbac", "resource_version": None, "timeout": 30}


def test_gone_error_event_relists(fake_cluster_cls, sample_config):
    cluster = fake_cluster_cls(
        namespaces=["team-a", "team-b"],
        watch_streams=[[_ev("ADDED", "5")], [_ev("ERROR", obj={"code": 410, "reason": "Expired"})]],
    )
    _agent, sleeps = _run(cluster, _Source(sample_config))
    assert [c["resource_version"] for c in cluster.watch_calls] == [None, "5", None]
    assert sleeps == []


def test_gone_exception_relists_without_backoff(fake_cluster_cls, sample_config):
    cluster = fake_cluster_cls(watch_streams=[[_ev("ADDED", "5")], _Gone("too old resource version")])
    cluster.namespaces = {"team-a", "team-b"}
    _agent, sleeps = _run(cluster, _Source(sample_config))
    assert [c["resource_version"] for c in cluster.watch_calls] == [None, "5", None]
    assert sleeps == []


def test_watch_errors_back_off_exponentially(fake_cluster_cls, sample_config):
    cluster = fake_cluster_cls(watch_streams=[RuntimeError("eof"), RuntimeError("eof"), RuntimeError("eof")])
    _agent, sleeps = _run(cluster, _Source(sample_config))
    assert sleeps == [1, 2, 3]


def test_successful_event_resets_backoff(fake_cluster_cls, sample_config):
    cluster = fake_cluster_cls(
        namespaces=["team-a", "team-b"],
        watch_streams=[RuntimeError("eof"), RuntimeError("eof"), [_ev("MODIFIED", "7")], RuntimeError("eof")],
    )
    _agent, sleeps = _run(cluster, _Source(sample_config))
    assert sleeps == [1, 2, 1]


def test_too_many_consecutive_failures_is_fatal(fake_cluster_cls, sample_config):
    cluster = fake_cluster_cls(watch_streams=[RuntimeError("eof"), RuntimeError("eof"), RuntimeError("eof")])
    settings = AgentSettings(resync_seconds=0, max_watch_failures=2, backoff_base_seconds=1)
    with pytest.raises(SourceUnavailable) as ei:
        _run(cluster, _Source(sample_config), settings=settings)
    assert "2 times" in str(ei.value)


def test_non_gone_error_event_counts_as_failure(fake_cluster_cls, sample_config):
    cluster = fake_cluster_cls(watch_streams=[[_ev("ERROR", obj={"code": 500})]])
    settings = AgentSettings(resync_seconds=0, max_watch_failures=1)
    with pytest.raises(SourceUnavailable):
        _run(cluster, _Source(sample_config), settings=settings)


def test_stream_closing_immediately_counts_as_failure(fake_cluster_cls, sample_config):
    cluster = fake_cluster_cls(watch_streams=[[], []])
    _agent, sleeps = _run(cluster, _Source(sample_config), clock=lambda: 0.0)
    assert sleeps == [1, 2]


def test_resync_runs_when_idle(fake_cluster_cls, sample_config):
    cluster = fake_cluster_cls(namespaces=["team-a", "team-b"], watch_streams=[[]])
    source = _Source(sample_config)
    settings = AgentSettings(resync_seconds=600)

    agent, sleeps = _run(cluster, source, settings=settings, clock=_Ticker(step=1000.0))

    assert source.calls == 2
    assert agent.metrics.outcome_count("success") == 1
    assert sleeps == []


def test_no_resync_right_after_a_cycle(fake_cluster_cls, sample_config):
    cluster = fake_cluster_cls(namespaces=["team-a", "team-b"], watch_streams=[[_ev("MODIFIED", "2")]])
    source = _Source(sample_config)
    _run(cluster, source, settings=AgentSettings(resync_seconds=600), clock=_Ticker(step=1.0))
    assert source.calls == 2


def test_deleted_event_is_recorded_and_loop_continues(fake_cluster_cls, sample_config):
    cluster = fake_cluster_cls(
        namespaces=["team-a", "team-b"], watch_streams=[[_ev("DELETED", "8")], [_ev("ADDED", "9")]]
    )
    notifier = _RecordingNotifier()
    agent, _ = _run(cluster, _Source(sample_config), notifier=notifier)
    assert agent.metrics.outcome_count("error") == 1
    assert agent.metrics.outcome_count("success") == 1
    assert notifier.calls == [False, True]
    assert len(cluster.watch_calls) == 3


def test_bad_config_mid_stream_is_logged_and_skipped(fake_cluster_cls, sample_config):
    cluster = fake_cluster_cls(
        namespaces=["team-a", "team-b"], watch_streams=[[_ev("MODIFIED", "3"), _ev("MODIFIED", "4")]]
    )
    source = _Source(sample_config, errors=[None, SourceInvalid("bad toml")])

    agent, _ = _run(cluster, source)

    assert agent.metrics.outcome_count("error") == 1
    assert agent.metrics.outcome_count("success") == 1


def test_startup_requires_readable_source(fake_cluster_cls, sample_config):
    cluster = fake_cluster_cls()
    with pytest.raises(SourceUnavailable):
        _run(cluster, _Source(sample_config, errors=[SourceUnavailable("configmap permbot/config not found")]))
    assert cluster.watch_calls == []


def test_invariant_violation_escapes_the_loop(fake_cluster_cls, sample_config, monkeypatch):
    monkeypatch.setattr("permbot.compiler.rbac._service_account_subjects", lambda accounts, ns: [])
    cluster = fake_cluster_cls(namespaces=["team-a", "team-b"], watch_streams=[[_ev("ADDED", "1")]])
    with pytest.raises(InvariantViolation):
        _run(cluster, _Source(sample_config))
