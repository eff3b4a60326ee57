#!/usr/bin/env python3
"""
Permbot - declarative Kubernetes RBAC from a single policy file.

One-shot (CI) mode renders or applies a config file once; agent mode watches a ConfigMap and
re-applies on every change.
"""

import argparse
import logging
import sys
from typing import List, Optional

logger = logging.getLogger("permbot")

#
# NOTE: Keep permbot imports lazy (inside functions) so `--version` and `--help` stay cheap and
# don't require the kubernetes client to be importable.
#


def run_oneshot(args: argparse.Namespace) -> int:
    from permbot.agent.config import load_agent_settings
    from permbot.agent.oneshot import apply_config, render_config
    from permbot.agent.source import FileSource

    source = FileSource(args.config, rules_ref=args.ref or None)
    owner = args.owner or "permbot"

    if args.mode == "yaml":
        n = render_config(source, namespace=args.namespace, include_global=args.include_global, owner=owner)
        logger.debug("rendered %d documents", n)
        return 0

    settings = load_agent_settings().with_overrides(
        owner=owner,
        dry_run=True if args.dry_run else None,
        include_global=None if args.include_global else False,
    )
    outcome = apply_config(source, settings=settings)
    logger.info(
        "applied %d objects, %d failures, %d namespaces skipped",
        len(outcome.applied),
        len(outcome.failures),
        len(outcome.skipped_namespaces),
    )
    return 0 if outcome.success else 1


def run_agent(args: argparse.Namespace) -> int:
    from permbot.agent.config import load_agent_settings, split_configmap_ref
    from permbot.agent.metrics import AgentMetrics
    from permbot.agent.reconciler import PermbotAgent
    from permbot.agent.source import ConfigMapSource
    from permbot.api.server import create_app, serve_in_background
    from permbot.providers.k8s_provider import get_k8s_provider
    from permbot.providers.notify_provider import get_notifier

    ns, name = split_configmap_ref(args.configmap) if args.configmap else (None, None)
    settings = load_agent_settings().with_overrides(
        configmap_namespace=ns,
        configmap_name=name,
        owner=args.owner,
        slack_webhook_url=args.slack_webhook,
        http_listen=args.http_listen,
        dry_run=True if args.dry_run else None,
        include_global=None if args.include_global else False,
    )

    cluster = get_k8s_provider()
    metrics = AgentMetrics()
    agent = PermbotAgent(
        cluster=cluster,
        source=ConfigMapSource(cluster, settings.configmap_namespace, settings.configmap_name, settings.configmap_key),
        settings=settings,
        notifier=get_notifier(settings.slack_webhook_url, owner=settings.owner),
        metrics=metrics,
    )
    if settings.http_listen:
        serve_in_background(create_app(owner=settings.owner, metrics=metrics), settings.http_listen)

    agent.run_forever()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Generate and apply Kubernetes RBAC objects from a permbot policy file",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Print all Roles/RoleBindings/ClusterRoles/ClusterRoleBindings as YAML
  python main.py permbot.toml

  # Only one namespace, no cluster-scoped objects
  python main.py permbot.toml --namespace team-a --no-global

  # Apply once to the current kube context (server-side dry run)
  python main.py permbot.toml --mode k8s --dry-run

  # Run forever, watching a ConfigMap
  python main.py --run-agent --configmap permbot/config --http-listen :8080
        """,
    )
    parser.add_argument("config", nargs="?", help="Permbot config file (TOML, or .json) for one-shot mode")
    parser.add_argument(
        "--mode", choices=["yaml", "k8s"], default="yaml", help="One-shot mode: print YAML or apply (default: yaml)"
    )
    parser.add_argument("--namespace", "-n", help="Only render this namespace (yaml mode)")
    parser.add_argument(
        "--no-global",
        dest="include_global",
        action="store_false",
        help="Skip globally scoped resources (ClusterRole/ClusterRoleBinding)",
    )
    parser.add_argument("--owner", help="Owner value for the permbot owner label (default: permbot)")
    parser.add_argument("--ref", help="Version of the input rules, stamped into the rules-ref annotation")
    parser.add_argument("--dry-run", action="store_true", help="Validate against the API server without persisting")

    parser.add_argument(
        "--run-agent",
        action="store_true",
        help="Run forever, watching a ConfigMap and applying changes as required",
    )
    parser.add_argument("--configmap", "-f", help="ConfigMap to watch as ns/name (env: PERMBOT_CONFIGMAP)")
    parser.add_argument("--slack-webhook", help="Slack webhook to trigger on config change (env: SLACK_WEBHOOK)")
    parser.add_argument("--http-listen", help="HTTP listen address for /healthz and /metrics (env: HTTP_LISTEN)")

    parser.add_argument("--debug", "-d", action="store_true", help="Enable debug logs")
    parser.add_argument("--json-logs", action="store_true", help="Enable JSON log format (env: JSON_LOGS)")
    parser.add_argument("--version", action="store_true", help="Print the permbot version and exit")

    args = parser.parse_args(argv)

    from permbot.agent.config import _env_bool
    from permbot.core.errors import PermbotError
    from permbot.core.log_format import configure_logging
    from permbot.version import version

    configure_logging(debug=args.debug, json_logs=args.json_logs or _env_bool("JSON_LOGS", False))
    logger.info("Permbot %s", version())
    if args.version:
        print(version())
        return 0

    try:
        if args.run_agent:
            return run_agent(args)
        if args.config:
            return run_oneshot(args)
        parser.print_help()
        return 2
    except PermbotError as e:
        logger.error("%s", e)
        return 1
    except KeyboardInterrupt:
        logger.info("interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
