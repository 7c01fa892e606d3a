#!/usr/bin/env python3
"""
kubeforge/cli/kubeforgectl.py

Command-line driver for the kubeforge library:

    kubeforgectl install  --config cluster.yaml
    kubeforgectl upgrade  --config cluster.yaml
    kubeforgectl reset    --config cluster.yaml
    kubeforgectl config normalize --config cluster.yaml [--output out.yaml]
    kubeforgectl machinedeployments --config cluster.yaml

Run settings (concurrency, retries, timeouts, log level) come from KUBEFORGE_*
environment variables. Exit codes: 0 success, 1 failure, 130 cancelled.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from typing import Callable, Dict, List, Optional

from kubeforge.deployment.machine_deployments import (
    MachineDeploymentError,
    render_machine_deployments_manifest,
)
from kubeforge.deployment.orchestrator import Orchestrator, Phase, RunResult, RunStatus
from kubeforge.deployment.phases import install_phases, reset_phases, upgrade_phases
from kubeforge.deployment.state import State
from kubeforge.models.defaults import normalize_cluster
from kubeforge.models.settings import RunSettings
from kubeforge.utils.cluster_config import (
    dump_cluster_spec,
    load_cluster_spec,
    write_cluster_spec,
)
from kubeforge.utils.k8s import KubectlClient

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 130

PHASE_SETS: Dict[str, Callable[[], List[Phase]]] = {
    "install": install_phases,
    "upgrade": upgrade_phases,
    "reset": reset_phases,
}


async def _run_phases(args: argparse.Namespace, settings: RunSettings) -> RunResult:
    cluster = normalize_cluster(await load_cluster_spec(args.config))
    kube_client: Optional[KubectlClient] = None
    if args.kubeconfig:
        kube_client = KubectlClient.local(args.kubeconfig)

    async with State(cluster, settings=settings, kube_client=kube_client) as state:
        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGINT, state.cancel)
        loop.add_signal_handler(signal.SIGTERM, state.cancel)
        try:
            orchestrator = Orchestrator.from_settings(PHASE_SETS[args.command](), state)
            return await orchestrator.run(state)
        finally:
            loop.remove_signal_handler(signal.SIGINT)
            loop.remove_signal_handler(signal.SIGTERM)


def _cmd_phases(args: argparse.Namespace, settings: RunSettings) -> int:
    result = asyncio.run(_run_phases(args, settings))
    if result.status == RunStatus.succeeded:
        print(f"{args.command} finished: {', '.join(result.completed_phases)}")
        return EXIT_OK
    if result.status == RunStatus.cancelled:
        print(f"{args.command} cancelled", file=sys.stderr)
        return EXIT_CANCELLED
    print(
        f"{args.command} failed in phase '{result.failed_phase}' on host "
        f"{result.failed_host_id}: {result.error}",
        file=sys.stderr,
    )
    return EXIT_FAILED


async def _normalize(args: argparse.Namespace) -> None:
    cluster = normalize_cluster(await load_cluster_spec(args.config))
    if args.output:
        await write_cluster_spec(cluster, args.output)
    else:
        print(dump_cluster_spec(cluster), end="")


def _cmd_config(args: argparse.Namespace, settings: RunSettings) -> int:
    asyncio.run(_normalize(args))
    return EXIT_OK


def _cmd_machinedeployments(args: argparse.Namespace, settings: RunSettings) -> int:
    cluster = normalize_cluster(asyncio.run(load_cluster_spec(args.config)))
    print(render_machine_deployments_manifest(cluster), end="")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kubeforgectl",
        description="Provision and manage kubeadm clusters over SSH.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    for name in PHASE_SETS:
        p = sub.add_parser(name, help=f"Run the {name} phases against the cluster.")
        p.add_argument("--config", required=True, help="Path to the cluster document.")
        p.add_argument(
            "--kubeconfig",
            default=None,
            help="Apply cluster objects with a local kubeconfig instead of kubectl on the leader.",
        )
        p.set_defaults(func=_cmd_phases)

    config = sub.add_parser("config", help="Cluster document utilities.")
    config_sub = config.add_subparsers(dest="config_command", required=True)
    normalize = config_sub.add_parser("normalize", help="Print the fully defaulted document.")
    normalize.add_argument("--config", required=True, help="Path to the cluster document.")
    normalize.add_argument("--output", default=None, help="Write to this file instead of stdout.")
    normalize.set_defaults(func=_cmd_config)

    md = sub.add_parser(
        "machinedeployments", help="Render MachineDeployments for the dynamic worker pools."
    )
    md.add_argument("--config", required=True, help="Path to the cluster document.")
    md.set_defaults(func=_cmd_machinedeployments)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = RunSettings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        code: int = args.func(args, settings)
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return EXIT_CANCELLED
    except (ValueError, MachineDeploymentError, OSError) as exc:
        # ConfigurationError and document validation errors are ValueErrors
        print(f"ERROR: {exc}", file=sys.stderr)
        return EXIT_FAILED
    return code


if __name__ == "__main__":
    sys.exit(main())
