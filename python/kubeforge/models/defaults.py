"""
kubeforge/models/defaults.py

Turns a user-authored ClusterSpec into a fully defaulted one, and validates
the result before any host is touched.

normalize_cluster() never raises and is idempotent: running it on its own
output returns an equal document. The steps run in the fixed order of
DEFAULTING_PIPELINE; network defaulting must precede proxy defaulting because
the no-proxy list is built from the network fields.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional, Tuple

from packaging.version import InvalidVersion, Version

from kubeforge.models.cluster import (
    CNI,
    Addons,
    CanalSpec,
    ClusterSpec,
    ContainerRuntimeContainerd,
    HostConfig,
    ImageAsset,
    MachineControllerConfig,
    MetricsServer,
    OpenIDConnectConfig,
    StaticAuditLogConfig,
    SystemPackages,
    Taint,
)
from kubeforge.models.providers import ProviderName

logger = logging.getLogger(__name__)

DEFAULT_POD_SUBNET = "10.244.0.0/16"
DEFAULT_SERVICE_SUBNET = "10.96.0.0/12"
DEFAULT_SERVICE_DNS = "cluster.local"
DEFAULT_NODE_PORT_RANGE = "30000-32767"
DEFAULT_STATIC_NO_PROXY = ["127.0.0.1/8", "localhost"]
DEFAULT_CANAL_MTU = 1450
DEFAULT_API_PORT = 6443
DEFAULT_SSH_PORT = 22
DEFAULT_SSH_USERNAME = "root"
DEFAULT_SSH_AGENT_SOCKET = "env:SSH_AUTH_SOCK"
DEFAULT_ADDONS_PATH = "./addons"
CONTAINERD_MIN_VERSION = Version("1.22")

# Provider MTU = provider frame size minus 50 bytes of VXLAN overhead.
CANAL_MTU_BY_PROVIDER: Dict[ProviderName, int] = {
    ProviderName.aws: 8951,
    ProviderName.gce: 1410,
    ProviderName.hetzner: 1400,
    ProviderName.openstack: 1400,
}

CONTROL_PLANE_TAINT = Taint(key="node-role.kubernetes.io/master", effect="NoSchedule")


class ConfigurationError(ValueError):
    """A cluster document that cannot be provisioned as written."""


def _default(value: str, fallback: str) -> str:
    return value if value else fallback


def _default_int(value: int, fallback: int) -> int:
    return value if value else fallback


def _default_host(host: HostConfig) -> None:
    if not host.public_address and host.private_address:
        host.public_address = host.private_address
    if not host.private_address and host.public_address:
        host.private_address = host.public_address
    if not host.ssh_private_key_file:
        host.ssh_agent_socket = _default(host.ssh_agent_socket, DEFAULT_SSH_AGENT_SOCKET)
    host.ssh_username = _default(host.ssh_username, DEFAULT_SSH_USERNAME)
    host.ssh_port = _default_int(host.ssh_port, DEFAULT_SSH_PORT)
    host.bastion_port = _default_int(host.bastion_port, DEFAULT_SSH_PORT)
    host.bastion_user = _default(host.bastion_user, host.ssh_username)


def default_hosts(spec: ClusterSpec) -> None:
    """
    Assign IDs (control plane first, workers continue the sequence), pick the
    first control-plane host as leader when none is flagged and default the
    per-host SSH parameters and taints.
    """
    cp_hosts = spec.control_plane.hosts
    if not cp_hosts:
        return

    for idx, host in enumerate(cp_hosts):
        host.id = idx
        _default_host(host)
        if host.taints is None:
            host.taints = [CONTROL_PLANE_TAINT.model_copy()]

    if not any(h.is_leader for h in cp_hosts):
        cp_hosts[0].is_leader = True

    for idx, host in enumerate(spec.static_workers.hosts):
        host.id = idx + len(cp_hosts)
        _default_host(host)
        if host.taints is None:
            host.taints = []


def default_api_endpoint(spec: ClusterSpec) -> None:
    if not spec.api_endpoint.host:
        if not spec.control_plane.hosts:
            return
        spec.api_endpoint.host = spec.control_plane.hosts[0].public_address
    spec.api_endpoint.port = _default_int(spec.api_endpoint.port, DEFAULT_API_PORT)


def sanitize_version(version: str) -> str:
    """Strip the leading "v" prefix ("v1.23.0" -> "1.23.0")."""
    return version.lstrip("v")


def default_versions(spec: ClusterSpec) -> None:
    spec.versions.kubernetes = sanitize_version(spec.versions.kubernetes)


def default_container_runtime(spec: ClusterSpec) -> None:
    runtime = spec.container_runtime
    if runtime.docker is not None or runtime.containerd is not None:
        return

    try:
        version = Version(spec.versions.kubernetes)
    except InvalidVersion:
        logger.debug(
            "Skipping container runtime defaulting: unparsable version %r",
            spec.versions.kubernetes,
        )
        return

    if version >= CONTAINERD_MIN_VERSION:
        runtime.containerd = ContainerRuntimeContainerd()


def canal_mtu_for(provider: Optional[ProviderName]) -> int:
    if provider is None:
        return DEFAULT_CANAL_MTU
    return CANAL_MTU_BY_PROVIDER.get(provider, DEFAULT_CANAL_MTU)


def default_cluster_network(spec: ClusterSpec) -> None:
    net = spec.cluster_network
    net.pod_subnet = _default(net.pod_subnet, DEFAULT_POD_SUBNET)
    net.service_subnet = _default(net.service_subnet, DEFAULT_SERVICE_SUBNET)
    net.service_domain_name = _default(net.service_domain_name, DEFAULT_SERVICE_DNS)
    net.node_port_range = _default(net.node_port_range, DEFAULT_NODE_PORT_RANGE)

    mtu = canal_mtu_for(spec.cloud_provider.name)
    if net.cni is None:
        net.cni = CNI(canal=CanalSpec(mtu=mtu))
    if net.cni.canal is not None and net.cni.canal.mtu == 0:
        net.cni.canal.mtu = mtu
    if net.cni.cilium is not None and not net.cni.cilium.kube_proxy_replacement:
        net.cni.cilium.kube_proxy_replacement = "disabled"


def default_proxy(spec: ClusterSpec) -> None:
    if not spec.proxy.is_configured():
        return

    net = spec.cluster_network
    entries: List[str] = DEFAULT_STATIC_NO_PROXY + [
        net.service_domain_name,
        net.pod_subnet,
        net.service_subnet,
    ]
    entries += [e.strip() for e in spec.proxy.no_proxy.split(",") if e.strip()]
    # dict.fromkeys keeps first-seen order while dropping repeats
    spec.proxy.no_proxy = ",".join(dict.fromkeys(e for e in entries if e))


def default_machine_controller(spec: ClusterSpec) -> None:
    if spec.machine_controller is None:
        spec.machine_controller = MachineControllerConfig(deploy=True)


def default_system_packages(spec: ClusterSpec) -> None:
    if spec.system_packages is None:
        spec.system_packages = SystemPackages(configure_repositories=True)


def default_asset_configuration(spec: ClusterSpec) -> None:
    registry = spec.registry_configuration
    if registry is None or not registry.overwrite_registry:
        return

    assets: List[ImageAsset] = [
        spec.asset_configuration.kubernetes,
        spec.asset_configuration.core_dns,
        spec.asset_configuration.etcd,
        spec.asset_configuration.metrics_server,
    ]
    for asset in assets:
        asset.image_repository = _default(
            asset.image_repository, registry.overwrite_registry
        )


def _default_audit_log(cfg: StaticAuditLogConfig) -> None:
    cfg.log_path = _default(cfg.log_path, "/var/log/kubernetes/audit.log")
    cfg.log_max_age = _default_int(cfg.log_max_age, 30)
    cfg.log_max_backup = _default_int(cfg.log_max_backup, 3)
    cfg.log_max_size = _default_int(cfg.log_max_size, 100)


def _default_open_id_connect(cfg: OpenIDConnectConfig) -> None:
    cfg.client_id = _default(cfg.client_id, "kubernetes")
    cfg.username_claim = _default(cfg.username_claim, "sub")
    cfg.username_prefix = _default(cfg.username_prefix, "oidc:")
    cfg.groups_claim = _default(cfg.groups_claim, "groups")
    cfg.groups_prefix = _default(cfg.groups_prefix, "oidc:")
    cfg.signing_algs = _default(cfg.signing_algs, "RS256")


def default_features(spec: ClusterSpec) -> None:
    features = spec.features
    if features.metrics_server is None:
        features.metrics_server = MetricsServer(enable=True)
    if features.static_audit_log is not None and features.static_audit_log.enable:
        _default_audit_log(features.static_audit_log.config)
    if features.open_id_connect is not None and features.open_id_connect.enable:
        _default_open_id_connect(features.open_id_connect.config)


def default_addons(spec: ClusterSpec) -> None:
    if spec.addons is None:
        spec.addons = Addons(enable=False)
    if spec.addons.enable:
        spec.addons.path = _default(spec.addons.path, DEFAULT_ADDONS_PATH)


DEFAULTING_PIPELINE: List[Tuple[str, Callable[[ClusterSpec], None]]] = [
    ("hosts", default_hosts),
    ("api_endpoint", default_api_endpoint),
    ("versions", default_versions),
    ("container_runtime", default_container_runtime),  # reads sanitized version
    ("cluster_network", default_cluster_network),
    ("proxy", default_proxy),  # reads cluster_network
    ("machine_controller", default_machine_controller),
    ("system_packages", default_system_packages),
    ("asset_configuration", default_asset_configuration),
    ("features", default_features),
    ("addons", default_addons),
]


def normalize_cluster(spec: ClusterSpec) -> ClusterSpec:
    """
    Return a fully defaulted copy of `spec`. The input is left untouched.

    Args:
        spec: A ClusterSpec as parsed from the user's document.

    Returns:
        A new ClusterSpec with every optional field resolved.
    """
    normalized = spec.model_copy(deep=True)
    for _name, step in DEFAULTING_PIPELINE:
        step(normalized)
    return normalized


def validate_cluster(spec: ClusterSpec) -> None:
    """
    Reject documents that survive defaulting but cannot be provisioned.

    Raises:
        ConfigurationError: With a message naming the offending field.
    """
    cp_hosts = spec.control_plane.hosts
    if not cp_hosts:
        raise ConfigurationError(f"Cluster '{spec.name}' has no control-plane hosts.")

    leaders = [h for h in spec.all_hosts() if h.is_leader]
    if len(leaders) != 1:
        ids = ", ".join(str(h.id) for h in leaders) or "none"
        raise ConfigurationError(
            f"Exactly one control-plane host must be leader; found {len(leaders)} ({ids})."
        )
    if not any(h is leaders[0] for h in cp_hosts):
        raise ConfigurationError(
            f"Leader host {leaders[0].id} is not a control-plane host."
        )

    ids = [h.id for h in spec.all_hosts()]
    if len(ids) != len(set(ids)):
        raise ConfigurationError(f"Host IDs are not unique: {ids}")

    if not spec.versions.kubernetes:
        raise ConfigurationError("versions.kubernetes must be set.")

    seen_pools: Dict[str, int] = {}
    for pool in spec.dynamic_workers:
        if pool.name in seen_pools:
            raise ConfigurationError(f"Duplicate dynamic worker pool '{pool.name}'.")
        seen_pools[pool.name] = 1
        if pool.replicas is None:
            raise ConfigurationError(
                f"Dynamic worker pool '{pool.name}' has no replica count."
            )
        if pool.replicas < 0:
            raise ConfigurationError(
                f"Dynamic worker pool '{pool.name}' has negative replicas ({pool.replicas})."
            )


__all__ = [
    "ConfigurationError",
    "DEFAULTING_PIPELINE",
    "normalize_cluster",
    "validate_cluster",
    "sanitize_version",
    "canal_mtu_for",
]
