"""
kubeforge/deployment/phases.py

Install, upgrade and reset phases for a kubeadm-based cluster on Ubuntu/Debian
hosts (APT-based). Every operation is idempotent: it checks the host before
changing it, so a failed run is repaired by running it again.

Install flow:
  1) Prepare every host (disable swap, load modules, configure sysctl).
  2) Configure package repositories and proxy settings.
  3) Install the container runtime, then kubeadm/kubelet/kubectl.
  4) Bootstrap the leader with 'kubeadm init', then fetch the shared PKI,
     the admin kubeconfig and a join command from it and load the CA.
  5) Copy the shared PKI to the other control-plane hosts and join them one at
     a time; join the static workers concurrently.
  6) Post-install on the leader: the metrics-server serving certificate signed
     by the cluster CA, and the MachineDeployments of the dynamic worker pools.
"""

from __future__ import annotations

import shlex
import textwrap
from typing import Any, Dict, List, Optional

import yaml

from kubeforge.deployment.machine_deployments import apply_machine_deployments
from kubeforge.deployment.orchestrator import Phase, PhaseTarget
from kubeforge.deployment.state import State
from kubeforge.models.cluster import ClusterSpec, HostConfig
from kubeforge.models.machine_deployment import (
    MACHINE_DEPLOYMENT_RESOURCE,
    NAMESPACE_SYSTEM,
)
from kubeforge.secrets.certificate import (
    KUBERNETES_CA_CERT_PATH,
    KUBERNETES_CA_KEY_PATH,
    KUBERNETES_PKI_DIR,
    get_certificate_sans,
    new_signed_tls_cert,
)
from kubeforge.utils.async_retry import async_retry
from kubeforge.utils.k8s import ADMIN_KUBECONFIG, KubectlClient, put_k8s_secret_data
from kubeforge.utils.ssh import RemoteChannel

KUBEADM_CONFIG_PATH = "/etc/kubeforge/kubeadm.yaml"
KUBELET_CONFIG_PATH = "/etc/kubernetes/kubelet.conf"
KUBEADM_API_VERSION = "kubeadm.k8s.io/v1beta3"
METRICS_SERVER_NAME = "metrics-server"
METRICS_SERVER_SECRET = "metrics-server-serving-cert"

# Shared control-plane PKI that kubeadm expects to find on joining control-plane hosts.
SHARED_PKI_FILES: List[str] = [
    KUBERNETES_CA_CERT_PATH,
    KUBERNETES_CA_KEY_PATH,
    f"{KUBERNETES_PKI_DIR}/sa.key",
    f"{KUBERNETES_PKI_DIR}/sa.pub",
    f"{KUBERNETES_PKI_DIR}/front-proxy-ca.crt",
    f"{KUBERNETES_PKI_DIR}/front-proxy-ca.key",
    f"{KUBERNETES_PKI_DIR}/etcd/ca.crt",
    f"{KUBERNETES_PKI_DIR}/etcd/ca.key",
]


class BootstrapError(RuntimeError):
    """A later phase needs an artifact the leader bootstrap did not produce."""


def _script(body: str) -> str:
    return "#!/usr/bin/env bash\nset -euo pipefail\n" + textwrap.dedent(body)


def proxy_env(cluster: ClusterSpec) -> Optional[Dict[str, str]]:
    """Proxy variables for package downloads, or None when no proxy is set."""
    if not cluster.proxy.is_configured():
        return None
    env: Dict[str, str] = {}
    if cluster.proxy.http:
        env["HTTP_PROXY"] = cluster.proxy.http
    if cluster.proxy.https:
        env["HTTPS_PROXY"] = cluster.proxy.https
    if cluster.proxy.no_proxy:
        env["NO_PROXY"] = cluster.proxy.no_proxy
    return env


def kube_package_version(cluster: ClusterSpec) -> str:
    """APT version glob for the kube packages, e.g. '1.27.3-*'."""
    return f"{cluster.versions.kubernetes}-*"


def _minor_version(version: str) -> str:
    parts = version.split(".")
    return ".".join(parts[:2])


# ---------------------------------------------------------------------------
# kubeadm configuration
# ---------------------------------------------------------------------------


def _node_registration(cluster: ClusterSpec, host: HostConfig) -> Dict[str, Any]:
    reg: Dict[str, Any] = {
        "name": host.hostname or host.private_address,
        "taints": [t.model_dump() for t in host.taints or []],
        "kubeletExtraArgs": {"node-ip": host.private_address},
    }
    if host.labels:
        labels = ",".join(f"{k}={v}" for k, v in sorted(host.labels.items()))
        reg["kubeletExtraArgs"]["node-labels"] = labels
    if cluster.container_runtime.runtime_name() == "containerd":
        reg["criSocket"] = "unix:///run/containerd/containerd.sock"
    return reg


def _api_server_extra_args(cluster: ClusterSpec) -> Dict[str, str]:
    args: Dict[str, str] = {
        "service-node-port-range": cluster.cluster_network.node_port_range,
    }
    if cluster.cloud_provider.name is not None and not cluster.cloud_provider.external:
        args["cloud-provider"] = cluster.cloud_provider.name.value

    oidc = cluster.features.open_id_connect
    if oidc is not None and oidc.enable:
        cfg = oidc.config
        args.update(
            {
                "oidc-issuer-url": cfg.issuer_url,
                "oidc-client-id": cfg.client_id,
                "oidc-username-claim": cfg.username_claim,
                "oidc-username-prefix": cfg.username_prefix,
                "oidc-groups-claim": cfg.groups_claim,
                "oidc-groups-prefix": cfg.groups_prefix,
                "oidc-signing-algs": cfg.signing_algs,
            }
        )
        if cfg.required_claim:
            args["oidc-required-claim"] = cfg.required_claim
        if cfg.ca_file:
            args["oidc-ca-file"] = cfg.ca_file

    audit = cluster.features.static_audit_log
    if audit is not None and audit.enable:
        cfg_a = audit.config
        args.update(
            {
                "audit-policy-file": cfg_a.policy_file_path,
                "audit-log-path": cfg_a.log_path,
                "audit-log-maxage": str(cfg_a.log_max_age),
                "audit-log-maxbackup": str(cfg_a.log_max_backup),
                "audit-log-maxsize": str(cfg_a.log_max_size),
            }
        )
    return args


def kubeadm_config(cluster: ClusterSpec, host: HostConfig) -> str:
    """Render the InitConfiguration + ClusterConfiguration for the leader."""
    endpoint = f"{cluster.api_endpoint.host}:{cluster.api_endpoint.port}"
    init_cfg: Dict[str, Any] = {
        "apiVersion": KUBEADM_API_VERSION,
        "kind": "InitConfiguration",
        "localAPIEndpoint": {
            "advertiseAddress": host.private_address,
            "bindPort": cluster.api_endpoint.port,
        },
        "nodeRegistration": _node_registration(cluster, host),
    }
    cluster_cfg: Dict[str, Any] = {
        "apiVersion": KUBEADM_API_VERSION,
        "kind": "ClusterConfiguration",
        "clusterName": cluster.name,
        "kubernetesVersion": f"v{cluster.versions.kubernetes}",
        "controlPlaneEndpoint": endpoint,
        "networking": {
            "podSubnet": cluster.cluster_network.pod_subnet,
            "serviceSubnet": cluster.cluster_network.service_subnet,
            "dnsDomain": cluster.cluster_network.service_domain_name,
        },
        "apiServer": {
            "certSANs": get_certificate_sans(
                cluster.api_endpoint.host, cluster.api_endpoint.alternative_names
            ),
            "extraArgs": _api_server_extra_args(cluster),
        },
    }
    assets = cluster.asset_configuration
    if assets.kubernetes.image_repository:
        cluster_cfg["imageRepository"] = assets.kubernetes.image_repository
    if assets.core_dns.image_repository or assets.core_dns.image_tag:
        cluster_cfg["dns"] = {
            k: v
            for k, v in (
                ("imageRepository", assets.core_dns.image_repository),
                ("imageTag", assets.core_dns.image_tag),
            )
            if v
        }
    if assets.etcd.image_repository or assets.etcd.image_tag:
        cluster_cfg["etcd"] = {
            "local": {
                k: v
                for k, v in (
                    ("imageRepository", assets.etcd.image_repository),
                    ("imageTag", assets.etcd.image_tag),
                )
                if v
            }
        }
    return yaml.safe_dump_all([init_cfg, cluster_cfg], default_flow_style=False, sort_keys=False)


# ---------------------------------------------------------------------------
# Host preparation
# ---------------------------------------------------------------------------


async def prepare_host(state: State, host: HostConfig, channel: RemoteChannel) -> Optional[str]:
    """
    Base OS configuration:
      - Disable swap permanently.
      - Load overlay/br_netfilter and persist them.
      - Configure sysctl for bridging and IP forwarding.
      - Set the hostname if one is configured.
    """
    hostname = ""
    if host.hostname:
        hostname = f"hostnamectl set-hostname {shlex.quote(host.hostname)}\n"
    script = _script(
        """\
        swapoff -a
        sed -i.bak '/\\sswap\\s/s/^/#/g' /etc/fstab
        modprobe overlay
        modprobe br_netfilter
        printf 'overlay\\nbr_netfilter\\n' > /etc/modules-load.d/kubeforge.conf
        cat > /etc/sysctl.d/99-kubeforge.conf <<'EOF'
        net.ipv4.ip_forward=1
        net.bridge.bridge-nf-call-iptables=1
        net.bridge.bridge-nf-call-ip6tables=1
        EOF
        sysctl --system >/dev/null
        """
    )
    return await channel.run_script(script + hostname)


async def configure_repositories(
    state: State, host: HostConfig, channel: RemoteChannel
) -> Optional[str]:
    """Write proxy settings for apt and the runtime, and add the Kubernetes APT repository."""
    cluster = state.cluster
    env = proxy_env(cluster)
    if env:
        apt_proxy = "".join(
            f'Acquire::{scheme}::Proxy "{url}";\n'
            for scheme, url in (("http", cluster.proxy.http), ("https", cluster.proxy.https))
            if url
        )
        await channel.upload(apt_proxy, "/etc/apt/apt.conf.d/90kubeforge-proxy", mode="0644")
        env_file = "".join(f"{k}={v}\n" for k, v in env.items())
        await channel.upload(env_file, "/etc/kubeforge/proxy.env", mode="0644")

    if not cluster.system_packages.configure_repositories:
        return None

    minor = _minor_version(cluster.versions.kubernetes)
    script = _script(
        f"""\
        export DEBIAN_FRONTEND=noninteractive
        apt-get update -y
        apt-get install -y apt-transport-https ca-certificates curl gnupg
        mkdir -p /etc/apt/keyrings
        curl -fsSL https://pkgs.k8s.io/core:/stable:/v{minor}/deb/Release.key \\
          | gpg --dearmor --yes -o /etc/apt/keyrings/kubernetes-apt-keyring.gpg
        echo 'deb [signed-by=/etc/apt/keyrings/kubernetes-apt-keyring.gpg] https://pkgs.k8s.io/core:/stable:/v{minor}/deb/ /' \\
          > /etc/apt/sources.list.d/kubernetes.list
        apt-get update -y
        """
    )
    return await channel.run_script(script, env=env)


def _containerd_registry_config(cluster: ClusterSpec) -> str:
    registry = cluster.registry_configuration
    if registry is None or not registry.overwrite_registry or not registry.insecure_registry:
        return ""
    host = registry.overwrite_registry
    return textwrap.dedent(
        f"""\
        [plugins."io.containerd.grpc.v1.cri".registry.configs."{host}".tls]
          insecure_skip_verify = true
        """
    )


async def install_container_runtime(
    state: State, host: HostConfig, channel: RemoteChannel
) -> Optional[str]:
    """Install and start containerd or docker, whichever the cluster selected."""
    cluster = state.cluster
    env = proxy_env(cluster)
    if cluster.container_runtime.runtime_name() == "containerd":
        extra = _containerd_registry_config(cluster)
        script = _script(
            """\
            export DEBIAN_FRONTEND=noninteractive
            if ! command -v containerd >/dev/null 2>&1; then
              apt-get update -y
              apt-get install -y containerd
            fi
            mkdir -p /etc/containerd
            containerd config default > /etc/containerd/config.toml
            sed -i 's/SystemdCgroup = false/SystemdCgroup = true/' /etc/containerd/config.toml
            """
        )
        if extra:
            script += f"cat >> /etc/containerd/config.toml <<'EOF'\n{extra}EOF\n"
        script += "systemctl enable containerd\nsystemctl restart containerd\n"
    else:
        script = _script(
            """\
            export DEBIAN_FRONTEND=noninteractive
            if ! command -v docker >/dev/null 2>&1; then
              apt-get update -y
              apt-get install -y docker.io
            fi
            systemctl enable docker
            systemctl start docker
            """
        )
    return await channel.run_script(script, env=env)


async def install_kube_binaries(
    state: State, host: HostConfig, channel: RemoteChannel
) -> Optional[str]:
    """Install (or move to) the pinned kubeadm/kubelet/kubectl version and hold it."""
    cluster = state.cluster
    pkg_version = kube_package_version(cluster)
    script = _script(
        f"""\
        export DEBIAN_FRONTEND=noninteractive
        apt-mark unhold kubelet kubeadm kubectl >/dev/null 2>&1 || true
        apt-get install -y --allow-downgrades \\
          kubelet='{pkg_version}' kubeadm='{pkg_version}' kubectl='{pkg_version}'
        apt-mark hold kubelet kubeadm kubectl
        systemctl enable kubelet
        """
    )
    return await channel.run_script(script, env=proxy_env(cluster))


# ---------------------------------------------------------------------------
# Control plane
# ---------------------------------------------------------------------------


@async_retry(retries=5, delay=5.0, noisy=True)
async def _create_join_command(channel: RemoteChannel) -> str:
    """The API server may still be settling right after init, so this is retried."""
    out = await channel.run_script(
        _script(
            f"""\
            kubeadm token create --print-join-command --kubeconfig {ADMIN_KUBECONFIG}
            """
        )
    )
    return out.strip()


async def fetch_pki(state: State, channel: RemoteChannel) -> None:
    """Read the shared control-plane PKI from the leader into the run state."""
    for path in SHARED_PKI_FILES:
        content = await channel.download(path)
        state.pki[path] = content.encode("utf-8")


async def bootstrap_leader(state: State, host: HostConfig, channel: RemoteChannel) -> Optional[str]:
    """
    Initialize the first control-plane host (skipped when admin.conf already
    exists), then collect what the other hosts need from it.
    """
    cluster = state.cluster
    await channel.upload(kubeadm_config(cluster, host), KUBEADM_CONFIG_PATH)
    output = await channel.run_script(
        _script(
            f"""\
            if [ ! -f {ADMIN_KUBECONFIG} ]; then
              kubeadm init --config {KUBEADM_CONFIG_PATH}
            fi
            """
        ),
        env=proxy_env(cluster),
    )

    await fetch_pki(state, channel)
    state.load_ca()
    state.kubeconfig = await channel.download(ADMIN_KUBECONFIG)
    state.join_command = await _create_join_command(channel)
    return output


async def distribute_pki(state: State, host: HostConfig, channel: RemoteChannel) -> Optional[str]:
    """Copy the shared PKI fetched from the leader onto a joining control-plane host."""
    if not state.pki:
        raise BootstrapError("no PKI fetched from the leader; run the bootstrap phase first")
    for path, content in state.pki.items():
        mode = "0600" if path.endswith(".key") else "0644"
        await channel.upload(content.decode("utf-8"), path, mode=mode)
    return None


def _join_script(join_command: str, extra_args: List[str]) -> str:
    command = join_command + "".join(f" {shlex.quote(a)}" for a in extra_args)
    return _script(
        f"""\
        if [ ! -f {KUBELET_CONFIG_PATH} ]; then
          {command}
        fi
        """
    )


async def join_control_plane(
    state: State, host: HostConfig, channel: RemoteChannel
) -> Optional[str]:
    """Join a follower as an additional control-plane node."""
    if not state.join_command:
        raise BootstrapError("no join command available; run the bootstrap phase first")
    args = [
        "--control-plane",
        "--apiserver-advertise-address",
        host.private_address,
        "--apiserver-bind-port",
        str(state.cluster.api_endpoint.port),
    ]
    if host.hostname:
        args += ["--node-name", host.hostname]
    return await channel.run_script(_join_script(state.join_command, args))


async def provision_control_plane(
    state: State, host: HostConfig, channel: RemoteChannel
) -> Optional[str]:
    """Bootstrap the leader; on the other control-plane hosts copy the PKI and join."""
    if host.is_leader:
        return await bootstrap_leader(state, host, channel)
    await distribute_pki(state, host, channel)
    return await join_control_plane(state, host, channel)


async def join_worker(state: State, host: HostConfig, channel: RemoteChannel) -> Optional[str]:
    """Join a static worker node."""
    if not state.join_command:
        raise BootstrapError("no join command available; run the bootstrap phase first")
    args: List[str] = []
    if host.hostname:
        args += ["--node-name", host.hostname]
    return await channel.run_script(_join_script(state.join_command, args))


def _kube_client(state: State, channel: RemoteChannel) -> KubectlClient:
    if state.kube_client is not None:
        return state.kube_client
    return KubectlClient.over_channel(channel)


async def post_install(state: State, host: HostConfig, channel: RemoteChannel) -> Optional[str]:
    """
    Cluster objects created from the leader:
      - the metrics-server serving certificate, signed by the cluster CA;
      - the MachineDeployments of the dynamic worker pools.
    """
    cluster = state.cluster
    client = _kube_client(state, channel)

    metrics = cluster.features.metrics_server
    if metrics is not None and metrics.enable:
        if not state.pki:
            await fetch_pki(state, channel)
        bundle = new_signed_tls_cert(
            METRICS_SERVER_NAME,
            NAMESPACE_SYSTEM,
            cluster.cluster_network.service_domain_name,
            state.load_ca(),
        )
        await put_k8s_secret_data(client, METRICS_SERVER_SECRET, NAMESPACE_SYSTEM, bundle)

    mc = cluster.machine_controller
    if mc is not None and mc.deploy and cluster.dynamic_workers:
        await apply_machine_deployments(state, client)
    return None


# ---------------------------------------------------------------------------
# Upgrade
# ---------------------------------------------------------------------------


async def upgrade_leader(state: State, host: HostConfig, channel: RemoteChannel) -> Optional[str]:
    version = f"v{state.cluster.versions.kubernetes}"
    return await channel.run_script(
        _script(
            f"""\
            kubeadm upgrade apply -y {version}
            systemctl daemon-reload
            systemctl restart kubelet
            """
        ),
        env=proxy_env(state.cluster),
    )


async def upgrade_node(state: State, host: HostConfig, channel: RemoteChannel) -> Optional[str]:
    return await channel.run_script(
        _script(
            """\
            kubeadm upgrade node
            systemctl daemon-reload
            systemctl restart kubelet
            """
        ),
        env=proxy_env(state.cluster),
    )


async def update_machine_deployments(
    state: State, host: HostConfig, channel: RemoteChannel
) -> Optional[str]:
    """Re-apply the pools so their kubelet version follows the cluster version."""
    mc = state.cluster.machine_controller
    if mc is None or not mc.deploy or not state.cluster.dynamic_workers:
        return None
    await apply_machine_deployments(state, _kube_client(state, channel))
    return None


# ---------------------------------------------------------------------------
# Reset
# ---------------------------------------------------------------------------


async def delete_machine_deployments(
    state: State, host: HostConfig, channel: RemoteChannel
) -> Optional[str]:
    """Remove the pools so the machine controller deletes their machines."""
    if not state.cluster.dynamic_workers:
        return None
    return await channel.run_script(
        _script(
            f"""\
            if [ -f {ADMIN_KUBECONFIG} ]; then
              kubectl --kubeconfig {ADMIN_KUBECONFIG} -n {NAMESPACE_SYSTEM} \\
                delete {MACHINE_DEPLOYMENT_RESOURCE} --all --ignore-not-found --wait=true
            fi
            """
        )
    )


async def reset_host(state: State, host: HostConfig, channel: RemoteChannel) -> Optional[str]:
    return await channel.run_script(
        _script(
            f"""\
            if command -v kubeadm >/dev/null 2>&1; then
              kubeadm reset -f
            fi
            rm -rf /etc/kubernetes /var/lib/etcd /etc/cni/net.d {KUBEADM_CONFIG_PATH}
            """
        )
    )


# ---------------------------------------------------------------------------
# Phase lists
# ---------------------------------------------------------------------------


def install_phases() -> List[Phase]:
    return [
        Phase("prepare hosts", PhaseTarget.all, prepare_host),
        Phase("configure repositories", PhaseTarget.all, configure_repositories),
        Phase("install container runtime", PhaseTarget.all, install_container_runtime),
        Phase("install kubernetes binaries", PhaseTarget.all, install_kube_binaries),
        # leader first, then the followers one at a time
        Phase(
            "provision control plane",
            PhaseTarget.control_plane,
            provision_control_plane,
            leader_first=True,
            max_concurrency=1,
        ),
        Phase("join workers", PhaseTarget.workers, join_worker),
        Phase("post install", PhaseTarget.leader, post_install),
    ]


def upgrade_phases() -> List[Phase]:
    return [
        Phase("configure repositories", PhaseTarget.all, configure_repositories),
        Phase("install kubernetes binaries", PhaseTarget.all, install_kube_binaries),
        Phase("upgrade leader", PhaseTarget.leader, upgrade_leader),
        Phase("upgrade followers", PhaseTarget.followers, upgrade_node, max_concurrency=1),
        Phase("upgrade workers", PhaseTarget.workers, upgrade_node, max_concurrency=1),
        Phase("update machine deployments", PhaseTarget.leader, update_machine_deployments),
    ]


def reset_phases() -> List[Phase]:
    return [
        Phase(
            "delete machine deployments",
            PhaseTarget.leader,
            delete_machine_deployments,
            best_effort=True,
        ),
        Phase("reset hosts", PhaseTarget.all, reset_host, best_effort=True),
    ]


__all__ = [
    "BootstrapError",
    "SHARED_PKI_FILES",
    "kubeadm_config",
    "proxy_env",
    "install_phases",
    "upgrade_phases",
    "reset_phases",
]
