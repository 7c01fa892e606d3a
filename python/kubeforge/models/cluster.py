"""
kubeforge/models/cluster.py

Defines Pydantic models for the declarative cluster document:
 - HostConfig (one SSH-reachable machine)
 - ClusterNetwork, ProxyConfig, Features and the other cluster-wide blocks
 - DynamicWorkerConfig (a pool handed to the machine controller)
 - ClusterSpec (the root document)

Empty strings, zero ports and None blocks mean "unset"; models.defaults fills
them in. Field names are snake_case and match the YAML/JSON document keys.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from kubeforge.models.providers import ProviderName


class Taint(BaseModel):
    """A node taint applied when the host registers."""

    key: str
    value: str = ""
    effect: str = "NoSchedule"


class HostConfig(BaseModel):
    """
    A single control-plane or static-worker machine.

    Attributes:
        public_address: Address used to reach the host over SSH.
        private_address: Address used for in-cluster traffic.
        ssh_private_key_file: Path to a private key file on the operator machine.
        ssh_agent_socket: Agent socket path, or an 'env:NAME' reference.
        bastion: Optional jump host for this host.
        id: Unique integer assigned during defaulting.
        is_leader: True for the control-plane host that bootstraps the cluster.
    """

    public_address: str = ""
    private_address: str = ""
    hostname: str = ""
    ssh_username: str = ""
    ssh_port: int = Field(default=0, ge=0, le=65535)
    ssh_private_key_file: str = ""
    ssh_agent_socket: str = ""
    bastion: str = ""
    bastion_port: int = Field(default=0, ge=0, le=65535)
    bastion_user: str = ""
    id: int = 0
    is_leader: bool = False
    taints: Optional[List[Taint]] = None
    labels: Dict[str, str] = Field(default_factory=dict)

    def display_name(self) -> str:
        return self.hostname or self.public_address or f"host-{self.id}"


class ControlPlaneConfig(BaseModel):
    hosts: List[HostConfig] = Field(default_factory=list)


class StaticWorkersConfig(BaseModel):
    hosts: List[HostConfig] = Field(default_factory=list)


class APIEndpoint(BaseModel):
    host: str = ""
    port: int = Field(default=0, ge=0, le=65535)
    alternative_names: List[str] = Field(default_factory=list)


class CloudProviderSpec(BaseModel):
    """Cloud provider identity; None means bare metal / no integration."""

    name: Optional[ProviderName] = None
    external: bool = False
    cloud_config: str = ""


class Versions(BaseModel):
    kubernetes: str = ""


class ContainerRuntimeDocker(BaseModel):
    pass


class ContainerRuntimeContainerd(BaseModel):
    pass


class ContainerRuntimeConfig(BaseModel):
    """At most one runtime block is set. Neither means the legacy default (docker)."""

    docker: Optional[ContainerRuntimeDocker] = None
    containerd: Optional[ContainerRuntimeContainerd] = None

    def runtime_name(self) -> str:
        if self.containerd is not None:
            return "containerd"
        return "docker"


class CanalSpec(BaseModel):
    mtu: int = Field(default=0, ge=0)


class CiliumSpec(BaseModel):
    kube_proxy_replacement: str = ""


class CNI(BaseModel):
    canal: Optional[CanalSpec] = None
    cilium: Optional[CiliumSpec] = None


class ClusterNetwork(BaseModel):
    pod_subnet: str = ""
    service_subnet: str = ""
    service_domain_name: str = ""
    node_port_range: str = ""
    cni: Optional[CNI] = None


class ProxyConfig(BaseModel):
    http: str = ""
    https: str = ""
    no_proxy: str = ""

    def is_configured(self) -> bool:
        return bool(self.http or self.https)


class MachineControllerConfig(BaseModel):
    deploy: bool = True


class SystemPackages(BaseModel):
    configure_repositories: bool = True


class RegistryConfiguration(BaseModel):
    overwrite_registry: str = ""
    insecure_registry: bool = False


class ImageAsset(BaseModel):
    image_repository: str = ""
    image_tag: str = ""


class AssetConfiguration(BaseModel):
    kubernetes: ImageAsset = Field(default_factory=ImageAsset)
    core_dns: ImageAsset = Field(default_factory=ImageAsset)
    etcd: ImageAsset = Field(default_factory=ImageAsset)
    metrics_server: ImageAsset = Field(default_factory=ImageAsset)


class MetricsServer(BaseModel):
    enable: bool = True


class StaticAuditLogConfig(BaseModel):
    policy_file_path: str = ""
    log_path: str = ""
    log_max_age: int = 0
    log_max_backup: int = 0
    log_max_size: int = 0


class StaticAuditLog(BaseModel):
    enable: bool = False
    config: StaticAuditLogConfig = Field(default_factory=StaticAuditLogConfig)


class OpenIDConnectConfig(BaseModel):
    issuer_url: str = ""
    client_id: str = ""
    username_claim: str = ""
    username_prefix: str = ""
    groups_claim: str = ""
    groups_prefix: str = ""
    required_claim: str = ""
    signing_algs: str = ""
    ca_file: str = ""


class OpenIDConnect(BaseModel):
    enable: bool = False
    config: OpenIDConnectConfig = Field(default_factory=OpenIDConnectConfig)


class Features(BaseModel):
    metrics_server: Optional[MetricsServer] = None
    static_audit_log: Optional[StaticAuditLog] = None
    open_id_connect: Optional[OpenIDConnect] = None


class Addons(BaseModel):
    enable: bool = False
    path: str = ""


class DNSConfig(BaseModel):
    servers: List[str] = Field(default_factory=list)


class ProviderStaticNetworkConfig(BaseModel):
    """Static addressing for machines in a pool (e.g. vSphere without DHCP)."""

    cidr: str
    gateway: str
    dns: DNSConfig = Field(default_factory=DNSConfig)


class ProviderSpec(BaseModel):
    """
    Per-pool machine configuration. `cloud_provider_spec` is the raw provider
    payload; its shape depends on the cluster's cloud provider and is decoded
    by deployment.machine_deployments.
    """

    cloud_provider_spec: Optional[Dict[str, Any]] = None
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)
    machine_annotations: Dict[str, str] = Field(default_factory=dict)
    taints: List[Taint] = Field(default_factory=list)
    ssh_public_keys: List[str] = Field(default_factory=list)
    operating_system: str = ""
    operating_system_spec: Dict[str, Any] = Field(default_factory=dict)
    network: Optional[ProviderStaticNetworkConfig] = None
    overwrite_cloud_config: Optional[str] = None


class DynamicWorkerConfig(BaseModel):
    name: str
    replicas: Optional[int] = None
    provider_spec: ProviderSpec = Field(default_factory=ProviderSpec)


class ClusterSpec(BaseModel):
    """
    The root cluster document.

    After models.defaults.normalize_cluster every optional block is populated,
    exactly one control-plane host is the leader and host IDs run 0..n-1 with
    control-plane hosts first.
    """

    name: str
    control_plane: ControlPlaneConfig = Field(default_factory=ControlPlaneConfig)
    static_workers: StaticWorkersConfig = Field(default_factory=StaticWorkersConfig)
    dynamic_workers: List[DynamicWorkerConfig] = Field(default_factory=list)
    api_endpoint: APIEndpoint = Field(default_factory=APIEndpoint)
    cloud_provider: CloudProviderSpec = Field(default_factory=CloudProviderSpec)
    versions: Versions = Field(default_factory=Versions)
    container_runtime: ContainerRuntimeConfig = Field(
        default_factory=ContainerRuntimeConfig
    )
    cluster_network: ClusterNetwork = Field(default_factory=ClusterNetwork)
    proxy: ProxyConfig = Field(default_factory=ProxyConfig)
    machine_controller: Optional[MachineControllerConfig] = None
    system_packages: Optional[SystemPackages] = None
    registry_configuration: Optional[RegistryConfiguration] = None
    asset_configuration: AssetConfiguration = Field(default_factory=AssetConfiguration)
    features: Features = Field(default_factory=Features)
    addons: Optional[Addons] = None

    def control_plane_hosts(self) -> List[HostConfig]:
        return list(self.control_plane.hosts)

    def worker_hosts(self) -> List[HostConfig]:
        return list(self.static_workers.hosts)

    def all_hosts(self) -> List[HostConfig]:
        return self.control_plane_hosts() + self.worker_hosts()

    def leader(self) -> HostConfig:
        """
        Return the control-plane host flagged as leader.

        Raises:
            ValueError: If no control-plane host carries the leader flag.
        """
        leaders = [h for h in self.control_plane.hosts if h.is_leader]
        if not leaders:
            raise ValueError(f"Cluster '{self.name}' has no leader host.")
        return leaders[0]

    def followers(self) -> List[HostConfig]:
        """Control-plane hosts other than the leader."""
        return [h for h in self.control_plane.hosts if not h.is_leader]


__all__ = [
    "Taint",
    "HostConfig",
    "ControlPlaneConfig",
    "StaticWorkersConfig",
    "APIEndpoint",
    "CloudProviderSpec",
    "Versions",
    "ContainerRuntimeDocker",
    "ContainerRuntimeContainerd",
    "ContainerRuntimeConfig",
    "CanalSpec",
    "CiliumSpec",
    "CNI",
    "ClusterNetwork",
    "ProxyConfig",
    "MachineControllerConfig",
    "SystemPackages",
    "RegistryConfiguration",
    "ImageAsset",
    "AssetConfiguration",
    "MetricsServer",
    "StaticAuditLogConfig",
    "StaticAuditLog",
    "OpenIDConnectConfig",
    "OpenIDConnect",
    "Features",
    "Addons",
    "DNSConfig",
    "ProviderStaticNetworkConfig",
    "ProviderSpec",
    "DynamicWorkerConfig",
    "ClusterSpec",
]
