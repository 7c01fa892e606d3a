"""Tests for cluster defaulting and configuration validation."""

import pytest

from kubeforge.models.cluster import (
    CNI,
    APIEndpoint,
    AssetConfiguration,
    CanalSpec,
    CiliumSpec,
    CloudProviderSpec,
    ClusterNetwork,
    ContainerRuntimeConfig,
    ContainerRuntimeDocker,
    Features,
    ImageAsset,
    OpenIDConnect,
    ProxyConfig,
    RegistryConfiguration,
    StaticAuditLog,
    Taint,
    Versions,
)
from kubeforge.models.defaults import (
    DEFAULTING_PIPELINE,
    ConfigurationError,
    canal_mtu_for,
    normalize_cluster,
    sanitize_version,
    validate_cluster,
)
from kubeforge.models.providers import ProviderName


class TestNormalizeHosts:
    def test_ids_follow_control_plane_then_workers(self, cluster):
        assert [h.id for h in cluster.control_plane_hosts()] == [0, 1, 2]
        assert [h.id for h in cluster.worker_hosts()] == [3, 4]

    def test_first_control_plane_host_becomes_leader(self, cluster):
        assert cluster.leader().id == 0
        assert [h.id for h in cluster.followers()] == [1, 2]
        assert not any(h.is_leader for h in cluster.worker_hosts())

    def test_flagged_leader_is_kept(self, make_cluster):
        raw = make_cluster()
        raw.control_plane.hosts[2].is_leader = True
        spec = normalize_cluster(raw)

        assert spec.leader().id == 2
        assert sum(h.is_leader for h in spec.all_hosts()) == 1

    def test_ssh_defaults(self, cluster):
        host = cluster.leader()
        assert host.ssh_username == "root"
        assert host.ssh_port == 22
        assert host.bastion_port == 22
        assert host.bastion_user == "root"
        assert host.private_address == host.public_address

    def test_agent_socket_defaulted_without_key_file(self, make_cluster):
        raw = make_cluster(control_plane=1, workers=0)
        raw.control_plane.hosts[0].ssh_agent_socket = ""
        spec = normalize_cluster(raw)

        assert spec.leader().ssh_agent_socket == "env:SSH_AUTH_SOCK"

    def test_public_address_backfilled_from_private(self, make_cluster):
        raw = make_cluster(control_plane=1, workers=0)
        raw.control_plane.hosts[0].public_address = ""
        raw.control_plane.hosts[0].private_address = "192.168.1.10"
        spec = normalize_cluster(raw)

        assert spec.leader().public_address == "192.168.1.10"

    def test_taints(self, cluster):
        for host in cluster.control_plane_hosts():
            assert host.taints == [Taint(key="node-role.kubernetes.io/master", effect="NoSchedule")]
        for host in cluster.worker_hosts():
            assert host.taints == []

    def test_explicit_empty_taints_kept(self, make_cluster):
        raw = make_cluster(control_plane=1, workers=0)
        raw.control_plane.hosts[0].taints = []
        spec = normalize_cluster(raw)

        assert spec.leader().taints == []


class TestNormalizeCluster:
    def test_input_not_mutated(self, raw_cluster):
        before = raw_cluster.model_dump()
        normalize_cluster(raw_cluster)

        assert raw_cluster.model_dump() == before

    def test_idempotent(self, make_cluster, make_pool):
        raw = make_cluster(
            pools=[make_pool()],
            proxy=ProxyConfig(http="http://proxy:3128", no_proxy="example.com,localhost"),
            cloud_provider=CloudProviderSpec(name=ProviderName.aws),
            registry_configuration=RegistryConfiguration(overwrite_registry="registry.local"),
            features=Features(
                static_audit_log=StaticAuditLog(enable=True),
                open_id_connect=OpenIDConnect(enable=True),
            ),
        )
        once = normalize_cluster(raw)
        twice = normalize_cluster(once)

        assert twice.model_dump() == once.model_dump()

    def test_api_endpoint(self, cluster):
        assert cluster.api_endpoint.host == "10.0.0.1"
        assert cluster.api_endpoint.port == 6443

    def test_explicit_api_endpoint_kept(self, make_cluster):
        raw = make_cluster(api_endpoint=APIEndpoint(host="lb.example.com", port=8443))
        spec = normalize_cluster(raw)

        assert spec.api_endpoint.host == "lb.example.com"
        assert spec.api_endpoint.port == 8443

    def test_version_prefix_stripped(self, cluster):
        assert cluster.versions.kubernetes == "1.27.3"

    @pytest.mark.parametrize(
        "version,expected",
        [("v1.23.0", "1.23.0"), ("1.23.0", "1.23.0"), ("", "")],
    )
    def test_sanitize_version(self, version, expected):
        assert sanitize_version(version) == expected

    def test_containerd_selected_for_new_versions(self, cluster):
        assert cluster.container_runtime.containerd is not None
        assert cluster.container_runtime.runtime_name() == "containerd"

    def test_legacy_version_keeps_docker(self, make_cluster):
        spec = normalize_cluster(make_cluster(versions=Versions(kubernetes="1.21.5")))

        assert spec.container_runtime.containerd is None
        assert spec.container_runtime.runtime_name() == "docker"

    def test_explicit_runtime_kept(self, make_cluster):
        raw = make_cluster(
            container_runtime=ContainerRuntimeConfig(docker=ContainerRuntimeDocker())
        )
        spec = normalize_cluster(raw)

        assert spec.container_runtime.containerd is None
        assert spec.container_runtime.docker is not None

    def test_unparsable_version_tolerated(self, make_cluster):
        spec = normalize_cluster(make_cluster(versions=Versions(kubernetes="latest")))

        assert spec.versions.kubernetes == "latest"
        assert spec.container_runtime.containerd is None

    def test_network_defaults(self, cluster):
        net = cluster.cluster_network
        assert net.pod_subnet == "10.244.0.0/16"
        assert net.service_subnet == "10.96.0.0/12"
        assert net.service_domain_name == "cluster.local"
        assert net.node_port_range == "30000-32767"
        assert net.cni.canal.mtu == 1450

    @pytest.mark.parametrize(
        "provider,mtu",
        [
            (ProviderName.aws, 8951),
            (ProviderName.gce, 1410),
            (ProviderName.hetzner, 1400),
            (ProviderName.openstack, 1400),
            (ProviderName.vsphere, 1450),
            (None, 1450),
        ],
    )
    def test_canal_mtu_by_provider(self, make_cluster, provider, mtu):
        spec = normalize_cluster(make_cluster(cloud_provider=CloudProviderSpec(name=provider)))

        assert canal_mtu_for(provider) == mtu
        assert spec.cluster_network.cni.canal.mtu == mtu

    def test_explicit_mtu_kept(self, make_cluster):
        raw = make_cluster(
            cloud_provider=CloudProviderSpec(name=ProviderName.aws),
            cluster_network=ClusterNetwork(cni=CNI(canal=CanalSpec(mtu=1300))),
        )
        spec = normalize_cluster(raw)

        assert spec.cluster_network.cni.canal.mtu == 1300

    def test_cilium_defaults(self, make_cluster):
        raw = make_cluster(cluster_network=ClusterNetwork(cni=CNI(cilium=CiliumSpec())))
        spec = normalize_cluster(raw)

        assert spec.cluster_network.cni.canal is None
        assert spec.cluster_network.cni.cilium.kube_proxy_replacement == "disabled"

    def test_no_proxy_built_when_proxy_set(self, make_cluster):
        raw = make_cluster(proxy=ProxyConfig(https="http://proxy:3128", no_proxy="example.com"))
        spec = normalize_cluster(raw)

        assert spec.proxy.no_proxy == (
            "127.0.0.1/8,localhost,cluster.local,10.244.0.0/16,10.96.0.0/12,example.com"
        )

    def test_no_proxy_untouched_without_proxy(self, make_cluster):
        spec = normalize_cluster(make_cluster(proxy=ProxyConfig(no_proxy="example.com")))

        assert spec.proxy.no_proxy == "example.com"

    def test_registry_propagated_to_unset_assets(self, make_cluster):
        raw = make_cluster(
            registry_configuration=RegistryConfiguration(overwrite_registry="registry.local"),
            asset_configuration=AssetConfiguration(
                etcd=ImageAsset(image_repository="quay.io/coreos")
            ),
        )
        assets = normalize_cluster(raw).asset_configuration

        assert assets.kubernetes.image_repository == "registry.local"
        assert assets.core_dns.image_repository == "registry.local"
        assert assets.metrics_server.image_repository == "registry.local"
        assert assets.etcd.image_repository == "quay.io/coreos"

    def test_optional_blocks_filled(self, cluster):
        assert cluster.machine_controller.deploy is True
        assert cluster.system_packages.configure_repositories is True
        assert cluster.features.metrics_server.enable is True
        assert cluster.addons.enable is False

    def test_audit_and_oidc_defaults(self, make_cluster):
        raw = make_cluster(
            features=Features(
                static_audit_log=StaticAuditLog(enable=True),
                open_id_connect=OpenIDConnect(enable=True),
            )
        )
        features = normalize_cluster(raw).features

        audit = features.static_audit_log.config
        assert audit.log_path == "/var/log/kubernetes/audit.log"
        assert (audit.log_max_age, audit.log_max_backup, audit.log_max_size) == (30, 3, 100)
        oidc = features.open_id_connect.config
        assert oidc.client_id == "kubernetes"
        assert oidc.username_claim == "sub"
        assert oidc.username_prefix == "oidc:"
        assert oidc.groups_claim == "groups"
        assert oidc.signing_algs == "RS256"

    def test_pipeline_order(self):
        names = [name for name, _ in DEFAULTING_PIPELINE]

        assert names.index("versions") < names.index("container_runtime")
        assert names.index("cluster_network") < names.index("proxy")
        assert names[0] == "hosts"


class TestValidateCluster:
    def test_normalized_cluster_is_valid(self, cluster):
        validate_cluster(cluster)

    def test_no_control_plane(self, make_cluster):
        spec = normalize_cluster(make_cluster(control_plane=0))

        with pytest.raises(ConfigurationError, match="no control-plane hosts"):
            validate_cluster(spec)

    def test_multiple_leaders(self, make_cluster):
        raw = make_cluster()
        raw.control_plane.hosts[0].is_leader = True
        raw.control_plane.hosts[1].is_leader = True
        spec = normalize_cluster(raw)

        with pytest.raises(ConfigurationError, match="Exactly one"):
            validate_cluster(spec)

    def test_worker_leader(self, make_cluster):
        raw = make_cluster()
        raw.control_plane.hosts[0].is_leader = True
        spec = normalize_cluster(raw)
        spec.control_plane.hosts[0].is_leader = False
        spec.static_workers.hosts[0].is_leader = True

        with pytest.raises(ConfigurationError, match="not a control-plane host"):
            validate_cluster(spec)

    def test_duplicate_ids(self, cluster):
        cluster.static_workers.hosts[0].id = 0

        with pytest.raises(ConfigurationError, match="not unique"):
            validate_cluster(cluster)

    def test_missing_replicas(self, make_cluster, make_pool):
        pool = make_pool()
        pool.replicas = None
        spec = normalize_cluster(make_cluster(pools=[pool]))

        with pytest.raises(ConfigurationError, match="no replica count"):
            validate_cluster(spec)

    def test_duplicate_pools(self, make_cluster, make_pool):
        spec = normalize_cluster(make_cluster(pools=[make_pool("a"), make_pool("a")]))

        with pytest.raises(ConfigurationError, match="Duplicate"):
            validate_cluster(spec)

    def test_configuration_error_is_value_error(self):
        assert issubclass(ConfigurationError, ValueError)
