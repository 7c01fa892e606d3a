"""Tests for MachineDeployment generation, rendering and apply."""

from unittest.mock import AsyncMock

import pytest
import yaml

from kubeforge.deployment.machine_deployments import (
    MachineDeploymentError,
    MissingProviderSpecError,
    ProviderSpecDecodeError,
    apply_machine_deployment,
    apply_machine_deployments,
    generate_machine_deployment,
    render_machine_deployments_manifest,
)
from kubeforge.deployment.state import State
from kubeforge.models.cluster import CloudProviderSpec, ProviderStaticNetworkConfig
from kubeforge.models.defaults import ConfigurationError, normalize_cluster
from kubeforge.models.machine_deployment import MACHINE_DEPLOYMENT_RESOURCE
from kubeforge.models.providers import ProviderName


@pytest.fixture
def aws_cluster(make_cluster, make_pool):
    return normalize_cluster(
        make_cluster(
            pools=[make_pool("pool-a", 3)],
            cloud_provider=CloudProviderSpec(name=ProviderName.aws),
        )
    )


class TestGenerate:
    def test_basic_fields(self, aws_cluster):
        md = generate_machine_deployment(aws_cluster, aws_cluster.dynamic_workers[0])

        assert md.name == "pool-a"
        assert md.namespace == "kube-system"
        assert md.replicas == 3
        assert md.selector == {"workerset": "pool-a"}
        assert md.labels["workerset"] == "pool-a"
        assert md.kubelet_version == "1.27.3"
        assert md.provider_spec["cloudProvider"] == "aws"
        assert md.provider_spec["operatingSystem"] == "ubuntu"
        assert md.provider_spec["sshPublicKeys"] == ["ssh-ed25519 AAAA test"]

    def test_pool_labels_merged_with_selector(self, make_cluster, make_pool):
        cluster = normalize_cluster(
            make_cluster(pools=[make_pool(labels={"tier": "batch", "workerset": "other"})])
        )
        md = generate_machine_deployment(cluster, cluster.dynamic_workers[0])

        assert md.labels == {"tier": "batch", "workerset": "pool-a"}

    def test_surge_without_static_network(self, aws_cluster):
        md = generate_machine_deployment(aws_cluster, aws_cluster.dynamic_workers[0])

        assert (md.rolling_update.max_surge, md.rolling_update.max_unavailable) == (1, 0)

    def test_surge_with_static_network(self, make_cluster, make_pool):
        network = ProviderStaticNetworkConfig(cidr="192.168.0.10/24", gateway="192.168.0.1")
        cluster = normalize_cluster(make_cluster(pools=[make_pool(network=network)]))
        md = generate_machine_deployment(cluster, cluster.dynamic_workers[0])

        assert (md.rolling_update.max_surge, md.rolling_update.max_unavailable) == (0, 1)
        assert md.provider_spec["network"]["gateway"] == "192.168.0.1"

    def test_aws_cluster_tag_added(self, aws_cluster):
        md = generate_machine_deployment(aws_cluster, aws_cluster.dynamic_workers[0])
        payload = md.provider_spec["cloudProviderSpec"]

        assert payload["tags"] == {"kubernetes.io/cluster/demo": "shared"}
        assert payload["instanceType"] == "t3.medium"

    def test_aws_existing_tags_preserved(self, make_cluster, make_pool):
        pool = make_pool(
            cloud_provider_spec={
                "region": "eu-west-1",
                "tags": {"team": "infra", "kubernetes.io/cluster/demo": "owned"},
            }
        )
        cluster = normalize_cluster(
            make_cluster(pools=[pool], cloud_provider=CloudProviderSpec(name=ProviderName.aws))
        )
        md = generate_machine_deployment(cluster, cluster.dynamic_workers[0])

        assert md.provider_spec["cloudProviderSpec"]["tags"] == {
            "team": "infra",
            "kubernetes.io/cluster/demo": "shared",
        }

    def test_generation_does_not_touch_cluster(self, aws_cluster):
        before = aws_cluster.model_dump()
        generate_machine_deployment(aws_cluster, aws_cluster.dynamic_workers[0])

        assert aws_cluster.model_dump() == before

    def test_other_providers_pass_payload_through(self, make_cluster, make_pool):
        cluster = normalize_cluster(
            make_cluster(
                pools=[make_pool()],
                cloud_provider=CloudProviderSpec(name=ProviderName.hetzner),
            )
        )
        md = generate_machine_deployment(cluster, cluster.dynamic_workers[0])

        assert md.provider_spec["cloudProviderSpec"] == {
            "instanceType": "t3.medium",
            "region": "eu-west-1",
        }

    def test_null_payload_keys_kept(self, make_cluster, make_pool):
        raw = {"image": None, "network": {"vlan": None}, "tags": None}
        cluster = normalize_cluster(
            make_cluster(
                pools=[make_pool(cloud_provider_spec=raw)],
                cloud_provider=CloudProviderSpec(name=ProviderName.hetzner),
            )
        )
        md = generate_machine_deployment(cluster, cluster.dynamic_workers[0])

        assert md.provider_spec["cloudProviderSpec"] == raw

    def test_aws_null_tags_replaced(self, make_cluster, make_pool):
        pool = make_pool(cloud_provider_spec={"region": "eu-west-1", "ami": None, "tags": None})
        cluster = normalize_cluster(
            make_cluster(pools=[pool], cloud_provider=CloudProviderSpec(name=ProviderName.aws))
        )
        md = generate_machine_deployment(cluster, cluster.dynamic_workers[0])

        assert md.provider_spec["cloudProviderSpec"] == {
            "region": "eu-west-1",
            "ami": None,
            "tags": {"kubernetes.io/cluster/demo": "shared"},
        }

    def test_missing_payload(self, make_cluster, make_pool):
        cluster = normalize_cluster(make_cluster(pools=[make_pool(cloud_provider_spec=None)]))

        with pytest.raises(MissingProviderSpecError) as exc_info:
            generate_machine_deployment(cluster, cluster.dynamic_workers[0])
        assert exc_info.value.pool == "pool-a"

    def test_undecodable_payload(self, make_cluster, make_pool):
        pool = make_pool(cloud_provider_spec={"tags": "not-a-mapping"})
        cluster = normalize_cluster(
            make_cluster(pools=[pool], cloud_provider=CloudProviderSpec(name=ProviderName.aws))
        )

        with pytest.raises(ProviderSpecDecodeError) as exc_info:
            generate_machine_deployment(cluster, cluster.dynamic_workers[0])
        assert isinstance(exc_info.value, MachineDeploymentError)
        assert exc_info.value.pool == "pool-a"

    def test_missing_replicas(self, make_cluster, make_pool):
        pool = make_pool()
        pool.replicas = None
        cluster = normalize_cluster(make_cluster(pools=[pool]))

        with pytest.raises(ConfigurationError):
            generate_machine_deployment(cluster, cluster.dynamic_workers[0])


class TestRender:
    def test_empty_for_no_pools(self, cluster):
        assert render_machine_deployments_manifest(cluster) == ""

    def test_one_document_per_pool(self, make_cluster, make_pool):
        cluster = normalize_cluster(make_cluster(pools=[make_pool("a"), make_pool("b")]))
        docs = list(yaml.safe_load_all(render_machine_deployments_manifest(cluster)))

        assert [d["metadata"]["name"] for d in docs] == ["a", "b"]
        for doc in docs:
            assert doc["apiVersion"] == "cluster.k8s.io/v1alpha1"
            assert doc["kind"] == "MachineDeployment"
            assert doc["spec"]["strategy"]["type"] == "RollingUpdate"
            assert doc["spec"]["template"]["spec"]["versions"]["kubelet"] == "1.27.3"


class TestApply:
    async def test_creates_when_absent(self, aws_cluster):
        md = generate_machine_deployment(aws_cluster, aws_cluster.dynamic_workers[0])
        client = AsyncMock()
        client.get.return_value = None

        await apply_machine_deployment(client, md)

        client.get.assert_awaited_once_with(MACHINE_DEPLOYMENT_RESOURCE, "pool-a", "kube-system")
        client.create.assert_awaited_once()
        client.replace.assert_not_awaited()

    async def test_replaces_when_present(self, aws_cluster):
        md = generate_machine_deployment(aws_cluster, aws_cluster.dynamic_workers[0])
        client = AsyncMock()
        client.get.return_value = {"metadata": {"name": "pool-a", "resourceVersion": "42"}}

        await apply_machine_deployment(client, md)

        client.create.assert_not_awaited()
        replaced = client.replace.await_args.args[0]
        assert replaced["metadata"]["resourceVersion"] == "42"
        assert replaced["spec"]["replicas"] == 3

    async def test_bad_pool_applies_nothing(self, make_cluster, make_pool):
        cluster = normalize_cluster(
            make_cluster(pools=[make_pool("good"), make_pool("bad", cloud_provider_spec=None)])
        )
        client = AsyncMock()

        with pytest.raises(MissingProviderSpecError):
            await apply_machine_deployments(State(cluster), client)
        client.create.assert_not_awaited()
        client.replace.assert_not_awaited()
