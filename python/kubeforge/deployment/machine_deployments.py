"""
kubeforge/deployment/machine_deployments.py

Turns dynamic worker pools into MachineDeployment objects for the machine
controller, and either applies them (create-or-update) or renders them as a
static YAML manifest.

The provider payload is untyped in the cluster document. It is decoded into
the provider's model from models.providers at the start of generation and
re-encoded into a plain JSON object at the end; nothing in between touches the
raw dict.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List

import yaml
from pydantic import ValidationError

from kubeforge.deployment.state import State
from kubeforge.models.cluster import ClusterSpec, DynamicWorkerConfig
from kubeforge.models.defaults import ConfigurationError
from kubeforge.models.machine_deployment import (
    MACHINE_DEPLOYMENT_RESOURCE,
    MachineDeployment,
    RollingUpdate,
)
from kubeforge.models.providers import AWSSpec, ProviderPayload, payload_model_for
from kubeforge.utils.k8s import KubectlClient, create_or_update

logger = logging.getLogger(__name__)

WORKERSET_LABEL = "workerset"


class MachineDeploymentError(Exception):
    """Generation failed for one pool; `pool` names it."""

    def __init__(self, pool: str, message: str) -> None:
        super().__init__(f"worker pool '{pool}': {message}")
        self.pool = pool


class MissingProviderSpecError(MachineDeploymentError):
    pass


class ProviderSpecDecodeError(MachineDeploymentError):
    pass


class ProviderSpecEncodeError(MachineDeploymentError):
    pass


def cluster_ownership_tag(cluster_name: str) -> str:
    return f"kubernetes.io/cluster/{cluster_name}"


def _decode_payload(cluster: ClusterSpec, pool: DynamicWorkerConfig) -> ProviderPayload:
    raw = pool.provider_spec.cloud_provider_spec
    if raw is None:
        raise MissingProviderSpecError(pool.name, "couldn't find cloud_provider_spec")

    model = payload_model_for(cluster.cloud_provider.name)
    try:
        return model.model_validate(raw)
    except ValidationError as exc:
        raise ProviderSpecDecodeError(
            pool.name, f"could not parse {model.__name__}: {exc}"
        ) from exc


def _tag_payload(cluster: ClusterSpec, payload: ProviderPayload) -> ProviderPayload:
    if isinstance(payload, AWSSpec):
        tags = dict(payload.tags or {})
        tags[cluster_ownership_tag(cluster.name)] = "shared"
        return payload.model_copy(update={"tags": tags})
    return payload


def _encode_payload(pool: DynamicWorkerConfig, payload: ProviderPayload) -> Dict[str, Any]:
    # only keys present in the pool document (plus the ownership tags) are written
    data = payload.model_dump(mode="json", exclude_unset=True)
    try:
        encoded = json.dumps(data)
    except (TypeError, ValueError) as exc:
        raise ProviderSpecEncodeError(pool.name, f"could not encode payload: {exc}") from exc
    spec: Dict[str, Any] = json.loads(encoded)
    return spec


def _provider_spec(
    cluster: ClusterSpec, pool: DynamicWorkerConfig, cloud_spec: Dict[str, Any]
) -> Dict[str, Any]:
    ps = pool.provider_spec
    value: Dict[str, Any] = {
        "sshPublicKeys": list(ps.ssh_public_keys),
        "cloudProvider": cluster.cloud_provider.name.value
        if cluster.cloud_provider.name
        else "",
        "cloudProviderSpec": cloud_spec,
        "operatingSystem": ps.operating_system,
        "operatingSystemSpec": dict(ps.operating_system_spec),
    }
    if ps.network is not None:
        value["network"] = {
            "cidr": ps.network.cidr,
            "gateway": ps.network.gateway,
            "dns": {"servers": list(ps.network.dns.servers)},
        }
    if ps.overwrite_cloud_config is not None:
        value["overwriteCloudConfig"] = ps.overwrite_cloud_config
    return value


def generate_machine_deployment(
    cluster: ClusterSpec, pool: DynamicWorkerConfig
) -> MachineDeployment:
    """
    Build the MachineDeployment for one pool.

    Pools with static network configuration replace machines one at a time
    (surge 0, unavailable 1), since addresses cannot be doubled up; all other
    pools bring up a new machine before removing an old one (surge 1,
    unavailable 0).

    Raises:
        ConfigurationError: If the pool has no replica count.
        MissingProviderSpecError: If the pool has no provider payload.
        ProviderSpecDecodeError: If the payload does not fit the provider's model.
        ProviderSpecEncodeError: If the payload cannot be re-encoded as JSON.
    """
    if pool.replicas is None:
        raise ConfigurationError(f"worker pool '{pool.name}' has no replica count")

    payload = _tag_payload(cluster, _decode_payload(cluster, pool))
    cloud_spec = _encode_payload(pool, payload)

    if pool.provider_spec.network is not None:
        rolling = RollingUpdate(max_surge=0, max_unavailable=1)
    else:
        rolling = RollingUpdate(max_surge=1, max_unavailable=0)

    selector = {WORKERSET_LABEL: pool.name}
    labels = {**pool.provider_spec.labels, **selector}

    return MachineDeployment(
        name=pool.name,
        annotations=dict(pool.provider_spec.annotations),
        replicas=pool.replicas,
        selector=selector,
        rolling_update=rolling,
        labels=labels,
        machine_annotations=dict(pool.provider_spec.machine_annotations),
        kubelet_version=cluster.versions.kubernetes,
        taints=list(pool.provider_spec.taints),
        provider_spec=_provider_spec(cluster, pool, cloud_spec),
    )


def generate_machine_deployments(cluster: ClusterSpec) -> List[MachineDeployment]:
    return [generate_machine_deployment(cluster, pool) for pool in cluster.dynamic_workers]


async def apply_machine_deployment(
    client: KubectlClient, machine_deployment: MachineDeployment
) -> None:
    """Create the MachineDeployment, or replace it if it already exists."""
    await create_or_update(
        client, MACHINE_DEPLOYMENT_RESOURCE, machine_deployment.to_manifest()
    )


async def apply_machine_deployments(state: State, client: KubectlClient) -> None:
    """
    Generate and apply every pool of the cluster. All pools are generated
    before the first apply, so a bad pool fails the call without side effects.
    """
    deployments = generate_machine_deployments(state.cluster)
    for md in deployments:
        logger.info("Ensuring MachineDeployment %s/%s", md.namespace, md.name)
        await apply_machine_deployment(client, md)


def render_machine_deployments_manifest(cluster: ClusterSpec) -> str:
    """
    Render all pools as a multi-document YAML manifest with apiVersion/kind set.
    Returns "" when the cluster has no dynamic workers.
    """
    if not cluster.dynamic_workers:
        return ""
    docs = [md.to_manifest(include_type_meta=True) for md in generate_machine_deployments(cluster)]
    return yaml.safe_dump_all(docs, default_flow_style=False, sort_keys=False)


__all__ = [
    "MachineDeploymentError",
    "MissingProviderSpecError",
    "ProviderSpecDecodeError",
    "ProviderSpecEncodeError",
    "cluster_ownership_tag",
    "generate_machine_deployment",
    "generate_machine_deployments",
    "apply_machine_deployment",
    "apply_machine_deployments",
    "render_machine_deployments_manifest",
]
