"""
kubeforge/models/machine_deployment.py

Defines the MachineDeployment descriptor handed to the external machine
controller, and its conversion to a Kubernetes manifest dict.
"""

from __future__ import annotations

from typing import Any, Dict, List

from pydantic import BaseModel, Field

from kubeforge.models.cluster import Taint

MACHINE_DEPLOYMENT_API_VERSION = "cluster.k8s.io/v1alpha1"
MACHINE_DEPLOYMENT_KIND = "MachineDeployment"
MACHINE_DEPLOYMENT_RESOURCE = "machinedeployments.cluster.k8s.io"
NAMESPACE_SYSTEM = "kube-system"


class RollingUpdate(BaseModel):
    max_surge: int
    max_unavailable: int


class MachineDeployment(BaseModel):
    """
    A declarative worker pool for the machine controller.

    Attributes:
        name: Pool name; also the `workerset` selector label value.
        replicas: Desired machine count.
        rolling_update: Surge/unavailable policy for replacing machines.
        labels: Labels on the Machine template and the Nodes it creates.
        provider_spec: Opaque provider payload (JSON object) including
            `cloudProvider`.
    """

    name: str
    namespace: str = NAMESPACE_SYSTEM
    annotations: Dict[str, str] = Field(default_factory=dict)
    replicas: int = Field(ge=0)
    selector: Dict[str, str]
    rolling_update: RollingUpdate
    min_ready_seconds: int = 0
    labels: Dict[str, str] = Field(default_factory=dict)
    machine_annotations: Dict[str, str] = Field(default_factory=dict)
    kubelet_version: str
    taints: List[Taint] = Field(default_factory=list)
    provider_spec: Dict[str, Any]

    def to_manifest(self, include_type_meta: bool = True) -> Dict[str, Any]:
        """
        Build the Kubernetes object. Type metadata is included for static
        manifests and for apply calls through kubectl.
        """
        metadata: Dict[str, Any] = {"name": self.name, "namespace": self.namespace}
        if self.annotations:
            metadata["annotations"] = dict(self.annotations)

        machine_meta: Dict[str, Any] = {"labels": dict(self.labels)}
        if self.machine_annotations:
            machine_meta["annotations"] = dict(self.machine_annotations)

        manifest: Dict[str, Any] = {
            "metadata": metadata,
            "spec": {
                "paused": False,
                "replicas": self.replicas,
                "selector": {"matchLabels": dict(self.selector)},
                "strategy": {
                    "type": "RollingUpdate",
                    "rollingUpdate": {
                        "maxSurge": self.rolling_update.max_surge,
                        "maxUnavailable": self.rolling_update.max_unavailable,
                    },
                },
                "minReadySeconds": self.min_ready_seconds,
                "template": {
                    "metadata": {
                        "labels": dict(self.labels),
                        "namespace": self.namespace,
                    },
                    "spec": {
                        "metadata": machine_meta,
                        "versions": {"kubelet": self.kubelet_version},
                        "providerSpec": {"value": self.provider_spec},
                        "taints": [t.model_dump() for t in self.taints],
                    },
                },
            },
        }
        if include_type_meta:
            return {
                "apiVersion": MACHINE_DEPLOYMENT_API_VERSION,
                "kind": MACHINE_DEPLOYMENT_KIND,
                **manifest,
            }
        return manifest
