"""
kubeforge/utils/k8s.py

A small dynamic Kubernetes client driven by 'kubectl'. Objects are plain
manifest dicts; the caller picks the resource name (e.g.
"machinedeployments.cluster.k8s.io").

kubectl runs either locally (run_command) or on the leader host through a
RemoteChannel, which is how objects are applied during installation before
the operator has a kubeconfig.
"""

from __future__ import annotations

import base64
import json
import shlex
from typing import Any, Awaitable, Callable, Dict, List, Optional

from kubeforge.utils.async_command_runner import run_command
from kubeforge.utils.ssh import RemoteChannel

KubectlRunner = Callable[[List[str], Optional[str]], Awaitable[str]]

ADMIN_KUBECONFIG = "/etc/kubernetes/admin.conf"


class KubectlClient:
    """
    get / create / replace over kubectl.

    Args:
        runner: Executes kubectl argv (without the leading "kubectl") with
            optional stdin and returns stdout.
    """

    def __init__(self, runner: KubectlRunner) -> None:
        self._runner = runner

    @classmethod
    def local(cls, kubeconfig: Optional[str] = None) -> "KubectlClient":
        """A client running kubectl on this machine."""

        async def _run(args: List[str], input_data: Optional[str]) -> str:
            base = ["kubectl"]
            if kubeconfig:
                base += ["--kubeconfig", kubeconfig]
            return await run_command(
                base + args, retries=1, sensitive=False, input_data=input_data
            )

        return cls(_run)

    @classmethod
    def over_channel(
        cls, channel: RemoteChannel, kubeconfig: str = ADMIN_KUBECONFIG
    ) -> "KubectlClient":
        """A client running kubectl on a control-plane host."""

        async def _run(args: List[str], input_data: Optional[str]) -> str:
            script = shlex.join(["kubectl", "--kubeconfig", kubeconfig] + args)
            if input_data is not None:
                # manifest goes through a heredoc, never the command line
                script = f"{script} <<'KUBEFORGE_EOF'\n{input_data}\nKUBEFORGE_EOF"
            return await channel.run_script(script + "\n", sudo=True)

        return cls(_run)

    async def get(
        self, resource: str, name: str, namespace: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """Return the object, or None if kubectl reports NotFound."""
        args = ["get", resource, name, "-o", "json", "--ignore-not-found"]
        if namespace:
            args += ["-n", namespace]
        raw = await self._runner(args, None)
        if not raw.strip():
            return None
        obj: Dict[str, Any] = json.loads(raw)
        return obj

    async def create(self, manifest: Dict[str, Any]) -> None:
        await self._runner(["create", "-f", "-"], json.dumps(manifest))

    async def replace(self, manifest: Dict[str, Any]) -> None:
        await self._runner(["replace", "-f", "-"], json.dumps(manifest))


async def create_or_update(
    client: KubectlClient, resource: str, manifest: Dict[str, Any]
) -> None:
    """
    Create the object if absent, otherwise replace it wholesale, carrying the
    live resourceVersion so the replace is accepted.

    Raises:
        CommandError: If kubectl fails.
    """
    meta = manifest.get("metadata", {})
    name = meta.get("name")
    if not name:
        raise ValueError("Manifest has no metadata.name")

    existing = await client.get(resource, name, meta.get("namespace"))
    if existing is None:
        await client.create(manifest)
        return

    resource_version = existing.get("metadata", {}).get("resourceVersion")
    updated = dict(manifest)
    updated["metadata"] = dict(meta)
    if resource_version:
        updated["metadata"]["resourceVersion"] = resource_version
    await client.replace(updated)


def secret_manifest(name: str, namespace: str, data: Dict[str, str]) -> Dict[str, Any]:
    """An Opaque Secret with base64-encoded values."""
    b64_data = {
        k: base64.b64encode(v.encode("utf-8")).decode("utf-8") for k, v in data.items()
    }
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {
            "name": name,
            "namespace": namespace,
        },
        "type": "Opaque",
        "data": b64_data,
    }


async def put_k8s_secret_data(
    client: KubectlClient,
    secret_name: str,
    namespace: str,
    data: Dict[str, str],
) -> None:
    """
    Create or update a Kubernetes Secret with the given key-value data.

    Raises:
        CommandError: If kubectl fails.
    """
    await create_or_update(
        client, "secrets", secret_manifest(secret_name, namespace, data)
    )


__all__ = [
    "ADMIN_KUBECONFIG",
    "KubectlClient",
    "create_or_update",
    "secret_manifest",
    "put_k8s_secret_data",
]
