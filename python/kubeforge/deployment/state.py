"""
kubeforge/deployment/state.py

The per-run orchestration context. One State is built for each install,
upgrade or reset run and passed by reference to every phase operation. It is
never shared between runs.

During fan-out each host operation writes only its own slot in
`host_results`; the slots are allocated up front so concurrent writers never
add or remove keys.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from types import TracebackType
from typing import Callable, Dict, Optional, Type

from pydantic import BaseModel

from kubeforge.models.cluster import ClusterSpec, HostConfig
from kubeforge.models.settings import RunSettings
from kubeforge.secrets.certificate import CertificateAuthority, load_ca_keypair
from kubeforge.utils.k8s import KubectlClient
from kubeforge.utils.ssh import RemoteChannel, SSHChannel

ChannelFactory = Callable[[HostConfig], RemoteChannel]


class HostStatus(str, Enum):
    pending = "pending"
    succeeded = "succeeded"
    failed = "failed"
    skipped = "skipped"


class HostResult(BaseModel):
    """Outcome of the most recent phase operation on one host."""

    host_id: int
    phase: str = ""
    status: HostStatus = HostStatus.pending
    attempts: int = 0
    output: str = ""
    error: Optional[str] = None


class State:
    """
    Everything a run needs, explicitly constructed.

    Args:
        cluster: A normalized ClusterSpec.
        settings: Run settings; defaults are read from the environment.
        channel_factory: Builds a RemoteChannel for a host. Defaults to SSHChannel.
        kube_client: Dynamic API client for applying objects. When None, phases
            fall back to kubectl on the leader.
    """

    def __init__(
        self,
        cluster: ClusterSpec,
        *,
        settings: Optional[RunSettings] = None,
        channel_factory: Optional[ChannelFactory] = None,
        kube_client: Optional[KubectlClient] = None,
    ) -> None:
        self.cluster = cluster
        self.settings = settings if settings is not None else RunSettings()
        self.channel_factory: ChannelFactory = (
            channel_factory if channel_factory is not None else self._ssh_channel
        )
        self.kube_client = kube_client
        self.cancel_event = asyncio.Event()

        self.pki: Dict[str, bytes] = {}
        self.ca: Optional[CertificateAuthority] = None
        self.join_command: Optional[str] = None
        self.kubeconfig: Optional[str] = None
        self.host_results: Dict[int, HostResult] = {
            h.id: HostResult(host_id=h.id) for h in cluster.all_hosts()
        }

    def _ssh_channel(self, host: HostConfig) -> RemoteChannel:
        return SSHChannel(
            host,
            connect_timeout=self.settings.ssh_connect_timeout,
            command_timeout=self.settings.command_timeout,
        )

    def channel(self, host: HostConfig) -> RemoteChannel:
        return self.channel_factory(host)

    def load_ca(self) -> CertificateAuthority:
        """Parse the CA from the fetched PKI bundle, once per run."""
        if self.ca is None:
            self.ca = load_ca_keypair(self.pki)
        return self.ca

    def cancel(self) -> None:
        """Request cancellation: no new phase or host operation will start."""
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def teardown(self) -> None:
        """Drop run secrets. The State must not be reused afterwards."""
        self.pki.clear()
        self.ca = None
        self.join_command = None
        self.kubeconfig = None

    async def __aenter__(self) -> "State":
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        self.teardown()
