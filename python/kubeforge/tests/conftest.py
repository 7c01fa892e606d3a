"""Shared fixtures: sample clusters, a test CA and an in-memory remote channel."""

import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from kubeforge.models.cluster import (
    ClusterSpec,
    ControlPlaneConfig,
    DynamicWorkerConfig,
    HostConfig,
    ProviderSpec,
    StaticWorkersConfig,
    Versions,
)
from kubeforge.models.defaults import normalize_cluster
from kubeforge.models.settings import RunSettings
from kubeforge.secrets.certificate import (
    KUBERNETES_CA_CERT_PATH,
    KUBERNETES_CA_KEY_PATH,
    CertificateAuthority,
    encode_certificate_pem,
    encode_private_key_pem,
)


class FakeChannel:
    """
    Records everything sent to one host. `fail_with` maps a host id to a list of
    exceptions raised by successive run/run_script calls; `fail_matching` raises
    for scripts on a host that contain a given substring.
    """

    def __init__(
        self,
        host: HostConfig,
        log: List[Tuple[int, str]],
        files: Dict[str, str],
        fail_with: Dict[int, List[BaseException]],
        fail_matching: List[Tuple[int, str, BaseException]],
    ) -> None:
        self.host = host
        self._log = log
        self._files = files
        self._fail_with = fail_with
        self._fail_matching = fail_matching

    def _maybe_fail(self) -> None:
        pending = self._fail_with.get(self.host.id)
        if pending:
            raise pending.pop(0)

    async def run(self, command: Any, *, env=None, sensitive=True, timeout=None) -> str:
        self._maybe_fail()
        self._log.append((self.host.id, str(command)))
        return ""

    async def run_script(self, script: str, *, sudo=True, env=None, timeout=None) -> str:
        self._maybe_fail()
        for host_id, pattern, exc in self._fail_matching:
            if host_id == self.host.id and pattern in script:
                raise exc
        self._log.append((self.host.id, script))
        if "--print-join-command" in script:
            return "kubeadm join 10.0.0.1:6443 --token abc.def --discovery-token-ca-cert-hash sha256:00\n"
        return ""

    async def upload(self, content: str, remote_path: str, *, mode: str = "0600") -> None:
        self._log.append((self.host.id, f"upload {remote_path} {mode}"))
        self._files[f"{self.host.id}:{remote_path}"] = content

    async def download(self, remote_path: str) -> str:
        self._log.append((self.host.id, f"download {remote_path}"))
        return self._files.get(remote_path, "")


class FakeFleet:
    """A channel factory that hands out FakeChannels sharing one log."""

    def __init__(self) -> None:
        self.log: List[Tuple[int, str]] = []
        self.files: Dict[str, str] = {}
        self.fail_with: Dict[int, List[BaseException]] = {}
        self.fail_matching: List[Tuple[int, str, BaseException]] = []

    def __call__(self, host: HostConfig) -> FakeChannel:
        return FakeChannel(host, self.log, self.files, self.fail_with, self.fail_matching)

    def commands_for(self, host_id: int) -> List[str]:
        return [cmd for hid, cmd in self.log if hid == host_id]


def build_cluster(
    control_plane: int = 3,
    workers: int = 2,
    pools: Optional[List[DynamicWorkerConfig]] = None,
    **overrides: Any,
) -> ClusterSpec:
    cp_hosts = [
        HostConfig(public_address=f"10.0.0.{i + 1}", ssh_agent_socket="/tmp/agent.sock")
        for i in range(control_plane)
    ]
    worker_hosts = [
        HostConfig(public_address=f"10.0.1.{i + 1}", ssh_agent_socket="/tmp/agent.sock")
        for i in range(workers)
    ]
    fields: Dict[str, Any] = {
        "name": "demo",
        "control_plane": ControlPlaneConfig(hosts=cp_hosts),
        "static_workers": StaticWorkersConfig(hosts=worker_hosts),
        "dynamic_workers": pools or [],
        "versions": Versions(kubernetes="v1.27.3"),
    }
    fields.update(overrides)
    return ClusterSpec(**fields)


def aws_pool(name: str = "pool-a", replicas: int = 2, **spec: Any) -> DynamicWorkerConfig:
    provider_spec: Dict[str, Any] = {
        "cloud_provider_spec": {"instanceType": "t3.medium", "region": "eu-west-1"},
        "operating_system": "ubuntu",
        "ssh_public_keys": ["ssh-ed25519 AAAA test"],
    }
    provider_spec.update(spec)
    return DynamicWorkerConfig(
        name=name, replicas=replicas, provider_spec=ProviderSpec(**provider_spec)
    )


def self_signed_ca(common_name: str = "kubernetes") -> CertificateAuthority:
    """A throwaway RSA root shaped like the one kubeadm creates."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(minutes=5))
        .not_valid_after(now + datetime.timedelta(days=3650))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=True,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(
            x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False
        )
        .sign(private_key=key, algorithm=hashes.SHA256())
    )
    return CertificateAuthority(key=key, certificate=cert)


def pki_files(ca: CertificateAuthority) -> Dict[str, bytes]:
    """The CA as it sits on a control-plane host, keyed by path."""
    return {
        KUBERNETES_CA_CERT_PATH: encode_certificate_pem(ca.certificate).encode("utf-8"),
        KUBERNETES_CA_KEY_PATH: encode_private_key_pem(ca.key).encode("utf-8"),
    }


@pytest.fixture
def raw_cluster() -> ClusterSpec:
    return build_cluster()


@pytest.fixture
def cluster(raw_cluster: ClusterSpec) -> ClusterSpec:
    return normalize_cluster(raw_cluster)


@pytest.fixture(scope="session")
def ca() -> CertificateAuthority:
    return self_signed_ca()


@pytest.fixture
def pki_bundle(ca: CertificateAuthority) -> Dict[str, bytes]:
    return pki_files(ca)


@pytest.fixture
def fleet() -> FakeFleet:
    return FakeFleet()


@pytest.fixture
def fast_settings() -> RunSettings:
    return RunSettings(retry_attempts=3, retry_delay=0.0, retry_max_delay=0.0)


@pytest.fixture
def make_cluster() -> Callable[..., ClusterSpec]:
    return build_cluster


@pytest.fixture
def make_pool() -> Callable[..., DynamicWorkerConfig]:
    return aws_pool
