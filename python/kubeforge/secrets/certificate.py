"""
kubeforge/secrets/certificate.py

Cluster CA handling:
 - load_ca_keypair: parse the CA key/certificate out of a PKI bundle
 - new_signed_tls_cert: issue a serving certificate for an in-cluster Service
 - get_certificate_sans: normalize API endpoint names for kubeadm

Nothing here writes to disk; callers decide where the PEM text goes.
"""

from __future__ import annotations

import datetime
import secrets
from typing import Dict, List, Mapping, NamedTuple

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

KUBERNETES_PKI_DIR = "/etc/kubernetes/pki"
KUBERNETES_CA_CERT_PATH = f"{KUBERNETES_PKI_DIR}/ca.crt"
KUBERNETES_CA_KEY_PATH = f"{KUBERNETES_PKI_DIR}/ca.key"

TLS_CERT_NAME = "tls.crt"
TLS_KEY_NAME = "tls.key"
KUBERNETES_CA_CERT_NAME = "ca.crt"

RSA_KEY_SIZE = 2048
LEAF_VALIDITY = datetime.timedelta(days=365)

_PEM_CERT_MARKER = b"-----BEGIN CERTIFICATE-----"


class CertificateError(Exception):
    """Base class for CA loading and issuance failures."""


class CertificateNotFoundError(CertificateError):
    """A required entry is missing from the PKI bundle."""


class CertificateParseError(CertificateError):
    """PEM content could not be parsed."""


class EmptyCertificateError(CertificateError):
    """The CA certificate entry holds no certificates."""


class KeyTypeError(CertificateError):
    """The CA private key is not an RSA key."""


class CertificateAuthority(NamedTuple):
    """The cluster root: RSA signing key and the authoritative CA certificate."""

    key: rsa.RSAPrivateKey
    certificate: x509.Certificate


def _random_serial_number() -> int:
    # https://tools.ietf.org/html/rfc5280#section-4.1.2.2
    return secrets.randbits(159)


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def encode_certificate_pem(cert: x509.Certificate) -> str:
    return cert.public_bytes(serialization.Encoding.PEM).decode("utf-8")


def encode_private_key_pem(key: rsa.RSAPrivateKey) -> str:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")


def _as_bytes(raw: object) -> bytes:
    if isinstance(raw, str):
        return raw.encode("utf-8")
    if isinstance(raw, (bytes, bytearray)):
        return bytes(raw)
    raise CertificateParseError(f"Unsupported PEM content type {type(raw).__name__}")


def load_ca_keypair(pki: Mapping[str, bytes]) -> CertificateAuthority:
    """
    Parse the cluster CA out of a PKI bundle.

    Args:
        pki: Mapping of well-known file paths (KUBERNETES_CA_CERT_PATH,
            KUBERNETES_CA_KEY_PATH) to PEM content.

    Returns:
        CertificateAuthority with the RSA key and the first certificate found.

    Raises:
        CertificateNotFoundError: If either path is absent from the bundle.
        EmptyCertificateError: If the certificate entry contains no certificate.
        CertificateParseError: If the PEM content is malformed.
        KeyTypeError: If the key is not RSA.
    """
    for path in (KUBERNETES_CA_CERT_PATH, KUBERNETES_CA_KEY_PATH):
        if path not in pki:
            raise CertificateNotFoundError(f"{path!r} not found in PKI bundle")

    cert_pem = _as_bytes(pki[KUBERNETES_CA_CERT_PATH])
    key_pem = _as_bytes(pki[KUBERNETES_CA_KEY_PATH])

    if _PEM_CERT_MARKER not in cert_pem:
        raise EmptyCertificateError(
            f"{KUBERNETES_CA_CERT_PATH} does not contain at least one valid certificate"
        )
    try:
        certs = x509.load_pem_x509_certificates(cert_pem)
    except ValueError as exc:
        raise CertificateParseError(
            f"Failed to parse {KUBERNETES_CA_CERT_PATH}: {exc}"
        ) from exc
    if not certs:
        raise EmptyCertificateError(
            f"{KUBERNETES_CA_CERT_PATH} does not contain at least one valid certificate"
        )

    try:
        key = serialization.load_pem_private_key(key_pem, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise CertificateParseError(
            f"Failed to parse {KUBERNETES_CA_KEY_PATH}: {exc}"
        ) from exc

    if not isinstance(key, rsa.RSAPrivateKey):
        raise KeyTypeError(
            f"{KUBERNETES_CA_KEY_PATH} is a {type(key).__name__}, not an RSA private key"
        )

    return CertificateAuthority(key=key, certificate=certs[0])


def new_signed_tls_cert(
    name: str, namespace: str, domain: str, ca: CertificateAuthority
) -> Dict[str, str]:
    """
    Issue a server certificate for the Service `name` in `namespace`.

    The subject CN is `<name>.<namespace>.svc`; the SANs are that name and
    `<name>.<namespace>.svc.<domain>`. Server authentication is the only
    extended key usage.

    Returns:
        {"tls.crt": ..., "tls.key": ..., "ca.crt": ...} as PEM text, ready to be
        stored in a Secret.
    """
    service_name = ".".join([name, namespace, "svc"])
    service_fqdn = ".".join([service_name, domain])

    key = rsa.generate_private_key(public_exponent=65537, key_size=RSA_KEY_SIZE)
    now = _now()

    cert = (
        x509.CertificateBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, service_name)]))
        .issuer_name(ca.certificate.subject)
        .public_key(key.public_key())
        .serial_number(_random_serial_number())
        .not_valid_before(now - datetime.timedelta(minutes=5))
        .not_valid_after(now + LEAF_VALIDITY)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=True,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False
        )
        .add_extension(
            x509.SubjectAlternativeName(
                [x509.DNSName(service_fqdn), x509.DNSName(service_name)]
            ),
            critical=False,
        )
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(ca.key.public_key()),
            critical=False,
        )
        .sign(private_key=ca.key, algorithm=hashes.SHA256())
    )

    return {
        TLS_CERT_NAME: encode_certificate_pem(cert),
        TLS_KEY_NAME: encode_private_key_pem(key),
        KUBERNETES_CA_CERT_NAME: encode_certificate_pem(ca.certificate),
    }


def get_certificate_sans(host: str, alternative_names: List[str]) -> List[str]:
    """API server certificate SANs: the endpoint host plus extra names, lower-cased."""
    return [n.lower() for n in [host] + list(alternative_names)]


__all__ = [
    "KUBERNETES_PKI_DIR",
    "KUBERNETES_CA_CERT_PATH",
    "KUBERNETES_CA_KEY_PATH",
    "TLS_CERT_NAME",
    "TLS_KEY_NAME",
    "KUBERNETES_CA_CERT_NAME",
    "CertificateError",
    "CertificateNotFoundError",
    "CertificateParseError",
    "EmptyCertificateError",
    "KeyTypeError",
    "CertificateAuthority",
    "load_ca_keypair",
    "new_signed_tls_cert",
    "get_certificate_sans",
]
