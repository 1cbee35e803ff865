"""TLS material generation.

This module generates a self-signed CA together with server, client and
peer certificates signed by it. The Vault server and the etcd cluster
use these bundles for their mutually authenticated transport.
"""

import ipaddress
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from vault_operator.exceptions import TLSGenerationError

_CA_COMMON_NAME = "vault-operator-ca"
_ORGANIZATION = "vault-operator"


@dataclass(frozen=True, slots=True)
class CertificateBundle:
    """PEM encoded CA and leaf certificates.

    Attributes:
        ca_cert: CA certificate.
        ca_key: CA private key.
        server_cert: Server certificate (serverAuth).
        server_key: Server private key.
        client_cert: Client certificate (clientAuth).
        client_key: Client private key.
        peer_cert: Peer certificate (serverAuth and clientAuth).
        peer_key: Peer private key.

    """

    ca_cert: str
    ca_key: str
    server_cert: str
    server_key: str
    client_cert: str
    client_key: str
    peer_cert: str
    peer_key: str

    def __repr__(self) -> str:
        """Return a representation without key material."""
        return "CertificateBundle(<redacted>)"


def _subject_alternative_names(hosts: Iterable[str]) -> list[x509.GeneralName]:
    names: list[x509.GeneralName] = []
    seen: set[str] = set()
    for host in hosts:
        if host in seen:
            continue
        seen.add(host)
        try:
            names.append(x509.IPAddress(ipaddress.ip_address(host)))
        except ValueError:
            try:
                names.append(x509.DNSName(host))
            except ValueError as err:
                raise TLSGenerationError(f"Invalid host name '{host}': {err}") from err
    return names


def _new_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


def _key_pem(key: ec.EllipticCurvePrivateKey) -> str:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()


def _cert_pem(cert: x509.Certificate) -> str:
    return cert.public_bytes(serialization.Encoding.PEM).decode()


def _name(common_name: str) -> x509.Name:
    return x509.Name(
        [
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, _ORGANIZATION),
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        ]
    )


def _build_ca(not_before: datetime, not_after: datetime) -> tuple[x509.Certificate, ec.EllipticCurvePrivateKey]:
    key = _new_key()
    name = _name(_CA_COMMON_NAME)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .sign(key, hashes.SHA256())
    )
    return cert, key


def _build_leaf(
    common_name: str,
    usages: list[x509.ObjectIdentifier],
    sans: list[x509.GeneralName],
    ca_cert: x509.Certificate,
    ca_key: ec.EllipticCurvePrivateKey,
    not_before: datetime,
    not_after: datetime,
) -> tuple[x509.Certificate, ec.EllipticCurvePrivateKey]:
    key = _new_key()
    cert = (
        x509.CertificateBuilder()
        .subject_name(_name(common_name))
        .issuer_name(ca_cert.subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
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
        .add_extension(x509.ExtendedKeyUsage(usages), critical=False)
        .add_extension(x509.SubjectAlternativeName(sans), critical=False)
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()),
            critical=False,
        )
        .sign(ca_key, hashes.SHA256())
    )
    return cert, key


def generate(hosts: Iterable[str], validity: timedelta) -> CertificateBundle:
    """Generate a CA and server, client and peer certificates.

    Every leaf carries exactly the requested subject alternative names.
    IP literals become IP address entries, everything else (including
    wildcards) becomes a DNS entry.

    Args:
        hosts: Host names and IP addresses to certify.
        validity: Validity window of the CA and every leaf.

    Returns:
        The generated CertificateBundle.

    Raises:
        TLSGenerationError: If the host set is empty, the validity is not
            positive, or a host name is invalid.

    """
    hosts = list(hosts)
    if not hosts:
        raise TLSGenerationError("At least one host is required")
    if validity <= timedelta(0):
        raise TLSGenerationError(f"Validity must be positive, got {validity}")

    sans = _subject_alternative_names(hosts)

    not_before = datetime.now(timezone.utc).replace(microsecond=0)
    not_after = not_before + validity

    ca_cert, ca_key = _build_ca(not_before, not_after)
    server_cert, server_key = _build_leaf(
        "server", [ExtendedKeyUsageOID.SERVER_AUTH], sans, ca_cert, ca_key, not_before, not_after
    )
    client_cert, client_key = _build_leaf(
        "client", [ExtendedKeyUsageOID.CLIENT_AUTH], sans, ca_cert, ca_key, not_before, not_after
    )
    peer_cert, peer_key = _build_leaf(
        "peer",
        [ExtendedKeyUsageOID.SERVER_AUTH, ExtendedKeyUsageOID.CLIENT_AUTH],
        sans,
        ca_cert,
        ca_key,
        not_before,
        not_after,
    )

    return CertificateBundle(
        ca_cert=_cert_pem(ca_cert),
        ca_key=_key_pem(ca_key),
        server_cert=_cert_pem(server_cert),
        server_key=_key_pem(server_key),
        client_cert=_cert_pem(client_cert),
        client_key=_key_pem(client_key),
        peer_cert=_cert_pem(peer_cert),
        peer_key=_key_pem(peer_key),
    )
