"""Runtime configuration for the operator and the unseal worker.

The CLI builds these objects exactly once at startup and hands them to
each component's constructor. They are frozen so nothing can change the
configuration of a running process.
"""

import re
from dataclasses import dataclass
from datetime import timedelta

from vault_operator.exceptions import ConfigurationError

# Go-style duration units accepted in descriptors and flags
_DURATION_UNITS = {
    "ms": 0.001,
    "s": 1,
    "m": 60,
    "h": 3600,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")

DEFAULT_VAULT_ADDRESS = "https://127.0.0.1:8200"
DEFAULT_CA_CERT = "/vault/tls/ca.crt"
DEFAULT_BANK_VAULTS_IMAGE = "banzaicloud/bank-vaults:latest"
DEFAULT_TLS_VALIDITY = "8760h"


def parse_duration(value: str) -> timedelta:
    """Parse a Go-style duration string such as ``30s`` or ``1h30m``.

    Args:
        value: The duration string.

    Returns:
        The parsed duration.

    Raises:
        ConfigurationError: If the string is empty or malformed.

    """
    text = value.strip() if value else ""
    if not text:
        raise ConfigurationError("Duration string cannot be empty")

    position = 0
    seconds = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()

    if position != len(text):
        raise ConfigurationError(f"Invalid duration: '{value}'")

    return timedelta(seconds=seconds)


@dataclass(frozen=True, slots=True)
class VaultClientConfig:
    """Connection settings for the Vault control API.

    Attributes:
        address: Base URL of the Vault server.
        ca_cert: CA bundle used to verify the server certificate.
        client_cert: Optional client certificate for mutual TLS.
        client_key: Optional client key for mutual TLS.
        timeout: Per-request timeout in seconds.

    """

    address: str = DEFAULT_VAULT_ADDRESS
    ca_cert: str | None = None
    client_cert: str | None = None
    client_key: str | None = None
    timeout: float = 10.0


@dataclass(frozen=True, slots=True)
class KVConfig:
    """Selection and settings of the key store backend.

    Attributes:
        mode: Registered backend name (``k8s`` or ``alibaba-kms-oss``).
        k8s_namespace: Namespace of the Secret holding the keys.
        k8s_secret: Name of the Secret holding the keys.
        oss_endpoint: Alibaba OSS endpoint.
        oss_access_key_id: Alibaba access key id.
        oss_access_key_secret: Alibaba access key secret.
        oss_bucket: Bucket storing the keys.
        oss_prefix: Object name prefix prepended to every key.
        kms_key_id: Optional KMS key used for server-side encryption.

    """

    mode: str = "k8s"
    k8s_namespace: str = "default"
    k8s_secret: str = ""
    oss_endpoint: str = ""
    oss_access_key_id: str = ""
    oss_access_key_secret: str = ""
    oss_bucket: str = ""
    oss_prefix: str = ""
    kms_key_id: str = ""


@dataclass(frozen=True, slots=True)
class UnsealConfig:
    """Policy of the unseal/init worker.

    Attributes:
        period: Time to wait between attempts.
        attempts: Number of attempts before the worker exits.
        auto_init: Initialize Vault when it is not initialized yet.
        store_root_token: Persist the root token in the key store.
        init_root_token: Optional root token id to create after init.
        secret_shares: Number of key shares requested at init.
        secret_threshold: Number of shares required to unseal.

    """

    period: timedelta = timedelta(seconds=30)
    attempts: int = 4
    auto_init: bool = False
    store_root_token: bool = True
    init_root_token: str = ""
    secret_shares: int = 5
    secret_threshold: int = 3

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ConfigurationError("attempts must be at least 1")
        if not 1 <= self.secret_threshold <= self.secret_shares:
            raise ConfigurationError(
                f"secret threshold {self.secret_threshold} must be between 1 and "
                f"the number of shares ({self.secret_shares})"
            )


@dataclass(frozen=True, slots=True)
class OperatorConfig:
    """Settings of the reconciling operator.

    Attributes:
        namespace: Namespace to watch; empty means all namespaces.
        bank_vaults_image: Default image for the sidecar and configurer.
        tls_validity: Validity of generated certificates.
        resync_seconds: Watch timeout after which the descriptors are listed again.

    """

    namespace: str = ""
    bank_vaults_image: str = DEFAULT_BANK_VAULTS_IMAGE
    tls_validity: timedelta = timedelta(hours=8760)
    resync_seconds: int = 300
