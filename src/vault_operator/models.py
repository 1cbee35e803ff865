"""Data models for vault-operator.

This module provides type-safe data structures for the Vault custom
resource and the values derived from it, replacing the loosely-typed
mappings returned by the Kubernetes API with proper Python data classes.
"""

import copy
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, NamedTuple
from urllib.parse import urlparse

from vault_operator.config import parse_duration
from vault_operator.exceptions import ConfigurationError, DescriptorError

API_GROUP = "vault.banzaicloud.com"
API_VERSION = "v1alpha1"
KIND = "Vault"
PLURAL = "vaults"

DEFAULT_VAULT_IMAGE = "vault:latest"
DEFAULT_OPERATOR_IMAGE = "vault-operator:latest"

# Carries the serialized owner reference into the unseal sidecar
ENV_OWNER_REFERENCE = "K8S_OWNER_REFERENCE"
# Alibaba access key pair; also the key names inside the credentials Secret
ENV_ALIBABA_ACCESS_KEY_ID = "ALIBABA_ACCESS_KEY_ID"
ENV_ALIBABA_ACCESS_KEY_SECRET = "ALIBABA_ACCESS_KEY_SECRET"

_ALIBABA_REQUIRED_KEYS = ("ossEndpoint", "ossBucket", "accessKeySecretName")

# Storage types Vault can run in HA mode with, when ha_enabled is set
_HA_STORAGE_TYPES = frozenset(
    {"dynamodb", "etcd", "gcs", "mysql", "postgresql", "raft", "spanner", "zookeeper"}
)
# Storage types that are always HA
_ALWAYS_HA_STORAGE_TYPES = frozenset({"consul"})


class StorageBackend(str, Enum):
    """Consensus storage backend selected by a descriptor.

    Inherits from str to allow direct use in string contexts.
    """

    NONE = "none"
    EXTERNAL_CONSENSUS_CLUSTER = "external-consensus-cluster"


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def canonical_json(value: Any) -> str:
    """Serialize a value as JSON with a stable key order.

    Args:
        value: Any JSON-compatible value.

    Returns:
        Compact JSON with sorted keys.

    """
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


class OwnerReference(NamedTuple):
    """Back-reference from a managed object to its Vault descriptor.

    Attributes:
        api_version: API version of the owner.
        kind: Kind of the owner.
        name: Name of the owner.
        uid: UID of the owner.
        controller: Whether the owner is the managing controller.

    """

    api_version: str
    kind: str
    name: str
    uid: str
    controller: bool = True

    def to_dict(self) -> dict[str, Any]:
        """Return the Kubernetes representation of the reference."""
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.name,
            "uid": self.uid,
            "controller": self.controller,
        }

    def to_json(self) -> str:
        """Return the reference serialized for the K8S_OWNER_REFERENCE variable."""
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, data: str) -> "OwnerReference":
        """Parse a reference serialized by :meth:`to_json`.

        Raises:
            DescriptorError: If the JSON is malformed or incomplete.

        """
        try:
            raw = json.loads(data)
            return cls(
                api_version=raw["apiVersion"],
                kind=raw["kind"],
                name=raw["name"],
                uid=raw["uid"],
                controller=bool(raw.get("controller", True)),
            )
        except (ValueError, KeyError, TypeError) as err:
            raise DescriptorError(f"Invalid owner reference: {err}") from err


@dataclass(frozen=True, slots=True)
class CredentialsConfig:
    """Credentials injected into every container of a Vault deployment.

    Attributes:
        env: Name of an environment variable set to ``path``.
        path: Mount path of the credentials file.
        secret_name: Secret holding the credentials file.

    """

    env: str = ""
    path: str = ""
    secret_name: str = ""

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> "CredentialsConfig":
        raw = raw or {}
        return cls(
            env=str(raw.get("env", "")),
            path=str(raw.get("path", "")),
            secret_name=str(raw.get("secretName", "")),
        )


@dataclass(frozen=True, slots=True)
class UnsealOptions:
    """Key store selection and unseal/init policy of a descriptor.

    Attributes:
        kubernetes: Settings of the Kubernetes Secret key store.
        alibaba: Settings of the Alibaba OSS key store, including the
            Secret holding its access key pair (``accessKeySecretName``).
        period: Time between unseal attempts, as a duration string.
        auto_init: Whether the sidecar initializes Vault.
        store_root_token: Whether the root token is persisted.
        secret_shares: Number of key shares created at init.
        secret_threshold: Number of shares needed to unseal.

    """

    kubernetes: dict[str, str] = field(default_factory=dict)
    alibaba: dict[str, str] = field(default_factory=dict)
    period: str = "30s"
    auto_init: bool = True
    store_root_token: bool = True
    secret_shares: int = 5
    secret_threshold: int = 3

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> "UnsealOptions":
        """Parse and check the ``unsealConfig`` of a descriptor.

        Raises:
            DescriptorError: If two key stores are selected, the Alibaba key
                store is incomplete, the period is not a duration or the
                threshold is not between 1 and the number of shares.

        """
        raw = raw or {}
        if raw.get("kubernetes") and raw.get("alibaba"):
            raise DescriptorError("unsealConfig may select only one key store")
        try:
            options = cls(
                kubernetes=dict(raw.get("kubernetes") or {}),
                alibaba=dict(raw.get("alibaba") or {}),
                period=str(raw.get("period", "30s")),
                auto_init=_truthy(raw.get("autoInit", True)),
                store_root_token=_truthy(raw.get("storeRootToken", True)),
                secret_shares=int(raw.get("secretShares", 5)),
                secret_threshold=int(raw.get("secretThreshold", 3)),
            )
        except (TypeError, ValueError) as err:
            raise DescriptorError(f"Invalid unsealConfig: {err}") from err

        try:
            parse_duration(options.period)
        except ConfigurationError as err:
            raise DescriptorError(f"Invalid unsealConfig.period: {err}") from err
        if not 1 <= options.secret_threshold <= options.secret_shares:
            raise DescriptorError(
                f"unsealConfig.secretThreshold {options.secret_threshold} must be between 1 and "
                f"secretShares ({options.secret_shares})"
            )
        if options.alibaba:
            missing = [key for key in _ALIBABA_REQUIRED_KEYS if not options.alibaba.get(key)]
            if missing:
                raise DescriptorError(f"unsealConfig.alibaba requires: {', '.join(missing)}")
        return options

    def to_args(self, vault: "Vault") -> list[str]:
        """Build the key store and policy flags for the sidecar and configurer.

        Args:
            vault: The descriptor the flags are built for.

        Returns:
            Command-line arguments understood by ``vault-operator unseal``.

        """
        if self.alibaba:
            args = [
                "--mode",
                "alibaba-kms-oss",
                "--oss-endpoint",
                self.alibaba.get("ossEndpoint", ""),
                "--oss-bucket",
                self.alibaba.get("ossBucket", ""),
                "--oss-prefix",
                self.alibaba.get("ossPrefix", ""),
            ]
            if self.alibaba.get("kmsKeyId"):
                args.extend(["--kms-key-id", self.alibaba["kmsKeyId"]])
        else:
            args = [
                "--mode",
                "k8s",
                "--k8s-secret-namespace",
                self.kubernetes.get("secretNamespace") or vault.namespace,
                "--k8s-secret-name",
                self.kubernetes.get("secretName") or f"{vault.name}-unseal-keys",
            ]
        return args

    def credentials_env(self) -> list[dict[str, Any]]:
        """Build the key store credential variables of the sidecar and configurer.

        The Alibaba access key pair is read from the Secret named by
        ``alibaba.accessKeySecretName``. The Kubernetes key store needs none.
        """
        if not self.alibaba:
            return []
        secret_name = self.alibaba["accessKeySecretName"]
        return [
            {"name": name, "valueFrom": {"secretKeyRef": {"name": secret_name, "key": name}}}
            for name in (ENV_ALIBABA_ACCESS_KEY_ID, ENV_ALIBABA_ACCESS_KEY_SECRET)
        ]

    def to_unseal_args(self, vault: "Vault") -> list[str]:
        """Build the full argument list of the unseal sidecar."""
        args = self.to_args(vault)
        args.extend(
            [
                "--unseal-period",
                self.period,
                "--secret-shares",
                str(self.secret_shares),
                "--secret-threshold",
                str(self.secret_threshold),
            ]
        )
        if self.auto_init:
            args.append("--init")
        if not self.store_root_token:
            args.append("--no-store-root-token")
        return args


@dataclass(frozen=True, slots=True)
class VaultSpec:
    """User intent of a Vault descriptor.

    Attributes:
        size: Desired replica count.
        image: Vault server image.
        operator_image: Image running the unseal sidecar.
        bank_vaults_image: Image running the configurer, empty for the operator default.
        config: Vault server configuration.
        external_config: Configuration applied by the configurer.
        unseal_config: Key store selection and unseal policy.
        credentials_config: Credentials injected into the containers.

    """

    size: int = 1
    image: str = DEFAULT_VAULT_IMAGE
    operator_image: str = DEFAULT_OPERATOR_IMAGE
    bank_vaults_image: str = ""
    config: dict[str, Any] = field(default_factory=dict)
    external_config: dict[str, Any] = field(default_factory=dict)
    unseal_config: UnsealOptions = field(default_factory=UnsealOptions)
    credentials_config: CredentialsConfig = field(default_factory=CredentialsConfig)

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> "VaultSpec":
        raw = raw or {}
        try:
            size = int(raw.get("size", 1))
        except (TypeError, ValueError) as err:
            raise DescriptorError(f"Invalid size: {raw.get('size')!r}") from err
        if size < 0:
            raise DescriptorError(f"Invalid size: {size}")

        config = raw.get("config") or {}
        external_config = raw.get("externalConfig") or {}
        if not isinstance(config, dict) or not isinstance(external_config, dict):
            raise DescriptorError("config and externalConfig must be mappings")

        storage = config.get("storage") or {}
        if not isinstance(storage, dict) or len(storage) > 1:
            raise DescriptorError("config.storage must select exactly one storage backend")

        spec = cls(
            size=size,
            image=str(raw.get("image") or DEFAULT_VAULT_IMAGE),
            operator_image=str(raw.get("operatorImage") or DEFAULT_OPERATOR_IMAGE),
            bank_vaults_image=str(raw.get("bankVaultsImage") or ""),
            config=copy.deepcopy(config),
            external_config=copy.deepcopy(external_config),
            unseal_config=UnsealOptions.from_dict(raw.get("unsealConfig")),
            credentials_config=CredentialsConfig.from_dict(raw.get("credentialsConfig")),
        )
        if spec.storage_type == "etcd" and not spec.storage.get("address"):
            raise DescriptorError("etcd storage requires an address")
        return spec

    @property
    def storage_type(self) -> str:
        """The selected storage type, or an empty string."""
        storage = self.config.get("storage") or {}
        return next(iter(storage), "")

    @property
    def storage(self) -> dict[str, Any]:
        """A copy of the selected storage backend settings."""
        storage_type = self.storage_type
        if not storage_type:
            return {}
        return dict(self.config["storage"][storage_type] or {})

    @property
    def storage_backend(self) -> StorageBackend:
        """Whether an external consensus cluster must be managed."""
        if self.storage_type == "etcd":
            return StorageBackend.EXTERNAL_CONSENSUS_CLUSTER
        return StorageBackend.NONE

    @property
    def has_ha_storage(self) -> bool:
        """Whether the storage backend supports more than one replica."""
        storage_type = self.storage_type
        if storage_type in _ALWAYS_HA_STORAGE_TYPES:
            return True
        if storage_type in _HA_STORAGE_TYPES:
            return _truthy(self.storage.get("ha_enabled", False))
        return False

    @property
    def etcd_name(self) -> str:
        """Name of the etcd cluster, taken from the storage address host."""
        address = str(self.storage.get("address", ""))
        hostname = urlparse(address).hostname
        if not hostname:
            raise DescriptorError(f"Cannot derive etcd cluster name from address '{address}'")
        return hostname

    def external_config_json(self) -> str:
        return canonical_json(self.external_config)


@dataclass(frozen=True, slots=True)
class Vault:
    """A Vault custom resource (the cluster descriptor).

    Attributes:
        name: Object name.
        namespace: Object namespace.
        uid: Object UID, used for owner references.
        spec: User intent.
        nodes: Last recorded pod names (status.nodes).
        api_version: apiVersion of the object.
        kind: kind of the object.

    """

    name: str
    namespace: str
    uid: str
    spec: VaultSpec
    nodes: tuple[str, ...] = ()
    api_version: str = f"{API_GROUP}/{API_VERSION}"
    kind: str = KIND

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> "Vault":
        """Build a descriptor from a Kubernetes API object.

        Args:
            obj: The custom object as returned by the API.

        Returns:
            The parsed descriptor.

        Raises:
            DescriptorError: If the object is not a valid Vault resource.

        """
        metadata = obj.get("metadata") or {}
        name = metadata.get("name")
        if not name:
            raise DescriptorError("Vault resource has no metadata.name")
        status = obj.get("status") or {}
        return cls(
            name=name,
            namespace=metadata.get("namespace") or "default",
            uid=metadata.get("uid") or "",
            spec=VaultSpec.from_dict(obj.get("spec")),
            nodes=tuple(status.get("nodes") or ()),
            api_version=obj.get("apiVersion") or f"{API_GROUP}/{API_VERSION}",
            kind=obj.get("kind") or KIND,
        )

    def labels(self) -> dict[str, str]:
        """Labels selecting the Vault pods of this descriptor."""
        return {"app": "vault", "vault_cr": self.name}

    def configurer_labels(self) -> dict[str, str]:
        """Labels selecting the configurer pods of this descriptor."""
        return {"app": "vault-configurator", "vault_cr": self.name}

    def label_selector(self) -> str:
        return ",".join(f"{key}={value}" for key, value in sorted(self.labels().items()))

    def owner_reference(self) -> OwnerReference:
        return OwnerReference(
            api_version=self.api_version,
            kind=self.kind,
            name=self.name,
            uid=self.uid,
        )


@dataclass(frozen=True, slots=True)
class VaultEvent:
    """A create/update/delete notification for a Vault descriptor.

    Attributes:
        vault: The descriptor the event is about.
        deleted: Whether the descriptor was deleted.

    """

    vault: Vault
    deleted: bool = False


# Closed set of events the reconciler handles
Event = VaultEvent


class ObjectRef(NamedTuple):
    """Identity of a managed object, used for logging and results."""

    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind} {self.namespace}/{self.name}"


@dataclass(slots=True)
class ReconcileResult:
    """Mutations performed by one reconcile pass.

    Attributes:
        created: Objects created in this pass.
        updated: Objects updated in this pass.

    """

    created: list[ObjectRef] = field(default_factory=list)
    updated: list[ObjectRef] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.created or self.updated)
