"""vault-operator: keep Vault clusters running and unsealed on Kubernetes.

This package provides the reconciling operator that manages the objects
of a Vault custom resource, and the unseal worker that initializes and
unseals Vault instances using keys held in a pluggable key store.

Example usage:
    from vault_operator import Handler, ObjectStore, OperatorConfig, Vault, VaultEvent

    handler = Handler(ObjectStore(), OperatorConfig())
    handler.handle(VaultEvent(vault=Vault.from_object(obj)))
"""

__version__ = "0.1.0"

from vault_operator.cluster import ObjectStore
from vault_operator.config import KVConfig, OperatorConfig, UnsealConfig, VaultClientConfig
from vault_operator.exceptions import (
    ClusterConnectionError,
    ConfigurationError,
    InitializationError,
    KVError,
    NotFoundError,
    ReconcileError,
    TLSGenerationError,
    ValidationError,
    VaultAPIError,
    VaultOperatorError,
)
from vault_operator.models import Vault, VaultEvent
from vault_operator.reconciler import Handler
from vault_operator.unseal import Unsealer

__all__ = [
    # Version
    "__version__",
    # Classes
    "Handler",
    "ObjectStore",
    "Unsealer",
    "Vault",
    "VaultEvent",
    # Configuration
    "KVConfig",
    "OperatorConfig",
    "UnsealConfig",
    "VaultClientConfig",
    # Exceptions
    "VaultOperatorError",
    "ClusterConnectionError",
    "ConfigurationError",
    "InitializationError",
    "KVError",
    "NotFoundError",
    "ReconcileError",
    "TLSGenerationError",
    "ValidationError",
    "VaultAPIError",
]
