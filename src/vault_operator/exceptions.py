"""Custom exceptions for vault-operator.

This module defines the exception hierarchy used throughout the operator
and the unseal worker to separate validation problems, transient
infrastructure failures and fatal process conditions.
"""


class VaultOperatorError(Exception):
    """Base exception for all vault-operator errors.

    All custom exceptions in this package inherit from this class,
    allowing callers to catch all vault-operator errors with a single
    except clause if desired.
    """

    pass


class ConfigurationError(VaultOperatorError):
    """Raised when the runtime configuration is unusable.

    This can occur when:
    - An unknown key store backend is selected
    - A required option for the selected backend is missing
    - A duration string cannot be parsed
    """

    pass


class ValidationError(VaultOperatorError):
    """Raised when a Vault descriptor asks for an unsupported setup.

    The current reconcile pass is aborted and nothing is created for the
    failing step. The next event for the descriptor retries it.
    """

    pass


class DescriptorError(ValidationError):
    """Raised when a Vault custom resource cannot be parsed.

    This can occur when:
    - The metadata name is missing
    - The size is not an integer
    - The storage section does not select exactly one backend
    """

    pass


class ClusterConnectionError(VaultOperatorError):
    """Raised when talking to the Kubernetes API fails.

    This can occur when:
    - The kubeconfig is invalid or missing
    - The cluster is unreachable
    - The API server rejects the request
    """

    pass


class AlreadyExistsError(VaultOperatorError):
    """Raised when creating an object that already exists.

    The reconciler treats this as success.
    """

    pass


class ObjectNotFoundError(VaultOperatorError):
    """Raised when a requested Kubernetes object does not exist."""

    pass


class ReconcileError(VaultOperatorError):
    """Raised when a reconcile step fails.

    Earlier steps are not rolled back; re-running the reconcile converges
    from any partial state.
    """

    pass


class TLSGenerationError(VaultOperatorError):
    """Raised when certificate material cannot be generated."""

    pass


class VaultAPIError(VaultOperatorError):
    """Raised when a call to the Vault control API fails.

    This covers connection errors, timeouts and unexpected HTTP status
    codes.
    """

    pass


class InitializationError(VaultOperatorError):
    """Raised when Vault initialization fails.

    This is fatal to the unseal worker process.
    """

    pass


class UnsealError(VaultOperatorError):
    """Raised when the stored key shares do not unseal Vault."""

    pass


class KVError(VaultOperatorError):
    """Raised when a key store backend fails.

    Callers treat it as transient; backends never retry internally.
    """

    pass


class NotFoundError(KVError):
    """Raised when a key was never written to the key store.

    Distinguished from KVError so callers can tell an empty store from
    an unreachable one.
    """

    pass
