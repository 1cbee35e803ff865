"""Key store abstraction.

Unseal key shares and the root token are persisted through a
:class:`Service`. Backends register themselves by name and are selected
from the :class:`~vault_operator.config.KVConfig` at startup.

Example usage:
    from vault_operator import kv

    store = kv.new(KVConfig(mode="k8s", k8s_namespace="vault", k8s_secret="vault-unseal-keys"))
    store.set(kv.unseal_key_name(0), share)
"""

from abc import ABC, abstractmethod
from collections.abc import Callable

from vault_operator.config import KVConfig
from vault_operator.exceptions import ConfigurationError, KVError, NotFoundError

ROOT_TOKEN_KEY = "vault-root"
_UNSEAL_KEY_PREFIX = "vault-unseal-"

_BACKENDS: dict[str, Callable[[KVConfig], "Service"]] = {}


def unseal_key_name(index: int) -> str:
    """Return the logical key name of the unseal share at ``index``."""
    return f"{_UNSEAL_KEY_PREFIX}{index}"


def object_name(prefix: str, key: str) -> str:
    """Return the physical object name of ``key`` under ``prefix``."""
    return f"{prefix}{key}"


class Service(ABC):
    """Uniform get/set/test contract over durable key stores.

    Writes must be visible to a subsequent ``get`` from any process.
    Implementations never retry; retry policy belongs to the caller.
    """

    @abstractmethod
    def set(self, key: str, value: bytes) -> None:
        """Store ``value`` under ``key``.

        Raises:
            KVError: If the backend fails.

        """

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Return the value stored under ``key``.

        Raises:
            NotFoundError: If the key was never written.
            KVError: If the backend fails.

        """

    @abstractmethod
    def test(self, key: str) -> None:
        """Check that the backend is reachable, whether or not ``key`` exists.

        Raises:
            KVError: If the backend is unreachable.

        """


def register(name: str) -> Callable[[Callable[[KVConfig], Service]], Callable[[KVConfig], Service]]:
    """Register a backend factory under ``name``.

    Args:
        name: The backend name selected with ``--mode``.

    Returns:
        A decorator registering the factory unchanged.

    """

    def decorator(factory: Callable[[KVConfig], Service]) -> Callable[[KVConfig], Service]:
        _BACKENDS[name] = factory
        return factory

    return decorator


def backends() -> list[str]:
    """Return the registered backend names."""
    return sorted(_BACKENDS)


def new(config: KVConfig) -> Service:
    """Create the key store selected by ``config.mode``.

    Args:
        config: Key store configuration.

    Returns:
        The backend instance.

    Raises:
        ConfigurationError: If the mode is unknown or its settings are incomplete.

    """
    try:
        factory = _BACKENDS[config.mode]
    except KeyError:
        raise ConfigurationError(
            f"Unknown key store '{config.mode}', expected one of: {', '.join(backends())}"
        ) from None
    return factory(config)


# Backends register themselves on import
from vault_operator.kv import alibabaoss, kubernetes  # noqa: E402,F401

__all__ = [
    "ROOT_TOKEN_KEY",
    "KVError",
    "NotFoundError",
    "Service",
    "backends",
    "new",
    "object_name",
    "register",
    "unseal_key_name",
]
