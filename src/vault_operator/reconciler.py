"""Resource reconciliation for Vault descriptors.

The Handler converges the objects managed for a Vault descriptor on every
create/update event. Each step is idempotent: objects are created when
absent ("already exists" is success) and patched only when they differ
from what the descriptor asks for. A failing step aborts the pass without
rolling back earlier steps; the next event resumes from wherever the
cluster is.
"""

from collections.abc import Callable
from functools import partial
from typing import Any, Protocol

from icecream import ic

from vault_operator import console, resources
from vault_operator.cluster import object_ref
from vault_operator.config import OperatorConfig
from vault_operator.exceptions import (
    AlreadyExistsError,
    ObjectNotFoundError,
    ReconcileError,
    ValidationError,
    VaultOperatorError,
)
from vault_operator.models import Event, ObjectRef, ReconcileResult, StorageBackend, Vault, VaultEvent


class Store(Protocol):
    """Object store primitives the reconciler relies on."""

    def create(self, obj: dict[str, Any]) -> None: ...

    def get(self, kind: str, namespace: str, name: str) -> dict[str, Any]: ...

    def update(self, obj: dict[str, Any]) -> None: ...

    def update_vault_status(self, namespace: str, name: str, nodes: list[str]) -> None: ...

    def list_pod_names(self, namespace: str, label_selector: str) -> list[str]: ...


class Handler:
    """Reconciles the managed resource set of Vault descriptors.

    Attributes:
        store: Access to the Kubernetes objects.
        config: Operator settings.

    """

    def __init__(self, store: Store, config: OperatorConfig) -> None:
        self.store = store
        self.config = config

    def __repr__(self) -> str:
        return f"Handler(store={self.store!r})"

    def handle(self, event: Event) -> ReconcileResult:
        """Reconcile the descriptor an event is about.

        Args:
            event: The descriptor event.

        Returns:
            The objects created or updated by this pass.

        Raises:
            ValidationError: If the descriptor asks for an unsupported setup.
            ReconcileError: If a step fails.
            TypeError: If the event is of an unknown kind.

        """
        match event:
            case VaultEvent(deleted=True):
                # Owner references let the garbage collector remove the managed objects
                return ReconcileResult()
            case VaultEvent(vault=vault):
                return self.reconcile(vault)
            case _:
                raise TypeError(f"Unsupported event: {event!r}")

    def reconcile(self, vault: Vault) -> ReconcileResult:
        """Run every reconcile step for ``vault`` in order.

        Args:
            vault: The descriptor to converge.

        Returns:
            The objects created or updated by this pass.

        Raises:
            ValidationError: If the descriptor fails validation; nothing is created.
            ReconcileError: If a step fails; earlier steps are kept.

        """
        target = f"{vault.namespace}/{vault.name}"
        console.action(f"Reconciling Vault {console.highlight(target)}")
        resources.validate(vault)

        result = ReconcileResult()
        validity = self.config.tls_validity
        steps: list[tuple[str, Callable[[], None]]] = []

        if vault.spec.storage_backend is StorageBackend.EXTERNAL_CONSENSUS_CLUSTER:
            etcd_name = vault.spec.etcd_name
            steps += [
                (
                    "create etcd TLS secret",
                    partial(
                        self._create_secret,
                        ObjectRef("Secret", vault.namespace, resources.tls_secret_name(etcd_name)),
                        partial(resources.secret_for_etcd, vault, validity),
                        result,
                    ),
                ),
                ("create etcd cluster", partial(self._create, resources.etcd_for_vault(vault), result)),
            ]

        steps += [
            (
                "create vault TLS secret",
                partial(
                    self._create_secret,
                    ObjectRef("Secret", vault.namespace, resources.tls_secret_name(vault.name)),
                    partial(resources.secret_for_vault, vault, validity),
                    result,
                ),
            ),
            ("create vault deployment", partial(self._create_deployment, vault, result)),
            ("update vault deployment size", partial(self._ensure_size, vault, result)),
            ("update vault status", partial(self._ensure_status, vault, result)),
            ("create vault service", partial(self._create, resources.service_for_vault(vault), result)),
            (
                "create configurer deployment",
                partial(self._create, resources.deployment_for_configurer(vault, self.config), result),
            ),
            ("create configurer configmap", partial(self._create, resources.configmap_for_configurer(vault), result)),
            ("update configurer configmap", partial(self._ensure_configmap, vault, result)),
        ]

        for description, step in steps:
            ic(description)
            try:
                step()
            except ValidationError:
                raise
            except VaultOperatorError as err:
                raise ReconcileError(f"Vault {target}: failed to {description}: {err}") from err

        if result.changed:
            console.success(
                f"Vault {console.highlight(target)}: {len(result.created)} created, {len(result.updated)} updated"
            )
        else:
            console.info(f"Vault {console.highlight(target)} is up to date")
        return result

    def _create(self, obj: dict[str, Any], result: ReconcileResult) -> None:
        ref = object_ref(obj)
        try:
            self.store.create(obj)
        except AlreadyExistsError:
            ic(f"{ref} already exists")
            return
        console.step(f"Created {console.highlight(str(ref))}")
        result.created.append(ref)

    def _create_secret(
        self,
        ref: ObjectRef,
        build: Callable[[], dict[str, Any]],
        result: ReconcileResult,
    ) -> None:
        # Certificates are generated only for a missing secret, never rotated here
        try:
            self.store.get(ref.kind, ref.namespace, ref.name)
            return
        except ObjectNotFoundError:
            pass
        self._create(build(), result)

    def _create_deployment(self, vault: Vault, result: ReconcileResult) -> None:
        self._create(resources.deployment_for_vault(vault, self.config), result)

    def _ensure_size(self, vault: Vault, result: ReconcileResult) -> None:
        deployment = self.store.get("Deployment", vault.namespace, vault.name)
        spec = deployment.setdefault("spec", {})
        if spec.get("replicas") != vault.spec.size:
            console.step(f"Scaling {vault.namespace}/{vault.name} from {spec.get('replicas')} to {vault.spec.size}")
            spec["replicas"] = vault.spec.size
            self.store.update(deployment)
            result.updated.append(ObjectRef("Deployment", vault.namespace, vault.name))

    def _ensure_status(self, vault: Vault, result: ReconcileResult) -> None:
        nodes = self.store.list_pod_names(vault.namespace, vault.label_selector())
        if nodes != list(vault.nodes):
            self.store.update_vault_status(vault.namespace, vault.name, nodes)
            console.step(f"Recorded {len(nodes)} node(s) on Vault {vault.namespace}/{vault.name}")
            result.updated.append(ObjectRef(vault.kind, vault.namespace, vault.name))

    def _ensure_configmap(self, vault: Vault, result: ReconcileResult) -> None:
        name = resources.configurer_name(vault)
        configmap = self.store.get("ConfigMap", vault.namespace, name)
        external_config = vault.spec.external_config_json()
        data = configmap.get("data") or {}
        if data.get(resources.DEFAULT_CONFIG_FILE) != external_config:
            data[resources.DEFAULT_CONFIG_FILE] = external_config
            configmap["data"] = data
            self.store.update(configmap)
            console.step(f"Updated external configuration of {vault.namespace}/{vault.name}")
            result.updated.append(ObjectRef("ConfigMap", vault.namespace, name))
