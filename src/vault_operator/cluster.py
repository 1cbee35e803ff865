"""Kubernetes cluster interaction utilities.

This module provides the ObjectStore class, the only place the operator
talks to the Kubernetes API. It exposes create/get/update/list primitives
over plain manifests and maps API failures onto the operator's exception
hierarchy.
"""

from collections.abc import Generator, Iterator
from contextlib import contextmanager
from typing import Any, NamedTuple

from icecream import ic
from kubernetes import client, config, watch
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError

from vault_operator import console
from vault_operator.exceptions import AlreadyExistsError, ClusterConnectionError, ObjectNotFoundError
from vault_operator.models import API_GROUP, API_VERSION, PLURAL, ObjectRef
from vault_operator.resources import ETCD_API_GROUP, ETCD_API_VERSION, ETCD_KIND


class _CustomKind(NamedTuple):
    group: str
    version: str
    plural: str


_CUSTOM_KINDS: dict[str, _CustomKind] = {
    ETCD_KIND: _CustomKind(ETCD_API_GROUP, ETCD_API_VERSION, "etcdclusters"),
    "Vault": _CustomKind(API_GROUP, API_VERSION, PLURAL),
}
_CORE_KINDS: dict[str, str] = {
    "Secret": "secret",
    "Service": "service",
    "ConfigMap": "config_map",
}
_APPS_KINDS: dict[str, str] = {
    "Deployment": "deployment",
}


def load_kube_config(context: str | None = None) -> None:
    """Load in-cluster configuration, falling back to the kubeconfig.

    Args:
        context: Optional kubeconfig context to use outside a cluster.

    Raises:
        ClusterConnectionError: If neither configuration can be loaded.

    """
    try:
        config.load_incluster_config()
        console.info("Using in-cluster Kubernetes configuration")
        return
    except ConfigException:
        pass

    try:
        config.load_kube_config(context=context)
    except ConfigException as e:
        raise ClusterConnectionError(f"Invalid or missing kubeconfig: {e}") from e
    console.info("Using local Kubernetes configuration")


def object_ref(obj: dict[str, Any]) -> ObjectRef:
    """Return the identity of a manifest."""
    metadata = obj["metadata"]
    return ObjectRef(kind=obj["kind"], namespace=metadata["namespace"], name=metadata["name"])


@contextmanager
def _api_errors(verb: str, ref: ObjectRef | str) -> Generator[None, None, None]:
    try:
        yield
    except ApiException as e:
        if e.status == 409:
            raise AlreadyExistsError(f"{ref} already exists") from e
        if e.status == 404:
            raise ObjectNotFoundError(f"{ref} not found") from e
        raise ClusterConnectionError(f"Failed to {verb} {ref}: {e.status} {e.reason}") from e
    except HTTPError as e:
        reason = getattr(e, "reason", e)
        raise ClusterConnectionError(f"Failed to connect to the Kubernetes cluster: {reason}") from e


class ObjectStore:
    """Create/read/update/list access to the objects the operator manages.

    Attributes:
        core: CoreV1Api client.
        apps: AppsV1Api client.
        custom: CustomObjectsApi client.

    """

    def __init__(self, api_client: client.ApiClient | None = None) -> None:
        self._api_client = api_client if api_client is not None else client.ApiClient()
        self.core = client.CoreV1Api(self._api_client)
        self.apps = client.AppsV1Api(self._api_client)
        self.custom = client.CustomObjectsApi(self._api_client)

    def __repr__(self) -> str:
        return f"ObjectStore(host={self._api_client.configuration.host!r})"

    def _to_dict(self, obj: Any) -> dict[str, Any]:
        if isinstance(obj, dict):
            return obj
        return self._api_client.sanitize_for_serialization(obj)

    def _typed_api(self, kind: str) -> tuple[Any, str]:
        if kind in _CORE_KINDS:
            return self.core, _CORE_KINDS[kind]
        if kind in _APPS_KINDS:
            return self.apps, _APPS_KINDS[kind]
        raise ValueError(f"Unsupported kind: {kind}")

    def create(self, obj: dict[str, Any]) -> None:
        """Create an object.

        Raises:
            AlreadyExistsError: If the object already exists.
            ClusterConnectionError: If the API call fails.

        """
        ref = object_ref(obj)
        ic(ref)
        with _api_errors("create", ref):
            if ref.kind in _CUSTOM_KINDS:
                custom = _CUSTOM_KINDS[ref.kind]
                self.custom.create_namespaced_custom_object(
                    custom.group, custom.version, ref.namespace, custom.plural, obj
                )
                return
            api, suffix = self._typed_api(ref.kind)
            getattr(api, f"create_namespaced_{suffix}")(namespace=ref.namespace, body=obj)

    def get(self, kind: str, namespace: str, name: str) -> dict[str, Any]:
        """Read an object.

        Returns:
            The live object as a manifest.

        Raises:
            ObjectNotFoundError: If the object does not exist.
            ClusterConnectionError: If the API call fails.

        """
        ref = ObjectRef(kind=kind, namespace=namespace, name=name)
        with _api_errors("get", ref):
            if kind in _CUSTOM_KINDS:
                custom = _CUSTOM_KINDS[kind]
                return self._to_dict(
                    self.custom.get_namespaced_custom_object(
                        custom.group, custom.version, namespace, custom.plural, name
                    )
                )
            api, suffix = self._typed_api(kind)
            return self._to_dict(getattr(api, f"read_namespaced_{suffix}")(name=name, namespace=namespace))

    def update(self, obj: dict[str, Any]) -> None:
        """Replace an object with ``obj``.

        Raises:
            ObjectNotFoundError: If the object does not exist.
            ClusterConnectionError: If the API call fails or conflicts.

        """
        ref = object_ref(obj)
        ic(ref)
        with _api_errors("update", ref):
            if ref.kind in _CUSTOM_KINDS:
                custom = _CUSTOM_KINDS[ref.kind]
                self.custom.replace_namespaced_custom_object(
                    custom.group, custom.version, ref.namespace, custom.plural, ref.name, obj
                )
                return
            api, suffix = self._typed_api(ref.kind)
            getattr(api, f"replace_namespaced_{suffix}")(name=ref.name, namespace=ref.namespace, body=obj)

    def update_vault_status(self, namespace: str, name: str, nodes: list[str]) -> None:
        """Record the observed pod names on a Vault descriptor.

        The status subresource is patched when the CRD declares one. A CRD
        without it answers 404 there, so the status is then patched onto the
        object itself.

        Raises:
            ObjectNotFoundError: If the descriptor no longer exists.
            ClusterConnectionError: If the API call fails.

        """
        custom = _CUSTOM_KINDS["Vault"]
        ref = ObjectRef(kind="Vault", namespace=namespace, name=name)
        body = {"status": {"nodes": nodes}}
        with _api_errors("update status of", ref):
            try:
                self.custom.patch_namespaced_custom_object_status(
                    custom.group, custom.version, namespace, custom.plural, name, body
                )
                return
            except ApiException as e:
                if e.status != 404:
                    raise
            ic(ref)
            self.custom.patch_namespaced_custom_object(
                custom.group, custom.version, namespace, custom.plural, name, body
            )

    def list_pod_names(self, namespace: str, label_selector: str) -> list[str]:
        """Return the names of the pods matching ``label_selector``.

        Raises:
            ClusterConnectionError: If the API call fails.

        """
        with _api_errors("list pods in", namespace):
            pods = self.core.list_namespaced_pod(namespace, label_selector=label_selector).items
        names = [pod.metadata.name for pod in pods]
        ic(names)
        return names

    def watch_vaults(self, namespace: str, timeout_seconds: int) -> Iterator[tuple[str, dict[str, Any]]]:
        """Stream Vault descriptor events until ``timeout_seconds`` elapse.

        Existing descriptors are reported as ``ADDED`` first.

        Args:
            namespace: Namespace to watch; empty watches all namespaces.
            timeout_seconds: Server-side watch timeout.

        Yields:
            ``(event type, object)`` pairs.

        Raises:
            ClusterConnectionError: If the watch cannot be established.

        """
        custom = _CUSTOM_KINDS["Vault"]
        if namespace:
            func = self.custom.list_namespaced_custom_object
            args: tuple[str, ...] = (custom.group, custom.version, namespace, custom.plural)
        else:
            func = self.custom.list_cluster_custom_object
            args = (custom.group, custom.version, custom.plural)

        stream = watch.Watch()
        with _api_errors("watch", f"Vault resources in '{namespace or '*'}'"):
            for event in stream.stream(func, *args, timeout_seconds=timeout_seconds):
                yield event["type"], self._to_dict(event["object"])
