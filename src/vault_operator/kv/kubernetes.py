"""Kubernetes Secret key store.

All keys are stored as entries of a single Secret. Anyone able to read
Secrets in the namespace can read the unseal keys, so this backend is
meant for development clusters only.
"""

import base64
import os
from typing import Any

from icecream import ic
from kubernetes import client
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from vault_operator.config import KVConfig
from vault_operator.exceptions import ConfigurationError, KVError, NotFoundError
from vault_operator.kv import Service, register
from vault_operator.models import ENV_OWNER_REFERENCE, OwnerReference


class KubernetesStorage(Service):
    """Key store backed by one Kubernetes Secret.

    Attributes:
        namespace: Namespace of the Secret.
        secret_name: Name of the Secret.

    """

    def __init__(self, namespace: str, secret_name: str, api: client.CoreV1Api | None = None) -> None:
        if not secret_name:
            raise ConfigurationError("The k8s key store requires a secret name")
        self.namespace = namespace
        self.secret_name = secret_name
        self._api = api if api is not None else client.CoreV1Api()

    def __repr__(self) -> str:
        return f"KubernetesStorage(namespace={self.namespace!r}, secret_name={self.secret_name!r})"

    def _read(self) -> client.V1Secret:
        return self._api.read_namespaced_secret(self.secret_name, self.namespace)

    def _owner_references(self) -> list[dict[str, Any]]:
        raw = os.environ.get(ENV_OWNER_REFERENCE)
        if not raw:
            return []
        return [OwnerReference.from_json(raw).to_dict()]

    def set(self, key: str, value: bytes) -> None:
        encoded = base64.b64encode(value).decode()
        try:
            secret = self._read()
        except ApiException as err:
            if err.status != 404:
                raise KVError(f"Error reading secret '{self.namespace}/{self.secret_name}': {err.reason}") from err
            secret = None
        except HTTPError as err:
            raise KVError(f"Error reading secret '{self.namespace}/{self.secret_name}': {err}") from err

        try:
            if secret is None:
                body = {
                    "apiVersion": "v1",
                    "kind": "Secret",
                    "metadata": {
                        "name": self.secret_name,
                        "namespace": self.namespace,
                        "ownerReferences": self._owner_references(),
                    },
                    "type": "Opaque",
                    "data": {key: encoded},
                }
                self._api.create_namespaced_secret(namespace=self.namespace, body=body)
            else:
                secret.data = dict(secret.data or {})
                secret.data[key] = encoded
                self._api.replace_namespaced_secret(name=self.secret_name, namespace=self.namespace, body=secret)
        except ApiException as err:
            raise KVError(
                f"Error writing key '{key}' to secret '{self.namespace}/{self.secret_name}': {err.reason}"
            ) from err
        except HTTPError as err:
            raise KVError(f"Error writing key '{key}' to secret '{self.namespace}/{self.secret_name}': {err}") from err

        ic(self, key)

    def get(self, key: str) -> bytes:
        try:
            secret = self._read()
        except ApiException as err:
            if err.status == 404:
                raise NotFoundError(f"Secret '{self.namespace}/{self.secret_name}' not found") from err
            raise KVError(f"Error reading secret '{self.namespace}/{self.secret_name}': {err.reason}") from err
        except HTTPError as err:
            raise KVError(f"Error reading secret '{self.namespace}/{self.secret_name}': {err}") from err

        data = secret.data or {}
        if key not in data:
            raise NotFoundError(f"Key '{key}' not found in secret '{self.namespace}/{self.secret_name}'")
        return base64.b64decode(data[key])

    def test(self, key: str) -> None:
        try:
            self._read()
        except ApiException as err:
            if err.status != 404:
                raise KVError(f"Error reading secret '{self.namespace}/{self.secret_name}': {err.reason}") from err
        except HTTPError as err:
            raise KVError(f"Error reading secret '{self.namespace}/{self.secret_name}': {err}") from err


@register("k8s")
def new(config: KVConfig) -> KubernetesStorage:
    return KubernetesStorage(namespace=config.k8s_namespace, secret_name=config.k8s_secret)
