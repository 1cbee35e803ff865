"""Shared test fixtures for vault-operator tests."""

import copy
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from vault_operator import kv
from vault_operator.config import OperatorConfig, UnsealConfig
from vault_operator.exceptions import (
    AlreadyExistsError,
    ClusterConnectionError,
    KVError,
    NotFoundError,
    ObjectNotFoundError,
)
from vault_operator.models import Vault
from vault_operator.vault import InitResponse, SealStatus


class FakeObjectStore:
    """In-memory stand-in for the Kubernetes object store."""

    def __init__(self, pods=None):
        self.objects = {}
        self.pods = list(pods or [])
        self.statuses = {}
        self.mutations = []
        self.failing_kind = None

    @staticmethod
    def _key(obj):
        return obj["kind"], obj["metadata"]["namespace"], obj["metadata"]["name"]

    def create(self, obj):
        key = self._key(obj)
        if key[0] == self.failing_kind:
            raise ClusterConnectionError("connection refused")
        if key in self.objects:
            raise AlreadyExistsError(f"{key} already exists")
        self.objects[key] = copy.deepcopy(obj)
        self.mutations.append(("create", key))

    def get(self, kind, namespace, name):
        try:
            return copy.deepcopy(self.objects[(kind, namespace, name)])
        except KeyError:
            raise ObjectNotFoundError(f"{kind} {namespace}/{name} not found") from None

    def update(self, obj):
        key = self._key(obj)
        if key not in self.objects:
            raise ObjectNotFoundError(f"{key} not found")
        self.objects[key] = copy.deepcopy(obj)
        self.mutations.append(("update", key))

    def update_vault_status(self, namespace, name, nodes):
        self.statuses[(namespace, name)] = list(nodes)
        self.mutations.append(("status", ("Vault", namespace, name)))

    def list_pod_names(self, namespace, label_selector):
        return list(self.pods)

    def created_kinds(self):
        return [key[0] for verb, key in self.mutations if verb == "create"]


class FakeKV(kv.Service):
    """In-memory key store recording every write."""

    def __init__(self, data=None, fail_test=False):
        self.data = dict(data or {})
        self.fail_test = fail_test
        self.writes = []

    def set(self, key, value):
        self.data[key] = bytes(value)
        self.writes.append(key)

    def get(self, key):
        try:
            return self.data[key]
        except KeyError:
            raise NotFoundError(f"key '{key}' not found") from None

    def test(self, key):
        if self.fail_test:
            raise KVError("backend unreachable")


class FakeVaultClient:
    """Scripted Vault control API with a sealed/initialized state."""

    def __init__(self, initialized=True, sealed=True, threshold=3, shares=5):
        self.initialized = initialized
        self.is_sealed = sealed
        self.threshold = threshold
        self.shares = shares
        self.progress = 0
        self.init_calls = 0
        self.submitted = []
        self.seal_status_error = None
        self.tokens = []
        self.revoked = []

    def init_status(self):
        return self.initialized

    def initialize(self, secret_shares, secret_threshold):
        self.init_calls += 1
        self.initialized = True
        self.shares = secret_shares
        self.threshold = secret_threshold
        return InitResponse(keys=[f"share-{i}" for i in range(secret_shares)], root_token="s.root")

    def seal_status(self):
        if self.seal_status_error is not None:
            raise self.seal_status_error
        return SealStatus(sealed=self.is_sealed, initialized=self.initialized, threshold=self.threshold)

    def unseal(self, key):
        self.submitted.append(key)
        self.progress += 1
        if self.progress >= self.threshold:
            self.is_sealed = False
            self.progress = 0
        return SealStatus(
            sealed=self.is_sealed,
            initialized=self.initialized,
            threshold=self.threshold,
            progress=self.progress,
        )

    def create_token(self, token, token_id):
        self.tokens.append((token, token_id))

    def revoke_self(self, token):
        self.revoked.append(token)


@pytest.fixture(autouse=True)
def quiet_console():
    """Silence console output during tests."""
    with patch("vault_operator.console.console") as mock:
        yield mock


@pytest.fixture
def fake_store():
    """Empty in-memory object store."""
    return FakeObjectStore()


@pytest.fixture
def fake_kv():
    """Empty in-memory key store."""
    return FakeKV()


@pytest.fixture
def fake_vault_client():
    """Initialized and sealed Vault."""
    return FakeVaultClient()


@pytest.fixture
def operator_config():
    """Operator configuration with a short certificate validity."""
    return OperatorConfig(tls_validity=timedelta(days=30))


@pytest.fixture
def unseal_config():
    """Unseal policy with three shares, all required."""
    return UnsealConfig(
        period=timedelta(seconds=30),
        attempts=4,
        auto_init=False,
        store_root_token=True,
        secret_shares=3,
        secret_threshold=3,
    )


@pytest.fixture
def vault_object():
    """A single-replica Vault resource with file storage."""
    return {
        "apiVersion": "vault.banzaicloud.com/v1alpha1",
        "kind": "Vault",
        "metadata": {"name": "vault", "namespace": "default", "uid": "1234-abcd"},
        "spec": {
            "size": 1,
            "image": "vault:0.10.1",
            "bankVaultsImage": "banzaicloud/bank-vaults:0.2.0",
            "config": {
                "storage": {"file": {"path": "/vault/file"}},
                "listener": {"tcp": {"address": "0.0.0.0:8200", "tls_cert_file": "/vault/tls/server.crt"}},
            },
            "externalConfig": {"policies": [{"name": "allow_secrets", "rules": 'path "secret/*" {}'}]},
        },
    }


@pytest.fixture
def etcd_vault_object(vault_object):
    """A three-replica Vault resource backed by an HA etcd cluster."""
    obj = copy.deepcopy(vault_object)
    obj["spec"]["size"] = 3
    obj["spec"]["config"]["storage"] = {
        "etcd": {"address": "https://etcd-cluster:2379", "ha_enabled": "true", "etcd_api": "v3"}
    }
    return obj


@pytest.fixture
def vault(vault_object):
    """Parsed single-replica descriptor."""
    return Vault.from_object(vault_object)


@pytest.fixture
def etcd_vault(etcd_vault_object):
    """Parsed etcd-backed descriptor."""
    return Vault.from_object(etcd_vault_object)


@pytest.fixture
def mock_core_v1_api():
    """Mock CoreV1Api instance."""
    return MagicMock()
