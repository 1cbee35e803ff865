"""Tests for the kv package."""

import base64
import json
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client.rest import ApiException
from oss2.exceptions import NoSuchKey, ServerError
from urllib3.exceptions import MaxRetryError

from vault_operator import kv
from vault_operator.config import KVConfig
from vault_operator.exceptions import ConfigurationError, KVError, NotFoundError
from vault_operator.kv.alibabaoss import OSSStorage
from vault_operator.kv.kubernetes import KubernetesStorage


class FakeSecretsApi:
    """CoreV1Api stand-in keeping secrets in memory."""

    def __init__(self):
        self.secrets = {}
        self.created = []

    def read_namespaced_secret(self, name, namespace):
        try:
            return self.secrets[(namespace, name)]
        except KeyError:
            raise ApiException(status=404, reason="Not Found") from None

    def create_namespaced_secret(self, namespace, body):
        self.created.append(body)
        name = body["metadata"]["name"]
        self.secrets[(namespace, name)] = SimpleNamespace(data=dict(body["data"]))

    def replace_namespaced_secret(self, name, namespace, body):
        self.secrets[(namespace, name)] = body


class TestRegistry:
    """Tests for backend registration and selection."""

    def test_builtin_backends(self):
        """Test both built-in backends are registered."""
        assert kv.backends() == ["alibaba-kms-oss", "k8s"]

    def test_unknown_mode(self):
        """Test an unknown mode is a configuration error."""
        with pytest.raises(ConfigurationError) as exc_info:
            kv.new(KVConfig(mode="vault-in-a-box"))

        assert "k8s" in str(exc_info.value)

    def test_new_kubernetes(self):
        """Test the k8s mode builds a KubernetesStorage."""
        with patch("vault_operator.kv.kubernetes.client.CoreV1Api"):
            store = kv.new(KVConfig(mode="k8s", k8s_namespace="vault", k8s_secret="keys"))

        assert isinstance(store, KubernetesStorage)
        assert store.namespace == "vault"
        assert store.secret_name == "keys"

    def test_new_kubernetes_requires_secret_name(self):
        """Test the k8s mode needs a secret name."""
        with pytest.raises(ConfigurationError):
            kv.new(KVConfig(mode="k8s", k8s_secret=""))

    def test_key_names(self):
        """Test the logical key names."""
        assert kv.unseal_key_name(0) == "vault-unseal-0"
        assert kv.unseal_key_name(4) == "vault-unseal-4"
        assert kv.ROOT_TOKEN_KEY == "vault-root"
        assert kv.object_name("prod/", "vault-root") == "prod/vault-root"


class TestKubernetesStorage:
    """Tests for the Kubernetes Secret key store."""

    def test_round_trip_across_instances(self):
        """Test a value written by one instance is read by another."""
        api = FakeSecretsApi()
        KubernetesStorage("vault", "keys", api=api).set("vault-unseal-0", b"share")

        assert KubernetesStorage("vault", "keys", api=api).get("vault-unseal-0") == b"share"

    def test_set_creates_secret_with_owner(self, monkeypatch):
        """Test the first write creates the secret owned by the descriptor."""
        owner = {"apiVersion": "vault.banzaicloud.com/v1alpha1", "kind": "Vault", "name": "vault", "uid": "u1"}
        monkeypatch.setenv("K8S_OWNER_REFERENCE", json.dumps(owner))
        api = FakeSecretsApi()

        KubernetesStorage("vault", "keys", api=api).set("vault-root", b"s.token")

        body = api.created[0]
        assert body["metadata"]["ownerReferences"][0]["uid"] == "u1"
        assert base64.b64decode(body["data"]["vault-root"]) == b"s.token"

    def test_set_without_owner(self, monkeypatch):
        """Test the secret has no owner outside the sidecar."""
        monkeypatch.delenv("K8S_OWNER_REFERENCE", raising=False)
        api = FakeSecretsApi()

        KubernetesStorage("vault", "keys", api=api).set("vault-root", b"s.token")

        assert api.created[0]["metadata"]["ownerReferences"] == []

    def test_set_keeps_existing_keys(self):
        """Test later writes add entries to the same secret."""
        api = FakeSecretsApi()
        store = KubernetesStorage("vault", "keys", api=api)

        store.set("vault-unseal-0", b"a")
        store.set("vault-unseal-1", b"b")

        assert len(api.created) == 1
        assert store.get("vault-unseal-0") == b"a"
        assert store.get("vault-unseal-1") == b"b"

    def test_get_missing_secret(self):
        """Test a missing secret is NotFound."""
        store = KubernetesStorage("vault", "keys", api=FakeSecretsApi())

        with pytest.raises(NotFoundError):
            store.get("vault-unseal-0")

    def test_get_missing_key(self):
        """Test a missing entry is NotFound."""
        api = FakeSecretsApi()
        store = KubernetesStorage("vault", "keys", api=api)
        store.set("vault-unseal-0", b"a")

        with pytest.raises(NotFoundError):
            store.get("vault-unseal-1")

    def test_get_forbidden_is_not_not_found(self, mock_core_v1_api):
        """Test other API failures are distinguishable from a missing key."""
        mock_core_v1_api.read_namespaced_secret.side_effect = ApiException(status=403, reason="Forbidden")
        store = KubernetesStorage("vault", "keys", api=mock_core_v1_api)

        with pytest.raises(KVError) as exc_info:
            store.get("vault-unseal-0")

        assert not isinstance(exc_info.value, NotFoundError)

    def test_connection_failure(self, mock_core_v1_api):
        """Test connection errors become KVError."""
        mock_core_v1_api.read_namespaced_secret.side_effect = MaxRetryError(None, "/", "refused")
        store = KubernetesStorage("vault", "keys", api=mock_core_v1_api)

        with pytest.raises(KVError):
            store.set("vault-unseal-0", b"a")

    def test_test_tolerates_missing_secret(self):
        """Test a missing secret still counts as reachable."""
        KubernetesStorage("vault", "keys", api=FakeSecretsApi()).test("vault-unseal-0")

    def test_test_fails_when_unreachable(self, mock_core_v1_api):
        """Test an unreachable API fails the key store test."""
        mock_core_v1_api.read_namespaced_secret.side_effect = ApiException(status=500, reason="Internal")
        store = KubernetesStorage("vault", "keys", api=mock_core_v1_api)

        with pytest.raises(KVError):
            store.test("vault-unseal-0")


def _oss_error(cls, status):
    return cls(status, {}, b"", {"Code": cls.__name__, "Message": "failed"})


class TestOSSStorage:
    """Tests for the Alibaba OSS key store."""

    @pytest.fixture
    def bucket(self):
        """Mock oss2 bucket."""
        bucket = MagicMock()
        bucket.bucket_name = "vault-keys"
        return bucket

    def test_set_uses_prefix_and_kms(self, bucket):
        """Test objects are written under the prefix with KMS encryption."""
        OSSStorage(bucket, prefix="prod/", kms_key_id="kms-1").set("vault-root", b"token")

        name, value = bucket.put_object.call_args[0]
        headers = bucket.put_object.call_args[1]["headers"]
        assert name == "prod/vault-root"
        assert value == b"token"
        assert headers["x-oss-server-side-encryption"] == "KMS"
        assert headers["x-oss-server-side-encryption-key-id"] == "kms-1"

    def test_get(self, bucket):
        """Test values are read from the prefixed object."""
        bucket.get_object.return_value.read.return_value = b"share"

        assert OSSStorage(bucket, prefix="prod/").get("vault-unseal-0") == b"share"
        bucket.get_object.assert_called_once_with("prod/vault-unseal-0")

    def test_get_missing_key(self, bucket):
        """Test a missing object is NotFound."""
        bucket.get_object.side_effect = _oss_error(NoSuchKey, 404)

        with pytest.raises(NotFoundError):
            OSSStorage(bucket).get("vault-unseal-0")

    def test_get_server_error(self, bucket):
        """Test other OSS failures are KVError but not NotFound."""
        bucket.get_object.side_effect = _oss_error(ServerError, 500)

        with pytest.raises(KVError) as exc_info:
            OSSStorage(bucket).get("vault-unseal-0")

        assert not isinstance(exc_info.value, NotFoundError)

    def test_test_checks_bucket(self, bucket):
        """Test the key store test reads the bucket info."""
        bucket.get_bucket_info.side_effect = _oss_error(ServerError, 403)

        with pytest.raises(KVError):
            OSSStorage(bucket).test("vault-unseal-0")

    def test_new_requires_options(self):
        """Test the factory lists the missing options."""
        with pytest.raises(ConfigurationError) as exc_info:
            kv.new(KVConfig(mode="alibaba-kms-oss", oss_endpoint="oss.example.com"))

        assert "--oss-bucket" in str(exc_info.value)
        assert "--oss-endpoint" not in str(exc_info.value)

    def test_new_builds_bucket(self):
        """Test the factory authenticates against the endpoint and bucket."""
        config = KVConfig(
            mode="alibaba-kms-oss",
            oss_endpoint="oss.example.com",
            oss_bucket="vault-keys",
            oss_access_key_id="id",
            oss_access_key_secret="secret",
            oss_prefix="prod/",
        )
        with patch("vault_operator.kv.alibabaoss.oss2") as mock_oss2:
            store = kv.new(config)

        mock_oss2.Auth.assert_called_once_with("id", "secret")
        mock_oss2.Bucket.assert_called_once_with(mock_oss2.Auth.return_value, "oss.example.com", "vault-keys")
        assert store.prefix == "prod/"
