"""Tests for cluster.py module."""

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import MaxRetryError, NewConnectionError

from vault_operator.cluster import ObjectStore, load_kube_config, object_ref
from vault_operator.exceptions import AlreadyExistsError, ClusterConnectionError, ObjectNotFoundError
from vault_operator.models import ObjectRef

SECRET = {
    "apiVersion": "v1",
    "kind": "Secret",
    "metadata": {"name": "vault-tls", "namespace": "default"},
    "stringData": {},
}


@pytest.fixture
def mock_client():
    """Patched kubernetes client module."""
    with patch("vault_operator.cluster.client") as mock:
        yield mock


@pytest.fixture
def store(mock_client):
    """ObjectStore over mocked API groups."""
    return ObjectStore(api_client=MagicMock())


class TestLoadKubeConfig:
    """Tests for kube config loading."""

    def test_in_cluster(self):
        """Test in-cluster configuration is preferred."""
        with patch("vault_operator.cluster.config") as mock_config:
            load_kube_config()

            mock_config.load_incluster_config.assert_called_once()
            mock_config.load_kube_config.assert_not_called()

    def test_fallback_to_kubeconfig(self):
        """Test the kubeconfig is used outside a cluster."""
        with patch("vault_operator.cluster.config") as mock_config:
            mock_config.load_incluster_config.side_effect = ConfigException("not in cluster")

            load_kube_config(context="kind-vault")

            mock_config.load_kube_config.assert_called_once_with(context="kind-vault")

    def test_invalid_kubeconfig(self):
        """Test error when kubeconfig is invalid or missing."""
        with patch("vault_operator.cluster.config") as mock_config:
            mock_config.load_incluster_config.side_effect = ConfigException("not in cluster")
            mock_config.load_kube_config.side_effect = ConfigException(
                "Invalid kube-config file. No configuration found."
            )

            with pytest.raises(ClusterConnectionError) as exc_info:
                load_kube_config()

            assert "Invalid or missing kubeconfig" in str(exc_info.value)


class TestObjectStoreCreate:
    """Tests for ObjectStore.create."""

    def test_create_core_object(self, store):
        """Test core kinds go to the CoreV1Api."""
        store.create(SECRET)

        store.core.create_namespaced_secret.assert_called_once_with(namespace="default", body=SECRET)

    def test_create_custom_object(self, store):
        """Test custom kinds go to the CustomObjectsApi."""
        etcd = {"kind": "EtcdCluster", "metadata": {"name": "etcd-cluster", "namespace": "default"}}

        store.create(etcd)

        store.custom.create_namespaced_custom_object.assert_called_once_with(
            "etcd.database.coreos.com", "v1beta2", "default", "etcdclusters", etcd
        )

    def test_create_conflict(self, store):
        """Test a 409 is reported as AlreadyExists."""
        store.core.create_namespaced_secret.side_effect = ApiException(status=409, reason="Conflict")

        with pytest.raises(AlreadyExistsError):
            store.create(SECRET)

    def test_create_server_error(self, store):
        """Test other API errors are connection errors."""
        store.core.create_namespaced_secret.side_effect = ApiException(status=500, reason="Internal Server Error")

        with pytest.raises(ClusterConnectionError) as exc_info:
            store.create(SECRET)

        assert "500" in str(exc_info.value)

    def test_create_connection_refused(self, store):
        """Test transport errors are connection errors."""
        store.core.create_namespaced_secret.side_effect = MaxRetryError(
            pool=None,
            url="/api/v1/namespaces/default/secrets",
            reason=NewConnectionError(None, "Connection refused"),
        )

        with pytest.raises(ClusterConnectionError) as exc_info:
            store.create(SECRET)

        assert "Failed to connect" in str(exc_info.value)

    def test_unsupported_kind(self, store):
        """Test kinds the operator does not manage are rejected."""
        with pytest.raises(ValueError):
            store.create({"kind": "Pod", "metadata": {"name": "p", "namespace": "default"}})


class TestObjectStoreRead:
    """Tests for get, update and list."""

    def test_get_serializes_typed_object(self, store):
        """Test typed API objects are returned as manifests."""
        store._api_client.sanitize_for_serialization.return_value = {"kind": "Deployment"}

        result = store.get("Deployment", "default", "vault")

        assert result == {"kind": "Deployment"}
        store.apps.read_namespaced_deployment.assert_called_once_with(name="vault", namespace="default")

    def test_get_missing(self, store):
        """Test a 404 is reported as NotFound."""
        store.core.read_namespaced_config_map.side_effect = ApiException(status=404, reason="Not Found")

        with pytest.raises(ObjectNotFoundError):
            store.get("ConfigMap", "default", "vault-configurer")

    def test_update_replaces(self, store):
        """Test updates replace the object."""
        deployment = {"kind": "Deployment", "metadata": {"name": "vault", "namespace": "default"}}

        store.update(deployment)

        store.apps.replace_namespaced_deployment.assert_called_once_with(
            name="vault", namespace="default", body=deployment
        )

    def test_update_vault_status(self, store):
        """Test the status subresource is patched with the node list."""
        store.update_vault_status("default", "vault", ["vault-0"])

        store.custom.patch_namespaced_custom_object_status.assert_called_once_with(
            "vault.banzaicloud.com", "v1alpha1", "default", "vaults", "vault", {"status": {"nodes": ["vault-0"]}}
        )
        store.custom.patch_namespaced_custom_object.assert_not_called()

    def test_update_vault_status_without_status_subresource(self, store):
        """Test the status is patched onto the object when the CRD has no status subresource."""
        store.custom.patch_namespaced_custom_object_status.side_effect = ApiException(status=404, reason="Not Found")

        store.update_vault_status("default", "vault", ["vault-0", "vault-1"])

        store.custom.patch_namespaced_custom_object.assert_called_once_with(
            "vault.banzaicloud.com",
            "v1alpha1",
            "default",
            "vaults",
            "vault",
            {"status": {"nodes": ["vault-0", "vault-1"]}},
        )

    def test_update_vault_status_missing_descriptor(self, store):
        """Test a descriptor that is gone is still reported as NotFound."""
        store.custom.patch_namespaced_custom_object_status.side_effect = ApiException(status=404, reason="Not Found")
        store.custom.patch_namespaced_custom_object.side_effect = ApiException(status=404, reason="Not Found")

        with pytest.raises(ObjectNotFoundError):
            store.update_vault_status("default", "vault", ["vault-0"])

    def test_update_vault_status_server_error(self, store):
        """Test other status errors do not fall back."""
        store.custom.patch_namespaced_custom_object_status.side_effect = ApiException(
            status=500, reason="Internal Server Error"
        )

        with pytest.raises(ClusterConnectionError):
            store.update_vault_status("default", "vault", ["vault-0"])

        store.custom.patch_namespaced_custom_object.assert_not_called()

    def test_list_pod_names(self, store):
        """Test pod names are listed with the label selector."""
        store.core.list_namespaced_pod.return_value.items = [
            SimpleNamespace(metadata=SimpleNamespace(name="vault-0")),
            SimpleNamespace(metadata=SimpleNamespace(name="vault-1")),
        ]

        names = store.list_pod_names("default", "app=vault,vault_cr=vault")

        assert names == ["vault-0", "vault-1"]
        store.core.list_namespaced_pod.assert_called_once_with("default", label_selector="app=vault,vault_cr=vault")


class TestWatchVaults:
    """Tests for ObjectStore.watch_vaults."""

    def test_watch_all_namespaces(self, store):
        """Test an empty namespace watches the whole cluster."""
        vault = {"kind": "Vault", "metadata": {"name": "vault"}}
        with patch("vault_operator.cluster.watch") as mock_watch:
            mock_watch.Watch.return_value.stream.return_value = iter([{"type": "ADDED", "object": vault}])

            events = list(store.watch_vaults("", 60))

            mock_watch.Watch.return_value.stream.assert_called_once_with(
                store.custom.list_cluster_custom_object,
                "vault.banzaicloud.com",
                "v1alpha1",
                "vaults",
                timeout_seconds=60,
            )
        assert events == [("ADDED", vault)]

    def test_watch_namespace(self, store):
        """Test a namespace restricts the watch."""
        with patch("vault_operator.cluster.watch") as mock_watch:
            mock_watch.Watch.return_value.stream.return_value = iter([])

            list(store.watch_vaults("vault", 60))

            args = mock_watch.Watch.return_value.stream.call_args[0]
        assert args[0] is store.custom.list_namespaced_custom_object
        assert args[3] == "vault"

    def test_watch_forbidden(self, store):
        """Test a failing watch is a connection error."""
        with patch("vault_operator.cluster.watch") as mock_watch:
            mock_watch.Watch.return_value.stream.side_effect = ApiException(status=403, reason="Forbidden")

            with pytest.raises(ClusterConnectionError):
                list(store.watch_vaults("", 60))


class TestObjectRef:
    """Tests for object_ref function."""

    def test_object_ref(self):
        """Test the identity of a manifest."""
        assert object_ref(SECRET) == ObjectRef("Secret", "default", "vault-tls")
        assert str(object_ref(SECRET)) == "Secret default/vault-tls"
