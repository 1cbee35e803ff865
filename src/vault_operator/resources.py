"""Builders for the objects managed on behalf of a Vault descriptor.

Every builder returns a plain Kubernetes manifest (a mapping) carrying an
owner reference back to the descriptor, so deleting the descriptor lets
the garbage collector remove everything built here.
"""

import copy
import posixpath
from datetime import timedelta
from typing import Any

from vault_operator import tls
from vault_operator.config import OperatorConfig
from vault_operator.exceptions import ValidationError
from vault_operator.models import ENV_OWNER_REFERENCE, Vault, canonical_json

VAULT_PORT = 8200
VAULT_PORT_NAME = "vault"
DEFAULT_CONFIG_FILE = "vault-config.yml"
ENV_VAULT_ADDR = "VAULT_ADDR"
ENV_VAULT_CACERT = "VAULT_CACERT"

VAULT_TLS_DIR = "/vault/tls"
VAULT_CA_FILE = f"{VAULT_TLS_DIR}/ca.crt"
ETCD_TLS_DIR = "/etcd/tls"

# etcd-operator client certificate file names
ETCD_CLIENT_CA_FILE = "etcd-client-ca.crt"
ETCD_CLIENT_CERT_FILE = "etcd-client.crt"
ETCD_CLIENT_KEY_FILE = "etcd-client.key"

ETCD_API_GROUP = "etcd.database.coreos.com"
ETCD_API_VERSION = "v1beta2"
ETCD_KIND = "EtcdCluster"
ETCD_SIZE = 3
# etcd-operator issue 1962: Vault's etcd backend needs 3.1.x
ETCD_VERSION = "3.1.15"


def _metadata(name: str, vault: Vault, labels: dict[str, str] | None = None) -> dict[str, Any]:
    metadata: dict[str, Any] = {
        "name": name,
        "namespace": vault.namespace,
        "ownerReferences": [vault.owner_reference().to_dict()],
    }
    if labels is not None:
        metadata["labels"] = labels
    return metadata


def tls_secret_name(name: str) -> str:
    return f"{name}-tls"


def configurer_name(vault: Vault) -> str:
    return f"{vault.name}-configurer"


def etcd_hosts(etcd_name: str, namespace: str) -> list[str]:
    """Subject alternative names of the etcd member, peer and client certificates."""
    return [
        etcd_name,
        f"{etcd_name}.{namespace}",
        f"*.{etcd_name}.{namespace}.svc",
        f"{etcd_name}-client.{namespace}.svc",
        "localhost",
    ]


def vault_hosts(vault: Vault) -> list[str]:
    """Subject alternative names of the Vault server certificate."""
    return [f"{vault.name}.{vault.namespace}", "127.0.0.1"]


def secret_for_etcd(vault: Vault, validity: timedelta) -> dict[str, Any]:
    """Build the TLS Secret of the etcd cluster backing ``vault``.

    Raises:
        TLSGenerationError: If the certificates cannot be generated.

    """
    etcd_name = vault.spec.etcd_name
    chain = tls.generate(etcd_hosts(etcd_name, vault.namespace), validity)
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": _metadata(tls_secret_name(etcd_name), vault, vault.labels()),
        "type": "Opaque",
        "stringData": {
            ETCD_CLIENT_CA_FILE: chain.ca_cert,
            ETCD_CLIENT_CERT_FILE: chain.client_cert,
            ETCD_CLIENT_KEY_FILE: chain.client_key,
            "peer-ca.crt": chain.ca_cert,
            "peer.crt": chain.peer_cert,
            "peer.key": chain.peer_key,
            "server-ca.crt": chain.ca_cert,
            "server.crt": chain.server_cert,
            "server.key": chain.server_key,
        },
    }


def etcd_for_vault(vault: Vault) -> dict[str, Any]:
    """Build the EtcdCluster object backing ``vault``."""
    etcd_name = vault.spec.etcd_name
    secret_name = tls_secret_name(etcd_name)
    return {
        "apiVersion": f"{ETCD_API_GROUP}/{ETCD_API_VERSION}",
        "kind": ETCD_KIND,
        "metadata": _metadata(etcd_name, vault, vault.labels()),
        "spec": {
            "size": ETCD_SIZE,
            "version": ETCD_VERSION,
            "TLS": {
                "static": {
                    "operatorSecret": secret_name,
                    "member": {
                        "serverSecret": secret_name,
                        "peerSecret": secret_name,
                    },
                },
            },
        },
    }


def secret_for_vault(vault: Vault, validity: timedelta) -> dict[str, Any]:
    """Build the TLS Secret of the Vault server.

    Raises:
        TLSGenerationError: If the certificates cannot be generated.

    """
    chain = tls.generate(vault_hosts(vault), validity)
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": _metadata(tls_secret_name(vault.name), vault, vault.labels()),
        "type": "Opaque",
        "stringData": {
            "ca.crt": chain.ca_cert,
            "server.crt": chain.server_cert,
            "server.key": chain.server_key,
        },
    }


def _with_credentials_env(vault: Vault, env: list[dict[str, Any]]) -> list[dict[str, Any]]:
    credentials = vault.spec.credentials_config
    if credentials.env:
        env.append({"name": credentials.env, "value": credentials.path})
    return env


def _with_credentials_volume(vault: Vault, volumes: list[dict[str, Any]]) -> list[dict[str, Any]]:
    credentials = vault.spec.credentials_config
    if credentials.secret_name:
        volumes.append({"name": credentials.secret_name, "secret": {"secretName": credentials.secret_name}})
    return volumes


def _with_credentials_volume_mount(vault: Vault, mounts: list[dict[str, Any]]) -> list[dict[str, Any]]:
    credentials = vault.spec.credentials_config
    if credentials.secret_name:
        mounts.append(
            {
                "name": credentials.secret_name,
                "mountPath": credentials.path,
                "subPath": posixpath.basename(credentials.path),
            }
        )
    return mounts


def vault_config(vault: Vault) -> dict[str, Any]:
    """Return the Vault server configuration rendered into the pod.

    With etcd storage the generated client certificate settings are
    merged in. The descriptor itself is never modified.
    """
    config = copy.deepcopy(vault.spec.config)
    if vault.spec.storage_type == "etcd":
        storage = config["storage"]["etcd"]
        storage["tls_ca_file"] = f"{ETCD_TLS_DIR}/{ETCD_CLIENT_CA_FILE}"
        storage["tls_cert_file"] = f"{ETCD_TLS_DIR}/{ETCD_CLIENT_CERT_FILE}"
        storage["tls_key_file"] = f"{ETCD_TLS_DIR}/{ETCD_CLIENT_KEY_FILE}"
    return config


def validate(vault: Vault) -> None:
    """Check that the descriptor can be deployed.

    Raises:
        ValidationError: If more than one replica is requested without
            an HA storage backend.

    """
    if vault.spec.size > 1 and not vault.spec.has_ha_storage:
        raise ValidationError(
            f"Vault {vault.namespace}/{vault.name}: more than 1 replicas are not supported "
            "without HA storage backend"
        )


def _https_probe(path: str) -> dict[str, Any]:
    return {"httpGet": {"scheme": "HTTPS", "port": VAULT_PORT_NAME, "path": path}}


def deployment_for_vault(vault: Vault, config: OperatorConfig) -> dict[str, Any]:
    """Build the Vault server Deployment with its unseal sidecar.

    Raises:
        ValidationError: If the descriptor fails :func:`validate`.

    """
    validate(vault)

    labels = vault.labels()
    volumes = _with_credentials_volume(
        vault,
        [
            {"name": "vault-config", "emptyDir": {}},
            {"name": "vault-file", "emptyDir": {}},
            {"name": "vault-tls", "secret": {"secretName": tls_secret_name(vault.name)}},
        ],
    )
    volume_mounts = _with_credentials_volume_mount(
        vault,
        [
            {"name": "vault-config", "mountPath": "/vault/config"},
            {"name": "vault-file", "mountPath": "/vault/file"},
            {"name": "vault-tls", "mountPath": VAULT_TLS_DIR},
        ],
    )

    if vault.spec.storage_type == "etcd":
        etcd_secret = tls_secret_name(vault.spec.etcd_name)
        volumes.append({"name": "etcd-tls", "secret": {"secretName": etcd_secret}})
        volume_mounts.append({"name": "etcd-tls", "mountPath": ETCD_TLS_DIR})

    owner = vault.owner_reference()
    unseal_options = vault.spec.unseal_config

    vault_container = {
        "name": "vault",
        "image": vault.spec.image,
        "imagePullPolicy": "IfNotPresent",
        "args": ["server", "-log-level=debug"],
        "ports": [{"containerPort": VAULT_PORT, "name": VAULT_PORT_NAME}],
        "env": _with_credentials_env(
            vault,
            [
                {"name": "VAULT_LOCAL_CONFIG", "value": canonical_json(vault_config(vault))},
                {"name": ENV_VAULT_CACERT, "value": VAULT_CA_FILE},
            ],
        ),
        "securityContext": {"capabilities": {"add": ["IPC_LOCK"]}},
        # Passes on any running server
        "livenessProbe": _https_probe("/v1/sys/init"),
        # Passes only on the active unsealed instance
        "readinessProbe": _https_probe("/v1/sys/health"),
        "volumeMounts": volume_mounts,
    }

    unseal_container = {
        "name": "vault-unsealer",
        "image": vault.spec.operator_image,
        "imagePullPolicy": "IfNotPresent",
        "command": ["vault-operator", "unseal"],
        "args": unseal_options.to_unseal_args(vault),
        "env": _with_credentials_env(
            vault,
            [
                {"name": ENV_OWNER_REFERENCE, "value": owner.to_json()},
                {"name": ENV_VAULT_CACERT, "value": VAULT_CA_FILE},
                *unseal_options.credentials_env(),
            ],
        ),
        "volumeMounts": _with_credentials_volume_mount(
            vault, [{"name": "vault-tls", "mountPath": VAULT_TLS_DIR}]
        ),
    }

    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": _metadata(vault.name, vault),
        "spec": {
            "replicas": vault.spec.size,
            "selector": {"matchLabels": labels},
            "template": {
                "metadata": {"labels": labels},
                "spec": {
                    "containers": [vault_container, unseal_container],
                    "volumes": volumes,
                },
            },
        },
    }


def service_for_vault(vault: Vault) -> dict[str, Any]:
    """Build the Service exposing the Vault control port."""
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _metadata(vault.name, vault),
        "spec": {
            "type": "NodePort",
            "selector": vault.labels(),
            "ports": [{"name": VAULT_PORT_NAME, "port": VAULT_PORT}],
        },
    }


def deployment_for_configurer(vault: Vault, config: OperatorConfig) -> dict[str, Any]:
    """Build the Deployment applying the external configuration to Vault."""
    labels = vault.configurer_labels()
    image = vault.spec.bank_vaults_image or config.bank_vaults_image
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": _metadata(configurer_name(vault), vault),
        "spec": {
            "selector": {"matchLabels": labels},
            "template": {
                "metadata": {"labels": labels},
                "spec": {
                    "containers": [
                        {
                            "name": "bank-vaults",
                            "image": image,
                            "imagePullPolicy": "IfNotPresent",
                            "command": ["bank-vaults", "configure"],
                            "args": vault.spec.unseal_config.to_args(vault),
                            "env": _with_credentials_env(
                                vault,
                                [
                                    {
                                        "name": ENV_VAULT_ADDR,
                                        "value": f"https://{vault.name}.{vault.namespace}:{VAULT_PORT}",
                                    },
                                    {"name": ENV_VAULT_CACERT, "value": VAULT_CA_FILE},
                                    *vault.spec.unseal_config.credentials_env(),
                                ],
                            ),
                            "volumeMounts": _with_credentials_volume_mount(
                                vault,
                                [
                                    {"name": "config", "mountPath": "/config"},
                                    {"name": "vault-tls", "mountPath": VAULT_TLS_DIR},
                                ],
                            ),
                            "workingDir": "/config",
                        }
                    ],
                    "volumes": _with_credentials_volume(
                        vault,
                        [
                            {"name": "config", "configMap": {"name": configurer_name(vault)}},
                            {"name": "vault-tls", "secret": {"secretName": tls_secret_name(vault.name)}},
                        ],
                    ),
                },
            },
        },
    }


def configmap_for_configurer(vault: Vault) -> dict[str, Any]:
    """Build the ConfigMap holding the external configuration."""
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": _metadata(configurer_name(vault), vault, vault.configurer_labels()),
        "data": {DEFAULT_CONFIG_FILE: vault.spec.external_config_json()},
    }
