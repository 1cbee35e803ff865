#!/usr/bin/env python
"""Command-line interface for vault-operator.

This module provides the CLI entry point. It parses flags into the
immutable configuration objects once and hands them to the operator
loop or the unseal worker.
"""

import sys
from datetime import timedelta
from pathlib import Path
from typing import Any

import click
import yaml
from icecream import ic

from vault_operator import __version__, console, kv, resources
from vault_operator.cluster import ObjectStore, load_kube_config
from vault_operator.config import (
    DEFAULT_BANK_VAULTS_IMAGE,
    DEFAULT_TLS_VALIDITY,
    DEFAULT_VAULT_ADDRESS,
    KVConfig,
    OperatorConfig,
    UnsealConfig,
    VaultClientConfig,
    parse_duration,
)
from vault_operator.exceptions import ConfigurationError, VaultOperatorError
from vault_operator.models import Vault
from vault_operator.operator import run as run_operator
from vault_operator.unseal import EXIT_FAILURE, Unsealer
from vault_operator.vault import Vault as VaultHelper
from vault_operator.vault import VaultClient

_REDACTED = "<redacted>"


def _duration(value: str) -> timedelta:
    try:
        return parse_duration(value)
    except ConfigurationError as e:
        raise click.BadParameter(str(e)) from None


@click.group(invoke_without_command=True, help="Keep Vault clusters running and unsealed on Kubernetes")
@click.option("--version", "-v", required=False, is_flag=True, help="print version")
@click.option("--debug", required=False, is_flag=True, help="print debug information")
@click.pass_context
def cli(ctx: click.Context, version: bool, debug: bool) -> None:
    """Process global flags.

    Args:
        ctx: Click context.
        version: Print version and exit.
        debug: Enable debug output.

    """
    if debug:
        ic.enable()
    else:
        ic.disable()

    if version:
        click.echo(__version__)
        ctx.exit(0)

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command(help="Watch Vault resources and reconcile their managed objects")
@click.option("--namespace", envvar="WATCH_NAMESPACE", default="", help="namespace to watch (default: all)")
@click.option("--context", default=None, help="kubeconfig context to use outside a cluster")
@click.option("--bank-vaults-image", default=DEFAULT_BANK_VAULTS_IMAGE, show_default=True, help="configurer image")
@click.option("--tls-validity", default=DEFAULT_TLS_VALIDITY, show_default=True, help="validity of generated certificates")
@click.option("--resync", default=300, show_default=True, type=click.IntRange(min=1), help="seconds between full resyncs")
def operator(namespace: str, context: str | None, bank_vaults_image: str, tls_validity: str, resync: int) -> None:
    """Run the reconciling operator.

    Args:
        namespace: Namespace to watch.
        context: Optional kubeconfig context.
        bank_vaults_image: Default configurer image.
        tls_validity: Validity of generated certificates.
        resync: Watch timeout in seconds.

    """
    config = OperatorConfig(
        namespace=namespace,
        bank_vaults_image=bank_vaults_image,
        tls_validity=_duration(tls_validity),
        resync_seconds=resync,
    )
    ic(config)

    try:
        load_kube_config(context=context)
        run_operator(ObjectStore(), config)
    except VaultOperatorError as e:
        console.error(str(e))
        sys.exit(EXIT_FAILURE)
    except KeyboardInterrupt:
        console.info("Received shutdown signal")


@cli.command(help="Initialize and unseal a Vault instance with keys from a key store")
@click.option("--unseal-period", default="30s", show_default=True, envvar="UNSEAL_PERIOD", help="time between attempts")
@click.option("--attempts", default=4, show_default=True, type=click.IntRange(min=1), help="attempts before exiting")
@click.option("--init", "auto_init", is_flag=True, default=False, help="initialize Vault if not yet initialized")
@click.option(
    "--store-root-token/--no-store-root-token",
    default=True,
    show_default=True,
    help="store the root token in the key store (only with --init)",
)
@click.option("--init-root-token", default="", envvar="VAULT_INIT_ROOT_TOKEN", help="root token id to create after init")
@click.option("--secret-shares", default=5, show_default=True, type=click.IntRange(min=1), help="key shares at init")
@click.option("--secret-threshold", default=3, show_default=True, type=click.IntRange(min=1), help="shares to unseal")
@click.option(
    "--mode",
    default="k8s",
    show_default=True,
    type=click.Choice(kv.backends()),
    help="key store backend",
)
@click.option("--k8s-secret-namespace", default="default", envvar="K8S_SECRET_NAMESPACE", help="namespace of the key Secret")
@click.option("--k8s-secret-name", default="", envvar="K8S_SECRET_NAME", help="name of the key Secret")
@click.option("--oss-endpoint", default="", envvar="OSS_ENDPOINT", help="Alibaba OSS endpoint")
@click.option("--oss-bucket", default="", envvar="OSS_BUCKET", help="Alibaba OSS bucket")
@click.option("--oss-prefix", default="", envvar="OSS_PREFIX", help="object name prefix")
@click.option("--oss-access-key-id", default="", envvar="ALIBABA_ACCESS_KEY_ID", help="Alibaba access key id")
@click.option("--oss-access-key-secret", default="", envvar="ALIBABA_ACCESS_KEY_SECRET", help="Alibaba access key secret")
@click.option("--kms-key-id", default="", envvar="ALIBABA_KMS_KEY_ID", help="KMS key for server-side encryption")
@click.option("--vault-addr", default=DEFAULT_VAULT_ADDRESS, show_default=True, envvar="VAULT_ADDR", help="Vault address")
@click.option("--vault-cacert", default=None, envvar="VAULT_CACERT", help="CA certificate of the Vault server")
@click.option("--vault-client-cert", default=None, envvar="VAULT_CLIENT_CERT", help="client certificate for mutual TLS")
@click.option("--vault-client-key", default=None, envvar="VAULT_CLIENT_KEY", help="client key for mutual TLS")
@click.option("--timeout", default=10.0, show_default=True, type=float, help="Vault request timeout in seconds")
def unseal(**options: Any) -> None:
    """Run the unseal/init worker and exit with its status.

    Args:
        **options: Parsed command-line options.

    """
    try:
        unseal_config = UnsealConfig(
            period=_duration(options["unseal_period"]),
            attempts=options["attempts"],
            auto_init=options["auto_init"],
            store_root_token=options["store_root_token"],
            init_root_token=options["init_root_token"],
            secret_shares=options["secret_shares"],
            secret_threshold=options["secret_threshold"],
        )
        kv_config = KVConfig(
            mode=options["mode"],
            k8s_namespace=options["k8s_secret_namespace"],
            k8s_secret=options["k8s_secret_name"],
            oss_endpoint=options["oss_endpoint"],
            oss_access_key_id=options["oss_access_key_id"],
            oss_access_key_secret=options["oss_access_key_secret"],
            oss_bucket=options["oss_bucket"],
            oss_prefix=options["oss_prefix"],
            kms_key_id=options["kms_key_id"],
        )
        client_config = VaultClientConfig(
            address=options["vault_addr"],
            ca_cert=options["vault_cacert"],
            client_cert=options["vault_client_cert"],
            client_key=options["vault_client_key"],
            timeout=options["timeout"],
        )
    except ConfigurationError as e:
        raise click.UsageError(str(e)) from None
    ic(unseal_config.period, unseal_config.attempts, kv_config.mode, client_config.address)

    try:
        if kv_config.mode == "k8s":
            load_kube_config()
        store = kv.new(kv_config)
        helper = VaultHelper(store, VaultClient(client_config), unseal_config)
        code = Unsealer(helper, unseal_config).run()
    except VaultOperatorError as e:
        console.error(str(e))
        sys.exit(EXIT_FAILURE)

    sys.exit(code)


def _redact(obj: dict[str, Any]) -> dict[str, Any]:
    if obj.get("kind") == "Secret":
        obj["stringData"] = {key: _REDACTED for key in obj.get("stringData", {})}
    return obj


def render_resources(vault: Vault, config: OperatorConfig) -> list[dict[str, Any]]:
    """Build the managed objects of ``vault`` in creation order, secrets redacted."""
    resources.validate(vault)
    objects: list[dict[str, Any]] = []
    if vault.spec.storage_type == "etcd":
        objects.append(resources.secret_for_etcd(vault, config.tls_validity))
        objects.append(resources.etcd_for_vault(vault))
    objects.extend(
        [
            resources.secret_for_vault(vault, config.tls_validity),
            resources.deployment_for_vault(vault, config),
            resources.service_for_vault(vault),
            resources.deployment_for_configurer(vault, config),
            resources.configmap_for_configurer(vault),
        ]
    )
    return [_redact(obj) for obj in objects]


@cli.command(help="Print the objects managed for a Vault resource file")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--bank-vaults-image", default=DEFAULT_BANK_VAULTS_IMAGE, show_default=True, help="configurer image")
def render(file: Path, bank_vaults_image: str) -> None:
    """Render the managed resource set of a descriptor as YAML.

    Args:
        file: Path to the Vault resource YAML.
        bank_vaults_image: Default configurer image.

    """
    try:
        with file.open() as stream:
            raw = yaml.safe_load(stream)
    except yaml.YAMLError as e:
        raise click.ClickException(f"File '{file}' contains malformed YAML: {e}") from e
    if not isinstance(raw, dict):
        raise click.ClickException(f"File '{file}' does not contain a Vault resource")

    config = OperatorConfig(bank_vaults_image=bank_vaults_image)
    try:
        objects = render_resources(Vault.from_object(raw), config)
    except VaultOperatorError as e:
        raise click.ClickException(str(e)) from e

    click.echo(yaml.safe_dump_all(objects, sort_keys=False), nl=False)


if __name__ == "__main__":
    cli()
