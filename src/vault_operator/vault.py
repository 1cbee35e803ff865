"""Vault control API client and unseal helper.

This module provides the VaultClient class wrapping the ``sys`` endpoints
used to initialize and unseal a Vault server, and the Vault class that
ties those endpoints to a key store.
"""

from typing import Any, NamedTuple

import requests
from icecream import ic

from vault_operator import console, kv
from vault_operator.config import UnsealConfig, VaultClientConfig
from vault_operator.exceptions import InitializationError, KVError, UnsealError, VaultAPIError

# Status codes /v1/sys/health answers with for a reachable server
_HEALTH_STATUS_CODES = frozenset({200, 429, 472, 473, 501, 503})


class SealStatus(NamedTuple):
    """Seal state reported by Vault.

    Attributes:
        sealed: Whether the server is sealed.
        initialized: Whether the server is initialized.
        threshold: Number of shares needed to unseal.
        shares: Number of shares the master key was split into.
        progress: Number of shares submitted so far.

    """

    sealed: bool
    initialized: bool
    threshold: int = 0
    shares: int = 0
    progress: int = 0

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> "SealStatus":
        return cls(
            sealed=bool(data.get("sealed", True)),
            initialized=bool(data.get("initialized", False)),
            threshold=int(data.get("t", 0)),
            shares=int(data.get("n", 0)),
            progress=int(data.get("progress", 0)),
        )


class InitResponse(NamedTuple):
    """Key material returned by ``/v1/sys/init``."""

    keys: list[str]
    root_token: str

    def __repr__(self) -> str:
        """Return a representation without key material."""
        return f"InitResponse(keys=<{len(self.keys)} redacted>, root_token=<redacted>)"


class VaultClient:
    """Thin client for the Vault ``sys`` endpoints.

    Attributes:
        address: Base URL of the Vault server.
        timeout: Per-request timeout in seconds.

    """

    def __init__(self, config: VaultClientConfig, session: requests.Session | None = None) -> None:
        self.address: str = config.address.rstrip("/")
        self.timeout: float = config.timeout
        self._session: requests.Session = session if session is not None else requests.Session()
        if config.ca_cert:
            self._session.verify = config.ca_cert
        if config.client_cert and config.client_key:
            self._session.cert = (config.client_cert, config.client_key)

    def __repr__(self) -> str:
        return f"VaultClient(address={self.address!r})"

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        token: str | None = None,
        accept: frozenset[int] = frozenset({200, 204}),
    ) -> requests.Response:
        url = f"{self.address}{path}"
        headers = {"X-Vault-Token": token} if token else None
        ic(method, url)
        try:
            response = self._session.request(method, url, json=json, headers=headers, timeout=self.timeout)
        except requests.RequestException as err:
            raise VaultAPIError(f"{method} {path} failed: {err}") from err

        if response.status_code not in accept:
            raise VaultAPIError(f"{method} {path} returned HTTP {response.status_code}: {_errors(response)}")
        return response

    def _json(self, response: requests.Response, path: str) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError as err:
            raise VaultAPIError(f"{path} returned a non-JSON body") from err
        if not isinstance(data, dict):
            raise VaultAPIError(f"{path} returned an unexpected body")
        return data

    def init_status(self) -> bool:
        """Return whether Vault is initialized."""
        path = "/v1/sys/init"
        return bool(self._json(self._request("GET", path), path).get("initialized", False))

    def initialize(self, secret_shares: int, secret_threshold: int) -> InitResponse:
        """Initialize Vault.

        Args:
            secret_shares: Number of shares to split the master key into.
            secret_threshold: Number of shares required to unseal.

        Returns:
            The generated key shares and root token.

        """
        path = "/v1/sys/init"
        response = self._request(
            "PUT",
            path,
            json={"secret_shares": secret_shares, "secret_threshold": secret_threshold},
        )
        data = self._json(response, path)
        try:
            return InitResponse(keys=list(data["keys"]), root_token=str(data["root_token"]))
        except (KeyError, TypeError) as err:
            raise VaultAPIError(f"{path} response is missing {err}") from err

    def seal_status(self) -> SealStatus:
        """Return the seal state of Vault."""
        path = "/v1/sys/seal-status"
        return SealStatus.from_response(self._json(self._request("GET", path), path))

    def unseal(self, key: str) -> SealStatus:
        """Submit one key share.

        Args:
            key: The key share.

        Returns:
            The seal state after the submission.

        """
        path = "/v1/sys/unseal"
        return SealStatus.from_response(self._json(self._request("PUT", path, json={"key": key}), path))

    def health(self) -> dict[str, Any]:
        """Return the health report of Vault."""
        path = "/v1/sys/health"
        return self._json(self._request("GET", path, accept=_HEALTH_STATUS_CODES), path)

    def create_token(self, token: str, token_id: str) -> None:
        """Create a root policy token with a fixed id.

        Args:
            token: Token authorizing the request.
            token_id: The id of the new token.

        """
        self._request(
            "POST",
            "/v1/auth/token/create",
            json={"id": token_id, "policies": ["root"], "no_parent": True},
            token=token,
        )

    def revoke_self(self, token: str) -> None:
        """Revoke the token authorizing the request."""
        self._request("POST", "/v1/auth/token/revoke-self", token=token)


def _errors(response: requests.Response) -> str:
    try:
        errors = response.json().get("errors")
    except (ValueError, AttributeError):
        errors = None
    return ", ".join(str(e) for e in errors) if errors else response.reason or ""


class Vault:
    """Initializes and unseals one Vault server using a key store.

    Attributes:
        store: Key store holding the unseal keys and root token.
        client: Client for the Vault control API.
        config: Unseal/init policy.

    """

    def __init__(self, store: kv.Service, client: VaultClient, config: UnsealConfig) -> None:
        self.store = store
        self.client = client
        self.config = config

    def __repr__(self) -> str:
        return f"Vault(client={self.client!r}, store={self.store!r})"

    def sealed(self) -> bool:
        """Return whether Vault is sealed.

        Raises:
            VaultAPIError: If the seal status cannot be read.

        """
        return self.client.seal_status().sealed

    def init(self) -> None:
        """Initialize Vault and persist the key material.

        Does nothing when Vault is already initialized.

        Raises:
            InitializationError: If initialization or persisting the keys fails.

        """
        try:
            if self.client.init_status():
                console.info("Vault is already initialized")
                return

            # Fail before init when the keys could not be stored
            self.store.test(kv.unseal_key_name(0))

            response = self.client.initialize(self.config.secret_shares, self.config.secret_threshold)
            console.success(f"Vault initialized with {len(response.keys)} key shares")

            for index, key in enumerate(response.keys):
                self.store.set(kv.unseal_key_name(index), key.encode())
                console.step(f"Stored unseal key {console.highlight(kv.unseal_key_name(index))}")

            root_token = response.root_token
            if self.config.init_root_token:
                console.action("Replacing the generated root token")
                self.client.create_token(root_token, self.config.init_root_token)
                self.client.revoke_self(root_token)
                root_token = self.config.init_root_token

            if self.config.store_root_token:
                self.store.set(kv.ROOT_TOKEN_KEY, root_token.encode())
                console.step(f"Stored root token {console.highlight(kv.ROOT_TOKEN_KEY)}")
            else:
                console.warning("Root token is not stored; it was returned only to this process")
        except (VaultAPIError, KVError) as err:
            raise InitializationError(f"Error initializing vault: {err}") from err

    def unseal(self) -> None:
        """Submit stored key shares until Vault reports unsealed.

        Raises:
            NotFoundError: If a required key share was never stored.
            KVError: If the key store fails.
            VaultAPIError: If a submission fails.
            UnsealError: If Vault is still sealed after every stored share.

        """
        for index in range(self.config.secret_shares):
            name = kv.unseal_key_name(index)
            key = self.store.get(name)
            status = self.client.unseal(key.decode())
            console.step(f"Submitted {console.highlight(name)} ({status.progress}/{status.threshold})")
            if not status.sealed:
                return

        raise UnsealError(f"Vault is still sealed after submitting {self.config.secret_shares} key shares")
