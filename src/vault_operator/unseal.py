"""Unseal/init worker.

The Unsealer runs a bounded number of attempts against one Vault server.
Each attempt optionally initializes Vault, checks the seal state, and
submits the stored key shares when the server is sealed. The worker
exits as soon as Vault reports unsealed; once the attempt budget is
spent it exits regardless, and the surrounding supervisor restarts it.
"""

import time
from collections.abc import Callable
from enum import Enum

from vault_operator import console
from vault_operator.config import UnsealConfig
from vault_operator.exceptions import KVError, UnsealError, VaultAPIError
from vault_operator.vault import Vault

EXIT_SUCCESS = 0
EXIT_FAILURE = 1


class AttemptOutcome(str, Enum):
    """Result of a single unseal attempt."""

    ALREADY_UNSEALED = "already-unsealed"
    UNSEALED = "unsealed"
    FAILED = "failed"


class Unsealer:
    """Drives a Vault server from uninitialized/sealed to unsealed.

    Attributes:
        vault: Helper bound to the Vault client and the key store.
        config: Unseal/init policy.

    """

    def __init__(
        self,
        vault: Vault,
        config: UnsealConfig,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.vault = vault
        self.config = config
        self._sleep = sleep
        self._proceed_init: bool = config.auto_init

    def __repr__(self) -> str:
        return f"Unsealer(vault={self.vault!r}, attempts={self.config.attempts})"

    def attempt(self) -> AttemptOutcome:
        """Run one attempt.

        Returns:
            The outcome of the attempt.

        Raises:
            InitializationError: If auto-initialization fails.

        """
        if self._proceed_init:
            console.action("Initializing vault...")
            self.vault.init()
            self._proceed_init = False

        console.action("Checking if vault is sealed...")
        try:
            sealed = self.vault.sealed()
        except VaultAPIError as err:
            console.error(f"Error checking if vault is sealed: {err}")
            return AttemptOutcome.FAILED

        console.info(f"Vault sealed: {sealed}")
        if not sealed:
            return AttemptOutcome.ALREADY_UNSEALED

        try:
            self.vault.unseal()
        except (KVError, VaultAPIError, UnsealError) as err:
            console.error(f"Error unsealing vault: {err}")
            return AttemptOutcome.FAILED

        console.success("Successfully unsealed vault")
        return AttemptOutcome.UNSEALED

    def run(self) -> int:
        """Run attempts until Vault is unsealed or the budget is spent.

        Returns:
            The process exit code: 0 when Vault was found unsealed or the
            last attempt unsealed it, 1 otherwise.

        Raises:
            InitializationError: If auto-initialization fails.

        """
        period = self.config.period.total_seconds()
        outcome = AttemptOutcome.FAILED

        for number in range(1, self.config.attempts + 1):
            outcome = self.attempt()
            if outcome is AttemptOutcome.ALREADY_UNSEALED:
                return EXIT_SUCCESS
            if number < self.config.attempts:
                self._sleep(period)

        if outcome is AttemptOutcome.UNSEALED:
            return EXIT_SUCCESS

        console.error(f"Vault is still sealed after {self.config.attempts} attempts")
        return EXIT_FAILURE
