"""Key Vault secret persistence and read access for runtime identities."""
import logging
import time
from typing import Callable

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from ..azure.cli import AzCmd, AzureCli
from ..console import console
from ..errors import PropagationError
from ..provisioning.models import SecretRecord

log = logging.getLogger(__name__)

# Runtime identities only read configuration
READ_PERMISSIONS = ("get", "list")


class SecretStore:
    """Write-only view of Key Vault for the provisioner.

    Web apps read secrets with their own managed identities; the provisioner
    never reads them back.
    """

    def __init__(self, cli: AzureCli, retry_attempts: int = 3, retry_backoff: float = 10,
                 sleep: Callable[[float], None] = time.sleep):
        self.cli = cli
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff
        self._sleep = sleep

    def store_secret(self, vault: str, name: str, value: str) -> SecretRecord:
        """Store a secret value as a new version.

        Returns:
            SecretRecord carrying the version Key Vault assigned.
        """
        result = self.cli.json(
            AzCmd("keyvault", "secret set", subscription_scoped=False)
            .param("--vault-name", vault)
            .param("--name", name)
            .secret_param("--value", value)
            .param("--query", "id")
        )
        # https://<vault>.vault.azure.net/secrets/<name>/<version>
        version = str(result).rstrip("/").rsplit("/", 1)[-1] if result else ""
        console.print(f"[green]✓ Stored secret '{name}' in Key Vault '{vault}'[/green]")
        log.debug("Secret %s stored in %s as version %s", name, vault, version)
        return SecretRecord(vault_name=vault, secret_name=name, value=value, version=version)

    def grant_read_access(self, vault: str, object_id: str) -> None:
        """Give an identity exactly get/list on secrets and keys.

        A managed identity assigned moments ago may not resolve yet, so the
        policy write is retried.
        """
        retrying = Retrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_fixed(self.retry_backoff),
            retry=retry_if_exception_type(PropagationError),
            sleep=self._sleep,
            reraise=True,
        )
        retrying(lambda: self.cli.run(
            AzCmd("keyvault", "set-policy")
            .param("--name", vault)
            .param("--object-id", object_id)
            .param_list("--secret-permissions", list(READ_PERMISSIONS))
            .param_list("--key-permissions", list(READ_PERMISSIONS))
        ))
        console.print(f"[green]✓ Granted {'/'.join(READ_PERMISSIONS)} on '{vault}' to {object_id}[/green]")

    @staticmethod
    def reference(vault: str, name: str) -> str:
        """App Service Key Vault reference resolving to the latest version of a secret."""
        return f"@Microsoft.KeyVault(VaultName={vault};SecretName={name})"
