"""Azure CLI command builder and runner."""
import json
import logging
import subprocess
from typing import Any, Callable, List, Optional, Set

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..errors import (
    AuthError,
    AzureCliError,
    PropagationError,
    ResourceConflictError,
    ResourceNotFoundError,
)

log = logging.getLogger(__name__)

MAX_THROTTLE_RETRIES = 7
REDACTED = "***"

NOT_FOUND_MARKERS = (
    "ResourceNotFound",
    "ResourceGroupNotFound",
    "ParentResourceNotFound",
    "Request_ResourceNotFound",
    "(NotFound)",
    "was not found",
    "not found within subscription",
    "does not exist",
)
PROPAGATION_MARKERS = (
    "AnotherOperationInProgress",
    "PrincipalNotFound",
    "ReferencedResourceNotProvisioned",
    "RetryableError",
    # az ad sp create before a new application has replicated
    "does not reference a valid application object",
)
AUTH_MARKERS = (
    "AuthorizationFailed",
    "Authorization_RequestDenied",
    "Insufficient privileges",
    "AADSTS700082",
    "AADSTS70043",
    "Please run 'az login'",
)
THROTTLING_MARKERS = (
    "TooManyRequests",
    "ResourceCollectionRequestsThrottled",
)
SOFT_DELETED_MARKERS = (
    "soft deleted",
    "soft-deleted",
)
CONFLICT_MARKERS = (
    "VaultAlreadyExists",
    "NameAlreadyExists",
    "ServerNameAlreadyExists",
    "NameNotAvailable",
    "already exists",
    "already taken",
)


class ThrottledError(AzureCliError):
    """Azure Resource Manager asked the caller to slow down."""
    pass


class AzCmd:
    """Builder for Azure CLI commands."""

    def __init__(self, service: str, action: str, subscription_scoped: bool = True):
        """Initialize with service and action (e.g., 'webapp', 'create').

        Args:
            service: Top-level az command group.
            action: Sub-command, space separated.
            subscription_scoped: False for tenant-level commands (``az ad``,
                ``az account``) that do not accept ``--subscription``.
        """
        self.cmd: List[str] = service.split() + action.split()
        self.subscription_scoped = subscription_scoped
        self._redacted: Set[int] = set()

    def param(self, key: str, value: Any) -> "AzCmd":
        """Adds a key-value pair parameter"""
        self.cmd.extend([key, str(value)])
        return self

    def secret_param(self, key: str, value: str) -> "AzCmd":
        """Adds a parameter whose value never appears in logs or errors"""
        self.cmd.append(key)
        self._redacted.add(len(self.cmd))
        self.cmd.append(value)
        return self

    def param_list(self, key: str, values: List[str]) -> "AzCmd":
        """Adds a list of parameters with the same key"""
        self.cmd.append(key)
        self.cmd.extend(str(v) for v in values)
        return self

    def flag(self, flag: str) -> "AzCmd":
        """Adds a flag to the command"""
        self.cmd.append(flag)
        return self

    def has(self, key: str) -> bool:
        return key in self.cmd

    def display(self) -> str:
        shown = [REDACTED if i in self._redacted else part for i, part in enumerate(self.cmd)]
        return "az " + " ".join(shown)

    def __str__(self) -> str:
        return self.display()


def classify_error(az_cmd: AzCmd, returncode: int, stderr: str) -> AzureCliError:
    """Map az stderr to the error taxonomy."""
    command = az_cmd.display()
    if any(marker in stderr for marker in THROTTLING_MARKERS):
        return ThrottledError(command, stderr, returncode)
    if any(marker in stderr for marker in AUTH_MARKERS):
        return AuthError(command, stderr, returncode)
    if any(marker in stderr for marker in PROPAGATION_MARKERS):
        return PropagationError(command, stderr, returncode)
    if any(marker in stderr.lower() for marker in SOFT_DELETED_MARKERS):
        return ResourceConflictError(
            command, stderr, returncode,
            remediation="Purge the soft-deleted resource (e.g. 'az keyvault purge --name <vault>') "
                        "or choose a different name prefix",
        )
    if any(marker in stderr for marker in CONFLICT_MARKERS):
        return ResourceConflictError(
            command, stderr, returncode,
            remediation="The name is already reserved globally; choose a different name prefix",
        )
    if any(marker in stderr for marker in NOT_FOUND_MARKERS):
        return ResourceNotFoundError(command, stderr, returncode)
    return AzureCliError(command, stderr, returncode)


class AzureCli:
    """Runs az commands pinned to one subscription.

    Every subscription-scoped command gets an explicit ``--subscription`` so
    nothing depends on whichever subscription the CLI session last selected.
    """

    def __init__(self, subscription_id: Optional[str] = None, executable: str = "az",
                 runner: Callable[..., subprocess.CompletedProcess] = subprocess.run):
        self.subscription_id = subscription_id
        self.executable = executable
        self._runner = runner

    def run(self, az_cmd: AzCmd) -> str:
        """Run an Azure CLI command and return stdout or raise a classified error."""
        if self.subscription_id and az_cmd.subscription_scoped and not az_cmd.has("--subscription"):
            az_cmd.param("--subscription", self.subscription_id)
        if not az_cmd.has("--output") and not az_cmd.has("-o"):
            az_cmd.param("--output", "json")
        return self._run_with_throttle_retry(az_cmd)

    @retry(
        retry=retry_if_exception_type(ThrottledError),
        stop=stop_after_attempt(MAX_THROTTLE_RETRIES),
        wait=wait_exponential(multiplier=2, max=60),
        reraise=True,
    )
    def _run_with_throttle_retry(self, az_cmd: AzCmd) -> str:
        log.debug("Running: %s", az_cmd.display())
        result = self._runner([self.executable] + az_cmd.cmd, capture_output=True, text=True)
        if result.returncode != 0:
            error = classify_error(az_cmd, result.returncode, result.stderr or "")
            if isinstance(error, ThrottledError):
                log.warning("Azure throttling ongoing, retrying: %s", az_cmd.display())
            elif not isinstance(error, ResourceNotFoundError):
                log.debug("Command failed: %s\n%s", az_cmd.display(), result.stderr)
            raise error
        return result.stdout

    def json(self, az_cmd: AzCmd) -> Any:
        """Run a command and parse its JSON output. Empty output yields None."""
        output = self.run(az_cmd)
        if not output.strip():
            return None
        try:
            return json.loads(output)
        except json.JSONDecodeError as e:
            raise AzureCliError(az_cmd.display(), f"Invalid JSON output: {e}") from e

    def tsv(self, az_cmd: AzCmd) -> str:
        az_cmd.param("--output", "tsv")
        return self.run(az_cmd).strip()
