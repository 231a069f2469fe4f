"""Error hierarchy for the provisioner."""
from typing import Optional


class ProvisionerError(Exception):
    """Base class for every error the provisioner raises on purpose."""
    pass


class ManifestError(ProvisionerError):
    """Raised when the deployment manifest or CLI parameters are invalid."""
    pass


class NameValidationError(ManifestError):
    """Raised when a derived resource name breaks Azure naming rules."""
    pass


class AzureCliError(ProvisionerError):
    """Raised when an az command exits non-zero."""

    def __init__(self, command: str, stderr: str, returncode: int = 1):
        self.command = command
        self.stderr = stderr
        self.returncode = returncode
        super().__init__(f"Command failed: {command}\n{stderr.strip()}")


class ResourceNotFoundError(AzureCliError):
    """The resource does not exist. Not a failure on existence checks."""
    pass


class PropagationError(AzureCliError):
    """A dependency created moments ago is not yet visible to the control plane."""
    pass


class AuthError(AzureCliError):
    """The signed-in principal lacks permission for the action."""
    pass


class TokenRefreshError(ProvisionerError):
    """Acquiring a fresh access token for a downstream audience failed."""
    pass


class ResourceConflictError(AzureCliError):
    """The name is reserved globally or held by a soft-deleted resource."""

    def __init__(self, command: str, stderr: str, returncode: int = 1, remediation: Optional[str] = None):
        super().__init__(command, stderr, returncode)
        self.remediation = remediation

    def __str__(self) -> str:
        message = super().__str__()
        if self.remediation:
            message += f"\nSuggested fix: {self.remediation}"
        return message


class ProvisioningError(ProvisionerError):
    """Raised when a resource cannot be brought into existence."""

    def __init__(self, resource: str, operation: str, attempts: int, cause: Optional[Exception] = None):
        self.resource = resource
        self.operation = operation
        self.attempts = attempts
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"{operation} failed for {resource} after {attempts} attempt(s){detail}")


class ExternalToolError(ProvisionerError):
    """A build or database tool exited non-zero. stderr is kept verbatim."""

    def __init__(self, tool: str, returncode: int, stderr: str):
        self.tool = tool
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"{tool} exited with code {returncode}\n{stderr}")
