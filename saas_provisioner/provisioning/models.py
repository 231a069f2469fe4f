"""Data models for provisioning results."""
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional


@dataclass
class ResourceSpec:
    """Declarative description of one cloud resource to ensure exists."""
    kind: str
    name: str
    resource_group: str
    region: str = ""
    depends_on: List[str] = field(default_factory=list)
    properties: Dict[str, str] = field(default_factory=dict)

    @property
    def key(self) -> str:
        """Identity of the spec; two specs with the same key are one resource."""
        return f"{self.kind}:{self.resource_group}/{self.name}"

    def __str__(self) -> str:
        return f"{self.kind} '{self.name}'"


@dataclass
class ProvisioningResult:
    """Outcome of ensuring a ResourceSpec."""
    resource_id: str
    created: bool
    attributes: Dict[str, str] = field(default_factory=dict)


@dataclass
class AppRegConfig:
    """What an app registration should look like."""
    display_name: str
    application_id: Optional[str] = None
    client_secret: Optional[str] = field(default=None, repr=False)
    confidential: bool = False
    redirect_uris: List[str] = field(default_factory=list)
    sign_in_audience: str = "AzureADMyOrg"
    id_token_issuance: bool = False

    @property
    def needs_manifest(self) -> bool:
        """Web platform settings can only be set through a Graph manifest."""
        return bool(self.redirect_uris) or self.id_token_issuance or self.sign_in_audience != "AzureADMyOrg"


@dataclass
class AppRegistration:
    """Identity entity in the directory."""
    display_name: str
    application_id: str
    object_id: str
    client_secret: Optional[str] = field(default=None, repr=False)
    redirect_uris: List[str] = field(default_factory=list)
    sign_in_audience: str = "AzureADMyOrg"
    created: bool = False


@dataclass
class SecretRecord:
    """A value stored in Key Vault. The value is never part of the repr."""
    vault_name: str
    secret_name: str
    value: str = field(repr=False)
    version: str = ""


@dataclass
class DeploymentPackage:
    """Build output bundled for upload."""
    source_path: Path
    publish_dir: Path
    artifact_path: Path


@dataclass
class DeploymentOutcome:
    """Result of publishing one project to one web app."""
    web_app: str
    package: DeploymentPackage
    deployed: bool = False
    vnet_integrated: bool = False


@dataclass
class MigrationOutcome:
    """Result of applying migrations and granting database roles."""
    script_path: Path
    script_applied: bool = False
    role_grants: Dict[str, str] = field(default_factory=dict)

    @property
    def password_fallbacks(self) -> List[str]:
        return [identity for identity, mode in self.role_grants.items() if mode == "password"]
