"""Pydantic models for deployment manifest validation."""
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ManifestModel(BaseModel):
    """Accepts both the camelCase YAML keys and the Python field names."""
    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class Identities(ManifestModel):
    """Pre-existing app registrations supplied by the operator."""
    fulfillment_app_id: Optional[str] = Field(default=None, alias='fulfillmentAppId')
    fulfillment_app_secret: Optional[str] = Field(default=None, alias='fulfillmentAppSecret', repr=False)
    landing_page_app_id: Optional[str] = Field(default=None, alias='landingPageAppId')
    admin_app_id: Optional[str] = Field(default=None, alias='adminAppId')


class Branding(ManifestModel):
    """Logo URLs downloaded into the web app sources before publishing."""
    logo_png: Optional[str] = Field(default=None, alias='logoPng')
    logo_ico: Optional[str] = Field(default=None, alias='logoIco')


class Paths(ManifestModel):
    """Where the .NET solution lives and where build output goes."""
    src_dir: str = Field(default="../src", alias='srcDir')
    publish_dir: str = Field(default="../Publish", alias='publishDir')


class Timing(ManifestModel):
    """Bounds for readiness polling and propagation retries, in seconds."""
    readiness_timeout: float = Field(default=300, alias='readinessTimeout', gt=0)
    poll_interval: float = Field(default=5, alias='pollInterval', ge=0)
    retry_attempts: int = Field(default=3, alias='retryAttempts', ge=1)
    retry_backoff: float = Field(default=10, alias='retryBackoff', ge=0)


class DeploymentManifest(ManifestModel):
    """Root manifest schema."""
    prefix: str
    location: str
    tenant_id: str = Field(alias='tenantId')
    subscription_id: str = Field(alias='subscriptionId')
    admin_users: List[str] = Field(alias='adminUsers', min_length=1)
    resource_group: Optional[str] = Field(default=None, alias='resourceGroup')
    key_vault: Optional[str] = Field(default=None, alias='keyVault')
    sql_database: str = Field(default="AMPSaaSDB", alias='sqlDatabase')
    identities: Identities = Field(default_factory=Identities)
    branding: Branding = Field(default_factory=Branding)
    paths: Paths = Field(default_factory=Paths)
    timing: Timing = Field(default_factory=Timing)
    allow_password_fallback: bool = Field(default=False, alias='allowPasswordFallback')
    quiet: bool = False

    @field_validator("admin_users", mode="before")
    @classmethod
    def split_admin_users(cls, value):
        if isinstance(value, str):
            return [user.strip() for user in value.split(",") if user.strip()]
        return value

    @field_validator("location")
    @classmethod
    def normalize_location(cls, value: str) -> str:
        # "East US" and "eastus" both name the same region for az
        return value.replace(" ", "").lower()


class UpgradeManifest(ManifestModel):
    """Parameters needed to redeploy code into an existing deployment."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    prefix: str
    tenant_id: str = Field(alias='tenantId')
    subscription_id: str = Field(alias='subscriptionId')
    resource_group: Optional[str] = Field(default=None, alias='resourceGroup')
    key_vault: Optional[str] = Field(default=None, alias='keyVault')
    sql_database: str = Field(default="AMPSaaSDB", alias='sqlDatabase')
    branding: Branding = Field(default_factory=Branding)
    paths: Paths = Field(default_factory=Paths)
    timing: Timing = Field(default_factory=Timing)
    allow_password_fallback: bool = Field(default=False, alias='allowPasswordFallback')
    quiet: bool = False
