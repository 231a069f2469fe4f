"""Deployment record written at the end of a run."""
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from .models import AppRegistration, MigrationOutcome, ProvisioningResult


@dataclass
class DeploymentRecord:
    """What a deployment created or reused. Holds identifiers only, never secret values."""
    tenant_id: str
    subscription_id: str
    resource_group: str
    prefix: str
    identities: Dict[str, AppRegistration] = field(default_factory=dict)
    resources: Dict[str, ProvisioningResult] = field(default_factory=dict)
    web_app_urls: Dict[str, str] = field(default_factory=dict)
    migration: Optional[MigrationOutcome] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def created_resources(self) -> List[str]:
        return [key for key, result in self.resources.items() if result.created]

    def to_dict(self) -> dict:
        result = {
            "tenantId": self.tenant_id,
            "subscriptionId": self.subscription_id,
            "resourceGroup": self.resource_group,
            "prefix": self.prefix,
            "createdAt": self.created_at.isoformat(),
            "identities": {
                role: {
                    "displayName": registration.display_name,
                    "applicationId": registration.application_id,
                    "objectId": registration.object_id,
                    "created": registration.created,
                } for role, registration in self.identities.items()
            },
            "resources": {
                key: {"id": res.resource_id, "created": res.created}
                for key, res in self.resources.items()
            },
            "webApps": dict(self.web_app_urls),
        }
        if self.migration is not None:
            result["database"] = {
                "scriptApplied": self.migration.script_applied,
                "roleGrants": dict(self.migration.role_grants),
            }
        return result

    def save(self, output_path: str) -> Path:
        """Save the record to a JSON file.

        Args:
            output_path: Path to write the JSON file.
        """
        path = Path(output_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)
        return path
