"""Per-kind adapters translating a ResourceSpec into az commands."""
from abc import ABC
from typing import Any, Dict, Optional

from ..azure.cli import AzCmd
from .models import ResourceSpec

SUCCEEDED = "Succeeded"
FAILED_STATES = {"Failed", "Canceled"}


def provisioning_state(resource: Dict[str, Any]) -> Optional[str]:
    """ARM puts provisioningState at the top level or under properties depending on the RP."""
    state = resource.get("provisioningState")
    if state is None:
        state = (resource.get("properties") or {}).get("provisioningState")
    return state


class ResourceAdapter(ABC):
    """Base class for kind-specific lookups and creates.

    Subclasses set ``group`` to the az command group and override
    ``_create_params`` and, where the resource reports something richer than
    ``provisioningState``, ``is_ready``.
    """
    kind: str = ""
    group: str = ""
    # Creates that race with a just-created dependency
    propagation_fragile: bool = False
    ready_field: Optional[str] = None
    ready_value: Optional[str] = None

    def show_cmd(self, spec: ResourceSpec) -> AzCmd:
        return AzCmd(self.group, "show").param("--resource-group", spec.resource_group).param("--name", spec.name)

    def create_cmd(self, spec: ResourceSpec) -> AzCmd:
        cmd = AzCmd(self.group, "create").param("--resource-group", spec.resource_group).param("--name", spec.name)
        return self._create_params(cmd, spec)

    def _create_params(self, cmd: AzCmd, spec: ResourceSpec) -> AzCmd:
        if spec.region:
            cmd.param("--location", spec.region)
        return cmd

    def is_ready(self, resource: Dict[str, Any]) -> bool:
        if self.ready_field:
            return resource.get(self.ready_field) == self.ready_value
        state = provisioning_state(resource)
        # Resources without a provisioning state are ready once visible
        return state is None or state == SUCCEEDED

    def has_failed(self, resource: Dict[str, Any]) -> bool:
        return provisioning_state(resource) in FAILED_STATES

    def attributes(self, resource: Dict[str, Any]) -> Dict[str, str]:
        attrs = {
            "id": resource.get("id", ""),
            "name": resource.get("name", ""),
        }
        if resource.get("location"):
            attrs["location"] = resource["location"]
        return attrs


class ResourceGroupAdapter(ResourceAdapter):
    kind = "resource_group"
    group = "group"

    def show_cmd(self, spec: ResourceSpec) -> AzCmd:
        return AzCmd(self.group, "show").param("--name", spec.name)

    def create_cmd(self, spec: ResourceSpec) -> AzCmd:
        return AzCmd(self.group, "create").param("--name", spec.name).param("--location", spec.region)


class VirtualNetworkAdapter(ResourceAdapter):
    kind = "virtual_network"
    group = "network vnet"

    def _create_params(self, cmd: AzCmd, spec: ResourceSpec) -> AzCmd:
        super()._create_params(cmd, spec)
        return cmd.param("--address-prefixes", spec.properties.get("address_prefix", "10.0.0.0/20"))


class SubnetAdapter(ResourceAdapter):
    kind = "subnet"
    group = "network vnet subnet"
    propagation_fragile = True

    def show_cmd(self, spec: ResourceSpec) -> AzCmd:
        return (AzCmd(self.group, "show")
                .param("--resource-group", spec.resource_group)
                .param("--vnet-name", spec.properties["vnet_name"])
                .param("--name", spec.name))

    def create_cmd(self, spec: ResourceSpec) -> AzCmd:
        cmd = (AzCmd(self.group, "create")
               .param("--resource-group", spec.resource_group)
               .param("--vnet-name", spec.properties["vnet_name"])
               .param("--name", spec.name)
               .param("--address-prefixes", spec.properties["address_prefix"]))
        if spec.properties.get("service_endpoints"):
            cmd.param_list("--service-endpoints", spec.properties["service_endpoints"].split())
        if spec.properties.get("delegation"):
            cmd.param("--delegations", spec.properties["delegation"])
        return cmd


class SqlServerAdapter(ResourceAdapter):
    kind = "sql_server"
    group = "sql server"
    ready_field = "state"
    ready_value = "Ready"

    def _create_params(self, cmd: AzCmd, spec: ResourceSpec) -> AzCmd:
        super()._create_params(cmd, spec)
        return (cmd.flag("--enable-ad-only-auth")
                .param("--external-admin-principal-type", "User")
                .param("--external-admin-name", spec.properties["admin_name"])
                .param("--external-admin-sid", spec.properties["admin_sid"]))

    def attributes(self, resource: Dict[str, Any]) -> Dict[str, str]:
        attrs = super().attributes(resource)
        attrs["fqdn"] = resource.get("fullyQualifiedDomainName", "")
        return attrs


class SqlDatabaseAdapter(ResourceAdapter):
    kind = "sql_database"
    group = "sql db"
    ready_field = "status"
    ready_value = "Online"

    def show_cmd(self, spec: ResourceSpec) -> AzCmd:
        return (AzCmd(self.group, "show")
                .param("--resource-group", spec.resource_group)
                .param("--server", spec.properties["server"])
                .param("--name", spec.name))

    def create_cmd(self, spec: ResourceSpec) -> AzCmd:
        return (AzCmd(self.group, "create")
                .param("--resource-group", spec.resource_group)
                .param("--server", spec.properties["server"])
                .param("--name", spec.name)
                .param("--edition", spec.properties.get("edition", "Standard"))
                .param("--capacity", spec.properties.get("capacity", "10"))
                .param("--zone-redundant", "false"))


class KeyVaultAdapter(ResourceAdapter):
    kind = "key_vault"
    group = "keyvault"

    def _create_params(self, cmd: AzCmd, spec: ResourceSpec) -> AzCmd:
        super()._create_params(cmd, spec)
        # Access policies, not RBAC, carry the web app read grants
        return cmd.param("--enable-rbac-authorization", "false")

    def attributes(self, resource: Dict[str, Any]) -> Dict[str, str]:
        attrs = super().attributes(resource)
        attrs["vault_uri"] = (resource.get("properties") or {}).get("vaultUri", "")
        return attrs


class AppServicePlanAdapter(ResourceAdapter):
    kind = "app_service_plan"
    group = "appservice plan"

    def _create_params(self, cmd: AzCmd, spec: ResourceSpec) -> AzCmd:
        super()._create_params(cmd, spec)
        return cmd.param("--sku", spec.properties.get("sku", "B1"))


class WebAppAdapter(ResourceAdapter):
    kind = "web_app"
    group = "webapp"
    ready_field = "state"
    ready_value = "Running"

    def create_cmd(self, spec: ResourceSpec) -> AzCmd:
        return (AzCmd(self.group, "create")
                .param("--resource-group", spec.resource_group)
                .param("--name", spec.name)
                .param("--plan", spec.properties["plan"])
                .param("--runtime", spec.properties.get("runtime", "dotnet:8")))

    def attributes(self, resource: Dict[str, Any]) -> Dict[str, str]:
        attrs = super().attributes(resource)
        attrs["default_host_name"] = resource.get("defaultHostName", "")
        identity = resource.get("identity") or {}
        if identity.get("principalId"):
            attrs["principal_id"] = identity["principalId"]
        return attrs


class PrivateDnsZoneAdapter(ResourceAdapter):
    kind = "private_dns_zone"
    group = "network private-dns zone"

    def _create_params(self, cmd: AzCmd, spec: ResourceSpec) -> AzCmd:
        # Private DNS zones are global
        return cmd


class PrivateEndpointAdapter(ResourceAdapter):
    kind = "private_endpoint"
    group = "network private-endpoint"
    propagation_fragile = True

    def _create_params(self, cmd: AzCmd, spec: ResourceSpec) -> AzCmd:
        super()._create_params(cmd, spec)
        return (cmd.param("--vnet-name", spec.properties["vnet_name"])
                .param("--subnet", spec.properties["subnet"])
                .param("--private-connection-resource-id", spec.properties["resource_id"])
                .param("--group-id", spec.properties["group_id"])
                .param("--connection-name", f"{spec.name}-connection"))


class PrivateDnsLinkAdapter(ResourceAdapter):
    kind = "private_dns_link"
    group = "network private-dns link vnet"
    propagation_fragile = True

    def show_cmd(self, spec: ResourceSpec) -> AzCmd:
        return (AzCmd(self.group, "show")
                .param("--resource-group", spec.resource_group)
                .param("--zone-name", spec.properties["zone_name"])
                .param("--name", spec.name))

    def create_cmd(self, spec: ResourceSpec) -> AzCmd:
        return (AzCmd(self.group, "create")
                .param("--resource-group", spec.resource_group)
                .param("--zone-name", spec.properties["zone_name"])
                .param("--name", spec.name)
                .param("--virtual-network", spec.properties["vnet_name"])
                .param("--registration-enabled", "false"))


class PrivateDnsZoneGroupAdapter(ResourceAdapter):
    kind = "private_dns_zone_group"
    group = "network private-endpoint dns-zone-group"
    propagation_fragile = True

    def show_cmd(self, spec: ResourceSpec) -> AzCmd:
        return (AzCmd(self.group, "show")
                .param("--resource-group", spec.resource_group)
                .param("--endpoint-name", spec.properties["endpoint_name"])
                .param("--name", spec.name))

    def create_cmd(self, spec: ResourceSpec) -> AzCmd:
        return (AzCmd(self.group, "create")
                .param("--resource-group", spec.resource_group)
                .param("--endpoint-name", spec.properties["endpoint_name"])
                .param("--name", spec.name)
                .param("--private-dns-zone", spec.properties["zone_name"])
                .param("--zone-name", spec.properties["zone_name"]))


class SqlVnetRuleAdapter(ResourceAdapter):
    kind = "sql_vnet_rule"
    group = "sql server vnet-rule"
    propagation_fragile = True

    def show_cmd(self, spec: ResourceSpec) -> AzCmd:
        return (AzCmd(self.group, "show")
                .param("--resource-group", spec.resource_group)
                .param("--server", spec.properties["server"])
                .param("--name", spec.name))

    def create_cmd(self, spec: ResourceSpec) -> AzCmd:
        return (AzCmd(self.group, "create")
                .param("--resource-group", spec.resource_group)
                .param("--server", spec.properties["server"])
                .param("--name", spec.name)
                .param("--vnet-name", spec.properties["vnet_name"])
                .param("--subnet", spec.properties["subnet"]))


class AdapterRegistry:
    """Registry of resource adapters keyed by kind."""

    def __init__(self):
        self.adapters: Dict[str, ResourceAdapter] = {}
        for adapter in (
            ResourceGroupAdapter(),
            VirtualNetworkAdapter(),
            SubnetAdapter(),
            SqlServerAdapter(),
            SqlDatabaseAdapter(),
            KeyVaultAdapter(),
            AppServicePlanAdapter(),
            WebAppAdapter(),
            PrivateDnsZoneAdapter(),
            PrivateEndpointAdapter(),
            PrivateDnsLinkAdapter(),
            PrivateDnsZoneGroupAdapter(),
            SqlVnetRuleAdapter(),
        ):
            self.register(adapter)

    def register(self, adapter: ResourceAdapter) -> None:
        self.adapters[adapter.kind] = adapter

    def get_adapter(self, kind: str) -> ResourceAdapter:
        """Get the adapter for a resource kind.

        Raises:
            KeyError: If no adapter handles the kind.
        """
        if kind not in self.adapters:
            raise KeyError(f"No adapter registered for resource kind '{kind}'")
        return self.adapters[kind]
