"""ResourceSpecs for each phase of a deployment, in dependency order."""
from typing import Dict, List

from ..manifest.naming import KEY_VAULT_DNS_ZONE, SQL_DNS_ZONE, ResourceNames
from .models import ResourceSpec

VNET_ADDRESS_PREFIX = "10.0.0.0/20"

# name -> (address prefix, service endpoints, delegation)
SUBNETS = {
    "default": ("10.0.0.0/24", "", ""),
    "web": ("10.0.1.0/24", "Microsoft.Sql Microsoft.KeyVault", "Microsoft.Web/serverfarms"),
    "sql": ("10.0.2.0/24", "", ""),
    "kv": ("10.0.3.0/24", "", ""),
}

# Phases run in this order; every resource of a phase depends only on earlier ones
PHASES = {
    1: "network",
    2: "compute",
    3: "identity",
    4: "data",
    5: "deploy",
}


def _key(kind: str, name: str, names: ResourceNames) -> str:
    return ResourceSpec(kind, name, names.resource_group).key


def network_specs(names: ResourceNames, location: str) -> List[ResourceSpec]:
    """Resource group, virtual network and its subnets."""
    rg = ResourceSpec("resource_group", names.resource_group, names.resource_group, location)
    vnet = ResourceSpec(
        "virtual_network", names.virtual_network, names.resource_group, location,
        depends_on=[rg.key],
        properties={"address_prefix": VNET_ADDRESS_PREFIX},
    )
    specs = [rg, vnet]
    for subnet, (prefix, endpoints, delegation) in SUBNETS.items():
        specs.append(ResourceSpec(
            "subnet", subnet, names.resource_group, location,
            depends_on=[vnet.key],
            properties={
                "vnet_name": names.virtual_network,
                "address_prefix": prefix,
                "service_endpoints": endpoints,
                "delegation": delegation,
            },
        ))
    return specs


def compute_specs(names: ResourceNames, location: str) -> List[ResourceSpec]:
    """App Service plan and the admin and customer web apps."""
    rg_key = _key("resource_group", names.resource_group, names)
    plan = ResourceSpec(
        "app_service_plan", names.app_service_plan, names.resource_group, location,
        depends_on=[rg_key], properties={"sku": "B1"},
    )
    specs = [plan]
    for web_app in (names.admin_web_app, names.portal_web_app):
        specs.append(ResourceSpec(
            "web_app", web_app, names.resource_group, location,
            depends_on=[plan.key],
            properties={"plan": names.app_service_plan, "runtime": "dotnet:8"},
        ))
    return specs


def key_vault_spec(names: ResourceNames, location: str) -> ResourceSpec:
    return ResourceSpec(
        "key_vault", names.key_vault, names.resource_group, location,
        depends_on=[_key("resource_group", names.resource_group, names)],
    )


def sql_specs(names: ResourceNames, location: str, admin_name: str, admin_sid: str) -> List[ResourceSpec]:
    """SQL server with the operator as Azure AD admin, its database and VNet rule."""
    server = ResourceSpec(
        "sql_server", names.sql_server, names.resource_group, location,
        depends_on=[_key("resource_group", names.resource_group, names)],
        properties={"admin_name": admin_name, "admin_sid": admin_sid},
    )
    database = ResourceSpec(
        "sql_database", names.sql_database, names.resource_group, location,
        depends_on=[server.key],
        properties={"server": names.sql_server, "edition": "Standard", "capacity": "10"},
    )
    vnet_rule = ResourceSpec(
        "sql_vnet_rule", f"{names.prefix}-vnet-rule", names.resource_group, location,
        depends_on=[server.key],
        properties={"server": names.sql_server, "vnet_name": names.virtual_network, "subnet": "web"},
    )
    return [server, database, vnet_rule]


def private_endpoint_specs(names: ResourceNames, location: str,
                           target_ids: Dict[str, str]) -> List[ResourceSpec]:
    """Private DNS zones, VNet links, endpoints and zone groups for SQL and Key Vault.

    Args:
        target_ids: Resource IDs of the SQL server and Key Vault, keyed
            "sql" and "kv".
    """
    targets = [
        ("sql", "sqlServer", SQL_DNS_ZONE, names.sql_private_endpoint, names.sql_dns_link),
        ("kv", "vault", KEY_VAULT_DNS_ZONE, names.key_vault_private_endpoint, names.key_vault_dns_link),
    ]
    specs: List[ResourceSpec] = []
    for subnet, group_id, zone_name, endpoint_name, link_name in targets:
        zone = ResourceSpec("private_dns_zone", zone_name, names.resource_group)
        link = ResourceSpec(
            "private_dns_link", link_name, names.resource_group,
            depends_on=[zone.key],
            properties={"zone_name": zone_name, "vnet_name": names.virtual_network},
        )
        endpoint = ResourceSpec(
            "private_endpoint", endpoint_name, names.resource_group, location,
            properties={
                "vnet_name": names.virtual_network,
                "subnet": subnet,
                "resource_id": target_ids[subnet],
                "group_id": group_id,
            },
        )
        zone_group = ResourceSpec(
            "private_dns_zone_group", f"{endpoint_name}-zone-group", names.resource_group,
            depends_on=[endpoint.key, link.key],
            properties={"endpoint_name": endpoint_name, "zone_name": zone_name},
        )
        specs.extend([zone, link, endpoint, zone_group])
    return specs
