"""Resource naming scheme derived from the web app name prefix."""
import re
from dataclasses import dataclass

from ..errors import NameValidationError

MAX_PREFIX_LENGTH = 21
KEY_VAULT_MIN_LENGTH = 3
KEY_VAULT_MAX_LENGTH = 24
SQL_DATABASE_MAX_LENGTH = 128
RESOURCE_GROUP_MAX_LENGTH = 90

PREFIX_PATTERN = re.compile(r"^[a-z][a-z0-9-]*$")
KEY_VAULT_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9-]+$")
RESOURCE_GROUP_PATTERN = re.compile(r"^[-\w.()]+$")

SQL_DNS_ZONE = "privatelink.database.windows.net"
KEY_VAULT_DNS_ZONE = "privatelink.vaultcore.azure.net"


def validate_prefix(prefix: str) -> str:
    """Validate the web app name prefix.

    The prefix becomes part of public hostnames (``<prefix>-portal.azurewebsites.net``)
    so it is held to the strictest of the derived naming rules.

    Raises:
        NameValidationError: If the prefix is empty, too long or malformed.
    """
    if not prefix:
        raise NameValidationError("Web app name prefix is required")
    if len(prefix) > MAX_PREFIX_LENGTH:
        raise NameValidationError(
            f"Web app name prefix '{prefix}' is {len(prefix)} characters; "
            f"it must be at most {MAX_PREFIX_LENGTH} characters"
        )
    if not PREFIX_PATTERN.match(prefix):
        raise NameValidationError(
            f"Web app name prefix '{prefix}' must start with a lowercase letter and "
            "contain only lowercase letters, digits and hyphens"
        )
    if prefix.endswith("-"):
        raise NameValidationError(f"Web app name prefix '{prefix}' must not end with a hyphen")
    return prefix


def validate_key_vault_name(name: str) -> str:
    if not KEY_VAULT_MIN_LENGTH <= len(name) <= KEY_VAULT_MAX_LENGTH:
        raise NameValidationError(
            f"Key Vault name '{name}' must be between {KEY_VAULT_MIN_LENGTH} and "
            f"{KEY_VAULT_MAX_LENGTH} characters"
        )
    if not KEY_VAULT_PATTERN.match(name) or name.endswith("-") or "--" in name:
        raise NameValidationError(
            f"Key Vault name '{name}' must start with a letter, contain only letters, "
            "digits and single hyphens, and not end with a hyphen"
        )
    return name


def validate_resource_group_name(name: str) -> str:
    if not name or len(name) > RESOURCE_GROUP_MAX_LENGTH:
        raise NameValidationError(
            f"Resource group name '{name}' must be between 1 and {RESOURCE_GROUP_MAX_LENGTH} characters"
        )
    if not RESOURCE_GROUP_PATTERN.match(name) or name.endswith("."):
        raise NameValidationError(f"Resource group name '{name}' contains invalid characters")
    return name


@dataclass(frozen=True)
class ResourceNames:
    """Every resource name used by a deployment."""
    prefix: str
    resource_group: str
    key_vault: str
    sql_database: str

    @classmethod
    def derive(cls, prefix: str, resource_group: str = "", key_vault: str = "",
               sql_database: str = "AMPSaaSDB") -> "ResourceNames":
        """Validate the inputs and derive the full naming scheme.

        Raises:
            NameValidationError: If any name is invalid.
        """
        validate_prefix(prefix)
        names = cls(
            prefix=prefix,
            resource_group=validate_resource_group_name(resource_group or prefix),
            key_vault=validate_key_vault_name(key_vault or f"{prefix}-kv"),
            sql_database=sql_database,
        )
        if not sql_database or len(sql_database) > SQL_DATABASE_MAX_LENGTH:
            raise NameValidationError(f"SQL database name '{sql_database}' is invalid")
        return names

    @property
    def virtual_network(self) -> str:
        return f"{self.prefix}-vnet"

    @property
    def sql_server(self) -> str:
        return f"{self.prefix}-sql"

    @property
    def sql_server_fqdn(self) -> str:
        return f"{self.sql_server}.database.windows.net"

    @property
    def app_service_plan(self) -> str:
        return f"{self.prefix}-asp"

    @property
    def admin_web_app(self) -> str:
        return f"{self.prefix}-admin"

    @property
    def portal_web_app(self) -> str:
        return f"{self.prefix}-portal"

    @property
    def sql_private_endpoint(self) -> str:
        return f"{self.prefix}-db-pe"

    @property
    def key_vault_private_endpoint(self) -> str:
        return f"{self.prefix}-kv-pe"

    @property
    def sql_dns_link(self) -> str:
        return f"{self.prefix}-db-link"

    @property
    def key_vault_dns_link(self) -> str:
        return f"{self.prefix}-kv-link"

    @property
    def fulfillment_app_registration(self) -> str:
        return f"{self.prefix}-FulfillmentAppReg"

    @property
    def landing_page_app_registration(self) -> str:
        return f"{self.prefix}-LandingpageAppReg"

    @property
    def admin_app_registration(self) -> str:
        return f"{self.prefix}-AdminPortalAppReg"

    def web_app_url(self, web_app: str) -> str:
        return f"https://{web_app}.azurewebsites.net"

    def as_dict(self) -> dict:
        """All derived names, for display."""
        return {
            "Resource group": self.resource_group,
            "Virtual network": self.virtual_network,
            "SQL server": self.sql_server,
            "SQL database": self.sql_database,
            "Key Vault": self.key_vault,
            "App Service plan": self.app_service_plan,
            "Admin web app": self.admin_web_app,
            "Customer web app": self.portal_web_app,
            "SQL private endpoint": self.sql_private_endpoint,
            "Key Vault private endpoint": self.key_vault_private_endpoint,
            "Fulfillment app registration": self.fulfillment_app_registration,
            "Landing page app registration": self.landing_page_app_registration,
            "Admin app registration": self.admin_app_registration,
        }
