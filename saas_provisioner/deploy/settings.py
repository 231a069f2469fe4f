"""App settings and connection strings for the admin and customer web apps."""
from dataclasses import dataclass
from typing import Dict, List

from ..azure.cli import AzCmd, AzureCli
from ..manifest.naming import ResourceNames
from ..secrets.vault import SecretStore

MARKETPLACE_API_RESOURCE = "20e940b3-4c77-4b0b-9a53-9e16a1b010a7"
MARKETPLACE_API_URL = "https://marketplaceapi.microsoft.com/api/"
AD_AUTHENTICATION_ENDPOINT = "https://login.microsoftonline.com"

CLIENT_SECRET_NAME = "ADApplicationSecret"
CONNECTION_STRING_NAME = "DefaultConnection"


def password_secret_name(web_app: str) -> str:
    """Key Vault secret holding the connection string of a password-based database user."""
    return f"{CONNECTION_STRING_NAME}-{web_app}"


def sql_connection_string(names: ResourceNames) -> str:
    """Connection string the web apps use with their managed identities."""
    return (f"Server=tcp:{names.sql_server_fqdn};Database={names.sql_database};"
            "TrustServerCertificate=True;Authentication=Active Directory Managed Identity;")


@dataclass
class WebAppSettings:
    """Everything a web app needs to reach the marketplace API and its database."""
    tenant_id: str
    fulfillment_app_id: str
    sign_in_app_id: str
    signed_out_url: str
    key_vault: str
    known_users: str = ""
    connection_secret: str = CONNECTION_STRING_NAME

    def app_settings(self) -> Dict[str, str]:
        settings = {
            "SaaSApiConfiguration__AdAuthenticationEndPoint": AD_AUTHENTICATION_ENDPOINT,
            "SaaSApiConfiguration__ClientId": self.fulfillment_app_id,
            "SaaSApiConfiguration__ClientSecret": SecretStore.reference(self.key_vault, CLIENT_SECRET_NAME),
            "SaaSApiConfiguration__GrantType": "client_credentials",
            "SaaSApiConfiguration__MTClientId": self.sign_in_app_id,
            "SaaSApiConfiguration__IsAdminPortalMultiTenant": "false",
            "SaaSApiConfiguration__Resource": MARKETPLACE_API_RESOURCE,
            "SaaSApiConfiguration__SaaSAppUrl": MARKETPLACE_API_URL,
            "SaaSApiConfiguration__SignedOutRedirectUri": self.signed_out_url,
            "SaaSApiConfiguration__TenantId": self.tenant_id,
            "SaaSApiConfiguration__SupportMeteredBilling": "true",
        }
        if self.known_users:
            settings["KnownUsers"] = self.known_users
        return settings

    def connection_string(self) -> str:
        return SecretStore.reference(self.key_vault, self.connection_secret)


def admin_settings(names: ResourceNames, tenant_id: str, fulfillment_app_id: str,
                   admin_app_id: str, admin_users: List[str]) -> WebAppSettings:
    return WebAppSettings(
        tenant_id=tenant_id,
        fulfillment_app_id=fulfillment_app_id,
        sign_in_app_id=admin_app_id,
        signed_out_url=f"{names.web_app_url(names.admin_web_app)}/Home/Index/",
        key_vault=names.key_vault,
        known_users=",".join(admin_users),
    )


def portal_settings(names: ResourceNames, tenant_id: str, fulfillment_app_id: str,
                    landing_page_app_id: str) -> WebAppSettings:
    return WebAppSettings(
        tenant_id=tenant_id,
        fulfillment_app_id=fulfillment_app_id,
        sign_in_app_id=landing_page_app_id,
        signed_out_url=f"{names.web_app_url(names.portal_web_app)}/Home/Index/",
        key_vault=names.key_vault,
    )


def set_connection_string(cli: AzureCli, resource_group: str, web_app: str, reference: str) -> None:
    cli.run(
        AzCmd("webapp", "config connection-string set")
        .param("--resource-group", resource_group)
        .param("--name", web_app)
        .param("--connection-string-type", "SQLAzure")
        .param("--settings", f"{CONNECTION_STRING_NAME}={reference}")
    )


def apply_settings(cli: AzureCli, resource_group: str, web_app: str, settings: WebAppSettings) -> None:
    """Write app settings and the Key Vault backed connection string to a web app."""
    set_connection_string(cli, resource_group, web_app, settings.connection_string())
    cli.run(
        AzCmd("webapp", "config appsettings set")
        .param("--resource-group", resource_group)
        .param("--name", web_app)
        .param_list("--settings", [f"{key}={value}" for key, value in settings.app_settings().items()])
    )
    cli.run(
        AzCmd("webapp", "config set")
        .param("--resource-group", resource_group)
        .param("--name", web_app)
        .param("--always-on", "true")
    )
