"""SaaS accelerator deployment CLI entrypoint."""
from typing import Optional

import typer
from rich.markup import escape
from rich.table import Table

from saas_provisioner.azure.context import AzureContext
from saas_provisioner.console import configure, console, err_console
from saas_provisioner.errors import ManifestError, ProvisionerError
from saas_provisioner.manifest.parser import ManifestParser
from saas_provisioner.orchestrator import ProvisioningOrchestrator, derive_names

app = typer.Typer(help="SaaS Accelerator Provisioner - idempotent Azure deployment of the marketplace accelerator")

EXIT_FAILURE = 1
EXIT_INVALID = 2


def _fail(message: str, code: int) -> None:
    err_console.print(f"[bold red]Error: {escape(message)}[/]")
    raise typer.Exit(code=code)


def _load(loader, config: Optional[str], overrides: dict):
    try:
        manifest = loader(config, overrides)
        names = derive_names(manifest)
    except FileNotFoundError as e:
        _fail(f"Manifest not found: {e.filename}", EXIT_INVALID)
    except (KeyError, ManifestError) as e:
        _fail(str(e), EXIT_INVALID)
    return manifest, names


@app.command("deploy")
def deploy(
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to the deployment YAML file"),
    prefix: Optional[str] = typer.Option(None, "--prefix", help="Web app name prefix (1-21 characters)"),
    location: Optional[str] = typer.Option(None, "--location", help="Azure region, e.g. eastus"),
    tenant_id: Optional[str] = typer.Option(None, "--tenant-id", help="Azure AD tenant ID"),
    subscription_id: Optional[str] = typer.Option(None, "--subscription-id", help="Subscription to deploy into"),
    admin_users: Optional[str] = typer.Option(None, "--admin-users", help="Comma separated admin portal users"),
    ad_app_id: Optional[str] = typer.Option(None, "--ad-app-id", help="Existing fulfillment API application ID"),
    ad_app_secret: Optional[str] = typer.Option(None, "--ad-app-secret", help="Secret of the existing fulfillment app"),
    ad_mt_app_id: Optional[str] = typer.Option(None, "--ad-mt-app-id", help="Existing landing page SSO application ID"),
    ad_admin_app_id: Optional[str] = typer.Option(None, "--ad-admin-app-id", help="Existing admin portal SSO application ID"),
    key_vault: Optional[str] = typer.Option(None, "--key-vault", help="Key Vault name (default <prefix>-kv)"),
    resource_group: Optional[str] = typer.Option(None, "--resource-group", help="Resource group (default <prefix>)"),
    sql_database: Optional[str] = typer.Option(None, "--sql-database", help="SQL database name"),
    logo_png: Optional[str] = typer.Option(None, "--logo-png", help="URL of a PNG logo for both sites"),
    logo_ico: Optional[str] = typer.Option(None, "--logo-ico", help="URL of an ICO favicon for both sites"),
    allow_password_fallback: Optional[bool] = typer.Option(
        None, "--allow-password-fallback",
        help="Create password-based database users if the Azure AD grant fails"),
    output: str = typer.Option("deployment-record.json", "--output", "-o", help="Path for the deployment record"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only print warnings and errors"),
    debug: bool = typer.Option(False, "--debug", help="Print every Azure CLI command and diagnostic logs"),
):
    """Provision all resources and identities, then deploy both web apps."""
    configure(quiet=quiet, debug=debug)
    manifest, names = _load(ManifestParser.load, config, {
        "prefix": prefix,
        "location": location,
        "tenant_id": tenant_id,
        "subscription_id": subscription_id,
        "admin_users": admin_users,
        "identities.fulfillment_app_id": ad_app_id,
        "identities.fulfillment_app_secret": ad_app_secret,
        "identities.landing_page_app_id": ad_mt_app_id,
        "identities.admin_app_id": ad_admin_app_id,
        "key_vault": key_vault,
        "resource_group": resource_group,
        "sql_database": sql_database,
        "branding.logo_png": logo_png,
        "branding.logo_ico": logo_ico,
        "allow_password_fallback": allow_password_fallback,
    })
    configure(quiet=quiet or manifest.quiet, debug=debug)

    console.print(f"[bold blue]Deploying '{names.prefix}' into resource group '{names.resource_group}'...[/]")
    try:
        context = AzureContext.select(manifest.tenant_id, manifest.subscription_id)
        ProvisioningOrchestrator(manifest, context).deploy(output)
    except ProvisionerError as e:
        _fail(str(e), EXIT_FAILURE)
    console.print("[bold green]Deployment complete[/]")


@app.command("upgrade")
def upgrade(
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to the deployment YAML file"),
    prefix: Optional[str] = typer.Option(None, "--prefix", help="Web app name prefix of the deployment"),
    resource_group: Optional[str] = typer.Option(None, "--resource-group", help="Resource group (default <prefix>)"),
    tenant_id: Optional[str] = typer.Option(None, "--tenant-id", help="Azure AD tenant ID"),
    subscription_id: Optional[str] = typer.Option(None, "--subscription-id", help="Subscription of the deployment"),
    allow_password_fallback: Optional[bool] = typer.Option(
        None, "--allow-password-fallback",
        help="Create password-based database users if the Azure AD grant fails"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only print warnings and errors"),
    debug: bool = typer.Option(False, "--debug", help="Print every Azure CLI command and diagnostic logs"),
):
    """Apply migrations and redeploy code into an existing deployment."""
    configure(quiet=quiet, debug=debug)
    manifest, names = _load(ManifestParser.load_upgrade, config, {
        "prefix": prefix,
        "resource_group": resource_group,
        "tenant_id": tenant_id,
        "subscription_id": subscription_id,
        "allow_password_fallback": allow_password_fallback,
    })
    configure(quiet=quiet or manifest.quiet, debug=debug)

    console.print(f"[bold blue]Upgrading '{names.prefix}' in resource group '{names.resource_group}'...[/]")
    try:
        context = AzureContext.select(manifest.tenant_id, manifest.subscription_id)
        ProvisioningOrchestrator(manifest, context).upgrade()
    except ProvisionerError as e:
        _fail(str(e), EXIT_FAILURE)


@app.command("validate")
def validate(
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to the deployment YAML file"),
    prefix: Optional[str] = typer.Option(None, "--prefix", help="Web app name prefix (1-21 characters)"),
    location: Optional[str] = typer.Option(None, "--location", help="Azure region"),
    tenant_id: Optional[str] = typer.Option(None, "--tenant-id", help="Azure AD tenant ID"),
    subscription_id: Optional[str] = typer.Option(None, "--subscription-id", help="Subscription ID"),
    admin_users: Optional[str] = typer.Option(None, "--admin-users", help="Comma separated admin portal users"),
    key_vault: Optional[str] = typer.Option(None, "--key-vault", help="Key Vault name"),
    resource_group: Optional[str] = typer.Option(None, "--resource-group", help="Resource group"),
):
    """Validate parameters and show the resource names a deployment would use."""
    configure()
    _, names = _load(ManifestParser.load, config, {
        "prefix": prefix,
        "location": location,
        "tenant_id": tenant_id,
        "subscription_id": subscription_id,
        "admin_users": admin_users,
        "key_vault": key_vault,
        "resource_group": resource_group,
    })

    table = Table(title="Resource Names")
    table.add_column("Resource", style="cyan")
    table.add_column("Name")
    for resource, name in names.as_dict().items():
        table.add_row(resource, name)
    console.print(table)
    console.print("[green]Parameters are valid[/]")


if __name__ == "__main__":
    app()
