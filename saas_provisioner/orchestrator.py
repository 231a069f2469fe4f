"""Sequences a full deployment or a code-only upgrade of the SaaS accelerator."""
import logging
import subprocess
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import requests
from rich.table import Table

from .azure.cli import AzCmd
from .azure.context import AzureContext
from .azure.graph import GraphClient
from .console import console, warn
from .database.migrations import DatabaseConnection, MigrationRunner, pyodbc_connect
from .deploy.branding import download_logos
from .deploy.pipeline import BuildAndDeployPipeline
from .deploy.settings import (
    CLIENT_SECRET_NAME,
    CONNECTION_STRING_NAME,
    admin_settings,
    apply_settings,
    password_secret_name,
    portal_settings,
    set_connection_string,
    sql_connection_string,
)
from .errors import ManifestError, ProvisionerError, ResourceNotFoundError
from .identity.registrations import AppRegistrationProvisioner
from .manifest.naming import ResourceNames
from .manifest.schema import DeploymentManifest, UpgradeManifest
from .provisioning.ensurer import ResourceEnsurer
from .provisioning.models import AppRegConfig, AppRegistration, DeploymentOutcome, MigrationOutcome
from .provisioning.plan import (
    PHASES,
    compute_specs,
    key_vault_spec,
    network_specs,
    private_endpoint_specs,
    sql_specs,
)
from .provisioning.record import DeploymentRecord
from .secrets.vault import SecretStore

log = logging.getLogger(__name__)

# Deployed project -> web app role
PROJECT_TARGETS = (
    ("AdminSite", "admin"),
    ("CustomerSite", "portal"),
)


def derive_names(manifest) -> ResourceNames:
    """Validate every name a manifest implies. Makes no cloud call.

    Raises:
        NameValidationError: If a name breaks Azure naming rules.
        ManifestError: If supplied identities are incomplete.
    """
    names = ResourceNames.derive(
        manifest.prefix,
        resource_group=manifest.resource_group or "",
        key_vault=manifest.key_vault or "",
        sql_database=manifest.sql_database,
    )
    identities = getattr(manifest, "identities", None)
    if identities is not None and identities.fulfillment_app_id and not identities.fulfillment_app_secret:
        raise ManifestError(
            "A supplied fulfillment application ID needs its client secret (--ad-app-secret); "
            "the secret of an existing registration cannot be read back"
        )
    return names


def redirect_uris(base_url: str) -> List[str]:
    return [base_url, f"{base_url}/", f"{base_url}/Home/Index", f"{base_url}/Home/Index/"]


@dataclass
class UpgradeResult:
    """What an upgrade redeployed."""
    migration: Optional[MigrationOutcome] = None
    deployments: List[DeploymentOutcome] = field(default_factory=list)


class ProvisioningOrchestrator:
    """Runs the phases of a deployment in strict dependency order.

    One AzureContext is threaded through every component; nothing reads
    ambient CLI session state.
    """

    def __init__(self, manifest, context: AzureContext,
                 runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
                 sleep: Callable[[float], None] = time.sleep,
                 session: Optional[requests.Session] = None,
                 connect: Callable[[str, str], Any] = pyodbc_connect):
        self.manifest = manifest
        self.context = context
        self.names = derive_names(manifest)
        self.session = session or requests.Session()
        timing = manifest.timing

        self.ensurer = ResourceEnsurer(
            context.cli,
            readiness_timeout=timing.readiness_timeout,
            poll_interval=timing.poll_interval,
            retry_attempts=timing.retry_attempts,
            retry_backoff=timing.retry_backoff,
            sleep=sleep,
        )
        self.secrets = SecretStore(
            context.cli,
            retry_attempts=timing.retry_attempts,
            retry_backoff=timing.retry_backoff,
            sleep=sleep,
        )
        self.pipeline = BuildAndDeployPipeline(
            context.cli, self.names.resource_group, manifest.paths.src_dir, manifest.paths.publish_dir,
            readiness_timeout=timing.readiness_timeout, poll_interval=timing.poll_interval,
            runner=runner, sleep=sleep,
        )
        self.migrations = MigrationRunner(
            context, manifest.paths.src_dir, manifest.paths.publish_dir,
            allow_password_fallback=manifest.allow_password_fallback,
            persist_password=self._persist_database_password,
            runner=runner, connect=connect, session=self.session,
        )
        self.registrations: Optional[AppRegistrationProvisioner] = None
        if isinstance(manifest, DeploymentManifest):
            self.registrations = AppRegistrationProvisioner(
                context,
                graph=GraphClient(context, session=self.session),
                persist_secret=self._persist_client_secret,
                retry_attempts=timing.retry_attempts,
                retry_backoff=timing.retry_backoff,
                sleep=sleep,
            )

    def deploy(self, output_path: Optional[str] = "deployment-record.json") -> DeploymentRecord:
        """Provision every resource, deploy both web apps and write the record.

        Raises:
            ProvisionerError: On the first unrecoverable failure.
        """
        if not isinstance(self.manifest, DeploymentManifest):
            raise ManifestError("deploy needs a full deployment manifest")
        names = self.names
        location = self.manifest.location
        record = DeploymentRecord(
            tenant_id=self.context.tenant_id,
            subscription_id=self.context.subscription_id,
            resource_group=names.resource_group,
            prefix=names.prefix,
        )
        self.context.refresh_tokens()

        self._phase(1)
        self.ensurer.ensure_all(network_specs(names, location))

        self._phase(2)
        self.ensurer.ensure_all(compute_specs(names, location))
        principals = {web_app: self._assign_identity(web_app)
                      for web_app in (names.admin_web_app, names.portal_web_app)}

        self._phase(3)
        vault = self.ensurer.ensure(key_vault_spec(names, location))
        record.identities = self._ensure_registrations()
        for principal_id in principals.values():
            self.secrets.grant_read_access(names.key_vault, principal_id)

        self._phase(4)
        operator = self.context.signed_in_user()
        sql = sql_specs(names, location, operator.get("userPrincipalName", operator["id"]), operator["id"])
        self.ensurer.ensure_all(sql)
        self.secrets.store_secret(names.key_vault, CONNECTION_STRING_NAME, sql_connection_string(names))
        self.ensurer.ensure_all(private_endpoint_specs(names, location, {
            "sql": self.ensurer.ensured[sql[0].key].resource_id,
            "kv": vault.resource_id,
        }))
        record.migration = self.migrations.apply_migrations(self._database(), list(principals))
        self._apply_web_app_settings(record.identities, record.migration.role_grants)

        self._phase(5)
        self._deploy_code()

        record.resources = dict(self.ensurer.ensured)
        record.web_app_urls = {web_app: names.web_app_url(web_app) for web_app in principals}
        if output_path:
            path = record.save(output_path)
            console.print(f"[green]Deployment record saved to {path}[/green]")
        self.print_summary(record)
        return record

    def upgrade(self) -> UpgradeResult:
        """Redeploy code and schema into an existing deployment. Creates no resources.

        Raises:
            ProvisionerError: If the deployment does not exist or a step fails.
        """
        names = self.names
        self.context.refresh_tokens()
        for web_app in (names.admin_web_app, names.portal_web_app):
            try:
                self.context.cli.json(
                    AzCmd("webapp", "show")
                    .param("--resource-group", names.resource_group)
                    .param("--name", web_app)
                )
            except ResourceNotFoundError as e:
                raise ProvisionerError(
                    f"Web app '{web_app}' not found in resource group '{names.resource_group}'; "
                    "run 'deploy' first"
                ) from e

        result = UpgradeResult()
        self._phase(4)
        result.migration = self.migrations.apply_migrations(
            self._database(), [names.admin_web_app, names.portal_web_app])
        for web_app, mode in result.migration.role_grants.items():
            if mode == "password":
                set_connection_string(self.context.cli, names.resource_group, web_app,
                                      SecretStore.reference(names.key_vault, password_secret_name(web_app)))
        self._phase(5)
        result.deployments = self._deploy_code()
        console.print("[bold green]Upgrade complete[/bold green]")
        return result

    def _phase(self, number: int) -> None:
        console.rule(f"[bold blue]Phase {number}: {PHASES[number]}[/bold blue]")

    def _assign_identity(self, web_app: str) -> str:
        """Turn on the system assigned identity; returns its principal ID."""
        principal_id = self.context.cli.tsv(
            AzCmd("webapp", "identity assign")
            .param("--resource-group", self.names.resource_group)
            .param("--name", web_app)
            .param("--query", "principalId")
        )
        log.debug("Web app %s runs as %s", web_app, principal_id)
        return principal_id

    def _ensure_registrations(self) -> Dict[str, AppRegistration]:
        names = self.names
        identities = self.manifest.identities
        fulfillment = self.registrations.create_or_reuse(AppRegConfig(
            display_name=names.fulfillment_app_registration,
            application_id=identities.fulfillment_app_id,
            client_secret=identities.fulfillment_app_secret,
            confidential=True,
        ))
        if identities.fulfillment_app_id:
            # Supplied secrets were never issued here, so persist them now
            self._persist_client_secret(fulfillment)
        landing_page = self.registrations.create_or_reuse(AppRegConfig(
            display_name=names.landing_page_app_registration,
            application_id=identities.landing_page_app_id,
            redirect_uris=redirect_uris(names.web_app_url(names.portal_web_app)),
            sign_in_audience="AzureADandPersonalMicrosoftAccount",
            id_token_issuance=True,
        ))
        admin = self.registrations.create_or_reuse(AppRegConfig(
            display_name=names.admin_app_registration,
            application_id=identities.admin_app_id,
            redirect_uris=redirect_uris(names.web_app_url(names.admin_web_app)),
            id_token_issuance=True,
        ))
        return {"fulfillment": fulfillment, "landingPage": landing_page, "admin": admin}

    def _persist_client_secret(self, registration: AppRegistration) -> None:
        if not registration.client_secret:
            warn(f"No client secret available for '{registration.display_name}'")
            return
        self.secrets.store_secret(self.names.key_vault, CLIENT_SECRET_NAME, registration.client_secret)

    def _persist_database_password(self, web_app: str, password: str) -> None:
        """Store the password-based connection string of a web app in Key Vault."""
        names = self.names
        connection_string = (f"Server=tcp:{names.sql_server_fqdn};Database={names.sql_database};"
                             f"User ID={web_app};Password={password};Encrypt=True;")
        self.secrets.store_secret(names.key_vault, password_secret_name(web_app), connection_string)

    def _apply_web_app_settings(self, identities: Dict[str, AppRegistration], role_grants: Dict[str, str]) -> None:
        """Apply settings; each connection string matches how that app signs in to SQL."""
        names = self.names
        tenant_id = self.context.tenant_id
        fulfillment_app_id = identities["fulfillment"].application_id
        settings = {
            names.admin_web_app: admin_settings(
                names, tenant_id, fulfillment_app_id, identities["admin"].application_id,
                self.manifest.admin_users,
            ),
            names.portal_web_app: portal_settings(
                names, tenant_id, fulfillment_app_id, identities["landingPage"].application_id,
            ),
        }
        for web_app, app_settings in settings.items():
            if role_grants.get(web_app) == "password":
                app_settings.connection_secret = password_secret_name(web_app)
            apply_settings(self.context.cli, names.resource_group, web_app, app_settings)
        console.print("[green]✓ Web app settings applied[/green]")

    def _database(self) -> DatabaseConnection:
        return DatabaseConnection(
            resource_group=self.names.resource_group,
            server_name=self.names.sql_server,
            database=self.names.sql_database,
        )

    def _deploy_code(self) -> List[DeploymentOutcome]:
        branding = self.manifest.branding
        if branding.logo_png or branding.logo_ico:
            download_logos(self.manifest.paths.src_dir, branding.logo_png, branding.logo_ico, session=self.session)
        targets = {"admin": self.names.admin_web_app, "portal": self.names.portal_web_app}
        return [
            self.pipeline.publish_and_deploy(project, targets[role], vnet=self.names.virtual_network)
            for project, role in PROJECT_TARGETS
        ]

    def print_summary(self, record: DeploymentRecord) -> None:
        table = Table(title="Deployment Summary")
        table.add_column("Item", style="cyan")
        table.add_column("Value")
        table.add_column("Status", style="green")

        for role, registration in record.identities.items():
            status = "created" if registration.created else "reused"
            table.add_row(f"App registration ({role})", registration.application_id, status)
        for key, result in record.resources.items():
            table.add_row(key, result.resource_id, "created" if result.created else "reused")
        for web_app, url in record.web_app_urls.items():
            table.add_row(f"Web app {web_app}", url, "deployed")
        if record.migration is not None:
            for identity, mode in record.migration.role_grants.items():
                style = "[yellow]password[/yellow]" if mode == "password" else mode
                table.add_row(f"Database access ({identity})", self.names.sql_database, style)
        console.print(table)
