"""Azure AD app registrations for the fulfillment API and the SSO portals."""
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from tenacity import RetryError, Retrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from ..azure.cli import AzCmd
from ..azure.context import AzureContext
from ..azure.graph import GraphClient
from ..console import console, warn
from ..errors import ManifestError, PropagationError, ProvisioningError, ResourceNotFoundError
from ..provisioning.models import AppRegConfig, AppRegistration

log = logging.getLogger(__name__)

MICROSOFT_GRAPH_APP_ID = "00000003-0000-0000-c000-000000000000"
USER_READ_SCOPE_ID = "e1fe6dd8-ba31-4d61-89e7-88639da4683d"
SECRET_DISPLAY_NAME = "SaaSAPI"
SECRET_VALIDITY_YEARS = 2


def build_application_manifest(config: AppRegConfig) -> Dict[str, Any]:
    """Graph application body for a web sign-in app."""
    manifest: Dict[str, Any] = {
        "displayName": config.display_name,
        "signInAudience": config.sign_in_audience,
        "web": {
            "redirectUris": list(config.redirect_uris),
            "implicitGrantSettings": {"enableIdTokenIssuance": config.id_token_issuance},
        },
        "requiredResourceAccess": [{
            "resourceAppId": MICROSOFT_GRAPH_APP_ID,
            "resourceAccess": [{"id": USER_READ_SCOPE_ID, "type": "Scope"}],
        }],
    }
    if config.sign_in_audience == "AzureADandPersonalMicrosoftAccount":
        # Personal accounts only work with v2 access tokens
        manifest["api"] = {"requestedAccessTokenVersion": 2}
    return manifest


class AppRegistrationProvisioner:
    """Creates app registrations or reuses ones the operator already has.

    A generated client secret is handed to ``persist_secret`` the moment it
    exists; the directory never shows it again.
    """

    def __init__(self, context: AzureContext, graph: Optional[GraphClient] = None,
                 persist_secret: Optional[Callable[[AppRegistration], None]] = None,
                 retry_attempts: int = 3, retry_backoff: float = 10,
                 sleep: Callable[[float], None] = time.sleep):
        self.context = context
        self.graph = graph or GraphClient(context)
        self.persist_secret = persist_secret
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff
        self._sleep = sleep
        # application_id -> secret issued during this run
        self._issued_secrets: Dict[str, str] = {}

    def create_or_reuse(self, config: AppRegConfig) -> AppRegistration:
        """Ensure an app registration exists and return its identifiers.

        Raises:
            ManifestError: If a supplied application ID is unknown to the tenant.
            ProvisioningError: If the service principal never becomes creatable.
        """
        if config.application_id:
            return self._reuse_supplied(config)

        existing = self._find_by_display_name(config.display_name)
        if existing:
            console.print(f"[green]✓ App registration '{config.display_name}' already exists, reusing[/green]")
            registration = AppRegistration(
                display_name=config.display_name,
                application_id=existing["appId"],
                object_id=existing["id"],
                redirect_uris=((existing.get("web") or {}).get("redirectUris") or []),
                sign_in_audience=existing.get("signInAudience", config.sign_in_audience),
            )
        else:
            registration = self._create(config)

        self._ensure_service_principal(registration.application_id, via_graph=config.needs_manifest)
        if config.confidential:
            registration.client_secret = self._issue_secret(registration)
        return registration

    def _reuse_supplied(self, config: AppRegConfig) -> AppRegistration:
        console.print(f"[blue]Using supplied application ID {config.application_id} "
                      f"for '{config.display_name}'[/blue]")
        try:
            app = self.context.cli.json(
                AzCmd("ad", "app show", subscription_scoped=False).param("--id", config.application_id)
            ) or {}
        except ResourceNotFoundError as e:
            raise ManifestError(
                f"Application ID {config.application_id} supplied for '{config.display_name}' "
                f"does not exist in tenant {self.context.tenant_id}"
            ) from e
        return AppRegistration(
            display_name=app.get("displayName", config.display_name),
            application_id=config.application_id,
            object_id=app.get("id", ""),
            client_secret=config.client_secret,
            redirect_uris=((app.get("web") or {}).get("redirectUris") or []),
            sign_in_audience=app.get("signInAudience", config.sign_in_audience),
        )

    def _find_by_display_name(self, display_name: str) -> Optional[Dict[str, Any]]:
        apps: List[Dict[str, Any]] = self.context.cli.json(
            AzCmd("ad", "app list", subscription_scoped=False).param("--display-name", display_name)
        ) or []
        matches = [app for app in apps if app.get("displayName") == display_name]
        if len(matches) > 1:
            warn(f"{len(matches)} app registrations are named '{display_name}'; using {matches[0]['appId']}")
        return matches[0] if matches else None

    def _create(self, config: AppRegConfig) -> AppRegistration:
        console.print(f"[blue]Creating app registration '{config.display_name}'...[/blue]")
        if config.needs_manifest:
            app = self.graph.create_application(build_application_manifest(config))
        else:
            app = self.context.cli.json(
                AzCmd("ad", "app create", subscription_scoped=False)
                .param("--display-name", config.display_name)
                .param("--sign-in-audience", config.sign_in_audience)
            )
        console.print(f"[green]✓ Created app registration '{config.display_name}' ({app['appId']})[/green]")
        return AppRegistration(
            display_name=config.display_name,
            application_id=app["appId"],
            object_id=app["id"],
            redirect_uris=list(config.redirect_uris),
            sign_in_audience=config.sign_in_audience,
            created=True,
        )

    def _ensure_service_principal(self, application_id: str, via_graph: bool = False) -> None:
        """Create the service principal, retrying while the new app propagates.

        Apps registered through Graph get their principal through Graph too.
        """
        cli = self.context.cli
        if via_graph:
            if self.graph.find_service_principal(application_id):
                return
            create = lambda: self.graph.create_service_principal(application_id)  # noqa: E731
        else:
            try:
                cli.json(AzCmd("ad", "sp show", subscription_scoped=False).param("--id", application_id))
                return
            except ResourceNotFoundError:
                pass
            create = lambda: cli.json(  # noqa: E731
                AzCmd("ad", "sp create", subscription_scoped=False).param("--id", application_id)
            )

        retrying = Retrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_fixed(self.retry_backoff),
            retry=retry_if_exception_type((PropagationError, ResourceNotFoundError)),
            sleep=self._sleep,
        )
        try:
            retrying(create)
        except RetryError as e:
            raise ProvisioningError(f"service principal for {application_id}", "create",
                                    self.retry_attempts, cause=e.last_attempt.exception()) from e
        log.debug("Service principal created for %s", application_id)

    def _issue_secret(self, registration: AppRegistration) -> str:
        """Generate a client secret at most once per run and persist it at once."""
        if registration.application_id in self._issued_secrets:
            return self._issued_secrets[registration.application_id]

        secret = self.context.cli.tsv(
            AzCmd("ad", "app credential reset", subscription_scoped=False)
            .param("--id", registration.application_id)
            .flag("--append")
            .param("--display-name", SECRET_DISPLAY_NAME)
            .param("--years", SECRET_VALIDITY_YEARS)
            .param("--query", "password")
        )
        self._issued_secrets[registration.application_id] = secret
        registration.client_secret = secret
        if self.persist_secret:
            self.persist_secret(registration)
        else:
            warn(f"Client secret for '{registration.display_name}' was generated but not persisted")
        return secret
