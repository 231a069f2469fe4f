"""Explicit tenant/subscription context threaded through every step."""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from azure.core.credentials import TokenCredential
from azure.core.exceptions import ClientAuthenticationError
from azure.identity import AzureCliCredential

from ..errors import AzureCliError, ManifestError, TokenRefreshError
from .cli import AzCmd, AzureCli

log = logging.getLogger(__name__)

GRAPH_AUDIENCE = "https://graph.microsoft.com"
SQL_AUDIENCE = "https://database.windows.net"
KNOWN_AUDIENCES = (GRAPH_AUDIENCE, SQL_AUDIENCE)


@dataclass
class AzureContext:
    """Tenant, subscription and credential for one run.

    Nothing reads the az session's "current subscription"; commands get the
    subscription from here.
    """
    tenant_id: str
    subscription_id: str
    cli: AzureCli
    credential: TokenCredential
    _signed_in_user: Optional[Dict[str, Any]] = field(default=None, repr=False)

    @classmethod
    def select(cls, tenant_id: str, subscription_id: str) -> "AzureContext":
        """Build a context and check the signed-in account can reach the subscription.

        Raises:
            ManifestError: If the subscription belongs to another tenant.
            AzureCliError: If the subscription is not accessible.
        """
        cli = AzureCli(subscription_id)
        context = cls(
            tenant_id=tenant_id,
            subscription_id=subscription_id,
            cli=cli,
            credential=AzureCliCredential(tenant_id=tenant_id),
        )
        account = cli.json(
            AzCmd("account", "show", subscription_scoped=False).param("--subscription", subscription_id)
        ) or {}
        if account.get("tenantId") and account["tenantId"].lower() != tenant_id.lower():
            raise ManifestError(
                f"Subscription {subscription_id} belongs to tenant {account['tenantId']}, "
                f"not {tenant_id}"
            )
        log.debug("Using subscription %s (%s)", subscription_id, account.get("name", ""))
        return context

    def get_token(self, audience: str) -> str:
        """Acquire a fresh access token for a downstream audience.

        Raises:
            TokenRefreshError: If no token can be acquired. Not retried.
        """
        try:
            return self.credential.get_token(f"{audience}/.default", tenant_id=self.tenant_id).token
        except ClientAuthenticationError as e:
            raise TokenRefreshError(
                f"Could not acquire a token for {audience} in tenant {self.tenant_id}. "
                f"Run 'az login --tenant {self.tenant_id}' and retry."
            ) from e

    def refresh_tokens(self) -> None:
        """Fetch tokens for every audience later steps call, before they need them."""
        for audience in KNOWN_AUDIENCES:
            self.get_token(audience)
            log.debug("Token for %s refreshed", audience)

    def signed_in_user(self) -> Dict[str, Any]:
        """The operator running the deployment (``id`` and ``userPrincipalName``)."""
        if self._signed_in_user is None:
            user = self.cli.json(AzCmd("ad", "signed-in-user show", subscription_scoped=False))
            if not user or "id" not in user:
                raise AzureCliError("az ad signed-in-user show", "No signed-in user returned")
            self._signed_in_user = user
        return self._signed_in_user
