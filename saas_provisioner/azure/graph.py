"""Minimal Microsoft Graph REST client for application registrations."""
import logging
from typing import Any, Dict, Optional

import requests

from ..errors import AuthError, AzureCliError, PropagationError, ResourceNotFoundError
from .context import GRAPH_AUDIENCE, AzureContext

log = logging.getLogger(__name__)

GRAPH_URL = "https://graph.microsoft.com/v1.0"
REQUEST_TIMEOUT = 60


class GraphClient:
    """Calls Graph with a token taken from the run's context before every request."""

    def __init__(self, context: AzureContext, session: Optional[requests.Session] = None):
        self.context = context
        self.session = session or requests.Session()

    def _request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None,
                 params: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        token = self.context.get_token(GRAPH_AUDIENCE)
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        url = f"{GRAPH_URL}{path}"
        log.debug("Graph %s %s", method, url)
        try:
            response = self.session.request(method, url, headers=headers, json=body,
                                            params=params, timeout=REQUEST_TIMEOUT)
        except requests.exceptions.RequestException as e:
            raise AzureCliError(f"{method} {url}", str(e)) from e

        if response.status_code >= 400:
            raise self._classify(method, url, response)
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    @staticmethod
    def _classify(method: str, url: str, response: requests.Response) -> AzureCliError:
        command = f"{method} {url}"
        text = response.text
        if response.status_code == 404:
            return ResourceNotFoundError(command, text, response.status_code)
        if response.status_code in (401, 403):
            return AuthError(command, text, response.status_code)
        # A principal created moments ago is not visible yet
        if response.status_code == 400 and "does not reference a valid application object" in text:
            return PropagationError(command, text, response.status_code)
        return AzureCliError(command, text, response.status_code)

    def create_application(self, manifest: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "/applications", body=manifest)

    def find_service_principal(self, application_id: str) -> Optional[Dict[str, Any]]:
        result = self._request("GET", "/servicePrincipals",
                               params={"$filter": f"appId eq '{application_id}'"})
        principals = result.get("value", [])
        return principals[0] if principals else None

    def create_service_principal(self, application_id: str) -> Dict[str, Any]:
        return self._request("POST", "/servicePrincipals", body={"appId": application_id})
