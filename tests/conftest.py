"""Shared fixtures: a fake az control plane, fake build tools and a fake credential."""
import json
import re
import subprocess
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Tuple
from unittest.mock import MagicMock

import pytest
from azure.core.credentials import AccessToken

from saas_provisioner.azure.cli import AzureCli
from saas_provisioner.azure.context import AzureContext
from saas_provisioner.manifest.schema import DeploymentManifest

TENANT_ID = "11111111-1111-1111-1111-111111111111"
SUBSCRIPTION_ID = "22222222-2222-2222-2222-222222222222"
OPERATOR = {"id": "operator-oid", "userPrincipalName": "operator@contoso.com"}

NOT_FOUND = "ERROR: (ResourceNotFound) The Resource was not found."

# Fields a freshly created resource reports, by az command group
READY_FIELDS = {
    "webapp": {"state": "Running"},
    "sql server": {"state": "Ready"},
    "sql db": {"status": "Online"},
}


def _positional(args: List[str]) -> List[str]:
    words = []
    for arg in args:
        if arg.startswith("-"):
            break
        words.append(arg)
    return words


def _options(args: List[str]) -> Dict[str, Any]:
    opts: Dict[str, Any] = {}
    key = None
    for arg in args[len(_positional(args)):]:
        if arg.startswith("--"):
            key = arg
            opts[key] = []
        elif key is not None:
            opts[key].append(arg)
    return {k: (True if not v else v[0] if len(v) == 1 else v) for k, v in opts.items()}


class FakeAzure:
    """Stands in for the az executable: records every command and keeps resources in memory."""

    def __init__(self):
        self.resources: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.secrets: Dict[Tuple[str, str], List[str]] = {}
        self.policies: Dict[Tuple[str, str], Set[str]] = {}
        self.calls: List[List[str]] = []
        self.handlers: List[Tuple[Tuple[str, ...], Callable[[Dict[str, Any]], Any]]] = []
        self.failures: Dict[Tuple[str, ...], List[str]] = {}
        # Groups whose creates succeed but never become visible
        self.invisible: Set[str] = set()
        # Groups whose resources stay in a non-terminal provisioning state
        self.stuck: Set[str] = set()
        self._counter = 0

    def __call__(self, cmd: List[str], capture_output: bool = True, text: bool = True, **kwargs):
        args = list(cmd[1:])
        self.calls.append(args)
        words = tuple(_positional(args))
        opts = _options(args)

        for prefix, queue in self.failures.items():
            if words[:len(prefix)] == prefix and queue:
                return self._completed(cmd, 1, "", queue.pop(0))
        for prefix, handler in self.handlers:
            if words[:len(prefix)] == prefix:
                return self._output(cmd, handler(opts), opts)

        try:
            result = self._dispatch(words, opts)
        except LookupError:
            return self._completed(cmd, 3, "", NOT_FOUND)
        return self._output(cmd, result, opts)

    def on(self, command: str, handler: Callable[[Dict[str, Any]], Any]) -> None:
        self.handlers.append((tuple(command.split()), handler))

    def fail(self, command: str, stderr: str, times: int = 1) -> None:
        self.failures.setdefault(tuple(command.split()), []).extend([stderr] * times)

    def add_resource(self, group: str, name: str, **fields) -> Dict[str, Any]:
        resource = {"id": self._resource_id(group, name), "name": name, "provisioningState": "Succeeded"}
        resource.update(READY_FIELDS.get(group, {}))
        resource.update(fields)
        self.resources[(group, name)] = resource
        return resource

    def count(self, command: str) -> int:
        prefix = tuple(command.split())
        return sum(1 for args in self.calls if tuple(_positional(args))[:len(prefix)] == prefix)

    def find_calls(self, command: str) -> List[List[str]]:
        prefix = tuple(command.split())
        return [args for args in self.calls if tuple(_positional(args))[:len(prefix)] == prefix]

    def read_secret(self, vault: str, name: str, principal_id: str) -> str:
        """What a runtime identity sees when it reads a secret with its own access policy."""
        if "get" not in self.policies.get((vault, principal_id), set()):
            raise PermissionError(f"{principal_id} cannot read secrets in {vault}")
        return self.secrets[(vault, name)][-1]

    def _dispatch(self, words: Tuple[str, ...], opts: Dict[str, Any]) -> Any:
        if words == ("account", "show"):
            return {"tenantId": TENANT_ID, "id": SUBSCRIPTION_ID, "name": "Test subscription"}
        if words == ("ad", "signed-in-user", "show"):
            return dict(OPERATOR)
        if words == ("ad", "app", "credential", "reset"):
            self._counter += 1
            return {"password": f"generated-secret-{self._counter}"}
        if words == ("keyvault", "secret", "set"):
            versions = self.secrets.setdefault((opts["--vault-name"], opts["--name"]), [])
            versions.append(opts["--value"])
            return {"id": f"https://{opts['--vault-name']}.vault.azure.net/secrets/"
                          f"{opts['--name']}/v{len(versions)}"}
        if words == ("keyvault", "set-policy"):
            permissions = opts.get("--secret-permissions", [])
            if isinstance(permissions, str):
                permissions = [permissions]
            self.policies[(opts["--name"], opts["--object-id"])] = set(permissions)
            return {}
        if words == ("webapp", "identity", "assign"):
            web_app = self.resources[("webapp", opts["--name"])]
            web_app["identity"] = {"principalId": f"principal-{opts['--name']}"}
            return web_app["identity"]

        action = words[-1]
        group = " ".join(words[:-1])
        name = opts.get("--name") or opts.get("--id") or opts.get("--display-name")
        if action == "show":
            return self.resources[(group, name)]
        if action == "list":
            found = [r for (g, _), r in self.resources.items() if g == group]
            if "--display-name" in opts:
                found = [r for r in found if r.get("displayName") == opts["--display-name"]]
            return found
        if action == "create":
            return self._create(group, name, opts)
        if action == "delete":
            self.resources.pop((group, name), None)
            return None
        return {}

    def _create(self, group: str, name: str, opts: Dict[str, Any]) -> Dict[str, Any]:
        fields: Dict[str, Any] = {}
        if group == "ad app":
            self._counter += 1
            fields = {"appId": f"app-{self._counter}", "id": f"object-{self._counter}", "displayName": name}
            name = fields["appId"]
        if group in self.stuck:
            fields["provisioningState"] = "Updating"
            fields.update({key: "Pending" for key in READY_FIELDS.get(group, {})})
        resource = self.add_resource(group, name, **fields)
        if group in self.invisible:
            del self.resources[(group, name)]
        return resource

    @staticmethod
    def _resource_id(group: str, name: str) -> str:
        provider = group.replace(" ", "/")
        return f"/subscriptions/{SUBSCRIPTION_ID}/providers/{provider}/{name}"

    def _output(self, cmd: List[str], result: Any, opts: Dict[str, Any]):
        query = opts.get("--query")
        if isinstance(query, str) and isinstance(result, dict):
            result = result.get(query)
        if opts.get("--output") == "tsv":
            return self._completed(cmd, 0, "" if result is None else f"{result}\n", "")
        return self._completed(cmd, 0, "" if result is None else json.dumps(result), "")

    @staticmethod
    def _completed(cmd: List[str], returncode: int, stdout: str, stderr: str) -> subprocess.CompletedProcess:
        return subprocess.CompletedProcess(cmd, returncode, stdout=stdout, stderr=stderr)


class FakeTools:
    """Stands in for dotnet and dotnet-ef."""

    def __init__(self, script: str = "CREATE TABLE [Plans] ([Id] int);\r\nGO\r\n\r\nINSERT INTO [Plans] VALUES (1);   \r\nGO\r\n"):
        self.script = script
        self.calls: List[List[str]] = []
        self.fail_with: Optional[Tuple[int, str]] = None

    def __call__(self, cmd: List[str], cwd=None, capture_output: bool = True, text: bool = True, env=None):
        self.calls.append(list(cmd))
        if self.fail_with:
            returncode, stderr = self.fail_with
            return subprocess.CompletedProcess(cmd, returncode, stdout="", stderr=stderr)
        if cmd[0] == "dotnet-ef":
            output = Path(cmd[cmd.index("--output") + 1])
            output.parent.mkdir(parents=True, exist_ok=True)
            output.write_bytes(self.script.encode("utf-8"))
        elif cmd[:2] == ["dotnet", "publish"]:
            output = Path(cmd[cmd.index("-o") + 1])
            output.mkdir(parents=True, exist_ok=True)
            (output / "app.dll").write_bytes(b"binary")
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")


class FakeConnection:
    """pyodbc connection double that records executed batches and tracks database users."""

    def __init__(self, fail_on: Optional[str] = None):
        self.batches: List[str] = []
        self.queries: List[tuple] = []
        self.fail_on = fail_on
        self.closed = 0
        # user name -> sys.database_principals.authentication_type_desc
        self.principals: Dict[str, str] = {}
        self.passwords: Dict[str, str] = {}

    def cursor(self):
        cursor = MagicMock()
        rows: List[Any] = []

        def execute(batch, *params):
            if params:
                self.queries.append((batch, params))
                auth_type = self.principals.get(params[0])
                rows[:] = [(auth_type,)] if auth_type else []
                return
            if self.fail_on and self.fail_on in batch:
                raise RuntimeError("Principal could not be resolved")
            self.batches.append(batch)
            self._track_users(batch)

        cursor.execute.side_effect = execute
        cursor.fetchone.side_effect = lambda: rows.pop(0) if rows else None
        return cursor

    def _track_users(self, batch: str) -> None:
        match = re.search(r"USER \[([^\]]+)\] WITH PASSWORD = N'([^']*)'", batch)
        if match:
            name, password = match.groups()
            if self.principals.setdefault(name, "DATABASE") == "DATABASE":
                self.passwords[name] = password
        for name in re.findall(r"CREATE USER \[([^\]]+)\] FROM EXTERNAL PROVIDER", batch):
            self.principals.setdefault(name, "EXTERNAL")

    def close(self):
        self.closed += 1


class FakeCredential:
    def __init__(self):
        self.scopes: List[str] = []

    def get_token(self, *scopes, **kwargs):
        self.scopes.extend(scopes)
        return AccessToken(f"token-for-{scopes[0]}", 4102444800)


@pytest.fixture
def fake_az():
    return FakeAzure()


@pytest.fixture
def cli(fake_az):
    return AzureCli(SUBSCRIPTION_ID, runner=fake_az)


@pytest.fixture
def context(cli):
    return AzureContext(tenant_id=TENANT_ID, subscription_id=SUBSCRIPTION_ID, cli=cli,
                        credential=FakeCredential())


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def fake_sleep(sleeps):
    return sleeps.append


@pytest.fixture
def tools():
    return FakeTools()


@pytest.fixture
def connection():
    return FakeConnection()


@pytest.fixture
def session():
    """requests.Session double for api.ipify.org, logo downloads and Graph."""
    session = MagicMock()
    response = MagicMock()
    response.text = "203.0.113.7\n"
    response.content = b"logo-bytes"
    session.get.return_value = response
    return session


@pytest.fixture
def manifest(tmp_path):
    return DeploymentManifest.model_validate({
        "prefix": "contoso",
        "location": "East US",
        "tenantId": TENANT_ID,
        "subscriptionId": SUBSCRIPTION_ID,
        "adminUsers": "admin@contoso.com",
        "paths": {"srcDir": str(tmp_path / "src"), "publishDir": str(tmp_path / "publish")},
        "timing": {"readinessTimeout": 10, "pollInterval": 1, "retryAttempts": 3, "retryBackoff": 2},
    })
