"""Schema migrations and runtime role grants for the SaaS database."""
import logging
import re
import secrets
import struct
import subprocess
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterator, List, Optional

import requests
from jinja2 import Environment, FileSystemLoader

from ..azure.cli import AzCmd
from ..azure.context import SQL_AUDIENCE, AzureContext
from ..console import console, warn
from ..deploy.pipeline import run_tool
from ..errors import ProvisionerError
from ..provisioning.models import MigrationOutcome

log = logging.getLogger(__name__)

ODBC_DRIVER = "{ODBC Driver 18 for SQL Server}"
SQL_COPT_SS_ACCESS_TOKEN = 1256
CLIENT_IP_URL = "https://api.ipify.org"
FIREWALL_RULE_NAME = "AllowDeploymentClient"
DB_CONTEXT = "SaaSKitContext"
RUNTIME_ROLES = ("db_datareader", "db_datawriter")
# sys.database_principals.authentication_type_desc
AUTH_MODES = {"EXTERNAL": "federated", "DATABASE": "password"}
PRINCIPAL_QUERY = "SELECT authentication_type_desc FROM sys.database_principals WHERE name = ?"

GO_SEPARATOR = re.compile(r"^\s*GO\s*;?\s*$", re.IGNORECASE | re.MULTILINE)


@dataclass
class DatabaseConnection:
    """Where the migrations run."""
    resource_group: str
    server_name: str
    database: str

    @property
    def server_fqdn(self) -> str:
        return f"{self.server_name}.database.windows.net"

    def odbc_string(self) -> str:
        return (f"DRIVER={ODBC_DRIVER};SERVER={self.server_fqdn},1433;DATABASE={self.database};"
                "Encrypt=yes;TrustServerCertificate=no;")


def split_batches(script: str) -> List[str]:
    """Split a T-SQL script on GO lines into executable batches."""
    return [batch.strip() for batch in GO_SEPARATOR.split(script) if batch.strip()]


def generate_password() -> str:
    # token_urlsafe alone may miss a character class Azure SQL requires
    return f"{secrets.token_urlsafe(24)}Aa1!"


def pyodbc_connect(connection_string: str, token: str) -> Any:
    import pyodbc

    token_bytes = token.encode("utf-16-le")
    token_struct = struct.pack(f"<I{len(token_bytes)}s", len(token_bytes), token_bytes)
    return pyodbc.connect(connection_string, attrs_before={SQL_COPT_SS_ACCESS_TOKEN: token_struct},
                          autocommit=True, timeout=30)


class MigrationRunner:
    """Generates the idempotent migration script and applies it with the operator's token."""

    def __init__(self, context: AzureContext, src_dir: str, work_dir: str,
                 allow_password_fallback: bool = False,
                 persist_password: Optional[Callable[[str, str], None]] = None,
                 runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
                 connect: Callable[[str, str], Any] = pyodbc_connect,
                 session: Optional[requests.Session] = None):
        self.context = context
        self.src_dir = Path(src_dir)
        self.work_dir = Path(work_dir)
        self.allow_password_fallback = allow_password_fallback
        self.persist_password = persist_password
        self._runner = runner
        self._connect = connect
        self.session = session or requests.Session()

        template_dir = Path(__file__).parent / "templates"
        self.jinja_env = Environment(
            loader=FileSystemLoader(template_dir),
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )

    def generate_script(self) -> Path:
        """Generate the idempotent migration script from the EF Core model.

        Line endings and trailing whitespace are normalized so an unchanged
        model always yields byte-identical text.
        """
        self.work_dir.mkdir(parents=True, exist_ok=True)
        script_path = self.work_dir / "script.sql"
        run_tool([
            "dotnet-ef", "migrations", "script",
            "--idempotent",
            "--context", DB_CONTEXT,
            "--project", str(self.src_dir / "DataAccess" / "DataAccess.csproj"),
            "--startup-project", str(self.src_dir / "AdminSite" / "AdminSite.csproj"),
            "--output", str(script_path),
        ], runner=self._runner)

        raw = script_path.read_text(encoding="utf-8-sig")
        lines = [line.rstrip() for line in raw.replace("\r\n", "\n").replace("\r", "\n").split("\n")]
        script_path.write_text("\n".join(lines).strip("\n") + "\n", encoding="utf-8")
        return script_path

    def render_grant_script(self, identity: str, password: Optional[str] = None) -> str:
        template = self.jinja_env.get_template("grant_roles.sql.j2")
        return template.render(name=identity, password=password, roles=RUNTIME_ROLES)

    def apply_migrations(self, connection: DatabaseConnection, identities: List[str]) -> MigrationOutcome:
        """Apply the schema, then grant each web app identity read/write/execute.

        Raises:
            ExternalToolError: If script generation fails.
            ProvisionerError: If the script or a grant cannot be executed.
        """
        console.print(f"[blue]Generating migration script for '{connection.database}'...[/blue]")
        script_path = self.generate_script()
        outcome = MigrationOutcome(script_path=script_path)

        with self.client_firewall_rule(connection):
            self.execute(connection, script_path.read_text(encoding="utf-8"))
            outcome.script_applied = True
            console.print(f"[green]✓ Migrations applied to '{connection.database}'[/green]")
            for identity in identities:
                outcome.role_grants[identity] = self.grant_roles(connection, identity)
        return outcome

    def grant_roles(self, connection: DatabaseConnection, identity: str) -> str:
        """Grant runtime roles, federated first.

        A user that already exists keeps the authentication it was created
        with. A password-based user gets a fresh password on every run so the
        database and Key Vault always agree.

        Returns:
            "federated" or "password".

        Raises:
            ProvisionerError: If the federated grant fails and password
                fallback was not explicitly allowed.
        """
        existing = self.existing_auth_mode(connection, identity)
        if existing == "password":
            warn(f"Database user '{identity}' authenticates with a password; rotating it.")
            return self._grant_with_password(connection, identity)

        try:
            self.execute(connection, self.render_grant_script(identity))
            console.print(f"[green]✓ Granted database roles to '{identity}'[/green]")
            return "federated"
        except ProvisionerError as e:
            if existing is not None:
                raise ProvisionerError(
                    f"Granting database roles to existing Azure AD user '{identity}' failed: {e}"
                ) from e
            if not self.allow_password_fallback:
                raise ProvisionerError(
                    f"Granting database access to '{identity}' via Azure AD failed: {e}\n"
                    "Fix the SQL server's directory permissions, or rerun with "
                    "--allow-password-fallback to create a password-based database user instead."
                ) from e
            warn(f"Azure AD grant for '{identity}' failed; creating a password-based database user. "
                 "This identity will authenticate with a password, not its managed identity.")
        return self._grant_with_password(connection, identity)

    def _grant_with_password(self, connection: DatabaseConnection, identity: str) -> str:
        password = generate_password()
        self.execute(connection, self.render_grant_script(identity, password=password))
        if self.persist_password:
            self.persist_password(identity, password)
        return "password"

    def existing_auth_mode(self, connection: DatabaseConnection, identity: str) -> Optional[str]:
        """How an existing database user signs in, or None when there is no such user."""
        conn = self._open(connection)
        try:
            cursor = conn.cursor()
            cursor.execute(PRINCIPAL_QUERY, identity)
            row = cursor.fetchone()
        except Exception as e:
            raise ProvisionerError(f"Cannot look up database user '{identity}': {e}") from e
        finally:
            conn.close()
        if row is None:
            return None
        return AUTH_MODES.get(row[0], str(row[0]).lower())

    def execute(self, connection: DatabaseConnection, script: str) -> None:
        """Run every batch of a script over one connection."""
        conn = self._open(connection)
        try:
            cursor = conn.cursor()
            for batch in split_batches(script):
                try:
                    cursor.execute(batch)
                except Exception as e:
                    raise ProvisionerError(f"SQL batch failed on {connection.database}: {e}") from e
        finally:
            conn.close()

    def _open(self, connection: DatabaseConnection) -> Any:
        token = self.context.get_token(SQL_AUDIENCE)
        try:
            return self._connect(connection.odbc_string(), token)
        except Exception as e:
            raise ProvisionerError(f"Cannot connect to {connection.server_fqdn}/{connection.database}: {e}") from e

    def client_ip(self) -> str:
        response = self.session.get(CLIENT_IP_URL, timeout=30)
        response.raise_for_status()
        return response.text.strip()

    @contextmanager
    def client_firewall_rule(self, connection: DatabaseConnection) -> Iterator[None]:
        """Open the SQL firewall to this machine for the duration of the block."""
        ip = self.client_ip()
        base = lambda action: (AzCmd("sql server firewall-rule", action)  # noqa: E731
                               .param("--resource-group", connection.resource_group)
                               .param("--server", connection.server_name)
                               .param("--name", FIREWALL_RULE_NAME))
        self.context.cli.run(base("create").param("--start-ip-address", ip).param("--end-ip-address", ip))
        log.debug("Firewall opened for %s on %s", ip, connection.server_name)
        try:
            yield
        finally:
            self.context.cli.run(base("delete"))
            log.debug("Firewall rule %s removed", FIREWALL_RULE_NAME)
