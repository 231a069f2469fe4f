"""Publish, archive and deploy the .NET web apps."""
import logging
import shutil
import subprocess
import time
from pathlib import Path
from typing import Callable, List, Optional

from tenacity import RetryError, Retrying, retry_if_result, stop_after_attempt, wait_fixed

from ..azure.cli import AzCmd, AzureCli
from ..console import console
from ..errors import ExternalToolError, ProvisioningError
from ..provisioning.models import DeploymentOutcome, DeploymentPackage

log = logging.getLogger(__name__)

# project name -> path of its csproj under the source directory
PROJECTS = {
    "AdminSite": "AdminSite/AdminSite.csproj",
    "CustomerSite": "CustomerSite/CustomerSite.csproj",
}


def run_tool(cmd: List[str], cwd: Optional[Path] = None,
             runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
             env: Optional[dict] = None) -> str:
    """Run an external tool and return stdout.

    Raises:
        ExternalToolError: On a non-zero exit, with the tool's stderr as is.
    """
    log.debug("Running: %s", " ".join(cmd))
    try:
        result = runner(cmd, cwd=cwd, capture_output=True, text=True, env=env)
    except FileNotFoundError as e:
        raise ExternalToolError(cmd[0], 127, f"{cmd[0]} not found on PATH") from e
    if result.returncode != 0:
        raise ExternalToolError(cmd[0], result.returncode, result.stderr or result.stdout)
    return result.stdout


class BuildAndDeployPipeline:
    """publish -> zip -> upload -> wait until running -> VNet integration.

    The first failing step stops the pipeline.
    """

    def __init__(self, cli: AzureCli, resource_group: str, src_dir: str, publish_dir: str,
                 readiness_timeout: float = 300, poll_interval: float = 5,
                 runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
                 sleep: Callable[[float], None] = time.sleep):
        self.cli = cli
        self.resource_group = resource_group
        self.src_dir = Path(src_dir)
        self.publish_dir = Path(publish_dir)
        self.readiness_timeout = readiness_timeout
        self.poll_interval = poll_interval
        self._runner = runner
        self._sleep = sleep

    def publish_and_deploy(self, project: str, target: str, vnet: Optional[str] = None,
                           subnet: str = "web") -> DeploymentOutcome:
        """Build ``project`` and deploy it to the ``target`` web app.

        Args:
            project: Key of PROJECTS ("AdminSite" or "CustomerSite").
            target: Web app name.
            vnet: Virtual network to integrate with; skipped when None.
            subnet: Subnet of ``vnet`` delegated to App Service.
        """
        console.print(f"[blue]Deploying {project} to web app '{target}'...[/blue]")
        package = self.publish(project)
        self.archive(package)
        outcome = DeploymentOutcome(web_app=target, package=package)
        self.upload(package, target)
        outcome.deployed = True
        self.wait_until_running(target)
        if vnet:
            outcome.vnet_integrated = self.integrate_vnet(target, vnet, subnet)
        console.print(f"[green]✓ {project} deployed to '{target}'[/green]")
        return outcome

    def publish(self, project: str) -> DeploymentPackage:
        if project not in PROJECTS:
            raise KeyError(f"Unknown project '{project}'")
        source = self.src_dir / PROJECTS[project]
        output = self.publish_dir / project
        run_tool(["dotnet", "publish", str(source), "-c", "release", "-o", str(output), "-v", "q"],
                 runner=self._runner)
        return DeploymentPackage(source_path=source, publish_dir=output,
                                 artifact_path=self.publish_dir / f"{project}.zip")

    def archive(self, package: DeploymentPackage) -> Path:
        """Zip the publish output into a single package, replacing any earlier one."""
        if package.artifact_path.exists():
            package.artifact_path.unlink()
        archive = shutil.make_archive(str(package.artifact_path.with_suffix("")), "zip",
                                      root_dir=str(package.publish_dir))
        log.debug("Packaged %s", archive)
        return Path(archive)

    def upload(self, package: DeploymentPackage, target: str) -> None:
        self.cli.run(
            AzCmd("webapp", "deploy")
            .param("--resource-group", self.resource_group)
            .param("--name", target)
            .param("--src-path", str(package.artifact_path))
            .param("--type", "zip")
            .param("--async", "false")
        )

    def wait_until_running(self, target: str) -> None:
        """Poll the web app state until it reports Running."""
        max_polls = max(1, int(self.readiness_timeout // self.poll_interval) + 1) if self.poll_interval else 1

        def state() -> str:
            return self.cli.tsv(
                AzCmd("webapp", "show")
                .param("--resource-group", self.resource_group)
                .param("--name", target)
                .param("--query", "state")
            )

        retrying = Retrying(
            stop=stop_after_attempt(max_polls),
            wait=wait_fixed(self.poll_interval),
            retry=retry_if_result(lambda current: current != "Running"),
            sleep=self._sleep,
        )
        try:
            retrying(state)
        except RetryError as e:
            raise ProvisioningError(f"web app '{target}'", "wait until running",
                                    e.last_attempt.attempt_number) from e

    def integrate_vnet(self, target: str, vnet: str, subnet: str) -> bool:
        """Attach the web app to the subnet unless it already is."""
        integrations = self.cli.json(
            AzCmd("webapp", "vnet-integration list")
            .param("--resource-group", self.resource_group)
            .param("--name", target)
        ) or []
        if any(subnet_id_matches(item.get("vnetResourceId", ""), vnet, subnet) for item in integrations):
            console.print(f"[green]✓ '{target}' already integrated with {vnet}/{subnet}[/green]")
            return True
        self.cli.run(
            AzCmd("webapp", "vnet-integration add")
            .param("--resource-group", self.resource_group)
            .param("--name", target)
            .param("--vnet", vnet)
            .param("--subnet", subnet)
        )
        return True


def subnet_id_matches(resource_id: str, vnet: str, subnet: str) -> bool:
    return resource_id.lower().endswith(f"/virtualnetworks/{vnet}/subnets/{subnet}".lower())
