"""Tests for the az command builder, runner and error classification."""
import logging
import subprocess

import pytest

from saas_provisioner.azure.cli import AzCmd, AzureCli, classify_error
from saas_provisioner.errors import (
    AuthError,
    AzureCliError,
    PropagationError,
    ResourceConflictError,
    ResourceNotFoundError,
)


def test_command_builder():
    cmd = (AzCmd("network vnet", "subnet create")
           .param("--name", "web")
           .param_list("--service-endpoints", ["Microsoft.Sql", "Microsoft.KeyVault"])
           .flag("--yes"))
    assert cmd.cmd == ["network", "vnet", "subnet", "create", "--name", "web",
                       "--service-endpoints", "Microsoft.Sql", "Microsoft.KeyVault", "--yes"]
    assert cmd.has("--name")
    assert not cmd.has("--location")


def test_secret_param_masked():
    cmd = AzCmd("keyvault", "secret set").param("--name", "ADApplicationSecret").secret_param("--value", "hunter2")
    assert "hunter2" in cmd.cmd
    assert "hunter2" not in cmd.display()
    assert "--value ***" in str(cmd)


def test_subscription_and_output_added(fake_az, cli):
    cli.run(AzCmd("webapp", "list"))
    args = fake_az.calls[-1]
    assert args[args.index("--subscription") + 1] == cli.subscription_id
    assert args[args.index("--output") + 1] == "json"


def test_tenant_commands_not_subscription_scoped(fake_az, cli):
    cli.json(AzCmd("ad", "signed-in-user show", subscription_scoped=False))
    assert "--subscription" not in fake_az.calls[-1]


def test_json_and_tsv(fake_az, cli):
    fake_az.add_resource("webapp", "contoso-admin")
    assert cli.json(AzCmd("webapp", "show").param("--resource-group", "rg").param("--name", "contoso-admin"))["state"] == "Running"
    state = cli.tsv(AzCmd("webapp", "show").param("--resource-group", "rg")
                    .param("--name", "contoso-admin").param("--query", "state"))
    assert state == "Running"


def test_not_found_is_classified(cli):
    with pytest.raises(ResourceNotFoundError):
        cli.json(AzCmd("group", "show").param("--name", "nope"))


def test_secret_never_logged(fake_az, cli, caplog):
    """Failing commands log their arguments with secret values masked."""
    fake_az.fail("keyvault secret set", "ERROR: Forbidden")
    with caplog.at_level(logging.DEBUG, logger="saas_provisioner"):
        with pytest.raises(AzureCliError) as exc_info:
            cli.run(AzCmd("keyvault", "secret set", subscription_scoped=False)
                    .param("--vault-name", "contoso-kv")
                    .param("--name", "ADApplicationSecret")
                    .secret_param("--value", "hunter2"))
    assert "hunter2" not in caplog.text
    assert "hunter2" not in str(exc_info.value)
    assert "--value ***" in caplog.text


@pytest.mark.parametrize("stderr,expected", [
    ("ERROR: (ResourceGroupNotFound) Resource group 'x' could not be found.", ResourceNotFoundError),
    ("ERROR: (AuthorizationFailed) The client does not have authorization", AuthError),
    ("ERROR: (AnotherOperationInProgress) Another operation on this resource is in progress", PropagationError),
    ("ERROR: The appId 'app-1' of the service principal does not reference a valid application object.",
     PropagationError),
    ("ERROR: (PrincipalNotFound) Principal abc does not exist in the directory", PropagationError),
    ("ERROR: (VaultAlreadyExists) The vault name 'x' is already in use.", ResourceConflictError),
    ("ERROR: something unexpected", AzureCliError),
])
def test_classify_error(stderr, expected):
    error = classify_error(AzCmd("group", "show"), 1, stderr)
    assert type(error) is expected


def test_soft_deleted_vault_suggests_purge():
    error = classify_error(AzCmd("keyvault", "create"), 1,
                           "ERROR: A vault with the same name already exists in deleted state (soft deleted).")
    assert isinstance(error, ResourceConflictError)
    assert "az keyvault purge" in str(error)


def test_throttling_is_retried(monkeypatch):
    """A throttled command is retried transparently."""
    monkeypatch.setattr(AzureCli._run_with_throttle_retry.retry, "sleep", lambda seconds: None)
    responses = [
        subprocess.CompletedProcess([], 1, "", "ERROR: (TooManyRequests) Too many requests"),
        subprocess.CompletedProcess([], 0, '{"name": "rg"}', ""),
    ]
    runner = lambda cmd, **kwargs: responses.pop(0)  # noqa: E731
    cli = AzureCli("sub", runner=runner)
    assert cli.json(AzCmd("group", "show").param("--name", "rg")) == {"name": "rg"}
    assert responses == []
