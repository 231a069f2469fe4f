"""Tests for the saas-deploy CLI."""
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from main import app
from saas_provisioner.errors import ProvisioningError

REQUIRED = [
    "--location", "eastus",
    "--tenant-id", "11111111-1111-1111-1111-111111111111",
    "--subscription-id", "22222222-2222-2222-2222-222222222222",
    "--admin-users", "admin@contoso.com",
]


@pytest.fixture
def runner():
    return CliRunner()


@patch("main.ProvisioningOrchestrator")
@patch("main.AzureContext")
def test_long_prefix_rejected_before_cloud_calls(mock_context, mock_orchestrator, runner):
    result = runner.invoke(app, ["deploy", "--prefix", "a" * 22] + REQUIRED)

    assert result.exit_code == 2
    mock_context.select.assert_not_called()
    mock_orchestrator.assert_not_called()


@patch("main.AzureContext")
def test_missing_parameters_are_validation_errors(mock_context, runner):
    result = runner.invoke(app, ["deploy", "--prefix", "contoso"])

    assert result.exit_code == 2
    mock_context.select.assert_not_called()


@patch("main.AzureContext")
def test_supplied_app_id_needs_secret(mock_context, runner):
    result = runner.invoke(app, ["deploy", "--prefix", "contoso", "--ad-app-id", "app-1"] + REQUIRED)

    assert result.exit_code == 2
    mock_context.select.assert_not_called()


@patch("main.ProvisioningOrchestrator")
@patch("main.AzureContext")
def test_deploy_passes_overrides(mock_context, mock_orchestrator, runner, tmp_path):
    config = tmp_path / "deploy.yaml"
    config.write_text("prefix: fromfile\nlocation: westeurope\n")
    output = str(tmp_path / "record.json")

    result = runner.invoke(app, ["deploy", "-c", str(config), "--prefix", "contoso",
                                 "--allow-password-fallback", "--output", output, "-q"] + REQUIRED)

    assert result.exit_code == 0, result.output
    manifest = mock_orchestrator.call_args.args[0]
    assert manifest.prefix == "contoso"
    assert manifest.location == "eastus"
    assert manifest.allow_password_fallback is True
    mock_context.select.assert_called_once_with(manifest.tenant_id, manifest.subscription_id)
    mock_orchestrator.return_value.deploy.assert_called_once_with(output)


@patch("main.ProvisioningOrchestrator")
@patch("main.AzureContext")
def test_provisioning_failure_exits_1(mock_context, mock_orchestrator, runner):
    mock_orchestrator.return_value.deploy.side_effect = ProvisioningError("subnet 'web'", "create", 3)

    result = runner.invoke(app, ["deploy", "--prefix", "contoso"] + REQUIRED)

    assert result.exit_code == 1
    assert "subnet 'web'" in result.output


@patch("main.ProvisioningOrchestrator")
@patch("main.AzureContext")
def test_upgrade(mock_context, mock_orchestrator, runner):
    result = runner.invoke(app, ["upgrade", "--prefix", "contoso", "--tenant-id", "t", "--subscription-id", "s"])

    assert result.exit_code == 0, result.output
    mock_orchestrator.return_value.upgrade.assert_called_once_with()


@patch("main.AzureContext")
def test_validate_prints_names(mock_context, runner):
    result = runner.invoke(app, ["validate", "--prefix", "contoso"] + REQUIRED)

    assert result.exit_code == 0, result.output
    assert "contoso-portal" in result.output
    assert "contoso-kv" in result.output
    mock_context.select.assert_not_called()


@patch("main.ProvisioningOrchestrator")
@patch("main.AzureContext")
def test_upgrade_accepts_password_fallback(mock_context, mock_orchestrator, runner):
    result = runner.invoke(app, ["upgrade", "--prefix", "contoso", "--tenant-id", "t", "--subscription-id", "s",
                                 "--allow-password-fallback"])

    assert result.exit_code == 0, result.output
    manifest = mock_orchestrator.call_args.args[0]
    assert manifest.allow_password_fallback is True
