"""Tests for the idempotent resource ensurer."""
import pytest

from saas_provisioner.errors import AuthError, ManifestError, ProvisioningError
from saas_provisioner.provisioning.ensurer import ResourceEnsurer, order_by_dependencies
from saas_provisioner.provisioning.models import ResourceSpec


@pytest.fixture
def ensurer(cli, fake_sleep):
    return ResourceEnsurer(cli, readiness_timeout=10, poll_interval=1, retry_attempts=3,
                           retry_backoff=2, sleep=fake_sleep)


def test_ensure_twice_is_idempotent(fake_az, ensurer):
    """The second ensure finds the resource and creates nothing."""
    spec = ResourceSpec("resource_group", "contoso", "contoso", "eastus")

    first = ensurer.ensure(spec)
    second = ensurer.ensure(spec)

    assert first.created is True
    assert second.created is False
    assert first.resource_id == second.resource_id
    assert fake_az.count("group create") == 1


def test_existing_resource_not_modified(fake_az, ensurer):
    fake_az.add_resource("keyvault", "contoso-kv", location="westeurope")
    result = ensurer.ensure(ResourceSpec("key_vault", "contoso-kv", "contoso", "eastus"))

    assert result.created is False
    assert result.attributes["location"] == "westeurope"
    assert fake_az.count("keyvault create") == 0


def test_create_passes_kind_specific_parameters(fake_az, ensurer):
    ensurer.ensure(ResourceSpec("subnet", "web", "contoso", "eastus", properties={
        "vnet_name": "contoso-vnet",
        "address_prefix": "10.0.1.0/24",
        "service_endpoints": "Microsoft.Sql Microsoft.KeyVault",
        "delegation": "Microsoft.Web/serverfarms",
    }))
    create = fake_az.find_calls("network vnet subnet create")[0]
    assert create[create.index("--vnet-name") + 1] == "contoso-vnet"
    assert create[create.index("--delegations") + 1] == "Microsoft.Web/serverfarms"


def test_fragile_create_retries_configured_attempts(fake_az, ensurer, sleeps):
    """A propagation failure is retried exactly retry_attempts times, then named."""
    fake_az.fail("network vnet subnet create", "ERROR: (AnotherOperationInProgress) busy", times=10)
    spec = ResourceSpec("subnet", "web", "contoso", "eastus", properties={
        "vnet_name": "contoso-vnet", "address_prefix": "10.0.1.0/24",
    })

    with pytest.raises(ProvisioningError) as exc_info:
        ensurer.ensure(spec)

    assert fake_az.count("network vnet subnet create") == 3
    assert sleeps == [2, 2]
    error = exc_info.value
    assert error.operation == "create"
    assert "subnet 'web'" in str(error)
    assert "create" in str(error)


def test_fragile_create_recovers(fake_az, ensurer):
    fake_az.fail("network private-endpoint create", "ERROR: (ReferencedResourceNotProvisioned) not yet", times=1)
    spec = ResourceSpec("private_endpoint", "contoso-db-pe", "contoso", "eastus", properties={
        "vnet_name": "contoso-vnet", "subnet": "sql", "resource_id": "/sql/id", "group_id": "sqlServer",
    })

    result = ensurer.ensure(spec)

    assert result.created is True
    assert fake_az.count("network private-endpoint create") == 2


def test_invisible_after_create_is_propagation(fake_az, ensurer):
    fake_az.invisible.add("sql server vnet-rule")
    spec = ResourceSpec("sql_vnet_rule", "contoso-vnet-rule", "contoso", properties={
        "server": "contoso-sql", "vnet_name": "contoso-vnet", "subnet": "web",
    })

    with pytest.raises(ProvisioningError, match="contoso-vnet-rule"):
        ensurer.ensure(spec)
    assert fake_az.count("sql server vnet-rule create") == 3


def test_non_fragile_failure_is_fatal(fake_az, ensurer):
    fake_az.fail("sql server create", "ERROR: (AuthorizationFailed) no access")
    spec = ResourceSpec("sql_server", "contoso-sql", "contoso", "eastus",
                        properties={"admin_name": "op", "admin_sid": "oid"})

    with pytest.raises(AuthError):
        ensurer.ensure(spec)
    assert fake_az.count("sql server create") == 1


def test_readiness_wait_is_bounded(fake_az, ensurer, sleeps):
    """A resource stuck provisioning fails after the readiness timeout's worth of polls."""
    fake_az.stuck.add("sql db")
    spec = ResourceSpec("sql_database", "AMPSaaSDB", "contoso", "eastus", properties={"server": "contoso-sql"})

    with pytest.raises(ProvisioningError, match="wait for readiness"):
        ensurer.ensure(spec)
    assert len(sleeps) == 10


def test_ensure_all_orders_dependencies(fake_az, ensurer):
    rg = ResourceSpec("resource_group", "contoso", "contoso", "eastus")
    vnet = ResourceSpec("virtual_network", "contoso-vnet", "contoso", "eastus",
                        depends_on=[rg.key], properties={"address_prefix": "10.0.0.0/20"})

    results = ensurer.ensure_all([vnet, rg])

    assert list(results) == [rg.key, vnet.key]
    creates = [args[:2] for args in fake_az.calls if "create" in args]
    assert creates == [["group", "create"], ["network", "vnet"]]


def test_dependency_cycle_rejected():
    a = ResourceSpec("resource_group", "a", "a")
    b = ResourceSpec("resource_group", "b", "b", depends_on=[a.key])
    a.depends_on.append(b.key)
    with pytest.raises(ManifestError, match="cycle"):
        order_by_dependencies([a, b])


def test_unknown_dependency_rejected():
    spec = ResourceSpec("web_app", "contoso-admin", "contoso", depends_on=["app_service_plan:contoso/missing"])
    with pytest.raises(ManifestError, match="unknown"):
        order_by_dependencies([spec])


def test_earlier_results_satisfy_dependencies(ensurer):
    rg = ResourceSpec("resource_group", "contoso", "contoso", "eastus")
    ensurer.ensure(rg)
    plan = ResourceSpec("app_service_plan", "contoso-asp", "contoso", "eastus", depends_on=[rg.key])

    results = ensurer.ensure_all([plan])
    assert results[plan.key].created is True
