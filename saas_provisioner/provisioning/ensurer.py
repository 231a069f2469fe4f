"""Idempotent resource ensurer: existence check, conditional create, readiness wait."""
import logging
import math
import time
from typing import Any, Callable, Dict, List, Optional, Set

from tenacity import (
    RetryError,
    Retrying,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    stop_after_delay,
    wait_fixed,
)

from ..azure.cli import AzureCli
from ..console import console
from ..errors import ManifestError, PropagationError, ProvisioningError, ResourceNotFoundError
from .adapters import AdapterRegistry, ResourceAdapter
from .models import ProvisioningResult, ResourceSpec

log = logging.getLogger(__name__)


class ResourceEnsurer:
    """Makes sure each ResourceSpec exists, creating it only when absent.

    Existing resources are returned as they are; configuration drift is not
    reconciled. The control plane is the only state: nothing is cached locally
    between runs.
    """

    def __init__(self, cli: AzureCli, registry: Optional[AdapterRegistry] = None,
                 readiness_timeout: float = 300, poll_interval: float = 5,
                 retry_attempts: int = 3, retry_backoff: float = 10,
                 sleep: Callable[[float], None] = time.sleep):
        self.cli = cli
        self.registry = registry or AdapterRegistry()
        self.readiness_timeout = readiness_timeout
        self.poll_interval = poll_interval
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff
        self._sleep = sleep
        # Results of this run, keyed by spec.key
        self.ensured: Dict[str, ProvisioningResult] = {}

    def ensure(self, spec: ResourceSpec) -> ProvisioningResult:
        """Ensure a resource exists.

        Returns:
            ProvisioningResult with ``created`` False when the resource was
            already there.

        Raises:
            ProvisioningError: If the resource never became visible or ready.
            AzureCliError: For any other failure (auth, conflicts, ...).
        """
        adapter = self.registry.get_adapter(spec.kind)
        existing = self._lookup(adapter, spec)
        if existing is not None:
            console.print(f"[green]✓ {spec} already exists, reusing[/green]")
            result = ProvisioningResult(existing.get("id", ""), False, adapter.attributes(existing))
            self.ensured[spec.key] = result
            return result

        console.print(f"[blue]Creating {spec}...[/blue]")
        if adapter.propagation_fragile:
            self._create_with_retry(adapter, spec)
        else:
            self.cli.run(adapter.create_cmd(spec))
        resource = self._wait_until_ready(adapter, spec)
        console.print(f"[green]✓ Created {spec}[/green]")
        result = ProvisioningResult(resource.get("id", ""), True, adapter.attributes(resource))
        self.ensured[spec.key] = result
        return result

    def ensure_all(self, specs: List[ResourceSpec]) -> Dict[str, ProvisioningResult]:
        """Ensure every spec, dependencies first. Results are keyed by ``spec.key``."""
        results: Dict[str, ProvisioningResult] = {}
        for spec in order_by_dependencies(specs, satisfied=set(self.ensured)):
            results[spec.key] = self.ensure(spec)
        return results

    def _lookup(self, adapter: ResourceAdapter, spec: ResourceSpec) -> Optional[Dict[str, Any]]:
        """Existence check. Not-found is an outcome, not an error."""
        try:
            resource = self.cli.json(adapter.show_cmd(spec))
        except ResourceNotFoundError:
            return None
        # Some show commands print nothing and exit 0 for a missing resource
        return resource or None

    def _create_with_retry(self, adapter: ResourceAdapter, spec: ResourceSpec) -> None:
        """Create, then confirm visibility; retry both with a fixed backoff."""

        def attempt() -> None:
            self.cli.run(adapter.create_cmd(spec))
            if self._lookup(adapter, spec) is None:
                raise PropagationError(adapter.create_cmd(spec).display(),
                                       f"{spec} not visible after create")

        retrying = Retrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_fixed(self.retry_backoff),
            retry=retry_if_exception_type((PropagationError, ResourceNotFoundError)),
            sleep=self._sleep,
            before_sleep=lambda state: log.warning(
                "%s not ready after attempt %d, retrying in %ss", spec, state.attempt_number, self.retry_backoff
            ),
        )
        try:
            retrying(attempt)
        except RetryError as e:
            raise ProvisioningError(str(spec), "create", self.retry_attempts,
                                    cause=e.last_attempt.exception()) from e

    def _wait_until_ready(self, adapter: ResourceAdapter, spec: ResourceSpec) -> Dict[str, Any]:
        """Poll the resource's status field until ready, bounded by the readiness timeout."""
        if self.poll_interval > 0:
            max_polls = max(1, math.ceil(self.readiness_timeout / self.poll_interval) + 1)
        else:
            max_polls = 1

        def poll() -> Optional[Dict[str, Any]]:
            resource = self._lookup(adapter, spec)
            if resource is not None and adapter.has_failed(resource):
                raise ProvisioningError(str(spec), "provisioning", 1,
                                        cause=RuntimeError("provisioningState reports failure"))
            return resource

        retrying = Retrying(
            stop=stop_after_attempt(max_polls) | stop_after_delay(self.readiness_timeout),
            wait=wait_fixed(self.poll_interval),
            retry=retry_if_result(lambda resource: resource is None or not adapter.is_ready(resource)),
            sleep=self._sleep,
        )
        try:
            return retrying(poll)
        except RetryError as e:
            raise ProvisioningError(str(spec), "wait for readiness", e.last_attempt.attempt_number) from e


def order_by_dependencies(specs: List[ResourceSpec], satisfied: Optional[Set[str]] = None) -> List[ResourceSpec]:
    """Order specs so each comes after everything in its ``depends_on``.

    Independent specs keep their given order. Keys in ``satisfied`` were
    ensured earlier in the run and count as met.

    Raises:
        ManifestError: On an unknown dependency or a dependency cycle.
    """
    by_key = {spec.key: spec for spec in specs}
    placed = set(satisfied or ())
    for spec in specs:
        for dependency in spec.depends_on:
            if dependency not in by_key and dependency not in placed:
                raise ManifestError(f"{spec} depends on unknown resource '{dependency}'")

    ordered: List[ResourceSpec] = []
    remaining = list(by_key.values())
    while remaining:
        ready = [spec for spec in remaining if all(dep in placed for dep in spec.depends_on)]
        if not ready:
            cycle = ", ".join(spec.key for spec in remaining)
            raise ManifestError(f"Dependency cycle between: {cycle}")
        for spec in ready:
            ordered.append(spec)
            placed.add(spec.key)
        remaining = [spec for spec in remaining if spec.key not in placed]
    return ordered
