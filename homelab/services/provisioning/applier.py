"""
Fleet Applier

Applies a FleetResult in order: shared namespaces and credentials first, then
each workload graph. Kubernetes objects go through the Kubernetes client,
DNS records through Cloudflare. A rejected object stops only its own
workload's remaining objects.
"""

from typing import List, Optional, Set
import logging

import httpx
from kubernetes.client.rest import ApiException

from .errors import ProvisioningError
from .fleet import FleetResult, WorkloadFailure
from .objects import ManagedObject, unique_in_order

logger = logging.getLogger(__name__)

# Kind recorded for API and transport errors that are not provisioning errors
APPLY_ERROR = "ApplyError"


def describe_apply_error(obj: ManagedObject, error: Exception) -> WorkloadFailure:
    """Failure entry for one object, attributed to the object's namespace."""
    workload = obj.namespace or obj.name
    if isinstance(error, ProvisioningError):
        return WorkloadFailure(workload, error.kind, error.message)
    if isinstance(error, ApiException):
        return WorkloadFailure(workload, APPLY_ERROR, f"{obj.key}: API error {error.status}: {error.reason}")
    return WorkloadFailure(workload, APPLY_ERROR, f"{obj.key}: {type(error).__name__}: {error}")


class FleetApplier:
    """Reconciles rendered fleet objects against the cluster and DNS provider."""

    def __init__(self, k8s_client=None, dns_client=None):
        self._k8s = k8s_client
        self.dns_client = dns_client

    def _get_k8s_client(self):
        if self._k8s is None:
            from .kubernetes.client import get_k8s_client
            self._k8s = get_k8s_client()
        return self._k8s

    async def apply_object(self, obj: ManagedObject) -> None:
        if obj.is_kubernetes:
            await self._get_k8s_client().apply(obj)
        elif self.dns_client is not None:
            await self.dns_client.upsert(obj)
        else:
            logger.warning(f"[DNS] No Cloudflare API token configured, skipping {obj.key}")

    async def _try_apply(self, obj: ManagedObject) -> Optional[WorkloadFailure]:
        try:
            await self.apply_object(obj)
        except (ProvisioningError, ApiException, httpx.HTTPError) as e:
            return describe_apply_error(obj, e)
        return None

    async def apply(self, result: FleetResult) -> List[WorkloadFailure]:
        """
        Apply every object of a fleet result.

        Returns:
            Failures, one per workload (or shared object) that was rejected
        """
        failures: List[WorkloadFailure] = []
        applied: Set[str] = set()
        broken: Set[str] = set()

        for obj in unique_in_order(result.namespaces + result.credentials):
            failure = await self._try_apply(obj)
            if failure:
                failures.append(failure)
                broken.add(obj.key)
                logger.error(f"[FLEET] ❌ {obj.key}: {failure.message}")
            else:
                applied.add(obj.key)

        for name, graph in result.graphs.items():
            for obj in graph:
                if obj.key in applied:
                    continue
                blocked = self._blocked_by(obj, broken)
                if blocked:
                    failures.append(WorkloadFailure(
                        name, "DependencyUnresolved", f"{obj.key} skipped: {blocked} was rejected"
                    ))
                    break
                failure = await self._try_apply(obj)
                if failure:
                    failures.append(WorkloadFailure(name, failure.kind, failure.message))
                    broken.add(obj.key)
                    logger.error(f"[FLEET] ❌ {name}: stopped at {obj.key}")
                    break
                applied.add(obj.key)

        logger.info(f"[FLEET] Applied {len(applied)} object(s), {len(failures)} failure(s)")
        return failures

    @staticmethod
    def _blocked_by(obj: ManagedObject, broken: Set[str]) -> Optional[str]:
        for dep in obj.object_dependencies:
            if dep.key in broken:
                return dep.key
        return None
