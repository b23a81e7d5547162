"""
Kubernetes Client for Readiness Probes and Applying Managed Objects

Thin wrapper over the Kubernetes API used for two things:
- probing infrastructure subsystems (controller Deployment, webhook endpoints)
- applying rendered managed objects (create, or patch when they exist)

Admission rejections are surfaced as ValidationFailure with the API server's
message verbatim.
"""

from kubernetes import client, config
from kubernetes.client.rest import ApiException
import asyncio
import logging
from typing import Any, Dict, Optional, Tuple

from ..errors import ValidationFailure
from ..objects import ManagedObject

logger = logging.getLogger(__name__)

# Markers of a rejection by a validating/mutating admission webhook
_ADMISSION_MARKERS = (
    "admission webhook",
    "failed calling webhook",
    "no endpoints available for service",
)

# kind -> plural for custom resources
_CUSTOM_PLURALS = {
    "HTTPRoute": "httproutes",
    "Middleware": "middlewares",
    "ExternalSecret": "externalsecrets",
}


def is_admission_rejection(e: ApiException) -> bool:
    """Check whether an API error came from an admission webhook."""
    body = (e.body or "") if isinstance(e.body, str) else str(e.body or "")
    text = f"{e.reason or ''} {body}".lower()
    return any(marker in text for marker in _ADMISSION_MARKERS)


class KubernetesClient:
    """
    Reads subsystem state and applies managed objects.

    This class loads in-cluster configuration, falling back to kubeconfig.
    """

    def __init__(self):
        """Initialize Kubernetes client with in-cluster or kubeconfig."""
        try:
            # Try in-cluster config first (for production)
            config.load_incluster_config()
            logger.info("Loaded in-cluster Kubernetes configuration")
        except config.ConfigException:
            try:
                # Fall back to kubeconfig (for development)
                config.load_kube_config()
                logger.info("Loaded kubeconfig for development")
            except config.ConfigException as e:
                logger.error(f"Failed to load Kubernetes config: {e}")
                raise RuntimeError("Cannot load Kubernetes configuration") from e

        # Initialize API clients
        self.apps_v1 = client.AppsV1Api()
        self.core_v1 = client.CoreV1Api()
        self.custom = client.CustomObjectsApi()

    # =========================================================================
    # SUBSYSTEM PROBES
    # =========================================================================

    async def deployment_exists(self, name: str, namespace: str) -> bool:
        """
        Check if a Deployment exists.

        Args:
            name: Deployment name
            namespace: Namespace to look in

        Returns:
            True if the deployment exists, False otherwise
        """
        try:
            await asyncio.to_thread(
                self.apps_v1.read_namespaced_deployment,
                name=name,
                namespace=namespace
            )
            return True
        except ApiException as e:
            if e.status == 404:
                return False
            raise

    async def count_ready_endpoints(self, service: str, namespace: str) -> int:
        """
        Count ready endpoint addresses backing a Service.

        A webhook Service with zero ready addresses rejects every request the
        API server sends it, even though the Service object exists.

        Returns:
            Number of ready addresses (0 if the Service has no Endpoints object)
        """
        try:
            endpoints = await asyncio.to_thread(
                self.core_v1.read_namespaced_endpoints,
                name=service,
                namespace=namespace
            )
        except ApiException as e:
            if e.status == 404:
                return 0
            raise

        return sum(len(subset.addresses or []) for subset in (endpoints.subsets or []))

    # =========================================================================
    # APPLY
    # =========================================================================

    def _typed_operations(self, kind: str) -> Optional[Tuple[Any, Any, bool]]:
        """(create, patch, namespaced) for core kinds; None for custom resources."""
        return {
            "Namespace": (self.core_v1.create_namespace, self.core_v1.patch_namespace, False),
            "PersistentVolumeClaim": (
                self.core_v1.create_namespaced_persistent_volume_claim,
                self.core_v1.patch_namespaced_persistent_volume_claim,
                True,
            ),
            "Deployment": (
                self.apps_v1.create_namespaced_deployment,
                self.apps_v1.patch_namespaced_deployment,
                True,
            ),
            "Service": (
                self.core_v1.create_namespaced_service,
                self.core_v1.patch_namespaced_service,
                True,
            ),
        }.get(kind)

    async def apply(self, obj: ManagedObject) -> None:
        """
        Apply a managed object (create or update).

        Raises:
            ValidationFailure: The API server's admission chain rejected the object
            ApiException: Any other API error
        """
        try:
            await self._create(obj)
            logger.info(f"[K8S] ✅ Created {obj.key}")
        except ApiException as e:
            if e.status == 409:
                logger.debug(f"[K8S] {obj.key} exists, updating...")
                try:
                    await self._patch(obj)
                except ApiException as patch_error:
                    self._raise_if_rejected(obj, patch_error)
                    raise
                logger.info(f"[K8S] ✅ Updated {obj.key}")
                return
            self._raise_if_rejected(obj, e)
            raise

    def _raise_if_rejected(self, obj: ManagedObject, e: ApiException) -> None:
        if is_admission_rejection(e):
            logger.error(f"[K8S] ❌ {obj.key} rejected by admission webhook: {e.body}")
            raise ValidationFailure(obj.key, e.status, e.body if isinstance(e.body, str) else str(e.body)) from e

    async def _create(self, obj: ManagedObject) -> None:
        ops = self._typed_operations(obj.kind)
        if ops is not None:
            create, _, namespaced = ops
            kwargs: Dict[str, Any] = {"body": obj.body}
            if namespaced:
                kwargs["namespace"] = obj.namespace
            await asyncio.to_thread(create, **kwargs)
            return

        group, version = obj.api_version.split("/", 1)
        await asyncio.to_thread(
            self.custom.create_namespaced_custom_object,
            group=group,
            version=version,
            namespace=obj.namespace,
            plural=_CUSTOM_PLURALS[obj.kind],
            body=obj.to_manifest()
        )

    async def _patch(self, obj: ManagedObject) -> None:
        ops = self._typed_operations(obj.kind)
        if ops is not None:
            _, patch, namespaced = ops
            kwargs: Dict[str, Any] = {"name": obj.name, "body": obj.body}
            if namespaced:
                kwargs["namespace"] = obj.namespace
            await asyncio.to_thread(patch, **kwargs)
            return

        group, version = obj.api_version.split("/", 1)
        await asyncio.to_thread(
            self.custom.patch_namespaced_custom_object,
            group=group,
            version=version,
            namespace=obj.namespace,
            plural=_CUSTOM_PLURALS[obj.kind],
            name=obj.name,
            body=obj.to_manifest()
        )


# Global instance - lazily initialized
_k8s_client_instance: Optional[KubernetesClient] = None


def get_k8s_client() -> KubernetesClient:
    """Get or create the global Kubernetes client instance."""
    global _k8s_client_instance
    if _k8s_client_instance is None:
        _k8s_client_instance = KubernetesClient()
    return _k8s_client_instance
