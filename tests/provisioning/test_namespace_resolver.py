"""
Unit tests for the namespace resolver.

Covers:
- Idempotent resolution per workload name
- Pre-created namespaces returned unchanged
- Pod Security Standards labels on created namespaces
"""

import pytest

pytest.importorskip("kubernetes")

from homelab.services.provisioning import NamespaceHandle, NamespaceResolver


@pytest.mark.unit
class TestNamespaceResolver:
    """Test namespace resolution."""

    def test_resolve_creates_namespace_object(self):
        """A new workload gets a Namespace managed object named after it."""
        resolver = NamespaceResolver("test")

        handle = resolver.resolve("demo")

        assert handle.name == "demo"
        assert handle.created
        assert handle.managed_object.kind == "Namespace"
        assert handle.managed_object.namespace is None
        assert handle.managed_object.key == "v1/Namespace:demo"

    def test_resolve_is_idempotent(self):
        """Resolving the same name twice yields the same namespace identity."""
        resolver = NamespaceResolver("test")

        first = resolver.resolve("demo")
        second = resolver.resolve("demo")

        assert first is second
        assert first.managed_object is second.managed_object
        assert len(resolver.handles) == 1

    def test_pre_created_handle_returned_unchanged(self):
        """A supplied handle is passed through without creating anything."""
        resolver = NamespaceResolver("test")
        existing = NamespaceHandle.existing("shared-apps")

        handle = resolver.resolve("demo", pre_created=existing)

        assert handle is existing
        assert not handle.created
        assert resolver.get("demo") is existing

    def test_namespace_labels(self):
        """Created namespaces carry isolation and ownership labels."""
        resolver = NamespaceResolver("test")

        manifest = resolver.resolve("demo").managed_object.to_manifest()
        labels = manifest["metadata"]["labels"]

        assert manifest["kind"] == "Namespace"
        assert labels["app"] == "demo"
        assert labels["environment"] == "test"
        assert labels["pod-security.kubernetes.io/enforce"] == "restricted"
        assert labels["pod-security.kubernetes.io/audit"] == "restricted"
        assert labels["pod-security.kubernetes.io/warn"] == "restricted"

    def test_distinct_names_get_distinct_namespaces(self):
        resolver = NamespaceResolver("test")

        a = resolver.resolve("app-a")
        b = resolver.resolve("app-b")

        assert a.name != b.name
        assert set(resolver.handles) == {"app-a", "app-b"}
