"""
Unit tests for the credential distributor.

Tests:
- Dedup by (provider, namespace)
- Gating on the secret-store readiness token
- Registry and OAuth provider shapes
- Credential-sync request schema
"""

import json
import pytest

pytest.importorskip("kubernetes")

from homelab.services.provisioning import (
    CredentialDistributor,
    CredentialRequest,
    DependencyUnresolved,
    MalformedDescriptor,
    NamespaceHandle,
    NamespaceResolver,
    ReadinessToken,
    get_provider,
)
from homelab.services.provisioning.credentials import provider_for_secret


@pytest.fixture
def store_token():
    return ReadinessToken(subsystem="external-secrets", ready=True, attempts=1)


@pytest.fixture
def distributor():
    return CredentialDistributor(store_name="pulumi-esc")


@pytest.mark.unit
class TestCredentialDistributor:
    """Test ExternalSecret emission."""

    def test_identical_requests_collapse(self, distributor, store_token):
        """Two requests with the same (provider, namespace) yield one object."""
        namespace = NamespaceHandle.existing("apps")

        first = distributor.distribute(CredentialRequest("ghcr", namespace), store_token)
        second = distributor.distribute(CredentialRequest("ghcr", namespace), store_token)

        assert first is second
        assert len(distributor.issued) == 1

    def test_distinct_namespaces_get_distinct_objects(self, distributor, store_token):
        a = distributor.distribute(CredentialRequest("ghcr", NamespaceHandle.existing("a")), store_token)
        b = distributor.distribute(CredentialRequest("ghcr", NamespaceHandle.existing("b")), store_token)

        assert a is not b
        assert a.key != b.key

    def test_depends_on_store_token(self, distributor, store_token):
        obj = distributor.distribute(CredentialRequest("ghcr", NamespaceHandle.existing("apps")), store_token)

        assert obj.readiness_tokens == [store_token]
        assert obj.object_dependencies == []

    def test_depends_on_created_namespace(self, distributor, store_token):
        handle = NamespaceResolver("test").resolve("demo")

        obj = distributor.distribute(CredentialRequest("ghcr", handle), store_token)

        assert obj.object_dependencies == [handle.managed_object]
        assert obj.namespace == "demo"

    def test_not_ready_store_raises(self, distributor):
        token = ReadinessToken(subsystem="external-secrets", ready=False, attempts=10, reason="no endpoints")

        with pytest.raises(DependencyUnresolved):
            distributor.distribute(CredentialRequest("ghcr", NamespaceHandle.existing("apps")), token)
        assert distributor.issued == []

    def test_distribute_fleet(self, distributor, store_token):
        namespaces = [NamespaceHandle.existing(n) for n in ("a", "b", "default")]

        objects = distributor.distribute_fleet(["ghcr", "dockerhub"], namespaces, store_token)

        assert len(objects) == 6
        assert {o.namespace for o in distributor.for_namespace("b")} == {"b"}
        assert {o.name for o in distributor.for_namespace("default")} == {
            "ghcr-pull-secret",
            "dockerhub-pull-secret",
        }

    def test_fleet_pass_then_workload_request_dedups(self, distributor, store_token):
        namespace = NamespaceHandle.existing("apps")
        distributor.distribute_fleet(["ghcr"], [namespace], store_token)

        distributor.distribute(CredentialRequest("ghcr", namespace), store_token)

        assert len(distributor.issued) == 1


@pytest.mark.unit
class TestCredentialManifests:
    """Test the rendered ExternalSecret shapes."""

    def test_ghcr_external_secret(self, distributor, store_token):
        obj = distributor.distribute(CredentialRequest("ghcr", NamespaceHandle.existing("apps")), store_token)
        manifest = obj.to_manifest()

        assert manifest["apiVersion"] == "external-secrets.io/v1beta1"
        assert manifest["kind"] == "ExternalSecret"
        assert manifest["metadata"] == {"name": "ghcr-pull-secret", "namespace": "apps"}
        spec = manifest["spec"]
        assert spec["refreshInterval"] == "1h"
        assert spec["secretStoreRef"] == {"name": "pulumi-esc", "kind": "ClusterSecretStore"}
        assert [d["remoteRef"]["key"] for d in spec["data"]] == [
            "github-credentials/username",
            "github-credentials/token",
        ]
        assert spec["target"]["template"]["type"] == "kubernetes.io/dockerconfigjson"

    def test_dockerconfigjson_template_is_valid_json(self, distributor, store_token):
        """The template keeps the printf quotes unescaped for the operator."""
        obj = distributor.distribute(CredentialRequest("dockerhub", NamespaceHandle.existing("apps")), store_token)
        rendered = obj.body["spec"]["target"]["template"]["data"][".dockerconfigjson"]

        assert '{{ printf "%s:%s" .dockerhub_username .dockerhub_token | b64enc }}' in rendered
        auths = json.loads(rendered.replace('printf "%s:%s"', "printf"))["auths"]
        assert list(auths) == ["https://index.docker.io/v1/"]
        assert auths["https://index.docker.io/v1/"]["username"] == "{{ .dockerhub_username }}"

    def test_oauth_credential_is_opaque(self, distributor, store_token):
        obj = distributor.distribute(CredentialRequest("oauth/grafana", NamespaceHandle.existing("grafana")), store_token)
        spec = obj.body["spec"]

        assert obj.name == "grafana-oauth"
        assert "template" not in spec["target"]
        assert [d["secretKey"] for d in spec["data"]] == ["clientId", "clientSecret", "cookieSecret"]
        assert spec["data"][0]["remoteRef"]["key"] == "grafana/oauth/clientId"

    def test_custom_refresh_interval(self, store_token):
        distributor = CredentialDistributor("pulumi-esc", refresh_interval="15m")
        obj = distributor.distribute(
            CredentialRequest("ghcr", NamespaceHandle.existing("apps"), refresh_interval="5m"),
            store_token,
        )

        assert obj.body["spec"]["refreshInterval"] == "5m"


@pytest.mark.unit
class TestCredentialProviders:
    """Test provider lookup and the sync request schema."""

    def test_request_schema(self):
        request = CredentialRequest("ghcr", NamespaceHandle.existing("apps"), "1h")

        assert request.to_schema() == {
            "providerId": "ghcr",
            "targetNamespace": "apps",
            "refreshInterval": "1h",
            "sourceKeys": ["github-credentials/username", "github-credentials/token"],
            "targetSecretShape": "kubernetes.io/dockerconfigjson",
        }

    def test_distributor_schemas(self, distributor, store_token):
        distributor.distribute(CredentialRequest("oauth/wiki", NamespaceHandle.existing("wiki")), store_token)

        schemas = distributor.schemas()

        assert len(schemas) == 1
        assert schemas[0]["targetSecretShape"] == "Opaque"

    def test_unknown_provider(self):
        with pytest.raises(MalformedDescriptor, match="Unknown credential provider"):
            get_provider("quay")

    def test_provider_for_secret(self):
        assert provider_for_secret("ghcr-pull-secret") == "ghcr"
        assert provider_for_secret("dockerhub-pull-secret") == "dockerhub"
        assert provider_for_secret("my-registry") is None
