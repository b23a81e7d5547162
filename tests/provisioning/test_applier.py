"""
Test applying fleet results.

Verifies:
- Cloudflare record upsert (create vs update) over a mocked transport
- Kubernetes objects routed to the cluster client, records to Cloudflare
- A rejected object stops only its own workload
"""

import json
import httpx
import pytest
from unittest.mock import AsyncMock, Mock, patch

pytest.importorskip("kubernetes")

from kubernetes.client.rest import ApiException

from homelab.services.provisioning import (
    CloudflareDnsClient,
    FleetApplier,
    FleetOrchestrator,
    ValidationFailure,
)
from homelab.config import Settings

_RealAsyncClient = httpx.AsyncClient


def mock_cloudflare(handler):
    """Patch httpx.AsyncClient in the DNS client to use a mock transport."""
    transport = httpx.MockTransport(handler)
    return patch(
        "homelab.services.provisioning.cloudflare.httpx.AsyncClient",
        new=lambda **kwargs: _RealAsyncClient(transport=transport, **kwargs),
    )


async def compose_fleet(*descriptors):
    settings = Settings(
        environment="test",
        cloudflare_zone_id="zone-123",
        cloudflare_tunnel_hostname="tunnel-abc.example.net",
        readiness_assume_ready=True,
    )
    return await FleetOrchestrator.from_settings(settings).run(list(descriptors))


@pytest.mark.unit
class TestCloudflareDnsClient:
    """Test record upserts."""

    @pytest.mark.asyncio
    async def test_creates_missing_record(self, context, resolver, make_descriptor):
        from homelab.services.provisioning import compose
        record = compose(make_descriptor(), resolver.resolve("demo"), [], context).get("DNSRecord")
        requests = []

        def handler(request):
            requests.append(request)
            if request.method == "GET":
                return httpx.Response(200, json={"result": []})
            return httpx.Response(200, json={"result": {"id": "rec-1", **json.loads(request.content)}})

        with mock_cloudflare(handler):
            created = await CloudflareDnsClient("token-1").upsert(record)

        assert [r.method for r in requests] == ["GET", "POST"]
        assert requests[0].url.params["name"] == "demo.example.com"
        assert requests[1].url.path == "/client/v4/zones/zone-123/dns_records"
        assert requests[1].headers["Authorization"] == "Bearer token-1"
        payload = json.loads(requests[1].content)
        assert payload["content"] == "tunnel-abc.example.net"
        assert "zoneId" not in payload
        assert created["id"] == "rec-1"
        assert record.body["zoneId"] == "zone-123"

    @pytest.mark.asyncio
    async def test_updates_existing_record(self, context, resolver, make_descriptor):
        from homelab.services.provisioning import compose
        record = compose(make_descriptor(), resolver.resolve("demo"), [], context).get("DNSRecord")
        requests = []

        def handler(request):
            requests.append(request)
            if request.method == "GET":
                return httpx.Response(200, json={"result": [{"id": "rec-9"}]})
            return httpx.Response(200, json={"result": {"id": "rec-9"}})

        with mock_cloudflare(handler):
            await CloudflareDnsClient("token-1").upsert(record)

        assert [r.method for r in requests] == ["GET", "PUT"]
        assert requests[1].url.path.endswith("/dns_records/rec-9")

    @pytest.mark.asyncio
    async def test_rejected_record(self, context, resolver, make_descriptor):
        from homelab.services.provisioning import compose
        record = compose(make_descriptor(), resolver.resolve("demo"), [], context).get("DNSRecord")

        def handler(request):
            if request.method == "GET":
                return httpx.Response(200, json={"result": []})
            return httpx.Response(400, text='{"errors":[{"code":81053,"message":"record already exists"}]}')

        with mock_cloudflare(handler):
            with pytest.raises(ValidationFailure, match="record already exists"):
                await CloudflareDnsClient("token-1").upsert(record)

    def test_requires_token(self):
        with pytest.raises(ValueError):
            CloudflareDnsClient("")


@pytest.mark.unit
class TestFleetApplier:
    """Test ordered apply with per-workload isolation."""

    @pytest.mark.asyncio
    async def test_applies_everything_in_order(self, make_descriptor):
        result = await compose_fleet(make_descriptor())
        k8s = Mock(apply=AsyncMock())
        dns = Mock(upsert=AsyncMock())

        failures = await FleetApplier(k8s_client=k8s, dns_client=dns).apply(result)

        assert failures == []
        applied = [call.args[0] for call in k8s.apply.await_args_list]
        assert [obj.kind for obj in applied] == [
            "Namespace", "ExternalSecret", "ExternalSecret", "Deployment", "Service", "HTTPRoute",
        ]
        dns.upsert.assert_awaited_once()
        assert dns.upsert.await_args.args[0].kind == "DNSRecord"

    @pytest.mark.asyncio
    async def test_rejection_stops_only_that_workload(self, make_descriptor):
        result = await compose_fleet(
            make_descriptor(name="good", domain="good.example.com"),
            make_descriptor(name="bad", domain="bad.example.com"),
        )

        async def apply(obj):
            if obj.kind == "Deployment" and obj.namespace == "bad":
                raise ValidationFailure(obj.key, 400, "admission webhook denied the request")

        k8s = Mock(apply=AsyncMock(side_effect=apply))
        dns = Mock(upsert=AsyncMock())

        failures = await FleetApplier(k8s_client=k8s, dns_client=dns).apply(result)

        assert [(f.workload, f.kind) for f in failures] == [("bad", "ValidationFailure")]
        applied = {call.args[0].key for call in k8s.apply.await_args_list}
        assert "gateway.networking.k8s.io/v1/HTTPRoute:good/good" in applied
        assert "gateway.networking.k8s.io/v1/HTTPRoute:bad/bad" not in applied
        assert [call.args[0].name for call in dns.upsert.await_args_list] == ["good.example.com"]

    @pytest.mark.asyncio
    async def test_rejected_shared_credential_blocks_dependents(self, make_descriptor):
        result = await compose_fleet(
            make_descriptor(image_pull_secrets=["ghcr-pull-secret"]),
        )

        async def apply(obj):
            if obj.kind == "ExternalSecret" and obj.namespace == "demo":
                raise ValidationFailure(obj.key, 500, "failed calling webhook")

        k8s = Mock(apply=AsyncMock(side_effect=apply))

        failures = await FleetApplier(k8s_client=k8s, dns_client=Mock(upsert=AsyncMock())).apply(result)

        assert [f.kind for f in failures] == ["ValidationFailure", "DependencyUnresolved"]
        assert "Deployment" not in [call.args[0].kind for call in k8s.apply.await_args_list]

    @pytest.mark.asyncio
    async def test_records_skipped_without_dns_client(self, make_descriptor):
        result = await compose_fleet(make_descriptor())
        k8s = Mock(apply=AsyncMock())

        failures = await FleetApplier(k8s_client=k8s).apply(result)

        assert failures == []
        assert all(call.args[0].is_kubernetes for call in k8s.apply.await_args_list)

    @pytest.mark.asyncio
    async def test_api_error_stops_only_that_workload(self, make_descriptor):
        """A non-admission API error (422) is recorded and later workloads still apply."""
        result = await compose_fleet(
            make_descriptor(name="a", domain="a.example.com"),
            make_descriptor(name="b", domain="b.example.com"),
        )

        async def apply(obj):
            if obj.kind == "Deployment" and obj.namespace == "a":
                raise ApiException(status=422, reason="Unprocessable Entity")

        k8s = Mock(apply=AsyncMock(side_effect=apply))

        failures = await FleetApplier(k8s_client=k8s, dns_client=Mock(upsert=AsyncMock())).apply(result)

        assert [(f.workload, f.kind) for f in failures] == [("a", "ApplyError")]
        assert "422" in failures[0].message
        applied = [call.args[0] for call in k8s.apply.await_args_list]
        assert [obj.kind for obj in applied if obj.namespace == "b"] == [
            "ExternalSecret", "Deployment", "Service", "HTTPRoute",
        ]
        assert "Service" not in [obj.kind for obj in applied if obj.namespace == "a"]

    @pytest.mark.asyncio
    async def test_dns_transport_error_stops_only_that_workload(self, make_descriptor):
        result = await compose_fleet(
            make_descriptor(name="a", domain="a.example.com"),
            make_descriptor(name="b", domain="b.example.com"),
        )

        async def upsert(obj):
            if obj.name == "a.example.com":
                raise httpx.ConnectError("connection refused")

        dns = Mock(upsert=AsyncMock(side_effect=upsert))

        failures = await FleetApplier(k8s_client=Mock(apply=AsyncMock()), dns_client=dns).apply(result)

        assert [(f.workload, f.kind) for f in failures] == [("a", "ApplyError")]
        assert "ConnectError" in failures[0].message
        assert [call.args[0].name for call in dns.upsert.await_args_list] == ["a.example.com", "b.example.com"]

    @pytest.mark.asyncio
    async def test_cloudflare_server_error_is_recorded(self, make_descriptor):
        result = await compose_fleet(make_descriptor())

        def handler(request):
            return httpx.Response(502, json={"success": False})

        dns = CloudflareDnsClient("token-123")
        with mock_cloudflare(handler):
            failures = await FleetApplier(k8s_client=Mock(apply=AsyncMock()), dns_client=dns).apply(result)

        assert [(f.workload, f.kind) for f in failures] == [("demo", "ApplyError")]
        assert "HTTPStatusError" in failures[0].message
