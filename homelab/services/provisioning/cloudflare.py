"""
Cloudflare DNS client.

Upserts the CNAME records that point workload domains at the shared tunnel.
"""

from typing import Any, Dict, Optional
import logging

import httpx

from .errors import ValidationFailure
from .objects import ManagedObject

logger = logging.getLogger(__name__)


class CloudflareDnsClient:
    """Create-or-update DNS records in a Cloudflare zone."""

    API_BASE = "https://api.cloudflare.com/client/v4"

    def __init__(self, api_token: str, api_base: Optional[str] = None, timeout: float = 30.0):
        if not api_token:
            raise ValueError("Missing required Cloudflare credential: api_token")
        self.api_token = api_token
        self.api_base = (api_base or self.API_BASE).rstrip("/")
        self.timeout = timeout

    def _get_headers(self) -> Dict[str, str]:
        """Get headers for Cloudflare API requests."""
        return {
            "Authorization": f"Bearer {self.api_token}",
            "Content-Type": "application/json"
        }

    async def find_record(self, client: httpx.AsyncClient, zone_id: str, record_type: str, name: str) -> Optional[Dict[str, Any]]:
        """Existing record with this type and name, if any."""
        response = await client.get(
            f"{self.api_base}/zones/{zone_id}/dns_records",
            headers=self._get_headers(),
            params={"type": record_type, "name": name},
        )
        response.raise_for_status()
        results = response.json().get("result") or []
        return results[0] if results else None

    async def upsert(self, obj: ManagedObject) -> Dict[str, Any]:
        """
        Create the record, or update it in place if one with the same name exists.

        Returns:
            The record as returned by Cloudflare

        Raises:
            ValidationFailure: Cloudflare rejected the record (4xx)
            httpx.HTTPError: Transport errors and 5xx responses
        """
        record = dict(obj.body)
        zone_id = record.pop("zoneId")

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                existing = await self.find_record(client, zone_id, record["type"], record["name"])
                if existing:
                    response = await client.put(
                        f"{self.api_base}/zones/{zone_id}/dns_records/{existing['id']}",
                        headers=self._get_headers(),
                        json=record,
                    )
                else:
                    response = await client.post(
                        f"{self.api_base}/zones/{zone_id}/dns_records",
                        headers=self._get_headers(),
                        json=record,
                    )
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            if 400 <= e.response.status_code < 500:
                logger.error(f"[DNS] ❌ {obj.key} rejected: {e.response.text}")
                raise ValidationFailure(obj.key, e.response.status_code, e.response.text) from e
            raise

        action = "Updated" if existing else "Created"
        logger.info(f"[DNS] ✅ {action} {record['type']} {record['name']} -> {record['content']}")
        return response.json().get("result") or {}
