"""External license record store.

The sweeper only reads from here. Rows come from a PostgREST endpoint
(Supabase REST API) filtered to active licenses expiring within a window.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone

import httpx

from deliverybot.adapters.base_provider import ProviderError, ProviderUnavailableError
from deliverybot.config import LicenseStoreConfig
from deliverybot.constants import LICENSE_STORE_TIMEOUT_S
from deliverybot.core.models import ExpiryRecord, PlanTier
from deliverybot.utils import provider_retry

logger = logging.getLogger(__name__)

SELECT_COLUMNS = "email,expires_at,discord_id,plan_type,license_key"


class LicenseStore(ABC):
    """Read-only source of expiring license records."""

    @abstractmethod
    async def fetch_expiring(self, *, now: datetime, within_days: int) -> list[ExpiryRecord]:
        """Active records whose expiry is at or before `now + within_days`.

        Already-expired active records are included.
        """


def _parse_timestamp(raw: object) -> datetime | None:
    if not isinstance(raw, str) or not raw.strip():
        return None
    try:
        parsed = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_record(row: object) -> ExpiryRecord | None:
    """Build an ExpiryRecord from one REST row; None when the row is unusable."""
    if not isinstance(row, dict):
        return None
    email = row.get("email")
    expires_at = _parse_timestamp(row.get("expires_at"))
    if not isinstance(email, str) or not email.strip() or expires_at is None:
        return None

    raw_buyer_id = row.get("discord_id")
    buyer_id = str(raw_buyer_id).strip() if raw_buyer_id is not None else ""
    license_key = row.get("license_key")
    return ExpiryRecord(
        email=email.strip(),
        expires_at=expires_at,
        buyer_id=buyer_id or None,
        plan=PlanTier.parse(row.get("plan_type")),
        license_key=str(license_key) if license_key else None,
    )


class RestLicenseStore(LicenseStore):
    """LicenseStore over the Supabase/PostgREST HTTP API."""

    def __init__(
        self,
        config: LicenseStoreConfig,
        *,
        timeout: float = LICENSE_STORE_TIMEOUT_S,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not config.enabled:
            raise ValueError("License store requires both url and key")
        assert config.url is not None and config.key is not None
        self._endpoint = f"{config.url.rstrip('/')}/rest/v1/{config.table}"
        self._key = config.key
        self._timeout = timeout
        self._transport = transport

    @property
    def endpoint(self) -> str:
        return self._endpoint

    def _headers(self) -> dict[str, str]:
        return {
            "apikey": self._key,
            "Authorization": f"Bearer {self._key}",
            "Accept": "application/json",
        }

    async def fetch_expiring(self, *, now: datetime, within_days: int) -> list[ExpiryRecord]:
        cutoff = now + timedelta(days=within_days)
        rows = await self._fetch_rows(cutoff)

        records: list[ExpiryRecord] = []
        for row in rows:
            record = parse_record(row)
            if record is None:
                logger.warning("Skipping malformed license row: %r", row)
                continue
            records.append(record)
        logger.debug("License store returned %d rows, %d usable", len(rows), len(records))
        return records

    @provider_retry(retry_on=(ProviderUnavailableError,))
    async def _fetch_rows(self, cutoff: datetime) -> list[object]:
        params = {
            "select": SELECT_COLUMNS,
            "status": "eq.active",
            "expires_at": f"lte.{cutoff.astimezone(timezone.utc).isoformat()}",
        }
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.get(self._endpoint, params=params, headers=self._headers())
        except httpx.TransportError as e:
            raise ProviderUnavailableError(f"License store unreachable: {e}") from e

        if response.status_code >= 500:
            raise ProviderUnavailableError(f"License store error (HTTP {response.status_code})")
        if response.status_code >= 400:
            raise ProviderError(f"License store rejected query (HTTP {response.status_code}): {response.text[:200]}")

        try:
            payload = response.json()
        except ValueError as e:
            raise ProviderError(f"License store returned non-JSON (HTTP {response.status_code})") from e
        if not isinstance(payload, list):
            raise ProviderError("License store returned an unexpected payload shape")
        return payload
