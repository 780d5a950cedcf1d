"""Hours-of-Service aware driver ranking: remote service when configured, local store otherwise."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx

from dipsy.core.config import get_settings
from dipsy.core.errors import UpstreamServiceError
from dipsy.core.logging import logger
from dipsy.models.dispatch import DriverStatus
from dipsy.services.tms_store import TmsStore, tms_store


def format_minutes(minutes: Optional[int]) -> str:
    """Minutes -> "Xh Ym"."""
    if minutes is None:
        return "0h"
    total = max(0, int(minutes))
    hours, mins = divmod(total, 60)
    if hours <= 0 and mins <= 0:
        return "0h"
    if mins == 0:
        return f"{hours}h"
    if hours == 0:
        return f"{mins}m"
    return f"{hours}h {mins}m"


def explain_driver(driver: Dict[str, Any]) -> str:
    name = driver.get("full_name") or " ".join(
        part for part in [driver.get("first_name"), driver.get("last_name")] if part
    )
    return (
        f"{name or 'This driver'} has {format_minutes(driver.get('hos_drive_remaining_min'))} drive and "
        f"{format_minutes(driver.get('hos_shift_remaining_min'))} shift remaining "
        f"(cycle: {format_minutes(driver.get('hos_cycle_remaining_min'))})."
    )


class HosRankingClient:
    SERVICE_NAME = "hos_ranking"

    def __init__(
        self,
        store: TmsStore | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = get_settings()
        self._store = store or tms_store
        self._transport = transport

    def is_remote(self) -> bool:
        return bool((self.settings.hos_ranking_url or "").strip())

    async def rank(
        self,
        tenant_id: str,
        *,
        pickup_time: Optional[str] = None,
        min_drive_remaining_min: int = 0,
        origin_city: Optional[str] = None,
        origin_state: Optional[str] = None,
    ) -> Dict[str, Any]:
        criteria = {
            "pickup_time": pickup_time,
            "min_drive_remaining_min": int(min_drive_remaining_min or 0),
            "origin_city": origin_city,
            "origin_state": origin_state,
        }
        if self.is_remote():
            drivers = await self._rank_remote(tenant_id, criteria)
        else:
            drivers = self._rank_local(tenant_id, criteria["min_drive_remaining_min"])
        logger.info(
            "HOS ranking completed",
            tenant_id=tenant_id,
            remote=self.is_remote(),
            count=len(drivers),
            min_drive_remaining_min=criteria["min_drive_remaining_min"],
        )
        return {"criteria": criteria, "count": len(drivers), "drivers": drivers}

    def _rank_local(self, tenant_id: str, min_drive_remaining_min: int) -> List[Dict[str, Any]]:
        drivers = self._store.list_drivers(
            tenant_id,
            status=DriverStatus.AVAILABLE.value,
            min_drive_remaining_min=min_drive_remaining_min,
            order_by_hos=True,
            limit=50,
        )
        return [{**driver, "explanation": explain_driver(driver)} for driver in drivers]

    async def _rank_remote(self, tenant_id: str, criteria: Dict[str, Any]) -> List[Dict[str, Any]]:
        headers = {"X-Tenant-ID": tenant_id}
        if self.settings.hos_ranking_token:
            headers["Authorization"] = f"Bearer {self.settings.hos_ranking_token}"

        attempts = 2
        last_error = ""
        last_status: Optional[int] = None
        for attempt in range(1, attempts + 1):
            try:
                async with httpx.AsyncClient(
                    timeout=self.settings.hos_ranking_timeout_seconds,
                    transport=self._transport,
                ) as client:
                    response = await client.post(self.settings.hos_ranking_url, json=criteria, headers=headers)
            except httpx.HTTPError as exc:
                last_error = f"{exc.__class__.__name__}: {exc}"
                logger.warning("HOS ranking request failed", tenant_id=tenant_id, attempt=attempt, error=last_error)
                continue

            if response.status_code >= 500:
                last_status = response.status_code
                last_error = response.text[:400]
                logger.warning(
                    "HOS ranking upstream error",
                    tenant_id=tenant_id,
                    attempt=attempt,
                    status_code=response.status_code,
                    error=last_error,
                )
                continue
            if response.status_code >= 400:
                raise UpstreamServiceError(
                    f"HOS ranking rejected the request ({response.status_code}).",
                    service=self.SERVICE_NAME,
                    status_code=response.status_code,
                )

            payload = response.json()
            if isinstance(payload, dict) and payload.get("ok") is False:
                logger.warning("HOS ranking reported failure", tenant_id=tenant_id, error=str(payload.get("error"))[:400])
                raise UpstreamServiceError(
                    "HOS ranking could not rank drivers right now.",
                    service=self.SERVICE_NAME,
                )
            drivers = payload.get("drivers", []) if isinstance(payload, dict) else []
            for driver in drivers:
                driver.setdefault("explanation", explain_driver(driver))
            return drivers

        raise UpstreamServiceError(
            "HOS ranking service is unavailable right now.",
            service=self.SERVICE_NAME,
            status_code=last_status,
        )
