from __future__ import annotations

import logging
import time
from typing import Any
from urllib.parse import quote

import requests

from company_intel.connectors.base import CONNECTOR_ERRORS, ConnectorType, elapsed_ms
from company_intel.connectors.configs import TrackpodConfig
from company_intel.results import NormalizedResult, NormalizedResultItem, err_result, ok_result

logger = logging.getLogger(__name__)


class TrackpodConnector:
    """Looks up a delivery order by number and a route by code.

    Both lookups are exact-match; a miss on either is not an error. A config
    with ``enabled`` set to false reports a failed lookup naming the flag.
    """

    source = ConnectorType.TRACKPOD.value

    def __init__(self, config: TrackpodConfig, *, session: requests.Session | None = None) -> None:
        self.config = config
        self.timeout_ms = config.timeout_ms
        self._session = session or requests.Session()
        self._base = str(config.base_url).rstrip("/")

    def _headers(self) -> dict[str, str]:
        return {"X-API-KEY": self.config.api_key, "Accept": "application/json"}

    def test_connection(self) -> None:
        if not self.config.enabled:
            raise RuntimeError("Trackpod integration is disabled")
        response = self._lookup("Order/Number/0")
        if response.status_code in (401, 403):
            raise RuntimeError(f"Trackpod authentication failed: {response.status_code}")

    def _lookup(self, path: str) -> Any:
        return self._session.get(
            f"{self._base}/{path}",
            headers=self._headers(),
            timeout=self.timeout_ms / 1000.0,
        )

    @staticmethod
    def _decode(response: Any) -> dict[str, Any] | None:
        if not response.ok:
            return None
        try:
            data = response.json()
        except ValueError:
            return None
        return data if isinstance(data, dict) and data.get("id") else None

    @staticmethod
    def _order_item(order: dict[str, Any], query: str) -> NormalizedResultItem:
        number = order.get("number") or order.get("orderNumber") or query
        route_code = order.get("routeCode") or (order.get("route") or {}).get("code")
        return NormalizedResultItem(
            label=f"Order #{number}",
            summary=f"Status: {order.get('status') or 'N/A'}, Route: {route_code or 'N/A'}",
            data={
                "order_id": order.get("id"),
                "order_number": number,
                "status": order.get("status"),
                "route_code": route_code,
                "address": order.get("address"),
                "customer_name": order.get("customerName") or (order.get("customer") or {}).get("name"),
            },
            timestamp=order.get("modifiedDate") or order.get("createdDate"),
        )

    @staticmethod
    def _route_item(route: dict[str, Any], query: str) -> NormalizedResultItem:
        order_count = route.get("orderCount") or len(route.get("orders") or [])
        driver = (route.get("driver") or {}).get("name")
        return NormalizedResultItem(
            label=f"Route: {route.get('code') or query}",
            summary=f"Status: {route.get('status') or 'N/A'}, Driver: {driver or 'N/A'}, Orders: {order_count}",
            data={
                "route_id": route.get("id"),
                "route_code": route.get("code"),
                "status": route.get("status"),
                "driver_name": driver,
                "vehicle_number": (route.get("vehicle") or {}).get("number"),
                "order_count": order_count,
                "date": route.get("date"),
            },
            timestamp=route.get("modifiedDate") or route.get("createdDate") or route.get("date"),
        )

    def run_enrichment(self, query: str) -> NormalizedResult:
        started = time.monotonic()
        if not self.config.enabled:
            return err_result(
                source=self.source,
                message="Trackpod integration is disabled (enabled=false in its config)",
                code="TRACKPOD_DISABLED",
                duration_ms=elapsed_ms(started),
            )
        try:
            term = quote(query.strip(), safe="")
            responses = [self._lookup(f"Order/Number/{term}"), self._lookup(f"Route/Code/{term}")]
            if any(r.status_code in (401, 403) for r in responses):
                return err_result(
                    source=self.source,
                    message="Trackpod authentication failed; check the API key",
                    code="TRACKPOD_AUTH_FAILED",
                    duration_ms=elapsed_ms(started),
                )
            items: list[NormalizedResultItem] = []
            order = self._decode(responses[0])
            if order is not None:
                items.append(self._order_item(order, query))
            route = self._decode(responses[1])
            if route is not None:
                items.append(self._route_item(route, query))
            return ok_result(
                source=self.source,
                items=items[: self.config.max_results],
                duration_ms=elapsed_ms(started),
            )
        except CONNECTOR_ERRORS as exc:
            logger.warning("trackpod_lookup_failed error=%s", exc)
            return err_result(source=self.source, message=str(exc), duration_ms=elapsed_ms(started))
