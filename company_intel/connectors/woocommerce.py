from __future__ import annotations

import logging
import time

import requests

from company_intel.connectors.base import CONNECTOR_ERRORS, ConnectorType, elapsed_ms, response_json
from company_intel.connectors.configs import WooCommerceConfig
from company_intel.results import NormalizedResult, NormalizedResultItem, err_result, ok_result

logger = logging.getLogger(__name__)

ORDERS_PER_PAGE = 10


class WooCommerceConnector:
    source = ConnectorType.WOOCOMMERCE.value

    def __init__(self, config: WooCommerceConfig, *, session: requests.Session | None = None) -> None:
        self.config = config
        self.timeout_ms = config.timeout_ms
        self._session = session or requests.Session()
        self._base = f"{str(config.base_url).rstrip('/')}/wp-json/{config.api_version}"

    def _auth(self) -> tuple[str, str]:
        return (self.config.consumer_key, self.config.consumer_secret)

    def test_connection(self) -> None:
        response = self._session.get(
            f"{self._base}/system_status",
            auth=self._auth(),
            timeout=self.timeout_ms / 1000.0,
        )
        if not response.ok:
            raise RuntimeError(f"WooCommerce test failed: {response.status_code} {response.reason}")

    def run_enrichment(self, query: str) -> NormalizedResult:
        started = time.monotonic()
        try:
            response = self._session.get(
                f"{self._base}/orders",
                params={"search": query, "per_page": ORDERS_PER_PAGE},
                auth=self._auth(),
                timeout=self.timeout_ms / 1000.0,
            )
            if not response.ok:
                return err_result(
                    source=self.source,
                    message=f"WooCommerce request failed: {response.status_code}",
                    code="WOOCOMMERCE_HTTP_ERROR",
                    duration_ms=elapsed_ms(started),
                )
            items = []
            for order in response_json(response):
                billing = order.get("billing") or {}
                name = f"{billing.get('first_name', '')} {billing.get('last_name', '')}".strip()
                items.append(
                    NormalizedResultItem(
                        label=f"Order #{order['id']} - {name}" if name else f"Order #{order['id']}",
                        summary=(
                            f"Status: {order.get('status')}, Total: {order.get('total')}, "
                            f"Email: {billing.get('email', '')}"
                        ),
                        data={
                            "order_id": order["id"],
                            "status": order.get("status"),
                            "total": order.get("total"),
                            "email": billing.get("email"),
                        },
                        timestamp=order.get("date_created"),
                    )
                )
            return ok_result(source=self.source, items=items, duration_ms=elapsed_ms(started))
        except CONNECTOR_ERRORS as exc:
            logger.warning("woocommerce_search_failed error=%s", exc)
            return err_result(source=self.source, message=str(exc), duration_ms=elapsed_ms(started))
