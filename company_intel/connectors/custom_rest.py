from __future__ import annotations

import json
import logging
import time
from typing import Any

import requests

from company_intel.connectors.base import CONNECTOR_ERRORS, ConnectorType, elapsed_ms, response_json
from company_intel.connectors.configs import CustomRestConfig
from company_intel.results import NormalizedResult, NormalizedResultItem, err_result, ok_result

logger = logging.getLogger(__name__)


def get_by_path(obj: Any, path: str) -> Any:
    """Resolve a dot path such as ``$.data.items`` against decoded JSON."""
    normalized = path.strip()
    if normalized.startswith("$"):
        normalized = normalized[1:].lstrip(".")
    if not normalized:
        return obj
    current = obj
    for key in normalized.split("."):
        if isinstance(current, dict):
            current = current.get(key)
        elif isinstance(current, list) and key.isdigit() and int(key) < len(current):
            current = current[int(key)]
        else:
            return None
    return current


class CustomRestConnector:
    source = ConnectorType.CUSTOM_REST.value

    def __init__(self, config: CustomRestConfig, *, session: requests.Session | None = None) -> None:
        self.config = config
        self.timeout_ms = config.timeout_ms
        self._session = session or requests.Session()
        self._url = str(config.base_url)

    def test_connection(self) -> None:
        response = self._session.request(
            self.config.method,
            self._url,
            headers=dict(self.config.headers),
            timeout=self.timeout_ms / 1000.0,
        )
        if not response.ok:
            raise RuntimeError(f"Custom REST test failed: {response.status_code} {response.reason}")

    def _send(self, query: str) -> Any:
        headers = dict(self.config.headers)
        if self.config.method == "GET":
            return self._session.request(
                "GET",
                self._url,
                params={self.config.query_param: query},
                headers=headers,
                timeout=self.timeout_ms / 1000.0,
            )
        return self._session.request(
            "POST",
            self._url,
            json={self.config.query_param: query},
            headers=headers,
            timeout=self.timeout_ms / 1000.0,
        )

    def run_enrichment(self, query: str) -> NormalizedResult:
        started = time.monotonic()
        try:
            response = self._send(query)
            if not response.ok:
                return err_result(
                    source=self.source,
                    message=f"Custom REST request failed: {response.status_code}",
                    code="CUSTOM_REST_HTTP_ERROR",
                    duration_ms=elapsed_ms(started),
                )
            results = get_by_path(response_json(response), self.config.results_json_path)
            if not isinstance(results, list):
                return err_result(
                    source=self.source,
                    message="resultsJsonPath did not return an array",
                    code="CUSTOM_REST_SHAPE_ERROR",
                    duration_ms=elapsed_ms(started),
                )
            items = []
            for raw in results:
                label = get_by_path(raw, self.config.label_json_path)
                items.append(
                    NormalizedResultItem(
                        label=str(label) if label not in (None, "") else json.dumps(raw, ensure_ascii=True),
                        summary=json.dumps(raw, ensure_ascii=True)[:500],
                        data={"raw": raw},
                    )
                )
            return ok_result(source=self.source, items=items, duration_ms=elapsed_ms(started))
        except CONNECTOR_ERRORS as exc:
            logger.warning("custom_rest_request_failed url=%s error=%s", self._url, exc)
            return err_result(source=self.source, message=str(exc), duration_ms=elapsed_ms(started))
