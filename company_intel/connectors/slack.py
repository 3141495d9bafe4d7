from __future__ import annotations

import logging
import time
from datetime import UTC, datetime
from typing import Any

import requests

from company_intel.connectors.base import CONNECTOR_ERRORS, ConnectorType, elapsed_ms, response_json
from company_intel.connectors.configs import SlackConfig
from company_intel.results import NormalizedResult, NormalizedResultItem, err_result, ok_result

logger = logging.getLogger(__name__)

SLACK_API_BASE = "https://slack.com/api"


class SlackConnector:
    """Searches workspace message history via ``search.messages``."""

    source = ConnectorType.SLACK.value

    def __init__(self, config: SlackConfig, *, session: requests.Session | None = None) -> None:
        self.config = config
        self.timeout_ms = config.timeout_ms
        self._session = session or requests.Session()

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.config.bot_token}"}

    def test_connection(self) -> None:
        response = self._session.get(
            f"{SLACK_API_BASE}/auth.test",
            headers=self._headers(),
            timeout=self.timeout_ms / 1000.0,
        )
        data = response_json(response)
        if not data.get("ok"):
            raise RuntimeError(f"Slack auth.test failed: {data.get('error')}")

    @staticmethod
    def _label(match: dict[str, Any]) -> str:
        channel = (match.get("channel") or {}).get("name", "unknown")
        try:
            posted = datetime.fromtimestamp(float(match.get("ts", 0)), tz=UTC).isoformat()
        except (TypeError, ValueError):
            posted = str(match.get("ts", ""))
        return f"#{channel} @ {posted}"

    def run_enrichment(self, query: str) -> NormalizedResult:
        started = time.monotonic()
        try:
            response = self._session.get(
                f"{SLACK_API_BASE}/search.messages",
                params={"query": query, "count": self.config.max_history_results},
                headers=self._headers(),
                timeout=self.timeout_ms / 1000.0,
            )
            data = response_json(response)
            if not data.get("ok"):
                return err_result(
                    source=self.source,
                    message=f"Slack search failed: {data.get('error')}",
                    code="SLACK_API_ERROR",
                    duration_ms=elapsed_ms(started),
                )
            matches = (data.get("messages") or {}).get("matches") or []
            items = [
                NormalizedResultItem(
                    label=self._label(m),
                    summary=m.get("text"),
                    data={"channel": (m.get("channel") or {}).get("name"), "ts": m.get("ts")},
                    url=m.get("permalink"),
                )
                for m in matches
            ]
            return ok_result(source=self.source, items=items, duration_ms=elapsed_ms(started))
        except CONNECTOR_ERRORS as exc:
            logger.warning("slack_search_failed error=%s", exc)
            return err_result(source=self.source, message=str(exc), duration_ms=elapsed_ms(started))
