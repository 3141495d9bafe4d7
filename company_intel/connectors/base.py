from __future__ import annotations

import time
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable

import requests

from company_intel.results import NormalizedResult

# Failures a connector turns into a failed result instead of raising.
CONNECTOR_ERRORS: tuple[type[Exception], ...] = (
    requests.RequestException,
    ValueError,
    KeyError,
    TypeError,
    AttributeError,
)


class ConnectorType(StrEnum):
    SLACK = "SLACK"
    WOOCOMMERCE = "WOOCOMMERCE"
    GMAIL = "GMAIL"
    CUSTOM_REST = "CUSTOM_REST"
    TRACKPOD = "TRACKPOD"


@runtime_checkable
class Connector(Protocol):
    source: str
    timeout_ms: int

    def test_connection(self) -> None: ...

    def run_enrichment(self, query: str) -> NormalizedResult: ...


def elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def response_json(response: Any) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise ValueError(f"invalid JSON response (status {response.status_code})") from exc
