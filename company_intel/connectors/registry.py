from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

import requests
from pydantic import BaseModel, ValidationError

from company_intel.connectors.base import Connector, ConnectorType
from company_intel.connectors.configs import (
    CustomRestConfig,
    GmailConfig,
    SlackConfig,
    TrackpodConfig,
    WooCommerceConfig,
)
from company_intel.connectors.custom_rest import CustomRestConnector
from company_intel.connectors.gmail import GmailConnector
from company_intel.connectors.slack import SlackConnector
from company_intel.connectors.trackpod import TrackpodConnector
from company_intel.connectors.woocommerce import WooCommerceConnector
from company_intel.errors import PipelineError

_REGISTRY: dict[ConnectorType, tuple[type[BaseModel], Callable[..., Connector]]] = {
    ConnectorType.SLACK: (SlackConfig, SlackConnector),
    ConnectorType.WOOCOMMERCE: (WooCommerceConfig, WooCommerceConnector),
    ConnectorType.GMAIL: (GmailConfig, GmailConnector),
    ConnectorType.CUSTOM_REST: (CustomRestConfig, CustomRestConnector),
    ConnectorType.TRACKPOD: (TrackpodConfig, TrackpodConnector),
}


def resolve_connector_type(raw: str | ConnectorType) -> ConnectorType:
    try:
        return ConnectorType(str(raw).strip().upper())
    except ValueError as exc:
        raise PipelineError(
            code="CONNECTOR_TYPE_UNKNOWN",
            message=f"unknown connector type: {raw}",
            error_class="config",
            retryable=False,
        ) from exc


def build_connector(
    connector_type: str | ConnectorType,
    config: Mapping[str, Any] | BaseModel,
    *,
    session: requests.Session | None = None,
) -> Connector:
    """Validate ``config`` for ``connector_type`` and return the concrete connector."""
    kind = resolve_connector_type(connector_type)
    config_model, factory = _REGISTRY[kind]
    if isinstance(config, config_model):
        validated = config
    else:
        try:
            validated = config_model.model_validate(dict(config))
        except (ValidationError, TypeError) as exc:
            raise PipelineError(
                code="CONNECTOR_CONFIG_INVALID",
                message=f"invalid {kind.value} config: {exc}",
                error_class="config",
                retryable=False,
            ) from exc
    return factory(validated, session=session)
