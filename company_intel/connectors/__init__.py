from company_intel.connectors.base import Connector, ConnectorType
from company_intel.connectors.custom_rest import CustomRestConnector
from company_intel.connectors.gmail import GmailConnector
from company_intel.connectors.registry import build_connector, resolve_connector_type
from company_intel.connectors.slack import SlackConnector
from company_intel.connectors.trackpod import TrackpodConnector
from company_intel.connectors.woocommerce import WooCommerceConnector

__all__ = [
    "Connector",
    "ConnectorType",
    "CustomRestConnector",
    "GmailConnector",
    "SlackConnector",
    "TrackpodConnector",
    "WooCommerceConnector",
    "build_connector",
    "resolve_connector_type",
]
