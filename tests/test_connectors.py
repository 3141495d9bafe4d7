from __future__ import annotations

import time

import pytest
import requests

from company_intel.connectors import (
    Connector,
    ConnectorType,
    CustomRestConnector,
    GmailConnector,
    SlackConnector,
    TrackpodConnector,
    WooCommerceConnector,
    build_connector,
    resolve_connector_type,
)
from company_intel.connectors.custom_rest import get_by_path
from company_intel.errors import PipelineError
from conftest import FakeResponse, FakeSession

SLACK_CONFIG = {"botToken": "xoxb-123", "signingSecret": "sig", "maxHistoryResults": 5}
WOO_CONFIG = {"baseUrl": "https://shop.example.com", "consumerKey": "ck_abc", "consumerSecret": "cs_def"}
GMAIL_CONFIG = {
    "clientId": "cid",
    "clientSecret": "csecret",
    "redirectUri": "https://app.example.com/oauth",
    "refreshToken": "refresh-1",
    "maxResults": 2,
}
REST_CONFIG = {
    "baseUrl": "https://crm.example.com/search",
    "resultsJsonPath": "$.data.items",
    "labelJsonPath": "$.name",
}
TRACKPOD_CONFIG = {"apiKey": "tp-key", "enabled": True}


def test_resolve_connector_type_is_case_insensitive():
    assert resolve_connector_type("slack") is ConnectorType.SLACK
    assert resolve_connector_type(" custom_rest ") is ConnectorType.CUSTOM_REST


def test_unknown_connector_type_is_a_configuration_error():
    with pytest.raises(PipelineError) as exc_info:
        build_connector("XERO", {})
    assert exc_info.value.code == "CONNECTOR_TYPE_UNKNOWN"
    assert exc_info.value.retryable is False


def test_invalid_config_is_rejected_at_build_time():
    with pytest.raises(PipelineError) as exc_info:
        build_connector("SLACK", {"botToken": "not-a-bot-token", "signingSecret": "x"})
    assert exc_info.value.code == "CONNECTOR_CONFIG_INVALID"


@pytest.mark.parametrize(
    "connector_type,config,expected",
    [
        ("SLACK", SLACK_CONFIG, SlackConnector),
        ("WOOCOMMERCE", WOO_CONFIG, WooCommerceConnector),
        ("GMAIL", GMAIL_CONFIG, GmailConnector),
        ("CUSTOM_REST", REST_CONFIG, CustomRestConnector),
        ("TRACKPOD", TRACKPOD_CONFIG, TrackpodConnector),
    ],
)
def test_build_connector_dispatches_each_type(connector_type, config, expected):
    connector = build_connector(connector_type, config)
    assert isinstance(connector, expected)
    assert isinstance(connector, Connector)
    assert connector.source == connector_type


def test_slack_search_maps_matches_to_items():
    session = FakeSession(
        [
            FakeResponse(
                200,
                {
                    "ok": True,
                    "messages": {
                        "matches": [
                            {
                                "text": "invoice 42 was paid",
                                "ts": "1700000000.000100",
                                "channel": {"name": "billing"},
                                "permalink": "https://slack.example/p1",
                            }
                        ]
                    },
                },
            )
        ]
    )
    connector = build_connector("SLACK", SLACK_CONFIG, session=session)
    result = connector.run_enrichment("invoice 42")

    assert result.success is True
    assert result.items[0].label.startswith("#billing @ 2023-11-14")
    assert result.items[0].summary == "invoice 42 was paid"
    method, url, kwargs = session.calls[0]
    assert url.endswith("/search.messages")
    assert kwargs["params"] == {"query": "invoice 42", "count": 5}
    assert kwargs["headers"]["Authorization"] == "Bearer xoxb-123"


def test_slack_api_error_becomes_failed_result():
    session = FakeSession([FakeResponse(200, {"ok": False, "error": "missing_scope"})])
    result = build_connector("SLACK", SLACK_CONFIG, session=session).run_enrichment("q")
    assert result.success is False
    assert result.error is not None
    assert result.error.code == "SLACK_API_ERROR"
    assert "missing_scope" in result.error.message


def test_slack_transport_error_is_caught():
    session = FakeSession([requests.ConnectionError("dns failure")])
    result = build_connector("SLACK", SLACK_CONFIG, session=session).run_enrichment("q")
    assert result.success is False
    assert "dns failure" in result.error.message


def test_woocommerce_orders_search():
    session = FakeSession(
        [
            FakeResponse(
                200,
                [
                    {
                        "id": 1001,
                        "status": "processing",
                        "total": "59.00",
                        "date_created": "2024-05-01T10:00:00",
                        "billing": {"first_name": "Ada", "last_name": "Lovelace", "email": "ada@example.com"},
                    }
                ],
            )
        ]
    )
    result = build_connector("WOOCOMMERCE", WOO_CONFIG, session=session).run_enrichment("ada")

    assert result.success is True
    assert result.items[0].label == "Order #1001 - Ada Lovelace"
    assert result.items[0].data["email"] == "ada@example.com"
    _, url, kwargs = session.calls[0]
    assert url == "https://shop.example.com/wp-json/wc/v3/orders"
    assert kwargs["auth"] == ("ck_abc", "cs_def")
    assert kwargs["params"]["search"] == "ada"


def test_woocommerce_http_error():
    session = FakeSession([FakeResponse(500, {"message": "down"})])
    result = build_connector("WOOCOMMERCE", WOO_CONFIG, session=session).run_enrichment("ada")
    assert result.success is False
    assert result.error.code == "WOOCOMMERCE_HTTP_ERROR"


def test_gmail_refreshes_token_then_fetches_metadata():
    session = FakeSession(
        [
            FakeResponse(200, {"access_token": "fresh-token", "expires_in": 3600}),
            FakeResponse(200, {"messages": [{"id": "m1"}]}),
            FakeResponse(
                200,
                {
                    "snippet": "see attached",
                    "payload": {
                        "headers": [
                            {"name": "Subject", "value": "Quote for ACME"},
                            {"name": "From", "value": "sales@acme.test"},
                            {"name": "Date", "value": "Mon, 1 Jan 2024 10:00:00 +0000"},
                        ]
                    },
                },
            ),
        ]
    )
    result = build_connector("GMAIL", GMAIL_CONFIG, session=session).run_enrichment("acme")

    assert result.success is True
    assert result.items[0].label == "Quote for ACME"
    assert "sales@acme.test" in result.items[0].summary
    assert session.calls[0][0] == "POST"
    assert session.calls[1][2]["headers"]["Authorization"] == "Bearer fresh-token"


def test_gmail_reuses_unexpired_access_token():
    config = {
        **GMAIL_CONFIG,
        "accessToken": "cached",
        "tokenExpiry": int(time.time() * 1000) + 10 * 60 * 1000,
    }
    session = FakeSession([FakeResponse(200, {"messages": []})])
    result = build_connector("GMAIL", config, session=session).run_enrichment("acme")
    assert result.success is True
    assert result.items == []
    assert len(session.calls) == 1
    assert session.calls[0][2]["headers"]["Authorization"] == "Bearer cached"


def test_gmail_without_refresh_token_fails_softly():
    config = {k: v for k, v in GMAIL_CONFIG.items() if k != "refreshToken"}
    result = build_connector("GMAIL", config, session=FakeSession()).run_enrichment("acme")
    assert result.success is False
    assert "refresh token" in result.error.message


def test_get_by_path_walks_dicts_and_list_indexes():
    payload = {"data": {"items": [{"name": "first"}, {"name": "second"}]}}
    assert get_by_path(payload, "$.data.items.1.name") == "second"
    assert get_by_path(payload, "$") is payload
    assert get_by_path(payload, "$.missing.path") is None


def test_custom_rest_get_extracts_results():
    session = FakeSession([FakeResponse(200, {"data": {"items": [{"name": "ACME Ltd"}, {"id": 7}]}})])
    result = build_connector("CUSTOM_REST", REST_CONFIG, session=session).run_enrichment("acme")

    assert result.success is True
    assert [i.label for i in result.items] == ["ACME Ltd", '{"id": 7}']
    method, _, kwargs = session.calls[0]
    assert method == "GET"
    assert kwargs["params"] == {"q": "acme"}


def test_custom_rest_post_sends_json_body():
    config = {**REST_CONFIG, "method": "POST", "queryParam": "term"}
    session = FakeSession([FakeResponse(200, {"data": {"items": []}})])
    build_connector("CUSTOM_REST", config, session=session).run_enrichment("acme")
    method, _, kwargs = session.calls[0]
    assert method == "POST"
    assert kwargs["json"] == {"term": "acme"}


def test_custom_rest_non_array_results_is_shape_error():
    session = FakeSession([FakeResponse(200, {"data": {"items": {"name": "x"}}})])
    result = build_connector("CUSTOM_REST", REST_CONFIG, session=session).run_enrichment("acme")
    assert result.success is False
    assert result.error.code == "CUSTOM_REST_SHAPE_ERROR"


def test_trackpod_is_enabled_by_default():
    assert build_connector("TRACKPOD", {"apiKey": "k"}).config.enabled is True


def test_trackpod_disabled_is_reported_without_calls():
    session = FakeSession()
    result = build_connector("TRACKPOD", {"apiKey": "k", "enabled": False}, session=session).run_enrichment("123")
    assert result.success is False
    assert result.error.code == "TRACKPOD_DISABLED"
    assert "enabled=false" in result.error.message
    assert session.calls == []


def test_trackpod_finds_order_and_misses_route():
    session = FakeSession(
        [
            FakeResponse(200, {"id": 9, "number": "123", "status": "Delivered", "routeCode": "R-1"}),
            FakeResponse(404, None),
        ]
    )
    result = build_connector("TRACKPOD", TRACKPOD_CONFIG, session=session).run_enrichment("123")

    assert result.success is True
    assert [i.label for i in result.items] == ["Order #123"]
    assert session.calls[0][1].endswith("/Order/Number/123")
    assert session.calls[1][1].endswith("/Route/Code/123")
    assert session.calls[0][2]["headers"]["X-API-KEY"] == "tp-key"


def test_trackpod_auth_failure():
    session = FakeSession([FakeResponse(401, None), FakeResponse(401, None)])
    result = build_connector("TRACKPOD", TRACKPOD_CONFIG, session=session).run_enrichment("123")
    assert result.success is False
    assert result.error.code == "TRACKPOD_AUTH_FAILED"


class TestConnectionChecks:
    def test_slack_auth_test(self):
        session = FakeSession([FakeResponse(200, {"ok": True}), FakeResponse(200, {"ok": False, "error": "invalid_auth"})])
        connector = build_connector("SLACK", SLACK_CONFIG, session=session)
        connector.test_connection()
        with pytest.raises(RuntimeError, match="invalid_auth"):
            connector.test_connection()
        assert session.calls[0][1].endswith("/auth.test")

    def test_woocommerce_system_status(self):
        session = FakeSession([FakeResponse(200, {}), FakeResponse(401, None, reason="Unauthorized")])
        connector = build_connector("WOOCOMMERCE", WOO_CONFIG, session=session)
        connector.test_connection()
        with pytest.raises(RuntimeError, match="401 Unauthorized"):
            connector.test_connection()
        assert session.calls[0][2]["auth"] == ("ck_abc", "cs_def")

    def test_gmail_profile(self):
        config = {
            **GMAIL_CONFIG,
            "accessToken": "cached",
            "tokenExpiry": int(time.time() * 1000) + 10 * 60 * 1000,
        }
        session = FakeSession([FakeResponse(200, {"emailAddress": "ops@acme.test"}), FakeResponse(401, None)])
        connector = build_connector("GMAIL", config, session=session)
        connector.test_connection()
        with pytest.raises(RuntimeError, match="401"):
            connector.test_connection()
        assert session.calls[0][1].endswith("/profile")

    def test_custom_rest_endpoint(self):
        session = FakeSession([FakeResponse(200, {}), FakeResponse(500, None, reason="Server Error")])
        connector = build_connector("CUSTOM_REST", REST_CONFIG, session=session)
        connector.test_connection()
        with pytest.raises(RuntimeError, match="500"):
            connector.test_connection()

    def test_trackpod_checks_flag_and_key(self):
        with pytest.raises(RuntimeError, match="disabled"):
            build_connector("TRACKPOD", {"apiKey": "k", "enabled": False}, session=FakeSession()).test_connection()

        session = FakeSession([FakeResponse(404, None), FakeResponse(403, None)])
        connector = build_connector("TRACKPOD", TRACKPOD_CONFIG, session=session)
        connector.test_connection()
        with pytest.raises(RuntimeError, match="authentication failed"):
            connector.test_connection()
        assert session.calls[0][2]["headers"]["X-API-KEY"] == "tp-key"
