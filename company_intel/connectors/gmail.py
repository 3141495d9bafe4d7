from __future__ import annotations

import logging
import time

import requests

from company_intel.connectors.base import CONNECTOR_ERRORS, ConnectorType, elapsed_ms, response_json
from company_intel.connectors.configs import GmailConfig
from company_intel.results import NormalizedResult, NormalizedResultItem, err_result, ok_result

logger = logging.getLogger(__name__)

GMAIL_API_BASE = "https://gmail.googleapis.com/gmail/v1/users/me"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
# Refresh when the cached token expires within this window.
TOKEN_REFRESH_MARGIN_MS = 60_000


class GmailConnector:
    """Searches a mailbox and returns subject/sender metadata for the matches.

    The stored access token is reused while it has more than a minute left;
    otherwise a fresh one is obtained with the refresh token. Refreshed tokens
    are kept on the instance only; writing them back to the credential store
    is the store's concern.
    """

    source = ConnectorType.GMAIL.value

    def __init__(self, config: GmailConfig, *, session: requests.Session | None = None) -> None:
        self.config = config
        self.timeout_ms = config.timeout_ms
        self._session = session or requests.Session()
        self._access_token = config.access_token
        self._token_expiry = config.token_expiry

    def _get_access_token(self) -> str:
        now_ms = int(time.time() * 1000)
        if self._access_token and self._token_expiry and self._token_expiry > now_ms + TOKEN_REFRESH_MARGIN_MS:
            return self._access_token
        if not self.config.refresh_token:
            raise RuntimeError("no Gmail refresh token; re-authorize the integration")

        response = self._session.post(
            GOOGLE_TOKEN_URL,
            data={
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
                "refresh_token": self.config.refresh_token,
                "grant_type": "refresh_token",
            },
            timeout=self.timeout_ms / 1000.0,
        )
        data = response_json(response)
        token = data.get("access_token")
        if not token:
            raise RuntimeError(f"Gmail token refresh failed: {data.get('error')}")
        self._access_token = str(token)
        self._token_expiry = now_ms + int(data.get("expires_in", 3600)) * 1000
        return self._access_token

    def _get(self, url: str, *, token: str, params: dict | list | None = None) -> dict:
        response = self._session.get(
            url,
            params=params,
            headers={"Authorization": f"Bearer {token}"},
            timeout=self.timeout_ms / 1000.0,
        )
        if not response.ok:
            raise RuntimeError(f"Gmail request failed: {response.status_code}")
        return response_json(response)

    def test_connection(self) -> None:
        token = self._get_access_token()
        self._get(f"{GMAIL_API_BASE}/profile", token=token)

    def run_enrichment(self, query: str) -> NormalizedResult:
        started = time.monotonic()
        try:
            token = self._get_access_token()
            listing = self._get(
                f"{GMAIL_API_BASE}/messages",
                token=token,
                params={"q": query, "maxResults": self.config.max_results},
            )
            items = []
            for ref in (listing.get("messages") or [])[: self.config.max_results]:
                message = self._get(
                    f"{GMAIL_API_BASE}/messages/{ref['id']}",
                    token=token,
                    params=[
                        ("format", "metadata"),
                        ("metadataHeaders", "Subject"),
                        ("metadataHeaders", "From"),
                        ("metadataHeaders", "Date"),
                    ],
                )
                headers = {h.get("name"): h.get("value", "") for h in (message.get("payload") or {}).get("headers") or []}
                sender = headers.get("From", "")
                date = headers.get("Date", "")
                items.append(
                    NormalizedResultItem(
                        label=headers.get("Subject") or "(no subject)",
                        summary=f"From: {sender}\nSnippet: {message.get('snippet', '')}",
                        data={"message_id": ref["id"], "from": sender, "date": date},
                        timestamp=date or None,
                    )
                )
            return ok_result(source=self.source, items=items, duration_ms=elapsed_ms(started))
        except (RuntimeError, *CONNECTOR_ERRORS) as exc:
            logger.warning("gmail_search_failed error=%s", exc)
            return err_result(source=self.source, message=str(exc), duration_ms=elapsed_ms(started))
