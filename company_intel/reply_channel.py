from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

import requests

logger = logging.getLogger(__name__)

SLACK_POST_MESSAGE_URL = "https://slack.com/api/chat.postMessage"


class ReplyDispatchError(RuntimeError):
    pass


class SlackReplyChannel:
    """Posts the answer into the Slack thread the job came from."""

    def __init__(self, *, session: requests.Session | None = None, timeout_s: float = 10.0) -> None:
        self.session = session or requests.Session()
        self.timeout_s = timeout_s

    def post_reply(self, *, origin: Mapping[str, Any], text: str, credentials: Mapping[str, str]) -> None:
        channel = str(origin.get("channel_id") or "").strip()
        if not channel:
            raise ReplyDispatchError("origin has no channel_id")
        body: dict[str, Any] = {"channel": channel, "text": text}
        thread_ts = str(origin.get("thread_ts") or "").strip()
        if thread_ts:
            body["thread_ts"] = thread_ts

        response = self.session.post(
            SLACK_POST_MESSAGE_URL,
            json=body,
            headers={"Authorization": f"Bearer {credentials['bot_token']}"},
            timeout=self.timeout_s,
        )
        try:
            data = response.json()
        except ValueError as exc:
            raise ReplyDispatchError(f"Slack chat.postMessage returned HTTP {response.status_code}") from exc
        if not isinstance(data, dict) or not data.get("ok"):
            error = data.get("error", "unknown") if isinstance(data, dict) else "unknown"
            raise ReplyDispatchError(f"Slack chat.postMessage failed: {error}")
        logger.info("slack_reply_posted channel=%s thread_ts=%s", channel, thread_ts)
