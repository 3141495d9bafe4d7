from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, field_validator
from pydantic.alias_generators import to_camel


class _ConnectorConfig(BaseModel):
    # Stored configs use camelCase keys; code uses snake_case.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class SlackConfig(_ConnectorConfig):
    bot_token: str = Field(min_length=1)
    signing_secret: str = Field(min_length=1)
    allowed_channels: list[str] = Field(default_factory=list)
    max_history_results: int = Field(default=20, ge=1, le=200)
    timeout_ms: int = Field(default=10000, ge=500, le=30000)

    @field_validator("bot_token")
    @classmethod
    def _bot_token_prefix(cls, value: str) -> str:
        if not value.startswith("xoxb-"):
            raise ValueError("bot token must start with xoxb-")
        return value


class WooCommerceConfig(_ConnectorConfig):
    base_url: HttpUrl
    consumer_key: str = Field(min_length=1)
    consumer_secret: str = Field(min_length=1)
    api_version: Literal["wc/v3", "wc/v2"] = "wc/v3"
    timeout_ms: int = Field(default=10000, ge=1000, le=30000)

    @field_validator("consumer_key")
    @classmethod
    def _consumer_key_prefix(cls, value: str) -> str:
        if not value.startswith("ck_"):
            raise ValueError("consumer key must start with ck_")
        return value

    @field_validator("consumer_secret")
    @classmethod
    def _consumer_secret_prefix(cls, value: str) -> str:
        if not value.startswith("cs_"):
            raise ValueError("consumer secret must start with cs_")
        return value


class GmailConfig(_ConnectorConfig):
    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    redirect_uri: HttpUrl
    access_token: str | None = None
    refresh_token: str | None = None
    # epoch milliseconds
    token_expiry: int | None = None
    max_results: int = Field(default=10, ge=1, le=100)
    timeout_ms: int = Field(default=10000, ge=500, le=30000)


class CustomRestConfig(_ConnectorConfig):
    base_url: HttpUrl
    method: Literal["GET", "POST"] = "GET"
    headers: dict[str, str] = Field(default_factory=dict)
    query_param: str = "q"
    results_json_path: str = "$.results"
    label_json_path: str = "$.name"
    timeout_ms: int = Field(default=8000, ge=500, le=30000)


class TrackpodConfig(_ConnectorConfig):
    api_key: str = Field(min_length=1)
    base_url: HttpUrl = HttpUrl("https://api.trackpod.io")
    enabled: bool = True
    max_results: int = Field(default=20, ge=1, le=200)
    timeout_ms: int = Field(default=10000, ge=500, le=30000)
