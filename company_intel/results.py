from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, model_validator


class ResultError(BaseModel):
    code: str
    message: str


class NormalizedResultItem(BaseModel):
    label: str = Field(min_length=1)
    summary: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: str | None = None
    url: str | None = None


class NormalizedResult(BaseModel):
    """Shape every connector returns, successful or not.

    A failed result carries no items and always has an error; a successful
    one never has an error.
    """

    source: str
    success: bool
    status_message: str
    items: list[NormalizedResultItem] = Field(default_factory=list)
    total_count: int | None = None
    error: ResultError | None = None
    duration_ms: int = 0

    @model_validator(mode="after")
    def _check_outcome(self) -> "NormalizedResult":
        if self.success and self.error is not None:
            raise ValueError("successful result must not carry an error")
        if not self.success:
            if self.error is None:
                raise ValueError("failed result must carry an error")
            if self.items:
                raise ValueError("failed result must not carry items")
        return self


def ok_result(
    *,
    source: str,
    items: list[NormalizedResultItem],
    duration_ms: int = 0,
    total_count: int | None = None,
) -> NormalizedResult:
    return NormalizedResult(
        source=source,
        success=True,
        status_message=f"Found {len(items)} result(s)",
        items=items,
        total_count=len(items) if total_count is None else total_count,
        duration_ms=duration_ms,
    )


def err_result(
    *,
    source: str,
    message: str,
    code: str = "CONNECTOR_ERROR",
    duration_ms: int = 0,
) -> NormalizedResult:
    return NormalizedResult(
        source=source,
        success=False,
        status_message=f"Error: {message}",
        items=[],
        error=ResultError(code=code, message=message),
        duration_ms=duration_ms,
    )
