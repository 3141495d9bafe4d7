from __future__ import annotations

import pytest
from pydantic import ValidationError

from company_intel.results import (
    NormalizedResult,
    NormalizedResultItem,
    ResultError,
    err_result,
    ok_result,
)


def test_ok_result_counts_items_and_has_no_error():
    result = ok_result(
        source="SLACK",
        items=[NormalizedResultItem(label="a"), NormalizedResultItem(label="b")],
        duration_ms=12,
    )
    assert result.success is True
    assert result.error is None
    assert result.total_count == 2
    assert result.status_message == "Found 2 result(s)"
    assert result.duration_ms == 12


def test_ok_result_keeps_explicit_total_count():
    result = ok_result(source="GMAIL", items=[NormalizedResultItem(label="x")], total_count=40)
    assert result.total_count == 40


def test_err_result_carries_error_and_no_items():
    result = err_result(source="WOOCOMMERCE", message="boom", code="WOOCOMMERCE_HTTP_ERROR")
    assert result.success is False
    assert result.items == []
    assert result.error == ResultError(code="WOOCOMMERCE_HTTP_ERROR", message="boom")
    assert result.status_message == "Error: boom"


def test_failed_result_without_error_is_rejected():
    with pytest.raises(ValidationError, match="must carry an error"):
        NormalizedResult(source="SLACK", success=False, status_message="nope")


def test_failed_result_with_items_is_rejected():
    with pytest.raises(ValidationError, match="must not carry items"):
        NormalizedResult(
            source="SLACK",
            success=False,
            status_message="nope",
            items=[NormalizedResultItem(label="leak")],
            error=ResultError(code="X", message="y"),
        )


def test_successful_result_with_error_is_rejected():
    with pytest.raises(ValidationError, match="must not carry an error"):
        NormalizedResult(
            source="SLACK",
            success=True,
            status_message="ok",
            error=ResultError(code="X", message="y"),
        )


def test_item_label_is_required():
    with pytest.raises(ValidationError):
        NormalizedResultItem(label="")
