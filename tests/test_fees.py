"""Tests for escrow fee calculation and the fee schedule endpoint."""

from decimal import Decimal

import pytest
from httpx import AsyncClient

from visaflow.config import settings
from visaflow.services.fees import calculate_escrow_fees, get_fee_schedule


def test_fees_on_round_amount() -> None:
    fees = calculate_escrow_fees(Decimal("1000.00"))
    assert fees.platform == Decimal("50.00")
    assert fees.payment == Decimal("29.00")
    assert fees.total == Decimal("79.00")


def test_fees_round_half_up_to_cent() -> None:
    fees = calculate_escrow_fees(Decimal("10.10"))
    assert fees.platform == Decimal("0.51")  # 0.505
    assert fees.payment == Decimal("0.29")  # 0.2929
    assert fees.total == Decimal("0.80")  # 0.7979


def test_total_uses_total_rate_not_sum_of_parts() -> None:
    fees = calculate_escrow_fees(Decimal("0.30"))
    assert fees.platform == Decimal("0.02")  # 0.015
    assert fees.payment == Decimal("0.01")  # 0.0087
    assert fees.total == Decimal("0.02")  # 0.0237


def test_fees_on_zero() -> None:
    fees = calculate_escrow_fees(Decimal("0"))
    assert fees.total == Decimal("0.00")


def test_fees_follow_configured_rates() -> None:
    object.__setattr__(settings, "fee_platform_percent", Decimal("0.10"))
    fees = calculate_escrow_fees(Decimal("200.00"))
    assert fees.platform == Decimal("20.00")
    assert fees.total == Decimal("25.80")


def test_fee_schedule_shape() -> None:
    schedule = get_fee_schedule()
    assert Decimal(schedule["platform_fee"]["rate_percent"]) == Decimal("5")
    assert Decimal(schedule["payment_processing_fee"]["rate_percent"]) == Decimal("2.9")
    assert Decimal(schedule["total_rate_percent"]) == Decimal("7.9")
    assert schedule["example"]["total"] == "79.00"


@pytest.mark.asyncio
async def test_fee_endpoint_is_public(client: AsyncClient) -> None:
    resp = await client.get("/fees")
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["data"]["currency"] == "USD"
