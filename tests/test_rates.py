from decimal import Decimal

import pytest

from shared.utils import NotFoundException
from offramp.rates import InMemoryRateStore, token_amount_for


def test_token_amount_rounds_to_token_precision():
    assert token_amount_for(Decimal("500.00"), Decimal("84.50")) == Decimal("5.91715976")
    assert token_amount_for(Decimal("845"), Decimal("84.5")) == Decimal("10.00000000")


def test_token_amount_rejects_non_positive_rate():
    with pytest.raises(ValueError):
        token_amount_for(Decimal("100"), Decimal("0"))


async def test_missing_pair_is_not_found():
    rates = InMemoryRateStore()
    with pytest.raises(NotFoundException):
        await rates.get("usdt", "inr")


async def test_upsert_keeps_one_rate_per_pair():
    rates = InMemoryRateStore()
    first = await rates.upsert("USDT", "INR", "84.50")
    second = await rates.upsert("usdt", "inr", Decimal("85.10"))

    current = await rates.get("Usdt", "Inr")
    assert current.rate == Decimal("85.10")
    assert current.from_currency == "usdt"
    assert current.to_currency == "inr"
    assert second.updated_at >= first.updated_at


async def test_pairs_are_directional():
    rates = InMemoryRateStore()
    await rates.upsert("usdt", "inr", "84.50")
    with pytest.raises(NotFoundException):
        await rates.get("inr", "usdt")
