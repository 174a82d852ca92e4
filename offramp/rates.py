"""
Rate Store: current token to fiat quotes, one live rate per currency pair.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Tuple, Union

from shared.utils import NotFoundException
from offramp.models import ExchangeRate, TOKEN_PLACES


def _key(from_currency: str, to_currency: str) -> Tuple[str, str]:
    return from_currency.strip().lower(), to_currency.strip().lower()


def token_amount_for(fiat_amount: Decimal, rate: Decimal) -> Decimal:
    """Token units needed to cover `fiat_amount` at `rate` fiat per token."""
    if rate <= 0:
        raise ValueError("rate must be positive")
    return (Decimal(fiat_amount) / Decimal(rate)).quantize(TOKEN_PLACES, rounding=ROUND_HALF_UP)


class RateStore(ABC):

    @abstractmethod
    async def get(self, from_currency: str, to_currency: str) -> ExchangeRate:
        ...

    @abstractmethod
    async def upsert(self, from_currency: str, to_currency: str, rate: Union[Decimal, str]) -> ExchangeRate:
        ...

    async def startup(self) -> None:
        pass


class InMemoryRateStore(RateStore):

    def __init__(self):
        self._rates: Dict[Tuple[str, str], ExchangeRate] = {}

    async def get(self, from_currency, to_currency):
        rate = self._rates.get(_key(from_currency, to_currency))
        if rate is None:
            raise NotFoundException("Exchange rate not found")
        return rate

    async def upsert(self, from_currency, to_currency, rate):
        key = _key(from_currency, to_currency)
        record = ExchangeRate(
            from_currency=key[0],
            to_currency=key[1],
            rate=Decimal(str(rate)),
            updated_at=datetime.utcnow(),
        )
        self._rates[key] = record
        return record


class MongoRateStore(RateStore):

    def __init__(self, database):
        self.collection = database.exchange_rates

    async def startup(self):
        await self.collection.create_index(
            [("from_currency", 1), ("to_currency", 1)], unique=True
        )

    async def get(self, from_currency, to_currency):
        from_c, to_c = _key(from_currency, to_currency)
        doc = await self.collection.find_one({"from_currency": from_c, "to_currency": to_c})
        if not doc:
            raise NotFoundException("Exchange rate not found")
        doc.pop("_id", None)
        return ExchangeRate(**doc)

    async def upsert(self, from_currency, to_currency, rate):
        from_c, to_c = _key(from_currency, to_currency)
        now = datetime.utcnow()
        await self.collection.update_one(
            {"from_currency": from_c, "to_currency": to_c},
            {"$set": {"rate": str(rate), "updated_at": now}},
            upsert=True,
        )
        return await self.get(from_c, to_c)
