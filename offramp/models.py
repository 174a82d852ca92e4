from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

INR_PLACES = Decimal("0.01")
TOKEN_PLACES = Decimal("0.00000001")

class TransactionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"

class CryptoType(str, Enum):
    USDT = "usdt"
    MATIC = "matic"

class Transaction(BaseModel):
    id: int
    merchant_tx_id: str
    upi_id: str
    inr_amount: Decimal
    token_amount: Decimal
    crypto_type: CryptoType = CryptoType.USDT
    chain: str = "polygon"
    status: TransactionStatus = TransactionStatus.PENDING
    tx_hash: Optional[str] = None
    onmeta_tx_id: Optional[str] = None
    wallet_address: str
    created_at: datetime
    updated_at: datetime

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        frozen = True

class ExchangeRate(BaseModel):
    from_currency: str
    to_currency: str
    rate: Decimal
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        frozen = True
