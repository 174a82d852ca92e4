from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import Optional, Any, Dict
from decimal import Decimal
from shared.security_config import sanitize_input
from offramp.models import CryptoType, Transaction

UPI_ID_PATTERN = r"^[a-zA-Z0-9.\-_]+@[a-zA-Z0-9.\-_]+$"

class TransactionCreate(BaseModel):
    merchant_tx_id: str = Field(..., min_length=1, max_length=128)
    upi_id: str = Field(..., pattern=UPI_ID_PATTERN)
    inr_amount: Decimal = Field(..., gt=0, max_digits=10, decimal_places=2)
    token_amount: Decimal = Field(..., gt=0, max_digits=18, decimal_places=8)
    crypto_type: CryptoType = CryptoType.USDT
    chain: str = Field("polygon", min_length=1)
    wallet_address: str = Field(..., min_length=1)

    class Config:
        alias_generator = to_camel
        populate_by_name = True

    @field_validator('merchant_tx_id', 'chain', 'wallet_address')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

class InitiatePaymentRequest(BaseModel):
    merchant_tx_id: str = Field(..., min_length=1)
    upi_id: str = Field(..., pattern=UPI_ID_PATTERN)
    inr_amount: Decimal = Field(..., gt=0)
    usdt_amount: Optional[Decimal] = None
    matic_amount: Optional[Decimal] = None
    wallet_address: str = Field(..., min_length=1)

    class Config:
        alias_generator = to_camel
        populate_by_name = True

    @field_validator('merchant_tx_id', 'wallet_address')
    def sanitize_fields(cls, v):
        return sanitize_input(v)

class InitiatePaymentResponse(BaseModel):
    success: bool = True
    order_id: Optional[str] = None
    receiver_address: Optional[str] = None
    gas_estimate: Optional[Any] = None
    quote: Optional[Any] = None
    token_symbol: str
    token_amount: Decimal
    onmeta_response: Optional[Dict[str, Any]] = None

class WebhookPayload(BaseModel):
    """Status callback as delivered by the off-ramp provider."""
    merchant_tx_id: str = Field(..., min_length=1)
    status: str = Field(..., min_length=1)
    upi_id: Optional[str] = None
    amount: Optional[Decimal] = None
    tx_hash: Optional[str] = None
    onmeta_tx_id: Optional[str] = None

class WebhookAck(BaseModel):
    applied: bool
    transaction: Optional[Transaction] = None

class RateUpsert(BaseModel):
    rate: Decimal = Field(..., gt=0)

class QuoteResponse(BaseModel):
    from_currency: str
    to_currency: str
    rate: Decimal
    fiat_amount: Decimal
    token_amount: Decimal

    class Config:
        alias_generator = to_camel
        populate_by_name = True
