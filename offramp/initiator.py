"""
Payment Initiator: turns a stored, pending transaction into an off-ramp order
with the provider and records the provider's order id locally.
"""
import asyncio
import logging
from decimal import Decimal
from typing import Optional, Tuple

from shared.utils import (
    InvalidAmountException, InvalidTransitionException, ProviderException, Settings, ValidationException,
)
from offramp.fanout import EventPublisher, payment_initiated
from offramp.models import Transaction, TransactionStatus
from offramp.provider import OnmetaClient, read_field
from offramp.schemas import InitiatePaymentResponse
from offramp.store import TransactionStore

logger = logging.getLogger(__name__)

# Token contracts on the settlement chain (Polygon)
TOKEN_CONTRACTS = {
    "USDT": "0xc2132D05D31c914a87C6611C10748AEb04B58e8F",
    # Native-token sentinel address
    "MATIC": "0x0000000000000000000000000000000000001010",
}

WEBHOOK_PATH = "/api/onmeta-webhook"


def resolve_token_amount(
    usdt_amount: Optional[Decimal], matic_amount: Optional[Decimal]
) -> Tuple[str, Decimal]:
    """Pick the token the client is paying with; USDT wins when both are set."""
    if usdt_amount is not None and usdt_amount > 0:
        return "USDT", usdt_amount
    if matic_amount is not None and matic_amount > 0:
        return "MATIC", matic_amount
    raise InvalidAmountException("No valid token amount provided")


class PaymentInitiator:

    def __init__(
        self,
        store: TransactionStore,
        provider: OnmetaClient,
        publisher: EventPublisher,
        settings: Settings,
    ):
        self.store = store
        self.provider = provider
        self.publisher = publisher
        self.settings = settings

    @property
    def webhook_url(self) -> str:
        return f"{self.settings.BASE_URL.rstrip('/')}{WEBHOOK_PATH}"

    def build_order(self, transaction: Transaction) -> dict:
        """Provider order for a stored transaction; request values never reach it."""
        token_symbol = transaction.crypto_type.value.upper()
        return {
            "sellTokenSymbol": token_symbol,
            "sellTokenAddress": TOKEN_CONTRACTS[token_symbol],
            "chainId": self.settings.CHAIN_ID,
            "fiatCurrency": "INR",
            "fiatAmount": float(transaction.inr_amount),
            "senderWalletAddress": transaction.wallet_address,
            "refundWalletAddress": transaction.wallet_address,
            "bankDetails": {
                "accountNumber": "instant_payout",
                "ifsc": "UPI",
            },
            "metaData": {
                "merchantTxId": transaction.merchant_tx_id,
                "upiId": transaction.upi_id,
                "webhook_url": self.webhook_url,
            },
        }

    @staticmethod
    def check_matches(
        transaction: Transaction,
        upi_id: str,
        inr_amount: Decimal,
        token_amount: Decimal,
        token_symbol: str,
        wallet_address: str,
    ) -> None:
        """Raise ValidationException when the request disagrees with the stored record."""
        pairs = {
            "upiId": (upi_id, transaction.upi_id),
            "inrAmount": (Decimal(inr_amount), transaction.inr_amount),
            "tokenAmount": (Decimal(token_amount), transaction.token_amount),
            "tokenSymbol": (token_symbol, transaction.crypto_type.value.upper()),
            "walletAddress": (wallet_address, transaction.wallet_address),
        }
        errors = [
            {"loc": [field], "msg": "does not match the stored transaction"}
            for field, (given, stored) in pairs.items()
            if given != stored
        ]
        if errors:
            logger.warning("Payment request does not match stored transaction", extra={
                "merchant_tx_id": transaction.merchant_tx_id,
                "transaction_id": transaction.id,
            })
            raise ValidationException("Payment details do not match the stored transaction", errors=errors)

    async def initiate(
        self,
        merchant_tx_id: str,
        upi_id: str,
        inr_amount: Decimal,
        token_amount: Decimal,
        token_symbol: str,
        wallet_address: str,
        request_id: Optional[str] = None,
    ) -> InitiatePaymentResponse:
        # Nothing below may reach the provider without a positive amount
        if token_amount is None or Decimal(token_amount) <= 0:
            raise InvalidAmountException(f"Invalid token amount: {token_amount}")
        token_symbol = token_symbol.upper()
        if token_symbol not in TOKEN_CONTRACTS:
            raise InvalidAmountException(f"Unsupported token: {token_symbol}")

        transaction = await self.store.get_by_merchant_id(merchant_tx_id)
        if transaction.status is not TransactionStatus.PENDING:
            logger.warning("Refusing to initiate a transaction that is not pending", extra={
                "merchant_tx_id": merchant_tx_id,
                "transaction_id": transaction.id,
                "status": transaction.status.value,
            })
            raise InvalidTransitionException(transaction.status.value, TransactionStatus.PROCESSING.value)
        self.check_matches(transaction, upi_id, inr_amount, token_amount, token_symbol, wallet_address)

        logger.info(f"Initiating {token_symbol} payment", extra={
            "merchant_tx_id": merchant_tx_id,
            "transaction_id": transaction.id,
            "request_id": request_id,
        })

        order = self.build_order(transaction)
        try:
            provider_response = await self.provider.create_offramp_order(order, request_id=request_id)
        except ProviderException as e:
            raise ProviderException(
                message="Payment initiation failed",
                provider_status=e.provider_status,
                body=e.body,
            )

        order_id = read_field(provider_response, "orderId")
        if not order_id:
            logger.error("Provider response carried no order id", extra={"merchant_tx_id": merchant_tx_id})
            raise ProviderException(
                message="Payment initiation failed",
                body="Provider response did not include an order id",
            )
        order_id = str(order_id)

        await self._record_order(transaction, order_id)
        await self.publisher.publish(payment_initiated(merchant_tx_id, provider_response))

        return InitiatePaymentResponse(
            success=True,
            order_id=order_id,
            receiver_address=read_field(provider_response, "receiverWalletAddress"),
            gas_estimate=read_field(provider_response, "gasUseEstimate"),
            quote=read_field(provider_response, "quote"),
            token_symbol=token_symbol,
            token_amount=transaction.token_amount,
            onmeta_response=provider_response,
        )

    async def _record_order(self, transaction: Transaction, order_id: str) -> Optional[Transaction]:
        """Move to processing and attach the order id, retrying local failures.

        The provider already holds the order at this point, so a failure here is
        logged at CRITICAL with the order id instead of being dropped. An order
        id already on the record is never replaced.
        """
        retries = max(1, self.settings.INITIATE_STORE_RETRIES)
        for attempt in range(retries):
            try:
                current = await self.store.get_by_id(transaction.id)
                if current.onmeta_tx_id and current.onmeta_tx_id != order_id:
                    logger.critical("Transaction already carries another provider order; new order not recorded", extra={
                        "transaction_id": transaction.id,
                        "merchant_tx_id": transaction.merchant_tx_id,
                        "order_id": order_id,
                        "previous_order_id": current.onmeta_tx_id,
                    })
                    return None
                # A webhook may have moved the record already; keep its status
                status = (
                    TransactionStatus.PROCESSING
                    if current.status is TransactionStatus.PENDING
                    else current.status
                )
                return await self.store.update_status(transaction.id, status, onmeta_tx_id=order_id)
            except Exception:
                logger.warning("Failed to record provider order, retrying", extra={
                    "transaction_id": transaction.id,
                    "order_id": order_id,
                    "attempt": attempt + 1,
                }, exc_info=True)
                if attempt + 1 < retries:
                    await asyncio.sleep(self.settings.INITIATE_RETRY_BACKOFF * (2 ** attempt))

        logger.critical("Provider order not recorded locally; manual reconciliation required", extra={
            "transaction_id": transaction.id,
            "merchant_tx_id": transaction.merchant_tx_id,
            "order_id": order_id,
        })
        return None
