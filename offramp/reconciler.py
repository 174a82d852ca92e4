"""
Webhook Reconciler: applies provider-delivered status changes to stored
transactions. This is the only path to success or failed.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from shared.utils import (
    AppException, ImmutableFieldException, InvalidTransitionException, NotFoundException,
    ValidationException, WebhookProcessingException,
)
from offramp.fanout import EventPublisher, transaction_updated
from offramp.lifecycle import apply_status, is_noop, normalize_status
from offramp.models import Transaction
from offramp.provider import OnmetaClient, read_field
from offramp.schemas import WebhookPayload
from offramp.store import TransactionStore

logger = logging.getLogger(__name__)


@dataclass
class ReconcileOutcome:
    transaction: Transaction
    applied: bool
    reason: str = "applied"


def reconcile(existing: Transaction, payload: WebhookPayload) -> Transaction:
    """Pure step: the record as it should look after `payload`.

    Raises ValidationException for an unknown status and
    InvalidTransitionException for a move the state machine does not allow
    or ImmutableFieldException when a set-once id would change.
    """
    status = normalize_status(payload.status)
    return apply_status(existing, status, payload.tx_hash, payload.onmeta_tx_id)


class WebhookReconciler:

    def __init__(self, store: TransactionStore, publisher: EventPublisher, provider: Optional[OnmetaClient] = None):
        self.store = store
        self.publisher = publisher
        self.provider = provider

    async def handle_webhook(self, payload: WebhookPayload) -> ReconcileOutcome:
        log_extra = {"merchant_tx_id": payload.merchant_tx_id, "status": payload.status}
        try:
            existing = await self.store.get_by_merchant_id(payload.merchant_tx_id)
            self._check_payload(existing, payload)

            try:
                candidate = reconcile(existing, payload)
            except (InvalidTransitionException, ImmutableFieldException) as e:
                return self._ignore(existing, e, log_extra)

            if is_noop(existing, candidate):
                logger.info("Duplicate webhook delivery", extra={**log_extra, "transaction_id": existing.id})
                return ReconcileOutcome(existing, applied=False, reason="duplicate")

            try:
                updated = await self.store.update_status(
                    existing.id, candidate.status, payload.tx_hash, payload.onmeta_tx_id
                )
            except (InvalidTransitionException, ImmutableFieldException) as e:
                # Lost a race with another update after the pure check passed
                return self._ignore(await self.store.get_by_id(existing.id), e, log_extra)
        except NotFoundException:
            logger.warning("Webhook for unknown transaction", extra=log_extra)
            raise
        except Exception:
            logger.exception("Webhook processing failed", extra=log_extra)
            raise WebhookProcessingException()

        logger.info("Transaction status updated from webhook", extra={
            **log_extra,
            "transaction_id": updated.id,
            "previous_status": existing.status.value,
        })
        await self.publisher.publish(transaction_updated(updated))
        return ReconcileOutcome(updated, applied=True)

    @staticmethod
    def _ignore(transaction: Transaction, error: Exception, log_extra: dict) -> ReconcileOutcome:
        if isinstance(error, ImmutableFieldException):
            logger.warning("Webhook would overwrite a set-once field; ignored", extra={
                **log_extra,
                "transaction_id": transaction.id,
                "target": error.field,
            })
            return ReconcileOutcome(transaction, applied=False, reason="conflicting_value")
        logger.warning("Out-of-order webhook ignored", extra={
            **log_extra,
            "transaction_id": transaction.id,
            "previous_status": error.current,
        })
        return ReconcileOutcome(transaction, applied=False, reason="out_of_order")

    @staticmethod
    def _check_payload(existing: Transaction, payload: WebhookPayload) -> None:
        # Mismatches are logged, not rejected; the merchant id is the correlation key
        if payload.upi_id and payload.upi_id != existing.upi_id:
            logger.warning("Webhook UPI id does not match transaction", extra={
                "merchant_tx_id": existing.merchant_tx_id,
                "transaction_id": existing.id,
            })
        if payload.amount is not None and payload.amount != existing.inr_amount:
            logger.warning("Webhook amount does not match transaction", extra={
                "merchant_tx_id": existing.merchant_tx_id,
                "transaction_id": existing.id,
            })

    async def refresh_from_provider(self, transaction_id: int, request_id: Optional[str] = None) -> ReconcileOutcome:
        """Pull the order status from the provider and apply it like a webhook."""
        if self.provider is None:
            raise AppException(503, "Provider client not configured")

        transaction = await self.store.get_by_id(transaction_id)
        if not transaction.onmeta_tx_id:
            raise AppException(409, "Transaction has no provider order to refresh")

        response = await self.provider.get_order_status(transaction.onmeta_tx_id, request_id=request_id)
        raw_status = read_field(response, "status")
        try:
            normalize_status(raw_status)
        except ValidationException:
            logger.info("Provider reported a status outside the lifecycle", extra={
                "transaction_id": transaction.id,
                "order_id": transaction.onmeta_tx_id,
                "status": raw_status,
            })
            return ReconcileOutcome(transaction, applied=False, reason="unknown_status")

        tx_hash = read_field(response, "txHash") or read_field(response, "txnHash")
        payload = WebhookPayload(
            merchant_tx_id=transaction.merchant_tx_id,
            status=raw_status,
            tx_hash=tx_hash,
            onmeta_tx_id=transaction.onmeta_tx_id,
        )
        return await self.handle_webhook(payload)
