from decimal import Decimal

import pytest

from shared.utils import (
    AppException, InvalidTransitionException, NotFoundException,
    ValidationException, WebhookProcessingException,
)
from offramp.models import TransactionStatus
from offramp.reconciler import WebhookReconciler, reconcile
from offramp.schemas import WebhookPayload


@pytest.fixture
def reconciler(store, publisher, provider):
    return WebhookReconciler(store, publisher, provider)


@pytest.fixture
async def processing(store, make_draft):
    created = await store.create(make_draft(merchantTxId="m1"))
    return await store.update_status(created.id, TransactionStatus.PROCESSING, onmeta_tx_id="o1")


def test_reconcile_is_pure(make_transaction):
    existing = make_transaction()
    updated = reconcile(existing, WebhookPayload(merchant_tx_id="m1", status="SUCCESS", tx_hash="0xabc"))

    assert updated.status is TransactionStatus.SUCCESS
    assert updated.tx_hash == "0xabc"
    assert existing.status is TransactionStatus.PENDING
    assert existing.tx_hash is None


def test_reconcile_rejects_leaving_terminal_state(make_transaction):
    with pytest.raises(InvalidTransitionException):
        reconcile(
            make_transaction(status=TransactionStatus.SUCCESS),
            WebhookPayload(merchant_tx_id="m1", status="FAILED"),
        )


def test_reconcile_rejects_unknown_status(make_transaction):
    with pytest.raises(ValidationException):
        reconcile(make_transaction(), WebhookPayload(merchant_tx_id="m1", status="REFUNDED"))


async def test_success_webhook_is_applied_and_broadcast(reconciler, processing, store, publisher):
    outcome = await reconciler.handle_webhook(
        WebhookPayload(merchant_tx_id="m1", status="SUCCESS", tx_hash="0x123", amount=Decimal("500.00"))
    )

    assert outcome.applied
    assert outcome.transaction.status is TransactionStatus.SUCCESS
    record = await store.get_by_id(processing.id)
    assert record.tx_hash == "0x123"
    assert record.onmeta_tx_id == "o1"
    assert publisher.types() == ["transaction_updated"]
    assert publisher.events[0]["transaction"]["status"] == "success"


async def test_failed_after_success_is_ignored(reconciler, processing, store, publisher):
    await reconciler.handle_webhook(WebhookPayload(merchant_tx_id="m1", status="SUCCESS", tx_hash="0x123"))
    outcome = await reconciler.handle_webhook(WebhookPayload(merchant_tx_id="m1", status="FAILED"))

    assert not outcome.applied
    assert outcome.reason == "out_of_order"
    record = await store.get_by_id(processing.id)
    assert record.status is TransactionStatus.SUCCESS
    assert record.tx_hash == "0x123"
    assert publisher.types() == ["transaction_updated"]


async def test_duplicate_delivery_is_not_rebroadcast(reconciler, processing, publisher):
    payload = WebhookPayload(merchant_tx_id="m1", status="SUCCESS", tx_hash="0x123")
    await reconciler.handle_webhook(payload)
    outcome = await reconciler.handle_webhook(payload)

    assert not outcome.applied
    assert outcome.reason == "duplicate"
    assert outcome.transaction.status is TransactionStatus.SUCCESS
    assert len(publisher.events) == 1


async def test_stale_pending_webhook_is_ignored(reconciler, processing, store):
    outcome = await reconciler.handle_webhook(WebhookPayload(merchant_tx_id="m1", status="pending"))

    assert not outcome.applied
    assert (await store.get_by_id(processing.id)).status is TransactionStatus.PROCESSING


async def test_unknown_merchant_id_is_not_found(reconciler, processing, publisher):
    with pytest.raises(NotFoundException):
        await reconciler.handle_webhook(WebhookPayload(merchant_tx_id="nope", status="SUCCESS"))
    assert publisher.events == []


async def test_unknown_status_fails_processing(reconciler, processing, store, publisher):
    with pytest.raises(WebhookProcessingException) as exc_info:
        await reconciler.handle_webhook(WebhookPayload(merchant_tx_id="m1", status="REFUNDED"))

    assert exc_info.value.status_code == 500
    assert (await store.get_by_id(processing.id)).status is TransactionStatus.PROCESSING
    assert publisher.events == []


async def test_mismatched_amount_is_still_applied(reconciler, processing):
    outcome = await reconciler.handle_webhook(
        WebhookPayload(merchant_tx_id="m1", status="FAILED", upi_id="other@upi", amount=Decimal("1.00"))
    )
    assert outcome.applied
    assert outcome.transaction.status is TransactionStatus.FAILED


async def test_refresh_applies_provider_status(reconciler, processing, fake_onmeta, publisher):
    outcome = await reconciler.refresh_from_provider(processing.id)

    assert outcome.applied
    assert outcome.transaction.status is TransactionStatus.SUCCESS
    assert outcome.transaction.tx_hash == "0xfeed"
    assert str(fake_onmeta.requests[0].url) == "https://onmeta.test/v1/transactions/o1"
    assert publisher.types() == ["transaction_updated"]


async def test_refresh_ignores_statuses_outside_the_lifecycle(reconciler, processing, fake_onmeta):
    fake_onmeta.status_response = (200, {"data": {"status": "AWAITING_DEPOSIT"}})

    outcome = await reconciler.refresh_from_provider(processing.id)

    assert not outcome.applied
    assert outcome.reason == "unknown_status"
    assert outcome.transaction.status is TransactionStatus.PROCESSING


async def test_refresh_needs_a_provider_order(reconciler, store, make_draft, fake_onmeta):
    created = await store.create(make_draft())

    with pytest.raises(AppException) as exc_info:
        await reconciler.refresh_from_provider(created.id)
    assert exc_info.value.status_code == 409
    assert fake_onmeta.requests == []


async def test_redelivery_with_different_hash_is_ignored(reconciler, processing, store, publisher):
    await reconciler.handle_webhook(WebhookPayload(merchant_tx_id="m1", status="SUCCESS", tx_hash="0xabc"))
    outcome = await reconciler.handle_webhook(
        WebhookPayload(merchant_tx_id="m1", status="SUCCESS", tx_hash="0xdef")
    )

    assert not outcome.applied
    assert outcome.reason == "conflicting_value"
    assert outcome.transaction.tx_hash == "0xabc"
    assert (await store.get_by_id(processing.id)).tx_hash == "0xabc"
    assert len(publisher.events) == 1


async def test_webhook_cannot_swap_provider_order(reconciler, processing, store, publisher):
    outcome = await reconciler.handle_webhook(
        WebhookPayload(merchant_tx_id="m1", status="SUCCESS", onmeta_tx_id="o-other")
    )

    assert not outcome.applied
    assert outcome.reason == "conflicting_value"
    record = await store.get_by_id(processing.id)
    assert record.status is TransactionStatus.PROCESSING
    assert record.onmeta_tx_id == "o1"
    assert publisher.events == []
