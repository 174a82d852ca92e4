"""
Transaction status state machine.

Status only moves forward: pending -> processing -> success | failed.
success and failed are terminal. Re-applying the current status is allowed so
that repeated provider deliveries stay idempotent.
"""
from datetime import datetime
from typing import Optional, Union

from shared.utils import ImmutableFieldException, InvalidTransitionException, ValidationException
from offramp.models import Transaction, TransactionStatus

_RANK = {
    TransactionStatus.PENDING: 0,
    TransactionStatus.PROCESSING: 1,
    TransactionStatus.SUCCESS: 2,
    TransactionStatus.FAILED: 2,
}

TERMINAL_STATUSES = frozenset({TransactionStatus.SUCCESS, TransactionStatus.FAILED})


def normalize_status(raw: Union[str, TransactionStatus]) -> TransactionStatus:
    """Map a provider status string ("SUCCESS", "Failed", ...) onto the closed enum."""
    if isinstance(raw, TransactionStatus):
        return raw
    value = (raw or "").strip().lower()
    try:
        return TransactionStatus(value)
    except ValueError:
        raise ValidationException(
            f"Unknown transaction status: {raw!r}",
            errors=[{"loc": ["status"], "msg": "unknown status", "input": raw}],
        )


def can_transition(current: TransactionStatus, requested: TransactionStatus) -> bool:
    if current == requested:
        return True
    if current in TERMINAL_STATUSES:
        return False
    return _RANK[requested] > _RANK[current]


def apply_status(
    record: Transaction,
    status: TransactionStatus,
    tx_hash: Optional[str] = None,
    onmeta_tx_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Transaction:
    """Return the record as it looks after the update; the input is left untouched.

    Raises InvalidTransitionException when the move is not defined and
    ImmutableFieldException when tx_hash or onmeta_tx_id is already set to a
    different value. Empty optional values never replace existing ones.
    """
    if not can_transition(record.status, status):
        raise InvalidTransitionException(record.status.value, status.value)
    for field, value in (("tx_hash", tx_hash), ("onmeta_tx_id", onmeta_tx_id)):
        existing = getattr(record, field)
        if value and existing and value != existing:
            raise ImmutableFieldException(field, existing, value)

    update = {"status": status, "updated_at": now or datetime.utcnow()}
    if tx_hash:
        update["tx_hash"] = tx_hash
    if onmeta_tx_id:
        update["onmeta_tx_id"] = onmeta_tx_id
    return record.model_copy(update=update)


def is_noop(before: Transaction, after: Transaction) -> bool:
    """True when an update changed nothing but the timestamp."""
    return (
        before.status == after.status
        and before.tx_hash == after.tx_hash
        and before.onmeta_tx_id == after.onmeta_tx_id
    )
