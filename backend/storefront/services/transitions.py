"""Status transitions for Purchase, RefundRequest and Ticket

Every status change goes through ``transition`` which issues
``UPDATE ... WHERE id = ? AND status = ?``. Two callers racing on the same row
get one winner; the loser sees ``False`` and must re-read before acting.
"""
import logging
from typing import Dict, FrozenSet

from sqlalchemy.orm import Session

from storefront.core.errors import InvalidTransition
from storefront.models.purchase import Purchase
from storefront.models.refund_request import RefundRequest
from storefront.models.ticket import Ticket

logger = logging.getLogger(__name__)

PURCHASE_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "created": frozenset({"paid"}),
    "paid": frozenset({"refunded"}),
    "refunded": frozenset(),
}

REFUND_REQUEST_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "pending": frozenset({"approved", "rejected", "failed"}),
    "approved": frozenset({"executed", "failed"}),
    "rejected": frozenset(),
    "executed": frozenset(),
    "failed": frozenset(),
}

TICKET_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "open": frozenset({"closed", "stale"}),
    "closed": frozenset(),
    "stale": frozenset(),
}

_TABLES = {
    Purchase: PURCHASE_TRANSITIONS,
    RefundRequest: REFUND_REQUEST_TRANSITIONS,
    Ticket: TICKET_TRANSITIONS,
}


def can_transition(model, from_status: str, to_status: str) -> bool:
    table = _TABLES[model]
    return to_status in table.get(from_status, frozenset())


def transition(db: Session, row, to_status: str, **values) -> bool:
    """Move ``row`` to ``to_status`` if it is still in the status we last read.

    Extra column values are written in the same statement. Raises
    InvalidTransition when the table forbids the move from the status held
    in memory. Returns False when another writer changed the row first.
    The caller owns the commit.
    """
    model = type(row)
    from_status = row.status
    if not can_transition(model, from_status, to_status):
        raise InvalidTransition(
            f"{model.__name__} cannot move from {from_status} to {to_status}"
        )

    updated = (
        db.query(model)
        .filter(model.id == row.id, model.status == from_status)
        .update({"status": to_status, **values}, synchronize_session=False)
    )
    # Reload on next access so callers see what the database holds
    db.expire(row)

    if updated != 1:
        logger.info(
            f"{model.__name__} {row.id} lost transition race {from_status} -> {to_status}"
        )
        return False
    return True
