# Overview: Inventory Ledger; the only code that changes an item's quantity on hand.

# backend/rackstock/services/inventory_service.py
"""
Rackstock Inventory Invariants (authoritative)

Ownership:
- Every lookup is scoped by (owner_id, item_id). An item that exists under a
  different owner is reported exactly like a missing item (ItemNotFoundError),
  so callers cannot probe for other tenants' ids.

Quantity model:
- Quantity on hand is a stored integer counter on InventoryItem.
- It is changed only here, only through single UPDATE statements, and every
  change bumps version_id so concurrent ORM edits of the same row go stale.

Business invariants:
- Quantity may never go negative. reserve() decrements with
  "UPDATE ... WHERE quantity >= :qty", so the check and the decrement are one
  atomic statement and two concurrent reservations can never both pass.
- release() is an unconditional increment with no upper bound. Releases only
  come from voiding a sale whose reservation succeeded earlier.

Transactions:
- Each operation commits on its own by default. Pass commit=False to fold the
  statement into a caller-owned unit of work (two-phase sale posting, void).
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import update

from ..extensions import db
from ..models import InventoryItem
from ..validation import ValidationError, coerce_int
from .concurrency import lock_for_update, run_with_retry


class InventoryError(Exception):
    """Raised for inventory ledger errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class ItemNotFoundError(InventoryError):
    """No item with that id under that owner."""


class InsufficientStockError(InventoryError):
    """Requested quantity exceeds quantity on hand."""


@dataclass(frozen=True)
class Reservation:
    """Outcome of a successful reserve(); snapshot used to denormalize a sale line."""
    item_id: int
    quantity: int
    name: str
    size: str


def _require_positive_quantity(quantity) -> int:
    qty = coerce_int(quantity, "quantity")
    if qty <= 0:
        raise ValidationError("quantity must be > 0")
    return qty


def find_owned_item(owner_id: int, item_id: int, *, lock: bool = False, refresh: bool = False) -> InventoryItem | None:
    query = db.session.query(InventoryItem).filter_by(id=item_id, owner_id=owner_id)
    if lock:
        query = lock_for_update(query)
    if refresh:
        # Ledger statements bypass the identity map; reload the row as stored.
        query = query.populate_existing()
    return query.first()


def _not_found(item_id: int) -> ItemNotFoundError:
    return ItemNotFoundError("Item not found", details={"inventory_id": item_id})


def _conditional_decrement(owner_id: int, item_id: int, quantity: int) -> bool:
    result = db.session.execute(
        update(InventoryItem)
        .where(
            InventoryItem.id == item_id,
            InventoryItem.owner_id == owner_id,
            InventoryItem.quantity >= quantity,
        )
        .values(
            quantity=InventoryItem.quantity - quantity,
            version_id=InventoryItem.version_id + 1,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _increment(owner_id: int, item_id: int, quantity: int) -> bool:
    result = db.session.execute(
        update(InventoryItem)
        .where(
            InventoryItem.id == item_id,
            InventoryItem.owner_id == owner_id,
        )
        .values(
            quantity=InventoryItem.quantity + quantity,
            version_id=InventoryItem.version_id + 1,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def reserve(owner_id: int, item_id: int, quantity: int, *, commit: bool = True) -> Reservation:
    """
    Take quantity units of an owned item out of stock.

    Raises ItemNotFoundError if the owner has no such item and
    InsufficientStockError if fewer than quantity units are on hand. In both
    cases nothing is changed.

    Returns a Reservation carrying the item's name and size as stored right
    after the decrement.
    """
    qty = _require_positive_quantity(quantity)

    def _op() -> Reservation:
        if not _conditional_decrement(owner_id, item_id, qty):
            item = find_owned_item(owner_id, item_id, refresh=True)
            if item is None:
                error = _not_found(item_id)
            else:
                error = InsufficientStockError(
                    f"Insufficient stock for {item.name}",
                    details={
                        "inventory_id": item.id,
                        "name": item.name,
                        "size": item.size,
                        "requested_quantity": qty,
                        "on_hand": item.quantity,
                    },
                )
            if commit:
                db.session.rollback()
            raise error

        item = find_owned_item(owner_id, item_id, refresh=True)
        reservation = Reservation(item_id=item.id, quantity=qty, name=item.name, size=item.size or "")

        if commit:
            db.session.commit()
        return reservation

    if commit:
        return run_with_retry(_op)
    return _op()


def release(owner_id: int, item_id: int, quantity: int, *, commit: bool = True) -> None:
    """
    Put quantity units of an owned item back into stock.

    No upper bound is enforced. Raises ItemNotFoundError when the owner has
    no such item (for example it was deleted after the sale).
    """
    qty = _require_positive_quantity(quantity)

    def _op() -> None:
        if not _increment(owner_id, item_id, qty):
            raise _not_found(item_id)
        if commit:
            db.session.commit()

    if commit:
        return run_with_retry(_op)
    return _op()


def restock(owner_id: int, item_id: int, quantity: int) -> InventoryItem:
    """Receive new stock for an owned item and return the refreshed row."""
    qty = _require_positive_quantity(quantity)

    def _op() -> InventoryItem:
        if not _increment(owner_id, item_id, qty):
            db.session.rollback()
            raise _not_found(item_id)
        db.session.commit()
        return find_owned_item(owner_id, item_id, refresh=True)

    return run_with_retry(_op)


def get_quantity_on_hand(owner_id: int, item_id: int) -> int:
    item = find_owned_item(owner_id, item_id, refresh=True)
    if item is None:
        raise _not_found(item_id)
    return int(item.quantity)
