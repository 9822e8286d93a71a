# backend/rackstock/services/catalog_service.py
"""
Catalog Service: create, read, edit and delete an owner's garment items.

MULTI-TENANT: All operations take owner_id explicitly and filter by it.
An item belonging to someone else is indistinguishable from a missing one.

Quantity on hand is set once at creation; afterwards it only moves through
inventory_service (reserve / release / restock).
"""
from __future__ import annotations

from ..extensions import db
from ..models import InventoryItem
from .concurrency import run_with_retry
from .inventory_service import find_owned_item

ITEM_MUTABLE_FIELDS = {"name", "description", "size", "price_cents", "cost_cents", "image_url"}


def apply_item_patch(item: InventoryItem, patch: dict) -> None:
    for k, v in patch.items():
        if k not in ITEM_MUTABLE_FIELDS:
            continue
        setattr(item, k, v)


def create_item(*, owner_id: int, patch: dict) -> dict:
    """
    Create an item from a validated patch dict (see validation.INVENTORY_CREATE_POLICY).

    The initial quantity is the only time quantity is written outside the Ledger.
    """
    item = InventoryItem(owner_id=owner_id, quantity=patch.get("quantity", 0))
    apply_item_patch(item, patch)

    db.session.add(item)
    db.session.commit()
    return item.to_dict()


def get_item(*, owner_id: int, item_id: int) -> dict | None:
    item = find_owned_item(owner_id, item_id, refresh=True)
    return item.to_dict() if item else None


def update_item(*, owner_id: int, item_id: int, patch: dict) -> dict | None:
    """
    Edit catalog fields of an owned item.

    Returns the updated item dict, or None if not found. A concurrent Ledger
    mutation bumps version_id; the resulting StaleDataError is retried on a
    freshly loaded row.
    """
    def _op():
        item = find_owned_item(owner_id, item_id, refresh=True)
        if not item:
            return None
        apply_item_patch(item, patch)
        db.session.commit()
        return item.to_dict()

    return run_with_retry(_op)


def delete_item(*, owner_id: int, item_id: int) -> bool:
    """
    Hard-delete an owned item.

    Sale lines keep their inventory_item_id, name and size snapshot; voiding
    such a sale later skips the release for this item.
    """
    def _op():
        item = find_owned_item(owner_id, item_id, refresh=True)
        if not item:
            return False
        db.session.delete(item)
        db.session.commit()
        return True

    return run_with_retry(_op)
