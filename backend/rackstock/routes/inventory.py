# Overview: Flask API routes for the caller's garment items; parses input and returns JSON responses.

# backend/rackstock/routes/inventory.py
"""
Inventory item routes.

MULTI-TENANT: Every route is scoped to the caller (g.current_user.id).
Another owner's item answers 404 exactly like a missing one.

Quantity is set at creation and afterwards changes only through sales,
voids and the restock endpoint.
"""
from flask import Blueprint, request, g, current_app

from ..models import InventoryItem
from ..services import catalog_service, inventory_service
from ..services.inventory_service import ItemNotFoundError
from ..validation import (
    INVENTORY_CREATE_POLICY,
    INVENTORY_UPDATE_POLICY,
    validate_payload,
    enforce_rules_inventory_item,
    ValidationError,
)
from ..decorators import require_auth

inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


@inventory_bp.post("")
@require_auth
def create_item_route():
    """Create an item in the caller's catalog."""
    payload = request.get_json(silent=True) or {}

    try:
        patch = validate_payload(model=InventoryItem, payload=payload, policy=INVENTORY_CREATE_POLICY, partial=False)
        enforce_rules_inventory_item(patch)
        created = catalog_service.create_item(owner_id=g.current_user.id, patch=patch)
    except ValidationError as e:
        return {"error": str(e)}, 400
    except Exception:
        current_app.logger.exception("Failed to create inventory item")
        return {"error": "Internal server error"}, 500

    return {"item": created}, 201


@inventory_bp.get("/<int:item_id>")
@require_auth
def get_item_route(item_id: int):
    try:
        item = catalog_service.get_item(owner_id=g.current_user.id, item_id=item_id)
    except Exception:
        current_app.logger.exception("Failed to get inventory item")
        return {"error": "Internal server error"}, 500

    if not item:
        return {"error": "Item not found"}, 404
    return {"item": item}, 200


@inventory_bp.put("/<int:item_id>")
@require_auth
def update_item_route(item_id: int):
    """
    Edit catalog fields of an item.

    quantity is rejected here; use POST /<id>/restock.
    """
    payload = request.get_json(silent=True) or {}

    try:
        patch = validate_payload(model=InventoryItem, payload=payload, policy=INVENTORY_UPDATE_POLICY, partial=True)
        enforce_rules_inventory_item(patch)
        updated = catalog_service.update_item(owner_id=g.current_user.id, item_id=item_id, patch=patch)
    except ValidationError as e:
        return {"error": str(e)}, 400
    except Exception:
        current_app.logger.exception("Failed to update inventory item")
        return {"error": "Internal server error"}, 500

    if not updated:
        return {"error": "Item not found"}, 404
    return {"item": updated}, 200


@inventory_bp.delete("/<int:item_id>")
@require_auth
def delete_item_route(item_id: int):
    try:
        deleted = catalog_service.delete_item(owner_id=g.current_user.id, item_id=item_id)
    except Exception:
        current_app.logger.exception("Failed to delete inventory item")
        return {"error": "Internal server error"}, 500

    if not deleted:
        return {"error": "Item not found"}, 404
    return {"ok": True}, 200


@inventory_bp.post("/<int:item_id>/restock")
@require_auth
def restock_item_route(item_id: int):
    """
    Receive new stock.

    Body: {"quantity": int > 0}
    """
    data = request.get_json(silent=True) or {}

    try:
        item = inventory_service.restock(g.current_user.id, item_id, data.get("quantity"))
    except ValidationError as e:
        return {"error": str(e)}, 400
    except ItemNotFoundError:
        return {"error": "Item not found"}, 404
    except Exception:
        current_app.logger.exception("Failed to restock inventory item")
        return {"error": "Internal server error"}, 500

    return {"item": item.to_dict()}, 200
