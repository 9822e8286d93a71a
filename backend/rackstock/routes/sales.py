# Overview: Flask API routes for sales operations; parses input and returns JSON responses.

# backend/rackstock/routes/sales.py
"""Sales API routes: create, read, void and summarize the caller's sales."""

from flask import Blueprint, request, jsonify, g, current_app

from ..services import sales_service, reporting_service
from ..services.sales_service import (
    SaleError,
    SaleNotFoundError,
    AlreadyVoidedError,
)
from ..services.inventory_service import ItemNotFoundError, InsufficientStockError
from ..validation import ValidationError
from ..decorators import require_auth


sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")


@sales_bp.post("")
@require_auth
def create_sale_route():
    """
    Create a sale from a cart and take its stock.

    Body:
    - items: [{inventory_id, quantity, unit_price_cents, name?, size?}] (required, non-empty)
    - discount_cents: int >= 0 (default 0)
    - payment_method: cash | card | gcash | paymaya | bank_transfer | other (default cash)
    - customer_name, customer_contact, notes: optional
    """
    try:
        data = request.get_json(silent=True) or {}
        sale = sales_service.create_sale(g.current_user.id, data)
        return jsonify({"sale": sales_service.sale_to_dict(sale)}), 201

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ItemNotFoundError as e:
        return jsonify({"error": str(e), "details": e.details}), 404
    except InsufficientStockError as e:
        return jsonify({"error": str(e), "details": e.details}), 409
    except SaleError as e:
        # EmptyCartError, NegativeTotalError
        return jsonify({"error": str(e), "details": e.details}), 400
    except Exception:
        current_app.logger.exception("Failed to create sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.get("/summary")
@require_auth
def summary_route():
    """
    Summary of the caller's active sales.

    Query params:
    - start: ISO-8601 date or datetime (optional, inclusive)
    - end: ISO-8601 date or datetime (optional, inclusive; a bare date covers the whole day)
    """
    try:
        summary = reporting_service.summarize(
            g.current_user.id,
            start=request.args.get("start"),
            end=request.args.get("end"),
        )
        return jsonify({"summary": summary}), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to summarize sales")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.get("/<int:sale_id>")
@require_auth
def get_sale_route(sale_id: int):
    """Get one of the caller's sales with its lines."""
    try:
        return jsonify({"sale": sales_service.get_sale(g.current_user.id, sale_id)}), 200
    except SaleNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except Exception:
        current_app.logger.exception("Failed to get sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.post("/<int:sale_id>/void")
@require_auth
def void_sale_route(sale_id: int):
    """
    Void an active sale and restore its stock.

    404 if the caller has no such sale, 409 if it is already voided.
    """
    try:
        sale = sales_service.void_sale(g.current_user.id, sale_id)
        return jsonify({"sale": sales_service.sale_to_dict(sale)}), 200

    except SaleNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except AlreadyVoidedError as e:
        return jsonify({"error": str(e), "details": e.details}), 409
    except Exception:
        current_app.logger.exception("Failed to void sale")
        return jsonify({"error": "Internal server error"}), 500
