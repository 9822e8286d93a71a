# Overview: Flask API routes for admin operations; parses input and returns JSON responses.

# backend/rackstock/routes/admin.py
"""
Admin routes for account management.

Only admins may create accounts. Every account, admin or not, owns its own
catalog and sales; admins get no access to other owners' data.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..models import ROLE_USER
from ..services import auth_service
from ..validation import ValidationError, ConflictError
from ..decorators import require_auth, require_admin

admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")


@admin_bp.post("/accounts")
@require_auth
@require_admin
def create_account():
    """
    Create a new account.

    Body:
    - email: str (required)
    - password: str (required)
    - name: str (optional, defaults to the email's local part)
    - role: "user" | "admin" (default "user")
    """
    data = request.get_json(silent=True) or {}

    try:
        user = auth_service.create_user(
            email=data.get("email"),
            password=data.get("password"),
            name=data.get("name"),
            role=data.get("role") or ROLE_USER,
        )
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ConflictError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to create account")
        return jsonify({"error": "Internal server error"}), 500

    current_app.logger.info("Account %s created by admin %s", user.id, g.current_user.id)
    return jsonify({"user": user.to_dict()}), 201
