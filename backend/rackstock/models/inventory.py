from __future__ import annotations

from ..extensions import db
from rackstock.time_utils import to_utc_z


SIZES = ("XS", "S", "M", "L", "XL", "XXL", "XXXL")


class InventoryItem(db.Model):
    """
    A garment in an owner's catalog.

    MULTI-TENANT: Scoped to one owner (users.id). Every query filters by owner_id.

    Quantity on hand is a stored counter, not ledger-derived. Only
    inventory_service changes it, and only through conditional UPDATE
    statements, so it can never be driven below zero. The CHECK constraint
    backs that up at the database level.

    version_id is bumped by every Ledger mutation and by every catalog edit;
    a catalog edit racing a reservation fails with StaleDataError instead of
    silently overwriting the counter.
    """
    __tablename__ = "inventory_items"
    __table_args__ = (
        db.CheckConstraint("quantity >= 0", name="ck_inventory_items_quantity_nonnegative"),
        db.CheckConstraint("price_cents >= 0", name="ck_inventory_items_price_nonnegative"),
        db.CheckConstraint("cost_cents >= 0", name="ck_inventory_items_cost_nonnegative"),
        db.Index("ix_inventory_items_owner_name", "owner_id", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    size = db.Column(db.String(8), nullable=False)

    # Authoritative storage in cents (frontend may only format for display)
    price_cents = db.Column(db.Integer, nullable=False)
    cost_cents = db.Column(db.Integer, nullable=False)

    quantity = db.Column(db.Integer, nullable=False, default=0)

    image_url = db.Column(db.String(1024), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    owner = db.relationship("User", backref=db.backref("inventory_items", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<InventoryItem id={self.id} name={self.name!r} size={self.size} qty={self.quantity}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "description": self.description,
            "size": self.size,
            "price_cents": self.price_cents,
            "cost_cents": self.cost_cents,
            "quantity": self.quantity,
            "image_url": self.image_url,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
