from __future__ import annotations

from ..extensions import db
from rackstock.time_utils import to_utc_z


PAYMENT_METHODS = ("cash", "card", "gcash", "paymaya", "bank_transfer", "other")
DEFAULT_PAYMENT_METHOD = "cash"

SALE_STATUS_ACTIVE = "ACTIVE"
SALE_STATUS_VOIDED = "VOIDED"


class Sale(db.Model):
    """
    A completed sale.

    Lifecycle is ACTIVE -> VOIDED (terminal), carried by the single nullable
    voided_at column: NULL means active, a timestamp means voided at that time.
    There is no separate status column.

    Totals are fixed at creation (subtotal = sum of line totals,
    total = subtotal - discount) and lines are never edited afterwards.
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.CheckConstraint("discount_cents >= 0", name="ck_sales_discount_nonnegative"),
        db.CheckConstraint("total_cents >= 0", name="ck_sales_total_nonnegative"),
        # Composite index for owner-scoped reporting by date
        db.Index("ix_sales_owner_voided_date", "owner_id", "voided_at", "sale_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    sale_date = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    # All amounts in cents
    subtotal_cents = db.Column(db.Integer, nullable=False)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False)

    payment_method = db.Column(db.String(32), nullable=False, default=DEFAULT_PAYMENT_METHOD)

    customer_name = db.Column(db.String(255), nullable=True)
    customer_contact = db.Column(db.String(255), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    voided_at = db.Column(db.DateTime(timezone=True), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    owner = db.relationship("User", backref=db.backref("sales", lazy=True))

    @property
    def status(self) -> str:
        return SALE_STATUS_VOIDED if self.voided_at is not None else SALE_STATUS_ACTIVE

    @property
    def is_voided(self) -> bool:
        return self.voided_at is not None

    def __repr__(self) -> str:
        return f"<Sale id={self.id} owner_id={self.owner_id} total_cents={self.total_cents} status={self.status}>"

    def to_dict(self, lines: list[dict] | None = None) -> dict:
        if lines is None:
            lines = [line.to_dict() for line in self.lines]
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "sale_date": to_utc_z(self.sale_date),
            "status": self.status,
            "items": lines,
            "subtotal_cents": self.subtotal_cents,
            "discount_cents": self.discount_cents,
            "total_cents": self.total_cents,
            "payment_method": self.payment_method,
            "customer_name": self.customer_name,
            "customer_contact": self.customer_contact,
            "notes": self.notes,
            "voided_at": to_utc_z(self.voided_at) if self.voided_at else None,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class SaleLine(db.Model):
    """
    Line item embedded in a sale.

    inventory_item_id is a plain reference, not a foreign key: the line must
    outlive the item. name and size are a snapshot taken at sale time; rows
    written before size was captured have size NULL and get it filled in at
    read time (see sales_service.get_sale).
    """
    __tablename__ = "sale_lines"
    __table_args__ = (
        db.CheckConstraint("quantity >= 1", name="ck_sale_lines_quantity_positive"),
        db.CheckConstraint("unit_price_cents >= 0", name="ck_sale_lines_price_nonnegative"),
        db.UniqueConstraint("sale_id", "position", name="uq_sale_lines_sale_position"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)

    # Submission order within the cart (1-based)
    position = db.Column(db.Integer, nullable=False)

    inventory_item_id = db.Column(db.Integer, nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    size = db.Column(db.String(8), nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    line_total_cents = db.Column(db.Integer, nullable=False)

    sale = db.relationship(
        "Sale",
        backref=db.backref("lines", lazy=True, order_by="SaleLine.position", cascade="all, delete-orphan"),
    )

    def to_dict(self) -> dict:
        return {
            "position": self.position,
            "inventory_id": self.inventory_item_id,
            "name": self.name,
            "size": self.size,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
        }
