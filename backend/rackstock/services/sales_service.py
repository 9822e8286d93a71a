"""
Sales Service - turns a cart into a stock-consistent Sale and voids it again.

A sale touches several inventory rows but the store only gives us
single-row atomicity. Each reservation is a conditional decrement
(inventory_service.reserve), and the void is claimed with a conditional
update on the sale row, so stock never goes negative and a voided sale
releases its stock exactly once.

RESERVATION STRATEGIES (Config.SALE_RESERVATION_STRATEGY):
- "sequential": best-effort sequential reservation. Lines are reserved one
  at a time in submission order, each committed on its own. The first failure
  stops the sale; reservations already made for earlier lines of the same
  cart STAY APPLIED and a warning is logged.
- "two_phase": check every line first, then apply all decrements and insert
  the sale in a single transaction. A failure rolls everything back.
"""

from __future__ import annotations

from dataclasses import dataclass

from flask import current_app
from sqlalchemy import update

from ..extensions import db
from ..models import Sale, SaleLine, InventoryItem, SIZES, PAYMENT_METHODS, DEFAULT_PAYMENT_METHOD
from ..validation import ValidationError, MAX_PRICE_CENTS, coerce_int, coerce_optional_str
from rackstock.time_utils import utcnow, to_utc_z
from . import inventory_service
from .inventory_service import InventoryError, ItemNotFoundError, InsufficientStockError, Reservation
from .concurrency import lock_for_update, run_with_retry


RESERVATION_SEQUENTIAL = "sequential"
RESERVATION_TWO_PHASE = "two_phase"
RESERVATION_STRATEGIES = (RESERVATION_SEQUENTIAL, RESERVATION_TWO_PHASE)


class SaleError(Exception):
    """Raised for sale operation errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class SaleNotFoundError(SaleError):
    """No sale with that id under that owner."""


class EmptyCartError(SaleError):
    """A sale needs at least one line."""


class NegativeTotalError(SaleError):
    """Discount exceeds subtotal."""


class AlreadyVoidedError(SaleError):
    """The sale was voided before (or by a concurrent request)."""


@dataclass(frozen=True)
class CartLine:
    inventory_id: int
    quantity: int
    unit_price_cents: int
    name: str | None = None
    size: str | None = None

    @property
    def line_total_cents(self) -> int:
        return self.quantity * self.unit_price_cents


@dataclass(frozen=True)
class SaleRequest:
    lines: tuple[CartLine, ...]
    discount_cents: int = 0
    payment_method: str = DEFAULT_PAYMENT_METHOD
    customer_name: str | None = None
    customer_contact: str | None = None
    notes: str | None = None

    @property
    def subtotal_cents(self) -> int:
        return sum(line.line_total_cents for line in self.lines)

    @property
    def total_cents(self) -> int:
        return self.subtotal_cents - self.discount_cents


def _parse_line(index: int, raw) -> CartLine:
    label = f"items[{index}]"
    if not isinstance(raw, dict):
        raise ValidationError(f"{label} must be an object")

    if raw.get("inventory_id") is None:
        raise ValidationError(f"{label}.inventory_id is required")
    inventory_id = coerce_int(raw["inventory_id"], f"{label}.inventory_id")

    if raw.get("quantity") is None:
        raise ValidationError(f"{label}.quantity is required")
    quantity = coerce_int(raw["quantity"], f"{label}.quantity")
    if quantity < 1:
        raise ValidationError(f"{label}.quantity must be >= 1")

    if raw.get("unit_price_cents") is None:
        raise ValidationError(f"{label}.unit_price_cents is required")
    unit_price_cents = coerce_int(raw["unit_price_cents"], f"{label}.unit_price_cents")
    if unit_price_cents < 0:
        raise ValidationError(f"{label}.unit_price_cents must be >= 0")
    if unit_price_cents > MAX_PRICE_CENTS:
        raise ValidationError(f"{label}.unit_price_cents cannot exceed {MAX_PRICE_CENTS}")

    size = coerce_optional_str(raw.get("size"), f"{label}.size")
    if size is not None:
        size = size.upper()
        if size not in SIZES:
            raise ValidationError(f"{label}.size must be one of: {', '.join(SIZES)}")

    return CartLine(
        inventory_id=inventory_id,
        quantity=quantity,
        unit_price_cents=unit_price_cents,
        name=coerce_optional_str(raw.get("name"), f"{label}.name", max_length=255),
        size=size,
    )


def parse_sale_request(payload: dict) -> SaleRequest:
    """
    Validate a create-sale payload before anything is mutated.

    Raises EmptyCartError, ValidationError or NegativeTotalError.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    items = payload.get("items")
    if items is None or (isinstance(items, list) and not items):
        raise EmptyCartError("Sale must have at least one item")
    if not isinstance(items, list):
        raise ValidationError("items must be a list")

    lines = tuple(_parse_line(i, raw) for i, raw in enumerate(items))

    discount_raw = payload.get("discount_cents")
    discount_cents = 0 if discount_raw is None else coerce_int(discount_raw, "discount_cents")
    if discount_cents < 0:
        raise ValidationError("discount_cents must be >= 0")

    payment_method = payload.get("payment_method") or DEFAULT_PAYMENT_METHOD
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(f"payment_method must be one of: {', '.join(PAYMENT_METHODS)}")

    request = SaleRequest(
        lines=lines,
        discount_cents=discount_cents,
        payment_method=payment_method,
        customer_name=coerce_optional_str(payload.get("customer_name"), "customer_name", max_length=255),
        customer_contact=coerce_optional_str(payload.get("customer_contact"), "customer_contact", max_length=255),
        notes=coerce_optional_str(payload.get("notes"), "notes"),
    )

    if request.total_cents < 0:
        raise NegativeTotalError(
            "Discount cannot exceed subtotal",
            details={
                "subtotal_cents": request.subtotal_cents,
                "discount_cents": request.discount_cents,
            },
        )
    return request


def _build_sale(owner_id: int, request: SaleRequest, reservations: list[Reservation]) -> Sale:
    sale = Sale(
        owner_id=owner_id,
        sale_date=utcnow(),
        subtotal_cents=request.subtotal_cents,
        discount_cents=request.discount_cents,
        total_cents=request.total_cents,
        payment_method=request.payment_method,
        customer_name=request.customer_name,
        customer_contact=request.customer_contact,
        notes=request.notes,
    )
    for position, (line, reservation) in enumerate(zip(request.lines, reservations), start=1):
        sale.lines.append(SaleLine(
            position=position,
            inventory_item_id=line.inventory_id,
            name=line.name or reservation.name,
            size=line.size or reservation.size or None,
            quantity=line.quantity,
            unit_price_cents=line.unit_price_cents,
            line_total_cents=line.line_total_cents,
        ))
    return sale


def _applied_summary(reservations: list[Reservation]) -> list[dict]:
    return [{"inventory_id": r.item_id, "quantity": r.quantity} for r in reservations]


def _reserve_sequential(owner_id: int, request: SaleRequest) -> list[Reservation]:
    reservations: list[Reservation] = []
    for position, line in enumerate(request.lines, start=1):
        try:
            reservations.append(
                inventory_service.reserve(owner_id, line.inventory_id, line.quantity)
            )
        except InventoryError as exc:
            applied = _applied_summary(reservations)
            exc.details["line"] = position
            exc.details["applied_reservations"] = applied
            if applied:
                current_app.logger.warning(
                    "Sale for owner %s failed at line %s; %s earlier reservation(s) remain applied: %s",
                    owner_id, position, len(applied), applied,
                )
            raise
    return reservations


def _create_sale_sequential(owner_id: int, request: SaleRequest) -> Sale:
    reservations = _reserve_sequential(owner_id, request)

    def _op():
        sale = _build_sale(owner_id, request, reservations)
        db.session.add(sale)
        db.session.commit()
        return sale

    try:
        return run_with_retry(_op)
    except Exception:
        db.session.rollback()
        # Every line is already committed; the stock stays taken.
        applied = _applied_summary(reservations)
        current_app.logger.warning(
            "Sale for owner %s could not be saved; %s reservation(s) remain applied: %s",
            owner_id, len(applied), applied,
        )
        raise


def _validate_on_hand(owner_id: int, lines: tuple[CartLine, ...]) -> None:
    item_totals: dict[int, int] = {}
    for line in lines:
        item_totals[line.inventory_id] = item_totals.get(line.inventory_id, 0) + line.quantity

    items = lock_for_update(
        db.session.query(InventoryItem).filter(
            InventoryItem.owner_id == owner_id,
            InventoryItem.id.in_(list(item_totals)),
        )
    ).populate_existing().all()
    by_id = {item.id: item for item in items}

    for position, line in enumerate(lines, start=1):
        if line.inventory_id not in by_id:
            raise ItemNotFoundError(
                "Item not found",
                details={"inventory_id": line.inventory_id, "line": position},
            )

    insufficient = []
    for item_id, qty in item_totals.items():
        item = by_id[item_id]
        if item.quantity < qty:
            insufficient.append({
                "inventory_id": item_id,
                "name": item.name,
                "size": item.size,
                "requested_quantity": qty,
                "on_hand": item.quantity,
            })

    if insufficient:
        names = ", ".join(entry["name"] for entry in insufficient)
        raise InsufficientStockError(
            f"Insufficient stock for {names}",
            details={**insufficient[0], "items": insufficient},
        )


def _create_sale_two_phase(owner_id: int, request: SaleRequest) -> Sale:
    def _op():
        _validate_on_hand(owner_id, request.lines)
        # Still conditional: a concurrent sale may have taken stock since the check.
        reservations = [
            inventory_service.reserve(owner_id, line.inventory_id, line.quantity, commit=False)
            for line in request.lines
        ]
        sale = _build_sale(owner_id, request, reservations)
        db.session.add(sale)
        db.session.commit()
        return sale

    try:
        return run_with_retry(_op)
    except InventoryError:
        db.session.rollback()
        raise


def create_sale(owner_id: int, payload: dict, *, strategy: str | None = None) -> Sale:
    """
    Validate a cart, reserve its stock and persist an ACTIVE sale.

    Raises EmptyCartError, ValidationError or NegativeTotalError before any
    stock is touched; ItemNotFoundError or InsufficientStockError (with the
    failing line in details) during reservation.
    """
    request = parse_sale_request(payload)

    strategy = strategy or current_app.config.get("SALE_RESERVATION_STRATEGY", RESERVATION_SEQUENTIAL)
    if strategy == RESERVATION_SEQUENTIAL:
        sale = _create_sale_sequential(owner_id, request)
    elif strategy == RESERVATION_TWO_PHASE:
        sale = _create_sale_two_phase(owner_id, request)
    else:
        raise ValueError(f"Unknown reservation strategy: {strategy}")

    current_app.logger.info(
        "Created sale %s for owner %s (%s line(s), total_cents=%s, strategy=%s)",
        sale.id, owner_id, len(request.lines), sale.total_cents, strategy,
    )
    return sale


def find_owned_sale(owner_id: int, sale_id: int) -> Sale | None:
    return db.session.query(Sale).filter_by(id=sale_id, owner_id=owner_id).first()


def _conditional_void(owner_id: int, sale_id: int, voided_at) -> bool:
    result = db.session.execute(
        update(Sale)
        .where(
            Sale.id == sale_id,
            Sale.owner_id == owner_id,
            Sale.voided_at.is_(None),
        )
        .values(voided_at=voided_at)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def void_sale(owner_id: int, sale_id: int) -> Sale:
    """
    Void an ACTIVE sale and put its stock back.

    The ACTIVE -> VOIDED claim is a conditional update on
    (id, owner, voided_at IS NULL) executed in the same transaction as the
    releases. If two voids race, exactly one claim matches; the other gets
    AlreadyVoidedError and releases nothing.

    Lines whose item has since been deleted are skipped; that stock is lost.
    """
    def _op():
        sale = find_owned_sale(owner_id, sale_id)
        if not sale:
            raise SaleNotFoundError("Sale not found", details={"sale_id": sale_id})

        if sale.voided_at is not None:
            raise AlreadyVoidedError(
                "Sale is already voided",
                details={"sale_id": sale_id, "voided_at": to_utc_z(sale.voided_at)},
            )

        lines = [(line.inventory_item_id, line.quantity) for line in sale.lines]

        if not _conditional_void(owner_id, sale_id, utcnow()):
            db.session.rollback()
            raise AlreadyVoidedError("Sale is already voided", details={"sale_id": sale_id})

        skipped = []
        for item_id, qty in lines:
            try:
                inventory_service.release(owner_id, item_id, qty, commit=False)
            except ItemNotFoundError:
                skipped.append(item_id)
                current_app.logger.debug(
                    "Void of sale %s: item %s no longer exists, %s unit(s) not restored",
                    sale_id, item_id, qty,
                )

        db.session.commit()
        current_app.logger.info(
            "Voided sale %s for owner %s (released %s line(s), skipped %s)",
            sale_id, owner_id, len(lines) - len(skipped), len(skipped),
        )
        # Expired by the commit; attribute access reloads voided_at.
        return sale

    return run_with_retry(_op)


def _lines_with_sizes(sale: Sale) -> list[dict]:
    """
    Serialize lines, filling in size from the referenced item where the
    stored line has none. The stored sale is not modified.
    """
    lines = [line.to_dict() for line in sale.lines]
    missing = {line["inventory_id"] for line in lines if not line["size"]}
    if missing:
        sizes = dict(
            db.session.query(InventoryItem.id, InventoryItem.size)
            .filter(
                InventoryItem.owner_id == sale.owner_id,
                InventoryItem.id.in_(sorted(missing)),
            )
            .all()
        )
        for line in lines:
            if not line["size"] and line["inventory_id"] in sizes:
                line["size"] = sizes[line["inventory_id"]] or ""
    return lines


def sale_to_dict(sale: Sale) -> dict:
    return sale.to_dict(lines=_lines_with_sizes(sale))


def get_sale(owner_id: int, sale_id: int) -> dict:
    sale = find_owned_sale(owner_id, sale_id)
    if not sale:
        raise SaleNotFoundError("Sale not found", details={"sale_id": sale_id})
    return sale_to_dict(sale)
