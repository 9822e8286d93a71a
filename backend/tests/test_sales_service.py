"""
Sale Transaction Coordinator tests.

Sale creation under both reservation strategies, void with stock
compensation, and read-time size backfill.
"""

import logging
import threading

import pytest
from sqlalchemy import update
from sqlalchemy.exc import OperationalError

from rackstock import create_app
from rackstock.extensions import db
from rackstock.models import User, InventoryItem, Sale, SaleLine, SALE_STATUS_ACTIVE, SALE_STATUS_VOIDED
from rackstock.time_utils import utcnow
from rackstock.services import sales_service, inventory_service, catalog_service
from rackstock.services.sales_service import (
    EmptyCartError,
    NegativeTotalError,
    AlreadyVoidedError,
    SaleNotFoundError,
    RESERVATION_SEQUENTIAL,
    RESERVATION_TWO_PHASE,
)
from rackstock.services.inventory_service import ItemNotFoundError, InsufficientStockError
from rackstock.validation import ValidationError


def _line(item, quantity, unit_price_cents=100, **extra):
    return {"inventory_id": item.id, "quantity": quantity, "unit_price_cents": unit_price_cents, **extra}


class TestCreateSale:
    """A valid cart reserves stock and persists an ACTIVE sale."""

    def test_sale_decrements_stock_and_totals(self, db_session, owner_a, make_item):
        item = make_item(owner_a, quantity=10, price_cents=100)

        sale = sales_service.create_sale(owner_a.id, {"items": [_line(item, 3)]})

        assert sale.status == SALE_STATUS_ACTIVE
        assert sale.subtotal_cents == 300
        assert sale.discount_cents == 0
        assert sale.total_cents == 300
        assert inventory_service.get_quantity_on_hand(owner_a.id, item.id) == 7

    def test_multi_line_sale_with_discount(self, db_session, owner_a, make_item):
        shirt = make_item(owner_a, quantity=5, name="Oxford Shirt", size="M")
        pants = make_item(owner_a, quantity=5, name="Chinos", size="L")

        sale = sales_service.create_sale(owner_a.id, {
            "items": [_line(shirt, 2, 1500), _line(pants, 1, 2500)],
            "discount_cents": 500,
            "payment_method": "card",
            "customer_name": "  Dana  ",
        })

        assert sale.subtotal_cents == 5500
        assert sale.total_cents == 5000
        assert sale.payment_method == "card"
        assert sale.customer_name == "Dana"
        assert [line.line_total_cents for line in sale.lines] == [3000, 2500]
        assert sum(line.line_total_cents for line in sale.lines) == sale.subtotal_cents
        assert inventory_service.get_quantity_on_hand(owner_a.id, shirt.id) == 3
        assert inventory_service.get_quantity_on_hand(owner_a.id, pants.id) == 4

    def test_line_snapshot_defaults_to_item_name_and_size(self, db_session, owner_a, make_item):
        item = make_item(owner_a, quantity=5, name="Rain Jacket", size="XL")

        sale = sales_service.create_sale(owner_a.id, {"items": [_line(item, 1)]})

        line = sale.lines[0]
        assert (line.position, line.name, line.size) == (1, "Rain Jacket", "XL")

    def test_line_snapshot_keeps_submitted_name(self, db_session, owner_a, make_item):
        item = make_item(owner_a, quantity=5, name="Rain Jacket", size="XL")

        sale = sales_service.create_sale(owner_a.id, {"items": [_line(item, 1, name="Promo Jacket")]})

        assert sale.lines[0].name == "Promo Jacket"

    def test_empty_cart_rejected(self, db_session, owner_a):
        with pytest.raises(EmptyCartError):
            sales_service.create_sale(owner_a.id, {"items": []})
        with pytest.raises(EmptyCartError):
            sales_service.create_sale(owner_a.id, {})

        assert db_session.query(Sale).count() == 0

    def test_negative_total_rejected_before_any_mutation(self, db_session, owner_a, make_item):
        item = make_item(owner_a, quantity=10)

        with pytest.raises(NegativeTotalError) as exc_info:
            sales_service.create_sale(owner_a.id, {
                "items": [_line(item, 1, 100)],
                "discount_cents": 150,
            })

        assert exc_info.value.details == {"subtotal_cents": 100, "discount_cents": 150}
        assert inventory_service.get_quantity_on_hand(owner_a.id, item.id) == 10
        assert db_session.query(Sale).count() == 0

    def test_discount_equal_to_subtotal_is_allowed(self, db_session, owner_a, make_item):
        item = make_item(owner_a, quantity=10)

        sale = sales_service.create_sale(owner_a.id, {
            "items": [_line(item, 2, 100)],
            "discount_cents": 200,
        })

        assert sale.total_cents == 0

    @pytest.mark.parametrize("bad_line", [
        {"quantity": 1, "unit_price_cents": 100},
        {"inventory_id": 1, "quantity": 0, "unit_price_cents": 100},
        {"inventory_id": 1, "quantity": 1, "unit_price_cents": -5},
        {"inventory_id": 1, "quantity": 1},
        {"inventory_id": 1, "quantity": 1, "unit_price_cents": 100, "size": "HUGE"},
    ])
    def test_malformed_line_rejected(self, db_session, owner_a, bad_line):
        with pytest.raises(ValidationError):
            sales_service.create_sale(owner_a.id, {"items": [bad_line]})

    def test_unknown_payment_method_rejected(self, db_session, owner_a, make_item):
        item = make_item(owner_a, quantity=10)

        with pytest.raises(ValidationError):
            sales_service.create_sale(owner_a.id, {"items": [_line(item, 1)], "payment_method": "barter"})

        assert inventory_service.get_quantity_on_hand(owner_a.id, item.id) == 10

    def test_other_owners_item_is_not_found(self, db_session, owner_a, owner_b, make_item):
        item_b = make_item(owner_b, quantity=10)

        with pytest.raises(ItemNotFoundError):
            sales_service.create_sale(owner_a.id, {"items": [_line(item_b, 1)]})

        assert inventory_service.get_quantity_on_hand(owner_b.id, item_b.id) == 10

    def test_unknown_strategy_raises(self, db_session, owner_a, make_item):
        item = make_item(owner_a, quantity=10)

        with pytest.raises(ValueError):
            sales_service.create_sale(owner_a.id, {"items": [_line(item, 1)]}, strategy="optimistic")


class TestReservationStrategies:
    """A failing later line: sequential keeps earlier reservations, two_phase undoes them."""

    def test_sequential_keeps_earlier_reservations(self, db_session, owner_a, make_item):
        plenty = make_item(owner_a, quantity=10, name="Tee")
        scarce = make_item(owner_a, quantity=1, name="Hoodie")

        with pytest.raises(InsufficientStockError) as exc_info:
            sales_service.create_sale(
                owner_a.id,
                {"items": [_line(plenty, 4), _line(scarce, 2)]},
                strategy=RESERVATION_SEQUENTIAL,
            )

        details = exc_info.value.details
        assert details["line"] == 2
        assert details["applied_reservations"] == [{"inventory_id": plenty.id, "quantity": 4}]
        assert inventory_service.get_quantity_on_hand(owner_a.id, plenty.id) == 6
        assert inventory_service.get_quantity_on_hand(owner_a.id, scarce.id) == 1
        assert db_session.query(Sale).count() == 0

    def test_sequential_logs_reservations_when_sale_insert_fails(
        self, db_session, owner_a, make_item, monkeypatch, caplog
    ):
        item = make_item(owner_a, quantity=10)

        def locked_build(*args, **kwargs):
            raise OperationalError("INSERT INTO sales", {}, Exception("database is locked"))

        monkeypatch.setattr(sales_service, "_build_sale", locked_build)

        with caplog.at_level(logging.WARNING, logger="rackstock"):
            with pytest.raises(OperationalError):
                sales_service.create_sale(
                    owner_a.id,
                    {"items": [_line(item, 3)]},
                    strategy=RESERVATION_SEQUENTIAL,
                )

        warnings = [r.getMessage() for r in caplog.records if r.levelno == logging.WARNING]
        assert any("could not be saved" in message for message in warnings)
        assert any(f"'inventory_id': {item.id}, 'quantity': 3" in message for message in warnings)
        assert inventory_service.get_quantity_on_hand(owner_a.id, item.id) == 7
        assert db_session.query(Sale).count() == 0

    def test_two_phase_rolls_back_everything(self, db_session, owner_a, make_item):
        plenty = make_item(owner_a, quantity=10, name="Tee")
        scarce = make_item(owner_a, quantity=1, name="Hoodie")

        with pytest.raises(InsufficientStockError) as exc_info:
            sales_service.create_sale(
                owner_a.id,
                {"items": [_line(plenty, 4), _line(scarce, 2)]},
                strategy=RESERVATION_TWO_PHASE,
            )

        assert exc_info.value.details["inventory_id"] == scarce.id
        assert inventory_service.get_quantity_on_hand(owner_a.id, plenty.id) == 10
        assert inventory_service.get_quantity_on_hand(owner_a.id, scarce.id) == 1
        assert db_session.query(Sale).count() == 0

    def test_two_phase_checks_repeated_item_in_aggregate(self, db_session, owner_a, make_item):
        item = make_item(owner_a, quantity=5)

        with pytest.raises(InsufficientStockError) as exc_info:
            sales_service.create_sale(
                owner_a.id,
                {"items": [_line(item, 3), _line(item, 3)]},
                strategy=RESERVATION_TWO_PHASE,
            )

        assert exc_info.value.details["requested_quantity"] == 6
        assert inventory_service.get_quantity_on_hand(owner_a.id, item.id) == 5

    def test_two_phase_missing_item(self, db_session, owner_a, make_item):
        item = make_item(owner_a, quantity=5)

        with pytest.raises(ItemNotFoundError) as exc_info:
            sales_service.create_sale(
                owner_a.id,
                {"items": [_line(item, 1), {"inventory_id": 987654, "quantity": 1, "unit_price_cents": 100}]},
                strategy=RESERVATION_TWO_PHASE,
            )

        assert exc_info.value.details == {"inventory_id": 987654, "line": 2}
        assert inventory_service.get_quantity_on_hand(owner_a.id, item.id) == 5

    def test_two_phase_success(self, db_session, owner_a, make_item):
        a = make_item(owner_a, quantity=5, name="Tee")
        b = make_item(owner_a, quantity=5, name="Cap")

        sale = sales_service.create_sale(
            owner_a.id,
            {"items": [_line(a, 2), _line(b, 5)]},
            strategy=RESERVATION_TWO_PHASE,
        )

        assert sale.total_cents == 700
        assert inventory_service.get_quantity_on_hand(owner_a.id, a.id) == 3
        assert inventory_service.get_quantity_on_hand(owner_a.id, b.id) == 0

    def test_strategy_read_from_config(self, app, db_session, owner_a, make_item):
        plenty = make_item(owner_a, quantity=10)
        scarce = make_item(owner_a, quantity=0)

        app.config["SALE_RESERVATION_STRATEGY"] = RESERVATION_TWO_PHASE
        try:
            with pytest.raises(InsufficientStockError):
                sales_service.create_sale(owner_a.id, {"items": [_line(plenty, 1), _line(scarce, 1)]})
        finally:
            app.config["SALE_RESERVATION_STRATEGY"] = RESERVATION_SEQUENTIAL

        assert inventory_service.get_quantity_on_hand(owner_a.id, plenty.id) == 10


class TestVoidSale:
    """Voiding restores stock exactly once."""

    def test_void_restores_stock(self, db_session, owner_a, make_item):
        item = make_item(owner_a, quantity=10, price_cents=100)
        sale = sales_service.create_sale(owner_a.id, {"items": [_line(item, 3)]})
        assert inventory_service.get_quantity_on_hand(owner_a.id, item.id) == 7

        voided = sales_service.void_sale(owner_a.id, sale.id)

        assert voided.status == SALE_STATUS_VOIDED
        assert voided.voided_at is not None
        assert inventory_service.get_quantity_on_hand(owner_a.id, item.id) == 10

    def test_second_void_fails_and_releases_nothing(self, db_session, owner_a, make_item):
        item = make_item(owner_a, quantity=10)
        sale = sales_service.create_sale(owner_a.id, {"items": [_line(item, 3)]})
        sales_service.void_sale(owner_a.id, sale.id)

        with pytest.raises(AlreadyVoidedError):
            sales_service.void_sale(owner_a.id, sale.id)

        assert inventory_service.get_quantity_on_hand(owner_a.id, item.id) == 10

    def test_void_unknown_sale(self, db_session, owner_a):
        with pytest.raises(SaleNotFoundError):
            sales_service.void_sale(owner_a.id, 31337)

    def test_void_other_owners_sale_is_not_found(self, db_session, owner_a, owner_b, make_item):
        item_b = make_item(owner_b, quantity=10)
        sale_b = sales_service.create_sale(owner_b.id, {"items": [_line(item_b, 2)]})

        with pytest.raises(SaleNotFoundError):
            sales_service.void_sale(owner_a.id, sale_b.id)

        assert sales_service.get_sale(owner_b.id, sale_b.id)["status"] == SALE_STATUS_ACTIVE
        assert inventory_service.get_quantity_on_hand(owner_b.id, item_b.id) == 8

    def test_void_skips_deleted_items(self, db_session, owner_a, make_item):
        kept = make_item(owner_a, quantity=5, name="Kept")
        gone = make_item(owner_a, quantity=5, name="Gone")
        sale = sales_service.create_sale(owner_a.id, {"items": [_line(kept, 2), _line(gone, 2)]})
        assert catalog_service.delete_item(owner_id=owner_a.id, item_id=gone.id) is True

        voided = sales_service.void_sale(owner_a.id, sale.id)

        assert voided.status == SALE_STATUS_VOIDED
        assert inventory_service.get_quantity_on_hand(owner_a.id, kept.id) == 5

    def test_void_that_loses_the_claim_releases_nothing(self, db_session, owner_a, make_item, monkeypatch):
        item = make_item(owner_a, quantity=10)
        sale = sales_service.create_sale(owner_a.id, {"items": [_line(item, 3)]})
        find_owned_sale = sales_service.find_owned_sale

        def find_then_void_elsewhere(owner_id, sale_id):
            found = find_owned_sale(owner_id, sale_id)
            assert found.voided_at is None
            # Another void lands between the read and the claim.
            db.session.execute(
                update(Sale)
                .where(Sale.id == sale_id)
                .values(voided_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            return found

        monkeypatch.setattr(sales_service, "find_owned_sale", find_then_void_elsewhere)

        with pytest.raises(AlreadyVoidedError):
            sales_service.void_sale(owner_a.id, sale.id)

        assert inventory_service.get_quantity_on_hand(owner_a.id, item.id) == 7

    def test_concurrent_voids_release_once(self, tmp_path):
        race_app = create_app({
            'TESTING': True,
            'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'void_race.sqlite3'}",
            'BCRYPT_ROUNDS': 4,
        })

        with race_app.app_context():
            db.create_all()
            owner = User(email="voider@shop.test", name="voider", password_hash="x")
            db.session.add(owner)
            db.session.commit()
            item = InventoryItem(
                owner_id=owner.id, name="Wool Coat", size="M",
                price_cents=100, cost_cents=50, quantity=10,
            )
            db.session.add(item)
            db.session.commit()
            sale = sales_service.create_sale(owner.id, {"items": [_line(item, 3)]})
            owner_id, item_id, sale_id = owner.id, item.id, sale.id
            assert inventory_service.get_quantity_on_hand(owner_id, item_id) == 7
            db.session.remove()

        workers = 4
        barrier = threading.Barrier(workers)
        outcomes = []
        lock = threading.Lock()

        def attempt():
            result = "error"
            with race_app.app_context():
                barrier.wait()
                try:
                    sales_service.void_sale(owner_id, sale_id)
                    result = "ok"
                except AlreadyVoidedError:
                    result = "already"
                finally:
                    db.session.remove()
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=attempt) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert sorted(outcomes) == ["already"] * (workers - 1) + ["ok"]

        with race_app.app_context():
            assert inventory_service.get_quantity_on_hand(owner_id, item_id) == 10
            assert sales_service.get_sale(owner_id, sale_id)["status"] == SALE_STATUS_VOIDED
            db.session.remove()
            db.engine.dispose()


class TestGetSale:
    """Reads are owner-scoped and fill in missing line sizes."""

    def test_get_sale_serializes_lines(self, db_session, owner_a, make_item):
        item = make_item(owner_a, quantity=5, name="Polo", size="S")
        sale = sales_service.create_sale(owner_a.id, {"items": [_line(item, 2, 1200)]})

        data = sales_service.get_sale(owner_a.id, sale.id)

        assert data["id"] == sale.id
        assert data["status"] == SALE_STATUS_ACTIVE
        assert data["total_cents"] == 2400
        assert data["items"] == [{
            "position": 1,
            "inventory_id": item.id,
            "name": "Polo",
            "size": "S",
            "quantity": 2,
            "unit_price_cents": 1200,
            "line_total_cents": 2400,
        }]

    def test_missing_size_backfilled_without_mutation(self, db_session, owner_a, make_item):
        item = make_item(owner_a, quantity=5, name="Polo", size="XS")
        sale = sales_service.create_sale(owner_a.id, {"items": [_line(item, 1)]})
        line = db_session.query(SaleLine).filter_by(sale_id=sale.id).one()
        line.size = None
        db_session.commit()

        data = sales_service.get_sale(owner_a.id, sale.id)

        assert data["items"][0]["size"] == "XS"
        stored = db.session.query(SaleLine.size).filter_by(sale_id=sale.id).scalar()
        assert stored is None

    def test_missing_size_stays_empty_when_item_deleted(self, db_session, owner_a, make_item):
        item = make_item(owner_a, quantity=5)
        sale = sales_service.create_sale(owner_a.id, {"items": [_line(item, 1)]})
        line = db_session.query(SaleLine).filter_by(sale_id=sale.id).one()
        line.size = None
        db_session.commit()
        catalog_service.delete_item(owner_id=owner_a.id, item_id=item.id)

        data = sales_service.get_sale(owner_a.id, sale.id)

        assert data["items"][0]["size"] is None

    def test_get_other_owners_sale_is_not_found(self, db_session, owner_a, owner_b, make_item):
        item_b = make_item(owner_b, quantity=5)
        sale_b = sales_service.create_sale(owner_b.id, {"items": [_line(item_b, 1)]})

        with pytest.raises(SaleNotFoundError):
            sales_service.get_sale(owner_a.id, sale_b.id)
