"""
Order cancellation and action code tests.

Verifies:
- Unpaid orders cancel and restock supplier offers
- Paid orders cannot be canceled
- Canceling twice is a no-op
- Cancellation with a code requires a verified, unspent token
"""

from datetime import timedelta

import pytest

from marketplace.errors import AuthorizationError, PreconditionError, RateLimitError
from marketplace.models import Order, OrderActionCode, Product, PurchaseOrder, SupplierProductOffer
from marketplace.services import cancellation_service, order_code_service, purchase_order_service
from marketplace.services.concurrency import UnitOfWork
from marketplace.states import OrderStatus, PurchaseOrderStatus
from marketplace.time_utils import utcnow


# =============================================================================
# CANCEL
# =============================================================================


class TestCancelOrder:

    def test_cancel_restocks_offers(self, db_session, order_factory, offers, admin_actor):
        built = order_factory(quantity_a=2, quantity_b=1)

        result = cancellation_service.cancel_order(UnitOfWork(db_session), built.order.id, admin_actor, "Customer asked")

        assert result.already_canceled is False
        assert db_session.get(Order, built.order.id).status == OrderStatus.CANCELED
        assert db_session.get(SupplierProductOffer, offers.offer_a.id).available_qty == 6
        assert db_session.get(SupplierProductOffer, offers.offer_b.id).available_qty == 5
        assert {r["offer_id"] for r in result.restocked} == {offers.offer_a.id, offers.offer_b.id}

    def test_restock_brings_product_back_in_stock(self, db_session, order_factory, offers, admin_actor):
        built = order_factory()
        offer = db_session.get(SupplierProductOffer, offers.offer_a.id)
        offer.available_qty = 0
        offer.in_stock = False
        db_session.get(Product, offers.rice.id).in_stock = False
        db_session.commit()

        cancellation_service.cancel_order(UnitOfWork(db_session), built.order.id, admin_actor)

        assert db_session.get(SupplierProductOffer, offers.offer_a.id).in_stock is True
        assert db_session.get(Product, offers.rice.id).in_stock is True

    def test_split_unpaid_order_cancels_pos(self, db_session, unpaid_order, admin_actor):
        purchase_order_service.split_order(UnitOfWork(db_session), unpaid_order.order.id)
        cancellation_service.cancel_order(UnitOfWork(db_session), unpaid_order.order.id, admin_actor)

        statuses = {po.status for po in db_session.query(PurchaseOrder).all()}
        assert statuses == {PurchaseOrderStatus.CANCELED}

    def test_paid_order_rejected(self, db_session, paid_order, offers, admin_actor):
        with pytest.raises(PreconditionError) as exc:
            cancellation_service.cancel_order(UnitOfWork(db_session), paid_order.order.id, admin_actor)
        assert exc.value.code == "ORDER_ALREADY_PAID"
        assert exc.value.status_code == 400
        assert db_session.get(SupplierProductOffer, offers.offer_a.id).available_qty == 4

    def test_cancel_twice_is_noop(self, db_session, unpaid_order, offers, admin_actor):
        cancellation_service.cancel_order(UnitOfWork(db_session), unpaid_order.order.id, admin_actor)
        again = cancellation_service.cancel_order(UnitOfWork(db_session), unpaid_order.order.id, admin_actor)

        assert again.already_canceled is True
        assert db_session.get(SupplierProductOffer, offers.offer_a.id).available_qty == 5

    def test_admin_only(self, db_session, unpaid_order, customer_actor):
        with pytest.raises(AuthorizationError):
            cancellation_service.cancel_order(UnitOfWork(db_session), unpaid_order.order.id, customer_actor)


# =============================================================================
# ACTION CODES
# =============================================================================


class TestOrderActionCode:

    def test_code_flow_cancels_once(self, db_session, unpaid_order, admin, admin_actor, notifier):
        order_id = unpaid_order.order.id
        issued = order_code_service.request_order_code(UnitOfWork(db_session), order_id, admin_actor)
        assert notifier.last_code(admin.phone) == issued.code

        token = order_code_service.verify_order_code(UnitOfWork(db_session), order_id, admin_actor, issued.code)
        result = cancellation_service.cancel_order_with_code(UnitOfWork(db_session), order_id, admin_actor, token)

        assert result.order.status == OrderStatus.CANCELED
        assert db_session.get(OrderActionCode, token).consumed_at is not None

    def test_token_bound_to_its_order(self, db_session, order_factory, admin_actor):
        first = order_factory()
        second = order_factory()
        issued = order_code_service.request_order_code(UnitOfWork(db_session), first.order.id, admin_actor)
        token = order_code_service.verify_order_code(UnitOfWork(db_session), first.order.id, admin_actor, issued.code)

        with pytest.raises(AuthorizationError) as exc:
            cancellation_service.cancel_order_with_code(UnitOfWork(db_session), second.order.id, admin_actor, token)
        assert exc.value.code == "CODE_TOKEN_REQUIRED"
        assert db_session.get(Order, second.order.id).status == OrderStatus.CREATED

    def test_missing_token(self, db_session, unpaid_order, admin_actor):
        with pytest.raises(AuthorizationError):
            cancellation_service.cancel_order_with_code(UnitOfWork(db_session), unpaid_order.order.id, admin_actor, None)

    def test_paid_order_keeps_token(self, db_session, paid_order, admin_actor):
        order_id = paid_order.order.id
        issued = order_code_service.request_order_code(UnitOfWork(db_session), order_id, admin_actor)
        token = order_code_service.verify_order_code(UnitOfWork(db_session), order_id, admin_actor, issued.code)

        with pytest.raises(PreconditionError) as exc:
            cancellation_service.cancel_order_with_code(UnitOfWork(db_session), order_id, admin_actor, token)
        assert exc.value.code == "ORDER_ALREADY_PAID"
        assert db_session.get(OrderActionCode, token).consumed_at is None

    def test_wrong_code_then_lock(self, db_session, unpaid_order, admin_actor):
        order_id = unpaid_order.order.id
        issued = order_code_service.request_order_code(UnitOfWork(db_session), order_id, admin_actor)
        wrong = "000000" if issued.code != "000000" else "111111"

        for _ in range(5):
            with pytest.raises(PreconditionError):
                order_code_service.verify_order_code(UnitOfWork(db_session), order_id, admin_actor, wrong)
        with pytest.raises(RateLimitError):
            order_code_service.verify_order_code(UnitOfWork(db_session), order_id, admin_actor, issued.code)

    def test_cooldown_and_expiry(self, db_session, unpaid_order, admin_actor):
        order_id = unpaid_order.order.id
        issued = order_code_service.request_order_code(UnitOfWork(db_session), order_id, admin_actor)
        with pytest.raises(RateLimitError):
            order_code_service.request_order_code(UnitOfWork(db_session), order_id, admin_actor)

        row = db_session.get(OrderActionCode, issued.row.id)
        row.expires_at = utcnow() - timedelta(seconds=1)
        db_session.commit()
        with pytest.raises(PreconditionError) as exc:
            order_code_service.verify_order_code(UnitOfWork(db_session), order_id, admin_actor, issued.code)
        assert exc.value.code == "CODE_EXPIRED"

    def test_not_requested(self, db_session, unpaid_order, admin_actor):
        with pytest.raises(PreconditionError) as exc:
            order_code_service.verify_order_code(UnitOfWork(db_session), unpaid_order.order.id, admin_actor, "123456")
        assert exc.value.code == "CODE_NOT_REQUESTED"
