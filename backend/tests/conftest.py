"""
Pytest fixtures for marketplace backend tests.

Provides test database setup, a recording notifier, marketplace actors
(customer, admin, two payout-ready suppliers) and a paid two-supplier order.
"""

import re
from types import SimpleNamespace

import pytest

from marketplace import create_app
from marketplace.extensions import db
from marketplace.models import (
    Order,
    OrderItem,
    Payment,
    Product,
    Supplier,
    SupplierProductOffer,
    User,
)
from marketplace.services import delivery_challenge_service, purchase_order_service, session_service
from marketplace.services.access_service import actor_for_user
from marketplace.services.concurrency import UnitOfWork
from marketplace.services.notification_service import Notifier
from marketplace.states import (
    BankVerificationStatus,
    OfferKind,
    OrderStatus,
    PaymentStatus,
    UserRole,
)


class RecordingNotifier(Notifier):
    """Keeps outbound messages in memory; set `fail` to simulate a provider outage."""

    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, message):
        if self.fail:
            raise RuntimeError("provider unavailable")
        self.sent.append(message)

    def reset(self):
        self.sent = []
        self.fail = False

    def last_code(self, recipient=None):
        for message in reversed(self.sent):
            if recipient is not None and message.recipient != recipient:
                continue
            match = re.search(r"\bis (\d{6})\b", message.body)
            if match:
                return match.group(1)
        return None


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'OTP_HASH_ROUNDS': 4,
        'TXN_RETRY_ATTEMPTS': 2,
    })
    app.extensions['notifier'] = RecordingNotifier()

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def uow(db_session):
    return UnitOfWork(db_session)


@pytest.fixture(scope='function')
def notifier(app):
    recorder = app.extensions['notifier']
    recorder.reset()
    yield recorder
    recorder.reset()


# =============================================================================
# ACTORS
# =============================================================================

def _user(db_session, email, role, phone=None):
    user = User(email=email, role=role, phone=phone, full_name=email.split("@")[0], is_active=True)
    db_session.add(user)
    db_session.commit()
    return user


def _payout_ready_supplier(db_session, user, name, whatsapp):
    supplier = Supplier(
        user_id=user.id,
        name=name,
        whatsapp_phone=whatsapp,
        is_active=True,
        is_payout_enabled=True,
        bank_name="GTBank",
        bank_code="058",
        bank_country="NG",
        account_number="0123456789",
        account_name=name,
        bank_verification_status=BankVerificationStatus.VERIFIED,
    )
    db_session.add(supplier)
    db_session.commit()
    return supplier


def actor_for(user):
    return actor_for_user(db.session, user)


@pytest.fixture(scope='function')
def customer(db_session):
    return _user(db_session, "ada@example.com", UserRole.SHOPPER, phone="+2348030000001")


@pytest.fixture(scope='function')
def other_customer(db_session):
    return _user(db_session, "bola@example.com", UserRole.SHOPPER, phone="+2348030000002")


@pytest.fixture(scope='function')
def admin(db_session):
    return _user(db_session, "ops@example.com", UserRole.ADMIN, phone="+2348030000099")


@pytest.fixture(scope='function')
def supplier_a_user(db_session):
    return _user(db_session, "sales@afoods.example.com", UserRole.SUPPLIER)


@pytest.fixture(scope='function')
def supplier_b_user(db_session):
    return _user(db_session, "sales@bgoods.example.com", UserRole.SUPPLIER)


@pytest.fixture(scope='function')
def supplier_a(db_session, supplier_a_user):
    return _payout_ready_supplier(db_session, supplier_a_user, "A Foods", "+2348050000001")


@pytest.fixture(scope='function')
def supplier_b(db_session, supplier_b_user):
    return _payout_ready_supplier(db_session, supplier_b_user, "B Goods", "+2348050000002")


# =============================================================================
# CATALOG AND ORDERS
# =============================================================================

@pytest.fixture(scope='function')
def offers(db_session, supplier_a, supplier_b):
    """One product per supplier, each with 4 units left after checkout."""
    rice = Product(title="Ofada rice 5kg", in_stock=True, is_active=True)
    oil = Product(title="Palm oil 2L", in_stock=True, is_active=True)
    db_session.add_all([rice, oil])
    db_session.flush()

    offer_a = SupplierProductOffer(
        supplier_id=supplier_a.id, product_id=rice.id, unit_cost_kobo=800_000,
        available_qty=4, in_stock=True, is_active=True,
    )
    offer_b = SupplierProductOffer(
        supplier_id=supplier_b.id, product_id=oil.id, unit_cost_kobo=400_000,
        available_qty=4, in_stock=True, is_active=True,
    )
    db_session.add_all([offer_a, offer_b])
    db_session.commit()
    return SimpleNamespace(rice=rice, oil=oil, offer_a=offer_a, offer_b=offer_b)


def build_order(db_session, customer, offers, *, quantity_a=1, quantity_b=1):
    """
    Order worth NGN 15,000 at quantity 1: rice (1,000,000 kobo) from
    supplier A and oil (500,000 kobo) from supplier B.
    """
    subtotal = 1_000_000 * quantity_a + 500_000 * quantity_b
    order = Order(
        user_id=customer.id,
        status=OrderStatus.CREATED,
        subtotal_kobo=subtotal,
        total_kobo=subtotal,
        currency="NGN",
        ship_to_name="Ada",
        ship_to_phone=customer.phone,
        ship_to_address="12 Allen Avenue",
        ship_to_city="Ikeja",
        ship_to_state="Lagos",
    )
    db_session.add(order)
    db_session.flush()

    item_a = OrderItem(
        order_id=order.id, product_id=offers.rice.id, title="Ofada rice 5kg",
        quantity=quantity_a, unit_price_kobo=1_000_000,
        chosen_supplier_id=offers.offer_a.supplier_id, chosen_supplier_unit_cost_kobo=800_000,
        chosen_offer_kind=OfferKind.BASE.value, chosen_offer_id=offers.offer_a.id,
    )
    item_b = OrderItem(
        order_id=order.id, product_id=offers.oil.id, title="Palm oil 2L",
        quantity=quantity_b, unit_price_kobo=500_000,
        chosen_supplier_id=offers.offer_b.supplier_id, chosen_supplier_unit_cost_kobo=400_000,
        chosen_offer_kind=OfferKind.BASE.value, chosen_offer_id=offers.offer_b.id,
    )
    payment = Payment(
        order_id=order.id, reference=f"PSK-{order.id:06d}", provider="paystack",
        amount_kobo=subtotal, currency="NGN", status=PaymentStatus.PENDING,
    )
    db_session.add_all([item_a, item_b, payment])
    db_session.commit()
    return SimpleNamespace(order=order, item_a=item_a, item_b=item_b, payment=payment)


@pytest.fixture(scope='function')
def unpaid_order(db_session, customer, offers):
    return build_order(db_session, customer, offers)


@pytest.fixture(scope='function')
def paid_order(db_session, customer, offers, supplier_a, supplier_b, notifier):
    """Order paid NGN 15,000, split into one purchase order per supplier."""
    built = build_order(db_session, customer, offers)
    confirmation = purchase_order_service.record_payment_confirmed(
        UnitOfWork(db_session),
        payment_id=built.payment.id,
        order_id=built.order.id,
        amount_kobo=built.payment.amount_kobo,
        status="PAID",
    )
    by_supplier = {po.supplier_id: po for po in confirmation.split.purchase_orders}
    built.po_a = by_supplier[supplier_a.id]
    built.po_b = by_supplier[supplier_b.id]
    built.allocations = {a.supplier_id: a for a in confirmation.allocations}
    return built


# =============================================================================
# AUTH
# =============================================================================

def auth_headers(user) -> dict:
    """Helper to create Authorization headers."""
    _, token = session_service.create_session(user.id)
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture(scope='function')
def customer_headers(customer):
    return auth_headers(customer)


@pytest.fixture(scope='function')
def other_customer_headers(other_customer):
    return auth_headers(other_customer)


@pytest.fixture(scope='function')
def admin_headers(admin):
    return auth_headers(admin)


@pytest.fixture(scope='function')
def supplier_a_headers(supplier_a, supplier_a_user):
    return auth_headers(supplier_a_user)


@pytest.fixture(scope='function')
def supplier_b_headers(supplier_b, supplier_b_user):
    return auth_headers(supplier_b_user)


# =============================================================================
# SERVICE ACTORS
# =============================================================================

@pytest.fixture(scope='function')
def customer_actor(customer):
    return actor_for(customer)


@pytest.fixture(scope='function')
def admin_actor(admin):
    return actor_for(admin)


@pytest.fixture(scope='function')
def supplier_a_actor(supplier_a, supplier_a_user):
    return actor_for(supplier_a_user)


@pytest.fixture(scope='function')
def supplier_b_actor(supplier_b, supplier_b_user):
    return actor_for(supplier_b_user)


@pytest.fixture(scope='function')
def order_factory(db_session, customer, offers):
    def _make(**kwargs):
        return build_order(db_session, customer, offers, **kwargs)
    return _make


@pytest.fixture(scope='function')
def shipped_order(db_session, paid_order, supplier_a_actor):
    """paid_order with supplier A's purchase order moved to SHIPPED."""
    for status in ("CONFIRMED", "SHIPPED"):
        purchase_order_service.update_purchase_order_status(
            UnitOfWork(db_session), paid_order.po_a.id, status, supplier_a_actor
        )
    return paid_order


@pytest.fixture(scope='function')
def delivered_order(db_session, shipped_order, supplier_a_actor):
    """shipped_order with supplier A's delivery confirmed by code."""
    issued = delivery_challenge_service.issue_delivery_code(
        UnitOfWork(db_session), shipped_order.po_a.id, supplier_a_actor
    )
    delivery_challenge_service.verify_delivery_code(
        UnitOfWork(db_session), shipped_order.po_a.id, issued.code, supplier_a_actor
    )
    return shipped_order
