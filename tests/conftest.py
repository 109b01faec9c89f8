from datetime import timedelta

import httpx
import pytest
from mongomock_motor import AsyncMongoMockClient

import database
import orders
from database import create_document, ensure_indexes, to_object_id, utcnow
from errors import PaymentProviderError
from main import app
from payments import PaymentSession, PaypalProvider, RazorpayProvider, get_paypal, get_razorpay
from schemas import UserRole
from users import create_access_token, create_user

RAZORPAY_SECRET = "rzp_secret"


class FakeRazorpay(RazorpayProvider):
    def __init__(self, fail_with=None):
        super().__init__("rzp_test_key", RAZORPAY_SECRET)
        self.fail_with = fail_with
        self.sessions = []

    async def create_session(self, amount, currency, idempotency_key):
        if self.fail_with is not None:
            raise PaymentProviderError(self.fail_with or self.generic_error)
        minor = int(round(amount * 100))
        session_id = f"order_rzp_{len(self.sessions) + 1}"
        session = PaymentSession(id=session_id, amount=minor, currency=currency, payload={"id": session_id, "amount": minor})
        self.sessions.append(session)
        return session


class FakePaypal(PaypalProvider):
    def __init__(self, capture_status="COMPLETED"):
        super().__init__("client", "secret", exchange_rate=0.012)
        self.capture_status = capture_status
        self.captured = []

    async def create_session(self, amount, currency, idempotency_key):
        session_id = f"PAYPAL-{idempotency_key[:8]}"
        return PaymentSession(id=session_id, amount=amount, currency="USD", payload={"id": session_id, "status": "CREATED"})

    async def capture(self, order_id):
        self.captured.append(order_id)
        return {"id": order_id, "status": self.capture_status}


@pytest.fixture
async def db():
    mock_db = AsyncMongoMockClient()["storefront_test"]
    database.set_db(mock_db)
    await ensure_indexes()
    yield mock_db
    database.set_db(None)


@pytest.fixture
def outbox(monkeypatch):
    sent = []

    async def fake_send_email(to, subject, content):
        sent.append({"to": to, "subject": subject, "content": content})
        return True

    monkeypatch.setattr(orders, "send_email", fake_send_email)
    return sent


@pytest.fixture
async def user(db):
    return await create_user("alice", "alice@example.com")


@pytest.fixture
async def admin(db):
    return await create_user("admin", "admin@example.com", role=UserRole.ADMIN)


@pytest.fixture
def make_product(db):
    async def _make(price=100.0, stock=10, name="Widget"):
        product = await create_document("product", {"name": name, "description": name, "price": price, "stock": stock})
        return product["id"]
    return _make


@pytest.fixture
def make_coupon(db):
    async def _make(code="FLAT50", discount_value=50, minimum_cart_value=150, is_active=True, starts_in=None, expires_in=timedelta(days=7)):
        now = utcnow()
        coupon = await create_document("coupon", {
            "name": code,
            "coupon_code": code,
            "type": "FLAT",
            "discount_value": discount_value,
            "minimum_cart_value": minimum_cart_value,
            "start_date": now + starts_in if starts_in else now - timedelta(days=1),
            "expiry_date": now + expires_in,
            "is_active": is_active,
        })
        return coupon
    return _make


@pytest.fixture
async def address(db, user):
    created = await create_document("address", {
        "owner": user["_id"],
        "address_line1": "221B Baker Street",
        "city": "Mumbai",
        "state": "MH",
        "country": "India",
        "pincode": "400001",
    })
    return created["id"]


@pytest.fixture
def stock_of(db):
    async def _stock(product_id):
        product = await db["product"].find_one({"_id": to_object_id(product_id)})
        return product["stock"]
    return _stock


@pytest.fixture
def razorpay():
    return FakeRazorpay()


@pytest.fixture
def paypal():
    return FakePaypal()


@pytest.fixture
def headers_for():
    def _headers(user):
        return {"Authorization": f"Bearer {create_access_token(user)}"}
    return _headers


@pytest.fixture
async def client(db, razorpay, paypal, outbox):
    app.dependency_overrides[get_razorpay] = lambda: razorpay
    app.dependency_overrides[get_paypal] = lambda: paypal
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()
