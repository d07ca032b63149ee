"""
Shared pytest fixtures for TuFund tests.

Every test runs against a fresh in-memory SQLite database. Payment
providers are replaced either by FakeGateway (engine and initiator tests)
or by the real adapters talking to in-process fakes: Paystack through
httpx.MockTransport, Stripe through monkeypatched SDK calls.
"""
import hashlib
import hmac
import json
import os
import time
from decimal import Decimal
from types import SimpleNamespace

# Configure before any application import reads the environment
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["JWT_SECRET_KEY"] = "test-jwt-secret"
os.environ["APP_URL"] = "http://frontend.test"
os.environ["RESEND_API_KEY"] = ""
os.environ["MIN_DONATION_AMOUNT"] = "100"

import httpx
import pytest
import stripe
from fastapi.testclient import TestClient

from database.db import SessionLocal, engine
from database.models import Base, Campaign, CampaignStatus, Donation, DonationStatus, User
from services.auth_service import create_access_token, hash_password
from services.container import LedgerContainer, get_container
from services.email_service import EmailSender
from services.errors import AuthenticationError, GatewayError
from services.gateways import ConfirmationStatus, GatewayConfirmation, PaymentGateway, PaymentSession
from services.paystack_service import PaystackService
from services.stripe_service import StripeService

PAYSTACK_SECRET = "sk_test_paystack_secret"
STRIPE_API_KEY = "sk_test_stripe_key"
STRIPE_WEBHOOK_SECRET = "whsec_test_signing_secret"


# ============================================================================
# Database
# ============================================================================

@pytest.fixture(autouse=True)
def setup_database():
    """Fresh schema for every test."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db_session():
    db = SessionLocal()
    yield db
    db.close()


@pytest.fixture
def owner(db_session):
    user = User(
        email="owner@example.com",
        password_hash=hash_password("correct-horse"),
        full_name="Grace Njeri",
        phone="254712345678",
        is_active=True,
    )
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture
def create_campaign(db_session, owner):
    counter = {"n": 0}

    def _create(goal=10000, status=CampaignStatus.ACTIVE.value, user=None, title=None):
        counter["n"] += 1
        campaign = Campaign(
            user_id=(user or owner).id,
            slug=f"test-campaign-{counter['n']}",
            title=title or f"Test Campaign {counter['n']}",
            description="A campaign used by the test suite",
            goal_amount=Decimal(str(goal)),
            current_amount=Decimal("0"),
            status=status,
        )
        db_session.add(campaign)
        db_session.commit()
        return campaign

    return _create


@pytest.fixture
def campaign(create_campaign):
    return create_campaign()


@pytest.fixture
def create_donation(db_session):
    counter = {"n": 0}

    def _create(campaign, amount=500, method="paystack", status=DonationStatus.PENDING.value,
                donor_email="donor@example.com", donor_name="Kamau"):
        counter["n"] += 1
        reference = f"DONATION-{campaign.id}-1700000000000-{counter['n']:08x}"
        donation = Donation(
            campaign_id=campaign.id,
            amount=Decimal(str(amount)),
            donor_email=donor_email,
            donor_name=donor_name,
            payment_method=method,
            reference=reference,
            payment_id=reference,
            status=status,
            ip_address="197.248.0.1",
        )
        db_session.add(donation)
        db_session.commit()
        return donation

    return _create


def _fresh(model, **filters):
    with SessionLocal() as db:
        return db.query(model).filter_by(**filters).first()


@pytest.fixture
def read_campaign():
    """Re-read a campaign in a new session."""
    return lambda campaign_id: _fresh(Campaign, id=campaign_id)


@pytest.fixture
def read_donation():
    """Re-read a donation by its reference in a new session."""
    return lambda reference: _fresh(Donation, reference=reference)


@pytest.fixture
def auth_headers(owner):
    token = create_access_token({"user_id": owner.id, "email": owner.email})
    return {"Authorization": f"Bearer {token}"}


# ============================================================================
# Gateways and email
# ============================================================================

class FakeGateway(PaymentGateway):
    """Scriptable gateway. Signature "good" is the only valid one."""

    def __init__(self, provider, requires_email=False):
        self.provider = provider
        self.signature_header = "x-fake-signature"
        self.requires_email = requires_email
        self.sessions = []
        self.error = None
        self.confirmations = {}
        self.verified_references = []

    async def create_session(self, intent):
        if self.error:
            raise self.error
        self.sessions.append(intent)
        return PaymentSession(
            provider=self.provider,
            reference=intent.reference,
            redirect_url=f"https://pay.example/{intent.reference}",
            session_id=f"sess_{intent.donation_id}",
        )

    def parse_webhook(self, payload, signature):
        if signature != "good":
            raise AuthenticationError("Invalid signature")
        data = json.loads(payload)
        return GatewayConfirmation(provider=self.provider, **data)

    async def verify_transaction(self, reference):
        self.verified_references.append(reference)
        if reference not in self.confirmations:
            raise GatewayError("Transaction not found", provider=self.provider)
        return self.confirmations[reference]


class RecordingEmailSender(EmailSender):
    """Builds real message bodies but records instead of sending."""

    def __init__(self):
        super().__init__(api_key="re_test_key", from_email="noreply@tufund.test",
                         app_url="http://frontend.test", client=httpx.AsyncClient())
        self.sent = []
        self.fail = False

    async def send(self, to, subject, html_body):
        if self.fail:
            raise RuntimeError("smtp exploded")
        self.sent.append(SimpleNamespace(to=to, subject=subject, html=html_body))


@pytest.fixture
def make_confirmation():
    def _make(reference, status=ConfirmationStatus.SUCCEEDED, provider="paystack",
              amount_minor=None, canonical_id=None, message=None):
        return GatewayConfirmation(
            provider=provider,
            status=status,
            reference=reference,
            canonical_id=canonical_id or reference,
            amount_minor=amount_minor,
            message=message,
            event_type="test",
        )
    return _make


@pytest.fixture
def email_sender():
    return RecordingEmailSender()


@pytest.fixture
def fake_gateways():
    return {
        "paystack": FakeGateway("paystack", requires_email=True),
        "card": FakeGateway("card"),
    }


@pytest.fixture
def fake_ledger(fake_gateways, email_sender):
    return LedgerContainer(SessionLocal, fake_gateways, email_sender=email_sender, minimum_amount=100)


class FakePaystackAPI:
    """Just enough of api.paystack.co for the adapter."""

    def __init__(self):
        self.transactions = {}
        self.requests = []
        self.decline_initialize = False
        self.reject_credentials = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)

        if self.reject_credentials or request.headers.get("Authorization") != f"Bearer {PAYSTACK_SECRET}":
            return httpx.Response(401, json={"status": False, "message": "Invalid key"})

        if request.method == "POST" and request.url.path == "/transaction/initialize":
            body = json.loads(request.content)
            if self.decline_initialize:
                return httpx.Response(400, json={"status": False, "message": "Invalid amount"})
            self.transactions[body["reference"]] = {
                "id": 4099260000 + len(self.transactions),
                "reference": body["reference"],
                "amount": body["amount"],
                "status": "ongoing",
                "gateway_response": "Pending",
            }
            return httpx.Response(200, json={
                "status": True,
                "message": "Authorization URL created",
                "data": {
                    "authorization_url": f"https://checkout.paystack.com/{body['reference']}",
                    "access_code": "ac_test_123",
                    "reference": body["reference"],
                },
            })

        if request.method == "GET" and request.url.path.startswith("/transaction/verify/"):
            reference = request.url.path.rsplit("/", 1)[-1]
            transaction = self.transactions.get(reference)
            if not transaction:
                return httpx.Response(400, json={"status": False, "message": "Transaction reference not found"})
            return httpx.Response(200, json={"status": True, "message": "Verification successful", "data": transaction})

        return httpx.Response(404, json={"status": False, "message": "Not found"})

    def settle(self, reference, status="success", gateway_response="Approved"):
        self.transactions[reference]["status"] = status
        self.transactions[reference]["gateway_response"] = gateway_response


@pytest.fixture
def paystack_api():
    return FakePaystackAPI()


@pytest.fixture
def paystack_service(paystack_api):
    client = httpx.AsyncClient(transport=httpx.MockTransport(paystack_api))
    return PaystackService(
        secret_key=PAYSTACK_SECRET,
        callback_url="http://frontend.test/donate/paystack/callback",
        base_url="https://api.paystack.co",
        client=client,
    )


@pytest.fixture
def stripe_service():
    return StripeService(
        api_key=STRIPE_API_KEY,
        webhook_secret=STRIPE_WEBHOOK_SECRET,
        currency="kes",
        app_url="http://frontend.test",
    )


@pytest.fixture
def stripe_checkout(monkeypatch):
    """Replace the Checkout Session SDK calls with an in-memory store."""
    sessions = {}
    calls = []

    def create(**kwargs):
        calls.append(kwargs)
        session_id = f"cs_test_{len(sessions) + 1}"
        sessions[session_id] = SimpleNamespace(
            id=session_id,
            url=f"https://checkout.stripe.com/c/pay/{session_id}",
            client_reference_id=kwargs["client_reference_id"],
            payment_intent=None,
            payment_status="unpaid",
            status="open",
            amount_total=kwargs["line_items"][0]["price_data"]["unit_amount"],
            metadata=SimpleNamespace(**kwargs["metadata"]),
        )
        return sessions[session_id]

    def retrieve(session_id, **kwargs):
        if session_id not in sessions:
            raise stripe.InvalidRequestError(f"No such checkout.session: '{session_id}'", "id")
        return sessions[session_id]

    def pay(session_id, payment_intent="pi_test_123"):
        sessions[session_id].payment_status = "paid"
        sessions[session_id].status = "complete"
        sessions[session_id].payment_intent = payment_intent

    monkeypatch.setattr(stripe.checkout.Session, "create", create)
    monkeypatch.setattr(stripe.checkout.Session, "retrieve", retrieve)
    return SimpleNamespace(sessions=sessions, calls=calls, pay=pay)


@pytest.fixture
def ledger(paystack_service, stripe_service, email_sender):
    return LedgerContainer(
        SessionLocal,
        {"paystack": paystack_service, "card": stripe_service},
        email_sender=email_sender,
        minimum_amount=100,
    )


@pytest.fixture
def client(ledger):
    from main import app

    app.dependency_overrides[get_container] = lambda: ledger
    yield TestClient(app)
    app.dependency_overrides.clear()


# ============================================================================
# Webhook signing
# ============================================================================

@pytest.fixture
def sign_paystack():
    def _sign(body: bytes, secret: str = PAYSTACK_SECRET) -> str:
        return hmac.new(secret.encode(), body, hashlib.sha512).hexdigest()
    return _sign


@pytest.fixture
def sign_stripe():
    def _sign(body: bytes, secret: str = STRIPE_WEBHOOK_SECRET, timestamp: int = None) -> str:
        timestamp = timestamp or int(time.time())
        signed = f"{timestamp}.{body.decode()}".encode()
        signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
        return f"t={timestamp},v1={signature}"
    return _sign
