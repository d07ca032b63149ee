"""
End-to-end donation flow through the HTTP API: initiation, webhooks and
browser callbacks, using the real gateway adapters against fakes.
"""

import json
from decimal import Decimal

from database.db import SessionLocal
from database.models import CampaignStatus, Donation, DonationStatus
from services.errors import TransientInfrastructureError


def paystack_event(reference, amount_minor, event="charge.success", status="success"):
    return json.dumps({
        "event": event,
        "data": {"id": 5551234, "reference": reference, "status": status,
                 "amount": amount_minor, "gateway_response": "Successful"},
    }).encode()


def stripe_completed(reference, amount_total, session_id="cs_test_1"):
    return json.dumps({
        "id": "evt_test_checkout",
        "type": "checkout.session.completed",
        "data": {"object": {
            "id": session_id,
            "client_reference_id": reference,
            "payment_intent": "pi_test_route",
            "payment_status": "paid",
            "status": "complete",
            "amount_total": amount_total,
            "metadata": {"reference": reference},
        }},
    }).encode()


def start_paystack(client, campaign, amount=500):
    response = client.post("/donate/paystack", json={
        "campaign_id": campaign.id,
        "amount": amount,
        "donor_email": "donor@example.com",
        "donor_name": "Njoroge",
    })
    assert response.status_code == 201, response.text
    return response.json()


class TestInitiation:

    def test_paystack_donation_returns_authorization_url(self, client, campaign, read_donation):
        data = start_paystack(client, campaign)

        assert data["redirect_url"] == f"https://checkout.paystack.com/{data['reference']}"
        assert data["access_code"] == "ac_test_123"
        assert read_donation(data["reference"]).status == DonationStatus.PENDING.value

    def test_stripe_donation_returns_checkout_url(self, client, campaign, stripe_checkout):
        response = client.post("/donate/stripe", json={"campaign_id": campaign.id, "amount": 1000})

        assert response.status_code == 201
        assert response.json()["session_id"] == "cs_test_1"
        assert stripe_checkout.calls[0]["client_reference_id"] == response.json()["reference"]

    def test_paystack_requires_email(self, client, campaign):
        response = client.post("/donate/paystack", json={"campaign_id": campaign.id, "amount": 500})

        assert response.status_code == 400
        assert "Email is required" in response.json()["error"]

    def test_amount_below_minimum(self, client, campaign):
        response = client.post("/donate/stripe", json={"campaign_id": campaign.id, "amount": 50})

        assert response.status_code == 400
        assert "Minimum donation" in response.json()["error"]

    def test_amount_above_maximum(self, client, campaign, stripe_checkout):
        response = client.post("/donate/stripe", json={"campaign_id": campaign.id, "amount": 1e30})

        assert response.status_code == 422
        assert stripe_checkout.calls == []
        with SessionLocal() as db:
            assert db.query(Donation).count() == 0

    def test_closed_campaign(self, client, create_campaign):
        closed = create_campaign(status=CampaignStatus.CLOSED.value)

        response = client.post("/donate/stripe", json={"campaign_id": closed.id, "amount": 500})

        assert response.status_code == 404

    def test_declined_initialization_leaves_no_donation(self, client, campaign, paystack_api):
        paystack_api.decline_initialize = True

        response = client.post("/donate/paystack", json={
            "campaign_id": campaign.id, "amount": 500, "donor_email": "donor@example.com",
        })

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid amount"
        with SessionLocal() as db:
            assert db.query(Donation).count() == 0


class TestPaystackWebhook:

    def test_charge_success_verifies_donation(self, client, campaign, sign_paystack, read_campaign, read_donation):
        reference = start_paystack(client, campaign, amount=500)["reference"]
        body = paystack_event(reference, 50000)

        response = client.post("/webhooks/paystack", content=body,
                               headers={"x-paystack-signature": sign_paystack(body)})

        assert response.status_code == 200
        assert response.json()["status"] == "verified"
        assert read_donation(reference).verified
        assert read_campaign(campaign.id).current_amount == Decimal("500")

    def test_redelivery_is_idempotent(self, client, campaign, sign_paystack, read_campaign):
        reference = start_paystack(client, campaign, amount=500)["reference"]
        body = paystack_event(reference, 50000)
        headers = {"x-paystack-signature": sign_paystack(body)}

        first = client.post("/webhooks/paystack", content=body, headers=headers)
        second = client.post("/donate/paystack/callback", content=body, headers=headers)

        assert first.json()["status"] == "verified"
        assert second.json()["status"] == "duplicate"
        assert read_campaign(campaign.id).current_amount == Decimal("500")

    def test_bad_signature_is_rejected(self, client, campaign, sign_paystack, read_campaign, read_donation):
        reference = start_paystack(client, campaign)["reference"]
        body = paystack_event(reference, 50000)

        forged = client.post("/webhooks/paystack", content=body,
                             headers={"x-paystack-signature": sign_paystack(body, secret="sk_test_attacker")})
        unsigned = client.post("/webhooks/paystack", content=body)

        assert forged.status_code == 401
        assert forged.json() == {"error": "Invalid signature"}
        assert unsigned.status_code == 401
        assert read_donation(reference).status == DonationStatus.PENDING.value
        assert read_campaign(campaign.id).current_amount == Decimal("0")

    def test_unknown_reference_is_acknowledged(self, client, campaign, sign_paystack, read_campaign):
        body = paystack_event("DONATION-77-1700000000000-ffffffff", 50000)

        response = client.post("/webhooks/paystack", content=body,
                               headers={"x-paystack-signature": sign_paystack(body)})

        assert response.status_code == 200
        assert response.json()["status"] == "unknown_reference"
        assert read_campaign(campaign.id).current_amount == Decimal("0")

    def test_amount_mismatch_is_rejected(self, client, campaign, sign_paystack, read_campaign):
        reference = start_paystack(client, campaign, amount=500)["reference"]
        body = paystack_event(reference, 100)

        response = client.post("/webhooks/paystack", content=body,
                               headers={"x-paystack-signature": sign_paystack(body)})

        assert response.json()["status"] == "rejected"
        assert read_campaign(campaign.id).current_amount == Decimal("0")

    def test_non_charge_events_are_acknowledged(self, client, sign_paystack):
        body = paystack_event("TRF_1", 50000, event="transfer.failed", status="failed")

        response = client.post("/webhooks/paystack", content=body,
                               headers={"x-paystack-signature": sign_paystack(body)})

        assert response.status_code == 200
        assert response.json()["status"] == "ignored"

    def test_malformed_payload(self, client, sign_paystack):
        body = b'{"event": "charge.success"}'

        response = client.post("/webhooks/paystack", content=body,
                               headers={"x-paystack-signature": sign_paystack(body)})

        assert response.status_code == 400


class TestStripeWebhook:

    def test_checkout_completed_verifies(self, client, campaign, stripe_checkout, sign_stripe,
                                         read_campaign, read_donation):
        started = client.post("/donate/stripe", json={"campaign_id": campaign.id, "amount": 750}).json()
        body = stripe_completed(started["reference"], 75000)

        response = client.post("/webhooks/stripe", content=body, headers={"stripe-signature": sign_stripe(body)})

        assert response.status_code == 200
        assert response.json()["status"] == "verified"
        assert read_donation(started["reference"]).payment_id == "pi_test_route"
        assert read_campaign(campaign.id).current_amount == Decimal("750")

    def test_legacy_path_and_duplicate(self, client, campaign, stripe_checkout, sign_stripe, read_campaign):
        started = client.post("/donate/stripe", json={"campaign_id": campaign.id, "amount": 750}).json()
        body = stripe_completed(started["reference"], 75000)
        headers = {"stripe-signature": sign_stripe(body)}

        client.post("/donate/stripe/webhook", content=body, headers=headers)
        again = client.post("/webhooks/stripe", content=body, headers=headers)

        assert again.json()["status"] == "duplicate"
        assert read_campaign(campaign.id).current_amount == Decimal("750")

    def test_bad_signature(self, client, campaign, stripe_checkout, sign_stripe, read_campaign):
        started = client.post("/donate/stripe", json={"campaign_id": campaign.id, "amount": 750}).json()
        body = stripe_completed(started["reference"], 75000)

        response = client.post("/webhooks/stripe", content=body,
                               headers={"stripe-signature": sign_stripe(body, secret="whsec_wrong")})

        assert response.status_code == 401
        assert read_campaign(campaign.id).current_amount == Decimal("0")


class TestCallbacks:

    def test_paystack_success_redirects_to_campaign(self, client, campaign, paystack_api, read_campaign):
        reference = start_paystack(client, campaign)["reference"]
        paystack_api.settle(reference)

        response = client.get(f"/donate/paystack/callback?reference={reference}&trxref={reference}",
                              follow_redirects=False)

        assert response.status_code == 302
        assert response.headers["location"] == f"http://frontend.test/campaign/{campaign.slug}?donation=success"
        assert read_campaign(campaign.id).current_amount == Decimal("500")

    def test_redirect_alone_is_not_trusted(self, client, campaign, read_campaign, read_donation):
        reference = start_paystack(client, campaign)["reference"]

        response = client.get(f"/donate/paystack/callback?reference={reference}", follow_redirects=False)

        assert response.headers["location"] == "http://frontend.test/campaigns?donation=pending"
        assert read_donation(reference).status == DonationStatus.PENDING.value
        assert read_campaign(campaign.id).current_amount == Decimal("0")

    def test_paystack_failure(self, client, campaign, paystack_api, read_donation):
        reference = start_paystack(client, campaign)["reference"]
        paystack_api.settle(reference, status="abandoned", gateway_response="Customer cancelled")

        response = client.get(f"/donate/paystack/callback?reference={reference}", follow_redirects=False)

        assert response.headers["location"] == (
            "http://frontend.test/campaigns?error=payment_failed&message=Customer%20cancelled"
        )
        assert read_donation(reference).payment_id == f"FAILED-{reference}"

    def test_callback_then_webhook_counts_once(self, client, campaign, paystack_api, sign_paystack, read_campaign):
        reference = start_paystack(client, campaign)["reference"]
        paystack_api.settle(reference)
        body = paystack_event(reference, 50000)

        client.get(f"/donate/paystack/callback?reference={reference}", follow_redirects=False)
        webhook = client.post("/webhooks/paystack", content=body,
                              headers={"x-paystack-signature": sign_paystack(body)})

        assert webhook.json()["status"] == "duplicate"
        assert read_campaign(campaign.id).current_amount == Decimal("500")

    def test_missing_reference(self, client):
        response = client.get("/donate/paystack/callback", follow_redirects=False)

        assert response.headers["location"] == "http://frontend.test/campaigns?error=no_reference"

    def test_reference_unknown_to_gateway(self, client):
        response = client.get("/donate/paystack/callback?reference=DONATION-1-1-12345678", follow_redirects=False)

        assert response.headers["location"].startswith("http://frontend.test/campaigns?error=verification_failed")

    def test_stripe_success(self, client, campaign, stripe_checkout, read_campaign):
        started = client.post("/donate/stripe", json={"campaign_id": campaign.id, "amount": 1200}).json()
        stripe_checkout.pay(started["session_id"])

        response = client.get(f"/donate/stripe/callback?session_id={started['session_id']}", follow_redirects=False)

        assert response.headers["location"] == f"http://frontend.test/campaign/{campaign.slug}?donation=success"
        assert read_campaign(campaign.id).current_amount == Decimal("1200")

    def test_store_outage_redirects(self, client, campaign, ledger, monkeypatch):
        reference = start_paystack(client, campaign)["reference"]

        async def unavailable(provider, reference):
            raise TransientInfrastructureError("Database temporarily unavailable")

        monkeypatch.setattr(ledger.reconciliation, "handle_callback", unavailable)

        response = client.get(f"/donate/paystack/callback?reference={reference}", follow_redirects=False)

        assert response.status_code == 302
        assert response.headers["location"] == "http://frontend.test/campaigns?error=internal_error"
