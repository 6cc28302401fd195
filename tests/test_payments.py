import json

import pytest
import stripe

from conftest import make_wallet, stripe_signature, topup_event

from panel.models import LedgerEntryType
from panel.repositories import ledger
from panel.services.payments import PaymentGatewayError, StripeGateway, handle_payment_event, verify_webhook


class FakeIntent:
    def __init__(self, intent_id, status):
        self.id = intent_id
        self.status = status


def test_charge_succeeds(monkeypatch):
    captured = {}

    def create(**kwargs):
        captured.update(kwargs)
        return FakeIntent("pi_123", "succeeded")

    monkeypatch.setattr(stripe.PaymentIntent, "create", create)

    result = StripeGateway().charge("cus_1", "pm_1", 2000, "aud", idempotency_key="autotopup:x")

    assert result.succeeded is True
    assert result.payment_id == "pi_123"
    assert captured["off_session"] is True
    assert captured["confirm"] is True
    assert captured["idempotency_key"] == "autotopup:x"
    assert captured["api_key"] == "sk_test_xxx"


def test_charge_requiring_action_is_not_success(monkeypatch):
    monkeypatch.setattr(stripe.PaymentIntent, "create", lambda **kwargs: FakeIntent("pi_1", "requires_action"))

    result = StripeGateway().charge("cus_1", "pm_1", 2000, "aud")

    assert result.succeeded is False
    assert result.status == "requires_action"


def test_card_decline_is_a_result(monkeypatch):
    def create(**kwargs):
        raise stripe.CardError("Your card was declined.", None, "card_declined")

    monkeypatch.setattr(stripe.PaymentIntent, "create", create)

    result = StripeGateway().charge("cus_1", "pm_1", 2000, "aud")

    assert result.succeeded is False
    assert result.status == "declined"


def test_gateway_outage_raises(monkeypatch):
    def create(**kwargs):
        raise stripe.APIConnectionError("connection reset")

    monkeypatch.setattr(stripe.PaymentIntent, "create", create)

    with pytest.raises(PaymentGatewayError):
        StripeGateway().charge("cus_1", "pm_1", 2000, "aud")


def test_delete_missing_customer_returns_false(monkeypatch):
    def delete(customer_id, **kwargs):
        raise stripe.InvalidRequestError("No such customer", "id", code="resource_missing")

    monkeypatch.setattr(stripe.Customer, "delete", delete)

    assert StripeGateway().delete_customer("cus_gone") is False


def test_verify_webhook_accepts_valid_signature():
    body = json.dumps(topup_event()).encode()
    verify_webhook(body, stripe_signature(body))


def test_verify_webhook_rejects_bad_signature():
    body = json.dumps(topup_event()).encode()
    with pytest.raises(PaymentGatewayError):
        verify_webhook(body, stripe_signature(body, secret="whsec_other"))


def test_topup_event_credits_wallet(db):
    wallet = make_wallet(db, payment_customer_id="cus_1")

    owner_id = handle_payment_event(db, topup_event())
    db.commit()

    assert owner_id == "auth0|alice"
    assert wallet.balance == 2000
    entry = ledger.find_by_external_event(db, "evt_1")
    assert entry.entry_type == LedgerEntryType.CREDIT
    assert entry.amount == 2000


def test_replayed_event_credits_once(db):
    wallet = make_wallet(db, payment_customer_id="cus_1")

    handle_payment_event(db, topup_event())
    handle_payment_event(db, topup_event())
    db.commit()

    assert wallet.balance == 2000
    assert len(ledger.list_for_owner(db, "auth0|alice")) == 1


@pytest.mark.parametrize(
    "overrides",
    [
        {"customer": "cus_someone_else"},
        {"currency": "usd"},
        {"amount": 499},
        {"amount": 50001},
        {"status": "unpaid"},
        {"kind": "server_order"},
        {"owner_id": "auth0|nobody"},
    ],
)
def test_invalid_topup_is_ignored(db, overrides):
    wallet = make_wallet(db, payment_customer_id="cus_1")

    assert handle_payment_event(db, topup_event(**overrides)) is None
    db.commit()

    assert wallet.balance == 0
    assert ledger.list_for_owner(db, "auth0|alice") == []


def test_frozen_wallet_is_not_credited(db, now):
    wallet = make_wallet(db, payment_customer_id="cus_1", deleted_at=now)

    assert handle_payment_event(db, topup_event()) is None
    assert wallet.balance == 0


def test_other_event_types_are_ignored(db):
    event = topup_event()
    event["type"] = "payment_intent.created"

    assert handle_payment_event(db, event) is None
