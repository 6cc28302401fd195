from datetime import timedelta

import pytest

from conftest import StubGateway, make_billing, make_wallet

from panel.core.errors import InsufficientFunds, WalletNotFound
from panel.models import BillingStatus, LedgerEntryType
from panel.repositories import ledger
from panel.repositories import wallets as wallet_repo
from panel.services.billing import auto_topup_idempotency_key, process_auto_topups, reactivate_owner_resources
from panel.services.payments import ChargeResult


def test_credit_and_debit_keep_balance_equal_to_ledger(db):
    wallet = make_wallet(db)
    wallet_repo.credit_wallet(db, wallet, 2500, description="Top-up", external_event_id="evt_1")
    wallet_repo.debit_wallet(db, wallet, 1000, description="Charge", idempotency_key="bill:1")
    db.commit()

    assert wallet.balance == 1500
    assert ledger.balance_from_entries(db, wallet.owner_id) == 1500


def test_replayed_external_event_is_a_no_op(db):
    wallet = make_wallet(db)
    first, applied_first = wallet_repo.credit_wallet(db, wallet, 2500, description="Top-up", external_event_id="evt_1")
    second, applied_second = wallet_repo.credit_wallet(db, wallet, 2500, description="Top-up", external_event_id="evt_1")
    db.commit()

    assert applied_first is True
    assert applied_second is False
    assert second.id == first.id
    assert wallet.balance == 2500


def test_replayed_idempotency_key_is_a_no_op(db):
    wallet = make_wallet(db, balance=0)
    wallet_repo.credit_wallet(db, wallet, 5000, description="Top-up", external_event_id="evt_1")
    wallet_repo.debit_wallet(db, wallet, 1000, description="Charge", idempotency_key="bill:101:x")
    _, applied = wallet_repo.debit_wallet(db, wallet, 1000, description="Charge", idempotency_key="bill:101:x")

    assert applied is False
    assert wallet.balance == 4000


def test_overdraw_is_rejected_without_entry(db):
    wallet = make_wallet(db)
    wallet_repo.credit_wallet(db, wallet, 999, description="Top-up", external_event_id="evt_1")

    with pytest.raises(InsufficientFunds) as excinfo:
        wallet_repo.debit_wallet(db, wallet, 1000, description="Charge", idempotency_key="bill:1")

    assert excinfo.value.required == 1000
    assert excinfo.value.available == 999
    assert wallet.balance == 999
    assert len(ledger.list_for_owner(db, wallet.owner_id)) == 1


def test_amounts_must_be_non_zero_integers(db):
    wallet = make_wallet(db)
    with pytest.raises(ValueError):
        wallet_repo.apply_entry(db, wallet, 0, LedgerEntryType.ADJUSTMENT, description="noop")
    with pytest.raises(TypeError):
        wallet_repo.apply_entry(db, wallet, 10.5, LedgerEntryType.ADJUSTMENT, description="float")
    with pytest.raises(ValueError):
        wallet_repo.credit_wallet(db, wallet, -5, description="negative credit")


def test_get_or_create_wallet_is_idempotent(db):
    first = wallet_repo.get_or_create_wallet(db, "auth0|bob", payment_customer_id="cus_1")
    second = wallet_repo.get_or_create_wallet(db, "auth0|bob")
    db.commit()

    assert first.id == second.id
    assert second.balance == 0


def test_soft_delete_freezes_wallet(db, now):
    wallet = make_wallet(db, auto_topup_enabled=True)

    wallet_repo.soft_delete_wallet(db, wallet.owner_id, now)
    db.commit()

    assert wallet.is_deleted
    assert wallet.auto_topup_enabled is False
    assert wallet.owner_id not in wallet_repo.active_owner_ids(db)


def test_soft_delete_unknown_wallet(db, now):
    with pytest.raises(WalletNotFound):
        wallet_repo.soft_delete_wallet(db, "auth0|ghost", now)


def _topup_wallet(db, **overrides):
    values = {
        "balance": 100,
        "payment_customer_id": "cus_1",
        "auto_topup_enabled": True,
        "auto_topup_threshold": 500,
        "auto_topup_amount": 2000,
        "auto_topup_payment_method_id": "pm_1",
    }
    values.update(overrides)
    return make_wallet(db, **values)


def test_auto_topup_credits_wallet(db, session_factory, gateway, now):
    wallet = _topup_wallet(db)

    summary = process_auto_topups(session_factory, gateway, now=now)

    assert summary.credited == 1
    assert gateway.charges[0]["amount"] == 2000
    assert gateway.charges[0]["currency"] == "aud"
    assert gateway.charges[0]["idempotency_key"] == auto_topup_idempotency_key(wallet.owner_id, 0, now)
    db.refresh(wallet)
    assert wallet.balance == 2100
    entry = ledger.list_for_owner(db, wallet.owner_id)[0]
    assert entry.entry_type == LedgerEntryType.AUTO_TOPUP
    assert entry.external_event_id == "pi_1"


def test_auto_topup_skips_wallet_above_threshold(db, session_factory, gateway, now):
    _topup_wallet(db, balance=501)

    summary = process_auto_topups(session_factory, gateway, now=now)

    assert summary.checked == 0
    assert gateway.charges == []


def test_auto_topup_skips_frozen_wallet(db, session_factory, gateway, now):
    _topup_wallet(db, deleted_at=now - timedelta(days=1))

    process_auto_topups(session_factory, gateway, now=now)

    assert gateway.charges == []


def test_auto_topup_decline_leaves_wallet_unchanged(db, session_factory, now):
    wallet = _topup_wallet(db)
    gateway = StubGateway(ChargeResult(False, status="declined", message="Your card was declined."))

    summary = process_auto_topups(session_factory, gateway, now=now)

    assert summary.declined == 1
    db.refresh(wallet)
    assert wallet.balance == 100


def test_auto_topup_same_payment_is_not_credited_twice(db, session_factory, now):
    wallet = _topup_wallet(db)
    gateway = StubGateway(ChargeResult(True, payment_id="pi_same", status="succeeded"))

    process_auto_topups(session_factory, gateway, now=now)
    db.refresh(wallet)
    wallet_repo.debit_wallet(db, wallet, 2000, description="Charge", idempotency_key="bill:x")
    db.commit()
    process_auto_topups(session_factory, gateway, now=now)

    db.refresh(wallet)
    assert wallet.balance == 100
    assert len(gateway.charges) == 2


def test_auto_topup_reactivates_suspended_server(db, session_factory, gateway, hypervisor, now):
    _topup_wallet(db)
    record = make_billing(
        db,
        price=1500,
        status=BillingStatus.SUSPENDED,
        next_charge_at=now - timedelta(days=6),
        suspend_at=now - timedelta(days=1),
        overdue_since=now - timedelta(days=6),
    )

    process_auto_topups(session_factory, gateway, hypervisor, now=now)

    db.refresh(record)
    assert record.status == BillingStatus.PAID
    assert record.overdue_since is None
    assert hypervisor.named("unsuspend") == [("unsuspend", "101")]


def test_reactivation_without_funds_keeps_server_suspended(db, session_factory, hypervisor, now):
    make_wallet(db, balance=100)
    record = make_billing(
        db,
        price=1500,
        status=BillingStatus.SUSPENDED,
        next_charge_at=now - timedelta(days=6),
        overdue_since=now - timedelta(days=6),
    )

    reactivated = reactivate_owner_resources(session_factory, "auth0|alice", hypervisor, now)

    assert reactivated == 0
    db.refresh(record)
    assert record.status == BillingStatus.SUSPENDED
    assert hypervisor.calls == []
