from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from conftest import api_error, make_billing

from panel.core.errors import CancellationAlreadyPending, CancellationNotFound, CancellationNotRevocable
from panel.models import BillingStatus, CancellationMode, CancellationRequest, CancellationStatus
from panel.services.cancellation import request_cancellation, revoke_cancellation, run_cancellation_scheduler


def _request(db, now, mode=CancellationMode.GRACE, resource_id="101"):
    return request_cancellation(db, owner_id="auth0|alice", resource_id=resource_id, mode=mode, reason="No longer needed", now=now)


def test_grace_request_schedules_thirty_days_out(db, now):
    request = _request(db, now)

    assert request.status == CancellationStatus.PENDING
    assert request.scheduled_deletion_at == now + timedelta(days=30)
    assert request.is_revocable


def test_immediate_request_schedules_five_minutes_out(db, now):
    request = _request(db, now, mode=CancellationMode.IMMEDIATE)

    assert request.scheduled_deletion_at == now + timedelta(minutes=5)
    assert not request.is_revocable


def test_second_pending_request_is_rejected(db, now):
    _request(db, now)

    with pytest.raises(CancellationAlreadyPending):
        _request(db, now, mode=CancellationMode.IMMEDIATE)


def test_pending_index_rejects_duplicate_rows(db, now):
    for _ in range(2):
        db.add(
            CancellationRequest(
                owner_id="auth0|alice",
                resource_id="101",
                mode=CancellationMode.GRACE,
                status=CancellationStatus.PENDING,
                requested_at=now,
                scheduled_deletion_at=now + timedelta(days=30),
            )
        )
    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()


def test_revoked_request_allows_a_new_one(db, now):
    first = _request(db, now)
    revoke_cancellation(db, first.id, now + timedelta(days=1))

    second = _request(db, now + timedelta(days=2))

    assert second.id != first.id
    assert second.status == CancellationStatus.PENDING


def test_revoke_grace_before_deadline(db, now):
    request = _request(db, now)

    revoked = revoke_cancellation(db, request.id, now + timedelta(days=29))

    assert revoked.status == CancellationStatus.REVOKED
    assert revoked.revoked_at == now + timedelta(days=29)


def test_revoke_immediate_is_rejected(db, now):
    request = _request(db, now, mode=CancellationMode.IMMEDIATE)

    with pytest.raises(CancellationNotRevocable):
        revoke_cancellation(db, request.id, now + timedelta(minutes=1))


def test_revoke_after_deadline_is_rejected(db, now):
    request = _request(db, now)

    with pytest.raises(CancellationNotRevocable):
        revoke_cancellation(db, request.id, now + timedelta(days=30))


def test_revoke_twice_is_rejected(db, now):
    request = _request(db, now)
    revoke_cancellation(db, request.id, now + timedelta(days=1))

    with pytest.raises(CancellationNotRevocable):
        revoke_cancellation(db, request.id, now + timedelta(days=2))


def test_revoke_unknown_request(db, now):
    with pytest.raises(CancellationNotFound):
        revoke_cancellation(db, 9999, now)


def test_due_request_deletes_server_and_closes_billing(db, session_factory, hypervisor, now):
    record = make_billing(db, price=1000, next_charge_at=now + timedelta(days=10))
    request = _request(db, now, mode=CancellationMode.IMMEDIATE)
    later = now + timedelta(minutes=5)

    summary = run_cancellation_scheduler(session_factory, hypervisor, later)

    assert summary.completed == 1
    assert hypervisor.named("delete_server") == [("delete_server", "101")]
    db.refresh(request)
    db.refresh(record)
    assert request.status == CancellationStatus.COMPLETED
    assert request.completed_at == later
    assert record.status == BillingStatus.CANCELLED


def test_request_not_yet_due_is_untouched(db, session_factory, hypervisor, now):
    _request(db, now)

    summary = run_cancellation_scheduler(session_factory, hypervisor, now + timedelta(days=29))

    assert summary.due == 0
    assert hypervisor.calls == []


def test_server_already_gone_completes(db, session_factory, hypervisor, now):
    request = _request(db, now, mode=CancellationMode.IMMEDIATE)
    hypervisor.missing_servers.add("101")

    run_cancellation_scheduler(session_factory, hypervisor, now + timedelta(minutes=10))

    db.refresh(request)
    assert request.status == CancellationStatus.COMPLETED


def test_transient_error_stays_pending(db, session_factory, hypervisor, now):
    request = _request(db, now, mode=CancellationMode.IMMEDIATE)
    hypervisor.errors["delete_server"] = api_error(502, "Bad gateway")

    summary = run_cancellation_scheduler(session_factory, hypervisor, now + timedelta(minutes=10))

    assert summary.deferred == 1
    db.refresh(request)
    assert request.status == CancellationStatus.PENDING


def test_permanent_error_marks_failed_and_is_not_retried(db, session_factory, hypervisor, now):
    request = _request(db, now, mode=CancellationMode.IMMEDIATE)
    hypervisor.errors["delete_server"] = api_error(422, "Server is locked")

    first = run_cancellation_scheduler(session_factory, hypervisor, now + timedelta(minutes=10))
    second = run_cancellation_scheduler(session_factory, hypervisor, now + timedelta(minutes=20))

    assert first.failed == 1
    assert second.due == 0
    assert len(hypervisor.named("delete_server")) == 1
    db.refresh(request)
    assert request.status == CancellationStatus.FAILED
    assert request.error_message == "Server is locked"


def test_revoked_request_is_never_deleted(db, session_factory, hypervisor, now):
    request = _request(db, now)
    revoke_cancellation(db, request.id, now + timedelta(days=1))

    run_cancellation_scheduler(session_factory, hypervisor, now + timedelta(days=31))

    assert hypervisor.calls == []
