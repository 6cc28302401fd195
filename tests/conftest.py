import hashlib
import hmac
import os
import time
from datetime import datetime, timezone


def _set_test_env() -> None:
    defaults = {
        "APP_NAME": "Panel Billing Test",
        "ENVIRONMENT": "test",
        "ADMIN_API_TOKEN": "test-admin-token",
        "AUTO_CREATE_TABLES": "false",
        "SCHEDULER_ENABLED": "false",
        "DATABASE_URL": "sqlite://",
        "VIRTFUSION_PANEL_URL": "https://panel.example.com",
        "VIRTFUSION_API_TOKEN": "vf_test_token",
        "VIRTFUSION_RETRY_COUNT": "2",
        "AUTH0_DOMAIN": "tenant.example.auth0.com",
        "AUTH0_CLIENT_ID": "auth0_client",
        "AUTH0_CLIENT_SECRET": "auth0_secret",
        "STRIPE_SECRET_KEY": "sk_test_xxx",
        "STRIPE_WEBHOOK_SECRET": "whsec_test_xxx",
        "ORPHAN_CHECK_DELAY_SECONDS": "0",
    }
    for key, value in defaults.items():
        os.environ.setdefault(key, value)


_set_test_env()

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from panel.core.database import Base  # noqa: E402
from panel.models import BillingStatus, ResourceBilling, Wallet  # noqa: E402
from panel.services.payments import ChargeResult  # noqa: E402
from panel.services.virtfusion import HypervisorUser, VirtFusionApiError  # noqa: E402

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


def make_wallet(db, owner_id="auth0|alice", balance=0, **kwargs) -> Wallet:
    wallet = Wallet(owner_id=owner_id, balance=balance, **kwargs)
    db.add(wallet)
    db.commit()
    return wallet


def make_billing(db, *, owner_id="auth0|alice", resource_id="101", price=1000, next_charge_at=NOW, **kwargs) -> ResourceBilling:
    values = {"status": BillingStatus.ACTIVE, "auto_renew": True, "plan_id": 1}
    values.update(kwargs)
    record = ResourceBilling(
        owner_id=owner_id,
        resource_id=resource_id,
        monthly_price=price,
        next_charge_at=next_charge_at,
        **values,
    )
    db.add(record)
    db.commit()
    return record


class StubHypervisor:
    def __init__(self):
        self.calls = []
        self.errors = {}
        self.missing_servers = set()
        self.users = []
        self.page_size = 2

    def _maybe_fail(self, name, key):
        error = self.errors.get((name, key)) or self.errors.get(name)
        if error:
            raise error

    def suspend_server(self, server_id):
        self.calls.append(("suspend", server_id))
        self._maybe_fail("suspend", server_id)

    def unsuspend_server(self, server_id):
        self.calls.append(("unsuspend", server_id))
        self._maybe_fail("unsuspend", server_id)

    def delete_server(self, server_id):
        self.calls.append(("delete_server", server_id))
        self._maybe_fail("delete_server", server_id)
        return server_id not in self.missing_servers

    def list_users(self, page=1, page_size=None):
        self.calls.append(("list_users", page))
        self._maybe_fail("list_users", page)
        start = (page - 1) * self.page_size
        batch = self.users[start:start + self.page_size]
        return batch, start + self.page_size < len(self.users)

    def delete_user(self, user_id, *, delete_servers=True):
        self.calls.append(("delete_user", user_id))
        self._maybe_fail("delete_user", user_id)
        return 1

    def named(self, name):
        return [call for call in self.calls if call[0] == name]


class StubIdentity:
    def __init__(self, existing=(), errors=None):
        self.existing = set(existing)
        self.errors = errors or {}
        self.checked = []

    def user_exists(self, owner_id):
        self.checked.append(owner_id)
        if owner_id in self.errors:
            raise self.errors[owner_id]
        return owner_id in self.existing

    def is_identity_reference(self, value):
        return bool(value) and str(value).startswith("auth0|")


class StubGateway:
    def __init__(self, result=None):
        self.result = result
        self.charges = []
        self.deleted_customers = []

    def charge(self, customer_id, payment_method_id, amount, currency, *, idempotency_key=None, metadata=None, description="Auto top-up"):
        self.charges.append(
            {
                "customer_id": customer_id,
                "payment_method_id": payment_method_id,
                "amount": amount,
                "currency": currency,
                "idempotency_key": idempotency_key,
            }
        )
        if self.result is not None:
            return self.result
        return ChargeResult(True, payment_id=f"pi_{len(self.charges)}", status="succeeded")

    def delete_customer(self, customer_id):
        self.deleted_customers.append(customer_id)
        return True


@pytest.fixture
def hypervisor():
    return StubHypervisor()


@pytest.fixture
def identity():
    return StubIdentity()


@pytest.fixture
def gateway():
    return StubGateway()


def hypervisor_user(user_id, ext_relation_id):
    return HypervisorUser(id=user_id, ext_relation_id=ext_relation_id)


def api_error(status_code, message="error"):
    return VirtFusionApiError(message, status_code=status_code)


def stripe_signature(body: bytes, secret: str = "whsec_test_xxx", timestamp: int | None = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.".encode() + body
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def topup_event(event_id="evt_1", *, owner_id="auth0|alice", customer="cus_1", amount=2000, currency="aud", status="paid", kind="wallet_topup"):
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": "cs_test_1",
                "customer": customer,
                "amount_total": amount,
                "currency": currency,
                "payment_status": status,
                "payment_intent": "pi_test_1",
                "metadata": {"type": kind, "owner_id": owner_id},
            }
        },
    }
