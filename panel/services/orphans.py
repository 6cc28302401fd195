"""Orphan reconciliation sweep.

Removes local and hypervisor state for accounts whose identity no longer
exists at the identity provider. Only a definitive "not found" counts as
gone; any other identity-provider failure leaves the account alone until
the next sweep.
"""
import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime

from sqlalchemy.orm import sessionmaker

from panel.core.config import get_settings
from panel.models import BillingStatus
from panel.models.base import utcnow
from panel.repositories import billing as billing_repo
from panel.repositories import orders as order_repo
from panel.repositories import wallets as wallet_repo
from panel.services.auth0 import IdentityProviderError

settings = get_settings()
logger = logging.getLogger(__name__)


@dataclass
class SweepSummary:
    wallets_checked: int = 0
    accounts_removed: int = 0
    orders_cancelled: int = 0
    hypervisor_users_checked: int = 0
    hypervisor_users_removed: int = 0
    servers_deleted: int = 0
    skipped_unrecognised: int = 0
    errors: int = 0

    def as_dict(self) -> dict:
        return asdict(self)


def _remove_local_account(session_factory: sessionmaker, owner_id: str, now: datetime) -> int:
    db = session_factory()
    try:
        wallet_repo.soft_delete_wallet(db, owner_id, now)
        cancelled = order_repo.cancel_pending_orders(db, owner_id)
        for record in billing_repo.list_for_owner(db, owner_id):
            if record.status != BillingStatus.CANCELLED:
                billing_repo.mark_cancelled(record)
        db.commit()
        return cancelled
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def _sweep_wallets(session_factory, identity, hypervisor, gateway, now, sleep, summary: SweepSummary) -> None:
    db = session_factory()
    try:
        accounts = [
            (wallet.owner_id, wallet.payment_customer_id, wallet.hypervisor_user_id)
            for wallet in wallet_repo.list_active_wallets(db)
        ]
    finally:
        db.close()

    for index, (owner_id, customer_id, hypervisor_user_id) in enumerate(accounts):
        if index:
            sleep(settings.orphan_check_delay_seconds)
        summary.wallets_checked += 1
        try:
            if identity.user_exists(owner_id):
                continue
        except IdentityProviderError as exc:
            logger.warning("Could not verify identity %s, skipping: %s", owner_id, exc.message)
            summary.errors += 1
            continue

        logger.info("Identity %s no longer exists; removing account", owner_id)
        try:
            if customer_id:
                gateway.delete_customer(customer_id)
            summary.orders_cancelled += _remove_local_account(session_factory, owner_id, now)
        except Exception:
            logger.exception("Failed to remove account for %s", owner_id)
            summary.errors += 1
            continue
        summary.accounts_removed += 1

        if hypervisor_user_id is None:
            continue
        try:
            summary.servers_deleted += hypervisor.delete_user(hypervisor_user_id, delete_servers=True)
            summary.hypervisor_users_removed += 1
        except Exception:
            # The hypervisor user now has no active wallet, so the next sweep retries it.
            logger.exception("Failed to delete hypervisor user %s for %s", hypervisor_user_id, owner_id)
            summary.errors += 1


def _collect_hypervisor_users(hypervisor) -> list:
    users = []
    page = 1
    while True:
        batch, has_more = hypervisor.list_users(page)
        users.extend(batch)
        if not has_more or not batch:
            return users
        page += 1


def _sweep_hypervisor_users(session_factory, identity, hypervisor, sleep, summary: SweepSummary) -> None:
    try:
        # Collect every page before deleting so removals do not shift later pages.
        users = _collect_hypervisor_users(hypervisor)
    except Exception:
        logger.exception("Could not list hypervisor users; skipping hypervisor sweep")
        summary.errors += 1
        return

    db = session_factory()
    try:
        active_owners = wallet_repo.active_owner_ids(db)
    finally:
        db.close()

    checked = 0
    for user in users:
        ext_relation_id = user.ext_relation_id
        if not identity.is_identity_reference(ext_relation_id):
            summary.skipped_unrecognised += 1
            continue
        if ext_relation_id in active_owners:
            continue

        if checked:
            sleep(settings.orphan_check_delay_seconds)
        checked += 1
        summary.hypervisor_users_checked += 1
        try:
            if identity.user_exists(ext_relation_id):
                continue
        except IdentityProviderError as exc:
            logger.warning("Could not verify identity %s for hypervisor user %s: %s", ext_relation_id, user.id, exc.message)
            summary.errors += 1
            continue

        try:
            summary.servers_deleted += hypervisor.delete_user(user.id, delete_servers=True)
        except Exception:
            logger.exception("Failed to delete orphaned hypervisor user %s", user.id)
            summary.errors += 1
            continue
        summary.hypervisor_users_removed += 1
        logger.info("Deleted orphaned hypervisor user %s (%s)", user.id, ext_relation_id)


def run_orphan_sweep(
    session_factory: sessionmaker,
    identity,
    hypervisor,
    gateway,
    now: datetime | None = None,
    sleep=time.sleep,
) -> SweepSummary:
    now = now or utcnow()
    summary = SweepSummary()
    logger.info("Starting orphan sweep")

    _sweep_wallets(session_factory, identity, hypervisor, gateway, now, sleep, summary)
    _sweep_hypervisor_users(session_factory, identity, hypervisor, sleep, summary)

    logger.info("Orphan sweep completed: %s", summary.as_dict())
    return summary
