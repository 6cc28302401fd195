"""Background tickers for the billing and lifecycle engines.

Each engine runs as one APScheduler interval job. ``max_instances=1`` with
``coalesce=True`` keeps a job single-flight: a tick that comes due while the
previous one is still running is skipped, and missed ticks collapse into one.
Only one replica per deployment should run this (``SCHEDULER_ENABLED``).
"""
import logging
import time
from datetime import datetime, timedelta, timezone

from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.exc import SQLAlchemyError

from panel.core.config import get_settings
from panel.core.database import SessionLocal
from panel.services.auth0 import Auth0Client
from panel.services.billing import process_auto_topups, run_billing_cycle
from panel.services.cancellation import run_cancellation_scheduler
from panel.services.orphans import run_orphan_sweep
from panel.services.payments import StripeGateway
from panel.services.suspension import run_suspension_escalator
from panel.services.virtfusion import VirtFusionClient
from panel.utils.cache import TTLCache

settings = get_settings()
logger = logging.getLogger(__name__)

JOB_DEFAULTS = {"max_instances": 1, "coalesce": True, "misfire_grace_time": 60}


def run_tick(name: str, func, *args, **kwargs):
    """Run one engine pass, logging instead of raising so the ticker keeps going."""
    started = time.monotonic()
    try:
        result = func(*args, **kwargs)
    except SQLAlchemyError as exc:
        logger.error("%s tick aborted, database unavailable: %s", name, exc)
        return None
    except Exception:
        logger.exception("%s tick failed", name)
        return None
    logger.debug("%s tick finished in %.2fs", name, time.monotonic() - started)
    return result


class LifecycleScheduler:
    def __init__(
        self,
        session_factory=None,
        *,
        hypervisor=None,
        identity=None,
        gateway=None,
        cache: TTLCache | None = None,
        scheduler=None,
    ):
        self.session_factory = session_factory or SessionLocal
        self.cache = cache if cache is not None else TTLCache(settings.auth0_exists_cache_ttl_seconds)
        self.hypervisor = hypervisor or VirtFusionClient()
        self.identity = identity or Auth0Client(self.cache)
        self.gateway = gateway or StripeGateway()
        self.scheduler = scheduler or BackgroundScheduler(timezone=timezone.utc, job_defaults=JOB_DEFAULTS)
        self._configured = False

    def billing_tick(self):
        run_tick("billing", run_billing_cycle, self.session_factory)
        run_tick("auto-topup", process_auto_topups, self.session_factory, self.gateway, self.hypervisor)

    def escalator_tick(self):
        run_tick("suspension", run_suspension_escalator, self.session_factory, self.hypervisor)

    def cancellation_tick(self):
        run_tick("cancellation", run_cancellation_scheduler, self.session_factory, self.hypervisor)

    def orphan_tick(self):
        run_tick(
            "orphan-sweep",
            run_orphan_sweep,
            self.session_factory,
            self.identity,
            self.hypervisor,
            self.gateway,
        )

    def cache_tick(self):
        evicted = self.cache.evict_expired()
        if evicted:
            logger.debug("Evicted %s expired identity cache entries", evicted)

    def configure(self) -> None:
        if self._configured:
            return
        self.scheduler.add_job(
            self.billing_tick,
            "interval",
            seconds=settings.billing_interval_seconds,
            id="billing_cycle",
            name="Billing cycle and auto top-up",
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.escalator_tick,
            "interval",
            seconds=settings.billing_interval_seconds,
            id="suspension_escalator",
            name="Suspension escalator",
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.cancellation_tick,
            "interval",
            seconds=settings.cancellation_interval_seconds,
            id="cancellation_scheduler",
            name="Cancellation scheduler",
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.orphan_tick,
            "interval",
            seconds=settings.orphan_sweep_interval_seconds,
            next_run_time=datetime.now(timezone.utc) + timedelta(seconds=settings.orphan_sweep_initial_delay_seconds),
            id="orphan_sweep",
            name="Orphan reconciliation sweep",
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.cache_tick,
            "interval",
            seconds=settings.cache_eviction_interval_seconds,
            id="identity_cache_eviction",
            name="Identity cache eviction",
            replace_existing=True,
        )
        self._configured = True

    def start(self) -> None:
        self.configure()
        self.scheduler.start()
        logger.info("Lifecycle scheduler started with %s jobs", len(self.scheduler.get_jobs()))

    @property
    def running(self) -> bool:
        return bool(self.scheduler.running)

    def job_status(self) -> dict:
        """Next run time per job id, ``None`` for a paused job."""
        status = {}
        for job in self.scheduler.get_jobs():
            next_run = getattr(job, "next_run_time", None)
            status[job.id] = next_run.isoformat() if next_run else None
        return status

    def shutdown(self, wait: bool = True) -> None:
        if not self.scheduler.running:
            return
        # wait=True lets an in-flight tick finish before the process exits.
        self.scheduler.shutdown(wait=wait)
        logger.info("Lifecycle scheduler stopped")
