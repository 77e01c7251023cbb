import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from custody.core.config import Settings
from custody.services import staking
from custody.services.reconciliation import DepositReconciler

logger = logging.getLogger(__name__)


class CustodyScheduler:
    """Runs deposit reconciliation and staking accrual on fixed intervals.

    Both jobs use ``max_instances=1`` and ``coalesce=True``: a cycle that
    overruns its interval is never run concurrently with the next one, and
    missed ticks collapse into a single run.
    """

    def __init__(self, session_factory, reconciler: DepositReconciler, settings: Settings):
        self.session_factory = session_factory
        self.reconciler = reconciler
        self.settings = settings
        self.scheduler = BackgroundScheduler(
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 60},
            timezone="UTC",
        )

    def run_reconciliation(self):
        return self.reconciler.run_cycle()

    def run_staking_accrual(self):
        return staking.accrue_all(self.session_factory)

    def setup_jobs(self) -> None:
        self.scheduler.add_job(
            self.run_reconciliation,
            trigger=IntervalTrigger(seconds=max(1, int(self.settings.reconcile_interval_seconds))),
            id="deposit_reconciliation",
            name="Deposit reconciliation",
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.run_staking_accrual,
            trigger=IntervalTrigger(seconds=max(1, int(self.settings.staking_accrual_interval_seconds))),
            id="staking_accrual",
            name="Staking reward accrual",
            replace_existing=True,
        )

    def start(self) -> None:
        if self.scheduler.running:
            return
        self.setup_jobs()
        self.scheduler.start()
        logger.info(
            "Scheduler started: reconciliation every %ss, staking accrual every %ss",
            self.settings.reconcile_interval_seconds,
            self.settings.staking_accrual_interval_seconds,
        )

    def shutdown(self, wait: bool = True) -> None:
        if not self.scheduler.running:
            return
        # Let a running cycle finish the allocation it holds, then abandon the rest.
        self.reconciler.stop()
        self.scheduler.shutdown(wait=wait)
        logger.info("Scheduler stopped")
