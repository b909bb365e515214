import logging
from typing import Callable, ContextManager

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session

from config import get_settings
from database import session_scope
from services import AccountService


logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(
        self, scope: Callable[[], ContextManager[Session]] = session_scope
    ) -> None:
        settings = get_settings()
        self.scope = scope
        self.interval_minutes = settings.audit_interval_minutes
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def run_audit(self, source: str = "manual") -> int:
        logger.info(f"ledger_audit: source={source}")
        with self.scope() as session:
            audits = AccountService(session).audit_all()
        mismatches = sum(1 for item in audits if not item.consistent)
        logger.info(
            f"ledger_audit: source={source} accounts={len(audits)} "
            f"mismatches={mismatches}"
        )
        return mismatches

    def start(self) -> None:
        self.run_audit("startup")

        trigger = IntervalTrigger(minutes=self.interval_minutes)
        self.scheduler.add_job(
            self.run_audit,
            trigger,
            args=["interval"],
            id="ledger_audit",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with ledger audit every {self.interval_minutes} minutes"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
