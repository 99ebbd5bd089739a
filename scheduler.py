import logging
from datetime import datetime, timezone

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from chatbot import PendingSelectionStore
from config import get_settings


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self, store: PendingSelectionStore) -> None:
        settings = get_settings()
        self.store = store
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _sweep(self, source: str = "manual") -> int:
        removed = self.store.sweep_expired(datetime.now(timezone.utc))
        if removed:
            logger.info(f"pending_selection_sweep: source={source} removed={removed}")
        return removed

    def start(self) -> None:
        self._sweep("startup")

        self.scheduler.add_job(
            self._sweep,
            IntervalTrigger(minutes=1),
            args=["interval"],
            id="pending_selection_sweep",
            replace_existing=True,
            misfire_grace_time=60,
        )

        self.scheduler.start()
        logger.info("Scheduler started with a one-minute pending selection sweep")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
