import asyncio
import os
from typing import Callable, Optional

from enquirybot.config import settings
from enquirybot.database import SessionLocal
from enquirybot.logging_config import get_logger
from enquirybot.services.events import EventPublisher
from enquirybot.services.followup_service import run_follow_up_sweep
from enquirybot.services.whatsapp_service import WhatsAppClient
from enquirybot.timeutils import utcnow

logger = get_logger("scheduler")


def is_scheduler_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return settings.scheduler_enabled


class FollowUpScheduler:
    """Fires a follow-up sweep every interval; each tick runs as its own task."""

    def __init__(
        self,
        client: WhatsAppClient,
        publisher: EventPublisher,
        *,
        interval_seconds: Optional[float] = None,
        initial_delay_seconds: Optional[float] = None,
        session_factory: Callable = SessionLocal,
        now_func: Callable = utcnow,
    ):
        self.client = client
        self.publisher = publisher
        self.interval_seconds = max(
            interval_seconds if interval_seconds is not None else settings.scheduler_interval_seconds, 0.1
        )
        self.initial_delay_seconds = (
            initial_delay_seconds if initial_delay_seconds is not None else settings.scheduler_initial_delay_seconds
        )
        self.session_factory = session_factory
        self.now_func = now_func
        self._task: asyncio.Task | None = None
        self._ticks: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info(
            "Follow-up scheduler started",
            extra={"context": {"interval_seconds": self.interval_seconds}},
        )

    async def stop(self) -> None:
        tasks = list(self._ticks)
        if self._task is not None:
            tasks.append(self._task)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._task = None
        self._ticks.clear()

    async def _loop(self) -> None:
        try:
            await asyncio.sleep(self.initial_delay_seconds)
            while True:
                tick = asyncio.create_task(self.run_once())
                self._ticks.add(tick)
                tick.add_done_callback(self._ticks.discard)
                await asyncio.sleep(self.interval_seconds)
        except asyncio.CancelledError:
            return

    async def run_once(self) -> dict:
        db = self.session_factory()
        try:
            return await run_follow_up_sweep(db, self.client, self.publisher, self.now_func())
        except Exception as exc:
            logger.error("Follow-up sweep failed", extra={"context": {"error": str(exc)}}, exc_info=True)
            return {}
        finally:
            db.close()
