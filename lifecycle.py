import asyncio
from datetime import date, datetime, timedelta
from typing import Awaitable, Callable, List, Optional

from logging_config import get_logger
from store import Room
from tzmath import local_date_start, utcnow

logger = get_logger(__name__)


def next_day(end_date: str) -> date:
    return date.fromisoformat(end_date) + timedelta(days=1)


def compute_expiry(end_date: str, time_zone: str) -> datetime:
    """Start of the local day after ``end_date``, in the room's own zone."""
    return local_date_start(time_zone, next_day(end_date))


def is_expired(room: Room, now: datetime) -> bool:
    return now >= room.expires_at


class ExpirySweeper:
    """Background task that expires rooms on a fixed interval.

    ``sweep`` expires rooms and returns the notices to send; ``deliver``
    pushes them out.
    """

    def __init__(self, sweep: Callable[[datetime], List[str]], deliver: Callable[[], Awaitable[None]],
                 interval: float = 60.0, clock: Callable[[], datetime] = utcnow):
        self.sweep = sweep
        self.deliver = deliver
        self.interval = interval
        self.clock = clock
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info(f"Expiry sweeper started (every {self.interval}s)")

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Expiry sweeper stopped")

    async def run_once(self) -> List[str]:
        expired = self.sweep(self.clock())
        await self.deliver()
        return expired

    async def _run(self):
        while True:
            await asyncio.sleep(self.interval)
            try:
                expired = await self.run_once()
                if expired:
                    logger.info(f"Sweep expired {len(expired)} room(s): {expired}")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Expiry sweep failed: {e}", exc_info=True)
