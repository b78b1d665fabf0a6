import asyncio
import uuid
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel

from packages.integration.domain import as_naive_utc, utcnow
from packages.integration.logs import get_logger

logger = get_logger("reminders")


class Reminder(BaseModel):
    id: str
    event_id: str
    fire_at: datetime


class ReminderScheduler:
    """Delayed per-event actions whose handles live next to the event id.

    ``cancel(event_id)`` drops every pending reminder of that event, so
    deleting an event never leaves a send behind.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self._tasks: Dict[str, Dict[str, asyncio.Task]] = {}
        self._reminders: Dict[str, Reminder] = {}

    def schedule(self, event_id: str, fire_at: datetime, action: Callable[[], Awaitable[None]]) -> Reminder:
        reminder = Reminder(id=str(uuid.uuid4()), event_id=event_id, fire_at=as_naive_utc(fire_at))
        task = asyncio.get_running_loop().create_task(self._fire(reminder, action), name=f"reminder-{reminder.id}")
        self._tasks.setdefault(event_id, {})[reminder.id] = task
        self._reminders[reminder.id] = reminder
        return reminder

    async def _fire(self, reminder: Reminder, action):
        try:
            delay = (reminder.fire_at - self.clock()).total_seconds()
            if delay > 0:
                await asyncio.sleep(delay)
            await action()
            logger.info("reminder fired", extra={"event_id": reminder.event_id, "reminder_id": reminder.id})
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("reminder failed", extra={"event_id": reminder.event_id, "reminder_id": reminder.id})
        finally:
            self._forget(reminder)

    def _forget(self, reminder: Reminder) -> None:
        self._reminders.pop(reminder.id, None)
        tasks = self._tasks.get(reminder.event_id)
        if tasks is not None:
            tasks.pop(reminder.id, None)
            if not tasks:
                self._tasks.pop(reminder.event_id, None)

    def pending(self, event_id: Optional[str] = None) -> List[Reminder]:
        return [r for r in self._reminders.values() if event_id is None or r.event_id == event_id]

    def cancel(self, event_id: str) -> int:
        tasks = self._tasks.pop(event_id, {})
        for reminder_id, task in tasks.items():
            task.cancel()
            self._reminders.pop(reminder_id, None)
        if tasks:
            logger.info("reminders cancelled", extra={"event_id": event_id, "count": len(tasks)})
        return len(tasks)

    async def shutdown(self) -> None:
        tasks = [t for by_event in self._tasks.values() for t in by_event.values()]
        self._tasks.clear()
        self._reminders.clear()
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
