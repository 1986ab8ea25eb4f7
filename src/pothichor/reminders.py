from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional

from .errors import DependencyError, PersistenceError
from .mailer import EmailDispatcher
from .models import Meal, ScheduledReminder, utcnow
from .store import REMINDERS, DocumentStore

logger = logging.getLogger(__name__)

DEFAULT_LEAD = timedelta(minutes=15)
DEFAULT_CLAIM_LEASE = timedelta(minutes=2)


@dataclass
class DispatchReport:
    """Outcome of one pass over the due reminders."""

    sent: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    unmarked: List[str] = field(default_factory=list)

    @property
    def due_count(self) -> int:
        return len(self.sent) + len(self.failed) + len(self.unmarked)


class ReminderScheduler:
    """
    Persists pickup reminders at order time and dispatches them once due.

    Delivery is at-least-once: a reminder is flagged ``sent`` only after the dispatcher
    accepted it, so a failed send stays pending and is retried by the next poll.
    """

    def __init__(
        self,
        store: DocumentStore,
        dispatcher: EmailDispatcher,
        *,
        lead: timedelta = DEFAULT_LEAD,
        claim_lease: timedelta = DEFAULT_CLAIM_LEASE,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.lead = lead
        self.claim_lease = claim_lease
        self._clock = clock

    def schedule(self, recipient_email: str, meal: Meal) -> Optional[str]:
        """Store a reminder for ``lead`` before pickup. Best effort: failures are logged, not raised."""

        reminder = ScheduledReminder(
            recipient_email=recipient_email,
            meal_id=meal.id,
            meal_title=meal.title,
            pickup_time=meal.pickup_time,
            food_items=meal.food_item_names,
            reminder_time=meal.pickup_time - self.lead,
        )
        try:
            self.store.insert(REMINDERS, reminder.to_document())
        except PersistenceError:
            logger.exception("Failed to schedule reminder for %s on meal %s", recipient_email, meal.id)
            return None
        logger.info(
            "Scheduled reminder %s for %s at %s (meal %s)",
            reminder.id,
            recipient_email,
            reminder.reminder_time.isoformat(),
            meal.id,
        )
        return reminder.id

    def due_reminders(self, recipient_email: str | None = None) -> List[ScheduledReminder]:
        now = self._clock()
        filters: dict[str, Any] = {
            "sent": False,
            "reminder_time": {"$lte": now},
            "claimed_until": {"$lte": now},
        }
        if recipient_email is not None:
            filters["recipient_email"] = recipient_email
        documents = self.store.find(REMINDERS, filters, sort=[("reminder_time", 1)])
        return [ScheduledReminder.from_document(doc) for doc in documents]

    def dispatch_due(self, recipient_email: str | None = None) -> DispatchReport:
        """Send every due, unsent reminder (for one recipient, or everyone when None)."""

        report = DispatchReport()
        for reminder in self.due_reminders(recipient_email):
            if not self._claim(reminder.id):
                continue
            attempts = reminder.attempts + 1
            try:
                self.dispatcher.send_pickup_reminder(reminder)
            except DependencyError as exc:
                logger.warning(
                    "Reminder %s to %s failed (attempt %s); will retry: %s",
                    reminder.id,
                    reminder.recipient_email,
                    attempts,
                    exc,
                )
                report.failed.append(reminder.id)
                self._record_attempt(
                    reminder.id,
                    {"attempts": attempts, "last_error": str(exc), "claimed_until": self._clock()},
                )
                continue

            marked = self._record_attempt(
                reminder.id,
                {"sent": True, "sent_at": self._clock(), "attempts": attempts, "last_error": None},
            )
            if marked:
                report.sent.append(reminder.id)
            else:
                report.unmarked.append(reminder.id)
        if report.due_count:
            logger.info(
                "Reminder pass for %s: %s sent, %s failed, %s unmarked",
                recipient_email or "all recipients",
                len(report.sent),
                len(report.failed),
                len(report.unmarked),
            )
        return report

    def start_polling(self, recipient_email: str, interval_seconds: float = 60.0) -> "ReminderPoller":
        poller = ReminderPoller(self, recipient_email, interval_seconds)
        poller.start()
        return poller

    def _claim(self, reminder_id: str) -> bool:
        """Lease a reminder so concurrent pollers do not send it twice."""
        now = self._clock()
        try:
            claimed = self.store.find_one_and_update(
                REMINDERS,
                {"_id": reminder_id, "sent": False, "claimed_until": {"$lte": now}},
                {"$set": {"claimed_until": now + self.claim_lease}},
            )
        except PersistenceError:
            logger.exception("Failed to claim reminder %s", reminder_id)
            return False
        return claimed is not None

    def _record_attempt(self, reminder_id: str, fields: dict[str, Any]) -> bool:
        try:
            return self.store.update(REMINDERS, reminder_id, fields)
        except PersistenceError:
            logger.exception("Failed to update reminder %s with %s", reminder_id, sorted(fields))
            return False


class PeriodicTask:
    """
    Runs a blocking callable on a worker thread every ``interval_seconds``.

    ``cancel`` stops the loop after the in-flight run (if any) completes; a run is never
    interrupted halfway through.
    """

    def __init__(self, name: str, func: Callable[[], Any], interval_seconds: float):
        self.name = name
        self.func = func
        self.interval_seconds = interval_seconds
        self._stopped = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stopped.clear()
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)

    async def cancel(self) -> None:
        self._stopped.set()
        task, self._task = self._task, None
        if task is not None:
            await task

    async def _run(self) -> None:
        logger.info("Starting %s every %s seconds", self.name, self.interval_seconds)
        while not self._stopped.is_set():
            try:
                await asyncio.to_thread(self.func)
            except Exception:
                logger.exception("%s run failed", self.name)
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("Stopped %s", self.name)


class ReminderPoller(PeriodicTask):
    """Per-session handle polling one recipient's due reminders."""

    def __init__(self, scheduler: ReminderScheduler, recipient_email: str, interval_seconds: float = 60.0):
        super().__init__(
            f"reminder poll for {recipient_email}",
            lambda: scheduler.dispatch_due(recipient_email),
            interval_seconds,
        )
        self.recipient_email = recipient_email
