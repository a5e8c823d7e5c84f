import asyncio
import time
from contextlib import suppress
from datetime import datetime, tzinfo

from structlog.contextvars import bound_contextvars

from memocare.helpers.logging import logger
from memocare.helpers.monitoring import (
    SpanAttributeEnum,
    counter_add,
    gauge_set,
    notification_lost,
    reminder_failed,
    reminder_fired,
    scheduler_tick_latency,
    tracer,
)
from memocare.helpers.recurrence import next_run_at
from memocare.models.notification import NotificationModel
from memocare.models.reminder import (
    OnceRecurrenceModel,
    ReminderModel,
    UnknownRecurrenceModel,
)
from memocare.persistence.ichannel import IChannel
from memocare.persistence.istore import IStore


class ReminderScheduler:
    """
    Fire due reminders at a fixed interval.

    Each tick lists the due reminders once, then for each of them advances (or deactivates) it in the store before publishing the due event. A failed publish loses the notification but never the schedule, delivery is at-least-once at best.

    Ticks are serialized, a tick requested while another one is running is skipped.
    """

    _channel: IChannel
    _interval_sec: int
    _lock: asyncio.Lock
    _stopping: asyncio.Event
    _store: IStore
    _tz: tzinfo

    def __init__(
        self,
        channel: IChannel,
        interval_sec: int,
        store: IStore,
        tz: tzinfo,
    ):
        self._channel = channel
        self._interval_sec = interval_sec
        self._lock = asyncio.Lock()
        self._stopping = asyncio.Event()
        self._store = store
        self._tz = tz

    @property
    def stopping(self) -> bool:
        return self._stopping.is_set()

    async def tick(self, now: datetime | None = None) -> int:
        """
        Run one evaluation of the due reminders.

        Returns the number of reminders fired, meaning advanced or deactivated in the store. Never raises, errors are logged.
        """
        if self.stopping:
            logger.debug("Scheduler stopping, tick not started")
            return 0

        if self._lock.locked():
            logger.warning("Previous tick still running, skipping this one")
            return 0

        async with self._lock:
            now = now or datetime.now(self._tz)
            start = time.monotonic()
            with tracer.start_as_current_span("scheduler_tick"):
                fired = await self._tick(now)
            gauge_set(scheduler_tick_latency, time.monotonic() - start)
            return fired

    async def run(self) -> None:
        """
        Tick until `stop` is called.

        Ticks are aligned on the interval, with a 60 secs interval they run at the start of each minute.
        """
        logger.info("Starting reminder scheduler, every %i secs", self._interval_sec)
        tasks: set[asyncio.Task] = set()
        while not self.stopping:
            # Wait for the next aligned instant, or the stop signal
            delay = self._interval_sec - time.time() % self._interval_sec
            with suppress(TimeoutError):
                await asyncio.wait_for(self._stopping.wait(), timeout=delay)
            if self.stopping:
                break

            # Run in a dedicated task, a slow tick must not delay the next one, which will be skipped
            task = asyncio.create_task(self.tick())
            tasks.add(task)
            task.add_done_callback(tasks.discard)
            task.add_done_callback(self._log_tick_error)

        # Let the in-flight tick finish
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Reminder scheduler stopped")

    async def stop(self) -> None:
        """
        Stop the loop and wait for the in-flight tick to finish.

        Ticks requested after this call, including the ones already spawned but not started, return without querying the store.
        """
        self._stopping.set()
        async with self._lock:
            pass

    @staticmethod
    def _log_tick_error(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        e = task.exception()
        if e:
            logger.error("Tick failed", exc_info=e)

    async def _tick(self, now: datetime) -> int:
        try:
            reminders = await self._store.reminder_list_due(now)
        except Exception:
            logger.exception("Cannot list due reminders, tick aborted")
            return 0

        if not reminders:
            logger.debug("No due reminder at %s", now)
            return 0

        logger.info("%i reminder(s) due at %s", len(reminders), now)
        fired = 0
        for reminder in reminders:
            with bound_contextvars(
                **{
                    SpanAttributeEnum.OWNER_ID.value: reminder.owner_id,
                    SpanAttributeEnum.REMINDER_ID.value: str(reminder.reminder_id),
                }
            ):
                if await self._fire(reminder, now):
                    fired += 1
        return fired

    async def _fire(self, reminder: ReminderModel, now: datetime) -> bool:
        """
        Advance a reminder, then notify its owner.

        Returns `False` if the reminder could not be advanced.
        """
        with tracer.start_as_current_span("scheduler_fire"):
            SpanAttributeEnum.REMINDER_CATEGORY.attribute(reminder.category.value)

            # Persist the outcome first, a lost notification is better than a reminder firing forever
            try:
                if isinstance(reminder.recurrence, UnknownRecurrenceModel):
                    logger.warning(
                        'Unknown recurrence "%s", rescheduling in one day',
                        reminder.recurrence.kind,
                    )
                if isinstance(reminder.recurrence, OnceRecurrenceModel):
                    outcome = None
                else:
                    outcome = next_run_at(reminder.recurrence, now)
                found = await self._store.reminder_mark_fired(
                    next_run_at=outcome,
                    reminder_id=reminder.reminder_id,
                )
            except Exception:
                logger.exception("Error advancing reminder, skipping it")
                counter_add(reminder_failed, 1)
                return False

            if not found:
                logger.info("Reminder deleted meanwhile, skipping it")
                return False

            counter_add(reminder_fired, 1)
            if outcome:
                logger.info("Reminder fired, next run at %s", outcome)
            else:
                logger.info("One-time reminder fired, deactivated")

            # Then notify
            try:
                await self._channel.publish(
                    notification=NotificationModel.reminder_due(reminder),
                    owner_id=reminder.owner_id,
                )
            except Exception:
                logger.exception("Error publishing due reminder, notification lost")
                counter_add(notification_lost, 1)

            return True
