import asyncio
from collections.abc import AsyncIterator, Callable
from datetime import datetime, timedelta
from uuid import UUID

import pytest
from pytz import utc

from memocare.helpers.config_models.channel import MemoryChannelModel
from memocare.helpers.reminder_scheduler import ReminderScheduler
from memocare.models.notification import EventEnum, NotificationModel
from memocare.models.reminder import ReminderModel
from memocare.persistence.ichannel import PublishError
from memocare.persistence.istore import StoreUnavailableError
from memocare.persistence.memory import MemoryChannel, MemoryStore


class UnavailableStore(MemoryStore):
    async def reminder_list_due(self, as_of: datetime) -> list[ReminderModel]:
        raise StoreUnavailableError("Database is down")


class FailingMarkStore(MemoryStore):
    """
    Store failing to advance some reminders.
    """

    failing: set[UUID]

    def __init__(self, failing: set[UUID]):
        super().__init__()
        self.failing = failing

    async def reminder_mark_fired(
        self,
        reminder_id: UUID,
        next_run_at: datetime | None,
    ) -> bool:
        if reminder_id in self.failing:
            raise RuntimeError("Write failed")
        return await super().reminder_mark_fired(reminder_id, next_run_at)


class BlockingStore(MemoryStore):
    """
    Store holding the due query until released.
    """

    entered: asyncio.Event
    release: asyncio.Event

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def reminder_list_due(self, as_of: datetime) -> list[ReminderModel]:
        self.entered.set()
        await self.release.wait()
        return await super().reminder_list_due(as_of)


class FailingChannel(MemoryChannel):
    async def publish(self, owner_id: str, notification: NotificationModel) -> int:
        raise PublishError("Channel is down")


class RecordingChannel(MemoryChannel):
    """
    Channel recording the reminder state in the store at publish time.
    """

    seen: list[ReminderModel | None]
    store: MemoryStore

    def __init__(self, store: MemoryStore):
        super().__init__(MemoryChannelModel())
        self.seen = []
        self.store = store

    async def publish(self, owner_id: str, notification: NotificationModel) -> int:
        self.seen.append(
            await self.store.reminder_get(owner_id, UUID(notification.data["id"]))
        )
        return await super().publish(owner_id, notification)


def _scheduler(
    store: MemoryStore,
    channel: MemoryChannel | None = None,
    interval_sec: int = 60,
) -> ReminderScheduler:
    return ReminderScheduler(
        channel=channel or MemoryChannel(MemoryChannelModel()),
        interval_sec=interval_sec,
        store=store,
        tz=utc,
    )


async def _received(notifications: AsyncIterator[NotificationModel]) -> list[NotificationModel]:
    """
    Drain the notifications already published.
    """
    res = []
    while True:
        try:
            res.append(await asyncio.wait_for(anext(notifications), timeout=0.1))
        except TimeoutError:
            return res


@pytest.mark.asyncio(loop_scope="session")
async def test_tick_fires_due(
    make_reminder: Callable[..., ReminderModel],
    now: datetime,
    owner_id: str,
) -> None:
    """
    Test a tick advances recurring reminders, deactivates one-time reminders and notifies the owner.

    Steps:
    1. Create due, future and inactive reminders
    2. Tick
    3. Check the store state
    4. Check the notifications
    """
    store = MemoryStore()
    channel = MemoryChannel(MemoryChannelModel())
    scheduler = _scheduler(store, channel)

    hourly = make_reminder(recurrence="hourly")
    once = make_reminder(
        recurrence="once",
        next_run_at=now - timedelta(minutes=5),
        category="appointment",
        label="Doctor",
    )
    future = make_reminder(next_run_at=now + timedelta(minutes=1))
    inactive = make_reminder(active=False)
    for reminder in (hourly, once, future, inactive):
        await store.reminder_create(reminder)

    async with channel.subscribe(owner_id) as notifications:
        assert await scheduler.tick(now) == 2
        received = await _received(notifications)

    # Hourly is advanced to the next hour
    res = await store.reminder_get(owner_id, hourly.reminder_id)
    assert res
    assert res.active
    assert res.next_run_at == datetime(2025, 1, 1, 11, 0, tzinfo=utc)

    # Once is deactivated, next run unchanged
    res = await store.reminder_get(owner_id, once.reminder_id)
    assert res
    assert not res.active
    assert res.next_run_at == once.next_run_at

    # Others untouched
    assert await store.reminder_get(owner_id, future.reminder_id) == future
    assert await store.reminder_get(owner_id, inactive.reminder_id) == inactive

    # Owner notified once per fired reminder
    assert all(n.event == EventEnum.REMINDER_DUE for n in received)
    assert all(n.owner_id == owner_id for n in received)
    assert sorted((n.data for n in received), key=lambda d: d["label"]) == [
        {
            "category": "appointment",
            "id": str(once.reminder_id),
            "label": "Doctor",
        },
        {
            "category": "medication",
            "id": str(hourly.reminder_id),
            "label": "Take the blue pill",
        },
    ]


@pytest.mark.asyncio(loop_scope="session")
async def test_tick_nothing_due(
    make_reminder: Callable[..., ReminderModel],
    now: datetime,
    owner_id: str,
) -> None:
    store = MemoryStore()
    channel = MemoryChannel(MemoryChannelModel())
    future = make_reminder(next_run_at=now + timedelta(hours=1))
    await store.reminder_create(future)

    async with channel.subscribe(owner_id) as notifications:
        assert await _scheduler(store, channel).tick(now) == 0
        assert await _received(notifications) == []
    assert await store.reminder_get(owner_id, future.reminder_id) == future


@pytest.mark.asyncio(loop_scope="session")
async def test_tick_at_most_once(
    make_reminder: Callable[..., ReminderModel],
    now: datetime,
) -> None:
    """
    Test a second tick at the same time does not fire the reminders again.
    """
    store = MemoryStore()
    scheduler = _scheduler(store)
    for recurrence in ("once", "hourly", "30 10 * * *", "0 9 * * 3"):
        await store.reminder_create(make_reminder(recurrence=recurrence))

    assert await scheduler.tick(now) == 4
    assert await scheduler.tick(now) == 0
    assert await store.reminder_list_due(now) == []


@pytest.mark.asyncio(loop_scope="session")
async def test_tick_advances_strictly(
    make_reminder: Callable[..., ReminderModel],
    now: datetime,
    owner_id: str,
) -> None:
    """
    Test a daily reminder evaluated exactly at its trigger is moved to the next day.
    """
    store = MemoryStore()
    reminder = make_reminder(recurrence="37 10 * * *")
    await store.reminder_create(reminder)

    assert await _scheduler(store).tick(now) == 1

    res = await store.reminder_get(owner_id, reminder.reminder_id)
    assert res
    assert res.next_run_at == now + timedelta(days=1)


@pytest.mark.asyncio(loop_scope="session")
async def test_tick_unknown_recurrence(
    make_reminder: Callable[..., ReminderModel],
    now: datetime,
    owner_id: str,
) -> None:
    store = MemoryStore()
    reminder = make_reminder(recurrence={"kind": "fortnightly"})
    await store.reminder_create(reminder)

    assert await _scheduler(store).tick(now) == 1

    res = await store.reminder_get(owner_id, reminder.reminder_id)
    assert res
    assert res.active
    assert res.next_run_at == now + timedelta(days=1)


@pytest.mark.asyncio(loop_scope="session")
async def test_tick_store_unavailable(now: datetime) -> None:
    """
    Test a failing due query aborts the tick without raising, and the next tick runs.
    """
    scheduler = _scheduler(UnavailableStore())
    assert await scheduler.tick(now) == 0
    assert await scheduler.tick(now + timedelta(minutes=1)) == 0


@pytest.mark.asyncio(loop_scope="session")
async def test_tick_item_error_isolated(
    make_reminder: Callable[..., ReminderModel],
    now: datetime,
    owner_id: str,
) -> None:
    """
    Test a reminder failing to advance does not block the others.
    """
    broken = make_reminder()
    healthy = make_reminder()
    store = FailingMarkStore(failing={broken.reminder_id})
    channel = MemoryChannel(MemoryChannelModel())
    for reminder in (broken, healthy):
        await store.reminder_create(reminder)

    async with channel.subscribe(owner_id) as notifications:
        assert await _scheduler(store, channel).tick(now) == 1
        received = await _received(notifications)

    # Only the advanced reminder is notified
    assert [n.data["id"] for n in received] == [str(healthy.reminder_id)]

    # Broken one is still due, it will be retried next tick
    assert [r.reminder_id for r in await store.reminder_list_due(now)] == [
        broken.reminder_id
    ]


@pytest.mark.asyncio(loop_scope="session")
async def test_tick_publish_error(
    make_reminder: Callable[..., ReminderModel],
    now: datetime,
    owner_id: str,
) -> None:
    """
    Test a lost notification does not prevent the schedule from advancing.
    """
    store = MemoryStore()
    reminders = [make_reminder() for _ in range(3)]
    for reminder in reminders:
        await store.reminder_create(reminder)

    scheduler = _scheduler(store, FailingChannel(MemoryChannelModel()))
    assert await scheduler.tick(now) == 3
    assert await store.reminder_list_due(now) == []


@pytest.mark.asyncio(loop_scope="session")
async def test_tick_mutation_before_publish(
    make_reminder: Callable[..., ReminderModel],
    now: datetime,
) -> None:
    """
    Test the store is updated before the notification is published.
    """
    store = MemoryStore()
    channel = RecordingChannel(store)
    reminder = make_reminder(recurrence="once")
    await store.reminder_create(reminder)

    assert await _scheduler(store, channel).tick(now) == 1

    [seen] = channel.seen
    assert seen
    assert not seen.active


@pytest.mark.asyncio(loop_scope="session")
async def test_tick_overlap_skipped(
    make_reminder: Callable[..., ReminderModel],
    now: datetime,
) -> None:
    """
    Test a tick requested while another one runs is skipped.
    """
    store = BlockingStore()
    scheduler = _scheduler(store)
    await store.reminder_create(make_reminder())

    first = asyncio.create_task(scheduler.tick(now))
    await asyncio.wait_for(store.entered.wait(), timeout=1)

    # Second tick returns immediately, without querying the store
    assert await asyncio.wait_for(scheduler.tick(now), timeout=1) == 0

    store.release.set()
    assert await asyncio.wait_for(first, timeout=1) == 1


@pytest.mark.asyncio(loop_scope="session")
async def test_stop_waits_inflight_tick(
    make_reminder: Callable[..., ReminderModel],
    now: datetime,
) -> None:
    """
    Test stopping lets the running tick finish.
    """
    store = BlockingStore()
    scheduler = _scheduler(store)
    await store.reminder_create(make_reminder())

    tick = asyncio.create_task(scheduler.tick(now))
    await asyncio.wait_for(store.entered.wait(), timeout=1)

    stop = asyncio.create_task(scheduler.stop())
    await asyncio.sleep(0.05)
    assert not stop.done()
    assert scheduler.stopping

    store.release.set()
    await asyncio.wait_for(stop, timeout=1)
    assert tick.done()
    assert tick.result() == 1


@pytest.mark.asyncio(loop_scope="session")
async def test_run_ticks_and_stops(
    make_reminder: Callable[..., ReminderModel],
    owner_id: str,
) -> None:
    """
    Test the loop fires due reminders on its own, then stops cleanly.
    """
    store = MemoryStore()
    reminder = make_reminder(recurrence="once")
    await store.reminder_create(reminder)
    scheduler = _scheduler(store, interval_sec=1)

    task = asyncio.create_task(scheduler.run())
    for _ in range(30):
        res = await store.reminder_get(owner_id, reminder.reminder_id)
        if res and not res.active:
            break
        await asyncio.sleep(0.1)
    else:
        pytest.fail("Reminder has not been fired by the loop")

    await asyncio.wait_for(scheduler.stop(), timeout=1)
    await asyncio.wait_for(task, timeout=2)


@pytest.mark.asyncio(loop_scope="session")
async def test_stop_skips_pending_tick(
    make_reminder: Callable[..., ReminderModel],
    now: datetime,
) -> None:
    """
    Test a tick spawned but not started yet when stopping never queries the store.
    """
    store = BlockingStore()
    store.release.set()
    scheduler = _scheduler(store)
    await store.reminder_create(make_reminder())

    tick = asyncio.create_task(scheduler.tick(now))
    await scheduler.stop()

    assert await asyncio.wait_for(tick, timeout=1) == 0
    assert not store.entered.is_set()
    assert len(await store.reminder_list_due(now)) == 1


@pytest.mark.asyncio(loop_scope="session")
async def test_run_survives_failing_tick() -> None:
    """
    Test the loop keeps ticking when a tick raises, and still stops cleanly.
    """
    scheduler = _scheduler(MemoryStore(), interval_sec=1)
    calls: list[datetime | None] = []

    async def _failing_tick(now: datetime | None = None) -> int:
        calls.append(now)
        raise RuntimeError("Tick failed")

    scheduler.tick = _failing_tick  # pyright: ignore
    task = asyncio.create_task(scheduler.run())
    for _ in range(40):
        if len(calls) >= 2:
            break
        await asyncio.sleep(0.1)
    else:
        pytest.fail("Loop stopped ticking after a failure")

    await asyncio.wait_for(scheduler.stop(), timeout=1)
    await asyncio.wait_for(task, timeout=2)
