import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path
from uuid import uuid4

import pytest
from pytz import timezone as pytz_timezone

from memocare.helpers.config_models.cache import MemoryModel
from memocare.helpers.config_models.database import SqliteModel
from memocare.models.contact import ContactModel
from memocare.models.emergency import EmergencyAlertModel, SmsResultModel
from memocare.models.medication import (
    MedicationLogModel,
    MedicationLogStatusEnum,
    MedicationModel,
)
from memocare.models.reminder import ReminderModel, UnknownRecurrenceModel
from memocare.persistence.istore import IStore, StoreUnavailableError
from memocare.persistence.memory import MemoryCache
from memocare.persistence.sqlite import SqliteStore


@pytest.mark.asyncio(loop_scope="session")
async def test_reminder_crud(
    make_reminder: Callable[..., ReminderModel],
    owner_id: str,
    store: IStore,
) -> None:
    """
    Test reminders can be created, read, updated and deleted by their owner only.
    """
    reminder = make_reminder()

    # Check not exists
    assert not await store.reminder_get(owner_id, reminder.reminder_id)

    # Insert
    await store.reminder_create(reminder)

    # Check point read
    assert await store.reminder_get(owner_id, reminder.reminder_id) == reminder
    assert not await store.reminder_get("someone-else", reminder.reminder_id)
    # Check search all
    assert await store.reminder_search_all(owner_id) == [reminder]
    assert await store.reminder_search_all("someone-else") == []

    # Update
    reminder.label = "Drink a glass of water"
    await store.reminder_update(reminder)
    res = await store.reminder_get(owner_id, reminder.reminder_id)
    assert res
    assert res.label == "Drink a glass of water"

    # Delete
    assert not await store.reminder_delete("someone-else", reminder.reminder_id)
    assert await store.reminder_delete(owner_id, reminder.reminder_id)
    assert not await store.reminder_delete(owner_id, reminder.reminder_id)
    assert not await store.reminder_get(owner_id, reminder.reminder_id)


@pytest.mark.asyncio(loop_scope="session")
async def test_search_all_sorted(
    make_reminder: Callable[..., ReminderModel],
    now: datetime,
    owner_id: str,
    store: IStore,
) -> None:
    later = make_reminder(next_run_at=now + timedelta(hours=2))
    sooner = make_reminder(next_run_at=now + timedelta(minutes=5))
    inactive = make_reminder(active=False, next_run_at=now - timedelta(days=3))
    for reminder in (later, sooner, inactive):
        await store.reminder_create(reminder)

    assert await store.reminder_search_all(owner_id) == [inactive, sooner, later]


@pytest.mark.asyncio(loop_scope="session")
async def test_list_due(
    make_reminder: Callable[..., ReminderModel],
    now: datetime,
    store: IStore,
) -> None:
    """
    Test only active reminders with a next run at or before the evaluation time are listed.
    """
    past = make_reminder(next_run_at=now - timedelta(hours=1))
    boundary = make_reminder(next_run_at=now)
    future = make_reminder(next_run_at=now + timedelta(seconds=1))
    inactive = make_reminder(active=False, next_run_at=now - timedelta(hours=1))
    for reminder in (past, boundary, future, inactive):
        await store.reminder_create(reminder)

    due = await store.reminder_list_due(now)
    assert {reminder.reminder_id for reminder in due} == {
        past.reminder_id,
        boundary.reminder_id,
    }


@pytest.mark.asyncio(loop_scope="session")
async def test_list_due_idempotent(
    make_reminder: Callable[..., ReminderModel],
    now: datetime,
    store: IStore,
) -> None:
    for minutes in (0, 10, 20):
        await store.reminder_create(
            make_reminder(next_run_at=now - timedelta(minutes=minutes))
        )

    first = await store.reminder_list_due(now)
    second = await store.reminder_list_due(now)
    assert len(first) == 3
    assert sorted(first, key=lambda r: r.reminder_id) == sorted(
        second, key=lambda r: r.reminder_id
    )


@pytest.mark.asyncio(loop_scope="session")
async def test_list_due_other_timezone(
    make_reminder: Callable[..., ReminderModel],
    now: datetime,
    store: IStore,
) -> None:
    """
    Test the boundary holds when the evaluation time is expressed in another timezone than the stored value.
    """
    reminder = make_reminder(next_run_at=now)
    await store.reminder_create(reminder)

    tokyo_now = now.astimezone(pytz_timezone("Asia/Tokyo"))
    assert [r.reminder_id for r in await store.reminder_list_due(tokyo_now)] == [
        reminder.reminder_id
    ]
    assert await store.reminder_list_due(tokyo_now - timedelta(seconds=1)) == []


@pytest.mark.asyncio(loop_scope="session")
async def test_mark_fired_advances(
    make_reminder: Callable[..., ReminderModel],
    now: datetime,
    owner_id: str,
    store: IStore,
) -> None:
    """
    Test a fired reminder is not listed again for the same evaluation time.
    """
    reminder = make_reminder()
    await store.reminder_create(reminder)
    # Warm up the cache
    assert await store.reminder_get(owner_id, reminder.reminder_id)

    next_run = now + timedelta(hours=1)
    assert await store.reminder_mark_fired(reminder.reminder_id, next_run)

    assert await store.reminder_list_due(now) == []
    res = await store.reminder_get(owner_id, reminder.reminder_id)
    assert res
    assert res.active
    assert res.next_run_at == next_run


@pytest.mark.asyncio(loop_scope="session")
async def test_mark_fired_deactivates(
    make_reminder: Callable[..., ReminderModel],
    now: datetime,
    owner_id: str,
    store: IStore,
) -> None:
    """
    Test a one-time reminder is deactivated and keeps its next run.
    """
    reminder = make_reminder(recurrence="once")
    await store.reminder_create(reminder)

    assert await store.reminder_mark_fired(reminder.reminder_id, None)

    assert await store.reminder_list_due(now) == []
    res = await store.reminder_get(owner_id, reminder.reminder_id)
    assert res
    assert not res.active
    assert res.next_run_at == reminder.next_run_at


@pytest.mark.asyncio(loop_scope="session")
async def test_mark_fired_keeps_concurrent_edit(
    make_reminder: Callable[..., ReminderModel],
    now: datetime,
    owner_id: str,
    store: IStore,
) -> None:
    """
    Test advancing a reminder does not overwrite an edit made after it was listed.
    """
    reminder = make_reminder()
    await store.reminder_create(reminder)
    [due] = await store.reminder_list_due(now)

    # Owner edits the label meanwhile
    edited = due.model_copy(update={"label": "Take the red pill"})
    await store.reminder_update(edited)

    assert await store.reminder_mark_fired(due.reminder_id, now + timedelta(hours=1))

    res = await store.reminder_get(owner_id, reminder.reminder_id)
    assert res
    assert res.label == "Take the red pill"
    assert res.next_run_at == now + timedelta(hours=1)


@pytest.mark.asyncio(loop_scope="session")
async def test_mark_fired_missing(store: IStore, now: datetime) -> None:
    assert not await store.reminder_mark_fired(uuid4(), now)
    assert not await store.reminder_mark_fired(uuid4(), None)


@pytest.mark.asyncio(loop_scope="session")
async def test_unknown_recurrence_round_trip(
    make_reminder: Callable[..., ReminderModel],
    owner_id: str,
    store: IStore,
) -> None:
    reminder = make_reminder(recurrence="every full moon")
    await store.reminder_create(reminder)

    res = await store.reminder_get(owner_id, reminder.reminder_id)
    assert res
    assert res.recurrence == UnknownRecurrenceModel(kind="every full moon")


@pytest.mark.asyncio(loop_scope="session")
async def test_concurrent_writes(
    make_reminder: Callable[..., ReminderModel],
    owner_id: str,
    store: IStore,
) -> None:
    """
    Test concurrent writes are all persisted.
    """
    assert await store.readiness() == "ok"
    reminders = [make_reminder() for _ in range(20)]
    await asyncio.gather(*[store.reminder_create(r) for r in reminders])

    res = await store.reminder_search_all(owner_id)
    assert {r.reminder_id for r in res} == {r.reminder_id for r in reminders}


@pytest.mark.asyncio(loop_scope="session")
async def test_contacts(owner_id: str, store: IStore) -> None:
    zoe = ContactModel(
        name="Zoe",
        owner_id=owner_id,
        phone_number="+33612345678",  # pyright: ignore
        relation="daughter",
    )
    adam = ContactModel(
        name="Adam",
        owner_id=owner_id,
        relation="neighbour",
    )
    await store.contact_create(zoe)
    await store.contact_create(adam)

    # Check search all, sorted by name
    assert await store.contact_search_all(owner_id) == [adam, zoe]
    assert await store.contact_search_all("someone-else") == []

    # Delete
    assert not await store.contact_delete("someone-else", zoe.contact_id)
    assert await store.contact_delete(owner_id, zoe.contact_id)
    assert await store.contact_search_all(owner_id) == [adam]


@pytest.mark.asyncio(loop_scope="session")
async def test_contact_update(owner_id: str, store: IStore) -> None:
    contact = ContactModel(
        name="Zoe",
        owner_id=owner_id,
        relation="daughter",
    )
    await store.contact_create(contact)

    # Check point read, scoped to the owner
    assert await store.contact_get(owner_id, contact.contact_id) == contact
    assert not await store.contact_get("someone-else", contact.contact_id)

    # Update
    contact.phone_number = "+33612345678"  # pyright: ignore
    await store.contact_update(contact)
    res = await store.contact_get(owner_id, contact.contact_id)
    assert res
    assert res.phone_number == "+33612345678"
    assert await store.contact_search_all(owner_id) == [res]


@pytest.mark.asyncio(loop_scope="session")
async def test_alerts(now: datetime, owner_id: str, store: IStore) -> None:
    first = EmergencyAlertModel(
        owner_id=owner_id,
        triggered_at=now - timedelta(days=1),
    )
    second = EmergencyAlertModel(
        latitude=48.8566,
        longitude=2.3522,
        owner_id=owner_id,
        sms_results=[SmsResultModel(contact="Zoe", success=True)],
        triggered_at=now,
    )
    await store.alert_create(first)
    await store.alert_create(second)

    # Check search all, newest first
    assert await store.alert_search_all(owner_id) == [second, first]
    assert not await store.alert_get("someone-else", first.alert_id)

    # Resolve
    first.resolved_at = now
    await store.alert_update(first)
    res = await store.alert_get(owner_id, first.alert_id)
    assert res
    assert res.resolved_at == now


@pytest.mark.asyncio(loop_scope="session")
async def test_readiness(store: IStore) -> None:
    assert await store.readiness() == "ok"


@pytest.mark.asyncio(loop_scope="session")
async def test_sqlite_persists_across_instances(
    make_reminder: Callable[..., ReminderModel],
    owner_id: str,
    tmp_path: Path,
) -> None:
    """
    Test records survive a restart, meaning a new store on the same file.
    """
    config = SqliteModel(path=str(tmp_path / "restart"))
    reminder = make_reminder()
    await SqliteStore(cache=MemoryCache(MemoryModel()), config=config).reminder_create(
        reminder
    )

    store = SqliteStore(cache=MemoryCache(MemoryModel()), config=config)
    assert await store.reminder_get(owner_id, reminder.reminder_id) == reminder


@pytest.mark.asyncio(loop_scope="session")
async def test_sqlite_unavailable(now: datetime, tmp_path: Path) -> None:
    """
    Test a failing database is reported as unavailable when listing due reminders.
    """
    # A folder cannot be opened as a database
    folder = tmp_path / "broken-v1.sqlite"
    folder.mkdir()
    store = SqliteStore(
        cache=MemoryCache(MemoryModel()),
        config=SqliteModel(path=str(tmp_path / "broken")),
    )

    with pytest.raises(StoreUnavailableError):
        await store.reminder_list_due(now)
    assert await store.readiness() == "fail"


@pytest.mark.asyncio(loop_scope="session")
async def test_medications(now: datetime, owner_id: str, store: IStore) -> None:
    """
    Test medications and their intake logs.

    Steps:
    1. Create two medications
    2. Log doses, out of order
    3. Check logs are listed oldest first, per medication
    4. Update a medication
    5. Delete it, its logs go with it
    """
    donepezil = MedicationModel(
        dosage="10 mg",
        name="Donepezil",
        owner_id=owner_id,
    )
    aspirin = MedicationModel(
        dosage="100 mg",
        name="Aspirin",
        owner_id=owner_id,
    )
    await store.medication_create(donepezil)
    await store.medication_create(aspirin)

    # Check search all, sorted by name
    assert await store.medication_search_all(owner_id) == [aspirin, donepezil]
    assert await store.medication_search_all("someone-else") == []
    assert await store.medication_get(owner_id, donepezil.medication_id) == donepezil
    assert not await store.medication_get("someone-else", donepezil.medication_id)

    # Log doses
    yesterday = MedicationLogModel(
        medication_id=donepezil.medication_id,
        owner_id=owner_id,
        status=MedicationLogStatusEnum.MISSED,
        taken_at=now - timedelta(days=1),
    )
    today = MedicationLogModel(
        medication_id=donepezil.medication_id,
        owner_id=owner_id,
        status=MedicationLogStatusEnum.TAKEN,
        taken_at=now,
    )
    other = MedicationLogModel(
        medication_id=aspirin.medication_id,
        owner_id=owner_id,
        status=MedicationLogStatusEnum.TAKEN,
        taken_at=now,
    )
    for log in (today, other, yesterday):
        await store.medication_log_create(log)
    assert await store.medication_log_search_all(
        owner_id, donepezil.medication_id
    ) == [yesterday, today]
    assert (
        await store.medication_log_search_all("someone-else", donepezil.medication_id)
        == []
    )

    # Update
    donepezil.dosage = "5 mg"
    await store.medication_update(donepezil)
    res = await store.medication_get(owner_id, donepezil.medication_id)
    assert res
    assert res.dosage == "5 mg"

    # Delete
    assert not await store.medication_delete("someone-else", donepezil.medication_id)
    assert await store.medication_delete(owner_id, donepezil.medication_id)
    assert not await store.medication_get(owner_id, donepezil.medication_id)
    assert (
        await store.medication_log_search_all(owner_id, donepezil.medication_id) == []
    )
    assert await store.medication_log_search_all(owner_id, aspirin.medication_id) == [
        other
    ]
