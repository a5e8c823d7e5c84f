import asyncio
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from http import HTTPStatus
from typing import Annotated
from uuid import UUID

from fastapi import (
    BackgroundTasks,
    FastAPI,
    HTTPException,
    Path,
    Request,
    WebSocket,
    WebSocketDisconnect,
)
from fastapi.exceptions import RequestValidationError, ValidationException
from fastapi.responses import JSONResponse, Response
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from memocare.helpers.config import CONFIG
from memocare.helpers.emergency import alert_message, emergency_contacts, send_alert
from memocare.helpers.http import aiohttp_session
from memocare.helpers.logging import logger
from memocare.helpers.monitoring import (
    SpanAttributeEnum,
    start_as_current_span,
    suppress,
)
from memocare.helpers.recurrence import localize, next_run_at
from memocare.models.contact import (
    ContactCreateModel,
    ContactModel,
    ContactUpdateModel,
)
from memocare.models.emergency import (
    EmergencyAlertGetModel,
    EmergencyAlertModel,
    EmergencyTriggerModel,
)
from memocare.models.error import ErrorInnerModel, ErrorModel
from memocare.models.medication import (
    MedicationCreateModel,
    MedicationLogCreateModel,
    MedicationLogModel,
    MedicationModel,
    MedicationUpdateModel,
)
from memocare.models.notification import NotificationModel
from memocare.models.readiness import ReadinessEnum, ReadinessModel
from memocare.models.reminder import (
    OnceRecurrenceModel,
    RecurrenceModel,
    ReminderCreateModel,
    ReminderModel,
    ReminderUpdateModel,
)
from memocare.persistence.ichannel import PublishError

# First log
logger.info(
    "memocare v%s",
    CONFIG.version,
)

# Persistences
_cache = CONFIG.cache.instance
_channel = CONFIG.channel.instance
_db = CONFIG.database.instance
_sms = CONFIG.sms.instance

OwnerId = Annotated[str, Path(max_length=64, min_length=1)]


@asynccontextmanager
async def lifespan(app: FastAPI):  # noqa: ARG001
    scheduler = None
    scheduler_task = None

    try:
        if CONFIG.scheduler.enabled:
            scheduler = CONFIG.scheduler.instance
            scheduler_task = asyncio.create_task(scheduler.run())
        else:
            logger.warning("Reminder scheduler disabled, reminders will not fire")
        yield

    # Let the in-flight tick finish
    finally:
        if scheduler and scheduler_task:
            await scheduler.stop()
            await scheduler_task

    # Close HTTP session
    await (await aiohttp_session()).close()


# FastAPI
api = FastAPI(
    contact={
        "url": "https://github.com/memocare/memocare",
    },
    description="Reminders, contacts and emergency alerts for people living with Alzheimer's and their caregivers.",
    lifespan=lifespan,
    title="memocare",
    version=CONFIG.version,
)
FastAPIInstrumentor.instrument_app(api)


@api.get("/health/liveness")
@start_as_current_span("health_liveness_get")
async def health_liveness_get() -> None:
    """
    Check if the service is running.

    No parameters are expected.

    Returns a 200 OK if the service is technically running.
    """
    return


@api.get(
    "/health/readiness",
    status_code=HTTPStatus.OK,
)
@start_as_current_span("health_readiness_get")
async def health_readiness_get() -> JSONResponse:
    """
    Check if the service is ready to serve requests.

    No parameters are expected. Services tested are: cache, store, channel, sms.

    Returns a 200 OK if the service is ready to serve requests. If the service is not ready, it should return a 503 Service Unavailable.
    """
    # Check all components in parallel
    (
        cache_check,
        store_check,
        channel_check,
        sms_check,
    ) = await asyncio.gather(
        _cache.readiness(),
        _db.readiness(),
        _channel.readiness(),
        _sms.readiness(),
    )
    readiness = ReadinessModel.from_checks(
        cache=cache_check,
        channel=channel_check,
        sms=sms_check,
        store=store_check,
    )
    return JSONResponse(
        content=readiness.model_dump(mode="json"),
        status_code=(
            HTTPStatus.OK
            if readiness.status == ReadinessEnum.OK
            else HTTPStatus.SERVICE_UNAVAILABLE
        ),
    )


@api.get("/owners/{owner_id}/reminders")
@start_as_current_span("reminder_list_get")
async def reminder_list_get(owner_id: OwnerId) -> list[ReminderModel]:
    """
    REST API to list all reminders of an owner, active or not.

    Returns a list of reminder objects `ReminderModel`, sorted by next run, in JSON format.
    """
    SpanAttributeEnum.OWNER_ID.attribute(owner_id)
    return await _db.reminder_search_all(owner_id)


@api.post(
    "/owners/{owner_id}/reminders",
    status_code=HTTPStatus.CREATED,
)
@start_as_current_span("reminder_post")
async def reminder_post(
    owner_id: OwnerId,
    body: ReminderCreateModel,
) -> ReminderModel:
    """
    REST API to create a reminder.

    Required body parameters is a JSON object `ReminderCreateModel`. If `next_run_at` is empty, it is computed from the recurrence.

    Returns a single reminder object `ReminderModel`, in JSON format.
    """
    SpanAttributeEnum.OWNER_ID.attribute(owner_id)
    now = datetime.now(CONFIG.scheduler.tz)

    if body.next_run_at:
        first_run_at = _future(body.next_run_at, now)
    else:
        first_run_at = _next_run_at(body.recurrence, now)

    reminder = ReminderModel(
        category=body.category,
        label=body.label,
        next_run_at=first_run_at,
        owner_id=owner_id,
        recurrence=body.recurrence,
    )
    SpanAttributeEnum.REMINDER_ID.attribute(str(reminder.reminder_id))
    logger.info("Reminder created, first run at %s", reminder.next_run_at)
    return await _db.reminder_create(reminder)


@api.get("/owners/{owner_id}/reminders/{reminder_id}")
@start_as_current_span("reminder_get")
async def reminder_get(
    owner_id: OwnerId,
    reminder_id: UUID,
) -> ReminderModel:
    """
    REST API to get a reminder.

    Returns a single reminder object `ReminderModel`, in JSON format.
    """
    return await _reminder_or_404(owner_id, reminder_id)


@api.patch("/owners/{owner_id}/reminders/{reminder_id}")
@start_as_current_span("reminder_patch")
async def reminder_patch(
    owner_id: OwnerId,
    reminder_id: UUID,
    body: ReminderUpdateModel,
) -> ReminderModel:
    """
    REST API to edit a reminder.

    Required body parameters is a JSON object `ReminderUpdateModel`, only the fields set are updated.

    The next run is recomputed from the recurrence when the recurrence changes without a new next run, or when a recurring reminder is reactivated after its next run passed.

    Returns a single reminder object `ReminderModel`, in JSON format.
    """
    reminder = await _reminder_or_404(owner_id, reminder_id)
    now = datetime.now(CONFIG.scheduler.tz)

    if body.category is not None:
        reminder.category = body.category
    if body.label is not None:
        reminder.label = body.label
    if body.recurrence is not None:
        reminder.recurrence = body.recurrence
    if body.active is not None:
        reminder.active = body.active

    if body.next_run_at:
        reminder.next_run_at = _future(body.next_run_at, now)
    elif not isinstance(reminder.recurrence, OnceRecurrenceModel) and (
        body.recurrence is not None
        or (body.active and reminder.next_run_at <= now)
    ):
        reminder.next_run_at = _next_run_at(reminder.recurrence, now)

    logger.info("Reminder updated, next run at %s", reminder.next_run_at)
    return await _db.reminder_update(reminder)


@api.delete(
    "/owners/{owner_id}/reminders/{reminder_id}",
    status_code=HTTPStatus.NO_CONTENT,
)
@start_as_current_span("reminder_delete")
async def reminder_delete(
    owner_id: OwnerId,
    reminder_id: UUID,
) -> Response:
    """
    REST API to delete a reminder.

    Returns a 204 No Content if the reminder has been deleted.
    """
    SpanAttributeEnum.OWNER_ID.attribute(owner_id)
    SpanAttributeEnum.REMINDER_ID.attribute(str(reminder_id))
    if not await _db.reminder_delete(owner_id, reminder_id):
        raise HTTPException(
            detail=f"Reminder {reminder_id} not found",
            status_code=HTTPStatus.NOT_FOUND,
        )
    return Response(status_code=HTTPStatus.NO_CONTENT)


@api.websocket("/owners/{owner_id}/notifications")
async def notifications_wss(
    owner_id: OwnerId,
    websocket: WebSocket,
) -> None:
    """
    Stream the notifications of an owner, as JSON objects `NotificationModel`.

    Only the notifications published while the client is connected are sent.
    """
    # Subscribe before accepting, a notification published right after the handshake must not be missed
    async with _channel.subscribe(owner_id) as notifications:
        await websocket.accept()
        logger.info("Notifications WebSocket connected for %s", owner_id)

        async def _send_notifications() -> None:
            """
            Forward notifications to the WebSocket.
            """
            with suppress(WebSocketDisconnect):
                async for notification in notifications:
                    await websocket.send_text(notification.model_dump_json())

        send_task = asyncio.create_task(_send_notifications())
        try:
            # Loop until the WebSocket is disconnected, client messages are ignored
            with suppress(WebSocketDisconnect):
                async for _ in websocket.iter_text():
                    pass
        finally:
            send_task.cancel()
            await asyncio.gather(send_task, return_exceptions=True)

    logger.info("Notifications WebSocket disconnected for %s", owner_id)


@api.get("/owners/{owner_id}/contacts")
@start_as_current_span("contact_list_get")
async def contact_list_get(owner_id: OwnerId) -> list[ContactModel]:
    """
    REST API to list all contacts of an owner.

    Returns a list of contact objects `ContactModel`, sorted by name, in JSON format.
    """
    return await _db.contact_search_all(owner_id)


@api.post(
    "/owners/{owner_id}/contacts",
    status_code=HTTPStatus.CREATED,
)
@start_as_current_span("contact_post")
async def contact_post(
    owner_id: OwnerId,
    body: ContactCreateModel,
) -> ContactModel:
    """
    REST API to create a contact.

    Required body parameters is a JSON object `ContactCreateModel`.

    Returns a single contact object `ContactModel`, in JSON format.
    """
    contact = ContactModel(
        **body.model_dump(),
        owner_id=owner_id,
    )
    SpanAttributeEnum.CONTACT_ID.attribute(str(contact.contact_id))
    return await _db.contact_create(contact)


@api.delete(
    "/owners/{owner_id}/contacts/{contact_id}",
    status_code=HTTPStatus.NO_CONTENT,
)
@start_as_current_span("contact_delete")
async def contact_delete(
    owner_id: OwnerId,
    contact_id: UUID,
) -> Response:
    if not await _db.contact_delete(owner_id, contact_id):
        raise HTTPException(
            detail=f"Contact {contact_id} not found",
            status_code=HTTPStatus.NOT_FOUND,
        )
    return Response(status_code=HTTPStatus.NO_CONTENT)


@api.patch("/owners/{owner_id}/contacts/{contact_id}")
@start_as_current_span("contact_patch")
async def contact_patch(
    owner_id: OwnerId,
    contact_id: UUID,
    body: ContactUpdateModel,
) -> ContactModel:
    """
    REST API to edit a contact.

    Required body parameters is a JSON object `ContactUpdateModel`, only the fields set are updated. Optional fields can be cleared with `null`.

    Returns a single contact object `ContactModel`, in JSON format.
    """
    SpanAttributeEnum.CONTACT_ID.attribute(str(contact_id))
    contact = await _db.contact_get(owner_id, contact_id)
    if not contact:
        raise HTTPException(
            detail=f"Contact {contact_id} not found",
            status_code=HTTPStatus.NOT_FOUND,
        )
    contact = ContactModel.model_validate(
        {
            **contact.model_dump(),
            **body.model_dump(exclude_unset=True),
        }
    )
    return await _db.contact_update(contact)


@api.get("/owners/{owner_id}/medications")
@start_as_current_span("medication_list_get")
async def medication_list_get(owner_id: OwnerId) -> list[MedicationModel]:
    """
    REST API to list all medications of an owner.

    Returns a list of medication objects `MedicationModel`, sorted by name, in JSON format.
    """
    return await _db.medication_search_all(owner_id)


@api.post(
    "/owners/{owner_id}/medications",
    status_code=HTTPStatus.CREATED,
)
@start_as_current_span("medication_post")
async def medication_post(
    owner_id: OwnerId,
    body: MedicationCreateModel,
) -> MedicationModel:
    medication = MedicationModel(
        **body.model_dump(),
        owner_id=owner_id,
    )
    SpanAttributeEnum.MEDICATION_ID.attribute(str(medication.medication_id))
    return await _db.medication_create(medication)


@api.get("/owners/{owner_id}/medications/{medication_id}")
@start_as_current_span("medication_get")
async def medication_get(
    owner_id: OwnerId,
    medication_id: UUID,
) -> MedicationModel:
    return await _medication_or_404(owner_id, medication_id)


@api.patch("/owners/{owner_id}/medications/{medication_id}")
@start_as_current_span("medication_patch")
async def medication_patch(
    owner_id: OwnerId,
    medication_id: UUID,
    body: MedicationUpdateModel,
) -> MedicationModel:
    """
    REST API to edit a medication.

    Required body parameters is a JSON object `MedicationUpdateModel`, only the fields set are updated.

    Returns a single medication object `MedicationModel`, in JSON format.
    """
    medication = await _medication_or_404(owner_id, medication_id)
    medication = MedicationModel.model_validate(
        {
            **medication.model_dump(),
            **body.model_dump(exclude_unset=True),
        }
    )
    return await _db.medication_update(medication)


@api.delete(
    "/owners/{owner_id}/medications/{medication_id}",
    status_code=HTTPStatus.NO_CONTENT,
)
@start_as_current_span("medication_delete")
async def medication_delete(
    owner_id: OwnerId,
    medication_id: UUID,
) -> Response:
    """
    REST API to delete a medication, with its intake logs.

    Returns a 204 No Content if the medication has been deleted.
    """
    SpanAttributeEnum.MEDICATION_ID.attribute(str(medication_id))
    if not await _db.medication_delete(owner_id, medication_id):
        raise HTTPException(
            detail=f"Medication {medication_id} not found",
            status_code=HTTPStatus.NOT_FOUND,
        )
    return Response(status_code=HTTPStatus.NO_CONTENT)


@api.get("/owners/{owner_id}/medications/{medication_id}/logs")
@start_as_current_span("medication_log_list_get")
async def medication_log_list_get(
    owner_id: OwnerId,
    medication_id: UUID,
) -> list[MedicationLogModel]:
    """
    REST API to list the intake logs of a medication.

    Returns a list of log objects `MedicationLogModel`, oldest first, in JSON format.
    """
    await _medication_or_404(owner_id, medication_id)
    return await _db.medication_log_search_all(owner_id, medication_id)


@api.post(
    "/owners/{owner_id}/medications/{medication_id}/logs",
    status_code=HTTPStatus.CREATED,
)
@start_as_current_span("medication_log_post")
async def medication_log_post(
    owner_id: OwnerId,
    medication_id: UUID,
    body: MedicationLogCreateModel,
) -> MedicationLogModel:
    """
    REST API to log a dose as taken or missed.

    Required body parameters is a JSON object `MedicationLogCreateModel`.

    Returns a single log object `MedicationLogModel`, in JSON format.
    """
    await _medication_or_404(owner_id, medication_id)
    log = MedicationLogModel(
        **body.model_dump(),
        medication_id=medication_id,
        owner_id=owner_id,
    )
    logger.info("Medication %s logged as %s", medication_id, log.status.value)
    return await _db.medication_log_create(log)


@api.get("/owners/{owner_id}/emergency")
@start_as_current_span("emergency_list_get")
async def emergency_list_get(owner_id: OwnerId) -> list[EmergencyAlertModel]:
    """
    REST API to list the emergency alerts of an owner.

    Returns a list of alert objects `EmergencyAlertModel`, newest first, in JSON format.
    """
    return await _db.alert_search_all(owner_id)


@api.post("/owners/{owner_id}/emergency")
@start_as_current_span("emergency_post")
async def emergency_post(
    owner_id: OwnerId,
    background_tasks: BackgroundTasks,
    body: EmergencyTriggerModel | None = None,
) -> EmergencyAlertGetModel:
    """
    REST API to trigger an emergency alert.

    Optional body parameters is a JSON object `EmergencyTriggerModel`. An SMS is sent to each emergency contact of the owner, then the connected clients of the owner are notified.

    Returns a single alert object `EmergencyAlertGetModel`, with the SMS delivery results, in JSON format.
    """
    body = body or EmergencyTriggerModel()
    SpanAttributeEnum.OWNER_ID.attribute(owner_id)

    contacts = emergency_contacts(await _db.contact_search_all(owner_id))
    logger.warning("Emergency alert triggered, %i contact(s) to alert", len(contacts))

    alert = EmergencyAlertModel(
        latitude=body.latitude,
        longitude=body.longitude,
        owner_id=owner_id,
    )
    SpanAttributeEnum.ALERT_ID.attribute(str(alert.alert_id))

    if contacts:
        alert.sms_results = await send_alert(
            contacts=contacts,
            content=alert_message(
                location=body.location_text(),
                patient_name=body.patient_name or CONFIG.emergency.patient_name,
            ),
            sms=_sms,
        )
    await _db.alert_create(alert)

    # Notify the connected clients after the response
    background_tasks.add_task(
        _publish,
        notification=NotificationModel.emergency_alert(alert),
        owner_id=owner_id,
    )

    return EmergencyAlertGetModel(
        **alert.model_dump(),
        emergency_contacts_count=len(contacts),
    )


@api.post("/owners/{owner_id}/emergency/{alert_id}/resolve")
@start_as_current_span("emergency_resolve_post")
async def emergency_resolve_post(
    owner_id: OwnerId,
    alert_id: UUID,
) -> EmergencyAlertModel:
    """
    REST API to mark an emergency alert as resolved.

    Resolving twice keeps the first resolution time.

    Returns a single alert object `EmergencyAlertModel`, in JSON format.
    """
    alert = await _db.alert_get(owner_id, alert_id)
    if not alert:
        raise HTTPException(
            detail=f"Alert {alert_id} not found",
            status_code=HTTPStatus.NOT_FOUND,
        )
    if not alert.resolved_at:
        alert.resolved_at = datetime.now(UTC)
        await _db.alert_update(alert)
    return alert


@api.exception_handler(StarletteHTTPException)
async def http_exception_handler(
    request: Request,  # noqa: ARG001
    exc: StarletteHTTPException,
) -> JSONResponse:
    """
    Handle HTTP exceptions and return the error in a standard format.
    """
    return _standard_error(
        message=exc.detail,
        status_code=HTTPStatus(exc.status_code),
    )


@api.exception_handler(RequestValidationError)
@api.exception_handler(ValidationError)
@api.exception_handler(ValueError)
async def validation_exception_handler(
    request: Request,  # noqa: ARG001
    exc: RequestValidationError,
) -> JSONResponse:
    """
    Handle validation exceptions and return the error in a standard format.
    """
    return _validation_error(exc)


async def _publish(
    notification: NotificationModel,
    owner_id: str,
) -> None:
    try:
        await _channel.publish(
            notification=notification,
            owner_id=owner_id,
        )
    except PublishError:
        logger.exception("Error publishing %s, notification lost", notification.event.value)


async def _reminder_or_404(owner_id: str, reminder_id: UUID) -> ReminderModel:
    SpanAttributeEnum.OWNER_ID.attribute(owner_id)
    SpanAttributeEnum.REMINDER_ID.attribute(str(reminder_id))
    reminder = await _db.reminder_get(owner_id, reminder_id)
    if not reminder:
        raise HTTPException(
            detail=f"Reminder {reminder_id} not found",
            status_code=HTTPStatus.NOT_FOUND,
        )
    return reminder


async def _medication_or_404(owner_id: str, medication_id: UUID) -> MedicationModel:
    SpanAttributeEnum.OWNER_ID.attribute(owner_id)
    SpanAttributeEnum.MEDICATION_ID.attribute(str(medication_id))
    medication = await _db.medication_get(owner_id, medication_id)
    if not medication:
        raise HTTPException(
            detail=f"Medication {medication_id} not found",
            status_code=HTTPStatus.NOT_FOUND,
        )
    return medication


def _future(value: datetime, now: datetime) -> datetime:
    """
    Validate a next run provided by the owner.

    Naive values are read in the scheduler timezone. Raises `ValueError` if the value is in the past.
    """
    if value.tzinfo is None:
        value = localize(value, CONFIG.scheduler.tz)
    if value < now:
        raise ValueError(f"Next run {value.isoformat()} is in the past")
    return value.astimezone(UTC)


def _next_run_at(recurrence: RecurrenceModel, now: datetime) -> datetime:
    """
    Compute the next run of a recurrence from now.

    Raises `ValueError` for one-time reminders, their single run cannot be guessed.
    """
    res = next_run_at(recurrence, now)
    if not res:
        raise ValueError("Next run is required for a one-time reminder")
    return res.astimezone(UTC)


def _validation_error(e: ValidationError | Exception) -> JSONResponse:
    """
    Generate a standard validation error response.
    """
    messages = []
    if isinstance(e, ValidationError) or isinstance(e, ValidationException):
        messages = [
            str(x) for x in e.errors()
        ]  # Pydantic returns well formatted errors, use them
    elif isinstance(e, ValueError):
        messages = [str(e)]
    return _standard_error(
        details=messages,
        message="Validation error",
        status_code=HTTPStatus.UNPROCESSABLE_ENTITY,
    )


def _standard_error(
    message: str,
    status_code,
    details: list[str] | None = None,
) -> JSONResponse:
    """
    Generate a standard error response.
    """
    model = ErrorModel(
        error=ErrorInnerModel(
            details=details or [],
            message=message,
        )
    )
    return JSONResponse(
        content=model.model_dump(mode="json"),
        status_code=status_code,
    )
