"""Internal appointments and messages.

Appointments without a mapping are exported on the next sync; messages
created here sit in the outbox until a sync sends them.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request

from crm_sync.api.v1.dependencies import get_sync_services
from crm_sync.application.dtos.records import AppointmentCreate, MessageCreate
from crm_sync.core.limiter import limit_writes
from crm_sync.core.runtime import SyncServices
from crm_sync.domain.enums import MessageFolder
from crm_sync.domain.exceptions import ResourceNotFoundException, ValidationException
from crm_sync.schemas.records import (
    AppointmentCreateRequest,
    AppointmentResponse,
    MessageCreateRequest,
    MessageResponse,
)

router = APIRouter()

Services = Annotated[SyncServices, Depends(get_sync_services)]


@router.post("/appointments", response_model=AppointmentResponse, status_code=201)
@limit_writes
async def create_appointment(
    request: Request,
    body: AppointmentCreateRequest,
    services: Services,
):
    if body.credential_id is not None:
        credential = await services.credentials.get_by_id(body.credential_id)
        if credential is None:
            raise ResourceNotFoundException("Credential", body.credential_id)
        if credential.owner_id != body.owner_id:
            raise ValidationException(
                "credential belongs to another owner", field="credential_id"
            )
    appointment = await services.appointments.create(
        AppointmentCreate(
            owner_id=body.owner_id,
            title=body.title,
            start_time=body.start_time,
            end_time=body.end_time,
            timezone=body.timezone,
            description=body.description,
            location=body.location,
            attendees=tuple(str(a) for a in body.attendees),
            all_day=body.all_day,
            credential_id=body.credential_id,
        )
    )
    await services.uow.commit()
    return AppointmentResponse.model_validate(appointment)


@router.get("/appointments", response_model=list[AppointmentResponse])
async def list_appointments(
    services: Services,
    owner_id: str = Query(..., min_length=1),
    limit: int = Query(100, ge=1, le=1000),
):
    appointments = await services.appointments.list_by_owner(owner_id, limit=limit)
    return [AppointmentResponse.model_validate(a) for a in appointments]


@router.post("/messages", response_model=MessageResponse, status_code=201)
@limit_writes
async def queue_message(
    request: Request,
    body: MessageCreateRequest,
    services: Services,
):
    """Queue an outbound message; the sender is the account's address."""
    credential = await services.credentials.get_by_id(body.credential_id)
    if credential is None:
        raise ResourceNotFoundException("Credential", body.credential_id)
    message = await services.messages.create(
        MessageCreate(
            owner_id=credential.owner_id,
            credential_id=credential.id,
            subject=body.subject,
            sender=credential.email,
            to=tuple(str(a) for a in body.to),
            cc=tuple(str(a) for a in body.cc),
            bcc=tuple(str(a) for a in body.bcc),
            body_text=body.body_text,
            body_html=body.body_html,
            is_read=True,
            folder=MessageFolder.OUTBOX,
        )
    )
    await services.uow.commit()
    return MessageResponse.model_validate(message)


@router.get("/messages", response_model=list[MessageResponse])
async def list_messages(
    services: Services,
    owner_id: str = Query(..., min_length=1),
    limit: int = Query(100, ge=1, le=1000),
):
    messages = await services.messages.list_by_owner(owner_id, limit=limit)
    return [MessageResponse.model_validate(m) for m in messages]
