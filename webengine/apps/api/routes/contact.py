from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from webengine.apps.api.deps import verify_csrf
from webengine.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from webengine.apps.api.response import SuccessEnvelope, success_response
from webengine.core.errors import MailDeliveryError
from webengine.providers.mail.base import MailTransport
from webengine.providers.mail.factory import get_mail_transport
from webengine.services.notifications import send_contact_message


logger = logging.getLogger(__name__)

router = APIRouter(tags=["contact"], responses=DEFAULT_ERROR_RESPONSES, dependencies=[Depends(verify_csrf)])


class ContactRequest(BaseModel):
    name: str = Field(max_length=255)
    email: str = Field(max_length=255)
    subject: str = Field(max_length=1000)
    message: str = Field(max_length=10000)


class ContactResponse(BaseModel):
    sent: bool
    message: str


@router.post("/contact", response_model=SuccessEnvelope[ContactResponse])
async def submit_contact_form(
    payload: ContactRequest,
    request: Request,
    transport: MailTransport = Depends(get_mail_transport),
) -> dict:
    try:
        await send_contact_message(
            transport,
            name=payload.name,
            email=payload.email,
            subject=payload.subject,
            message=payload.message,
        )
    except MailDeliveryError as exc:
        logger.error("contact_message_failed error=%s", exc)
        raise HTTPException(
            status_code=503,
            detail={"code": "MAIL_UNAVAILABLE", "message": "Failed to send message. Please try again later."},
        ) from exc
    data = ContactResponse(sent=True, message="Thank you for your message. We will get back to you soon!")
    return success_response(request=request, data=data)
