from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from clinicbilling.apps.api.deps import get_db
from clinicbilling.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from clinicbilling.apps.api.response import SuccessEnvelope, success_response
from clinicbilling.core.config import get_settings
from clinicbilling.services.gateway_webhook import (
    handle_gateway_event,
    parse_gateway_payload,
    verify_gateway_signature,
)


router = APIRouter(prefix="/webhooks", tags=["webhooks"], responses=DEFAULT_ERROR_RESPONSES)


class WebhookAckResponse(BaseModel):
    event_type: str
    action: str
    gateway_payment_id: str | None
    subscription_id: str | None
    replayed: bool


@router.post("/gateway", response_model=SuccessEnvelope[WebhookAckResponse])
async def gateway_webhook(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    # Verify against the raw body before parsing; re-serialized JSON would not match.
    body = await request.body()
    signature = request.headers.get(get_settings().gateway_webhook_signature_header)
    verify_gateway_signature(body, signature)
    payload = parse_gateway_payload(body)
    try:
        result = await handle_gateway_event(db, payload)
    except SQLAlchemyError as exc:
        await db.rollback()
        raise HTTPException(status_code=500, detail="Database error while applying gateway event") from exc
    data = WebhookAckResponse(
        event_type=result.event_type,
        action=result.action,
        gateway_payment_id=result.gateway_payment_id,
        subscription_id=result.subscription_id,
        replayed=result.replayed,
    )
    return success_response(request=request, data=data)
