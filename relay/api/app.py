# --------------------------- relay/api/app.py ----------------------------
"""
Relay · HTTP API

OVERVIEW:
FastAPI application exposing the webhooks and the review actions.

ENDPOINTS:
- POST /api/inbound                  Mailgun inbound route (always 200 once authenticated)
- POST /api/sms/webhook              Twilio reply webhook (always empty TwiML)
- POST /api/reviews/resolve          skip | select | new
- POST /api/sms/send                 re-send a review prompt
- POST /api/event-approvals/resolve  approve | deny
- POST /api/classify                 batch reclassification
- GET  /api/classify                 unclassified queue status
- GET  /api/entity-links/{kind}/{id} links for an entity, dangling ends flagged
- GET  /api/health

ERROR MAPPING:
RelayError subclasses carry their status (400/403/404/409/500/502); request
validation failures are answered with 400.
"""

import logging
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from config import settings
from relay import __version__
from relay.api.deps import Services, get_services
from relay.exceptions import RelayError, WebhookAuthError, WebhookConfigError, WebhookPayloadError
from relay.models import EntityRef
from relay.services.notifications.sms import twiml_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


# ╔══════════ 1. Request models ════════════════════════════════════════════

class ResolveReviewRequest(BaseModel):
    review_id: str
    action: str
    option_number: Optional[int] = None
    engagement_name: Optional[str] = None
    initiative_name: Optional[str] = None


class ResendSMSRequest(BaseModel):
    review_id: str


class ResolveEventApprovalRequest(BaseModel):
    approval_id: str
    action: str


async def read_form_fields(request: Request) -> Dict[str, str]:
    """
    Multipart/urlencoded form fields, falling back to decoding the raw body
    as urlencoded when form parsing yields nothing.

    RAISES:
        WebhookPayloadError: no fields could be read
    """
    raw = await request.body()
    fields: Dict[str, str] = {}
    try:
        form = await request.form()
        fields = {key: value for key, value in form.items() if isinstance(value, str)}
    except Exception as e:
        logger.info(f"Form parsing failed, trying urlencoded fallback: {e}")

    if not fields and raw:
        fields = dict(parse_qsl(raw.decode("utf-8", errors="replace"), keep_blank_values=True))
    if not fields:
        raise WebhookPayloadError("Request body has no form fields")
    return fields


# ╔══════════ 2. Webhooks ══════════════════════════════════════════════════

@router.post("/inbound")
async def inbound_email(request: Request, services: Services = Depends(get_services)):
    fields = await read_form_fields(request)
    try:
        return await run_in_threadpool(services.inbound.handle, fields)
    except (WebhookAuthError, WebhookConfigError):
        raise
    except Exception as e:
        logger.exception(f"Inbound email processing failed: {e}")
    return {"status": "error", "message": "Acknowledged; processing failed"}


@router.post("/sms/webhook")
async def sms_webhook(request: Request, services: Services = Depends(get_services)):
    try:
        fields = await read_form_fields(request)
        await run_in_threadpool(services.reviews.handle_sms_reply, fields.get("From", ""), fields.get("Body", ""))
    except Exception as e:
        logger.exception(f"SMS webhook failed: {e}")
    return Response(content=twiml_response(), media_type="application/xml")


# ╔══════════ 3. Review actions ════════════════════════════════════════════

@router.post("/reviews/resolve")
def resolve_review(body: ResolveReviewRequest, services: Services = Depends(get_services)):
    outcome = services.reviews.resolve(
        body.review_id,
        body.action,
        option_number=body.option_number,
        name=body.engagement_name or body.initiative_name,
    )
    return {"success": True, **outcome.to_dict()}


@router.post("/sms/send")
def resend_review_sms(body: ResendSMSRequest, services: Services = Depends(get_services)):
    services.reviews.resend_sms(body.review_id)
    return {"success": True, "review_id": body.review_id}


@router.post("/event-approvals/resolve")
def resolve_event_approval(body: ResolveEventApprovalRequest, services: Services = Depends(get_services)):
    return {"success": True, **services.reviews.resolve_event_approval(body.approval_id, body.action)}


# ╔══════════ 4. Batch & reads ═════════════════════════════════════════════

@router.post("/classify")
def run_classification(services: Services = Depends(get_services)):
    return services.pipeline.reclassify_pending()


@router.get("/classify")
def classification_status(services: Services = Depends(get_services)):
    pending = services.store.list_unclassified_messages()
    return {
        "unclassified": len(pending),
        "pending_reviews": services.store.count_unresolved_reviews(),
        "messages": [
            {
                "id": m["id"],
                "subject": m.get("subject"),
                "sender_email": m.get("sender_email"),
                "forwarded_at": m.get("forwarded_at"),
            }
            for m in pending
        ],
    }


@router.get("/entity-links/{kind}/{entity_id}")
def entity_links(kind: str, entity_id: str, services: Services = Depends(get_services)):
    ref = EntityRef.of(kind, entity_id)
    if ref is None:
        raise HTTPException(status_code=400, detail=f"Unknown entity type '{kind}'")
    links = []
    for item in services.store.resolve_entity_links(ref):
        row: Dict[str, Any] = item.link.to_row()
        row["id"] = item.link.id
        row["dangling"] = item.dangling
        row["source"] = item.source_record
        row["target"] = item.target_record
        links.append(row)
    return {"links": links}


@router.get("/health")
def health():
    return {"status": "ok", "version": __version__}


# ╔══════════ 5. App factory ═══════════════════════════════════════════════

def create_app() -> FastAPI:
    logging.basicConfig(level=settings.LOG_LEVEL, format=settings.LOG_FORMAT)

    app = FastAPI(title="Relay", version=__version__)
    app.include_router(router)

    @app.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"detail": "Invalid request", "errors": jsonable_encoder(exc.errors())})

    return app
