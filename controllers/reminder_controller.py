# controllers/reminder_controller.py
import json
import logging
from json import JSONDecodeError
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Form, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from helpers.confirmation import ConfirmationService, ResultCode, TransitionResult, normalize_outcome
from helpers.reminder_sweep import run_reminder_sweep, send_reminder_for
from helpers.twilio_sms import validate_twilio_signature

router = APIRouter()
logger = logging.getLogger("reminders")

HTTP_STATUS = {
    ResultCode.DEFERRED: 429,
    ResultCode.NOT_FOUND: 404,
    ResultCode.AMBIGUOUS: 409,
    ResultCode.CONFLICT: 409,
    ResultCode.UNRECOGNIZED: 422,
    ResultCode.DISPATCH_FAILED: 500,
    ResultCode.SMS_FAILED: 500,
}


def get_service(request: Request) -> ConfirmationService:
    service = getattr(request.app.state, "confirmation_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Reminder service not initialised")
    return service


def _respond(result: TransitionResult) -> JSONResponse:
    return JSONResponse(status_code=HTTP_STATUS.get(result.code, 200), content=result.as_dict())


# ───────── Pydantic I/O ─────────

class SendRemindersRequest(BaseModel):
    appointment_id: Optional[str] = None


class ConfirmationReply(BaseModel):
    correlationKey: Optional[str] = None
    reply: Optional[str] = None
    confirmation: Optional[str] = None

    def text(self) -> Optional[str]:
        return self.reply if self.reply is not None else self.confirmation


class CallStatusIn(BaseModel):
    correlationKey: Optional[str] = None
    phone_number: Optional[str] = None
    outcome: Optional[str] = None
    status: Optional[str] = None
    call_id: Optional[str] = Field(default=None, alias="callId")

    model_config = {"populate_by_name": True}


# ───────── trigger ─────────

@router.post("/reminders/send-reminders")
async def send_reminders(
    payload: Optional[SendRemindersRequest] = None,
    service: ConfirmationService = Depends(get_service),
):
    appointment_id = payload.appointment_id if payload else None
    if appointment_id:
        return _respond(await send_reminder_for(service, appointment_id))

    summary = await run_reminder_sweep(service, service.store)
    if summary["result"] == ResultCode.DEFERRED.value:
        return JSONResponse(status_code=429, content={"success": False, **summary, "detail": "Outside call window"})
    return {"success": True, **summary}


# ───────── webhooks ─────────

@router.post("/reminders/handle-confirmation")
async def handle_confirmation(
    body: ConfirmationReply,
    appointmentId: Optional[str] = Query(default=None),
    service: ConfirmationService = Depends(get_service),
):
    key = appointmentId or body.correlationKey
    if not key:
        raise HTTPException(status_code=422, detail="appointmentId or correlationKey is required")
    reply = body.text()
    if reply is None or not reply.strip():
        raise HTTPException(status_code=422, detail="reply is required")
    return _respond(await service.on_confirmation_reply(key, reply))


@router.post("/reminders/call-status")
async def call_status(
    body: CallStatusIn,
    appointmentId: Optional[str] = Query(default=None),
    service: ConfirmationService = Depends(get_service),
):
    key = appointmentId or body.correlationKey or body.phone_number
    outcome = body.outcome or body.status
    if not key:
        raise HTTPException(status_code=422, detail="appointmentId, correlationKey or phone_number is required")
    if not outcome:
        raise HTTPException(status_code=422, detail="outcome is required")
    return _respond(await service.on_call_outcome(key, outcome, call_id=body.call_id))


async def parse_incoming_body(req: Request) -> dict:
    """
    Parse JSON or form bodies. Returns {} on empty/invalid payloads.
    """
    ctype = (req.headers.get("content-type") or "").lower()

    if "application/x-www-form-urlencoded" in ctype or "multipart/form-data" in ctype:
        form = await req.form()
        # some providers wrap the json in a `payload` field
        if "payload" in form:
            try:
                return json.loads(form["payload"])
            except (JSONDecodeError, TypeError) as e:
                logger.warning("Invalid JSON in form payload: %s", e)
        return dict(form)

    raw = await req.body()
    if not raw:
        return {}
    try:
        data = json.loads(raw.decode("utf-8"))
    except (JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning("Body not JSON: %s", e)
        return {}
    return data if isinstance(data, dict) else {}


def _vapi_correlation(msg: Dict[str, Any]) -> Optional[str]:
    call = msg.get("call") or {}
    meta = call.get("metadata") or msg.get("metadata") or {}
    key = meta.get("appointmentId")
    if key:
        return str(key)
    return ((call.get("customer") or {}).get("number")) or None


@router.post("/reminders/webhooks/vapi")
async def vapi_webhook(
    request: Request,
    appointmentId: Optional[str] = Query(default=None),
    service: ConfirmationService = Depends(get_service),
):
    body = await parse_incoming_body(request)
    msg = (body or {}).get("message") or {}
    if not msg:
        return Response(status_code=204)

    mtype = msg.get("type")
    if mtype != "end-of-call-report":
        logger.debug("vapi %s message ignored", mtype)
        return Response(status_code=204)

    key = appointmentId or _vapi_correlation(msg)
    if not key:
        logger.warning("vapi end-of-call-report without appointment metadata or customer number")
        return Response(status_code=204)

    reason = msg.get("endedReason")
    call_id = (msg.get("call") or {}).get("id")
    logger.info("vapi end-of-call-report call=%s reason=%s -> %s", call_id, reason, normalize_outcome(reason))
    return _respond(await service.on_call_outcome(key, reason, call_id=call_id))


@router.post("/reminders/sms-webhook")
async def twilio_sms_webhook(
    request: Request,
    From: str = Form(alias="From"),
    Body: str = Form(default="", alias="Body"),
    To: Optional[str] = Form(default=None, alias="To"),
    MessageSid: Optional[str] = Form(default=None, alias="MessageSid"),
    service: ConfirmationService = Depends(get_service),
):
    config = service.config
    if config.validate_twilio_signature:
        form = await request.form()
        signature = request.headers.get("X-Twilio-Signature", "")
        url = f"{config.public_base_url}{request.url.path}"
        if not validate_twilio_signature(config.twilio_auth_token, url, {k: v for k, v in form.items()}, signature):
            raise HTTPException(status_code=403, detail="twilio_signature_invalid")

    result = await service.on_confirmation_reply(From, Body)
    appt = await service.store.get(result.appointment_id) if result.appointment_id else None
    await service.store.record_message(appt, "inbound", To or "", From, Body or "", sid=MessageSid, success=True)
    return _respond(result)
