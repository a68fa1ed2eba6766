import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import PlainTextResponse

from app.schemas.otp import OtpRelayRequest
from app.services.collection_otp import OTP_PATTERN
from app.services.mailer import OTP_SUBJECT, get_mail_backend, otp_body

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/send-otp", response_class=PlainTextResponse)
async def send_otp(payload: OtpRelayRequest, mail=Depends(get_mail_backend)):
    """Mail relay: delivers a collection code to the contributor."""
    if not payload.email or not payload.otp:
        raise HTTPException(status_code=400, detail="Missing email or OTP")
    if not OTP_PATTERN.match(payload.otp):
        raise HTTPException(status_code=400, detail="OTP must be 6 digits")
    try:
        await mail.send(payload.email, OTP_SUBJECT, otp_body(payload.otp))
    except Exception as e:
        logger.exception("Error sending OTP: %s", e)
        raise HTTPException(status_code=502, detail="Error sending OTP")
    return PlainTextResponse("OTP sent successfully")
