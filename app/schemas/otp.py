from pydantic import BaseModel, Field


class OtpRelayRequest(BaseModel):
    email: str = ""
    otp: str = ""


class OtpIssued(BaseModel):
    sent_to: str
    expires_in: int = Field(description="Seconds until the code expires")
