"""
Pydantic models for user data.

Registration takes the contact details used by the delivery channels
(email, phone number) and, optionally, the timezone and local time at
which the daily audio should arrive.  Passwords are never returned.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from .delivery import check_hhmm


class UserCreate(BaseModel):
    email: str = Field(..., examples=["user@example.com"], pattern=r"^[^@\s]+@[^@\s]+$")
    password: str = Field(..., min_length=6)
    name: Optional[str] = Field(None, examples=["Alex"])
    phone_number: Optional[str] = Field(None, examples=["+15551234567"])
    timezone: Optional[str] = Field(None, examples=["America/New_York"])
    preferred_delivery_time: Optional[str] = Field(None, examples=["07:30"])

    @field_validator("preferred_delivery_time")
    @classmethod
    def validate_time(cls, v: Optional[str]) -> Optional[str]:
        return check_hhmm(v)


class UserLogin(BaseModel):
    email: str
    password: str


class UserRead(BaseModel):
    """Schema for reading a user from the API."""

    id: int
    email: str
    name: Optional[str] = None
    phone_number: Optional[str] = None
    role_id: int
    subscription_status: str
    last_active_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = {
        "from_attributes": True,
    }


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
