"""Pydantic schemas for API request/response"""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field

from config import LICENSE_MIN_DAYS, LICENSE_MAX_DAYS


# License Schemas
class LicenseCreate(BaseModel):
    device_code: str = Field(..., alias="deviceCode", min_length=1, max_length=64)
    duration_days: int = Field(..., alias="durationDays", ge=LICENSE_MIN_DAYS, le=LICENSE_MAX_DAYS)
    name: Optional[str] = Field(None, max_length=100)

    class Config:
        populate_by_name = True


class LicenseRenew(BaseModel):
    additional_days: int = Field(..., alias="additionalDays", ge=LICENSE_MIN_DAYS, le=LICENSE_MAX_DAYS)

    class Config:
        populate_by_name = True


class LicenseActivate(BaseModel):
    device_code: str = Field(..., alias="deviceCode", min_length=1, max_length=64)
    auth_code: str = Field(..., alias="authCode", min_length=1, max_length=64)

    class Config:
        populate_by_name = True


# User Schemas
class UserLogin(BaseModel):
    username: str = Field(..., min_length=1, max_length=50)
    password: str = Field(..., min_length=1, max_length=255)
    device_code: Optional[str] = Field(None, alias="deviceCode", max_length=64)
    remember: bool = False

    class Config:
        populate_by_name = True


class UserResponse(BaseModel):
    id: int
    username: str
    role: str
    full_name: Optional[str]
    is_active: bool
    created_at: datetime
    last_login: Optional[datetime]

    class Config:
        from_attributes = True


class LoginResponse(BaseModel):
    token: str
    user: UserResponse
    must_change_password: bool = False
    remember: bool = False
