"""管理后台 Schema"""

from typing import Optional

from pydantic import BaseModel, EmailStr, Field, field_validator


class BackupCodeRequest(BaseModel):
    email: EmailStr

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v):
        return v.strip().lower() if isinstance(v, str) else v


class BackupCodeVerify(BackupCodeRequest):
    code: str = Field(..., min_length=8, max_length=8)


class TeamInvite(BaseModel):
    email: EmailStr
    role: str = "admin"

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v):
        return v.strip().lower() if isinstance(v, str) else v


class TeamMemberUpdate(BaseModel):
    role: Optional[str] = Field(None, pattern="^(super_admin|admin)$")
    is_active: Optional[bool] = None
    name: Optional[str] = None


class WithdrawalUpdate(BaseModel):
    id: str
    status: str = Field(..., pattern="^(PROCESSING|COMPLETED|REJECTED)$")
    admin_notes: Optional[str] = Field(None, max_length=2000)


class InvoiceCreate(BaseModel):
    merchant_id: Optional[str] = None
    amount_cents: Optional[int] = Field(None, ge=100)
