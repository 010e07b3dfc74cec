"""商户 Schema"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

from portal.models.merchant import KybStatus, MerchantRole, MerchantStatus


class MerchantResponse(BaseModel):
    id: str
    user_id: Optional[str]
    email: str
    company_name: Optional[str]
    contact_name: Optional[str]
    phone: Optional[str]
    website_url: Optional[str]
    tier: Optional[str]
    status: str
    kyb_status: str
    can_ship: bool
    kyb_reviewed_at: Optional[datetime]
    kyb_rejection_reason: Optional[str]
    billing_name: Optional[str]
    billing_email: Optional[str]
    low_balance_threshold_cents: Optional[int]
    target_balance_cents: Optional[int]
    price_adjustment_percent: Optional[float]
    mercury_customer_id: Optional[str]
    agreement_accepted_at: Optional[datetime]
    created_at: Optional[datetime]

    class Config:
        from_attributes = True


class KybReviewAction(BaseModel):
    merchant_id: str = Field(..., alias="merchantId")
    action: str = Field(..., pattern="^(approve|reject)$")
    reason: Optional[str] = Field(None, max_length=2000)

    class Config:
        populate_by_name = True


class MerchantAdminUpdate(BaseModel):
    """管理员可修改的商户字段（白名单）"""
    id: str
    status: Optional[str] = None
    can_ship: Optional[bool] = None
    kyb_status: Optional[str] = None
    company_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    website_url: Optional[str] = None
    billing_name: Optional[str] = None
    billing_email: Optional[str] = None
    tier: Optional[str] = None
    price_adjustment_percent: Optional[float] = None

    @field_validator("status")
    @classmethod
    def check_status(cls, v):
        if v is not None and v not in MerchantStatus.ALL:
            raise ValueError(f"status must be one of {', '.join(MerchantStatus.ALL)}")
        return v

    @field_validator("kyb_status")
    @classmethod
    def check_kyb_status(cls, v):
        if v is not None and v not in KybStatus.ALL:
            raise ValueError(f"kyb_status must be one of {', '.join(KybStatus.ALL)}")
        return v


class BillingSettingsUpdate(BaseModel):
    billing_email: Optional[EmailStr] = None
    billing_name: Optional[str] = None
    low_balance_threshold_cents: Optional[int] = None
    target_balance_cents: Optional[int] = None

    @field_validator("billing_email", mode="before")
    @classmethod
    def normalize_email(cls, v):
        return v.strip().lower() if isinstance(v, str) else v


class ProfileUpdate(BaseModel):
    company_name: Optional[str] = Field(None, max_length=255)
    contact_name: Optional[str] = Field(None, max_length=255)
    phone: Optional[str] = Field(None, max_length=50)
    website_url: Optional[str] = Field(None, max_length=500)


class MerchantInvite(BaseModel):
    email: EmailStr
    role: str = MerchantRole.USER

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v):
        return v.strip().lower() if isinstance(v, str) else v


class MerchantMemberUpdate(BaseModel):
    role: Optional[str] = None
    is_active: Optional[bool] = None


class SignAgreementRequest(BaseModel):
    signatureDataUrl: Optional[str] = None
    merchantName: Optional[str] = None
    merchantEmail: Optional[str] = None
