from __future__ import annotations

from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

# Stable error codes clients can switch on
_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "missing_fields",
    "invalid_email",
    "invalid_phone",
    "invalid_password",
    "invalid_token",
    "invalid_refresh_token",
    "invalid_reset_token",
    "email_verified",
    "unauthorized",
    "invalid_credentials",
    "forbidden",
    "account_banned",
    "not_found",
    "user_not_found",
    "method_not_allowed",
    "payload_too_large",
    "conflict",
    "user_exists",
    "rate_limited",
    "server_error",
    "email_delivery_failed",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable machine-readable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class _RequestModel(BaseModel):
    """Request bodies accept snake_case or camelCase keys.

    Fields are optional at this layer so that missing values reach the
    service and are reported as ``missing_fields`` rather than schema errors.
    """

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )


class AddressPayload(_RequestModel):
    street: Optional[str] = Field(default=None, max_length=200)
    ward: Optional[str] = Field(default=None, max_length=100)
    district: Optional[str] = Field(default=None, max_length=100)
    city: Optional[str] = Field(default=None, max_length=100)


class RegisterRequest(_RequestModel):
    name: Optional[str] = Field(default=None, max_length=200)
    email: Optional[str] = Field(default=None, max_length=254)
    phone: Optional[str] = Field(default=None, max_length=32)
    password: Optional[str] = Field(default=None, max_length=128)
    address: Optional[AddressPayload] = None


class LoginRequest(_RequestModel):
    email: Optional[str] = Field(default=None, max_length=254)
    password: Optional[str] = Field(default=None, max_length=128)


class EmailRequest(_RequestModel):
    email: Optional[str] = Field(default=None, max_length=254)


class EmailSendRequest(_RequestModel):
    email: Optional[str] = Field(default=None, max_length=254)
    template_type: Optional[str] = Field(default=None, max_length=32)
    template_data: Optional[Dict[str, str]] = None


class PasswordResetConfirm(_RequestModel):
    token: Optional[str] = Field(default=None, max_length=4096)
    new_password: Optional[str] = Field(default=None, max_length=128)


class PasswordChangeRequest(_RequestModel):
    old_password: Optional[str] = Field(default=None, max_length=128)
    new_password: Optional[str] = Field(default=None, max_length=128)


class TokenRefreshRequest(_RequestModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class TokenRevokeRequest(_RequestModel):
    token: Optional[str] = Field(default=None, max_length=4096)


class PriceRangePayload(_RequestModel):
    min: float = 0
    max: float = 0


class ProfileUpdateRequest(_RequestModel):
    dob: Optional[str] = None
    gender: Optional[str] = None
    preferred_utilities: Optional[List[str]] = Field(default=None, max_length=20)
    preferred_price_range: Optional[PriceRangePayload] = None
    avatar: Optional[str] = Field(default=None, max_length=2048)
    verification_document: Optional[str] = Field(default=None, max_length=2048)


class AdminAccountUpdate(_RequestModel):
    is_banned: Optional[bool] = None
    is_verified: Optional[bool] = None
    role: Optional[str] = None


class AddressResponse(BaseModel):
    street: str
    ward: str
    district: str
    city: str


class PriceRangeResponse(BaseModel):
    min: float
    max: float


class AccountResponse(BaseModel):
    id: str
    email: str
    name: str
    phone: str
    address: AddressResponse
    role: str
    is_verified: bool
    is_banned: bool
    dob: Optional[str] = None
    gender: str
    avatar: str
    preferred_utilities: List[str] = Field(default_factory=list)
    preferred_price_range: Optional[PriceRangeResponse] = None
    verification_document: Optional[str] = None
    rating: float = 0
    notification_email: bool = True
    last_login: Optional[str] = None
    created_at: str
    updated_at: str


class AuthResponse(BaseModel):
    user: AccountResponse
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int


class MessageResponse(BaseModel):
    message: str


class AccountListResponse(BaseModel):
    items: List[AccountResponse]
    limit: int
    offset: int
