from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from stoneridge.logging import get_correlation_id
from stoneridge.service.auth import LoginResult, RefreshResult
from stoneridge.service.negotiation import OfferView
from stoneridge.storage.models import OfferStatus, TrustedDevice

_VALID_ERROR_CODES = frozenset({
    "bad_credentials",
    "account_locked",
    "email_not_verified",
    "forbidden",
    "not_found",
    "illegal_state",
    "conflict",
    "validation_error",
    "invalid_token",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


class TrustedDeviceResponse(BaseModel):
    id: str
    device_name: str
    device_type: str
    ip_address: Optional[str] = None
    created_at: datetime
    last_used_at: datetime
    expires_at: datetime

    @classmethod
    def from_device(cls, device: TrustedDevice) -> "TrustedDeviceResponse":
        return cls(
            id=device.id,
            device_name=device.device_name,
            device_type=device.device_type,
            ip_address=device.ip_address,
            created_at=device.created_at,
            last_used_at=device.last_used_at,
            expires_at=device.expires_at,
        )


class LoginResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    role: str
    username: str
    device_token: Optional[str] = None
    device_expires_at: Optional[datetime] = None
    is_device_trusted: bool = False
    trusted_devices: List[TrustedDeviceResponse] = Field(default_factory=list)

    @classmethod
    def from_result(cls, result: LoginResult) -> "LoginResponse":
        return cls(
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            token_type=result.token_type,
            expires_in=result.expires_in_seconds,
            role=result.principal.role,
            username=result.principal.username,
            device_token=result.device_token,
            device_expires_at=result.device_expires_at,
            is_device_trusted=result.is_device_trusted,
            trusted_devices=[TrustedDeviceResponse.from_device(d) for d in result.trusted_devices],
        )


class RefreshResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int

    @classmethod
    def from_result(cls, result: RefreshResult) -> "RefreshResponse":
        return cls(
            access_token=result.access_token,
            token_type=result.token_type,
            expires_in=result.expires_in_seconds,
        )


class OfferResponse(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    id: str
    chat_id: str
    offered_by_id: str
    offered_by_name: str
    offered_price: Decimal
    original_price: Decimal
    message: Optional[str] = None
    status: OfferStatus
    expires_at: datetime
    responded_at: Optional[datetime] = None
    created_at: datetime
    is_expired: bool
    can_respond: bool
    is_own_offer: bool

    @classmethod
    def from_view(cls, view: OfferView) -> "OfferResponse":
        return cls(
            id=view.id,
            chat_id=view.chat_id,
            offered_by_id=view.offered_by_id,
            offered_by_name=view.offered_by_name,
            offered_price=view.offered_price,
            original_price=view.original_price,
            message=view.message,
            status=view.status,
            expires_at=view.expires_at,
            responded_at=view.responded_at,
            created_at=view.created_at,
            is_expired=view.is_expired,
            can_respond=view.can_respond,
            is_own_offer=view.is_own_offer,
        )
