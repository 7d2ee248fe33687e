from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class ProductStatus(str, Enum):
    ACTIVE = "ACTIVE"
    RESERVED = "RESERVED"
    SOLD = "SOLD"


class OfferStatus(str, Enum):
    """Offer lifecycle. PENDING is the only non-terminal state."""

    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    COUNTER_OFFERED = "COUNTER_OFFERED"

    @property
    def is_terminal(self) -> bool:
        return self is not OfferStatus.PENDING


@dataclass
class Account:
    id: str
    username: str
    email: str
    password_hash: str
    first_name: str = ""
    last_name: Optional[str] = None
    display_name: Optional[str] = None
    role: Role = Role.USER
    enabled: bool = False
    email_verified: bool = False
    account_locked: bool = False
    failed_login_attempts: int = 0
    lock_time: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    email_verification_token: Optional[str] = None
    email_verification_expires_at: Optional[datetime] = None
    password_reset_token: Optional[str] = None
    password_reset_expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def full_name(self) -> str:
        if self.last_name:
            return f"{self.first_name} {self.last_name}".strip()
        return self.first_name

    @property
    def effective_display_name(self) -> str:
        return self.display_name or self.full_name or self.username


@dataclass
class Admin:
    id: str
    username: str
    email: str
    password_hash: str
    first_name: str = ""
    last_name: Optional[str] = None
    enabled: bool = True
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class TrustedDevice:
    id: str
    account_id: str
    device_token: str
    fingerprint: str
    expires_at: datetime
    device_name: str = "Unknown Device"
    device_type: str = "unknown"
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    last_used_at: datetime = field(default_factory=_utcnow)
    active: bool = True

    def is_trusted(self, now: datetime) -> bool:
        return self.active and now < self.expires_at


@dataclass
class Product:
    id: str
    seller_id: str
    title: str
    price: Decimal
    negotiable: bool = True
    status: ProductStatus = ProductStatus.ACTIVE
    buyer_id: Optional[str] = None
    sold_price: Optional[Decimal] = None
    sold_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def is_sold(self) -> bool:
        return self.status is ProductStatus.SOLD


@dataclass
class Chat:
    id: str
    product_id: str
    buyer_id: str
    seller_id: str
    created_at: datetime = field(default_factory=_utcnow)
    last_message_at: Optional[datetime] = None

    def has_participant(self, account_id: str) -> bool:
        return account_id in (self.buyer_id, self.seller_id)


@dataclass
class ChatMessage:
    id: str
    chat_id: str
    sender_id: str
    content: str
    message_type: str = "text"
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class Offer:
    id: str
    chat_id: str
    offered_by: str
    offered_price: Decimal
    expires_at: datetime
    message: Optional[str] = None
    status: OfferStatus = OfferStatus.PENDING
    responded_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_pending(self, now: datetime) -> bool:
        """Stored PENDING and still inside its validity window."""
        return self.status is OfferStatus.PENDING and not self.is_expired(now)
