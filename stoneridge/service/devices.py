"""Trusted-device registry.

A fingerprint is a SHA-256 over user agent, accept headers and client IP. It
is deterministic and unsalted, so it only approximates client identity:
clients behind one NAT with identical browsers collide, and mobile clients
whose carrier IP changes stop matching.
"""

from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import ContextManager, List, Mapping, Optional, Protocol

from stoneridge.config import Settings
from stoneridge.logging import get_logger
from stoneridge.service.clock import Clock
from stoneridge.service.errors import ResourceNotFoundError
from stoneridge.service.notifications import NotificationKind, NotificationSink, notify_safely
from stoneridge.storage.models import Account, TrustedDevice

logger = get_logger(__name__)


@dataclass(frozen=True)
class RequestMeta:
    user_agent: Optional[str] = None
    accept_language: Optional[str] = None
    accept_encoding: Optional[str] = None
    forwarded_for: Optional[str] = None
    remote_addr: Optional[str] = None

    @classmethod
    def from_headers(
        cls, headers: Mapping[str, str], remote_addr: Optional[str] = None
    ) -> "RequestMeta":
        lowered = {k.lower(): v for k, v in headers.items()}
        return cls(
            user_agent=lowered.get("user-agent"),
            accept_language=lowered.get("accept-language"),
            accept_encoding=lowered.get("accept-encoding"),
            forwarded_for=lowered.get("x-forwarded-for"),
            remote_addr=remote_addr,
        )

    @property
    def client_ip(self) -> Optional[str]:
        if self.forwarded_for:
            first = self.forwarded_for.split(",")[0].strip()
            if first:
                return first
        return self.remote_addr


def fingerprint(meta: RequestMeta) -> str:
    data = "|".join(
        [
            meta.user_agent or "",
            meta.accept_language or "",
            meta.accept_encoding or "",
            meta.client_ip or "",
        ]
    )
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def extract_device_name(user_agent: Optional[str]) -> str:
    if not user_agent:
        return "Unknown Device"
    # iOS and Android agents also mention "Mac OS X" and "Linux"
    if "iPhone" in user_agent:
        return "iPhone"
    if "Android" in user_agent:
        return "Android Device"
    if "Windows" in user_agent:
        return "Windows PC"
    if "Mac" in user_agent:
        return "Mac"
    if "Linux" in user_agent:
        return "Linux PC"
    return "Unknown Device"


def detect_device_type(user_agent: Optional[str]) -> str:
    if not user_agent:
        return "unknown"
    if "Tablet" in user_agent or "iPad" in user_agent:
        return "tablet"
    if "Mobile" in user_agent or "Android" in user_agent or "iPhone" in user_agent:
        return "mobile"
    return "desktop"


class DeviceStore(Protocol):
    def transaction(self) -> ContextManager[object]: ...

    def lock_account_row(self, account_id: str) -> Optional[Account]: ...

    def find_active_device(self, account_id: str, fingerprint: str) -> Optional[TrustedDevice]: ...

    def list_devices(self, account_id: str) -> List[TrustedDevice]: ...

    def get_device(self, device_id: str) -> Optional[TrustedDevice]: ...

    def save_device(self, device: TrustedDevice) -> TrustedDevice: ...

    def touch_device(self, device_id: str, when: datetime) -> bool: ...

    def create_device(self, account_id: str, **fields) -> TrustedDevice: ...


class DeviceTrustRegistry:
    def __init__(
        self,
        store: DeviceStore,
        settings: Settings,
        clock: Clock,
        notifier: NotificationSink,
    ) -> None:
        self.store = store
        self.clock = clock
        self.notifier = notifier
        self.max_devices = settings.max_trusted_devices
        self.device_ttl = timedelta(days=settings.trusted_device_ttl_days)

    def is_trusted(self, account: Account, device_fingerprint: str) -> bool:
        """Check the active device for this fingerprint.

        A live device has ``last_used_at`` touched; an expired one is
        deactivated on the spot. Inactive or missing devices are untrusted.
        """
        device = self.store.find_active_device(account.id, device_fingerprint)
        if not device:
            return False
        now = self.clock.now()
        if device.is_trusted(now):
            if self.store.touch_device(device.id, now):
                return True
            # Evicted or revoked since the lookup
            logger.info("trusted_device_gone", account_id=account.id, device_id=device.id)
            return False
        device.active = False
        self.store.save_device(device)
        logger.info("trusted_device_expired", account_id=account.id, device_id=device.id)
        return False

    def trust(self, account: Account, device_fingerprint: str, meta: RequestMeta) -> TrustedDevice:
        """Create a trusted device, evicting least-recently-used ones past the cap.

        Eviction and insert run under the account row lock so concurrent
        "remember me" logins cannot exceed ``max_devices``.
        """
        now = self.clock.now()
        evicted: List[str] = []
        with self.store.transaction():
            self.store.lock_account_row(account.id)
            active: List[TrustedDevice] = []
            for device in self.store.list_devices(account.id):
                if not device.active:
                    continue
                if not device.is_trusted(now):
                    device.active = False
                    self.store.save_device(device)
                    continue
                active.append(device)
            # sorted() is stable, so equal last_used_at falls back to insertion order
            active = sorted(active, key=lambda d: d.last_used_at)
            while len(active) >= self.max_devices:
                oldest = active.pop(0)
                oldest.active = False
                self.store.save_device(oldest)
                evicted.append(oldest.id)
            device = self.store.create_device(
                account.id,
                device_token=secrets.token_urlsafe(32),
                fingerprint=device_fingerprint,
                expires_at=now + self.device_ttl,
                device_name=extract_device_name(meta.user_agent),
                device_type=detect_device_type(meta.user_agent),
                user_agent=meta.user_agent,
                ip_address=meta.client_ip,
                created_at=now,
            )
        if evicted:
            logger.info("trusted_devices_evicted", account_id=account.id, device_ids=evicted)
        logger.info("trusted_device_created", account_id=account.id, device_id=device.id)
        notify_safely(
            self.notifier,
            account.email,
            NotificationKind.NEW_DEVICE,
            {"device_name": device.device_name, "ip_address": device.ip_address},
        )
        return device

    def list_trusted(self, account_id: str) -> List[TrustedDevice]:
        now = self.clock.now()
        return [d for d in self.store.list_devices(account_id) if d.is_trusted(now)]

    def revoke(self, account_id: str, device_id: str) -> TrustedDevice:
        device = self.store.get_device(device_id)
        if not device or device.account_id != account_id or not device.active:
            raise ResourceNotFoundError("Device not found")
        device.active = False
        saved = self.store.save_device(device)
        logger.info("trusted_device_revoked", account_id=account_id, device_id=device_id)
        return saved

    def revoke_all(self, account_id: str) -> int:
        revoked = 0
        with self.store.transaction():
            for device in self.store.list_devices(account_id):
                if device.active:
                    device.active = False
                    self.store.save_device(device)
                    revoked += 1
        logger.info("trusted_devices_revoked", account_id=account_id, count=revoked)
        return revoked
