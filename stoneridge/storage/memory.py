from __future__ import annotations

import contextlib
import copy
import threading
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Iterator, List, Optional

from stoneridge.logging import get_logger
from stoneridge.storage.errors import ConstraintViolation
from stoneridge.storage.models import (
    Account,
    Admin,
    Chat,
    ChatMessage,
    Offer,
    OfferStatus,
    Product,
    Role,
    TrustedDevice,
)


def _norm(value: str) -> str:
    return value.strip().lower()


class MemoryStore:
    """In-memory backing store used by tests and single-process deployments.

    All tables are guarded by one re-entrant lock. ``transaction()`` holds
    that lock for the whole block and restores a snapshot of every table if
    the block raises, so multi-record updates are all-or-nothing. Records
    handed out are copies; changes only land through ``save_*`` calls.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.admins: Dict[str, Admin] = {}
        self.devices: Dict[str, TrustedDevice] = {}
        self.products: Dict[str, Product] = {}
        self.chats: Dict[str, Chat] = {}
        self.messages: Dict[str, List[ChatMessage]] = {}
        self.offers: Dict[str, Offer] = {}
        # RLock so store methods can be called from inside transaction()
        self._data_lock = threading.RLock()
        self._tx_depth = 0

    # transactions
    _TABLES = ("accounts", "admins", "devices", "products", "chats", "messages", "offers")

    @contextlib.contextmanager
    def transaction(self) -> Iterator["MemoryStore"]:
        with self._data_lock:
            if self._tx_depth:
                # Nested blocks join the outer unit of work
                self._tx_depth += 1
                try:
                    yield self
                finally:
                    self._tx_depth -= 1
                return
            snapshot = {name: copy.deepcopy(getattr(self, name)) for name in self._TABLES}
            self._tx_depth = 1
            try:
                yield self
            except BaseException:
                for name, table in snapshot.items():
                    setattr(self, name, table)
                self.logger.warning("memory_transaction_rolled_back")
                raise
            finally:
                self._tx_depth = 0

    # accounts
    def create_account(
        self,
        username: str,
        email: str,
        password_hash: str,
        *,
        first_name: str = "",
        last_name: Optional[str] = None,
        display_name: Optional[str] = None,
        role: Role = Role.USER,
        enabled: bool = False,
        email_verified: bool = False,
        email_verification_token: Optional[str] = None,
        email_verification_expires_at: Optional[datetime] = None,
    ) -> Account:
        with self._data_lock:
            username, email = _norm(username), _norm(email)
            if self.exists_by_email_or_username(email, username):
                raise ConstraintViolation(
                    "email or username already exists", {"fields": ["email", "username"]}
                )
            account = Account(
                id=str(uuid.uuid4()),
                username=username,
                email=email,
                password_hash=password_hash,
                first_name=first_name,
                last_name=last_name,
                display_name=display_name,
                role=role,
                enabled=enabled,
                email_verified=email_verified,
                email_verification_token=email_verification_token,
                email_verification_expires_at=email_verification_expires_at,
            )
            self.accounts[account.id] = account
            return copy.copy(account)

    def exists_by_email_or_username(self, email: str, username: str) -> bool:
        email, username = _norm(email), _norm(username)
        with self._data_lock:
            return any(
                a.email == email or a.username == username for a in self.accounts.values()
            )

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return copy.copy(account) if account else None

    def lock_account_row(self, account_id: str) -> Optional[Account]:
        # The transaction lock already serialises every writer
        return self.get_account(account_id)

    def _find_account(self, predicate) -> Optional[Account]:
        with self._data_lock:
            account = next((a for a in self.accounts.values() if predicate(a)), None)
            return copy.copy(account) if account else None

    def find_by_username_or_email(self, identifier: str) -> Optional[Account]:
        ident = _norm(identifier)
        return self._find_account(lambda a: a.username == ident or a.email == ident)

    def find_by_username(self, username: str) -> Optional[Account]:
        ident = _norm(username)
        return self._find_account(lambda a: a.username == ident)

    def find_by_email(self, email: str) -> Optional[Account]:
        ident = _norm(email)
        return self._find_account(lambda a: a.email == ident)

    def find_by_verification_token(self, token: str) -> Optional[Account]:
        return self._find_account(lambda a: a.email_verification_token == token)

    def find_by_reset_token(self, token: str) -> Optional[Account]:
        return self._find_account(lambda a: a.password_reset_token == token)

    def save_account(self, account: Account) -> Account:
        with self._data_lock:
            if account.id not in self.accounts:
                raise ConstraintViolation("account does not exist", {"account_id": account.id})
            stored = copy.copy(account)
            stored.username, stored.email = _norm(stored.username), _norm(stored.email)
            for other in self.accounts.values():
                if other.id != stored.id and (
                    other.email == stored.email or other.username == stored.username
                ):
                    raise ConstraintViolation(
                        "email or username already exists", {"account_id": account.id}
                    )
            self.accounts[stored.id] = stored
            return copy.copy(stored)

    def increment_failed_attempts(self, account_id: str) -> int:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                raise ConstraintViolation("account does not exist", {"account_id": account_id})
            account.failed_login_attempts += 1
            return account.failed_login_attempts

    def delete_account(self, account_id: str) -> bool:
        with self._data_lock:
            if account_id not in self.accounts:
                return False
            self.accounts.pop(account_id, None)
            for device_id, device in list(self.devices.items()):
                if device.account_id == account_id:
                    self.devices.pop(device_id, None)
            return True

    def list_accounts(self, limit: int = 100) -> List[Account]:
        with self._data_lock:
            ordered = sorted(self.accounts.values(), key=lambda a: a.created_at, reverse=True)
            return [copy.copy(a) for a in ordered[:limit]]

    # admins
    def create_admin(
        self,
        username: str,
        email: str,
        password_hash: str,
        *,
        first_name: str = "",
        last_name: Optional[str] = None,
        enabled: bool = True,
    ) -> Admin:
        with self._data_lock:
            username, email = _norm(username), _norm(email)
            if any(a.username == username or a.email == email for a in self.admins.values()):
                raise ConstraintViolation(
                    "admin email or username already exists", {"fields": ["email", "username"]}
                )
            admin = Admin(
                id=str(uuid.uuid4()),
                username=username,
                email=email,
                password_hash=password_hash,
                first_name=first_name,
                last_name=last_name,
                enabled=enabled,
            )
            self.admins[admin.id] = admin
            return copy.copy(admin)

    def save_admin(self, admin: Admin) -> Admin:
        with self._data_lock:
            if admin.id not in self.admins:
                raise ConstraintViolation("admin does not exist", {"admin_id": admin.id})
            self.admins[admin.id] = copy.copy(admin)
            return copy.copy(admin)

    def find_admin_by_username_or_email(self, identifier: str) -> Optional[Admin]:
        ident = _norm(identifier)
        with self._data_lock:
            admin = next(
                (a for a in self.admins.values() if a.username == ident or a.email == ident),
                None,
            )
            return copy.copy(admin) if admin else None

    def find_admin_by_username(self, username: str) -> Optional[Admin]:
        ident = _norm(username)
        with self._data_lock:
            admin = next((a for a in self.admins.values() if a.username == ident), None)
            return copy.copy(admin) if admin else None

    # trusted devices
    def create_device(
        self,
        account_id: str,
        *,
        device_token: str,
        fingerprint: str,
        expires_at: datetime,
        device_name: str,
        device_type: str,
        user_agent: Optional[str],
        ip_address: Optional[str],
        created_at: datetime,
    ) -> TrustedDevice:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation("account does not exist", {"account_id": account_id})
            if any(d.device_token == device_token for d in self.devices.values()):
                raise ConstraintViolation("device token already exists", {"field": "device_token"})
            device = TrustedDevice(
                id=str(uuid.uuid4()),
                account_id=account_id,
                device_token=device_token,
                fingerprint=fingerprint,
                expires_at=expires_at,
                device_name=device_name,
                device_type=device_type,
                user_agent=user_agent,
                ip_address=ip_address,
                created_at=created_at,
                last_used_at=created_at,
                active=True,
            )
            self.devices[device.id] = device
            return copy.copy(device)

    def find_active_device(self, account_id: str, fingerprint: str) -> Optional[TrustedDevice]:
        with self._data_lock:
            device = next(
                (
                    d
                    for d in self.devices.values()
                    if d.account_id == account_id and d.fingerprint == fingerprint and d.active
                ),
                None,
            )
            return copy.copy(device) if device else None

    def get_device(self, device_id: str) -> Optional[TrustedDevice]:
        with self._data_lock:
            device = self.devices.get(device_id)
            return copy.copy(device) if device else None

    def list_devices(self, account_id: str) -> List[TrustedDevice]:
        with self._data_lock:
            return [copy.copy(d) for d in self.devices.values() if d.account_id == account_id]

    def save_device(self, device: TrustedDevice) -> TrustedDevice:
        with self._data_lock:
            if device.id not in self.devices:
                raise ConstraintViolation("device does not exist", {"device_id": device.id})
            self.devices[device.id] = copy.copy(device)
            return copy.copy(device)

    def touch_device(self, device_id: str, when: datetime) -> bool:
        with self._data_lock:
            device = self.devices.get(device_id)
            if not device or not device.active:
                return False
            device.last_used_at = when
            return True

    # products and chats
    def create_product(
        self,
        seller_id: str,
        title: str,
        price: Decimal,
        *,
        negotiable: bool = True,
    ) -> Product:
        with self._data_lock:
            if seller_id not in self.accounts:
                raise ConstraintViolation("seller does not exist", {"seller_id": seller_id})
            product = Product(
                id=str(uuid.uuid4()),
                seller_id=seller_id,
                title=title,
                price=Decimal(price),
                negotiable=negotiable,
            )
            self.products[product.id] = product
            return copy.copy(product)

    def get_product(self, product_id: str, *, for_update: bool = False) -> Optional[Product]:
        with self._data_lock:
            product = self.products.get(product_id)
            return copy.copy(product) if product else None

    def save_product(self, product: Product) -> Product:
        with self._data_lock:
            if product.id not in self.products:
                raise ConstraintViolation("product does not exist", {"product_id": product.id})
            self.products[product.id] = copy.copy(product)
            return copy.copy(product)

    def create_chat(self, product_id: str, buyer_id: str) -> Chat:
        with self._data_lock:
            product = self.products.get(product_id)
            if not product:
                raise ConstraintViolation("product does not exist", {"product_id": product_id})
            if buyer_id not in self.accounts:
                raise ConstraintViolation("buyer does not exist", {"buyer_id": buyer_id})
            existing = next(
                (
                    c
                    for c in self.chats.values()
                    if c.product_id == product_id and c.buyer_id == buyer_id
                ),
                None,
            )
            if existing:
                return copy.copy(existing)
            chat = Chat(
                id=str(uuid.uuid4()),
                product_id=product_id,
                buyer_id=buyer_id,
                seller_id=product.seller_id,
            )
            self.chats[chat.id] = chat
            self.messages[chat.id] = []
            return copy.copy(chat)

    def get_chat(self, chat_id: str, *, for_update: bool = False) -> Optional[Chat]:
        with self._data_lock:
            chat = self.chats.get(chat_id)
            return copy.copy(chat) if chat else None

    def append_chat_message(
        self,
        chat_id: str,
        sender_id: str,
        content: str,
        *,
        message_type: str = "text",
        created_at: Optional[datetime] = None,
    ) -> ChatMessage:
        with self._data_lock:
            chat = self.chats.get(chat_id)
            if not chat:
                raise ConstraintViolation("chat does not exist", {"chat_id": chat_id})
            sent_at = created_at or datetime.now(timezone.utc)
            message = ChatMessage(
                id=str(uuid.uuid4()),
                chat_id=chat_id,
                sender_id=sender_id,
                content=content,
                message_type=message_type,
                created_at=sent_at,
            )
            self.messages.setdefault(chat_id, []).append(message)
            chat.last_message_at = sent_at
            return copy.copy(message)

    def list_chat_messages(self, chat_id: str) -> List[ChatMessage]:
        with self._data_lock:
            return [copy.copy(m) for m in self.messages.get(chat_id, [])]

    # offers
    def create_offer(
        self,
        chat_id: str,
        offered_by: str,
        offered_price: Decimal,
        expires_at: datetime,
        *,
        message: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> Offer:
        with self._data_lock:
            if chat_id not in self.chats:
                raise ConstraintViolation("chat does not exist", {"chat_id": chat_id})
            offer = Offer(
                id=str(uuid.uuid4()),
                chat_id=chat_id,
                offered_by=offered_by,
                offered_price=offered_price,
                expires_at=expires_at,
                message=message,
                status=OfferStatus.PENDING,
                created_at=created_at or datetime.now(timezone.utc),
            )
            self.offers[offer.id] = offer
            return copy.copy(offer)

    def get_offer(self, offer_id: str, *, for_update: bool = False) -> Optional[Offer]:
        with self._data_lock:
            offer = self.offers.get(offer_id)
            return copy.copy(offer) if offer else None

    def list_offers_for_chat(self, chat_id: str) -> List[Offer]:
        with self._data_lock:
            # Stable sort keeps insertion order for equal timestamps, newest first
            ordered = sorted(
                (o for o in self.offers.values() if o.chat_id == chat_id),
                key=lambda o: o.created_at,
                reverse=True,
            )
            return [copy.copy(o) for o in ordered]

    def list_active_pending_offers(self, chat_id: str, now: datetime) -> List[Offer]:
        with self._data_lock:
            return [
                copy.copy(o)
                for o in self.offers.values()
                if o.chat_id == chat_id
                and o.status is OfferStatus.PENDING
                and o.expires_at > now
            ]

    def list_pending_offers_for_seller(self, seller_id: str, now: datetime) -> List[Offer]:
        with self._data_lock:
            chat_ids = {c.id for c in self.chats.values() if c.seller_id == seller_id}
            return [
                copy.copy(o)
                for o in self.offers.values()
                if o.chat_id in chat_ids
                and o.status is OfferStatus.PENDING
                and o.expires_at > now
            ]

    def transition_offer(
        self,
        offer_id: str,
        new_status: OfferStatus,
        *,
        responded_at: Optional[datetime] = None,
        expected: OfferStatus = OfferStatus.PENDING,
    ) -> bool:
        """Compare-and-set on status; False when the offer is not in ``expected``."""
        with self._data_lock:
            offer = self.offers.get(offer_id)
            if not offer or offer.status is not expected:
                return False
            offer.status = new_status
            if responded_at is not None:
                offer.responded_at = responded_at
            return True

    def reject_expired_offers(self, now: datetime) -> List[str]:
        with self._data_lock:
            expired = [
                o
                for o in self.offers.values()
                if o.status is OfferStatus.PENDING and o.expires_at < now
            ]
            for offer in expired:
                offer.status = OfferStatus.REJECTED
            return [o.id for o in expired]
