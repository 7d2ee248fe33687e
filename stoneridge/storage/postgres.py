from __future__ import annotations

import contextlib
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from stoneridge.logging import get_logger
from stoneridge.storage.errors import ConstraintViolation, MissingSchemaError
from stoneridge.storage.models import (
    Account,
    Admin,
    Chat,
    ChatMessage,
    Offer,
    OfferStatus,
    Product,
    ProductStatus,
    Role,
    TrustedDevice,
)

REQUIRED_TABLES = (
    "account",
    "admin_account",
    "trusted_device",
    "product",
    "chat",
    "chat_message",
    "offer",
)

# Connection bound by the innermost open transaction() in this context
_tx_conn: ContextVar[Any] = ContextVar("stoneridge_tx_conn", default=None)


def _norm(value: str) -> str:
    return value.strip().lower()


def _account_from_row(row: dict) -> Account:
    return Account(
        id=str(row["id"]),
        username=row["username"],
        email=row["email"],
        password_hash=row["password_hash"],
        first_name=row.get("first_name") or "",
        last_name=row.get("last_name"),
        display_name=row.get("display_name"),
        role=Role(row.get("role") or Role.USER.value),
        enabled=bool(row.get("enabled")),
        email_verified=bool(row.get("email_verified")),
        account_locked=bool(row.get("account_locked")),
        failed_login_attempts=int(row.get("failed_login_attempts") or 0),
        lock_time=row.get("lock_time"),
        last_login_at=row.get("last_login_at"),
        last_login_ip=row.get("last_login_ip"),
        email_verification_token=row.get("email_verification_token"),
        email_verification_expires_at=row.get("email_verification_expires_at"),
        password_reset_token=row.get("password_reset_token"),
        password_reset_expires_at=row.get("password_reset_expires_at"),
        created_at=row.get("created_at") or datetime.now(timezone.utc),
    )


def _admin_from_row(row: dict) -> Admin:
    return Admin(
        id=str(row["id"]),
        username=row["username"],
        email=row["email"],
        password_hash=row["password_hash"],
        first_name=row.get("first_name") or "",
        last_name=row.get("last_name"),
        enabled=bool(row.get("enabled", True)),
        created_at=row.get("created_at") or datetime.now(timezone.utc),
    )


def _device_from_row(row: dict) -> TrustedDevice:
    return TrustedDevice(
        id=str(row["id"]),
        account_id=str(row["account_id"]),
        device_token=row["device_token"],
        fingerprint=row["fingerprint"],
        expires_at=row["expires_at"],
        device_name=row.get("device_name") or "Unknown Device",
        device_type=row.get("device_type") or "unknown",
        user_agent=row.get("user_agent"),
        ip_address=row.get("ip_address"),
        created_at=row["created_at"],
        last_used_at=row["last_used_at"],
        active=bool(row.get("active")),
    )


def _product_from_row(row: dict) -> Product:
    sold_price = row.get("sold_price")
    return Product(
        id=str(row["id"]),
        seller_id=str(row["seller_id"]),
        title=row["title"],
        price=Decimal(row["price"]),
        negotiable=bool(row.get("negotiable", True)),
        status=ProductStatus(row.get("status") or ProductStatus.ACTIVE.value),
        buyer_id=str(row["buyer_id"]) if row.get("buyer_id") else None,
        sold_price=Decimal(sold_price) if sold_price is not None else None,
        sold_at=row.get("sold_at"),
        created_at=row.get("created_at") or datetime.now(timezone.utc),
    )


def _chat_from_row(row: dict) -> Chat:
    return Chat(
        id=str(row["id"]),
        product_id=str(row["product_id"]),
        buyer_id=str(row["buyer_id"]),
        seller_id=str(row["seller_id"]),
        created_at=row.get("created_at") or datetime.now(timezone.utc),
        last_message_at=row.get("last_message_at"),
    )


def _message_from_row(row: dict) -> ChatMessage:
    return ChatMessage(
        id=str(row["id"]),
        chat_id=str(row["chat_id"]),
        sender_id=str(row["sender_id"]),
        content=row["content"],
        message_type=row.get("message_type") or "text",
        created_at=row["created_at"],
    )


def _offer_from_row(row: dict) -> Offer:
    return Offer(
        id=str(row["id"]),
        chat_id=str(row["chat_id"]),
        offered_by=str(row["offered_by"]),
        offered_price=Decimal(row["offered_price"]),
        expires_at=row["expires_at"],
        message=row.get("message"),
        status=OfferStatus(row["status"]),
        responded_at=row.get("responded_at"),
        created_at=row["created_at"],
    )


class PostgresStore:
    """Postgres-backed store for accounts, devices and negotiation records.

    ``transaction()`` binds one pooled connection to the current context so
    that every store call made inside the block joins the same database
    transaction. ``for_update`` reads issue ``SELECT ... FOR UPDATE`` and
    only make sense inside such a block.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[Any]:
        bound = _tx_conn.get()
        if bound is not None:
            yield bound
            return
        with self.pool.connection() as conn:
            yield conn

    @contextlib.contextmanager
    def transaction(self) -> Iterator["PostgresStore"]:
        if _tx_conn.get() is not None:
            yield self
            return
        with self.pool.connection() as conn:
            with conn.transaction():
                token = _tx_conn.set(conn)
                try:
                    yield self
                finally:
                    _tx_conn.reset(token)

    def _verify_required_schema(self) -> None:
        """Refuse to start when any table this store touches is missing."""

        with self._connect() as conn:
            missing = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
        if missing:
            raise MissingSchemaError(missing)

    def close(self) -> None:
        self.pool.close()

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
        account_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO account (
                        id, username, email, password_hash, first_name, last_name,
                        display_name, role, enabled, email_verified,
                        email_verification_token, email_verification_expires_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        account_id,
                        _norm(username),
                        _norm(email),
                        password_hash,
                        first_name,
                        last_name,
                        display_name,
                        role.value,
                        enabled,
                        email_verified,
                        email_verification_token,
                        email_verification_expires_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "email or username already exists", {"fields": ["email", "username"]}
            )
        return _account_from_row(row)

    def exists_by_email_or_username(self, email: str, username: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 AS hit FROM account WHERE email = %s OR username = %s LIMIT 1",
                (_norm(email), _norm(username)),
            ).fetchone()
        return row is not None

    def _fetch_account(self, where: str, params: tuple, *, for_update: bool = False) -> Optional[Account]:
        sql = f"SELECT * FROM account WHERE {where} LIMIT 1"
        if for_update:
            sql += " FOR UPDATE"
        with self._connect() as conn:
            row = conn.execute(sql, params).fetchone()
        return _account_from_row(row) if row else None

    def get_account(self, account_id: str) -> Optional[Account]:
        return self._fetch_account("id = %s", (account_id,))

    def lock_account_row(self, account_id: str) -> Optional[Account]:
        return self._fetch_account("id = %s", (account_id,), for_update=True)

    def find_by_username_or_email(self, identifier: str) -> Optional[Account]:
        ident = _norm(identifier)
        return self._fetch_account("username = %s OR email = %s", (ident, ident))

    def find_by_username(self, username: str) -> Optional[Account]:
        return self._fetch_account("username = %s", (_norm(username),))

    def find_by_email(self, email: str) -> Optional[Account]:
        return self._fetch_account("email = %s", (_norm(email),))

    def find_by_verification_token(self, token: str) -> Optional[Account]:
        return self._fetch_account("email_verification_token = %s", (token,))

    def find_by_reset_token(self, token: str) -> Optional[Account]:
        return self._fetch_account("password_reset_token = %s", (token,))

    def save_account(self, account: Account) -> Account:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE account SET
                        username = %s, email = %s, password_hash = %s,
                        first_name = %s, last_name = %s, display_name = %s,
                        role = %s, enabled = %s, email_verified = %s,
                        account_locked = %s, failed_login_attempts = %s, lock_time = %s,
                        last_login_at = %s, last_login_ip = %s,
                        email_verification_token = %s, email_verification_expires_at = %s,
                        password_reset_token = %s, password_reset_expires_at = %s
                    WHERE id = %s
                    RETURNING *
                    """,
                    (
                        _norm(account.username),
                        _norm(account.email),
                        account.password_hash,
                        account.first_name,
                        account.last_name,
                        account.display_name,
                        account.role.value,
                        account.enabled,
                        account.email_verified,
                        account.account_locked,
                        account.failed_login_attempts,
                        account.lock_time,
                        account.last_login_at,
                        account.last_login_ip,
                        account.email_verification_token,
                        account.email_verification_expires_at,
                        account.password_reset_token,
                        account.password_reset_expires_at,
                        account.id,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "email or username already exists", {"account_id": account.id}
            )
        if not row:
            raise ConstraintViolation("account does not exist", {"account_id": account.id})
        return _account_from_row(row)

    def increment_failed_attempts(self, account_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account SET failed_login_attempts = failed_login_attempts + 1
                WHERE id = %s
                RETURNING failed_login_attempts
                """,
                (account_id,),
            ).fetchone()
        if not row:
            raise ConstraintViolation("account does not exist", {"account_id": account_id})
        return int(row["failed_login_attempts"])

    def delete_account(self, account_id: str) -> bool:
        with self.transaction():
            with self._connect() as conn:
                conn.execute("DELETE FROM trusted_device WHERE account_id = %s", (account_id,))
                cur = conn.execute("DELETE FROM account WHERE id = %s", (account_id,))
                return cur.rowcount > 0

    def list_accounts(self, limit: int = 100) -> List[Account]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM account ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [_account_from_row(r) for r in rows]

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO admin_account (id, username, email, password_hash, first_name, last_name, enabled)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        _norm(username),
                        _norm(email),
                        password_hash,
                        first_name,
                        last_name,
                        enabled,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "admin email or username already exists", {"fields": ["email", "username"]}
            )
        return _admin_from_row(row)

    def save_admin(self, admin: Admin) -> Admin:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE admin_account SET password_hash = %s, first_name = %s, last_name = %s, enabled = %s
                WHERE id = %s
                RETURNING *
                """,
                (admin.password_hash, admin.first_name, admin.last_name, admin.enabled, admin.id),
            ).fetchone()
        if not row:
            raise ConstraintViolation("admin does not exist", {"admin_id": admin.id})
        return _admin_from_row(row)

    def find_admin_by_username_or_email(self, identifier: str) -> Optional[Admin]:
        ident = _norm(identifier)
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM admin_account WHERE username = %s OR email = %s LIMIT 1",
                (ident, ident),
            ).fetchone()
        return _admin_from_row(row) if row else None

    def find_admin_by_username(self, username: str) -> Optional[Admin]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM admin_account WHERE username = %s", (_norm(username),)
            ).fetchone()
        return _admin_from_row(row) if row else None

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO trusted_device (
                        id, account_id, device_token, fingerprint, expires_at, device_name,
                        device_type, user_agent, ip_address, created_at, last_used_at, active
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, TRUE)
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        account_id,
                        device_token,
                        fingerprint,
                        expires_at,
                        device_name,
                        device_type,
                        user_agent,
                        ip_address,
                        created_at,
                        created_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("device token already exists", {"field": "device_token"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("account does not exist", {"account_id": account_id})
        return _device_from_row(row)

    def find_active_device(self, account_id: str, fingerprint: str) -> Optional[TrustedDevice]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM trusted_device
                WHERE account_id = %s AND fingerprint = %s AND active
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (account_id, fingerprint),
            ).fetchone()
        return _device_from_row(row) if row else None

    def get_device(self, device_id: str) -> Optional[TrustedDevice]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM trusted_device WHERE id = %s", (device_id,)).fetchone()
        return _device_from_row(row) if row else None

    def list_devices(self, account_id: str) -> List[TrustedDevice]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM trusted_device WHERE account_id = %s ORDER BY created_at, id",
                (account_id,),
            ).fetchall()
        return [_device_from_row(r) for r in rows]

    def save_device(self, device: TrustedDevice) -> TrustedDevice:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE trusted_device SET
                    expires_at = %s, device_name = %s, device_type = %s,
                    last_used_at = %s, active = %s
                WHERE id = %s
                RETURNING *
                """,
                (
                    device.expires_at,
                    device.device_name,
                    device.device_type,
                    device.last_used_at,
                    device.active,
                    device.id,
                ),
            ).fetchone()
        if not row:
            raise ConstraintViolation("device does not exist", {"device_id": device.id})
        return _device_from_row(row)

    def touch_device(self, device_id: str, when: datetime) -> bool:
        """Bump ``last_used_at`` only while the device is still active."""
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE trusted_device SET last_used_at = %s WHERE id = %s AND active",
                (when, device_id),
            )
            return cur.rowcount > 0

    # products and chats
    def create_product(
        self,
        seller_id: str,
        title: str,
        price: Decimal,
        *,
        negotiable: bool = True,
    ) -> Product:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO product (id, seller_id, title, price, negotiable, status)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), seller_id, title, price, negotiable, ProductStatus.ACTIVE.value),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("seller does not exist", {"seller_id": seller_id})
        return _product_from_row(row)

    def get_product(self, product_id: str, *, for_update: bool = False) -> Optional[Product]:
        sql = "SELECT * FROM product WHERE id = %s"
        if for_update:
            sql += " FOR UPDATE"
        with self._connect() as conn:
            row = conn.execute(sql, (product_id,)).fetchone()
        return _product_from_row(row) if row else None

    def save_product(self, product: Product) -> Product:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE product SET
                    title = %s, price = %s, negotiable = %s, status = %s,
                    buyer_id = %s, sold_price = %s, sold_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (
                    product.title,
                    product.price,
                    product.negotiable,
                    product.status.value,
                    product.buyer_id,
                    product.sold_price,
                    product.sold_at,
                    product.id,
                ),
            ).fetchone()
        if not row:
            raise ConstraintViolation("product does not exist", {"product_id": product.id})
        return _product_from_row(row)

    def create_chat(self, product_id: str, buyer_id: str) -> Chat:
        with self.transaction():
            product = self.get_product(product_id)
            if not product:
                raise ConstraintViolation("product does not exist", {"product_id": product_id})
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO chat (id, product_id, buyer_id, seller_id)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (product_id, buyer_id) DO UPDATE SET product_id = EXCLUDED.product_id
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), product_id, buyer_id, product.seller_id),
                ).fetchone()
        return _chat_from_row(row)

    def get_chat(self, chat_id: str, *, for_update: bool = False) -> Optional[Chat]:
        sql = "SELECT * FROM chat WHERE id = %s"
        if for_update:
            sql += " FOR UPDATE"
        with self._connect() as conn:
            row = conn.execute(sql, (chat_id,)).fetchone()
        return _chat_from_row(row) if row else None

    def append_chat_message(
        self,
        chat_id: str,
        sender_id: str,
        content: str,
        *,
        message_type: str = "text",
        created_at: Optional[datetime] = None,
    ) -> ChatMessage:
        sent_at = created_at or datetime.now(timezone.utc)
        with self.transaction():
            with self._connect() as conn:
                try:
                    row = conn.execute(
                        """
                        INSERT INTO chat_message (id, chat_id, sender_id, content, message_type, created_at)
                        VALUES (%s, %s, %s, %s, %s, %s)
                        RETURNING *
                        """,
                        (str(uuid.uuid4()), chat_id, sender_id, content, message_type, sent_at),
                    ).fetchone()
                except errors.ForeignKeyViolation:
                    raise ConstraintViolation("chat does not exist", {"chat_id": chat_id})
                conn.execute(
                    "UPDATE chat SET last_message_at = %s WHERE id = %s", (sent_at, chat_id)
                )
        return _message_from_row(row)

    def list_chat_messages(self, chat_id: str) -> List[ChatMessage]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM chat_message WHERE chat_id = %s ORDER BY created_at, id",
                (chat_id,),
            ).fetchall()
        return [_message_from_row(r) for r in rows]

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO offer (id, chat_id, offered_by, offered_price, expires_at, message, status, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        chat_id,
                        offered_by,
                        offered_price,
                        expires_at,
                        message,
                        OfferStatus.PENDING.value,
                        created_at or datetime.now(timezone.utc),
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("chat does not exist", {"chat_id": chat_id})
        return _offer_from_row(row)

    def get_offer(self, offer_id: str, *, for_update: bool = False) -> Optional[Offer]:
        sql = "SELECT * FROM offer WHERE id = %s"
        if for_update:
            sql += " FOR UPDATE"
        with self._connect() as conn:
            row = conn.execute(sql, (offer_id,)).fetchone()
        return _offer_from_row(row) if row else None

    def list_offers_for_chat(self, chat_id: str) -> List[Offer]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM offer WHERE chat_id = %s ORDER BY created_at DESC",
                (chat_id,),
            ).fetchall()
        return [_offer_from_row(r) for r in rows]

    def list_active_pending_offers(self, chat_id: str, now: datetime) -> List[Offer]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM offer
                WHERE chat_id = %s AND status = %s AND expires_at > %s
                ORDER BY created_at
                """,
                (chat_id, OfferStatus.PENDING.value, now),
            ).fetchall()
        return [_offer_from_row(r) for r in rows]

    def list_pending_offers_for_seller(self, seller_id: str, now: datetime) -> List[Offer]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT o.* FROM offer o
                JOIN chat c ON c.id = o.chat_id
                WHERE c.seller_id = %s AND o.status = %s AND o.expires_at > %s
                ORDER BY o.created_at
                """,
                (seller_id, OfferStatus.PENDING.value, now),
            ).fetchall()
        return [_offer_from_row(r) for r in rows]

    def transition_offer(
        self,
        offer_id: str,
        new_status: OfferStatus,
        *,
        responded_at: Optional[datetime] = None,
        expected: OfferStatus = OfferStatus.PENDING,
    ) -> bool:
        """Compare-and-set on status; False when the offer is not in ``expected``."""
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE offer SET status = %s, responded_at = COALESCE(%s, responded_at)
                WHERE id = %s AND status = %s
                """,
                (new_status.value, responded_at, offer_id, expected.value),
            )
            return cur.rowcount == 1

    def reject_expired_offers(self, now: datetime) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE offer SET status = %s
                WHERE status = %s AND expires_at < %s
                RETURNING id
                """,
                (OfferStatus.REJECTED.value, OfferStatus.PENDING.value, now),
            ).fetchall()
        return [str(r["id"]) for r in rows]
