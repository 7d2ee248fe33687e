from __future__ import annotations

import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from stoneridge.config import Settings
from stoneridge.logging import get_logger
from stoneridge.service.clock import Clock
from stoneridge.service.devices import DeviceTrustRegistry, RequestMeta, fingerprint
from stoneridge.service.errors import (
    BadCredentialsError,
    DuplicateResourceError,
    EmailNotVerifiedError,
    IllegalStateError,
    InvalidTokenError,
    ResourceNotFoundError,
    ValidationError,
    VerificationTokenError,
    VerificationTokenExpiredError,
)
from stoneridge.service.lockout import LockoutLedger
from stoneridge.service.notifications import NotificationKind, NotificationSink, notify_safely
from stoneridge.service.passwords import PasswordHasher
from stoneridge.service.principals import (
    AdminPrincipal,
    Principal,
    PrincipalResolver,
    UserPrincipal,
)
from stoneridge.service.tokens import TokenService
from stoneridge.storage.errors import ConstraintViolation
from stoneridge.storage.models import Account, Role, TrustedDevice

logger = get_logger(__name__)

USERNAME_RE = re.compile(r"^[a-zA-Z0-9_]{3,20}$")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PASSWORD_RE = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d).{8,}$")

TOKEN_TYPE = "Bearer"


@dataclass
class LoginResult:
    access_token: str
    refresh_token: str
    expires_in_seconds: int
    principal: Principal
    token_type: str = TOKEN_TYPE
    account: Optional[Account] = None
    device_token: Optional[str] = None
    device_expires_at: Optional[datetime] = None
    is_device_trusted: bool = False
    trusted_devices: List[TrustedDevice] = field(default_factory=list)


@dataclass(frozen=True)
class RefreshResult:
    access_token: str
    expires_in_seconds: int
    token_type: str = TOKEN_TYPE


def _validate_password(password: str) -> None:
    if not password or not PASSWORD_RE.match(password):
        raise ValidationError(
            "Password must be at least 8 characters and contain an uppercase letter, "
            "a lowercase letter and a number",
            detail={"field": "password"},
        )


class AuthService:
    """Registration, login, refresh and device/session management for accounts.

    Login runs lookup, verification gate, lockout gate, password check,
    success bookkeeping, device trust, then token minting. Unknown accounts
    and wrong passwords share ``BadCredentialsError``; unverified and locked
    accounts get their own errors.
    """

    def __init__(
        self,
        store,
        settings: Settings,
        clock: Clock,
        hasher: PasswordHasher,
        tokens: TokenService,
        ledger: LockoutLedger,
        devices: DeviceTrustRegistry,
        notifier: NotificationSink,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock
        self.hasher = hasher
        self.tokens = tokens
        self.ledger = ledger
        self.devices = devices
        self.notifier = notifier
        self.resolver = PrincipalResolver(store)

    @property
    def expires_in_seconds(self) -> int:
        return int(self.tokens.access_ttl.total_seconds())

    # registration and verification
    def register(
        self,
        username: str,
        email: str,
        password: str,
        *,
        first_name: str,
        last_name: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> Account:
        username = (username or "").strip().lower()
        email = (email or "").strip().lower()
        if not USERNAME_RE.match(username):
            raise ValidationError(
                "Username must be 3-20 letters, numbers or underscores",
                detail={"field": "username"},
            )
        if not EMAIL_RE.match(email):
            raise ValidationError("Please provide a valid email address", detail={"field": "email"})
        if not first_name or not first_name.strip():
            raise ValidationError("First name is required", detail={"field": "first_name"})
        _validate_password(password)
        if self.store.exists_by_email_or_username(email, username):
            raise DuplicateResourceError("Email or username already taken")

        first_name = first_name.strip()
        last_name = last_name.strip() if last_name and last_name.strip() else None
        if display_name and display_name.strip():
            display_name = display_name.strip()
        else:
            display_name = f"{first_name} {last_name}" if last_name else first_name

        token = secrets.token_urlsafe(32)
        expiry_hours = self.settings.email_verification_expiry_hours
        try:
            account = self.store.create_account(
                username,
                email,
                self.hasher.hash(password),
                first_name=first_name,
                last_name=last_name,
                display_name=display_name,
                role=Role.USER,
                enabled=False,
                email_verified=False,
                email_verification_token=token,
                email_verification_expires_at=self.clock.now() + timedelta(hours=expiry_hours),
            )
        except ConstraintViolation as exc:
            raise DuplicateResourceError("Email or username already taken", detail=exc.detail)
        notify_safely(
            self.notifier,
            account.email,
            NotificationKind.VERIFICATION,
            {"name": account.full_name, "token": token, "expires_in_hours": expiry_hours},
        )
        logger.info("account_registered", account_id=account.id, username=account.username)
        return account

    def verify_email(self, token: str) -> Account:
        account = self.store.find_by_verification_token(token) if token else None
        if not account:
            raise VerificationTokenError("Invalid verification token")
        expires_at = account.email_verification_expires_at
        if expires_at is None or expires_at < self.clock.now():
            raise VerificationTokenExpiredError(
                "Verification token has expired. Please request a new one."
            )

        def _verify(current: Account) -> None:
            if current.email_verification_token != token:
                raise VerificationTokenError("Invalid verification token")
            current.email_verified = True
            current.enabled = True
            current.email_verification_token = None
            current.email_verification_expires_at = None

        saved = self._update_account(account.id, _verify)
        logger.info("email_verified", account_id=account.id)
        return saved

    def resend_verification(self, email: str) -> None:
        account = self.store.find_by_email(email or "")
        if not account:
            raise ResourceNotFoundError("User not found")
        if account.email_verified:
            raise IllegalStateError("Email is already verified")
        token = secrets.token_urlsafe(32)
        expiry_hours = self.settings.email_verification_expiry_hours
        expires_at = self.clock.now() + timedelta(hours=expiry_hours)

        def _reissue(current: Account) -> None:
            current.email_verification_token = token
            current.email_verification_expires_at = expires_at

        self._update_account(account.id, _reissue)
        notify_safely(
            self.notifier,
            account.email,
            NotificationKind.VERIFICATION,
            {"name": account.full_name, "token": token, "expires_in_hours": expiry_hours},
        )
        logger.info("verification_resent", account_id=account.id)

    # login and tokens
    def login(
        self,
        username_or_email: str,
        password: str,
        meta: Optional[RequestMeta] = None,
        *,
        remember_device: bool = False,
    ) -> LoginResult:
        meta = meta or RequestMeta()
        account = self.store.find_by_username_or_email((username_or_email or "").strip())
        if not account:
            logger.info("login_unknown_account")
            raise BadCredentialsError("Invalid credentials")

        if not account.email_verified:
            raise EmailNotVerifiedError(
                "Please verify your email before logging in. "
                "Check your inbox for the verification link."
            )

        account = self.ledger.ensure_unlocked(account)

        if not self.hasher.verify(password or "", account.password_hash):
            state = self.ledger.record_failure(account)
            raise BadCredentialsError(
                f"Invalid credentials. {state.remaining_attempts} attempts remaining",
                detail={"remaining_attempts": state.remaining_attempts},
            )

        if not account.enabled:
            logger.info("login_rejected_disabled", account_id=account.id)
            raise BadCredentialsError("Account is disabled")

        account = self.ledger.record_success(account, meta.client_ip)

        device_fp = fingerprint(meta)
        trusted = self.devices.is_trusted(account, device_fp)
        device_token = None
        device_expires_at = None
        if remember_device and not trusted:
            device = self.devices.trust(account, device_fp, meta)
            device_token = device.device_token
            device_expires_at = device.expires_at

        principal = UserPrincipal.from_account(account)
        result = LoginResult(
            access_token=self.tokens.mint_access(principal),
            refresh_token=self.tokens.mint_refresh(principal),
            expires_in_seconds=self.expires_in_seconds,
            principal=principal,
            account=account,
            device_token=device_token,
            device_expires_at=device_expires_at,
            is_device_trusted=trusted,
            trusted_devices=self.devices.list_trusted(account.id),
        )
        logger.info(
            "login_succeeded",
            account_id=account.id,
            device_trusted=trusted,
            device_created=device_token is not None,
        )
        return result

    def admin_login(self, username_or_email: str, password: str) -> LoginResult:
        admin = self.store.find_admin_by_username_or_email((username_or_email or "").strip())
        if not admin:
            raise BadCredentialsError("Invalid credentials")
        if not admin.enabled:
            raise BadCredentialsError("Account is disabled")
        if not self.hasher.verify(password or "", admin.password_hash):
            logger.info("admin_login_failed", admin_id=admin.id)
            raise BadCredentialsError("Invalid credentials")
        principal = AdminPrincipal.from_admin(admin)
        logger.info("admin_login_succeeded", admin_id=admin.id)
        return LoginResult(
            access_token=self.tokens.mint_access(principal),
            refresh_token=self.tokens.mint_refresh(principal),
            expires_in_seconds=self.expires_in_seconds,
            principal=principal,
        )

    def refresh(self, refresh_token: str) -> RefreshResult:
        """Mint a new access token; the refresh token itself is not rotated.

        Decode, lookup and validation failures all raise the same
        ``InvalidTokenError``.
        """
        if not refresh_token or not refresh_token.strip():
            raise BadCredentialsError("Refresh token is required")
        try:
            subject = self.tokens.peek_subject(refresh_token)
            principal = self.resolver.resolve(subject)
            self.tokens.validate(refresh_token, expected_subject=subject)
        except BadCredentialsError:
            logger.warning("refresh_rejected")
            raise InvalidTokenError("Invalid or expired refresh token") from None
        if not principal.enabled:
            logger.info("refresh_rejected_disabled", principal_id=principal.id)
            raise BadCredentialsError("Account is disabled")
        logger.info("token_refreshed", principal_id=principal.id, role=principal.role)
        return RefreshResult(
            access_token=self.tokens.mint_access(principal),
            expires_in_seconds=self.expires_in_seconds,
        )

    def authenticate(self, access_token: str) -> Principal:
        """Resolve a bearer access token to an enabled principal."""
        claims = self.tokens.validate(access_token)
        principal = self.resolver.resolve(claims.subject)
        if not principal.enabled:
            raise BadCredentialsError("Account is disabled")
        return principal

    # devices and sessions
    def _require_account(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if not account:
            raise ResourceNotFoundError("User not found")
        return account

    def _update_account(self, account_id: str, apply: Callable[[Account], None]) -> Account:
        """Apply ``apply`` to the row re-read under its lock, then save it.

        Lockout columns committed by a concurrent login survive the write.
        """
        with self.store.transaction():
            current = self.store.lock_account_row(account_id)
            if not current:
                raise ResourceNotFoundError("User not found")
            apply(current)
            return self.store.save_account(current)

    def list_trusted_devices(self, account_id: str) -> List[TrustedDevice]:
        self._require_account(account_id)
        return self.devices.list_trusted(account_id)

    def revoke_trusted_device(self, account_id: str, device_id: str) -> None:
        self._require_account(account_id)
        self.devices.revoke(account_id, device_id)

    def logout(self, account_id: str) -> None:
        # Tokens are stateless; the client discards them
        logger.info("logout", account_id=account_id)

    def logout_all_devices(self, account_id: str) -> int:
        self._require_account(account_id)
        return self.devices.revoke_all(account_id)

    def delete_account(self, account_id: str) -> None:
        account = self._require_account(account_id)
        self.store.delete_account(account.id)
        logger.info("account_deleted", account_id=account_id)

    # password reset
    def initiate_password_reset(self, email: str) -> None:
        account = self.store.find_by_email(email or "")
        if not account:
            logger.info("password_reset_unknown_email")
            return
        token = secrets.token_urlsafe(32)
        expiry_minutes = self.settings.password_reset_expiry_minutes
        expires_at = self.clock.now() + timedelta(minutes=expiry_minutes)

        def _issue(current: Account) -> None:
            current.password_reset_token = token
            current.password_reset_expires_at = expires_at

        self._update_account(account.id, _issue)
        notify_safely(
            self.notifier,
            account.email,
            NotificationKind.PASSWORD_RESET,
            {"name": account.full_name, "token": token, "expires_in_minutes": expiry_minutes},
        )
        logger.info("password_reset_initiated", account_id=account.id)

    def reset_password(self, token: str, new_password: str) -> None:
        account = self.store.find_by_reset_token(token) if token else None
        if not account:
            raise VerificationTokenError("Invalid password reset token")
        expires_at = account.password_reset_expires_at
        if expires_at is None or expires_at < self.clock.now():
            raise VerificationTokenExpiredError("Password reset token has expired")
        _validate_password(new_password)
        password_hash = self.hasher.hash(new_password)

        def _reset(current: Account) -> None:
            if current.password_reset_token != token:
                raise VerificationTokenError("Invalid password reset token")
            current.password_hash = password_hash
            current.password_reset_token = None
            current.password_reset_expires_at = None

        self._update_account(account.id, _reset)
        logger.info("password_reset_completed", account_id=account.id)

    # moderation
    def _set_enabled(self, account_id: str, enabled: bool) -> Account:
        def _apply(current: Account) -> None:
            current.enabled = enabled

        saved = self._update_account(account_id, _apply)
        logger.info("account_enabled_changed", account_id=account_id, enabled=enabled)
        return saved

    def suspend_account(self, account_id: str) -> Account:
        return self._set_enabled(account_id, False)

    def unsuspend_account(self, account_id: str) -> Account:
        return self._set_enabled(account_id, True)

    def lock_account(self, account_id: str) -> Account:
        return self.ledger.admin_lock(account_id)

    def unlock_account(self, account_id: str) -> Account:
        return self.ledger.admin_unlock(account_id)
