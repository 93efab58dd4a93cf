from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, FrozenSet, Optional, Tuple

from citizenauth.config import Settings
from citizenauth.logging import get_logger
from citizenauth.service.context import ANONYMOUS, OperationContext
from citizenauth.service.errors import (
    PasswordChangeRequired,
    RefreshInvalid,
    ReuseDetected,
    TokenExpired,
    TokenInvalid,
)
from citizenauth.service.permissions import Grants, PermissionResolver
from citizenauth.service.sessions import RevocationReason, SessionLedger
from citizenauth.storage.base import AuthStore
from citizenauth.storage.models import Account, AccountStatus, SessionRecord, utcnow

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
PASSWORD_CHANGE = "password_change"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


@dataclass(frozen=True)
class AccessClaims:
    account_id: str
    username: str
    email: str
    roles: Tuple[str, ...]
    permissions: FrozenSet[str]
    token_id: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class RotationResult:
    account: Account
    grants: Grants
    tokens: TokenPair


def _from_timestamp(value: Any) -> datetime:
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


class TokenService:
    """Mints and verifies HS256 tokens and rotates refresh tokens on use.

    Access tokens are stateless. Refresh tokens are signed with their own
    secret and are only honoured while the matching :class:`SessionRecord`
    is live.
    """

    def __init__(
        self,
        store: AuthStore,
        ledger: SessionLedger,
        resolver: PermissionResolver,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        settings.require_secrets()
        self.store = store
        self.ledger = ledger
        self.resolver = resolver
        self.settings = settings
        self._clock = clock
        self._access_secret = settings.jwt_access_secret.encode()
        self._refresh_secret = settings.jwt_refresh_secret.encode()

    def _now(self) -> datetime:
        return self._clock()

    # encoding
    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, secret: bytes) -> str:
        return self._encode_segment(
            hmac.new(secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any], secret: bytes) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, secret)}"

    def _decode_jwt(self, token: str, secret: bytes, expected_type: str) -> dict[str, Any]:
        """Return verified claims or raise ``TokenInvalid`` / ``TokenExpired``."""

        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise TokenInvalid("malformed token")

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            raise TokenInvalid("malformed token")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            raise TokenInvalid()

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", secret)
        if not sig_b64.isascii() or not hmac.compare_digest(expected_sig, sig_b64):
            raise TokenInvalid()
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError):
            raise TokenInvalid("malformed token")
        if not isinstance(payload, dict):
            raise TokenInvalid("malformed token")
        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenInvalid()
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise TokenInvalid()
        if payload.get("token_type") != expected_type:
            raise TokenInvalid()
        if not payload.get("account_id") or not payload.get("jti"):
            raise TokenInvalid()
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenInvalid()
        if exp_ts <= self._now().timestamp():
            raise TokenExpired()
        return payload

    def _base_claims(self, account_id: str, token_type: str, now: datetime, ttl: timedelta) -> dict:
        return {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "account_id": account_id,
            "token_type": token_type,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
        }

    def _mint_pair(self, account: Account, grants: Grants) -> Tuple[TokenPair, str]:
        now = self._now()
        access_claims = self._base_claims(
            account.id, ACCESS, now, self.settings.access_token_timedelta
        )
        access_claims.update(
            {
                "username": account.username,
                "email": account.email,
                "roles": list(grants.roles),
                "permissions": sorted(grants.permissions),
            }
        )
        refresh_claims = self._base_claims(
            account.id, REFRESH, now, self.settings.refresh_token_timedelta
        )
        pair = TokenPair(
            access_token=self._encode_jwt(access_claims, self._access_secret),
            refresh_token=self._encode_jwt(refresh_claims, self._refresh_secret),
            access_expires_at=_from_timestamp(access_claims["exp"]),
            refresh_expires_at=_from_timestamp(refresh_claims["exp"]),
        )
        return pair, refresh_claims["jti"]

    # public contract
    def issue(
        self,
        account: Account,
        grants: Grants,
        context: OperationContext = ANONYMOUS,
        *,
        family_id: Optional[str] = None,
    ) -> TokenPair:
        """Mint an access/refresh pair and record the refresh token."""

        pair, refresh_jti = self._mint_pair(account, grants)
        self.ledger.record(
            account.id,
            refresh_jti,
            expires_at=pair.refresh_expires_at,
            family_id=family_id,
            context=context,
        )
        return pair

    def verify_access(self, token: str) -> AccessClaims:
        payload = self._decode_jwt(token, self._access_secret, ACCESS)
        return AccessClaims(
            account_id=str(payload["account_id"]),
            username=str(payload.get("username", "")),
            email=str(payload.get("email", "")),
            roles=tuple(payload.get("roles") or ()),
            permissions=frozenset(payload.get("permissions") or ()),
            token_id=str(payload["jti"]),
            issued_at=_from_timestamp(payload.get("iat", 0)),
            expires_at=_from_timestamp(payload["exp"]),
        )

    def issue_password_change_token(self, account: Account) -> Tuple[str, datetime]:
        claims = self._base_claims(
            account.id,
            PASSWORD_CHANGE,
            self._now(),
            self.settings.password_change_token_timedelta,
        )
        return self._encode_jwt(claims, self._access_secret), _from_timestamp(claims["exp"])

    def verify_password_change_token(self, token: str) -> str:
        """Return the account id a password-change token was issued for."""
        return str(self._decode_jwt(token, self._access_secret, PASSWORD_CHANGE)["account_id"])

    def decode_refresh(self, token: str) -> dict[str, Any]:
        """Verified refresh claims; every failure is folded into ``RefreshInvalid``."""
        try:
            return self._decode_jwt(token, self._refresh_secret, REFRESH)
        except (TokenInvalid, TokenExpired):
            raise RefreshInvalid()

    def rotate(self, refresh_token: str, context: OperationContext = ANONYMOUS) -> RotationResult:
        payload = self.decode_refresh(refresh_token)
        account_id = str(payload["account_id"])
        token_id = str(payload["jti"])

        reused: Optional[SessionRecord] = None
        result: Optional[RotationResult] = None
        with self.store.transaction(timeout=self.settings.operation_timeout_seconds):
            record = self.store.get_session(token_id, for_update=True)
            if record is None or record.account_id != account_id:
                raise RefreshInvalid()
            if record.is_revoked:
                if record.revoked_reason != RevocationReason.ROTATED.value:
                    raise RefreshInvalid()
                # Commit the family revocation before surfacing the error
                self.ledger.revoke_family(record.family_id)
                reused = record
            else:
                result = self._rotate_live(record, context)

        if reused is not None:
            logger.error(
                "refresh_token_reuse_detected",
                account_id=reused.account_id,
                family_id=reused.family_id,
                token_id=reused.token_id,
                replaced_by_id=reused.replaced_by,
                ip_address=context.ip_address,
                user_agent=context.user_agent,
            )
            raise ReuseDetected(reused.account_id, reused.family_id)
        return result

    def _rotate_live(self, record: SessionRecord, context: OperationContext) -> RotationResult:
        if record.expires_at <= self._now():
            raise RefreshInvalid()
        account = self.store.get_account(record.account_id)
        if account is None or account.is_deleted or account.status != AccountStatus.ACTIVE:
            raise RefreshInvalid()
        if account.require_password_change:
            # A full pair is only issued again after the password is replaced
            raise PasswordChangeRequired()
        grants = self.resolver.resolve_grants(account.id)
        pair, new_jti = self._mint_pair(account, grants)
        self.ledger.revoke(
            record.token_id,
            reason=RevocationReason.ROTATED,
            context=context,
            replaced_by=new_jti,
        )
        self.ledger.record(
            account.id,
            new_jti,
            expires_at=pair.refresh_expires_at,
            family_id=record.family_id,
            context=context,
        )
        logger.info("refresh_token_rotated", account_id=account.id, family_id=record.family_id)
        return RotationResult(account=account, grants=grants, tokens=pair)
