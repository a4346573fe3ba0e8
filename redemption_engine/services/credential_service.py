"""
Credential Service - issue and verify single-use redemption credentials

Two credential kinds:
- Tokens: short-lived HS256 JWTs binding a voucher to a customer
- Short codes: 8-character human-enterable codes
    - DYNAMIC: single-use, time-boxed, kept in Redis
    - STATIC: one stable code per voucher, persisted in voucher_codes,
      bounded only by the voucher's redemption caps

Single-use consumption goes through ReplayStore.consume_if_absent so that
concurrent verifications of one credential yield exactly one winner.
"""
import calendar
import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from redemption_engine.clock import as_utc, utcnow
from redemption_engine.config import settings
from redemption_engine.db.models import VoucherCode
from redemption_engine.errors import (
    CredentialError,
    CredentialNotFound,
    ExpiredCredential,
    InfrastructureError,
    MalformedCredential,
    ReplayedCredential,
    ShortCodeConflict
)
from redemption_engine.models.credentials import (
    IssuedToken,
    RedemptionTokenClaims,
    ResolvedCredential,
    ShortCodeInfo,
    ShortCodeType
)
from redemption_engine.services.replay_store import ReplayStore, replay_store

logger = logging.getLogger(__name__)

# No 0/O or I/l to avoid misreads
SHORT_CODE_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZ"
MAX_CODE_GENERATION_ATTEMPTS = 5
REQUIRED_CLAIMS = ["exp", "iat", "iss", "sub", "jti"]


def _to_epoch(value: datetime) -> int:
    return calendar.timegm(value.timetuple())


def _from_epoch(value: int) -> datetime:
    return as_utc(datetime.fromtimestamp(value, tz=timezone.utc))


def looks_like_token(credential: str) -> bool:
    """JWTs have exactly three dot-separated segments."""
    return len(credential.split(".")) == 3


def normalize_short_code(code: str) -> str:
    return code.strip().upper()


def generate_code(length: Optional[int] = None) -> str:
    length = length or settings.SHORT_CODE_LENGTH
    return "".join(secrets.choice(SHORT_CODE_ALPHABET) for _ in range(length))


class CredentialService:
    """Issues tokens and short codes and resolves presented credentials"""

    def __init__(self, store: Optional[ReplayStore] = None):
        self.store = store or replay_store

    # ============================================================
    # TOKENS
    # ============================================================

    def issue_token(
        self,
        voucher_id: str,
        customer_id: str,
        ttl_sec: Optional[int] = None
    ) -> IssuedToken:
        """Mint a signed one-time token for (voucher, customer)."""
        ttl_sec = ttl_sec or settings.REDEMPTION_TOKEN_TTL_SEC
        issued_at = utcnow().replace(microsecond=0)
        expires_at = issued_at + timedelta(seconds=ttl_sec)
        jti = uuid.uuid4().hex

        payload = {
            "iss": settings.REDEMPTION_TOKEN_ISSUER,
            "sub": customer_id,
            "vid": voucher_id,
            "iat": _to_epoch(issued_at),
            "exp": _to_epoch(expires_at),
            "jti": jti
        }
        token = jwt.encode(
            payload,
            settings.REDEMPTION_TOKEN_SECRET,
            algorithm=settings.REDEMPTION_TOKEN_ALGORITHM
        )

        logger.info(f"Issued redemption token {jti} for voucher {voucher_id}")
        return IssuedToken(
            token=token,
            claims=RedemptionTokenClaims(
                voucher_id=voucher_id,
                customer_id=customer_id,
                issued_at=issued_at,
                expires_at=expires_at,
                jti=jti
            )
        )

    def decode_token(self, token: str, verify_expiry: bool = True) -> RedemptionTokenClaims:
        """Check signature, structure and (optionally) expiry without consuming."""
        try:
            payload = jwt.decode(
                token,
                settings.REDEMPTION_TOKEN_SECRET,
                algorithms=[settings.REDEMPTION_TOKEN_ALGORITHM],
                issuer=settings.REDEMPTION_TOKEN_ISSUER,
                options={"require": REQUIRED_CLAIMS, "verify_exp": verify_expiry}
            )
        except jwt.ExpiredSignatureError:
            raise ExpiredCredential("Redemption token has expired")
        except jwt.InvalidTokenError as e:
            raise MalformedCredential(f"Invalid redemption token: {e}")

        voucher_id = payload.get("vid")
        if not isinstance(voucher_id, str) or not voucher_id:
            raise MalformedCredential("Redemption token carries no voucher")
        if not isinstance(payload["sub"], str) or not isinstance(payload["jti"], str):
            raise MalformedCredential("Redemption token claims are malformed")

        return RedemptionTokenClaims(
            voucher_id=voucher_id,
            customer_id=payload["sub"],
            issued_at=_from_epoch(payload["iat"]),
            expires_at=_from_epoch(payload["exp"]),
            jti=payload["jti"]
        )

    def verify_token(self, token: str) -> RedemptionTokenClaims:
        """
        Verify a token and consume its jti.

        Raises:
            MalformedCredential, ExpiredCredential, ReplayedCredential
        """
        claims = self.decode_token(token)

        remaining = (claims.expires_at - utcnow()).total_seconds()
        if remaining <= 0:
            raise ExpiredCredential("Redemption token has expired")

        if not self.store.consume_if_absent(f"jti:{claims.jti}", int(remaining) + 1):
            logger.warning(f"Replay of redemption token {claims.jti}")
            raise ReplayedCredential(
                "Redemption token has already been used",
                {"jti": claims.jti}
            )
        return claims

    # ============================================================
    # SHORT CODES
    # ============================================================

    def issue_short_code(
        self,
        db: Session,
        voucher_id: str,
        code_type: ShortCodeType = ShortCodeType.DYNAMIC,
        ttl_sec: Optional[int] = None,
        customer_id: Optional[str] = None,
        custom_code: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> ShortCodeInfo:
        code_type = ShortCodeType(code_type)
        if code_type == ShortCodeType.STATIC:
            return self._issue_static_code(db, voucher_id, custom_code, metadata)
        return self._issue_dynamic_code(voucher_id, ttl_sec, customer_id, metadata)

    def _issue_dynamic_code(
        self,
        voucher_id: str,
        ttl_sec: Optional[int],
        customer_id: Optional[str],
        metadata: Optional[Dict[str, Any]]
    ) -> ShortCodeInfo:
        ttl_sec = ttl_sec or settings.SHORT_CODE_TTL_SEC
        expires_at = utcnow() + timedelta(seconds=ttl_sec)

        for _ in range(MAX_CODE_GENERATION_ATTEMPTS):
            code = generate_code()
            payload = {
                "voucher_id": voucher_id,
                "customer_id": customer_id,
                "expires_at": expires_at.isoformat(),
                "metadata": metadata or {}
            }
            if self.store.store_dynamic_code(
                code, payload, ttl_sec + settings.SHORT_CODE_RETENTION_SEC
            ):
                logger.info(f"Generated dynamic short code for voucher {voucher_id}")
                return ShortCodeInfo(
                    voucher_id=voucher_id,
                    code=code,
                    type=ShortCodeType.DYNAMIC,
                    customer_id=customer_id,
                    expires_at=expires_at,
                    metadata=metadata or {}
                )

        raise InfrastructureError("Could not allocate a unique short code")

    def _issue_static_code(
        self,
        db: Session,
        voucher_id: str,
        custom_code: Optional[str],
        metadata: Optional[Dict[str, Any]]
    ) -> ShortCodeInfo:
        custom_code = normalize_short_code(custom_code) if custom_code else None

        existing = self._find_static_code(db, voucher_id=voucher_id)
        if existing is not None:
            if custom_code and custom_code != existing.code:
                raise ShortCodeConflict(
                    "Voucher already has a static code",
                    {"voucher_id": voucher_id, "code": existing.code}
                )
            return self._static_info(existing)

        if custom_code and self._find_static_code(db, code=custom_code) is not None:
            raise ShortCodeConflict("Short code already exists", {"code": custom_code})

        attempts = 1 if custom_code else MAX_CODE_GENERATION_ATTEMPTS
        for _ in range(attempts):
            row = VoucherCode(
                code=custom_code or generate_code(),
                voucher_id=voucher_id,
                type=ShortCodeType.STATIC.value,
                code_metadata=metadata or {}
            )
            try:
                db.add(row)
                db.commit()
            except IntegrityError:
                db.rollback()
                # Lost a race for this voucher, or the code collided
                existing = self._find_static_code(db, voucher_id=voucher_id)
                if existing is not None and not custom_code:
                    return self._static_info(existing)
                continue
            except SQLAlchemyError as e:
                db.rollback()
                logger.error(f"Error storing static code for voucher {voucher_id}: {e}")
                raise InfrastructureError("Failed to store static code", original_error=e)

            db.refresh(row)
            logger.info(f"Generated static code {row.code} for voucher {voucher_id}")
            return self._static_info(row)

        raise ShortCodeConflict(
            "Short code already exists",
            {"code": custom_code, "voucher_id": voucher_id}
        )

    def _find_static_code(
        self,
        db: Session,
        code: Optional[str] = None,
        voucher_id: Optional[str] = None
    ) -> Optional[VoucherCode]:
        query = db.query(VoucherCode)
        if code is not None:
            query = query.filter(VoucherCode.code == code)
        if voucher_id is not None:
            query = query.filter(VoucherCode.voucher_id == voucher_id)
        try:
            return query.first()
        except SQLAlchemyError as e:
            logger.error(f"Error reading static codes: {e}")
            raise InfrastructureError("Failed to read static codes", original_error=e)

    @staticmethod
    def _static_info(row: VoucherCode) -> ShortCodeInfo:
        return ShortCodeInfo(
            voucher_id=row.voucher_id,
            code=row.code,
            type=ShortCodeType.STATIC,
            metadata=row.code_metadata or {}
        )

    def is_static_code(self, db: Session, code: str) -> bool:
        return self._find_static_code(db, code=normalize_short_code(code)) is not None

    def resolve_short_code(self, db: Session, code: str) -> ShortCodeInfo:
        """
        Resolve a short code; DYNAMIC codes are consumed on success.

        Raises:
            CredentialNotFound, ExpiredCredential, ReplayedCredential
        """
        code = normalize_short_code(code)
        if not code:
            raise MalformedCredential("Empty short code")

        payload = self.store.load_dynamic_code(code)
        if payload is not None:
            expires_at = as_utc(payload["expires_at"])
            remaining = (expires_at - utcnow()).total_seconds()
            if remaining <= 0:
                raise ExpiredCredential("Short code has expired", {"code": code})

            if not self.store.consume_if_absent(f"code:{code}", int(remaining) + 1):
                logger.warning(f"Replay of dynamic short code {code}")
                raise ReplayedCredential(
                    "Short code has already been used",
                    {"code": code}
                )
            return ShortCodeInfo(
                voucher_id=payload["voucher_id"],
                code=code,
                type=ShortCodeType.DYNAMIC,
                customer_id=payload.get("customer_id"),
                expires_at=expires_at,
                metadata=payload.get("metadata") or {}
            )

        row = self._find_static_code(db, code=code)
        if row is None:
            raise CredentialNotFound("Short code not found", {"code": code})
        return self._static_info(row)

    # ============================================================
    # DISPATCH
    # ============================================================

    def resolve(self, db: Session, credential: str) -> ResolvedCredential:
        """Verify any presented credential and resolve its voucher/customer."""
        if not isinstance(credential, str) or not credential.strip():
            raise MalformedCredential("Credential is required")
        credential = credential.strip()

        if looks_like_token(credential):
            claims = self.verify_token(credential)
            return ResolvedCredential(
                kind="token",
                code=credential,
                voucher_id=claims.voucher_id,
                customer_id=claims.customer_id,
                single_use=True
            )

        info = self.resolve_short_code(db, credential)
        return ResolvedCredential(
            kind="short_code",
            code=info.code,
            voucher_id=info.voucher_id,
            customer_id=info.customer_id,
            single_use=info.type == ShortCodeType.DYNAMIC,
            short_code_type=info.type
        )

    def credential_owner(self, credential: str) -> Optional[str]:
        """Customer a token or dynamic code was issued to, read without consuming."""
        credential = credential.strip()
        try:
            if looks_like_token(credential):
                return self.decode_token(credential, verify_expiry=False).customer_id
            payload = self.store.load_dynamic_code(normalize_short_code(credential))
        except CredentialError:
            return None
        return payload.get("customer_id") if payload else None

    # ============================================================
    # OFFLINE AUTHENTICATION
    # ============================================================

    @staticmethod
    def _check_binding(
        issued_voucher_id: str,
        issued_customer_id: Optional[str],
        voucher_id: str,
        customer_id: str
    ) -> None:
        if issued_voucher_id != voucher_id:
            raise MalformedCredential(
                "Credential was issued for a different voucher",
                {"voucher_id": voucher_id}
            )
        if issued_customer_id and issued_customer_id != customer_id:
            raise MalformedCredential(
                "Credential was issued to a different customer",
                {"voucher_id": voucher_id}
            )

    def authenticate_offline(
        self,
        db: Session,
        credential: str,
        voucher_id: str,
        customer_id: str,
        redeemed_at: datetime
    ) -> ResolvedCredential:
        """
        Check a credential accepted by a disconnected client.

        The credential must have been issued by this engine for the record's
        voucher (and customer, when bound) and must still have been live at
        redeemed_at. Nothing is consumed; single-use credentials are
        deduplicated when the redemption is stored.

        Raises:
            MalformedCredential, ExpiredCredential, CredentialNotFound
        """
        if not isinstance(credential, str) or not credential.strip():
            raise MalformedCredential("Credential is required")
        credential = credential.strip()
        redeemed_at = as_utc(redeemed_at)

        if looks_like_token(credential):
            claims = self.decode_token(credential, verify_expiry=False)
            self._check_binding(claims.voucher_id, claims.customer_id, voucher_id, customer_id)
            if redeemed_at > claims.expires_at:
                raise ExpiredCredential(
                    "Redemption token had expired when it was used",
                    {"jti": claims.jti}
                )
            return ResolvedCredential(
                kind="token",
                code=credential,
                voucher_id=claims.voucher_id,
                customer_id=claims.customer_id,
                single_use=True
            )

        code = normalize_short_code(credential)
        payload = self.store.load_dynamic_code(code)
        if payload is not None:
            self._check_binding(
                payload["voucher_id"], payload.get("customer_id"), voucher_id, customer_id
            )
            if redeemed_at > as_utc(payload["expires_at"]):
                raise ExpiredCredential(
                    "Short code had expired when it was used",
                    {"code": code}
                )
            return ResolvedCredential(
                kind="short_code",
                code=code,
                voucher_id=payload["voucher_id"],
                customer_id=customer_id,
                single_use=True,
                short_code_type=ShortCodeType.DYNAMIC
            )

        row = self._find_static_code(db, code=code)
        if row is None:
            raise CredentialNotFound("Short code not found", {"code": code})
        self._check_binding(row.voucher_id, None, voucher_id, customer_id)
        return ResolvedCredential(
            kind="short_code",
            code=code,
            voucher_id=row.voucher_id,
            customer_id=customer_id,
            single_use=False,
            short_code_type=ShortCodeType.STATIC
        )


# Singleton instance
credential_service = CredentialService()
