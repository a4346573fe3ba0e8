"""
Tests for token and short-code issuance and verification.
"""
import calendar
import importlib
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import jwt
import pytest

from redemption_engine.clock import utcnow
from redemption_engine.config import settings
from redemption_engine.errors import (
    CredentialNotFound,
    ExpiredCredential,
    MalformedCredential,
    ReplayedCredential,
    ShortCodeConflict
)
from redemption_engine.models.credentials import ShortCodeType
from redemption_engine.services.credential_service import SHORT_CODE_ALPHABET, looks_like_token


def _encode(payload):
    return jwt.encode(payload, settings.REDEMPTION_TOKEN_SECRET, algorithm="HS256")


def _claims(**overrides):
    now = calendar.timegm(utcnow().timetuple())
    payload = {
        "iss": settings.REDEMPTION_TOKEN_ISSUER,
        "sub": "customer-1",
        "vid": "voucher-1",
        "iat": now,
        "exp": now + 300,
        "jti": "jti-1",
    }
    payload.update(overrides)
    return payload


class TestTokens:
    def test_issue_sets_lifetime_and_unique_jti(self, services):
        first = services.credentials.issue_token("voucher-1", "customer-1", ttl_sec=120)
        second = services.credentials.issue_token("voucher-1", "customer-1", ttl_sec=120)

        assert first.claims.expires_at - first.claims.issued_at == timedelta(seconds=120)
        assert first.claims.jti != second.claims.jti
        assert looks_like_token(first.token)

    def test_verify_resolves_claims(self, services):
        issued = services.credentials.issue_token("voucher-1", "customer-1")

        claims = services.credentials.verify_token(issued.token)

        assert claims.voucher_id == "voucher-1"
        assert claims.customer_id == "customer-1"
        assert claims.jti == issued.claims.jti

    def test_second_verification_is_a_replay(self, services):
        issued = services.credentials.issue_token("voucher-1", "customer-1")
        services.credentials.verify_token(issued.token)

        with pytest.raises(ReplayedCredential):
            services.credentials.verify_token(issued.token)

    def test_concurrent_verification_has_one_winner(self, services):
        issued = services.credentials.issue_token("voucher-1", "customer-1")

        def attempt(_):
            try:
                services.credentials.verify_token(issued.token)
                return "ok"
            except ReplayedCredential:
                return "replay"

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(attempt, range(16)))

        assert results.count("ok") == 1
        assert results.count("replay") == 15

    def test_expired_token(self, services):
        payload = _claims(iat=_claims()["iat"] - 600, exp=_claims()["iat"] - 60)

        with pytest.raises(ExpiredCredential):
            services.credentials.verify_token(_encode(payload))

    def test_tampered_signature(self, services):
        issued = services.credentials.issue_token("voucher-1", "customer-1")
        header, payload, signature = issued.token.split(".")
        forged = ".".join([header, payload, signature[::-1]])

        with pytest.raises(MalformedCredential):
            services.credentials.verify_token(forged)

    def test_garbage_token(self, services):
        with pytest.raises(MalformedCredential):
            services.credentials.verify_token("not.a.token")

    def test_missing_voucher_claim(self, services):
        payload = _claims()
        del payload["vid"]

        with pytest.raises(MalformedCredential):
            services.credentials.verify_token(_encode(payload))

    def test_missing_jti(self, services):
        payload = _claims()
        del payload["jti"]

        with pytest.raises(MalformedCredential):
            services.credentials.verify_token(_encode(payload))

    def test_wrong_issuer(self, services):
        with pytest.raises(MalformedCredential):
            services.credentials.verify_token(_encode(_claims(iss="someone-else")))


class TestDynamicShortCodes:
    def test_issue_format(self, db, services):
        info = services.credentials.issue_short_code(db, "voucher-1", ShortCodeType.DYNAMIC)

        assert len(info.code) == settings.SHORT_CODE_LENGTH
        assert set(info.code) <= set(SHORT_CODE_ALPHABET)
        assert info.expires_at is not None
        assert info.type == ShortCodeType.DYNAMIC

    def test_resolve_once_then_replay(self, db, services):
        info = services.credentials.issue_short_code(db, "voucher-1", ShortCodeType.DYNAMIC)

        resolved = services.credentials.resolve_short_code(db, info.code)
        assert resolved.voucher_id == "voucher-1"

        with pytest.raises(ReplayedCredential):
            services.credentials.resolve_short_code(db, info.code)

    def test_lowercase_input_is_normalized(self, db, services):
        info = services.credentials.issue_short_code(db, "voucher-1", ShortCodeType.DYNAMIC)

        resolved = services.credentials.resolve_short_code(db, f"  {info.code.lower()} ")

        assert resolved.code == info.code

    def test_bound_customer_is_carried(self, db, services):
        info = services.credentials.issue_short_code(
            db, "voucher-1", ShortCodeType.DYNAMIC, customer_id="customer-9"
        )

        resolved = services.credentials.resolve(db, info.code)

        assert resolved.customer_id == "customer-9"
        assert resolved.single_use is True

    def test_expired_code(self, db, services, monkeypatch):
        info = services.credentials.issue_short_code(
            db, "voucher-1", ShortCodeType.DYNAMIC, ttl_sec=1
        )
        later = utcnow() + timedelta(seconds=2)
        cs_module = importlib.import_module("redemption_engine.services.credential_service")
        monkeypatch.setattr(cs_module, "utcnow", lambda: later)

        with pytest.raises(ExpiredCredential):
            services.credentials.resolve_short_code(db, info.code)

    def test_payload_outlives_expiry(self, db, services, redis_client):
        info = services.credentials.issue_short_code(
            db, "voucher-1", ShortCodeType.DYNAMIC, ttl_sec=60
        )

        ttl = redis_client.ttl(f"redemption:dyncode:{info.code}")

        assert ttl > 60 + settings.SHORT_CODE_RETENTION_SEC - 5

    def test_unknown_code(self, db, services):
        with pytest.raises(CredentialNotFound):
            services.credentials.resolve_short_code(db, "ZZZZZZZZ")


class TestStaticShortCodes:
    def test_static_code_is_stable_per_voucher(self, db, services):
        first = services.credentials.issue_short_code(db, "voucher-1", ShortCodeType.STATIC)
        second = services.credentials.issue_short_code(db, "voucher-1", ShortCodeType.STATIC)

        assert first.code == second.code
        assert first.expires_at is None

    def test_static_code_resolves_repeatedly(self, db, services):
        info = services.credentials.issue_short_code(db, "voucher-1", ShortCodeType.STATIC)

        for _ in range(3):
            resolved = services.credentials.resolve(db, info.code)
            assert resolved.voucher_id == "voucher-1"
            assert resolved.single_use is False

    def test_custom_code(self, db, services):
        info = services.credentials.issue_short_code(
            db, "voucher-1", ShortCodeType.STATIC, custom_code="summer24"
        )

        assert info.code == "SUMMER24"
        assert services.credentials.is_static_code(db, "summer24")

    def test_custom_code_taken_by_another_voucher(self, db, services):
        services.credentials.issue_short_code(
            db, "voucher-1", ShortCodeType.STATIC, custom_code="SUMMER24"
        )

        with pytest.raises(ShortCodeConflict):
            services.credentials.issue_short_code(
                db, "voucher-2", ShortCodeType.STATIC, custom_code="SUMMER24"
            )

    def test_voucher_already_has_different_static_code(self, db, services):
        services.credentials.issue_short_code(
            db, "voucher-1", ShortCodeType.STATIC, custom_code="SUMMER24"
        )

        with pytest.raises(ShortCodeConflict):
            services.credentials.issue_short_code(
                db, "voucher-1", ShortCodeType.STATIC, custom_code="WINTER24"
            )


class TestResolve:
    def test_dispatches_tokens(self, db, services):
        issued = services.credentials.issue_token("voucher-1", "customer-1")

        resolved = services.credentials.resolve(db, issued.token)

        assert resolved.kind == "token"
        assert resolved.customer_id == "customer-1"

    @pytest.mark.parametrize("credential", ["", "   "])
    def test_blank_credential(self, db, services, credential):
        with pytest.raises(MalformedCredential):
            services.credentials.resolve(db, credential)


class TestOfflineAuthentication:
    def _authenticate(self, db, services, code, voucher_id="voucher-1",
                      customer_id="customer-1", redeemed_at=None):
        return services.credentials.authenticate_offline(
            db, code, voucher_id, customer_id, redeemed_at or utcnow()
        )

    def test_token_is_accepted_without_being_consumed(self, db, services):
        issued = services.credentials.issue_token("voucher-1", "customer-1")

        resolved = self._authenticate(db, services, issued.token)

        assert resolved.kind == "token"
        assert resolved.single_use is True
        assert services.credentials.verify_token(issued.token).jti == issued.claims.jti

    def test_token_used_before_it_expired(self, db, services):
        token = _encode(_claims(iat=_claims()["iat"] - 600, exp=_claims()["iat"] - 300))

        resolved = self._authenticate(
            db, services, token, redeemed_at=utcnow() - timedelta(seconds=450)
        )

        assert resolved.voucher_id == "voucher-1"

    def test_token_used_after_it_expired(self, db, services):
        token = _encode(_claims(iat=_claims()["iat"] - 600, exp=_claims()["iat"] - 300))

        with pytest.raises(ExpiredCredential):
            self._authenticate(db, services, token, redeemed_at=utcnow() - timedelta(seconds=100))

    def test_fabricated_token(self, db, services):
        with pytest.raises(MalformedCredential):
            self._authenticate(db, services, "x.y.z")

    def test_token_for_another_voucher(self, db, services):
        issued = services.credentials.issue_token("voucher-1", "customer-1")

        with pytest.raises(MalformedCredential):
            self._authenticate(db, services, issued.token, voucher_id="voucher-2")

    def test_token_for_another_customer(self, db, services):
        issued = services.credentials.issue_token("voucher-1", "customer-1")

        with pytest.raises(MalformedCredential):
            self._authenticate(db, services, issued.token, customer_id="mallory")

    def test_unknown_short_code(self, db, services):
        with pytest.raises(CredentialNotFound):
            self._authenticate(db, services, "NOTACODE")

    def test_dynamic_code(self, db, services):
        info = services.credentials.issue_short_code(db, "voucher-1", ShortCodeType.DYNAMIC)

        resolved = self._authenticate(db, services, info.code.lower())

        assert resolved.code == info.code
        assert resolved.single_use is True
        assert services.credentials.resolve_short_code(db, info.code).code == info.code

    def test_dynamic_code_bound_to_someone_else(self, db, services):
        info = services.credentials.issue_short_code(
            db, "voucher-1", ShortCodeType.DYNAMIC, customer_id="customer-1"
        )

        with pytest.raises(MalformedCredential):
            self._authenticate(db, services, info.code, customer_id="customer-2")

    def test_dynamic_code_used_after_it_expired(self, db, services):
        info = services.credentials.issue_short_code(
            db, "voucher-1", ShortCodeType.DYNAMIC, ttl_sec=60
        )

        with pytest.raises(ExpiredCredential):
            self._authenticate(
                db, services, info.code, redeemed_at=utcnow() + timedelta(minutes=5)
            )

    def test_static_code_of_another_voucher(self, db, services):
        info = services.credentials.issue_short_code(db, "voucher-1", ShortCodeType.STATIC)

        with pytest.raises(MalformedCredential):
            self._authenticate(db, services, info.code, voucher_id="voucher-2")

        resolved = self._authenticate(db, services, info.code)
        assert resolved.single_use is False


class TestCredentialOwner:
    def test_token_owner(self, services):
        issued = services.credentials.issue_token("voucher-1", "customer-7")
        services.credentials.verify_token(issued.token)

        assert services.credentials.credential_owner(issued.token) == "customer-7"

    def test_bound_dynamic_code_owner(self, db, services):
        info = services.credentials.issue_short_code(
            db, "voucher-1", ShortCodeType.DYNAMIC, customer_id="customer-7"
        )

        assert services.credentials.credential_owner(info.code) == "customer-7"

    def test_unknown_credentials_have_no_owner(self, services):
        assert services.credentials.credential_owner("x.y.z") is None
        assert services.credentials.credential_owner("NOTACODE") is None
