"""
Tests for the voucher service HTTP client.
"""
from datetime import timedelta

import httpx
import pytest

from redemption_engine.clock import utcnow
from redemption_engine.errors import InfrastructureError
from redemption_engine.services.voucher_client import HttpVoucherDirectory, is_redeemable

from tests.conftest import make_voucher


def _voucher_json(**overrides):
    data = {
        "id": "voucher-1",
        "providerId": "provider-1",
        "state": "PUBLISHED",
        "discountType": "PERCENTAGE",
        "discountValue": 15,
        "currency": "THB",
        "expiresAt": (utcnow() + timedelta(days=7)).isoformat() + "Z",
        "maxRedemptions": 100,
        "maxRedemptionsPerUser": 2,
        "currentRedemptions": 3,
        "provider": {"id": "provider-1", "name": "Corner Cafe"},
        "providerLocation": {"lat": 13.7563, "lng": 100.5018},
    }
    data.update(overrides)
    return data


def _directory(handler):
    return HttpVoucherDirectory(
        base_url="http://vouchers.test",
        api_key="secret",
        transport=httpx.MockTransport(handler)
    )


class TestHttpVoucherDirectory:
    def test_fetches_and_parses_voucher(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["api_key"] = request.headers.get("X-API-Key")
            return httpx.Response(200, json=_voucher_json())

        voucher = _directory(handler).get_voucher_for_redemption("voucher-1")

        assert seen == {"path": "/vouchers/voucher-1", "api_key": "secret"}
        assert voucher.provider_id == "provider-1"
        assert voucher.max_redemptions_per_user == 2
        assert voucher.provider_location.lat == 13.7563
        assert voucher.expires_at.tzinfo is None

    def test_unwraps_data_envelope(self):
        directory = _directory(lambda request: httpx.Response(200, json={"data": _voucher_json()}))

        assert directory.get_voucher_for_redemption("voucher-1").id == "voucher-1"

    def test_missing_voucher(self):
        directory = _directory(lambda request: httpx.Response(404))

        assert directory.get_voucher_for_redemption("voucher-1") is None
        assert directory.is_voucher_redeemable("voucher-1") is False

    def test_retries_server_errors(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) < 2:
                return httpx.Response(503)
            return httpx.Response(200, json=_voucher_json())

        assert _directory(handler).get_voucher_for_redemption("voucher-1") is not None
        assert len(calls) == 2

    def test_persistent_outage(self):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectError("connection refused")

        with pytest.raises(InfrastructureError):
            _directory(handler).get_voucher_for_redemption("voucher-1")
        assert len(calls) == 3

    def test_client_errors_are_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400)

        with pytest.raises(InfrastructureError):
            _directory(handler).get_voucher_for_redemption("voucher-1")
        assert len(calls) == 1

    def test_invalid_payload(self):
        directory = _directory(lambda request: httpx.Response(200, json={"id": "voucher-1"}))

        with pytest.raises(InfrastructureError):
            directory.get_voucher_for_redemption("voucher-1")


class TestIsRedeemable:
    def test_published_and_current(self):
        assert is_redeemable(make_voucher())

    def test_not_published(self):
        assert not is_redeemable(make_voucher(state="DRAFT"))

    def test_expired(self):
        assert not is_redeemable(make_voucher(expires_at=utcnow() - timedelta(seconds=1)))

    def test_missing(self):
        assert not is_redeemable(None)
