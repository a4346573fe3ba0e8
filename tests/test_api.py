"""
HTTP API tests using FastAPI's TestClient.
"""
from datetime import timedelta

from redemption_engine.clock import utcnow
from redemption_engine.config import settings
from redemption_engine.models.voucher import VoucherProvider

from tests.conftest import API_HEADERS, make_voucher


def _issue_token(client, voucher_id="voucher-1", customer_id="customer-1"):
    response = client.post(
        "/redemptions/tokens",
        json={"voucher_id": voucher_id, "customer_id": customer_id},
        headers=API_HEADERS
    )
    assert response.status_code == 200
    return response.json()["data"]["token"]


class TestSystem:
    def test_root(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["status"] == "running"

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database"] == "healthy"
        assert body["redis"] == "healthy"


class TestCredentialIssuance:
    def test_requires_api_key(self, client):
        response = client.post(
            "/redemptions/tokens",
            json={"voucher_id": "voucher-1", "customer_id": "customer-1"}
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "HttpError"

    def test_issue_static_short_code(self, client):
        response = client.post(
            "/redemptions/short-codes",
            json={"voucher_id": "voucher-1", "type": "STATIC", "custom_code": "spring24"},
            headers=API_HEADERS
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["code"] == "SPRING24"
        assert data["type"] == "STATIC"
        assert data["expires_at"] is None

    def test_custom_code_format(self, client):
        response = client.post(
            "/redemptions/short-codes",
            json={"voucher_id": "voucher-1", "type": "STATIC", "custom_code": "no spaces!"},
            headers=API_HEADERS
        )

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "ValidationError"

    def test_conflicting_custom_code(self, client):
        payload = {"voucher_id": "voucher-1", "type": "STATIC", "custom_code": "SPRING24"}
        client.post("/redemptions/short-codes", json=payload, headers=API_HEADERS)

        response = client.post(
            "/redemptions/short-codes",
            json={**payload, "voucher_id": "voucher-2"},
            headers=API_HEADERS
        )

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "ShortCodeConflict"


class TestRedeem:
    def test_redeem_with_token(self, client, vouchers):
        vouchers.add(make_voucher())
        token = _issue_token(client)

        response = client.post("/redemptions/redeem", json={
            "credential": token,
            "location": {"lat": 13.7563, "lng": 100.5018},
            "device_id": "pos-1"
        })

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["redemption"]["customer_id"] == "customer-1"
        assert body["data"]["requires_review"] is False

    def test_replayed_token(self, client, vouchers):
        vouchers.add(make_voucher())
        token = _issue_token(client)
        client.post("/redemptions/redeem", json={"credential": token})

        response = client.post("/redemptions/redeem", json={"credential": token})

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "ReplayedCredential"

    def test_unknown_short_code(self, client):
        response = client.post(
            "/redemptions/redeem",
            json={"credential": "ZZZZZZZZ", "customer_id": "customer-1"}
        )

        assert response.status_code == 404
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "CredentialNotFound"
        assert body["error"]["context"] == {"code": "ZZZZZZZZ"}

    def test_invalid_location(self, client):
        response = client.post("/redemptions/redeem", json={
            "credential": "ZZZZZZZZ",
            "location": {"lat": 123, "lng": 0}
        })

        assert response.status_code == 422

    def test_paused_voucher(self, client, vouchers):
        vouchers.add(make_voucher(state="PAUSED"))
        token = _issue_token(client)

        response = client.post("/redemptions/redeem", json={"credential": token})

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VoucherNotRedeemable"


class TestOfflineSync:
    def test_sync(self, client, vouchers):
        vouchers.add(make_voucher())
        code = client.post(
            "/redemptions/short-codes",
            json={"voucher_id": "voucher-1", "type": "DYNAMIC"},
            headers=API_HEADERS
        ).json()["data"]["code"]
        redeemed_at = (utcnow() - timedelta(minutes=2)).isoformat()

        response = client.post("/redemptions/offline-sync", json={"records": [
            {"code": code, "voucher_id": "voucher-1", "customer_id": "customer-1",
             "redeemed_at": redeemed_at},
            {"code": code, "voucher_id": "voucher-1", "customer_id": "customer-2",
             "redeemed_at": redeemed_at},
        ]})

        assert response.status_code == 200
        data = response.json()["data"]
        assert len(data["accepted"]) == 1
        assert data["accepted"][0]["synced_at"] is not None
        assert data["rejected"][0]["error"]["code"] == "DuplicateRedemption"

    def test_unknown_code_is_rejected(self, client, vouchers):
        vouchers.add(make_voucher())

        response = client.post("/redemptions/offline-sync", json={"records": [
            {"code": "NOTACODE", "voucher_id": "voucher-1", "customer_id": "mallory",
             "redeemed_at": utcnow().isoformat()},
        ]})

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["accepted"] == []
        assert data["rejected"][0]["error"]["code"] == "CredentialNotFound"

    def test_batch_too_large(self, client):
        record = {
            "code": "OFFLN001",
            "voucher_id": "voucher-1",
            "customer_id": "customer-1",
            "redeemed_at": utcnow().isoformat()
        }

        response = client.post(
            "/redemptions/offline-sync",
            json={"records": [record] * (settings.OFFLINE_SYNC_MAX_BATCH + 1)}
        )

        assert response.status_code == 422


class TestRedemptionReads:
    def _redeem(self, client, voucher_id, customer_id):
        token = _issue_token(client, voucher_id=voucher_id, customer_id=customer_id)
        body = client.post("/redemptions/redeem", json={"credential": token}).json()
        return body["data"]["redemption"]

    def _seed(self, client, vouchers):
        vouchers.add(make_voucher(id="voucher-1"))
        vouchers.add(make_voucher(
            id="voucher-2",
            provider_id="provider-2",
            provider=VoucherProvider(id="provider-2", name="Harbour Bar")
        ))
        return [
            self._redeem(client, "voucher-1", "customer-1"),
            self._redeem(client, "voucher-2", "customer-1"),
            self._redeem(client, "voucher-1", "customer-2"),
        ]

    def test_requires_api_key(self, client):
        assert client.get("/redemptions").status_code == 401
        assert client.get("/redemptions/some-id").status_code == 401

    def test_get_by_id(self, client, vouchers):
        first = self._seed(client, vouchers)[0]

        response = client.get(f"/redemptions/{first['id']}", headers=API_HEADERS)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["id"] == first["id"]
        assert data["customer_id"] == "customer-1"

    def test_unknown_redemption(self, client):
        response = client.get("/redemptions/missing", headers=API_HEADERS)

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "RedemptionNotFound"

    def test_filter_by_customer(self, client, vouchers):
        self._seed(client, vouchers)

        body = client.get(
            "/redemptions", params={"customer_id": "customer-1"}, headers=API_HEADERS
        ).json()

        assert body["total"] == 2
        assert {r["voucher_id"] for r in body["data"]} == {"voucher-1", "voucher-2"}

    def test_filter_by_provider(self, client, vouchers):
        self._seed(client, vouchers)

        body = client.get(
            "/redemptions", params={"provider_id": "provider-2"}, headers=API_HEADERS
        ).json()

        assert body["total"] == 1
        assert body["data"][0]["provider_id"] == "provider-2"

    def test_pagination(self, client, vouchers):
        self._seed(client, vouchers)

        body = client.get(
            "/redemptions", params={"page": 2, "limit": 2}, headers=API_HEADERS
        ).json()

        assert body["total"] == 3
        assert body["page"] == 2
        assert body["limit"] == 2
        assert len(body["data"]) == 1

    def test_limit_is_bounded(self, client):
        response = client.get("/redemptions", params={"limit": 1000}, headers=API_HEADERS)

        assert response.status_code == 422


class TestFraudReview:
    def _flagged_case(self, client, vouchers, redis_client):
        vouchers.add(make_voucher())
        redis_client.sadd("redemption:blocklist", "customer:customer-1")
        token = _issue_token(client)
        body = client.post("/redemptions/redeem", json={"credential": token}).json()
        case_number = body["data"]["fraud_case_number"]

        listing = client.get("/fraud/cases", headers=API_HEADERS).json()
        case = next(c for c in listing["data"] if c["case_number"] == case_number)
        return case

    def test_requires_api_key(self, client):
        assert client.get("/fraud/cases").status_code == 401

    def test_review_flow(self, client, vouchers, redis_client):
        case = self._flagged_case(client, vouchers, redis_client)
        assert case["status"] == "PENDING"
        assert case["is_urgent"] is True

        started = client.post(
            f"/fraud/cases/{case['id']}/start-review",
            json={"reviewer_id": "admin-1"},
            headers=API_HEADERS
        )
        assert started.json()["status"] == "REVIEWING"

        reviewed = client.post(
            f"/fraud/cases/{case['id']}/review",
            json={
                "status": "REJECTED",
                "reviewer_id": "admin-1",
                "notes": "Confirmed abuse",
                "actions": [{"type": "void_redemption"}]
            },
            headers=API_HEADERS
        )
        assert reviewed.status_code == 200
        assert reviewed.json()["actions_taken"][0]["type"] == "void_redemption"

        again = client.post(
            f"/fraud/cases/{case['id']}/review",
            json={"status": "APPROVED", "reviewer_id": "admin-2"},
            headers=API_HEADERS
        )
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "InvalidStateTransition"

        detail = client.get(f"/fraud/cases/{case['id']}", headers=API_HEADERS).json()
        assert [h["action"] for h in detail["history"]] == ["CREATED", "REVIEW_STARTED", "REVIEWED"]

    def test_review_requires_terminal_status(self, client, vouchers, redis_client):
        case = self._flagged_case(client, vouchers, redis_client)

        response = client.post(
            f"/fraud/cases/{case['id']}/review",
            json={"status": "REVIEWING", "reviewer_id": "admin-1"},
            headers=API_HEADERS
        )

        assert response.status_code == 422

    def test_unknown_case(self, client):
        response = client.get("/fraud/cases/missing", headers=API_HEADERS)

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "FraudCaseNotFound"

    def test_statistics(self, client, vouchers, redis_client):
        self._flagged_case(client, vouchers, redis_client)

        response = client.get("/fraud/statistics?period=week", headers=API_HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["total_cases"] == 1
        assert body["pending_cases"] == 1
        assert body["top_fraud_types"][0]["type"] == "BLOCKLISTED"
        assert body["risk_score_distribution"]["medium"] == 1
