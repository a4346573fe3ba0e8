"""
Voucher Client - read-only access to the voucher service

The voucher service owns voucher eligibility data; this engine only reads it.
Lookups are idempotent GETs and are retried on timeouts and 5xx responses.
"""
import logging
from typing import Optional, Protocol

import httpx
from pydantic import ValidationError
from tenacity import RetryError, retry, retry_if_exception, stop_after_attempt, wait_exponential

from redemption_engine.clock import utcnow
from redemption_engine.config import settings
from redemption_engine.errors import InfrastructureError
from redemption_engine.models.voucher import REDEEMABLE_STATE, VoucherForRedemption

logger = logging.getLogger(__name__)


class VoucherDirectory(Protocol):
    """Voucher lookups the redemption engine depends on"""

    def get_voucher_for_redemption(self, voucher_id: str) -> Optional[VoucherForRedemption]:
        ...

    def is_voucher_redeemable(self, voucher_id: str) -> bool:
        ...


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return False


class HttpVoucherDirectory:
    """VoucherDirectory backed by the voucher service's HTTP API"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout_sec: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None
    ):
        self.base_url = (base_url or settings.VOUCHER_SERVICE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.VOUCHER_SERVICE_API_KEY
        self.timeout_sec = timeout_sec or settings.VOUCHER_SERVICE_TIMEOUT_SEC
        self._transport = transport

    def _headers(self):
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        return headers

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        retry=retry_if_exception(_is_transient)
    )
    def _fetch_voucher(self, voucher_id: str) -> Optional[dict]:
        """GET /vouchers/{id} with retries; None on 404"""
        with httpx.Client(timeout=self.timeout_sec, transport=self._transport) as client:
            response = client.get(
                f"{self.base_url}/vouchers/{voucher_id}",
                headers=self._headers()
            )
            if response.status_code == 404:
                return None
            response.raise_for_status()
            return response.json()

    def get_voucher_for_redemption(self, voucher_id: str) -> Optional[VoucherForRedemption]:
        try:
            data = self._fetch_voucher(voucher_id)
        except RetryError as e:
            cause = e.last_attempt.exception()
            logger.error(f"Voucher service unavailable for {voucher_id}: {cause}")
            raise InfrastructureError("Voucher service unavailable", original_error=cause)
        except httpx.HTTPError as e:
            logger.error(f"Error fetching voucher {voucher_id}: {e}")
            raise InfrastructureError("Failed to fetch voucher", original_error=e)

        if data is None:
            return None

        # Some deployments wrap payloads as {"data": {...}}
        if isinstance(data, dict) and isinstance(data.get("data"), dict):
            data = data["data"]

        try:
            return VoucherForRedemption.model_validate(data)
        except ValidationError as e:
            logger.error(f"Voucher service returned invalid data for {voucher_id}: {e}")
            raise InfrastructureError("Invalid voucher data", original_error=e)

    def is_voucher_redeemable(self, voucher_id: str) -> bool:
        voucher = self.get_voucher_for_redemption(voucher_id)
        return is_redeemable(voucher)


def is_redeemable(voucher: Optional[VoucherForRedemption]) -> bool:
    """State and expiry only; caps need redemption counts."""
    if voucher is None:
        return False
    return voucher.state == REDEEMABLE_STATE and voucher.expires_at > utcnow()


# Singleton instance
voucher_directory = HttpVoucherDirectory()
