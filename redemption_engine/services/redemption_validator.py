"""
Redemption Validator - eligibility rules applied before recording

Checks run in a fixed order and the first failure wins:
state -> expiry -> duplicate -> global cap -> per-user cap.

These reads are advisory; RedemptionRecorder is the final arbiter when two
attempts race past validation together.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from redemption_engine.clock import as_utc, utcnow
from redemption_engine.errors import (
    DuplicateRedemption,
    PerUserCapExceeded,
    RedemptionCapExceeded,
    VoucherExpired,
    VoucherNotFound,
    VoucherNotRedeemable
)
from redemption_engine.models.voucher import REDEEMABLE_STATE, VoucherForRedemption
from redemption_engine.services.redemption_recorder import RedemptionRecorder, redemption_recorder
from redemption_engine.services.voucher_client import VoucherDirectory, voucher_directory

logger = logging.getLogger(__name__)


class RedemptionValidator:

    def __init__(
        self,
        vouchers: Optional[VoucherDirectory] = None,
        recorder: Optional[RedemptionRecorder] = None
    ):
        self.vouchers = vouchers or voucher_directory
        self.recorder = recorder or redemption_recorder

    def validate(
        self,
        db: Session,
        voucher_id: str,
        customer_id: str,
        code: str,
        single_use: bool = True,
        attempted_at: Optional[datetime] = None
    ) -> VoucherForRedemption:
        """
        Check that customer_id may redeem voucher_id with code.

        Args:
            db: Database session
            voucher_id: Voucher being redeemed
            customer_id: Redeeming customer
            code: Credential as presented (token or normalized short code)
            single_use: False for STATIC short codes, which are only bounded
                by the voucher's caps and skip the duplicate check
            attempted_at: Timestamp the expiry is checked against

        Returns:
            The voucher eligibility snapshot used for the decision
        """
        attempted_at = as_utc(attempted_at) or utcnow()

        voucher = self.vouchers.get_voucher_for_redemption(voucher_id)
        if voucher is None:
            logger.info(f"Redemption rejected: voucher {voucher_id} not found")
            raise VoucherNotFound("Voucher not found", {"voucher_id": voucher_id})

        if voucher.state != REDEEMABLE_STATE:
            logger.info(f"Redemption rejected: voucher {voucher_id} is {voucher.state}")
            raise VoucherNotRedeemable(
                f"Voucher is not redeemable in state {voucher.state}",
                {"voucher_id": voucher_id, "state": voucher.state}
            )

        if voucher.expires_at <= attempted_at:
            logger.info(f"Redemption rejected: voucher {voucher_id} expired")
            raise VoucherExpired(
                "Voucher has expired",
                {"voucher_id": voucher_id, "expires_at": voucher.expires_at.isoformat()}
            )

        if single_use and self.recorder.get_redemption_by_code(db, code) is not None:
            logger.info(f"Redemption rejected: credential already used for {voucher_id}")
            raise DuplicateRedemption(
                "Credential has already been redeemed",
                {"voucher_id": voucher_id}
            )

        if voucher.max_redemptions is not None:
            total = self.recorder.count_voucher_redemptions(db, voucher_id)
            if total >= voucher.max_redemptions:
                logger.info(f"Redemption rejected: voucher {voucher_id} cap reached")
                raise RedemptionCapExceeded(
                    "Voucher has reached its redemption limit",
                    {"voucher_id": voucher_id, "max_redemptions": voucher.max_redemptions}
                )

        per_user = self.recorder.count_customer_voucher_redemptions(db, voucher_id, customer_id)
        if per_user >= voucher.max_redemptions_per_user:
            logger.info(
                f"Redemption rejected: customer {customer_id} reached per-user cap "
                f"for voucher {voucher_id}"
            )
            raise PerUserCapExceeded(
                "Customer has reached the per-user redemption limit",
                {
                    "voucher_id": voucher_id,
                    "customer_id": customer_id,
                    "max_redemptions_per_user": voucher.max_redemptions_per_user
                }
            )

        return voucher


# Singleton instance
redemption_validator = RedemptionValidator()
