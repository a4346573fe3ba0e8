"""
Redemption Recorder - persistence of redemptions and offline reconciliation

Race arbitration happens here, inside one transaction per redemption:
1. A redemption slot is taken on the voucher-wide and per-customer counters
   with a conditional UPDATE (count < cap). Zero rows updated means the cap
   is exhausted.
2. The row is inserted under a unique dedupe_key. Single-use credentials
   hash to the credential itself, so a second insert of the same token or
   dynamic code violates the constraint and is reported as
   DuplicateRedemption. STATIC codes hash to (code, customer, slot ordinal)
   and are bounded by the counters alone.

Any failure rolls back both steps together.
"""
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from redemption_engine.clock import as_utc, utcnow
from redemption_engine.db.database import insert_if_absent
from redemption_engine.db.models import RedemptionCounter, VoucherRedemption
from redemption_engine.errors import (
    DuplicateRedemption,
    InfrastructureError,
    InvalidStateTransition,
    PerUserCapExceeded,
    RedemptionCapExceeded,
    RedemptionEngineError
)
from redemption_engine.models.redemption import Redemption, redemption_from_stored
from redemption_engine.models.voucher import VoucherForRedemption

logger = logging.getLogger(__name__)

GLOBAL_SCOPE = "*"
MAX_PAGE_SIZE = 100


def hash_code(code: str) -> str:
    return hashlib.sha256(code.encode()).hexdigest()


def dedupe_key_for(code: str, customer_id: str, ordinal: int, single_use: bool) -> str:
    if single_use:
        return hash_code(code)
    return hash_code(f"{code}:{customer_id}:{ordinal}")


@dataclass
class PendingRedemption:
    """A validated redemption waiting to be persisted"""
    redemption: Redemption
    voucher: VoucherForRedemption
    single_use: bool = True


class RedemptionRecorder:
    """Repository for VoucherRedemption rows and their slot counters"""

    # ============================================================
    # READS
    # ============================================================

    def get_redemption_by_code(self, db: Session, code: str) -> Optional[Redemption]:
        try:
            row = db.query(VoucherRedemption).filter(
                VoucherRedemption.code_hash == hash_code(code)
            ).order_by(VoucherRedemption.redeemed_at.asc()).first()
        except SQLAlchemyError as e:
            logger.error(f"Error looking up redemption by code: {e}")
            raise InfrastructureError("Failed to read redemptions", original_error=e)
        return redemption_from_stored(row) if row else None

    def get_redemption(self, db: Session, redemption_id: str) -> Optional[Redemption]:
        try:
            row = db.query(VoucherRedemption).filter(
                VoucherRedemption.id == redemption_id
            ).first()
        except SQLAlchemyError as e:
            logger.error(f"Error reading redemption {redemption_id}: {e}")
            raise InfrastructureError("Failed to read redemptions", original_error=e)
        return redemption_from_stored(row) if row else None

    def count_voucher_redemptions(self, db: Session, voucher_id: str) -> int:
        try:
            return db.query(func.count(VoucherRedemption.id)).filter(
                VoucherRedemption.voucher_id == voucher_id
            ).scalar() or 0
        except SQLAlchemyError as e:
            logger.error(f"Error counting redemptions for voucher {voucher_id}: {e}")
            raise InfrastructureError("Failed to count redemptions", original_error=e)

    def count_customer_voucher_redemptions(
        self,
        db: Session,
        voucher_id: str,
        customer_id: str
    ) -> int:
        try:
            return db.query(func.count(VoucherRedemption.id)).filter(
                VoucherRedemption.voucher_id == voucher_id,
                VoucherRedemption.customer_id == customer_id
            ).scalar() or 0
        except SQLAlchemyError as e:
            logger.error(f"Error counting customer redemptions for voucher {voucher_id}: {e}")
            raise InfrastructureError("Failed to count redemptions", original_error=e)

    def recent_customer_redemptions(
        self,
        db: Session,
        customer_id: str,
        limit: int = 10,
        before: Optional[datetime] = None
    ) -> List[Redemption]:
        """Most recent first."""
        try:
            query = db.query(VoucherRedemption).filter(
                VoucherRedemption.customer_id == customer_id
            )
            if before is not None:
                query = query.filter(VoucherRedemption.redeemed_at <= before)
            rows = query.order_by(
                VoucherRedemption.redeemed_at.desc()
            ).limit(limit).all()
        except SQLAlchemyError as e:
            logger.error(f"Error reading redemption history for {customer_id}: {e}")
            raise InfrastructureError("Failed to read redemptions", original_error=e)
        return [redemption_from_stored(r) for r in rows]

    def count_customer_provider_redemptions_since(
        self,
        db: Session,
        customer_id: str,
        provider_id: str,
        since: datetime
    ) -> int:
        try:
            return db.query(func.count(VoucherRedemption.id)).filter(
                VoucherRedemption.customer_id == customer_id,
                VoucherRedemption.provider_id == provider_id,
                VoucherRedemption.redeemed_at >= since
            ).scalar() or 0
        except SQLAlchemyError as e:
            logger.error(f"Error counting provider redemptions for {customer_id}: {e}")
            raise InfrastructureError("Failed to count redemptions", original_error=e)

    def search_redemptions(
        self,
        db: Session,
        customer_id: Optional[str] = None,
        provider_id: Optional[str] = None,
        voucher_id: Optional[str] = None,
        offline: Optional[bool] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        page: int = 1,
        limit: int = 20
    ) -> Dict[str, Any]:
        """Filtered, paginated redemption list, most recent first."""
        page = max(1, page)
        limit = max(1, min(limit, MAX_PAGE_SIZE))

        query = db.query(VoucherRedemption)
        if customer_id:
            query = query.filter(VoucherRedemption.customer_id == customer_id)
        if provider_id:
            query = query.filter(VoucherRedemption.provider_id == provider_id)
        if voucher_id:
            query = query.filter(VoucherRedemption.voucher_id == voucher_id)
        if offline is not None:
            query = query.filter(VoucherRedemption.offline_redemption.is_(offline))
        if from_date is not None:
            query = query.filter(VoucherRedemption.redeemed_at >= as_utc(from_date))
        if to_date is not None:
            query = query.filter(VoucherRedemption.redeemed_at <= as_utc(to_date))

        try:
            total = query.count()
            rows = query.order_by(
                VoucherRedemption.redeemed_at.desc(),
                VoucherRedemption.id.desc()
            ).offset((page - 1) * limit).limit(limit).all()
        except SQLAlchemyError as e:
            logger.error(f"Error searching redemptions: {e}")
            raise InfrastructureError("Failed to search redemptions", original_error=e)

        return {
            "data": [redemption_from_stored(r) for r in rows],
            "total": total,
            "page": page,
            "limit": limit
        }

    # ============================================================
    # SLOT COUNTERS
    # ============================================================

    def _ensure_counter(self, db: Session, voucher_id: str, scope: str) -> None:
        existing = db.query(func.count(VoucherRedemption.id)).filter(
            VoucherRedemption.voucher_id == voucher_id
        )
        if scope != GLOBAL_SCOPE:
            existing = existing.filter(VoucherRedemption.customer_id == scope)

        insert_if_absent(
            db,
            RedemptionCounter,
            {
                "voucher_id": voucher_id,
                "scope": scope,
                "count": existing.scalar() or 0,
                "updated_at": utcnow()
            },
            index_elements=["voucher_id", "scope"]
        )

    def _take_slot(
        self,
        db: Session,
        voucher_id: str,
        scope: str,
        limit: Optional[int]
    ) -> Optional[int]:
        """Increment the counter if below limit; returns the new count or None."""
        self._ensure_counter(db, voucher_id, scope)

        stmt = update(RedemptionCounter).where(
            RedemptionCounter.voucher_id == voucher_id,
            RedemptionCounter.scope == scope
        )
        if limit is not None:
            stmt = stmt.where(RedemptionCounter.count < limit)
        stmt = stmt.values(
            count=RedemptionCounter.count + 1,
            updated_at=utcnow()
        ).returning(RedemptionCounter.count).execution_options(synchronize_session=False)

        return db.execute(stmt).scalar_one_or_none()

    # ============================================================
    # WRITES
    # ============================================================

    def _insert(self, db: Session, pending: PendingRedemption) -> VoucherRedemption:
        redemption = pending.redemption
        voucher = pending.voucher

        if self._take_slot(db, voucher.id, GLOBAL_SCOPE, voucher.max_redemptions) is None:
            raise RedemptionCapExceeded(
                "Voucher has reached its redemption limit",
                {"voucher_id": voucher.id, "max_redemptions": voucher.max_redemptions}
            )

        ordinal = self._take_slot(
            db, voucher.id, redemption.customer_id, voucher.max_redemptions_per_user
        )
        if ordinal is None:
            raise PerUserCapExceeded(
                "Customer has reached the per-user redemption limit",
                {
                    "voucher_id": voucher.id,
                    "customer_id": redemption.customer_id,
                    "max_redemptions_per_user": voucher.max_redemptions_per_user
                }
            )

        row = VoucherRedemption(
            voucher_id=redemption.voucher_id,
            customer_id=redemption.customer_id,
            provider_id=redemption.provider_id,
            code=redemption.code,
            code_hash=hash_code(redemption.code),
            dedupe_key=dedupe_key_for(
                redemption.code, redemption.customer_id, ordinal, pending.single_use
            ),
            redeemed_at=redemption.redeemed_at,
            latitude=redemption.location.lat if redemption.location else None,
            longitude=redemption.location.lng if redemption.location else None,
            offline_redemption=redemption.offline_redemption,
            redemption_metadata=redemption.metadata,
            created_at=redemption.created_at,
            updated_at=redemption.updated_at
        )
        db.add(row)
        db.flush()
        return row

    def _persist(self, db: Session, pending: PendingRedemption, sync: bool) -> Redemption:
        """Run one insert (and optional sync) in its own transaction."""
        try:
            row = self._insert(db, pending)
            if sync:
                self._mark_synced(db, row.id, utcnow())
            db.commit()
        except RedemptionEngineError:
            db.rollback()
            raise
        except IntegrityError as e:
            db.rollback()
            logger.info(
                f"Duplicate redemption for voucher {pending.voucher.id} "
                f"by customer {pending.redemption.customer_id}"
            )
            raise DuplicateRedemption(
                "Credential has already been redeemed",
                {"voucher_id": pending.voucher.id}
            ) from e
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Error recording redemption for voucher {pending.voucher.id}: {e}")
            raise InfrastructureError("Failed to record redemption", original_error=e)

        db.refresh(row)
        return redemption_from_stored(row)

    def record_redemption(
        self,
        db: Session,
        redemption: Redemption,
        voucher: VoucherForRedemption,
        single_use: bool = True
    ) -> Redemption:
        """
        Persist an online redemption.

        Raises:
            RedemptionCapExceeded, PerUserCapExceeded, DuplicateRedemption,
            InfrastructureError
        """
        if redemption.offline_redemption:
            raise ValueError("Use batch_insert_redemptions for offline redemptions")

        recorded = self._persist(
            db, PendingRedemption(redemption, voucher, single_use), sync=False
        )
        logger.info(
            f"Recorded redemption {recorded.id} of voucher {recorded.voucher_id} "
            f"by customer {recorded.customer_id}"
        )
        return recorded

    def batch_insert_redemptions(
        self,
        db: Session,
        pending: List[PendingRedemption]
    ) -> List[Union[Redemption, RedemptionEngineError]]:
        """
        Insert offline-origin redemptions and mark each synced.

        Every record commits or rolls back on its own; the result list is
        aligned with the input and holds either the stored redemption or the
        error that rejected it.
        """
        outcomes: List[Union[Redemption, RedemptionEngineError]] = []
        for item in pending:
            if not item.redemption.offline_redemption:
                item = PendingRedemption(
                    item.redemption.model_copy(update={"offline_redemption": True}),
                    item.voucher,
                    item.single_use
                )
            try:
                outcomes.append(self._persist(db, item, sync=True))
            except RedemptionEngineError as e:
                outcomes.append(e)

        accepted = sum(1 for o in outcomes if isinstance(o, Redemption))
        logger.info(f"Offline batch insert: {accepted}/{len(pending)} accepted")
        return outcomes

    def _mark_synced(self, db: Session, redemption_id: str, synced_at: datetime) -> int:
        result = db.execute(
            update(VoucherRedemption).where(
                VoucherRedemption.id == redemption_id,
                VoucherRedemption.offline_redemption.is_(True),
                VoucherRedemption.synced_at.is_(None)
            ).values(
                synced_at=synced_at,
                updated_at=utcnow()
            ).execution_options(synchronize_session=False)
        )
        return result.rowcount

    def update_redemption_sync_status(
        self,
        db: Session,
        redemption_id: str,
        synced_at: Optional[datetime] = None
    ) -> Optional[Redemption]:
        """
        Mark an offline redemption synced.

        Idempotent: an already-synced redemption keeps its original syncedAt.
        Returns None if the redemption does not exist.
        """
        try:
            row = db.query(VoucherRedemption).filter(
                VoucherRedemption.id == redemption_id
            ).first()
            if row is None:
                return None
            if not row.offline_redemption:
                raise InvalidStateTransition(
                    "Only offline redemptions can be marked as synced",
                    {"redemption_id": redemption_id}
                )
            self._mark_synced(db, redemption_id, as_utc(synced_at) or utcnow())
            db.commit()
            db.refresh(row)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Error updating sync status of {redemption_id}: {e}")
            raise InfrastructureError("Failed to update sync status", original_error=e)

        return redemption_from_stored(row)


# Singleton instance
redemption_recorder = RedemptionRecorder()
