"""
Fraud Case Service - case creation, numbering, review and statistics

Case numbers are FRAUD-{year}-{seq:04d}. The per-year sequence is a row in
fraud_case_sequences incremented with UPDATE ... RETURNING inside the same
transaction that inserts the case, so concurrent openings never collide.

Every creation and transition is appended to fraud_case_history.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from redemption_engine.clock import as_utc, utcnow
from redemption_engine.db.database import insert_if_absent
from redemption_engine.db.models import FraudCase as FraudCaseRecord
from redemption_engine.db.models import FraudCaseHistory, FraudCaseSequence
from redemption_engine.errors import (
    FraudCaseNotFound,
    InfrastructureError,
    InvalidStateTransition,
    RedemptionEngineError
)
from redemption_engine.models.fraud import (
    OPEN_STATUSES,
    FraudCase,
    FraudCaseStatus,
    FraudScore,
    FraudStatistics,
    RiskScoreDistribution,
    TimeMetrics,
    format_case_number,
    fraud_case_from_stored,
    is_urgent,
    new_fraud_case,
    review_fraud_case,
    risk_bucket,
    start_review as start_review_of
)
from redemption_engine.models.redemption import Redemption
from redemption_engine.services.replay_store import ReplayStore, replay_store

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"
MAX_PAGE_SIZE = 100

PERIOD_DAYS = {
    "day": 1,
    "week": 7,
    "month": 30,
    "year": 365,
}


class FraudCaseService:
    """Lifecycle manager for fraud cases"""

    def __init__(self, store: Optional[ReplayStore] = None):
        self.store = store or replay_store

    # ============================================================
    # NUMBERING
    # ============================================================

    def get_next_case_number(self, db: Session, year: Optional[int] = None) -> str:
        """
        Allocate the next case number for year.

        Runs in the caller's transaction; the caller commits.
        """
        year = year or utcnow().year
        insert_if_absent(
            db,
            FraudCaseSequence,
            {"year": year, "last_value": 0},
            index_elements=["year"]
        )
        sequence = db.execute(
            update(FraudCaseSequence)
            .where(FraudCaseSequence.year == year)
            .values(last_value=FraudCaseSequence.last_value + 1)
            .returning(FraudCaseSequence.last_value)
            .execution_options(synchronize_session=False)
        ).scalar_one()
        return format_case_number(year, sequence)

    # ============================================================
    # CREATION
    # ============================================================

    def open_case(
        self,
        db: Session,
        redemption: Redemption,
        score: FraudScore,
        detection_metadata: Optional[Dict[str, Any]] = None
    ) -> FraudCase:
        """
        Open a PENDING case for a recorded redemption.

        Opening twice for the same redemption returns the existing case.
        """
        if not redemption.id:
            raise ValueError("Redemption must be persisted before opening a case")

        try:
            case_number = self.get_next_case_number(db)
            case = new_fraud_case(
                case_number=case_number,
                redemption_id=redemption.id,
                score=score,
                customer_id=redemption.customer_id,
                provider_id=redemption.provider_id,
                voucher_id=redemption.voucher_id,
                detected_at=utcnow(),
                detection_metadata=detection_metadata
            )
            row = FraudCaseRecord(
                case_number=case.case_number,
                redemption_id=case.redemption_id,
                detected_at=case.detected_at,
                risk_score=case.risk_score,
                flags=[f.model_dump(mode="json") for f in case.flags],
                detection_metadata=case.detection_metadata,
                customer_id=case.customer_id,
                provider_id=case.provider_id,
                voucher_id=case.voucher_id,
                status=case.status.value,
                created_at=case.created_at,
                updated_at=case.updated_at
            )
            db.add(row)
            db.flush()
            self._append_history(
                db, row.id, "CREATED", SYSTEM_ACTOR,
                details={"risk_score": case.risk_score, "flags": [f.type for f in case.flags]}
            )
            db.commit()
        except IntegrityError as e:
            db.rollback()
            existing = self._find_by_redemption(db, redemption.id)
            if existing is None:
                logger.error(f"Conflict opening fraud case for redemption {redemption.id}: {e}")
                raise InfrastructureError("Failed to open fraud case", original_error=e)
            logger.info(f"Fraud case already open for redemption {redemption.id}")
            return fraud_case_from_stored(existing)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Error opening fraud case for redemption {redemption.id}: {e}")
            raise InfrastructureError("Failed to open fraud case", original_error=e)

        db.refresh(row)
        created = fraud_case_from_stored(row)
        logger.info(
            f"Opened fraud case {created.case_number} for redemption {redemption.id} "
            f"(risk {created.risk_score}, urgent={is_urgent(created)})"
        )
        return created

    # ============================================================
    # READS
    # ============================================================

    def _find_by_redemption(self, db: Session, redemption_id: str) -> Optional[FraudCaseRecord]:
        return db.query(FraudCaseRecord).filter(
            FraudCaseRecord.redemption_id == redemption_id
        ).first()

    def _load(self, db: Session, case_id: str) -> FraudCaseRecord:
        try:
            row = db.query(FraudCaseRecord).filter(FraudCaseRecord.id == case_id).first()
        except SQLAlchemyError as e:
            logger.error(f"Error reading fraud case {case_id}: {e}")
            raise InfrastructureError("Failed to read fraud case", original_error=e)
        if row is None:
            raise FraudCaseNotFound("Fraud case not found", {"case_id": case_id})
        return row

    def get_case(self, db: Session, case_id: str) -> FraudCase:
        return fraud_case_from_stored(self._load(db, case_id))

    def get_case_by_number(self, db: Session, case_number: str) -> FraudCase:
        row = db.query(FraudCaseRecord).filter(
            FraudCaseRecord.case_number == case_number
        ).first()
        if row is None:
            raise FraudCaseNotFound("Fraud case not found", {"case_number": case_number})
        return fraud_case_from_stored(row)

    def get_case_history(self, db: Session, case_id: str) -> List[Dict[str, Any]]:
        row = self._load(db, case_id)
        return [
            {
                "action": h.action,
                "performed_by": h.performed_by,
                "notes": h.notes,
                "details": h.details,
                "created_at": h.created_at.isoformat() if h.created_at else None
            }
            for h in row.history
        ]

    def search_cases(
        self,
        db: Session,
        status: Optional[FraudCaseStatus] = None,
        provider_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        min_risk_score: Optional[int] = None,
        max_risk_score: Optional[int] = None,
        page: int = 1,
        limit: int = 20
    ) -> Dict[str, Any]:
        """Filtered, paginated case list, newest detection first."""
        page = max(1, page)
        limit = max(1, min(limit, MAX_PAGE_SIZE))

        query = db.query(FraudCaseRecord)
        if status is not None:
            query = query.filter(FraudCaseRecord.status == FraudCaseStatus(status).value)
        if provider_id:
            query = query.filter(FraudCaseRecord.provider_id == provider_id)
        if customer_id:
            query = query.filter(FraudCaseRecord.customer_id == customer_id)
        if from_date is not None:
            query = query.filter(FraudCaseRecord.detected_at >= as_utc(from_date))
        if to_date is not None:
            query = query.filter(FraudCaseRecord.detected_at <= as_utc(to_date))
        if min_risk_score is not None:
            query = query.filter(FraudCaseRecord.risk_score >= min_risk_score)
        if max_risk_score is not None:
            query = query.filter(FraudCaseRecord.risk_score <= max_risk_score)

        try:
            total = query.count()
            rows = query.order_by(
                FraudCaseRecord.detected_at.desc(),
                FraudCaseRecord.case_number.desc()
            ).offset((page - 1) * limit).limit(limit).all()
        except SQLAlchemyError as e:
            logger.error(f"Error searching fraud cases: {e}")
            raise InfrastructureError("Failed to search fraud cases", original_error=e)

        return {
            "data": [fraud_case_from_stored(r) for r in rows],
            "total": total,
            "page": page,
            "limit": limit
        }

    # ============================================================
    # TRANSITIONS
    # ============================================================

    def start_review(self, db: Session, case_id: str, reviewer_id: str) -> FraudCase:
        """PENDING -> REVIEWING"""
        row = self._load(db, case_id)
        reviewing = start_review_of(fraud_case_from_stored(row))

        try:
            result = db.execute(
                update(FraudCaseRecord)
                .where(
                    FraudCaseRecord.id == case_id,
                    FraudCaseRecord.status == FraudCaseStatus.PENDING.value
                )
                .values(status=reviewing.status.value, updated_at=reviewing.updated_at)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                raise InvalidStateTransition(
                    "Case is no longer pending",
                    {"case_id": case_id}
                )
            self._append_history(db, case_id, "REVIEW_STARTED", reviewer_id)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Error starting review of case {case_id}: {e}")
            raise InfrastructureError("Failed to update fraud case", original_error=e)

        logger.info(f"Review of case {reviewing.case_number} started by {reviewer_id}")
        return self.get_case(db, case_id)

    def review(
        self,
        db: Session,
        case_id: str,
        status: FraudCaseStatus,
        reviewer_id: str,
        notes: Optional[str] = None,
        actions: Optional[Iterable[Dict[str, Any]]] = None
    ) -> FraudCase:
        """
        Close an open case with a terminal status.

        Raises:
            FraudCaseNotFound: unknown case
            InvalidStateTransition: case already terminal, or status not terminal
        """
        row = self._load(db, case_id)
        reviewed = review_fraud_case(
            fraud_case_from_stored(row), status, reviewer_id, notes, actions
        )

        try:
            # Conditional on still being open: a concurrent review wins once
            result = db.execute(
                update(FraudCaseRecord)
                .where(
                    FraudCaseRecord.id == case_id,
                    FraudCaseRecord.status.in_([s.value for s in OPEN_STATUSES])
                )
                .values(
                    status=reviewed.status.value,
                    reviewed_at=reviewed.reviewed_at,
                    reviewed_by=reviewed.reviewed_by,
                    review_notes=reviewed.review_notes,
                    actions_taken=[a.model_dump(mode="json") for a in reviewed.actions_taken],
                    updated_at=reviewed.updated_at
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                raise InvalidStateTransition(
                    "Case has already been reviewed",
                    {"case_id": case_id}
                )
            self._append_history(
                db, case_id, "REVIEWED", reviewer_id,
                notes=notes,
                details={
                    "status": reviewed.status.value,
                    "actions": [a.type for a in reviewed.actions_taken]
                }
            )
            self._apply_actions(reviewed)
            db.commit()
        except RedemptionEngineError:
            db.rollback()
            raise
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Error reviewing case {case_id}: {e}")
            raise InfrastructureError("Failed to review fraud case", original_error=e)

        logger.info(
            f"Case {reviewed.case_number} reviewed by {reviewer_id}: {reviewed.status.value}"
        )
        return self.get_case(db, case_id)

    def _apply_actions(self, case: FraudCase) -> None:
        for action in case.actions_taken:
            if action.type == "block_customer":
                self.store.add_to_blocklist(f"customer:{case.customer_id}")
                device_id = (action.details or {}).get("device_id")
                if device_id:
                    self.store.add_to_blocklist(f"device:{device_id}")
            else:
                # void_redemption, flag_provider, whitelist_pattern are recorded
                # on the case for downstream consumers
                logger.info(f"Case {case.case_number}: action {action.type} recorded")

    def _append_history(
        self,
        db: Session,
        case_id: str,
        action: str,
        performed_by: str,
        notes: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ) -> None:
        db.add(FraudCaseHistory(
            case_id=case_id,
            action=action,
            performed_by=performed_by,
            notes=notes,
            details=details,
            created_at=utcnow()
        ))

    # ============================================================
    # STATISTICS
    # ============================================================

    def get_statistics(
        self,
        db: Session,
        provider_id: Optional[str] = None,
        period: Optional[str] = None
    ) -> FraudStatistics:
        """
        Aggregate case data, optionally for one provider and a trailing period
        (day, week, month, year).
        """
        now = utcnow()
        query = db.query(FraudCaseRecord)
        if provider_id:
            query = query.filter(FraudCaseRecord.provider_id == provider_id)
        if period in PERIOD_DAYS:
            query = query.filter(
                FraudCaseRecord.detected_at >= now - timedelta(days=PERIOD_DAYS[period])
            )

        try:
            rows = query.all()
        except SQLAlchemyError as e:
            logger.error(f"Error computing fraud statistics: {e}")
            raise InfrastructureError("Failed to compute fraud statistics", original_error=e)

        cases_by_status = {s.value: 0 for s in FraudCaseStatus}
        cases_by_type: Dict[str, int] = {}
        distribution = RiskScoreDistribution()
        review_hours = []
        pending_detected = []

        for row in rows:
            cases_by_status[row.status] = cases_by_status.get(row.status, 0) + 1
            for flag in row.flags or []:
                flag_type = flag.get("type", "UNKNOWN")
                cases_by_type[flag_type] = cases_by_type.get(flag_type, 0) + 1
            bucket = risk_bucket(row.risk_score)
            setattr(distribution, bucket, getattr(distribution, bucket) + 1)
            if row.reviewed_at is not None:
                review_hours.append((row.reviewed_at - row.detected_at).total_seconds() / 3600)
            if row.status == FraudCaseStatus.PENDING.value:
                pending_detected.append(row.detected_at)

        total = len(rows)
        return FraudStatistics(
            total_cases=total,
            pending_cases=cases_by_status[FraudCaseStatus.PENDING.value],
            cases_by_status=cases_by_status,
            average_risk_score=(sum(r.risk_score for r in rows) / total) if total else 0.0,
            cases_by_type=cases_by_type,
            risk_score_distribution=distribution,
            time_metrics=TimeMetrics(
                average_review_time=(
                    round(sum(review_hours) / len(review_hours), 1) if review_hours else 0.0
                ),
                cases_last_24h=sum(1 for r in rows if r.detected_at >= now - timedelta(hours=24)),
                cases_last_7d=sum(1 for r in rows if r.detected_at >= now - timedelta(days=7)),
                oldest_pending_case=min(pending_detected) if pending_detected else None
            )
        )


# Singleton instance
fraud_case_service = FraudCaseService()
