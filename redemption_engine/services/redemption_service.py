"""
Redemption Service - orchestrates a redemption attempt end to end

    credential -> eligibility -> fraud score -> record -> (fraud case)

Fraud scoring never blocks: a suspicious redemption is still recorded and a
case is opened for review afterwards. If the case cannot be opened right away
it is queued on the worker with retries; the redemption stands either way.
"""
import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from redemption_engine.clock import as_utc, utcnow
from redemption_engine.config import settings
from redemption_engine.errors import (
    InfrastructureError,
    MalformedCredential,
    RedemptionEngineError,
    ReplayedCredential
)
from redemption_engine.models.credentials import ResolvedCredential
from redemption_engine.models.fraud import FraudFlag, FraudScore, should_escalate
from redemption_engine.models.redemption import (
    GeoPoint,
    OfflineRedemptionRecord,
    Redemption,
    RejectedRecord,
    SyncResult,
    new_redemption
)
from redemption_engine.services.credential_service import (
    CredentialService,
    credential_service
)
from redemption_engine.services.fraud_case_service import FraudCaseService, fraud_case_service
from redemption_engine.services.fraud_scoring_service import (
    FraudScoringService,
    RedemptionAttempt,
    fraud_scoring_service
)
from redemption_engine.services.redemption_recorder import (
    PendingRedemption,
    RedemptionRecorder,
    redemption_recorder
)
from redemption_engine.services.redemption_validator import (
    RedemptionValidator,
    redemption_validator
)

logger = logging.getLogger(__name__)


class RedeemResult(BaseModel):
    redemption: Redemption
    risk_score: int = 0
    flags: List[FraudFlag] = Field(default_factory=list)
    requires_review: bool = False
    fraud_case_number: Optional[str] = None


class RedemptionService:

    def __init__(
        self,
        credentials: Optional[CredentialService] = None,
        validator: Optional[RedemptionValidator] = None,
        recorder: Optional[RedemptionRecorder] = None,
        scoring: Optional[FraudScoringService] = None,
        cases: Optional[FraudCaseService] = None
    ):
        self.credentials = credentials or credential_service
        self.validator = validator or redemption_validator
        self.recorder = recorder or redemption_recorder
        self.scoring = scoring or fraud_scoring_service
        self.cases = cases or fraud_case_service

    # ============================================================
    # ONLINE REDEMPTION
    # ============================================================

    def redeem(
        self,
        db: Session,
        credential: str,
        customer_id: Optional[str] = None,
        location: Optional[GeoPoint] = None,
        device_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> RedeemResult:
        """
        Redeem a voucher with a token or short code.

        Args:
            db: Database session
            credential: Signed token or short code as presented
            customer_id: Redeeming customer; required for unbound short codes
            location: Where the redemption happens, if known
            device_id: Redeeming device, used by fraud scoring
            metadata: Free-form data stored with the redemption

        Raises:
            CredentialError, EligibilityError, InfrastructureError subclasses
        """
        try:
            resolved = self.credentials.resolve(db, credential)
        except ReplayedCredential:
            owner = self.credentials.credential_owner(credential) or customer_id
            if owner:
                self.credentials.store.record_replay_attempt(owner)
            raise

        customer = self._resolve_customer(resolved, customer_id)
        attempted_at = utcnow()

        voucher = self.validator.validate(
            db,
            resolved.voucher_id,
            customer,
            resolved.code,
            single_use=resolved.single_use,
            attempted_at=attempted_at
        )

        attempt = RedemptionAttempt(
            voucher_id=voucher.id,
            customer_id=customer,
            provider_id=voucher.provider_id,
            attempted_at=attempted_at,
            location=location,
            device_id=device_id
        )
        score = self.scoring.evaluate(db, attempt, voucher.provider_location)

        redemption = self.recorder.record_redemption(
            db,
            new_redemption(
                voucher_id=voucher.id,
                customer_id=customer,
                provider_id=voucher.provider_id,
                code=resolved.code,
                redeemed_at=attempted_at,
                location=location,
                metadata={
                    **(metadata or {}),
                    "credential_type": resolved.kind,
                    "device_id": device_id,
                    "risk_score": score.risk_score
                }
            ),
            voucher,
            single_use=resolved.single_use
        )

        requires_review = should_escalate(score, settings.FRAUD_ESCALATION_THRESHOLD)
        case_number = None
        if requires_review:
            case_number = self._escalate(db, redemption, score, device_id)

        return RedeemResult(
            redemption=redemption,
            risk_score=score.risk_score,
            flags=score.flags,
            requires_review=requires_review,
            fraud_case_number=case_number
        )

    @staticmethod
    def _resolve_customer(resolved: ResolvedCredential, customer_id: Optional[str]) -> str:
        if resolved.customer_id:
            if customer_id and customer_id != resolved.customer_id:
                raise MalformedCredential(
                    "Credential was issued to a different customer",
                    {"voucher_id": resolved.voucher_id}
                )
            return resolved.customer_id
        if not customer_id:
            raise MalformedCredential(
                "customer_id is required for this credential",
                {"voucher_id": resolved.voucher_id}
            )
        return customer_id

    def _escalate(
        self,
        db: Session,
        redemption: Redemption,
        score: FraudScore,
        device_id: Optional[str] = None
    ) -> Optional[str]:
        detection_metadata = {
            "device_id": device_id,
            "contributions": score.contributions,
            "offline_redemption": redemption.offline_redemption
        }
        try:
            case = self.cases.open_case(db, redemption, score, detection_metadata)
            return case.case_number
        except InfrastructureError as e:
            logger.error(
                f"Could not open fraud case for redemption {redemption.id}, queueing: {e}"
            )
            self._queue_case(redemption, score, detection_metadata)
            return None

    @staticmethod
    def _queue_case(
        redemption: Redemption,
        score: FraudScore,
        detection_metadata: Dict[str, Any]
    ) -> None:
        from redemption_engine.worker.tasks import open_fraud_case

        try:
            open_fraud_case.delay(
                redemption.id,
                score.model_dump(mode="json"),
                detection_metadata
            )
        except Exception as e:
            # The redemption is committed; losing the case is logged for follow-up
            logger.error(f"Failed to queue fraud case for redemption {redemption.id}: {e}")

    # ============================================================
    # OFFLINE RECONCILIATION
    # ============================================================

    def sync_offline_redemptions(
        self,
        db: Session,
        records: List[OfflineRedemptionRecord]
    ) -> SyncResult:
        """
        Reconcile redemptions accepted by disconnected clients.

        Each record's credential must be one this engine issued for the
        record's voucher and customer. The record is then re-validated
        against current server state and inserted
        in its own transaction; failures are reported per record and never
        abort the rest of the batch.
        """
        if len(records) > settings.OFFLINE_SYNC_MAX_BATCH:
            raise ValueError(
                f"Offline batch exceeds {settings.OFFLINE_SYNC_MAX_BATCH} records"
            )

        outcomes: List[Any] = [None] * len(records)
        pending: List[PendingRedemption] = []
        pending_index: List[int] = []
        scores: List[FraudScore] = []

        for index, record in enumerate(records):
            try:
                redeemed_at = as_utc(record.redeemed_at)
                resolved = self.credentials.authenticate_offline(
                    db,
                    record.code,
                    record.voucher_id,
                    record.customer_id,
                    redeemed_at
                )
                voucher = self.validator.validate(
                    db,
                    resolved.voucher_id,
                    record.customer_id,
                    resolved.code,
                    single_use=resolved.single_use
                )
                attempt = RedemptionAttempt(
                    voucher_id=voucher.id,
                    customer_id=record.customer_id,
                    provider_id=voucher.provider_id,
                    attempted_at=redeemed_at,
                    location=record.location,
                    device_id=record.device_id
                )
                score = self.scoring.evaluate(db, attempt, voucher.provider_location)
            except RedemptionEngineError as e:
                outcomes[index] = e
                continue

            pending.append(PendingRedemption(
                redemption=new_redemption(
                    voucher_id=voucher.id,
                    customer_id=record.customer_id,
                    provider_id=voucher.provider_id,
                    code=resolved.code,
                    redeemed_at=redeemed_at,
                    location=record.location,
                    offline_redemption=True,
                    metadata={
                        **record.metadata,
                        "device_id": record.device_id,
                        "risk_score": score.risk_score
                    }
                ),
                voucher=voucher,
                single_use=resolved.single_use
            ))
            pending_index.append(index)
            scores.append(score)

        inserted = self.recorder.batch_insert_redemptions(db, pending)
        for index, score, outcome in zip(pending_index, scores, inserted):
            outcomes[index] = outcome
            if isinstance(outcome, Redemption) and should_escalate(
                score, settings.FRAUD_ESCALATION_THRESHOLD
            ):
                self._escalate(db, outcome, score, outcome.metadata.get("device_id"))

        result = SyncResult()
        for record, outcome in zip(records, outcomes):
            if isinstance(outcome, Redemption):
                result.accepted.append(outcome)
            else:
                result.rejected.append(RejectedRecord(record=record, error=outcome.to_dict()))

        logger.info(
            f"Offline sync: {len(result.accepted)} accepted, {len(result.rejected)} rejected"
        )
        return result


# Singleton instance
redemption_service = RedemptionService()
