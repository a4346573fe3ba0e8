"""
Fraud Scoring - policy-based risk scoring of redemption attempts

Each detector looks at the attempt and its context and raises at most one
flag. The risk score is the sum of flag weights, saturating at 100, so every
point of risk traces back to a named flag:

    LOW = 10, MEDIUM = 20, HIGH = 40

Two MEDIUM flags weigh the same as one HIGH flag.

Scoring is advisory. It never blocks a redemption; escalation opens a fraud
case for human review after the redemption is recorded.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from redemption_engine.config import settings
from redemption_engine.models.fraud import FlagSeverity, FlagType, FraudFlag, FraudScore
from redemption_engine.models.redemption import GeoPoint, Redemption
from redemption_engine.services.geo_service import distance_km, is_within_radius
from redemption_engine.services.redemption_recorder import RedemptionRecorder, redemption_recorder
from redemption_engine.services.replay_store import ReplayStore, replay_store

logger = logging.getLogger(__name__)

SEVERITY_WEIGHTS = {
    FlagSeverity.LOW: 10,
    FlagSeverity.MEDIUM: 20,
    FlagSeverity.HIGH: 40,
}
MAX_RISK_SCORE = 100

HISTORY_LIMIT = 20
LOCATION_HISTORY_SIZE = 10
LOCATION_HISTORY_MIN = 3
RAPID_REDEMPTION_HIGH_MINUTES = 1.0


@dataclass
class RedemptionAttempt:
    voucher_id: str
    customer_id: str
    provider_id: str
    attempted_at: datetime
    location: Optional[GeoPoint] = None
    device_id: Optional[str] = None


@dataclass
class ScoringContext:
    """Signals gathered before scoring; history is most recent first."""
    recent_redemptions: List[Redemption] = field(default_factory=list)
    provider_location: Optional[GeoPoint] = None
    replay_attempts: int = 0
    customer_blocklisted: bool = False
    device_blocklisted: bool = False
    provider_redemptions_last_hour: int = 0


Detector = Callable[[RedemptionAttempt, ScoringContext], Optional[FraudFlag]]


# ============================================================
# DETECTORS
# ============================================================

def detect_rapid_redemption(attempt: RedemptionAttempt, context: ScoringContext) -> Optional[FraudFlag]:
    if not context.recent_redemptions:
        return None

    previous = context.recent_redemptions[0]
    minutes = (attempt.attempted_at - previous.redeemed_at).total_seconds() / 60
    if minutes < 0 or minutes >= settings.FRAUD_RAPID_REDEMPTION_MINUTES:
        return None

    return FraudFlag(
        type=FlagType.RAPID_REDEMPTION,
        severity=FlagSeverity.HIGH if minutes < RAPID_REDEMPTION_HIGH_MINUTES else FlagSeverity.MEDIUM,
        message=f"Multiple redemptions within {round(minutes)} minutes",
        details={
            "previous_voucher_id": previous.voucher_id,
            "minutes_apart": round(minutes, 1)
        }
    )


def detect_velocity(attempt: RedemptionAttempt, context: ScoringContext) -> Optional[FraudFlag]:
    """Implied travel speed since the last located redemption."""
    if attempt.location is None:
        return None

    previous = next((r for r in context.recent_redemptions if r.location is not None), None)
    # Multi-location providers are not penalised
    if previous is None or previous.provider_id == attempt.provider_id:
        return None

    distance = distance_km(previous.location, attempt.location)
    hours = (attempt.attempted_at - previous.redeemed_at).total_seconds() / 3600

    if hours <= 0:
        if distance == 0:
            return None
        return FraudFlag(
            type=FlagType.VELOCITY,
            severity=FlagSeverity.HIGH,
            message="Multiple locations at the same time",
            details={
                "distance_km": round(distance),
                "locations": [previous.location.model_dump(), attempt.location.model_dump()]
            }
        )

    velocity = distance / hours
    if velocity <= settings.FRAUD_VELOCITY_KMH:
        return None

    return FraudFlag(
        type=FlagType.VELOCITY,
        severity=FlagSeverity.HIGH if velocity > settings.FRAUD_VELOCITY_HIGH_KMH else FlagSeverity.MEDIUM,
        message=f"High travel speed: {round(velocity)} km/h",
        details={
            "distance_km": round(distance),
            "time_hours": round(hours, 1),
            "velocity_kmh": round(velocity)
        }
    )


def detect_location_anomaly(attempt: RedemptionAttempt, context: ScoringContext) -> Optional[FraudFlag]:
    """Average distance from the customer's usual redemption spots."""
    if attempt.location is None:
        return None

    history = [
        r.location for r in context.recent_redemptions if r.location is not None
    ][:LOCATION_HISTORY_SIZE]
    if len(history) < LOCATION_HISTORY_MIN:
        return None

    average = sum(distance_km(point, attempt.location) for point in history) / len(history)
    if average <= settings.FRAUD_LOCATION_ANOMALY_KM:
        return None

    return FraudFlag(
        type=FlagType.LOCATION_ANOMALY,
        severity=(
            FlagSeverity.HIGH if average > settings.FRAUD_LOCATION_ANOMALY_HIGH_KM
            else FlagSeverity.MEDIUM
        ),
        message=f"Unusual location: {round(average)}km from typical areas",
        details={
            "average_distance_km": round(average),
            "current_location": attempt.location.model_dump()
        }
    )


def detect_distant_location(attempt: RedemptionAttempt, context: ScoringContext) -> Optional[FraudFlag]:
    if attempt.location is None or context.provider_location is None:
        return None
    if is_within_radius(attempt.location, context.provider_location, settings.FRAUD_DISTANT_LOCATION_KM):
        return None

    distance = distance_km(attempt.location, context.provider_location)
    return FraudFlag(
        type=FlagType.DISTANT_LOCATION,
        severity=FlagSeverity.MEDIUM,
        message=f"Redeemed {round(distance, 1)}km from the provider",
        details={
            "distance_km": round(distance, 1),
            "radius_km": settings.FRAUD_DISTANT_LOCATION_KM
        }
    )


def detect_credential_replay(attempt: RedemptionAttempt, context: ScoringContext) -> Optional[FraudFlag]:
    if context.replay_attempts <= 0:
        return None
    return FraudFlag(
        type=FlagType.CREDENTIAL_REPLAY,
        severity=FlagSeverity.HIGH,
        message=f"{context.replay_attempts} replayed credential(s) in the last 24h",
        details={"replay_attempts": context.replay_attempts}
    )


def detect_blocklisted(attempt: RedemptionAttempt, context: ScoringContext) -> Optional[FraudFlag]:
    if not (context.customer_blocklisted or context.device_blocklisted):
        return None
    return FraudFlag(
        type=FlagType.BLOCKLISTED,
        severity=FlagSeverity.HIGH,
        message="Customer or device is on the blocklist",
        details={
            "customer": context.customer_blocklisted,
            "device": context.device_blocklisted
        }
    )


def detect_provider_burst(attempt: RedemptionAttempt, context: ScoringContext) -> Optional[FraudFlag]:
    # This attempt would be one more on top of the recorded ones
    total = context.provider_redemptions_last_hour + 1
    if total <= settings.FRAUD_PROVIDER_BURST_PER_HOUR:
        return None
    return FraudFlag(
        type=FlagType.PROVIDER_BURST,
        severity=FlagSeverity.MEDIUM,
        message=f"{total} redemptions at the same provider within an hour",
        details={"provider_id": attempt.provider_id, "count": total}
    )


def _in_quiet_hours(hour: int, start: int, end: int) -> bool:
    if start == end:
        return False
    if start < end:
        return start <= hour < end
    # Window wraps midnight
    return hour >= start or hour < end


def detect_odd_hour(attempt: RedemptionAttempt, context: ScoringContext) -> Optional[FraudFlag]:
    hour = attempt.attempted_at.hour
    if not _in_quiet_hours(hour, settings.FRAUD_QUIET_HOURS_START, settings.FRAUD_QUIET_HOURS_END):
        return None
    return FraudFlag(
        type=FlagType.ODD_HOUR,
        severity=FlagSeverity.LOW,
        message=f"Redemption at {hour:02d}:00 UTC",
        details={"hour_utc": hour}
    )


DETECTORS: List[Detector] = [
    detect_rapid_redemption,
    detect_velocity,
    detect_location_anomaly,
    detect_distant_location,
    detect_credential_replay,
    detect_blocklisted,
    detect_provider_burst,
    detect_odd_hour,
]


def score(
    attempt: RedemptionAttempt,
    context: ScoringContext,
    detectors: Optional[List[Detector]] = None
) -> FraudScore:
    """Run every detector and combine the flags into a saturating score."""
    flags = []
    for detector in detectors or DETECTORS:
        flag = detector(attempt, context)
        if flag is not None:
            flags.append(flag)

    contributions = [SEVERITY_WEIGHTS[f.severity] for f in flags]
    return FraudScore(
        risk_score=min(sum(contributions), MAX_RISK_SCORE),
        flags=flags,
        contributions=contributions
    )


class FraudScoringService:
    """Gathers scoring context from the stores and scores attempts"""

    def __init__(
        self,
        recorder: Optional[RedemptionRecorder] = None,
        store: Optional[ReplayStore] = None
    ):
        self.recorder = recorder or redemption_recorder
        self.store = store or replay_store

    def build_context(
        self,
        db: Session,
        attempt: RedemptionAttempt,
        provider_location: Optional[GeoPoint] = None
    ) -> ScoringContext:
        recent = self.recorder.recent_customer_redemptions(
            db, attempt.customer_id, limit=HISTORY_LIMIT, before=attempt.attempted_at
        )
        burst = self.recorder.count_customer_provider_redemptions_since(
            db,
            attempt.customer_id,
            attempt.provider_id,
            attempt.attempted_at - timedelta(hours=1)
        )
        return ScoringContext(
            recent_redemptions=recent,
            provider_location=provider_location,
            replay_attempts=self.store.replay_attempts(attempt.customer_id),
            customer_blocklisted=self.store.is_blocklisted(f"customer:{attempt.customer_id}"),
            device_blocklisted=bool(
                attempt.device_id and self.store.is_blocklisted(f"device:{attempt.device_id}")
            ),
            provider_redemptions_last_hour=burst
        )

    def evaluate(
        self,
        db: Session,
        attempt: RedemptionAttempt,
        provider_location: Optional[GeoPoint] = None
    ) -> FraudScore:
        context = self.build_context(db, attempt, provider_location)
        result = score(attempt, context)
        if result.flags:
            logger.info(
                f"Fraud flags for customer {attempt.customer_id} on voucher "
                f"{attempt.voucher_id}: {[f.type for f in result.flags]} "
                f"(risk {result.risk_score})"
            )
        return result


# Singleton instance
fraud_scoring_service = FraudScoringService()
