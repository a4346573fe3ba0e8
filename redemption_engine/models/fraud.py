"""
Fraud flags, scores and the fraud case state machine.

    PENDING -> REVIEWING -> {APPROVED, REJECTED, FALSE_POSITIVE}

A review may close a case from PENDING or REVIEWING; terminal cases never
change again. Review fields are unset until the review happens.
"""
from collections import Counter
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from redemption_engine.clock import utcnow
from redemption_engine.errors import InvalidStateTransition

URGENT_RISK_SCORE = 80
TOP_FRAUD_TYPES_LIMIT = 5


class FlagSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class FlagType:
    RAPID_REDEMPTION = "RAPID_REDEMPTION"
    VELOCITY = "VELOCITY"
    LOCATION_ANOMALY = "LOCATION_ANOMALY"
    DISTANT_LOCATION = "DISTANT_LOCATION"
    CREDENTIAL_REPLAY = "CREDENTIAL_REPLAY"
    BLOCKLISTED = "BLOCKLISTED"
    PROVIDER_BURST = "PROVIDER_BURST"
    ODD_HOUR = "ODD_HOUR"


class FraudFlag(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str
    severity: FlagSeverity
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class FraudScore(BaseModel):
    model_config = ConfigDict(frozen=True)

    risk_score: int = Field(..., ge=0, le=100)
    flags: List[FraudFlag] = Field(default_factory=list)
    # Points contributed by each flag, same order as flags
    contributions: List[int] = Field(default_factory=list)

    @property
    def has_high_severity(self) -> bool:
        return any(f.severity == FlagSeverity.HIGH for f in self.flags)


class FraudCaseStatus(str, Enum):
    PENDING = "PENDING"
    REVIEWING = "REVIEWING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    FALSE_POSITIVE = "FALSE_POSITIVE"


OPEN_STATUSES = (FraudCaseStatus.PENDING, FraudCaseStatus.REVIEWING)
TERMINAL_STATUSES = (
    FraudCaseStatus.APPROVED,
    FraudCaseStatus.REJECTED,
    FraudCaseStatus.FALSE_POSITIVE
)

ActionType = Literal["block_customer", "void_redemption", "flag_provider", "whitelist_pattern"]


class FraudCaseAction(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: ActionType
    timestamp: datetime
    performed_by: str
    details: Optional[Dict[str, Any]] = None


class FraudCase(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = ""
    case_number: str
    redemption_id: str
    detected_at: datetime
    risk_score: int = Field(..., ge=0, le=100)
    flags: List[FraudFlag] = Field(default_factory=list)
    customer_id: str
    provider_id: str
    voucher_id: str
    status: FraudCaseStatus = FraudCaseStatus.PENDING
    created_at: datetime
    updated_at: datetime
    detection_metadata: Optional[Dict[str, Any]] = None
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    review_notes: Optional[str] = None
    actions_taken: List[FraudCaseAction] = Field(default_factory=list)


def should_escalate(score: FraudScore, threshold: int) -> bool:
    """Open a case above the threshold or on any HIGH flag."""
    return score.risk_score > threshold or score.has_high_severity


def format_case_number(year: int, sequence: int) -> str:
    return f"FRAUD-{year}-{sequence:04d}"


def new_fraud_case(
    case_number: str,
    redemption_id: str,
    score: FraudScore,
    customer_id: str,
    provider_id: str,
    voucher_id: str,
    detected_at: Optional[datetime] = None,
    detection_metadata: Optional[Dict[str, Any]] = None
) -> FraudCase:
    now = utcnow()
    return FraudCase(
        case_number=case_number,
        redemption_id=redemption_id,
        detected_at=detected_at or now,
        risk_score=score.risk_score,
        flags=list(score.flags),
        customer_id=customer_id,
        provider_id=provider_id,
        voucher_id=voucher_id,
        status=FraudCaseStatus.PENDING,
        created_at=now,
        updated_at=now,
        detection_metadata=detection_metadata
    )


def fraud_case_from_stored(row: Any) -> FraudCase:
    """Rehydrate a fraud case from a ``FraudCase`` ORM row."""
    return FraudCase(
        id=row.id,
        case_number=row.case_number,
        redemption_id=row.redemption_id,
        detected_at=row.detected_at,
        risk_score=row.risk_score,
        flags=[FraudFlag(**f) for f in (row.flags or [])],
        customer_id=row.customer_id,
        provider_id=row.provider_id,
        voucher_id=row.voucher_id,
        status=FraudCaseStatus(row.status),
        created_at=row.created_at,
        updated_at=row.updated_at,
        detection_metadata=row.detection_metadata,
        reviewed_at=row.reviewed_at,
        reviewed_by=row.reviewed_by,
        review_notes=row.review_notes,
        actions_taken=[FraudCaseAction(**a) for a in (row.actions_taken or [])]
    )


def is_urgent(case: FraudCase) -> bool:
    """Routing hint: very high score or any HIGH severity flag."""
    return case.risk_score > URGENT_RISK_SCORE or any(
        f.severity == FlagSeverity.HIGH for f in case.flags
    )


def is_open(case: FraudCase) -> bool:
    return case.status in OPEN_STATUSES


def start_review(case: FraudCase) -> FraudCase:
    """PENDING -> REVIEWING"""
    if case.status != FraudCaseStatus.PENDING:
        raise InvalidStateTransition(
            f"Cannot start review of case in status {case.status.value}",
            {"case_number": case.case_number, "status": case.status.value}
        )
    return case.model_copy(update={
        "status": FraudCaseStatus.REVIEWING,
        "updated_at": utcnow()
    })


def review_fraud_case(
    case: FraudCase,
    status: FraudCaseStatus,
    reviewer_id: str,
    notes: Optional[str] = None,
    actions: Optional[Iterable[Dict[str, Any]]] = None,
    reviewed_at: Optional[datetime] = None
) -> FraudCase:
    """Close an open case with a terminal status."""
    status = FraudCaseStatus(status)
    if status not in TERMINAL_STATUSES:
        raise InvalidStateTransition(
            f"Review must set a terminal status, got {status.value}",
            {"case_number": case.case_number, "requested": status.value}
        )
    if not is_open(case):
        raise InvalidStateTransition(
            f"Case {case.case_number} is already {case.status.value}",
            {"case_number": case.case_number, "status": case.status.value}
        )

    now = reviewed_at or utcnow()
    taken = [
        FraudCaseAction(
            type=a["type"],
            timestamp=now,
            performed_by=reviewer_id,
            details=a.get("details")
        )
        for a in (actions or [])
    ]
    return case.model_copy(update={
        "status": status,
        "reviewed_at": now,
        "reviewed_by": reviewer_id,
        "review_notes": notes,
        "actions_taken": taken,
        "updated_at": now
    })


# ============================================================
# STATISTICS
# ============================================================

class TimeMetrics(BaseModel):
    average_review_time: float = 0.0  # hours
    cases_last_24h: int = 0
    cases_last_7d: int = 0
    oldest_pending_case: Optional[datetime] = None


class RiskScoreDistribution(BaseModel):
    low: int = 0      # < 40
    medium: int = 0   # 40-79
    high: int = 0     # >= 80


class FraudStatistics(BaseModel):
    total_cases: int = 0
    pending_cases: int = 0
    cases_by_status: Dict[str, int] = Field(
        default_factory=lambda: {s.value: 0 for s in FraudCaseStatus}
    )
    average_risk_score: float = 0.0
    cases_by_type: Dict[str, int] = Field(default_factory=dict)
    risk_score_distribution: RiskScoreDistribution = Field(default_factory=RiskScoreDistribution)
    time_metrics: TimeMetrics = Field(default_factory=TimeMetrics)


def risk_bucket(risk_score: int) -> str:
    if risk_score < 40:
        return "low"
    if risk_score < 80:
        return "medium"
    return "high"


def false_positive_rate(cases_by_status: Dict[str, int]) -> float:
    """FALSE_POSITIVE share of reviewed cases, as a percentage."""
    false_positives = cases_by_status.get(FraudCaseStatus.FALSE_POSITIVE.value, 0)
    reviewed = (
        cases_by_status.get(FraudCaseStatus.APPROVED.value, 0)
        + cases_by_status.get(FraudCaseStatus.REJECTED.value, 0)
        + false_positives
    )
    if reviewed == 0:
        return 0.0
    return round(false_positives / reviewed * 100, 2)


def top_fraud_types(
    cases_by_type: Dict[str, int],
    total_cases: int,
    limit: int = TOP_FRAUD_TYPES_LIMIT
) -> List[Dict[str, Any]]:
    return [
        {
            "type": flag_type,
            "count": count,
            "percentage": round(count / total_cases * 100, 2) if total_cases else 0.0
        }
        for flag_type, count in Counter(cases_by_type).most_common(limit)
    ]


def to_statistics_dto(stats: FraudStatistics) -> Dict[str, Any]:
    """Presentation view with derived rates computed on the fly."""
    return {
        "total_cases": stats.total_cases,
        "pending_cases": stats.pending_cases,
        "false_positive_rate": false_positive_rate(stats.cases_by_status),
        "average_risk_score": round(stats.average_risk_score),
        "top_fraud_types": top_fraud_types(stats.cases_by_type, stats.total_cases),
        "risk_score_distribution": stats.risk_score_distribution.model_dump(),
        "time_metrics": stats.time_metrics.model_dump(mode="json"),
        "cases_by_status": dict(stats.cases_by_status)
    }
