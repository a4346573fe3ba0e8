"""
Fraud API - case review and statistics for administrators

All endpoints require X-API-Key.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from redemption_engine.dependencies import get_db, verify_api_key
from redemption_engine.models.fraud import (
    ActionType,
    FraudCaseStatus,
    is_urgent,
    to_statistics_dto
)
from redemption_engine.services.fraud_case_service import MAX_PAGE_SIZE, fraud_case_service

logger = logging.getLogger(__name__)
router = APIRouter(dependencies=[Depends(verify_api_key)])


class ReviewAction(BaseModel):
    type: ActionType
    details: Optional[Dict[str, Any]] = None


class ReviewRequest(BaseModel):
    status: Literal["APPROVED", "REJECTED", "FALSE_POSITIVE"]
    reviewer_id: str
    notes: Optional[str] = Field(None, max_length=2000)
    actions: List[ReviewAction] = Field(default_factory=list)


class StartReviewRequest(BaseModel):
    reviewer_id: str


def _case_response(case) -> Dict[str, Any]:
    data = case.model_dump(mode="json")
    data["is_urgent"] = is_urgent(case)
    return data


@router.get("/cases")
async def search_cases(
    status: Optional[FraudCaseStatus] = None,
    provider_id: Optional[str] = None,
    customer_id: Optional[str] = None,
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
    min_risk_score: Optional[int] = Query(None, ge=0, le=100),
    max_risk_score: Optional[int] = Query(None, ge=0, le=100),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=MAX_PAGE_SIZE),
    db: Session = Depends(get_db)
):
    result = fraud_case_service.search_cases(
        db,
        status=status,
        provider_id=provider_id,
        customer_id=customer_id,
        from_date=from_date,
        to_date=to_date,
        min_risk_score=min_risk_score,
        max_risk_score=max_risk_score,
        page=page,
        limit=limit
    )
    return {
        "data": [_case_response(c) for c in result["data"]],
        "total": result["total"],
        "page": result["page"],
        "limit": result["limit"]
    }


@router.get("/statistics")
async def get_statistics(
    provider_id: Optional[str] = None,
    period: Optional[Literal["day", "week", "month", "year"]] = None,
    db: Session = Depends(get_db)
):
    stats = fraud_case_service.get_statistics(db, provider_id=provider_id, period=period)
    return to_statistics_dto(stats)


@router.get("/cases/{case_id}")
async def get_case(case_id: str, db: Session = Depends(get_db)):
    case = fraud_case_service.get_case(db, case_id)
    data = _case_response(case)
    data["history"] = fraud_case_service.get_case_history(db, case_id)
    return data


@router.post("/cases/{case_id}/start-review")
async def start_review(case_id: str, request: StartReviewRequest, db: Session = Depends(get_db)):
    case = fraud_case_service.start_review(db, case_id, request.reviewer_id)
    return _case_response(case)


@router.post("/cases/{case_id}/review")
async def review_case(case_id: str, request: ReviewRequest, db: Session = Depends(get_db)):
    case = fraud_case_service.review(
        db,
        case_id,
        FraudCaseStatus(request.status),
        request.reviewer_id,
        notes=request.notes,
        actions=[a.model_dump() for a in request.actions]
    )
    return _case_response(case)
