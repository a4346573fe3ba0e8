"""
Redemptions API

Provides:
- POST /redemptions/redeem: Redeem a voucher with a token or short code
- POST /redemptions/offline-sync: Reconcile redemptions made offline
- POST /redemptions/tokens: Issue a signed one-time redemption token
- POST /redemptions/short-codes: Issue a static or dynamic short code
- GET /redemptions: Search redemptions by customer, provider or voucher
- GET /redemptions/{redemption_id}: Get a single redemption
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from redemption_engine.config import settings
from redemption_engine.dependencies import get_db, verify_api_key
from redemption_engine.errors import RedemptionNotFound
from redemption_engine.models.credentials import ShortCodeType
from redemption_engine.models.redemption import GeoPoint, OfflineRedemptionRecord
from redemption_engine.services.credential_service import credential_service
from redemption_engine.services.redemption_recorder import MAX_PAGE_SIZE, redemption_recorder
from redemption_engine.services.redemption_service import redemption_service

logger = logging.getLogger(__name__)
router = APIRouter()


# ============================================================
# REQUEST MODELS
# ============================================================

class RedeemRequest(BaseModel):
    """Request model for a redemption attempt"""
    credential: str = Field(..., min_length=1, description="Redemption token or short code")
    customer_id: Optional[str] = Field(None, description="Required for unbound short codes")
    location: Optional[GeoPoint] = None
    device_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        json_schema_extra = {
            "example": {
                "credential": "7KQ2MX9P",
                "customer_id": "customer-123",
                "location": {"lat": 13.7563, "lng": 100.5018}
            }
        }


class OfflineSyncRequest(BaseModel):
    records: List[OfflineRedemptionRecord] = Field(
        ..., max_length=settings.OFFLINE_SYNC_MAX_BATCH
    )


class IssueTokenRequest(BaseModel):
    voucher_id: str
    customer_id: str
    ttl_sec: Optional[int] = Field(None, gt=0, le=3600)


class IssueShortCodeRequest(BaseModel):
    voucher_id: str
    type: ShortCodeType = ShortCodeType.DYNAMIC
    customer_id: Optional[str] = Field(None, description="Bind a dynamic code to a customer")
    ttl_sec: Optional[int] = Field(None, gt=0, le=86400)
    custom_code: Optional[str] = Field(
        None, min_length=4, max_length=32, pattern=r"^[A-Za-z0-9]+$"
    )
    metadata: Dict[str, Any] = Field(default_factory=dict)


# ============================================================
# ENDPOINTS
# ============================================================

@router.post("/redeem")
async def redeem_voucher(request: RedeemRequest, db: Session = Depends(get_db)):
    """
    Redeem a voucher.

    Suspicious redemptions are still accepted; the response carries the risk
    score, the raised flags and the fraud case number when one was opened.
    """
    result = redemption_service.redeem(
        db,
        request.credential,
        customer_id=request.customer_id,
        location=request.location,
        device_id=request.device_id,
        metadata=request.metadata
    )
    return {
        "success": True,
        "data": result.model_dump(mode="json")
    }


@router.post("/offline-sync")
async def sync_offline_redemptions(request: OfflineSyncRequest, db: Session = Depends(get_db)):
    """Per-record results: accepted redemptions and rejected records with errors."""
    result = redemption_service.sync_offline_redemptions(db, request.records)
    return {
        "success": True,
        "data": result.model_dump(mode="json")
    }


@router.post("/tokens", dependencies=[Depends(verify_api_key)])
async def issue_token(request: IssueTokenRequest):
    issued = credential_service.issue_token(
        request.voucher_id,
        request.customer_id,
        ttl_sec=request.ttl_sec
    )
    return {
        "success": True,
        "data": issued.model_dump(mode="json")
    }


@router.post("/short-codes", dependencies=[Depends(verify_api_key)])
async def issue_short_code(request: IssueShortCodeRequest, db: Session = Depends(get_db)):
    info = credential_service.issue_short_code(
        db,
        request.voucher_id,
        code_type=request.type,
        ttl_sec=request.ttl_sec,
        customer_id=request.customer_id,
        custom_code=request.custom_code,
        metadata=request.metadata
    )
    return {
        "success": True,
        "data": info.model_dump(mode="json")
    }


@router.get("", dependencies=[Depends(verify_api_key)])
async def search_redemptions(
    customer_id: Optional[str] = None,
    provider_id: Optional[str] = None,
    voucher_id: Optional[str] = None,
    offline: Optional[bool] = None,
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=MAX_PAGE_SIZE),
    db: Session = Depends(get_db)
):
    result = redemption_recorder.search_redemptions(
        db,
        customer_id=customer_id,
        provider_id=provider_id,
        voucher_id=voucher_id,
        offline=offline,
        from_date=from_date,
        to_date=to_date,
        page=page,
        limit=limit
    )
    return {
        "data": [r.model_dump(mode="json") for r in result["data"]],
        "total": result["total"],
        "page": result["page"],
        "limit": result["limit"]
    }


@router.get("/{redemption_id}", dependencies=[Depends(verify_api_key)])
async def get_redemption(redemption_id: str, db: Session = Depends(get_db)):
    redemption = redemption_recorder.get_redemption(db, redemption_id)
    if redemption is None:
        raise RedemptionNotFound(
            "Redemption not found",
            {"redemption_id": redemption_id}
        )
    return {
        "success": True,
        "data": redemption.model_dump(mode="json")
    }
