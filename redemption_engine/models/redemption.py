"""
Redemption value type and its constructors.

A Redemption is built either fresh (``new_redemption``) when an attempt is
accepted, or rehydrated from storage (``redemption_from_stored``). It is
immutable; the only permitted change is the offline -> synced transition made
through ``mark_synced``.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from redemption_engine.clock import as_utc, utcnow


class GeoPoint(BaseModel):
    """Latitude/longitude pair in decimal degrees"""
    model_config = ConfigDict(frozen=True, allow_inf_nan=False)

    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class Redemption(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = ""
    voucher_id: str
    customer_id: str
    provider_id: str
    code: str
    redeemed_at: datetime
    location: Optional[GeoPoint] = None
    offline_redemption: bool = False
    synced_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime

    @model_validator(mode="after")
    def _synced_only_when_offline(self) -> "Redemption":
        if self.synced_at is not None and not self.offline_redemption:
            raise ValueError("syncedAt is only valid on offline redemptions")
        return self

    @property
    def is_synced(self) -> bool:
        return self.synced_at is not None


def new_redemption(
    voucher_id: str,
    customer_id: str,
    provider_id: str,
    code: str,
    redeemed_at: Optional[datetime] = None,
    location: Optional[GeoPoint] = None,
    offline_redemption: bool = False,
    metadata: Optional[Dict[str, Any]] = None
) -> Redemption:
    """Build a not-yet-persisted redemption (empty id, never synced)."""
    now = utcnow()
    return Redemption(
        voucher_id=voucher_id,
        customer_id=customer_id,
        provider_id=provider_id,
        code=code,
        redeemed_at=as_utc(redeemed_at) or now,
        location=location,
        offline_redemption=offline_redemption,
        metadata=metadata or {},
        created_at=now,
        updated_at=now
    )


def redemption_from_stored(row: Any) -> Redemption:
    """Rehydrate a redemption from a ``VoucherRedemption`` row."""
    location = None
    if row.latitude is not None and row.longitude is not None:
        location = GeoPoint(lat=row.latitude, lng=row.longitude)

    return Redemption(
        id=row.id,
        voucher_id=row.voucher_id,
        customer_id=row.customer_id,
        provider_id=row.provider_id,
        code=row.code,
        redeemed_at=row.redeemed_at,
        location=location,
        offline_redemption=bool(row.offline_redemption),
        synced_at=row.synced_at,
        metadata=row.redemption_metadata or {},
        created_at=row.created_at,
        updated_at=row.updated_at
    )


def mark_synced(redemption: Redemption, synced_at: Optional[datetime] = None) -> Redemption:
    """
    Apply the offline -> synced transition.

    Already-synced redemptions are returned unchanged.
    """
    if not redemption.offline_redemption:
        raise ValueError("Only offline redemptions can be marked as synced")
    if redemption.synced_at is not None:
        return redemption
    now = utcnow()
    return redemption.model_copy(update={
        "synced_at": as_utc(synced_at) or now,
        "updated_at": now
    })


# ============================================================
# OFFLINE RECONCILIATION
# ============================================================

class OfflineRedemptionRecord(BaseModel):
    """A redemption accepted by a disconnected client, awaiting sync"""
    code: str = Field(..., min_length=1)
    voucher_id: str
    customer_id: str
    redeemed_at: datetime
    location: Optional[GeoPoint] = None
    device_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class RejectedRecord(BaseModel):
    record: OfflineRedemptionRecord
    error: Dict[str, Any]


class SyncResult(BaseModel):
    accepted: List[Redemption] = Field(default_factory=list)
    rejected: List[RejectedRecord] = Field(default_factory=list)
