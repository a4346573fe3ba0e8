"""
Voucher eligibility data as served by the voucher service
"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel

from redemption_engine.clock import as_utc
from redemption_engine.models.redemption import GeoPoint

REDEEMABLE_STATE = "PUBLISHED"


class VoucherProvider(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""


class VoucherForRedemption(BaseModel):
    """Read-only snapshot of the fields the engine needs for eligibility"""
    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore"
    )

    id: str
    provider_id: str
    state: str
    discount_type: str = "PERCENTAGE"
    discount_value: float = 0
    currency: str = "USD"
    expires_at: datetime
    max_redemptions: Optional[int] = None
    max_redemptions_per_user: int = 1
    current_redemptions: int = 0
    provider: Optional[VoucherProvider] = None
    provider_location: Optional[GeoPoint] = None

    @field_validator("expires_at", mode="before")
    @classmethod
    def _normalize_expiry(cls, value):
        return as_utc(value)

    @property
    def discount_label(self) -> str:
        if self.discount_type == "PERCENTAGE":
            return f"{self.discount_value:g}%"
        return f"{self.currency} {self.discount_value:g}"
