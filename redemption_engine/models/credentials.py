"""
Credential value types: signed redemption tokens and short codes
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class ShortCodeType(str, Enum):
    STATIC = "STATIC"    # reusable within the voucher's caps, no expiry
    DYNAMIC = "DYNAMIC"  # single-use, time-boxed


class RedemptionTokenClaims(BaseModel):
    model_config = ConfigDict(frozen=True)

    voucher_id: str
    customer_id: str
    issued_at: datetime
    expires_at: datetime
    jti: str


class IssuedToken(BaseModel):
    """A freshly minted token together with the claims it carries"""
    model_config = ConfigDict(frozen=True)

    token: str
    claims: RedemptionTokenClaims


class ShortCodeInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    voucher_id: str
    code: str
    type: ShortCodeType
    customer_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ResolvedCredential(BaseModel):
    """
    Outcome of a successful credential verification.

    customer_id is None for unbound short codes; the caller supplies it.
    """
    model_config = ConfigDict(frozen=True)

    kind: str  # "token" | "short_code"
    code: str
    voucher_id: str
    customer_id: Optional[str] = None
    single_use: bool = True
    short_code_type: Optional[ShortCodeType] = None
