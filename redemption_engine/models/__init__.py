"""
Models package - domain value types
"""
from redemption_engine.models.credentials import (
    IssuedToken,
    RedemptionTokenClaims,
    ResolvedCredential,
    ShortCodeInfo,
    ShortCodeType
)
from redemption_engine.models.fraud import (
    FlagSeverity,
    FlagType,
    FraudCase,
    FraudCaseStatus,
    FraudFlag,
    FraudScore,
    FraudStatistics
)
from redemption_engine.models.redemption import (
    GeoPoint,
    OfflineRedemptionRecord,
    Redemption,
    SyncResult
)
from redemption_engine.models.voucher import VoucherForRedemption

__all__ = [
    "IssuedToken",
    "RedemptionTokenClaims",
    "ResolvedCredential",
    "ShortCodeInfo",
    "ShortCodeType",
    "FlagSeverity",
    "FlagType",
    "FraudCase",
    "FraudCaseStatus",
    "FraudFlag",
    "FraudScore",
    "FraudStatistics",
    "GeoPoint",
    "OfflineRedemptionRecord",
    "Redemption",
    "SyncResult",
    "VoucherForRedemption"
]
