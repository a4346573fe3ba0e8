"""
Error taxonomy for the redemption engine.

Every failure the engine reports carries a stable ``code`` from
:class:`ErrorCodes`. Codes are grouped into categories that decide how the
failure is logged and which HTTP status it maps to:

- credential:     malformed / expired / replayed / unknown credentials
- eligibility:    business-rule rejections of an otherwise valid attempt
- conflict:       store-level uniqueness conflicts (reported as duplicates)
- review:         fraud case lifecycle violations
- infrastructure: store or collaborator unavailable, eligible for caller retry
"""
from typing import Any, Dict, Optional


class ErrorCodes:
    """Standard error codes"""
    # Credential
    MALFORMED_CREDENTIAL = "MalformedCredential"
    EXPIRED_CREDENTIAL = "ExpiredCredential"
    REPLAYED_CREDENTIAL = "ReplayedCredential"
    CREDENTIAL_NOT_FOUND = "CredentialNotFound"

    # Eligibility
    VOUCHER_NOT_FOUND = "VoucherNotFound"
    VOUCHER_NOT_REDEEMABLE = "VoucherNotRedeemable"
    VOUCHER_EXPIRED = "VoucherExpired"
    DUPLICATE_REDEMPTION = "DuplicateRedemption"
    REDEMPTION_CAP_EXCEEDED = "RedemptionCapExceeded"
    PER_USER_CAP_EXCEEDED = "PerUserCapExceeded"
    REDEMPTION_NOT_FOUND = "RedemptionNotFound"

    # Fraud review
    INVALID_STATE_TRANSITION = "InvalidStateTransition"
    FRAUD_CASE_NOT_FOUND = "FraudCaseNotFound"
    SHORT_CODE_CONFLICT = "ShortCodeConflict"

    # System
    INFRASTRUCTURE_ERROR = "InfrastructureError"


class RedemptionEngineError(Exception):
    """Base class for all errors surfaced by the engine"""

    code: str = ErrorCodes.INFRASTRUCTURE_ERROR
    category: str = "infrastructure"
    status_code: int = 500

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "context": self.context
        }


# === Credential errors ===

class CredentialError(RedemptionEngineError):
    category = "credential"
    status_code = 400


class MalformedCredential(CredentialError):
    code = ErrorCodes.MALFORMED_CREDENTIAL


class ExpiredCredential(CredentialError):
    code = ErrorCodes.EXPIRED_CREDENTIAL
    status_code = 410


class ReplayedCredential(CredentialError):
    code = ErrorCodes.REPLAYED_CREDENTIAL
    status_code = 409


class CredentialNotFound(CredentialError):
    code = ErrorCodes.CREDENTIAL_NOT_FOUND
    status_code = 404


# === Eligibility errors ===

class EligibilityError(RedemptionEngineError):
    category = "eligibility"
    status_code = 422


class VoucherNotFound(EligibilityError):
    code = ErrorCodes.VOUCHER_NOT_FOUND
    status_code = 404


class VoucherNotRedeemable(EligibilityError):
    code = ErrorCodes.VOUCHER_NOT_REDEEMABLE


class VoucherExpired(EligibilityError):
    code = ErrorCodes.VOUCHER_EXPIRED


class DuplicateRedemption(EligibilityError):
    """Raised for validation-time duplicates and store-level conflicts alike"""
    code = ErrorCodes.DUPLICATE_REDEMPTION
    status_code = 409


class RedemptionCapExceeded(EligibilityError):
    code = ErrorCodes.REDEMPTION_CAP_EXCEEDED


class PerUserCapExceeded(EligibilityError):
    code = ErrorCodes.PER_USER_CAP_EXCEEDED


class RedemptionNotFound(RedemptionEngineError):
    code = ErrorCodes.REDEMPTION_NOT_FOUND
    category = "lookup"
    status_code = 404


# === Fraud review errors ===

class InvalidStateTransition(RedemptionEngineError):
    code = ErrorCodes.INVALID_STATE_TRANSITION
    category = "review"
    status_code = 409


class FraudCaseNotFound(RedemptionEngineError):
    code = ErrorCodes.FRAUD_CASE_NOT_FOUND
    category = "review"
    status_code = 404


class ShortCodeConflict(RedemptionEngineError):
    code = ErrorCodes.SHORT_CODE_CONFLICT
    category = "conflict"
    status_code = 409


# === Infrastructure errors ===

class InfrastructureError(RedemptionEngineError):
    """Store or collaborator unavailable; the caller may retry with backoff"""
    code = ErrorCodes.INFRASTRUCTURE_ERROR
    category = "infrastructure"
    status_code = 503

    def __init__(
        self,
        message: str,
        original_error: Optional[Exception] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        self.original_error = original_error
        super().__init__(message, context)
