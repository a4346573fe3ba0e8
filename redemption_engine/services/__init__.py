"""
Services package - Business logic layer
"""
from redemption_engine.services.replay_store import replay_store
from redemption_engine.services.credential_service import credential_service
from redemption_engine.services.voucher_client import voucher_directory
from redemption_engine.services.redemption_recorder import redemption_recorder
from redemption_engine.services.redemption_validator import redemption_validator
from redemption_engine.services.fraud_scoring_service import fraud_scoring_service
from redemption_engine.services.fraud_case_service import fraud_case_service
from redemption_engine.services.redemption_service import redemption_service

__all__ = [
    "replay_store",
    "credential_service",
    "voucher_directory",
    "redemption_recorder",
    "redemption_validator",
    "fraud_scoring_service",
    "fraud_case_service",
    "redemption_service",
]
