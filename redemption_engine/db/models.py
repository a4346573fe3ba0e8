"""
SQLAlchemy ORM Models for the redemption engine
"""
import uuid
from sqlalchemy import (
    Column, Integer, String, Text, Float, Boolean, DateTime,
    ForeignKey, JSON, Index
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from redemption_engine.clock import utcnow
from redemption_engine.db.database import Base

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _uuid() -> str:
    return str(uuid.uuid4())


# ============================================================
# REDEMPTIONS
# ============================================================

class VoucherRedemption(Base):
    """A recorded (online or reconciled offline) voucher redemption"""
    __tablename__ = "voucher_redemptions"

    id = Column(String(36), primary_key=True, default=_uuid)
    voucher_id = Column(String(64), nullable=False)
    customer_id = Column(String(64), nullable=False)
    provider_id = Column(String(64), nullable=False)
    # Credential as presented (tokens can be long)
    code = Column(Text, nullable=False)
    code_hash = Column(String(64), nullable=False)
    # Store-level race arbiter: one row per single-use credential
    dedupe_key = Column(String(64), nullable=False, unique=True)
    redeemed_at = Column(DateTime, nullable=False)
    latitude = Column(Float)
    longitude = Column(Float)
    offline_redemption = Column(Boolean, nullable=False, default=False)
    synced_at = Column(DateTime)
    redemption_metadata = Column("metadata", JSONType)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('idx_redemption_voucher', 'voucher_id'),
        Index('idx_redemption_voucher_customer', 'voucher_id', 'customer_id'),
        Index('idx_redemption_customer_time', 'customer_id', 'redeemed_at'),
        Index('idx_redemption_code_hash', 'code_hash'),
        Index('idx_redemption_provider_time', 'provider_id', 'redeemed_at'),
    )


class RedemptionCounter(Base):
    """
    Atomic redemption slot counters.

    scope is '*' for the voucher-wide counter and the customer id for the
    per-customer counter. Slots are taken with a conditional UPDATE.
    """
    __tablename__ = "redemption_counters"

    voucher_id = Column(String(64), primary_key=True)
    scope = Column(String(64), primary_key=True)
    count = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class VoucherCode(Base):
    """Persistent STATIC short codes (print campaigns, counters)"""
    __tablename__ = "voucher_codes"

    id = Column(String(36), primary_key=True, default=_uuid)
    code = Column(String(32), nullable=False, unique=True)
    # One stable STATIC code per voucher
    voucher_id = Column(String(64), nullable=False, unique=True)
    type = Column(String(10), nullable=False, default="STATIC")
    code_metadata = Column("metadata", JSONType)
    created_at = Column(DateTime, default=utcnow)


# ============================================================
# FRAUD CASES
# ============================================================

class FraudCase(Base):
    """A suspicious redemption awaiting or having received human review"""
    __tablename__ = "fraud_cases"

    id = Column(String(36), primary_key=True, default=_uuid)
    case_number = Column(String(20), nullable=False, unique=True)
    redemption_id = Column(String(36), nullable=False, unique=True)
    detected_at = Column(DateTime, nullable=False)
    risk_score = Column(Integer, nullable=False)
    flags = Column(JSONType, nullable=False)
    detection_metadata = Column(JSONType)
    customer_id = Column(String(64), nullable=False)
    provider_id = Column(String(64), nullable=False)
    voucher_id = Column(String(64), nullable=False)
    status = Column(String(20), nullable=False, default="PENDING")
    # Review (set once)
    reviewed_at = Column(DateTime)
    reviewed_by = Column(String(64))
    review_notes = Column(Text)
    actions_taken = Column(JSONType)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    history = relationship(
        "FraudCaseHistory",
        back_populates="fraud_case",
        order_by="FraudCaseHistory.created_at"
    )

    __table_args__ = (
        Index('idx_fraud_case_status', 'status'),
        Index('idx_fraud_case_provider', 'provider_id'),
        Index('idx_fraud_case_customer', 'customer_id'),
        Index('idx_fraud_case_detected', 'detected_at'),
    )


class FraudCaseSequence(Base):
    """Per-year case number counter, incremented atomically"""
    __tablename__ = "fraud_case_sequences"

    year = Column(Integer, primary_key=True)
    last_value = Column(Integer, nullable=False, default=0)


class FraudCaseHistory(Base):
    """Append-only audit trail of fraud case events"""
    __tablename__ = "fraud_case_history"

    id = Column(Integer, primary_key=True, index=True)
    case_id = Column(String(36), ForeignKey("fraud_cases.id"), nullable=False)
    action = Column(String(50), nullable=False)
    performed_by = Column(String(64), nullable=False)
    notes = Column(Text)
    details = Column(JSONType)
    created_at = Column(DateTime, default=utcnow)

    fraud_case = relationship("FraudCase", back_populates="history")

    __table_args__ = (
        Index('idx_fraud_history_case', 'case_id'),
    )
