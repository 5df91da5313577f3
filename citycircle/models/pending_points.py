"""
Pending Points Models
Provisional Loops grants and the audit trail of what settled them.
"""
from datetime import datetime
import enum
import uuid

from sqlalchemy import (
    Column, Integer, String, Float, DateTime, ForeignKey, Index, CheckConstraint, JSON,
    Enum as SQLEnum,
)
from sqlalchemy.orm import relationship

from ..db import Base


def generate_uuid():
    return str(uuid.uuid4())


class PendingPointsStatus(str, enum.Enum):
    """Pending points status"""
    PENDING = "PENDING"
    UNLOCKED = "UNLOCKED"
    EXPIRED = "EXPIRED"


class SettlementTriggerType(str, enum.Enum):
    """Independent evidence that can settle a pending grant"""
    RETURN_VISIT = "RETURN_VISIT"
    NEW_TRANSACTION = "NEW_TRANSACTION"
    MANUAL_CHECK = "MANUAL_CHECK"
    TIME_ELAPSED = "TIME_ELAPSED"


class PendingPointsEntry(Base):
    """
    Loops granted at check-in but not yet credited.

    Only the settlement engine unlocks an entry and only the expiry sweep (or
    expiry-on-read) expires one. UNLOCKED and EXPIRED are terminal.
    """
    __tablename__ = "pending_points"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(Integer, nullable=False)
    store_id = Column(Integer, ForeignKey("stores.id"), nullable=False)
    session_id = Column(String(36), ForeignKey("checkin_sessions.id"), nullable=True, index=True)

    loops_pending = Column(Integer, nullable=False)
    loops_unlocked = Column(Integer, nullable=False, default=0)
    civ_score = Column(Float, nullable=False, default=0.5)

    status = Column(SQLEnum(PendingPointsStatus), nullable=False, default=PendingPointsStatus.PENDING)
    unlock_trigger = Column(SQLEnum(SettlementTriggerType), nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    expires_at = Column(DateTime, nullable=False)
    unlocked_at = Column(DateTime, nullable=True)

    session = relationship("CheckInSession", foreign_keys=[session_id])
    triggers = relationship(
        "SettlementTrigger",
        back_populates="pending_points",
        order_by="SettlementTrigger.created_at",
    )

    __table_args__ = (
        CheckConstraint('loops_pending > 0', name='ck_pending_points_positive'),
        CheckConstraint('loops_unlocked >= 0 AND loops_unlocked <= loops_pending', name='ck_pending_points_unlocked_range'),
        CheckConstraint('civ_score >= 0 AND civ_score <= 1', name='ck_pending_points_civ_range'),
        Index("ix_pending_points_user_status_expires", "user_id", "status", "expires_at"),
        Index("ix_pending_points_store_status", "store_id", "status"),
    )


class SettlementTrigger(Base):
    """Append-only audit record of a trigger applied to a pending entry."""
    __tablename__ = "settlement_triggers"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    pending_points_id = Column(String(36), ForeignKey("pending_points.id"), nullable=False, index=True)
    trigger_type = Column(SQLEnum(SettlementTriggerType), nullable=False)
    trigger_data = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    pending_points = relationship("PendingPointsEntry", back_populates="triggers")
