"""
Check-in Session Model
A time-boxed visit opened when a customer scans a store's code.
"""
from datetime import datetime
import enum
import uuid

from sqlalchemy import Column, Integer, String, Float, DateTime, ForeignKey, Index, text, Enum as SQLEnum
from sqlalchemy.orm import relationship

from ..db import Base


def generate_uuid():
    return str(uuid.uuid4())


class CheckInSessionStatus(str, enum.Enum):
    """Check-in session status"""
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    EXPIRED = "EXPIRED"


TERMINAL_SESSION_STATUSES = {CheckInSessionStatus.COMPLETED, CheckInSessionStatus.EXPIRED}


class CheckInSession(Base):
    """
    Lifecycle: ACTIVE → COMPLETED (customer ends the visit) or
    ACTIVE → EXPIRED (expires_at passed first). Terminal states never change.
    """
    __tablename__ = "checkin_sessions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(Integer, nullable=False, index=True)
    store_id = Column(Integer, ForeignKey("stores.id"), nullable=False, index=True)

    status = Column(SQLEnum(CheckInSessionStatus), nullable=False, default=CheckInSessionStatus.ACTIVE)

    opened_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    expires_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    expired_at = Column(DateTime, nullable=True)

    # Final Confidence-In-Visit, set on completion
    civ_score = Column(Float, nullable=True)

    samples = relationship(
        "LocationSample",
        back_populates="session",
        order_by="LocationSample.id",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        # One ACTIVE session per (user, store); application code checks first,
        # the partial index catches concurrent opens.
        Index(
            "uq_checkin_sessions_active_pair",
            "user_id", "store_id",
            unique=True,
            sqlite_where=text("status = 'ACTIVE'"),
            postgresql_where=text("status = 'ACTIVE'"),
        ),
        Index("ix_checkin_sessions_status_expires", "status", "expires_at"),
        Index("ix_checkin_sessions_user_store_opened", "user_id", "store_id", "opened_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SESSION_STATUSES


class LocationSample(Base):
    """A geolocation fix reported by the client during an ACTIVE session. Append-only."""
    __tablename__ = "location_samples"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(36), ForeignKey("checkin_sessions.id"), nullable=False)

    lat = Column(Float, nullable=False)
    lng = Column(Float, nullable=False)
    accuracy_m = Column(Float, nullable=True)  # reported error radius; null when the client had none

    captured_at = Column(DateTime, nullable=False)  # client-claimed, normalized on ingest
    received_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    session = relationship("CheckInSession", back_populates="samples")

    __table_args__ = (
        Index("ix_location_samples_session_captured", "session_id", "captured_at"),
    )
