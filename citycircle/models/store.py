"""Store directory models backing the default StoreDirectory collaborator"""
from datetime import datetime

from sqlalchemy import Column, Integer, String, Float, DateTime, ForeignKey, UniqueConstraint

from ..db import Base


class Store(Base):
    """A participating store and its registered coordinates"""
    __tablename__ = "stores"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    category = Column(String(50), nullable=True)
    lat = Column(Float, nullable=True)
    lng = Column(Float, nullable=True)
    # Null means the configured STORE_GEOFENCE_RADIUS_M applies
    geofence_radius_m = Column(Float, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class StoreBlacklist(Base):
    """Customers a store has blocked from checking in"""
    __tablename__ = "store_customer_blacklist"

    id = Column(Integer, primary_key=True, autoincrement=True)
    store_id = Column(Integer, ForeignKey("stores.id"), nullable=False, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    reason = Column(String(500), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("store_id", "user_id", name="uq_store_blacklist_pair"),
    )
