"""Loops wallet, ledger and purchase models backing the default balance and transaction collaborators"""
from datetime import datetime
import uuid

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Index, CheckConstraint, JSON
from sqlalchemy.orm import relationship

from ..db import Base


def generate_uuid():
    return str(uuid.uuid4())


class LoopsWallet(Base):
    """Durable Loops balance for a customer"""
    __tablename__ = "loops_wallets"

    user_id = Column(Integer, primary_key=True, autoincrement=False)
    plan = Column(String(20), nullable=True)  # BASIC, PLUS, PREMIUM
    loops_balance = Column(Integer, nullable=False, default=0)
    total_loops_earned = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=True, onupdate=datetime.utcnow)

    ledger_entries = relationship("LoopsLedgerEntry", back_populates="wallet")

    __table_args__ = (
        CheckConstraint('loops_balance >= 0', name='ck_loops_wallet_balance_non_negative'),
    )


class LoopsLedgerEntry(Base):
    """Balance change journal; idempotency_key makes every credit exactly-once"""
    __tablename__ = "loops_ledger"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(Integer, ForeignKey("loops_wallets.user_id"), nullable=False)
    change_type = Column(String(20), nullable=False)  # EARN, REDEEM
    amount = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    idempotency_key = Column(String(100), unique=True, nullable=True)
    meta = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    wallet = relationship("LoopsWallet", back_populates="ledger_entries")

    __table_args__ = (
        Index("ix_loops_ledger_user_created", "user_id", "created_at"),
    )


class PurchaseTransaction(Base):
    """A completed purchase recorded by a store"""
    __tablename__ = "transactions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(Integer, nullable=False)
    store_id = Column(Integer, ForeignKey("stores.id"), nullable=False)
    amount_cents = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        CheckConstraint('amount_cents > 0', name='ck_transactions_amount_positive'),
        Index("ix_transactions_user_store_created", "user_id", "store_id", "created_at"),
    )
