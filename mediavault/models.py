from sqlalchemy import Column, Integer, String, DateTime, BigInteger
from datetime import datetime
from .database import Base
from .quota import Plan, limit_for

class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    plan = Column(String(16), default=Plan.FREE.value, nullable=False)

    # QUOTA
    # Cached copy of quota.limit_for(plan); repaired on read when it drifts
    storage_limit = Column(BigInteger, default=limit_for(Plan.FREE), nullable=False)
    storage_used = Column(BigInteger, default=0, nullable=False)

class FileToken(Base):
    """
    Ledger entry: one row per physical stored file.
    Source of truth for ownership and the size charged against the quota.
    """
    __tablename__ = "file_tokens"

    id = Column(Integer, primary_key=True, index=True)
    token = Column(String(255), unique=True, index=True, nullable=False)
    # <owner email>/<file name>, relative to the media root
    file_path = Column(String(512), nullable=False)
    user_email = Column(String(255), index=True)
    file_size = Column(BigInteger)
    created_at = Column(DateTime, default=datetime.utcnow)

class FileMeta(Base):
    """
    Analytics record.
    Linked to the ledger by token value only; either may be written first.
    """
    __tablename__ = "file_meta"

    id = Column(Integer, primary_key=True, index=True)
    token = Column(String(255), unique=True, index=True, nullable=False)
    size = Column(BigInteger, nullable=False)
    privacy = Column(String(16), default="public", nullable=False)
    views = Column(Integer, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)

class Payment(Base):
    """Written by the payment gateway integration; only the status callback updates it here."""
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    reference_id = Column(String(255), unique=True, index=True)
    email = Column(String(255), index=True)
    plan = Column(String(32))
    payment_status = Column(String(32))
    created_at = Column(DateTime, default=datetime.utcnow)
