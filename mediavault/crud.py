from sqlalchemy import case
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from typing import Optional
from loguru import logger

from . import models, quota

# --- Users & quota ---

def get_user(db: Session, email: str) -> Optional[models.User]:
    return db.query(models.User).filter(models.User.email == email).first()

def ensure_storage_limit(db: Session, user: models.User) -> int:
    """Self-healing read: the cached limit must always equal the plan's limit."""
    expected = quota.limit_for(user.plan)
    if user.storage_limit != expected:
        logger.info(
            "Repairing storage limit for {}: {} -> {} ({})",
            user.email, user.storage_limit, expected, user.plan,
        )
        db.query(models.User).filter(models.User.email == user.email).update(
            {models.User.storage_limit: expected}, synchronize_session=False
        )
        db.commit()
        db.refresh(user)
    return expected

def add_storage_used(db: Session, email: str, delta: int):
    # Relative update; concurrent requests for the same user must not overwrite each other
    db.query(models.User).filter(models.User.email == email).update(
        {models.User.storage_used: models.User.storage_used + delta},
        synchronize_session=False,
    )
    db.commit()

def refund_storage(db: Session, email: str, size: int):
    # Floor at 0: a double refund or a desynced size never drives usage negative
    remaining = models.User.storage_used - size
    db.query(models.User).filter(models.User.email == email).update(
        {models.User.storage_used: case((remaining < 0, 0), else_=remaining)},
        synchronize_session=False,
    )
    db.commit()

def set_user_plan(db: Session, user: models.User, plan: quota.Plan) -> models.User:
    user.plan = plan.value
    user.storage_limit = quota.limit_for(plan)
    db.commit()
    db.refresh(user)
    return user

# --- Token ledger ---

def get_token_entry(db: Session, token: str) -> Optional[models.FileToken]:
    return db.query(models.FileToken).filter(models.FileToken.token == token).first()

def find_token_for_location(db: Session, file_path: str, user_email: str) -> Optional[models.FileToken]:
    return (
        db.query(models.FileToken)
        .filter(models.FileToken.file_path == file_path, models.FileToken.user_email == user_email)
        .first()
    )

def insert_token_entry(db: Session, token: str, file_path: str, user_email: str, file_size: int) -> models.FileToken:
    entry = models.FileToken(token=token, file_path=file_path, user_email=user_email, file_size=file_size)
    db.add(entry)
    db.commit()
    db.refresh(entry)
    return entry

def update_token_entry(db: Session, entry: models.FileToken, file_size: Optional[int] = None, file_path: Optional[str] = None):
    if file_size is not None:
        entry.file_size = file_size
    if file_path is not None:
        entry.file_path = file_path
    db.commit()

def delete_token_entry(db: Session, token: str) -> int:
    deleted = db.query(models.FileToken).filter(models.FileToken.token == token).delete(synchronize_session=False)
    db.commit()
    return deleted

# --- File meta ---

def get_file_meta(db: Session, token: str) -> Optional[models.FileMeta]:
    return db.query(models.FileMeta).filter(models.FileMeta.token == token).first()

def upsert_file_meta(db: Session, token: str, size: int, privacy: str) -> models.FileMeta:
    """
    Insert the meta row for a token, or update it if one already exists.
    Rows may be created by out-of-band registration at any time, so existence
    is checked right before the insert and a losing insert falls back to update.
    """
    meta = get_file_meta(db, token)
    if meta is None:
        meta = models.FileMeta(token=token, size=size, privacy=privacy)
        db.add(meta)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            meta = get_file_meta(db, token)
            if meta is None:
                raise
            logger.info("file_meta row for {} appeared concurrently; updating instead", token)
        else:
            db.refresh(meta)
            return meta

    meta.size = size
    meta.privacy = privacy
    db.commit()
    db.refresh(meta)
    return meta

# --- Payments ---

def latest_finished_payment(db: Session, email: str) -> Optional[models.Payment]:
    return (
        db.query(models.Payment)
        .filter(models.Payment.email == email, models.Payment.payment_status == "finished")
        .order_by(models.Payment.created_at.desc(), models.Payment.id.desc())
        .first()
    )

def update_payment_status(db: Session, reference_id: str, status: str) -> int:
    updated = (
        db.query(models.Payment)
        .filter(models.Payment.reference_id == reference_id)
        .update({models.Payment.payment_status: status}, synchronize_session=False)
    )
    db.commit()
    return updated
