"""Plan lookups and payment-driven plan upgrades."""
from typing import Tuple

from loguru import logger
from sqlalchemy.orm import Session

from . import crud
from .errors import PaymentNotFound, UserNotFound
from .quota import limit_for, resolve_plan


def get_user_plan(db: Session, email: str) -> str:
    user = crud.get_user(db, email)
    if user is None:
        raise UserNotFound()
    return user.plan


def refresh_user_plan(db: Session, email: str) -> Tuple[str, int]:
    """
    Apply the user's latest finished payment, if any, and return (plan, storage limit).

    Gateway plan names go through the quota policy, so "pro" becomes Premium,
    "expert" becomes Custom and anything else Free.
    """
    user = crud.get_user(db, email)
    if user is None:
        raise UserNotFound()

    payment = crud.latest_finished_payment(db, email)
    if payment is None:
        return user.plan, user.storage_limit

    plan = resolve_plan(payment.plan)
    if user.plan != plan.value or user.storage_limit != limit_for(plan):
        logger.info("Updating plan for {}: {} -> {} (payment {})", email, user.plan, plan.value, payment.reference_id)
    user = crud.set_user_plan(db, user, plan)
    return user.plan, user.storage_limit


def record_payment_status(db: Session, reference_id: str, status: str):
    if crud.update_payment_status(db, reference_id, status) == 0:
        logger.warning("No payment found for reference ID: {}", reference_id)
        raise PaymentNotFound()
    logger.info('Payment status updated to "{}" for reference ID: {}', status, reference_id)
