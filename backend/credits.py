"""
Credit ledger and shop billing lifecycle
Balances only move through single conditional UPDATE statements.
"""

from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from config import Settings, get_settings
from db_models import Event, Shop
from exceptions import InsufficientCredits, ShopNotFound
from models import Plan
from monitoring import get_metrics
from utils import utcnow

logger = structlog.get_logger()

ACTIVE_SUBSCRIPTION_STATUSES = {"ACTIVE"}
ENDED_SUBSCRIPTION_STATUSES = {"CANCELLED", "EXPIRED", "DECLINED", "FROZEN"}


def reserve_credits(session: Session, shop_id: str, amount: int, operation: str = "scan") -> int:
    """Debit credits only if the balance covers them; returns the new balance"""
    result = session.execute(
        update(Shop)
        .where(Shop.id == shop_id, Shop.credits >= amount)
        .values(credits=Shop.credits - amount)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        available = session.execute(select(Shop.credits).where(Shop.id == shop_id)).scalar_one_or_none()
        if available is None:
            raise ShopNotFound(shop_id)
        raise InsufficientCredits(shop_id, amount, available)

    get_metrics().credits_debited.labels(operation=operation).inc(amount)
    return session.execute(select(Shop.credits).where(Shop.id == shop_id)).scalar_one()


def refund_credits(session: Session, shop_id: str, amount: int, operation: str = "scan") -> int:
    """Return previously reserved credits; returns the new balance"""
    session.execute(
        update(Shop)
        .where(Shop.id == shop_id)
        .values(credits=Shop.credits + amount)
        .execution_options(synchronize_session=False)
    )
    get_metrics().credits_refunded.labels(operation=operation).inc(amount)
    return session.execute(select(Shop.credits).where(Shop.id == shop_id)).scalar_one()


def get_shop_by_domain(session: Session, shop_domain: str) -> Shop:
    shop = session.execute(select(Shop).where(Shop.shop_domain == shop_domain)).scalar_one_or_none()
    if shop is None:
        raise ShopNotFound(shop_domain)
    return shop


def install_shop(session: Session, shop_domain: str, shop_name: Optional[str] = None,
                 settings: Optional[Settings] = None, now: Optional[datetime] = None) -> Shop:
    """Create the shop on first install, or reactivate it on reinstall"""
    settings = settings or get_settings()
    now = now or utcnow()
    shop = session.execute(select(Shop).where(Shop.shop_domain == shop_domain)).scalar_one_or_none()

    if shop is None:
        trial_credits = settings.plan_credits(Plan.TRIAL.value)
        shop = Shop(
            shop_domain=shop_domain,
            shop_name=shop_name or shop_domain.split('.')[0],
            plan=Plan.TRIAL.value,
            credits=trial_credits,
            max_credits=trial_credits,
            billing_cycle_start=now,
            is_installed=True,
        )
        session.add(shop)
        session.flush()
        logger.info("shop_installed", shop_domain=shop_domain, credits=trial_credits)
    elif not shop.is_installed:
        shop.is_installed = True
        shop.uninstalled_at = None
        logger.info("shop_reinstalled", shop_domain=shop_domain)

    return shop


def recharge_shop(shop: Shop, settings: Optional[Settings] = None, now: Optional[datetime] = None) -> int:
    """Reset the balance to the plan allowance and open a new billing cycle"""
    settings = settings or get_settings()
    now = now or utcnow()
    allowance = settings.plan_credits(shop.plan)

    shop.credits = allowance
    shop.max_credits = allowance
    shop.billing_cycle_start = now
    shop.billing_cycle_end = now + timedelta(days=settings.billing_cycle_days)
    logger.info("shop_recharged", shop_id=shop.id, plan=shop.plan, credits=allowance)
    return allowance


def soft_reset_shop(shop: Shop, uninstalled: bool, settings: Optional[Settings] = None,
                    now: Optional[datetime] = None) -> None:
    """Drop to TRIAL with zero credits; scan history is kept"""
    settings = settings or get_settings()
    shop.plan = Plan.TRIAL.value
    shop.credits = 0
    shop.max_credits = settings.plan_credits(Plan.TRIAL.value)
    shop.billing_cycle_end = None
    if uninstalled:
        shop.is_installed = False
        shop.uninstalled_at = now or utcnow()
    logger.info("shop_soft_reset", shop_id=shop.id, uninstalled=uninstalled)


def handle_app_uninstalled(session: Session, shop_domain: str,
                           settings: Optional[Settings] = None, now: Optional[datetime] = None) -> Shop:
    shop = get_shop_by_domain(session, shop_domain)
    soft_reset_shop(shop, uninstalled=True, settings=settings, now=now)
    session.add(Event(shop_id=shop.id, type="WEBHOOK", data={"topic": "app/uninstalled"}))
    return shop


def apply_subscription_update(session: Session, shop_domain: str, plan: str, status: str,
                              settings: Optional[Settings] = None, now: Optional[datetime] = None) -> Shop:
    """Apply a subscription status change received from the billing provider"""
    shop = get_shop_by_domain(session, shop_domain)
    plan = Plan(plan).value
    status = status.upper()

    if status in ACTIVE_SUBSCRIPTION_STATUSES:
        shop.plan = plan
        recharge_shop(shop, settings=settings, now=now)
    elif status in ENDED_SUBSCRIPTION_STATUSES:
        soft_reset_shop(shop, uninstalled=False, settings=settings, now=now)
    else:
        logger.info("subscription_status_ignored", shop_domain=shop_domain, status=status)

    session.add(Event(
        shop_id=shop.id,
        type="WEBHOOK",
        data={"topic": "app_subscriptions/update", "plan": plan, "status": status}
    ))
    return shop
