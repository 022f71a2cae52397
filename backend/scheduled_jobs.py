"""
Periodic batch jobs: stale-product reminders (daily) and plan recharges (monthly)
Safe to run on any timer; each run is a single transaction.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import or_, select
from sqlalchemy.orm import sessionmaker

from config import Settings, get_settings
from credits import recharge_shop
from database import session_scope
from db_models import Product, Shop
from models import Plan
from notifications import AlertNotice, AlertSink, recharge_alert, safe_emit, stale_product_alert
from utils import utcnow

logger = structlog.get_logger()

PAID_PLANS = (Plan.STARTER.value, Plan.GROWTH.value, Plan.PRO.value)


def run_daily_tasks(session_factory: sessionmaker, alert_sink: AlertSink,
                    settings: Optional[Settings] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Remind installed shops about products not scanned within stale_scan_days"""
    settings = settings or get_settings()
    now = now or utcnow()
    cutoff = now - timedelta(days=settings.stale_scan_days)
    logger.info("daily_tasks_started", cutoff=cutoff.isoformat())

    with session_scope(session_factory) as session:
        stale: List[Tuple[str, AlertNotice]] = [
            (product.shop_id, stale_product_alert(product, settings.stale_scan_days))
            for product in session.execute(
                select(Product)
                .join(Shop, Product.shop_id == Shop.id)
                .where(
                    Shop.is_installed.is_(True),
                    or_(Product.last_scan_at.is_(None), Product.last_scan_at < cutoff)
                )
                .order_by(Product.shop_id, Product.created_at)
            ).scalars()
        ]

    for shop_id, alert in stale:
        safe_emit(alert_sink, shop_id, alert)

    logger.info("daily_tasks_finished", stale_products=len(stale))
    return {"stale_products": len(stale)}


def run_monthly_tasks(session_factory: sessionmaker, alert_sink: AlertSink,
                      settings: Optional[Settings] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Recharge installed paid shops to their plan allowance"""
    settings = settings or get_settings()
    now = now or utcnow()
    logger.info("monthly_tasks_started")

    recharged: List[Tuple[str, int]] = []
    with session_scope(session_factory) as session:
        shops = session.execute(
            select(Shop).where(Shop.plan.in_(PAID_PLANS), Shop.is_installed.is_(True))
        ).scalars().all()
        for shop in shops:
            recharged.append((shop.id, recharge_shop(shop, settings, now)))

    for shop_id, credits in recharged:
        safe_emit(alert_sink, shop_id, recharge_alert(credits))

    logger.info("monthly_tasks_finished", recharged_shops=len(recharged))
    return {"recharged_shops": len(recharged)}
