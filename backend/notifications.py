"""
Merchant notifications for credit and citation thresholds
Emission is fire-and-forget: a failing sink never fails the operation that triggered it.
"""

from dataclasses import dataclass
from typing import List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from config import Settings, get_settings
from db_models import Alert, Scan
from models import AlertType
from utils import citation_rate

logger = structlog.get_logger()

SEVERITY_BY_TYPE = {
    AlertType.ERROR.value: "HIGH",
    AlertType.WARNING.value: "MEDIUM",
}


@dataclass
class AlertNotice:
    type: str
    title: str
    message: str
    product_id: Optional[str] = None
    action_url: Optional[str] = None
    action_label: Optional[str] = None

    @property
    def severity(self) -> str:
        return SEVERITY_BY_TYPE.get(self.type, "LOW")


class AlertSink:
    """One-way notification channel; the base implementation only logs"""

    def emit(self, shop_id: str, alert: AlertNotice) -> None:
        logger.info("alert_emitted", shop_id=shop_id, type=alert.type, title=alert.title)


class DatabaseAlertSink(AlertSink):
    """Persist alerts as Alert rows in their own transaction"""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def emit(self, shop_id: str, alert: AlertNotice) -> None:
        session = self.session_factory()
        try:
            session.add(Alert(
                shop_id=shop_id,
                product_id=alert.product_id,
                type=alert.type,
                severity=alert.severity,
                title=alert.title,
                message=alert.message,
                action_url=alert.action_url,
                action_label=alert.action_label,
            ))
            session.commit()
            logger.info("alert_stored", shop_id=shop_id, type=alert.type, title=alert.title)
        except Exception as e:
            session.rollback()
            logger.error("alert_emit_failed", shop_id=shop_id, title=alert.title, error=str(e))
        finally:
            session.close()


def credit_alert(remaining: int, settings: Optional[Settings] = None) -> Optional[AlertNotice]:
    """Out-of-credits or low-credits notice for a balance, if one is due"""
    settings = settings or get_settings()
    if remaining <= 0:
        return AlertNotice(
            type=AlertType.ERROR.value,
            title="No Credits Remaining",
            message="You have used all your credits. Upgrade now to continue using RankInAI.",
            action_url="/app/pricing",
            action_label="Upgrade Now",
        )
    if remaining <= settings.low_credit_threshold:
        return AlertNotice(
            type=AlertType.WARNING.value,
            title="Credits Running Low",
            message=f"You have only {remaining} credits remaining. Upgrade your plan to continue scanning.",
            action_url="/app/pricing",
            action_label="Upgrade Plan",
        )
    return None


def citation_drop_alert(session: Session, product, settings: Optional[Settings] = None) -> Optional[AlertNotice]:
    """
    Compare the citation rate of the most recent scans with the rate of all
    earlier scans; a drop of at least citation_drop_threshold points is reported.
    """
    settings = settings or get_settings()
    window = settings.citation_drop_window

    cited_flags: List[bool] = list(session.execute(
        select(Scan.is_cited)
        .where(Scan.product_id == product.id)
        .order_by(Scan.created_at.desc(), Scan.id)
    ).scalars())

    recent, earlier = cited_flags[:window], cited_flags[window:]
    if len(recent) < window or not earlier:
        return None

    recent_rate = citation_rate(sum(recent), len(recent))
    earlier_rate = citation_rate(sum(earlier), len(earlier))
    drop = earlier_rate - recent_rate
    if drop < settings.citation_drop_threshold:
        return None

    return AlertNotice(
        type=AlertType.WARNING.value,
        title="Citation Rate Dropping",
        message=(
            f"{product.title} was cited in {recent_rate:.0f}% of the last {window} scans, "
            f"down from {earlier_rate:.0f}%."
        ),
        product_id=product.id,
        action_url=f"/app/products/{product.id}",
        action_label="View Product",
    )


def safe_emit(sink: Optional[AlertSink], shop_id: str, alert: Optional[AlertNotice]) -> None:
    if sink is None or alert is None:
        return
    try:
        sink.emit(shop_id, alert)
    except Exception as e:
        logger.error("alert_sink_error", shop_id=shop_id, title=alert.title, error=str(e))


def stale_product_alert(product, days: int) -> AlertNotice:
    return AlertNotice(
        type=AlertType.INFO.value,
        title="Product Needs Scanning",
        message=f"{product.title} hasn't been scanned in over {days} days.",
        product_id=product.id,
        action_url=f"/app/products/{product.id}",
        action_label="Scan Now",
    )


def recharge_alert(credits: int) -> AlertNotice:
    return AlertNotice(
        type=AlertType.SUCCESS.value,
        title="Credits Recharged",
        message=f"Your monthly credits have been recharged. You now have {credits} credits.",
    )
