"""
Aggregation and scoring over the scan history
Product rate fields are a cache: they are always rebuilt from the full set of
scans, never patched incrementally. Every rollup here is read-side only.
"""

from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from config import get_settings
from db_models import Optimization, Product, Scan, Shop
from exceptions import ProductNotFound, ShopNotFound
from models import AnalyticsWindow, Platform, Sentiment
from utils import citation_rate, utcnow

logger = structlog.get_logger()


def compute_citation_stats(scans: Sequence[Any]) -> Dict[str, Any]:
    """Overall and per-platform citation rates (0-100) for a set of scans"""
    total = len(scans)
    cited = sum(1 for scan in scans if scan.is_cited)
    stats = {
        "total_scans": total,
        "cited_scans": cited,
        "citation_rate": citation_rate(cited, total),
    }
    for platform in Platform:
        platform_scans = [scan for scan in scans if scan.platform == platform.value]
        platform_cited = sum(1 for scan in platform_scans if scan.is_cited)
        key = platform.value.lower()
        stats[f"{key}_scans"] = len(platform_scans)
        stats[f"{key}_rate"] = citation_rate(platform_cited, len(platform_scans))
    return stats


def recompute_product_stats(session: Session, product_id: str) -> Product:
    """Rebuild the cached rate fields of one product from its scans"""
    product = session.get(Product, product_id)
    if product is None:
        raise ProductNotFound(product_id)

    scans = session.execute(select(Scan).where(Scan.product_id == product_id)).scalars().all()
    stats = compute_citation_stats(scans)

    product.citation_rate = stats["citation_rate"]
    product.chatgpt_rate = stats["chatgpt_rate"]
    product.gemini_rate = stats["gemini_rate"]
    product.total_scans = stats["total_scans"]
    product.last_scan_at = max((scan.created_at for scan in scans), default=None)
    session.flush()

    logger.debug("product_stats_recomputed", product_id=product_id,
                 citation_rate=round(product.citation_rate, 1), total_scans=product.total_scans)
    return product


def window_start(window: AnalyticsWindow, now: Optional[datetime] = None) -> Optional[datetime]:
    if window.days is None:
        return None
    return (now or utcnow()) - timedelta(days=window.days)


def filter_window(scans: Iterable[Any], window: AnalyticsWindow, now: Optional[datetime] = None) -> List[Any]:
    start = window_start(window, now)
    if start is None:
        return list(scans)
    return [scan for scan in scans if scan.created_at >= start]


def citation_trend(scans: Sequence[Any], window: AnalyticsWindow, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """
    Daily citation buckets, oldest first.
    Fixed windows include empty days so charts have a point per day; the
    all-time trend only lists days that had scans.
    """
    now = now or utcnow()
    buckets: Dict[str, Dict[str, int]] = {}

    if window.days is not None:
        first_day = (now - timedelta(days=window.days - 1)).date()
        for offset in range(window.days):
            day = (first_day + timedelta(days=offset)).isoformat()
            buckets[day] = {"scans": 0, "cited": 0}

    for scan in filter_window(scans, window, now):
        day = scan.created_at.date().isoformat()
        bucket = buckets.get(day)
        if bucket is None:
            if window.days is not None:
                continue
            bucket = buckets.setdefault(day, {"scans": 0, "cited": 0})
        bucket["scans"] += 1
        bucket["cited"] += 1 if scan.is_cited else 0

    return [
        {
            "date": day,
            "scans": bucket["scans"],
            "cited": bucket["cited"],
            "citation_rate": round(citation_rate(bucket["cited"], bucket["scans"]), 1),
        }
        for day, bucket in sorted(buckets.items())
    ]


def rank_frequencies(lists: Iterable[Optional[Iterable[str]]], top_n: int = 10) -> List[Dict[str, Any]]:
    """Top-N names by count; ties keep first-seen order"""
    counts: Counter = Counter()
    for names in lists:
        for name in names or ():
            if name:
                counts[name] += 1
    # Counter keeps insertion order and sorted() is stable
    ranked = sorted(counts.items(), key=lambda item: -item[1])
    return [{"name": name, "count": count} for name, count in ranked[:top_n]]


def sentiment_distribution(scans: Sequence[Any]) -> Dict[str, int]:
    distribution = {sentiment.value: 0 for sentiment in Sentiment}
    for scan in scans:
        if scan.is_cited and scan.sentiment in distribution:
            distribution[scan.sentiment] += 1
    return distribution


def average_position(scans: Sequence[Any]) -> Optional[float]:
    """Mean 1-based list position among cited scans that had one"""
    positions = [scan.citation_position for scan in scans if scan.is_cited and scan.citation_position]
    if not positions:
        return None
    return round(sum(positions) / len(positions), 2)


def optimization_comparison(products: Sequence[Any]) -> Dict[str, Any]:
    """Average cached citation rate of optimized vs non-optimized scanned products"""
    groups = {"optimized": [], "not_optimized": []}
    for product in products:
        if not product.total_scans:
            continue
        key = "optimized" if product.is_optimized else "not_optimized"
        groups[key].append(product.citation_rate or 0.0)

    result: Dict[str, Any] = {}
    for key, rates in groups.items():
        result[key] = {
            "count": len(rates),
            "average_citation_rate": round(sum(rates) / len(rates), 1) if rates else 0.0,
        }

    if groups["optimized"] and groups["not_optimized"]:
        result["difference"] = round(
            result["optimized"]["average_citation_rate"] - result["not_optimized"]["average_citation_rate"], 1
        )
    else:
        result["difference"] = None
    return result


def scan_to_dict(scan: Scan) -> Dict[str, Any]:
    return {
        "id": scan.id,
        "product_id": scan.product_id,
        "platform": scan.platform,
        "question": scan.question,
        "is_cited": scan.is_cited,
        "citation": scan.citation,
        "position": scan.citation_position,
        "sentiment": scan.sentiment,
        "competitors": list(scan.competitors or []),
        "missing_topics": list(scan.missing_topics or []),
        "ignored_features": list(scan.ignored_features or []),
        "confidence": scan.confidence,
        "credits_used": scan.credits_used,
        "duration_ms": scan.scan_duration_ms,
        "created_at": scan.created_at.isoformat() if scan.created_at else None,
    }


def product_to_dict(product: Product) -> Dict[str, Any]:
    return {
        "id": product.id,
        "title": product.title,
        "vendor": product.vendor,
        "product_type": product.product_type,
        "price": product.price,
        "citation_rate": round(product.citation_rate or 0.0, 1),
        "chatgpt_rate": round(product.chatgpt_rate or 0.0, 1),
        "gemini_rate": round(product.gemini_rate or 0.0, 1),
        "total_scans": product.total_scans,
        "is_optimized": bool(product.is_optimized),
        "last_scan_at": product.last_scan_at.isoformat() if product.last_scan_at else None,
        "last_optimized_at": product.last_optimized_at.isoformat() if product.last_optimized_at else None,
    }


def optimization_to_dict(optimization: Optimization) -> Dict[str, Any]:
    return {
        "id": optimization.id,
        "product_id": optimization.product_id,
        "recommendations": optimization.recommendations,
        "quick_wins": list(optimization.quick_wins or []),
        "current_score": optimization.current_score,
        "potential_score": optimization.potential_score,
        "source": optimization.source,
        "applied": bool(optimization.applied),
        "applied_at": optimization.applied_at.isoformat() if optimization.applied_at else None,
        "created_at": optimization.created_at.isoformat() if optimization.created_at else None,
    }


def _ordered_scans(session: Session, *criteria) -> List[Scan]:
    return list(session.execute(
        select(Scan).where(*criteria).order_by(Scan.created_at, Scan.id)
    ).scalars())


def latest_scans_by_platform(scans: Sequence[Scan]) -> Dict[str, Scan]:
    latest: Dict[str, Scan] = {}
    for scan in scans:
        current = latest.get(scan.platform)
        if current is None or scan.created_at >= current.created_at:
            latest[scan.platform] = scan
    return latest


def get_product_stats(session: Session, product_id: str, top_n: Optional[int] = None,
                      recent_limit: int = 10) -> Dict[str, Any]:
    """Product detail view: cached rates plus rollups over its scans"""
    top_n = top_n or get_settings().top_n_rankings
    product = session.get(Product, product_id)
    if product is None:
        raise ProductNotFound(product_id)

    scans = _ordered_scans(session, Scan.product_id == product_id)
    latest_optimization = session.execute(
        select(Optimization)
        .where(Optimization.product_id == product_id)
        .order_by(Optimization.created_at.desc())
        .limit(1)
    ).scalar_one_or_none()

    return {
        "product": product_to_dict(product),
        "stats": compute_citation_stats(scans),
        "latest_scans": {
            platform: scan_to_dict(scan) for platform, scan in latest_scans_by_platform(scans).items()
        },
        "recent_scans": [scan_to_dict(scan) for scan in reversed(scans[-recent_limit:])],
        "sentiment": sentiment_distribution(scans),
        "average_position": average_position(scans),
        "competitors": rank_frequencies((scan.competitors for scan in scans), top_n),
        "missing_topics": rank_frequencies((scan.missing_topics for scan in scans), top_n),
        "ignored_features": rank_frequencies((scan.ignored_features for scan in scans), top_n),
        "latest_optimization": optimization_to_dict(latest_optimization) if latest_optimization else None,
    }


def get_shop_analytics(session: Session, shop_id: str, window: AnalyticsWindow = AnalyticsWindow.LAST_30_DAYS,
                       now: Optional[datetime] = None, top_n: Optional[int] = None) -> Dict[str, Any]:
    """Shop-level rollups for one analytics window"""
    now = now or utcnow()
    top_n = top_n or get_settings().top_n_rankings
    window = AnalyticsWindow(window)

    shop = session.get(Shop, shop_id)
    if shop is None:
        raise ShopNotFound(shop_id)

    criteria = [Scan.shop_id == shop_id]
    start = window_start(window, now)
    if start is not None:
        criteria.append(Scan.created_at >= start)
    scans = _ordered_scans(session, *criteria)

    products = list(session.execute(
        select(Product).where(Product.shop_id == shop_id).order_by(Product.created_at, Product.id)
    ).scalars())
    scanned = [product for product in products if product.total_scans]
    by_rate = sorted(scanned, key=lambda product: product.citation_rate or 0.0, reverse=True)

    return {
        "shop": {
            "id": shop.id,
            "shop_domain": shop.shop_domain,
            "plan": shop.plan,
            "credits": shop.credits,
            "max_credits": shop.max_credits,
        },
        "window": window.value,
        "products": {
            "total": len(products),
            "scanned": len(scanned),
            "optimized": sum(1 for product in products if product.is_optimized),
        },
        "stats": compute_citation_stats(scans),
        "trend": citation_trend(scans, window, now),
        "competitors": rank_frequencies((scan.competitors for scan in scans), top_n),
        "missing_topics": rank_frequencies((scan.missing_topics for scan in scans), top_n),
        "ignored_features": rank_frequencies((scan.ignored_features for scan in scans), top_n),
        "sentiment": sentiment_distribution(scans),
        "average_position": average_position(scans),
        "optimization_impact": optimization_comparison(products),
        "top_products": [product_to_dict(product) for product in by_rate[:5]],
        "needs_attention": [product_to_dict(product) for product in reversed(by_rate[-5:])
                            if (product.citation_rate or 0.0) < 50],
    }


def list_shop_products(session: Session, shop_id: str) -> List[Dict[str, Any]]:
    """Products of a shop, best cited first"""
    if session.get(Shop, shop_id) is None:
        raise ShopNotFound(shop_id)
    products = session.execute(
        select(Product)
        .where(Product.shop_id == shop_id)
        .order_by(Product.citation_rate.desc(), Product.title)
    ).scalars()
    return [product_to_dict(product) for product in products]
