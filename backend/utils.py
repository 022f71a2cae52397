"""
Small helpers shared by the scan, stats and billing modules
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how DateTime columns are stored"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def citation_rate(cited: int, total: int) -> float:
    """Percentage of cited scans; 0 when there are no scans"""
    if total <= 0:
        return 0.0
    return cited / total * 100
