"""
Aggregation tests: rates, trends, rankings and the shop analytics rollup
"""

from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from db_models import Product
from exceptions import ProductNotFound, ShopNotFound
from models import AnalyticsWindow
from stats_engine import (
    average_position, citation_trend, compute_citation_stats, filter_window, get_product_stats,
    get_shop_analytics, list_shop_products, optimization_comparison, rank_frequencies,
    recompute_product_stats, sentiment_distribution
)

NOW = datetime(2026, 6, 15, 12, 0, 0)


def make_scan(platform="CHATGPT", is_cited=True, days_ago=0, **fields):
    defaults = {
        "sentiment": "POSITIVE" if is_cited else None,
        "citation_position": None,
        "competitors": [],
        "missing_topics": [],
        "ignored_features": [],
    }
    defaults.update(fields)
    return SimpleNamespace(platform=platform, is_cited=is_cited,
                           created_at=NOW - timedelta(days=days_ago), **defaults)


@pytest.mark.unit
class TestCitationStats:

    def test_no_scans_means_zero(self):
        stats = compute_citation_stats([])
        assert stats["total_scans"] == 0
        assert stats["citation_rate"] == 0.0
        assert stats["chatgpt_rate"] == 0.0
        assert stats["gemini_rate"] == 0.0

    def test_overall_and_per_platform(self):
        scans = [
            make_scan("CHATGPT", True),
            make_scan("CHATGPT", True),
            make_scan("CHATGPT", False),
            make_scan("GEMINI", False),
            make_scan("GEMINI", False),
        ]
        stats = compute_citation_stats(scans)
        assert stats["cited_scans"] == 2
        assert stats["citation_rate"] == pytest.approx(40.0)
        assert stats["chatgpt_scans"] == 3
        assert stats["chatgpt_rate"] == pytest.approx(66.666, abs=0.01)
        assert stats["gemini_scans"] == 2
        assert stats["gemini_rate"] == 0.0

    def test_overall_rate_weights_every_scan(self):
        # 1/1 on one platform and 0/3 on the other is 25%, not the 50% mean of the two rates
        scans = [make_scan("CHATGPT", True)] + [make_scan("GEMINI", False) for _ in range(3)]
        assert compute_citation_stats(scans)["citation_rate"] == pytest.approx(25.0)


@pytest.mark.unit
class TestTrend:

    def test_fixed_window_has_a_point_per_day(self):
        scans = [make_scan(days_ago=0), make_scan(is_cited=False, days_ago=0), make_scan(days_ago=3)]
        trend = citation_trend(scans, AnalyticsWindow.LAST_7_DAYS, NOW)

        assert len(trend) == 7
        assert trend[0]["date"] == "2026-06-09"
        assert trend[-1] == {"date": "2026-06-15", "scans": 2, "cited": 1, "citation_rate": 50.0}
        assert trend[3] == {"date": "2026-06-12", "scans": 1, "cited": 1, "citation_rate": 100.0}
        assert trend[1]["scans"] == 0
        assert trend[1]["citation_rate"] == 0.0

    def test_scans_outside_window_are_ignored(self):
        trend = citation_trend([make_scan(days_ago=20)], AnalyticsWindow.LAST_7_DAYS, NOW)
        assert sum(point["scans"] for point in trend) == 0

    def test_all_time_lists_only_active_days(self):
        scans = [make_scan(days_ago=90), make_scan(is_cited=False, days_ago=1)]
        trend = citation_trend(scans, AnalyticsWindow.ALL_TIME, NOW)
        assert [point["date"] for point in trend] == ["2026-03-17", "2026-06-14"]

    def test_filter_window(self):
        scans = [make_scan(days_ago=2), make_scan(days_ago=10), make_scan(days_ago=40)]
        assert len(filter_window(scans, AnalyticsWindow.LAST_7_DAYS, NOW)) == 1
        assert len(filter_window(scans, AnalyticsWindow.LAST_30_DAYS, NOW)) == 2
        assert len(filter_window(scans, AnalyticsWindow.ALL_TIME, NOW)) == 3


@pytest.mark.unit
class TestRankings:

    def test_counts_and_order(self):
        lists = [["Nike", "Adidas"], ["Adidas"], ["Puma", "Adidas"], None]
        assert rank_frequencies(lists) == [
            {"name": "Adidas", "count": 3},
            {"name": "Nike", "count": 1},
            {"name": "Puma", "count": 1},
        ]

    def test_ties_keep_first_seen_order(self):
        lists = [["Adidas", "Puma"], ["Nike"], ["Puma", "Adidas", "Nike"]]
        assert [entry["name"] for entry in rank_frequencies(lists)] == ["Adidas", "Puma", "Nike"]

    def test_top_n(self):
        lists = [[f"Brand{i}" for i in range(20)]]
        assert len(rank_frequencies(lists, top_n=10)) == 10

    def test_sentiment_counts_cited_scans_only(self):
        scans = [
            make_scan(sentiment="POSITIVE"),
            make_scan(sentiment="NEGATIVE"),
            make_scan(sentiment="POSITIVE"),
            make_scan(is_cited=False, sentiment="POSITIVE"),
        ]
        assert sentiment_distribution(scans) == {"POSITIVE": 2, "NEUTRAL": 0, "NEGATIVE": 1}

    def test_average_position(self):
        scans = [make_scan(citation_position=1), make_scan(citation_position=4), make_scan(citation_position=None)]
        assert average_position(scans) == 2.5
        assert average_position([make_scan(is_cited=False)]) is None


@pytest.mark.unit
class TestOptimizationComparison:

    def test_difference_between_groups(self):
        products = [
            SimpleNamespace(total_scans=4, is_optimized=True, citation_rate=75.0),
            SimpleNamespace(total_scans=2, is_optimized=False, citation_rate=20.0),
            SimpleNamespace(total_scans=3, is_optimized=False, citation_rate=40.0),
            SimpleNamespace(total_scans=0, is_optimized=False, citation_rate=0.0),
        ]
        result = optimization_comparison(products)
        assert result["optimized"] == {"count": 1, "average_citation_rate": 75.0}
        assert result["not_optimized"] == {"count": 2, "average_citation_rate": 30.0}
        assert result["difference"] == 45.0

    def test_no_difference_without_both_groups(self):
        products = [SimpleNamespace(total_scans=1, is_optimized=False, citation_rate=10.0)]
        assert optimization_comparison(products)["difference"] is None


@pytest.mark.database
class TestReadSide:

    def test_recompute_unknown_product(self, session_factory):
        session = session_factory()
        with pytest.raises(ProductNotFound):
            recompute_product_stats(session, "nope")
        session.close()

    def test_product_stats_view(self, product, add_scan, session_factory):
        add_scan(product, "CHATGPT", True, citation_position=2, competitors=["Nike"])
        add_scan(product, "GEMINI", False, competitors=["Nike", "Puma"], missing_topics=["non-slip"])
        session = session_factory()
        recompute_product_stats(session, product.id)
        session.commit()

        view = get_product_stats(session, product.id, top_n=10)
        session.close()

        assert view["stats"]["total_scans"] == 2
        assert view["product"]["citation_rate"] == 50.0
        assert set(view["latest_scans"]) == {"CHATGPT", "GEMINI"}
        assert view["recent_scans"][0]["platform"] == "GEMINI"
        assert view["competitors"][0] == {"name": "Nike", "count": 2}
        assert view["missing_topics"] == [{"name": "non-slip", "count": 1}]
        assert view["average_position"] == 2.0
        assert view["latest_optimization"] is None

    def test_shop_analytics(self, shop, product, add_scan, session_factory):
        add_scan(product, "CHATGPT", True, created_at=NOW - timedelta(days=2))
        add_scan(product, "GEMINI", False, created_at=NOW - timedelta(days=2))
        add_scan(product, "GEMINI", True, created_at=NOW - timedelta(days=45))
        session = session_factory()
        recompute_product_stats(session, product.id)
        session.commit()

        last_week = get_shop_analytics(session, shop.id, AnalyticsWindow.LAST_7_DAYS, now=NOW)
        all_time = get_shop_analytics(session, shop.id, AnalyticsWindow.ALL_TIME, now=NOW)
        session.close()

        assert last_week["window"] == "7d"
        assert last_week["stats"]["total_scans"] == 2
        assert last_week["stats"]["citation_rate"] == 50.0
        assert len(last_week["trend"]) == 7
        assert all_time["stats"]["total_scans"] == 3
        assert all_time["products"] == {"total": 1, "scanned": 1, "optimized": 0}
        assert all_time["top_products"][0]["id"] == product.id

    def test_unknown_shop(self, session_factory):
        session = session_factory()
        with pytest.raises(ShopNotFound):
            get_shop_analytics(session, "missing-shop")
        with pytest.raises(ShopNotFound):
            list_shop_products(session, "missing-shop")
        session.close()

    def test_products_best_cited_first(self, shop, session_factory):
        session = session_factory()
        session.add_all([
            Product(shop_id=shop.id, title="Low", citation_rate=10.0, total_scans=1),
            Product(shop_id=shop.id, title="High", citation_rate=90.0, total_scans=1),
        ])
        session.commit()
        titles = [item["title"] for item in list_shop_products(session, shop.id)]
        session.close()
        assert titles == ["High", "Low"]
