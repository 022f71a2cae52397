"""
Scan orchestration tests: credit reservation, refunds, persistence and rollups
"""

import asyncio
import random
from unittest.mock import patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

import stats_engine
from db_models import Alert, Event, Optimization, Product, Scan
from exceptions import (
    InsufficientCredits, OptimizationAlreadyApplied, PersistenceFailure, ProductNotFound, ProviderUnavailable
)
from notifications import DatabaseAlertSink


def count_rows(session_factory, model, *criteria):
    session = session_factory()
    try:
        return session.execute(select(func.count()).select_from(model).where(*criteria)).scalar_one()
    finally:
        session.close()


def load_product(session_factory, product_id):
    session = session_factory()
    try:
        return session.get(Product, product_id)
    finally:
        session.close()


@pytest.mark.database
class TestScanProduct:

    @pytest.mark.asyncio
    async def test_cited_scan_is_persisted_and_debited(self, make_service, fake_llm, product, shop,
                                                       session_factory, get_credits, cited_reply):
        service = make_service(chatgpt=fake_llm("openai", replies=[cited_reply]))
        service.rng = random.Random(1)

        result = await service.scan_product(product.id, "CHATGPT")

        assert result.is_cited is True
        assert result.position == 2
        assert result.sentiment == "POSITIVE"
        assert result.confidence == 0.85
        assert result.credits_used == 1
        assert result.credits_remaining == 99
        assert get_credits(shop.id) == 99
        assert result.product_stats["chatgpt_rate"] == 100.0
        assert result.product_stats["total_scans"] == 1

        assert count_rows(session_factory, Scan, Scan.product_id == product.id) == 1
        assert count_rows(session_factory, Event, Event.type == "API_USAGE") == 1

    @pytest.mark.asyncio
    async def test_uncited_scan_is_a_normal_outcome(self, make_service, fake_llm, product, uncited_reply):
        service = make_service(gemini=fake_llm("gemini", replies=[uncited_reply]))

        result = await service.scan_product(product.id, "GEMINI")

        assert result.is_cited is False
        assert result.sentiment is None
        assert result.citation is None
        assert result.confidence == 0.20
        assert result.competitors == ["Nike", "Adidas"]

    @pytest.mark.asyncio
    async def test_question_comes_from_product(self, make_service, fake_llm, product):
        client = fake_llm("openai")
        service = make_service(chatgpt=client)

        result = await service.scan_product(product.id, "CHATGPT")

        assert client.calls[0]["user"] == result.question
        assert client.calls[0]["system"] == service.settings.scan_system_prompt

    @pytest.mark.asyncio
    async def test_insufficient_credits_has_no_side_effects(self, make_service, fake_llm, product, shop,
                                                            set_credits, get_credits, session_factory):
        client = fake_llm("openai")
        service = make_service(chatgpt=client)
        set_credits(shop.id, 0)

        with pytest.raises(InsufficientCredits) as exc_info:
            await service.scan_product(product.id, "CHATGPT")

        assert exc_info.value.available == 0
        assert client.calls == []
        assert get_credits(shop.id) == 0
        assert count_rows(session_factory, Scan) == 0

    @pytest.mark.asyncio
    async def test_unknown_product(self, make_service, fake_llm, shop):
        service = make_service(chatgpt=fake_llm("openai"))
        with pytest.raises(ProductNotFound):
            await service.scan_product("missing-product", "CHATGPT")

    @pytest.mark.asyncio
    async def test_unconfigured_platform_is_unavailable(self, make_service, fake_llm, product, shop, get_credits):
        service = make_service(chatgpt=fake_llm("openai"))
        with pytest.raises(ProviderUnavailable):
            await service.scan_product(product.id, "GEMINI")
        assert get_credits(shop.id) == 100


@pytest.mark.database
class TestRefunds:

    @pytest.mark.asyncio
    async def test_provider_failure_refunds(self, make_service, fake_llm, product, shop, get_credits, session_factory):
        service = make_service(chatgpt=fake_llm("openai", error=RuntimeError("rate limited")))
        before = get_credits(shop.id)

        with pytest.raises(ProviderUnavailable):
            await service.scan_product(product.id, "CHATGPT")

        assert get_credits(shop.id) == before
        assert count_rows(session_factory, Scan) == 0

    @pytest.mark.asyncio
    async def test_timeout_refunds(self, make_service, fake_llm, product, shop, get_credits):
        service = make_service(chatgpt=fake_llm("openai", delay=1.0, timeout=0.01))

        with pytest.raises(ProviderUnavailable) as exc_info:
            await service.scan_product(product.id, "CHATGPT")

        assert "timed out" in str(exc_info.value)
        assert get_credits(shop.id) == 100

    @pytest.mark.asyncio
    async def test_empty_reply_refunds(self, make_service, fake_llm, product, shop, get_credits):
        service = make_service(chatgpt=fake_llm("openai", default="   "))

        with pytest.raises(ProviderUnavailable):
            await service.scan_product(product.id, "CHATGPT")

        assert get_credits(shop.id) == 100

    @pytest.mark.asyncio
    async def test_persistence_failure_refunds_once(self, make_service, fake_llm, product, shop,
                                                    get_credits, session_factory):
        service = make_service(chatgpt=fake_llm("openai"))

        with patch.object(stats_engine, "recompute_product_stats", side_effect=SQLAlchemyError("disk full")):
            with pytest.raises(PersistenceFailure):
                await service.scan_product(product.id, "CHATGPT")

        assert get_credits(shop.id) == 100
        assert count_rows(session_factory, Scan) == 0
        assert count_rows(session_factory, Event, Event.type == "API_USAGE") == 0

    @pytest.mark.asyncio
    async def test_cancelled_scan_refunds(self, make_service, fake_llm, product, shop, get_credits, session_factory):
        service = make_service(chatgpt=fake_llm("openai", delay=1.0))

        task = asyncio.ensure_future(service.scan_product(product.id, "CHATGPT"))
        await asyncio.sleep(0.1)
        assert get_credits(shop.id) == 99
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert get_credits(shop.id) == 100
        assert count_rows(session_factory, Scan) == 0

    @pytest.mark.asyncio
    async def test_cancelled_recommendations_refund(self, make_service, fake_llm, product, shop,
                                                    get_credits, session_factory):
        service = make_service(recommendation_client=fake_llm("gemini", delay=1.0))

        task = asyncio.ensure_future(service.generate_recommendations(product.id))
        await asyncio.sleep(0.1)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert get_credits(shop.id) == 100
        assert count_rows(session_factory, Optimization) == 0


@pytest.mark.database
class TestCreditInvariant:

    @pytest.mark.asyncio
    async def test_concurrent_scans_never_overdraw(self, make_service, fake_llm, product, shop,
                                                   set_credits, get_credits, session_factory):
        service = make_service(chatgpt=fake_llm("openai"))
        set_credits(shop.id, 3)

        results = await asyncio.gather(
            *(service.scan_product(product.id, "CHATGPT") for _ in range(6)),
            return_exceptions=True
        )

        succeeded = [r for r in results if not isinstance(r, Exception)]
        rejected = [r for r in results if isinstance(r, InsufficientCredits)]
        assert len(succeeded) == 3
        assert len(rejected) == 3
        assert get_credits(shop.id) == 0
        assert count_rows(session_factory, Scan) == 3

    @pytest.mark.asyncio
    async def test_failures_interleaved_with_successes(self, make_service, fake_llm, product, shop,
                                                       set_credits, get_credits):
        good = make_service(chatgpt=fake_llm("openai"))
        bad = make_service(chatgpt=fake_llm("openai", error=RuntimeError("boom")))
        set_credits(shop.id, 2)

        results = await asyncio.gather(
            good.scan_product(product.id, "CHATGPT"),
            bad.scan_product(product.id, "CHATGPT"),
            good.scan_product(product.id, "CHATGPT"),
            return_exceptions=True
        )

        assert sum(1 for r in results if not isinstance(r, Exception)) >= 1
        assert get_credits(shop.id) >= 0
        assert get_credits(shop.id) == 2 - sum(1 for r in results if not isinstance(r, Exception))


@pytest.mark.database
class TestAggregation:

    @pytest.mark.asyncio
    async def test_end_to_end_rates(self, make_service, fake_llm, product, add_scan, session_factory, uncited_reply):
        add_scan(product, "CHATGPT", True)
        add_scan(product, "CHATGPT", True)
        add_scan(product, "CHATGPT", False)
        add_scan(product, "GEMINI", False)
        service = make_service(gemini=fake_llm("gemini", replies=[uncited_reply]))

        result = await service.scan_product(product.id, "GEMINI")

        stored = load_product(session_factory, product.id)
        assert stored.chatgpt_rate == pytest.approx(66.7, abs=0.05)
        assert stored.gemini_rate == 0
        assert stored.citation_rate == pytest.approx(40.0)
        assert stored.total_scans == 5
        assert stored.last_scan_at is not None
        assert result.product_stats["citation_rate"] == pytest.approx(40.0)

    def test_recompute_is_idempotent(self, product, add_scan, session_factory):
        add_scan(product, "CHATGPT", True)
        latest = add_scan(product, "GEMINI", False)

        def recompute():
            session = session_factory()
            stored = stats_engine.recompute_product_stats(session, product.id)
            session.commit()
            snapshot = (stored.citation_rate, stored.chatgpt_rate, stored.gemini_rate, stored.total_scans,
                        stored.last_scan_at)
            session.close()
            return snapshot

        first = recompute()
        assert first == recompute()
        assert first == (50.0, 100.0, 0.0, 2, latest.created_at)

    def test_no_scans_means_zero_rates(self, product, session_factory):
        session = session_factory()
        stored = stats_engine.recompute_product_stats(session, product.id)
        assert (stored.citation_rate, stored.chatgpt_rate, stored.gemini_rate) == (0.0, 0.0, 0.0)
        # never scanned stays eligible for rescan reminders
        assert stored.last_scan_at is None
        session.close()


@pytest.mark.database
class TestCompleteScan:

    @pytest.mark.asyncio
    async def test_both_platforms_and_recommendations(self, make_service, fake_llm, product, shop,
                                                      get_credits, cited_reply, uncited_reply, session_factory):
        service = make_service(
            chatgpt=fake_llm("openai", replies=[cited_reply]),
            gemini=fake_llm("gemini", replies=[uncited_reply]),
        )

        result = await service.scan_product_complete(product.id)

        assert result.chatgpt.is_cited is True
        assert result.gemini.is_cited is False
        assert result.errors == {}
        assert result.is_partial is False
        # no recommendation provider: free template fallback
        assert result.recommendations_status == "fallback"
        assert result.recommendations["quick_wins"]
        assert get_credits(shop.id) == 98
        assert count_rows(session_factory, Optimization) == 1

    @pytest.mark.asyncio
    async def test_partial_success_is_reported(self, make_service, fake_llm, product, shop,
                                               get_credits, cited_reply, session_factory):
        service = make_service(
            chatgpt=fake_llm("openai", replies=[cited_reply]),
            gemini=fake_llm("gemini", error=RuntimeError("quota exceeded")),
        )

        result = await service.scan_product_complete(product.id)

        assert result.chatgpt is not None
        assert result.gemini is None
        assert result.errors["GEMINI"]["code"] == "provider_unavailable"
        assert result.is_partial is True
        assert result.recommendations is not None
        assert get_credits(shop.id) == 99
        assert count_rows(session_factory, Scan) == 1

    @pytest.mark.asyncio
    async def test_recommendations_skipped_when_all_scans_fail(self, make_service, fake_llm, product, shop, get_credits):
        service = make_service(
            chatgpt=fake_llm("openai", error=RuntimeError("down")),
            gemini=fake_llm("gemini", error=RuntimeError("down")),
        )

        result = await service.scan_product_complete(product.id)

        assert result.results == {}
        assert result.recommendations is None
        assert result.recommendations_status == "skipped"
        assert get_credits(shop.id) == 100

    @pytest.mark.asyncio
    async def test_recommendations_gated_by_credit(self, make_service, fake_llm, product, shop,
                                                   set_credits, get_credits, cited_reply):
        rec_client = fake_llm("gemini", default='{"not": "used"}')
        service = make_service(
            chatgpt=fake_llm("openai", replies=[cited_reply]),
            gemini=fake_llm("gemini", replies=[cited_reply]),
            recommendation_client=rec_client,
        )
        set_credits(shop.id, 2)

        result = await service.scan_product_complete(product.id)

        assert len(result.results) == 2
        assert result.recommendations_status == "skipped"
        assert result.recommendations_error["code"] == "insufficient_credits"
        assert rec_client.calls == []
        assert get_credits(shop.id) == 0

    @pytest.mark.asyncio
    async def test_no_credits_at_all(self, make_service, fake_llm, product, shop, set_credits):
        service = make_service(chatgpt=fake_llm("openai"), gemini=fake_llm("gemini"))
        set_credits(shop.id, 0)
        with pytest.raises(InsufficientCredits):
            await service.scan_product_complete(product.id)


@pytest.mark.database
class TestRecommendationsAndOptimizations:

    @pytest.mark.asyncio
    async def test_llm_recommendations_are_charged(self, make_service, fake_llm, product, shop, get_credits):
        reply = ('Here you go: {"title": {"suggested": "Acme UltraMat Pro Non-Slip Yoga Mat", "reason": "keywords"}, '
                 '"description": {"key_points": ["6mm cushioning"], "reason": "detail"}, '
                 '"tags": {"add": ["yoga"], "remove": [], "reason": "coverage"}, '
                 '"seo": {"meta_title": "Acme UltraMat Pro", "meta_description": "Grippy mat", "reason": "seo"}, '
                 '"quick_wins": ["Mention thickness"]}')
        service = make_service(recommendation_client=fake_llm("gemini", replies=[reply]))

        payload = await service.generate_recommendations(product.id)

        assert payload["source"] == "LLM"
        assert payload["quick_wins"] == ["Mention thickness"]
        assert payload["recommendations"]["title"]["suggested"] == "Acme UltraMat Pro Non-Slip Yoga Mat"
        assert payload["credits_used"] == 1
        assert get_credits(shop.id) == 99

    @pytest.mark.asyncio
    async def test_fallback_when_provider_throws(self, make_service, fake_llm, product, shop, get_credits):
        service = make_service(recommendation_client=fake_llm("gemini", error=RuntimeError("500")))

        payload = await service.generate_recommendations(product.id)

        assert payload["source"] == "FALLBACK"
        assert payload["quick_wins"]
        assert payload["credits_used"] == 0
        assert get_credits(shop.id) == 100

    @pytest.mark.asyncio
    async def test_apply_optimization_once(self, make_service, product, session_factory):
        service = make_service()
        payload = await service.generate_recommendations(product.id)

        applied = service.apply_optimization(payload["id"])

        assert applied["applied"] is True
        stored = load_product(session_factory, product.id)
        assert stored.is_optimized is True
        assert stored.last_optimized_at is not None
        with pytest.raises(OptimizationAlreadyApplied):
            service.apply_optimization(payload["id"])


@pytest.mark.database
class TestAlerts:

    @pytest.mark.asyncio
    async def test_low_credit_alert_on_crossing(self, make_service, fake_llm, product, shop,
                                                set_credits, session_factory):
        service = make_service(chatgpt=fake_llm("openai"), alert_sink=DatabaseAlertSink(session_factory))
        set_credits(shop.id, 6)

        await service.scan_product(product.id, "CHATGPT")
        await service.scan_product(product.id, "CHATGPT")

        assert count_rows(session_factory, Alert, Alert.title == "Credits Running Low") == 1

    @pytest.mark.asyncio
    async def test_zero_credit_alert(self, make_service, fake_llm, product, shop, set_credits, session_factory):
        service = make_service(chatgpt=fake_llm("openai"), alert_sink=DatabaseAlertSink(session_factory))
        set_credits(shop.id, 1)

        await service.scan_product(product.id, "CHATGPT")

        session = session_factory()
        alert = session.execute(select(Alert).where(Alert.title == "No Credits Remaining")).scalar_one()
        assert alert.severity == "HIGH"
        session.close()

    @pytest.mark.asyncio
    async def test_citation_drop_alert(self, make_service, fake_llm, product, add_scan, session_factory):
        for _ in range(5):
            add_scan(product, "CHATGPT", True)
        for _ in range(4):
            add_scan(product, "CHATGPT", False)
        service = make_service(chatgpt=fake_llm("openai"), alert_sink=DatabaseAlertSink(session_factory))

        await service.scan_product(product.id, "CHATGPT")

        assert count_rows(session_factory, Alert, Alert.title == "Citation Rate Dropping") == 1

    @pytest.mark.asyncio
    async def test_broken_sink_does_not_fail_scan(self, make_service, fake_llm, product, shop, set_credits):
        class BrokenSink:
            def emit(self, shop_id, alert):
                raise RuntimeError("smtp down")

        service = make_service(chatgpt=fake_llm("openai"), alert_sink=BrokenSink())
        set_credits(shop.id, 1)

        result = await service.scan_product(product.id, "CHATGPT")
        assert result.credits_remaining == 0
