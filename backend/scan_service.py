"""
Scan orchestration: question -> LLM -> analysis -> persisted scan -> fresh stats
Credits are reserved before the LLM call and refunded exactly once if anything
after the reservation fails. No database transaction is open while an LLM call
is in flight.
"""

import asyncio
import random
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

import credits
import report_utils
import stats_engine
from citation_analyzer import AnalyzerConfig, CitationVerdict, analyze_response
from config import Settings, get_settings
from cost_tracker import get_monthly_usage, track_usage
from database import get_session_factory, session_scope
from db_models import Event, Optimization, Product, Scan, Shop
from exceptions import (
    InsufficientCredits, OptimizationAlreadyApplied, OptimizationNotFound,
    PersistenceFailure, ProductNotFound, ProviderUnavailable, RankInAIError, ShopNotFound
)
from llm_clients import LLMClient, build_recommendation_client, build_scan_clients
from models import AlertType, AnalyticsWindow, Platform, ProductFacts
from monitoring import get_metrics
from notifications import AlertNotice, AlertSink, citation_drop_alert, credit_alert, safe_emit
from question_generator import generate_scan_question
from recommendation_engine import RecommendationEngine, bundle_to_payload
from utils import utcnow

logger = structlog.get_logger()

COMPLETE_SCAN_ORDER = (Platform.CHATGPT.value, Platform.GEMINI.value)


@dataclass
class ScanResult:
    scan_id: str
    product_id: str
    platform: str
    question: str
    is_cited: bool
    citation: Optional[str]
    position: Optional[int]
    sentiment: Optional[str]
    competitors: List[str]
    missing_topics: List[str]
    ignored_features: List[str]
    confidence: float
    credits_used: int
    credits_remaining: int
    duration_ms: int
    product_stats: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CompleteScanResult:
    product_id: str
    results: Dict[str, ScanResult] = field(default_factory=dict)
    errors: Dict[str, Dict[str, str]] = field(default_factory=dict)
    recommendations: Optional[Dict[str, Any]] = None
    recommendations_status: str = "skipped"
    recommendations_error: Optional[Dict[str, str]] = None

    @property
    def chatgpt(self) -> Optional[ScanResult]:
        return self.results.get(Platform.CHATGPT.value)

    @property
    def gemini(self) -> Optional[ScanResult]:
        return self.results.get(Platform.GEMINI.value)

    @property
    def is_partial(self) -> bool:
        return bool(self.results) and bool(self.errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "product_id": self.product_id,
            "chatgpt": self.chatgpt.to_dict() if self.chatgpt else None,
            "gemini": self.gemini.to_dict() if self.gemini else None,
            "errors": self.errors,
            "partial": self.is_partial,
            "recommendations": self.recommendations,
            "recommendations_status": self.recommendations_status,
            "recommendations_error": self.recommendations_error,
        }


def _error_payload(error: RankInAIError) -> Dict[str, str]:
    return {"code": error.code, "message": str(error)}


class ScanService:
    """Caller-facing operations of the citation engine"""

    def __init__(
        self,
        session_factory: sessionmaker,
        scan_clients: Dict[str, LLMClient],
        settings: Optional[Settings] = None,
        alert_sink: Optional[AlertSink] = None,
        rng: Optional[random.Random] = None,
        analyzer_config: Optional[AnalyzerConfig] = None,
        recommendation_engine: Optional[RecommendationEngine] = None,
    ):
        self.session_factory = session_factory
        self.scan_clients = scan_clients
        self.settings = settings or get_settings()
        self.alert_sink = alert_sink
        self.rng = rng or random.Random()
        self.analyzer_config = analyzer_config or AnalyzerConfig.from_settings(self.settings)
        self.recommendation_engine = recommendation_engine or RecommendationEngine(
            build_recommendation_client(self.settings, scan_clients), self.settings
        )
        self.metrics = get_metrics()

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None,
                      session_factory: Optional[sessionmaker] = None,
                      alert_sink: Optional[AlertSink] = None) -> "ScanService":
        settings = settings or get_settings()
        return cls(
            session_factory=session_factory or get_session_factory(),
            scan_clients=build_scan_clients(settings),
            settings=settings,
            alert_sink=alert_sink,
        )

    # ==================== CREDITS ====================

    def _reserve(self, product_id: str, amount: int, operation: str):
        """Load the product and reserve credits in one short transaction"""
        with session_scope(self.session_factory) as session:
            product = session.get(Product, product_id)
            if product is None:
                raise ProductNotFound(product_id)
            facts = ProductFacts.from_product(product)
            shop_id = product.shop_id
            remaining = credits.reserve_credits(session, shop_id, amount, operation)
        return shop_id, facts, remaining

    def _refund(self, shop_id: str, amount: int, operation: str) -> None:
        try:
            with session_scope(self.session_factory) as session:
                balance = credits.refund_credits(session, shop_id, amount, operation)
            logger.info("credits_refunded", shop_id=shop_id, amount=amount,
                        operation=operation, balance=balance)
        except SQLAlchemyError as e:
            # Nothing left to compensate with; surface loudly for manual repair
            logger.error("credit_refund_failed", shop_id=shop_id, amount=amount,
                         operation=operation, error=str(e))

    def _notify_credits(self, shop_id: str, remaining: int, cost: int) -> None:
        threshold = self.settings.low_credit_threshold
        crossed_low = remaining + cost > threshold >= remaining
        exhausted = remaining <= 0 < remaining + cost
        if crossed_low or exhausted:
            safe_emit(self.alert_sink, shop_id, credit_alert(remaining, self.settings))

    # ==================== SCANS ====================

    async def scan_product(self, product_id: str, platform: str) -> ScanResult:
        """Run one paid scan of a product on one platform"""
        platform = Platform(platform).value
        client = self.scan_clients.get(platform)
        if client is None:
            raise ProviderUnavailable(platform, "provider not configured")

        cost = self.settings.scan_credit_cost
        shop_id, facts, _ = self._reserve(product_id, cost, "scan")

        start = time.perf_counter()
        question = generate_scan_question(facts, self.rng)
        log = logger.bind(product_id=product_id, platform=platform)
        log.info("scan_started", question=question)

        try:
            reply = await client.send(self.settings.scan_system_prompt, question)
            try:
                verdict = analyze_response(reply.text, facts, platform, self.analyzer_config)
            except Exception as e:
                raise ProviderUnavailable(platform, f"unusable response: {e}") from e

            duration_ms = int((time.perf_counter() - start) * 1000)
            result = self._persist_scan(shop_id, product_id, platform, question, reply, verdict, cost, duration_ms)
        except ProviderUnavailable:
            self._refund(shop_id, cost, "scan")
            self.metrics.track_scan(platform, "failed", time.perf_counter() - start)
            raise
        except SQLAlchemyError as e:
            self._refund(shop_id, cost, "scan")
            self.metrics.track_scan(platform, "failed", time.perf_counter() - start)
            log.error("scan_persist_failed", error=str(e))
            raise PersistenceFailure(f"Could not store {platform} scan for product {product_id}") from e
        except (Exception, asyncio.CancelledError):
            self._refund(shop_id, cost, "scan")
            self.metrics.track_scan(platform, "failed", time.perf_counter() - start)
            raise

        self.metrics.track_scan(platform, "cited" if result.is_cited else "not_cited", time.perf_counter() - start)
        log.info("scan_completed", is_cited=result.is_cited, position=result.position,
                 duration_ms=result.duration_ms, credits_remaining=result.credits_remaining)

        self._notify_credits(shop_id, result.credits_remaining, cost)
        self._notify_citation_drop(shop_id, product_id)
        return result

    def _persist_scan(self, shop_id: str, product_id: str, platform: str, question: str,
                      reply, verdict: CitationVerdict, cost: int, duration_ms: int) -> ScanResult:
        """Scan row, usage event and recomputed product stats commit together"""
        with session_scope(self.session_factory) as session:
            scan = Scan(
                shop_id=shop_id,
                product_id=product_id,
                platform=platform,
                model=reply.model,
                question=question,
                full_response=reply.text,
                is_cited=verdict.is_cited,
                citation=verdict.citation,
                citation_position=verdict.position,
                sentiment=verdict.sentiment,
                competitors=verdict.competitors,
                missing_topics=verdict.missing_topics,
                ignored_features=verdict.ignored_features,
                confidence=verdict.confidence,
                credits_used=cost,
                scan_duration_ms=duration_ms,
            )
            session.add(scan)
            track_usage(session, shop_id, reply, purpose="scan")
            session.flush()

            product = stats_engine.recompute_product_stats(session, product_id)
            remaining = session.execute(select(Shop.credits).where(Shop.id == shop_id)).scalar_one()

            return ScanResult(
                scan_id=scan.id,
                product_id=product_id,
                platform=platform,
                question=question,
                is_cited=verdict.is_cited,
                citation=verdict.citation,
                position=verdict.position,
                sentiment=verdict.sentiment,
                competitors=list(verdict.competitors),
                missing_topics=list(verdict.missing_topics),
                ignored_features=list(verdict.ignored_features),
                confidence=verdict.confidence,
                credits_used=cost,
                credits_remaining=remaining,
                duration_ms=duration_ms,
                product_stats={
                    "citation_rate": product.citation_rate,
                    "chatgpt_rate": product.chatgpt_rate,
                    "gemini_rate": product.gemini_rate,
                    "total_scans": product.total_scans,
                },
            )

    def _notify_citation_drop(self, shop_id: str, product_id: str) -> None:
        if self.alert_sink is None:
            return
        try:
            session = self.session_factory()
            try:
                product = session.get(Product, product_id)
                alert = citation_drop_alert(session, product, self.settings) if product else None
            finally:
                session.close()
        except SQLAlchemyError as e:
            logger.error("citation_drop_check_failed", product_id=product_id, error=str(e))
            return
        safe_emit(self.alert_sink, shop_id, alert)

    async def scan_product_complete(self, product_id: str) -> CompleteScanResult:
        """
        ChatGPT then Gemini, each independently paid and refunded, then
        recommendations when at least one scan succeeded. A partial result is
        reported as such and never rolled back.
        """
        with session_scope(self.session_factory) as session:
            product = session.get(Product, product_id)
            if product is None:
                raise ProductNotFound(product_id)
            available = session.execute(select(Shop.credits).where(Shop.id == product.shop_id)).scalar_one()
            if available < self.settings.scan_credit_cost:
                raise InsufficientCredits(product.shop_id, self.settings.scan_credit_cost, available)

        outcome = CompleteScanResult(product_id=product_id)
        for platform in COMPLETE_SCAN_ORDER:
            try:
                outcome.results[platform] = await self.scan_product(product_id, platform)
            except (InsufficientCredits, ProviderUnavailable, PersistenceFailure) as e:
                outcome.errors[platform] = _error_payload(e)
                logger.warning("complete_scan_platform_failed", product_id=product_id,
                               platform=platform, error=str(e))

        if not outcome.results:
            outcome.recommendations_status = "skipped"
            outcome.recommendations_error = {
                "code": "no_successful_scan",
                "message": "Recommendations need at least one successful scan",
            }
            return outcome

        try:
            outcome.recommendations = await self.generate_recommendations(
                product_id, scan_ids=[result.scan_id for result in outcome.results.values()]
            )
            outcome.recommendations_status = outcome.recommendations["source"].lower()
        except InsufficientCredits as e:
            outcome.recommendations_status = "skipped"
            outcome.recommendations_error = _error_payload(e)
        except PersistenceFailure as e:
            outcome.recommendations_status = "failed"
            outcome.recommendations_error = _error_payload(e)

        logger.info("complete_scan_finished", product_id=product_id,
                    succeeded=sorted(outcome.results), failed=sorted(outcome.errors),
                    recommendations=outcome.recommendations_status)
        return outcome

    # ==================== RECOMMENDATIONS ====================

    def _load_context_scans(self, product_id: str, scan_ids: Optional[List[str]]) -> Dict[str, Scan]:
        with session_scope(self.session_factory) as session:
            criteria = [Scan.product_id == product_id]
            if scan_ids:
                criteria.append(Scan.id.in_(scan_ids))
            scans = list(session.execute(
                select(Scan).where(*criteria).order_by(Scan.created_at, Scan.id)
            ).scalars())
            return stats_engine.latest_scans_by_platform(scans)

    async def generate_recommendations(self, product_id: str,
                                       scan_ids: Optional[List[str]] = None) -> Dict[str, Any]:
        """Paid recommendation bundle; template fallback is free and always available"""
        cost = self.settings.recommendation_credit_cost
        shop_id, facts, _ = self._reserve(product_id, cost, "recommendation")

        charged = True
        try:
            latest_scans = self._load_context_scans(product_id, scan_ids)
            outcome = await self.recommendation_engine.generate(facts, latest_scans)

            if outcome.used_fallback:
                self._refund(shop_id, cost, "recommendation")
                charged = False

            with session_scope(self.session_factory) as session:
                optimization = Optimization(
                    shop_id=shop_id,
                    product_id=product_id,
                    recommendations=bundle_to_payload(outcome.bundle),
                    quick_wins=list(outcome.bundle.quick_wins),
                    current_score=outcome.current_score,
                    potential_score=outcome.potential_score,
                    source=outcome.source,
                )
                session.add(optimization)
                if outcome.reply is not None and not outcome.used_fallback:
                    track_usage(session, shop_id, outcome.reply, purpose="recommendation")
                session.flush()
                payload = stats_engine.optimization_to_dict(optimization)
                remaining = session.execute(select(Shop.credits).where(Shop.id == shop_id)).scalar_one()
        except SQLAlchemyError as e:
            if charged:
                self._refund(shop_id, cost, "recommendation")
            logger.error("recommendation_persist_failed", product_id=product_id, error=str(e))
            raise PersistenceFailure(f"Could not store recommendations for product {product_id}") from e
        except (Exception, asyncio.CancelledError):
            if charged:
                self._refund(shop_id, cost, "recommendation")
            raise

        logger.info("recommendations_generated", product_id=product_id, source=outcome.source,
                    current_score=outcome.current_score, potential_score=outcome.potential_score)
        if charged:
            self._notify_credits(shop_id, remaining, cost)

        payload["credits_used"] = cost if charged else 0
        payload["credits_remaining"] = remaining
        return payload

    def apply_optimization(self, optimization_id: str) -> Dict[str, Any]:
        """Mark a recommendation bundle applied; allowed once"""
        now = utcnow()
        with session_scope(self.session_factory) as session:
            optimization = session.get(Optimization, optimization_id)
            if optimization is None:
                raise OptimizationNotFound(optimization_id)
            if optimization.applied:
                raise OptimizationAlreadyApplied(optimization_id)

            optimization.applied = True
            optimization.applied_at = now
            product = session.get(Product, optimization.product_id)
            product.is_optimized = True
            product.last_optimized_at = now
            session.add(Event(
                shop_id=optimization.shop_id,
                type="OPTIMIZATION_APPLIED",
                data={"optimization_id": optimization_id, "product_id": product.id}
            ))
            session.flush()
            payload = stats_engine.optimization_to_dict(optimization)
            shop_id, title = optimization.shop_id, product.title

        logger.info("optimization_applied", optimization_id=optimization_id, product_id=payload["product_id"])
        safe_emit(self.alert_sink, shop_id, AlertNotice(
            type=AlertType.SUCCESS.value,
            title="Optimization Applied",
            message=f"Recommendations for {title} were applied. Rescan to measure the impact.",
            product_id=payload["product_id"],
        ))
        return payload

    # ==================== READ SIDE ====================

    def get_product_stats(self, product_id: str) -> Dict[str, Any]:
        with session_scope(self.session_factory) as session:
            return stats_engine.get_product_stats(session, product_id, self.settings.top_n_rankings)

    def get_shop_analytics(self, shop_id: str,
                           window: AnalyticsWindow = AnalyticsWindow.LAST_30_DAYS) -> Dict[str, Any]:
        with session_scope(self.session_factory) as session:
            return stats_engine.get_shop_analytics(
                session, shop_id, AnalyticsWindow(window), top_n=self.settings.top_n_rankings
            )

    def list_products(self, shop_id: str) -> List[Dict[str, Any]]:
        with session_scope(self.session_factory) as session:
            return stats_engine.list_shop_products(session, shop_id)

    def get_monthly_usage(self, shop_id: str) -> Dict[str, Any]:
        with session_scope(self.session_factory) as session:
            if session.get(Shop, shop_id) is None:
                raise ShopNotFound(shop_id)
            return get_monthly_usage(session, shop_id)

    def export_report(self, shop_id: str, window: AnalyticsWindow = AnalyticsWindow.LAST_30_DAYS,
                      fmt: str = "csv") -> str:
        """Write a CSV or PDF citation report and return its path"""
        analytics = self.get_shop_analytics(shop_id, window)
        products = self.list_products(shop_id)
        if fmt == "pdf":
            path = report_utils.generate_pdf_report(analytics, products, self.settings.reports_dir)
        else:
            path = report_utils.generate_csv_report(analytics, products, self.settings.reports_dir)
        logger.info("report_exported", shop_id=shop_id, window=analytics["window"], format=fmt, path=path)
        return path
