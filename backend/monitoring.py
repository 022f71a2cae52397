"""
Prometheus metrics for LLM usage, scans and credit movements
"""

from functools import lru_cache
from typing import Optional

import structlog
from prometheus_client import REGISTRY, CollectorRegistry, Counter, Histogram, generate_latest

logger = structlog.get_logger()


class PrometheusMetrics:
    """Prometheus metrics collection for monitoring"""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or REGISTRY

        # LLM API usage tracking
        self.llm_api_calls = Counter(
            'llm_api_calls_total',
            'Total LLM API calls',
            ['platform', 'model', 'status'],
            registry=self.registry
        )

        self.llm_response_time = Histogram(
            'llm_response_time_seconds',
            'LLM API response time',
            ['platform', 'model'],
            buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 20.0, 30.0],
            registry=self.registry
        )

        self.llm_tokens_used = Counter(
            'llm_tokens_used_total',
            'Total tokens used',
            ['platform', 'model', 'type'],  # input/output
            registry=self.registry
        )

        self.llm_api_cost = Counter(
            'llm_api_cost_usd_total',
            'Estimated LLM API cost in USD',
            ['platform'],
            registry=self.registry
        )

        # Scan pipeline
        self.scans_total = Counter(
            'scans_total',
            'Scans attempted',
            ['platform', 'outcome'],  # cited, not_cited, failed
            registry=self.registry
        )

        self.scan_duration = Histogram(
            'scan_duration_seconds',
            'End-to-end scan duration',
            ['platform'],
            buckets=[1.0, 2.0, 5.0, 10.0, 20.0, 30.0, 45.0, 60.0],
            registry=self.registry
        )

        # Credits
        self.credits_debited = Counter(
            'credits_debited_total',
            'Credits reserved for paid operations',
            ['operation'],
            registry=self.registry
        )

        self.credits_refunded = Counter(
            'credits_refunded_total',
            'Credits returned after failed operations',
            ['operation'],
            registry=self.registry
        )

        self.recommendation_fallbacks = Counter(
            'recommendation_fallbacks_total',
            'Recommendations served from templates instead of an LLM',
            ['reason'],
            registry=self.registry
        )

    def track_llm_call(self, platform: str, model: str, duration: float, success: bool,
                       input_tokens: int = 0, output_tokens: int = 0):
        status = 'success' if success else 'error'
        self.llm_api_calls.labels(platform=platform, model=model, status=status).inc()
        self.llm_response_time.labels(platform=platform, model=model).observe(duration)
        if input_tokens:
            self.llm_tokens_used.labels(platform=platform, model=model, type='input').inc(input_tokens)
        if output_tokens:
            self.llm_tokens_used.labels(platform=platform, model=model, type='output').inc(output_tokens)

    def track_scan(self, platform: str, outcome: str, duration: float):
        self.scans_total.labels(platform=platform, outcome=outcome).inc()
        self.scan_duration.labels(platform=platform).observe(duration)

    def export(self) -> bytes:
        return generate_latest(self.registry)


@lru_cache(maxsize=1)
def get_metrics() -> PrometheusMetrics:
    """Process-wide metrics bound to the default registry"""
    return PrometheusMetrics()
