"""
Optimization recommendations for a product
Asks an LLM for strict JSON and falls back to templated suggestions built from
the product's own fields whenever the call or the parse fails.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

import structlog
from pydantic import ValidationError

from config import Settings, get_settings
from exceptions import ProviderUnavailable
from llm_clients import LLMClient, LLMReply
from models import (
    DescriptionSuggestion, ProductFacts, RecommendationBundle, SeoSuggestion,
    TagSuggestion, TitleSuggestion
)
from monitoring import get_metrics
from utils import utcnow

logger = structlog.get_logger()

SOURCE_LLM = "LLM"
SOURCE_FALLBACK = "FALLBACK"
POTENTIAL_SCORE_FLOOR = 85

RECOMMENDATION_SYSTEM_PROMPT = (
    "You are an e-commerce SEO specialist who helps products get recommended "
    "by AI shopping assistants. Answer with a single JSON object and nothing else."
)

DEFAULT_QUICK_WINS = (
    "Add more specific keywords to title",
    "Include customer benefits in description",
    "Add trending tags for your category",
)


@dataclass
class RecommendationOutcome:
    bundle: RecommendationBundle
    source: str
    current_score: int
    potential_score: int
    reply: Optional[LLMReply] = None

    @property
    def used_fallback(self) -> bool:
        return self.source == SOURCE_FALLBACK


def extract_json_block(text: str) -> Optional[str]:
    """Return the first balanced {...} block, skipping braces inside JSON strings"""
    start = text.find('{')
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == '\\':
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == '{':
                depth += 1
            elif char == '}':
                depth -= 1
                if depth == 0:
                    return text[start:index + 1]
        # Unbalanced from here on; try the next opening brace
        start = text.find('{', start + 1)
    return None


def _scan_summary(scan) -> Dict[str, Any]:
    if scan is None:
        return {"cited": "not scanned"}
    return {
        "cited": "Yes" if scan.is_cited else "No",
        "position": scan.citation_position,
        "sentiment": scan.sentiment,
        "competitors": list(scan.competitors or []),
        "missing_topics": list(scan.missing_topics or []),
    }


def build_recommendation_prompt(product: ProductFacts, latest_scans: Dict[str, Any]) -> str:
    chatgpt = _scan_summary(latest_scans.get("CHATGPT"))
    gemini = _scan_summary(latest_scans.get("GEMINI"))
    return f"""
Product: {product.title}
Brand: {product.vendor or 'unknown'}
Type: {product.product_type or 'unknown'}
Tags: {', '.join(product.tags) if product.tags else 'none'}
Description: {(product.description or '')[:500]}
Current citation rate: {product.citation_rate:.1f}%
ChatGPT: {json.dumps(chatgpt)}
Gemini: {json.dumps(gemini)}

Provide specific recommendations to improve this product's visibility in AI searches.
Respond with JSON in exactly this shape:
{{
  "title": {{"suggested": "...", "reason": "..."}},
  "description": {{"key_points": ["..."], "reason": "..."}},
  "tags": {{"add": ["..."], "remove": ["..."], "reason": "..."}},
  "seo": {{"meta_title": "...", "meta_description": "...", "reason": "..."}},
  "quick_wins": ["..."]
}}
""".strip()


def parse_recommendations(text: str) -> RecommendationBundle:
    """Raise ValueError when the reply holds no usable bundle"""
    block = extract_json_block(text)
    if block is None:
        raise ValueError("no JSON object in reply")
    try:
        payload = json.loads(block)
        return RecommendationBundle.model_validate(payload)
    except (json.JSONDecodeError, ValidationError) as e:
        raise ValueError(f"invalid recommendation JSON: {e}") from e


def build_fallback_bundle(product: ProductFacts, year: Optional[int] = None) -> RecommendationBundle:
    """Deterministic suggestions derived only from catalog fields"""
    year = year or utcnow().year
    product_type = product.product_type or "product"
    current_tags = [tag.lower() for tag in product.tags]

    suggested_tags = []
    for tag in (product_type.lower(), product.vendor.lower() if product.vendor else None, "bestseller", str(year)):
        if tag and tag not in current_tags and tag not in suggested_tags:
            suggested_tags.append(tag)

    key_points = ["Key features and materials", "Who the product is for", "Main benefits over alternatives"]
    if product.vendor:
        key_points.append(f"What makes {product.vendor} stand out")

    quick_wins = list(DEFAULT_QUICK_WINS)
    if not product.description:
        quick_wins.insert(0, "Write a product description")

    return RecommendationBundle(
        title=TitleSuggestion(
            suggested=f"{product.title} - Premium Quality {product_type}",
            reason="Adding descriptive keywords improves AI recognition",
        ),
        description=DescriptionSuggestion(
            key_points=key_points,
            reason="Detailed descriptions increase citation probability",
        ),
        tags=TagSuggestion(
            add=suggested_tags,
            remove=[],
            reason="Relevant tags help AI categorize your product",
        ),
        seo=SeoSuggestion(
            meta_title=f"{product.title} | Best {product_type} {year}",
            meta_description=f"Discover {product.title} - the ultimate {product_type.lower()} for discerning customers.",
            reason="SEO optimization improves overall visibility",
        ),
        quick_wins=quick_wins,
    )


def estimate_scores(product: ProductFacts, scans: Sequence[Any]) -> Dict[str, int]:
    """Current score from the latest scan confidences, or the cached rate without scans"""
    confidences = [scan.confidence for scan in scans if scan is not None]
    if confidences:
        current = round(sum(confidences) / len(confidences) * 100)
    else:
        current = round(product.citation_rate)
    return {"current": current, "potential": max(current, POTENTIAL_SCORE_FLOOR)}


class RecommendationEngine:
    """Produce a recommendation bundle; never raises for LLM or parse problems"""

    def __init__(self, client: Optional[LLMClient], settings: Optional[Settings] = None):
        self.client = client
        self.settings = settings or get_settings()
        self.metrics = get_metrics()

    async def generate(self, product: ProductFacts, latest_scans: Dict[str, Any]) -> RecommendationOutcome:
        scores = estimate_scores(product, list(latest_scans.values()))

        bundle, reply, reason = None, None, None
        if self.client is None:
            reason = "no_provider"
        else:
            try:
                reply = await self.client.send(
                    RECOMMENDATION_SYSTEM_PROMPT,
                    build_recommendation_prompt(product, latest_scans),
                    max_tokens=self.settings.recommendation_max_tokens,
                )
                bundle = parse_recommendations(reply.text)
            except ProviderUnavailable as e:
                reason = "provider_unavailable"
                logger.warning("recommendation_llm_failed", product=product.title, error=str(e))
            except ValueError as e:
                reason = "parse_error"
                logger.warning("recommendation_parse_failed", product=product.title, error=str(e))

        if bundle is None:
            self.metrics.recommendation_fallbacks.labels(reason=reason).inc()
            return RecommendationOutcome(
                bundle=build_fallback_bundle(product),
                source=SOURCE_FALLBACK,
                current_score=scores["current"],
                potential_score=scores["potential"],
                reply=reply,
            )

        if not bundle.quick_wins:
            bundle.quick_wins = list(DEFAULT_QUICK_WINS)

        return RecommendationOutcome(
            bundle=bundle,
            source=SOURCE_LLM,
            current_score=scores["current"],
            potential_score=scores["potential"],
            reply=reply,
        )


def bundle_to_payload(bundle: RecommendationBundle) -> Dict[str, Any]:
    payload = bundle.model_dump()
    payload.pop("quick_wins", None)
    return payload
