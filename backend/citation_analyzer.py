"""
Citation analysis of free-text LLM answers
Decides whether a product was cited, where, in what tone, and who else was named.
Every heuristic is a standalone function; lexicons come from AnalyzerConfig so
callers and tests can substitute their own.
"""

import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from models import Platform, ProductFacts, Sentiment

DEFAULT_POSITIVE_WORDS = (
    'excellent', 'great', 'best', 'recommend', 'perfect', 'top', 'quality', 'premium'
)

DEFAULT_NEGATIVE_WORDS = (
    'avoid', 'poor', 'bad', 'worst', 'not recommend', 'disappointing'
)

DEFAULT_KNOWN_BRANDS = (
    'Nike', 'Adidas', 'Puma', 'Reebok', 'Under Armour',
    'Patagonia', 'North Face', 'Columbia', "Arc'teryx",
    'Apple', 'Samsung', 'Google', 'Microsoft', 'Sony',
    'Zara', 'H&M', 'Uniqlo', 'Gap', 'Forever 21'
)

# Leading words that start a capitalized run without being part of a brand
CAPITALIZED_STOPWORDS = {
    'the', 'a', 'an', 'this', 'that', 'these', 'those', 'i', 'my', 'our', 'for',
    'if', 'when', 'with', 'and', 'or', 'but', 'also', 'best', 'top', 'overall',
    'budget', 'premium', 'pick', 'option', 'choice',
}

SENTENCE_SPLIT = re.compile(r'[.!?]')
LIST_ITEM_PATTERN = re.compile(r'\d+\.\s+([^\n]+)')
CAPITALIZED_SEQUENCE = re.compile(r"\b[A-Z][\w'&-]*(?:[ \t]+[A-Z][\w'&-]*)+")


@dataclass
class AnalyzerConfig:
    """Lexicons and constants driving the heuristics"""
    positive_words: Tuple[str, ...] = DEFAULT_POSITIVE_WORDS
    negative_words: Tuple[str, ...] = DEFAULT_NEGATIVE_WORDS
    known_brands: Tuple[str, ...] = DEFAULT_KNOWN_BRANDS
    discover_capitalized_brands: bool = False
    max_competitors: int = 5
    fuzzy_match_ratio: float = 0.7
    min_significant_word_length: int = 4
    confidence: Dict[str, Tuple[float, float]] = field(default_factory=lambda: {
        Platform.CHATGPT.value: (0.85, 0.15),
        Platform.GEMINI.value: (0.80, 0.20),
    })

    @classmethod
    def from_settings(cls, settings) -> "AnalyzerConfig":
        lexicons = {
            name: tuple(getattr(settings, name))
            for name in ('positive_words', 'negative_words', 'known_brands')
            if getattr(settings, name)
        }
        return cls(
            discover_capitalized_brands=settings.discover_capitalized_brands,
            confidence={
                Platform.CHATGPT.value: tuple(settings.chatgpt_confidence),
                Platform.GEMINI.value: tuple(settings.gemini_confidence),
            },
            **lexicons
        )


@dataclass
class CitationVerdict:
    is_cited: bool
    citation: Optional[str]
    position: Optional[int]
    sentiment: Optional[str]
    competitors: List[str]
    missing_topics: List[str]
    ignored_features: List[str]
    confidence: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _contains_term(text_lower: str, term: Optional[str]) -> bool:
    return bool(term) and term.lower() in text_lower


def _whole_word_pattern(term: str, flags: int = 0) -> re.Pattern:
    return re.compile(r'(?<!\w)' + re.escape(term) + r'(?!\w)', flags)


def significant_words(text: str, min_length: int = 4) -> List[str]:
    """Lowercased words at least min_length characters long"""
    return [word for word in text.lower().split() if len(word) >= min_length]


def detect_mention(text: str, product: ProductFacts, config: Optional[AnalyzerConfig] = None) -> bool:
    """Title match, then vendor + type, then fuzzy title-word coverage"""
    config = config or AnalyzerConfig()
    text_lower = text.lower()

    if _contains_term(text_lower, product.title):
        return True

    if _contains_term(text_lower, product.vendor) and _contains_term(text_lower, product.product_type):
        return True

    title_words = significant_words(product.title, config.min_significant_word_length)
    if not title_words:
        return False
    matched = [word for word in title_words if word in text_lower]
    return len(matched) >= len(title_words) * config.fuzzy_match_ratio


def extract_citation(text: str, product: ProductFacts) -> str:
    """First sentence naming the product title or vendor"""
    for sentence in SENTENCE_SPLIT.split(text):
        sentence_lower = sentence.lower()
        if _contains_term(sentence_lower, product.title) or _contains_term(sentence_lower, product.vendor):
            return sentence.strip()
    return ""


def find_position(text: str, product: ProductFacts) -> Optional[int]:
    """1-based rank of the product in an enumerated answer, None when unranked"""
    entries = LIST_ITEM_PATTERN.findall(text)
    for index, entry in enumerate(entries, start=1):
        entry_lower = entry.lower()
        if _contains_term(entry_lower, product.title) or _contains_term(entry_lower, product.vendor):
            return index
    return None


def _trim_leading_stopwords(name: str) -> str:
    words = name.split()
    while words and words[0].lower() in CAPITALIZED_STOPWORDS:
        words.pop(0)
    return " ".join(words)


def extract_competitors(text: str, product: ProductFacts, config: Optional[AnalyzerConfig] = None) -> List[str]:
    """Other brands named in the answer, in order of first appearance"""
    config = config or AnalyzerConfig()
    own_vendor = product.vendor.lower() if product.vendor else None
    title_lower = product.title.lower()
    first_seen: Dict[str, int] = {}

    for brand in config.known_brands:
        if own_vendor and brand.lower() == own_vendor:
            continue
        match = _whole_word_pattern(brand).search(text)
        if match:
            first_seen.setdefault(brand, match.start())

    if config.discover_capitalized_brands:
        seen_lower = {name.lower() for name in first_seen}
        for match in CAPITALIZED_SEQUENCE.finditer(text):
            name = _trim_leading_stopwords(match.group(0).strip())
            name_lower = name.lower()
            if len(name.split()) < 2 or name_lower in seen_lower:
                continue
            if own_vendor and own_vendor in name_lower:
                continue
            if name_lower in title_lower or title_lower in name_lower:
                continue
            seen_lower.add(name_lower)
            first_seen[name] = match.start() + match.group(0).find(name)

    ordered = sorted(first_seen.items(), key=lambda item: item[1])
    return [name for name, _ in ordered[:config.max_competitors]]


def _count_terms(text_lower: str, terms: Iterable[str]) -> int:
    return sum(len(_whole_word_pattern(term.lower()).findall(text_lower)) for term in terms)


def classify_sentiment(text: str, is_cited: bool, config: Optional[AnalyzerConfig] = None) -> Optional[str]:
    """Lexicon vote over the answer; None when the product was not cited"""
    if not is_cited:
        return None
    config = config or AnalyzerConfig()
    text_lower = text.lower()

    positive = _count_terms(text_lower, config.positive_words)
    negative = _count_terms(text_lower, config.negative_words)

    if positive > negative:
        return Sentiment.POSITIVE.value
    if negative > positive:
        return Sentiment.NEGATIVE.value
    return Sentiment.NEUTRAL.value


def find_missing_topics(text: str, product: ProductFacts) -> List[str]:
    """Product tags, type and category the answer never brings up"""
    text_lower = text.lower()
    topics: List[str] = []
    for topic in list(product.tags) + [product.product_type, product.category]:
        if not topic or not str(topic).strip():
            continue
        normalized = str(topic).strip().lower()
        if normalized not in topics:
            topics.append(normalized)
    return [topic for topic in topics if topic not in text_lower]


def find_ignored_features(
    text: str,
    product: ProductFacts,
    is_cited: bool,
    config: Optional[AnalyzerConfig] = None,
) -> List[str]:
    """Distinctive title words a citing answer leaves out"""
    if not is_cited:
        return []
    config = config or AnalyzerConfig()
    text_lower = text.lower()

    excluded = set()
    for value in (product.vendor, product.product_type):
        if value:
            excluded.update(value.lower().split())

    features: List[str] = []
    for word in significant_words(product.title, config.min_significant_word_length):
        word = word.strip(".,;:!?()[]\"'")
        if len(word) < config.min_significant_word_length or word in excluded or word in features:
            continue
        features.append(word)
    return [word for word in features if word not in text_lower]


def analyze_response(
    text: str,
    product: ProductFacts,
    platform: str,
    config: Optional[AnalyzerConfig] = None,
) -> CitationVerdict:
    """Turn one raw LLM answer into a structured citation verdict"""
    config = config or AnalyzerConfig()
    platform = Platform(platform).value
    is_cited = detect_mention(text, product, config)
    cited_confidence, uncited_confidence = config.confidence[platform]

    return CitationVerdict(
        is_cited=is_cited,
        citation=extract_citation(text, product) if is_cited else None,
        position=find_position(text, product) if is_cited else None,
        sentiment=classify_sentiment(text, is_cited, config),
        competitors=extract_competitors(text, product, config),
        missing_topics=find_missing_topics(text, product),
        ignored_features=find_ignored_features(text, product, is_cited, config),
        confidence=cited_confidence if is_cited else uncited_confidence,
    )
