"""
Enums and Pydantic models shared by the engine and the API layer
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class Platform(str, Enum):
    CHATGPT = "CHATGPT"
    GEMINI = "GEMINI"


class Sentiment(str, Enum):
    POSITIVE = "POSITIVE"
    NEUTRAL = "NEUTRAL"
    NEGATIVE = "NEGATIVE"


class Plan(str, Enum):
    TRIAL = "TRIAL"
    STARTER = "STARTER"
    GROWTH = "GROWTH"
    PRO = "PRO"


class AlertType(str, Enum):
    SUCCESS = "SUCCESS"
    WARNING = "WARNING"
    ERROR = "ERROR"
    INFO = "INFO"


class AnalyticsWindow(str, Enum):
    LAST_7_DAYS = "7d"
    LAST_30_DAYS = "30d"
    ALL_TIME = "all"

    @property
    def days(self) -> Optional[int]:
        return {"7d": 7, "30d": 30}.get(self.value)


@dataclass(frozen=True)
class ProductFacts:
    """Catalog attributes the question generator and analyzer work from"""
    title: str
    vendor: Optional[str] = None
    product_type: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    tags: tuple = field(default_factory=tuple)
    citation_rate: float = 0.0

    @classmethod
    def from_product(cls, product) -> "ProductFacts":
        return cls(
            title=product.title,
            vendor=product.vendor or None,
            product_type=product.product_type or None,
            category=product.category or None,
            description=product.description or None,
            tags=tuple(product.tags or ()),
            citation_rate=product.citation_rate or 0.0,
        )


# ==================== API REQUESTS ====================

class ScanRequest(BaseModel):
    platform: Platform


class AppInstalledRequest(BaseModel):
    shop_domain: str = Field(min_length=3, max_length=255)
    shop_name: Optional[str] = Field(default=None, max_length=255)

    @field_validator('shop_domain')
    @classmethod
    def normalize_domain(cls, v):
        return v.strip().lower()


class AppUninstalledRequest(BaseModel):
    shop_domain: str = Field(min_length=3, max_length=255)

    @field_validator('shop_domain')
    @classmethod
    def normalize_domain(cls, v):
        return v.strip().lower()


class SubscriptionUpdateRequest(BaseModel):
    shop_domain: str = Field(min_length=3, max_length=255)
    plan: Plan
    status: str = Field(min_length=1, max_length=50)

    @field_validator('shop_domain')
    @classmethod
    def normalize_domain(cls, v):
        return v.strip().lower()

    @field_validator('status')
    @classmethod
    def normalize_status(cls, v):
        return v.strip().upper()


class StandardResponse(BaseModel):
    """Standard API response format"""
    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None
    timestamp: str = Field(default_factory=lambda: datetime.now().isoformat())


# ==================== RECOMMENDATIONS ====================

def _clean_strings(values: List[str]) -> List[str]:
    return [value.strip() for value in values if isinstance(value, str) and value.strip()]


class TitleSuggestion(BaseModel):
    suggested: str = Field(min_length=1)
    reason: str = ""


class DescriptionSuggestion(BaseModel):
    key_points: List[str] = Field(default_factory=list)
    reason: str = ""

    @field_validator('key_points')
    @classmethod
    def clean_points(cls, v):
        return _clean_strings(v)


class TagSuggestion(BaseModel):
    add: List[str] = Field(default_factory=list)
    remove: List[str] = Field(default_factory=list)
    reason: str = ""

    @field_validator('add', 'remove')
    @classmethod
    def clean_tags(cls, v):
        return _clean_strings(v)


class SeoSuggestion(BaseModel):
    meta_title: str = Field(min_length=1)
    meta_description: str = Field(min_length=1)
    reason: str = ""


class RecommendationBundle(BaseModel):
    """Structured optimization suggestions for one product"""
    title: TitleSuggestion
    description: DescriptionSuggestion
    tags: TagSuggestion
    seo: SeoSuggestion
    quick_wins: List[str] = Field(default_factory=list)

    @field_validator('quick_wins')
    @classmethod
    def clean_quick_wins(cls, v):
        return _clean_strings(v)
