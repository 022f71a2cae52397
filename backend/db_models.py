"""
Database models for shops, products, scans and their rollups
"""

import uuid

from sqlalchemy import (
    Column, String, Integer, Float, Boolean, DateTime, JSON, Text,
    ForeignKey, CheckConstraint, Index
)
from sqlalchemy.orm import declarative_base, relationship

from utils import utcnow

Base = declarative_base()


def new_id() -> str:
    return str(uuid.uuid4())


class Shop(Base):
    """Store tenant with its plan and credit balance"""
    __tablename__ = "shops"

    id = Column(String(36), primary_key=True, default=new_id)
    shop_domain = Column(String(255), nullable=False, unique=True, index=True)
    shop_name = Column(String(255), nullable=True)

    # Billing
    plan = Column(String(20), nullable=False, default="TRIAL")
    credits = Column(Integer, nullable=False, default=25)
    max_credits = Column(Integer, nullable=False, default=25)
    billing_interval = Column(String(20), nullable=False, default="MONTHLY")
    billing_cycle_start = Column(DateTime, nullable=True)
    billing_cycle_end = Column(DateTime, nullable=True)

    # Status
    is_installed = Column(Boolean, default=True)
    uninstalled_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("credits >= 0", name="check_shop_credits_non_negative"),
        CheckConstraint(
            "plan IN ('TRIAL', 'STARTER', 'GROWTH', 'PRO')",
            name="check_shop_plan"
        ),
        CheckConstraint(
            "billing_interval IN ('MONTHLY', 'ANNUAL')",
            name="check_shop_billing_interval"
        ),
    )

    # Relationships
    products = relationship("Product", back_populates="shop", cascade="all, delete-orphan")
    scans = relationship("Scan", back_populates="shop", cascade="all, delete-orphan")
    alerts = relationship("Alert", back_populates="shop", cascade="all, delete-orphan")
    events = relationship("Event", back_populates="shop", cascade="all, delete-orphan")


class Product(Base):
    """Catalog item; rate fields are a cache rebuilt from scans"""
    __tablename__ = "products"

    id = Column(String(36), primary_key=True, default=new_id)
    shop_id = Column(String(36), ForeignKey("shops.id"), nullable=False, index=True)
    external_id = Column(String(100), nullable=True)

    # Catalog data
    title = Column(String(500), nullable=False)
    description = Column(Text, nullable=True)
    vendor = Column(String(255), nullable=True)
    product_type = Column(String(255), nullable=True)
    category = Column(String(255), nullable=True)
    price = Column(Float, nullable=True)
    tags = Column(JSON, default=list)

    # Cached citation stats (0-100)
    citation_rate = Column(Float, nullable=False, default=0.0)
    chatgpt_rate = Column(Float, nullable=False, default=0.0)
    gemini_rate = Column(Float, nullable=False, default=0.0)
    total_scans = Column(Integer, nullable=False, default=0)

    # Optimization state
    is_optimized = Column(Boolean, default=False)
    last_scan_at = Column(DateTime, nullable=True)
    last_optimized_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('ix_products_shop_last_scan', 'shop_id', 'last_scan_at'),
    )

    # Relationships
    shop = relationship("Shop", back_populates="products")
    scans = relationship("Scan", back_populates="product", cascade="all, delete-orphan")
    optimizations = relationship("Optimization", back_populates="product", cascade="all, delete-orphan")


class Scan(Base):
    """One LLM question/answer round trip; written once, never updated"""
    __tablename__ = "scans"

    id = Column(String(36), primary_key=True, default=new_id)
    shop_id = Column(String(36), ForeignKey("shops.id"), nullable=False, index=True)
    product_id = Column(String(36), ForeignKey("products.id"), nullable=False, index=True)
    platform = Column(String(20), nullable=False)
    model = Column(String(100), nullable=True)

    # Question and answer
    question = Column(Text, nullable=False)
    full_response = Column(Text, nullable=False)

    # Analyzer verdict
    is_cited = Column(Boolean, nullable=False, default=False)
    citation = Column(Text, nullable=True)
    citation_position = Column(Integer, nullable=True)
    sentiment = Column(String(20), nullable=True)
    competitors = Column(JSON, default=list)
    missing_topics = Column(JSON, default=list)
    ignored_features = Column(JSON, default=list)
    confidence = Column(Float, nullable=False, default=0.0)

    # Metering
    credits_used = Column(Integer, nullable=False, default=1)
    scan_duration_ms = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=utcnow, index=True)

    __table_args__ = (
        CheckConstraint(
            "platform IN ('CHATGPT', 'GEMINI')",
            name="check_scan_platform"
        ),
        CheckConstraint(
            "sentiment IS NULL OR sentiment IN ('POSITIVE', 'NEUTRAL', 'NEGATIVE')",
            name="check_scan_sentiment"
        ),
        CheckConstraint(
            "confidence >= 0 AND confidence <= 1",
            name="check_scan_confidence"
        ),
        Index('ix_scans_product_platform', 'product_id', 'platform'),
        Index('ix_scans_shop_created', 'shop_id', 'created_at'),
    )

    # Relationships
    shop = relationship("Shop", back_populates="scans")
    product = relationship("Product", back_populates="scans")


class Optimization(Base):
    """Recommendation bundle for a product, applied at most once"""
    __tablename__ = "optimizations"

    id = Column(String(36), primary_key=True, default=new_id)
    shop_id = Column(String(36), ForeignKey("shops.id"), nullable=False, index=True)
    product_id = Column(String(36), ForeignKey("products.id"), nullable=False, index=True)

    recommendations = Column(JSON, nullable=False)
    quick_wins = Column(JSON, default=list)
    current_score = Column(Integer, nullable=False, default=0)
    potential_score = Column(Integer, nullable=False, default=0)
    source = Column(String(20), nullable=False, default="LLM")

    applied = Column(Boolean, default=False)
    applied_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        CheckConstraint(
            "source IN ('LLM', 'FALLBACK')",
            name="check_optimization_source"
        ),
        Index('ix_optimizations_product_created', 'product_id', 'created_at'),
    )

    # Relationships
    product = relationship("Product", back_populates="optimizations")


class Alert(Base):
    """Merchant-facing notification"""
    __tablename__ = "alerts"

    id = Column(String(36), primary_key=True, default=new_id)
    shop_id = Column(String(36), ForeignKey("shops.id"), nullable=False, index=True)
    product_id = Column(String(36), ForeignKey("products.id"), nullable=True)

    type = Column(String(20), nullable=False)
    severity = Column(String(20), nullable=False, default="LOW")
    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=True)
    action_url = Column(String(500), nullable=True)
    action_label = Column(String(100), nullable=True)

    is_read = Column(Boolean, default=False)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        CheckConstraint(
            "type IN ('SUCCESS', 'WARNING', 'ERROR', 'INFO')",
            name="check_alert_type"
        ),
        CheckConstraint(
            "severity IN ('LOW', 'MEDIUM', 'HIGH')",
            name="check_alert_severity"
        ),
        Index('ix_alerts_shop_unread', 'shop_id', 'is_read'),
    )

    # Relationships
    shop = relationship("Shop", back_populates="alerts")


class Event(Base):
    """Audit and usage log entry"""
    __tablename__ = "events"

    id = Column(String(36), primary_key=True, default=new_id)
    shop_id = Column(String(36), ForeignKey("shops.id"), nullable=False, index=True)
    type = Column(String(50), nullable=False)
    data = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index('ix_events_shop_type_created', 'shop_id', 'type', 'created_at'),
    )

    # Relationships
    shop = relationship("Shop", back_populates="events")
