"""
Shared fixtures: in-memory SQLite, seeded shop/product, scripted LLM clients
"""

import asyncio
import itertools
import os
import sys
from datetime import timedelta
from pathlib import Path

import pytest
import structlog

# Add backend root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Set environment variables for testing
os.environ.update({
    'ENVIRONMENT': 'test',
    'DEBUG': 'false',
    'DATABASE_URL': 'sqlite:///:memory:',
    'LOG_LEVEL': 'WARNING',
})

# Configure logging for tests
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.processors.JSONRenderer()
    ],
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

from config import Settings  # noqa: E402
from database import create_database_engine, create_session_factory, init_database  # noqa: E402
from db_models import Product, Scan, Shop  # noqa: E402
from llm_clients import LLMClient, LLMUsage  # noqa: E402
from recommendation_engine import RecommendationEngine  # noqa: E402
from scan_service import ScanService  # noqa: E402
from utils import utcnow  # noqa: E402


def pytest_configure(config):
    """Configure pytest settings"""
    config.addinivalue_line("markers", "unit: marks tests as unit tests")
    config.addinivalue_line("markers", "api: marks tests as API tests")
    config.addinivalue_line("markers", "database: marks tests as database tests")


class FakeLLMClient(LLMClient):
    """Scripted provider: pops queued replies, then repeats the default"""

    def __init__(self, provider="openai", replies=None, default="No particular product comes to mind.",
                 error=None, delay=0.0, timeout=5.0):
        super().__init__(model=f"fake-{provider}", timeout=timeout)
        self.provider = provider
        self.replies = list(replies or [])
        self.default = default
        self.error = error
        self.delay = delay
        self.calls = []

    async def _complete(self, system_prompt, user_prompt, max_tokens):
        self.calls.append({"system": system_prompt, "user": user_prompt, "max_tokens": max_tokens})
        if self.delay:
            await asyncio.sleep(self.delay)
        else:
            # Yield so concurrent scans interleave
            await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        text = self.replies.pop(0) if self.replies else self.default
        return text, LLMUsage(input_tokens=len(user_prompt.split()), output_tokens=len(text.split()),
                              characters=len(user_prompt) + len(text))


@pytest.fixture
def fake_llm():
    """The FakeLLMClient class, for tests that script their own providers"""
    return FakeLLMClient


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        environment='test',
        database_url='sqlite:///:memory:',
        openai_api_key=None,
        gemini_api_key=None,
        anthropic_api_key=None,
        reports_dir=str(tmp_path / 'reports'),
    )


@pytest.fixture
def db_engine():
    """Fresh in-memory database per test"""
    engine = create_database_engine('sqlite:///:memory:')
    init_database(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
def shop(session_factory):
    session = session_factory()
    shop = Shop(
        shop_domain='acme-test.myshopify.com',
        shop_name='Acme Test',
        plan='STARTER',
        credits=100,
        max_credits=100,
    )
    session.add(shop)
    session.commit()
    session.close()
    return shop


@pytest.fixture
def product(session_factory, shop):
    session = session_factory()
    product = Product(
        shop_id=shop.id,
        title='Acme UltraMat Pro',
        description='Extra thick non-slip yoga mat made from natural rubber.',
        vendor='Acme',
        product_type='Yoga Mat',
        category='Fitness',
        price=89.0,
        tags=['non-slip', 'eco-friendly'],
    )
    session.add(product)
    session.commit()
    session.close()
    return product


@pytest.fixture
def set_credits(session_factory):
    def _set(shop_id, credits):
        session = session_factory()
        session.get(Shop, shop_id).credits = credits
        session.commit()
        session.close()
    return _set


@pytest.fixture
def get_credits(session_factory):
    def _get(shop_id):
        session = session_factory()
        try:
            return session.get(Shop, shop_id).credits
        finally:
            session.close()
    return _get


@pytest.fixture
def add_scan(session_factory):
    """Insert a historical scan row directly"""
    sequence = itertools.count()
    base = utcnow() - timedelta(days=10)

    def _add(product, platform, is_cited, created_at=None, **fields):
        session = session_factory()
        scan = Scan(
            shop_id=product.shop_id,
            product_id=product.id,
            platform=platform,
            question=fields.pop('question', 'What are the best yoga mat for consumers?'),
            full_response=fields.pop('full_response', 'Some answer.'),
            is_cited=is_cited,
            sentiment=fields.pop('sentiment', 'NEUTRAL' if is_cited else None),
            confidence=fields.pop('confidence', 0.85 if is_cited else 0.15),
            created_at=created_at or base + timedelta(minutes=next(sequence)),
            **fields
        )
        session.add(scan)
        session.commit()
        session.close()
        return scan
    return _add


@pytest.fixture
def make_service(session_factory, test_settings):
    """Build a ScanService around scripted providers"""
    def _make(chatgpt=None, gemini=None, recommendation_client=None, alert_sink=None, **overrides):
        settings = test_settings.model_copy(update=overrides) if overrides else test_settings
        clients = {}
        if chatgpt is not None:
            clients['CHATGPT'] = chatgpt
        if gemini is not None:
            clients['GEMINI'] = gemini
        return ScanService(
            session_factory=session_factory,
            scan_clients=clients,
            settings=settings,
            alert_sink=alert_sink,
            recommendation_engine=RecommendationEngine(recommendation_client, settings),
        )
    return _make


@pytest.fixture
def cited_reply():
    return "1. BrandX Mat\n2. Acme UltraMat Pro\n3. YogaPlus Mat\nI recommend the Acme UltraMat Pro for its excellent grip."


@pytest.fixture
def uncited_reply():
    return "I recommend a different yoga mat entirely. Nike and Adidas both make great options."
