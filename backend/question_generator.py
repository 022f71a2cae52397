"""
Shopping-question templates used to query LLM assistants about a product
"""

import random
from datetime import date
from typing import Optional

from models import ProductFacts

DEFAULT_AUDIENCE = "consumers"

QUESTION_TEMPLATES = (
    "What are the best {product_type} for {audience}?",
    "Can you recommend {product_type} from {vendor}?",
    "What {product_type_singular} would you suggest for someone looking for {category}?",
    "Which {vendor_brand} products are most popular right now?",
    "What are the top-rated {product_type_items} in {year}?",
)


def generate_scan_question(
    product: ProductFacts,
    rng: Optional[random.Random] = None,
    year: Optional[int] = None,
) -> str:
    """Pick one natural-language shopping question for the product"""
    rng = rng or random.Random()
    product_type = product.product_type.lower() if product.product_type else None

    template = rng.choice(QUESTION_TEMPLATES)
    return template.format(
        product_type=product_type or "products",
        product_type_singular=product_type or "product",
        product_type_items=product_type or "items",
        vendor=product.vendor or "top brands",
        vendor_brand=product.vendor or "brand",
        category=product.category or "quality items",
        audience=DEFAULT_AUDIENCE,
        year=year or date.today().year,
    )
