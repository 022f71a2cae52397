"""
Typed failures raised by the citation engine
"""

from typing import Optional


class RankInAIError(Exception):
    """Base class for all engine errors"""

    code = "internal_error"


class InsufficientCredits(RankInAIError):
    """Raised before any external call when the shop cannot pay for an operation"""

    code = "insufficient_credits"

    def __init__(self, shop_id: str, required: int, available: Optional[int] = None):
        self.shop_id = shop_id
        self.required = required
        self.available = available
        super().__init__(
            f"Shop {shop_id} needs {required} credit(s), has {available if available is not None else 'fewer'}"
        )


class ProviderUnavailable(RankInAIError):
    """LLM call failed, timed out or returned unusable content"""

    code = "provider_unavailable"

    def __init__(self, platform: str, reason: str):
        self.platform = platform
        self.reason = reason
        super().__init__(f"{platform} unavailable: {reason}")


class ProductNotFound(RankInAIError):
    code = "product_not_found"

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product {product_id} not found")


class ShopNotFound(RankInAIError):
    code = "shop_not_found"

    def __init__(self, shop_ref: str):
        self.shop_ref = shop_ref
        super().__init__(f"Shop {shop_ref} not found")


class PersistenceFailure(RankInAIError):
    """Storage write failed after credits were reserved"""

    code = "persistence_failure"


class OptimizationNotFound(RankInAIError):
    code = "optimization_not_found"

    def __init__(self, optimization_id: str):
        self.optimization_id = optimization_id
        super().__init__(f"Optimization {optimization_id} not found")


class OptimizationAlreadyApplied(RankInAIError):
    code = "optimization_already_applied"

    def __init__(self, optimization_id: str):
        self.optimization_id = optimization_id
        super().__init__(f"Optimization {optimization_id} was already applied")
