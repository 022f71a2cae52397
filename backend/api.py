"""
HTTP surface of the RankInAI citation engine
Thin FastAPI layer over ScanService; typed engine errors map to status codes.
"""

import time
from datetime import datetime
from typing import Optional

import structlog
import uvicorn
from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST

from config import configure_logging, get_settings
from credits import apply_subscription_update, handle_app_uninstalled, install_shop
from database import check_database_health, session_scope
from exceptions import (
    InsufficientCredits, OptimizationAlreadyApplied, OptimizationNotFound,
    PersistenceFailure, ProductNotFound, ProviderUnavailable, RankInAIError, ShopNotFound
)
from models import (
    AnalyticsWindow, AppInstalledRequest, AppUninstalledRequest, ScanRequest, StandardResponse,
    SubscriptionUpdateRequest
)
from monitoring import get_metrics
from notifications import DatabaseAlertSink
from scan_service import ScanService

logger = structlog.get_logger()

ERROR_STATUS = {
    InsufficientCredits: 402,
    ProductNotFound: 404,
    ShopNotFound: 404,
    OptimizationNotFound: 404,
    OptimizationAlreadyApplied: 409,
    ProviderUnavailable: 503,
    PersistenceFailure: 500,
}


def _error_response(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "data": None,
            "error": {"code": code, "message": message},
            "timestamp": datetime.now().isoformat()
        }
    )


def get_service(request: Request) -> ScanService:
    """ScanService bound to the app; built from settings on first use"""
    service = getattr(request.app.state, "service", None)
    if service is None:
        service = ScanService.from_settings()
        service.alert_sink = DatabaseAlertSink(service.session_factory)
        request.app.state.service = service
    return service


def create_app(service: Optional[ScanService] = None) -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="AI citation scanning and scoring for e-commerce products",
        version=settings.api_version,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ==================== ERROR HANDLERS ====================

    @app.exception_handler(RankInAIError)
    async def engine_error_handler(request: Request, exc: RankInAIError):
        status_code = ERROR_STATUS.get(type(exc), 500)
        if status_code >= 500:
            logger.error("request_failed", path=request.url.path, code=exc.code, error=str(exc))
        else:
            logger.info("request_rejected", path=request.url.path, code=exc.code, error=str(exc))
        return _error_response(status_code, exc.code, str(exc))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.warning("validation_error", path=request.url.path, errors=exc.errors())
        return _error_response(422, "validation_failed", "Validation failed")

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error("unhandled_exception", path=request.url.path, error=str(exc), exc_info=True)
        return _error_response(500, "internal_error", "Internal server error")

    # ==================== SYSTEM ====================

    @app.get("/", response_model=StandardResponse)
    async def root():
        return StandardResponse(
            success=True,
            data={
                "message": settings.app_name,
                "version": settings.api_version,
                "endpoints": [
                    "/health",
                    "/metrics",
                    "/products/{product_id}/scan",
                    "/products/{product_id}/scan/complete",
                    "/products/{product_id}/recommendations",
                    "/products/{product_id}/stats",
                    "/shops/{shop_id}/analytics",
                    "/docs"
                ]
            }
        )

    @app.get("/health", response_model=StandardResponse)
    async def health_check(service: ScanService = Depends(get_service)):
        start_time = time.time()
        services = {
            "database": check_database_health(service.session_factory.kw["bind"]),
            "chatgpt": "CHATGPT" in service.scan_clients,
            "gemini": "GEMINI" in service.scan_clients,
        }
        overall_status = "healthy" if all(services.values()) else "degraded"
        return StandardResponse(
            success=True,
            data={
                "status": overall_status,
                "services": services,
                "response_time": f"{time.time() - start_time:.3f}s",
                "version": settings.api_version
            }
        )

    @app.get("/metrics")
    async def metrics():
        return Response(content=get_metrics().export(), media_type=CONTENT_TYPE_LATEST)

    # ==================== SCANS ====================

    @app.post("/products/{product_id}/scan", response_model=StandardResponse)
    async def scan_product(product_id: str, request: ScanRequest,
                           service: ScanService = Depends(get_service)):
        result = await service.scan_product(product_id, request.platform.value)
        return StandardResponse(success=True, data=result.to_dict())

    @app.post("/products/{product_id}/scan/complete", response_model=StandardResponse)
    async def scan_product_complete(product_id: str, service: ScanService = Depends(get_service)):
        result = await service.scan_product_complete(product_id)
        return StandardResponse(success=bool(result.results), data=result.to_dict())

    @app.post("/products/{product_id}/recommendations", response_model=StandardResponse)
    async def generate_recommendations(product_id: str, service: ScanService = Depends(get_service)):
        optimization = await service.generate_recommendations(product_id)
        return StandardResponse(success=True, data=optimization)

    @app.post("/optimizations/{optimization_id}/apply", response_model=StandardResponse)
    async def apply_optimization(optimization_id: str, service: ScanService = Depends(get_service)):
        return StandardResponse(success=True, data=service.apply_optimization(optimization_id))

    # ==================== ANALYTICS ====================

    @app.get("/products/{product_id}/stats", response_model=StandardResponse)
    async def product_stats(product_id: str, service: ScanService = Depends(get_service)):
        return StandardResponse(success=True, data=service.get_product_stats(product_id))

    @app.get("/shops/{shop_id}/analytics", response_model=StandardResponse)
    async def shop_analytics(shop_id: str, window: AnalyticsWindow = Query(AnalyticsWindow.LAST_30_DAYS),
                             service: ScanService = Depends(get_service)):
        return StandardResponse(success=True, data=service.get_shop_analytics(shop_id, window))

    @app.get("/shops/{shop_id}/products", response_model=StandardResponse)
    async def shop_products(shop_id: str, service: ScanService = Depends(get_service)):
        products = service.list_products(shop_id)
        return StandardResponse(success=True, data={"products": products, "total": len(products)})

    @app.get("/shops/{shop_id}/reports")
    async def shop_report(shop_id: str, window: AnalyticsWindow = Query(AnalyticsWindow.LAST_30_DAYS),
                          report_format: str = Query("csv", alias="format", pattern="^(csv|pdf)$"),
                          service: ScanService = Depends(get_service)):
        path = service.export_report(shop_id, window, report_format)
        media_type = "application/pdf" if report_format == "pdf" else "text/csv"
        return FileResponse(path, media_type=media_type, filename=path.rsplit("/", 1)[-1])

    @app.get("/shops/{shop_id}/usage", response_model=StandardResponse)
    async def shop_usage(shop_id: str, service: ScanService = Depends(get_service)):
        return StandardResponse(success=True, data=service.get_monthly_usage(shop_id))

    # ==================== WEBHOOKS ====================

    @app.post("/webhooks/app-installed", response_model=StandardResponse)
    async def app_installed(request: AppInstalledRequest, service: ScanService = Depends(get_service)):
        with session_scope(service.session_factory) as session:
            shop = install_shop(session, request.shop_domain, request.shop_name, service.settings)
            data = {"shop_id": shop.id, "plan": shop.plan, "credits": shop.credits}
        logger.info("webhook_app_installed", shop_domain=request.shop_domain)
        return StandardResponse(success=True, data=data)

    @app.post("/webhooks/app-uninstalled", response_model=StandardResponse)
    async def app_uninstalled(request: AppUninstalledRequest, service: ScanService = Depends(get_service)):
        with session_scope(service.session_factory) as session:
            shop = handle_app_uninstalled(session, request.shop_domain, service.settings)
            data = {"shop_id": shop.id, "plan": shop.plan, "credits": shop.credits}
        logger.info("webhook_app_uninstalled", shop_domain=request.shop_domain)
        return StandardResponse(success=True, data=data)

    @app.post("/webhooks/subscriptions-update", response_model=StandardResponse)
    async def subscriptions_update(request: SubscriptionUpdateRequest,
                                   service: ScanService = Depends(get_service)):
        with session_scope(service.session_factory) as session:
            shop = apply_subscription_update(
                session, request.shop_domain, request.plan.value, request.status, service.settings
            )
            data = {"shop_id": shop.id, "plan": shop.plan, "credits": shop.credits}
        logger.info("webhook_subscription_update", shop_domain=request.shop_domain,
                    plan=request.plan.value, status=request.status)
        return StandardResponse(success=True, data=data)

    @app.on_event("startup")
    async def startup_event():
        logger.info("api_starting", environment=settings.environment)

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("api_shutting_down")

    return app


app = create_app()

if __name__ == "__main__":
    configure_logging()
    uvicorn.run(
        "api:app",
        host="0.0.0.0",
        port=8000,
        reload=get_settings().debug,
        log_level="info"
    )
