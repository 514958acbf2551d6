"""
Shipping Quote Engine
FastAPI application entry point

- Quote aggregation across external rate providers with internal fallback
- Quote cache on Redis when configured, in-process LRU otherwise
- Shipping catalog from the database when configured, JSON seed otherwise
- Error sanitization middleware and structured error bodies
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.routes import quotes, rates, zones
from app.core.config import settings
from app.core.database import dispose_engine, get_session_factory
from app.core.error_handler import ErrorSanitizationMiddleware, register_exception_handlers
from app.core.redis_client import close_redis, get_redis
from app.modules.shipping.catalog import InMemoryCatalog, SQLAlchemyCatalog, ShippingCatalog
from app.modules.shipping.providers import build_providers
from app.modules.shipping.rate_engine import RateEngine
from app.services.quote_aggregator import AggregatorConfig, QuoteAggregator
from app.services.quote_cache import InMemoryQuoteCache, QuoteCache, RedisQuoteCache

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


def build_catalog() -> ShippingCatalog:
    session_factory = get_session_factory()
    if session_factory is not None:
        logger.info("Shipping catalog: database")
        return SQLAlchemyCatalog(session_factory)
    if settings.SHIPPING_CATALOG_PATH:
        return InMemoryCatalog.from_file(settings.SHIPPING_CATALOG_PATH)
    logger.warning("No DATABASE_URL or SHIPPING_CATALOG_PATH; internal rates will find no zones")
    return InMemoryCatalog()


async def build_cache() -> QuoteCache:
    client = await get_redis()
    if client is not None:
        logger.info("Quote cache: redis")
        return RedisQuoteCache(client)
    logger.info(f"Quote cache: in-memory (max {settings.QUOTE_CACHE_MAX_SIZE} entries)")
    return InMemoryQuoteCache(max_size=settings.QUOTE_CACHE_MAX_SIZE)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the aggregator on startup, release provider and store clients on shutdown."""
    aggregator = QuoteAggregator(
        providers=build_providers(settings),
        catalog=build_catalog(),
        cache=await build_cache(),
        rate_engine=RateEngine.from_settings(settings),
        config=AggregatorConfig.from_settings(settings),
    )
    app.state.quote_aggregator = aggregator
    logger.info(f"{settings.APP_NAME} started ({settings.ENVIRONMENT})")

    yield

    await aggregator.close()
    await close_redis()
    await dispose_engine()
    logger.info("Provider clients and stores closed")


app = FastAPI(
    lifespan=lifespan,
    title=settings.APP_NAME,
    description="Shipping rate and quote calculation across carriers and rate providers.",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=[
        {"name": "Health", "description": "Health check endpoint"},
        {"name": "Shipping Quotes", "description": "Aggregated multi-provider quotes"},
        {"name": "Shipping Rates", "description": "Internal rate engine estimates"},
        {"name": "Shipping Zones", "description": "Destination zone lookup"},
    ],
)

# Middleware - order matters (last added = first executed)
app.add_middleware(ErrorSanitizationMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)
register_exception_handlers(app)

app.include_router(quotes.router, prefix="/api")
app.include_router(rates.router, prefix="/api")
app.include_router(zones.router, prefix="/api")


@app.get("/health", tags=["Health"])
async def health_check():
    """Service status with provider availability and cache statistics."""
    aggregator = getattr(app.state, "quote_aggregator", None)
    health_status = {
        "status": "healthy" if aggregator is not None else "starting",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if aggregator is not None:
        health_status["providers"] = aggregator.test_provider_connectivity()
        health_status["cache"] = aggregator.cache.get_stats() if aggregator.cache else None
    return health_status
