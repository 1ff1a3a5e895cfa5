"""
FastAPI application main module.
"""
import os
import json
import logging
from contextlib import asynccontextmanager

# Initialize Sentry BEFORE importing anything else (for best error capture)
import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

sentry_dsn = os.getenv('SENTRY_DSN')
if sentry_dsn:
    sentry_sdk.init(
        dsn=sentry_dsn,
        integrations=[
            FastApiIntegration(),
            StarletteIntegration(),
        ],
        traces_sample_rate=0.1,  # 10% of requests traced
        environment=os.getenv('ENVIRONMENT', 'development'),
        send_default_pii=False,
    )
    logging.info("Sentry initialized for error monitoring")

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.utils import get_openapi
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from dotenv import load_dotenv

from venturematch.core.dependencies import get_search_service
from venturematch.middleware.auth import APIKeyMiddleware
from venturematch.middleware.error_handling import setup_error_handling
from venturematch.middleware.rate_limit import limiter, rate_limit_exceeded_handler
from venturematch.routers.health import router as health_router
from venturematch.routers.index import router as index_router
from venturematch.routers.recommendations import router as recommendations_router
from venturematch.routers.search import router as search_router
from venturematch.utils.logging_config import RequestLoggingMiddleware, setup_logging

dotenv_override = os.getenv("DOTENV_OVERRIDE", "false").lower() == "true"
load_dotenv(override=dotenv_override)

setup_logging(level=os.getenv('LOG_LEVEL', 'INFO'))

app_name = os.getenv('APP_NAME')
app_version = os.getenv('APP_VERSION')
environment = os.getenv('ENVIRONMENT')

# Parse CORS origins from JSON string
cors_origins_str = os.getenv('CORS_ORIGINS')
try:
    cors_origins = json.loads(cors_origins_str) if cors_origins_str else None
except json.JSONDecodeError:
    cors_origins = None

# Parse allowed hosts from JSON string
allowed_hosts_str = os.getenv('ALLOWED_HOSTS')
try:
    allowed_hosts = json.loads(allowed_hosts_str) if allowed_hosts_str else None
except json.JSONDecodeError:
    allowed_hosts = None

# Validate required environment variables
required_vars = ['APP_NAME', 'APP_VERSION', 'CORS_ORIGINS', 'ALLOWED_HOSTS']
missing_vars = [var for var in required_vars if not os.getenv(var)]
if missing_vars:
    raise ValueError(f"Missing required environment variables: {', '.join(missing_vars)}")

if not cors_origins:
    raise ValueError("CORS_ORIGINS must be a valid JSON array")
if not allowed_hosts:
    raise ValueError("ALLOWED_HOSTS must be a valid JSON array")

# Log non-sensitive configuration (NEVER log secrets/credentials)
logger = logging.getLogger(__name__)
logger.info(f"Starting {app_name} v{app_version} in {environment} environment")
logger.info(f"CORS origins: {len(cors_origins)} configured")
logger.info(f"Cache backend: {os.getenv('CACHE_BACKEND', 'memory')}, index backend: {os.getenv('INDEX_BACKEND', 'memory')}")

AUTH_EXCLUDED_PATHS = ["/health", "/api/v1/health", "/docs", "/redoc", "/openapi.json"]


@asynccontextmanager
async def lifespan(app: FastAPI):
    # A seeded store starts with an empty index; build it once.
    if os.getenv("PROFILE_SEED_PATH"):
        report = get_search_service().reindex_all()
        logger.info(f"Initial index built: {report.indexed} profiles")
    yield


app = FastAPI(
    title=app_name,
    description="Entrepreneur and funder matching: compatibility scoring, recommendations and profile search",
    version=app_version,
    lifespan=lifespan,
    swagger_ui_parameters={
        "persistAuthorization": True
    }
)

# Configure rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

setup_error_handling(app)


def custom_openapi():
    if app.openapi_schema:
        return app.openapi_schema

    openapi_schema = get_openapi(
        title=app_name,
        version=app_version,
        description=app.description,
        routes=app.routes,
    )

    openapi_schema.setdefault("components", {})["securitySchemes"] = {
        "ApiKeyAuth": {
            "type": "apiKey",
            "in": "header",
            "name": "X-API-KEY"
        }
    }

    for path in openapi_schema["paths"]:
        if not any(path.startswith(excluded) for excluded in AUTH_EXCLUDED_PATHS):
            for method in openapi_schema["paths"][path]:
                openapi_schema["paths"][path][method]["security"] = [{"ApiKeyAuth": []}]

    app.openapi_schema = openapi_schema
    return app.openapi_schema


app.openapi = custom_openapi

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-API-KEY", "X-ADMIN-KEY", "X-Request-ID", "Accept"],
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=allowed_hosts)

# Add rate limiting middleware
app.add_middleware(SlowAPIMiddleware)

app.add_middleware(APIKeyMiddleware, exclude_paths=AUTH_EXCLUDED_PATHS)

# Outermost, so rejected requests are logged and tagged too
app.add_middleware(RequestLoggingMiddleware)

app.include_router(health_router)
app.include_router(recommendations_router, prefix="/api/v1")
app.include_router(search_router, prefix="/api/v1")
app.include_router(index_router, prefix="/api/v1")
