"""
FastAPI application main module.
"""
import os
import json
import logging

# Initialize Sentry before the app so startup errors are captured
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
        traces_sample_rate=float(os.getenv('SENTRY_TRACES_SAMPLE_RATE', '0.1')),
        environment=os.getenv('ENVIRONMENT', 'development'),
        send_default_pii=False,
    )
    logging.info("Sentry initialized for error monitoring")

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.utils import get_openapi
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from peerlink.middleware.auth import APIKeyMiddleware, DEFAULT_EXCLUDE_PATHS
from peerlink.middleware.error_handling import setup_error_handling
from peerlink.middleware.rate_limit import limiter, rate_limit_exceeded_handler
from peerlink.routers.analytics import router as analytics_router
from peerlink.routers.health import router as health_router
from peerlink.routers.matching import router as matching_router
from peerlink.routers.queue import router as queue_router
from peerlink.utils.logging_config import RequestLoggingMiddleware, setup_logging

dotenv_override = os.getenv("DOTENV_OVERRIDE", "false").lower() == "true"
load_dotenv(override=dotenv_override)

setup_logging()

app_name = os.getenv('APP_NAME', 'PeerLink Matching')
app_version = os.getenv('APP_VERSION', '1.0.0')
environment = os.getenv('ENVIRONMENT', 'development')

# Parse CORS origins from JSON string
cors_origins_str = os.getenv('CORS_ORIGINS')
try:
    cors_origins = json.loads(cors_origins_str) if cors_origins_str else ["*"]
except json.JSONDecodeError:
    raise ValueError("CORS_ORIGINS must be a valid JSON array")
if not isinstance(cors_origins, list) or not cors_origins:
    raise ValueError("CORS_ORIGINS must be a valid JSON array")

# Log non-sensitive configuration (NEVER log secrets/credentials)
logger = logging.getLogger(__name__)
logger.info(f"Starting {app_name} v{app_version} in {environment} environment")
logger.info(f"CORS origins: {len(cors_origins)} configured")
logger.info(f"Matching store backend: {os.getenv('MATCHING_STORE_BACKEND', 'postgres')}")

API_DESCRIPTION = "Peer matching: queue, compatibility scoring, matching cycles and match analytics"

app = FastAPI(
    title=app_name,
    description=API_DESCRIPTION,
    version=app_version,
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
        description=API_DESCRIPTION,
        routes=app.routes,
    )

    openapi_schema["components"]["securitySchemes"] = {
        "ApiKeyAuth": {
            "type": "apiKey",
            "in": "header",
            "name": "X-API-KEY"
        }
    }

    for path in openapi_schema["paths"]:
        if path.startswith("/api/v1/") and not path.startswith("/api/v1/health"):
            for method in openapi_schema["paths"][path]:
                openapi_schema["paths"][path][method]["security"] = [{"ApiKeyAuth": []}]

    app.openapi_schema = openapi_schema
    return app.openapi_schema


app.openapi = custom_openapi

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-API-KEY", "X-User-ID", "X-Request-ID", "Accept"],
)

app.add_middleware(SlowAPIMiddleware)

# Health, docs and the OpenAPI document stay open
app.add_middleware(
    APIKeyMiddleware,
    exclude_paths=DEFAULT_EXCLUDE_PATHS + ["/api/v1/health"]
)

# Outermost, so auth and rate-limit rejections are logged with a request id
app.add_middleware(RequestLoggingMiddleware)

app.include_router(health_router)
app.include_router(queue_router, prefix="/api/v1")
app.include_router(matching_router, prefix="/api/v1")
app.include_router(analytics_router, prefix="/api/v1")
