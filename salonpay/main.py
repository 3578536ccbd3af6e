import asyncio
import logging
import os
from contextlib import asynccontextmanager

from arq import create_pool
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError

from . import models, models_mercadopago  # noqa: F401 - register tables on Base
from .config import get_settings
from .database import Base, engine
from .exceptions import SalonPayError
from .rate_limiter import create_redis_client
from .routes.mercadopago import router as mercadopago_router
from .routes.mercadopago_webhooks import router as mercadopago_webhooks_router
from .routes.payment_links import router as payment_links_router
from .routes.public_booking import router as public_booking_router
from .worker import get_redis_settings

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Reduce verbosity of third-party libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting up...")
    try:
        Base.metadata.create_all(bind=engine, checkfirst=True)
        logger.info("Database tables created successfully")
    except Exception as e:
        # Another worker may have created them first
        error_msg = str(e)
        if "already exists" in error_msg or "duplicate key" in error_msg:
            logger.info("Database tables already exist (created by another worker)")
        else:
            logger.error(f"Failed to create database tables: {e}")
            raise

    settings = get_settings()
    app.state.rate_limit_redis = None
    app.state.arq_pool = None
    if settings.redis_url:
        if settings.rate_limit_enabled:
            app.state.rate_limit_redis = create_redis_client(settings.redis_url)
        try:
            app.state.arq_pool = await asyncio.wait_for(create_pool(get_redis_settings()), timeout=20.0)
            logger.info("📬 Webhook events will be processed by the ARQ worker")
        except (OSError, RedisError, asyncio.TimeoutError) as e:
            logger.warning(f"⚠️ ARQ pool unavailable, webhook events processed in-process: {e}")

    yield

    if app.state.arq_pool is not None:
        await app.state.arq_pool.close()
    if app.state.rate_limit_redis is not None:
        app.state.rate_limit_redis.close()
    logger.info("Application shutting down...")


app = FastAPI(title="SalonPay API", version="1.0.0", lifespan=lifespan)


@app.exception_handler(SalonPayError)
async def salonpay_exception_handler(request: Request, exc: SalonPayError):
    """Render integration errors with their status and caller-safe message only"""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} - {type(exc).__name__}: {exc}")
    else:
        logger.warning(f"{request.method} {request.url.path} - {type(exc).__name__}: {exc}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.public_message})


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """
    Convert 422 validation errors from HTTPBearer to 401 authentication errors
    when the issue is with the Authorization header
    """
    for error in exc.errors():
        if error.get("loc") and "authorization" in str(error.get("loc")).lower():
            logger.warning(f"Authentication failed for {request.url.path}: missing Authorization header")
            return JSONResponse(status_code=401, content={"detail": "Not authenticated"})

    logger.warning(f"Validation error for {request.url.path}: {exc.errors()}")
    return JSONResponse(status_code=422, content={"detail": jsonable_errors(exc)})


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    # ctx may carry the raised ValueError, which is not JSON serializable
    return [{key: value for key, value in error.items() if key != "ctx"} for error in exc.errors()]


ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
logger.info(f"CORS allowed origins: {ALLOWED_ORIGINS}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

app.include_router(mercadopago_router)
app.include_router(payment_links_router)
app.include_router(public_booking_router)
app.include_router(mercadopago_webhooks_router)


@app.get("/")
def root():
    return {"message": "SalonPay API is running"}


@app.get("/health")
def health():
    return {"status": "healthy"}
