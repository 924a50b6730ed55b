from contextlib import asynccontextmanager
from datetime import datetime
import time
import traceback

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api.rate_limit import FixedWindowRateLimiter
from app.api.routes import invoices, upload, webhooks, whatsapp
from app.services.storage_service import upload_storage
from core.config.config import Config
from core.models.database import init_db
from core.utils.logging_config import get_logger, setup_logging

logger = get_logger(__name__)

STARTED_AT = time.monotonic()

SECURITY_HEADERS = {
    'X-Content-Type-Options': 'nosniff',
    'X-Frame-Options': 'DENY',
    'Referrer-Policy': 'no-referrer',
    'X-DNS-Prefetch-Control': 'off',
}

rate_limiter = FixedWindowRateLimiter(Config.RATE_LIMIT_MAX_REQUESTS, Config.RATE_LIMIT_WINDOW_SECONDS)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(log_level=Config.LOG_LEVEL, log_file=Config.LOG_FILE, production=Config.is_production())

    init_db()
    logger.info("Database initialized successfully")

    upload_storage.ensure_directories()
    upload_storage.sweep_staging()

    logger.info(f"Invoice intake API started ({Config.APP_ENV}, port {Config.APP_PORT})")
    yield
    logger.info("Invoice intake API stopped")


app = FastAPI(
    title="Invoice Intake API",
    description="Upload, WhatsApp and n8n callback intake for invoice extraction",
    version=Config.APP_VERSION,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=Config.cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def rate_limit(request: Request, call_next):
    client_ip = request.client.host if request.client else 'unknown'
    if not rate_limiter.hit(client_ip):
        logger.warning(f"Rate limit exceeded for {client_ip}")
        return JSONResponse(
            status_code=429,
            content={"error": "Too many requests from this IP, please try again later."},
            headers={"Retry-After": str(rate_limiter.retry_after(client_ip))}
        )
    return await call_next(request)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    client_ip = request.client.host if request.client else 'unknown'
    logger.info(f"{request.method} {request.url.path} - {client_ip}")

    response = await call_next(request)

    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.info(f"{request.method} {request.url.path} -> {response.status_code} ({elapsed_ms:.1f} ms)")
    for header, value in SECURITY_HEADERS.items():
        response.headers.setdefault(header, value)
    return response


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    details = [
        {
            "loc": [str(part) for part in error.get('loc', ())],
            "msg": error.get('msg'),
            "type": error.get('type'),
        }
        for error in exc.errors()
    ]
    logger.warning(f"Validation failed for {request.method} {request.url.path}: {details}")
    return JSONResponse(status_code=400, content={"error": "Validation failed", "details": details})


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    content = exc.detail if isinstance(exc.detail, dict) else {"error": exc.detail}
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, 'headers', None))


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
    if Config.is_production():
        content = {"error": "Something went wrong!"}
    else:
        content = {
            "error": str(exc) or exc.__class__.__name__,
            "stack": traceback.format_exception(type(exc), exc, exc.__traceback__),
        }
    return JSONResponse(status_code=500, content=content)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "OK",
        "timestamp": datetime.utcnow().isoformat() + 'Z',
        "uptime": round(time.monotonic() - STARTED_AT, 3),
        "version": Config.APP_VERSION,
    }


app.include_router(upload.router)
app.include_router(invoices.router)
app.include_router(webhooks.router)
app.include_router(whatsapp.router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app.api.main:app", host=Config.APP_HOST, port=Config.APP_PORT)
