"""
Forkast API

Serves the cron-triggered market sync endpoint plus liveness probes.
"""
import time

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from config import Config
from routes import sync_router
from services.storage import storage_service
from utils.logger import configure_logging, get_logger

configure_logging()
logger = get_logger(__name__)

app = FastAPI(
    title="Forkast API",
    description="Syncs prediction markets from the PnL subgraph into Postgres",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=Config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.info(
        f"{request.method} {request.url.path} -> {response.status_code} ({elapsed_ms:.0f}ms)",
        extra={
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round(elapsed_ms, 2),
            "type": "http_request"
        }
    )
    return response


app.include_router(sync_router)


@app.on_event("startup")
async def prepare_icon_bucket():
    if not storage_service.is_available():
        logger.info("ℹ️  Icon storage disabled; markets sync without icons")
    elif storage_service.ensure_bucket_exists():
        logger.info(f"✅ Icon bucket '{storage_service.bucket_name}' ready")
    else:
        logger.warning("⚠️  Icon bucket unavailable; uploads will fail until it exists")


@app.get("/")
async def root():
    return {"service": "forkast-api", "status": "running"}


@app.get("/health")
async def health():
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=Config.API_HOST, port=Config.API_PORT, log_level="info")
