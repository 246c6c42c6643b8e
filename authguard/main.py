# main.py

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from authguard.core.config import build_auth_config, settings
from authguard.db.mongodb import close_mongo_connection, connect_to_mongo, ensure_indexes, get_database
from authguard.db.redis_client import is_redis_available

from authguard.api.v1.routes.auth_route import router as auth_router
from authguard.api.v1.routes.account_route import router as account_router
from authguard.api.v1.routes.two_factor_route import router as two_factor_router
from authguard.api.v1.routes.device_session_route import router as device_session_router
from authguard.api.v1.routes.data_export_route import router as data_export_router

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# -----------------------------
# FASTAPI APP
# -----------------------------
app = FastAPI(
    title=settings.PROJECT_NAME,
    version="1.0.0",
    description="Device trust scoring and step-up verification for account security"
)

# Built once; read-only for the life of the process
app.state.auth_config = build_auth_config(settings)

# -----------------------------
# CORS MIDDLEWARE
# -----------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# -----------------------------
# ROUTERS
# -----------------------------
app.include_router(auth_router, prefix="/api/v1/auth")
app.include_router(account_router, prefix="/api/v1")
app.include_router(two_factor_router, prefix="/api/v1")
app.include_router(device_session_router, prefix="/api/v1")
app.include_router(data_export_router, prefix="/api/v1")


# -----------------------------
# STARTUP EVENT
# -----------------------------
@app.on_event("startup")
async def startup_event():
    logger.info("Starting %s", settings.PROJECT_NAME)
    await connect_to_mongo()

    await ensure_indexes(await get_database())
    logger.info("Indexes created")


# -----------------------------
# SHUTDOWN EVENT
# -----------------------------
@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Shutting down API")
    await close_mongo_connection()


# -----------------------------
# ROOT ENDPOINT
# -----------------------------
@app.get("/", tags=["Health"])
def root():
    return {
        "message": f"{settings.PROJECT_NAME} running",
        "version": "1.0.0",
        "redis": is_redis_available(),
        "docs": "/docs"
    }
