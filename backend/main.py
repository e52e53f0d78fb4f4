"""
ResidentTrajectory — ITE Trajectory Classification & Trend Analytics
FastAPI backend entry point.
"""

import logging
import os

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from core.errors import TrajectoryError
from routes.trajectory import get_catalog_provider, router as trajectory_router

# Load environment
load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

PROGRAM_NAME = os.getenv("PROGRAM_NAME", "Residency Program")
# Comma-separated allowed origins, e.g. http://localhost:5173,https://app.example.com
raw_origins = os.getenv("CORS_ORIGINS", "http://localhost:5173,http://localhost:3000")
ALLOWED_ORIGINS = [o.strip() for o in raw_origins.split(",") if o.strip()]

app = FastAPI(
    title="ResidentTrajectory API",
    description=(
        "Resident ITE trajectory analytics — archetype classification, "
        "similar-resident matching, methodology drift and attribute trendlines."
    ),
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(TrajectoryError)
async def trajectory_error_handler(request: Request, exc: TrajectoryError):
    # Input problems are ValueErrors; anything else is an engine bug
    if isinstance(exc, ValueError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})
    logger.error("Trajectory engine error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": str(exc)})


# Register route modules
app.include_router(trajectory_router, prefix="/api/trajectory", tags=["Trajectory"])


@app.get("/api/health")
async def health_check():
    return {
        "status": "ok",
        "program_name": PROGRAM_NAME,
        "methodology_version": get_catalog_provider().current.version,
    }


@app.get("/api/config")
async def get_config():
    """Return server configuration to the frontend."""
    catalog = get_catalog_provider().current
    return {
        "program_name": PROGRAM_NAME,
        "methodology_version": catalog.version,
        "methodology_name": catalog.name,
        "similar_residents_limit": int(os.getenv("SIMILAR_RESIDENTS_LIMIT", "5")),
        "similarity_threshold": float(os.getenv("SIMILARITY_THRESHOLD", "0.5")),
    }
