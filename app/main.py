"""
Evidence Tracker Jobs API

Run with:
    uvicorn app.main:app --reload --port 8000
"""

from fastapi import FastAPI, Request
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import os
import logging

from app import ai_client
from app.jobs.registry import get_registry
from app.jobs.utils import format_validation_errors
from app.jobs_routes import jobs_router
from app.supabase_client import get_supabase
from app.system_routes import router as system_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Evidence Tracker Jobs API",
    description="Background AI generation, evidence analysis and sync jobs",
    version="1.0.0"
)

allowed_origins = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]

# Get additional allowed origins from environment
extra_origins = os.environ.get("CORS_ORIGINS", "")
if extra_origins:
    allowed_origins.extend([o.strip() for o in extra_origins.split(",") if o.strip()])

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def jobs_validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed /jobs requests are validation errors (400); other routes keep the default 422."""
    if not request.url.path.startswith("/jobs"):
        return await request_validation_exception_handler(request, exc)

    detail = "Invalid request: " + format_validation_errors(exc.errors())
    logger.warning(f"Rejected {request.method} {request.url.path}: {detail}")
    return JSONResponse(status_code=400, content={"detail": detail})


@app.on_event("startup")
async def startup_event():
    """Build the processor registry and log startup information."""
    port = os.environ.get("PORT", "8000")
    registry = get_registry()
    logger.info(f"Evidence Tracker Jobs API starting on port {port}")
    logger.info(f"Supabase connected: {get_supabase() is not None}")
    logger.info(f"AI Service: {'Configured' if ai_client.is_configured() else 'NOT CONFIGURED - set GOOGLE_CLOUD_API_KEY'}")
    logger.info(f"Job types: {', '.join(registry.registered_types())}")


@app.get("/")
def read_root():
    return {"message": "Evidence Tracker Jobs API is running"}


app.include_router(jobs_router)
app.include_router(system_router)
