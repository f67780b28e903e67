"""
System Routes

Health check for the service and its dependencies.
"""

import os
import logging
from typing import Dict
from datetime import datetime, timezone

from fastapi import APIRouter
from pydantic import BaseModel

from app import ai_client
from app.jobs.job_manager import JOBS_TABLE
from app.supabase_client import get_supabase

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/system", tags=["system"])

VERSION = "1.0.0"


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    version: str
    environment: str
    services: Dict[str, str]


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """
    Basic health check endpoint.
    """
    services = {}

    # Check Supabase connection
    try:
        supabase = get_supabase()
        if supabase:
            supabase.table(JOBS_TABLE).select("id").limit(1).execute()
            services["database"] = "healthy"
        else:
            services["database"] = "unavailable"
    except Exception as e:
        logger.warning(f"Health check database error: {e}")
        services["database"] = f"error: {str(e)[:50]}"

    services["ai"] = "healthy" if ai_client.is_configured() else "unavailable"

    environment = os.getenv("ENVIRONMENT", "development")

    # Overall status follows the store
    status = "healthy" if services["database"] == "healthy" else "degraded"

    return HealthResponse(
        status=status,
        timestamp=datetime.now(timezone.utc).isoformat(),
        version=VERSION,
        environment=environment,
        services=services
    )
