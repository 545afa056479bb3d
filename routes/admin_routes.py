"""
Admin API Routes for cleanup diagnostics and manual passes
"""
from fastapi import APIRouter, HTTPException, Depends, Request, Security
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from dataclasses import asdict
from typing import Dict, Any
import logging
import os

logger = logging.getLogger(__name__)

# Security for admin endpoints
security = HTTPBearer()

class AdminAuth:
    """Simple admin authentication"""

    @staticmethod
    def verify_admin_key(credentials: HTTPAuthorizationCredentials = Security(security)):
        """Verify admin API key"""
        expected_key = os.getenv("ADMIN_API_KEY", "admin-dev-key-change-in-production")

        if not credentials or credentials.credentials != expected_key:
            raise HTTPException(
                status_code=401,
                detail="Invalid admin API key",
                headers={"WWW-Authenticate": "Bearer"},
            )
        return credentials.credentials

router = APIRouter(prefix="/cleanup", tags=["cleanup"], dependencies=[Depends(AdminAuth.verify_admin_key)])


@router.get("/stats")
async def get_cleanup_stats(request: Request) -> Dict[str, Any]:
    """Per-action counts (24h), recent errors and pending deletions"""
    try:
        return await request.app.state.cleanup_scheduler.get_cleanup_stats()
    except Exception as e:
        logger.error(f"Error getting cleanup stats: {e}")
        raise HTTPException(status_code=500, detail="Failed to get cleanup stats")


@router.post("/run")
async def run_cleanup_now(request: Request) -> Dict[str, Any]:
    """Run one cleanup sweep immediately"""
    stats = await request.app.state.cleanup_scheduler.run_cleanup_pass()
    logger.info(f"Manual cleanup pass finished: {stats}")
    return {"success": True, "stats": asdict(stats)}


@router.post("/daily-scan")
async def run_daily_scan_now(request: Request) -> Dict[str, Any]:
    """Run the daily full scan immediately"""
    stats = await request.app.state.cleanup_scheduler.run_daily_full_scan()
    logger.info(f"Manual daily scan finished: {stats}")
    return {"success": True, "stats": asdict(stats)}
