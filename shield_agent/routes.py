import time
from datetime import datetime

import structlog
from fastapi import APIRouter, HTTPException, Query

from .config import settings
from .database import db_manager
from .error_handling import error_collector
from .models import ActionsResponse, RiskEventRequest, ScanSummary, SystemStatus
from .monitoring import metrics_collector
from .orchestrator import agent

logger = structlog.get_logger()

# Track application startup time for uptime calculation
app_start_time = time.time()

router = APIRouter(prefix="/api/shield")

def _require_agent():
    if not agent.is_configured:
        raise HTTPException(
            status_code=503,
            detail="Shield agent is not configured"
        )

@router.get("/health")
async def health_check():
    """Simple health check endpoint"""
    return {
        "status": "healthy",
        "configured": agent.is_configured,
        "timestamp": datetime.utcnow().isoformat(),
        "service": "shield-agent",
        "version": "1.0.0"
    }

@router.get("/status", response_model=SystemStatus)
async def get_system_status():
    """Get uptime, last scan, metrics and database health"""
    last_scan = agent.last_scan.model_dump(mode="json") if agent.last_scan else None

    return SystemStatus(
        status="operational" if agent.is_configured else "unconfigured",
        uptime_seconds=int(time.time() - app_start_time),
        scan_in_progress=agent.scan_in_progress,
        last_scan=last_scan,
        metrics=metrics_collector.get_all_current_metrics(),
        errors=error_collector.get_error_summary(hours=24),
        database_status=await db_manager.health_check()
    )

@router.post("/scan", response_model=ScanSummary)
async def trigger_scan():
    """Run one scan cycle now"""
    _require_agent()

    if agent.scan_in_progress:
        raise HTTPException(
            status_code=409,
            detail="A scan cycle is already in progress"
        )

    logger.info("Manual scan triggered")
    return await agent.run_scan_cycle()

@router.post("/events/risk-updated")
async def handle_risk_updated(request: RiskEventRequest):
    """Route a RiskScoreUpdated log to the shield and rebalancer"""
    _require_agent()

    outcome = await agent.handle_risk_event(request.model_dump())
    rebalance = outcome["rebalance"]

    return {
        "event": outcome["event"].model_dump(mode="json"),
        "shield": outcome["shield"].model_dump(mode="json"),
        "rebalance": rebalance.model_dump(mode="json") if rebalance else None,
        "timestamp": datetime.utcnow().isoformat()
    }

@router.get("/actions", response_model=ActionsResponse)
async def get_recent_actions(limit: int = Query(50, ge=1, le=settings.HISTORY_MAX_ENTRIES)):
    """Most recent shield actions, newest first"""
    actions = await agent.recent_actions(limit)
    return ActionsResponse(actions=actions, count=len(actions))
