from fastapi import APIRouter, Depends
import redis.asyncio as redis

from api.src.dependencies import get_orchestrator
from engine.src.services.errors import StatePersistenceError
from engine.src.services.orchestrator import Orchestrator

router = APIRouter(tags=["health"])

@router.get("/health")
async def health_check():
    return {"status": "healthy", "service": "drillx-api"}

@router.get("/health/db")
async def db_health_check(orchestrator: Orchestrator = Depends(get_orchestrator)):
    try:
        await orchestrator.store.ping()
        return {"status": "healthy", "database": "connected"}
    except StatePersistenceError as e:
        return {"status": "unhealthy", "database": str(e)}

@router.get("/health/redis")
async def redis_health_check(orchestrator: Orchestrator = Depends(get_orchestrator)):
    if orchestrator.log_buffer is None:
        return {"status": "unhealthy", "redis": "not configured"}
    try:
        await orchestrator.log_buffer.ping()
        return {"status": "healthy", "redis": "connected"}
    except redis.RedisError as e:
        return {"status": "unhealthy", "redis": str(e)}

@router.get("/health/runs")
async def runs_health_check(orchestrator: Orchestrator = Depends(get_orchestrator)):
    """Active run contexts and test runs."""
    executions = orchestrator.scheduler.active_runs()
    test_runs = orchestrator.test_runs.active_runs()
    return {
        "status": "healthy",
        "executions": executions,
        "test_runs": test_runs,
        "paused": sum(1 for run in executions if run["failed"]),
    }
