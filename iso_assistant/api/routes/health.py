"""
Health check endpoints for monitoring API and dependencies.
"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from iso_assistant.api.services.agent_service import AgentService, get_service

router = APIRouter()


@router.get("/health")
async def health_check(agent: AgentService = Depends(get_service)):
    """
    Check health of API and all dependencies.

    Returns:
        Health status of postgres, ollama, and overall system.
    """
    return await agent.health()


@router.get("/health/ready")
async def readiness_check(agent: AgentService = Depends(get_service)):
    """
    Kubernetes-style readiness check.
    Returns 200 if ready to accept traffic, 503 otherwise.
    """
    health = await agent.health()
    if health["status"] == "ok":
        return {"ready": True}
    return JSONResponse(status_code=503, content={"ready": False, "reason": health})
